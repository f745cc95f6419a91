"""Typed prompt context and named-placeholder templates for the stage builders."""

from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Literal

ContentType = Literal["fault", "manual"]
CONTENT_TYPES: tuple[ContentType, ...] = ("fault", "manual")


@dataclass(frozen=True)
class PromptContext:
  """Domain context for one group, looked up once per build."""

  group_id: str
  brand: str
  model: str
  generation: str
  generation_code: str | None = None

  def describe(self) -> str:
    code = f" ({self.generation_code})" if self.generation_code else ""
    return f"This is about {self.brand} {self.model} {self.generation}{code}."


def _field_names(text: str) -> frozenset[str]:
  return frozenset(name for _, name, _, _ in string.Formatter().parse(text) if name)


@dataclass(frozen=True)
class PromptTemplate:
  """A template whose placeholders are declared up front and checked on render."""

  name: str
  text: str
  placeholders: frozenset[str]

  def __post_init__(self) -> None:
    used = _field_names(self.text)
    if used != self.placeholders:
      raise ValueError(f"Template {self.name} declares {sorted(self.placeholders)} but uses {sorted(used)}")

  def render(self, **values: str | int) -> str:
    missing = self.placeholders - values.keys()
    if missing:
      raise KeyError(f"Template {self.name} is missing values for {sorted(missing)}")
    extra = values.keys() - self.placeholders
    if extra:
      raise KeyError(f"Template {self.name} got unknown placeholders {sorted(extra)}")
    return self.text.format(**values)


def template(name: str, text: str, *placeholders: str) -> PromptTemplate:
  return PromptTemplate(name=name, text=text, placeholders=frozenset(placeholders))


QUESTIONS_SYSTEM = template("questions_system", "You write realistic {content_type} questions that owners ask about their vehicle. Answer in language '{language}'. Return one question per line without numbering.", "content_type", "language")
QUESTIONS_USER = template("questions_user", "{context} Write {count} distinct questions.", "context", "count")

ANSWER_SYSTEM: dict[ContentType, PromptTemplate] = {
  "fault": template("answer_system_fault", "You are an automotive diagnostics expert. Explain causes, symptoms and fixes for the described fault. Answer in language '{language}' using Markdown.", "language"),
  "manual": template("answer_system_manual", "You are an automotive technical writer. Write a clear step-by-step procedure for the described task. Answer in language '{language}' using Markdown.", "language"),
}
# The question must stay first; the embedding stage recovers it by splitting on " - ".
ANSWER_USER = template("answer_user", "{question} - {context}", "question", "context")

METADATA_SYSTEM = template(
  "metadata_system",
  "Classify the {content_type} answer. Return a JSON object with keys severity (low|medium|high|critical), difficulty_level (easy|medium|hard), symptoms (list of strings) and tags (list of strings).",
  "content_type",
)
METADATA_USER = template("metadata_user", "Question: {question}\n\nAnswer: {answer}", "question", "answer")

QUESTION_SEPARATOR = " - "
