"""Minimal .env loader used before settings are read."""

from __future__ import annotations

import os
from pathlib import Path

ENV_FILE_OVERRIDE = "BULKGEN_ENV_FILE"


def default_env_path() -> Path:
  """Return the .env path, honouring BULKGEN_ENV_FILE when set."""

  override = os.getenv(ENV_FILE_OVERRIDE)
  if override:
    return Path(override).expanduser()

  return Path(__file__).resolve().parents[2] / ".env"


def _strip_quotes(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    return value[1:-1]

  # Unquoted values may carry a trailing " # comment".
  marker = value.find(" #")
  if marker != -1:
    return value[:marker].rstrip()
  return value


def parse_env_lines(lines: list[str]) -> dict[str, str]:
  """Parse KEY=VALUE lines, ignoring blanks, comments and malformed entries."""

  parsed: dict[str, str] = {}
  for raw_line in lines:
    line = raw_line.strip()
    if not line or line.startswith("#"):
      continue
    if line.startswith("export "):
      line = line[len("export ") :].lstrip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
      continue
    parsed[key] = _strip_quotes(value.strip())
  return parsed


def load_env_file(path: Path, *, override: bool = False) -> dict[str, str]:
  """Load a .env file into os.environ and return the keys that were applied."""

  if not path.is_file():
    return {}

  applied: dict[str, str] = {}
  for key, value in parse_env_lines(path.read_text(encoding="utf-8").splitlines()).items():
    # Real environment variables win unless the caller explicitly overrides.
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    applied[key] = value
  return applied
