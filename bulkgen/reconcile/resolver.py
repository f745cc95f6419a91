"""Resolve `(groupId, ordinal)` correlation pairs back to record primary keys."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from bulkgen.storage.content_repo import ContentRepository, GroupRecordRef, GroupRepository
from bulkgen.utils.ids import compact_id, is_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrdinalPair:
  group_id: str
  ordinal: int

  @property
  def key(self) -> str:
    return f"{self.group_id}:{self.ordinal}"


@dataclass
class Resolution:
  """Resolved ids keyed by the caller's original `"groupId:ordinal"` plus what was dropped and why."""

  ids: dict[str, str] = field(default_factory=dict)
  dropped: dict[str, str] = field(default_factory=dict)


class IdResolver:
  """Map 1-based per-group ordinals to the record holding that sequence number.

  Records are read in `(sequence_number, created_at, id)` order in fixed-size
  pages. The importer numbers records by answer ordinal, offset by what the
  group already held, so an answer that was never imported leaves a gap and
  its ordinal is dropped instead of shifting onto a neighbour. Legacy rows
  without a sequence number fall back to their position in that order.
  Partial group ids are prefix-matched against a cached group listing and
  dropped when the match is absent or ambiguous.
  """

  def __init__(self, group_repo: GroupRepository, content_repo: ContentRepository, *, page_size: int = 1000) -> None:
    self._group_repo = group_repo
    self._content_repo = content_repo
    self._page_size = page_size
    self._group_ids: list[str] | None = None

  async def resolve_ids(self, pairs: Iterable[OrdinalPair]) -> dict[str, str]:
    return (await self.resolve(pairs)).ids

  async def resolve(self, pairs: Iterable[OrdinalPair]) -> Resolution:
    resolution = Resolution()
    by_group: dict[str, list[OrdinalPair]] = {}
    for pair in pairs:
      by_group.setdefault(pair.group_id, []).append(pair)

    for raw_group_id, group_pairs in by_group.items():
      group_id = await self._resolve_group_id(raw_group_id)
      if group_id is None:
        for pair in group_pairs:
          resolution.dropped[pair.key] = "group not resolved"
        continue

      slots, total = await self._record_slots(group_id)
      last = max(slots, default=0)
      for pair in group_pairs:
        if pair.ordinal in slots:
          resolution.ids[pair.key] = slots[pair.ordinal]
        elif 1 <= pair.ordinal <= last:
          resolution.dropped[pair.key] = "no record for ordinal (answer was not imported)"
        else:
          resolution.dropped[pair.key] = f"ordinal out of range (group has {total} records)"

      missing = [pair.key for pair in group_pairs if pair.key in resolution.dropped]
      if missing:
        logger.warning("Group %s has %d records; dropping %d unmatched ordinals (first: %s)", group_id, total, len(missing), missing[0])

    logger.info("Resolved %d ids across %d groups (%d dropped)", len(resolution.ids), len(by_group), len(resolution.dropped))
    return resolution

  async def _resolve_group_id(self, raw_group_id: str) -> str | None:
    if is_uuid(raw_group_id):
      return raw_group_id.lower()

    prefix = compact_id(raw_group_id)
    if not prefix:
      logger.warning("Empty partial group id %r; dropping", raw_group_id)
      return None
    matches = [group_id for group_id in await self._all_group_ids() if compact_id(group_id).startswith(prefix)]
    if len(matches) == 1:
      return matches[0]
    if not matches:
      logger.warning("No group matches partial id %r; dropping its pairs", raw_group_id)
    else:
      logger.warning("Partial group id %r is ambiguous (%d matches); dropping its pairs", raw_group_id, len(matches))
    return None

  async def _all_group_ids(self) -> Sequence[str]:
    if self._group_ids is None:
      self._group_ids = await self._group_repo.list_group_ids()
    return self._group_ids

  async def _ordered_records(self, group_id: str) -> list[GroupRecordRef]:
    refs: list[GroupRecordRef] = []
    offset = 0
    while True:
      page = await self._content_repo.list_group_records(group_id, offset=offset, limit=self._page_size)
      refs.extend(page)
      if len(page) < self._page_size:
        return refs
      offset += self._page_size

  async def _record_slots(self, group_id: str) -> tuple[dict[int, str], int]:
    """Return `{ordinal: record_id}` for a group plus its record count."""
    refs = await self._ordered_records(group_id)
    slots = {ref.sequence_number: ref.record_id for ref in refs if ref.sequence_number is not None}
    for position, ref in enumerate(refs, start=1):
      if ref.sequence_number is None:
        slots.setdefault(position, ref.record_id)
    return slots, len(refs)
