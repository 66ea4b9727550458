"""Last-writer-wins merge of a local snapshot with the remote one.

Each collection is merged on its own, keyed by entity id:

- the remote entities seed the result;
- a local entity with an unknown id is added;
- a local entity whose id is already there replaces the remote copy when its
  version stamp is newer or equal. Equal stamps keep the local copy, since it is
  the one the user is editing.

Nothing is dropped: every id present on either side is in the output exactly
once. Deletions are not tracked, so an entity deleted locally comes back if
the remote still has it.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from core.exceptions import MalformedEntityError
from core.models import COLLECTION_NAMES, Record, Snapshot


@dataclass
class CollectionCounts:
    local_only: int = 0
    remote_only: int = 0
    merged: int = 0


@dataclass
class MergeResult:
    merged: Snapshot
    local_only: int = 0
    remote_only: int = 0
    merged_count: int = 0
    per_collection: Dict[str, CollectionCounts] = field(default_factory=dict)

    def summary(self) -> str:
        return (f"{self.local_only} local only, {self.remote_only} remote only, "
                f"{self.merged_count} merged")


def _checked_id(collection: str, entity: Record) -> str:
    entity_id = getattr(entity, "id", None)
    if not entity_id:
        raise MalformedEntityError(collection, entity)
    return entity_id


def merge_collection(collection: str, local: Sequence[Record],
                     remote: Optional[Sequence[Record]]) -> Tuple[List[Record], CollectionCounts]:
    counts = CollectionCounts()
    by_id: Dict[str, Record] = {}
    for entity in remote or ():
        by_id[_checked_id(collection, entity)] = entity

    seen_in_both = set()
    for entity in local:
        entity_id = _checked_id(collection, entity)
        existing = by_id.get(entity_id)
        if existing is None:
            by_id[entity_id] = entity
            counts.local_only += 1
            continue
        if entity.version_stamp() >= existing.version_stamp():
            by_id[entity_id] = entity
        seen_in_both.add(entity_id)

    counts.merged = len(seen_in_both)
    counts.remote_only = len({_checked_id(collection, e) for e in remote or ()} - seen_in_both)
    return list(by_id.values()), counts


def merge_snapshots(local: Snapshot, remote: Optional[Snapshot]) -> MergeResult:
    """Merge two snapshots. Pure and deterministic; `remote=None` means "nothing remote yet"."""
    merged = Snapshot(user_id=local.user_id, updated_at=local.updated_at)
    if remote is not None and remote.updated_at is not None:
        if merged.updated_at is None or remote.updated_at > merged.updated_at:
            merged.updated_at = remote.updated_at

    result = MergeResult(merged=merged)
    for name in COLLECTION_NAMES:
        items, counts = merge_collection(
            name, local.collection(name), remote.collection(name) if remote is not None else None)
        result.merged = result.merged.with_collection(name, items)
        result.per_collection[name] = counts
        result.local_only += counts.local_only
        result.remote_only += counts.remote_only
        result.merged_count += counts.merged
    return result
