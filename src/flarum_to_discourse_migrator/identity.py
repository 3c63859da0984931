"""Source id to target id mapping, the re-entrancy guard of the whole migration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

from .exceptions import DuplicateMappingError

if TYPE_CHECKING:
    from .models import EntityKind
    from .protocols import MappingStore

logger: logging.Logger = logging.getLogger(__name__)

_POST_ID_BITS: Final[int] = 32
_POST_ID_MASK: Final[int] = (1 << _POST_ID_BITS) - 1


def reaction_key(user_id: int, post_id: int) -> int:
    """Target identity of a reaction: a user reacts to a post at most once."""
    if post_id > _POST_ID_MASK:
        msg = f"Post id {post_id} does not fit in a reaction key"
        raise ValueError(msg)
    return (user_id << _POST_ID_BITS) | post_id


def split_reaction_key(key: int) -> tuple[int, int]:
    """Return (user_id, post_id) of a reaction key."""
    return key >> _POST_ID_BITS, key & _POST_ID_MASK


class InMemoryMappingStore:
    """MappingStore that lives only as long as the process. Used for tests and dry runs."""

    def __init__(self) -> None:
        self._mappings: dict[str, dict[int, int]] = {}

    def load(self, kind: EntityKind) -> dict[int, int]:
        return dict(self._mappings.get(kind, {}))

    def save(self, kind: EntityKind, source_id: int, target_id: int) -> None:
        self._mappings.setdefault(kind, {})[source_id] = target_id


class IdentityMapper:
    """Bidirectional lookup between source ids and target ids, per entity kind.

    Every kind is loaded from the store once, on first use, and kept in memory
    in both directions. register() writes through to the store. Mappings are
    never changed or removed once registered.

    The mapping is a strict injection per kind: a (kind, source_id) pair is
    registered at most once, and no two source ids of one kind share a target id.

    Not safe for concurrent writers; register() would need to become an atomic
    check-and-insert in the store if discussions were ever migrated in parallel.
    """

    _store: MappingStore
    _forward: dict[str, dict[int, int]]
    _reverse: dict[str, dict[int, int]]

    def __init__(self, store: MappingStore) -> None:
        self._store = store
        self._forward = {}
        self._reverse = {}

    def _ensure_loaded(self, kind: EntityKind) -> None:
        if kind in self._forward:
            return
        forward = dict(self._store.load(kind))
        reverse: dict[int, int] = {}
        for source_id, target_id in forward.items():
            if target_id in reverse:
                # Already broken in the store; keep the first and make it visible
                logger.warning(
                    f"Stored {kind} mappings share target id {target_id}: "
                    f"source ids {reverse[target_id]} and {source_id}"
                )
                continue
            reverse[target_id] = source_id
        self._forward[kind] = forward
        self._reverse[kind] = reverse
        logger.debug(f"Loaded {len(forward)} {kind} mappings")

    def lookup(self, kind: EntityKind, source_id: int | None) -> int | None:
        """Return the target id for a source id, or None if it is not mapped."""
        if source_id is None:
            return None
        self._ensure_loaded(kind)
        return self._forward[kind].get(source_id)

    def reverse_lookup(self, kind: EntityKind, target_id: int) -> int | None:
        """Return the source id that was mapped to a target id, or None."""
        self._ensure_loaded(kind)
        return self._reverse[kind].get(target_id)

    def is_mapped(self, kind: EntityKind, source_id: int) -> bool:
        return self.lookup(kind, source_id) is not None

    def register(self, kind: EntityKind, source_id: int, target_id: int) -> None:
        """Record a new mapping.

        Raises:
            DuplicateMappingError: If source_id is already mapped, or target_id is
                already mapped from another source id of the same kind.
        """
        self._ensure_loaded(kind)
        existing = self._forward[kind].get(source_id)
        if existing is not None:
            msg = f"{kind} {source_id} is already mapped to {existing}"
            raise DuplicateMappingError(msg)
        owner = self._reverse[kind].get(target_id)
        if owner is not None:
            msg = f"{kind} target id {target_id} is already mapped from source id {owner}"
            raise DuplicateMappingError(msg)

        self._store.save(kind, source_id, target_id)
        self._forward[kind][source_id] = target_id
        self._reverse[kind][target_id] = source_id

    def count(self, kind: EntityKind) -> int:
        self._ensure_loaded(kind)
        return len(self._forward[kind])
