"""
Entity Store — In-memory, insertion-ordered collection of records keyed by id.

The store is a pure cache: it does no I/O and has no opinion about what is
authoritative. Listeners are called synchronously after every mutation so
derived views can be recomputed.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Protocol, TypeVar

logger = logging.getLogger("taskify.sync.store")


class Identified(Protocol):
    @property
    def id(self) -> str: ...


E = TypeVar("E", bound=Identified)

StoreListener = Callable[["EntityStore"], None]


class EntityStore(Generic[E]):
    """
    Ordered records of one type.

    Order is insertion order; ``upsert`` of a known id replaces the record in
    place. ``replace_all`` swaps the whole set in one step.
    """

    def __init__(self, name: str = "entities", entities: Optional[Iterable[E]] = None):
        self.name = name
        self._items: Dict[str, E] = {}
        self._listeners: List[StoreListener] = []
        self._version = 0
        if entities is not None:
            self._items = self._index(entities)

    @staticmethod
    def _index(entities: Iterable[E]) -> Dict[str, E]:
        items: Dict[str, E] = {}
        for entity in entities:
            # Later duplicates overwrite earlier ones but keep the first position.
            items[entity.id] = entity
        return items

    # ── Queries ──

    def list(self) -> List[E]:
        return list(self._items.values())

    def get_by_id(self, entity_id: str) -> Optional[E]:
        return self._items.get(entity_id)

    def ids(self) -> List[str]:
        return list(self._items.keys())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._items

    def __iter__(self) -> Iterator[E]:
        return iter(self.list())

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every mutation."""
        return self._version

    # ── Mutations ──

    def replace_all(self, entities: Iterable[E]) -> None:
        self._items = self._index(entities)
        self._changed("replace_all")

    def upsert(self, entity: E) -> None:
        self._items[entity.id] = entity
        self._changed("upsert")

    def remove(self, entity_id: str) -> bool:
        """Remove a record. Returns False (not an error) when it was absent."""
        if self._items.pop(entity_id, None) is None:
            return False
        self._changed("remove")
        return True

    def clear(self) -> None:
        self.replace_all([])

    # ── Change notification ──

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, operation: str) -> None:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception(f"Store listener failed after {operation} on '{self.name}'")
