"""
Keyed stores for process-wide state.

All state lives behind `KeyValueStore` so the in-memory backing can be swapped
for a shared external store in multi-instance deployments. `InMemoryStore` is
the single-instance backing: plain dict operations, no locks. That holds only
because every request runs on one event loop and turns for one call arrive
serially.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

import structlog
from pydantic import ValidationError

from src.caller.models import DisputeContext, DisputePayload

logger = structlog.get_logger(__name__)

V = TypeVar("V")


class KeyValueStore(ABC, Generic[V]):
    @abstractmethod
    def get(self, key: str) -> Optional[V]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: V) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> Optional[V]:
        raise NotImplementedError

    @abstractmethod
    def sweep(self, predicate: Callable[[V], bool]) -> int:
        """Delete every value matching `predicate`; returns how many went."""
        raise NotImplementedError

    @abstractmethod
    def values(self) -> List[V]:
        raise NotImplementedError

    @abstractmethod
    def __len__(self) -> int:
        raise NotImplementedError


class InMemoryStore(KeyValueStore[V]):
    def __init__(self) -> None:
        self._data: Dict[str, V] = {}

    def get(self, key: str) -> Optional[V]:
        return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        self._data[key] = value

    def delete(self, key: str) -> Optional[V]:
        return self._data.pop(key, None)

    def sweep(self, predicate: Callable[[V], bool]) -> int:
        doomed = [k for k, v in self._data.items() if predicate(v)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def values(self) -> List[V]:
        return list(self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))


def parse_context_data(dispute_id: str, data: Optional[str]) -> Optional[DisputeContext]:
    """
    Decode the `data` query parameter carried in webhook URLs.

    Returns None when absent or unreadable; a bad payload must never fail a turn.
    """
    if not data:
        return None
    try:
        payload = DisputePayload.model_validate_json(data)
    except ValidationError as e:
        logger.warning(
            "Unreadable dispute data parameter",
            dispute_id=dispute_id,
            error_count=e.error_count(),
        )
        return None
    return DisputeContext(dispute_id=dispute_id, **payload.model_dump())


class DisputeContextStore:
    """Dispute id -> DisputeContext. Never evicted."""

    def __init__(self, store: Optional[KeyValueStore[DisputeContext]] = None):
        self._store: KeyValueStore[DisputeContext] = store if store is not None else InMemoryStore()

    def set_context(self, context: DisputeContext) -> None:
        """Upsert; replaces whatever was stored under the same id."""
        self._store.set(context.dispute_id, context)
        logger.debug("Dispute context stored", dispute_id=context.dispute_id, size=len(self._store))

    def get_context(self, dispute_id: str) -> Optional[DisputeContext]:
        return self._store.get(dispute_id)

    def resolve(self, dispute_id: str, data: Optional[str] = None) -> DisputeContext:
        """
        Context for a webhook turn.

        Order: URL-carried payload (written back to the store), stored record,
        then a generic billing-dispute context.
        """
        carried = parse_context_data(dispute_id, data)
        if carried is not None:
            self.set_context(carried)
            return carried

        stored = self.get_context(dispute_id)
        if stored is not None:
            return stored

        logger.info("No dispute context found, using generic context", dispute_id=dispute_id)
        return DisputeContext.generic(dispute_id)

    def __len__(self) -> int:
        return len(self._store)
