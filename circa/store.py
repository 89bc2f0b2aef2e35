"""
Persistence contract for subjects, memberships and the append-only transition log.

A Session is one unit of work. Reads inside a session see that session's own uncommitted
writes. Subject locks taken with `lock` are held until the session ends, and are re-entrant
within it. MemoryStore implements the contract in process; circa.db.PostgresStore backs it
with asyncpg.
"""
import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

from circa.config import settings
from circa.models import Item, ItemMembership, Order, Subject, SubjectKind, Transition

logger = logging.getLogger(__name__)


class SubjectNotFound(Exception):
    """Raised when an order or item id does not exist in the store."""
    def __init__(self, kind: SubjectKind, subject_id: int):
        self.kind = kind
        self.subject_id = subject_id
        super().__init__(f"{kind.value} {subject_id} not found")


class LockTimeout(Exception):
    """Raised when a subject lock is not acquired within settings.lock_timeout_seconds."""
    def __init__(self, kind: SubjectKind, subject_id: int):
        self.kind = kind
        self.subject_id = subject_id
        super().__init__(f"timed out waiting for lock on {kind.value} {subject_id}")


class Session(ABC):

    @abstractmethod
    async def lock(self, kind: SubjectKind, subject_id: int) -> None:
        ...

    @abstractmethod
    async def get_order(self, order_id: int) -> Order:
        ...

    @abstractmethod
    async def get_item(self, item_id: int) -> Item:
        ...

    @abstractmethod
    async def add_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def add_item(self, item: Item) -> Item:
        ...

    @abstractmethod
    async def save_order(self, order: Order) -> None:
        ...

    @abstractmethod
    async def save_item(self, item: Item) -> None:
        ...

    @abstractmethod
    async def memberships_for_order(self, order_id: int) -> list[ItemMembership]:
        ...

    @abstractmethod
    async def memberships_for_item(self, item_id: int) -> list[ItemMembership]:
        ...

    @abstractmethod
    async def save_membership(self, membership: ItemMembership) -> None:
        """Insert or update the membership identified by (order_id, item_id)."""

    @abstractmethod
    async def transitions(self, kind: SubjectKind, subject_id: int) -> list[Transition]:
        """Full history for one subject, oldest first."""

    @abstractmethod
    async def transitions_for_order(self, item_id: int, order_id: int) -> list[Transition]:
        """Item history restricted to transitions whose metadata carries order_id, oldest first."""

    @abstractmethod
    async def append_transition(self, transition: Transition) -> Transition:
        """Persist a new transition and return it with its id assigned."""

    async def get_subject(self, kind: SubjectKind, subject_id: int) -> Subject:
        if kind is SubjectKind.ORDER:
            return await self.get_order(subject_id)
        return await self.get_item(subject_id)


class Store(ABC):

    @abstractmethod
    def session(self) -> "AsyncIterator[Session]":
        """Async context manager yielding a session for reads and registration writes."""

    @abstractmethod
    def transaction(self) -> "AsyncIterator[Session]":
        """Async context manager yielding a session whose writes commit together or not at all."""


class MemorySession(Session):
    """Works on copies of the canonical records and writes them back on commit."""

    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._orders: dict[int, Order] = {}
        self._items: dict[int, Item] = {}
        self._memberships: dict[tuple[int, int], ItemMembership] = {}
        self._new: list[Order | Item] = []
        self._pending: list[Transition] = []
        self._held: list[tuple[SubjectKind, int]] = []
        self._dirty: set[tuple[str, object]] = set()

    async def lock(self, kind: SubjectKind, subject_id: int) -> None:
        key = (kind, subject_id)
        if key in self._held:
            return
        lock = self._store._locks[key]
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._store.lock_timeout)
        except asyncio.TimeoutError:
            raise LockTimeout(kind, subject_id)
        self._held.append(key)
        # re-read under the lock
        cache = self._orders if kind is SubjectKind.ORDER else self._items
        if (kind.value, subject_id) not in self._dirty:
            cache.pop(subject_id, None)
        position = 0 if kind is SubjectKind.ORDER else 1
        for membership_key in list(self._memberships):
            if membership_key[position] == subject_id and ("membership", membership_key) not in self._dirty:
                del self._memberships[membership_key]

    async def get_order(self, order_id: int) -> Order:
        if order_id not in self._orders:
            canonical = self._store.orders.get(order_id)
            if canonical is None:
                raise SubjectNotFound(SubjectKind.ORDER, order_id)
            self._orders[order_id] = canonical.model_copy(deep=True)
        return self._orders[order_id]

    async def get_item(self, item_id: int) -> Item:
        if item_id not in self._items:
            canonical = self._store.items.get(item_id)
            if canonical is None:
                raise SubjectNotFound(SubjectKind.ITEM, item_id)
            self._items[item_id] = canonical.model_copy(deep=True)
        return self._items[item_id]

    async def add_order(self, order: Order) -> Order:
        self._new.append(order)
        self._orders[order.id] = order
        self._dirty.add(("order", order.id))
        return order

    async def add_item(self, item: Item) -> Item:
        self._new.append(item)
        self._items[item.id] = item
        self._dirty.add(("item", item.id))
        return item

    async def save_order(self, order: Order) -> None:
        self._orders[order.id] = order
        self._dirty.add(("order", order.id))

    async def save_item(self, item: Item) -> None:
        self._items[item.id] = item
        self._dirty.add(("item", item.id))

    def _membership(self, canonical: ItemMembership) -> ItemMembership:
        key = (canonical.order_id, canonical.item_id)
        if key not in self._memberships:
            self._memberships[key] = canonical.model_copy()
        return self._memberships[key]

    def _all_memberships(self) -> list[ItemMembership]:
        merged = [self._membership(m) for m in self._store.memberships.values()]
        seen = set(self._store.memberships)
        merged.extend(m for key, m in self._memberships.items() if key not in seen)
        return merged

    async def memberships_for_order(self, order_id: int) -> list[ItemMembership]:
        return [m for m in self._all_memberships() if m.order_id == order_id]

    async def memberships_for_item(self, item_id: int) -> list[ItemMembership]:
        return [m for m in self._all_memberships() if m.item_id == item_id]

    async def save_membership(self, membership: ItemMembership) -> None:
        key = (membership.order_id, membership.item_id)
        self._memberships[key] = membership
        self._dirty.add(("membership", key))

    def _history(self) -> list[Transition]:
        return self._store.transitions + self._pending

    async def transitions(self, kind: SubjectKind, subject_id: int) -> list[Transition]:
        return [t for t in self._history() if t.subject_kind is kind and t.subject_id == subject_id]

    async def transitions_for_order(self, item_id: int, order_id: int) -> list[Transition]:
        return [
            t for t in self._history()
            if t.subject_kind is SubjectKind.ITEM and t.subject_id == item_id and t.order_id == order_id
        ]

    async def append_transition(self, transition: Transition) -> Transition:
        stored = transition.model_copy(update={"id": next(self._store._transition_ids)})
        self._pending.append(stored)
        return stored

    def commit(self) -> None:
        store = self._store
        for record in self._new:
            target = store.orders if isinstance(record, Order) else store.items
            target[record.id] = record
        _write_back(store.orders, self._orders, self._dirty, "order")
        _write_back(store.items, self._items, self._dirty, "item")
        _write_back(store.memberships, self._memberships, self._dirty, "membership")
        store.transitions.extend(self._pending)
        self._new.clear()
        self._pending.clear()
        self._dirty.clear()

    def release(self) -> None:
        while self._held:
            self._store._locks[self._held.pop()].release()


def _write_back(canonical: dict, working: dict, dirty: set, label: str) -> None:
    """Copy saved field values onto the canonical records so callers holding them see the update."""
    for key, copy in working.items():
        if (label, key) not in dirty:
            continue
        record = canonical.get(key)
        if record is None:
            canonical[key] = copy
        elif record is not copy:
            for name in type(copy).model_fields:
                setattr(record, name, getattr(copy, name))


class MemoryStore(Store):

    def __init__(self, lock_timeout: float | None = None):
        self.orders: dict[int, Order] = {}
        self.items: dict[int, Item] = {}
        self.memberships: dict[tuple[int, int], ItemMembership] = {}
        self.transitions: list[Transition] = []
        self.lock_timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout
        self._locks: dict[tuple[SubjectKind, int], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._transition_ids = itertools.count(1)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        async with self.transaction() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Session]:
        session = MemorySession(self)
        try:
            yield session
            session.commit()
        except BaseException:
            logger.debug("Rolling back %d pending transition(s)", len(session._pending))
            raise
        finally:
            session.release()
