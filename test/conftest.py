"""
Shared fixtures: an in-memory store, an engine wired to fake collaborators, and subject factories.
"""
import pytest

from circa import Item, MemoryStore, Order, TransitionEngine
from circa.config import configure_logging

configure_logging()

USER = {"user_id": 7}
ORDER_LOCATION = 100
PERMANENT_LOCATION = 1


class FakeNotifier:
    def __init__(self):
        self.calls: list[tuple[int, list[str], str]] = []

    async def work_complete(self, order: Order, assignees: list[str], url: str) -> None:
        self.calls.append((order.id, assignees, url))


class FakeCatalog:
    def __init__(self, eligible: bool = True):
        self.eligible = eligible
        self.checked: list[int] = []

    async def eligible_for_obsolete(self, item: Item) -> bool:
        self.checked.append(item.id)
        return self.eligible


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(lock_timeout=1.0)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def engine(store, notifier, catalog) -> TransitionEngine:
    return TransitionEngine(store, notifier=notifier, catalog=catalog)


@pytest.fixture
def make_item(engine):
    async def _make(item_id: int, **fields) -> Item:
        fields.setdefault("permanent_location_id", PERMANENT_LOCATION)
        return await engine.register_item(Item(id=item_id, **fields))
    return _make


@pytest.fixture
def make_order(engine):
    async def _make(order_id: int = 1, items: tuple[Item, ...] = (), **fields) -> Order:
        fields.setdefault("location_id", ORDER_LOCATION)
        order = await engine.register_order(Order(id=order_id, **fields))
        for item in items:
            await engine.add_item_to_order(order, item)
        return order
    return _make
