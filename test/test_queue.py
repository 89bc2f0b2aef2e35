import json

from circa import Order, OrderVariant
from circa import queue
from circa.config import settings
from circa.engine import TransitionEngine
from conftest import USER


class FakeRedis:
    def __init__(self):
        self.lists: dict[str, list[str]] = {}

    async def lpush(self, key: str, value: str) -> int:
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])


async def test_push_to_redis_when_no_sqs(monkeypatch):
    fake = FakeRedis()

    async def get_fake_redis():
        return fake

    monkeypatch.setattr(settings, "sqs_queue_url", None)
    monkeypatch.setattr(queue, "get_redis", get_fake_redis)
    await queue.push_to_queue({"type": "work_complete", "order_id": 1})

    assert json.loads(fake.lists[settings.notification_queue_key][0]) == {"type": "work_complete", "order_id": 1}


async def test_push_to_sqs_when_configured(monkeypatch):
    sent = []

    async def fake_send(body):
        sent.append(body)

    monkeypatch.setattr(settings, "sqs_queue_url", "https://sqs.us-east-1.amazonaws.com/123/notifications")
    monkeypatch.setattr(queue, "send_message", fake_send)
    await queue.push_to_queue({"order_id": 1})
    assert sent == [{"order_id": 1}]


async def test_queue_notifier_one_message_per_assignee(monkeypatch):
    bodies = []

    async def capture(body):
        bodies.append(body)

    monkeypatch.setattr(queue, "push_to_queue", capture)
    order = Order(id=5, variant=OrderVariant.REPRODUCTION)
    await queue.QueueNotifier().work_complete(order, ["a@example.org", "b@example.org"], "http://x/#/orders/5")

    assert [b["assignee"] for b in bodies] == ["a@example.org", "b@example.org"]
    assert all(b["type"] == queue.WORK_COMPLETE and b["order_id"] == 5 for b in bodies)
    assert bodies[0]["url"] == "http://x/#/orders/5"
    assert set(bodies[0]) == {"type", "order_id", "assignee", "url"}


async def test_queue_notifier_without_assignees(monkeypatch):
    bodies = []

    async def capture(body):
        bodies.append(body)

    monkeypatch.setattr(queue, "push_to_queue", capture)
    await queue.QueueNotifier().work_complete(Order(id=5), [], "http://x/#/orders/5")
    assert bodies == []


async def test_engine_enqueues_on_complete_work(store, monkeypatch):
    bodies = []

    async def capture(body):
        bodies.append(body)

    monkeypatch.setattr(queue, "push_to_queue", capture)
    engine = TransitionEngine(store, notifier=queue.QueueNotifier())
    order = await engine.register_order(Order(id=5, variant=OrderVariant.REPRODUCTION, assignees=["a@example.org"]))
    await engine.trigger_or_raise(order, "begin_work", USER)
    await engine.trigger_or_raise(order, "complete_work", USER)

    assert len(bodies) == 1
    assert bodies[0]["url"].endswith("/#/orders/5")
