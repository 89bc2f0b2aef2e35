"""
Hand work-complete notifications to a queue for delivery elsewhere.
Backend: Redis (LPUSH) or AWS SQS when CIRCA_SQS_QUEUE_URL is set.
"""
import json
import logging

from circa.config import settings
from circa.metrics import notifications_enqueued_total
from circa.models import Order
from circa.redis_client import get_redis
from circa.sqs_client import send_message

logger = logging.getLogger(__name__)

WORK_COMPLETE = "work_complete"


def _make_body(
    order: Order,
    assignee: str,
    url: str,
) -> dict:
    return {
        "type": WORK_COMPLETE,
        "order_id": order.id,
        "assignee": assignee,
        "url": url,
    }


async def push_to_queue(body: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(settings.notification_queue_key, json.dumps(body))


class QueueNotifier:
    """Notifier that enqueues one message per assignee. Delivery is the consumer's concern."""

    async def work_complete(self, order: Order, assignees: list[str], url: str) -> None:
        if not assignees:
            logger.info("order_id=%s work complete; no assignees to notify", order.id)
            return
        for assignee in assignees:
            await push_to_queue(_make_body(order, assignee, url))
            notifications_enqueued_total.inc()
        logger.info("Queued work-complete notice for order_id=%s to %d assignee(s)", order.id, len(assignees))
