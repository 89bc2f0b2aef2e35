"""
Order lifecycle: permission rules per (variant, event) and post-transition callbacks.

Standard:     pending -> reviewing -> confirmed -> fulfilled -> closed
Reproduction: pending -> in_progress -> work_complete -> fulfilled -> closed
"""
import functools
import logging
from typing import Protocol

from circa.config import settings
from circa.lifecycle import Cascade, Effects, Lifecycle
from circa.models import Item, Order, OrderVariant, SubjectKind, Transition, TransitionMetadata
from circa.readiness import ReadinessAggregator
from circa.store import Session
from circa.transition_log import current_state

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def work_complete(self, order: Order, assignees: list[str], url: str) -> None:
        ...


class ItemPermissions(Protocol):
    async def event_permitted(self, session: Session, item: Item, event: str) -> bool:
        ...


class OrderLifecycle(Lifecycle):
    kind = SubjectKind.ORDER

    def __init__(
        self,
        readiness: ReadinessAggregator,
        items: ItemPermissions,
        notifier: Notifier | None = None,
    ):
        self.readiness = readiness
        self.items = items
        self.notifier = notifier

    async def event_permitted(self, session: Session, order: Order, event: str) -> bool:
        state = await current_state(session, order)
        reproduction = order.variant is OrderVariant.REPRODUCTION

        if event == "review":
            return state in ("pending", "requested")
        if event == "confirm":
            # digital items need an explicit review first
            if not await self.readiness.has_digital_items(session, order):
                return state in ("pending", "reviewing")
            return state == "reviewing"
        if event == "begin_work":
            return reproduction and state == "pending" and await self.readiness.any_item_ready(session, order)
        if event == "complete_work":
            return reproduction and state == "in_progress"
        if event == "fulfill":
            if reproduction:
                return state == "work_complete"
            return state == "confirmed" and await self.readiness.all_items_ready(session, order)
        if event == "activate":
            return state == "fulfilled"
        if event == "close":
            if reproduction:
                return state == "fulfilled"
            return state == "fulfilled" and await self.readiness.order_finished(session, order)
        return False

    async def event_callbacks(
        self, session: Session, order: Order, transition: Transition, effects: Effects
    ) -> None:
        event = transition.event
        if event == "review":
            order.confirmed = False
        elif event == "confirm":
            order.confirmed = True
            await self._order_items(session, order, transition, effects)
        elif event == "complete_work":
            self._notify_work_complete(order, transition.metadata, effects)
        elif event == "close":
            order.open = False

        if event != "close" and not order.open:
            logger.info("Reopening order_id=%s on %s", order.id, event)
            order.open = True
        await session.save_order(order)

    async def _order_items(
        self, session: Session, order: Order, transition: Transition, effects: Effects
    ) -> None:
        """Queue the Item `order` event for every active, eligible member, in item id order."""
        memberships = sorted(
            (m for m in await session.memberships_for_order(order.id) if m.active),
            key=lambda m: m.item_id,
        )
        for membership in memberships:
            # the order is already held, so item locks keep the order-before-item sequence
            await session.lock(SubjectKind.ITEM, membership.item_id)
            item = await session.get_item(membership.item_id)
            if item.obsolete:
                continue
            if not await self.items.event_permitted(session, item, "order"):
                logger.info("Skipping item_id=%s for order_id=%s: order not permitted", item.id, order.id)
                continue
            effects.cascade(Cascade(
                kind=SubjectKind.ITEM,
                subject_id=item.id,
                event="order",
                metadata=TransitionMetadata(order_id=order.id, user_id=transition.user_id),
            ))

    def _notify_work_complete(self, order: Order, metadata: TransitionMetadata, effects: Effects) -> None:
        if self.notifier is None:
            logger.warning("No notifier configured; work-complete notice for order_id=%s dropped", order.id)
            return
        host = metadata.request.host_with_port if metadata.request else settings.app_base_url
        url = f"{host}/#/orders/{order.id}"
        effects.defer(functools.partial(
            self.notifier.work_complete, order.model_copy(deep=True), list(order.assignees), url,
        ))
