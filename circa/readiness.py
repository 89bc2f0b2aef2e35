"""
Order-level readiness derived from the states of its member Items.

Every Item query here is scoped to one order: an Item can serve several orders over its
lifetime, so only transitions whose metadata carries that order's id count.
Obsolete Items never take part.
"""
from circa.models import Item, Order
from circa.state_config import ITEM
from circa.store import Session
from circa.transition_log import last_transition_for_order, state_reached, state_reached_for_order

READY_AT_TEMPORARY_LOCATION = "ready_at_temporary_location"
READY_AT_USE_LOCATION = "ready_at_use_location"


def ready_state(item: Item) -> str:
    return READY_AT_USE_LOCATION if item.is_digital else READY_AT_TEMPORARY_LOCATION


def at_temporary_location_for_order(item: Item, order: Order) -> bool:
    return order.location_id is not None and item.current_location_id == order.location_id


class ReadinessAggregator:

    async def member_items(self, session: Session, order: Order) -> list[Item]:
        memberships = await session.memberships_for_order(order.id)
        return [await session.get_item(m.item_id) for m in memberships]

    async def has_digital_items(self, session: Session, order: Order) -> bool:
        return any(item.is_digital for item in await self.member_items(session, order))

    async def item_ready(self, session: Session, order: Order, item: Item) -> bool:
        if await state_reached_for_order(session, item, ready_state(item), order.id):
            return True
        return at_temporary_location_for_order(item, order)

    async def num_items_ready(self, session: Session, order: Order) -> int:
        ready = 0
        for item in await self.member_items(session, order):
            if not item.obsolete and await self.item_ready(session, order, item):
                ready += 1
        return ready

    async def all_items_ready(self, session: Session, order: Order) -> bool:
        """False when no eligible Item exists; otherwise stops at the first Item not ready."""
        eligible = [item for item in await self.member_items(session, order) if not item.obsolete]
        if not eligible:
            return False
        for item in eligible:
            if not await self.item_ready(session, order, item):
                return False
        return True

    async def any_item_ready(self, session: Session, order: Order) -> bool:
        """True when the order has no Items at all, so reproduction work can start empty."""
        items = await self.member_items(session, order)
        if not items:
            return True
        for item in items:
            if item.obsolete:
                continue
            if await state_reached_for_order(session, item, ready_state(item), order.id):
                return True
        return False

    async def order_finished(self, session: Session, order: Order) -> bool:
        if not await state_reached(session, order, "fulfilled"):
            return False
        active = [m for m in await session.memberships_for_order(order.id) if m.active]
        for membership in active:
            item = await session.get_item(membership.item_id)
            if item.obsolete:
                continue
            latest = await last_transition_for_order(session, item, order.id)
            if latest is None or latest.to_state != ITEM.final_state:
                return False
        return True
