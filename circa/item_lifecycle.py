"""
Item lifecycle: movement from the permanent location to where the item is used and back.

Physical: at_permanent_location -> ordered -> in_transit_to_temporary_location
          -> arrived_at_temporary_location -> ready_at_temporary_location
          -> returning_to_permanent_location -> at_permanent_location
Digital:  at_permanent_location -> ordered -> ready_at_use_location -> at_permanent_location

Every transition of an Item with an active membership carries that order's id in its metadata,
so readiness can later be answered per order.
"""
import logging
from datetime import date
from typing import Any

from circa.catalog import CatalogSync
from circa.lifecycle import Cascade, Effects, Lifecycle
from circa.models import Item, ItemMembership, Order, SubjectKind, Transition, TransitionMetadata
from circa.store import Session
from circa.transition_log import current_state, history, last_transition

logger = logging.getLogger(__name__)

# state -> (action, where the location id comes from)
MOVEMENTS = {
    "in_transit_to_temporary_location": ("depart", "permanent"),
    "arrived_at_temporary_location": ("arrive", "metadata"),
    "returning_to_permanent_location": ("depart", "metadata"),
    "at_permanent_location": ("arrive", "permanent"),
}


class InvalidObsoleteRequest(Exception):
    """Raised when an item cannot be marked obsolete. Nothing is changed."""


class ItemLifecycle(Lifecycle):
    kind = SubjectKind.ITEM

    def __init__(self, catalog: CatalogSync | None = None):
        self.catalog = catalog

    async def resolve_metadata(
        self, session: Session, item_id: int, metadata: TransitionMetadata
    ) -> TransitionMetadata:
        """Fill in order_id from the item's active membership when the caller left it out."""
        if metadata.order_id is not None:
            return metadata
        active_ids = {m.order_id for m in await session.memberships_for_item(item_id) if m.active}
        if not active_ids:
            return metadata
        item = await session.get_item(item_id)
        latest = await last_transition(session, item)
        if latest is not None and latest.order_id in active_ids:
            return metadata.scoped_to(latest.order_id)
        if len(active_ids) == 1:
            return metadata.scoped_to(active_ids.pop())
        return metadata

    async def lock(self, session: Session, item_id: int, metadata: TransitionMetadata) -> None:
        # orders are always locked before their items
        if metadata.order_id is not None:
            await session.lock(SubjectKind.ORDER, metadata.order_id)
        await session.lock(SubjectKind.ITEM, item_id)

    async def event_permitted(self, session: Session, item: Item, event: str) -> bool:
        if item.obsolete:
            return False
        state = await current_state(session, item)

        if event == "order":
            if item.is_digital:
                return state == "at_permanent_location"
            return state in ("at_permanent_location", "returning_to_permanent_location")
        if event == "deliver_to_use_location":
            return item.is_digital and state == "ordered"
        if event == "receive_at_permanent_location":
            if item.is_digital:
                return state == "ready_at_use_location"
            return state == "returning_to_permanent_location"
        if item.is_digital:
            return False
        if event == "transfer":
            return state == "ordered"
        if event == "receive_at_temporary_location":
            return state in ("ordered", "in_transit_to_temporary_location")
        if event == "prepare_at_temporary_location":
            return state == "arrived_at_temporary_location"
        if event == "send_to_permanent_location":
            return state in ("arrived_at_temporary_location", "ready_at_temporary_location")
        return False

    async def event_callbacks(
        self, session: Session, item: Item, transition: Transition, effects: Effects
    ) -> None:
        event = transition.event
        metadata = transition.metadata
        order_id = metadata.order_id

        if event == "order":
            if order_id is not None:
                await self.activate_for_order(session, item, order_id)
        elif event == "receive_at_temporary_location":
            location_id = metadata.location_id
            if location_id is None and order_id is not None:
                location_id = (await session.get_order(order_id)).location_id
            item.current_location_id = location_id
            await self._cascade_to_order(session, "fulfill", metadata, effects)
        elif event in ("prepare_at_temporary_location", "deliver_to_use_location"):
            await self._cascade_to_order(session, "fulfill", metadata, effects)
        elif event == "send_to_permanent_location":
            item.current_location_id = None
        elif event == "receive_at_permanent_location":
            item.current_location_id = item.permanent_location_id
            await self._cascade_to_order(session, "close", metadata, effects)
        await session.save_item(item)

    async def _cascade_to_order(
        self, session: Session, event: str, metadata: TransitionMetadata, effects: Effects
    ) -> None:
        """Promote a standard order once its items allow it. Reproduction orders move by hand."""
        if metadata.order_id is None:
            return
        order = await session.get_order(metadata.order_id)
        if order.reproduction:
            return
        effects.cascade(Cascade(SubjectKind.ORDER, order.id, event, metadata, strict=False))

    async def mark_as_obsolete(self, session: Session, item: Item) -> None:
        """Administrative, one-way: not a transition. Removes the item from all readiness checks."""
        if item.source != "archivesspace":
            raise InvalidObsoleteRequest(
                f"Item {item.id} could not be marked as obsolete: "
                "this only applies to items created from ArchivesSpace records."
            )
        if self.catalog is None or not await self.catalog.eligible_for_obsolete(item):
            raise InvalidObsoleteRequest(
                f"Item {item.id} could not be marked as obsolete because one or more of the "
                "ArchivesSpace records associated with it still match its container."
            )
        item.obsolete = True
        item.current_location_id = None
        item.permanent_location_id = None
        await session.save_item(item)
        for membership in await session.memberships_for_item(item.id):
            membership.active = False
            await session.save_membership(membership)

    async def _set_active(self, session: Session, item: Item, order_id: int, active: bool) -> None:
        for membership in await session.memberships_for_item(item.id):
            if membership.order_id == order_id:
                membership.active = active
                await session.save_membership(membership)

    async def activate_for_order(self, session: Session, item: Item, order_id: int) -> None:
        await self._set_active(session, item, order_id, True)

    async def deactivate_for_order(self, session: Session, item: Item, order_id: int) -> None:
        await self._set_active(session, item, order_id, False)

    async def active_for_order(self, session: Session, item: Item, order_id: int) -> bool:
        return any(
            m.active and m.order_id == order_id for m in await session.memberships_for_item(item.id)
        )

    async def active_order_id(self, session: Session, item: Item) -> int | None:
        """The order tied to the item's last transition is treated as its active order."""
        latest = await last_transition(session, item)
        return latest.order_id if latest else None

    async def _orders(self, session: Session, memberships: list[ItemMembership]) -> list[Order]:
        return [await session.get_order(m.order_id) for m in memberships]

    async def open_orders(self, session: Session, item: Item) -> list[Order]:
        orders = await self._orders(session, await session.memberships_for_item(item.id))
        return [order for order in orders if order.open]

    async def has_open_orders(self, session: Session, item: Item) -> bool:
        return bool(await self.open_orders(session, item))

    async def active_order_ids(self, session: Session, item: Item) -> list[int]:
        active = [m for m in await session.memberships_for_item(item.id) if m.active]
        return [order.id for order in await self._orders(session, active) if order.open]

    async def has_confirmed_order(self, session: Session, item: Item) -> bool:
        return any(order.confirmed for order in await self.open_orders(session, item))

    async def next_scheduled_use_date(self, session: Session, item: Item) -> date | None:
        dates = [o.access_date_start for o in await self.open_orders(session, item) if o.access_date_start]
        return min(dates) if dates else None

    async def movement_history(self, session: Session, item: Item) -> list[dict[str, Any]]:
        rows = []
        for transition in await history(session, item):
            movement = MOVEMENTS.get(transition.to_state)
            if movement is None:
                continue
            action, location_source = movement
            if location_source == "permanent":
                location_id = item.permanent_location_id
            else:
                location_id = transition.metadata.location_id
            rows.append({
                "state_transition_id": transition.id,
                "datetime": transition.created_at,
                "order_id": transition.order_id,
                "user_id": transition.user_id,
                "location_id": location_id,
                "action": action,
            })
        return rows

    async def event_history(self, session: Session, item: Item) -> list[dict[str, Any]]:
        return [
            {
                "event": t.event.replace("_", " "),
                "datetime": t.created_at,
                "order_id": t.order_id,
                "user_id": t.user_id,
            }
            for t in await history(session, item)
        ]
