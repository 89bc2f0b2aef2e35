"""
Transition engine shared by Orders and Items.

trigger() runs as one unit in a single store transaction: lock subject, check permission,
append transition, run callbacks, then drain the cascade queue the callbacks filled.
Any exception rolls the whole unit back. Deferred effects (notifications) run after commit.
"""
import logging
from datetime import date
from typing import Any, Awaitable, Callable

from circa import transition_log
from circa.catalog import CatalogSync
from circa.item_lifecycle import ItemLifecycle
from circa.lifecycle import Effects, Lifecycle
from circa.metrics import items_marked_obsolete_total, transitions_rejected_total, transitions_total
from circa.models import Item, ItemMembership, Order, Subject, SubjectKind, Transition, TransitionMetadata
from circa.order_lifecycle import Notifier, OrderLifecycle
from circa.readiness import ReadinessAggregator
from circa.state_config import config_for
from circa.store import Session, Store

logger = logging.getLogger(__name__)

MetadataArg = TransitionMetadata | dict[str, Any]


class TransitionNotPermitted(Exception):
    """Raised by trigger_or_raise (and strict cascades) when the event is not permitted."""
    def __init__(self, kind: SubjectKind, subject_id: int, event: str, current_state: str):
        self.kind = kind
        self.subject_id = subject_id
        self.event = event
        self.current_state = current_state
        super().__init__(f"{event} not permitted for {kind.value} {subject_id} in state {current_state}")


class TransitionEngine:

    def __init__(
        self,
        store: Store,
        notifier: Notifier | None = None,
        catalog: CatalogSync | None = None,
    ):
        self.store = store
        self.readiness = ReadinessAggregator()
        self.items = ItemLifecycle(catalog)
        self.orders = OrderLifecycle(self.readiness, self.items, notifier)
        self._lifecycles: dict[SubjectKind, Lifecycle] = {
            SubjectKind.ORDER: self.orders,
            SubjectKind.ITEM: self.items,
        }

    # --- registration ---

    async def register_order(self, order: Order) -> Order:
        # reproduction orders have no confirm step
        if order.reproduction:
            order = order.model_copy(update={"confirmed": True})
        async with self.store.transaction() as session:
            return await session.add_order(order)

    async def register_item(self, item: Item) -> Item:
        if item.current_location_id is None:
            item.current_location_id = item.permanent_location_id
        async with self.store.transaction() as session:
            return await session.add_item(item)

    async def add_item_to_order(self, order: Order, item: Item, active: bool = True) -> ItemMembership:
        membership = ItemMembership(order_id=order.id, item_id=item.id, active=active)
        async with self.store.transaction() as session:
            await session.lock(SubjectKind.ORDER, order.id)
            await session.lock(SubjectKind.ITEM, item.id)
            await session.save_membership(membership)
        return membership

    # --- triggering ---

    async def trigger(self, subject: Subject, event: str, metadata: MetadataArg) -> Transition | None:
        """Apply `event` if permitted; otherwise record nothing and return None."""
        return await self._trigger(subject, event, metadata, strict=False)

    async def trigger_or_raise(self, subject: Subject, event: str, metadata: MetadataArg) -> Transition:
        return await self._trigger(subject, event, metadata, strict=True)

    async def fulfill_if_items_ready(self, order: Order, metadata: MetadataArg) -> Transition | None:
        if order.reproduction:
            return None
        if "fulfill" not in await self.available_events(order):
            return None
        if not await self._read(self.readiness.all_items_ready, order):
            return None
        return await self.trigger(order, "fulfill", metadata)

    async def _trigger(self, subject: Subject, event: str, metadata: MetadataArg, strict: bool) -> Transition | None:
        metadata = TransitionMetadata.coerce(metadata)
        effects = Effects()
        async with self.store.transaction() as session:
            transition = await self._apply(session, subject.kind, subject.id, event, metadata, strict, effects)
            await self._drain(session, effects)
        await self._after_commit(effects)
        return transition

    async def _drain(self, session: Session, effects: Effects) -> None:
        while effects.cascades:
            cascade = effects.cascades.popleft()
            await self._apply(
                session, cascade.kind, cascade.subject_id, cascade.event, cascade.metadata, cascade.strict, effects,
            )

    async def _apply(
        self,
        session: Session,
        kind: SubjectKind,
        subject_id: int,
        event: str,
        metadata: TransitionMetadata,
        strict: bool,
        effects: Effects,
    ) -> Transition | None:
        lifecycle = self._lifecycles[kind]
        metadata = await lifecycle.resolve_metadata(session, subject_id, metadata)
        await lifecycle.lock(session, subject_id, metadata)
        subject = await session.get_subject(kind, subject_id)

        if not await self._permitted(session, subject, event):
            state = await transition_log.current_state(session, subject)
            transitions_rejected_total.labels(subject_kind=kind.value, event=event).inc()
            logger.info("Rejected %s for %s_id=%s (state=%s)", event, kind.value, subject_id, state)
            if strict:
                raise TransitionNotPermitted(kind, subject_id, event, state)
            return None

        transition = await session.append_transition(Transition(
            subject_kind=kind,
            subject_id=subject_id,
            event=event,
            to_state=config_for(subject).to_state(event),
            metadata=metadata,
        ))
        logger.info(
            "%s_id=%s %s -> %s (user_id=%s, order_id=%s)",
            kind.value, subject_id, event, transition.to_state, metadata.user_id, metadata.order_id,
        )
        effects.applied.append(transition)
        await lifecycle.event_callbacks(session, subject, transition, effects)
        return transition

    async def _permitted(self, session: Session, subject: Subject, event: str) -> bool:
        # events outside the subject's table (e.g. activate) are never triggerable
        if event not in config_for(subject).events:
            return False
        return await self._lifecycles[subject.kind].event_permitted(session, subject, event)

    async def _after_commit(self, effects: Effects) -> None:
        for applied in effects.applied:
            transitions_total.labels(subject_kind=applied.subject_kind.value, event=applied.event).inc()
        for effect in effects.deferred:
            try:
                await effect()
            except Exception as e:
                logger.exception("Deferred effect failed after commit: %s", e)

    # --- queries ---

    async def _read(self, query: Callable[..., Awaitable[Any]], subject: Subject, *args: Any) -> Any:
        """Run a read-only query against a fresh copy of the subject, without locks."""
        async with self.store.session() as session:
            fresh = await session.get_subject(subject.kind, subject.id)
            return await query(session, fresh, *args)

    async def current_state(self, subject: Subject) -> str:
        return await self._read(transition_log.current_state, subject)

    async def history(self, subject: Subject) -> list[Transition]:
        return await self._read(transition_log.history, subject)

    async def last_transition(self, subject: Subject) -> Transition | None:
        return await self._read(transition_log.last_transition, subject)

    async def state_reached(self, subject: Subject, state: str) -> bool:
        return await self._read(transition_log.state_reached, subject, state)

    async def event_permitted(self, subject: Subject, event: str) -> bool:
        return await self._read(self._permitted, subject, event)

    async def available_events(self, subject: Subject) -> set[str]:
        async def query(session: Session, fresh: Subject) -> set[str]:
            return {e for e in config_for(fresh).events if await self._permitted(session, fresh, e)}
        return await self._read(query, subject)

    def states_events(self, subject: Subject) -> list[tuple[str, str, str]]:
        return config_for(subject).states_events()

    # readiness, scoped to one order

    async def item_ready(self, order: Order, item: Item) -> bool:
        async with self.store.session() as session:
            fresh_order = await session.get_order(order.id)
            fresh_item = await session.get_item(item.id)
            return await self.readiness.item_ready(session, fresh_order, fresh_item)

    async def all_items_ready(self, order: Order) -> bool:
        return await self._read(self.readiness.all_items_ready, order)

    async def any_item_ready(self, order: Order) -> bool:
        return await self._read(self.readiness.any_item_ready, order)

    async def num_items_ready(self, order: Order) -> int:
        return await self._read(self.readiness.num_items_ready, order)

    async def order_finished(self, order: Order) -> bool:
        return await self._read(self.readiness.order_finished, order)

    # --- item administration ---

    async def mark_as_obsolete(self, item: Item) -> None:
        async with self.store.transaction() as session:
            order_ids = sorted({m.order_id for m in await session.memberships_for_item(item.id)})
            for order_id in order_ids:
                await session.lock(SubjectKind.ORDER, order_id)
            await session.lock(SubjectKind.ITEM, item.id)
            fresh = await session.get_item(item.id)
            await self.items.mark_as_obsolete(session, fresh)
        items_marked_obsolete_total.inc()
        logger.info("Marked item_id=%s obsolete; deactivated %d membership(s)", item.id, len(order_ids))

    async def activate_for_order(self, item: Item, order_id: int) -> None:
        async with self.store.transaction() as session:
            await session.lock(SubjectKind.ORDER, order_id)
            await session.lock(SubjectKind.ITEM, item.id)
            await self.items.activate_for_order(session, await session.get_item(item.id), order_id)

    async def deactivate_for_order(self, item: Item, order_id: int, user_id: int) -> Transition | None:
        """Release the item from one order, then close that order if nothing else holds it open."""
        metadata = TransitionMetadata(user_id=user_id, order_id=order_id)
        effects = Effects()
        async with self.store.transaction() as session:
            await session.lock(SubjectKind.ORDER, order_id)
            await session.lock(SubjectKind.ITEM, item.id)
            await self.items.deactivate_for_order(session, await session.get_item(item.id), order_id)
            transition = await self._apply(session, SubjectKind.ORDER, order_id, "close", metadata, False, effects)
            await self._drain(session, effects)
        await self._after_commit(effects)
        return transition

    async def deactivate_for_other_orders(
        self, item: Item, excluded_order_id: int, user_id: int
    ) -> list[Transition]:
        """Release the item from every active order except one, closing any order that is now finished."""
        effects = Effects()
        closed = []
        async with self.store.transaction() as session:
            order_ids = sorted({
                m.order_id for m in await session.memberships_for_item(item.id)
                if m.active and m.order_id != excluded_order_id
            })
            for order_id in order_ids:
                await session.lock(SubjectKind.ORDER, order_id)
            await session.lock(SubjectKind.ITEM, item.id)
            fresh = await session.get_item(item.id)
            for order_id in order_ids:
                if not await self.items.active_for_order(session, fresh, order_id):
                    continue
                await self.items.deactivate_for_order(session, fresh, order_id)
                metadata = TransitionMetadata(user_id=user_id, order_id=order_id)
                transition = await self._apply(session, SubjectKind.ORDER, order_id, "close", metadata, False, effects)
                if transition is not None:
                    closed.append(transition)
            await self._drain(session, effects)
        await self._after_commit(effects)
        return closed

    async def active_for_order(self, item: Item, order_id: int) -> bool:
        return await self._read(self.items.active_for_order, item, order_id)

    async def active_order_id(self, item: Item) -> int | None:
        return await self._read(self.items.active_order_id, item)

    async def active_order_ids(self, item: Item) -> list[int]:
        return await self._read(self.items.active_order_ids, item)

    async def open_orders(self, item: Item) -> list[Order]:
        return await self._read(self.items.open_orders, item)

    async def has_open_orders(self, item: Item) -> bool:
        return await self._read(self.items.has_open_orders, item)

    async def has_confirmed_order(self, item: Item) -> bool:
        return await self._read(self.items.has_confirmed_order, item)

    async def next_scheduled_use_date(self, item: Item) -> date | None:
        return await self._read(self.items.next_scheduled_use_date, item)

    async def movement_history(self, item: Item) -> list[dict[str, Any]]:
        return await self._read(self.items.movement_history, item)

    async def event_history(self, item: Item) -> list[dict[str, Any]]:
        return await self._read(self.items.event_history, item)
