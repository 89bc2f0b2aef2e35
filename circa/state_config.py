"""
Static state/event tables. One table per Order variant and one for Item.
Each row: event -> resulting state, with the description shown to staff.
"""
from typing import NamedTuple

from circa.models import Item, Order, OrderVariant, Subject


class StateEvent(NamedTuple):
    event: str
    to_state: str
    description: str


class StateConfig(NamedTuple):
    initial_state: str
    final_state: str
    rows: tuple[StateEvent, ...]

    @property
    def events(self) -> tuple[str, ...]:
        return tuple(row.event for row in self.rows)

    def to_state(self, event: str) -> str | None:
        for row in self.rows:
            if row.event == event:
                return row.to_state
        return None

    def states_events(self) -> list[tuple[str, str, str]]:
        """(state, event, description) rows in table order, for rendering."""
        return [(row.to_state, row.event, row.description) for row in self.rows]


ORDER_STANDARD = StateConfig(
    initial_state="pending",
    final_state="closed",
    rows=(
        StateEvent("reset", "pending", "Reset order status to 'pending'."),
        StateEvent("review", "reviewing", "Review the request prior to confirmation."),
        StateEvent("confirm", "confirmed", "The request has been reviewed and items are approved for transfer."),
        StateEvent("fulfill", "fulfilled", "All items have been received at their use location."),
        StateEvent(
            "close",
            "closed",
            "Use of the items is complete or no longer required. This order can be closed.",
        ),
    ),
)

ORDER_REPRODUCTION = StateConfig(
    initial_state="pending",
    final_state="closed",
    rows=(
        StateEvent("reset", "pending", "Reset order status to 'pending'."),
        StateEvent(
            "begin_work",
            "in_progress",
            "Digitization/copying is in progress or files are being prepared for delivery.",
        ),
        StateEvent(
            "complete_work",
            "work_complete",
            "Digitization/copying is complete or files are ready for delivery.",
        ),
        StateEvent("fulfill", "fulfilled", "Materials have been sent to the requester as specified."),
        StateEvent(
            "close",
            "closed",
            "All physical items have been returned and the requester has been invoiced as required. "
            "This order can be closed.",
        ),
    ),
)

ITEM = StateConfig(
    initial_state="at_permanent_location",
    final_state="at_permanent_location",
    rows=(
        StateEvent("order", "ordered", "Item has been requested for use."),
        StateEvent(
            "transfer",
            "in_transit_to_temporary_location",
            "Item has left its permanent location for the location where it will be used.",
        ),
        StateEvent(
            "receive_at_temporary_location",
            "arrived_at_temporary_location",
            "Item has been received at the location where it will be used.",
        ),
        StateEvent(
            "prepare_at_temporary_location",
            "ready_at_temporary_location",
            "Item has been checked and is ready for use.",
        ),
        StateEvent(
            "deliver_to_use_location",
            "ready_at_use_location",
            "Digital item has been delivered and is ready for use.",
        ),
        StateEvent(
            "send_to_permanent_location",
            "returning_to_permanent_location",
            "Use of the item is complete and it is being returned to its permanent location.",
        ),
        StateEvent(
            "receive_at_permanent_location",
            "at_permanent_location",
            "Item has been returned to its permanent location.",
        ),
    ),
)

ORDER_CONFIGS = {
    OrderVariant.STANDARD: ORDER_STANDARD,
    OrderVariant.REPRODUCTION: ORDER_REPRODUCTION,
}


def config_for(subject: Subject) -> StateConfig:
    if isinstance(subject, Order):
        return ORDER_CONFIGS[subject.variant]
    if isinstance(subject, Item):
        return ITEM
    raise TypeError(f"not a workflow subject: {subject!r}")
