"""
Queries over the append-only transition history. Current state is never stored: it is the
to_state of the latest transition, or the configuration's initial state when there is none.
"""
from circa.models import Item, Subject, Transition
from circa.state_config import config_for
from circa.store import Session


async def history(session: Session, subject: Subject) -> list[Transition]:
    return await session.transitions(subject.kind, subject.id)


async def last_transition(session: Session, subject: Subject) -> Transition | None:
    transitions = await history(session, subject)
    return transitions[-1] if transitions else None


async def current_state(session: Session, subject: Subject) -> str:
    latest = await last_transition(session, subject)
    if latest is None:
        return config_for(subject).initial_state
    return latest.to_state


async def state_reached(session: Session, subject: Subject, state: str) -> bool:
    """True if any transition in the subject's history reached `state`, not only the latest."""
    return any(t.to_state == state for t in await history(session, subject))


async def state_reached_for_order(session: Session, item: Item, state: str, order_id: int) -> bool:
    transitions = await session.transitions_for_order(item.id, order_id)
    return any(t.to_state == state for t in transitions)


async def last_transition_for_order(session: Session, item: Item, order_id: int) -> Transition | None:
    transitions = await session.transitions_for_order(item.id, order_id)
    return transitions[-1] if transitions else None
