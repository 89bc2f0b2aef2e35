import pytest
from pydantic import ValidationError

from circa import Order, OrderVariant, SubjectKind, SubjectNotFound, TransitionMetadata, TransitionNotPermitted
from conftest import USER


async def test_new_order_starts_in_initial_state(engine, make_order):
    order = await make_order()
    assert await engine.current_state(order) == "pending"
    assert await engine.history(order) == []
    assert await engine.last_transition(order) is None


async def test_trigger_appends_one_transition(engine, store, make_order):
    order = await make_order()
    transition = await engine.trigger(order, "review", USER)

    assert transition is not None
    assert transition.subject_kind is SubjectKind.ORDER
    assert (transition.event, transition.to_state) == ("review", "reviewing")
    assert transition.user_id == 7
    assert len(store.transitions) == 1
    assert await engine.current_state(order) == "reviewing"
    assert await engine.last_transition(order) == transition


async def test_current_state_follows_latest_transition(engine, make_order):
    order = await make_order()
    await engine.trigger(order, "review", USER)
    await engine.trigger(order, "confirm", USER)
    history = await engine.history(order)
    assert [t.to_state for t in history] == ["reviewing", "confirmed"]
    assert await engine.current_state(order) == history[-1].to_state


async def test_trigger_not_permitted_records_nothing(engine, store, make_order):
    order = await make_order()
    assert await engine.event_permitted(order, "close") is False
    assert await engine.trigger(order, "close", USER) is None
    assert store.transitions == []
    assert await engine.current_state(order) == "pending"


async def test_trigger_or_raise(engine, store, make_order):
    order = await make_order()
    with pytest.raises(TransitionNotPermitted) as excinfo:
        await engine.trigger_or_raise(order, "fulfill", USER)
    assert excinfo.value.current_state == "pending"
    assert excinfo.value.event == "fulfill"
    assert store.transitions == []

    transition = await engine.trigger_or_raise(order, "review", USER)
    assert transition.to_state == "reviewing"


async def test_state_reached_looks_at_whole_history(engine, make_order):
    order = await make_order()
    await engine.trigger(order, "review", USER)
    await engine.trigger(order, "confirm", USER)
    assert await engine.current_state(order) == "confirmed"
    assert await engine.state_reached(order, "reviewing") is True
    assert await engine.state_reached(order, "fulfilled") is False


async def test_available_events_for_new_order(engine, make_order):
    order = await make_order()
    assert await engine.available_events(order) == {"review", "confirm"}


async def test_events_outside_table_are_never_permitted(engine, make_order):
    order = await make_order()
    assert await engine.event_permitted(order, "activate") is False
    assert await engine.event_permitted(order, "begin_work") is False
    assert await engine.trigger(order, "no_such_event", USER) is None


async def test_states_events_for_ui(engine, make_order, make_item):
    order = await make_order()
    item = await make_item(10)
    assert engine.states_events(order)[0] == ("pending", "reset", "Reset order status to 'pending'.")
    assert [event for _, event, _ in engine.states_events(item)][0] == "order"


async def test_metadata_requires_user_id(engine, make_order):
    order = await make_order()
    with pytest.raises(ValidationError):
        await engine.trigger(order, "review", {"order_id": 1})


async def test_metadata_model_is_accepted(engine, make_order):
    order = await make_order()
    transition = await engine.trigger(order, "review", TransitionMetadata(user_id=3, extra={"note": "x"}))
    assert transition.metadata.extra == {"note": "x"}


async def test_unknown_subject(engine):
    with pytest.raises(SubjectNotFound):
        await engine.trigger(Order(id=999), "review", USER)


async def test_reset_is_never_permitted(engine, make_order):
    order = await make_order()
    await engine.trigger_or_raise(order, "review", USER)
    assert await engine.available_events(order) == {"confirm"}
    assert await engine.event_permitted(order, "reset") is False
    assert await engine.trigger(order, "reset", USER) is None
    assert await engine.current_state(order) == "reviewing"


async def test_register_order_leaves_callers_object_alone(engine):
    draft = Order(id=3, variant=OrderVariant.REPRODUCTION)
    order = await engine.register_order(draft)
    assert order.confirmed is True
    assert draft.confirmed is False
