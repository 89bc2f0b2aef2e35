from circa import OrderVariant
from conftest import ORDER_LOCATION, USER


async def _ready_for(engine, item, order_id, location_id=200):
    await engine.trigger_or_raise(item, "order", {"user_id": 7, "order_id": order_id})
    await engine.trigger_or_raise(item, "transfer", USER)
    await engine.trigger_or_raise(item, "receive_at_temporary_location", {"user_id": 7, "location_id": location_id})
    await engine.trigger_or_raise(item, "prepare_at_temporary_location", USER)


async def test_empty_order_asymmetry(engine, make_order):
    order = await make_order()
    assert await engine.all_items_ready(order) is False
    assert await engine.any_item_ready(order) is True


async def test_only_obsolete_items_are_never_ready(engine, make_order, make_item):
    item = await make_item(10, obsolete=True, current_location_id=ORDER_LOCATION)
    order = await make_order(items=(item,))
    assert await engine.all_items_ready(order) is False
    assert await engine.any_item_ready(order) is False
    assert await engine.num_items_ready(order) == 0


async def test_item_at_order_location_counts_as_ready(engine, make_order, make_item):
    item = await make_item(10, current_location_id=ORDER_LOCATION)
    order = await make_order(items=(item,))
    assert await engine.item_ready(order, item) is True
    assert await engine.all_items_ready(order) is True
    # any_item_ready only looks at history
    assert await engine.any_item_ready(order) is False


async def test_order_without_location_does_not_match_items_in_transit(engine, make_order, make_item):
    item = await make_item(10)
    order = await make_order(items=(item,), location_id=None)
    await engine.trigger_or_raise(item, "order", {"user_id": 7, "order_id": order.id})
    await engine.trigger_or_raise(item, "transfer", USER)
    await engine.trigger_or_raise(item, "receive_at_temporary_location", {"user_id": 7, "location_id": 200})
    await engine.trigger_or_raise(item, "send_to_permanent_location", USER)
    assert item.current_location_id is None
    assert await engine.item_ready(order, item) is False


async def test_readiness_is_scoped_to_the_order(engine, make_order, make_item):
    item = await make_item(10)
    first = await make_order(1, items=(item,))
    second = await make_order(2, items=(item,), location_id=300)

    await _ready_for(engine, item, first.id)
    assert await engine.current_state(item) == "ready_at_temporary_location"
    assert await engine.item_ready(first, item) is True
    assert await engine.item_ready(second, item) is False
    assert await engine.all_items_ready(second) is False
    assert await engine.any_item_ready(second) is False


async def test_all_items_ready_needs_every_eligible_item(engine, make_order, make_item):
    ready = await make_item(10)
    waiting = await make_item(11)
    order = await make_order(items=(ready, waiting))

    await _ready_for(engine, ready, order.id)
    assert await engine.all_items_ready(order) is False
    assert await engine.any_item_ready(order) is True
    assert await engine.num_items_ready(order) == 1


async def test_obsolete_items_are_left_out(engine, make_order, make_item):
    ready = await make_item(10)
    stale = await make_item(11, source="archivesspace")
    order = await make_order(items=(ready, stale))
    await _ready_for(engine, ready, order.id)
    assert await engine.all_items_ready(order) is False

    await engine.mark_as_obsolete(stale)
    assert await engine.all_items_ready(order) is True


async def test_marking_last_ready_item_obsolete_flips_all_ready(engine, make_order, make_item):
    item = await make_item(10, source="archivesspace")
    order = await make_order(items=(item,))
    await _ready_for(engine, item, order.id)
    assert await engine.all_items_ready(order) is True

    await engine.mark_as_obsolete(item)
    assert await engine.all_items_ready(order) is False


async def test_digital_item_ready_at_use_location(engine, make_order, make_item):
    item = await make_item(11, is_digital=True)
    order = await make_order(items=(item,))
    await engine.trigger_or_raise(item, "order", {"user_id": 7, "order_id": order.id})
    assert await engine.item_ready(order, item) is False

    await engine.trigger_or_raise(item, "deliver_to_use_location", USER)
    assert await engine.item_ready(order, item) is True
    assert await engine.all_items_ready(order) is True


async def test_order_finished(engine, make_order, make_item):
    item = await make_item(10)
    order = await make_order(items=(item,))
    assert await engine.order_finished(order) is False

    await engine.trigger_or_raise(order, "confirm", USER)
    await engine.trigger_or_raise(item, "receive_at_temporary_location", USER)
    assert await engine.current_state(order) == "fulfilled"
    assert await engine.order_finished(order) is False

    await engine.trigger_or_raise(item, "send_to_permanent_location", USER)
    await engine.trigger_or_raise(item, "receive_at_permanent_location", USER)
    assert await engine.order_finished(order) is True


async def test_fulfilled_order_without_memberships_is_finished(engine, make_order):
    order = await make_order(variant=OrderVariant.REPRODUCTION)
    for event in ("begin_work", "complete_work", "fulfill"):
        await engine.trigger_or_raise(order, event, USER)
    assert await engine.order_finished(order) is True
