from unittest.mock import MagicMock

import pytest

from backend.errors import (
    ConcurrentUpdate,
    InvalidPayload,
    InvalidTransition,
    NotFound,
    UpstreamFailure,
)
from backend.orders import (
    ORDER_STATUS_COMPLETE,
    ORDER_STATUS_CREATED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PENDING,
    OrderEngine,
    normalize_status,
    serialize_order,
)

MISSING_ID = "64b7f0c2a1b2c3d4e5f60718"


@pytest.fixture
def engine(db, logger, payment_gateway):
    return OrderEngine(db, logger, payment_gateway=payment_gateway)


@pytest.fixture
def poster(product_factory):
    return product_factory(name="Poster", price=100.0)


@pytest.fixture
def dvd(product_factory):
    return product_factory(name="DVD", price=19.99)


def test_create_order_snapshots_prices(engine, customer, poster, dvd, db):
    order = engine.create_order(
        str(customer["_id"]), [str(poster["_id"]), str(dvd["_id"]), str(dvd["_id"])]
    )

    assert order["status"] == ORDER_STATUS_CREATED
    assert order["amount"] == 139.98
    assert [item["price"] for item in order["items"]] == [100.0, 19.99, 19.99]

    db.products.update_one({"_id": poster["_id"]}, {"$set": {"price": 500.0}})
    stored = db.orders.find_one({"_id": order["_id"]})
    assert stored["amount"] == 139.98
    assert stored["items"][0]["price"] == 100.0


def test_create_order_validates_inputs(engine, customer, poster, product_factory):
    with pytest.raises(NotFound):
        engine.create_order(MISSING_ID, [str(poster["_id"])])
    with pytest.raises(InvalidPayload):
        engine.create_order("bad", [str(poster["_id"])])
    with pytest.raises(InvalidPayload):
        engine.create_order(str(customer["_id"]), [])
    with pytest.raises(InvalidPayload):
        engine.create_order(str(customer["_id"]), ["nope"])
    with pytest.raises(NotFound):
        engine.create_order(str(customer["_id"]), [MISSING_ID])

    retired = product_factory(name="Retired", available=False)
    with pytest.raises(InvalidPayload):
        engine.create_order(str(customer["_id"]), [str(retired["_id"])])


def test_payment_status_moves_forward(engine, customer, poster):
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])

    pending = engine.update_order_payment_status(str(order["_id"]), "payment_pending")
    assert pending["status"] == ORDER_STATUS_PENDING
    assert pending["version"] == 1

    complete = engine.update_order_payment_status(
        str(order["_id"]), ORDER_STATUS_COMPLETE, payment_reference="chk_1"
    )
    assert complete["status"] == ORDER_STATUS_COMPLETE
    assert complete["payment_reference"] == "chk_1"
    assert complete["version"] == 2


def test_terminal_status_cannot_reopen(engine, customer, poster):
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    engine.update_order_payment_status(str(order["_id"]), ORDER_STATUS_COMPLETE)

    with pytest.raises(InvalidTransition):
        engine.update_order_payment_status(str(order["_id"]), ORDER_STATUS_PENDING)
    with pytest.raises(InvalidTransition):
        engine.update_order_payment_status(str(order["_id"]), ORDER_STATUS_FAILED)
    with pytest.raises(InvalidTransition):
        engine.update_order_payment_status(str(order["_id"]), ORDER_STATUS_CREATED)


def test_repeating_current_status_is_a_no_op(engine, customer, poster):
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    engine.update_order_payment_status(str(order["_id"]), ORDER_STATUS_COMPLETE)

    again = engine.update_order_payment_status(str(order["_id"]), ORDER_STATUS_COMPLETE)

    assert again["status"] == ORDER_STATUS_COMPLETE
    assert again["version"] == 1


def test_update_missing_order_fails_with_not_found(engine):
    with pytest.raises(NotFound):
        engine.update_order_payment_status(MISSING_ID, ORDER_STATUS_COMPLETE)


def test_update_rejects_malformed_input(engine, customer, poster):
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    with pytest.raises(InvalidPayload):
        engine.update_order_payment_status("123", ORDER_STATUS_COMPLETE)
    with pytest.raises(InvalidPayload):
        engine.update_order_payment_status(str(order["_id"]), "PAYMENT COMPELTE")


def test_lost_compare_and_swap_raises(logger, poster):
    stale_order = {
        "_id": poster["_id"],
        "status": ORDER_STATUS_CREATED,
        "version": 0,
    }
    orders = MagicMock()
    orders.find_one.return_value = stale_order
    orders.find_one_and_update.return_value = None
    stub_db = MagicMock(orders=orders)

    engine = OrderEngine(stub_db, logger)
    with pytest.raises(ConcurrentUpdate):
        engine.update_order_payment_status(str(poster["_id"]), ORDER_STATUS_COMPLETE)

    swap_filter = orders.find_one_and_update.call_args[0][0]
    assert swap_filter["status"] == ORDER_STATUS_CREATED
    assert swap_filter["version"] == 0


def test_sync_checkout_status_uses_gateway(engine, payment_gateway, customer, poster):
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    payment_gateway.statuses["chk_42"] = ORDER_STATUS_COMPLETE

    updated = engine.sync_checkout_status(str(order["_id"]), "chk_42")

    assert updated["status"] == ORDER_STATUS_COMPLETE
    assert updated["payment_reference"] == "chk_42"
    assert payment_gateway.calls == ["chk_42"]


def test_sync_checkout_status_surfaces_gateway_failure(engine, customer, poster):
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    with pytest.raises(UpstreamFailure):
        engine.sync_checkout_status(str(order["_id"]), "chk_unknown")
    with pytest.raises(InvalidPayload):
        engine.sync_checkout_status(str(order["_id"]), "")


def test_sync_checkout_without_gateway(db, logger, customer, poster):
    engine = OrderEngine(db, logger)
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    with pytest.raises(UpstreamFailure):
        engine.sync_checkout_status(str(order["_id"]), "chk_1")


def test_list_orders_for_user(engine, customer, user_factory, poster, dvd):
    first = engine.create_order(str(customer["_id"]), [str(poster["_id"])])
    second = engine.create_order(str(customer["_id"]), [str(dvd["_id"])])
    engine.update_order_payment_status(str(second["_id"]), ORDER_STATUS_FAILED)
    other = user_factory(firstName="Other")
    engine.create_order(str(other["_id"]), [str(dvd["_id"])])

    orders = engine.list_orders_for_user(str(customer["_id"]), sort="oldest")

    assert [order["_id"] for order in orders] == [first["_id"], second["_id"]]
    newest = engine.list_orders_for_user(str(customer["_id"]), sort="newest")
    assert [order["_id"] for order in newest] == [second["_id"], first["_id"]]
    with pytest.raises(InvalidPayload):
        engine.list_orders_for_user(str(customer["_id"]), sort="sideways")


def test_normalize_status_and_serialization(engine, customer, poster):
    assert normalize_status(" payment complete ") == ORDER_STATUS_COMPLETE
    order = engine.create_order(str(customer["_id"]), [str(poster["_id"])])

    serialized = serialize_order(order)

    assert serialized["userId"] == str(customer["_id"])
    assert serialized["products"] == [str(poster["_id"])]
    assert serialized["items"][0]["productId"] == str(poster["_id"])
    assert serialized["status"] == ORDER_STATUS_CREATED
