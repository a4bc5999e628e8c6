import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from marketplace_service.app.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    OrderValidationError,
    ValidationError,
)
from marketplace_service.app.models import Order, Product
from marketplace_service.app.orders import OrderService, generate_order_number


def _order_count(session_factory):
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(Order)).scalar_one()


def test_create_order_snapshots_lines_and_reserves_stock(place_order, products, stock_of, callers):
    order = place_order(("basket", 2), ("pot", 1), notes="Leave at the gate")

    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["payment_method"] == "cash_on_delivery"
    assert order["user_id"] == callers["buyer"].user_id
    assert order["notes"] == "Leave at the gate"
    assert order["total_amount"] == Decimal("33.00")

    lines = {item["product_id"]: item for item in order["items"]}
    assert lines[products["basket"]]["product_name"] == "Handwoven Basket"
    assert lines[products["basket"]]["price"] == Decimal("12.50")
    assert lines[products["basket"]]["subtotal"] == Decimal("25.00")
    assert lines[products["pot"]]["subtotal"] == Decimal("8.00")
    assert sum(item["subtotal"] for item in order["items"]) == order["total_amount"]

    assert stock_of(products["basket"]) == 3
    assert stock_of(products["pot"]) == 9


def test_order_number_is_time_prefixed_with_random_suffix():
    assert re.fullmatch(r"ORD-\d{6}-\d{3}", generate_order_number())


def test_created_order_carries_a_generated_number(place_order):
    order = place_order(("basket", 1))

    assert re.fullmatch(r"ORD-\d{6}-\d{3}", order["order_number"])


def test_total_and_snapshot_survive_product_edits(place_order, orders, callers, products, session_factory):
    created = place_order(("basket", 2))

    with session_factory.begin() as session:
        session.execute(
            update(Product)
            .where(Product.id == products["basket"])
            .values(price=Decimal("99.99"), product_name="Renamed Basket")
        )

    fetched = orders.get_order(callers["buyer"], created["id"])
    assert fetched["total_amount"] == Decimal("25.00")
    assert fetched["items"][0]["product_name"] == "Handwoven Basket"
    assert fetched["items"][0]["price"] == Decimal("12.50")


def test_repeated_product_lines_are_merged(place_order, products, stock_of):
    order = place_order(("basket", 2), ("basket", 1))

    assert len(order["items"]) == 1
    assert order["items"][0]["quantity"] == 3
    assert stock_of(products["basket"]) == 2


def test_repeated_lines_are_checked_against_combined_quantity(place_order, products, stock_of):
    with pytest.raises(InsufficientStockError):
        place_order(("scarf", 2), ("scarf", 2))

    assert stock_of(products["scarf"]) == 3


def test_second_order_fails_when_first_took_the_stock(place_order, products, stock_of):
    place_order(("basket", 3))

    with pytest.raises(InsufficientStockError) as exc_info:
        place_order(("basket", 3))

    assert exc_info.value.available == 2
    assert exc_info.value.requested == 3
    assert stock_of(products["basket"]) == 2


def test_failing_line_aborts_whole_order(place_order, products, stock_of, session_factory):
    with pytest.raises(InsufficientStockError) as exc_info:
        place_order(("basket", 2), ("scarf", 4))

    assert exc_info.value.product_id == products["scarf"]
    assert stock_of(products["basket"]) == 5
    assert stock_of(products["scarf"]) == 3
    assert _order_count(session_factory) == 0


@pytest.mark.parametrize("product", ["flagged", "deleted"])
def test_inactive_products_cannot_be_ordered(place_order, products, stock_of, session_factory, product):
    with pytest.raises(OrderValidationError) as exc_info:
        place_order(("basket", 1), (product, 1))

    assert exc_info.value.product_id == products[product]
    assert "not available" in exc_info.value.reason
    assert stock_of(products["basket"]) == 5
    assert _order_count(session_factory) == 0


def test_missing_product_is_named(orders, callers, seed):
    with pytest.raises(OrderValidationError) as exc_info:
        orders.create_order(callers["buyer"], [{"product_id": 404, "quantity": 1}], "Somewhere")

    assert exc_info.value.product_id == 404
    assert exc_info.value.reason == "product not found"


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"product_id": 10, "quantity": 0}],
        [{"product_id": 10, "quantity": -2}],
        [{"quantity": 1}],
        [{"product_id": 0, "quantity": 1}],
        [{"product_id": 2**70, "quantity": 1}],
    ],
)
def test_malformed_items_are_rejected(orders, callers, seed, items):
    with pytest.raises(ValidationError):
        orders.create_order(callers["buyer"], items, "Somewhere")


def test_shipping_address_is_required(place_order):
    with pytest.raises(ValidationError):
        place_order(("basket", 1), shipping_address="   ")


def test_unknown_payment_method_is_rejected(place_order):
    with pytest.raises(ValidationError):
        place_order(("basket", 1), payment_method="crypto")


def test_payment_method_is_recorded(place_order):
    order = place_order(("basket", 1), payment_method="card")

    assert order["payment_method"] == "card"


def test_only_customers_place_orders(place_order, callers):
    with pytest.raises(AuthorizationError):
        place_order(("basket", 1), caller=callers["seller"])


def test_order_number_collision_is_retried(session_factory, callers, products, stock_of):
    numbers = iter(["ORD-000001-001", "ORD-000001-001", "ORD-000002-002"])
    service = OrderService(session_factory, number_generator=lambda: next(numbers))
    items = [{"product_id": products["basket"], "quantity": 1}]

    first = service.create_order(callers["buyer"], items, "Somewhere")
    second = service.create_order(callers["buyer"], items, "Somewhere")

    assert first["order_number"] == "ORD-000001-001"
    assert second["order_number"] == "ORD-000002-002"
    assert stock_of(products["basket"]) == 3


def test_order_number_collision_gives_up_after_bounded_attempts(session_factory, callers, products, stock_of):
    service = OrderService(session_factory, max_attempts=3, number_generator=lambda: "ORD-000001-001")
    items = [{"product_id": products["basket"], "quantity": 1}]
    service.create_order(callers["buyer"], items, "Somewhere")

    with pytest.raises(ConflictError):
        service.create_order(callers["buyer"], items, "Somewhere")

    assert _order_count(session_factory) == 1
    assert stock_of(products["basket"]) == 4


def test_created_event_lists_reservations(place_order, publisher, products):
    order = place_order(("basket", 2))

    key, message = publisher.events[-1]
    assert key == "order.created"
    assert message["order_id"] == order["id"]
    assert message["reserved"] == [{"product_id": products["basket"], "quantity": 2}]


def test_failed_creation_publishes_nothing(place_order, publisher):
    with pytest.raises(InsufficientStockError):
        place_order(("basket", 50))

    assert publisher.events == []
