import pytest

from marketplace_service.app.errors import InsufficientStockError, NotFoundError, ValidationError


def test_reserve_decrements_stock(session_factory, ledger, products, stock_of):
    with session_factory.begin() as session:
        ledger.reserve(session, products["basket"], 3)

    assert stock_of(products["basket"]) == 2


def test_reserve_whole_stock_leaves_zero(session_factory, ledger, products, stock_of):
    with session_factory.begin() as session:
        ledger.reserve(session, products["scarf"], 3)

    assert stock_of(products["scarf"]) == 0


def test_reserve_more_than_available_fails_without_partial_decrement(session_factory, ledger, products, stock_of):
    with pytest.raises(InsufficientStockError) as exc_info:
        with session_factory.begin() as session:
            ledger.reserve(session, products["basket"], 6)

    assert exc_info.value.requested == 6
    assert exc_info.value.available == 5
    assert exc_info.value.product_id == products["basket"]
    assert stock_of(products["basket"]) == 5


def test_second_reservation_sees_what_the_first_left(session_factory, ledger, products, stock_of):
    with session_factory.begin() as session:
        ledger.reserve(session, products["basket"], 3)

    with pytest.raises(InsufficientStockError) as exc_info:
        with session_factory.begin() as session:
            ledger.reserve(session, products["basket"], 3)

    assert exc_info.value.available == 2
    assert stock_of(products["basket"]) == 2


def test_release_increments_without_upper_bound(session_factory, ledger, products, stock_of):
    with session_factory.begin() as session:
        ledger.release(session, products["scarf"], 7)

    assert stock_of(products["scarf"]) == 10


def test_reservation_rolls_back_with_the_transaction(session_factory, ledger, products, stock_of):
    with pytest.raises(RuntimeError):
        with session_factory.begin() as session:
            ledger.reserve(session, products["basket"], 2)
            raise RuntimeError("boom")

    assert stock_of(products["basket"]) == 5


@pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
def test_non_positive_or_non_integer_quantity_is_rejected(session_factory, ledger, products, quantity):
    with session_factory.begin() as session:
        with pytest.raises(ValidationError):
            ledger.reserve(session, products["basket"], quantity)
        with pytest.raises(ValidationError):
            ledger.release(session, products["basket"], quantity)


def test_unknown_product(session_factory, ledger, seed):
    with session_factory.begin() as session:
        with pytest.raises(NotFoundError):
            ledger.reserve(session, 999, 1)
        with pytest.raises(NotFoundError):
            ledger.release(session, 999, 1)
        with pytest.raises(NotFoundError):
            ledger.available(session, 999)
        with pytest.raises(NotFoundError):
            ledger.available(session, 2**70)


def test_ledger_does_not_touch_product_status(session_factory, ledger, products):
    from marketplace_service.app.models import Product, ProductStatus

    with session_factory.begin() as session:
        ledger.reserve(session, products["scarf"], 3)

    with session_factory() as session:
        product = session.get(Product, products["scarf"])
        assert product.status is ProductStatus.ACTIVE
        assert product.is_in_stock is False
