from decimal import Decimal

import pytest

from marketplace_service.app.analytics import SalesAnalytics
from marketplace_service.app.auth import Caller
from marketplace_service.app.database import init_db, make_engine, make_session_factory
from marketplace_service.app.lifecycle import OrderLifecycle
from marketplace_service.app.models import Product, ProductStatus, User, UserRole
from marketplace_service.app.orders import OrderService
from marketplace_service.app.stock import StockLedger


class RecordingPublisher:
    """Collects published events instead of sending them to RabbitMQ."""

    def __init__(self):
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))

    def close(self):
        pass

    def keys(self):
        return [key for key, _ in self.events]


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def seed(session_factory):
    """Two buyers, two sellers, an admin and a handful of products."""
    with session_factory.begin() as session:
        users = {
            "buyer": User(id=1, name="Nimal Perera", email="nimal@example.com", phone="0711111111", role=UserRole.CUSTOMER),
            "other_buyer": User(id=2, name="Kamala Silva", email="kamala@example.com", phone="0722222222", role=UserRole.CUSTOMER),
            "seller": User(id=3, name="Craft House", email="craft@example.com", role=UserRole.SELLER),
            "other_seller": User(id=4, name="Clay Works", email="clay@example.com", role=UserRole.SELLER),
            "admin": User(id=5, name="Admin", email="admin@example.com", role=UserRole.ADMIN),
        }
        session.add_all(users.values())
        products = {
            "basket": Product(id=10, seller_id=3, product_name="Handwoven Basket",
                              description="Palm leaf basket woven by hand", price=Decimal("12.50"), stock_qty=5,
                              images=[{"path": "uploads/basket.jpg", "originalName": "basket.jpg"}]),
            "scarf": Product(id=11, seller_id=3, product_name="Batik Scarf", price=Decimal("20.00"), stock_qty=3),
            "pot": Product(id=12, seller_id=4, product_name="Clay Pot", price=Decimal("8.00"), stock_qty=10,
                           images='["uploads/pot.png"]'),
            "flagged": Product(id=13, seller_id=3, product_name="Flagged Mask", price=Decimal("5.00"), stock_qty=10,
                               status=ProductStatus.VIOLATION),
            "deleted": Product(id=14, seller_id=4, product_name="Old Vase", price=Decimal("30.00"), stock_qty=2,
                               status=ProductStatus.DELETED),
        }
        session.add_all(products.values())

    return {
        "users": {name: user.id for name, user in users.items()},
        "products": {name: product.id for name, product in products.items()},
    }


@pytest.fixture
def callers(seed):
    roles = {
        "buyer": UserRole.CUSTOMER,
        "other_buyer": UserRole.CUSTOMER,
        "seller": UserRole.SELLER,
        "other_seller": UserRole.SELLER,
        "admin": UserRole.ADMIN,
    }
    return {name: Caller(user_id=seed["users"][name], role=role) for name, role in roles.items()}


@pytest.fixture
def products(seed):
    return seed["products"]


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def ledger():
    return StockLedger()


@pytest.fixture
def orders(session_factory, ledger, publisher):
    return OrderService(session_factory, ledger=ledger, publisher=publisher)


@pytest.fixture
def lifecycle(session_factory, ledger, publisher):
    return OrderLifecycle(session_factory, ledger=ledger, publisher=publisher)


@pytest.fixture
def analytics(session_factory):
    return SalesAnalytics(session_factory)


@pytest.fixture
def stock_of(session_factory, ledger):
    def _stock_of(product_id):
        with session_factory() as session:
            return ledger.available(session, product_id)

    return _stock_of


@pytest.fixture
def place_order(orders, callers, products):
    """Places an order for the default buyer; lines are (product name, quantity)."""

    def _place(*lines, caller=None, **kwargs):
        kwargs.setdefault("shipping_address", "12 Temple Road, Kandy")
        items = [{"product_id": products[name], "quantity": qty} for name, qty in lines]
        return orders.create_order(caller or callers["buyer"], items, **kwargs)

    return _place
