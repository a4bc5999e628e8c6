import enum
import json
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


class ProductStatus(str, enum.Enum):
    ACTIVE = "active"
    OUT_OF_STOCK = "out_of_stock"
    VIOLATION = "violation"
    DELETED = "deleted"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


def _enum_column(enum_cls, **kwargs):
    # Store the lowercase values, not the member names.
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


# Read-only view of the user/role store.
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50))
    role = _enum_column(UserRole, nullable=False, default=UserRole.CUSTOMER)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock_qty >= 0", name="ck_products_stock_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    stock_qty = Column(Integer, nullable=False, default=0)
    status = _enum_column(ProductStatus, nullable=False, default=ProductStatus.ACTIVE)
    images = Column(JSON)

    @property
    def is_in_stock(self):
        # out_of_stock is derived from the counter, never written by the ledger.
        return self.stock_qty > 0

    @property
    def image_records(self):
        return normalize_images(self.images)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = _enum_column(OrderStatus, nullable=False, default=OrderStatus.PENDING, index=True)
    shipping_address = Column(Text, nullable=False)
    payment_method = _enum_column(PaymentMethod, nullable=False, default=PaymentMethod.CASH_ON_DELIVERY)
    payment_status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    buyer = relationship("User")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    # Snapshot of the product at order time; never resynced.
    product_name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class ProductImage:
    """A stored product image: the served path plus the uploaded file name."""

    __slots__ = ("path", "original_name")

    def __init__(self, path, original_name=None):
        self.path = path
        self.original_name = original_name

    def to_dict(self):
        return {"path": self.path, "originalName": self.original_name}

    def __eq__(self, other):
        if not isinstance(other, ProductImage):
            return NotImplemented
        return (self.path, self.original_name) == (other.path, other.original_name)

    def __repr__(self):
        return f"ProductImage(path={self.path!r}, original_name={self.original_name!r})"


def normalize_images(raw):
    """
    Coerce a stored images value into a list of ProductImage records.

    Older rows hold a JSON-encoded string, bare path strings, or dicts that
    lack ``originalName``. Entries without a usable path are dropped.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError:
            # A single bare path stored as text.
            return [ProductImage(raw if isinstance(raw, str) else raw.decode())]
    if isinstance(raw, (str, dict)):
        raw = [raw]
    if not isinstance(raw, list):
        return []

    images = []
    for entry in raw:
        if isinstance(entry, str) and entry:
            images.append(ProductImage(entry))
        elif isinstance(entry, dict) and entry.get("path"):
            images.append(ProductImage(entry["path"], entry.get("originalName") or entry.get("original_name")))
    return images


def line_subtotal(price, quantity):
    return (Decimal(price) * quantity).quantize(Decimal("0.01"))


# Largest value a 64-bit signed integer column can hold.
MAX_ID = 2**63 - 1


def is_storable_id(value):
    """True for a positive int that fits an id column; larger ints overflow the driver."""
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= MAX_ID
