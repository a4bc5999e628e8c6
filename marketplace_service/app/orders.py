import math
import random
import time
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from . import config
from .auth import require_role
from .errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    OrderValidationError,
    ValidationError,
)
from .messaging.producer import NullPublisher
from .models import (
    MAX_ID,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
    ProductStatus,
    UserRole,
    is_storable_id,
    line_subtotal,
)
from .stock import StockLedger

logger = structlog.get_logger(__name__)


def generate_order_number():
    """Time-based prefix plus a random suffix, e.g. ORD-482913-057."""
    timestamp = str(int(time.time() * 1000))
    suffix = f"{random.randint(0, 999):03d}"
    return f"ORD-{timestamp[-6:]}-{suffix}"


def coerce_enum(enum_cls, value, field):
    """Parses a status-like value into its enum, raising ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field}: {value!r}. Expected one of: {allowed}") from None


def serialize_item(item):
    product = item.product
    images = product.image_records if product is not None else []
    return {
        "id": item.id,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "price": item.price,
        "quantity": item.quantity,
        "subtotal": item.subtotal,
        "description": product.description if product is not None else None,
        "image": images[0].path if images else None,
        "images": [image.to_dict() for image in images],
    }


def serialize_order(order, items=None):
    """Order header plus items; `items` narrows the lines shown (seller view)."""
    shown = order.items if items is None else items
    data = {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "total_amount": order.total_amount,
        "status": order.status.value,
        "shipping_address": order.shipping_address,
        "payment_method": order.payment_method.value,
        "payment_status": order.payment_status.value,
        "notes": order.notes,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "items_count": len(order.items),
        "items": [serialize_item(item) for item in shown],
    }
    if order.buyer is not None:
        data["customer_name"] = order.buyer.name
        data["customer_email"] = order.buyer.email
        data["customer_phone"] = order.buyer.phone
    return data


def _merge_lines(items):
    """Validates raw lines and merges repeated products into one line."""
    if not items:
        raise ValidationError("Items are required")

    merged = {}
    for raw in items:
        product_id = raw.get("product_id") if isinstance(raw, dict) else getattr(raw, "product_id", None)
        quantity = raw.get("quantity") if isinstance(raw, dict) else getattr(raw, "quantity", None)
        if not is_storable_id(product_id):
            raise ValidationError(f"Invalid item data: product_id must be a positive integer, got {product_id!r}")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Invalid item data: each item needs a product_id and a positive quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def _page_params(page, limit):
    if page is None:
        page = 1
    if limit is None:
        limit = config.DEFAULT_PAGE_SIZE
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= config.MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {config.MAX_PAGE_SIZE}")
    if (page - 1) * limit > MAX_ID:
        raise ValidationError("page is out of range")
    return page, limit


def seller_owns_item(seller_id):
    """Filter matching orders that contain at least one of the seller's products."""
    return Order.items.any(OrderItem.product.has(Product.seller_id == seller_id))


class OrderService:
    """Order creation and the query layer over orders and their items."""

    def __init__(self, session_factory, ledger=None, publisher=None, max_attempts=None, number_generator=None):
        self.session_factory = session_factory
        self.ledger = ledger or StockLedger()
        self.publisher = publisher or NullPublisher()
        self.max_attempts = max_attempts or config.ORDER_NUMBER_ATTEMPTS
        self.number_generator = number_generator or generate_order_number

    # -------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------
    def create_order(self, caller, items, shipping_address, payment_method=None, notes=None):
        """
        Creates an order with its items and reserves stock for every line.

        Everything happens in one transaction: if any line fails validation or
        reservation nothing is written. An order number collision rolls the
        attempt back and retries with a fresh number.
        """
        require_role(caller, UserRole.CUSTOMER, message="Access denied. Only customers can place orders.")
        lines = _merge_lines(items)
        if not shipping_address or not str(shipping_address).strip():
            raise ValidationError("Shipping address is required")
        method = coerce_enum(PaymentMethod, payment_method or PaymentMethod.CASH_ON_DELIVERY, "payment method")

        for attempt in range(1, self.max_attempts + 1):
            order_number = self.number_generator()
            try:
                with self.session_factory.begin() as session:
                    order = self._insert_order(session, caller, lines, order_number, shipping_address, method, notes)
                    view = serialize_order(order)
            except ConflictError:
                if attempt == self.max_attempts:
                    raise
                logger.warning("Order number collision, retrying", order_number=order_number, attempt=attempt)
                continue

            logger.info(
                "Order created",
                order_id=view["id"],
                order_number=view["order_number"],
                buyer_id=caller.user_id,
                total_amount=str(view["total_amount"]),
            )
            self.publisher.publish(
                "order.created",
                {
                    "order_id": view["id"],
                    "order_number": view["order_number"],
                    "status": view["status"],
                    "payment_status": view["payment_status"],
                    "total_amount": str(view["total_amount"]),
                    "reserved": [{"product_id": pid, "quantity": qty} for pid, qty in lines.items()],
                },
            )
            return view

    def _insert_order(self, session, caller, lines, order_number, shipping_address, method, notes):
        products = {
            p.id: p
            for p in session.execute(
                select(Product).where(Product.id.in_(list(lines))).with_for_update()
            ).scalars()
        }

        snapshot = []
        total = Decimal("0.00")
        for product_id, quantity in lines.items():
            product = products.get(product_id)
            if product is None:
                raise OrderValidationError(product_id, "product not found")
            if product.status is not ProductStatus.ACTIVE:
                raise OrderValidationError(product_id, f"product is not available (status: {product.status.value})")
            if product.stock_qty < quantity:
                raise InsufficientStockError(product_id, quantity, product.stock_qty, product.product_name)

            price = Decimal(product.price)
            subtotal = line_subtotal(price, quantity)
            total += subtotal
            snapshot.append((product, quantity, price, subtotal))

        existing = session.execute(
            select(Order.id).where(Order.order_number == order_number)
        ).scalar_one_or_none()
        if existing is not None:
            raise ConflictError(f"Order number already exists: {order_number}")

        order = Order(
            user_id=caller.user_id,
            order_number=order_number,
            total_amount=total,
            status=OrderStatus.PENDING,
            shipping_address=str(shipping_address).strip(),
            payment_method=method,
            notes=notes or None,
        )
        for product, quantity, price, subtotal in snapshot:
            order.items.append(
                OrderItem(
                    product=product,
                    product_name=product.product_name,
                    price=price,
                    quantity=quantity,
                    subtotal=subtotal,
                )
            )
        session.add(order)
        try:
            session.flush()
        except IntegrityError as exc:
            if "order_number" in str(exc.orig):
                raise ConflictError(f"Order number already exists: {order_number}") from exc
            raise

        for product, quantity, _, _ in snapshot:
            self.ledger.reserve(session, product.id, quantity, product.product_name)
        return order

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def get_order(self, caller, order_id):
        with self.session_factory() as session:
            order, items = self._load_visible(session, caller, order_id)
            return serialize_order(order, items)

    def get_order_items(self, caller, order_id):
        with self.session_factory() as session:
            order, items = self._load_visible(session, caller, order_id)
            return [serialize_item(item) for item in (order.items if items is None else items)]

    def _load_visible(self, session, caller, order_id):
        """
        Returns (order, items) if the caller may see the order.

        Admins see any order and customers their own. Sellers see orders that
        contain their products, with items narrowed to those products.
        """
        if not is_storable_id(order_id):
            raise NotFoundError("Order", order_id)
        query = select(Order).where(Order.id == order_id).options(
            selectinload(Order.items).selectinload(OrderItem.product),
            selectinload(Order.buyer),
        )
        if caller.is_customer:
            query = query.where(Order.user_id == caller.user_id)
        elif caller.is_seller:
            query = query.where(seller_owns_item(caller.user_id))

        order = session.execute(query).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        if caller.is_seller:
            return order, [i for i in order.items if i.product.seller_id == caller.user_id]
        return order, None

    def list_buyer_orders(self, caller, page=None, limit=None, status=None):
        require_role(caller, UserRole.CUSTOMER)
        return self._paginate([Order.user_id == caller.user_id], page, limit, status)

    def list_seller_orders(self, caller, page=None, limit=None, status=None):
        require_role(caller, UserRole.SELLER)
        return self._paginate([seller_owns_item(caller.user_id)], page, limit, status, seller_id=caller.user_id)

    def list_all_orders(self, caller, page=None, limit=None, status=None):
        require_role(caller, UserRole.ADMIN)
        return self._paginate([], page, limit, status)

    def _paginate(self, filters, page, limit, status, seller_id=None):
        page, limit = _page_params(page, limit)
        if status is not None:
            filters = filters + [Order.status == coerce_enum(OrderStatus, status, "status")]

        with self.session_factory() as session:
            total = session.execute(select(func.count()).select_from(Order).where(*filters)).scalar_one()
            orders = session.execute(
                select(Order)
                .where(*filters)
                .options(
                    selectinload(Order.items).selectinload(OrderItem.product),
                    selectinload(Order.buyer),
                )
                .order_by(Order.created_at.desc(), Order.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).scalars().all()

            views = []
            for order in orders:
                items = None
                if seller_id is not None:
                    items = [i for i in order.items if i.product.seller_id == seller_id]
                views.append(serialize_order(order, items))

        return {
            "orders": views,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit),
            },
        }
