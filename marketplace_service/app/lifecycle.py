"""Order status transitions and the stock effects each one triggers.

Every operation runs in one transaction: a locking read of the order, the
checks, a conditional status write guarded on the status that was read, and
any stock releases. If another request changed the status in between, the
guarded write matches no row and the whole transaction rolls back.
"""

import structlog
from sqlalchemy import func, select, update

from .auth import require_role
from .errors import AuthorizationError, ConflictError, InvalidStateTransitionError, NotFoundError
from .messaging.producer import NullPublisher
from .models import Order, OrderItem, OrderStatus, PaymentStatus, Product, UserRole, is_storable_id, utcnow
from .orders import coerce_enum
from .stock import StockLedger

logger = structlog.get_logger(__name__)


TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REJECTED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REJECTED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.REJECTED: set(),  # Terminal
}

# Fulfillment steps reachable through update_status, each from its predecessor only.
NEXT_FULFILLMENT_STATUS = {
    OrderStatus.CONFIRMED: OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.SHIPPED,
    OrderStatus.SHIPPED: OrderStatus.DELIVERED,
}

REJECTABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


def can_transition(current, target):
    return target in TRANSITIONS[current]


def append_note(existing, note):
    """Notes are an append-only trail; earlier entries are never rewritten."""
    if not existing:
        return note
    return f"{existing}\n{note}"


class OrderLifecycle:
    def __init__(self, session_factory, ledger=None, publisher=None):
        self.session_factory = session_factory
        self.ledger = ledger or StockLedger()
        self.publisher = publisher or NullPublisher()

    def accept(self, caller, order_id):
        """Seller confirms a pending order. Stock was reserved at creation."""
        require_role(caller, UserRole.SELLER, message="Access denied. Only sellers can accept orders.")
        with self.session_factory.begin() as session:
            order = self._lock_order(session, order_id)
            self._require_seller_items(session, order, caller.user_id)
            if order.status is not OrderStatus.PENDING:
                raise InvalidStateTransitionError(order.status, "accept")
            self._write(session, order, OrderStatus.CONFIRMED)
            event = _event(order)

        logger.info("Order accepted", order_id=order_id, seller_id=caller.user_id)
        self.publisher.publish("order.confirmed", event)
        return event

    def reject(self, caller, order_id, reason=None):
        """
        Seller rejects a pending or confirmed order.

        Only the rejecting seller's lines go back to stock. A non-blank reason
        is appended to the order notes.
        """
        require_role(caller, UserRole.SELLER, message="Access denied. Only sellers can reject orders.")
        with self.session_factory.begin() as session:
            order = self._lock_order(session, order_id)
            self._require_seller_items(session, order, caller.user_id)
            if order.status not in REJECTABLE_STATUSES:
                raise InvalidStateTransitionError(order.status, "reject")

            notes = order.notes
            if reason and reason.strip():
                notes = append_note(notes, f"Rejected by seller: {reason.strip()}")
            self._write(session, order, OrderStatus.REJECTED, notes=notes)

            lines = session.execute(
                select(OrderItem.product_id, OrderItem.quantity)
                .join(Product, OrderItem.product_id == Product.id)
                .where(OrderItem.order_id == order.id, Product.seller_id == caller.user_id)
            ).all()
            released = self._release(session, lines)
            event = _event(order, released=released)

        logger.info("Order rejected", order_id=order_id, seller_id=caller.user_id, lines_released=len(released))
        self.publisher.publish("order.rejected", event)
        return event

    def cancel(self, caller, order_id):
        """Buyer (own order) or admin cancels a pending order; every line goes back to stock."""
        require_role(caller, UserRole.CUSTOMER, UserRole.ADMIN)
        with self.session_factory.begin() as session:
            order = self._lock_order(session, order_id)
            if not caller.is_admin and order.user_id != caller.user_id:
                raise NotFoundError("Order", order_id)
            if order.status is not OrderStatus.PENDING:
                raise InvalidStateTransitionError(order.status, "cancel")
            self._write(session, order, OrderStatus.CANCELLED)

            lines = session.execute(
                select(OrderItem.product_id, OrderItem.quantity).where(OrderItem.order_id == order.id)
            ).all()
            released = self._release(session, lines)
            event = _event(order, released=released)

        logger.info("Order cancelled", order_id=order_id, cancelled_by=caller.user_id)
        self.publisher.publish("order.cancelled", event)
        return event

    def update_status(self, caller, order_id, status):
        """Advances a confirmed order one fulfillment step. No stock effect."""
        require_role(caller, UserRole.SELLER, UserRole.ADMIN)
        target = coerce_enum(OrderStatus, status, "status")
        with self.session_factory.begin() as session:
            order = self._lock_order(session, order_id)
            if caller.is_seller:
                self._require_seller_items(session, order, caller.user_id)
            if NEXT_FULFILLMENT_STATUS.get(order.status) is not target:
                raise InvalidStateTransitionError(order.status, f"move to {target.value}")
            previous = order.status
            self._write(session, order, target)
            event = _event(order, previous_status=previous.value)

        logger.info("Order status advanced", order_id=order_id, status=target.value, previous=previous.value)
        self.publisher.publish("order.status_changed", event)
        return event

    def update_payment_status(self, caller, order_id, payment_status):
        """
        Sets the payment status. Independent of the order status: a cancelled
        order can still be marked paid.
        """
        require_role(caller, UserRole.CUSTOMER, UserRole.ADMIN)
        target = coerce_enum(PaymentStatus, payment_status, "payment status")
        with self.session_factory.begin() as session:
            order = self._lock_order(session, order_id)
            if not caller.is_admin and order.user_id != caller.user_id:
                raise NotFoundError("Order", order_id)
            session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(payment_status=target, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.refresh(order)
            event = _event(order)

        logger.info("Payment status updated", order_id=order_id, payment_status=target.value)
        self.publisher.publish("order.payment_status_changed", event)
        return event

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def _lock_order(self, session, order_id):
        if not is_storable_id(order_id):
            raise NotFoundError("Order", order_id)
        order = session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def _require_seller_items(self, session, order, seller_id):
        count = session.execute(
            select(func.count(OrderItem.id))
            .join(Product, OrderItem.product_id == Product.id)
            .where(OrderItem.order_id == order.id, Product.seller_id == seller_id)
        ).scalar_one()
        if count == 0:
            raise AuthorizationError("Access denied. No products in this order belong to this seller.")

    def _write(self, session, order, target, notes=None):
        current = order.status
        if not can_transition(current, target):
            raise InvalidStateTransitionError(current, f"move to {target.value}")

        values = {"status": target, "updated_at": utcnow()}
        if notes is not None:
            values["notes"] = notes
        result = session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(f"Order {order.id} was modified concurrently")
        session.refresh(order)

    def _release(self, session, lines):
        released = []
        for product_id, quantity in lines:
            self.ledger.release(session, product_id, quantity)
            released.append({"product_id": product_id, "quantity": quantity})
        return released


def _event(order, **extra):
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
    }
    data.update(extra)
    return data
