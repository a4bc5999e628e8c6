import calendar
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select

from .auth import require_role
from .errors import AuthorizationError, ValidationError
from .models import Order, OrderItem, OrderStatus, Product, User, UserRole, is_storable_id, utcnow

logger = structlog.get_logger(__name__)

# Orders in these statuses never count as sales.
EXCLUDED_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REJECTED)

MONTHS_IN_SERIES = 6


def _month_start(moment):
    return datetime(moment.year, moment.month, 1)


def _shift_months(month_start, months):
    index = month_start.year * 12 + (month_start.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1)


def _money(value):
    return Decimal(value).quantize(Decimal("0.01"))


def _committed_seller_lines(seller_id):
    return (
        select(Order.id, Order.created_at, OrderItem.subtotal)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .join(Product, OrderItem.product_id == Product.id)
        .where(Product.seller_id == seller_id, Order.status.not_in(EXCLUDED_STATUSES))
    )


class SalesAnalytics:
    """Read-only revenue rollups over a seller's committed orders."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _seller_scope(self, caller, seller_id):
        if seller_id is not None and not is_storable_id(seller_id):
            raise ValidationError(f"Invalid seller id: {seller_id!r}")
        if caller.is_admin and seller_id is not None:
            return seller_id
        require_role(caller, UserRole.SELLER)
        if seller_id is not None and seller_id != caller.user_id:
            raise AuthorizationError("Access denied. Sellers can only view their own sales.")
        return caller.user_id

    def sales_analytics(self, caller, seller_id=None, now=None):
        """
        Totals for all time and for the current month, plus a six month
        revenue series (current month included) with empty months as zero.
        """
        seller_id = self._seller_scope(caller, seller_id)
        now = now or utcnow()
        this_month = _month_start(now)
        months = [_shift_months(this_month, offset) for offset in range(-(MONTHS_IN_SERIES - 1), 1)]

        with self.session_factory() as session:
            rows = session.execute(_committed_seller_lines(seller_id)).all()

        total_revenue = Decimal("0")
        order_ids = set()
        month_revenue = Decimal("0")
        month_order_ids = set()
        series = {m: Decimal("0") for m in months}

        for order_id, created_at, subtotal in rows:
            subtotal = Decimal(subtotal)
            total_revenue += subtotal
            order_ids.add(order_id)
            bucket = _month_start(created_at)
            if bucket == this_month:
                month_revenue += subtotal
                month_order_ids.add(order_id)
            if bucket in series:
                series[bucket] += subtotal

        analytics = {
            "total_revenue": _money(total_revenue),
            "total_orders": len(order_ids),
            "this_month_sales": _money(month_revenue),
            "this_month_orders": len(month_order_ids),
            "monthly_sales": [
                {
                    "month": calendar.month_abbr[m.month],
                    "month_key": f"{m.year:04d}-{m.month:02d}",
                    "revenue": _money(series[m]),
                }
                for m in months
            ],
        }
        logger.info(
            "Sales analytics computed",
            seller_id=seller_id,
            total_orders=analytics["total_orders"],
            total_revenue=str(analytics["total_revenue"]),
        )
        return analytics

    def sales_report(self, caller, start_date=None, end_date=None, seller_id=None):
        """
        One row per (order, line item) for the seller's products, newest first.

        Plain dates are whole days, both ends inclusive.
        """
        seller_id = self._seller_scope(caller, seller_id)
        lower = _lower_bound(start_date)
        upper = _upper_bound(end_date)
        if lower is not None and upper is not None and lower > upper:
            raise ValidationError("start_date must not be after end_date")

        query = (
            select(
                Order.id,
                Order.order_number,
                Order.created_at,
                Order.status,
                Order.payment_status,
                User.name,
                User.email,
                User.phone,
                OrderItem.product_name,
                OrderItem.quantity,
                OrderItem.price,
                OrderItem.subtotal,
            )
            .join(User, Order.user_id == User.id)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .join(Product, OrderItem.product_id == Product.id)
            .where(Product.seller_id == seller_id, Order.status.not_in(EXCLUDED_STATUSES))
            .order_by(Order.created_at.desc(), Order.id.desc(), OrderItem.id)
        )
        if lower is not None:
            query = query.where(Order.created_at >= lower)
        if upper is not None:
            query = query.where(Order.created_at <= upper)

        with self.session_factory() as session:
            rows = session.execute(query).all()

        report = [
            {
                "order_id": row[0],
                "order_number": row[1],
                "created_at": row[2],
                "status": row[3].value,
                "payment_status": row[4].value,
                "customer_name": row[5],
                "customer_email": row[6],
                "customer_phone": row[7],
                "product_name": row[8],
                "quantity": row[9],
                "price": row[10],
                "subtotal": row[11],
            }
            for row in rows
        ]
        logger.info("Sales report generated", seller_id=seller_id, rows=len(report))
        return report


def _lower_bound(value):
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise ValidationError(f"Invalid start date: {value!r}")


def _upper_bound(value):
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        # Inclusive of the whole end day.
        return datetime.combine(value + timedelta(days=1), time.min) - timedelta(microseconds=1)
    raise ValidationError(f"Invalid end date: {value!r}")
