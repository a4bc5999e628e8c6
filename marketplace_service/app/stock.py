import structlog
from sqlalchemy import select, update

from .errors import InsufficientStockError, NotFoundError, ValidationError
from .models import Product, is_storable_id

logger = structlog.get_logger(__name__)


class StockLedger:
    """
    Per-product available quantity.

    Every change is a single conditional UPDATE on the caller's session, so it
    commits or rolls back with the caller's transaction and two concurrent
    reservations can never both succeed past the available stock.
    """

    def available(self, session, product_id):
        """Returns the live stock counter, or raises NotFoundError."""
        if not is_storable_id(product_id):
            raise NotFoundError("Product", product_id)
        stock = session.execute(
            select(Product.stock_qty).where(Product.id == product_id)
        ).scalar_one_or_none()
        if stock is None:
            raise NotFoundError("Product", product_id)
        return stock

    def reserve(self, session, product_id, quantity, product_name=None):
        """Decrements stock by `quantity` if at least that much is available."""
        _check_quantity(quantity)
        result = session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_qty >= quantity)
            .values(stock_qty=Product.stock_qty - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            available = self.available(session, product_id)
            raise InsufficientStockError(product_id, quantity, available, product_name)

        logger.debug("Stock reserved", product_id=product_id, quantity=quantity)

    def release(self, session, product_id, quantity):
        """Adds `quantity` back to stock. Trusted to match a prior reservation."""
        _check_quantity(quantity)
        result = session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_qty=Product.stock_qty + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Product", product_id)

        logger.debug("Stock released", product_id=product_id, quantity=quantity)


def _check_quantity(quantity):
    # bool is an int subclass; reject it explicitly.
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"Quantity must be a positive integer, got {quantity!r}")
