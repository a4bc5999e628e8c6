"""Typed errors raised by the order engine.

The engine never formats responses; the HTTP layer maps these to status codes.
"""


class MarketplaceError(Exception):
    """Base exception for all order engine errors."""

    pass


class ValidationError(MarketplaceError):
    """Raised for malformed or missing input."""

    pass


class OrderValidationError(ValidationError):
    """Raised when an order line references a product that cannot be ordered."""

    def __init__(self, product_id, reason: str):
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id}: {reason}")


class InsufficientStockError(OrderValidationError):
    """Raised when a reservation asks for more than the available stock."""

    def __init__(self, product_id, requested: int, available: int, product_name: str | None = None):
        self.requested = requested
        self.available = available
        label = product_name or f"product {product_id}"
        super().__init__(
            product_id,
            f"Insufficient stock for {label}. Requested: {requested}, available: {available}",
        )
        # Keep the message free of the "Product <id>:" prefix.
        self.args = (self.reason,)


class NotFoundError(MarketplaceError):
    """Raised when an order or product doesn't exist or isn't visible to the caller."""

    def __init__(self, kind: str, ident):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class AuthenticationError(MarketplaceError):
    """Raised when the caller cannot be identified."""

    pass


class AuthorizationError(MarketplaceError):
    """Raised when the caller lacks the role or ownership for an action."""

    pass


class InvalidStateTransitionError(MarketplaceError):
    """Raised when an action is not legal from the order's current status."""

    def __init__(self, current, action: str):
        self.current = current
        self.action = action
        status = getattr(current, "value", current)
        super().__init__(f"Cannot {action} order with status: {status}")


class ConflictError(MarketplaceError):
    """Raised on an order number collision or a concurrent modification."""

    pass
