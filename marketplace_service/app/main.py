# --- Imports ---
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .analytics import SalesAnalytics
from .auth import resolve_caller
from .database import init_db, make_engine, make_session_factory
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    InvalidStateTransitionError,
    MarketplaceError,
    NotFoundError,
    OrderValidationError,
    ValidationError,
)
from .lifecycle import OrderLifecycle
from .messaging.producer import make_publisher
from .models import Product
from .orders import OrderService
from .stock import StockLedger
from .utils.logging import add_context, clear_context, configure_logging

logger = structlog.get_logger(__name__)


# --- Request Models ---
class OrderItemRequest(BaseModel):
    """One line of a new order."""
    product_id: int
    quantity: int


class OrderCreateRequest(BaseModel):
    """Pydantic model for placing an order."""
    items: list[OrderItemRequest]
    shipping_address: str = ""
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str


class PaymentStatusRequest(BaseModel):
    payment_status: str


# Map exception types to HTTP status codes; subclasses resolve via the MRO.
ERROR_STATUS_CODES: dict[type, int] = {
    InsufficientStockError: 409,
    OrderValidationError: 400,
    ValidationError: 400,
    NotFoundError: 404,
    AuthenticationError: 401,
    AuthorizationError: 403,
    InvalidStateTransitionError: 409,
    ConflictError: 409,
}


def status_code_for(exc):
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


def create_app(session_factory=None, publisher=None):
    """
    Builds the FastAPI app around an injected session factory.

    Without one, the engine is created from DATABASE_URL and tables are
    created on startup.
    """
    if session_factory is None:
        session_factory = make_session_factory(make_engine())
    publisher = publisher or make_publisher()
    ledger = StockLedger()

    @asynccontextmanager
    async def lifespan(app):
        configure_logging()
        init_db(session_factory.kw["bind"])
        logger.info("Marketplace order service started")
        yield
        publisher.close()

    app = FastAPI(title="Marketplace order service", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.ledger = ledger
    app.state.orders = OrderService(session_factory, ledger=ledger, publisher=publisher)
    app.state.lifecycle = OrderLifecycle(session_factory, ledger=ledger, publisher=publisher)
    app.state.analytics = SalesAnalytics(session_factory)

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
        """Map MarketplaceError subclasses to appropriate HTTP responses."""
        status_code = status_code_for(exc)
        logger.info("Request failed", path=request.url.path, status_code=status_code, error=str(exc))
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error_type": type(exc).__name__},
        )

    _register_routes(app)
    return app


# --- Dependencies ---
def get_caller(request: Request, x_user_id: Optional[int] = Header(default=None)):
    """Resolves the X-User-Id header against the user store."""
    if x_user_id is None:
        raise AuthenticationError("Access denied. No user id provided.")
    with request.app.state.session_factory() as session:
        caller = resolve_caller(session, x_user_id)
    clear_context()
    add_context(user_id=caller.user_id, role=caller.role.value)
    return caller


def _register_routes(app):
    # --- Endpoints ---
    @app.get("/")
    def root():
        """Health check endpoint to confirm the order service is operational."""
        return {"message": "Marketplace order service is running"}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/v1/orders", status_code=201)
    def create_order(req: OrderCreateRequest, caller=Depends(get_caller)):
        """Places an order and reserves stock for every line."""
        order = app.state.orders.create_order(
            caller,
            [item.model_dump() for item in req.items],
            req.shipping_address,
            payment_method=req.payment_method,
            notes=req.notes,
        )
        return {"message": "Order created successfully", "order": order}

    @app.get("/api/v1/orders/my-orders")
    def list_my_orders(
        page: int = Query(default=1),
        limit: Optional[int] = Query(default=None),
        status: Optional[str] = Query(default=None),
        caller=Depends(get_caller),
    ):
        return app.state.orders.list_buyer_orders(caller, page, limit, status)

    @app.get("/api/v1/orders/seller")
    def list_seller_orders(
        page: int = Query(default=1),
        limit: Optional[int] = Query(default=None),
        status: Optional[str] = Query(default=None),
        caller=Depends(get_caller),
    ):
        return app.state.orders.list_seller_orders(caller, page, limit, status)

    @app.get("/api/v1/orders/analytics")
    def sales_analytics(seller_id: Optional[int] = Query(default=None), caller=Depends(get_caller)):
        return {"analytics": app.state.analytics.sales_analytics(caller, seller_id=seller_id)}

    @app.get("/api/v1/orders/sales-report")
    def sales_report(
        start_date: Optional[date] = Query(default=None, alias="startDate"),
        end_date: Optional[date] = Query(default=None, alias="endDate"),
        seller_id: Optional[int] = Query(default=None),
        caller=Depends(get_caller),
    ):
        report = app.state.analytics.sales_report(caller, start_date, end_date, seller_id=seller_id)
        return {"report": report, "count": len(report)}

    @app.get("/api/v1/orders")
    def list_all_orders(
        page: int = Query(default=1),
        limit: Optional[int] = Query(default=None),
        status: Optional[str] = Query(default=None),
        caller=Depends(get_caller),
    ):
        """Admin view of every order, optionally filtered by status."""
        return app.state.orders.list_all_orders(caller, page, limit, status)

    @app.get("/api/v1/orders/{order_id}")
    def get_order(order_id: int, caller=Depends(get_caller)):
        return {"order": app.state.orders.get_order(caller, order_id)}

    @app.get("/api/v1/orders/{order_id}/items")
    def get_order_items(order_id: int, caller=Depends(get_caller)):
        return {"items": app.state.orders.get_order_items(caller, order_id)}

    @app.patch("/api/v1/orders/{order_id}/accept")
    def accept_order(order_id: int, caller=Depends(get_caller)):
        order = app.state.lifecycle.accept(caller, order_id)
        return {"message": "Order accepted successfully", "order": order}

    @app.patch("/api/v1/orders/{order_id}/reject")
    def reject_order(order_id: int, req: Optional[RejectRequest] = None, caller=Depends(get_caller)):
        reason = req.reason if req is not None else None
        order = app.state.lifecycle.reject(caller, order_id, reason)
        return {"message": "Order rejected successfully", "order": order}

    @app.patch("/api/v1/orders/{order_id}/cancel")
    def cancel_order(order_id: int, caller=Depends(get_caller)):
        order = app.state.lifecycle.cancel(caller, order_id)
        return {"message": "Order cancelled successfully", "order": order}

    @app.patch("/api/v1/orders/{order_id}/status")
    def update_order_status(order_id: int, req: StatusUpdateRequest, caller=Depends(get_caller)):
        order = app.state.lifecycle.update_status(caller, order_id, req.status)
        return {"message": "Order status updated successfully", "order": order}

    @app.patch("/api/v1/orders/{order_id}/payment-status")
    def update_payment_status(order_id: int, req: PaymentStatusRequest, caller=Depends(get_caller)):
        order = app.state.lifecycle.update_payment_status(caller, order_id, req.payment_status)
        return {"message": "Payment status updated successfully", "order": order}

    @app.get("/api/v1/stock/{product_id}")
    def get_stock(product_id: int):
        """Current stock counter and listing status of a product."""
        with app.state.session_factory() as session:
            stock = app.state.ledger.available(session, product_id)
            product = session.get(Product, product_id)
            return {
                "product_id": product_id,
                "stock_qty": stock,
                "status": product.status.value,
                "in_stock": product.is_in_stock,
            }


app = create_app()
