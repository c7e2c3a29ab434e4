"""
Mobile Shop API.

Serve with `uvicorn main:create_app --factory` (or `python main.py`); the
factory reads Settings from the environment and builds every service.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import ConnectionFailure, PyMongoError
from starlette.concurrency import run_in_threadpool

from admin import AdminService
from config import Settings, setup_logging
from database import TRANSIENT_TRANSACTION_ERROR, Database
from errors import (
    Conflict,
    ExternalServiceError,
    Forbidden,
    InternalError,
    InvalidRequest,
    NotFound,
    PaymentProviderUnavailable,
    ShopError,
    TransactionConflict,
    Unauthorized,
    WebhookProcessingError,
)
from orders import OrderService
from payments import PaymentService, StripeGateway
from products import ProductService
from schemas import (
    ConfirmPaymentRequest,
    LoginRequest,
    OrderCreate,
    OrderPatch,
    OrderStatus,
    PaymentIntentRequest,
    ProductIn,
    ProductPatch,
    RefundRequest,
    RegisterRequest,
    Role,
    UserPatch,
)
from users import UserService, public_user

logger = logging.getLogger(__name__)

router = APIRouter()
security = HTTPBearer(auto_error=False)


# Dependencies

def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_payments(request: Request) -> PaymentService:
    return request.app.state.payments


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_products(request: Request) -> ProductService:
    return request.app.state.products


def get_admin(request: Request) -> AdminService:
    return request.app.state.admin


def get_current_user(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Not authorized, no token")
    return request.app.state.users.resolve_token(credentials.credentials)


def require_roles(*roles: str):
    label = " or ".join(r.replace("_", " ") for r in roles)

    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise Forbidden(f"Not authorized as {label}")
        return user

    return dependency


require_admin = require_roles("admin", "super_admin")
require_super_admin = require_roles("super_admin")


def ok(data=None, **extra) -> dict:
    return {"success": True, "data": data, **extra}


# Health

@router.get("/")
def root():
    return {"status": "ok", "service": "mobile-shop-api"}


@router.get("/api/health")
def health(request: Request):
    connected = request.app.state.db.ping()
    return {"backend": "running", "database": "connected" if connected else "unavailable"}


# Auth

@router.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, users: UserService = Depends(get_users)):
    return ok(users.register(payload))


@router.post("/api/auth/login")
def login(payload: LoginRequest, users: UserService = Depends(get_users)):
    return ok(users.login(payload.email, payload.password))


@router.get("/api/auth/me")
def me(user: dict = Depends(get_current_user)):
    return ok(public_user(user))


# Products

@router.get("/api/products")
def list_products(category: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  products: ProductService = Depends(get_products)):
    items, pages = products.list_products(category, page, limit)
    return ok(items, pagination=pages)


@router.get("/api/products/categories")
def product_categories(products: ProductService = Depends(get_products)):
    return ok(products.categories())


@router.get("/api/products/{product_id}")
def get_product(product_id: str, products: ProductService = Depends(get_products)):
    return ok(products.get_product(product_id))


@router.post("/api/products", status_code=201)
def create_product(payload: ProductIn, user: dict = Depends(require_admin),
                   products: ProductService = Depends(get_products)):
    return ok(products.create_product(user, payload))


@router.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductPatch, user: dict = Depends(require_admin),
                   products: ProductService = Depends(get_products)):
    return ok(products.update_product(product_id, payload))


@router.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(require_admin),
                   products: ProductService = Depends(get_products)):
    products.delete_product(product_id)
    return {"success": True, "message": "Product deleted successfully"}


# Orders

@router.get("/api/orders")
def list_orders(status: Optional[OrderStatus] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    items, pages = orders.list_orders(str(user["_id"]), status, page, limit)
    return ok(items, pagination=pages)


@router.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, user: dict = Depends(get_current_user),
                 orders: OrderService = Depends(get_orders)):
    order = orders.create_order(
        user,
        payload.items,
        payload.shipping_address,
        billing_address=payload.billing_address,
        notes=payload.notes,
        payment_method=payload.payment_method,
    )
    return ok(order)


@router.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return ok(orders.get_order(str(user["_id"]), order_id))


@router.put("/api/orders/{order_id}")
def update_order(order_id: str, payload: OrderPatch, user: dict = Depends(get_current_user),
                 orders: OrderService = Depends(get_orders)):
    return ok(orders.update_order(user, order_id, payload))


# Payments

@router.post("/api/payments/create-payment-intent")
def create_payment_intent(payload: PaymentIntentRequest, user: dict = Depends(get_current_user),
                          payments: PaymentService = Depends(get_payments)):
    return ok(payments.create_payment_intent(user, payload.order_id))


@router.post("/api/payments/confirm-payment")
def confirm_payment(payload: ConfirmPaymentRequest, user: dict = Depends(get_current_user),
                    payments: PaymentService = Depends(get_payments)):
    order = payments.confirm_payment(user, payload.order_id, payload.payment_intent_id)
    return ok(order, message="Payment confirmed successfully")


@router.post("/api/payments/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    # signatures cover the raw bytes, so the body is read before any parsing
    payload = await request.body()
    return await run_in_threadpool(request.app.state.payments.handle_webhook, payload, stripe_signature)


@router.post("/api/payments/refund")
def refund(payload: RefundRequest, user: dict = Depends(require_admin),
           payments: PaymentService = Depends(get_payments)):
    result = payments.refund(user, payload.order_id, payload.reason, payload.amount)
    return ok(result, message="Refund processed successfully")


# Admin

@router.get("/api/admin/dashboard")
def admin_dashboard(user: dict = Depends(require_admin), admin: AdminService = Depends(get_admin)):
    return ok(admin.dashboard())


@router.get("/api/admin/orders")
def admin_orders(status: Optional[OrderStatus] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 user: dict = Depends(require_admin), admin: AdminService = Depends(get_admin)):
    items, pages = admin.list_orders(status, page, limit)
    return ok(items, pagination=pages)


@router.get("/api/admin/users")
def admin_users(role: Optional[Role] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                user: dict = Depends(require_admin), users: UserService = Depends(get_users)):
    items, pages = users.list_users(role, page, limit)
    return ok(items, pagination=pages)


@router.get("/api/admin/users/{user_id}")
def admin_get_user(user_id: str, user: dict = Depends(require_admin), users: UserService = Depends(get_users)):
    return ok(users.get_user(user_id))


@router.put("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, payload: UserPatch, user: dict = Depends(require_admin),
                      users: UserService = Depends(get_users)):
    return ok(users.update_user(user, user_id, payload))


@router.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, user: dict = Depends(require_super_admin),
                      users: UserService = Depends(get_users)):
    users.delete_user(user, user_id)
    return {"success": True, "message": "User deleted successfully"}


# Error handling

ERROR_STATUS_CODES: dict = {
    InvalidRequest: 400,
    Unauthorized: 401,
    Forbidden: 403,
    NotFound: 404,
    Conflict: 409,
    WebhookProcessingError: 500,
    InternalError: 500,
    ExternalServiceError: 502,
    PaymentProviderUnavailable: 503,
    TransactionConflict: 503,
}


def status_for(exc: ShopError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    status_code = status_for(exc)
    if isinstance(exc, ExternalServiceError):
        logger.error("%s %s: provider failure: %s", request.method, request.url.path, exc.detail)
    return _error(status_code, exc.message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return _error(400, f"{loc}: {msg}" if loc else msg)


async def database_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    if isinstance(exc, ConnectionFailure) or exc.has_error_label(TRANSIENT_TRANSACTION_ERROR):
        logger.warning("%s %s: database unavailable: %s", request.method, request.url.path, exc)
        return _error(503, "Database unavailable, please retry")
    logger.exception("%s %s: database error", request.method, request.url.path, exc_info=exc)
    return _error(500, "Internal server error")


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s: unhandled error", request.method, request.url.path, exc_info=exc)
    return _error(500, "Internal server error")


# App

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.db.ensure_indexes()
    yield
    app.state.db.close()


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None,
               gateway: Optional[StripeGateway] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    database = database or Database.from_settings(settings)
    gateway = gateway or StripeGateway.from_settings(settings)

    app = FastAPI(title="Mobile Shop API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    orders = OrderService(database)
    app.state.settings = settings
    app.state.db = database
    app.state.orders = orders
    app.state.payments = PaymentService(database, orders, gateway)
    app.state.users = UserService(database, settings)
    app.state.products = ProductService(database)
    app.state.admin = AdminService(database, orders)

    app.add_exception_handler(ShopError, shop_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=Settings.from_env().port)
