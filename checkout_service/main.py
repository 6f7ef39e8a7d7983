"""
main.py — FastAPI Entry Point for the Checkout Service

This module provides the REST API of the storefront checkout. It wires the
request guards, the pricing engine and the settlement workflow together and
maps domain errors to HTTP responses.

Responsibilities:
    • Create gateway orders for server-verified cart totals
    • Settle payment callbacks into exactly one order per payment
    • Validate and place cash-on-delivery orders
    • Receive signed gateway webhooks
    • Serve the caller's orders and system health information

Every checkout endpoint runs its guards in a fixed order: origin check (403),
bearer authentication (401), rate limit (429), then body validation (400).
"""

import time
from typing import Callable, List, Optional, Sequence

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .catalog import PriceResolver
from .clients import FirebaseIdentityResolver, IdentityResolver, OrderEventPublisher, PaymentGateway, RazorpayClient
from .config import Settings, load_settings
from .coupons import CouponEvaluator, CouponRedemptionHook
from .errors import (
    AuthenticationRequired,
    CheckoutError,
    CheckoutSessionNotFound,
    InvalidRequest,
    OrderNotFound,
    OriginRejected,
    PaymentGatewayError,
    PaymentGatewayUnavailable,
    PaymentVerificationFailed,
    PricingError,
    RateLimitExceeded,
    StoreUnavailable,
    WebhookSignatureInvalid,
    format_validation_errors,
)
from .logging_config import get_logger, setup_logging
from .models import (
    AuthenticatedUser,
    CodPlaceOrderRequest,
    CodPlaceOrderResponse,
    CodValidateRequest,
    CodValidateResponse,
    CreatePaymentOrderRequest,
    CreatePaymentOrderResponse,
    Order,
    OrderListResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from .pricing import OrderPricingEngine
from .security import InMemoryRateLimitStore, SlidingWindowRateLimiter, rate_limit_identifier, validate_origin
from .store import DocumentStore, InMemoryDocumentStore, MongoDocumentStore
from .workflow import (
    CashOnDeliveryCheckout,
    CommitHook,
    PaymentOrderInitiator,
    PaymentSettlementHandler,
    PaymentWebhookHandler,
    get_order,
    list_orders,
)

log = get_logger(__name__)

# Map exception types to HTTP status codes; the first match along the MRO wins.
ERROR_STATUS_CODES = {
    InvalidRequest: 400,
    PricingError: 400,
    PaymentVerificationFailed: 400,
    CheckoutSessionNotFound: 400,
    AuthenticationRequired: 401,
    WebhookSignatureInvalid: 401,
    OriginRejected: 403,
    OrderNotFound: 404,
    RateLimitExceeded: 429,
    PaymentGatewayError: 502,
    PaymentGatewayUnavailable: 503,
    StoreUnavailable: 503,
}


def status_code_for(exc: Exception) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


def error_body(exc: CheckoutError) -> dict:
    body = {"error": exc.message, "code": exc.code}
    if exc.details is not None:
        body["details"] = exc.details
    return body


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        log.warning("Using the in-memory document store; data is lost on restart.")
        return InMemoryDocumentStore()
    return MongoDocumentStore.connect(settings.mongodb_url, settings.mongodb_database)


def create_app(
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        gateway: Optional[PaymentGateway] = None,
        identity: Optional[IdentityResolver] = None,
        hooks: Optional[Sequence[CommitHook]] = None,
        rate_limit_store: Optional[InMemoryRateLimitStore] = None,
        clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Builds the application. Collaborators not passed in are built from `settings`.

    Args:
        settings (Settings, optional): Defaults to `load_settings()`.
        store (DocumentStore, optional): Product, coupon, checkout and order storage.
        gateway (PaymentGateway, optional): Defaults to a `RazorpayClient`.
        identity (IdentityResolver, optional): Defaults to a `FirebaseIdentityResolver`.
        hooks (list, optional): Commit hooks. Defaults to coupon redemption plus the
            order event publisher when RabbitMQ is configured.
        rate_limit_store (InMemoryRateLimitStore, optional): Shared sliding-window log.
        clock (callable): Time source of the rate limiters.
    """
    settings = settings or load_settings()
    setup_logging(settings.log_level, settings.log_file)

    store = store if store is not None else build_store(settings)
    gateway = gateway or RazorpayClient(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        base_url=settings.razorpay_api_url,
        timeout=settings.http_timeout_seconds,
    )
    identity = identity or FirebaseIdentityResolver(
        settings.firebase_api_key,
        base_url=settings.identity_service_url,
        timeout=settings.http_timeout_seconds,
    )

    closeables: List = [c for c in (store, gateway, identity) if hasattr(c, "close")]
    if hooks is None:
        hooks = [CouponRedemptionHook(store)]
        if settings.rabbitmq_host:
            publisher = OrderEventPublisher(
                settings.rabbitmq_host,
                settings.rabbitmq_user,
                settings.rabbitmq_password,
                settings.order_events_queue,
            )
            hooks.append(publisher)
            closeables.append(publisher)
        else:
            log.info("RABBITMQ_HOST not set; order events are not published.")

    engine = OrderPricingEngine(PriceResolver(store), CouponEvaluator(store))
    initiator = PaymentOrderInitiator(engine, gateway, store, settings.payment_currency)
    settlement = PaymentSettlementHandler(gateway, store, hooks)
    cod = CashOnDeliveryCheckout(engine, store, hooks, settings.payment_currency)
    webhooks = PaymentWebhookHandler(store, settings.razorpay_webhook_secret)

    limits = rate_limit_store or InMemoryRateLimitStore()
    window = settings.rate_limit_window_seconds
    critical_limiter = SlidingWindowRateLimiter(limits, settings.rate_limit_critical, window, "critical", clock)
    webhook_limiter = SlidingWindowRateLimiter(limits, settings.rate_limit_webhook, window, "webhook", clock)
    allowed_origins = settings.origin_allow_list()

    app = FastAPI(title="Storefront Checkout Service")

    # --- Guards ---

    def require_allowed_origin(request: Request):
        if not validate_origin(request.method, request.url.path, request.headers, allowed_origins):
            raise OriginRejected()

    def require_user(request: Request, _origin=Depends(require_allowed_origin)) -> AuthenticatedUser:
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationRequired()
        user = identity.resolve(token)
        if user is None:
            raise AuthenticationRequired("Invalid or expired token")
        return user

    def _enforce(limiter: SlidingWindowRateLimiter, identifier: str, response: Response):
        decision = limiter.check(identifier)
        if not decision.allowed:
            raise RateLimitExceeded(decision.limit, decision.retry_after)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(decision.reset_at))

    def checkout_user(request: Request, response: Response, user=Depends(require_user)) -> AuthenticatedUser:
        client_host = request.client.host if request.client else None
        _enforce(critical_limiter, rate_limit_identifier(request.headers, client_host, user.uid), response)
        return user

    def webhook_rate_limit(request: Request, response: Response):
        client_host = request.client.host if request.client else None
        _enforce(webhook_limiter, rate_limit_identifier(request.headers, client_host), response)

    # --- Error handling ---

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
        """Map CheckoutError subclasses to `{error, code, details?}` responses."""
        status_code = status_code_for(exc)
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
            }
        if status_code >= 500:
            log.error(f"{request.method} {request.url.path} failed with {exc.code}: {exc.message}")
        return JSONResponse(status_code=status_code, content=error_body(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request data",
                "code": "INVALID_REQUEST",
                "details": format_validation_errors(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log.critical(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})

    # --- Lifecycle ---

    @app.on_event("shutdown")
    def on_shutdown():
        """Closes HTTP sessions, the database client and the RabbitMQ connection."""
        for closeable in closeables:
            try:
                closeable.close()
            except Exception as e:
                log.warning(f"Error while closing {type(closeable).__name__}: {e}")
        log.info("Checkout service stopped.")

    # --- Online payment ---

    @app.post("/checkout/online/create-order", response_model=CreatePaymentOrderResponse)
    def create_payment_order(
            body: CreatePaymentOrderRequest,
            user: AuthenticatedUser = Depends(checkout_user),
    ):
        """
        Creates a gateway order for the server-verified total of a cart.

        Client-declared prices and totals are never read. The verified pricing
        is stored as a checkout session and is the only amount settlement will
        record on the order.

        Returns:
            CreatePaymentOrderResponse: Gateway order id, amount in paise and the
            verified price breakdown.
        """
        return initiator.create_payment_order(user, body)

    @app.post("/checkout/online/verify-payment", response_model=VerifyPaymentResponse)
    def verify_payment(
            body: VerifyPaymentRequest,
            user: AuthenticatedUser = Depends(checkout_user),
    ):
        """
        Settles a payment callback. Retrying with the same payment id is safe:
        the first call commits the order, later calls report `already_processed`.
        """
        result = settlement.settle(user, body)
        return VerifyPaymentResponse(
            already_processed=result.already_processed,
            payment_id=body.razorpay_payment_id,
            order_id=result.order.id,
            gateway_order_id=body.razorpay_order_id,
            total=result.order.total,
        )

    @app.post("/checkout/online/webhook", dependencies=[Depends(webhook_rate_limit)])
    async def payment_webhook(request: Request):
        """
        Receives signed gateway events. Server-to-server, so no origin or
        bearer guard; the raw body signature authenticates the sender.
        """
        body = await request.body()
        signature = request.headers.get("x-razorpay-signature")
        await run_in_threadpool(webhooks.handle, body, signature)
        return {"received": True}

    # --- Cash on delivery ---

    @app.post("/checkout/cod/validate", response_model=CodValidateResponse)
    def validate_cod_order(
            body: CodValidateRequest,
            user: AuthenticatedUser = Depends(checkout_user),
    ):
        pricing = cod.validate(body)
        log.info(f"[Checkout: {user.uid}] COD cart validated at {pricing.finalTotal}.")
        return CodValidateResponse(
            verifiedTotal=pricing.verifiedSubtotal,
            discount=pricing.discount,
            finalTotal=pricing.finalTotal,
            verificationDetails=pricing.verification_details(),
        )

    @app.post("/checkout/cod/place-order", response_model=CodPlaceOrderResponse)
    def place_cod_order(
            body: CodPlaceOrderRequest,
            user: AuthenticatedUser = Depends(checkout_user),
    ):
        """Commits a cash-on-delivery order; resubmitting the same `submissionId` is safe."""
        order, already_processed = cod.place_order(user, body)
        return CodPlaceOrderResponse(
            already_processed=already_processed,
            order_id=order.id,
            verifiedTotal=order.subtotal,
            discount=order.discount,
            finalTotal=order.total,
        )

    # --- Orders ---

    @app.get("/orders", response_model=OrderListResponse)
    def get_my_orders(user: AuthenticatedUser = Depends(require_user)):
        orders = list_orders(store, user.uid)
        return OrderListResponse(orders=orders, count=len(orders))

    @app.get("/orders/{order_id}", response_model=Order)
    def get_my_order(order_id: str, user: AuthenticatedUser = Depends(require_user)):
        return get_order(store, user.uid, order_id)

    # --- Health ---

    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint for monitoring systems and container
        orchestrators.
        """
        return {"status": "ok"}

    log.info(f"Checkout service configured (store={settings.store_backend}, currency={settings.payment_currency}).")
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
