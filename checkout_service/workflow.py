"""
workflow.py — Core Orchestration Logic for Checkout and Payment Settlement

This module coordinates pricing, the payment gateway and the document store
for every checkout path.

Workflow Overview:
1. Online payment, initiation: verify the cart price, create a gateway order for
   the verified amount, persist the verified pricing as a checkout session.
2. Online payment, settlement: verify the gateway signature, check whether the
   payment already produced an order, otherwise commit the order from the
   stored checkout session. At most one order exists per gateway payment id.
3. Cash on delivery: re-price the cart and commit the order directly.
4. Gateway webhooks: verify the signature and apply payment status changes.

Committed orders trigger commit hooks (coupon redemption, order events) exactly
once, from the request that won the atomic create.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .clients import PaymentGateway, webhook_signature
from .errors import (
    CheckoutSessionNotFound,
    DocumentExists,
    InvalidRequest,
    OrderNotFound,
    PaymentGatewayUnavailable,
    PaymentVerificationFailed,
    StoreUnavailable,
    WebhookSignatureInvalid,
    format_validation_errors,
)
from .logging_config import get_logger
from .models import (
    AuthenticatedUser,
    CheckoutSession,
    CodPlaceOrderRequest,
    CodValidateRequest,
    CreatePaymentOrderRequest,
    CreatePaymentOrderResponse,
    Order,
    OrderItem,
    VerifiedPricing,
    VerifyPaymentRequest,
    WebhookEvent,
)
from .pricing import OrderPricingEngine
from .store import SERVER_TIMESTAMP, DocumentStore

log = get_logger(__name__)

ORDERS_COLLECTION = "orders"
CHECKOUTS_COLLECTION = "checkouts"

STATUS_MESSAGES = {
    "processing": "Your order is being processed. We will notify you once it ships.",
}

CommitHook = Callable[[Order], None]


def order_id_for_payment(payment_id: str) -> str:
    """Order id owned by a gateway payment id; the settlement idempotency key."""
    return "ord_" + payment_id[len("pay_"):] if payment_id.startswith("pay_") else "ord_" + payment_id


def order_id_for_submission(user_id: str, submission_id: str) -> str:
    """Order id owned by one cash-on-delivery form submission of one user."""
    digest = hashlib.sha256(f"{user_id}:{submission_id}".encode()).hexdigest()
    return "cod_" + digest[:24]


def build_order(
        order_id: str,
        user_id: str,
        pricing: VerifiedPricing,
        currency: str,
        payment_method: str,
        address=None,
        payment_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
) -> Order:
    """Builds an order from verified pricing. Client input never reaches the amounts."""
    return Order(
        id=order_id,
        userId=user_id,
        items=[
            OrderItem(
                productId=item.productId,
                name=item.name,
                quantity=item.quantity,
                unitPrice=item.unitPrice,
                lineTotal=item.lineTotal,
            )
            for item in pricing.resolvedItems
        ],
        subtotal=pricing.verifiedSubtotal,
        discount=pricing.discount,
        total=pricing.finalTotal,
        currency=currency,
        couponCode=pricing.couponCode,
        address=address,
        paymentMethod=payment_method,
        paymentId=payment_id,
        gatewayOrderId=gateway_order_id,
        paymentStatus="paid" if payment_method == "online" else "pending",
        status="processing",
        statusMessage=STATUS_MESSAGES["processing"],
    )


def _order_from_document(doc) -> Order:
    return Order.model_validate({**doc.data, "id": doc.id})


def commit_order(store: DocumentStore, order: Order) -> Tuple[Order, bool]:
    """
    Atomically persists an order under its id.

    Returns:
        (order, created): `created` is False when another request already
        committed an order with this id; the stored order is returned instead.
    """
    data = order.model_dump(exclude={"id"})
    data["createdAt"] = SERVER_TIMESTAMP
    try:
        doc = store.create(ORDERS_COLLECTION, order.id, data)
    except DocumentExists:
        existing = store.get(ORDERS_COLLECTION, order.id)
        if existing is None:
            # Create lost to a writer whose document is not readable yet.
            raise StoreUnavailable(f"Order {order.id} is being committed; retry with the same key")
        return _order_from_document(existing), False
    return _order_from_document(doc), True


def run_commit_hooks(order: Order, hooks: Sequence[CommitHook]):
    """
    Runs post-commit hooks. The order is already committed, so a failing hook
    is logged for manual reconciliation and does not stop the others.
    """
    for hook in hooks:
        try:
            hook(order)
        except Exception as e:
            log.critical(
                f"[Order: {order.id}] Commit hook {type(hook).__name__} failed: {e}. MANUAL ACTION REQUIRED!",
                exc_info=True,
            )


# --- 1. Online payment: initiation ---


class PaymentOrderInitiator:
    """Creates a gateway order for the verified amount of a cart."""

    def __init__(self, engine: OrderPricingEngine, gateway: PaymentGateway, store: DocumentStore, currency: str = "INR"):
        self.engine = engine
        self.gateway = gateway
        self.store = store
        self.currency = currency

    def create_payment_order(self, user: AuthenticatedUser, request: CreatePaymentOrderRequest) -> CreatePaymentOrderResponse:
        """
        Prices the cart and opens a gateway order for exactly that amount.

        Args:
            user (AuthenticatedUser): Caller resolved from the bearer token.
            request (CreatePaymentOrderRequest): Validated request body.

        Returns:
            CreatePaymentOrderResponse: Gateway order id and the verified breakdown.

        Raises:
            PricingError: If the cart cannot be priced.
            PaymentGatewayUnavailable / PaymentGatewayError: If the gateway order fails.
            StoreUnavailable: If the checkout session cannot be stored.
        """
        log_prefix = f"[Checkout: {user.uid}]"
        log.info(f"{log_prefix} Step 1: Pricing {len(request.cartItems)} cart line(s).")
        pricing = self.engine.price(request.cartItems, request.couponCode)

        # Conversion of whole rupees to paise
        amount = pricing.finalTotal * 100
        receipt = request.receipt or f"order_{int(time.time() * 1000)}"

        notes = dict(request.notes or {})
        notes.update({
            "userId": user.uid,
            "itemCount": str(len(pricing.resolvedItems)),
            "verifiedSubtotal": str(pricing.verifiedSubtotal),
            "discount": str(pricing.discount),
            "couponCode": pricing.couponCode or "none",
        })

        log.info(f"{log_prefix} Step 2: Creating gateway order for {amount} paise (receipt {receipt}).")
        payment_order = self.gateway.create_order(amount, self.currency, receipt, notes)

        log.info(f"{log_prefix} Step 3: Storing checkout session {payment_order.gatewayOrderId}.")
        session = CheckoutSession(
            userId=user.uid,
            pricing=pricing,
            amount=payment_order.amount,
            currency=payment_order.currency,
            receipt=receipt,
            address=request.address,
        )
        session_data = session.model_dump()
        session_data["createdAt"] = SERVER_TIMESTAMP
        self.store.create(CHECKOUTS_COLLECTION, payment_order.gatewayOrderId, session_data)

        return CreatePaymentOrderResponse(
            orderId=payment_order.gatewayOrderId,
            amount=payment_order.amount,
            currency=payment_order.currency,
            verifiedTotal=pricing.verifiedSubtotal,
            discount=pricing.discount,
            finalTotal=pricing.finalTotal,
            verificationDetails=pricing.verification_details(),
        )


# --- 2. Online payment: settlement ---


class SettlementState(Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    ALREADY_PROCESSED = "already_processed"
    COMMITTING = "committing"
    COMMITTED = "committed"


@dataclass(frozen=True)
class SettlementResult:
    order: Order
    state: SettlementState

    @property
    def already_processed(self) -> bool:
        return self.state is SettlementState.ALREADY_PROCESSED


class PaymentSettlementHandler:
    """
    Turns a verified gateway payment into exactly one committed order.

    States: RECEIVED → VERIFIED → (ALREADY_PROCESSED | COMMITTING → COMMITTED).
    """

    def __init__(self, gateway: PaymentGateway, store: DocumentStore, hooks: Sequence[CommitHook] = ()):
        self.gateway = gateway
        self.store = store
        self.hooks = list(hooks)

    def settle(self, user: AuthenticatedUser, callback: VerifyPaymentRequest) -> SettlementResult:
        """
        Settles a payment callback.

        Raises:
            PaymentVerificationFailed: Bad signature, or the payment belongs to another user.
            CheckoutSessionNotFound: No stored pricing for the gateway order.
            PaymentGatewayUnavailable: Verification secret not configured.
            StoreUnavailable: Transient store failure; retry with the same payment id.
        """
        payment_id = callback.razorpay_payment_id
        gateway_order_id = callback.razorpay_order_id
        log_prefix = f"[Payment: {payment_id}]"
        state = SettlementState.RECEIVED
        log.info(f"{log_prefix} {state.name}: callback for gateway order {gateway_order_id}.")

        if not self.gateway.verify_payment_signature(gateway_order_id, payment_id, callback.razorpay_signature):
            log.error(f"{log_prefix} Signature verification failed for gateway order {gateway_order_id}.")
            raise PaymentVerificationFailed()
        state = SettlementState.VERIFIED

        order_id = order_id_for_payment(payment_id)
        existing = self.store.get(ORDERS_COLLECTION, order_id)
        if existing is not None:
            return self._already_processed(user, _order_from_document(existing), log_prefix)

        state = SettlementState.COMMITTING
        session = self._load_session(gateway_order_id)
        if session.userId != user.uid:
            log.error(f"{log_prefix} Checkout {gateway_order_id} belongs to another user; refusing settlement.")
            raise PaymentVerificationFailed("Payment does not belong to this account")

        log.info(f"{log_prefix} {state.name}: order {order_id} for {session.pricing.finalTotal} {session.currency}.")
        order = build_order(
            order_id,
            user.uid,
            session.pricing,
            session.currency,
            "online",
            address=session.address,
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
        )
        committed, created = commit_order(self.store, order)
        if not created:
            return self._already_processed(user, committed, log_prefix)

        state = SettlementState.COMMITTED
        log.info(f"{log_prefix} {state.name}: order {order_id} created.")
        run_commit_hooks(committed, self.hooks)
        self._mark_session_committed(gateway_order_id, order_id, log_prefix)
        return SettlementResult(committed, state)

    def _load_session(self, gateway_order_id: str) -> CheckoutSession:
        doc = self.store.get(CHECKOUTS_COLLECTION, gateway_order_id)
        if doc is None:
            log.error(f"[Payment order: {gateway_order_id}] No checkout session stored.")
            raise CheckoutSessionNotFound(gateway_order_id)
        return CheckoutSession.model_validate(doc.data)

    def _already_processed(self, user: AuthenticatedUser, order: Order, log_prefix: str) -> SettlementResult:
        if order.userId != user.uid:
            log.error(f"{log_prefix} Replay of a payment owned by another user.")
            raise PaymentVerificationFailed("Payment does not belong to this account")
        log.info(f"{log_prefix} ALREADY_PROCESSED: order {order.id} exists.")
        return SettlementResult(order, SettlementState.ALREADY_PROCESSED)

    def _mark_session_committed(self, gateway_order_id: str, order_id: str, log_prefix: str):
        try:
            self.store.update(CHECKOUTS_COLLECTION, gateway_order_id, {"status": "committed", "orderId": order_id})
        except StoreUnavailable as e:
            # The order itself is committed; the session flag is bookkeeping only.
            log.warning(f"{log_prefix} Could not mark checkout {gateway_order_id} committed: {e}")


# --- 3. Cash on delivery ---


class CashOnDeliveryCheckout:
    """Prices and commits cash-on-delivery orders; no gateway is involved."""

    def __init__(self, engine: OrderPricingEngine, store: DocumentStore, hooks: Sequence[CommitHook] = (), currency: str = "INR"):
        self.engine = engine
        self.store = store
        self.hooks = list(hooks)
        self.currency = currency

    def validate(self, request: CodValidateRequest) -> VerifiedPricing:
        return self.engine.price(request.cartItems, request.couponCode)

    def place_order(self, user: AuthenticatedUser, request: CodPlaceOrderRequest) -> Tuple[Order, bool]:
        """
        Commits a COD order priced from trusted data.

        Returns:
            (order, already_processed): a resubmission returns the first order.
        """
        order_id = order_id_for_submission(user.uid, request.submissionId)
        log_prefix = f"[Order: {order_id}]"

        existing = self.store.get(ORDERS_COLLECTION, order_id)
        if existing is not None:
            log.info(f"{log_prefix} Duplicate COD submission {request.submissionId}; returning existing order.")
            return _order_from_document(existing), True

        pricing = self.engine.price(request.cartItems, request.couponCode)
        order = build_order(order_id, user.uid, pricing, self.currency, "cod", address=request.address)
        committed, created = commit_order(self.store, order)
        if not created:
            return committed, True

        log.info(f"{log_prefix} COD order created for {pricing.finalTotal} {self.currency}.")
        run_commit_hooks(committed, self.hooks)
        return committed, False


# --- 4. Gateway webhooks ---


class PaymentWebhookHandler:
    """Verifies signed gateway events and applies payment status changes."""

    def __init__(self, store: DocumentStore, webhook_secret: str):
        self.store = store
        self.webhook_secret = webhook_secret

    def handle(self, body: bytes, signature: Optional[str]) -> WebhookEvent:
        """
        Raises:
            PaymentGatewayUnavailable: Webhook secret not configured.
            InvalidRequest: Missing signature header or malformed payload.
            WebhookSignatureInvalid: Signature does not match the body.
        """
        if not self.webhook_secret:
            log.error("RAZORPAY_WEBHOOK_SECRET not configured")
            raise PaymentGatewayUnavailable("Webhook not configured")
        if not signature:
            log.error("Webhook without signature header")
            raise InvalidRequest("Missing signature")
        if not hmac.compare_digest(webhook_signature(body, self.webhook_secret), signature):
            log.error("Webhook signature verification failed")
            raise WebhookSignatureInvalid()

        try:
            event = WebhookEvent.model_validate_json(body)
            self._dispatch(event)
        except ValidationError as e:
            raise InvalidRequest("Invalid webhook payload", details=format_validation_errors(e.errors()))
        return event

    def _dispatch(self, event: WebhookEvent):
        log.info(f"[Webhook: {event.id}] Received {event.event}.")

        if event.event == "payment.captured":
            payment = event.payload.payment_entity()
            if payment is not None:
                self._set_payment_status(payment.id, "captured")

        elif event.event == "payment.failed":
            payment = event.payload.payment_entity()
            if payment is not None:
                log.warning(f"[Payment: {payment.id}] Payment failed: {payment.model_extra.get('error_description')}")
                if payment.order_id:
                    self._mark_session_failed(payment.order_id)

        elif event.event == "refund.created":
            refund = event.payload.refund_entity()
            if refund is not None and refund.payment_id:
                self._set_payment_status(refund.payment_id, "refunded")

        else:
            log.info(f"[Webhook: {event.id}] No action for {event.event}.")

    def _set_payment_status(self, payment_id: str, status: str):
        order_id = order_id_for_payment(payment_id)
        if self.store.update(ORDERS_COLLECTION, order_id, {"paymentStatus": status}):
            log.info(f"[Order: {order_id}] Payment status set to {status}.")
        else:
            log.info(f"[Payment: {payment_id}] No committed order yet; {status} not recorded.")

    def _mark_session_failed(self, gateway_order_id: str):
        doc = self.store.get(CHECKOUTS_COLLECTION, gateway_order_id)
        if doc is not None and doc.data.get("status") == "created":
            self.store.update(CHECKOUTS_COLLECTION, gateway_order_id, {"status": "payment_failed"})


# --- Order lookup ---


def list_orders(store: DocumentStore, user_id: str) -> List[Order]:
    """The user's orders, newest first."""
    orders = [_order_from_document(doc) for doc in store.find(ORDERS_COLLECTION, {"userId": user_id})]
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(orders, key=lambda o: o.createdAt or oldest, reverse=True)


def get_order(store: DocumentStore, user_id: str, order_id: str) -> Order:
    doc = store.get(ORDERS_COLLECTION, order_id)
    if doc is None or doc.data.get("userId") != user_id:
        raise OrderNotFound(order_id)
    return _order_from_document(doc)
