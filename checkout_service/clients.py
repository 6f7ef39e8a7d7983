"""
This module provides communication clients for external systems used by the checkout service:
- Payment gateway (Razorpay REST API)
- Identity provider (Firebase Identity Toolkit REST API)
- Order event queue (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import hashlib
import hmac
import json
import time
import uuid
from typing import Dict, Optional, Protocol

import httpx
import pika
import pika.exceptions

from .errors import PaymentGatewayError, PaymentGatewayUnavailable
from .logging_config import get_logger
from .models import AuthenticatedUser, Order, PaymentOrder

log = get_logger(__name__)


def payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    """HMAC-SHA256 hex digest the gateway attaches to a completed payment."""
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def webhook_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of a raw webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class PaymentGateway(Protocol):
    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> PaymentOrder:
        ...

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...


class IdentityResolver(Protocol):
    def resolve(self, token: str) -> Optional[AuthenticatedUser]:
        ...


# --- Payment Gateway Client (REST) ---
class RazorpayClient:
    """
    Client for the Razorpay Orders API.
    Creates gateway orders and verifies payment callback signatures.
    """
    def __init__(
            self,
            key_id: str,
            key_secret: str,
            base_url: str = "https://api.razorpay.com",
            timeout: float = 8.0,
            http_client: Optional[httpx.Client] = None
    ):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            key_id (str): API key id; empty means the gateway is not configured.
            key_secret (str): API key secret, also used to verify payment signatures.
            base_url (str): Gateway API root.
            timeout (float): Read timeout in seconds.
            http_client (httpx.Client, optional): Pre-built client, e.g. for tests.
        """
        self.key_id = key_id
        self.key_secret = key_secret
        timeout_config = httpx.Timeout(5.0, read=timeout)
        self.client = http_client or httpx.Client(base_url=base_url, timeout=timeout_config)

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def _require_credentials(self):
        if not self.key_id or not self.key_secret:
            log.error("Razorpay credentials not configured (RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET).")
            raise PaymentGatewayUnavailable("Payment gateway not configured")

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> PaymentOrder:
        """
        Creates a gateway order for an already verified amount.

        Args:
            amount (int): Amount in minor units (paise).
            currency (str): ISO currency code (e.g. 'INR').
            receipt (str): Merchant receipt reference.
            notes (dict): Metadata stored with the gateway order.
        Returns:
            PaymentOrder: The created gateway order.
        Raises:
            PaymentGatewayUnavailable: Missing or rejected credentials, timeout, or gateway 5xx.
            PaymentGatewayError: The gateway refused the request (other 4xx).
        """
        self._require_credentials()
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        }

        try:
            response = self.client.post("/v1/orders", json=payload, auth=(self.key_id, self.key_secret))
            response.raise_for_status()
        except httpx.TimeoutException:
            log.error(f"[Receipt: {receipt}] Payment gateway timeout. Order status unknown.")
            raise PaymentGatewayUnavailable("Payment gateway timed out")
        except httpx.TransportError as e:
            log.error(f"[Receipt: {receipt}] Payment gateway unreachable: {e}")
            raise PaymentGatewayUnavailable("Payment gateway unreachable")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                log.error(f"[Receipt: {receipt}] Payment gateway rejected our credentials.")
                raise PaymentGatewayUnavailable("Payment gateway not configured")
            if status >= 500:
                log.error(f"[Receipt: {receipt}] Payment gateway error (HTTP {status}).")
                raise PaymentGatewayUnavailable("Payment gateway unavailable")
            description = _error_description(e.response)
            log.warning(f"[Receipt: {receipt}] Payment gateway refused order (HTTP {status}): {description}")
            raise PaymentGatewayError(f"Failed to create payment order: {description}", status_code=status)

        data = response.json()
        return PaymentOrder(
            gatewayOrderId=data["id"],
            amount=data["amount"],
            currency=data["currency"],
            receipt=data.get("receipt"),
            notes=data.get("notes") or {},
            status=data.get("status"),
        )

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Checks the signature the gateway returned to the client after payment.

        Raises:
            PaymentGatewayUnavailable: If the key secret is not configured.
        """
        if not self.key_secret:
            log.error("RAZORPAY_KEY_SECRET not configured; cannot verify payments.")
            raise PaymentGatewayUnavailable("Payment verification not configured")
        expected = payment_signature(order_id, payment_id, self.key_secret)
        return hmac.compare_digest(expected, signature.lower())


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["description"]
    except (ValueError, KeyError, TypeError):
        return response.text[:200]


# --- Identity Client (REST) ---
class FirebaseIdentityResolver:
    """
    Resolves Firebase ID tokens to user ids through the Identity Toolkit API.
    Any failure yields None; the caller turns that into an authentication error.
    """
    def __init__(
            self,
            api_key: str,
            base_url: str = "https://identitytoolkit.googleapis.com",
            timeout: float = 8.0,
            http_client: Optional[httpx.Client] = None
    ):
        self.api_key = api_key
        self.client = http_client or httpx.Client(base_url=base_url, timeout=httpx.Timeout(5.0, read=timeout))

    def close(self):
        self.client.close()

    def resolve(self, token: str) -> Optional[AuthenticatedUser]:
        if not self.api_key:
            log.error("FIREBASE_API_KEY not configured; rejecting all bearer tokens.")
            return None

        try:
            response = self.client.post(
                "/v1/accounts:lookup",
                params={"key": self.api_key},
                json={"idToken": token},
            )
        except httpx.TransportError as e:
            log.error(f"Identity provider unreachable: {e}")
            return None

        if response.status_code != 200:
            log.info(f"Identity provider rejected token (HTTP {response.status_code}).")
            return None

        users = response.json().get("users") or []
        if not users:
            return None
        user = users[0]
        return AuthenticatedUser(
            uid=user["localId"],
            email=user.get("email"),
            emailVerified=bool(user.get("emailVerified", False)),
        )


# --- Order Event Client (MQ) ---
class OrderEventPublisher:
    """
    Publishes one message per committed order to RabbitMQ for downstream
    fulfilment. Registered as a commit hook.
    """
    def __init__(self, host: str, user: str, password: str, queue: str = "orders.committed"):
        self.host = host
        self.credentials = pika.PlainCredentials(user, password)
        self.queue = queue
        self.connection = None
        self.channel = None

    def _connect(self):
        """
        Establishes the RabbitMQ connection and declares the queue.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        try:
            self.connection = pika.BlockingConnection(
                pika.ConnectionParameters(host=self.host, credentials=self.credentials, heartbeat=60)
            )
            self.channel = self.connection.channel()
            self.channel.queue_declare(queue=self.queue, durable=True)
            log.info(f"Order event publisher connected to RabbitMQ ({self.host}).")
        except pika.exceptions.AMQPConnectionError as e:
            log.critical(f"Cannot connect to RabbitMQ for order events: {e}")
            raise

    def publish_order_committed(self, order: Order):
        """
        Sends an `order.committed` message for the given order.
        Raises:
            pika.exceptions.AMQPError: If message publishing fails.
        """
        message = {
            "eventId": str(uuid.uuid4()),
            "event": "order.committed",
            "eventTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "orderId": order.id,
            "userId": order.userId,
            "total": order.total,
            "currency": order.currency,
            "paymentMethod": order.paymentMethod,
            "items": [{"productId": i.productId, "quantity": i.quantity} for i in order.items],
        }
        if not self.connection or self.connection.is_closed:
            self._connect()

        self.channel.basic_publish(
            exchange='',
            routing_key=self.queue,
            body=json.dumps(message),
            properties=pika.BasicProperties(delivery_mode=2)  # persistent
        )
        log.info(f"[Order: {order.id}] Order event published to '{self.queue}'.")

    def __call__(self, order: Order):
        self.publish_order_committed(order)

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()
