"""
mock_payment_gateway.py — Mock Implementation of the Razorpay Orders API (REST)

This module provides a simulated payment gateway for local development and
tests of the checkout service. It mimics the parts of the Razorpay API the
service talks to.

Simulation Scenarios (selected by the order receipt):
    • Successful order creation
    • Rejected order (HTTP 400, receipt starts with "rcpt_decline_")
    • Gateway failure (HTTP 500, receipt starts with "rcpt_fail_")
    • Timeout simulation (receipt starts with "rcpt_timeout_")
    • Wrong API credentials (HTTP 401)

Endpoints:
    POST /v1/orders — Creates a gateway order.
    POST /mock/orders/{order_id}/pay — Simulates the customer paying and returns
        the signed callback the checkout page would forward.

Port:
    Default: 8001 (HTTP)
"""

import hashlib
import hmac
import logging
import os
import secrets
import time
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field

logging.basicConfig(level=logging.INFO)

DEFAULT_KEY_ID = "rzp_test_mock"
DEFAULT_KEY_SECRET = "mock_key_secret"


class OrderRequest(BaseModel):
    """
    Represents a gateway order request payload.

    Attributes:
        amount (int): Amount in the smallest currency unit (paise).
        currency (str): ISO 4217 currency code (e.g., 'INR').
        receipt (str): Merchant receipt reference, also selects the scenario.
        notes (dict): Free-form metadata stored with the order.
    """
    amount: int = Field(..., ge=100)
    currency: str
    receipt: Optional[str] = None
    notes: Dict[str, str] = Field(default_factory=dict)


def _gateway_error(status_code: int, code: str, description: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": {"code": code, "description": description}})


def create_mock_app(key_id: str = DEFAULT_KEY_ID, key_secret: str = DEFAULT_KEY_SECRET) -> FastAPI:
    app = FastAPI(title="Mock Payment Gateway")
    security = HTTPBasic(auto_error=False)
    orders: Dict[str, dict] = {}

    def authenticate(credentials: Optional[HTTPBasicCredentials] = Depends(security)):
        if credentials is None or not (
            secrets.compare_digest(credentials.username, key_id)
            and secrets.compare_digest(credentials.password, key_secret)
        ):
            raise _gateway_error(401, "BAD_REQUEST_ERROR", "Authentication failed")

    # HTTPException details are wrapped in {"detail": ...}; the real API returns {"error": ...}.
    @app.exception_handler(HTTPException)
    async def gateway_error_handler(request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    @app.post("/v1/orders", dependencies=[Depends(authenticate)])
    def create_order(request: OrderRequest):
        """
        Creates a gateway order.

        This endpoint simulates different outcomes based on the provided `receipt`:
            - Starts with "rcpt_decline_" → Order rejected (HTTP 400)
            - Starts with "rcpt_fail_" → Gateway failure (HTTP 500)
            - Starts with "rcpt_timeout_" → Simulated timeout (long-running request)
            - Anything else → Order created

        Returns:
            dict: Order entity as returned by the gateway, including:
                - id (str): Gateway order id ("order_...").
                - amount / amount_due (int): Amount in paise.
                - status (str): Always "created".
        """
        receipt = request.receipt or ""
        logging.info(f"[PG] Order request for receipt {receipt} ({request.amount} {request.currency})")

        if receipt.startswith("rcpt_decline_"):
            logging.warning(f"[PG] Order for {receipt} rejected.")
            raise _gateway_error(400, "BAD_REQUEST_ERROR", "The receipt was rejected by the gateway")

        if receipt.startswith("rcpt_fail_"):
            logging.error(f"[PG] Internal failure for {receipt}.")
            raise _gateway_error(500, "SERVER_ERROR", "We are facing some trouble completing your request")

        if receipt.startswith("rcpt_timeout_"):
            logging.info(f"[PG] Simulating timeout for {receipt}...")
            time.sleep(10)

        order_id = f"order_{secrets.token_hex(7)}"
        order = {
            "id": order_id,
            "entity": "order",
            "amount": request.amount,
            "amount_paid": 0,
            "amount_due": request.amount,
            "currency": request.currency,
            "receipt": request.receipt,
            # The real API returns an empty list instead of an empty object.
            "notes": request.notes or [],
            "status": "created",
            "attempts": 0,
            "created_at": int(time.time()),
        }
        orders[order_id] = order
        logging.info(f"[PG] Order {order_id} created.")
        return order

    @app.post("/mock/orders/{order_id}/pay")
    def pay_order(order_id: str):
        """Marks an order paid and returns the callback fields signed with the key secret."""
        order = orders.get(order_id)
        if order is None:
            raise _gateway_error(404, "BAD_REQUEST_ERROR", "The id provided does not exist")

        payment_id = f"pay_{secrets.token_hex(7)}"
        signature = hmac.new(key_secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
        order.update({"status": "paid", "amount_paid": order["amount"], "amount_due": 0})
        logging.info(f"[PG] Order {order_id} paid with {payment_id}.")
        return {
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        }

    return app


app = create_mock_app(
    os.environ.get("RAZORPAY_KEY_ID", DEFAULT_KEY_ID),
    os.environ.get("RAZORPAY_KEY_SECRET", DEFAULT_KEY_SECRET),
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
