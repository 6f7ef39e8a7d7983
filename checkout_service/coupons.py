"""
coupons.py — Coupon eligibility, discount calculation and redemption

Evaluation is read-only. Redemption (incrementing `usageCount`) happens in
`CouponRedemptionHook`, which runs once per committed order.
"""

import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from pydantic import ValidationError

from .errors import CouponExhausted, CouponExpired, CouponInvalid, CouponMinimumNotMet
from .logging_config import get_logger
from .models import Coupon, Order
from .store import DocumentStore

log = get_logger(__name__)

COUPONS_COLLECTION = "coupons"


def normalize_code(code: Optional[str]) -> Optional[str]:
    """Upper-cases and trims a coupon code. Blank codes become None."""
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


def calculate_discount(coupon: Coupon, subtotal: int) -> int:
    """
    Discount in whole rupees for an eligible coupon.

    Percentage coupons take floor(subtotal * value / 100); flat coupons take
    their value. Either way the result is clamped to [0, subtotal].
    """
    value = Decimal(str(coupon.value))
    if coupon.type == "percentage":
        discount = math.floor(Decimal(subtotal) * value / 100)
    else:
        discount = math.floor(min(value, Decimal(subtotal)))
    return max(0, min(int(discount), subtotal))


class CouponEvaluator:
    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def find_active(self, code: str):
        """Returns (document id, Coupon) for an active coupon, or raises CouponInvalid."""
        matches = self.store.find(COUPONS_COLLECTION, {"code": code, "isActive": True}, limit=1)
        if not matches:
            raise CouponInvalid(code)
        doc = matches[0]
        try:
            return doc.id, Coupon.model_validate(doc.data)
        except ValidationError as e:
            log.error(f"[Coupon: {code}] Stored coupon {doc.id} is malformed: {e}")
            raise CouponInvalid(code)

    def evaluate(self, code: Optional[str], subtotal: int) -> int:
        """
        Validates a coupon against a verified subtotal and returns the discount.

        Args:
            code (str, optional): Coupon code as typed by the customer.
            subtotal (int): Verified subtotal in whole rupees.

        Returns:
            int: Discount between 0 and `subtotal`. 0 when no code is given.

        Raises:
            CouponInvalid: Unknown, inactive or malformed coupon.
            CouponExpired: Expiry date has passed.
            CouponExhausted: Usage limit reached.
            CouponMinimumNotMet: Subtotal below the coupon minimum.
        """
        code = normalize_code(code)
        if code is None:
            return 0

        _, coupon = self.find_active(code)

        if coupon.expiryDate is not None:
            expiry = coupon.expiryDate
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            if expiry < self.clock():
                raise CouponExpired(code)

        if coupon.usageCount >= coupon.usageLimit:
            raise CouponExhausted(code)

        if subtotal < coupon.minOrderAmount:
            raise CouponMinimumNotMet(code, coupon.minOrderAmount)

        discount = calculate_discount(coupon, subtotal)
        log.info(f"[Coupon: {code}] Applied {coupon.type} coupon, discount {discount} on {subtotal}.")
        return discount


class CouponRedemptionHook:
    """
    Commit hook that records one redemption of the order's coupon.

    Runs only for the request that created the order, so every committed
    order increments the counter exactly once.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def __call__(self, order: Order):
        if not order.couponCode:
            return
        matches = self.store.find(COUPONS_COLLECTION, {"code": order.couponCode, "isActive": True}, limit=1)
        if not matches:
            log.error(f"[Order: {order.id}] Coupon {order.couponCode} is no longer active, redemption not recorded.")
            return
        self.store.increment(COUPONS_COLLECTION, matches[0].id, "usageCount", 1)
        log.info(f"[Order: {order.id}] Coupon {order.couponCode} redeemed.")
