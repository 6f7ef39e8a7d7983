"""
pricing.py — Order Pricing Engine

The single place where the amount a customer pays is decided. It composes the
Price Resolver and the Coupon Evaluator and never looks at client-declared
totals or discounts.
"""

from typing import List, Optional

from .catalog import PriceResolver
from .coupons import CouponEvaluator, normalize_code
from .errors import OrderTotalTooLow
from .logging_config import get_logger
from .models import CartItem, VerifiedPricing

log = get_logger(__name__)

# Smallest amount the gateway will charge, in whole rupees.
MIN_CHARGEABLE_TOTAL = 1


class OrderPricingEngine:
    def __init__(self, resolver: PriceResolver, coupons: CouponEvaluator):
        self.resolver = resolver
        self.coupons = coupons

    def price(self, items: List[CartItem], coupon_code: Optional[str] = None) -> VerifiedPricing:
        """
        Computes the verified pricing of a cart.

        Steps:
            1. Resolve unit prices from the product store.
            2. Evaluate the coupon against the verified subtotal.
            3. Refuse totals below the minimum chargeable amount.

        Raises:
            PricingError: Any resolver or coupon failure, or OrderTotalTooLow.
        """
        resolved = self.resolver.resolve(items)
        subtotal = sum(item.lineTotal for item in resolved)

        code = normalize_code(coupon_code)
        discount = self.coupons.evaluate(code, subtotal)
        final_total = subtotal - discount

        if final_total < MIN_CHARGEABLE_TOTAL:
            log.warning(f"[Pricing] Refusing order total {final_total} (subtotal {subtotal}, discount {discount}).")
            raise OrderTotalTooLow(final_total)

        return VerifiedPricing(
            verifiedSubtotal=subtotal,
            discount=discount,
            finalTotal=final_total,
            resolvedItems=resolved,
            couponCode=code,
        )
