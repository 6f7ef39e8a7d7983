"""Tests for coupon evaluation and redemption."""

from datetime import timedelta

import pytest

from checkout_service.coupons import CouponEvaluator, CouponRedemptionHook, calculate_discount, normalize_code
from checkout_service.errors import CouponExhausted, CouponExpired, CouponInvalid, CouponMinimumNotMet
from checkout_service.models import Coupon, Order
from checkout_service.store import InMemoryDocumentStore


@pytest.fixture
def evaluator(store, now):
    return CouponEvaluator(store, clock=lambda: now)


def make_coupon(**overrides):
    data = {"code": "X", "type": "percentage", "value": 10, "usageLimit": 10}
    data.update(overrides)
    return Coupon.model_validate(data)


class TestNormalizeCode:
    def test_trims_and_uppercases(self):
        assert normalize_code("  save10 ") == "SAVE10"

    @pytest.mark.parametrize("code", [None, "", "   "])
    def test_blank_is_none(self, code):
        assert normalize_code(code) is None


class TestCalculateDiscount:
    def test_percentage_is_floored(self):
        assert calculate_discount(make_coupon(value=10), 3198) == 319

    def test_fractional_percentage(self):
        assert calculate_discount(make_coupon(value=12.5), 999) == 124

    def test_flat_is_capped_at_subtotal(self):
        assert calculate_discount(make_coupon(type="flat", value=5000), 1599) == 1599

    def test_flat_fraction_is_floored(self):
        assert calculate_discount(make_coupon(type="flat", value=99.9), 1599) == 99

    def test_percentage_over_hundred_is_clamped(self):
        assert calculate_discount(make_coupon(value=150), 1000) == 1000

    def test_fixed_type_reads_as_flat(self):
        assert make_coupon(type="fixed").type == "flat"


class TestCouponEvaluator:
    def test_no_code_means_no_discount(self, evaluator):
        assert evaluator.evaluate(None, 3198) == 0
        assert evaluator.evaluate("  ", 3198) == 0

    def test_valid_coupon(self, evaluator):
        assert evaluator.evaluate("SAVE10", 3198) == 319

    def test_code_is_case_insensitive(self, evaluator):
        assert evaluator.evaluate(" save10 ", 3198) == 319

    def test_minimum_order_boundary(self, evaluator):
        with pytest.raises(CouponMinimumNotMet) as exc_info:
            evaluator.evaluate("SAVE10", 1999)
        assert exc_info.value.required == 2000
        assert exc_info.value.details == {"minOrderAmount": 2000}

        assert evaluator.evaluate("SAVE10", 2000) == 200

    def test_unknown_coupon(self, evaluator):
        with pytest.raises(CouponInvalid):
            evaluator.evaluate("NOPE", 3198)

    def test_inactive_coupon(self, evaluator):
        with pytest.raises(CouponInvalid):
            evaluator.evaluate("OLD", 3198)

    def test_expired_coupon(self, evaluator):
        with pytest.raises(CouponExpired):
            evaluator.evaluate("EXPIRED5", 3198)

    def test_exhausted_coupon(self, evaluator):
        with pytest.raises(CouponExhausted):
            evaluator.evaluate("USEDUP", 3198)

    def test_expiry_equal_to_now_is_still_valid(self, store, now):
        store.seed("coupons", {"c-edge": {
            "code": "EDGE", "type": "flat", "value": 50, "usageLimit": 1, "isActive": True, "expiryDate": now,
        }})
        assert CouponEvaluator(store, clock=lambda: now).evaluate("EDGE", 500) == 50
        later = now + timedelta(seconds=1)
        with pytest.raises(CouponExpired):
            CouponEvaluator(store, clock=lambda: later).evaluate("EDGE", 500)

    def test_naive_expiry_is_treated_as_utc(self, store, now):
        store.seed("coupons", {"c-naive": {
            "code": "NAIVE", "type": "flat", "value": 50, "usageLimit": 1, "isActive": True,
            "expiryDate": (now - timedelta(hours=1)).replace(tzinfo=None),
        }})
        with pytest.raises(CouponExpired):
            CouponEvaluator(store, clock=lambda: now).evaluate("NAIVE", 500)

    def test_expired_is_checked_before_exhausted(self, store, now):
        store.seed("coupons", {"c-both": {
            "code": "BOTH", "type": "flat", "value": 50, "usageLimit": 1, "usageCount": 1, "isActive": True,
            "expiryDate": now - timedelta(days=1),
        }})
        with pytest.raises(CouponExpired):
            CouponEvaluator(store, clock=lambda: now).evaluate("BOTH", 500)

    def test_malformed_coupon_is_invalid(self, store, now):
        store.seed("coupons", {"c-bad": {"code": "BAD", "type": "bogo", "value": 1, "isActive": True}})
        with pytest.raises(CouponInvalid):
            CouponEvaluator(store, clock=lambda: now).evaluate("BAD", 500)

    def test_evaluation_does_not_redeem(self, evaluator, store):
        evaluator.evaluate("SAVE10", 3198)
        assert store.get("coupons", "c-save10").data["usageCount"] == 0


class TestCouponRedemptionHook:
    def _order(self, coupon_code):
        return Order(
            id="ord_1", userId="alice", items=[], subtotal=3198, discount=319, total=2879,
            couponCode=coupon_code, paymentMethod="online", paymentStatus="paid",
        )

    def test_increments_usage_count(self, store):
        CouponRedemptionHook(store)(self._order("SAVE10"))
        assert store.get("coupons", "c-save10").data["usageCount"] == 1

    def test_order_without_coupon_is_ignored(self, store):
        CouponRedemptionHook(store)(self._order(None))
        assert store.get("coupons", "c-save10").data["usageCount"] == 0

    def test_inactive_duplicate_code_is_not_redeemed(self):
        store = InMemoryDocumentStore()
        store.seed("coupons", {
            "a-retired": {"code": "SAVE10", "type": "percentage", "value": 10, "isActive": False, "usageCount": 7},
            "b-current": {"code": "SAVE10", "type": "percentage", "value": 10, "isActive": True, "usageCount": 0},
        })

        CouponRedemptionHook(store)(self._order("SAVE10"))

        assert store.get("coupons", "a-retired").data["usageCount"] == 7
        assert store.get("coupons", "b-current").data["usageCount"] == 1
