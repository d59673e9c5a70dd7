"""Coupon evaluation and redemption counting.

Evaluation is read-only: it never touches ``times_redeemed``. Counting a
redemption is a separate, explicit operation.
"""

import datetime
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from django.db import models
from django.utils import timezone

from django_replay_store.store.errors import (
    CouponExpired,
    CouponNotFound,
    CouponNotYetValid,
    RedemptionLimitReached,
    StoreValidationError,
)
from django_replay_store.store.models import Coupon

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CouponEvaluation:
    """Outcome of a successful coupon evaluation."""

    discount_amount: int
    applied_code: str


def compute_discount(coupon: Coupon, subtotal: int) -> int:
    """Return the discount a coupon gives on ``subtotal``, clamped to the subtotal.

    Percentage discounts are rounded half-up to the nearest smallest currency
    unit; fixed discounts are taken verbatim.
    """
    if coupon.discount_type == Coupon.DiscountType.PERCENTAGE:
        raw = (Decimal(subtotal) * Decimal(coupon.discount_value) / Decimal(100)).quantize(
            Decimal(1),
            rounding=ROUND_HALF_UP,
        )
        discount = int(raw)
    else:
        discount = coupon.discount_value
    return max(0, min(discount, subtotal))


class CouponService:
    """Stateless service for coupon operations."""

    @staticmethod
    def evaluate(
        code: str,
        subtotal: int,
        *,
        currency: str | None = None,
        now: datetime.datetime | None = None,
    ) -> CouponEvaluation:
        """Check a coupon code against a subtotal and compute its discount.

        Args:
            code: The coupon code as typed by the purchaser (any case).
            subtotal: Cart subtotal in the smallest currency unit.
            currency: Currency of the order. Fixed-amount coupons only apply
                to orders in their own currency.
            now: Evaluation time; defaults to the current time.

        Returns:
            The discount amount and the canonical code that was applied.

        Raises:
            StoreValidationError: If the code is blank or the subtotal negative.
            CouponNotFound: If no active coupon matches the code, or a
                fixed-amount coupon is in another currency.
            CouponExpired: If the coupon's validity window has ended.
            CouponNotYetValid: If the coupon's validity window has not started.
            RedemptionLimitReached: If the coupon has been fully redeemed.
        """
        normalized = (code or "").strip()
        if not normalized:
            raise StoreValidationError("A coupon code is required.")
        if subtotal < 0:
            raise StoreValidationError("Subtotal cannot be negative.")

        coupon = Coupon.objects.filter(code__iexact=normalized, active=True).first()
        if coupon is None:
            logger.info("Coupon %s rejected: not found or inactive", normalized.upper())
            raise CouponNotFound(normalized.upper())

        now = now or timezone.now()
        if coupon.valid_until and now > coupon.valid_until:
            logger.info("Coupon %s rejected: expired at %s", coupon.code, coupon.valid_until)
            raise CouponExpired(coupon.code)
        if coupon.valid_from and now < coupon.valid_from:
            logger.info("Coupon %s rejected: valid from %s", coupon.code, coupon.valid_from)
            raise CouponNotYetValid(coupon.code)
        if coupon.max_redemptions is not None and coupon.times_redeemed >= coupon.max_redemptions:
            logger.info(
                "Coupon %s rejected: %s/%s redemptions used",
                coupon.code,
                coupon.times_redeemed,
                coupon.max_redemptions,
            )
            raise RedemptionLimitReached(coupon.code)
        if (
            currency
            and coupon.discount_type == Coupon.DiscountType.FIXED
            and coupon.currency.lower() != currency.lower()
        ):
            logger.info("Coupon %s rejected: %s coupon on a %s order", coupon.code, coupon.currency, currency)
            raise CouponNotFound(coupon.code, f"This coupon code cannot be used with {currency.upper()} orders.")

        return CouponEvaluation(discount_amount=compute_discount(coupon, subtotal), applied_code=coupon.code)

    @staticmethod
    def record_redemption(code: str, *, now: datetime.datetime | None = None) -> bool:
        """Atomically count one redemption of a coupon.

        The increment only applies while the coupon is still active, inside
        its validity window, and under its redemption limit, so concurrent
        redemptions cannot push ``times_redeemed`` past ``max_redemptions``.

        Args:
            code: The coupon code (any case).
            now: Redemption time; defaults to the current time.

        Returns:
            ``True`` if the counter was incremented, ``False`` otherwise.
        """
        now = now or timezone.now()
        updated = (
            Coupon.objects.filter(code__iexact=code.strip(), active=True)
            .filter(
                models.Q(max_redemptions__isnull=True) | models.Q(times_redeemed__lt=models.F("max_redemptions")),
            )
            .filter(
                models.Q(valid_from__isnull=True) | models.Q(valid_from__lte=now),
            )
            .filter(
                models.Q(valid_until__isnull=True) | models.Q(valid_until__gte=now),
            )
            .update(times_redeemed=models.F("times_redeemed") + 1)
        )
        if updated != 1:
            logger.warning("Coupon %s redemption was not counted (no longer redeemable)", code.upper())
            return False
        return True
