"""Payment session creation for replay checkouts.

Takes a list of product ids and a payer, re-prices everything from the
catalog, applies an optional coupon, and creates exactly one PaymentIntent
(card-element flow) or hosted Checkout Session with the metadata needed to
reconcile the payment later.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email

from django_replay_store.settings import get_config
from django_replay_store.store.errors import InvalidPayerEmail, StoreValidationError
from django_replay_store.store.models import Coupon, IndividualReplay, Product, YearBundle
from django_replay_store.store.services.catalog import ProductCatalog
from django_replay_store.store.services.coupons import CouponService
from django_replay_store.store.stripe_client import StripeClient
from django_replay_store.store.stripe_utils import format_amount

if TYPE_CHECKING:
    from collections.abc import Iterable

    from django.contrib.auth.models import AbstractBaseUser

logger = logging.getLogger(__name__)

# Stripe caps metadata values at 500 characters.
_METADATA_VALUE_LIMIT = 500


class CheckoutFlow(enum.StrEnum):
    """Which kind of processor session to create."""

    PAYMENT_INTENT = "payment_intent"
    HOSTED = "hosted"


@dataclass(frozen=True, slots=True)
class PaymentSession:
    """Handle returned to the client for completing payment.

    Exactly one of ``client_secret`` (card-element flow) or ``redirect_url``
    (hosted flow) is set.
    """

    reference: str
    amount: int
    subtotal: int
    discount_amount: int
    currency: str
    client_secret: str | None = None
    redirect_url: str | None = None
    coupon_code: str = ""


def _resolve_payer_email(payer_email: str | None, user: AbstractBaseUser | None) -> str:
    """Pick the payer email, preferring the authenticated user's address."""
    candidate = ""
    if user is not None and getattr(user, "is_authenticated", False):
        candidate = (getattr(user, "email", "") or "").strip()
    if not candidate:
        candidate = (payer_email or "").strip()
    if not candidate:
        raise InvalidPayerEmail
    try:
        validate_email(candidate)
    except DjangoValidationError:
        raise InvalidPayerEmail(f"'{candidate}' is not a valid email address.") from None
    return candidate.lower()


def _join(values: Iterable[object]) -> str:
    return ",".join(str(value) for value in values)


def build_metadata(
    products: list[Product],
    *,
    payer_email: str,
    guest_email: str,
    user: AbstractBaseUser | None,
    coupon_code: str,
    subtotal: int,
    discount_amount: int,
) -> dict[str, str]:
    """Build the reconciliation metadata attached to the processor session.

    Each product is dispatched on its entitlement so individual replays
    contribute their replay id and bundles contribute only their year.

    Raises:
        StoreValidationError: If the metadata would exceed Stripe's limits.
    """
    event_years: dict[int, None] = {}
    replay_ids: list[str] = []
    for product in products:
        match product.entitlement:
            case IndividualReplay(replay_id=replay_id, event_year=year):
                replay_ids.append(str(replay_id))
                event_years.setdefault(year, None)
            case YearBundle(event_year=year):
                event_years.setdefault(year, None)

    metadata = {
        "product_ids": _join(product.pk for product in products),
        "event_years": _join(event_years),
        "replay_ids": _join(replay_ids),
        "user_id": str(user.pk) if user is not None and getattr(user, "is_authenticated", False) else "",
        "payer_email": payer_email,
        "guest_email": guest_email,
        "coupon_code": coupon_code,
        "discount_amount": str(discount_amount),
        "subtotal": str(subtotal),
    }
    too_long = [key for key, value in metadata.items() if len(value) > _METADATA_VALUE_LIMIT]
    if too_long:
        raise StoreValidationError("Too many products for a single checkout.")
    return metadata


class CheckoutService:
    """Stateless service for creating processor payment sessions."""

    @staticmethod
    def create_payment_session(
        product_ids: Iterable[object],
        *,
        payer_email: str | None,
        user: AbstractBaseUser | None = None,
        coupon_code: str | None = None,
        flow: CheckoutFlow = CheckoutFlow.PAYMENT_INTENT,
        attempt_id: str | None = None,
        catalog: ProductCatalog | None = None,
    ) -> PaymentSession:
        """Create one authoritative payment session for a checkout attempt.

        Args:
            product_ids: The products being bought. Only ids are used; prices
                always come from the catalog.
            payer_email: Email for guest checkouts. Ignored when ``user`` is
                authenticated and has an email.
            user: The authenticated purchaser, if any.
            coupon_code: Optional coupon code to apply.
            flow: Card-element PaymentIntent or hosted Checkout Session.
            attempt_id: Optional client token; repeating a request with the
                same token returns the same processor object.
            catalog: Product catalog override.

        Returns:
            The session handle and the authoritative amounts.

        Raises:
            StoreValidationError: For empty carts, mixed currencies, or a zero
                payable total.
            ProductUnavailable: If any product is not purchasable.
            InvalidPayerEmail: If no valid payer email is available.
            CouponRejected: If the coupon is not redeemable.
            PaymentProcessorUnreachable: If Stripe cannot be reached.
        """
        catalog = catalog or ProductCatalog()
        ids = list(product_ids)
        if not ids:
            raise StoreValidationError("No products provided.")

        email = _resolve_payer_email(payer_email, user)
        authenticated = user is not None and getattr(user, "is_authenticated", False)
        guest_email = "" if authenticated else email

        products = catalog.get_purchasable(ids)
        currencies = {product.currency.lower() for product in products}
        if len(currencies) != 1:
            raise StoreValidationError("All products in a checkout must share one currency.")
        currency = currencies.pop()

        subtotal = sum(product.amount for product in products)
        discount_amount = 0
        applied_code = ""
        if coupon_code and coupon_code.strip():
            evaluation = CouponService.evaluate(coupon_code, subtotal, currency=currency)
            discount_amount = evaluation.discount_amount
            applied_code = evaluation.applied_code
        total = subtotal - discount_amount
        if total <= 0:
            raise StoreValidationError("Nothing to pay for this order; ask an administrator for complimentary access.")

        metadata = build_metadata(
            products,
            payer_email=email,
            guest_email=guest_email,
            user=user if authenticated else None,
            coupon_code=applied_code,
            subtotal=subtotal,
            discount_amount=discount_amount,
        )
        idempotency_key = f"checkout-{attempt_id or uuid.uuid4()}"

        stripe_client = StripeClient()
        customer = stripe_client.get_or_create_customer(email, user if authenticated else None)

        if flow == CheckoutFlow.HOSTED:
            session = stripe_client.create_checkout_session(
                line_items=[_line_item(product) for product in products],
                customer_id=customer.stripe_customer_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
                success_url=get_config().checkout_success_url,
                cancel_url=get_config().checkout_cancel_url,
                discounts=_hosted_discounts(applied_code),
            )
            result = PaymentSession(
                reference=session.id,
                redirect_url=session.url,
                amount=total,
                subtotal=subtotal,
                discount_amount=discount_amount,
                currency=currency,
                coupon_code=applied_code,
            )
        else:
            intent = stripe_client.create_payment_intent(
                amount=total,
                currency=currency,
                customer_id=customer.stripe_customer_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
                description=_describe(products),
            )
            result = PaymentSession(
                reference=intent.id,
                client_secret=intent.client_secret,
                amount=total,
                subtotal=subtotal,
                discount_amount=discount_amount,
                currency=currency,
                coupon_code=applied_code,
            )

        logger.info(
            "Created %s %s for %s: %s (discount %s, coupon %s)",
            flow.value,
            result.reference,
            email,
            format_amount(total, currency),
            discount_amount,
            applied_code or "-",
        )
        return result


def _line_item(product: Product) -> dict[str, object]:
    """Build a hosted-checkout line item priced from the catalog."""
    return {
        "quantity": 1,
        "price_data": {
            "currency": product.currency.lower(),
            "unit_amount": product.amount,
            "product_data": {"name": product.product_name},
        },
    }


def _hosted_discounts(applied_code: str) -> list[dict[str, str]] | None:
    """Map an applied coupon to the processor-side coupon for hosted sessions.

    Raises:
        StoreValidationError: If the coupon has no processor counterpart.
    """
    if not applied_code:
        return None
    stripe_coupon_id = Coupon.objects.filter(code=applied_code).values_list("stripe_coupon_id", flat=True).first()
    if not stripe_coupon_id:
        raise StoreValidationError(f"Coupon '{applied_code}' cannot be used with hosted checkout.")
    return [{"coupon": stripe_coupon_id}]


def _describe(products: list[Product]) -> str:
    names = ", ".join(product.product_name for product in products)
    return names[:_METADATA_VALUE_LIMIT]
