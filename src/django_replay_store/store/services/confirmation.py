"""Payment confirmation: turn a succeeded payment into purchase records.

Confirmation can be triggered by the purchaser's browser after payment and by
Stripe webhooks; both paths land here. The processor is always asked for the
authoritative payment state, and purchase rows for a payment are written at
most once.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, transaction

from django_replay_store.settings import get_config
from django_replay_store.store.errors import (
    AuthenticationRequired,
    PaymentNotCompleted,
    PaymentOwnershipMismatch,
    PersistenceFailure,
    StoreValidationError,
)
from django_replay_store.store.models import IndividualReplay, Purchase, YearBundle
from django_replay_store.store.services.catalog import ProductCatalog
from django_replay_store.store.services.coupons import CouponService
from django_replay_store.store.services.entitlements import EntitlementService
from django_replay_store.store.signals import purchase_confirmed, reconciliation_required
from django_replay_store.store.stripe_client import StripeClient

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

    from django_replay_store.store.models import Product

logger = logging.getLogger(__name__)

PAYMENT_INTENT_PREFIX = "pi_"
CHECKOUT_SESSION_PREFIX = "cs_"


@dataclass(frozen=True, slots=True)
class PaymentState:
    """Authoritative payment details fetched from the processor."""

    reference: str
    paid: bool
    status: str
    metadata: dict[str, str] = field(default_factory=dict)
    amount_paid: int | None = None


@dataclass(frozen=True, slots=True)
class Confirmation:
    """Result of confirming a payment."""

    purchases: list[Purchase]
    user: AbstractBaseUser | None
    account_created: bool = False
    created: bool = False


class _UnresolvableProduct(Exception):
    """A paid product can no longer be mapped to an entitlement."""


def _is_authenticated(user: AbstractBaseUser | None) -> bool:
    return user is not None and bool(getattr(user, "is_authenticated", False))


def _as_dict(value: object) -> dict[str, str]:
    if not value:
        return {}
    return {str(key): str(item) for key, item in dict(value).items()}


def _payer_email(metadata: dict[str, str]) -> str:
    return (metadata.get("guest_email") or metadata.get("payer_email") or "").strip().lower()


def _owns_payment(user: AbstractBaseUser, metadata: dict[str, str]) -> bool:
    """Check whether a signed-in caller may claim a payment.

    A payment made while signed in belongs to that user id. A guest payment
    belongs to whoever holds an account with the email it was paid with.
    """
    owner_id = metadata.get("user_id", "")
    if owner_id:
        return owner_id == str(user.pk)
    email = (getattr(user, "email", "") or "").strip().lower()
    return bool(email) and email == _payer_email(metadata)


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _metadata_int(metadata: dict[str, str], key: str) -> int:
    raw = metadata.get(key, "") or "0"
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r in payment metadata", key, raw)
        return 0


def retrieve_payment_state(reference: str, stripe_client: StripeClient | None = None) -> PaymentState:
    """Fetch the processor's view of a PaymentIntent or Checkout Session.

    For Checkout Sessions the underlying PaymentIntent id becomes the durable
    reference, so that a session confirmation and a PaymentIntent webhook for
    the same payment share one set of purchase rows.

    Raises:
        StoreValidationError: If the reference is neither kind.
        PaymentReferenceNotFound: If the processor has no such object.
        PaymentProcessorUnreachable: If Stripe cannot be reached.
    """
    if reference.startswith(PAYMENT_INTENT_PREFIX):
        client = stripe_client or StripeClient()
        intent = client.retrieve_payment_intent(reference)
        status = str(intent.status or "")
        return PaymentState(
            reference=str(intent.id),
            paid=status == "succeeded",
            status=status,
            metadata=_as_dict(intent.metadata),
            amount_paid=intent.amount_received,
        )
    if reference.startswith(CHECKOUT_SESSION_PREFIX):
        client = stripe_client or StripeClient()
        session = client.retrieve_checkout_session(reference)
        payment_intent = session.payment_intent
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent.id
        status = str(session.payment_status or "")
        return PaymentState(
            reference=str(payment_intent or session.id),
            paid=status == "paid",
            status=status,
            metadata=_as_dict(session.metadata),
            amount_paid=session.amount_total,
        )
    raise StoreValidationError(f"'{reference}' is not a recognised payment reference.")


def apportion_discount(amounts: list[int], discount: int) -> list[int]:
    """Split ``discount`` across line amounts in proportion to price.

    The shares always add up to ``discount``; rounding leftovers go to the
    last line.
    """
    if not amounts:
        return []
    if discount <= 0:
        return [0] * len(amounts)
    total = sum(amounts)
    if total <= 0:
        return [0] * (len(amounts) - 1) + [discount]
    shares = [discount * amount // total for amount in amounts[:-1]]
    shares.append(discount - sum(shares))
    return shares


def _entitlement_fields(product: Product) -> tuple[uuid.UUID | None, int]:
    match product.entitlement:
        case IndividualReplay(replay_id=replay_id, event_year=year):
            return replay_id, year
        case YearBundle(event_year=year):
            return None, year
    raise _UnresolvableProduct(str(product.pk))


def _available_username(user_model: type[AbstractBaseUser], email: str) -> str:
    field_name = user_model.USERNAME_FIELD
    max_length = user_model._meta.get_field(field_name).max_length or 150
    candidate = email[:max_length]
    if not user_model._default_manager.filter(**{field_name: candidate}).exists():
        return candidate
    return f"{email[: max_length - 9]}-{uuid.uuid4().hex[:8]}"


def provision_account(email: str) -> tuple[AbstractBaseUser, bool]:
    """Return the account for a guest email, creating one if none exists.

    New accounts get an unusable password; the purchaser sets one through the
    host site's password reset flow. Earlier guest purchases made with the
    email are attached to the account.

    Returns:
        A ``(user, created)`` tuple.
    """
    user_model = get_user_model()
    email_field = user_model.get_email_field_name()
    existing = user_model._default_manager.filter(**{f"{email_field}__iexact": email}).first()
    if existing is not None:
        EntitlementService.claim_guest_purchases(existing)
        return existing, False

    fields = {email_field: email}
    if user_model.USERNAME_FIELD not in fields:
        fields[user_model.USERNAME_FIELD] = _available_username(user_model, email)
    account = user_model._default_manager.create_user(**fields, password=None)
    logger.info("Provisioned account %s for guest purchaser %s", account.pk, email)
    EntitlementService.claim_guest_purchases(account)
    return account, True


class ConfirmationService:
    """Stateless service reconciling processor payments into purchases."""

    @staticmethod
    def confirm(
        payment_reference: str,
        *,
        user: AbstractBaseUser | None = None,
        create_account: bool = False,
        coupon_code: str | None = None,
    ) -> list[Purchase]:
        """Confirm a payment and return its purchase records.

        See :meth:`confirm_payment` for the full contract.
        """
        return ConfirmationService.confirm_payment(
            payment_reference,
            user=user,
            create_account=create_account,
            coupon_code=coupon_code,
        ).purchases

    @staticmethod
    def confirm_payment(
        payment_reference: str,
        *,
        user: AbstractBaseUser | None = None,
        create_account: bool = False,
        coupon_code: str | None = None,
        stripe_client: StripeClient | None = None,
    ) -> Confirmation:
        """Verify a payment with the processor and record its purchases once.

        Args:
            payment_reference: A PaymentIntent (``pi_``) or Checkout Session
                (``cs_``) id.
            user: The authenticated caller, if any. Webhooks pass ``None``.
            create_account: Provision an account for a guest payer.
            coupon_code: The code the client believes was applied. Advisory
                only; the code recorded comes from the payment metadata.
            stripe_client: Client override.

        Returns:
            The purchases for the payment together with the owning user.

        Raises:
            StoreValidationError: If the reference is blank or malformed.
            PaymentReferenceNotFound: If the processor has no such payment.
            PaymentNotCompleted: If the payment has not succeeded.
            PaymentOwnershipMismatch: If the payment belongs to another user.
            AuthenticationRequired: If no purchaser can be identified.
            PersistenceFailure: If the paid purchases could not be recorded.
            PaymentProcessorUnreachable: If Stripe cannot be reached.
        """
        reference = (payment_reference or "").strip()
        if not reference:
            raise StoreValidationError("A payment reference is required.")

        state = retrieve_payment_state(reference, stripe_client)
        if not state.paid:
            logger.warning("Confirmation of %s refused: payment status is %s", state.reference, state.status)
            raise PaymentNotCompleted(state.status)

        metadata = state.metadata
        if _is_authenticated(user) and not _owns_payment(user, metadata):
            logger.warning(
                "User %s tried to confirm payment %s owned by %s",
                user.pk,
                state.reference,
                metadata.get("user_id") or _payer_email(metadata) or "an unknown payer",
            )
            raise PaymentOwnershipMismatch

        owner, guest_email, account_created = ConfirmationService._resolve_purchaser(user, metadata, create_account)

        existing = list(Purchase.objects.filter(payment_reference=state.reference).order_by("purchased_at", "pk"))
        if existing:
            if _is_authenticated(user) and any(
                purchase.user_id is not None and purchase.user_id != user.pk for purchase in existing
            ):
                logger.warning("User %s tried to confirm payment %s owned by another user", user.pk, state.reference)
                raise PaymentOwnershipMismatch
            purchases = ConfirmationService._attach_owner(state.reference, existing, owner)
            logger.info("Payment %s already confirmed (%s purchase(s))", state.reference, len(purchases))
            purchase_confirmed.send(
                sender=Purchase,
                purchases=purchases,
                user=owner,
                payment_reference=state.reference,
                created=False,
            )
            return Confirmation(purchases=purchases, user=owner, account_created=account_created)

        applied_code = metadata.get("coupon_code", "")
        if coupon_code and coupon_code.strip().upper() != applied_code.upper():
            logger.warning(
                "Client coupon %s does not match coupon %s recorded on payment %s",
                coupon_code.strip().upper(),
                applied_code or "-",
                state.reference,
            )

        payer_email = guest_email or metadata.get("payer_email", "")
        try:
            purchases = ConfirmationService._create_purchases(state, owner, guest_email, applied_code)
        except IntegrityError:
            # Another confirmation for the same payment won the race.
            purchases = list(Purchase.objects.filter(payment_reference=state.reference).order_by("purchased_at", "pk"))
            if not purchases:
                raise ConfirmationService._persistence_failure(state.reference, payer_email, "unique constraint") from None
            purchases = ConfirmationService._attach_owner(state.reference, purchases, owner)
            return Confirmation(purchases=purchases, user=owner, account_created=account_created)
        except (DatabaseError, _UnresolvableProduct) as exc:
            raise ConfirmationService._persistence_failure(state.reference, payer_email, exc) from exc

        logger.info(
            "Recorded %s purchase(s) for payment %s (user %s, guest %s)",
            len(purchases),
            state.reference,
            owner.pk if owner is not None else "-",
            guest_email or "-",
        )
        if applied_code and get_config().count_coupon_redemptions:
            CouponService.record_redemption(applied_code)

        purchase_confirmed.send(
            sender=Purchase,
            purchases=purchases,
            user=owner,
            payment_reference=state.reference,
            created=True,
        )
        return Confirmation(purchases=purchases, user=owner, account_created=account_created, created=True)

    @staticmethod
    def _resolve_purchaser(
        user: AbstractBaseUser | None,
        metadata: dict[str, str],
        create_account: bool,
    ) -> tuple[AbstractBaseUser | None, str, bool]:
        """Work out who owns the payment.

        Returns:
            ``(owner, guest_email, account_created)``. ``owner`` is ``None``
            for a guest purchase, in which case ``guest_email`` is set.
        """
        if _is_authenticated(user):
            return user, "", False

        owner_id = metadata.get("user_id", "")
        if owner_id:
            owner = get_user_model()._default_manager.filter(pk=owner_id).first()
            if owner is not None:
                return owner, "", False
            logger.warning("Payment metadata names unknown user %s", owner_id)

        email = _payer_email(metadata)
        if not email:
            raise AuthenticationRequired
        if create_account:
            account, created = provision_account(email)
            return account, "", created
        return None, email, False

    @staticmethod
    def _attach_owner(
        reference: str,
        purchases: list[Purchase],
        owner: AbstractBaseUser | None,
    ) -> list[Purchase]:
        """Give guest rows of a payment to the now-known owner."""
        if owner is None or all(purchase.user_id is not None for purchase in purchases):
            return purchases
        Purchase.objects.filter(payment_reference=reference, user__isnull=True).update(user=owner)
        return list(Purchase.objects.filter(payment_reference=reference).order_by("purchased_at", "pk"))

    @staticmethod
    def _create_purchases(
        state: PaymentState,
        owner: AbstractBaseUser | None,
        guest_email: str,
        applied_code: str,
    ) -> list[Purchase]:
        """Write one purchase per paid product, all or nothing."""
        product_ids = _split(state.metadata.get("product_ids", ""))
        if not product_ids:
            msg = "payment metadata lists no products"
            raise _UnresolvableProduct(msg)

        found = ProductCatalog().get_products(product_ids)
        missing = [pid for pid in product_ids if pid not in found]
        if missing:
            msg = f"products no longer exist: {', '.join(missing)}"
            raise _UnresolvableProduct(msg)
        products = [found[pid] for pid in product_ids]

        discount = _metadata_int(state.metadata, "discount_amount") if applied_code else 0
        shares = apportion_discount([product.amount for product in products], discount)
        expected = sum(product.amount for product in products) - discount
        if state.amount_paid is not None and state.amount_paid != expected:
            logger.warning(
                "Payment %s received %s but catalog prices now total %s",
                state.reference,
                state.amount_paid,
                expected,
            )

        purchases: list[Purchase] = []
        with transaction.atomic():
            for product, share in zip(products, shares, strict=True):
                replay_id, event_year = _entitlement_fields(product)
                purchases.append(
                    Purchase.objects.create(
                        user=owner,
                        guest_email=guest_email,
                        product=product,
                        replay_id=replay_id,
                        event_year=event_year,
                        payment_reference=state.reference,
                        order_type=Purchase.OrderType.PAID,
                        coupon_code=applied_code,
                        discount_amount=share if applied_code else None,
                    )
                )
        return purchases

    @staticmethod
    def _persistence_failure(reference: str, payer_email: str, error: object) -> PersistenceFailure:
        logger.critical(
            "Payment %s from %s succeeded but purchases could not be recorded: %s",
            reference,
            payer_email or "unknown payer",
            error,
        )
        reconciliation_required.send(
            sender=Purchase,
            payment_reference=reference,
            payer_email=payer_email,
            error=error,
        )
        return PersistenceFailure(reference, message=f"Could not record purchases for {reference}: {error}")
