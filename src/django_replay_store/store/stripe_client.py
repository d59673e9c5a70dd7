"""Stripe client wrapper for the replay store.

Uses the modern ``stripe.StripeClient`` pattern (v1 namespace) for all API
calls. Every request is bounded by the configured timeout and retry budget,
and SDK failures are translated into the store's error taxonomy at this
boundary so services never handle ``stripe.*`` exceptions directly.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

import stripe
from django.db import IntegrityError, transaction

from django_replay_store.settings import get_config
from django_replay_store.store.errors import PaymentProcessorUnreachable, PaymentReferenceNotFound
from django_replay_store.store.models import StripeCustomer
from django_replay_store.store.stripe_utils import obfuscate_key

if TYPE_CHECKING:
    from collections.abc import Iterator

    from django.contrib.auth.models import AbstractBaseUser

logger = logging.getLogger(__name__)

_UNREACHABLE_ERRORS = (
    stripe.APIConnectionError,
    stripe.AuthenticationError,
    stripe.RateLimitError,
    stripe.APIError,
)


@contextlib.contextmanager
def _translate_stripe_errors(operation: str, reference: str = "") -> Iterator[None]:
    """Map Stripe SDK exceptions onto store errors.

    Args:
        operation: Short description of the call, used in log messages.
        reference: The object ID being retrieved, if any.

    Raises:
        PaymentProcessorUnreachable: On network, authentication, rate-limit
            or processor-side failures.
        PaymentReferenceNotFound: When a retrieved object does not exist.
    """
    try:
        yield
    except _UNREACHABLE_ERRORS as exc:
        logger.warning("Stripe %s failed: %s", operation, exc)
        raise PaymentProcessorUnreachable from exc
    except stripe.InvalidRequestError as exc:
        if exc.code == "resource_missing" and reference:
            logger.info("Stripe %s: no such object %s", operation, reference)
            raise PaymentReferenceNotFound from exc
        raise


class StripeClient:
    """Store-wide Stripe API client.

    Wraps ``stripe.StripeClient`` (v1 namespace) and binds every call to the
    active secret key, the configured API version, and a bounded HTTP timeout.

    Args:
        secret_key: Optional explicit key; defaults to the configured key for
            the current (live or test) mode.

    Raises:
        ValueError: If no Stripe secret key is configured.
    """

    def __init__(self, secret_key: str | None = None) -> None:
        config = get_config()
        raw_key = secret_key or config.stripe.active_secret_key
        if not raw_key:
            mode = "test" if config.stripe.test_mode else "live"
            msg = (
                f"No Stripe secret key configured for {mode} mode. "
                f"Set DJANGO_REPLAY_STORE['stripe'] before initializing StripeClient."
            )
            raise ValueError(msg)

        self.client = stripe.StripeClient(
            str(raw_key),
            stripe_version=config.stripe.api_version,
            max_network_retries=config.stripe.max_network_retries,
            http_client=stripe.RequestsClient(timeout=config.stripe.timeout),
        )

        logger.info(
            "Initialized StripeClient (%s mode, key %s)",
            "test" if config.stripe.test_mode else "live",
            obfuscate_key(str(raw_key)),
        )

    def get_or_create_customer(self, email: str, user: AbstractBaseUser | None = None) -> StripeCustomer:
        """Return the Stripe customer for an email, creating one if needed.

        Checks the local ``StripeCustomer`` cache first, then searches the
        Stripe account for an existing customer with that email, and only
        creates a new customer when neither exists.

        Args:
            email: The payer email. Matching is case-insensitive.
            user: The authenticated user, if any, to link to the mapping.

        Returns:
            The ``StripeCustomer`` record for this email.
        """
        email = email.strip().lower()
        existing = StripeCustomer.objects.filter(email=email).first()
        if existing is not None:
            if user is not None and existing.user_id is None:
                existing.user = user
                existing.save(update_fields=["user"])
            return existing

        with _translate_stripe_errors("customer lookup"):
            found = self.client.v1.customers.list(params={"email": email, "limit": 1})
        if found.data:
            customer_id = found.data[0].id
            logger.info("Existing Stripe customer %s found for %s", customer_id, email)
        else:
            params: dict[str, object] = {"email": email}
            if user is not None:
                params["metadata"] = {"user_id": str(user.pk)}
            with _translate_stripe_errors("customer create"):
                customer = self.client.v1.customers.create(params=params)
            customer_id = customer.id
            logger.info("Created Stripe customer %s for %s", customer_id, email)

        try:
            with transaction.atomic():
                return StripeCustomer.objects.create(
                    email=email,
                    stripe_customer_id=customer_id,
                    user=user,
                )
        except IntegrityError:
            return StripeCustomer.objects.get(email=email)

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
        description: str = "",
    ) -> stripe.PaymentIntent:
        """Create a PaymentIntent for a direct card-element checkout.

        Args:
            amount: Payable amount in the smallest currency unit.
            currency: ISO 4217 currency code.
            customer_id: The Stripe customer to charge.
            metadata: Reconciliation metadata attached to the intent.
            idempotency_key: Key that makes retried requests safe.
            description: Optional statement description.

        Returns:
            The created ``stripe.PaymentIntent``.

        Raises:
            ValueError: If Stripe returns an intent without a client secret.
        """
        with _translate_stripe_errors("payment intent create"):
            intent = self.client.v1.payment_intents.create(
                params={
                    "amount": amount,
                    "currency": currency.lower(),
                    "customer": customer_id,
                    "metadata": metadata,
                    "description": description,
                    "automatic_payment_methods": {"enabled": True},
                },
                options={"idempotency_key": idempotency_key},
            )
        if intent.client_secret is None:
            msg = f"Stripe returned no client_secret for payment intent {intent.id}"
            raise ValueError(msg)
        return intent

    def create_checkout_session(
        self,
        *,
        line_items: list[dict[str, object]],
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
        success_url: str,
        cancel_url: str,
        discounts: list[dict[str, str]] | None = None,
    ) -> stripe.checkout.Session:
        """Create a hosted Checkout Session in ``payment`` mode.

        The metadata is copied onto the underlying PaymentIntent as well, so
        ``payment_intent.succeeded`` webhooks carry the same reconciliation
        data as the session.

        Returns:
            The created ``stripe.checkout.Session``.
        """
        params: dict[str, object] = {
            "mode": "payment",
            "customer": customer_id,
            "line_items": line_items,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if discounts:
            params["discounts"] = discounts
        with _translate_stripe_errors("checkout session create"):
            return self.client.v1.checkout.sessions.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )

    def retrieve_payment_intent(self, intent_id: str) -> stripe.PaymentIntent:
        """Fetch the authoritative state of a PaymentIntent."""
        with _translate_stripe_errors("payment intent retrieve", intent_id):
            return self.client.v1.payment_intents.retrieve(intent_id)

    def retrieve_checkout_session(self, session_id: str) -> stripe.checkout.Session:
        """Fetch the authoritative state of a Checkout Session."""
        with _translate_stripe_errors("checkout session retrieve", session_id):
            return self.client.v1.checkout.sessions.retrieve(session_id)
