"""Stripe webhook handling for the replay store.

Provides a registry-based dispatch system for processing Stripe webhook events.
Each event kind (e.g. ``payment_intent.succeeded``) maps to a handler class that
encapsulates idempotent processing, signal dispatch, and error capture.

Webhooks are the authoritative confirmation path: a payment the purchaser's
browser never reports back is still turned into purchases here, through the
same :class:`~django_replay_store.store.services.confirmation.ConfirmationService`
the confirm endpoint uses.

Usage in URL configuration::

    from django_replay_store.store.webhooks import stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook),
    ]
"""

import logging
import traceback
from typing import TYPE_CHECKING

import stripe
from django.http import HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from django_replay_store.settings import get_config
from django_replay_store.store.models import EventProcessingException, StripeEvent
from django_replay_store.store.services.confirmation import ConfirmationService

if TYPE_CHECKING:
    from django.http import HttpRequest

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class WebhookRegistry:
    """Registry mapping Stripe event kinds to handler classes."""

    def __init__(self) -> None:
        self._registry: dict[str, type[Webhook]] = {}

    def register(self, kind: str, handler_class: "type[Webhook]") -> None:
        """Register a handler class for a Stripe event kind.

        Args:
            kind: The Stripe event type string (e.g. ``"payment_intent.succeeded"``).
            handler_class: A ``Webhook`` subclass that handles this event kind.
        """
        self._registry[kind] = handler_class

    def get(self, kind: str) -> "type[Webhook] | None":
        """Return the handler class for a given event kind, or ``None``."""
        return self._registry.get(kind)

    def keys(self) -> list[str]:
        return list(self._registry.keys())


registry = WebhookRegistry()


# ---------------------------------------------------------------------------
# Base handler
# ---------------------------------------------------------------------------


class Webhook:
    """Base class for Stripe webhook event handlers.

    Subclasses set ``name`` to the Stripe event kind they handle and implement
    ``process_webhook()``. The base ``process()`` method wraps execution in
    idempotency checks and exception capture.

    Attributes:
        name: The Stripe event kind this handler processes.
        event: The ``StripeEvent`` model instance being handled.
    """

    name: str = ""

    def __init__(self, event: StripeEvent) -> None:
        self.event = event

    def process(self) -> None:
        """Run the handler with idempotency and error capture.

        Skips events that have already been processed. On success, marks the
        event as processed. On failure, captures the traceback to
        ``EventProcessingException`` and re-raises.
        """
        if self.event.processed:
            logger.info("Event %s already processed, skipping", self.event.stripe_id)
            return

        try:
            self.process_webhook()
            self.event.processed = True
            self.event.save(update_fields=["processed"])
        except Exception:
            self.log_exception()
            raise

    def process_webhook(self) -> None:
        """Implement event-specific processing logic.

        Raises:
            NotImplementedError: Subclasses must override this method.
        """
        raise NotImplementedError

    def log_exception(self) -> None:
        """Capture the current exception to ``EventProcessingException``."""
        tb = traceback.format_exc()
        logger.error(
            "Error processing webhook %s (event %s): %s",
            self.name,
            self.event.stripe_id,
            tb,
        )
        EventProcessingException.objects.create(
            event=self.event,
            data=str(self.event.payload),
            message=str(tb)[:500],
            traceback=tb,
        )

    @property
    def data_object(self) -> dict[str, object]:
        """The ``data.object`` dict of the event payload, or ``{}``."""
        payload = self.event.payload
        if isinstance(payload, dict):
            data = payload.get("data")
            if isinstance(data, dict):
                obj = data.get("object")
                if isinstance(obj, dict):
                    return obj
        return {}


# ---------------------------------------------------------------------------
# Concrete handlers
# ---------------------------------------------------------------------------


def _created_by_store(obj: dict[str, object]) -> bool:
    """Check whether a payment object carries the metadata checkout attaches."""
    metadata = obj.get("metadata")
    return isinstance(metadata, dict) and bool(metadata.get("product_ids"))


class PaymentIntentSucceededWebhook(Webhook):
    """Handles ``payment_intent.succeeded`` by confirming the payment.

    Intents created outside the store (invoices, other integrations on the
    same Stripe account) are skipped.
    """

    name = "payment_intent.succeeded"

    def process_webhook(self) -> None:
        intent = self.data_object
        intent_id = str(intent.get("id", ""))
        if not _created_by_store(intent):
            logger.info("Ignoring payment intent %s without store metadata", intent_id)
            return
        purchases = ConfirmationService.confirm(intent_id)
        logger.info("Webhook confirmed payment %s (%s purchase(s))", intent_id, len(purchases))


class CheckoutSessionCompletedWebhook(Webhook):
    """Handles ``checkout.session.completed`` for hosted checkouts.

    Sessions completed with a delayed payment method report ``unpaid`` here;
    those are confirmed later by the ``payment_intent.succeeded`` event.
    """

    name = "checkout.session.completed"

    def process_webhook(self) -> None:
        session = self.data_object
        session_id = str(session.get("id", ""))
        if not _created_by_store(session):
            logger.info("Ignoring checkout session %s without store metadata", session_id)
            return
        if session.get("payment_status") != "paid":
            logger.info("Checkout session %s completed without payment yet, waiting", session_id)
            return
        purchases = ConfirmationService.confirm(session_id)
        logger.info("Webhook confirmed checkout session %s (%s purchase(s))", session_id, len(purchases))


class PaymentIntentPaymentFailedWebhook(Webhook):
    """Handles ``payment_intent.payment_failed`` by logging the reason."""

    name = "payment_intent.payment_failed"

    def process_webhook(self) -> None:
        intent = self.data_object
        metadata = intent.get("metadata")
        payer = metadata.get("payer_email", "") if isinstance(metadata, dict) else ""

        error = intent.get("last_payment_error")
        reason = "No error details"
        if isinstance(error, dict):
            msg = error.get("message")
            reason = str(msg) if isinstance(msg, str) else "Unknown error"
        logger.warning(
            "Payment failed for intent %s (payer %s): %s",
            intent.get("id"),
            payer or "unknown",
            reason,
        )


class ChargeDisputeCreatedWebhook(Webhook):
    """Handles ``charge.dispute.created`` events.

    Logs the dispute for manual review. Access granted by the disputed payment
    is left in place until an operator decides otherwise.
    """

    name = "charge.dispute.created"

    def process_webhook(self) -> None:
        dispute = self.data_object
        logger.warning(
            "Stripe dispute created: id=%s, charge=%s, payment_intent=%s, amount=%s, reason=%s",
            dispute.get("id"),
            dispute.get("charge"),
            dispute.get("payment_intent"),
            dispute.get("amount"),
            dispute.get("reason"),
        )


# ---------------------------------------------------------------------------
# Handler registration
# ---------------------------------------------------------------------------

registry.register(PaymentIntentSucceededWebhook.name, PaymentIntentSucceededWebhook)
registry.register(CheckoutSessionCompletedWebhook.name, CheckoutSessionCompletedWebhook)
registry.register(PaymentIntentPaymentFailedWebhook.name, PaymentIntentPaymentFailedWebhook)
registry.register(ChargeDisputeCreatedWebhook.name, ChargeDisputeCreatedWebhook)


# ---------------------------------------------------------------------------
# Webhook endpoint view
# ---------------------------------------------------------------------------


@csrf_exempt
@require_POST
def stripe_webhook(request: "HttpRequest") -> HttpResponse:
    """Receive and process Stripe webhook events.

    Verifies the event signature against the configured webhook secret,
    deduplicates by Stripe event ID, persists the raw event, and dispatches
    to the registered handler.

    Returns HTTP 400 when the webhook secret is missing or the signature does
    not verify, so Stripe keeps retrying and the failure is visible in the
    Stripe dashboard. Every verified event is acknowledged with HTTP 200 even
    when processing fails; failures are captured to
    ``EventProcessingException``.
    """
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")

    config = get_config()
    webhook_secret = config.stripe.webhook_secret
    if not webhook_secret:
        logger.error("Stripe webhook received but no webhook secret is configured")
        return HttpResponse(status=400)

    try:
        event = stripe.Webhook.construct_event(
            payload,
            sig_header,
            str(webhook_secret),
            tolerance=config.stripe.webhook_tolerance,
        )
    except (stripe.SignatureVerificationError, ValueError):
        logger.warning("Invalid Stripe webhook payload or signature")
        return HttpResponse(status=400)

    stripe_id = event["id"]
    kind = event["type"]

    if StripeEvent.objects.filter(stripe_id=stripe_id, processed=True).exists():
        logger.info("Duplicate Stripe event %s, returning 200", stripe_id)
        return HttpResponse(status=200)

    customer_id = ""
    data_object = event.get("data", {}).get("object", {})
    if isinstance(data_object, dict):
        customer_id = data_object.get("customer", "") or ""

    stripe_event, _created = StripeEvent.objects.get_or_create(
        stripe_id=stripe_id,
        defaults={
            "kind": kind,
            "livemode": event.get("livemode", False),
            "payload": dict(event),
            "customer_id": str(customer_id),
            "api_version": event.get("api_version", "") or "",
        },
    )

    handler_class = registry.get(kind)
    if handler_class is None:
        logger.info("No handler registered for event kind '%s'", kind)
        return HttpResponse(status=200)

    try:
        handler = handler_class(stripe_event)
        handler.process()
    except Exception:
        logger.exception(
            "Error processing Stripe event %s (kind=%s)",
            stripe_id,
            kind,
        )

    return HttpResponse(status=200)
