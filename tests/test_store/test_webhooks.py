"""Tests for Stripe webhook handling in django_replay_store.store.webhooks."""

from unittest.mock import MagicMock, patch

import pytest
import stripe as _stripe
from django.test import RequestFactory, override_settings

from django_replay_store.store.errors import PaymentNotCompleted
from django_replay_store.store.models import EventProcessingException, StripeEvent
from django_replay_store.store.webhooks import (
    ChargeDisputeCreatedWebhook,
    CheckoutSessionCompletedWebhook,
    PaymentIntentPaymentFailedWebhook,
    PaymentIntentSucceededWebhook,
    Webhook,
    WebhookRegistry,
    registry,
    stripe_webhook,
)

CONFIRM = "django_replay_store.store.webhooks.ConfirmationService.confirm"
CONSTRUCT_EVENT = "django_replay_store.store.webhooks.stripe.Webhook.construct_event"
STORE_METADATA = {"product_ids": "0b9e6c1e-4f7a-4c1b-9a53-2f1d3c4b5a6e", "payer_email": "guest@example.com"}


# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
def stripe_event(db):
    return StripeEvent.objects.create(
        stripe_id="evt_test_base_001",
        kind="test.event",
        livemode=False,
        payload={"data": {"object": {"id": "test_obj_001"}}},
    )


@pytest.fixture
def request_factory():
    return RequestFactory()


def _event(stripe_id, kind, data_object):
    return StripeEvent.objects.create(
        stripe_id=stripe_id,
        kind=kind,
        payload={"data": {"object": data_object}},
    )


# =============================================================================
# TestWebhookRegistry
# =============================================================================


@pytest.mark.unit
class TestWebhookRegistry:
    def test_register_and_get(self):
        reg = WebhookRegistry()
        reg.register("test.event", Webhook)

        assert reg.get("test.event") is Webhook

    def test_get_missing_returns_none(self):
        assert WebhookRegistry().get("nonexistent.event") is None

    def test_module_registry_has_expected_handlers(self):
        assert sorted(registry.keys()) == [
            "charge.dispute.created",
            "checkout.session.completed",
            "payment_intent.payment_failed",
            "payment_intent.succeeded",
        ]
        assert registry.get("payment_intent.succeeded") is PaymentIntentSucceededWebhook


# =============================================================================
# TestWebhookBase
# =============================================================================


@pytest.mark.unit
@pytest.mark.django_db
class TestWebhookBase:
    def test_already_processed_event_is_skipped(self, stripe_event):
        stripe_event.processed = True
        stripe_event.save()
        handler = Webhook(stripe_event)

        with patch.object(handler, "process_webhook") as mock_process:
            handler.process()

        mock_process.assert_not_called()

    def test_successful_processing_marks_event_processed(self, stripe_event):
        handler = Webhook(stripe_event)

        with patch.object(handler, "process_webhook"):
            handler.process()

        stripe_event.refresh_from_db()
        assert stripe_event.processed is True

    def test_exception_creates_processing_exception_record(self, stripe_event):
        handler = Webhook(stripe_event)

        with patch.object(handler, "process_webhook", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError, match="boom"):
                handler.process()

        record = EventProcessingException.objects.get(event=stripe_event)
        assert "boom" in record.traceback
        stripe_event.refresh_from_db()
        assert stripe_event.processed is False

    def test_base_process_webhook_raises_not_implemented(self, stripe_event):
        with pytest.raises(NotImplementedError):
            Webhook(stripe_event).process_webhook()

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"data": "string"},
            {"data": {"object": "string"}},
            {"other": 1},
        ],
    )
    def test_data_object_falls_back_to_empty_dict(self, payload):
        event = StripeEvent.objects.create(stripe_id="evt_shape", kind="x", payload=payload)

        assert Webhook(event).data_object == {}


# =============================================================================
# TestPaymentHandlers
# =============================================================================


@pytest.mark.unit
@pytest.mark.django_db
class TestPaymentHandlers:
    def test_payment_intent_succeeded_confirms_intent(self):
        event = _event(
            "evt_pi_ok",
            "payment_intent.succeeded",
            {"id": "pi_123", "status": "succeeded", "metadata": STORE_METADATA},
        )

        with patch(CONFIRM, return_value=[MagicMock()]) as mock_confirm:
            PaymentIntentSucceededWebhook(event).process()

        mock_confirm.assert_called_once_with("pi_123")
        event.refresh_from_db()
        assert event.processed is True

    def test_confirmation_failure_is_captured(self):
        event = _event("evt_pi_bad", "payment_intent.succeeded", {"id": "pi_bad", "metadata": STORE_METADATA})

        with patch(CONFIRM, side_effect=PaymentNotCompleted("processing")):
            with pytest.raises(PaymentNotCompleted):
                PaymentIntentSucceededWebhook(event).process()

        assert EventProcessingException.objects.filter(event=event).count() == 1
        event.refresh_from_db()
        assert event.processed is False

    def test_paid_checkout_session_is_confirmed(self):
        event = _event(
            "evt_cs_ok",
            "checkout.session.completed",
            {"id": "cs_123", "payment_status": "paid", "payment_intent": "pi_123", "metadata": STORE_METADATA},
        )

        with patch(CONFIRM, return_value=[]) as mock_confirm:
            CheckoutSessionCompletedWebhook(event).process()

        mock_confirm.assert_called_once_with("cs_123")

    def test_unpaid_checkout_session_waits(self):
        event = _event(
            "evt_cs_wait",
            "checkout.session.completed",
            {"id": "cs_123", "payment_status": "unpaid", "metadata": STORE_METADATA},
        )

        with patch(CONFIRM) as mock_confirm:
            CheckoutSessionCompletedWebhook(event).process()

        mock_confirm.assert_not_called()
        event.refresh_from_db()
        assert event.processed is True

    @pytest.mark.parametrize("metadata", [None, {}, {"invoice": "in_123"}, {"product_ids": ""}])
    def test_intent_from_another_integration_is_ignored(self, metadata, caplog):
        data_object = {"id": "pi_invoice", "status": "succeeded"}
        if metadata is not None:
            data_object["metadata"] = metadata
        event = _event("evt_pi_foreign", "payment_intent.succeeded", data_object)

        with patch(CONFIRM) as mock_confirm, caplog.at_level("INFO", logger="django_replay_store.store.webhooks"):
            PaymentIntentSucceededWebhook(event).process()

        mock_confirm.assert_not_called()
        assert "pi_invoice" in caplog.text
        event.refresh_from_db()
        assert event.processed is True
        assert not EventProcessingException.objects.exists()

    def test_session_from_another_integration_is_ignored(self):
        event = _event("evt_cs_foreign", "checkout.session.completed", {"id": "cs_other", "payment_status": "paid"})

        with patch(CONFIRM) as mock_confirm:
            CheckoutSessionCompletedWebhook(event).process()

        mock_confirm.assert_not_called()
        event.refresh_from_db()
        assert event.processed is True
        assert not EventProcessingException.objects.exists()

    def test_payment_failed_logs_reason(self, caplog):
        event = _event(
            "evt_pi_failed",
            "payment_intent.payment_failed",
            {
                "id": "pi_fail",
                "metadata": {"payer_email": "buyer@example.com"},
                "last_payment_error": {"message": "Your card was declined."},
            },
        )

        with caplog.at_level("WARNING", logger="django_replay_store.store.webhooks"):
            PaymentIntentPaymentFailedWebhook(event).process()

        assert "pi_fail" in caplog.text
        assert "buyer@example.com" in caplog.text
        assert "Your card was declined." in caplog.text

    def test_payment_failed_without_details(self, caplog):
        event = _event("evt_pi_failed_bare", "payment_intent.payment_failed", {"id": "pi_fail"})

        with caplog.at_level("WARNING", logger="django_replay_store.store.webhooks"):
            PaymentIntentPaymentFailedWebhook(event).process()

        assert "No error details" in caplog.text

    def test_dispute_is_logged(self, caplog):
        event = _event(
            "evt_dispute",
            "charge.dispute.created",
            {"id": "dp_1", "charge": "ch_1", "payment_intent": "pi_1", "amount": 17730, "reason": "fraudulent"},
        )

        with caplog.at_level("WARNING", logger="django_replay_store.store.webhooks"):
            ChargeDisputeCreatedWebhook(event).process()

        assert "dp_1" in caplog.text
        assert "fraudulent" in caplog.text


# =============================================================================
# TestStripeWebhookView
# =============================================================================


@pytest.mark.unit
@pytest.mark.django_db
class TestStripeWebhookView:
    def _make_request(self, factory, body=b"{}", sig="t=123,v1=abc"):
        request = factory.post(
            "/webhook/",
            data=body,
            content_type="application/json",
        )
        request.META["HTTP_STRIPE_SIGNATURE"] = sig
        return request

    def _mock_event(self, event_id="evt_test_123", kind="payment_intent.succeeded", customer="cus_test_123"):
        return {
            "id": event_id,
            "type": kind,
            "livemode": False,
            "data": {
                "object": {
                    "id": "pi_test_001",
                    "amount": 17730,
                    "customer": customer,
                    "metadata": STORE_METADATA,
                },
            },
            "api_version": "2025-08-27.basil",
        }

    def test_no_webhook_secret_returns_400(self, request_factory):
        with override_settings(DJANGO_REPLAY_STORE={"stripe": {"test_secret_key": "sk_test_1", "test_mode": True}}):
            response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 400
        assert not StripeEvent.objects.exists()

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_returns_400(self, mock_construct, request_factory):
        mock_construct.side_effect = _stripe.SignatureVerificationError("bad sig", "t=123,v1=abc")

        response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 400
        assert not StripeEvent.objects.exists()

    @patch(CONSTRUCT_EVENT)
    def test_invalid_payload_returns_400(self, mock_construct, request_factory):
        mock_construct.side_effect = ValueError("Invalid payload")

        response = stripe_webhook(self._make_request(request_factory, body=b"not json"))

        assert response.status_code == 400

    @patch(CONSTRUCT_EVENT)
    def test_signature_is_verified_with_configured_secret(self, mock_construct, request_factory):
        mock_construct.return_value = self._mock_event(kind="some.unknown.event")

        stripe_webhook(self._make_request(request_factory, body=b'{"id": "evt"}', sig="t=1,v1=sig"))

        mock_construct.assert_called_once_with(b'{"id": "evt"}', "t=1,v1=sig", "whsec_test_secret", tolerance=300)

    def test_get_not_allowed(self, request_factory):
        response = stripe_webhook(request_factory.get("/webhook/"))

        assert response.status_code == 405

    @patch(CONSTRUCT_EVENT)
    def test_processed_duplicate_is_acknowledged_without_dispatch(self, mock_construct, request_factory):
        StripeEvent.objects.create(stripe_id="evt_duplicate_001", kind="payment_intent.succeeded", processed=True)
        mock_construct.return_value = self._mock_event(event_id="evt_duplicate_001")

        with patch(CONFIRM) as mock_confirm:
            response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 200
        mock_confirm.assert_not_called()
        assert StripeEvent.objects.filter(stripe_id="evt_duplicate_001").count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_unprocessed_redelivery_is_retried(self, mock_construct, request_factory):
        event = self._mock_event(event_id="evt_retry_001")
        StripeEvent.objects.create(stripe_id="evt_retry_001", kind="payment_intent.succeeded", payload=event)
        mock_construct.return_value = event

        with patch(CONFIRM, return_value=[]) as mock_confirm:
            response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 200
        mock_confirm.assert_called_once_with("pi_test_001")
        assert StripeEvent.objects.get(stripe_id="evt_retry_001").processed is True

    @patch(CONSTRUCT_EVENT)
    def test_unregistered_event_kind_is_stored(self, mock_construct, request_factory):
        mock_construct.return_value = self._mock_event(event_id="evt_unregistered_001", kind="some.unknown.event")

        response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 200
        stored = StripeEvent.objects.get(stripe_id="evt_unregistered_001")
        assert stored.kind == "some.unknown.event"
        assert stored.customer_id == "cus_test_123"
        assert stored.api_version == "2025-08-27.basil"
        assert stored.processed is False

    @patch(CONSTRUCT_EVENT)
    def test_successful_dispatch(self, mock_construct, request_factory):
        mock_construct.return_value = self._mock_event(event_id="evt_success_001")

        with patch(CONFIRM, return_value=[]) as mock_confirm:
            response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 200
        mock_confirm.assert_called_once_with("pi_test_001")
        assert StripeEvent.objects.get(stripe_id="evt_success_001").processed is True

    @patch(CONSTRUCT_EVENT)
    def test_handler_exception_still_returns_200(self, mock_construct, request_factory):
        mock_construct.return_value = self._mock_event(event_id="evt_error_001")

        with patch(CONFIRM, side_effect=RuntimeError("database went away")):
            response = stripe_webhook(self._make_request(request_factory))

        assert response.status_code == 200
        stored = StripeEvent.objects.get(stripe_id="evt_error_001")
        assert stored.processed is False
        assert EventProcessingException.objects.filter(event=stored).exists()

    def test_url_is_routed(self, client):
        with patch(CONSTRUCT_EVENT, side_effect=ValueError("Invalid payload")):
            response = client.post("/store/webhooks/stripe/", data=b"{}", content_type="application/json")

        assert response.status_code == 400
