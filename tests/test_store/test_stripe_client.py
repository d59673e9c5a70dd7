"""Tests for the StripeClient wrapper in django_replay_store.store.stripe_client."""

from unittest.mock import MagicMock, patch

import pytest
import stripe
from django.contrib.auth import get_user_model
from django.test import override_settings

from django_replay_store.settings import get_config
from django_replay_store.store.errors import PaymentProcessorUnreachable, PaymentReferenceNotFound
from django_replay_store.store.models import StripeCustomer
from django_replay_store.store.stripe_client import StripeClient

User = get_user_model()


# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
def user(db):
    return User.objects.create_user(username="stripeuser", email="stripeuser@example.com", password="testpass123")


@pytest.fixture
def mock_stripe_client_cls():
    with patch("django_replay_store.store.stripe_client.stripe.StripeClient") as mock_cls:
        mock_instance = MagicMock()
        mock_cls.return_value = mock_instance
        yield mock_cls, mock_instance.v1


# =============================================================================
# TestInit
# =============================================================================


@pytest.mark.unit
class TestInit:
    def test_uses_test_key_in_test_mode(self, mock_stripe_client_cls):
        mock_cls, _ = mock_stripe_client_cls

        StripeClient()

        args, kwargs = mock_cls.call_args
        assert args == ("sk_test_abc123",)
        assert kwargs["stripe_version"] == get_config().stripe.api_version
        assert kwargs["max_network_retries"] == 2
        assert isinstance(kwargs["http_client"], stripe.RequestsClient)

    def test_uses_live_key_outside_test_mode(self, mock_stripe_client_cls):
        mock_cls, _ = mock_stripe_client_cls

        with override_settings(DJANGO_REPLAY_STORE={"stripe": {"secret_key": "sk_live_987"}}):
            StripeClient()

        assert mock_cls.call_args.args == ("sk_live_987",)

    def test_explicit_key_wins(self, mock_stripe_client_cls):
        mock_cls, _ = mock_stripe_client_cls

        StripeClient("sk_test_explicit")

        assert mock_cls.call_args.args == ("sk_test_explicit",)

    def test_missing_key_raises(self):
        with override_settings(DJANGO_REPLAY_STORE={"stripe": {"test_mode": True}}):
            with pytest.raises(ValueError, match="No Stripe secret key configured for test mode"):
                StripeClient()

    def test_key_is_obfuscated_in_logs(self, mock_stripe_client_cls, caplog):
        with caplog.at_level("INFO", logger="django_replay_store.store.stripe_client"):
            StripeClient()

        assert "sk_test_abc123" not in caplog.text
        assert "****c123" in caplog.text


# =============================================================================
# TestGetOrCreateCustomer
# =============================================================================


@pytest.mark.unit
@pytest.mark.django_db
class TestGetOrCreateCustomer:
    def test_returns_cached_customer(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        existing = StripeCustomer.objects.create(email="a@example.com", stripe_customer_id="cus_cached")

        result = StripeClient().get_or_create_customer("A@Example.com ")

        assert result.pk == existing.pk
        v1.customers.list.assert_not_called()
        v1.customers.create.assert_not_called()

    def test_links_user_to_cached_guest_customer(self, user, mock_stripe_client_cls):
        existing = StripeCustomer.objects.create(email="stripeuser@example.com", stripe_customer_id="cus_guest")

        StripeClient().get_or_create_customer("stripeuser@example.com", user)

        existing.refresh_from_db()
        assert existing.user == user

    def test_adopts_remote_customer_with_same_email(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.customers.list.return_value = MagicMock(data=[MagicMock(id="cus_remote")])

        result = StripeClient().get_or_create_customer("a@example.com")

        assert result.stripe_customer_id == "cus_remote"
        v1.customers.list.assert_called_once_with(params={"email": "a@example.com", "limit": 1})
        v1.customers.create.assert_not_called()

    def test_creates_customer_with_user_metadata(self, user, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.customers.list.return_value = MagicMock(data=[])
        v1.customers.create.return_value = MagicMock(id="cus_new")

        result = StripeClient().get_or_create_customer(user.email, user)

        assert result.stripe_customer_id == "cus_new"
        assert result.user == user
        v1.customers.create.assert_called_once_with(
            params={"email": "stripeuser@example.com", "metadata": {"user_id": str(user.pk)}},
        )

    def test_connection_error_is_translated(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.customers.list.side_effect = stripe.APIConnectionError("timed out")

        with pytest.raises(PaymentProcessorUnreachable):
            StripeClient().get_or_create_customer("a@example.com")

        assert not StripeCustomer.objects.exists()


# =============================================================================
# TestPaymentObjects
# =============================================================================


@pytest.mark.unit
class TestPaymentObjects:
    def test_create_payment_intent(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.payment_intents.create.return_value = MagicMock(id="pi_1", client_secret="pi_1_secret_x")

        intent = StripeClient().create_payment_intent(
            amount=17730,
            currency="GBP",
            customer_id="cus_1",
            metadata={"product_ids": "p1"},
            idempotency_key="checkout-1",
        )

        assert intent.id == "pi_1"
        v1.payment_intents.create.assert_called_once_with(
            params={
                "amount": 17730,
                "currency": "gbp",
                "customer": "cus_1",
                "metadata": {"product_ids": "p1"},
                "description": "",
                "automatic_payment_methods": {"enabled": True},
            },
            options={"idempotency_key": "checkout-1"},
        )

    def test_create_payment_intent_without_client_secret(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.payment_intents.create.return_value = MagicMock(id="pi_1", client_secret=None)

        with pytest.raises(ValueError, match="no client_secret"):
            StripeClient().create_payment_intent(
                amount=100,
                currency="gbp",
                customer_id="cus_1",
                metadata={},
                idempotency_key="checkout-1",
            )

    def test_create_checkout_session_without_discounts(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls

        StripeClient().create_checkout_session(
            line_items=[],
            customer_id="cus_1",
            metadata={"a": "b"},
            idempotency_key="checkout-2",
            success_url="https://example.com/ok",
            cancel_url="https://example.com/cancel",
        )

        params = v1.checkout.sessions.create.call_args.kwargs["params"]
        assert "discounts" not in params
        assert params["payment_intent_data"] == {"metadata": {"a": "b"}}

    def test_retrieve_missing_intent(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.payment_intents.retrieve.side_effect = stripe.InvalidRequestError(
            "No such payment_intent",
            "intent",
            code="resource_missing",
        )

        with pytest.raises(PaymentReferenceNotFound):
            StripeClient().retrieve_payment_intent("pi_missing")

    def test_other_invalid_requests_propagate(self, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.checkout.sessions.retrieve.side_effect = stripe.InvalidRequestError("Bad param", "expand")

        with pytest.raises(stripe.InvalidRequestError):
            StripeClient().retrieve_checkout_session("cs_1")

    @pytest.mark.parametrize(
        "error",
        [
            stripe.APIConnectionError("down"),
            stripe.AuthenticationError("bad key"),
            stripe.RateLimitError("slow down"),
            stripe.APIError("boom"),
        ],
    )
    def test_unreachable_errors(self, mock_stripe_client_cls, error):
        _, v1 = mock_stripe_client_cls
        v1.payment_intents.retrieve.side_effect = error

        with pytest.raises(PaymentProcessorUnreachable) as exc_info:
            StripeClient().retrieve_payment_intent("pi_1")

        assert exc_info.value.status_code == 503
