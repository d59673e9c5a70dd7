"""JSON endpoints for checkout, confirmation, access checks, coupons and the cart.

Every endpoint speaks JSON. Store errors are rendered as
``{"error": {"code": ..., "message": ...}}`` with the status carried by the
error; server-side failures only ever expose a generic message.
"""

import json
import logging
from typing import TYPE_CHECKING

from django import forms
from django.db import OperationalError
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.views import View

from django_replay_store.store.errors import ServiceUnreachable, StoreError, StoreValidationError
from django_replay_store.store.forms import (
    AccessCheckForm,
    CartItemForm,
    CheckoutSessionForm,
    ConfirmPaymentForm,
    CouponEvaluateForm,
)
from django_replay_store.store.services.cart import CartStore
from django_replay_store.store.services.checkout import CheckoutService
from django_replay_store.store.services.confirmation import ConfirmationService
from django_replay_store.store.services.coupons import CouponService
from django_replay_store.store.services.entitlements import EntitlementService

if TYPE_CHECKING:
    from django_replay_store.store.models import Purchase

logger = logging.getLogger(__name__)


def _serialize_purchase(purchase: "Purchase") -> dict[str, object]:
    return {
        "id": str(purchase.pk),
        "product_id": str(purchase.product_id) if purchase.product_id else None,
        "replay_id": str(purchase.replay_id) if purchase.replay_id else None,
        "event_year": purchase.event_year,
        "purchased_at": purchase.purchased_at.isoformat(),
        "payment_reference": purchase.payment_reference,
        "order_type": purchase.order_type,
        "coupon_code": purchase.coupon_code or None,
        "discount_amount": purchase.discount_amount,
    }


def _cart_payload(cart: CartStore) -> dict[str, object]:
    items = cart.items()
    return {
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_type": item.product_type,
                "event_year": item.event_year,
                "amount": item.amount,
                "currency": item.currency,
            }
            for item in items
        ],
        "item_count": len(items),
        "total": cart.total(),
    }


class StoreAPIView(View):
    """Base view translating store errors into JSON error responses."""

    def dispatch(self, request: HttpRequest, *args: object, **kwargs: object) -> HttpResponse:
        try:
            return super().dispatch(request, *args, **kwargs)
        except StoreError as exc:
            return self.error_response(exc)
        except OperationalError:
            logger.exception("Database unavailable while handling %s %s", request.method, request.path)
            return self.error_response(ServiceUnreachable())

    @staticmethod
    def error_response(exc: StoreError) -> JsonResponse:
        if exc.status_code >= 500:
            logger.error("%s failed: %s", exc.__class__.__name__, exc)
        body: dict[str, object] = {"code": exc.code.value, "message": exc.public_message}
        fields = getattr(exc, "fields", None)
        if fields:
            body["fields"] = fields
        return JsonResponse({"error": body}, status=exc.status_code)

    @staticmethod
    def json_body(request: HttpRequest) -> dict[str, object]:
        """Decode the request body as a JSON object.

        Raises:
            StoreValidationError: If the body is not a JSON object.
        """
        if not request.body:
            return {}
        try:
            data = json.loads(request.body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise StoreValidationError("Request body must be valid JSON.") from None
        if not isinstance(data, dict):
            raise StoreValidationError("Request body must be a JSON object.")
        return data

    @staticmethod
    def clean(form_class: type[forms.Form], data: object) -> dict[str, object]:
        """Validate ``data`` with ``form_class`` and return the cleaned data.

        Raises:
            StoreValidationError: Listing the field errors when invalid.
        """
        form = form_class(data=data)
        if not form.is_valid():
            fields = {name: list(errors) for name, errors in form.errors.items()}
            raise StoreValidationError("Invalid request.", fields=fields)
        return form.cleaned_data


class CheckoutSessionView(StoreAPIView):
    """Create a payment session for the given products, or the session cart."""

    http_method_names = ["post"]

    def post(self, request: HttpRequest) -> JsonResponse:
        data = self.clean(CheckoutSessionForm, self.json_body(request))
        product_ids = data["product_ids"] or CartStore(request.session).product_ids()
        if not product_ids:
            raise StoreValidationError("Your cart is empty.")

        session = CheckoutService.create_payment_session(
            product_ids,
            payer_email=data["guest_email"],
            user=request.user,
            coupon_code=data["coupon_code"] or None,
            flow=data["flow"],
            attempt_id=data["attempt_id"] or None,
        )
        body: dict[str, object] = {
            "reference": session.reference,
            "amount": session.amount,
            "subtotal": session.subtotal,
            "discount_amount": session.discount_amount,
            "currency": session.currency,
            "coupon_code": session.coupon_code or None,
        }
        if session.client_secret is not None:
            body["client_secret"] = session.client_secret
        if session.redirect_url is not None:
            body["redirect_url"] = session.redirect_url
        return JsonResponse(body)


class ConfirmPaymentView(StoreAPIView):
    """Confirm a completed payment and return the purchases it granted."""

    http_method_names = ["post"]

    def post(self, request: HttpRequest) -> JsonResponse:
        data = self.clean(ConfirmPaymentForm, self.json_body(request))
        confirmation = ConfirmationService.confirm_payment(
            data["payment_reference"],
            user=request.user,
            create_account=data["create_account"],
            coupon_code=data["coupon_code"] or None,
        )
        CartStore(request.session).clear()
        return JsonResponse(
            {
                "purchases": [_serialize_purchase(purchase) for purchase in confirmation.purchases],
                "account_created": confirmation.account_created,
            }
        )


class AccessView(StoreAPIView):
    """Report whether the current user may watch a replay."""

    http_method_names = ["get"]

    def get(self, request: HttpRequest) -> JsonResponse:
        data = self.clean(AccessCheckForm, request.GET)
        return JsonResponse(
            {
                "has_access": EntitlementService.has_access(
                    request.user,
                    replay_id=data["replay_id"],
                    event_year=data["event_year"],
                ),
                "is_admin": EntitlementService.is_admin(request.user),
            }
        )


class CouponEvaluateView(StoreAPIView):
    """Preview the discount a coupon gives on a subtotal."""

    http_method_names = ["post"]

    def post(self, request: HttpRequest) -> JsonResponse:
        data = self.clean(CouponEvaluateForm, self.json_body(request))
        evaluation = CouponService.evaluate(data["code"], data["subtotal"], currency=data["currency"] or None)
        return JsonResponse(
            {
                "discount_amount": evaluation.discount_amount,
                "applied_code": evaluation.applied_code,
            }
        )


class CartView(StoreAPIView):
    """Show or empty the session cart."""

    http_method_names = ["get", "delete"]

    def get(self, request: HttpRequest) -> JsonResponse:
        return JsonResponse(_cart_payload(CartStore(request.session)))

    def delete(self, request: HttpRequest) -> JsonResponse:
        cart = CartStore(request.session)
        cart.clear()
        return JsonResponse(_cart_payload(cart))


class CartItemsView(StoreAPIView):
    """Add a product to the session cart."""

    http_method_names = ["post"]

    def post(self, request: HttpRequest) -> JsonResponse:
        data = self.clean(CartItemForm, self.json_body(request))
        cart = CartStore(request.session)
        cart.add(data["product_id"])
        return JsonResponse(_cart_payload(cart), status=201)


class CartItemDetailView(StoreAPIView):
    """Remove a product from the session cart."""

    http_method_names = ["delete"]

    def delete(self, request: HttpRequest, product_id: str) -> JsonResponse:
        cart = CartStore(request.session)
        cart.remove(product_id)
        return JsonResponse(_cart_payload(cart))
