"""URL configuration for the replay store app.

Includes the checkout, confirmation, access, coupon and cart JSON endpoints
plus the Stripe webhook. Mount these under any prefix in the host project::

    urlpatterns = [
        path("store/", include("django_replay_store.store.urls")),
    ]
"""

from django.urls import path

from django_replay_store.store.views import (
    AccessView,
    CartItemDetailView,
    CartItemsView,
    CartView,
    CheckoutSessionView,
    ConfirmPaymentView,
    CouponEvaluateView,
)
from django_replay_store.store.webhooks import stripe_webhook

app_name = "replay_store"

urlpatterns = [
    path("checkout/session/", CheckoutSessionView.as_view(), name="checkout-session"),
    path("checkout/confirm/", ConfirmPaymentView.as_view(), name="checkout-confirm"),
    path("access/", AccessView.as_view(), name="access"),
    path("coupon/evaluate/", CouponEvaluateView.as_view(), name="coupon-evaluate"),
    path("cart/", CartView.as_view(), name="cart"),
    path("cart/items/", CartItemsView.as_view(), name="cart-items"),
    path("cart/items/<str:product_id>/", CartItemDetailView.as_view(), name="cart-item"),
    path("webhooks/stripe/", stripe_webhook, name="stripe-webhook"),
]
