"""Django admin configuration for the replay store app."""

from typing import TYPE_CHECKING

from django.contrib import admin

if TYPE_CHECKING:
    from django.http import HttpRequest

from django_replay_store.store.models import (
    Coupon,
    EventProcessingException,
    Product,
    Purchase,
    Replay,
    StripeCustomer,
    StripeEvent,
)


@admin.register(Replay)
class ReplayAdmin(admin.ModelAdmin):
    list_display = ("title", "event_year", "published", "updated_at")
    list_filter = ("event_year", "published")
    search_fields = ("title",)


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    """Admin interface for catalog products.

    Amounts are edited in the smallest currency unit, matching what Stripe
    charges.
    """

    list_display = ("product_name", "product_type", "event_year", "amount", "currency", "active")
    list_filter = ("product_type", "event_year", "active")
    search_fields = ("product_name", "stripe_product_id", "stripe_price_id")
    autocomplete_fields = ("replay",)


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    """Admin interface for coupons, with redemption counts alongside limits."""

    list_display = (
        "code",
        "discount_type",
        "discount_value",
        "times_redeemed",
        "max_redemptions",
        "valid_until",
        "active",
    )
    list_filter = ("discount_type", "active")
    search_fields = ("code",)
    readonly_fields = ("times_redeemed",)


@admin.register(Purchase)
class PurchaseAdmin(admin.ModelAdmin):
    """Admin interface for purchases and access grants.

    Paid purchases mirror a processor payment; their payment fields are
    read-only. Manual and admin grants can be added and removed here.
    """

    list_display = ("__str__", "event_year", "order_type", "payment_reference", "purchased_at")
    list_filter = ("order_type", "event_year")
    search_fields = ("user__email", "guest_email", "payment_reference", "coupon_code")
    raw_id_fields = ("user", "granted_by")
    readonly_fields = ("payment_reference", "coupon_code", "discount_amount")

    def save_model(self, request: "HttpRequest", obj: Purchase, form: object, change: bool) -> None:
        if not change and obj.order_type == Purchase.OrderType.ADMIN_GRANT and obj.granted_by_id is None:
            obj.granted_by = request.user
        super().save_model(request, obj, form, change)


@admin.register(StripeCustomer)
class StripeCustomerAdmin(admin.ModelAdmin):
    """Read-only admin for Stripe customer mappings."""

    list_display = ("email", "user", "stripe_customer_id", "created_at")
    search_fields = ("email", "stripe_customer_id")
    readonly_fields = ("email", "user", "stripe_customer_id", "created_at")

    def has_add_permission(self, request: "HttpRequest") -> bool:  # noqa: ARG002, D102
        return False

    def has_change_permission(self, request: "HttpRequest", obj: StripeCustomer | None = None) -> bool:  # noqa: ARG002, D102
        return False


@admin.register(StripeEvent)
class StripeEventAdmin(admin.ModelAdmin):
    """Read-only admin for Stripe webhook events."""

    list_display = ("stripe_id", "kind", "processed", "livemode", "created_at")
    list_filter = ("kind", "processed", "livemode")
    search_fields = ("stripe_id", "customer_id")
    readonly_fields = (
        "stripe_id",
        "kind",
        "livemode",
        "payload",
        "customer_id",
        "processed",
        "api_version",
        "created_at",
    )

    def has_add_permission(self, request: "HttpRequest") -> bool:  # noqa: ARG002, D102
        return False

    def has_change_permission(self, request: "HttpRequest", obj: StripeEvent | None = None) -> bool:  # noqa: ARG002, D102
        return False


@admin.register(EventProcessingException)
class EventProcessingExceptionAdmin(admin.ModelAdmin):
    """Read-only admin for webhook processing errors."""

    list_display = ("message", "event", "created_at")
    list_filter = ("created_at",)
    search_fields = ("message",)
    readonly_fields = ("event", "data", "message", "traceback", "created_at")

    def has_add_permission(self, request: "HttpRequest") -> bool:  # noqa: ARG002, D102
        return False

    def has_change_permission(
        self,
        request: "HttpRequest",  # noqa: ARG002
        obj: EventProcessingException | None = None,  # noqa: ARG002
    ) -> bool:  # noqa: D102
        return False
