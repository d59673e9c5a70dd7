"""Catalog, coupon, purchase and payment-processor models for django-replay-store."""

import uuid
from dataclasses import dataclass

from django.conf import settings
from django.db import models
from django.utils import timezone


class Replay(models.Model):
    """A recorded conference session that can be unlocked by a purchase."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=300)
    event_year = models.PositiveIntegerField()
    video_url = models.URLField(max_length=500, blank=True, default="")
    published = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-event_year", "title"]

    def __str__(self) -> str:
        return f"{self.title} ({self.event_year})"


@dataclass(frozen=True, slots=True)
class IndividualReplay:
    """Entitlement granted by buying a single replay."""

    replay_id: uuid.UUID
    event_year: int


@dataclass(frozen=True, slots=True)
class YearBundle:
    """Entitlement granted by buying every replay of an event year."""

    event_year: int


ProductEntitlement = IndividualReplay | YearBundle


class Product(models.Model):
    """A purchasable catalog entry mirrored from the payment processor.

    Amounts are stored as integers in the smallest currency unit. The
    ``product_type`` tag decides what a purchase of this product unlocks; use
    :attr:`entitlement` rather than branching on the raw string.
    """

    class ProductType(models.TextChoices):
        """What a purchase of the product grants access to."""

        INDIVIDUAL_REPLAY = "individual_replay", "Individual replay"
        YEAR_BUNDLE = "year_bundle", "Year bundle"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product_name = models.CharField(max_length=200)
    product_type = models.CharField(max_length=30, choices=ProductType.choices)
    event_year = models.PositiveIntegerField()
    replay = models.ForeignKey(
        Replay,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="products",
        help_text="Required for individual replay products.",
    )
    amount = models.PositiveIntegerField(help_text="Price in the smallest currency unit (e.g. pence).")
    currency = models.CharField(max_length=3, default="gbp")
    stripe_product_id = models.CharField(max_length=200, blank=True, default="")
    stripe_price_id = models.CharField(max_length=200, blank=True, default="")
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-event_year", "product_name"]

    def __str__(self) -> str:
        return f"{self.product_name} ({self.event_year})"

    @property
    def entitlement(self) -> ProductEntitlement | None:
        """Return the access this product grants, or ``None`` if misconfigured.

        An individual-replay product without a linked replay grants nothing
        and is therefore never purchasable.
        """
        match self.product_type:
            case Product.ProductType.YEAR_BUNDLE:
                return YearBundle(event_year=self.event_year)
            case Product.ProductType.INDIVIDUAL_REPLAY:
                if self.replay_id is None:
                    return None
                return IndividualReplay(replay_id=self.replay_id, event_year=self.event_year)
        return None

    @property
    def is_purchasable(self) -> bool:
        """Check whether this product can be sold right now.

        A product is purchasable when it is active, carries a positive price,
        and maps to a well-formed entitlement.
        """
        return self.active and self.amount > 0 and self.entitlement is not None


class Coupon(models.Model):
    """A discount code redeemable at checkout.

    Codes are stored upper-case and matched case-insensitively. Percentage
    coupons hold a whole percent in ``discount_value``; fixed coupons hold an
    amount in the smallest currency unit.
    """

    class DiscountType(models.TextChoices):
        """How ``discount_value`` is interpreted."""

        PERCENTAGE = "percentage", "Percentage discount"
        FIXED = "fixed", "Fixed amount discount"

    code = models.CharField(max_length=100, unique=True)
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices)
    discount_value = models.PositiveIntegerField(
        help_text="Percentage (0-100) or fixed amount in the smallest currency unit.",
    )
    currency = models.CharField(max_length=3, default="gbp")
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    max_redemptions = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum number of redemptions. Empty means unlimited.",
    )
    times_redeemed = models.PositiveIntegerField(default=0)
    active = models.BooleanField(default=True)
    stripe_coupon_id = models.CharField(max_length=200, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["code"]

    def __str__(self) -> str:
        return self.code

    def save(self, *args: object, **kwargs: object) -> None:
        """Normalize the code to upper-case before saving."""
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    @property
    def is_valid(self) -> bool:
        """Check whether this coupon can currently be redeemed.

        A coupon is valid when it is active, the current time falls within
        the optional validity window, and it has remaining redemptions.
        """
        if not self.active:
            return False
        now = timezone.now()
        if self.valid_from and now < self.valid_from:
            return False
        if self.valid_until and now > self.valid_until:
            return False
        return not (self.max_redemptions is not None and self.times_redeemed >= self.max_redemptions)


class Purchase(models.Model):
    """A durable entitlement record.

    A purchase with ``replay`` set unlocks that single replay. A purchase with
    no replay unlocks every replay of ``event_year``. Guest purchases carry a
    ``guest_email`` and no user until an account claims them.
    """

    class OrderType(models.TextChoices):
        """How the entitlement came to exist."""

        PAID = "paid", "Paid"
        MANUAL = "manual", "Manual"
        ADMIN_GRANT = "admin_grant", "Admin grant"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="replay_purchases",
    )
    guest_email = models.EmailField(blank=True, default="")
    product = models.ForeignKey(
        Product,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="purchases",
    )
    replay = models.ForeignKey(
        Replay,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="purchases",
    )
    event_year = models.PositiveIntegerField()
    purchased_at = models.DateTimeField(default=timezone.now)
    payment_reference = models.CharField(max_length=200, blank=True, default="")
    order_type = models.CharField(
        max_length=20,
        choices=OrderType.choices,
        default=OrderType.PAID,
    )
    coupon_code = models.CharField(max_length=100, blank=True, default="")
    discount_amount = models.PositiveIntegerField(null=True, blank=True)
    granted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="granted_replay_purchases",
    )

    class Meta:
        ordering = ["-purchased_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["payment_reference", "product"],
                condition=~models.Q(payment_reference=""),
                name="replay_store_purchase_unique_payment_product",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "event_year"], name="replay_store_purchase_user_yr"),
        ]

    def __str__(self) -> str:
        owner = self.user or self.guest_email
        scope = self.replay_id or f"bundle {self.event_year}"
        return f"Purchase {scope} for {owner}"

    @property
    def is_bundle(self) -> bool:
        """Return ``True`` when this purchase covers a whole event year."""
        return self.replay_id is None


class StripeCustomer(models.Model):
    """Maps a payer email to a Stripe customer ID.

    Keyed by email so guest and authenticated checkouts for the same address
    reuse one processor customer.
    """

    email = models.EmailField(unique=True)
    stripe_customer_id = models.CharField(max_length=200)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="stripe_customers",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.email} -> {self.stripe_customer_id}"


class StripeEvent(models.Model):
    """A raw Stripe webhook event, persisted for deduplication and audit."""

    stripe_id = models.CharField(max_length=255, unique=True)
    kind = models.CharField(max_length=255)
    livemode = models.BooleanField(default=False)
    payload = models.JSONField(default=dict)
    customer_id = models.CharField(max_length=255, blank=True, default="")
    api_version = models.CharField(max_length=100, blank=True, default="")
    processed = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.kind} ({self.stripe_id})"


class EventProcessingException(models.Model):
    """A captured failure raised while handling a Stripe webhook event."""

    event = models.ForeignKey(
        StripeEvent,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="exceptions",
    )
    data = models.TextField(blank=True, default="")
    message = models.CharField(max_length=500)
    traceback = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"<{self.message}, pk={self.pk}, Event={self.event}>"
