import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Replay",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=300)),
                ("event_year", models.PositiveIntegerField()),
                ("video_url", models.URLField(blank=True, default="", max_length=500)),
                ("published", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-event_year", "title"],
            },
        ),
        migrations.CreateModel(
            name="Coupon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=100, unique=True)),
                (
                    "discount_type",
                    models.CharField(
                        choices=[("percentage", "Percentage discount"), ("fixed", "Fixed amount discount")],
                        max_length=20,
                    ),
                ),
                (
                    "discount_value",
                    models.PositiveIntegerField(
                        help_text="Percentage (0-100) or fixed amount in the smallest currency unit.",
                    ),
                ),
                ("currency", models.CharField(default="gbp", max_length=3)),
                ("valid_from", models.DateTimeField(blank=True, null=True)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                (
                    "max_redemptions",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Maximum number of redemptions. Empty means unlimited.",
                        null=True,
                    ),
                ),
                ("times_redeemed", models.PositiveIntegerField(default=0)),
                ("active", models.BooleanField(default=True)),
                ("stripe_coupon_id", models.CharField(blank=True, default="", max_length=200)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["code"],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("product_name", models.CharField(max_length=200)),
                (
                    "product_type",
                    models.CharField(
                        choices=[("individual_replay", "Individual replay"), ("year_bundle", "Year bundle")],
                        max_length=30,
                    ),
                ),
                ("event_year", models.PositiveIntegerField()),
                (
                    "amount",
                    models.PositiveIntegerField(help_text="Price in the smallest currency unit (e.g. pence)."),
                ),
                ("currency", models.CharField(default="gbp", max_length=3)),
                ("stripe_product_id", models.CharField(blank=True, default="", max_length=200)),
                ("stripe_price_id", models.CharField(blank=True, default="", max_length=200)),
                ("active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "replay",
                    models.ForeignKey(
                        blank=True,
                        help_text="Required for individual replay products.",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="products",
                        to="replay_store.replay",
                    ),
                ),
            ],
            options={
                "ordering": ["-event_year", "product_name"],
            },
        ),
        migrations.CreateModel(
            name="Purchase",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("guest_email", models.EmailField(blank=True, default="", max_length=254)),
                ("event_year", models.PositiveIntegerField()),
                ("purchased_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("payment_reference", models.CharField(blank=True, default="", max_length=200)),
                (
                    "order_type",
                    models.CharField(
                        choices=[("paid", "Paid"), ("manual", "Manual"), ("admin_grant", "Admin grant")],
                        default="paid",
                        max_length=20,
                    ),
                ),
                ("coupon_code", models.CharField(blank=True, default="", max_length=100)),
                ("discount_amount", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "granted_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="granted_replay_purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="purchases",
                        to="replay_store.product",
                    ),
                ),
                (
                    "replay",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="purchases",
                        to="replay_store.replay",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="replay_purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-purchased_at"],
                "indexes": [models.Index(fields=["user", "event_year"], name="replay_store_purchase_user_yr")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("payment_reference", ""), _negated=True),
                        fields=("payment_reference", "product"),
                        name="replay_store_purchase_unique_payment_product",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="StripeCustomer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("email", models.EmailField(max_length=254, unique=True)),
                ("stripe_customer_id", models.CharField(max_length=200)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="stripe_customers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="StripeEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_id", models.CharField(max_length=255, unique=True)),
                ("kind", models.CharField(max_length=255)),
                ("livemode", models.BooleanField(default=False)),
                ("payload", models.JSONField(default=dict)),
                ("customer_id", models.CharField(blank=True, default="", max_length=255)),
                ("api_version", models.CharField(blank=True, default="", max_length=100)),
                ("processed", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="EventProcessingException",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("data", models.TextField(blank=True, default="")),
                ("message", models.CharField(max_length=500)),
                ("traceback", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "event",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="exceptions",
                        to="replay_store.stripeevent",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
