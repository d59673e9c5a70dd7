"""Typed configuration for django-replay-store.

Reads a single ``DJANGO_REPLAY_STORE`` dict from Django settings and exposes it
as composed, frozen dataclasses with sensible defaults.

Usage::

    from django_replay_store.settings import get_config

    config = get_config()
    config.stripe.active_secret_key
    config.currency
"""

import functools
from collections.abc import Mapping
from dataclasses import dataclass, field

from django.conf import settings
from django.test.signals import setting_changed


@dataclass(frozen=True, slots=True)
class StripeConfig:
    """Stripe payment processor configuration.

    ``test_mode`` switches every API call over to ``test_secret_key`` so a
    deployment can be exercised end to end without moving real money.
    """

    secret_key: str | None = None
    test_secret_key: str | None = None
    publishable_key: str | None = None
    webhook_secret: str | None = None
    api_version: str = "2025-08-27.basil"
    webhook_tolerance: int = 300
    test_mode: bool = False
    timeout: int = 20
    max_network_retries: int = 2

    @property
    def active_secret_key(self) -> str | None:
        """Return the secret key matching the current mode."""
        if self.test_mode:
            return self.test_secret_key
        return self.secret_key


@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Top-level django-replay-store configuration."""

    stripe: StripeConfig = field(default_factory=StripeConfig)
    currency: str = "gbp"
    cart_session_key: str = "replay_store_cart"
    max_cart_items: int = 20
    admin_group: str = "Replay Store: Admins"
    count_coupon_redemptions: bool = False
    checkout_success_url: str = "/thank-you?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "/checkout"


@functools.lru_cache(maxsize=1)
def get_config() -> StoreConfig:
    """Build and return the store configuration.

    Reads ``settings.DJANGO_REPLAY_STORE`` (a plain dict) and returns a frozen
    :class:`StoreConfig`.  The result is cached; the cache is cleared
    automatically when Django's ``setting_changed`` signal fires (e.g. inside
    ``override_settings``).
    """
    raw = getattr(settings, "DJANGO_REPLAY_STORE", {})
    if not isinstance(raw, Mapping):
        msg = "DJANGO_REPLAY_STORE must be a mapping (dict-like object)"
        raise TypeError(msg)
    raw_data = dict(raw)

    stripe_data = raw_data.pop("stripe", {})
    if not isinstance(stripe_data, Mapping):
        msg = "DJANGO_REPLAY_STORE['stripe'] must be a mapping (dict-like object)"
        raise TypeError(msg)

    config = StoreConfig(
        stripe=StripeConfig(**dict(stripe_data)),
        **raw_data,
    )
    _validate_store_config(config)
    return config


def _validate_store_config(config: StoreConfig) -> None:
    """Validate high-impact configuration values with clear error messages."""
    if not isinstance(config.currency, str) or not config.currency.strip():
        msg = "DJANGO_REPLAY_STORE['currency'] must be a non-empty string"
        raise ValueError(msg)
    if not isinstance(config.max_cart_items, int) or config.max_cart_items <= 0:
        msg = "DJANGO_REPLAY_STORE['max_cart_items'] must be a positive integer"
        raise ValueError(msg)
    if not isinstance(config.cart_session_key, str) or not config.cart_session_key:
        msg = "DJANGO_REPLAY_STORE['cart_session_key'] must be a non-empty string"
        raise ValueError(msg)
    if not isinstance(config.stripe.timeout, (int, float)) or config.stripe.timeout <= 0:
        msg = "DJANGO_REPLAY_STORE['stripe']['timeout'] must be a positive number of seconds"
        raise ValueError(msg)
    if not isinstance(config.stripe.max_network_retries, int) or config.stripe.max_network_retries < 0:
        msg = "DJANGO_REPLAY_STORE['stripe']['max_network_retries'] must be a non-negative integer"
        raise ValueError(msg)


def _clear_config_cache(*, setting: str, **kwargs: object) -> None:  # noqa: ARG001
    """Clear the cached config when Django settings change during tests."""
    if setting == "DJANGO_REPLAY_STORE":
        get_config.cache_clear()


setting_changed.connect(_clear_config_cache, dispatch_uid="django_replay_store.settings.clear_config_cache")
