"""Django app configuration for the replay store app."""

from django.apps import AppConfig


class DjangoReplayStoreConfig(AppConfig):
    """Configuration for the replay store app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "django_replay_store.store"
    label = "replay_store"
    verbose_name = "Replay Store"
