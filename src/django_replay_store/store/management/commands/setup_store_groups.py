"""Management command to create the replay store's administrator group."""

from typing import Any

from django.contrib.auth.models import Group, Permission
from django.core.management.base import BaseCommand

from django_replay_store.settings import get_config

# (app_label, codename) permissions granted to store administrators.
_ADMIN_PERMISSIONS: list[tuple[str, str]] = [
    ("replay_store", "add_replay"),
    ("replay_store", "change_replay"),
    ("replay_store", "view_replay"),
    ("replay_store", "add_product"),
    ("replay_store", "change_product"),
    ("replay_store", "view_product"),
    ("replay_store", "add_coupon"),
    ("replay_store", "change_coupon"),
    ("replay_store", "delete_coupon"),
    ("replay_store", "view_coupon"),
    # Grants are added and revoked by hand; paid rows are only viewed.
    ("replay_store", "add_purchase"),
    ("replay_store", "change_purchase"),
    ("replay_store", "delete_purchase"),
    ("replay_store", "view_purchase"),
    ("replay_store", "view_stripecustomer"),
    ("replay_store", "view_stripeevent"),
    ("replay_store", "view_eventprocessingexception"),
]


class Command(BaseCommand):
    """Create the store administrator group with the store's model permissions.

    Members of the group are treated as store administrators and can watch
    every replay. The group name comes from ``DJANGO_REPLAY_STORE['admin_group']``.

    Safe to run multiple times; an existing group is updated with the defined
    permission set.
    """

    help = "Create the replay store administrator group."

    def handle(self, *args: Any, **options: Any) -> None:
        group_name = get_config().admin_group
        group, created = Group.objects.get_or_create(name=group_name)
        verb = "Created" if created else "Updated"

        permissions = Permission.objects.filter(
            content_type__app_label__in={app for app, _ in _ADMIN_PERMISSIONS},
        ).select_related("content_type")
        matched = [p for p in permissions if (p.content_type.app_label, p.codename) in _ADMIN_PERMISSIONS]
        group.permissions.set(matched)

        self.stdout.write(self.style.SUCCESS(f"{verb} group '{group_name}' with {len(matched)} permissions"))
