"""Management command to grant replay access without a payment.

Usage::

    # Give a speaker every 2025 replay
    manage.py grant_replay_access --email speaker@example.com --year 2025

    # Give one replay, recorded as a manual order, on behalf of an admin
    manage.py grant_replay_access --email a@example.com --year 2025 \\
        --replay 0b7c... --manual --granted-by admin@example.com
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from django_replay_store.store.models import Purchase, Replay
from django_replay_store.store.services.entitlements import EntitlementService

if TYPE_CHECKING:
    import argparse


def _find_user(email: str) -> object:
    user_model = get_user_model()
    email_field = user_model.get_email_field_name()
    user = user_model._default_manager.filter(**{f"{email_field}__iexact": email}).first()
    if user is None:
        msg = f"No user with email '{email}'"
        raise CommandError(msg)
    return user


class Command(BaseCommand):
    """Grant a user access to one replay or to every replay of an event year."""

    help = "Grant replay access to a user without a payment"

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register command-line arguments.

        Args:
            parser: The argument parser to add arguments to.
        """
        parser.add_argument("--email", required=True, help="Email of the user receiving access.")
        parser.add_argument("--year", required=True, type=int, help="Event year to grant.")
        parser.add_argument("--replay", default=None, help="Replay id; omit to grant the whole year.")
        parser.add_argument(
            "--manual",
            action="store_true",
            help="Record the grant as a manual order instead of an admin grant.",
        )
        parser.add_argument("--granted-by", default=None, help="Email of the administrator issuing the grant.")

    def handle(self, **options: object) -> None:
        """Execute the grant command."""
        user = _find_user(str(options["email"]))
        granted_by = _find_user(str(options["granted_by"])) if options.get("granted_by") else None
        event_year = int(options["year"])

        replay = None
        if options.get("replay"):
            try:
                replay = Replay.objects.get(pk=options["replay"])
            except (Replay.DoesNotExist, ValidationError):
                msg = f"Replay '{options['replay']}' not found"
                raise CommandError(msg) from None

        order_type = Purchase.OrderType.MANUAL if options.get("manual") else Purchase.OrderType.ADMIN_GRANT
        try:
            purchase = EntitlementService.grant_access(
                user,
                event_year=event_year,
                replay=replay,
                granted_by=granted_by,
                order_type=order_type,
            )
        except ValueError as exc:
            raise CommandError(str(exc)) from None

        scope = replay.title if replay is not None else f"all {event_year} replays"
        self.stdout.write(self.style.SUCCESS(f"Granted {scope} to {options['email']} ({purchase.order_type})"))
