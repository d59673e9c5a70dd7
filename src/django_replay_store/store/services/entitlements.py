"""Entitlement resolution for replay content.

Access is derived, never stored: a user can watch a replay when they own a
purchase for that replay, or a bundle purchase (no replay) for its event
year. Store administrators can watch everything.
"""

import logging
import uuid
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction

from django_replay_store.settings import get_config
from django_replay_store.store.models import Purchase, Replay

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

logger = logging.getLogger(__name__)


def _is_authenticated(user: "AbstractBaseUser | None") -> bool:
    return user is not None and bool(getattr(user, "is_authenticated", False))


class EntitlementService:
    """Stateless service answering and granting replay access."""

    @staticmethod
    def is_admin(user: "AbstractBaseUser | None") -> bool:
        """Return ``True`` for superusers and members of the store admin group."""
        if not _is_authenticated(user):
            return False
        if getattr(user, "is_superuser", False):
            return True
        groups = getattr(user, "groups", None)
        if groups is None:
            return False
        return groups.filter(name=get_config().admin_group).exists()

    @staticmethod
    def has_access(user: "AbstractBaseUser | None", *, replay_id: uuid.UUID | str | None, event_year: int) -> bool:
        """Check whether ``user`` may watch a replay.

        Args:
            user: The requesting user. Anonymous users never have access.
            replay_id: The replay being watched, if any.
            event_year: The event year the replay belongs to.

        Returns:
            ``True`` if the user is an admin, owns the individual replay, or
            owns a bundle for ``event_year``.
        """
        if not _is_authenticated(user):
            return False
        if EntitlementService.is_admin(user):
            return True

        purchases = Purchase.objects.filter(user=user)
        if purchases.filter(replay__isnull=True, event_year=event_year).exists():
            return True
        if replay_id is None:
            return False
        try:
            return purchases.filter(replay_id=replay_id).exists()
        except DjangoValidationError:
            logger.info("Access check with malformed replay id %r", replay_id)
            return False

    @staticmethod
    def accessible_years(user: "AbstractBaseUser | None") -> list[int]:
        """Return the event years fully unlocked for ``user`` by bundle purchases."""
        if not _is_authenticated(user):
            return []
        years = (
            Purchase.objects.filter(user=user, replay__isnull=True)
            .values_list("event_year", flat=True)
            .distinct()
            .order_by("-event_year")
        )
        return list(years)

    @staticmethod
    @transaction.atomic
    def grant_access(
        user: "AbstractBaseUser",
        *,
        event_year: int,
        replay: Replay | None = None,
        granted_by: "AbstractBaseUser | None" = None,
        order_type: str = Purchase.OrderType.ADMIN_GRANT,
    ) -> Purchase:
        """Grant access without a payment.

        Args:
            user: The user receiving access.
            event_year: The event year. Without ``replay`` this is a bundle grant.
            replay: A single replay to grant instead of the whole year.
            granted_by: The administrator issuing the grant.
            order_type: ``admin_grant`` or ``manual``.

        Returns:
            The new ``Purchase``, or the existing equivalent grant.

        Raises:
            ValueError: If ``order_type`` is ``paid`` or the replay belongs to
                a different event year.
        """
        if order_type == Purchase.OrderType.PAID:
            msg = "Paid purchases can only be created by confirming a payment"
            raise ValueError(msg)
        if replay is not None and replay.event_year != event_year:
            msg = f"Replay {replay.pk} belongs to {replay.event_year}, not {event_year}"
            raise ValueError(msg)

        existing = Purchase.objects.filter(
            user=user,
            replay=replay,
            event_year=event_year,
            order_type=order_type,
        ).first()
        if existing is not None:
            return existing

        purchase = Purchase.objects.create(
            user=user,
            replay=replay,
            event_year=event_year,
            order_type=order_type,
            granted_by=granted_by,
        )
        logger.info(
            "Granted %s access to %s for %s (by %s)",
            order_type,
            replay.pk if replay is not None else f"all of {event_year}",
            user,
            granted_by or "system",
        )
        return purchase

    @staticmethod
    def claim_guest_purchases(user: "AbstractBaseUser") -> int:
        """Attach earlier guest purchases made with the user's email.

        Returns:
            The number of purchases claimed.
        """
        email = (getattr(user, "email", "") or "").strip()
        if not email:
            return 0
        claimed = Purchase.objects.filter(user__isnull=True, guest_email__iexact=email).update(user=user)
        if claimed:
            logger.info("Attached %s guest purchase(s) for %s to user %s", claimed, email, user.pk)
        return claimed
