"""Custom signals for the replay store app.

Signals:
    purchase_confirmed: Sent after a successful payment has been turned into
        purchase records (including idempotent replays of the same payment).
        Sender: The ``Purchase`` class.
        Kwargs:
            purchases: The list of ``Purchase`` instances for the payment.
            user: The owning user, or ``None`` for a guest purchase.
            payment_reference: The processor payment reference.
            created: ``True`` when the rows were created by this call.
    reconciliation_required: Sent when a paid order could not be recorded.
        Sender: The ``Purchase`` class.
        Kwargs:
            payment_reference: The processor payment reference.
            payer_email: The payer's email as recorded on the payment.
            error: The underlying exception.
"""

from django.dispatch import Signal

purchase_confirmed = Signal()
reconciliation_required = Signal()
