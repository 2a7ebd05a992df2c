from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models
from django.utils.translation import gettext_lazy as _


class CashShift(models.Model):
    """
    A cash drawer session from opening float to counted close.

    ``expected_end_amount`` and ``difference_amount`` are derived once, when
    the shift is closed.
    """

    class ShiftStatus(models.TextChoices):
        OPEN = "OPEN", _("Open")
        CLOSED = "CLOSED", _("Closed")

    operator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="cash_shifts",
    )
    start_amount = models.DecimalField(max_digits=12, decimal_places=2)
    end_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    expected_end_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    difference_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text=_("Counted minus expected. Negative means the drawer is short."),
    )
    status = models.CharField(max_length=10, choices=ShiftStatus.choices, default=ShiftStatus.OPEN)
    opened_at = models.DateTimeField(auto_now_add=True)
    closed_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-opened_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["status"],
                condition=models.Q(status="OPEN"),
                name="single_open_cash_shift",
            ),
            models.CheckConstraint(condition=models.Q(start_amount__gte=0), name="cash_shift_start_non_negative"),
        ]

    def __str__(self):
        return f"Shift {self.pk} ({self.get_status_display()}) by {self.operator}"


class CashTransaction(models.Model):
    """A manual pay-in or pay-out against the open drawer."""

    class TransactionType(models.TextChoices):
        PAY_IN = "PAY_IN", _("Pay In")
        PAY_OUT = "PAY_OUT", _("Pay Out")

    shift = models.ForeignKey(CashShift, on_delete=models.CASCADE, related_name="transactions")
    type = models.CharField(max_length=10, choices=TransactionType.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.CharField(max_length=255, blank=True, default="")
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="cash_transactions",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.CheckConstraint(condition=models.Q(amount__gt=0), name="cash_transaction_amount_positive"),
        ]

    def __str__(self):
        return f"{self.get_type_display()} {self.amount}"

    def clean(self):
        if self.amount is not None and self.amount <= Decimal("0"):
            raise DjangoValidationError({"amount": _("Amount must be positive.")})
