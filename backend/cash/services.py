"""
Cash drawer reconciliation.

The expected drawer balance is always derived, never stored while the shift
is open:

    expected = start_amount + pay_ins - pay_outs + cash sales

where cash sales are the CASH payments of orders paid since the shift opened.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone
from typing import Optional
import logging

from audit.services import AuditService
from core_backend.config import engine_settings
from core_backend.exceptions import ConflictError, ValidationError
from orders.models import Order
from payments.models import Payment
from payments.money import ZERO, money
from users.models import User
from .models import CashShift, CashTransaction
from .serializers import CashShiftSerializer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShiftSnapshot:
    shift_id: int
    operator_id: int
    opened_at: object
    start_amount: Decimal
    total_pay_in: Decimal
    total_pay_out: Decimal
    cash_sales: Decimal
    expected_balance: Decimal


class CashShiftService:
    """Opens, tracks and closes the single cash drawer shift."""

    @staticmethod
    def _amount(value, code="INVALID_AMOUNT", allow_zero=False) -> Decimal:
        try:
            amount = money(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(code, "Amount must be a number")
        if amount < 0 or (amount == 0 and not allow_zero):
            raise ValidationError(code, "Amount must be positive", amount=amount)
        return amount

    @staticmethod
    def _open_shift(lock=False) -> Optional[CashShift]:
        queryset = CashShift.objects.filter(status=CashShift.ShiftStatus.OPEN)
        if lock:
            queryset = queryset.select_for_update()
        return queryset.first()

    @staticmethod
    def _require_open(lock=True) -> CashShift:
        shift = CashShiftService._open_shift(lock=lock)
        if shift is None:
            raise ValidationError("NO_OPEN_SHIFT", "No cash shift is open")
        return shift

    @staticmethod
    def _snapshot(shift: CashShift) -> ShiftSnapshot:
        totals = {
            row["type"]: row["total"]
            for row in shift.transactions.values("type").annotate(total=Sum("amount"))
        }
        pay_in = money(totals.get(CashTransaction.TransactionType.PAY_IN) or ZERO)
        pay_out = money(totals.get(CashTransaction.TransactionType.PAY_OUT) or ZERO)

        cash_sales = Payment.objects.filter(
            method=Payment.PaymentMethod.CASH,
            order__status=Order.OrderStatus.PAID,
            order__paid_at__gte=shift.opened_at,
        ).aggregate(total=Sum("amount"))["total"]
        cash_sales = money(cash_sales or ZERO)

        start = money(shift.start_amount)
        return ShiftSnapshot(
            shift_id=shift.pk,
            operator_id=shift.operator_id,
            opened_at=shift.opened_at,
            start_amount=start,
            total_pay_in=pay_in,
            total_pay_out=pay_out,
            cash_sales=cash_sales,
            expected_balance=start + pay_in - pay_out + cash_sales,
        )

    @staticmethod
    @transaction.atomic
    def open(operator: User, start_amount, notes: str = "") -> CashShift:
        """
        Open the drawer with ``start_amount`` as float.

        Raises:
            ConflictError: SHIFT_ALREADY_OPEN, including when a concurrent
                open wins the race on the single-open-shift constraint
            ValidationError: INVALID_AMOUNT
        """
        start_amount = CashShiftService._amount(start_amount, allow_zero=True)

        existing = CashShiftService._open_shift()
        if existing is not None:
            raise ConflictError(
                "SHIFT_ALREADY_OPEN",
                f"Shift {existing.pk} is already open",
                shift_id=existing.pk,
            )

        try:
            with transaction.atomic():
                shift = CashShift.objects.create(operator=operator, start_amount=start_amount, notes=notes or "")
        except IntegrityError:
            logger.warning("Lost race opening a cash shift; another shift is already open")
            raise ConflictError("SHIFT_ALREADY_OPEN", "A shift is already open")

        AuditService.append(operator, "open_shift", shift, new_value={"start_amount": start_amount})
        logger.info(f"Opened cash shift {shift.pk} with {start_amount} by {operator.email}")
        return shift

    @staticmethod
    def current() -> Optional[ShiftSnapshot]:
        """Live figures for the open shift, or None."""
        shift = CashShiftService._open_shift()
        if shift is None:
            return None
        return CashShiftService._snapshot(shift)

    @staticmethod
    @transaction.atomic
    def close(operator: User, end_amount, notes: str = "") -> CashShift:
        """
        Close the open shift with the counted ``end_amount``.

        A non-zero difference is recorded, never refused.

        Raises:
            ValidationError: NO_OPEN_SHIFT, INVALID_AMOUNT
        """
        end_amount = CashShiftService._amount(end_amount, allow_zero=True)
        shift = CashShiftService._require_open()
        snapshot = CashShiftService._snapshot(shift)

        shift.end_amount = end_amount
        shift.expected_end_amount = snapshot.expected_balance
        shift.difference_amount = end_amount - snapshot.expected_balance
        shift.status = CashShift.ShiftStatus.CLOSED
        shift.closed_at = timezone.now()
        if notes:
            shift.notes = f"{shift.notes}\n{notes}".strip()
        shift.save()

        AuditService.append(
            operator,
            "close_shift",
            shift,
            old_value={"expected_end_amount": snapshot.expected_balance},
            new_value={"end_amount": end_amount, "difference_amount": shift.difference_amount},
            reason=notes,
        )
        if shift.difference_amount:
            logger.warning(
                f"Cash shift {shift.pk} closed with difference {shift.difference_amount} "
                f"(expected {snapshot.expected_balance}, counted {end_amount})"
            )
        else:
            logger.info(f"Cash shift {shift.pk} closed balanced at {end_amount}")
        return shift

    @staticmethod
    @transaction.atomic
    def transaction(operator: User, type: str, amount, reason: str = "") -> CashTransaction:
        """
        Record a pay-in or pay-out on the open shift.

        Raises:
            ValidationError: INVALID_TRANSACTION_TYPE, INVALID_AMOUNT, NO_OPEN_SHIFT
        """
        if type not in CashTransaction.TransactionType.values:
            raise ValidationError("INVALID_TRANSACTION_TYPE", f"Unknown cash transaction type '{type}'")
        amount = CashShiftService._amount(amount)
        shift = CashShiftService._require_open()

        entry = CashTransaction.objects.create(
            shift=shift, type=type, amount=amount, reason=(reason or "")[:255], actor=operator
        )
        AuditService.append(
            operator,
            "pay_in" if type == CashTransaction.TransactionType.PAY_IN else "pay_out",
            shift,
            new_value={"amount": amount, "transaction_id": entry.pk},
            reason=reason,
        )
        logger.info(f"{entry.get_type_display()} {amount} on shift {shift.pk}: {reason}")
        return entry

    @staticmethod
    def history(limit: Optional[int] = None):
        """Most recent shifts first, serialized."""
        limit = limit or engine_settings.SHIFT_HISTORY_LIMIT
        shifts = CashShift.objects.select_related("operator").order_by("-opened_at", "-pk")[:limit]
        return CashShiftSerializer(shifts, many=True).data
