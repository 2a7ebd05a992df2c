import logging

from django.dispatch import receiver

from payments.models import Payment
from payments.signals import payment_completed
from .models import CashShift

logger = logging.getLogger(__name__)


@receiver(payment_completed)
def link_cash_payments_to_shift(sender, order, payments, **kwargs):
    """Attach the cash tenders of a settled order to the open drawer shift."""
    cash_ids = [p.pk for p in payments if p.method == Payment.PaymentMethod.CASH]
    if not cash_ids:
        return

    shift = CashShift.objects.filter(status=CashShift.ShiftStatus.OPEN).first()
    if shift is None:
        logger.warning(f"Cash payment on {order.order_number} taken with no open shift")
        return

    Payment.objects.filter(pk__in=cash_ids).update(cash_shift=shift)
    for payment in payments:
        if payment.pk in cash_ids:
            payment.cash_shift = shift
    logger.debug(f"Linked {len(cash_ids)} cash payments of {order.order_number} to shift {shift.pk}")
