from decimal import Decimal, InvalidOperation
from django.db import transaction
from django.utils import timezone
from typing import Dict, Iterable, List, Optional
import logging

from audit.services import AuditService
from core_backend.exceptions import ValidationError
from orders.events import OrderEventPublisher
from orders.models import Order
from orders.services import OrderService, SplitBillService
from tables.services import TableService
from users.models import User
from .models import Payment
from .money import ZERO, money
from .signals import payment_completed

logger = logging.getLogger(__name__)


class PaymentService:
    """Settles an order in one step from the tenders collected at the counter."""

    @staticmethod
    def _parse_tenders(tenders: Iterable[Dict]) -> List[Dict]:
        """
        Normalize ``[{"method", "amount", "received_amount"?}, ...]``.

        Raises:
            ValidationError: INVALID_PAYMENT for an unknown method, a
                non-positive amount, or cash received below its amount
        """
        parsed = []
        for tender in tenders or []:
            method = (tender.get("method") or "").upper()
            if method not in Payment.PaymentMethod.values:
                raise ValidationError("INVALID_PAYMENT", f"Unknown payment method '{tender.get('method')}'")
            try:
                amount = money(tender.get("amount"))
                received = tender.get("received_amount")
                received = money(received) if received not in (None, "") else None
            except (InvalidOperation, TypeError, ValueError):
                raise ValidationError("INVALID_PAYMENT", "Payment amounts must be numbers")
            if amount <= 0:
                raise ValidationError("INVALID_PAYMENT", "Payment amount must be positive", amount=amount)
            if received is not None and received < amount:
                raise ValidationError(
                    "INVALID_PAYMENT", "Received cash is less than the tendered amount", amount=amount
                )
            parsed.append({"method": method, "amount": amount, "received_amount": received})

        if not parsed:
            raise ValidationError("INVALID_PAYMENT", "At least one payment is required")
        return parsed

    @staticmethod
    def _absorb_overpayment(tenders: List[Dict], total: Decimal) -> List[Dict]:
        """
        Turn tendered cash beyond ``total`` into change.

        Cash tenders are trimmed from the last one backwards so the stored
        amounts add up to exactly the total; what was handed over stays in
        ``received_amount``. A cash tender trimmed to nothing is dropped.

        Raises:
            ValidationError: OVERPAYMENT when non-cash tenders alone exceed the total
        """
        excess = sum((tender["amount"] for tender in tenders), ZERO) - total
        if excess <= 0:
            return tenders

        for tender in reversed(tenders):
            if excess <= 0:
                break
            if tender["method"] != Payment.PaymentMethod.CASH:
                continue
            if tender["received_amount"] is None:
                tender["received_amount"] = tender["amount"]
            trimmed = min(tender["amount"], excess)
            tender["amount"] -= trimmed
            excess -= trimmed

        if excess > 0:
            raise ValidationError(
                "OVERPAYMENT",
                f"Card and transfer tenders exceed the total {total} by {excess}",
                total=total,
                excess=excess,
            )
        return [tender for tender in tenders if tender["amount"] > 0]

    @staticmethod
    @transaction.atomic
    def settle_order(order_id, payments: Iterable[Dict], user: Optional[User] = None) -> Order:
        """
        Record the tenders and mark the order PAID.

        Cash tenders may carry ``received_amount``; the difference is stored
        as change. Cash tendered beyond the total is recorded as change too,
        so payment amounts always sum to the order total. Once nothing else
        is active on the table session, the session closes and the table
        becomes available.

        Raises:
            ValidationError: ALREADY_PAID, ORDER_CANCELLED, INVALID_PAYMENT, INSUFFICIENT_PAYMENT,
                OVERPAYMENT
            NotFoundError: ORDER_NOT_FOUND
        """
        order = OrderService.lock(order_id)
        if order.status == Order.OrderStatus.PAID:
            raise ValidationError("ALREADY_PAID", "Order is already paid", order_id=order.id)
        if order.status == Order.OrderStatus.CANCELLED:
            raise ValidationError("ORDER_CANCELLED", "Order is cancelled", order_id=order.id)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)

        tenders = PaymentService._parse_tenders(payments)
        tendered = sum((tender["amount"] for tender in tenders), ZERO)
        if tendered < order.total:
            raise ValidationError(
                "INSUFFICIENT_PAYMENT",
                f"Tendered {tendered} is less than the total {order.total}",
                order_id=order.id,
                total=order.total,
                tendered=tendered,
            )
        tenders = PaymentService._absorb_overpayment(tenders, order.total)

        created = []
        for tender in tenders:
            received = tender["received_amount"]
            change = received - tender["amount"] if received is not None else Decimal("0.00")
            created.append(
                Payment.objects.create(
                    order=order,
                    method=tender["method"],
                    amount=tender["amount"],
                    received_amount=received,
                    change_amount=change,
                    created_by=user if getattr(user, "pk", None) else None,
                )
            )

        previous_status = order.status
        OrderService.transition(order, Order.OrderStatus.PAID)
        order.paid_at = timezone.now()
        order.save(update_fields=["status", "paid_at", "updated_at"])

        if order.table_session_id:
            TableService.release_if_settled(order.table_session)

        payment_completed.send(sender=PaymentService, order=order, payments=created, user=user)

        AuditService.append(
            user,
            "payment",
            order,
            old_value={"status": previous_status},
            new_value={
                "status": order.status,
                "total": order.total,
                "payments": [
                    {"method": p.method, "amount": p.amount, "change": p.change_amount} for p in created
                ],
            },
        )
        logger.info(
            f"Settled {order.order_number}: total={order.total} tendered={tendered} "
            f"methods={','.join(p.method for p in created)}"
        )
        OrderEventPublisher.order_paid(order)
        return order

    @staticmethod
    @transaction.atomic
    def settle_items(order_id, item_ids, payments: Iterable[Dict], user: Optional[User] = None) -> Order:
        """
        Pay for selected lines only.

        The lines are split off into their own order, which is then settled,
        all in one transaction: a rejected payment leaves the lines where they
        were. Selecting every line settles the order itself.

        Returns:
            Order: the PAID order holding the selected lines

        Raises:
            ValidationError: INVALID_REQUEST, INVALID_ITEMS, ALREADY_PAID, plus
                everything ``SplitBillService.split`` and ``settle_order`` raise
        """
        item_ids = {str(item_id) for item_id in (item_ids or [])}
        if not item_ids:
            raise ValidationError("INVALID_REQUEST", "Select at least one item to pay for")

        order = OrderService.lock(order_id)
        if order.status == Order.OrderStatus.PAID:
            raise ValidationError("ALREADY_PAID", "Order is already paid", order_id=order.id)

        remaining = {str(pk) for pk in order.items.values_list("pk", flat=True)}
        if item_ids == remaining:
            return PaymentService.settle_order(order.id, payments, user=user)

        paid_part = SplitBillService.split(order.id, item_ids, user=user)
        logger.info(f"Paying {len(item_ids)} items of {order.order_number} as {paid_part.order_number}")
        return PaymentService.settle_order(paid_part.id, payments, user=user)
