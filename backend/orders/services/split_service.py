from django.db import transaction
from typing import Iterable, Optional
import logging

from audit.services import AuditService
from core_backend.exceptions import ValidationError
from orders.events import OrderEventPublisher
from orders.models import Order, OrderItem
from orders.serializers import order_snapshot
from orders.services.calculation_service import OrderCalculationService
from orders.services.order_service import OrderService
from users.models import User

logger = logging.getLogger(__name__)

SPLIT_EMPTIED_REASON = "split_emptied"


class SplitBillService:
    """Moves a subset of lines from one order to a new order on the same table session."""

    @staticmethod
    @transaction.atomic
    def split(source_order_id, item_ids: Iterable, user: Optional[User] = None) -> Order:
        """
        Split ``item_ids`` off ``source_order_id`` into a new OPEN order.

        Items are re-parented, never copied, so the value of the source before
        the split equals the value of both orders after it. A source left with
        no items is cancelled with reason ``split_emptied``.

        Raises:
            ValidationError: INVALID_REQUEST (no items), ORDER_CLOSED, INVALID_ITEMS
            NotFoundError: ORDER_NOT_FOUND
        """
        item_ids = {str(item_id) for item_id in (item_ids or [])}
        if not item_ids:
            raise ValidationError("INVALID_REQUEST", "Select at least one item to split")

        source = OrderService.lock(source_order_id)
        if source.status == Order.OrderStatus.PAID:
            raise ValidationError("ORDER_PAID", "Paid orders cannot be split", order_id=source.id)
        OrderService.ensure_status(source, Order.OrderStatus.OPEN)

        items = list(source.items.select_for_update().filter(pk__in=item_ids))
        if len(items) != len(item_ids):
            found = {str(item.pk) for item in items}
            raise ValidationError(
                "INVALID_ITEMS",
                "Some items do not belong to this order",
                order_id=source.id,
                missing=",".join(sorted(item_ids - found)),
            )

        source_before = order_snapshot(source)

        new_order = Order.objects.create(
            table_session_id=source.table_session_id,
            order_type=source.order_type,
            channel=source.channel,
            split_from=source,
            created_by=user if getattr(user, "pk", None) else None,
        )
        moved = OrderItem.objects.filter(pk__in=[item.pk for item in items]).update(order=new_order)

        OrderCalculationService.recalculate_order_totals(source)
        OrderCalculationService.recalculate_order_totals(new_order)

        logger.info(
            f"Split {moved} items from {source.order_number} into {new_order.order_number}"
        )

        moved_snapshots = [item.snapshot() for item in items]
        AuditService.append(
            user,
            "split_order",
            source,
            old_value=source_before,
            new_value={"moved_items": moved_snapshots, "new_order_id": str(new_order.id), "total": source.total},
        )
        AuditService.append(
            user,
            "split_order_created",
            new_order,
            new_value={"source_order_id": str(source.id), "items": moved_snapshots, "total": new_order.total},
        )

        if not source.items.exists():
            OrderService.cancel_locked(source, user, SPLIT_EMPTIED_REASON, action="split_emptied_cancel")

        OrderEventPublisher.order_split(source, new_order)
        OrderEventPublisher.order_updated(new_order)
        return new_order
