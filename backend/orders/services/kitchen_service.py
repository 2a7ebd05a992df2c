from django.db import transaction
from django.utils import timezone
from typing import Optional
import logging

from audit.services import AuditService
from core_backend.exceptions import NotFoundError, ValidationError
from orders.events import OrderEventPublisher
from orders.models import Order, OrderItem
from orders.services.order_service import OrderService
from users.models import User

logger = logging.getLogger(__name__)


class KitchenService:
    """Kitchen ticket dispatch and per-item readiness."""

    @staticmethod
    def advance_item(item: OrderItem, target: str) -> OrderItem:
        """
        Move ``item`` one step along PENDING -> PREPARING -> READY.

        Raises:
            ValidationError: INVALID_KITCHEN_TRANSITION for any backward or skipping move
        """
        if OrderItem.KITCHEN_TRANSITIONS.get(item.kitchen_status) != target:
            raise ValidationError(
                "INVALID_KITCHEN_TRANSITION",
                f"Cannot move item from {item.kitchen_status} to {target}",
                item_id=item.id,
            )
        item.kitchen_status = target
        return item

    @staticmethod
    @transaction.atomic
    def send_to_kitchen(order: Order, user: Optional[User] = None) -> int:
        """
        Send every pending kitchen item of ``order`` to the kitchen.

        Emits exactly one grouped ``kitchen:ticket`` event for the batch.
        Idempotent: with nothing newly pending it returns 0 and emits nothing.

        Returns:
            int: sent_count
        """
        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)

        items = list(
            order.items.select_for_update().filter(
                display_in_kitchen=True,
                kitchen_status=OrderItem.KitchenStatus.PENDING,
            )
        )
        if not items:
            logger.debug(f"send_to_kitchen: nothing pending on {order.order_number}")
            return 0

        now = timezone.now()
        for item in items:
            KitchenService.advance_item(item, OrderItem.KitchenStatus.PREPARING)
            item.sent_to_kitchen_at = now
            item.save(update_fields=["kitchen_status", "sent_to_kitchen_at", "updated_at"])

        sent_count = len(items)
        logger.info(f"Sent {sent_count} items of {order.order_number} to kitchen")

        AuditService.append(
            user,
            "send_to_kitchen",
            order,
            new_value={"items": [item.snapshot() for item in items]},
        )
        OrderEventPublisher.kitchen_ticket(order, items)
        OrderEventPublisher.order_updated(order)
        return sent_count

    @staticmethod
    @transaction.atomic
    def mark_item_ready(item_id, user: Optional[User] = None) -> OrderItem:
        """
        Kitchen marks a preparing item as ready; POS and the table are notified.

        Raises:
            NotFoundError: ITEM_NOT_FOUND
            ValidationError: INVALID_KITCHEN_TRANSITION if the item isn't PREPARING
        """
        order_id = OrderItem.objects.filter(pk=item_id).values_list("order_id", flat=True).first()
        if order_id is None:
            raise NotFoundError("ITEM_NOT_FOUND", f"Item {item_id} not found", item_id=item_id)

        # Serialize with other writers of the same order before touching the item
        order = OrderService.lock(order_id)
        item = OrderItem.objects.select_for_update().get(pk=item_id)

        KitchenService.advance_item(item, OrderItem.KitchenStatus.READY)
        item.ready_at = timezone.now()
        item.save(update_fields=["kitchen_status", "ready_at", "updated_at"])

        logger.info(f"Item {item.display_name} on {order.order_number} is ready")
        AuditService.append(user, "kitchen_ready", item, new_value={"kitchen_status": item.kitchen_status})
        OrderEventPublisher.item_ready(item)
        return item

    @staticmethod
    def kitchen_queue():
        """Items currently being prepared, oldest ticket first."""
        return (
            OrderItem.objects.filter(
                kitchen_status=OrderItem.KitchenStatus.PREPARING,
                display_in_kitchen=True,
                order__status__in=Order.ACTIVE_STATUSES,
            )
            .select_related("order")
            .order_by("sent_to_kitchen_at", "created_at")
        )
