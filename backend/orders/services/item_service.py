from decimal import InvalidOperation
from django.db import transaction
from typing import Optional
import logging

from approvals.models import ActionType
from approvals.results import Applied
from approvals.services import AuthorizationService
from audit.services import AuditService
from core_backend.exceptions import AuthorizationError, NotFoundError, ValidationError
from orders.events import OrderEventPublisher
from orders.models import Order, OrderItem
from orders.services.calculation_service import OrderCalculationService
from orders.services.order_service import OrderService
from payments.money import money
from products.services import MenuCatalogService
from tables.models import TableSession
from tables.services import TableService
from users.models import User

logger = logging.getLogger(__name__)


class OrderItemService:
    """Service for managing order items - adding, updating, removing."""

    @staticmethod
    def _validate_quantity(quantity) -> int:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("INVALID_QUANTITY", "Quantity must be a whole number")
        if quantity < 1:
            raise ValidationError("INVALID_QUANTITY", "Quantity must be at least 1", quantity=quantity)
        return quantity

    @staticmethod
    def _get_item(order: Order, item_id) -> OrderItem:
        item = OrderItem.objects.select_for_update().filter(pk=item_id, order=order).first()
        if item is None:
            raise NotFoundError("ITEM_NOT_FOUND", f"Item {item_id} not found on this order", item_id=item_id)
        return item

    @staticmethod
    @transaction.atomic
    def add_item(
        order: Order,
        product_id=None,
        quantity: int = 1,
        note: str = "",
        open_item_name: Optional[str] = None,
        open_item_price=None,
        user: Optional[User] = None,
    ) -> OrderItem:
        """
        Add a catalog product or an open item to an order.

        The catalog price is snapshotted into ``unit_price``; later menu edits
        never touch this line. The first item on a dine-in table marks the
        table occupied.

        Raises:
            ValidationError: INVALID_QUANTITY, INVALID_OPEN_ITEM, PRODUCT_UNAVAILABLE, ORDER_CLOSED
            NotFoundError: PRODUCT_NOT_FOUND, ORDER_NOT_FOUND
        """
        quantity = OrderItemService._validate_quantity(quantity)

        if product_id is not None:
            entry = MenuCatalogService.lookup(product_id)
            if not entry.is_available:
                raise ValidationError(
                    "PRODUCT_UNAVAILABLE", f"'{entry.name}' is not available", product_id=product_id
                )
            fields = {
                "product_id": entry.product_id,
                "product_name": entry.name,
                "unit_price": money(entry.price),
                "display_in_kitchen": entry.display_in_kitchen,
            }
        else:
            name = (open_item_name or "").strip()
            try:
                price = money(open_item_price)
            except (TypeError, ValueError, InvalidOperation):
                price = None
            if not name or price is None or price < 0:
                raise ValidationError("INVALID_OPEN_ITEM", "Open items need a name and a non-negative price")
            fields = {
                "open_item_name": name,
                "product_name": name,
                "unit_price": price,
                "display_in_kitchen": True,
            }

        order = OrderService.lock(order)
        OrderService.ensure_status(order, Order.OrderStatus.OPEN)

        item = OrderItem.objects.create(order=order, quantity=quantity, note=(note or "").strip(), **fields)
        OrderCalculationService.recalculate_order_totals(order)

        if order.table_session_id:
            TableService.mark_occupied(order.table_session.table)

        logger.info(f"Added {quantity} x {item.display_name} @ {item.unit_price} to {order.order_number}")
        OrderEventPublisher.order_updated(order)
        return item

    @staticmethod
    @transaction.atomic
    def add_item_to_session(table_session: TableSession, user: Optional[User] = None, **item_spec) -> OrderItem:
        """
        Add an item for a seated table, creating the staff order on first add.
        """
        order = (
            OrderService.active_orders_for_session(table_session)
            .filter(channel=Order.Channel.STAFF, status=Order.OrderStatus.OPEN)
            .order_by("created_at")
            .first()
        )
        if order is None:
            order = OrderService.create_order(table_session=table_session, user=user)
        return OrderItemService.add_item(order, user=user, **item_spec)

    @staticmethod
    @transaction.atomic
    def update_item(order: Order, item_id, quantity=None, note=None) -> OrderItem:
        """
        Change quantity and/or note of a line.

        Quantity changes are refused once the item is in the kitchen; the note
        stays editable.

        Raises:
            ValidationError: INVALID_QUANTITY, ORDER_CLOSED
            AuthorizationError: ITEM_LOCKED
        """
        if quantity is not None:
            quantity = OrderItemService._validate_quantity(quantity)

        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)
        item = OrderItemService._get_item(order, item_id)

        update_fields = []
        if quantity is not None and quantity != item.quantity:
            if item.is_sent:
                raise AuthorizationError(
                    "ITEM_LOCKED", "Item has been sent to the kitchen", item_id=item.id
                )
            item.quantity = quantity
            update_fields.append("quantity")
        if note is not None:
            item.note = note.strip()
            update_fields.append("note")

        if update_fields:
            item.save(update_fields=update_fields + ["updated_at"])
            OrderCalculationService.recalculate_order_totals(order)
            OrderEventPublisher.order_updated(order)
        return item

    @staticmethod
    @transaction.atomic
    def remove_item(order: Order, item_id, user: Optional[User] = None) -> Order:
        """
        Delete a line that has not been sent to the kitchen.

        Raises:
            AuthorizationError: ITEM_LOCKED once the item left PENDING; use ``void_item``
        """
        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)
        item = OrderItemService._get_item(order, item_id)

        if item.kitchen_status != OrderItem.KitchenStatus.PENDING:
            raise AuthorizationError(
                "ITEM_LOCKED",
                "Item has been sent to the kitchen and can only be voided with manager approval",
                item_id=item.id,
            )

        snapshot = item.snapshot()
        item.delete()
        OrderCalculationService.recalculate_order_totals(order)

        AuditService.append(user, "remove_item", order, old_value=snapshot)
        logger.info(f"Removed {snapshot['name']} from {order.order_number}")
        OrderEventPublisher.order_updated(order)
        return order

    @staticmethod
    def attempt_void_item(order: Order, item_id, user: Optional[User], reason: str):
        """First phase of a void: applies directly for unsent items, otherwise opens a challenge."""
        return OrderItemService.void_item(order, item_id, user, reason)

    @staticmethod
    @transaction.atomic
    def void_item(
        order: Order,
        item_id,
        user: Optional[User],
        reason: str,
        authorization_token: Optional[str] = None,
    ):
        """
        Elevated removal of an item already sent to the kitchen.

        Returns:
            Applied(order) or NeedsAuthorization(challenge)
        """
        if not (reason or "").strip():
            raise ValidationError("REASON_REQUIRED", "A void reason is required")

        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)
        item = OrderItemService._get_item(order, item_id)

        if item.kitchen_status == OrderItem.KitchenStatus.PENDING:
            # Nothing to authorize for an unsent item
            return Applied(OrderItemService.remove_item(order, item_id, user=user))

        pending = AuthorizationService.gate(
            ActionType.ITEM_VOID,
            user,
            order=order,
            payload={"item_id": str(item.id)},
            reason=reason,
            threshold_value=item.total_price,
            authorization_token=authorization_token,
        )
        if pending is not None:
            return pending

        snapshot = item.snapshot()
        item.delete()
        OrderCalculationService.recalculate_order_totals(order)

        AuditService.append(user, "cancel_item", order, old_value=snapshot, reason=reason)
        logger.info(f"Voided sent item {snapshot['name']} on {order.order_number}: {reason}")
        OrderEventPublisher.item_voided(order, snapshot)
        OrderEventPublisher.order_updated(order)
        return Applied(order)
