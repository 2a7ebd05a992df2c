from django.db import transaction
from django.utils import timezone
from typing import Iterable, List, Optional
import logging

from approvals.models import ActionType
from approvals.results import Applied
from approvals.services import AuthorizationService
from audit.services import AuditService
from core_backend.exceptions import ConflictError, NotFoundError, ValidationError
from orders.events import OrderEventPublisher
from orders.models import Order, OrderConflict, OrderItem
from orders.serializers import order_snapshot
from tables.models import TableSession
from tables.services import TableService
from users.models import User

logger = logging.getLogger(__name__)


class OrderService:
    """Order lifecycle: creation, bill request, cancellation and debt."""

    VALID_STATUS_TRANSITIONS = {
        Order.OrderStatus.OPEN: [
            Order.OrderStatus.PENDING_PAYMENT,
            Order.OrderStatus.PAID,
            Order.OrderStatus.CANCELLED,
            Order.OrderStatus.DEBT,
        ],
        Order.OrderStatus.PENDING_PAYMENT: [
            Order.OrderStatus.OPEN,
            Order.OrderStatus.PAID,
            Order.OrderStatus.CANCELLED,
            Order.OrderStatus.DEBT,
        ],
        Order.OrderStatus.PAID: [],
        Order.OrderStatus.CANCELLED: [],
        Order.OrderStatus.DEBT: [],
    }

    # --- Lookup and locking ---

    @staticmethod
    def get_order(order_id) -> Order:
        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found", order_id=order_id)
        return order

    @staticmethod
    def lock(order_or_id) -> Order:
        """
        Re-read the order under a row lock.

        Every mutation of an order goes through here first, giving one writer
        per order id for the rest of the surrounding transaction.
        """
        order_id = getattr(order_or_id, "pk", order_or_id)
        order = Order.objects.select_for_update().filter(pk=order_id).first()
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found", order_id=order_id)
        return order

    @staticmethod
    def lock_many(order_ids: Iterable) -> List[Order]:
        """Lock several orders in a stable (sorted id) order so two-order operations can't deadlock."""
        return [OrderService.lock(order_id) for order_id in sorted({str(i) for i in order_ids})]

    @staticmethod
    def ensure_status(order: Order, *allowed, code="ORDER_CLOSED") -> None:
        if order.status not in allowed:
            raise ValidationError(
                code,
                f"Order {order.order_number} is {order.get_status_display()}",
                order_id=order.id,
                status=order.status,
            )

    @staticmethod
    def transition(order: Order, new_status: str) -> None:
        if new_status not in OrderService.VALID_STATUS_TRANSITIONS.get(order.status, []):
            raise ValidationError(
                "INVALID_STATUS_TRANSITION",
                f"Cannot transition order from {order.status} to {new_status}.",
                order_id=order.id,
            )
        logger.info(f"Order {order.order_number}: {order.status} -> {new_status}")
        order.status = new_status

    # --- Creation ---

    @staticmethod
    @transaction.atomic
    def create_order(
        table_session: Optional[TableSession] = None,
        order_type: str = Order.OrderType.DINE_IN,
        channel: str = Order.Channel.STAFF,
        user: Optional[User] = None,
    ) -> Order:
        """
        Create a new OPEN order.

        An active order from the other channel on the same session is
        recorded as an OrderConflict; creation itself is never blocked by it.

        Raises:
            ValidationError: SESSION_CLOSED when the table session has ended
            ConflictError: DUPLICATE_OPEN_ORDER when the session already has an
                active order from the same channel
        """
        if table_session is not None:
            table_session = OrderService._lock_session(table_session)
            existing = OrderService.active_orders_for_session(table_session).filter(channel=channel).first()
            if existing is not None:
                raise ConflictError(
                    "DUPLICATE_OPEN_ORDER",
                    f"Session already has open order {existing.order_number}",
                    order_id=existing.id,
                    table_session_id=table_session.id,
                )

        order = Order.objects.create(
            table_session=table_session,
            order_type=order_type,
            channel=channel,
            created_by=user if getattr(user, "pk", None) else None,
        )
        logger.info(f"Created order {order.order_number} ({channel}, {order_type}) on session {getattr(table_session, 'id', None)}")
        if table_session is not None:
            OrderService.detect_conflict(order)
        return order

    @staticmethod
    @transaction.atomic
    def ingest_channel_order(
        table_session: TableSession,
        channel: str,
        items: Iterable[dict],
        user: Optional[User] = None,
    ) -> Order:
        """
        Accept an order replayed by a channel after a network partition.

        The order is always created, so ordering is never blocked. If the
        other channel already holds an active order on the same session, an
        OrderConflict is recorded and announced to POS terminals; both orders
        stay usable until staff resolve it.

        ``items`` are dicts accepted by ``OrderItemService.add_item``
        (``product_id``, ``quantity``, ``note``, ``open_item_name``, ``open_item_price``).
        """
        from orders.services.item_service import OrderItemService

        table_session = OrderService._lock_session(table_session)
        order = Order.objects.create(table_session=table_session, channel=channel, created_by=user)
        for line in items:
            OrderItemService.add_item(order, user=user, **line)

        OrderService.detect_conflict(order)
        order.refresh_from_db()
        return order

    @staticmethod
    def detect_conflict(order: Order) -> Optional[OrderConflict]:
        """Record a conflict when ``order`` and an order from the other channel are both active on its session."""
        if order.table_session_id is None or order.split_from_id is not None:
            return None

        other = (
            OrderService.active_orders_for_session(order.table_session)
            .exclude(pk=order.pk)
            .exclude(channel=order.channel)
            .filter(split_from__isnull=True)
            .order_by("created_at")
            .first()
        )
        if other is None:
            return None

        cloud, local = (order, other) if order.channel == Order.Channel.CUSTOMER else (other, order)
        conflict, created = OrderConflict.objects.get_or_create(
            cloud_order=cloud,
            local_order=local,
            defaults={"table_session_id": order.table_session_id},
        )
        if created:
            logger.warning(
                f"Order conflict on session {order.table_session_id}: "
                f"cloud {cloud.order_number} vs local {local.order_number}"
            )
            AuditService.append(
                None,
                "order_conflict_detected",
                conflict,
                new_value={"cloud_order": str(cloud.id), "local_order": str(local.id)},
            )
            OrderEventPublisher.conflict_detected(conflict)
        return conflict

    @staticmethod
    def active_orders_for_session(table_session: TableSession):
        return Order.objects.filter(table_session=table_session, status__in=Order.ACTIVE_STATUSES)

    # --- Lifecycle ---

    @staticmethod
    @transaction.atomic
    def request_bill(order: Order, user: Optional[User] = None) -> Order:
        order = OrderService.lock(order)
        OrderService.transition(order, Order.OrderStatus.PENDING_PAYMENT)
        order.save(update_fields=["status", "updated_at"])
        OrderEventPublisher.order_updated(order)
        return order

    @staticmethod
    @transaction.atomic
    def reopen(order: Order, user: Optional[User] = None) -> Order:
        """Send a PENDING_PAYMENT order back to OPEN so items can be added again."""
        order = OrderService.lock(order)
        OrderService.ensure_status(order, Order.OrderStatus.PENDING_PAYMENT, code="ORDER_NOT_PENDING_PAYMENT")
        OrderService.transition(order, Order.OrderStatus.OPEN)
        order.save(update_fields=["status", "updated_at"])
        OrderEventPublisher.order_updated(order)
        return order

    @staticmethod
    @transaction.atomic
    def cancel_order(order: Order, user: Optional[User], reason: str, authorization_token: Optional[str] = None):
        """
        Void an unpaid order.

        Orders with items already in the kitchen need manager authorization:
        without a token this returns ``NeedsAuthorization`` and changes nothing.

        Returns:
            Applied(order) or NeedsAuthorization(challenge)

        Raises:
            ValidationError: ORDER_PAID, ALREADY_CANCELLED, REASON_REQUIRED
        """
        order = OrderService.lock(order)
        if order.status == Order.OrderStatus.PAID:
            raise ValidationError("ORDER_PAID", "Paid orders cannot be cancelled", order_id=order.id)
        if order.status == Order.OrderStatus.CANCELLED:
            raise ValidationError("ALREADY_CANCELLED", "Order is already cancelled", order_id=order.id)
        if not (reason or "").strip():
            raise ValidationError("REASON_REQUIRED", "A cancellation reason is required")

        sent_to_kitchen = order.items.exclude(kitchen_status=OrderItem.KitchenStatus.PENDING).exists()
        if sent_to_kitchen:
            pending = AuthorizationService.gate(
                ActionType.ORDER_CANCEL,
                user,
                order=order,
                payload={"order_id": str(order.id)},
                reason=reason,
                threshold_value=order.total,
                authorization_token=authorization_token,
            )
            if pending is not None:
                logger.info(f"Cancellation of {order.order_number} needs manager approval")
                return pending

        OrderService.cancel_locked(order, user, reason, action="cancel_order", notify_kitchen=sent_to_kitchen)
        if order.table_session_id:
            TableService.release_if_settled(order.table_session)
        return Applied(order)

    @staticmethod
    def cancel_locked(order: Order, user, reason: str, action: str, notify_kitchen: bool = False, old_value=None) -> Order:
        """Cancel an order the caller already holds locked. Audited and announced."""
        before = old_value if old_value is not None else order_snapshot(order)
        OrderService.transition(order, Order.OrderStatus.CANCELLED)
        order.cancelled_at = timezone.now()
        order.cancel_reason = (reason or "")[:255]
        order.save(update_fields=["status", "cancelled_at", "cancel_reason", "updated_at"])

        AuditService.append(
            user,
            action,
            order,
            old_value=before,
            new_value={"status": order.status},
            reason=reason,
        )
        OrderEventPublisher.order_cancelled(order, notify_kitchen=notify_kitchen)
        return order

    @staticmethod
    @transaction.atomic
    def mark_debt(order: Order, user: Optional[User], note: str = "") -> Order:
        """
        Release an order unpaid. The table is freed once nothing else is active.

        Raises:
            ValidationError: ORDER_PAID, ORDER_CANCELLED, ALREADY_DEBT
        """
        order = OrderService.lock(order)
        if order.status == Order.OrderStatus.PAID:
            raise ValidationError("ORDER_PAID", "Order is already paid", order_id=order.id)
        if order.status == Order.OrderStatus.CANCELLED:
            raise ValidationError("ORDER_CANCELLED", "Order is cancelled", order_id=order.id)
        if order.status == Order.OrderStatus.DEBT:
            raise ValidationError("ALREADY_DEBT", "Order is already marked as debt", order_id=order.id)

        OrderService.transition(order, Order.OrderStatus.DEBT)
        order.debt_marked_at = timezone.now()
        order.debt_note = (note or "")[:255]
        order.save(update_fields=["status", "debt_marked_at", "debt_note", "updated_at"])

        AuditService.append(
            user,
            "mark_debt",
            order,
            new_value={"status": order.status, "total": order.total},
            reason=note,
        )
        if order.table_session_id:
            TableService.release_if_settled(order.table_session)
        OrderEventPublisher.order_updated(order)
        return order

    @staticmethod
    def debt_orders():
        """Orders released unpaid, most recently marked first."""
        return (
            Order.objects.filter(status=Order.OrderStatus.DEBT)
            .select_related("table_session__table", "created_by")
            .order_by("-debt_marked_at", "-created_at")
        )

    @staticmethod
    def _lock_session(table_session: TableSession) -> TableSession:
        session = TableSession.objects.select_for_update().select_related("table").filter(pk=table_session.pk).first()
        if session is None:
            raise NotFoundError("SESSION_NOT_FOUND", f"Table session {table_session.pk} not found")
        if session.ended_at is not None:
            raise ValidationError("SESSION_CLOSED", "Table session has ended", table_session_id=session.pk)
        return session
