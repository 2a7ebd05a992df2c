"""
Resolution of duplicate orders created by the customer (cloud) and staff
(local) channels for one table session while they were partitioned.

Staff pick exactly one of four resolutions. Each is a distinct type carrying
its own audit action, so adding a fifth case means adding a class and a
handler rather than another string comparison.
"""
from dataclasses import dataclass
from django.db import transaction
from django.utils import timezone
from typing import ClassVar, Dict, List, Optional, Union
import logging

from audit.models import AuditLog
from audit.services import AuditService
from core_backend.exceptions import ConflictError, NotFoundError, ValidationError
from orders.events import OrderEventPublisher
from orders.models import Order, OrderConflict, OrderItem
from orders.serializers import OrderConflictSerializer, order_snapshot
from orders.services.calculation_service import OrderCalculationService
from orders.services.order_service import OrderService
from tables.services import TableService
from users.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Merge:
    """Union both item lists into the cloud order; the local order is cancelled."""
    tag: ClassVar[str] = OrderConflict.Resolution.MERGE
    audit_action: ClassVar[str] = "conflict_merge"


@dataclass(frozen=True)
class KeepCloud:
    """The customer's order stands; the staff order is cancelled and its lines recorded."""
    tag: ClassVar[str] = OrderConflict.Resolution.KEEP_CLOUD
    audit_action: ClassVar[str] = "conflict_keep_cloud"


@dataclass(frozen=True)
class KeepLocal:
    """The staff order stands; the customer order is cancelled and its lines recorded."""
    tag: ClassVar[str] = OrderConflict.Resolution.KEEP_LOCAL
    audit_action: ClassVar[str] = "conflict_keep_local"


@dataclass(frozen=True)
class CancelAll:
    """Both orders are cancelled, leaving the table with no open order."""
    tag: ClassVar[str] = OrderConflict.Resolution.CANCEL_ALL
    audit_action: ClassVar[str] = "conflict_cancel_all"


Resolution = Union[Merge, KeepCloud, KeepLocal, CancelAll]

RESOLUTIONS: Dict[str, type] = {cls.tag: cls for cls in (Merge, KeepCloud, KeepLocal, CancelAll)}

DISCARDING_ACTIONS = (KeepCloud.audit_action, KeepLocal.audit_action)


def parse_resolution(tag: str) -> Resolution:
    """Map a client-supplied tag (``merge``, ``keep_cloud``...) to its resolution."""
    try:
        return RESOLUTIONS[tag]()
    except KeyError:
        raise ValidationError(
            "INVALID_RESOLUTION",
            f"Unknown resolution '{tag}'. Expected one of: {', '.join(RESOLUTIONS)}",
        )


def _mergeable(a: OrderItem, b: OrderItem) -> bool:
    """Lines fold into one when they are the same product at the same price and neither carries a note."""
    return (
        a.product_id is not None
        and a.product_id == b.product_id
        and not a.note
        and not b.note
        and a.unit_price == b.unit_price
    )


def _fold(target: OrderItem, item: OrderItem) -> int:
    """
    Add ``item``'s quantity to ``target`` and settle the merged kitchen state.

    Once any part of the line is in the kitchen, the merged line counts as
    sent: PREPARING while any unit is still pending or cooking, READY only
    when both halves were. Returns how many units the kitchen has not seen
    yet and must be told about.
    """
    Status = OrderItem.KitchenStatus
    lines = (target, item)
    sent = [line for line in lines if line.kitchen_status != Status.PENDING]
    unseen = sum(line.quantity for line in lines if line.kitchen_status == Status.PENDING) if sent else 0

    target.quantity += item.quantity
    update_fields = ["quantity", "updated_at"]
    if sent:
        all_ready = all(line.kitchen_status == Status.READY for line in lines)
        target.kitchen_status = Status.READY if all_ready else Status.PREPARING
        target.sent_to_kitchen_at = min(line.sent_to_kitchen_at or timezone.now() for line in sent)
        target.ready_at = max((line.ready_at for line in lines if line.ready_at), default=None) if all_ready else None
        target.display_in_kitchen = target.display_in_kitchen or item.display_in_kitchen
        update_fields += ["kitchen_status", "sent_to_kitchen_at", "ready_at", "display_in_kitchen"]
    target.save(update_fields=update_fields)
    return unseen


class ConflictResolver:
    """Surfaces channel conflicts to staff and applies their chosen resolution atomically."""

    @staticmethod
    def open_conflicts(table_session=None):
        queryset = OrderConflict.objects.filter(status=OrderConflict.ConflictStatus.OPEN).select_related(
            "cloud_order", "local_order"
        )
        if table_session is not None:
            queryset = queryset.filter(table_session=table_session)
        return queryset

    @staticmethod
    def describe(conflict: OrderConflict) -> Dict:
        """Both orders with their item lists, as shown to staff."""
        return OrderConflictSerializer(conflict).data

    @staticmethod
    @transaction.atomic
    def resolve(conflict_id, resolution: Resolution, user: Optional[User] = None, reason: str = "") -> OrderConflict:
        """
        Apply ``resolution`` to both orders of a conflict as one atomic step.

        Raises:
            NotFoundError: CONFLICT_NOT_FOUND
            ConflictError: CONFLICT_ALREADY_RESOLVED, CONFLICT_STALE (an order
                was paid or cancelled since the conflict was raised)
            ValidationError: INVALID_RESOLUTION
        """
        if isinstance(resolution, str):
            resolution = parse_resolution(resolution)
        handler = ConflictResolver._HANDLERS.get(type(resolution))
        if handler is None:
            raise ValidationError("INVALID_RESOLUTION", f"Unsupported resolution {resolution!r}")

        conflict = OrderConflict.objects.select_for_update().filter(pk=conflict_id).first()
        if conflict is None:
            raise NotFoundError("CONFLICT_NOT_FOUND", f"Conflict {conflict_id} not found")
        if conflict.status == OrderConflict.ConflictStatus.RESOLVED:
            raise ConflictError(
                "CONFLICT_ALREADY_RESOLVED",
                f"Conflict already resolved with {conflict.resolution}",
                conflict_id=conflict.id,
            )

        locked = {str(order.pk): order for order in OrderService.lock_many([conflict.cloud_order_id, conflict.local_order_id])}
        cloud = locked[str(conflict.cloud_order_id)]
        local = locked[str(conflict.local_order_id)]
        if not (cloud.is_active and local.is_active):
            raise ConflictError(
                "CONFLICT_STALE",
                "One of the orders is no longer open; refresh and review",
                conflict_id=conflict.id,
                cloud_status=cloud.status,
                local_status=local.status,
            )

        before = {"cloud_order": order_snapshot(cloud), "local_order": order_snapshot(local)}
        survivor, details = handler(cloud, local, user, resolution)

        conflict.status = OrderConflict.ConflictStatus.RESOLVED
        conflict.resolution = resolution.tag
        conflict.surviving_order = survivor
        conflict.resolved_by = user if getattr(user, "pk", None) else None
        conflict.resolved_at = timezone.now()
        conflict.save(update_fields=["status", "resolution", "surviving_order", "resolved_by", "resolved_at"])

        AuditService.append(
            user,
            resolution.audit_action,
            conflict,
            old_value={**before, **details.get("old", {})},
            new_value={
                "surviving_order": str(survivor.id) if survivor else None,
                **details.get("new", {}),
            },
            reason=reason,
        )

        if survivor is None:
            TableService.release_if_settled(conflict.table_session)

        logger.info(
            f"Resolved conflict {conflict.id} with {resolution.tag}: "
            f"survivor {survivor.order_number if survivor else 'none'}"
        )
        OrderEventPublisher.conflict_resolved(conflict)
        if survivor is not None:
            OrderEventPublisher.order_updated(survivor)
        return conflict

    # --- Handlers: (cloud, local, user, resolution) -> (survivor, audit details) ---

    @staticmethod
    def _merge(cloud: Order, local: Order, user, resolution):
        survivor_lines: List[OrderItem] = list(cloud.items.select_for_update())
        merged, moved = [], []
        unseen = {}

        for item in local.items.select_for_update():
            target = next((line for line in survivor_lines if _mergeable(line, item)), None)
            if target is not None:
                added = _fold(target, item)
                if added and target.display_in_kitchen:
                    unseen[target] = unseen.get(target, 0) + added
                merged.append({"from": item.snapshot(), "into": str(target.id)})
                item.delete()
            else:
                OrderItem.objects.filter(pk=item.pk).update(order=cloud)
                item.order = cloud
                survivor_lines.append(item)
                moved.append(item.snapshot())

        if cloud.status == Order.OrderStatus.PENDING_PAYMENT:
            # The bill changed, so it has to be presented again
            OrderService.transition(cloud, Order.OrderStatus.OPEN)
            cloud.save(update_fields=["status", "updated_at"])

        OrderCalculationService.recalculate_order_totals(cloud)
        OrderCalculationService.recalculate_order_totals(local)
        OrderService.cancel_locked(local, user, "conflict_merged", action="conflict_merged")
        if unseen:
            # Pending units folded into a sent line still have to reach the kitchen
            OrderEventPublisher.kitchen_ticket(
                cloud, list(unseen), quantities={str(line.id): count for line, count in unseen.items()}
            )

        return cloud, {"new": {"merged_lines": merged, "moved_lines": moved, "total": cloud.total}}

    @staticmethod
    def _keep(keep: Order, discard: Order, user, resolution):
        discarded_items = [item.snapshot() for item in discard.items.all()]
        OrderService.cancel_locked(
            discard,
            user,
            resolution.tag,
            action="conflict_discarded",
            notify_kitchen=any(item["kitchen_status"] != OrderItem.KitchenStatus.PENDING for item in discarded_items),
        )
        return keep, {
            "old": {"discarded_order": str(discard.id), "discarded_items": discarded_items},
        }

    @staticmethod
    def _keep_cloud(cloud, local, user, resolution):
        return ConflictResolver._keep(cloud, local, user, resolution)

    @staticmethod
    def _keep_local(cloud, local, user, resolution):
        return ConflictResolver._keep(local, cloud, user, resolution)

    @staticmethod
    def _cancel_all(cloud, local, user, resolution):
        cancelled = {}
        for order in (cloud, local):
            cancelled[str(order.id)] = [item.snapshot() for item in order.items.all()]
            OrderService.cancel_locked(
                order,
                user,
                resolution.tag,
                action="conflict_discarded",
                notify_kitchen=order.items.exclude(kitchen_status=OrderItem.KitchenStatus.PENDING).exists(),
            )
        return None, {"old": {"cancelled_items": cancelled}}

    @staticmethod
    def discarded_items_report(since=None) -> List[Dict]:
        """
        Lines thrown away by keep_cloud / keep_local resolutions, newest first.

        Built from the audit trail, which is the system of record for them.
        """
        entries = AuditLog.objects.filter(action__in=DISCARDING_ACTIONS).select_related("actor")
        if since is not None:
            entries = entries.filter(created_at__gte=since)

        report = []
        for entry in entries:
            old = entry.old_value or {}
            report.append(
                {
                    "conflict_id": entry.target_id,
                    "resolution": entry.action.replace("conflict_", ""),
                    "discarded_order_id": old.get("discarded_order"),
                    "items": old.get("discarded_items", []),
                    "resolved_by": entry.actor.email if entry.actor else None,
                    "resolved_at": entry.created_at,
                    "reason": entry.reason,
                }
            )
        return report


ConflictResolver._HANDLERS = {
    Merge: ConflictResolver._merge,
    KeepCloud: ConflictResolver._keep_cloud,
    KeepLocal: ConflictResolver._keep_local,
    CancelAll: ConflictResolver._cancel_all,
}
