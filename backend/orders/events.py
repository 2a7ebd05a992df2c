from typing import Any, Dict, List
import logging

from notifications.realtime import RealtimeChannel, Topic
from .serializers import order_snapshot, OrderItemSnapshotSerializer

logger = logging.getLogger(__name__)


class OrderEventPublisher:
    """
    Centralized realtime events for the order engine.

    Every method only queues a publish; RealtimeChannel defers the send until
    the surrounding transaction commits and swallows delivery failures.
    """

    @staticmethod
    def _order_topics(order) -> List[str]:
        topics = [Topic.POS]
        if order.table_session_id:
            topics.append(Topic.table(order.table_session_id))
        return topics

    @staticmethod
    def _safe(event_name, build):
        try:
            return build()
        except Exception as e:
            logger.error(f"Error building {event_name} payload: {e}")
            return None

    @staticmethod
    def order_updated(order):
        payload = OrderEventPublisher._safe("order:updated", lambda: order_snapshot(order))
        if payload is not None:
            RealtimeChannel.publish_many(OrderEventPublisher._order_topics(order), "order:updated", payload)

    @staticmethod
    def kitchen_ticket(order, items, quantities=None):
        """
        One grouped ticket for every item sent in a single send-to-kitchen call.

        ``quantities`` maps item ids to the units to cook when only part of a
        line is new to the kitchen.
        """
        def build():
            lines = OrderItemSnapshotSerializer(items, many=True).data
            for line in lines:
                line["quantity"] = (quantities or {}).get(str(line["id"]), line["quantity"])
            return {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "table_id": order.table_session.table_id if order.table_session_id else None,
                "items": lines,
            }

        payload = OrderEventPublisher._safe("kitchen:ticket", build)
        if payload is not None:
            logger.info(f"Publishing kitchen:ticket for {order.order_number} ({len(items)} items)")
            RealtimeChannel.publish(Topic.KITCHEN, "kitchen:ticket", payload)

    @staticmethod
    def item_ready(item):
        payload: Dict[str, Any] = {
            "order_id": str(item.order_id),
            "item_id": str(item.id),
            "name": item.display_name,
            "quantity": item.quantity,
            "ready_at": item.ready_at,
        }
        topics = OrderEventPublisher._order_topics(item.order)
        RealtimeChannel.publish_many(topics, "kitchen:item_ready", payload)

    @staticmethod
    def item_voided(order, item_snapshot):
        RealtimeChannel.publish(
            Topic.KITCHEN,
            "kitchen:item_voided",
            {"order_id": str(order.id), "order_number": order.order_number, "item": item_snapshot},
        )

    @staticmethod
    def order_cancelled(order, notify_kitchen=False):
        payload = {"order_id": str(order.id), "order_number": order.order_number, "reason": order.cancel_reason}
        RealtimeChannel.publish_many(OrderEventPublisher._order_topics(order), "order:cancelled", payload)
        if notify_kitchen:
            RealtimeChannel.publish(Topic.KITCHEN, "kitchen:order_cancelled", payload)

    @staticmethod
    def order_paid(order):
        payload = OrderEventPublisher._safe("order:paid", lambda: order_snapshot(order, include_items=False))
        if payload is not None:
            RealtimeChannel.publish_many(OrderEventPublisher._order_topics(order), "order:paid", payload)

    @staticmethod
    def order_split(source, new_order):
        payload = {
            "source_order_id": str(source.id),
            "new_order_id": str(new_order.id),
            "new_order_number": new_order.order_number,
        }
        RealtimeChannel.publish_many(OrderEventPublisher._order_topics(source), "order:split", payload)

    @staticmethod
    def conflict_detected(conflict):
        RealtimeChannel.publish(
            Topic.POS,
            "order:conflict",
            {
                "conflict_id": conflict.id,
                "table_session_id": str(conflict.table_session_id),
                "cloud_order_id": str(conflict.cloud_order_id),
                "local_order_id": str(conflict.local_order_id),
            },
        )

    @staticmethod
    def conflict_resolved(conflict):
        payload = {
            "conflict_id": conflict.id,
            "resolution": conflict.resolution,
            "surviving_order_id": str(conflict.surviving_order_id) if conflict.surviving_order_id else None,
        }
        topics = [Topic.POS, Topic.table(conflict.table_session_id)]
        RealtimeChannel.publish_many(topics, "order:conflict_resolved", payload)
