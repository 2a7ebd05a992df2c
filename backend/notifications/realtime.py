"""
Publish/subscribe fan-out over the Channels layer.

Topics are named and role scoped: ``kitchen`` for kitchen displays, ``pos`` for
staff terminals and ``table.<session-id>`` for the customer devices seated at
one table session. Delivery is at-least-once and best effort; subscribers are
expected to re-fetch authoritative state when they miss an event.
"""
from typing import Any, Dict
import json
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

logger = logging.getLogger(__name__)


class Topic:
    KITCHEN = "kitchen"
    POS = "pos"

    @staticmethod
    def table(session_id) -> str:
        # Group names only allow ASCII alphanumerics, hyphens, underscores and periods
        sanitized = "".join(c if c.isalnum() or c in "-_." else "_" for c in str(session_id))
        return f"table.{sanitized}"


class RealtimeChannel:
    """Publishes engine events to role-scoped topics after the surrounding transaction commits."""

    MESSAGE_TYPE = "realtime.event"

    @staticmethod
    def publish(topic: str, event_name: str, payload: Dict[str, Any]) -> None:
        """
        Queue ``event_name`` for ``topic``.

        Inside an atomic block the send is deferred with ``transaction.on_commit``
        so a rolled-back mutation is never announced. Failures are logged and
        swallowed; they never affect the caller.
        """
        try:
            if transaction.get_connection().in_atomic_block:
                transaction.on_commit(
                    lambda: RealtimeChannel._send(topic, event_name, payload)
                )
            else:
                RealtimeChannel._send(topic, event_name, payload)
        except Exception as e:
            logger.error(f"Error publishing {event_name} to {topic}: {e}")

    @staticmethod
    def publish_many(topics, event_name: str, payload: Dict[str, Any]) -> None:
        for topic in topics:
            if topic:
                RealtimeChannel.publish(topic, event_name, payload)

    @staticmethod
    def _send(topic: str, event_name: str, payload: Dict[str, Any]) -> None:
        """Actually send the event once the transaction has committed."""
        try:
            channel_layer = get_channel_layer()
            if not channel_layer:
                logger.warning("No channel layer available for realtime events")
                return

            async_to_sync(channel_layer.group_send)(
                topic,
                {
                    "type": RealtimeChannel.MESSAGE_TYPE,
                    "event": event_name,
                    "topic": topic,
                    "data": json.loads(json.dumps(payload, cls=DjangoJSONEncoder)),
                },
            )
            logger.debug(f"Sent {event_name} to {topic}")
        except Exception as e:
            logger.error(f"Error sending {event_name} to {topic}: {e}")
