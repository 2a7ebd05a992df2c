import logging
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.utils import timezone

from core_backend.exceptions import NotFoundError
from users.models import User
from .realtime import Topic

logger = logging.getLogger(__name__)

# Staff topics and the roles allowed to subscribe to them
TOPIC_ROLES = {
    Topic.KITCHEN: {User.Role.KITCHEN, User.Role.MANAGER, User.Role.OWNER},
    Topic.POS: {User.Role.CASHIER, User.Role.MANAGER, User.Role.OWNER},
}

TABLE_TOPIC = "table"


class RealtimeConsumer(AsyncJsonWebsocketConsumer):
    """
    Subscriber side of the realtime channel.

    Staff devices connect to ``ws/realtime/kitchen/`` or ``ws/realtime/pos/``
    with an authenticated session whose role is allowed for that topic.
    Customer devices connect to ``ws/realtime/table/?token=<session token>``
    and only ever receive their own table session's events.
    """

    async def connect(self):
        requested = self.scope["url_route"]["kwargs"].get("topic")

        if requested == TABLE_TOPIC:
            group = await self._table_group()
        elif requested in TOPIC_ROLES:
            group = self._staff_group(requested)
        else:
            logger.warning(f"RealtimeConsumer: unknown topic '{requested}'")
            group = None

        if group is None:
            await self.close(code=4003)
            return

        self.group_name = group
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

        logger.info(f"Realtime subscriber joined {self.group_name}")
        await self.send_json(
            {
                "type": "connection_established",
                "topic": self.group_name,
                "timestamp": timezone.now().isoformat(),
            }
        )

    def _staff_group(self, topic):
        user = self.scope.get("user")
        if not user or not user.is_authenticated:
            logger.warning(f"RealtimeConsumer: anonymous connection to '{topic}' rejected")
            return None
        if user.role not in TOPIC_ROLES[topic]:
            logger.warning(f"RealtimeConsumer: role {user.role} may not subscribe to '{topic}'")
            return None
        return topic

    async def _table_group(self):
        query = parse_qs(self.scope.get("query_string", b"").decode())
        token = (query.get("token") or [None])[0]
        if not token:
            logger.warning("RealtimeConsumer: table subscription without session token")
            return None

        from tables.services import TableService

        try:
            session = await database_sync_to_async(TableService.session_by_token)(token)
        except NotFoundError:
            logger.warning("RealtimeConsumer: table subscription with stale session token")
            return None
        return Topic.table(session.id)

    async def disconnect(self, close_code):
        if hasattr(self, "group_name"):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)
            logger.info(f"Realtime subscriber left {self.group_name}")

    async def receive_json(self, content, **kwargs):
        if content.get("type") == "ping":
            await self.send_json({"type": "pong", "timestamp": timezone.now().isoformat()})
        else:
            logger.warning(f"Unknown message type from subscriber: {content.get('type')}")

    async def realtime_event(self, event):
        """Forward a published engine event to the socket."""
        await self.send_json(
            {"type": event["event"], "topic": event["topic"], "data": event["data"]}
        )
