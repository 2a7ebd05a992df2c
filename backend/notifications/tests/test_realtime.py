"""
Realtime Channel Tests

Publishing is deferred until commit and never raises; subscribers only join
the topics their role, or their table session token, allows.
"""
import pytest
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from channels.db import database_sync_to_async
from django.db import transaction
from unittest.mock import patch

from notifications.realtime import RealtimeChannel, Topic
from notifications.routing import websocket_urlpatterns


@pytest.mark.django_db
class TestRealtimePublish:

    def test_publish_waits_for_commit(self, django_capture_on_commit_callbacks):
        """
        CRITICAL: A rolled-back change is never announced.

        Business Impact: The kitchen must not cook a ticket that was never saved
        """
        with patch.object(RealtimeChannel, "_send") as mock_send:
            with django_capture_on_commit_callbacks(execute=True) as callbacks:
                with transaction.atomic():
                    RealtimeChannel.publish(Topic.KITCHEN, "kitchen:ticket", {"items": []})
                    mock_send.assert_not_called()

        assert len(callbacks) == 1
        mock_send.assert_called_once_with("kitchen", "kitchen:ticket", {"items": []})

    def test_rollback_discards_event(self):
        with patch.object(RealtimeChannel, "_send") as mock_send:
            with pytest.raises(RuntimeError):
                with transaction.atomic():
                    RealtimeChannel.publish(Topic.POS, "order:updated", {})
                    raise RuntimeError("boom")

        mock_send.assert_not_called()

    def test_publish_many_skips_empty_topics(self):
        with patch.object(RealtimeChannel, "publish") as mock_publish:
            RealtimeChannel.publish_many([Topic.POS, None, "table.abc"], "order:updated", {"id": 1})

        topics = [c.args[0] for c in mock_publish.call_args_list]
        assert topics == ["pos", "table.abc"]

    def test_send_failure_is_swallowed(self):
        with patch("notifications.realtime.get_channel_layer", side_effect=RuntimeError("redis down")):
            RealtimeChannel._send(Topic.POS, "order:updated", {})

    def test_table_topic_is_a_valid_group_name(self):
        assert Topic.table("3f2a-b1") == "table.3f2a-b1"
        assert Topic.table("a b/c") == "table.a_b_c"


def _communicator(path, user=None):
    communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), path)
    if user is not None:
        communicator.scope["user"] = user
    return communicator


@pytest.mark.asyncio
@pytest.mark.django_db(transaction=True)
class TestRealtimeConsumer:

    async def test_kitchen_user_subscribes_to_kitchen(self, kitchen_user):
        communicator = _communicator("ws/realtime/kitchen/", kitchen_user)

        connected, _ = await communicator.connect()

        assert connected
        greeting = await communicator.receive_json_from()
        assert greeting["type"] == "connection_established"
        assert greeting["topic"] == "kitchen"
        await communicator.disconnect()

    async def test_cashier_refused_on_kitchen_topic(self, cashier):
        communicator = _communicator("ws/realtime/kitchen/", cashier)

        connected, code = await communicator.connect()

        assert not connected
        assert code == 4003

    async def test_unknown_topic_refused(self, cashier):
        communicator = _communicator("ws/realtime/payroll/", cashier)

        connected, _ = await communicator.connect()

        assert not connected

    async def test_table_subscription_by_token(self, table_session):
        communicator = _communicator(f"ws/realtime/table/?token={table_session.session_token}")

        connected, _ = await communicator.connect()

        assert connected
        greeting = await communicator.receive_json_from()
        assert greeting["topic"] == Topic.table(table_session.id)
        await communicator.disconnect()

    async def test_table_subscription_with_bad_token(self, db):
        communicator = _communicator("ws/realtime/table/?token=nope")

        connected, code = await communicator.connect()

        assert not connected
        assert code == 4003

    async def test_ping_pong(self, cashier):
        communicator = _communicator("ws/realtime/pos/", cashier)
        await communicator.connect()
        await communicator.receive_json_from()

        await communicator.send_json_to({"type": "ping"})

        assert (await communicator.receive_json_from())["type"] == "pong"
        await communicator.disconnect()

    async def test_published_event_reaches_subscriber(self, cashier):
        communicator = _communicator("ws/realtime/pos/", cashier)
        await communicator.connect()
        await communicator.receive_json_from()

        # Outside an atomic block the send happens immediately
        await database_sync_to_async(RealtimeChannel.publish)(Topic.POS, "order:paid", {"order_id": "42"})

        message = await communicator.receive_json_from()
        assert message == {"type": "order:paid", "topic": "pos", "data": {"order_id": "42"}}
        await communicator.disconnect()

    async def test_disconnect_leaves_group(self, cashier):
        communicator = _communicator("ws/realtime/pos/", cashier)
        await communicator.connect()
        await communicator.receive_json_from()

        await communicator.disconnect()

        layer = get_channel_layer()
        assert not layer.groups.get("pos")
