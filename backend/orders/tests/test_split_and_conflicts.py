"""
Split-Bill and Channel Conflict Tests

Split moves lines between orders without changing their combined value.
Conflicts between the customer (cloud) and staff (local) channels are
resolved by exactly one of merge / keep_cloud / keep_local / cancel_all.
"""
import pytest
from decimal import Decimal
from unittest.mock import patch

from audit.models import AuditLog
from core_backend.exceptions import ConflictError, ValidationError
from orders.models import Order, OrderConflict, OrderItem
from orders.services import (
    CancelAll,
    ConflictResolver,
    KeepCloud,
    KeepLocal,
    Merge,
    OrderItemService,
    OrderService,
    SplitBillService,
    parse_resolution,
)
from orders.services.split_service import SPLIT_EMPTIED_REASON
from tables.models import Table


@pytest.fixture
def mixed_order(order_with_pho, iced_tea, cashier):
    """Phở bò x2 (100,000) plus Trà đá x1 (5,000)."""
    OrderItemService.add_item(order_with_pho, product_id=iced_tea.id, user=cashier)
    order_with_pho.refresh_from_db()
    return order_with_pho


@pytest.mark.django_db
class TestSplitBill:

    def test_split_conserves_value(self, mixed_order, iced_tea, cashier):
        """
        CRITICAL: Splitting never creates or loses money.

        Business Impact: The two bills must add up to what the table ordered
        """
        before = mixed_order.total
        tea_line = mixed_order.items.get(product=iced_tea)

        new_order = SplitBillService.split(mixed_order.id, [tea_line.id], user=cashier)

        mixed_order.refresh_from_db()
        assert new_order.split_from_id == mixed_order.id
        assert new_order.table_session_id == mixed_order.table_session_id
        assert new_order.total == Decimal("5000")
        assert mixed_order.total == Decimal("100000")
        assert mixed_order.total + new_order.total == before
        # Lines are moved, not copied
        assert list(new_order.items.values_list("id", flat=True)) == [tea_line.id]

    def test_split_everything_cancels_source(self, order_with_pho, cashier):
        item_ids = list(order_with_pho.items.values_list("id", flat=True))

        new_order = SplitBillService.split(order_with_pho.id, item_ids, user=cashier)

        order_with_pho.refresh_from_db()
        assert new_order.total == Decimal("100000")
        assert order_with_pho.status == Order.OrderStatus.CANCELLED
        assert order_with_pho.cancel_reason == SPLIT_EMPTIED_REASON

    def test_split_is_audited_on_both_orders(self, mixed_order, iced_tea, cashier):
        tea_line = mixed_order.items.get(product=iced_tea)

        new_order = SplitBillService.split(mixed_order.id, [tea_line.id], user=cashier)

        assert AuditLog.objects.filter(action="split_order", target_id=str(mixed_order.id)).exists()
        assert AuditLog.objects.filter(action="split_order_created", target_id=str(new_order.id)).exists()

    def test_split_requires_items(self, order_with_pho, cashier):
        with pytest.raises(ValidationError) as exc_info:
            SplitBillService.split(order_with_pho.id, [], user=cashier)

        assert exc_info.value.code == "INVALID_REQUEST"

    def test_split_rejects_foreign_items(self, order_with_pho, pho, cashier):
        other = OrderService.create_order(order_type=Order.OrderType.TAKEAWAY, user=cashier)
        foreign = OrderItemService.add_item(other, product_id=pho.id, user=cashier)

        with pytest.raises(ValidationError) as exc_info:
            SplitBillService.split(order_with_pho.id, [foreign.id], user=cashier)

        assert exc_info.value.code == "INVALID_ITEMS"
        assert foreign.order_id == other.id

    def test_paid_order_cannot_be_split(self, order_with_pho, cashier):
        from payments.services import PaymentService
        item_ids = list(order_with_pho.items.values_list("id", flat=True))
        PaymentService.settle_order(order_with_pho.id, [{"method": "CARD", "amount": "100000"}], user=cashier)

        with pytest.raises(ValidationError) as exc_info:
            SplitBillService.split(order_with_pho.id, item_ids, user=cashier)

        assert exc_info.value.code == "ORDER_PAID"


@pytest.fixture
def conflict(order_with_pho, table_session, pho):
    """The customer channel replays Phở bò x2 while the staff order holds Phở bò x2."""
    OrderService.ingest_channel_order(
        table_session,
        Order.Channel.CUSTOMER,
        [{"product_id": pho.id, "quantity": 2}],
    )
    return OrderConflict.objects.get(table_session=table_session)


@pytest.mark.django_db
class TestConflictDetection:

    def test_replayed_order_raises_conflict(self, conflict, order_with_pho):
        assert conflict.status == OrderConflict.ConflictStatus.OPEN
        assert conflict.local_order_id == order_with_pho.id
        assert conflict.cloud_order.channel == Order.Channel.CUSTOMER
        assert AuditLog.objects.filter(action="order_conflict_detected").count() == 1

    def test_both_orders_stay_usable(self, conflict, pho, cashier):
        OrderItemService.add_item(conflict.local_order, product_id=pho.id, user=cashier)

        assert conflict.local_order.items.count() == 2
        assert conflict.cloud_order.status == Order.OrderStatus.OPEN

    def test_no_conflict_without_other_channel(self, table_session, pho):
        OrderService.ingest_channel_order(
            table_session, Order.Channel.CUSTOMER, [{"product_id": pho.id}]
        )

        assert not OrderConflict.objects.exists()

    def test_customer_order_created_beside_staff_order_raises_conflict(self, order_with_pho, table_session):
        """
        CRITICAL: Opening a customer order directly on a busy table is also a conflict.

        Business Impact: Two live bills for one table must never go unnoticed
        """
        cloud = OrderService.create_order(table_session=table_session, channel=Order.Channel.CUSTOMER)

        conflict = OrderConflict.objects.get(table_session=table_session)
        assert conflict.cloud_order_id == cloud.id
        assert conflict.local_order_id == order_with_pho.id

    def test_staff_order_created_beside_customer_order_raises_conflict(self, table_session, pho, cashier):
        cloud = OrderService.ingest_channel_order(
            table_session, Order.Channel.CUSTOMER, [{"product_id": pho.id}]
        )

        local = OrderService.create_order(table_session=table_session, user=cashier)

        conflict = OrderConflict.objects.get(table_session=table_session)
        assert conflict.cloud_order_id == cloud.id
        assert conflict.local_order_id == local.id

    def test_emptied_split_child_records_no_conflict(self, order_with_pho, cashier):
        item_ids = list(order_with_pho.items.values_list("id", flat=True))
        child = SplitBillService.split(order_with_pho.id, item_ids, user=cashier)

        for item_id in list(child.items.values_list("id", flat=True)):
            OrderItemService.remove_item(child, item_id, user=cashier)

        child.refresh_from_db()
        assert child.items.count() == 0
        assert child.status == Order.OrderStatus.OPEN
        assert OrderService.detect_conflict(child) is None
        assert not OrderConflict.objects.exists()


@pytest.mark.django_db
class TestConflictResolution:

    def test_merge_sums_matching_lines(self, conflict, manager):
        """Phở x2 on each side becomes Phở x4 on the cloud order."""
        resolved = ConflictResolver.resolve(conflict.id, Merge(), user=manager)

        cloud = Order.objects.get(pk=conflict.cloud_order_id)
        local = Order.objects.get(pk=conflict.local_order_id)
        assert resolved.status == OrderConflict.ConflictStatus.RESOLVED
        assert resolved.surviving_order_id == cloud.id
        assert cloud.items.count() == 1
        assert cloud.items.get().quantity == 4
        assert cloud.total == Decimal("200000")
        assert local.status == Order.OrderStatus.CANCELLED
        assert AuditLog.objects.filter(action="conflict_merge").exists()

    def test_merge_folds_sent_and_pending_lines(self, order_with_pho, table_session, pho, cashier, manager):
        """
        CRITICAL: Staff already sent Phở x2; the customer's replayed Phở x2 joins that line.

        Business Impact: The kitchen cooks the two extra bowls once, and the bill shows one Phở x4
        """
        from orders.services import KitchenService
        KitchenService.send_to_kitchen(order_with_pho, user=cashier)
        OrderService.ingest_channel_order(table_session, Order.Channel.CUSTOMER, [{"product_id": pho.id, "quantity": 2}])
        conflict = OrderConflict.objects.get(table_session=table_session)

        with patch("notifications.realtime.RealtimeChannel.publish") as mock_publish:
            ConflictResolver.resolve(conflict.id, Merge(), user=manager)

        cloud = Order.objects.get(pk=conflict.cloud_order_id)
        line = cloud.items.get()
        assert line.quantity == 4
        assert line.kitchen_status == OrderItem.KitchenStatus.PREPARING
        assert line.sent_to_kitchen_at is not None
        assert cloud.total == Decimal("200000")

        tickets = [c for c in mock_publish.call_args_list if c.args[1] == "kitchen:ticket"]
        assert len(tickets) == 1
        assert tickets[0].args[2]["items"][0]["quantity"] == 2

    def test_merge_of_sent_lines_sends_no_ticket(self, conflict, cashier, manager):
        from orders.services import KitchenService
        KitchenService.send_to_kitchen(conflict.local_order, user=cashier)
        KitchenService.send_to_kitchen(conflict.cloud_order, user=cashier)

        with patch("notifications.realtime.RealtimeChannel.publish") as mock_publish:
            ConflictResolver.resolve(conflict.id, Merge(), user=manager)

        line = Order.objects.get(pk=conflict.cloud_order_id).items.get()
        assert line.quantity == 4
        assert line.kitchen_status == OrderItem.KitchenStatus.PREPARING
        assert not [c for c in mock_publish.call_args_list if c.args[1] == "kitchen:ticket"]

    def test_noted_lines_stay_apart(self, conflict, pho, cashier, manager):
        OrderItemService.add_item(conflict.local_order, product_id=pho.id, note="không hành", user=cashier)

        ConflictResolver.resolve(conflict.id, Merge(), user=manager)

        cloud = Order.objects.get(pk=conflict.cloud_order_id)
        assert sorted(cloud.items.values_list("quantity", flat=True)) == [1, 4]

    def test_merge_moves_unmatched_lines(self, conflict, iced_tea, cashier, manager):
        OrderItemService.add_item(conflict.local_order, product_id=iced_tea.id, user=cashier)

        ConflictResolver.resolve(conflict.id, "merge", user=manager)

        cloud = Order.objects.get(pk=conflict.cloud_order_id)
        assert cloud.items.count() == 2
        assert cloud.total == Decimal("205000")

    def test_keep_local_records_discarded_items(self, conflict, manager):
        ConflictResolver.resolve(conflict.id, KeepLocal(), user=manager, reason="khách gọi trùng")

        cloud = Order.objects.get(pk=conflict.cloud_order_id)
        local = Order.objects.get(pk=conflict.local_order_id)
        assert cloud.status == Order.OrderStatus.CANCELLED
        assert local.status == Order.OrderStatus.OPEN

        entry = AuditLog.objects.get(action="conflict_keep_local")
        assert entry.old_value["discarded_order"] == str(cloud.id)
        assert entry.old_value["discarded_items"][0]["quantity"] == 2

        report = ConflictResolver.discarded_items_report()
        assert len(report) == 1
        assert report[0]["resolution"] == "keep_local"
        assert report[0]["reason"] == "khách gọi trùng"

    def test_keep_cloud(self, conflict, manager):
        resolved = ConflictResolver.resolve(conflict.id, KeepCloud(), user=manager)

        assert resolved.surviving_order_id == conflict.cloud_order_id
        assert Order.objects.get(pk=conflict.local_order_id).status == Order.OrderStatus.CANCELLED

    def test_cancel_all_frees_table(self, conflict, manager, table):
        resolved = ConflictResolver.resolve(conflict.id, CancelAll(), user=manager)

        table.refresh_from_db()
        conflict.table_session.refresh_from_db()
        assert resolved.surviving_order_id is None
        assert not Order.objects.filter(status__in=Order.ACTIVE_STATUSES).exists()
        assert conflict.table_session.ended_at is not None
        assert table.status == Table.TableStatus.AVAILABLE

    def test_resolved_once(self, conflict, manager):
        ConflictResolver.resolve(conflict.id, KeepCloud(), user=manager)

        with pytest.raises(ConflictError) as exc_info:
            ConflictResolver.resolve(conflict.id, KeepLocal(), user=manager)

        assert exc_info.value.code == "CONFLICT_ALREADY_RESOLVED"

    def test_stale_conflict(self, conflict, manager):
        OrderService.mark_debt(conflict.local_order, manager)

        with pytest.raises(ConflictError) as exc_info:
            ConflictResolver.resolve(conflict.id, Merge(), user=manager)

        assert exc_info.value.code == "CONFLICT_STALE"

    def test_unknown_resolution(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_resolution("keep_both")

        assert exc_info.value.code == "INVALID_RESOLUTION"

    def test_describe_lists_both_orders(self, conflict):
        data = ConflictResolver.describe(conflict)

        assert data["cloud_order"]["id"] == str(conflict.cloud_order_id)
        assert len(data["local_order"]["items"]) == 1
