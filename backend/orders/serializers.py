from rest_framework import serializers

from .models import Order, OrderItem, OrderConflict


class OrderItemSnapshotSerializer(serializers.ModelSerializer):
    """Line view pushed to kitchen and POS subscribers."""

    display_name = serializers.CharField(read_only=True)
    total_price = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = [
            "id",
            "product",
            "display_name",
            "quantity",
            "unit_price",
            "total_price",
            "note",
            "kitchen_status",
            "display_in_kitchen",
            "sent_to_kitchen_at",
            "ready_at",
        ]
        read_only_fields = fields


class OrderSnapshotSerializer(serializers.ModelSerializer):
    """
    Authoritative order state for realtime payloads and audit snapshots.

    Pass ``context={"include_items": False}`` for the compact header-only form.
    """

    items = serializers.SerializerMethodField()
    table_id = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "table_session",
            "table_id",
            "order_type",
            "channel",
            "status",
            "subtotal",
            "voucher_code",
            "voucher_discount",
            "discount_type",
            "discount_value",
            "discount_amount",
            "discount_reason",
            "total",
            "split_from",
            "paid_at",
            "cancelled_at",
            "items",
        ]
        read_only_fields = fields

    def get_table_id(self, obj):
        return obj.table_session.table_id if obj.table_session_id else None

    def get_items(self, obj):
        if not self.context.get("include_items", True):
            return None
        return OrderItemSnapshotSerializer(obj.items.all(), many=True).data


class OrderConflictSerializer(serializers.ModelSerializer):
    cloud_order = OrderSnapshotSerializer(read_only=True)
    local_order = OrderSnapshotSerializer(read_only=True)

    class Meta:
        model = OrderConflict
        fields = [
            "id",
            "table_session",
            "status",
            "resolution",
            "cloud_order",
            "local_order",
            "surviving_order",
            "detected_at",
            "resolved_at",
        ]
        read_only_fields = fields


def order_snapshot(order, include_items=True):
    """Serialized order as plain data (Decimals and UUIDs rendered as strings)."""
    return OrderSnapshotSerializer(order, context={"include_items": include_items}).data
