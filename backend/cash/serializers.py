from rest_framework import serializers

from .models import CashShift, CashTransaction


class CashTransactionSerializer(serializers.ModelSerializer):
    actor = serializers.EmailField(source="actor.email", default=None, read_only=True)

    class Meta:
        model = CashTransaction
        fields = ["id", "type", "amount", "reason", "actor", "created_at"]


class CashShiftSerializer(serializers.ModelSerializer):
    """Closed-shift view used by history and audit snapshots."""

    operator = serializers.EmailField(source="operator.email", read_only=True)

    class Meta:
        model = CashShift
        fields = [
            "id",
            "operator",
            "status",
            "start_amount",
            "end_amount",
            "expected_end_amount",
            "difference_amount",
            "opened_at",
            "closed_at",
            "notes",
        ]
