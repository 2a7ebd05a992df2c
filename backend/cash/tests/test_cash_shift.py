"""
Cash Shift Reconciliation Tests

The drawer's expected balance is derived from the float, pay-ins, pay-outs
and cash sales; closing records the counted amount and the difference.
"""
import pytest
from decimal import Decimal
from unittest.mock import patch

from audit.models import AuditLog
from cash.models import CashShift, CashTransaction
from cash.services import CashShiftService
from core_backend.exceptions import ConflictError, ValidationError
from orders.models import Order
from orders.services import OrderItemService, OrderService
from payments.models import Payment
from payments.services import PaymentService


@pytest.fixture
def cha_gio(db):
    from products.models import Product
    return Product.objects.create(name="Chả giò", price=Decimal("1500"))


def _cash_sale(product, user, amount):
    order = OrderService.create_order(order_type=Order.OrderType.TAKEAWAY, user=user)
    OrderItemService.add_item(order, product_id=product.id, user=user)
    return PaymentService.settle_order(order.id, [{"method": "CASH", "amount": amount}], user=user)


@pytest.mark.django_db
class TestShiftReconciliation:

    def test_close_with_short_drawer(self, cashier, cha_gio):
        """
        CRITICAL: Float 10,000 + pay-in 2,000 + cash sale 1,500, counted 13,000.

        Business Impact: The 500 shortfall is recorded, never hidden or refused
        """
        CashShiftService.open(cashier, Decimal("10000"))
        CashShiftService.transaction(cashier, CashTransaction.TransactionType.PAY_IN, Decimal("2000"), "đổi tiền lẻ")
        _cash_sale(cha_gio, cashier, "1500")

        snapshot = CashShiftService.current()
        assert snapshot.cash_sales == Decimal("1500")
        assert snapshot.expected_balance == Decimal("13500")

        shift = CashShiftService.close(cashier, Decimal("13000"))

        assert shift.status == CashShift.ShiftStatus.CLOSED
        assert shift.expected_end_amount == Decimal("13500")
        assert shift.difference_amount == Decimal("-500")
        assert shift.closed_at is not None
        assert CashShiftService.current() is None

    def test_pay_out_reduces_expected(self, cashier):
        CashShiftService.open(cashier, Decimal("10000"))
        CashShiftService.transaction(cashier, CashTransaction.TransactionType.PAY_OUT, Decimal("3000"), "mua đá")

        assert CashShiftService.current().expected_balance == Decimal("7000")

    def test_card_sales_do_not_count(self, cashier, cha_gio):
        CashShiftService.open(cashier, Decimal("10000"))
        order = OrderService.create_order(order_type=Order.OrderType.TAKEAWAY, user=cashier)
        OrderItemService.add_item(order, product_id=cha_gio.id, user=cashier)
        PaymentService.settle_order(order.id, [{"method": "CARD", "amount": "1500"}], user=cashier)

        assert CashShiftService.current().expected_balance == Decimal("10000")

    def test_over_tendered_cash_counts_only_the_sale(self, cashier, cha_gio):
        CashShiftService.open(cashier, Decimal("10000"))

        _cash_sale(cha_gio, cashier, "5000")

        snapshot = CashShiftService.current()
        assert snapshot.cash_sales == Decimal("1500")
        assert snapshot.expected_balance == Decimal("11500")

    def test_cash_payment_linked_to_shift(self, cashier, cha_gio):
        shift = CashShiftService.open(cashier, Decimal("10000"))

        order = _cash_sale(cha_gio, cashier, "1500")

        assert Payment.objects.get(order=order).cash_shift_id == shift.id

    def test_balanced_close(self, cashier):
        CashShiftService.open(cashier, Decimal("10000"))

        shift = CashShiftService.close(cashier, Decimal("10000"), notes="đủ")

        assert shift.difference_amount == Decimal("0")
        assert "đủ" in shift.notes

    def test_every_step_audited(self, cashier):
        CashShiftService.open(cashier, Decimal("10000"))
        CashShiftService.transaction(cashier, "PAY_IN", Decimal("2000"))
        CashShiftService.transaction(cashier, "PAY_OUT", Decimal("1000"))
        CashShiftService.close(cashier, Decimal("11000"))

        actions = set(AuditLog.objects.values_list("action", flat=True))
        assert {"open_shift", "pay_in", "pay_out", "close_shift"} <= actions


@pytest.mark.django_db
class TestShiftRules:

    def test_single_open_shift(self, cashier, second_cashier):
        CashShiftService.open(cashier, Decimal("10000"))

        with pytest.raises(ConflictError) as exc_info:
            CashShiftService.open(second_cashier, Decimal("5000"))

        assert exc_info.value.code == "SHIFT_ALREADY_OPEN"

    def test_lost_race_maps_to_shift_already_open(self, cashier, second_cashier):
        """Two terminals pass the pre-check together; the constraint decides."""
        CashShiftService.open(cashier, Decimal("10000"))

        with patch.object(CashShiftService, "_open_shift", return_value=None):
            with pytest.raises(ConflictError) as exc_info:
                CashShiftService.open(second_cashier, Decimal("5000"))

        assert exc_info.value.code == "SHIFT_ALREADY_OPEN"
        assert CashShift.objects.filter(status=CashShift.ShiftStatus.OPEN).count() == 1

    def test_close_without_open_shift(self, cashier):
        with pytest.raises(ValidationError) as exc_info:
            CashShiftService.close(cashier, Decimal("10000"))

        assert exc_info.value.code == "NO_OPEN_SHIFT"

    def test_transaction_without_open_shift(self, cashier):
        with pytest.raises(ValidationError) as exc_info:
            CashShiftService.transaction(cashier, "PAY_IN", Decimal("1000"))

        assert exc_info.value.code == "NO_OPEN_SHIFT"

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-100"), "abc"])
    def test_invalid_amount(self, cashier, amount):
        CashShiftService.open(cashier, Decimal("10000"))

        with pytest.raises(ValidationError) as exc_info:
            CashShiftService.transaction(cashier, "PAY_IN", amount)

        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_invalid_transaction_type(self, cashier):
        CashShiftService.open(cashier, Decimal("10000"))

        with pytest.raises(ValidationError) as exc_info:
            CashShiftService.transaction(cashier, "REFUND", Decimal("1000"))

        assert exc_info.value.code == "INVALID_TRANSACTION_TYPE"

    def test_history_most_recent_first(self, cashier):
        first = CashShiftService.open(cashier, Decimal("10000"))
        CashShiftService.close(cashier, Decimal("10000"))
        second = CashShiftService.open(cashier, Decimal("20000"))
        CashShiftService.close(cashier, Decimal("19000"))

        history = CashShiftService.history(limit=5)

        assert [row["id"] for row in history] == [second.id, first.id]
        assert history[0]["difference_amount"] == "-1000.00"
        assert history[0]["operator"] == cashier.email
