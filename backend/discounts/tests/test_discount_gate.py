"""
Discount Gate Tests

Vouchers are validated against the current subtotal; manual discounts above
the cashier cap need a manager PIN and a token bound to the exact discount.
"""
import pytest
import requests
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch
from django.utils import timezone

from approvals.models import ActionType, ApprovalStatus, ManagerApprovalRequest
from approvals.results import Applied, NeedsAuthorization
from approvals.services import AuthorizationService
from audit.models import AuditLog
from core_backend.exceptions import AuthorizationError, CollaboratorTimeout, ValidationError
from discounts.approval_rules import DiscountApprovalChecker
from discounts.models import Voucher
from discounts.services import DiscountGate
from discounts.vouchers import HttpVoucherBackend, LocalVoucherBackend


@pytest.fixture
def tet_voucher(db):
    """10% off orders of 50,000 VND or more, capped at 30,000."""
    return Voucher.objects.create(
        code="tet10",
        name="Tết 10%",
        discount_type=Voucher.DiscountType.PERCENTAGE,
        discount_value=Decimal("10"),
        min_order_amount=Decimal("50000"),
        max_discount_amount=Decimal("30000"),
    )


@pytest.mark.django_db
class TestManualDiscount:

    def test_within_cashier_cap_applies_directly(self, order_with_pho, cashier):
        result = DiscountGate.attempt_manual_discount(
            order_with_pho, "PERCENTAGE", "10", "khách quen", cashier
        )

        assert isinstance(result, Applied)
        order = result.result
        assert order.discount_amount == Decimal("10000")
        assert order.total == Decimal("90000")
        assert AuditLog.objects.filter(action="apply_discount", target_id=str(order.id)).exists()

    def test_above_cap_needs_authorization(self, order_with_pho, cashier):
        """
        CRITICAL: A cashier can't give away more than the cap without a manager.

        Business Impact: Unauthorized discounts are direct revenue loss
        """
        result = DiscountGate.attempt_manual_discount(
            order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier
        )

        order_with_pho.refresh_from_db()
        assert isinstance(result, NeedsAuthorization)
        assert order_with_pho.discount_amount == Decimal("0.00")
        assert order_with_pho.total == Decimal("100000")

        challenge = result.challenge
        assert challenge.status == ApprovalStatus.PENDING
        assert challenge.action_type == ActionType.DISCOUNT
        assert challenge.order_id == order_with_pho.id
        assert challenge.payload == {"discount_type": "PERCENTAGE", "reason": "sinh nhật", "value": "20.00"}

    def test_pin_then_retry_with_token(self, order_with_pho, cashier, manager):
        pending = DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier)
        token = AuthorizationService.authorize(pending.challenge_id, "1234")

        result = DiscountGate.attempt_manual_discount(
            order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier, authorization_token=token
        )

        assert isinstance(result, Applied)
        assert result.result.total == Decimal("80000")
        challenge = ManagerApprovalRequest.objects.get(pk=pending.challenge_id)
        assert challenge.status == ApprovalStatus.CONSUMED
        assert challenge.approver == manager

    def test_spent_token_opens_new_challenge(self, order_with_pho, cashier, manager):
        """
        CRITICAL: A token works once; replaying it asks for a fresh manager PIN.

        Business Impact: One approval must not unlock repeated discounts
        """
        pending = DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier)
        token = AuthorizationService.authorize(pending.challenge_id, "1234")
        DiscountGate.attempt_manual_discount(
            order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier, authorization_token=token
        )

        result = DiscountGate.attempt_manual_discount(
            order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier, authorization_token=token
        )

        assert isinstance(result, NeedsAuthorization)
        assert result.challenge_id != pending.challenge_id
        assert ManagerApprovalRequest.objects.get(pk=pending.challenge_id).status == ApprovalStatus.CONSUMED

    def test_token_bound_to_exact_value(self, order_with_pho, cashier, manager):
        """A token approved for 20% can't be spent on 50%."""
        pending = DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier)
        token = AuthorizationService.authorize(pending.challenge_id, "1234")

        result = DiscountGate.attempt_manual_discount(
            order_with_pho, "PERCENTAGE", "50", "sinh nhật", cashier, authorization_token=token
        )

        order_with_pho.refresh_from_db()
        assert isinstance(result, NeedsAuthorization)
        assert result.challenge.payload["value"] == "50.00"
        assert order_with_pho.discount_amount == Decimal("0.00")
        # The mismatched token was not consumed, so it is still redeemable for 20%
        assert ManagerApprovalRequest.objects.get(pk=pending.challenge_id).status == ApprovalStatus.APPROVED

    def test_token_bound_to_order(self, order_with_pho, cashier, manager, pho):
        from orders.models import Order
        from orders.services import OrderItemService, OrderService
        other = OrderService.create_order(order_type=Order.OrderType.TAKEAWAY, user=cashier)
        OrderItemService.add_item(other, product_id=pho.id, quantity=2, user=cashier)

        pending = DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "20", "sinh nhật", cashier)
        token = AuthorizationService.authorize(pending.challenge_id, "1234")

        result = DiscountGate.attempt_manual_discount(
            other, "PERCENTAGE", "20", "sinh nhật", cashier, authorization_token=token
        )

        other.refresh_from_db()
        assert isinstance(result, NeedsAuthorization)
        assert result.challenge.order_id == other.id
        assert other.discount_amount == Decimal("0.00")

    def test_unknown_token_above_cap_raises_pin_required(self, order_with_pho, cashier):
        """
        CRITICAL: A bogus token above the cap leads to the PIN prompt, not a dead end.

        Business Impact: The cashier must be able to fetch a manager instead of retrying blindly
        """
        with pytest.raises(AuthorizationError) as exc_info:
            DiscountGate.apply_manual_discount(
                order_with_pho, "PERCENTAGE", "50", "đền bù", cashier, authorization_token="bogus"
            )

        order_with_pho.refresh_from_db()
        assert exc_info.value.code == "PIN_REQUIRED"
        assert exc_info.value.challenge is not None
        assert order_with_pho.discount_amount == Decimal("0.00")

    def test_unknown_token_within_cap_applies(self, order_with_pho, cashier):
        order = DiscountGate.apply_manual_discount(
            order_with_pho, "PERCENTAGE", "10", "khách quen", cashier, authorization_token="bogus"
        )

        assert order.total == Decimal("90000")

    def test_manager_applies_above_cap(self, order_with_pho, manager):
        result = DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "50", "đền bù", manager)

        assert isinstance(result, Applied)
        assert result.result.total == Decimal("50000")

    def test_apply_manual_discount_raises_pin_required(self, order_with_pho, cashier):
        with pytest.raises(AuthorizationError) as exc_info:
            DiscountGate.apply_manual_discount(order_with_pho, "FIXED", "60000", "đền bù", cashier)

        error = exc_info.value
        assert error.code == "PIN_REQUIRED"
        assert error.challenge is not None
        assert ManagerApprovalRequest.objects.filter(pk=error.challenge.id, status=ApprovalStatus.PENDING).exists()

    def test_fixed_within_cap(self, order_with_pho, cashier):
        order = DiscountGate.apply_manual_discount(order_with_pho, "FIXED", "20000", "khách quen", cashier)

        assert order.total == Decimal("80000")

    def test_reason_required(self, order_with_pho, cashier):
        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "5", "", cashier)

        assert exc_info.value.code == "REASON_REQUIRED"

    @pytest.mark.parametrize("discount_type,value", [
        ("PERCENTAGE", "0"),
        ("PERCENTAGE", "150"),
        ("FIXED", "-1000"),
        ("BOGO", "10"),
        ("PERCENTAGE", "abc"),
    ])
    def test_invalid_discount(self, order_with_pho, cashier, discount_type, value):
        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.attempt_manual_discount(order_with_pho, discount_type, value, "thử", cashier)

        assert exc_info.value.code == "INVALID_DISCOUNT"

    def test_percent_follows_subtotal(self, order_with_pho, pho, cashier):
        """A percentage discount is re-derived when lines are added."""
        from orders.services import OrderItemService
        DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "10", "khách quen", cashier)

        OrderItemService.add_item(order_with_pho, product_id=pho.id, user=cashier)

        order_with_pho.refresh_from_db()
        assert order_with_pho.discount_amount == Decimal("15000")
        assert order_with_pho.total == Decimal("135000")

    def test_clear_manual_discount(self, order_with_pho, cashier):
        DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "10", "khách quen", cashier)

        order = DiscountGate.clear_manual_discount(order_with_pho, cashier)

        assert order.discount_type == ""
        assert order.total == Decimal("100000")

    def test_cap_follows_policy(self, approval_policy, cashier):
        approval_policy.max_discount_percent = Decimal("25")
        approval_policy.save()

        assert not DiscountApprovalChecker.needs_approval("PERCENTAGE", Decimal("20"), cashier)
        assert DiscountApprovalChecker.needs_approval("PERCENTAGE", Decimal("30"), cashier)


@pytest.mark.django_db
class TestVouchers:

    def test_apply_voucher(self, order_with_pho, tet_voucher, cashier):
        order = DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        tet_voucher.refresh_from_db()
        assert order.voucher_code == "TET10"
        assert order.voucher_discount == Decimal("10000")
        assert order.total == Decimal("90000")
        assert tet_voucher.usage_count == 1

    def test_voucher_and_manual_discount_stack(self, order_with_pho, tet_voucher, cashier):
        DiscountGate.apply_voucher(order_with_pho, "tet10", user=cashier)
        result = DiscountGate.attempt_manual_discount(order_with_pho, "PERCENTAGE", "10", "khách quen", cashier)

        assert result.result.voucher_discount == Decimal("10000")
        assert result.result.discount_amount == Decimal("10000")
        assert result.result.total == Decimal("80000")

    def test_unknown_voucher(self, order_with_pho, cashier):
        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.apply_voucher(order_with_pho, "NOPE", user=cashier)

        assert exc_info.value.code == "INVALID_VOUCHER"

    def test_expired_voucher(self, order_with_pho, tet_voucher, cashier):
        tet_voucher.end_date = timezone.now() - timedelta(days=1)
        tet_voucher.save()

        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        assert exc_info.value.code == "VOUCHER_EXPIRED"

    def test_not_yet_active_voucher(self, order_with_pho, tet_voucher, cashier):
        tet_voucher.start_date = timezone.now() + timedelta(days=1)
        tet_voucher.save()

        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        assert exc_info.value.code == "VOUCHER_NOT_ACTIVE"

    def test_usage_limit_reached(self, order_with_pho, tet_voucher, cashier):
        tet_voucher.usage_limit = 1
        tet_voucher.usage_count = 1
        tet_voucher.save()

        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        assert exc_info.value.code == "VOUCHER_LIMIT_REACHED"

    def test_min_order_amount_checked_against_current_subtotal(self, order, iced_tea, tet_voucher, cashier):
        from orders.services import OrderItemService
        OrderItemService.add_item(order, product_id=iced_tea.id, user=cashier)

        with pytest.raises(ValidationError) as exc_info:
            DiscountGate.apply_voucher(order, "TET10", user=cashier)

        order.refresh_from_db()
        assert exc_info.value.code == "MIN_ORDER_AMOUNT"
        assert order.voucher_code == ""

    def test_percentage_voucher_capped(self, order, pho, tet_voucher, cashier):
        from orders.services import OrderItemService
        OrderItemService.add_item(order, product_id=pho.id, quantity=8, user=cashier)

        order = DiscountGate.apply_voucher(order, "TET10", user=cashier)

        assert order.voucher_discount == Decimal("30000")

    def test_remove_voucher(self, order_with_pho, tet_voucher, cashier):
        DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        order = DiscountGate.remove_voucher(order_with_pho, user=cashier)

        assert order.voucher_code == ""
        assert order.total == Decimal("100000")

    def test_voucher_dropped_when_subtotal_falls_below_minimum(self, order_with_pho, cashier):
        """
        CRITICAL: Removing items below a voucher's minimum takes the voucher off.

        Business Impact: A 100k-minimum voucher must not keep discounting a 50k bill
        """
        from orders.services import OrderItemService
        Voucher.objects.create(
            code="GIAM20K",
            discount_type=Voucher.DiscountType.FIXED,
            discount_value=Decimal("20000"),
            min_order_amount=Decimal("100000"),
        )
        DiscountGate.apply_voucher(order_with_pho, "GIAM20K", user=cashier)
        item = order_with_pho.items.get()

        OrderItemService.update_item(order_with_pho, item.id, quantity=1)

        order_with_pho.refresh_from_db()
        assert order_with_pho.voucher_code == ""
        assert order_with_pho.voucher_discount == Decimal("0.00")
        assert order_with_pho.total == Decimal("50000")
        entry = AuditLog.objects.get(action="voucher_dropped", target_id=str(order_with_pho.id))
        assert entry.old_value["voucher_code"] == "GIAM20K"

    def test_percentage_voucher_follows_subtotal(self, order_with_pho, pho, tet_voucher, cashier):
        from orders.services import OrderItemService
        DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        OrderItemService.add_item(order_with_pho, product_id=pho.id, user=cashier)

        order_with_pho.refresh_from_db()
        assert order_with_pho.voucher_code == "TET10"
        assert order_with_pho.voucher_discount == Decimal("15000")
        assert order_with_pho.total == Decimal("135000")

    def test_percentage_voucher_cap_kept_on_recompute(self, order_with_pho, pho, tet_voucher, cashier):
        from orders.services import OrderItemService
        DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        OrderItemService.add_item(order_with_pho, product_id=pho.id, quantity=8, user=cashier)

        order_with_pho.refresh_from_db()
        assert order_with_pho.subtotal == Decimal("500000")
        assert order_with_pho.voucher_discount == Decimal("30000")

    def test_local_backend_fixed_voucher_clamped(self, db):
        Voucher.objects.create(
            code="GIAM100K",
            discount_type=Voucher.DiscountType.FIXED,
            discount_value=Decimal("100000"),
        )

        result = LocalVoucherBackend().validate("giam100k", Decimal("40000"))

        assert result.valid
        assert result.discount == Decimal("40000")


@pytest.mark.django_db
class TestVoucherCollaborator:

    @pytest.fixture
    def remote_vouchers(self, settings):
        settings.POS_ENGINE = {
            "VOUCHER_BACKEND": "discounts.vouchers.HttpVoucherBackend",
            "VOUCHER_SERVICE_URL": "http://vouchers.test/api",
            "COLLABORATOR_TIMEOUT": 2,
        }

    def test_timeout_leaves_order_untouched(self, remote_vouchers, order_with_pho, cashier):
        """
        HIGH: A slow voucher service fails fast and retryable.

        Business Impact: The cashier retries; no half-applied discount is left behind
        """
        with patch("discounts.vouchers.requests.post", side_effect=requests.exceptions.Timeout("slow")) as mock_post:
            with pytest.raises(CollaboratorTimeout) as exc_info:
                DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        order_with_pho.refresh_from_db()
        assert exc_info.value.retryable
        assert mock_post.call_args.kwargs["timeout"] == 2
        assert order_with_pho.voucher_code == ""
        assert order_with_pho.total == Decimal("100000")

    def test_remote_validation(self, remote_vouchers, order_with_pho, cashier):
        with patch("discounts.vouchers.requests.post") as mock_post:
            mock_post.return_value.json.return_value = {"valid": True, "discount": "15000"}
            order = DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        assert order.voucher_discount == Decimal("15000")
        validate_call, redeem_call = mock_post.call_args_list
        assert validate_call.args[0] == "http://vouchers.test/api/validate"
        assert validate_call.kwargs["json"] == {"code": "TET10", "subtotal": "100000"}
        assert redeem_call.args[0] == "http://vouchers.test/api/redeem"

    def test_remote_rejection(self, remote_vouchers):
        with patch("discounts.vouchers.requests.post") as mock_post:
            mock_post.return_value.json.return_value = {"valid": False, "error": "VOUCHER_EXPIRED"}
            result = HttpVoucherBackend().validate("TET10", Decimal("100000"))

        assert not result.valid
        assert result.error == "VOUCHER_EXPIRED"

    def test_remote_terms_are_kept_for_recompute(self, remote_vouchers, order_with_pho, pho, cashier):
        from orders.services import OrderItemService
        with patch("discounts.vouchers.requests.post") as mock_post:
            mock_post.return_value.json.return_value = {
                "valid": True,
                "discount": "10000",
                "discount_type": "PERCENTAGE",
                "discount_value": "10",
                "min_order_amount": "50000",
            }
            DiscountGate.apply_voucher(order_with_pho, "TET10", user=cashier)

        OrderItemService.add_item(order_with_pho, product_id=pho.id, user=cashier)

        order_with_pho.refresh_from_db()
        assert order_with_pho.voucher_discount_type == "PERCENTAGE"
        assert order_with_pho.voucher_discount == Decimal("15000")
