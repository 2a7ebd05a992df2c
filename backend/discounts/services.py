from decimal import Decimal, InvalidOperation
from django.db import transaction
from typing import Optional
import logging

from approvals.models import ActionType, ApprovalPolicy
from approvals.results import Applied
from approvals.services import AuthorizationService
from audit.services import AuditService
from core_backend.config import engine_settings
from core_backend.exceptions import AuthorizationError, ValidationError
from orders.calculators import FIXED, PERCENTAGE
from orders.events import OrderEventPublisher
from orders.models import Order
from orders.services import OrderCalculationService, OrderService
from users.models import User
from .approval_rules import DiscountApprovalChecker
from .vouchers import normalize_code

logger = logging.getLogger(__name__)


class DiscountGate:
    """
    Voucher and manual discounts on an order.

    Vouchers are validated by the voucher collaborator. Manual discounts above
    the cashier cap go through the two-phase manager authorization flow.
    """

    # --- Vouchers ---

    @staticmethod
    @transaction.atomic
    def apply_voucher(order: Order, code: str, user: Optional[User] = None) -> Order:
        """
        Validate ``code`` against the order's current subtotal and apply it.

        The collaborator is asked while the order is locked, so the subtotal it
        sees is the one the discount lands on. A collaborator timeout raises
        before anything is written.

        Raises:
            ValidationError: INVALID_VOUCHER, VOUCHER_NOT_ACTIVE, VOUCHER_EXPIRED,
                VOUCHER_LIMIT_REACHED, MIN_ORDER_AMOUNT, ORDER_CLOSED
            CollaboratorTimeout: voucher service did not answer in time
        """
        code = normalize_code(code)
        if not code:
            raise ValidationError("INVALID_VOUCHER", "Voucher code is required")

        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)

        backend = engine_settings.load_collaborator("VOUCHER_BACKEND")
        result = backend.validate(code, order.subtotal)
        if not result.valid:
            raise ValidationError(result.error, result.message or "Voucher cannot be applied", code=code)

        before = {"voucher_code": order.voucher_code, "voucher_discount": order.voucher_discount}
        terms = result.terms
        order.voucher_code = result.code
        order.voucher_discount = result.discount
        order.voucher_discount_type = terms.discount_type
        order.voucher_discount_value = terms.discount_value
        order.voucher_min_order_amount = terms.min_order_amount
        order.voucher_max_discount = terms.max_discount_amount
        order.save(update_fields=Order.VOUCHER_FIELDS + ["updated_at"])
        OrderCalculationService.recalculate_order_totals(order)
        backend.redeem(result.code)

        AuditService.append(
            user,
            "apply_voucher",
            order,
            old_value=before,
            new_value={"voucher_code": order.voucher_code, "voucher_discount": order.voucher_discount, "total": order.total},
        )
        logger.info(f"Applied voucher {code} (-{order.voucher_discount}) to {order.order_number}")
        OrderEventPublisher.order_updated(order)
        return order

    @staticmethod
    @transaction.atomic
    def remove_voucher(order: Order, user: Optional[User] = None) -> Order:
        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)
        if not order.voucher_code:
            return order

        before = {"voucher_code": order.voucher_code, "voucher_discount": order.voucher_discount}
        order.clear_voucher()
        order.save(update_fields=Order.VOUCHER_FIELDS + ["updated_at"])
        OrderCalculationService.recalculate_order_totals(order)

        AuditService.append(user, "remove_voucher", order, old_value=before, new_value={"total": order.total})
        OrderEventPublisher.order_updated(order)
        return order

    # --- Manual discounts ---

    @staticmethod
    def _validate_manual(discount_type, value, reason) -> Decimal:
        if not (reason or "").strip():
            raise ValidationError("REASON_REQUIRED", "A discount reason is required")
        if discount_type not in (PERCENTAGE, FIXED):
            raise ValidationError("INVALID_DISCOUNT", f"Unknown discount type '{discount_type}'")
        try:
            value = Decimal(str(value)).quantize(Decimal("0.01"))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("INVALID_DISCOUNT", "Discount value must be a number")
        if value <= 0 or (discount_type == PERCENTAGE and value > 100):
            raise ValidationError(
                "INVALID_DISCOUNT",
                "Percentage must be in (0, 100]; fixed amounts must be positive",
                value=value,
            )
        return value

    @staticmethod
    @transaction.atomic
    def attempt_manual_discount(
        order: Order,
        discount_type: str,
        value,
        reason: str,
        user: Optional[User],
        authorization_token: Optional[str] = None,
    ):
        """
        Apply a manual discount, or open a manager approval challenge for it.

        Within the cashier cap, or for an owner/manager, the discount is
        applied at once. Above it, a valid token bound to this order and this
        exact type/value/reason lets it through. A token that cannot be
        redeemed is treated as absent: above the cap a fresh challenge is
        created and nothing on the order changes.

        Returns:
            Applied(order) or NeedsAuthorization(challenge)

        Raises:
            ValidationError: REASON_REQUIRED, INVALID_DISCOUNT, ORDER_CLOSED
        """
        value = DiscountGate._validate_manual(discount_type, value, reason)
        reason = reason.strip()

        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)

        policy = ApprovalPolicy.get_solo()
        payload = {"discount_type": discount_type, "value": str(value), "reason": reason}
        if authorization_token:
            try:
                AuthorizationService.redeem(authorization_token, ActionType.DISCOUNT, order, payload)
            except AuthorizationError as e:
                if e.code != "INVALID_TOKEN":
                    raise
                # A stale or mismatched token counts as no token at all
                logger.warning(f"Ignoring unusable authorization token for discount on {order.order_number}")
                authorization_token = None

        if not authorization_token and DiscountApprovalChecker.needs_approval(discount_type, value, user, policy):
            pending = AuthorizationService.gate(
                ActionType.DISCOUNT,
                user,
                order=order,
                payload=payload,
                reason=reason,
                threshold_value=DiscountApprovalChecker.threshold_value(discount_type, value),
            )
            if pending is not None:
                logger.info(
                    f"Discount {discount_type} {value} on {order.order_number} needs manager approval "
                    f"(challenge {pending.challenge_id})"
                )
                return pending

        before = {
            "discount_type": order.discount_type,
            "discount_value": order.discount_value,
            "discount_amount": order.discount_amount,
            "total": order.total,
        }
        order.discount_type = discount_type
        order.discount_value = value
        order.discount_reason = reason[:255]
        order.save(update_fields=["discount_type", "discount_value", "discount_reason", "updated_at"])
        OrderCalculationService.recalculate_order_totals(order)

        AuditService.append(
            user,
            "apply_discount",
            order,
            old_value=before,
            new_value={
                "discount_type": discount_type,
                "discount_value": value,
                "discount_amount": order.discount_amount,
                "total": order.total,
            },
            reason=reason,
        )
        logger.info(f"Applied {discount_type} discount {value} (-{order.discount_amount}) to {order.order_number}")
        OrderEventPublisher.order_updated(order)
        return Applied(order)

    @staticmethod
    def apply_manual_discount(order, discount_type, value, reason, user, authorization_token=None) -> Order:
        """
        Like ``attempt_manual_discount`` but raises when approval is needed.

        Raises:
            AuthorizationError: PIN_REQUIRED, carrying the open challenge
        """
        result = DiscountGate.attempt_manual_discount(
            order, discount_type, value, reason, user, authorization_token=authorization_token
        )
        if not result.applied:
            raise AuthorizationError(
                "PIN_REQUIRED",
                "Discount exceeds your limit; a manager PIN is required",
                challenge=result.challenge,
            )
        return result.result

    @staticmethod
    @transaction.atomic
    def clear_manual_discount(order: Order, user: Optional[User] = None) -> Order:
        order = OrderService.lock(order)
        OrderService.ensure_status(order, *Order.ACTIVE_STATUSES)
        if not order.discount_type:
            return order

        before = {"discount_type": order.discount_type, "discount_value": order.discount_value}
        order.discount_type = ""
        order.discount_value = Decimal("0.00")
        order.discount_reason = ""
        order.save(update_fields=["discount_type", "discount_value", "discount_reason", "updated_at"])
        OrderCalculationService.recalculate_order_totals(order)

        AuditService.append(user, "clear_discount", order, old_value=before, new_value={"total": order.total})
        OrderEventPublisher.order_updated(order)
        return order
