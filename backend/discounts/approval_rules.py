"""
Discount approval rules.

Decides whether a manual discount stays within a cashier's authority. Keeps
the cap arithmetic out of DiscountGate so the thresholds live in one place.
"""

from decimal import Decimal
import logging

from approvals.models import ApprovalPolicy
from orders.calculators import FIXED, PERCENTAGE

logger = logging.getLogger(__name__)


class DiscountApprovalChecker:
    """Helper for checking if a manual discount needs manager approval."""

    @staticmethod
    def needs_approval(discount_type, value, user=None, policy=None):
        """
        Check if this discount exceeds what ``user`` may apply alone.

        Owners and managers are never capped. Cashier caps come from the
        ApprovalPolicy: ``max_discount_percent`` for percentage discounts and
        ``max_fixed_discount_amount`` for fixed ones.

        Returns:
            bool: True if approval required, False otherwise
        """
        if user is not None and getattr(user, "is_elevated", False):
            return False

        policy = policy or ApprovalPolicy.get_solo()
        threshold = DiscountApprovalChecker.threshold_value(discount_type, value)

        if discount_type == PERCENTAGE:
            exceeded = threshold > policy.max_discount_percent
        else:
            exceeded = threshold > policy.max_fixed_discount_amount

        if exceeded:
            logger.info(
                f"Discount {discount_type} {threshold} exceeds cashier cap for "
                f"{getattr(user, 'email', 'anonymous')}"
            )
        return exceeded

    @staticmethod
    def threshold_value(discount_type, value):
        """The number compared against the cap: percent for PERCENTAGE, amount for FIXED."""
        if discount_type not in (PERCENTAGE, FIXED):
            raise ValueError(f"Unknown discount type: {discount_type}")
        return Decimal(str(value))
