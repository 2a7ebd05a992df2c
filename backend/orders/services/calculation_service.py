from django.db import transaction
import logging

from audit.services import AuditService
from orders.calculators import VoucherTerms, compute_totals

logger = logging.getLogger(__name__)


class OrderCalculationService:
    """Keeps the stored financial fields of an order in step with its lines."""

    @staticmethod
    def voucher_terms(order):
        if not order.voucher_code:
            return None
        return VoucherTerms(
            discount_type=order.voucher_discount_type,
            # Orders carrying only an amount fall back to a fixed voucher of that amount
            discount_value=order.voucher_discount_value if order.voucher_discount_type else order.voucher_discount,
            min_order_amount=order.voucher_min_order_amount,
            max_discount_amount=order.voucher_max_discount,
        )

    @staticmethod
    @transaction.atomic
    def recalculate_order_totals(order):
        """
        Recompute subtotal, discounts and total from the persisted items.

        Reads the lines fresh from the database so prefetched relations can't
        leave stale totals behind. The voucher discount is re-derived from its
        stored terms; a voucher whose minimum is no longer met is dropped from
        the order and audited. Callers are expected to hold the order's row
        lock. Returns ``order`` with the new values saved.
        """
        lines = list(order.items.values_list("quantity", "unit_price"))

        totals = compute_totals(
            lines,
            discount_type=order.discount_type,
            discount_value=order.discount_value,
            voucher=OrderCalculationService.voucher_terms(order),
        )

        update_fields = ["subtotal", "voucher_discount", "discount_amount", "total", "updated_at"]
        dropped = None
        if not totals.voucher_valid:
            dropped = {
                "voucher_code": order.voucher_code,
                "voucher_discount": order.voucher_discount,
                "min_order_amount": order.voucher_min_order_amount,
            }
            order.clear_voucher()
            update_fields = sorted(set(update_fields) | set(order.VOUCHER_FIELDS))

        changed = (
            order.subtotal != totals.subtotal
            or order.voucher_discount != totals.voucher_discount
            or order.discount_amount != totals.discount_amount
            or order.total != totals.total
        )

        order.subtotal = totals.subtotal
        order.voucher_discount = totals.voucher_discount
        order.discount_amount = totals.discount_amount
        order.total = totals.total
        order.save(update_fields=update_fields)

        if dropped:
            logger.warning(
                f"Dropped voucher {dropped['voucher_code']} from {order.order_number}: "
                f"subtotal {totals.subtotal} is below the minimum {dropped['min_order_amount']}"
            )
            AuditService.append(
                None,
                "voucher_dropped",
                order,
                old_value=dropped,
                new_value={"subtotal": totals.subtotal, "total": totals.total},
                reason="MIN_ORDER_AMOUNT",
            )

        if changed:
            logger.debug(
                f"Recalculated {order.order_number}: subtotal={totals.subtotal} "
                f"voucher={totals.voucher_discount} discount={totals.discount_amount} total={totals.total}"
            )
        return order
