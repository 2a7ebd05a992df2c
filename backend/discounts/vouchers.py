"""
Voucher collaborators.

``validate(code, subtotal)`` answers with a ``VoucherValidation``; it never
mutates anything. ``redeem(code)`` records one use once the discount has been
applied. The active backend is chosen by ``POS_ENGINE['VOUCHER_BACKEND']``.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import logging

import requests
from django.db.models import F
from django.utils import timezone

from core_backend.config import engine_settings
from core_backend.exceptions import CollaboratorFailure, CollaboratorTimeout
from orders.calculators import FIXED, PERCENTAGE, VoucherTerms
from payments.money import ZERO, money
from .models import Voucher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoucherValidation:
    valid: bool
    code: str
    discount: Decimal = ZERO
    error: Optional[str] = None
    message: str = ""
    # Terms the discount was derived from, re-applied whenever the order changes
    discount_type: str = FIXED
    discount_value: Decimal = ZERO
    min_order_amount: Decimal = ZERO
    max_discount_amount: Optional[Decimal] = None

    @property
    def terms(self) -> VoucherTerms:
        return VoucherTerms(
            discount_type=self.discount_type,
            discount_value=self.discount_value,
            min_order_amount=self.min_order_amount,
            max_discount_amount=self.max_discount_amount,
        )


def normalize_code(code) -> str:
    return (code or "").strip().upper()


class LocalVoucherBackend:
    """Validates against the Voucher table."""

    def validate(self, code, subtotal) -> VoucherValidation:
        code = normalize_code(code)
        subtotal = money(subtotal)
        voucher = Voucher.objects.filter(code=code, is_active=True).first()

        def reject(error, message):
            logger.info(f"Voucher {code} rejected: {error}")
            return VoucherValidation(valid=False, code=code, error=error, message=message)

        if voucher is None:
            return reject("INVALID_VOUCHER", "Voucher not found or inactive")

        now = timezone.now()
        if voucher.start_date and now < voucher.start_date:
            return reject("VOUCHER_NOT_ACTIVE", "Voucher is not active yet")
        if voucher.end_date and now > voucher.end_date:
            return reject("VOUCHER_EXPIRED", "Voucher has expired")
        if voucher.usage_limit is not None and voucher.usage_count >= voucher.usage_limit:
            return reject("VOUCHER_LIMIT_REACHED", "Voucher usage limit reached")

        terms = VoucherTerms(
            discount_type=voucher.discount_type,
            discount_value=voucher.discount_value,
            min_order_amount=voucher.min_order_amount,
            max_discount_amount=voucher.max_discount_amount,
        )
        discount = terms.discount_for(subtotal)
        if discount is None:
            return reject("MIN_ORDER_AMOUNT", f"Minimum order amount is {voucher.min_order_amount}")

        return VoucherValidation(
            valid=True,
            code=code,
            discount=discount,
            discount_type=terms.discount_type,
            discount_value=terms.discount_value,
            min_order_amount=terms.min_order_amount,
            max_discount_amount=terms.max_discount_amount,
        )

    def redeem(self, code) -> None:
        Voucher.objects.filter(code=normalize_code(code)).update(usage_count=F("usage_count") + 1)


class HttpVoucherBackend:
    """
    Remote voucher service.

    ``POST <url>/validate`` with ``{"code", "subtotal"}`` answers
    ``{"valid": bool, "discount": "...", "error": "...", "message": "..."}``
    plus, optionally, the terms ``discount_type``, ``discount_value``,
    ``min_order_amount`` and ``max_discount_amount``. Without terms the
    voucher is kept as a fixed discount of the returned amount.
    ``POST <url>/redeem`` with ``{"code"}`` records a use.
    """

    def __init__(self, url=None, timeout=None):
        self.url = (url or engine_settings.VOUCHER_SERVICE_URL).rstrip("/")
        self.timeout = timeout or engine_settings.COLLABORATOR_TIMEOUT

    def _post(self, path, body):
        try:
            response = requests.post(f"{self.url}/{path}", json=body, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            logger.warning(f"Voucher service timed out after {self.timeout}s: {e}")
            raise CollaboratorTimeout("VOUCHER_SERVICE_TIMEOUT", "Voucher service timed out, try again")
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Voucher service request failed: {e}")
            raise CollaboratorFailure("VOUCHER_SERVICE_UNAVAILABLE", "Voucher service unavailable")

    def validate(self, code, subtotal) -> VoucherValidation:
        code = normalize_code(code)
        data = self._post("validate", {"code": code, "subtotal": str(money(subtotal))})
        if not data.get("valid"):
            return VoucherValidation(
                valid=False,
                code=code,
                error=data.get("error") or "INVALID_VOUCHER",
                message=data.get("message", ""),
            )
        discount = min(money(data.get("discount") or 0), money(subtotal))
        if data.get("discount_type") in (PERCENTAGE, FIXED):
            max_discount = data.get("max_discount_amount")
            return VoucherValidation(
                valid=True,
                code=code,
                discount=discount,
                discount_type=data["discount_type"],
                discount_value=Decimal(str(data.get("discount_value") or 0)),
                min_order_amount=money(data.get("min_order_amount") or 0),
                max_discount_amount=money(max_discount) if max_discount is not None else None,
            )
        return VoucherValidation(valid=True, code=code, discount=discount, discount_value=discount)

    def redeem(self, code) -> None:
        self._post("redeem", {"code": normalize_code(code)})
