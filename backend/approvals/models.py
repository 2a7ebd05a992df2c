from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _
from django.core.validators import MinValueValidator, MaxValueValidator
from decimal import Decimal
import uuid


class ActionType(models.TextChoices):
    """Types of actions that require manager approval"""
    DISCOUNT = 'DISCOUNT', _('Discount Application')
    ITEM_VOID = 'ITEM_VOID', _('Sent Item Void')
    ORDER_CANCEL = 'ORDER_CANCEL', _('Order Cancellation')


class ApprovalStatus(models.TextChoices):
    """Status of an approval request"""
    PENDING = 'PENDING', _('Pending')
    APPROVED = 'APPROVED', _('Approved')
    DENIED = 'DENIED', _('Denied')
    EXPIRED = 'EXPIRED', _('Expired')
    CONSUMED = 'CONSUMED', _('Consumed')


class ApprovalPolicy(models.Model):
    """
    Cashier caps and approval lifetimes.

    A single row, auto-created on first access. Discounts within the caps are
    applied directly; anything beyond needs a manager PIN.
    """

    max_discount_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('10.00'),
        validators=[MinValueValidator(Decimal('0.00')), MaxValueValidator(Decimal('100.00'))],
        help_text=_("Maximum discount percentage allowed without approval (e.g., 10.00 for 10%)")
    )

    max_fixed_discount_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('50000.00'),
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text=_("Maximum fixed discount allowed without approval")
    )

    approval_expiry_minutes = models.PositiveIntegerField(
        default=5,
        validators=[MinValueValidator(1), MaxValueValidator(1440)],  # Max 24 hours
        help_text=_("Minutes until a pending approval request expires")
    )

    token_ttl_minutes = models.PositiveIntegerField(
        default=5,
        validators=[MinValueValidator(1), MaxValueValidator(60)],
        help_text=_("Minutes an issued authorization token stays redeemable")
    )

    # Security settings
    allow_self_approval = models.BooleanField(
        default=False,
        help_text=_("Let managers and owners skip the PIN prompt for their own actions")
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Approval Policy")
        verbose_name_plural = _("Approval Policies")

    def __str__(self):
        return f"Approval policy (discount cap {self.max_discount_percent}%)"

    @classmethod
    def get_solo(cls):
        policy, _created = cls.objects.get_or_create(pk=1)
        return policy


class ManagerApprovalRequest(models.Model):
    """
    A challenge raised when an action needs elevated authorization.

    Lifecycle: PENDING -> APPROVED (PIN verified, token issued) -> CONSUMED
    (token redeemed by the retried action). PENDING may also end DENIED or EXPIRED.
    The token is bound to the action type, the order and the exact payload.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    initiator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='initiated_approvals',
        help_text=_("Staff member whose action needs approval")
    )
    approver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='approved_requests',
    )

    action_type = models.CharField(max_length=32, choices=ActionType.choices, db_index=True)
    status = models.CharField(
        max_length=20, choices=ApprovalStatus.choices, default=ApprovalStatus.PENDING, db_index=True
    )

    order = models.ForeignKey(
        'orders.Order',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='approval_requests',
    )
    payload = models.JSONField(default=dict, blank=True, help_text=_("Exact parameters of the gated action"))
    reason = models.TextField(blank=True, default='')
    threshold_value = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text=_("Value that exceeded the cap (e.g., the requested percent)")
    )

    token = models.CharField(max_length=64, unique=True, null=True, blank=True)
    token_expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField()
    approved_at = models.DateTimeField(null=True, blank=True)
    denied_at = models.DateTimeField(null=True, blank=True)
    consumed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'expires_at'], name='approval_status_expiry_idx'),
        ]

    def __str__(self):
        return f"{self.get_action_type_display()} - {self.get_status_display()}"

    @property
    def is_expired(self):
        """Check if the request has expired"""
        return self.status == ApprovalStatus.PENDING and timezone.now() > self.expires_at

    def save(self, *args, **kwargs):
        """Override save to set expires_at if not provided"""
        if not self.expires_at:
            policy = ApprovalPolicy.get_solo()
            self.expires_at = timezone.now() + timezone.timedelta(minutes=policy.approval_expiry_minutes)
        super().save(*args, **kwargs)
