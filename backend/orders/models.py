import re
import uuid
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, models, transaction
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class Order(models.Model):
    class OrderStatus(models.TextChoices):
        OPEN = "OPEN", _("Open")
        PENDING_PAYMENT = "PENDING_PAYMENT", _("Pending Payment")
        PAID = "PAID", _("Paid")
        CANCELLED = "CANCELLED", _("Cancelled")
        DEBT = "DEBT", _("Debt")

    class OrderType(models.TextChoices):
        DINE_IN = "DINE_IN", _("Dine In")
        TAKEAWAY = "TAKEAWAY", _("Takeaway")

    class Channel(models.TextChoices):
        # Staff terminals are the "local" side, customer self-order devices the "cloud" side
        STAFF = "STAFF", _("Staff (local)")
        CUSTOMER = "CUSTOMER", _("Customer (cloud)")

    class DiscountType(models.TextChoices):
        PERCENTAGE = "PERCENTAGE", _("Percentage")
        FIXED = "FIXED", _("Fixed Amount")

    # Statuses that still hold the table and can take items, discounts and payment
    ACTIVE_STATUSES = (OrderStatus.OPEN, OrderStatus.PENDING_PAYMENT)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(
        max_length=20,
        unique=True,
        blank=True,
        db_index=True,
        help_text=_("Human-readable sequential order number, e.g. ORD-00042."),
    )
    table_session = models.ForeignKey(
        "tables.TableSession",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="orders",
        help_text=_("Null for takeaway orders on virtual tables."),
    )
    order_type = models.CharField(
        max_length=20, choices=OrderType.choices, default=OrderType.DINE_IN
    )
    channel = models.CharField(
        max_length=20, choices=Channel.choices, default=Channel.STAFF
    )
    status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.OPEN,
        db_index=True,
    )
    split_from = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="split_orders",
        help_text=_("Source order when this order was created by a bill split."),
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders_created",
    )

    # --- Financial fields (derived, written only by OrderCalculationService) ---
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    voucher_code = models.CharField(max_length=50, blank=True, default="")
    voucher_discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    # Terms the voucher was accepted under; the discount is re-derived from them on every recompute
    voucher_discount_type = models.CharField(
        max_length=20, choices=DiscountType.choices, blank=True, default=""
    )
    voucher_discount_value = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    voucher_min_order_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    voucher_max_discount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    discount_type = models.CharField(
        max_length=20, choices=DiscountType.choices, blank=True, default=""
    )
    discount_value = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text=_("Percent (0-100] or fixed amount as entered by staff."),
    )
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount_reason = models.CharField(max_length=255, blank=True, default="")
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    # --- Lifecycle ---
    paid_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.CharField(max_length=255, blank=True, default="")
    debt_marked_at = models.DateTimeField(null=True, blank=True)
    debt_note = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = _("Order")
        verbose_name_plural = _("Orders")
        indexes = [
            models.Index(fields=["table_session", "status"], name="order_session_status_idx"),
            models.Index(fields=["status", "paid_at"], name="order_status_paid_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total__gte=0),
                name="order_total_non_negative",
            ),
        ]

    def __str__(self):
        return f"Order {self.order_number or self.id} ({self.get_status_display()})"

    @property
    def is_active(self):
        return self.status in self.ACTIVE_STATUSES

    VOUCHER_FIELDS = [
        "voucher_code",
        "voucher_discount",
        "voucher_discount_type",
        "voucher_discount_value",
        "voucher_min_order_amount",
        "voucher_max_discount",
    ]

    def clear_voucher(self):
        """Reset every voucher field in memory. Callers save ``VOUCHER_FIELDS``."""
        self.voucher_code = ""
        self.voucher_discount = Decimal("0.00")
        self.voucher_discount_type = ""
        self.voucher_discount_value = Decimal("0.00")
        self.voucher_min_order_amount = Decimal("0.00")
        self.voucher_max_discount = None

    def save(self, *args, **kwargs):
        # Generate order_number only if it's not already set
        if self.order_number:
            super().save(*args, **kwargs)
            return

        max_retries = 5  # Prevent infinite loop in extreme race conditions
        for _attempt in range(max_retries):
            self.order_number = self._generate_sequential_order_number()
            try:
                with transaction.atomic():
                    super().save(*args, **kwargs)
                return
            except IntegrityError as e:
                if "order_number" not in str(e).lower():
                    raise
                # Another process took the number, retry
                continue
        raise IntegrityError("Failed to generate a unique order number after multiple retries.")

    def _generate_sequential_order_number(self):
        prefix = "ORD-"
        last_order = (
            Order.objects.filter(order_number__startswith=prefix)
            .order_by("-order_number")
            .first()
        )

        next_number = 1
        if last_order and last_order.order_number:
            match = re.match(rf"^{re.escape(prefix)}(\d+)$", last_order.order_number)
            if match:
                next_number = int(match.group(1)) + 1

        return f"{prefix}{next_number:05d}"


class OrderItem(models.Model):
    class KitchenStatus(models.TextChoices):
        PENDING = "PENDING", _("Pending")
        PREPARING = "PREPARING", _("Preparing")
        READY = "READY", _("Ready")

    # Forward-only kitchen state machine
    KITCHEN_TRANSITIONS = {
        KitchenStatus.PENDING: KitchenStatus.PREPARING,
        KitchenStatus.PREPARING: KitchenStatus.READY,
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(
        "products.Product",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="order_items",
    )
    open_item_name = models.CharField(
        max_length=200,
        blank=True,
        default="",
        help_text=_("Name of an open (off-menu) item; empty for catalog products."),
    )
    product_name = models.CharField(
        max_length=200,
        blank=True,
        default="",
        help_text=_("Display name captured when the item was added."),
    )
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text=_("Price snapshot taken when the item was added. Never changes afterwards."),
    )
    note = models.CharField(max_length=255, blank=True, default="")
    kitchen_status = models.CharField(
        max_length=20,
        choices=KitchenStatus.choices,
        default=KitchenStatus.PENDING,
        db_index=True,
    )
    display_in_kitchen = models.BooleanField(default=True)
    sent_to_kitchen_at = models.DateTimeField(null=True, blank=True)
    ready_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = _("Order Item")
        verbose_name_plural = _("Order Items")
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gte=1), name="order_item_quantity_positive"),
            models.CheckConstraint(condition=models.Q(unit_price__gte=0), name="order_item_unit_price_non_negative"),
        ]

    def __str__(self):
        return f"{self.quantity} x {self.display_name}"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        # Remember the persisted snapshot so save() can refuse to rewrite it
        instance._loaded_unit_price = instance.__dict__.get("unit_price")
        return instance

    @property
    def display_name(self):
        return self.product_name or self.open_item_name or "Open Item"

    @property
    def total_price(self):
        return self.quantity * self.unit_price

    @property
    def is_sent(self):
        return self.kitchen_status != self.KitchenStatus.PENDING

    def clean(self):
        super().clean()
        if self.product_id is None and not self.open_item_name:
            raise DjangoValidationError(_("An item needs a product or an open item name."))
        if self.quantity is not None and self.quantity < 1:
            raise DjangoValidationError(_("Quantity must be at least 1."))

    def save(self, *args, **kwargs):
        loaded = getattr(self, "_loaded_unit_price", None)
        if loaded is not None and self.unit_price is not None and Decimal(self.unit_price) != loaded:
            raise DjangoValidationError(_("unit_price is an immutable snapshot and cannot be changed."))
        if not self.product_name:
            self.product_name = self.open_item_name
        self.full_clean(exclude=["order"])
        super().save(*args, **kwargs)
        self._loaded_unit_price = Decimal(self.unit_price)

    def snapshot(self):
        """Plain-dict view of the line used in audit entries."""
        return {
            "id": str(self.id),
            "product_id": self.product_id,
            "name": self.display_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "note": self.note,
            "kitchen_status": self.kitchen_status,
        }


class OrderConflict(models.Model):
    """
    Two active orders for one table session created by different channels.

    Raised while the customer and staff channels were partitioned; staff
    resolve it explicitly through the conflict resolver.
    """

    class ConflictStatus(models.TextChoices):
        OPEN = "OPEN", _("Open")
        RESOLVED = "RESOLVED", _("Resolved")

    class Resolution(models.TextChoices):
        MERGE = "merge", _("Merge")
        KEEP_CLOUD = "keep_cloud", _("Keep Cloud")
        KEEP_LOCAL = "keep_local", _("Keep Local")
        CANCEL_ALL = "cancel_all", _("Cancel All")

    table_session = models.ForeignKey(
        "tables.TableSession", on_delete=models.CASCADE, related_name="order_conflicts"
    )
    cloud_order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="+")
    local_order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="+")
    status = models.CharField(
        max_length=20, choices=ConflictStatus.choices, default=ConflictStatus.OPEN, db_index=True
    )
    resolution = models.CharField(max_length=20, choices=Resolution.choices, blank=True, default="")
    surviving_order = models.ForeignKey(
        Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    detected_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-detected_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["cloud_order", "local_order"],
                name="unique_conflict_per_order_pair",
            ),
        ]

    def __str__(self):
        return f"Conflict on session {self.table_session_id} ({self.status})"
