import uuid
from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("products", "0001_initial"),
        ("tables", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("order_number", models.CharField(blank=True, db_index=True, help_text="Human-readable sequential order number, e.g. ORD-00042.", max_length=20, unique=True)),
                ("order_type", models.CharField(choices=[("DINE_IN", "Dine In"), ("TAKEAWAY", "Takeaway")], default="DINE_IN", max_length=20)),
                ("channel", models.CharField(choices=[("STAFF", "Staff (local)"), ("CUSTOMER", "Customer (cloud)")], default="STAFF", max_length=20)),
                ("status", models.CharField(choices=[("OPEN", "Open"), ("PENDING_PAYMENT", "Pending Payment"), ("PAID", "Paid"), ("CANCELLED", "Cancelled"), ("DEBT", "Debt")], db_index=True, default="OPEN", max_length=20)),
                ("subtotal", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("voucher_code", models.CharField(blank=True, default="", max_length=50)),
                ("voucher_discount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("voucher_discount_type", models.CharField(blank=True, choices=[("PERCENTAGE", "Percentage"), ("FIXED", "Fixed Amount")], default="", max_length=20)),
                ("voucher_discount_value", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("voucher_min_order_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("voucher_max_discount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("discount_type", models.CharField(blank=True, choices=[("PERCENTAGE", "Percentage"), ("FIXED", "Fixed Amount")], default="", max_length=20)),
                ("discount_value", models.DecimalField(decimal_places=2, default=Decimal("0.00"), help_text="Percent (0-100] or fixed amount as entered by staff.", max_digits=12)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("discount_reason", models.CharField(blank=True, default="", max_length=255)),
                ("total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.CharField(blank=True, default="", max_length=255)),
                ("debt_marked_at", models.DateTimeField(blank=True, null=True)),
                ("debt_note", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="orders_created", to=settings.AUTH_USER_MODEL)),
                ("split_from", models.ForeignKey(blank=True, help_text="Source order when this order was created by a bill split.", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="split_orders", to="orders.order")),
                ("table_session", models.ForeignKey(blank=True, help_text="Null for takeaway orders on virtual tables.", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="orders", to="tables.tablesession")),
            ],
            options={
                "verbose_name": "Order",
                "verbose_name_plural": "Orders",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["table_session", "status"], name="order_session_status_idx"),
                    models.Index(fields=["status", "paid_at"], name="order_status_paid_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("total__gte", 0)), name="order_total_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("open_item_name", models.CharField(blank=True, default="", help_text="Name of an open (off-menu) item; empty for catalog products.", max_length=200)),
                ("product_name", models.CharField(blank=True, default="", help_text="Display name captured when the item was added.", max_length=200)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("unit_price", models.DecimalField(decimal_places=2, help_text="Price snapshot taken when the item was added. Never changes afterwards.", max_digits=12)),
                ("note", models.CharField(blank=True, default="", max_length=255)),
                ("kitchen_status", models.CharField(choices=[("PENDING", "Pending"), ("PREPARING", "Preparing"), ("READY", "Ready")], db_index=True, default="PENDING", max_length=20)),
                ("display_in_kitchen", models.BooleanField(default=True)),
                ("sent_to_kitchen_at", models.DateTimeField(blank=True, null=True)),
                ("ready_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="items", to="orders.order")),
                ("product", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="order_items", to="products.product")),
            ],
            options={
                "verbose_name": "Order Item",
                "verbose_name_plural": "Order Items",
                "ordering": ["created_at"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gte", 1)), name="order_item_quantity_positive"),
                    models.CheckConstraint(condition=models.Q(("unit_price__gte", 0)), name="order_item_unit_price_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderConflict",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(choices=[("OPEN", "Open"), ("RESOLVED", "Resolved")], db_index=True, default="OPEN", max_length=20)),
                ("resolution", models.CharField(blank=True, choices=[("merge", "Merge"), ("keep_cloud", "Keep Cloud"), ("keep_local", "Keep Local"), ("cancel_all", "Cancel All")], default="", max_length=20)),
                ("detected_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("cloud_order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="+", to="orders.order")),
                ("local_order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="+", to="orders.order")),
                ("resolved_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("surviving_order", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="orders.order")),
                ("table_session", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="order_conflicts", to="tables.tablesession")),
            ],
            options={
                "ordering": ["-detected_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("cloud_order", "local_order"), name="unique_conflict_per_order_pair"),
                ],
            },
        ),
    ]
