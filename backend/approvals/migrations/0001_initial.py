import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("orders", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ApprovalPolicy",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("max_discount_percent", models.DecimalField(decimal_places=2, default=Decimal("10.00"), help_text="Maximum discount percentage allowed without approval (e.g., 10.00 for 10%)", max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal("0.00")), django.core.validators.MaxValueValidator(Decimal("100.00"))])),
                ("max_fixed_discount_amount", models.DecimalField(decimal_places=2, default=Decimal("50000.00"), help_text="Maximum fixed discount allowed without approval", max_digits=12, validators=[django.core.validators.MinValueValidator(Decimal("0.00"))])),
                ("approval_expiry_minutes", models.PositiveIntegerField(default=5, help_text="Minutes until a pending approval request expires", validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(1440)])),
                ("token_ttl_minutes", models.PositiveIntegerField(default=5, help_text="Minutes an issued authorization token stays redeemable", validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(60)])),
                ("allow_self_approval", models.BooleanField(default=False, help_text="Let managers and owners skip the PIN prompt for their own actions")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Approval Policy",
                "verbose_name_plural": "Approval Policies",
            },
        ),
        migrations.CreateModel(
            name="ManagerApprovalRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("action_type", models.CharField(choices=[("DISCOUNT", "Discount Application"), ("ITEM_VOID", "Sent Item Void"), ("ORDER_CANCEL", "Order Cancellation")], db_index=True, max_length=32)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("APPROVED", "Approved"), ("DENIED", "Denied"), ("EXPIRED", "Expired"), ("CONSUMED", "Consumed")], db_index=True, default="PENDING", max_length=20)),
                ("payload", models.JSONField(blank=True, default=dict, help_text="Exact parameters of the gated action")),
                ("reason", models.TextField(blank=True, default="")),
                ("threshold_value", models.DecimalField(blank=True, decimal_places=2, help_text="Value that exceeded the cap (e.g., the requested percent)", max_digits=12, null=True)),
                ("token", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("token_expires_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("expires_at", models.DateTimeField()),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("denied_at", models.DateTimeField(blank=True, null=True)),
                ("consumed_at", models.DateTimeField(blank=True, null=True)),
                ("approver", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="approved_requests", to=settings.AUTH_USER_MODEL)),
                ("initiator", models.ForeignKey(blank=True, help_text="Staff member whose action needs approval", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="initiated_approvals", to=settings.AUTH_USER_MODEL)),
                ("order", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="approval_requests", to="orders.order")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status", "expires_at"], name="approval_status_expiry_idx")],
            },
        ),
    ]
