from decimal import Decimal

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Voucher",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(help_text="Stored upper-case.", max_length=50, unique=True)),
                ("name", models.CharField(blank=True, max_length=200)),
                ("discount_type", models.CharField(choices=[("PERCENTAGE", "Percentage"), ("FIXED", "Fixed Amount")], max_length=20)),
                ("discount_value", models.DecimalField(decimal_places=2, max_digits=12)),
                ("min_order_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("max_discount_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Upper bound for percentage vouchers.", max_digits=12, null=True)),
                ("usage_limit", models.PositiveIntegerField(blank=True, null=True)),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("start_date", models.DateTimeField(blank=True, null=True)),
                ("end_date", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["code"],
            },
        ),
    ]
