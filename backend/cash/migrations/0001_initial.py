import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CashShift",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("start_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("end_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("expected_end_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("difference_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Counted minus expected. Negative means the drawer is short.", max_digits=12, null=True)),
                ("status", models.CharField(choices=[("OPEN", "Open"), ("CLOSED", "Closed")], default="OPEN", max_length=10)),
                ("opened_at", models.DateTimeField(auto_now_add=True)),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("operator", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="cash_shifts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-opened_at"],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "OPEN")), fields=("status",), name="single_open_cash_shift"),
                    models.CheckConstraint(condition=models.Q(("start_amount__gte", 0)), name="cash_shift_start_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CashTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("type", models.CharField(choices=[("PAY_IN", "Pay In"), ("PAY_OUT", "Pay Out")], max_length=10)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("reason", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="cash_transactions", to=settings.AUTH_USER_MODEL)),
                ("shift", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="transactions", to="cash.cashshift")),
            ],
            options={
                "ordering": ["created_at"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="cash_transaction_amount_positive"),
                ],
            },
        ),
    ]
