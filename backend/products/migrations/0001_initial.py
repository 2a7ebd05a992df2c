from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(help_text="Name of the product.", max_length=200)),
                ("names", models.JSONField(blank=True, default=dict, help_text="Localized names keyed by language code, e.g. {'vi': 'Phở bò'}.")),
                ("price", models.DecimalField(decimal_places=2, help_text="The selling price of the product.", max_digits=12)),
                ("is_available", models.BooleanField(default=True, help_text="Unavailable (sold out) products cannot be added to orders.")),
                ("display_in_kitchen", models.BooleanField(default=True, help_text="Whether items of this product are sent to the kitchen display.")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Product",
                "verbose_name_plural": "Products",
                "ordering": ["name"],
            },
        ),
    ]
