from django.db import models
from django.utils.translation import gettext_lazy as _


class Product(models.Model):
    """
    Minimal menu entry the order engine reads at add-item time.

    Catalog management lives outside the engine; this model only carries the
    fields that get snapshotted onto order items.
    """

    name = models.CharField(max_length=200, help_text=_("Name of the product."))
    names = models.JSONField(
        default=dict,
        blank=True,
        help_text=_("Localized names keyed by language code, e.g. {'vi': 'Phở bò'}."),
    )
    price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text=_("The selling price of the product."),
    )
    is_available = models.BooleanField(
        default=True,
        help_text=_("Unavailable (sold out) products cannot be added to orders."),
    )
    display_in_kitchen = models.BooleanField(
        default=True,
        help_text=_("Whether items of this product are sent to the kitchen display."),
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Product")
        verbose_name_plural = _("Products")
        ordering = ["name"]

    def __str__(self):
        return self.name
