from django.db.models.signals import post_save, post_delete
from django.dispatch import receiver
import logging

from .models import Product
from .services import MenuCatalogService

logger = logging.getLogger(__name__)


@receiver([post_save, post_delete], sender=Product)
def invalidate_menu_cache(sender, instance, **kwargs):
    """Keep the menu cache in step with catalog edits."""
    try:
        MenuCatalogService.invalidate(instance.pk)
    except Exception as e:
        logger.error(f"Failed to invalidate menu cache for product {instance.pk}: {e}")
