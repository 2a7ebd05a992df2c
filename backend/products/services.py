from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional
import logging

from core_backend.config import engine_settings
from core_backend.exceptions import NotFoundError
from core_backend.infrastructure.cache import CacheService
from .models import Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    product_id: int
    name: str
    price: Decimal
    is_available: bool
    display_in_kitchen: bool
    names: Dict[str, str] = field(default_factory=dict)


class MenuCatalogService:
    """
    Read side of the menu catalog consumed by the order engine.

    Lookups go through an explicit TTL cache; catalog writes call ``invalidate``
    (wired to Product save/delete signals) so price edits are visible to the
    next add-item, while items already on an order keep their snapshot.
    """

    @staticmethod
    def _cache() -> CacheService:
        return CacheService(
            namespace="menu:product",
            alias=engine_settings.MENU_CACHE_ALIAS,
            ttl=engine_settings.MENU_CACHE_TTL,
        )

    @staticmethod
    def _load(product_id) -> Optional[CatalogEntry]:
        product = Product.objects.filter(pk=product_id).first()
        if product is None:
            return None
        return CatalogEntry(
            product_id=product.pk,
            name=product.name,
            price=product.price,
            is_available=product.is_available,
            display_in_kitchen=product.display_in_kitchen,
            names=dict(product.names or {}),
        )

    @staticmethod
    def lookup(product_id) -> CatalogEntry:
        """
        Return the catalog entry for a product.

        Raises:
            NotFoundError: PRODUCT_NOT_FOUND when the id is unknown
        """
        entry = MenuCatalogService._cache().get_or_load(
            product_id, lambda: MenuCatalogService._load(product_id)
        )
        if entry is None:
            raise NotFoundError(
                "PRODUCT_NOT_FOUND", f"Product {product_id} not found", product_id=product_id
            )
        return entry

    @staticmethod
    def invalidate(product_id=None) -> None:
        """Drop one product, or the whole menu when ``product_id`` is None."""
        MenuCatalogService._cache().invalidate(product_id)
        logger.info(f"Menu cache invalidated for product {product_id or 'ALL'}")
