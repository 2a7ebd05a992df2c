from django.core.cache import caches
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CacheService:
    """
    Explicit cache with a fixed TTL and an invalidation call.

    Wraps one Django cache alias and a key namespace so callers never touch
    module-level state. Cache backend failures degrade to the loader.
    """

    def __init__(self, namespace: str, alias: str = "default", ttl: int = 300, version: int = 1):
        self.namespace = namespace
        self.alias = alias
        self.ttl = ttl
        self.version = version

    @property
    def backend(self):
        return caches[self.alias]

    def cache_key(self, identifier: Any = "all") -> str:
        return f"v{self.version}:{self.namespace}:{identifier}"

    def get(self, identifier: Any) -> Optional[Any]:
        try:
            return self.backend.get(self.cache_key(identifier))
        except Exception as e:
            logger.error(f"Cache read failed for {self.namespace}:{identifier}: {e}")
            return None

    def set(self, identifier: Any, value: Any) -> None:
        try:
            self.backend.set(self.cache_key(identifier), value, self.ttl)
        except Exception as e:
            logger.error(f"Cache write failed for {self.namespace}:{identifier}: {e}")

    def get_or_load(self, identifier: Any, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling ``loader`` on a miss. ``None`` results are not cached."""
        value = self.get(identifier)
        if value is not None:
            logger.debug(f"CACHE HIT: {self.namespace}:{identifier}")
            return value

        logger.debug(f"CACHE MISS: {self.namespace}:{identifier}")
        value = loader()
        if value is not None:
            self.set(identifier, value)
        return value

    def invalidate(self, identifier: Any = None) -> None:
        """Drop one entry, or the whole namespace when ``identifier`` is None."""
        try:
            if identifier is not None:
                self.backend.delete(self.cache_key(identifier))
            elif hasattr(self.backend, "delete_pattern"):
                deleted = self.backend.delete_pattern(f"v{self.version}:{self.namespace}:*")
                logger.info(f"Invalidated {deleted} keys in namespace '{self.namespace}'")
            else:
                # Backends without pattern support (locmem) are cleared wholesale
                self.backend.clear()
                logger.info(f"Cleared cache alias '{self.alias}' for namespace '{self.namespace}'")
        except Exception as e:
            logger.error(f"Cache invalidation failed for {self.namespace}:{identifier}: {e}")
