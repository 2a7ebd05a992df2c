"""
Lazy access to the ``POS_ENGINE`` settings block and the pluggable collaborators
it names (voucher backend, PIN verifier).
"""
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils.module_loading import import_string
import logging

logger = logging.getLogger(__name__)

DEFAULTS = {
    "CURRENCY": "VND",
    "COLLABORATOR_TIMEOUT": 5.0,
    "MENU_CACHE_ALIAS": "menu",
    "MENU_CACHE_TTL": 300,
    "VOUCHER_BACKEND": "discounts.vouchers.LocalVoucherBackend",
    "VOUCHER_SERVICE_URL": "",
    "PIN_VERIFIER": "approvals.pin.LocalPinVerifier",
    "PIN_SERVICE_URL": "",
    "SHIFT_HISTORY_LIMIT": 20,
}


class EngineSettings:
    """
    A LAZY singleton wrapping ``settings.POS_ENGINE``.

    Values are read on every access so ``override_settings`` in tests is honoured.
    """

    _instance: Optional["EngineSettings"] = None

    def __new__(cls) -> "EngineSettings":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def _user_settings(self) -> Dict[str, Any]:
        return getattr(settings, "POS_ENGINE", {}) or {}

    def __getattr__(self, name: str) -> Any:
        if name not in DEFAULTS:
            raise AttributeError(f"'EngineSettings' object has no attribute '{name}'")
        return self._user_settings().get(name, DEFAULTS[name])

    def load_collaborator(self, name: str):
        """Instantiate the collaborator class whose dotted path is stored under ``name``."""
        path = getattr(self, name)
        logger.debug(f"Loading collaborator {name} from {path}")
        return import_string(path)()


engine_settings = EngineSettings()
