"""
PIN verification collaborators.

``verify(code)`` returns the approving user (or a truthy marker for remote
verifiers that don't map to a local user) and ``None``/``False`` when the PIN
doesn't match an elevated staff member. The active verifier is chosen by
``POS_ENGINE['PIN_VERIFIER']``.
"""
import logging

import requests

from core_backend.config import engine_settings
from core_backend.exceptions import CollaboratorFailure, CollaboratorTimeout
from users.models import User

logger = logging.getLogger(__name__)


class LocalPinVerifier:
    """Checks the code against the hashed PINs of active managers and owners."""

    def verify(self, code):
        if not code:
            return None

        candidates = User.objects.filter(
            is_active=True, role__in=User.ELEVATED_ROLES, pin__isnull=False
        ).exclude(pin="")
        for user in candidates:
            if user.check_pin(code):
                logger.info(f"PIN verified for {user.email} ({user.role})")
                return user

        logger.warning("PIN verification failed: no elevated user matches")
        return None


class HttpPinVerifier:
    """
    Delegates to a remote authorization service.

    Expects ``POST <PIN_SERVICE_URL>`` with ``{"pin": code}`` to answer
    ``{"valid": bool, "user_id": int | null}``.
    """

    def __init__(self, url=None, timeout=None):
        self.url = url or engine_settings.PIN_SERVICE_URL
        self.timeout = timeout or engine_settings.COLLABORATOR_TIMEOUT

    def verify(self, code):
        if not code:
            return None

        try:
            response = requests.post(self.url, json={"pin": str(code)}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            logger.warning(f"PIN service timed out after {self.timeout}s: {e}")
            raise CollaboratorTimeout("PIN_SERVICE_TIMEOUT", "PIN verification timed out, try again")
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"PIN service request failed: {e}")
            raise CollaboratorFailure("PIN_SERVICE_UNAVAILABLE", "PIN verification service unavailable")

        if not data.get("valid"):
            return None

        user_id = data.get("user_id")
        if user_id is not None:
            approver = User.objects.filter(pk=user_id, is_active=True).first()
            if approver is not None:
                return approver
        return True
