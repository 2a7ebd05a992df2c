from typing import Any, Optional
import logging

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
import json

from .models import AuditLog

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    """Round-trip through DjangoJSONEncoder so Decimals, UUIDs and datetimes store cleanly."""
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


class AuditService:
    """Fire-and-forget audit trail."""

    @staticmethod
    def append(
        actor,
        action: str,
        target,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
        reason: str = "",
        ip_address: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """
        Record an audit entry for ``target``.

        ``target`` is either a model instance or a ``(target_type, target_id)``
        tuple. The write happens inside a savepoint so a failure here never
        rolls back the financial mutation being described; errors are logged
        and ``None`` is returned.
        """
        try:
            if isinstance(target, tuple):
                target_type, target_id = target
            else:
                target_type, target_id = target._meta.model_name, target.pk

            with transaction.atomic():
                entry = AuditLog.objects.create(
                    actor=actor if getattr(actor, "pk", None) else None,
                    action=action,
                    target_type=target_type,
                    target_id=str(target_id),
                    old_value=_jsonable(old_value),
                    new_value=_jsonable(new_value),
                    reason=reason or "",
                    ip_address=ip_address,
                )
            logger.debug(f"Audit: {action} on {target_type}:{target_id}")
            return entry
        except Exception as e:
            logger.error(f"Failed to write audit entry '{action}': {e}")
            return None

    @staticmethod
    def entries_for(target_type: str, target_id):
        return AuditLog.objects.filter(target_type=target_type, target_id=str(target_id))
