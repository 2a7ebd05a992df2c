from django.dispatch import receiver
import logging

from notifications.realtime import RealtimeChannel, Topic
from .signals import approval_request_created, approval_request_resolved

logger = logging.getLogger(__name__)


@receiver(approval_request_created)
def notify_managers_of_challenge(sender, instance, **kwargs):
    """Prompt manager terminals for a PIN when an action needs approval."""
    try:
        RealtimeChannel.publish(
            Topic.POS,
            "approval:requested",
            {
                "challenge_id": str(instance.id),
                "action_type": instance.action_type,
                "order_id": str(instance.order_id) if instance.order_id else None,
                "reason": instance.reason,
                "threshold_value": instance.threshold_value,
                "expires_at": instance.expires_at,
            },
        )
    except Exception as e:
        logger.error(f"Failed to announce approval request {instance.id}: {e}")


@receiver(approval_request_resolved)
def notify_challenge_resolved(sender, instance, outcome, **kwargs):
    try:
        RealtimeChannel.publish(
            Topic.POS,
            "approval:resolved",
            {"challenge_id": str(instance.id), "outcome": outcome},
        )
    except Exception as e:
        logger.error(f"Failed to announce resolution of approval request {instance.id}: {e}")
