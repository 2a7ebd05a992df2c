from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.utils import timezone
from decimal import Decimal
from typing import Dict, Optional
import json
import logging
import secrets

from audit.services import AuditService
from core_backend.config import engine_settings
from core_backend.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from users.models import User
from .models import ManagerApprovalRequest, ApprovalPolicy, ActionType, ApprovalStatus
from .results import NeedsAuthorization
from .signals import approval_request_created, approval_request_resolved

logger = logging.getLogger(__name__)


def canonical_payload(payload: Optional[Dict]) -> Dict:
    """Normalize a payload so a retry with equal values compares equal to the stored one."""
    return json.loads(json.dumps(payload or {}, cls=DjangoJSONEncoder, sort_keys=True))


class AuthorizationService:
    """
    Two-phase authorization for actions beyond a cashier's authority.

    1. ``request_challenge`` opens a PENDING ManagerApprovalRequest.
    2. ``authorize`` verifies a manager PIN and issues a single-use token.
    3. The caller retries the action with the token; the action calls
       ``redeem`` inside its own transaction, so a failed retry leaves the
       token unconsumed.
    """

    @staticmethod
    @transaction.atomic
    def request_challenge(
        action_type: str,
        initiator: Optional[User],
        order=None,
        payload: Optional[Dict] = None,
        reason: str = '',
        threshold_value: Optional[Decimal] = None,
    ) -> ManagerApprovalRequest:
        if action_type not in ActionType.values:
            raise ValidationError("INVALID_ACTION", f"Invalid action_type: {action_type}")

        policy = ApprovalPolicy.get_solo()
        expires_at = timezone.now() + timezone.timedelta(minutes=policy.approval_expiry_minutes)

        challenge = ManagerApprovalRequest.objects.create(
            initiator=initiator if getattr(initiator, 'pk', None) else None,
            action_type=action_type,
            status=ApprovalStatus.PENDING,
            order=order,
            payload=canonical_payload(payload),
            reason=reason or '',
            threshold_value=threshold_value,
            expires_at=expires_at,
        )

        logger.info(
            f"Created approval request {challenge.id} - Action: {action_type}, "
            f"Initiator: {getattr(initiator, 'email', None)}, Expires: {expires_at}"
        )

        approval_request_created.send(sender=ManagerApprovalRequest, instance=challenge, created=True)
        return challenge

    @staticmethod
    def authorize(challenge_id, pin: str) -> str:
        """
        Verify ``pin`` for a pending challenge and return the authorization token.

        The PIN collaborator is consulted before anything is written, so a
        collaborator timeout leaves the challenge untouched and retryable.

        Raises:
            NotFoundError: CHALLENGE_NOT_FOUND
            ConflictError: CHALLENGE_NOT_PENDING
            AuthorizationError: CHALLENGE_EXPIRED, INVALID_PIN, SELF_APPROVAL_NOT_ALLOWED
            CollaboratorTimeout: the PIN service did not answer in time
        """
        AuthorizationService._check_pending(AuthorizationService._get(challenge_id))

        verifier = engine_settings.load_collaborator("PIN_VERIFIER")
        approved_by = verifier.verify(pin)
        if not approved_by:
            logger.warning(f"Invalid PIN for approval request {challenge_id}")
            raise AuthorizationError("INVALID_PIN", "Invalid PIN. Please try again.")
        approver = approved_by if isinstance(approved_by, User) else None

        with transaction.atomic():
            challenge = AuthorizationService._get(challenge_id, lock=True)
            AuthorizationService._check_pending(challenge)

            policy = ApprovalPolicy.get_solo()
            if (
                approver is not None
                and not policy.allow_self_approval
                and challenge.initiator_id == approver.id
            ):
                raise AuthorizationError(
                    "SELF_APPROVAL_NOT_ALLOWED",
                    "Self-approval is not allowed. Another manager must approve this request.",
                )

            now = timezone.now()
            challenge.status = ApprovalStatus.APPROVED
            challenge.approver = approver
            challenge.approved_at = now
            challenge.token = secrets.token_urlsafe(32)
            challenge.token_expires_at = now + timezone.timedelta(minutes=policy.token_ttl_minutes)
            challenge.save(update_fields=['status', 'approver', 'approved_at', 'token', 'token_expires_at'])

            AuditService.append(
                approver,
                'approval_granted',
                challenge,
                new_value={'action_type': challenge.action_type, 'payload': challenge.payload},
                reason=challenge.reason,
            )
            approval_request_resolved.send(sender=ManagerApprovalRequest, instance=challenge, outcome='approved')

        logger.info(
            f"Approved request {challenge.id} - Action: {challenge.action_type}, "
            f"Approver: {getattr(approver, 'email', 'remote')}"
        )
        return challenge.token

    @staticmethod
    @transaction.atomic
    def deny(challenge_id, approver: Optional[User] = None, reason: str = '') -> ManagerApprovalRequest:
        challenge = AuthorizationService._get(challenge_id, lock=True)
        AuthorizationService._check_pending(challenge)

        challenge.status = ApprovalStatus.DENIED
        challenge.approver = approver
        challenge.denied_at = timezone.now()
        challenge.save(update_fields=['status', 'approver', 'denied_at'])

        AuditService.append(approver, 'approval_denied', challenge, reason=reason)
        approval_request_resolved.send(sender=ManagerApprovalRequest, instance=challenge, outcome='denied')
        logger.info(f"Denied request {challenge.id} - Action: {challenge.action_type}")
        return challenge

    @staticmethod
    def redeem(token: str, action_type: str, order=None, payload: Optional[Dict] = None) -> ManagerApprovalRequest:
        """
        Consume ``token`` for exactly this action, order and payload.

        Must be called inside the gated action's transaction.

        Raises:
            AuthorizationError: INVALID_TOKEN when the token is unknown, used,
                expired, or bound to a different action/order/payload
        """
        challenge = (
            ManagerApprovalRequest.objects.select_for_update()
            .filter(token=token)
            .first()
            if token
            else None
        )

        def reject(detail):
            logger.warning(f"Rejected authorization token: {detail}")
            raise AuthorizationError("INVALID_TOKEN", "Authorization token is not valid for this action")

        if challenge is None:
            reject("unknown token")
        if challenge.status != ApprovalStatus.APPROVED:
            reject(f"challenge {challenge.id} is {challenge.status}")
        if challenge.token_expires_at and timezone.now() > challenge.token_expires_at:
            reject(f"challenge {challenge.id} token expired")
        if challenge.action_type != action_type:
            reject(f"challenge {challenge.id} is for {challenge.action_type}, not {action_type}")
        if (order.pk if order is not None else None) != challenge.order_id:
            reject(f"challenge {challenge.id} is bound to another order")
        if canonical_payload(payload) != challenge.payload:
            reject(f"challenge {challenge.id} payload mismatch")

        challenge.status = ApprovalStatus.CONSUMED
        challenge.consumed_at = timezone.now()
        challenge.save(update_fields=['status', 'consumed_at'])
        logger.info(f"Redeemed authorization for {action_type} (request {challenge.id})")
        return challenge

    @staticmethod
    def gate(
        action_type: str,
        user: Optional[User],
        order=None,
        payload: Optional[Dict] = None,
        reason: str = '',
        threshold_value: Optional[Decimal] = None,
        authorization_token: Optional[str] = None,
    ) -> Optional[NeedsAuthorization]:
        """
        Decide whether a gated action may proceed.

        Returns None when it may (token redeemed, or self-approval allowed for
        an elevated user) and ``NeedsAuthorization`` with a fresh challenge
        otherwise. Must run inside the action's transaction.
        """
        if authorization_token:
            AuthorizationService.redeem(authorization_token, action_type, order, payload)
            return None

        policy = ApprovalPolicy.get_solo()
        if user is not None and getattr(user, 'is_elevated', False) and policy.allow_self_approval:
            logger.info(f"Self-approval: {user.email} ({user.role}) proceeds with {action_type}")
            return None

        challenge = AuthorizationService.request_challenge(
            action_type, user, order=order, payload=payload, reason=reason, threshold_value=threshold_value
        )
        return NeedsAuthorization(challenge)

    @staticmethod
    def expire_pending() -> int:
        """Mark every PENDING request past ``expires_at`` as EXPIRED. Returns the count."""
        count = ManagerApprovalRequest.objects.filter(
            status=ApprovalStatus.PENDING, expires_at__lt=timezone.now()
        ).update(status=ApprovalStatus.EXPIRED)
        if count:
            logger.info(f"Marked {count} approval requests as expired")
        return count

    @staticmethod
    def _get(challenge_id, lock=False) -> ManagerApprovalRequest:
        queryset = ManagerApprovalRequest.objects.all()
        if lock:
            queryset = queryset.select_for_update()
        challenge = queryset.filter(id=challenge_id).first()
        if challenge is None:
            raise NotFoundError("CHALLENGE_NOT_FOUND", f"Approval request {challenge_id} not found")
        return challenge

    @staticmethod
    def _check_pending(challenge: ManagerApprovalRequest) -> None:
        if challenge.is_expired:
            raise AuthorizationError(
                "CHALLENGE_EXPIRED",
                f"Approval request has expired. Expired at: {challenge.expires_at}",
            )
        if challenge.status != ApprovalStatus.PENDING:
            raise ConflictError(
                "CHALLENGE_NOT_PENDING",
                f"Approval request cannot be approved. Current status: {challenge.get_status_display()}",
                status=challenge.status,
            )
