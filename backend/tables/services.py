import secrets
import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from core_backend.exceptions import ConflictError, NotFoundError, ValidationError
from .models import Table, TableSession

logger = logging.getLogger(__name__)


class TableService:
    """Table occupancy: opening and closing sessions."""

    @staticmethod
    @transaction.atomic
    def open_session(table: Table) -> TableSession:
        """
        Seat a party at ``table``.

        Raises:
            ConflictError: SESSION_EXISTS if the table already has an active session
        """
        table = Table.objects.select_for_update().get(pk=table.pk)
        if TableSession.objects.filter(table=table, ended_at__isnull=True).exists():
            raise ConflictError("SESSION_EXISTS", f"{table} already has an active session", table_id=table.pk)

        try:
            with transaction.atomic():
                session = TableSession.objects.create(
                    table=table, session_token=secrets.token_hex(16)
                )
        except IntegrityError:
            raise ConflictError("SESSION_EXISTS", f"{table} already has an active session", table_id=table.pk)

        logger.info(f"Opened session {session.id} on {table}")
        return session

    @staticmethod
    def active_session(table: Table):
        return TableSession.objects.filter(table=table, ended_at__isnull=True).first()

    @staticmethod
    def session_by_token(token: str) -> TableSession:
        session = TableSession.objects.select_related("table").filter(
            session_token=token, ended_at__isnull=True
        ).first()
        if session is None:
            raise NotFoundError("SESSION_NOT_FOUND", "No active session for this token")
        return session

    @staticmethod
    def mark_occupied(table: Table) -> None:
        if not table.is_virtual and table.status != Table.TableStatus.OCCUPIED:
            Table.objects.filter(pk=table.pk).update(status=Table.TableStatus.OCCUPIED)
            table.status = Table.TableStatus.OCCUPIED
            logger.info(f"{table} is now occupied")

    @staticmethod
    @transaction.atomic
    def close_session(session: TableSession) -> TableSession:
        """
        End a session explicitly.

        Raises:
            ValidationError: NO_SESSION if already closed; UNPAID_ORDERS if orders are still open
        """
        from orders.models import Order

        session = TableSession.objects.select_for_update().get(pk=session.pk)
        if session.ended_at is not None:
            raise ValidationError("NO_SESSION", "Session is already closed")
        if Order.objects.filter(table_session=session, status__in=Order.ACTIVE_STATUSES).exists():
            raise ValidationError("UNPAID_ORDERS", "Session still has unpaid orders", session_id=session.pk)

        TableService._end(session)
        return session

    @staticmethod
    def release_if_settled(session: TableSession) -> bool:
        """
        Close ``session`` and free its table once no active orders remain.

        Must run inside the caller's transaction. Returns True when the session was closed.
        """
        from orders.models import Order

        if session is None or session.ended_at is not None:
            return False
        if Order.objects.filter(table_session=session, status__in=Order.ACTIVE_STATUSES).exists():
            return False

        TableService._end(session)
        return True

    @staticmethod
    def _end(session: TableSession) -> None:
        session.ended_at = timezone.now()
        session.save(update_fields=["ended_at"])
        Table.objects.filter(pk=session.table_id).update(status=Table.TableStatus.AVAILABLE)
        logger.info(f"Closed session {session.id}, table {session.table_id} available")
