import uuid

from django.db import models
from django.utils.translation import gettext_lazy as _


class Table(models.Model):
    class TableStatus(models.TextChoices):
        AVAILABLE = "AVAILABLE", _("Available")
        OCCUPIED = "OCCUPIED", _("Occupied")

    number = models.PositiveIntegerField(unique=True)
    name = models.CharField(max_length=100, blank=True)
    status = models.CharField(
        max_length=20, choices=TableStatus.choices, default=TableStatus.AVAILABLE
    )
    is_virtual = models.BooleanField(
        default=False,
        help_text=_("Non-physical table reused for takeaway and retail orders."),
    )

    class Meta:
        ordering = ["number"]

    def __str__(self):
        return self.name or f"Table {self.number}"


class TableSession(models.Model):
    """One party's occupancy of a table, from seating to departure."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    table = models.ForeignKey(Table, on_delete=models.PROTECT, related_name="sessions")
    session_token = models.CharField(max_length=64, unique=True)
    started_at = models.DateTimeField(auto_now_add=True)
    ended_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-started_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["table"],
                condition=models.Q(ended_at__isnull=True),
                name="unique_active_session_per_table",
            ),
        ]

    def __str__(self):
        return f"Session {self.id} @ {self.table}"

    @property
    def is_active(self):
        return self.ended_at is None
