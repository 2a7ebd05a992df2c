"""
Domain exceptions for the POS transaction engine.

Every error carries a stable machine-readable ``code`` (e.g. ``ITEM_LOCKED``)
plus whatever context the caller needs to drive a follow-up flow, such as the
approval challenge attached to ``PIN_REQUIRED``.
"""


class POSError(Exception):
    """Base exception for all engine errors."""

    default_message = "Point of sale operation failed"

    def __init__(self, code, message=None, **context):
        self.code = code
        self.message = message or self.default_message
        self.context = context
        super().__init__(f"{code}: {self.message}")

    def to_dict(self):
        return {
            "code": self.code,
            "message": self.message,
            "type": self.__class__.__name__,
            **{k: str(v) for k, v in self.context.items()},
        }


class ValidationError(POSError):
    """Bad shape or range. Raised before any mutation happens."""

    default_message = "Invalid request"


class AuthorizationError(POSError):
    """
    The operation needs elevated authorization.

    Callers should prompt for a manager PIN rather than treat this as fatal.
    ``challenge`` is set when a ManagerApprovalRequest was opened for the retry.
    """

    default_message = "Manager authorization required"

    def __init__(self, code, message=None, challenge=None, **context):
        self.challenge = challenge
        if challenge is not None:
            context.setdefault("challenge_id", challenge.id)
        super().__init__(code, message, **context)


class ConflictError(POSError):
    """State conflict that needs an explicit resolution; never retried silently."""

    default_message = "Conflicting state"


class NotFoundError(POSError):
    default_message = "Record not found"


class CollaboratorFailure(POSError):
    """An external collaborator (voucher, PIN, realtime, audit) failed."""

    default_message = "External collaborator failed"
    retryable = False


class CollaboratorTimeout(CollaboratorFailure):
    default_message = "External collaborator timed out, try again"
    retryable = True
