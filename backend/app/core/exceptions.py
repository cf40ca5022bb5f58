"""
Domain errors raised by the roster, ledger and reconciliation services.

Routes never translate these by hand: the handler registered in app.main turns
any DomainError into a JSON response carrying its status code and error code.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base class for precondition violations surfaced to the caller."""
    status_code = 400
    code = "domain_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.context:
            body["context"] = self.context
        return body


class NotFound(DomainError):
    status_code = 404
    code = "not_found"


class PermissionDenied(DomainError):
    status_code = 403
    code = "permission_denied"


class InvalidTransition(DomainError):
    """Illegal state change on an activity, membership or obligation."""
    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, current: Optional[str], requested: str, reason: Optional[str] = None):
        message = f"Cannot move {entity} from '{current or 'none'}' to '{requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            entity=entity,
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class ValidationFailed(DomainError):
    status_code = 422
    code = "validation_failed"


class BelowMinimum(DomainError):
    status_code = 409
    code = "below_minimum"

    def __init__(self, committed: int, minimum: int):
        super().__init__(
            f"Roster has {committed} committed participants, at least {minimum} required",
            committed=committed,
            minimum=minimum,
        )
        self.committed = committed
        self.minimum = minimum


class AlreadyLocked(DomainError):
    status_code = 409
    code = "already_locked"

    def __init__(self, activity_id: int):
        super().__init__(f"Roster for activity {activity_id} is already locked", activity_id=activity_id)


class NotLocked(DomainError):
    status_code = 409
    code = "not_locked"

    def __init__(self, activity_id: int):
        super().__init__(f"Roster for activity {activity_id} is not locked", activity_id=activity_id)


class ObligationNotPending(DomainError):
    status_code = 409
    code = "obligation_not_pending"

    def __init__(self, obligation_id: int, status: str, requested: str):
        super().__init__(
            f"Obligation {obligation_id} is '{status}', cannot mark it '{requested}'",
            obligation_id=obligation_id,
            status=status,
            requested=requested,
        )
        self.obligation_id = obligation_id
        self.status = status


class ImmutableRecord(DomainError):
    """Raised by ORM guards when a frozen column or append-only row is modified."""
    status_code = 409
    code = "immutable_record"


class ParseFailure(Exception):
    """Inbound notice could not be normalized. Never leaves the reconciliation service."""


class AmbiguousMatch(Exception):
    """More than one obligation fits a notice. Never leaves the reconciliation service."""

    def __init__(self, candidate_ids):
        super().__init__(f"{len(candidate_ids)} candidate obligations")
        self.candidate_ids = list(candidate_ids)
