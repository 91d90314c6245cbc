from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class StageOpsError(Exception):
    """
    Base class for stage engine failures.

    Services raise these; routers translate them into HTTP responses with a
    `{"code", "message", ...}` detail body.
    """

    status_code = 400
    default_code = "stage_ops_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        payload.update(self.detail)
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class AccessDenied(StageOpsError):
    """Tenant violation. Never retried."""

    status_code = 403
    default_code = "access_denied"


class InsufficientPrivilege(AccessDenied):
    default_code = "insufficient_privilege"


class StageNotFound(StageOpsError):
    status_code = 404
    default_code = "stage_not_found"


class NotAssigned(StageOpsError):
    status_code = 403
    default_code = "not_assigned"


class InvalidTransition(StageOpsError):
    status_code = 409
    default_code = "invalid_transition"


class CapacityExceeded(StageOpsError):
    status_code = 409
    default_code = "capacity_exceeded"

    def __init__(
        self,
        message: str,
        *,
        overflow_action: str,
        retry_eligible: bool,
        max_vehicles: int,
        current_count: int,
        retry_after_seconds: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            detail={
                "overflow_action": overflow_action,
                "retry_eligible": retry_eligible,
                "max_vehicles": max_vehicles,
                "current_count": current_count,
            },
        )
        self.overflow_action = overflow_action
        self.retry_eligible = retry_eligible
        self.max_vehicles = max_vehicles
        self.current_count = current_count
        self.retry_after_seconds = retry_after_seconds

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        if self.retry_eligible and self.retry_after_seconds:
            return {"Retry-After": str(self.retry_after_seconds)}
        return None


class OverlapError(StageOpsError):
    status_code = 409
    default_code = "overlap"

    def __init__(self, message: str, *, conflicting_ids: Iterable[str]) -> None:
        ids = [str(value) for value in conflicting_ids]
        super().__init__(message, detail={"conflicting_ids": ids})
        self.conflicting_ids = ids


class InvalidRule(StageOpsError):
    status_code = 422
    default_code = "invalid_rule"


class InvalidAssignment(StageOpsError):
    status_code = 422
    default_code = "invalid_assignment"


class PersistenceError(StageOpsError):
    """
    Storage failure.

    The write may or may not have landed; callers retrying a write must go
    back through admission so presence is re-checked.
    """

    status_code = 503
    default_code = "persistence_error"


class StageBusy(StageOpsError):
    status_code = 503
    default_code = "stage_busy"

    def __init__(self, message: str, *, retry_after_seconds: int = 1) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after_seconds)}
