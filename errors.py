"""
CheckOnMe error taxonomy

Every failure the check-in subsystem reports is a CheckInError carrying a short
machine `code`. app.py maps codes to HTTP statuses; the reconciler logs and moves on.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional


class CheckInError(Exception):
    code = "checkin_error"

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        out = {"ok": False, "error": self.code, "message": self.message}
        out.update(self.extra)
        return out


class ValidationError(CheckInError):
    """Malformed create/edit input. Never retried automatically."""
    code = "validation_error"

    def __init__(self, problems: List[str]):
        super().__init__("; ".join(problems), problems=list(problems))
        self.problems = list(problems)


class InvalidFormat(CheckInError):
    """Submitted code is not exactly 4 ASCII digits. Does not consume an attempt."""
    code = "invalid_format"


class CodeMismatch(CheckInError):
    code = "code_mismatch"

    def __init__(self, attempts_remaining: int, message: str = ""):
        msg = message or (
            f"Wrong code. You have {attempts_remaining} attempt"
            f"{'' if attempts_remaining == 1 else 's'} remaining."
        )
        super().__init__(msg, attempts_remaining=attempts_remaining)
        self.attempts_remaining = attempts_remaining


class AttemptsExhausted(CodeMismatch):
    """Last attempt used; the check-in has been escalated."""
    code = "attempts_exhausted"

    def __init__(self, checkin: Any = None):
        super().__init__(
            0, "Maximum attempts exceeded. Emergency contacts will be notified immediately."
        )
        self.checkin = checkin
        status = getattr(checkin, "status", None)
        if status:
            self.extra["status"] = status


class AlreadyResolved(CheckInError):
    """The record left scheduled/active before this request landed. Refresh state."""
    code = "already_resolved"

    def __init__(self, status: str, message: str = ""):
        super().__init__(message or f"Check-in is already {status}", status=status)
        self.status = status


class DeadlinePassed(CheckInError):
    code = "deadline_passed"


class InvalidTransition(CheckInError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move check-in from {current} to {target}", status=current, target=target)
        self.current = current
        self.target = target


class NotFound(CheckInError):
    code = "not_found"


class PermissionDenied(CheckInError):
    """Device/platform declined local alerts. The record stays valid (manual confirmation only)."""
    code = "permission_denied"


class StoreUnavailable(CheckInError):
    """Transient persistence failure; caller retries (UI retry or next sweep)."""
    code = "store_unavailable"

    def __init__(self, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message or "Record store unavailable, please retry", retryable=True)
        self.cause = cause
