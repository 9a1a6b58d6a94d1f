from __future__ import annotations

from typing import Any, Optional, Sequence


class SessionError(Exception):
    """Base class for session workflow exceptions.

    Each exception class defines a stable error_code so callers (and the
    structured logs) can classify failures without parsing messages:
    - configuration_error
    - duplicate_session
    - setup_failed
    - validation_failed
    - queue_redirect (internal, never surfaced)

    ``origin`` is the queued session step the failure is attributed to,
    regardless of which internal step actually raised.
    """

    error_code: str = "session_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        origin: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.origin = origin


class ConfigurationError(SessionError):
    """Invalid session id, option key or option value."""
    error_code = "configuration_error"


class DuplicateSessionDefinition(SessionError):
    """Same id redefined within a spec with an incompatible definition."""
    error_code = "duplicate_session"

    def __init__(
        self,
        session_id: str,
        *,
        has_uniq_setup_definition: bool = False,
        has_uniq_validate_definition: bool = False,
        has_uniq_persistence: bool = False,
    ) -> None:
        self.session_id = session_id
        self.has_uniq_setup_definition = has_uniq_setup_definition
        self.has_uniq_validate_definition = has_uniq_validate_definition
        self.has_uniq_persistence = has_uniq_persistence
        reasons = []
        if has_uniq_setup_definition:
            reasons.append("the setup function is different")
        if has_uniq_validate_definition:
            reasons.append("the validate function is different")
        if has_uniq_persistence:
            reasons.append("the cache_across_specs option is different")
        message = (
            f"session '{session_id}' was already defined in this spec with a different "
            "definition. Use a unique id for each distinct session."
        )
        if reasons:
            message += " Conflict: " + "; ".join(reasons) + "."
        super().__init__(
            message,
            detail={
                "id": session_id,
                "has_uniq_setup_definition": has_uniq_setup_definition,
                "has_uniq_validate_definition": has_uniq_validate_definition,
                "has_uniq_persistence": has_uniq_persistence,
            },
        )


class SetupFailure(SessionError):
    """The setup routine raised; creation failures are never recovered."""
    error_code = "setup_failed"

    def __init__(self, message: str, *, phase: str, origin: Any = None) -> None:
        super().__init__(message, detail={"phase": phase}, origin=origin)
        self.phase = phase


class ValidationFailure(SessionError):
    """The validate routine raised, rejected or signalled ``False``."""
    error_code = "validation_failed"

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        reason: Optional[str] = None,
        recovered: bool = False,
        origin: Any = None,
    ) -> None:
        super().__init__(
            message,
            detail={"phase": phase, "reason": reason, "recovered": recovered},
            origin=origin,
        )
        self.phase = phase
        self.reason = reason
        self.recovered = recovered


class QueueRedirectError(SessionError):
    """Message from a failure interceptor telling the queue where to resume.

    The queue never raises this; it applies the redirect and records the
    underlying ``cause`` as a recovered failure.
    """
    error_code = "queue_redirect"

    def __init__(
        self,
        cause: BaseException,
        *,
        redirect_to: int,
        skip: Sequence[int] = (),
        within_subject: Any = None,
    ) -> None:
        super().__init__(
            str(cause),
            detail={"redirect_to": redirect_to, "skip": list(skip)},
            origin=getattr(cause, "origin", None),
        )
        self.cause = cause
        self.redirect_to = redirect_to
        self.skip = tuple(skip)
        self.within_subject = within_subject
        self.__cause__ = cause


__all__ = [
    "SessionError",
    "ConfigurationError",
    "DuplicateSessionDefinition",
    "SetupFailure",
    "ValidationFailure",
    "QueueRedirectError",
]
