from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from sessionflow.logging import display_session_id, get_logger
from sessionflow.service.errors import ValidationFailure
from sessionflow.service.interceptor import QueueFailureInterceptor
from sessionflow.service.queue import CommandQueue, Step
from sessionflow.service.routines import Outcome, Pending, Rejected, invoke
from sessionflow.service.states import (
    VALIDATE_STEP_NAME,
    SessionPhase,
    ValidationOutcome,
)
from sessionflow.storage.models import SessionRecord

RESUME_STEP_NAME = "validate-resume"


@dataclass
class ValidationHandle:
    """Filled in by the queued validation steps once they have run."""

    session_id: str
    phase: SessionPhase
    is_valid: Optional[bool] = None
    outcome: Optional[ValidationOutcome] = None
    error: Optional[ValidationFailure] = None
    result: Optional[Outcome] = None
    # value an awaitable routine resolved to; rejected when it raised instead
    resolved: Any = None
    rejected: bool = False
    resume_step: Optional[Step] = None


class ValidationRunner:
    """Runs a record's validate routine as queued steps.

    Two steps are queued: one calls the routine with a failure interceptor
    installed, the other (the resume step) uninstalls it and reduces the
    routine's result to valid / invalid / errored. Anything the routine
    chains onto the queue runs between the two.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)

    def enqueue(
        self,
        record: SessionRecord,
        phase: SessionPhase,
        queue: CommandQueue,
        *,
        origin: Optional[Step] = None,
        on_fatal: Optional[Callable[[ValidationFailure], None]] = None,
    ) -> ValidationHandle:
        handle = ValidationHandle(session_id=record.id, phase=phase)
        if record.validate is None:
            handle.is_valid = True
            handle.outcome = ValidationOutcome.VALID
            return handle

        validate = record.validate
        within_subject = origin.meta.get("within_subject") if origin is not None else None
        interceptor = QueueFailureInterceptor(
            queue,
            recoverable=phase is SessionPhase.RESTORE,
            on_fatal=lambda err: self._fatal(handle, err, origin, on_fatal),
            on_recovered=lambda err: self._recovered(handle, err, origin),
            within_subject=within_subject,
        )

        async def run_validate(_subject):
            interceptor.install()
            handle.result = invoke(validate)
            if isinstance(handle.result, Rejected):
                raise handle.result.error
            if isinstance(handle.result, Pending):
                try:
                    handle.resolved = await handle.result.awaitable
                except Exception:
                    handle.rejected = True
                    raise
            return None

        async def resume(_subject):
            interceptor.uninstall()
            if interceptor.caught is not None:
                return None
            return await self._evaluate(handle, queue, origin, on_fatal)

        queue.enqueue(run_validate, name=VALIDATE_STEP_NAME)
        handle.resume_step = queue.enqueue(resume, name=RESUME_STEP_NAME)
        interceptor.resume_step_id = handle.resume_step.id
        return handle

    async def _evaluate(
        self,
        handle: ValidationHandle,
        queue: CommandQueue,
        origin: Optional[Step],
        on_fatal: Optional[Callable[[ValidationFailure], None]],
    ) -> None:
        outcome = handle.result
        if isinstance(outcome, Pending):
            if handle.resolved is False:
                return self._fail(
                    handle,
                    "promise resolved false",
                    origin,
                    on_fatal,
                    ValidationOutcome.INVALID,
                )
        elif outcome is not None and (outcome.value is None or isinstance(outcome.value, Step)):
            current = queue.current
            previous = current.prev if current is not None else None
            if previous is not None and previous.subject is False:
                return self._fail(
                    handle,
                    "callback yielded false",
                    origin,
                    on_fatal,
                    ValidationOutcome.INVALID,
                )
        handle.is_valid = True
        handle.outcome = ValidationOutcome.VALID
        return None

    def _fail(
        self,
        handle: ValidationHandle,
        err: Union[BaseException, str],
        origin: Optional[Step],
        on_fatal: Optional[Callable[[ValidationFailure], None]],
        outcome: ValidationOutcome,
    ) -> None:
        handle.outcome = outcome
        if handle.phase is SessionPhase.RESTORE:
            self._recovered(handle, err, origin)
            return None
        raise self._fatal(handle, err, origin, on_fatal)

    def _recovered(
        self,
        handle: ValidationHandle,
        err: Union[BaseException, str],
        origin: Optional[Step],
    ) -> ValidationFailure:
        reason = _reason(handle, err)
        failure = ValidationFailure(
            f"{_describe(err)}\n\nThis error occurred while validating the restored session. "
            "Because validation failed, we will try to recreate the session.",
            phase=handle.phase.complete,
            reason=reason,
            recovered=True,
            origin=origin,
        )
        if isinstance(err, BaseException):
            failure.__cause__ = err
        handle.is_valid = False
        handle.outcome = handle.outcome or ValidationOutcome.ERRORED
        handle.error = failure
        self.logger.warning(
            "session_validation_recovered",
            session_id=display_session_id(handle.session_id),
            outcome=handle.outcome.value,
            error=_describe(err),
        )
        return failure

    def _fatal(
        self,
        handle: ValidationHandle,
        err: Union[BaseException, str],
        origin: Optional[Step],
        on_fatal: Optional[Callable[[ValidationFailure], None]],
    ) -> ValidationFailure:
        reason = _reason(handle, err)
        failure = ValidationFailure(
            f"{_describe(err)}\n\nThis error occurred while validating the "
            f"{handle.phase.complete} session. Because validation failed immediately after "
            f"{handle.phase.in_progress} the session, we failed the test.",
            phase=handle.phase.complete,
            reason=reason,
            origin=origin,
        )
        if isinstance(err, BaseException):
            failure.__cause__ = err
        handle.is_valid = False
        handle.outcome = handle.outcome or ValidationOutcome.ERRORED
        handle.error = failure
        self.logger.error(
            "session_validation_failed",
            session_id=display_session_id(handle.session_id),
            phase=handle.phase.value,
            outcome=handle.outcome.value,
            error=_describe(err),
        )
        if on_fatal is not None:
            on_fatal(failure)
        return failure


def _reason(handle: ValidationHandle, err: Union[BaseException, str]) -> Optional[str]:
    if isinstance(err, str):
        return err
    if handle.rejected:
        return f"promise rejected with {err}"
    return None


def _describe(err: Union[BaseException, str]) -> str:
    if isinstance(err, str):
        return f"The session validate routine {err}."
    return str(err) or type(err).__name__
