from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sessionflow.logging import display_session_id, get_logger, log_session_trace
from sessionflow.service.errors import SessionError, SetupFailure, ValidationFailure
from sessionflow.service.interceptor import QueueFailureInterceptor
from sessionflow.service.queue import CommandQueue, Step
from sessionflow.service.routines import invoke, settle
from sessionflow.service.states import (
    ALLOWED_TRANSITIONS,
    STATUS_FAILED,
    TERMINAL_STATES,
    SessionPhase,
    SessionState,
)
from sessionflow.service.validation import ValidationRunner
from sessionflow.storage.common import BrowserBridge, SessionStore
from sessionflow.storage.models import SessionRecord, StoredSession


@dataclass
class SessionRun:
    """Progress of one session command through the lifecycle."""

    record: SessionRecord
    origin: Optional[Step] = None
    state: SessionState = SessionState.RESOLVING
    status: Optional[str] = None
    trace: List[Dict[str, Any]] = field(default_factory=list)
    recovered_errors: List[SessionError] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def completed(self) -> bool:
        return self.state is SessionState.COMPLETED

    @property
    def failed(self) -> bool:
        return self.state is SessionState.FAILED


class WorkflowEngine:
    """Drives create / restore / validate / recreate for session commands.

    Every branch is expressed as steps appended to the caller's command
    queue, so setup and validation routines can chain their own steps and
    everything runs in program order.
    """

    def __init__(
        self,
        store: SessionStore,
        browser: BrowserBridge,
        *,
        validator: Optional[ValidationRunner] = None,
    ) -> None:
        self.store = store
        self.browser = browser
        self.validator = validator or ValidationRunner()
        self.logger = get_logger(__name__)

    def start(self, record: SessionRecord, queue: CommandQueue) -> SessionRun:
        """Queue the session command for ``record`` and return its run handle."""
        run = SessionRun(record=record)
        run.origin = queue.enqueue(
            lambda _subject: self._resolve(run, queue), name="session", parent=True
        )
        run.origin.meta["session_id"] = record.id
        run.trace.append({"state": SessionState.RESOLVING.value, "at": _now()})
        return run

    async def _resolve(self, run: SessionRun, queue: CommandQueue) -> None:
        record = run.record
        run.origin.meta["within_subject"] = queue.within_subject
        self.logger.info(
            "session_started",
            session_id=display_session_id(record.id),
            hydrated=record.hydrated,
            cache_across_specs=record.cache_across_specs,
        )
        if not record.hydrated:
            stored = await self._lookup(record)
            if stored is not None and stored.setup_fingerprint == record.setup_fingerprint:
                record.adopt(stored)
            else:
                if stored is not None:
                    self.logger.info(
                        "saved_session_stale",
                        session_id=display_session_id(record.id),
                    )
                self._create_workflow(run, queue, SessionPhase.CREATE)
                return None
        self._restore_workflow(run, queue)
        return None

    async def _lookup(self, record: SessionRecord) -> Optional[StoredSession]:
        try:
            return await self.store.get(record.id)
        except Exception as exc:
            self.logger.warning(
                "saved_session_lookup_failed",
                session_id=display_session_id(record.id),
                error=str(exc),
            )
            return None

    def _create_workflow(
        self, run: SessionRun, queue: CommandQueue, phase: SessionPhase
    ) -> None:
        record = run.record
        self._transition(run, SessionState.CREATING, phase=phase.value)
        interceptor = QueueFailureInterceptor(
            queue,
            recoverable=False,
            on_fatal=lambda err: self._setup_failed(run, phase, err),
        )

        async def clear(_subject):
            self._set_status(run, phase.in_progress)
            await self.browser.navigate_blank()
            await self.store.clear_current()

        async def setup(_subject):
            interceptor.install()
            await settle(invoke(record.setup))
            return None

        async def capture(_subject):
            interceptor.uninstall()
            await self.browser.navigate_blank()
            record.captured_state = await self.browser.capture()
            await self.store.save(record)
            record.hydrated = True
            self.logger.info(
                "session_captured",
                session_id=display_session_id(record.id),
                summary=record.summary(),
            )
            self._transition(run, SessionState.VALIDATING, phase=phase.value)

        queue.enqueue(self._guarded(run, clear), name=phase.step_name)
        queue.enqueue(setup, name="setup")
        queue.enqueue(self._guarded(run, capture), name="capture")
        validation = self.validator.enqueue(
            record,
            phase,
            queue,
            origin=run.origin,
            on_fatal=lambda failure: self._fail(run, failure),
        )

        def finish(_subject):
            if not validation.is_valid:
                raise ValidationFailure(
                    f"session '{record.id}' is not valid after {phase.in_progress} it",
                    phase=phase.complete,
                    origin=run.origin,
                )
            self._set_status(run, phase.complete)
            self._complete(run)

        queue.enqueue(self._guarded(run, finish), name="session-finish")

    def _restore_workflow(self, run: SessionRun, queue: CommandQueue) -> None:
        record = run.record
        phase = SessionPhase.RESTORE
        self._transition(run, SessionState.RESTORING)

        async def restore(_subject):
            self._set_status(run, phase.in_progress)
            await self.browser.navigate_blank()
            await self.store.clear_current()
            await self.browser.apply(record.captured_state or {})
            self.logger.info(
                "session_applied",
                session_id=display_session_id(record.id),
                summary=record.summary(),
            )
            self._transition(run, SessionState.VALIDATING, phase=phase.value)

        queue.enqueue(self._guarded(run, restore), name=phase.step_name)
        validation = self.validator.enqueue(
            record,
            phase,
            queue,
            origin=run.origin,
            on_fatal=lambda failure: self._fail(run, failure),
        )

        def finish(_subject):
            if not validation.is_valid:
                if validation.error is not None:
                    run.recovered_errors.append(validation.error)
                self._transition(run, SessionState.RECREATING)
                self._create_workflow(run, queue, SessionPhase.RECREATE)
                return None
            self._set_status(run, phase.complete)
            self._complete(run)
            return None

        queue.enqueue(self._guarded(run, finish), name="session-finish")

    def _guarded(
        self, run: SessionRun, fn: Callable[[Any], Any]
    ) -> Callable[[Any], Awaitable[Any]]:
        """Wrap an engine step so any failure moves the run to Failed."""

        async def step(subject):
            try:
                result = fn(subject)
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception as exc:
                if isinstance(exc, SessionError) and exc.origin is None:
                    exc.origin = run.origin
                self._fail(run, exc)
                raise

        return step

    def _setup_failed(
        self, run: SessionRun, phase: SessionPhase, err: BaseException
    ) -> SetupFailure:
        failure = SetupFailure(
            f"{err}\n\nThis error occurred while {phase.in_progress} the session. "
            "Because the session setup failed, we failed the test.",
            phase=phase.value,
            origin=run.origin,
        )
        failure.__cause__ = err
        self._fail(run, failure)
        return failure

    def _fail(self, run: SessionRun, err: BaseException) -> None:
        if run.state in TERMINAL_STATES:
            return
        run.error = err
        self._set_status(run, STATUS_FAILED)
        self._transition(run, SessionState.FAILED, error=str(err).splitlines()[0] if str(err) else "")
        self.logger.error(
            "session_failed",
            session_id=display_session_id(run.record.id),
            error_code=getattr(err, "error_code", type(err).__name__),
            phase=getattr(err, "phase", None),
            origin=run.origin.name if run.origin else None,
        )
        log_session_trace(run.trace, self.logger)

    def _complete(self, run: SessionRun) -> None:
        self._transition(run, SessionState.COMPLETED, status=run.status)
        self.logger.info(
            "session_completed",
            session_id=display_session_id(run.record.id),
            status=run.status,
            recovered=len(run.recovered_errors),
        )
        log_session_trace(run.trace, self.logger)

    def _set_status(self, run: SessionRun, status: str) -> None:
        run.status = status
        run.record.status = status

    def _transition(self, run: SessionRun, new_state: SessionState, **info: Any) -> None:
        old_state = run.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"illegal session transition {old_state.value} -> {new_state.value}"
            )
        run.state = new_state
        entry = {"state": new_state.value, "from": old_state.value, "at": _now(), **info}
        run.trace.append(entry)
        self.logger.info(
            "session_state_transition",
            session_id=display_session_id(run.record.id),
            from_state=old_state.value,
            to_state=new_state.value,
            **info,
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
