from __future__ import annotations

import inspect
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sessionflow.logging import get_logger
from sessionflow.service.errors import QueueRedirectError

# Handler consulted when a step raises. Returning a QueueRedirectError
# resumes the queue elsewhere; returning any other exception fails the run.
FailureHandler = Callable[[BaseException, "CommandQueue"], BaseException]

QUEUED = "queued"
RUNNING = "running"
PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"
RECOVERED = "recovered"


def _step_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(eq=False)
class Step:
    """A queued command.

    ``fn`` receives the current subject; a non-None return value (other than
    another Step) becomes the subject yielded to the next step.
    """

    name: str
    fn: Callable[[Any], Any]
    id: str = field(default_factory=_step_id)
    always_run: bool = False
    parent: bool = False
    state: str = QUEUED
    subject: Any = None
    prev: Optional["Step"] = None
    error: Optional[BaseException] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def view(self) -> "StepView":
        return StepView(id=self.id, name=self.name, state=self.state, always_run=self.always_run)


@dataclass(frozen=True)
class StepView:
    """Immutable description of a step handed to failure planners."""

    id: str
    name: str
    state: str
    always_run: bool = False


class CommandQueue:
    """Single logical execution queue shared by a test and its sessions.

    Steps enqueued while another step runs are inserted right after it, in
    the order they were enqueued, so nested routines run before whatever was
    already scheduled. The cursor only ever moves forward.
    """

    def __init__(self, ctx: Optional[Dict[str, Any]] = None) -> None:
        self.logger = get_logger(__name__)
        self.steps: List[Step] = []
        self.index = 0
        self.subject: Any = None
        self.within_subject: Any = None
        self.ctx: Dict[str, Any] = ctx if ctx is not None else {}
        self.current: Optional[Step] = None
        self.recovered: List[QueueRedirectError] = []
        self._on_failure: Optional[FailureHandler] = None
        self._insert_at: Optional[int] = None
        self._last_ran: Optional[Step] = None
        self._aborted = False

    def enqueue(
        self,
        fn: Callable[[Any], Any],
        *,
        name: str = "then",
        always_run: bool = False,
        parent: bool = False,
    ) -> Step:
        step = Step(name=name, fn=fn, always_run=always_run, parent=parent)
        if self._insert_at is None:
            self.steps.append(step)
        else:
            self.steps.insert(self._insert_at, step)
            self._insert_at += 1
        return step

    def then(self, fn: Callable[[Any], Any], *, name: str = "then") -> Step:
        return self.enqueue(fn, name=name)

    def wrap(self, value: Any, *, name: str = "wrap") -> Step:
        return self.enqueue(lambda _subject: value, name=name)

    @property
    def failure_handler(self) -> Optional[FailureHandler]:
        return self._on_failure

    def set_failure_handler(self, handler: FailureHandler) -> None:
        self._on_failure = handler

    def clear_failure_handler(self) -> None:
        self._on_failure = None

    def snapshot(self) -> Tuple[StepView, ...]:
        return tuple(step.view() for step in self.steps)

    def index_of(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    def skip(self, index: int) -> None:
        step = self.steps[index]
        if step.state == QUEUED:
            step.state = SKIPPED

    def abort(self) -> None:
        """Stop after the current step and drop any installed failure handler."""
        self._aborted = True
        self.clear_failure_handler()

    async def run(self) -> Any:
        """Execute queued steps until the queue drains, fails or is aborted."""
        self._aborted = False
        try:
            while self.index < len(self.steps) and not self._aborted:
                step = self.steps[self.index]
                if step.state == SKIPPED:
                    self.index += 1
                    continue
                await self._run_step(step)
        finally:
            # a handler must never outlive the run that installed it
            self.clear_failure_handler()
            self.current = None
            self._insert_at = None
        return self.subject

    async def _run_step(self, step: Step) -> None:
        self.current = step
        step.prev = self._last_ran
        step.state = RUNNING
        self._insert_at = self.index + 1
        if step.parent:
            self.subject = None
        try:
            result = step.fn(self.subject)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            step.state = FAILED
            step.error = exc
            self._insert_at = None
            handler = self._on_failure
            if handler is None:
                raise
            decision = handler(exc, self)
            if isinstance(decision, QueueRedirectError):
                step.state = RECOVERED
                self._last_ran = step
                self._apply_redirect(step, decision)
                return
            if decision is exc:
                raise
            raise decision from exc
        self._insert_at = None
        if result is not None and not isinstance(result, Step):
            self.subject = result
        step.subject = self.subject
        step.state = PASSED
        self._last_ran = step
        self.index += 1

    def _apply_redirect(self, failed: Step, redirect: QueueRedirectError) -> None:
        if not self.index < redirect.redirect_to < len(self.steps):
            # never rewind or jump past the end; fail with the original error
            raise redirect.cause
        for i in redirect.skip:
            self.skip(i)
        self.within_subject = redirect.within_subject
        self.recovered.append(redirect)
        self.logger.info(
            "queue_failure_recovered",
            failed_step=failed.name,
            resume_step=self.steps[redirect.redirect_to].name,
            skipped=len(redirect.skip),
            error=str(redirect.cause),
        )
        self.index = redirect.redirect_to
