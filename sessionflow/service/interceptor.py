from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Tuple

from sessionflow.logging import get_logger
from sessionflow.service.errors import QueueRedirectError
from sessionflow.service.queue import QUEUED, CommandQueue, StepView
from sessionflow.service.routines import as_exception


@dataclass(frozen=True)
class RecoveryPlan:
    redirect_to: int
    skip: Tuple[int, ...]


def plan_recovery(
    steps: Sequence[StepView],
    failed_index: int,
    resume_step_id: Optional[str],
) -> Optional[RecoveryPlan]:
    """Decide how the queue continues after a recoverable failure.

    Every pending step between the failure and the resume step is skipped,
    except steps flagged ``always_run``; those run first. Returns None
    (skip nothing, fail) when the resume step is unknown or does not lie
    ahead of the failure.
    """
    if resume_step_id is None:
        return None
    resume_index = next(
        (i for i, step in enumerate(steps) if step.id == resume_step_id), -1
    )
    if resume_index <= failed_index:
        return None
    pending = [i for i in range(failed_index + 1, resume_index) if steps[i].state == QUEUED]
    skip = tuple(i for i in pending if not steps[i].always_run)
    kept = [i for i in pending if steps[i].always_run]
    return RecoveryPlan(redirect_to=kept[0] if kept else resume_index, skip=skip)


class QueueFailureInterceptor:
    """Queue-level failure handler scoped to one session step group.

    While installed, any failing step is routed here. Recoverable failures
    are turned into a QueueRedirectError pointing at the resume step; the
    rest, and recoverable ones with no resume step ahead, are passed to
    ``on_fatal`` and fail the queue.
    """

    def __init__(
        self,
        queue: CommandQueue,
        *,
        recoverable: bool,
        on_fatal: Callable[[BaseException], BaseException],
        on_recovered: Optional[Callable[[BaseException], BaseException]] = None,
        within_subject: Any = None,
    ) -> None:
        self.queue = queue
        self.recoverable = recoverable
        self.on_fatal = on_fatal
        self.on_recovered = on_recovered
        self.within_subject = within_subject
        self.resume_step_id: Optional[str] = None
        self.caught: Optional[BaseException] = None
        self.logger = get_logger(__name__)

    @property
    def installed(self) -> bool:
        return self.queue.failure_handler == self.handle

    def install(self) -> None:
        self.queue.set_failure_handler(self.handle)

    def uninstall(self) -> None:
        if self.installed:
            self.queue.clear_failure_handler()

    def handle(self, err: Any, queue: CommandQueue) -> BaseException:
        self.uninstall()
        error = as_exception(err)
        if not self.recoverable:
            return self.on_fatal(error)

        plan = plan_recovery(queue.snapshot(), queue.index, self.resume_step_id)
        if plan is None:
            self.logger.warning(
                "queue_recovery_unplanned",
                failed_index=queue.index,
                resume_step_id=self.resume_step_id,
                error=str(error),
            )
            return self.on_fatal(error)

        recovered = self.on_recovered(error) if self.on_recovered else error
        self.caught = recovered
        return QueueRedirectError(
            recovered,
            redirect_to=plan.redirect_to,
            skip=plan.skip,
            within_subject=self.within_subject,
        )
