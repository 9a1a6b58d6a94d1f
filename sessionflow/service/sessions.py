from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from sessionflow.config import Settings
from sessionflow.logging import display_session_id, get_logger
from sessionflow.service.errors import ConfigurationError, DuplicateSessionDefinition
from sessionflow.service.queue import CommandQueue
from sessionflow.service.registry import RunContext
from sessionflow.service.routines import stable_id
from sessionflow.service.workflow import SessionRun, WorkflowEngine
from sessionflow.storage.common import BrowserBridge, SessionStore
from sessionflow.storage.errors import StoreError
from sessionflow.storage.models import SessionRecord


class SessionOptions(BaseModel):
    """Options accepted by ``run_session``; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", strict=True, populate_by_name=False)

    validate_routine: Optional[Callable[..., Any]] = Field(default=None, alias="validate")
    cache_across_specs: bool = False


def parse_options(options: Any) -> SessionOptions:
    if options is None:
        return SessionOptions()
    if not isinstance(options, Mapping):
        raise ConfigurationError(
            "session options must be a mapping",
            detail={"options_type": type(options).__name__},
        )
    try:
        return SessionOptions.model_validate(dict(options))
    except PydanticValidationError as exc:
        problems = []
        for error in exc.errors():
            key = ".".join(str(part) for part in error.get("loc", ())) or "options"
            if error.get("type") == "extra_forbidden":
                problems.append(f"unexpected option '{key}'")
            else:
                problems.append(f"invalid option '{key}': {error.get('msg')}")
        raise ConfigurationError(
            "invalid session options: " + "; ".join(problems),
            detail={"errors": problems},
        ) from exc


class SessionManager:
    """Public entry point for session commands and their lifecycle hooks."""

    def __init__(
        self,
        context: RunContext,
        engine: WorkflowEngine,
        store: SessionStore,
        browser: BrowserBridge,
        *,
        settings: Settings,
    ) -> None:
        self.context = context
        self.engine = engine
        self.store = store
        self.browser = browser
        self.settings = settings
        self.logger = get_logger(__name__)

    @property
    def registry(self):
        return self.context.registry

    def run_session(
        self,
        queue: CommandQueue,
        session_id: Any,
        setup: Optional[Callable[..., Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> SessionRun:
        """Queue a session command on ``queue``.

        Argument and redefinition problems raise immediately, before anything
        is queued. Setup and validation failures surface when the queue runs.
        """
        self._ensure_enabled()
        sid = stable_id(session_id)
        if setup is not None and not callable(setup):
            raise ConfigurationError(
                "session setup must be a callable",
                detail={"setup_type": type(setup).__name__},
            )
        if setup is None and options is not None:
            raise ConfigurationError(
                "session options require a setup routine",
                detail={"id": sid},
            )
        parsed = parse_options(options)

        if setup is None:
            record = self._lookup_defined(sid)
        else:
            record = self.registry.define_or_reuse(
                sid,
                setup,
                parsed.validate_routine,
                parsed.cache_across_specs,
            )
        self.logger.debug(
            "session_command_queued",
            session_id=display_session_id(sid),
            spec=self.context.spec,
        )
        return self.engine.start(record, queue)

    def _lookup_defined(self, sid: str) -> SessionRecord:
        record = self.registry.resolve(sid)
        if record is None or not self.registry.is_registered(sid):
            if self.registry.is_registered(sid):
                raise DuplicateSessionDefinition(sid)
            raise ConfigurationError(
                f"session '{sid}' is not defined in this spec; a setup routine is required",
                detail={"id": sid},
            )
        return record

    def _ensure_enabled(self) -> None:
        if not self.settings.sessions_enabled:
            raise ConfigurationError(
                "session caching is disabled; set SESSIONS_ENABLED=true to use run_session"
            )

    def get_session(self, session_id: Any) -> Optional[SessionRecord]:
        return self.registry.resolve(stable_id(session_id))

    def start_run(self, seed: Iterable[SessionRecord] = (), *, run_id: Optional[str] = None) -> str:
        return self.context.start_run(seed, run_id=run_id)

    async def start_spec(self, name: Optional[str] = None) -> None:
        """Begin a spec; saved entries of spec-local sessions are deleted."""
        for sid in self.context.start_spec(name):
            try:
                await self.store.delete(sid)
            except StoreError as exc:
                self.logger.warning(
                    "session_delete_failed",
                    session_id=display_session_id(sid),
                    error=str(exc),
                )

    async def before_test(self) -> bool:
        """Clear the applied session so it cannot leak into the next test.

        Returns False when skipped (sessions disabled or isolation off).
        """
        if not self.settings.sessions_enabled or not self.settings.test_isolation:
            return False
        await self.browser.navigate_blank()
        await self.store.clear_current()
        return True

    async def clear_all_saved_sessions(self) -> int:
        """Forget every session: registry records, saved entries, browser state."""
        self.registry.clear()
        cleared = await self.store.clear_all()
        await self.store.clear_current()
        self.logger.info("all_sessions_cleared", saved=cleared)
        return cleared
