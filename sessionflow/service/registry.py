from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sessionflow.logging import display_session_id, get_logger, set_run_id
from sessionflow.service.errors import DuplicateSessionDefinition
from sessionflow.service.routines import fingerprint
from sessionflow.storage.models import SessionRecord

Routine = Callable[[], Any]


class SessionRegistry:
    """Run-scoped session records plus the ids declared in the current spec."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.active_sessions: Dict[str, SessionRecord] = {}
        self.registered_for_spec: Set[str] = set()

    def resolve(self, session_id: str) -> Optional[SessionRecord]:
        return self.active_sessions.get(session_id)

    def is_registered(self, session_id: str) -> bool:
        return session_id in self.registered_for_spec

    def register(self, session_id: str) -> None:
        self.registered_for_spec.add(session_id)

    def define_or_reuse(
        self,
        session_id: str,
        setup: Routine,
        validate: Optional[Routine] = None,
        cache_across_specs: bool = False,
    ) -> SessionRecord:
        """Return the record for ``session_id``, defining it on first use.

        Raises DuplicateSessionDefinition when the id was already declared in
        this spec with a different setup, validate or persistence setting.
        """
        setup_fp = fingerprint(setup)
        validate_fp = fingerprint(validate) if validate is not None else None
        record = self.active_sessions.get(session_id)

        if record is None:
            if self.is_registered(session_id):
                # declared earlier in this spec, then cleared
                raise DuplicateSessionDefinition(session_id)
            record = SessionRecord(
                id=session_id,
                setup=setup,
                setup_fingerprint=setup_fp,
                validate=validate,
                validate_fingerprint=validate_fp,
                cache_across_specs=cache_across_specs,
            )
            self.active_sessions[session_id] = record
            self.register(session_id)
            self.logger.debug("session_defined", session_id=display_session_id(session_id))
            return record

        has_uniq_setup = record.setup_fingerprint != setup_fp
        has_uniq_validate = record.validate_fingerprint != validate_fp
        has_uniq_persistence = record.cache_across_specs != cache_across_specs

        if record.carried_over:
            if has_uniq_persistence:
                raise DuplicateSessionDefinition(session_id, has_uniq_persistence=True)
            self._adopt_definition(record, setup, setup_fp, validate, validate_fp)
            self.register(session_id)
            return record

        if has_uniq_setup or has_uniq_validate or has_uniq_persistence:
            raise DuplicateSessionDefinition(
                session_id,
                has_uniq_setup_definition=has_uniq_setup,
                has_uniq_validate_definition=has_uniq_validate,
                has_uniq_persistence=has_uniq_persistence,
            )
        self.register(session_id)
        return record

    def _adopt_definition(
        self,
        record: SessionRecord,
        setup: Routine,
        setup_fp: str,
        validate: Optional[Routine],
        validate_fp: Optional[str],
    ) -> None:
        """Replace the closures a record carried over from a prior spec."""
        if record.setup_fingerprint != setup_fp:
            # captured state came from a different setup routine
            record.hydrated = False
            record.captured_state = None
            self.logger.info(
                "session_setup_redefined",
                session_id=display_session_id(record.id),
            )
        record.setup = setup
        record.setup_fingerprint = setup_fp
        record.validate = validate
        record.validate_fingerprint = validate_fp
        record.carried_over = False

    def start_spec(self) -> List[str]:
        """Forget spec-local sessions; cached ones stay and are re-registered.

        Returns the ids of the sessions that were dropped.
        """
        self.registered_for_spec.clear()
        dropped: List[str] = []
        for session_id in list(self.active_sessions):
            record = self.active_sessions[session_id]
            if record.cache_across_specs:
                record.carried_over = True
                self.register(session_id)
            else:
                del self.active_sessions[session_id]
                dropped.append(session_id)
        return dropped

    def clear(self) -> None:
        self.active_sessions.clear()


class RunContext:
    """Owns the registry for one test run and its run/spec lifecycle."""

    def __init__(self, registry: Optional[SessionRegistry] = None) -> None:
        self.logger = get_logger(__name__)
        self.registry = registry or SessionRegistry()
        self.run_id: Optional[str] = None
        self.spec: Optional[str] = None

    def start_run(
        self,
        seed: Iterable[SessionRecord] = (),
        *,
        run_id: Optional[str] = None,
    ) -> str:
        """Begin a run, seeding cached sessions kept from an earlier run."""
        self.run_id = set_run_id(run_id)
        self.spec = None
        self.registry.registered_for_spec.clear()
        self.registry.clear()
        for record in seed:
            if not record.cache_across_specs:
                continue
            record.carried_over = True
            self.registry.active_sessions[record.id] = record
            self.registry.register(record.id)
        self.logger.info(
            "session_run_started",
            seeded=len(self.registry.active_sessions),
        )
        return self.run_id

    def start_spec(self, name: Optional[str] = None) -> List[str]:
        self.spec = name
        dropped = self.registry.start_spec()
        self.logger.info(
            "session_spec_started",
            spec=name,
            cached_sessions=len(self.registry.active_sessions),
            dropped_sessions=len(dropped),
        )
        return dropped

    def cached_sessions(self) -> list[SessionRecord]:
        return [r for r in self.registry.active_sessions.values() if r.cache_across_specs]

    def end_run(self) -> None:
        self.registry.registered_for_spec.clear()
        self.registry.clear()
        self.logger.info("session_run_finished", run_id=self.run_id)
        self.run_id = None
        self.spec = None
