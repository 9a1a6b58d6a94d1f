"""End-to-end session workflows driven through the command queue.

Covers:
- Create, restore and idempotent reuse
- Restore from the backing store (matching / stale fingerprints)
- Validation outcomes per phase, including recovery into recreate
- Setup failures and error attribution
"""

import pytest

from sessionflow.config import Settings
from sessionflow.service.errors import SetupFailure, ValidationFailure
from sessionflow.service.queue import RECOVERED, SKIPPED, CommandQueue
from sessionflow.service.registry import RunContext
from sessionflow.service.routines import fingerprint
from sessionflow.service.sessions import SessionManager
from sessionflow.service.states import SessionState
from sessionflow.service.workflow import WorkflowEngine
from sessionflow.storage.errors import StoreError
from sessionflow.storage.memory import BLANK_PAGE, InMemoryBrowser, MemorySessionStore
from sessionflow.storage.models import StoredSession


class FlakyStore(MemorySessionStore):
    """Memory store whose lookups or saves can be made to fail."""

    def __init__(self, browser, *, fail_get=False, fail_save=False):
        super().__init__(browser)
        self.fail_get = fail_get
        self.fail_save = fail_save

    async def get(self, session_id):
        if self.fail_get:
            raise StoreError("store unavailable")
        return await super().get(session_id)

    async def save(self, record):
        if self.fail_save:
            raise StoreError("store is read-only")
        await super().save(record)


def build_manager(store):
    return SessionManager(
        RunContext(),
        WorkflowEngine(store, store.browser),
        store,
        store.browser,
        settings=Settings(),
    )


@pytest.fixture
def browser():
    return InMemoryBrowser()


@pytest.fixture
def store(browser):
    return MemorySessionStore(browser)


@pytest.fixture
def manager(store):
    return build_manager(store)


# ==============================================================================
# Create / Restore
# ==============================================================================


class TestCreateAndRestore:
    """First use creates the session, later uses restore it."""

    @pytest.mark.asyncio
    async def test_first_use_creates_and_saves(self, manager, browser, store):
        calls = []

        def login():
            calls.append("login")
            browser.set_cookie("sid", "abc")

        queue = CommandQueue()
        run = manager.run_session(queue, "user", login)
        await queue.run()

        assert calls == ["login"]
        assert run.completed
        assert run.status == "created"
        assert run.record.hydrated is True
        assert store.saved["user"].captured_state["cookies"][0]["value"] == "abc"
        assert browser.url == BLANK_PAGE
        assert [step.name for step in queue.steps] == [
            "session",
            "Create new session",
            "setup",
            "capture",
            "session-finish",
        ]

    @pytest.mark.asyncio
    async def test_state_is_cleared_before_setup(self, manager, browser, store):
        browser.set_cookie("leftover", "1")
        browser.set_local_storage("http://localhost", "theme", "dark")

        def login():
            browser.set_cookie("sid", "abc")

        queue = CommandQueue()
        manager.run_session(queue, "user", login)
        await queue.run()

        captured = store.saved["user"].captured_state
        assert [c["name"] for c in captured["cookies"]] == ["sid"]
        assert captured["local_storage"] == []

    @pytest.mark.asyncio
    async def test_second_use_restores_without_setup(self, manager, browser):
        calls = []

        def login():
            calls.append("login")
            browser.set_cookie("sid", "abc")

        queue = CommandQueue()
        manager.run_session(queue, "user", login)
        await queue.run()

        assert await manager.before_test() is True
        assert browser.cookies == []

        run = manager.run_session(queue, "user", login)
        await queue.run()

        assert calls == ["login"]
        assert run.completed
        assert run.status == "restored"
        assert browser.get_cookie("sid")["value"] == "abc"
        assert [entry["state"] for entry in run.trace] == [
            "resolving",
            "restoring",
            "validating",
            "completed",
        ]

    @pytest.mark.asyncio
    async def test_restore_from_store_with_matching_fingerprint(self, manager, browser, store):
        calls = []

        def login():
            calls.append("login")

        store.saved["user"] = StoredSession(
            id="user",
            setup_fingerprint=fingerprint(login),
            captured_state={
                "cookies": [{"name": "sid", "value": "saved", "domain": "localhost", "path": "/"}]
            },
        )

        queue = CommandQueue()
        run = manager.run_session(queue, "user", login)
        await queue.run()

        assert calls == []
        assert run.status == "restored"
        assert browser.get_cookie("sid")["value"] == "saved"

    @pytest.mark.asyncio
    async def test_stale_stored_session_is_recreated(self, manager, browser, store):
        calls = []

        def login():
            calls.append("login")
            browser.set_cookie("sid", "fresh")

        store.saved["user"] = StoredSession(
            id="user",
            setup_fingerprint="def login(): pass",
            captured_state={"cookies": [{"name": "sid", "value": "old"}]},
        )

        queue = CommandQueue()
        run = manager.run_session(queue, "user", login)
        await queue.run()

        assert calls == ["login"]
        assert run.status == "created"
        assert store.saved["user"].setup_fingerprint == fingerprint(login)
        assert browser.get_cookie("sid")["value"] == "fresh"

    @pytest.mark.asyncio
    async def test_store_lookup_failure_falls_back_to_create(self, browser):
        store = FlakyStore(browser, fail_get=True)
        manager = build_manager(store)
        calls = []

        def login():
            calls.append("login")

        queue = CommandQueue()
        run = manager.run_session(queue, "user", login)
        await queue.run()

        assert calls == ["login"]
        assert run.status == "created"

    @pytest.mark.asyncio
    async def test_save_failure_leaves_record_unhydrated(self, browser):
        store = FlakyStore(browser, fail_save=True)
        manager = build_manager(store)

        queue = CommandQueue()
        run = manager.run_session(queue, "user", lambda: None)
        with pytest.raises(StoreError):
            await queue.run()

        assert run.failed
        assert run.status == "failed"
        assert run.record.hydrated is False
        assert isinstance(run.error, StoreError)

    @pytest.mark.asyncio
    async def test_async_setup_is_awaited(self, manager, browser):
        async def login():
            browser.set_cookie("sid", "async")

        queue = CommandQueue()
        run = manager.run_session(queue, "user", login)
        await queue.run()

        assert run.status == "created"
        assert run.record.captured_state["cookies"][0]["value"] == "async"

    @pytest.mark.asyncio
    async def test_steps_chained_by_setup_run_before_capture(self, manager, browser):
        queue = CommandQueue()

        def login():
            queue.then(lambda _subject: browser.set_cookie("sid", "chained"), name="type-password")

        run = manager.run_session(queue, "user", login)
        await queue.run()

        names = [step.name for step in queue.steps]
        assert names.index("type-password") < names.index("capture")
        assert run.record.captured_state["cookies"][0]["value"] == "chained"

    @pytest.mark.asyncio
    async def test_session_command_resets_subject(self, manager):
        queue = CommandQueue()
        queue.wrap("page-object")
        manager.run_session(queue, "user", lambda: None)
        seen = []
        queue.then(lambda subject: seen.append(subject))

        await queue.run()

        assert seen == [None]


# ==============================================================================
# Validation
# ==============================================================================


class TestValidationOnCreate:
    """Validation failures right after creating fail the test immediately."""

    @pytest.mark.asyncio
    async def test_valid_session_passes(self, manager):
        checks = []

        async def check():
            checks.append(1)
            return True

        queue = CommandQueue()
        run = manager.run_session(queue, "user", lambda: None, {"validate": check})
        await queue.run()

        assert checks == [1]
        assert run.status == "created"
        assert [step.name for step in queue.steps][-3:] == [
            "Validate session",
            "validate-resume",
            "session-finish",
        ]

    @pytest.mark.asyncio
    async def test_yielded_false_fails_with_created_phase(self, manager, store):
        queue = CommandQueue()
        calls = []

        def login():
            calls.append("login")

        def check():
            return queue.wrap(False)

        run = manager.run_session(queue, "user", login, {"validate": check})
        with pytest.raises(ValidationFailure) as excinfo:
            await queue.run()

        err = excinfo.value
        assert err.phase == "created"
        assert err.reason == "callback yielded false"
        assert err.recovered is False
        assert err.origin is run.origin
        assert "validating the created session" in str(err)
        assert "immediately after creating the session" in str(err)
        assert calls == ["login"]
        assert run.failed
        assert run.status == "failed"

    @pytest.mark.asyncio
    async def test_promise_resolved_false(self, manager):
        async def check():
            return False

        queue = CommandQueue()
        manager.run_session(queue, "user", lambda: None, {"validate": check})
        with pytest.raises(ValidationFailure) as excinfo:
            await queue.run()

        assert excinfo.value.reason == "promise resolved false"
        assert "promise resolved false" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_plain_false_return_is_not_a_failure(self, manager):
        queue = CommandQueue()
        run = manager.run_session(queue, "user", lambda: None, {"validate": lambda: False})
        await queue.run()

        assert run.status == "created"

    @pytest.mark.asyncio
    async def test_raising_validate_is_chained(self, manager):
        def check():
            raise AssertionError("no token")

        queue = CommandQueue()
        run = manager.run_session(queue, "user", lambda: None, {"validate": check})
        with pytest.raises(ValidationFailure) as excinfo:
            await queue.run()

        err = excinfo.value
        assert "no token" in str(err)
        assert isinstance(err.__cause__, AssertionError)
        assert err.reason is None
        assert err.origin is run.origin
        assert run.failed

    @pytest.mark.asyncio
    async def test_failing_chained_step_is_fatal(self, manager):
        queue = CommandQueue()

        def boom(_subject):
            raise AssertionError("element not found")

        def check():
            queue.then(boom, name="find-avatar")

        run = manager.run_session(queue, "user", lambda: None, {"validate": check})
        with pytest.raises(ValidationFailure) as excinfo:
            await queue.run()

        assert excinfo.value.phase == "created"
        assert "element not found" in str(excinfo.value)
        assert run.state is SessionState.FAILED


class TestValidationOnRestore:
    """Validation failures on a restored session recover into recreate."""

    @pytest.mark.asyncio
    async def test_yielded_false_recreates(self, manager, browser):
        queue = CommandQueue()
        calls = []
        attempts = []

        def login():
            calls.append("login")
            browser.set_cookie("sid", str(len(calls)))

        def check():
            attempts.append(1)
            return queue.wrap(len(attempts) != 2)

        manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()

        assert calls == ["login", "login"]
        assert len(attempts) == 3
        assert run.completed
        assert run.status == "recreated"
        assert browser.get_cookie("sid")["value"] == "2"
        assert len(run.recovered_errors) == 1
        recovered = run.recovered_errors[0]
        assert recovered.recovered is True
        assert recovered.phase == "restored"
        assert recovered.reason == "callback yielded false"
        assert "we will try to recreate the session" in str(recovered)
        assert [entry["state"] for entry in run.trace] == [
            "resolving",
            "restoring",
            "validating",
            "recreating",
            "creating",
            "validating",
            "completed",
        ]

    @pytest.mark.asyncio
    async def test_raising_validate_recreates(self, manager):
        queue = CommandQueue()
        calls = []
        attempts = []

        def login():
            calls.append("login")

        def check():
            attempts.append(1)
            if len(attempts) == 2:
                raise RuntimeError("expired")
            return True

        manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()

        assert calls == ["login", "login"]
        assert run.status == "recreated"
        assert run.completed
        assert "expired" in str(run.recovered_errors[0])
        assert len(queue.recovered) == 1
        failed = [step for step in queue.steps if step.state == RECOVERED]
        assert [step.name for step in failed] == ["Validate session"]

    @pytest.mark.asyncio
    async def test_async_rejection_recreates(self, manager):
        queue = CommandQueue()
        attempts = []

        async def check():
            attempts.append(1)
            if len(attempts) == 2:
                raise RuntimeError("token revoked")
            return True

        manager.run_session(queue, "user", lambda: None, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", lambda: None, {"validate": check})
        await queue.run()

        assert run.status == "recreated"
        assert "token revoked" in str(run.recovered_errors[0])
        assert run.recovered_errors[0].reason == "promise rejected with token revoked"
        assert len(queue.recovered) == 1
        failed = [step for step in queue.steps if step.state == RECOVERED]
        assert [step.name for step in failed] == ["Validate session"]

    @pytest.mark.asyncio
    async def test_async_validate_chaining_a_failing_step_recreates(self, manager):
        queue = CommandQueue()
        calls = []
        attempts = []
        after = []

        def login():
            calls.append("login")

        def expired(_subject):
            raise AssertionError("token expired")

        async def check():
            attempts.append(1)
            if len(attempts) == 2:
                queue.then(expired, name="assert-token")
                queue.then(lambda _subject: after.append("after"), name="after-assert")
            return True

        manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()

        assert run.status == "recreated"
        assert run.completed
        assert calls == ["login", "login"]
        assert after == []
        assert "token expired" in str(run.recovered_errors[0])
        skipped = [step.name for step in queue.steps if step.state == SKIPPED]
        assert skipped == ["after-assert"]

    @pytest.mark.asyncio
    async def test_failing_chained_step_skips_pending_steps(self, manager):
        queue = CommandQueue()
        attempts = []
        after = []

        def expired(_subject):
            raise AssertionError("token expired")

        def check():
            attempts.append(1)
            if len(attempts) == 2:
                queue.then(expired, name="assert-token")
                queue.then(lambda _subject: after.append("after"), name="after-assert")

        manager.run_session(queue, "user", lambda: None, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", lambda: None, {"validate": check})
        await queue.run()

        assert run.status == "recreated"
        assert after == []
        skipped = [step.name for step in queue.steps if step.state == SKIPPED]
        assert skipped == ["after-assert"]

    @pytest.mark.asyncio
    async def test_recreate_validation_failure_is_fatal(self, manager):
        queue = CommandQueue()
        calls = []
        attempts = []

        def login():
            calls.append("login")

        def check():
            attempts.append(1)
            return queue.wrap(len(attempts) == 1)

        manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", login, {"validate": check})
        with pytest.raises(ValidationFailure) as excinfo:
            await queue.run()

        err = excinfo.value
        assert err.phase == "recreated"
        assert err.recovered is False
        assert "validating the recreated session" in str(err)
        assert "immediately after recreating the session" in str(err)
        assert err.origin is run.origin
        assert calls == ["login", "login"]
        assert run.failed
        assert len(run.recovered_errors) == 1


# ==============================================================================
# Setup failures
# ==============================================================================


class TestSetupFailures:
    """Setup failures are never recovered."""

    @pytest.mark.asyncio
    async def test_setup_error_fails_the_command(self, manager, store):
        def login():
            raise RuntimeError("bad password")

        queue = CommandQueue()
        run = manager.run_session(queue, "user", login)
        with pytest.raises(SetupFailure) as excinfo:
            await queue.run()

        err = excinfo.value
        assert err.phase == "create"
        assert "bad password" in str(err)
        assert "while creating the session" in str(err)
        assert isinstance(err.__cause__, RuntimeError)
        assert err.origin is run.origin
        assert err.origin.name == "session"
        assert run.failed
        assert run.record.hydrated is False
        assert "user" not in store.saved

    @pytest.mark.asyncio
    async def test_failing_step_chained_by_setup(self, manager):
        queue = CommandQueue()

        def boom(_subject):
            raise AssertionError("login form missing")

        def login():
            queue.then(boom, name="submit")

        run = manager.run_session(queue, "user", login)
        with pytest.raises(SetupFailure) as excinfo:
            await queue.run()

        assert "login form missing" in str(excinfo.value)
        capture = next(step for step in queue.steps if step.name == "capture")
        assert capture.state == "queued"
        assert run.failed

    @pytest.mark.asyncio
    async def test_setup_error_during_recreate(self, manager):
        queue = CommandQueue()
        calls = []
        attempts = []

        def login():
            calls.append("login")
            if len(calls) == 2:
                raise RuntimeError("account locked")

        def check():
            attempts.append(1)
            return queue.wrap(len(attempts) != 2)

        manager.run_session(queue, "user", login, {"validate": check})
        await queue.run()
        run = manager.run_session(queue, "user", login, {"validate": check})
        with pytest.raises(SetupFailure) as excinfo:
            await queue.run()

        assert excinfo.value.phase == "recreate"
        assert "while recreating the session" in str(excinfo.value)
        assert run.failed
