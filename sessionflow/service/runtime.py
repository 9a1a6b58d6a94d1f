from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse

from sessionflow.config import StoreBackend, get_settings, reset_settings_cache
from sessionflow.logging import get_logger
from sessionflow.service.registry import RunContext
from sessionflow.service.sessions import SessionManager
from sessionflow.service.workflow import WorkflowEngine
from sessionflow.storage.common import BrowserBridge
from sessionflow.storage.memory import InMemoryBrowser, MemorySessionStore
from sessionflow.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password of a store URL before it reaches a log line."""
    password = urlparse(url).password if url else None
    if not password:
        return url
    return url.replace(f":{password}@", ":***@", 1)


class Runtime:
    """Holds the singleton store, browser bridge and session manager."""

    def __init__(self, browser: Optional[BrowserBridge] = None):
        self.settings = get_settings()
        self.browser: BrowserBridge = browser or InMemoryBrowser()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store = MemorySessionStore(self.browser)
        redis_error: Exception | None = None
        if self.settings.store_backend is StoreBackend.REDIS:
            try:
                store = RedisSessionStore(
                    self.settings.redis_url,
                    self.browser,
                    key_prefix=self.settings.session_key_prefix,
                    ttl_seconds=self.settings.session_ttl_seconds,
                )
                store.verify_connection()
                self.store = store
            except Exception as exc:
                redis_error = exc
                if not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is required for SESSION_STORE=redis; start Redis or set "
                        "ALLOW_REDIS_FALLBACK_DEV=true to keep saved sessions in memory."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    message="Saved sessions are kept in memory and lost when the process exits.",
                )

        self.context = RunContext()
        self.engine = WorkflowEngine(self.store, self.browser)
        self.sessions = SessionManager(
            self.context,
            self.engine,
            self.store,
            self.browser,
            settings=self.settings,
        )
        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            sessions_enabled=self.settings.sessions_enabled,
            test_isolation=self.settings.test_isolation,
        )

    async def close(self) -> None:
        if isinstance(self.store, RedisSessionStore):
            await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            # another thread may have built it while we waited
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisSessionStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
