from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from sessionflow.logging import get_logger
from sessionflow.storage.common import BrowserBridge
from sessionflow.storage.models import SessionRecord, StoredSession

BLANK_PAGE = "about:blank"


class InMemoryBrowser:
    """Browser double holding cookies and web storage in dictionaries.

    Used by the test-suite and as the default bridge when no real browser
    driver is wired in.
    """

    def __init__(self) -> None:
        self.url = BLANK_PAGE
        self.cookies: List[Dict[str, Any]] = []
        self.local_storage: Dict[str, Dict[str, str]] = {}
        self.session_storage: Dict[str, Dict[str, str]] = {}
        self.history: List[str] = []

    def visit(self, url: str) -> None:
        self.url = url
        self.history.append(url)

    def set_cookie(
        self, name: str, value: str, *, domain: str = "localhost", path: str = "/"
    ) -> None:
        self.cookies = [
            c for c in self.cookies
            if not (c["name"] == name and c["domain"] == domain and c["path"] == path)
        ]
        self.cookies.append({"name": name, "value": value, "domain": domain, "path": path})

    def get_cookie(self, name: str) -> Optional[Dict[str, Any]]:
        for cookie in self.cookies:
            if cookie["name"] == name:
                return cookie
        return None

    def set_local_storage(self, origin: str, key: str, value: str) -> None:
        self.local_storage.setdefault(origin, {})[key] = value

    def set_session_storage(self, origin: str, key: str, value: str) -> None:
        self.session_storage.setdefault(origin, {})[key] = value

    async def capture(self) -> Dict[str, Any]:
        return {
            "cookies": copy.deepcopy(self.cookies),
            "local_storage": [
                {"origin": origin, "value": dict(values)}
                for origin, values in sorted(self.local_storage.items())
                if values
            ],
            "session_storage": [
                {"origin": origin, "value": dict(values)}
                for origin, values in sorted(self.session_storage.items())
                if values
            ],
        }

    async def apply(self, state: Dict[str, Any]) -> None:
        self.cookies = copy.deepcopy(state.get("cookies") or [])
        for entry in state.get("local_storage") or []:
            self.local_storage.setdefault(entry["origin"], {}).update(entry["value"])
        for entry in state.get("session_storage") or []:
            self.session_storage.setdefault(entry["origin"], {}).update(entry["value"])

    async def clear(self) -> None:
        self.cookies = []
        self.local_storage = {}
        self.session_storage = {}

    async def navigate_blank(self) -> None:
        self.visit(BLANK_PAGE)


class MemorySessionStore:
    """In-process backing store; saved sessions live as long as the process."""

    def __init__(self, browser: BrowserBridge) -> None:
        self.logger = get_logger(__name__)
        self.browser = browser
        self.saved: Dict[str, StoredSession] = {}

    async def get(self, session_id: str) -> Optional[StoredSession]:
        stored = self.saved.get(session_id)
        return copy.deepcopy(stored) if stored else None

    async def save(self, record: SessionRecord) -> None:
        self.saved[record.id] = record.to_stored()
        self.logger.debug("session_saved", session_id=record.id, backend="memory")

    async def delete(self, session_id: str) -> bool:
        return self.saved.pop(session_id, None) is not None

    async def clear_current(self) -> None:
        await self.browser.clear()

    async def clear_all(self) -> int:
        count = len(self.saved)
        self.saved.clear()
        self.logger.info("saved_sessions_cleared", backend="memory", count=count)
        return count
