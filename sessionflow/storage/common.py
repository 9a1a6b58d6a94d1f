"""Contracts shared between the memory and redis session stores.

The workflow engine only talks to these protocols; how browser state is
captured or injected, and where saved sessions live, is up to the
implementations.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

from sessionflow.storage.errors import StoreError
from sessionflow.storage.models import StoredSession

if TYPE_CHECKING:
    from sessionflow.storage.models import SessionRecord


class BrowserBridge(Protocol):
    """Access to the browser-side state a session consists of."""

    async def capture(self) -> Dict[str, Any]:
        """Snapshot cookies and storage of the current browser."""

    async def apply(self, state: Dict[str, Any]) -> None:
        """Inject previously captured state into the browser."""

    async def clear(self) -> None:
        """Remove cookies and storage from the browser."""

    async def navigate_blank(self) -> None:
        """Leave the application under test so no page observes the switch."""


class SessionStore(Protocol):
    """Backing store for captured sessions.

    ``get`` returns None when nothing is saved; it may still raise
    StoreError on transport failures, which callers treat as absence.
    """

    async def get(self, session_id: str) -> Optional[StoredSession]:
        ...

    async def save(self, record: "SessionRecord") -> None:
        ...

    async def delete(self, session_id: str) -> bool:
        """Forget one saved session; returns whether an entry existed."""

    async def clear_current(self) -> None:
        """Clear only the session state applied to the browser."""

    async def clear_all(self) -> int:
        """Forget every saved session; returns how many were removed."""


def dump_stored_session(stored: StoredSession) -> str:
    try:
        return json.dumps(stored.to_payload(), sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StoreError(
            "captured session state is not JSON serializable",
            {"id": stored.id, "error": str(exc)},
        ) from exc


def load_stored_session(raw: Optional[str]) -> Optional[StoredSession]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
        return StoredSession.from_payload(payload)
    except (AttributeError, TypeError, ValueError, KeyError) as exc:
        raise StoreError("corrupt saved session", {"error": str(exc)}) from exc
