from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoredSession:
    """Captured session as persisted by a backing store.

    Closures never leave the process; only their fingerprints are stored so a
    later run can tell whether the captured state is still reusable.
    """

    id: str
    setup_fingerprint: str
    validate_fingerprint: Optional[str] = None
    cache_across_specs: bool = False
    captured_state: Dict[str, Any] = field(default_factory=dict)
    saved_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "setup": self.setup_fingerprint,
            "validate": self.validate_fingerprint,
            "cache_across_specs": self.cache_across_specs,
            "captured_state": self.captured_state,
            "saved_at": self.saved_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StoredSession":
        saved_at = payload.get("saved_at")
        return cls(
            id=payload["id"],
            setup_fingerprint=payload["setup"],
            validate_fingerprint=payload.get("validate"),
            cache_across_specs=bool(payload.get("cache_across_specs", False)),
            captured_state=payload.get("captured_state") or {},
            saved_at=datetime.fromisoformat(saved_at) if saved_at else _utcnow(),
        )


@dataclass
class SessionRecord:
    id: str
    setup: Optional[Callable[[], Any]]
    setup_fingerprint: str
    validate: Optional[Callable[[], Any]] = None
    validate_fingerprint: Optional[str] = None
    cache_across_specs: bool = False
    hydrated: bool = False
    captured_state: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    # Set for cross-spec cached records until redefined in the current spec
    carried_over: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def adopt(self, stored: StoredSession) -> None:
        """Take over captured state from the backing store."""
        self.captured_state = copy.deepcopy(stored.captured_state)
        self.hydrated = True

    def to_stored(self) -> StoredSession:
        return StoredSession(
            id=self.id,
            setup_fingerprint=self.setup_fingerprint,
            validate_fingerprint=self.validate_fingerprint,
            cache_across_specs=self.cache_across_specs,
            captured_state=copy.deepcopy(self.captured_state or {}),
        )

    def summary(self) -> Dict[str, Any]:
        """Shape of the record suitable for logs, without captured values."""
        state = self.captured_state or {}
        cookies: List[dict] = state.get("cookies") or []
        return {
            "id": self.id,
            "cache_across_specs": self.cache_across_specs,
            "hydrated": self.hydrated,
            "status": self.status,
            "cookie_count": len(cookies),
            "cookie_domains": sorted({c.get("domain", "") for c in cookies}),
            "local_storage_origins": sorted(
                entry.get("origin", "") for entry in state.get("local_storage") or []
            ),
            "session_storage_origins": sorted(
                entry.get("origin", "") for entry in state.get("session_storage") or []
            ),
        }
