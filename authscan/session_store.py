"""
AuthScan Orchestrator - Session Cookie Handle Store

Captured session cookies are parked here behind an opaque one-time handle:
- TTL-based expiration (24 hours by default)
- Deleted on first use, so a handle starts at most one scan
- Backed by the shared database table, so every process sees the same handles
- Cookie values are never returned to clients
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from authscan.database import Database
from authscan.errors import SessionHandleError

logger = logging.getLogger("SessionStore")


@dataclass
class Cookie:
    """A captured browser cookie."""
    name: str
    value: str
    domain: Optional[str] = None
    http_only: bool = False
    secure: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cookie":
        return cls(
            name=str(data["name"]),
            value=str(data.get("value", "")),
            domain=data.get("domain"),
            http_only=bool(data.get("httpOnly", data.get("http_only", False))),
            secure=bool(data.get("secure", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "httpOnly": self.http_only,
            "secure": self.secure,
        }


@dataclass
class SessionHandle:
    """Contents of a consumed handle."""
    cookies: List[Cookie] = field(default_factory=list)
    login_url: Optional[str] = None
    expires_at: Optional[str] = None


class CookieHandleStore:
    """Expiring, one-time cookie handles."""

    def __init__(
        self,
        db: Database,
        ttl_hours: float = 24,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock
        self.stats = {"issued": 0, "consumed": 0, "rejected": 0, "purged": 0}

    def _now(self) -> datetime:
        return self._clock()

    async def issue(self, cookies: List[Cookie], login_url: Optional[str] = None) -> str:
        """Store cookies and return the opaque handle id."""
        if not cookies:
            raise SessionHandleError("No session cookies to store")
        handle_id = secrets.token_urlsafe(24)
        expires_at = (self._now() + self.ttl).isoformat()
        await self.db.save_cookie_handle(
            handle_id, [c.to_dict() for c in cookies], login_url, expires_at
        )
        self.stats["issued"] += 1
        logger.info(f"Issued session handle ({len(cookies)} cookies, expires {expires_at})")
        return handle_id

    async def consume(self, handle_id: str) -> SessionHandle:
        """Take the cookies behind a handle; the handle is gone afterwards."""
        data = await self.db.consume_cookie_handle(handle_id, self._now().isoformat())
        if data is None:
            self.stats["rejected"] += 1
            raise SessionHandleError()
        self.stats["consumed"] += 1
        return SessionHandle(
            cookies=[Cookie.from_dict(c) for c in data["cookies"]],
            login_url=data.get("login_url"),
            expires_at=data.get("expires_at"),
        )

    async def restore(self, handle_id: str, handle: SessionHandle):
        """Put a consumed handle back, keeping its original expiry."""
        await self.db.save_cookie_handle(
            handle_id, [c.to_dict() for c in handle.cookies], handle.login_url, handle.expires_at
        )
        self.stats["consumed"] -= 1
        logger.info("Restored session handle after a failed scan start")

    async def purge_expired(self) -> int:
        removed = await self.db.purge_cookie_handles(self._now().isoformat())
        if removed:
            self.stats["purged"] += removed
            logger.info(f"Purged {removed} expired session handles")
        return removed

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
