from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

MAX_EXPIRATION_HOURS = 24 * 365


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AutoLoginGrant:
    token: str
    wp_user_id: str
    expires_at: datetime
    redirect: str | None = None

    def link(self, portal_host: str) -> str:
        query = {"token": self.token, "wp_user_id": self.wp_user_id}
        if self.redirect:
            query["redirect"] = self.redirect
        return f"{portal_host.rstrip('/')}/auto-login?{urlencode(query)}"


class AutoLoginTokenStore:
    """In-memory one-time tokens that let an external site hand a user into the portal."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._grants: dict[str, AutoLoginGrant] = {}

    def _purge_expired(self, now: datetime) -> None:
        expired = [token for token, grant in self._grants.items() if grant.expires_at <= now]
        for token in expired:
            del self._grants[token]

    def issue(self, wp_user_id: str, *, expiration_hours: float = 1, redirect: str | None = None) -> AutoLoginGrant:
        now = self._clock()
        grant = AutoLoginGrant(
            token=secrets.token_hex(32),
            wp_user_id=str(wp_user_id),
            expires_at=now + timedelta(hours=expiration_hours),
            redirect=redirect or None,
        )
        with self._lock:
            self._purge_expired(now)
            self._grants[grant.token] = grant
        logger.info("Issued auto-login token for wp user %s (expires %s)", grant.wp_user_id, grant.expires_at.isoformat())
        return grant

    def consume(self, token: str) -> str | None:
        """Return the wp user id bound to `token` and forget it. Unknown or expired tokens give None."""
        now = self._clock()
        with self._lock:
            grant = self._grants.pop(token, None)
            self._purge_expired(now)
        if grant is None:
            return None
        if grant.expires_at <= now:
            logger.info("Auto-login token for wp user %s expired", grant.wp_user_id)
            return None
        return grant.wp_user_id

    def __len__(self) -> int:
        return len(self._grants)
