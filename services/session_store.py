"""In-memory sessions holding the identity needed to re-fetch one resolved stream."""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from config import SESSION_TTL

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 16


class SessionExpired(LookupError):
    """The token referenced a session that was never created or has been evicted."""
    pass


@dataclass
class StreamSession:
    id: str
    referer: str
    cookie_header: str = ""
    host_override: Optional[str] = None
    manifests: dict[str, str] = field(default_factory=dict)
    # Live browser page kept around for the authenticated fetch fallback
    live_context: Any = None
    created_at: float = 0.0


def url_variants(url: str) -> list[str]:
    """The URL plus its equivalents with '/' and '%2F' swapped in the query."""
    variants = [url]
    decoded = url.replace('%2F', '/').replace('%2f', '/')
    if decoded not in variants:
        variants.append(decoded)

    parts = urlsplit(url)
    if parts.query and '/' in parts.query:
        encoded = urlunsplit(parts._replace(query=parts.query.replace('/', '%2F')))
        if encoded not in variants:
            variants.append(encoded)
    return variants


class SessionStore:
    """Sessions keyed by an unguessable id, evicted TTL seconds after creation."""

    def __init__(self, ttl: float = SESSION_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, StreamSession] = {}
        self._releases: set[asyncio.Task] = set()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id):
        return self.get(session_id) is not None

    async def create(
        self,
        referer: str,
        cookie_header: str = "",
        host_override: Optional[str] = None,
        manifests: Optional[dict[str, str]] = None,
        live_context: Any = None,
    ) -> StreamSession:
        """Insert a new session, then sweep everything older than the TTL."""
        session_id = secrets.token_hex(SESSION_ID_BYTES)
        while session_id in self._sessions:
            session_id = secrets.token_hex(SESSION_ID_BYTES)

        session = StreamSession(
            id=session_id,
            referer=referer,
            cookie_header=cookie_header,
            host_override=host_override,
            manifests=dict(manifests or {}),
            live_context=live_context,
            created_at=self._clock(),
        )
        self._sessions[session_id] = session
        await self.sweep()
        return session

    def _is_expired(self, session: StreamSession, now: float) -> bool:
        return now - session.created_at >= self.ttl

    def get(self, session_id: str) -> Optional[StreamSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_expired(session, self._clock()):
            self._sessions.pop(session_id, None)
            logger.debug(f"⌛ Session {session_id[:8]} expired on lookup")
            # Release runs on the loop; close() waits for any still pending
            task = asyncio.ensure_future(self._release(session))
            self._releases.add(task)
            task.add_done_callback(self._releases.discard)
            return None
        return session

    def require(self, session_id: str) -> StreamSession:
        session = self.get(session_id)
        if session is None:
            raise SessionExpired(session_id)
        return session

    def put_manifest(self, session_id: str, url: str, text: str) -> None:
        session = self.get(session_id)
        if session is not None:
            session.manifests[url] = text

    def get_manifest(self, session_id: str, url: str) -> Optional[str]:
        session = self.get(session_id)
        if session is None:
            return None
        for candidate in url_variants(url):
            text = session.manifests.get(candidate)
            if text is not None:
                return text
        return None

    async def sweep(self) -> int:
        """Evict expired sessions. Returns how many were removed."""
        now = self._clock()
        expired = [s for s in self._sessions.values() if self._is_expired(s, now)]
        for session in expired:
            self._sessions.pop(session.id, None)
        for session in expired:
            await self._release(session)
        if expired:
            logger.info(f"🧹 Evicted {len(expired)} expired session(s), {len(self._sessions)} active")
        return len(expired)

    async def evict(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await self._release(session)
        return True

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await self._release(session)
        if self._releases:
            await asyncio.gather(*self._releases)

    async def _release(self, session: StreamSession) -> None:
        live = session.live_context
        session.live_context = None
        if live is None:
            return
        try:
            await live.close()
        except Exception as e:
            logger.warning(f"⚠️ Error releasing browser context for session {session.id[:8]}: {e}")
