"""Session registry: ephemeral per-upload records with TTL-based expiry.

``SessionRegistry`` is the interface the orchestrator talks to.  A
single-instance deployment uses ``InMemorySessionRegistry``; replicas share a
``RedisSessionRegistry`` (see ``redis_registry.py``) without any change to the
observable contract.

Contract shared by every implementation:
  * "not found" is never an exception; lookups return ``None`` and
    mutations return ``False``;
  * a session whose TTL elapsed is never returned again, and the expiry
    handler runs exactly once for it (whoever removes the entry fires it);
  * sessions are returned as copies, so every change goes through a
    registry operation and is visible to the next read.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .schemas import EXPIRABLE_STATES, SessionState, UploadSession, utcnow

logger = logging.getLogger(__name__)

ExpiryHandler = Callable[[UploadSession], Awaitable[None]]


class SessionRegistry(ABC):
    """Abstract base class for session registries.

    Subclasses implement storage; the base class owns the expiry handler and
    the periodic reaper loop.
    """

    def __init__(self, reaper_interval_seconds: float = 60) -> None:
        self._expiry_handler: Optional[ExpiryHandler] = None
        self._reaper_interval = reaper_interval_seconds
        self._reaper_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    def set_expiry_handler(self, handler: Optional[ExpiryHandler]) -> None:
        """Install the callback run once for every session that expires."""
        self._expiry_handler = handler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background reaper."""
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reaper_loop())
            logger.info(
                "[sessions] %s reaper started (interval=%ss)",
                type(self).__name__, self._reaper_interval,
            )

    async def stop(self) -> None:
        """Cancel the background reaper."""
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None
        logger.info("[sessions] %s stopped", type(self).__name__)

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reaper_interval)
            try:
                await self.sweep_expired()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[sessions] Reaper pass failed: %s", exc)

    async def _fire_expired(self, session: UploadSession) -> None:
        """Run the expiry handler for a session this caller has just removed."""
        session.state = SessionState.EXPIRED
        logger.info(
            "[sessions] Session expired: %s (abandoned after TTL)", session.upload_id
        )
        if self._expiry_handler is None:
            return
        try:
            await self._expiry_handler(session)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(
                "[sessions] Expiry handler failed for %s: %s", session.upload_id, exc
            )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @abstractmethod
    async def create(self, session: UploadSession) -> None:
        """Register a new session.

        Raises:
            ValueError: If a session with the same ``upload_id`` exists.
        """

    @abstractmethod
    async def get(self, upload_id: str) -> Optional[UploadSession]:
        """Return a copy of the live session, or None if absent or expired."""

    @abstractmethod
    async def attach_external_info(
        self, upload_id: str, external_upload_id: str, external_object_key: str
    ) -> bool:
        """Attach the store-assigned identifiers and move to AWAITING_PARTS.

        Returns False when the session is absent, expired, or already
        attached.  The caller must then abort the store-side upload.
        """

    @abstractmethod
    async def transition(
        self, upload_id: str, from_states: Iterable[SessionState], to_state: SessionState
    ) -> bool:
        """Atomically move a live session from one of *from_states* to *to_state*."""

    @abstractmethod
    async def delete(self, upload_id: str) -> bool:
        """Remove a session and its expiry timer.  False if it was absent."""

    async def exists(self, upload_id: str) -> bool:
        return (await self.get(upload_id)) is not None

    @abstractmethod
    async def count(self) -> int:
        """Number of live sessions."""

    @abstractmethod
    async def list_ids(self) -> List[str]:
        """IDs of all live sessions."""

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    @abstractmethod
    async def schedule_expiry(self, upload_id: str, ttl_seconds: float) -> bool:
        """(Re)start the TTL clock for a session."""

    @abstractmethod
    async def cancel_expiry_timer(self, upload_id: str) -> bool:
        """Stop the TTL clock; the session then lives until deleted."""

    @abstractmethod
    async def sweep_expired(self) -> int:
        """Remove every expired session, firing the handler once per session."""

    @abstractmethod
    async def expired_recently(self, upload_id: str) -> bool:
        """True if *upload_id* was removed by expiry (tombstone lookup)."""


@dataclass
class _Entry:
    session: UploadSession
    timer: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    def cancel_timer(self) -> None:
        if self.timer is not None and self.timer is not asyncio.current_task():
            self.timer.cancel()
        self.timer = None


class InMemorySessionRegistry(SessionRegistry):
    """Process-local registry guarded by an asyncio lock.

    Each session with a scheduled expiry owns a timer task; the reaper and
    lazy checks on read cover timers that were lost or raced.
    """

    def __init__(
        self,
        reaper_interval_seconds: float = 60,
        tombstone_limit: int = 1024,
    ) -> None:
        super().__init__(reaper_interval_seconds)
        self._entries: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._tombstones: "OrderedDict[str, None]" = OrderedDict()
        self._tombstone_limit = tombstone_limit

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _evict(self, upload_id: str) -> UploadSession:
        entry = self._entries.pop(upload_id)
        entry.cancel_timer()
        self._tombstones[upload_id] = None
        while len(self._tombstones) > self._tombstone_limit:
            self._tombstones.popitem(last=False)
        return entry.session

    def _lookup(self, upload_id: str) -> Tuple[Optional[_Entry], Optional[UploadSession]]:
        """Return (live entry, None) or (None, session evicted for expiry)."""
        entry = self._entries.get(upload_id)
        if entry is None:
            return None, None
        if entry.session.is_expired():
            return None, self._evict(upload_id)
        return entry, None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, session: UploadSession) -> None:
        async with self._lock:
            if session.upload_id in self._entries:
                raise ValueError(f"Upload session already exists: {session.upload_id}")
            self._entries[session.upload_id] = _Entry(session=session.model_copy(deep=True))
            total = len(self._entries)
        logger.debug("[sessions] Session stored: %s (total: %d)", session.upload_id, total)

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        async with self._lock:
            entry, expired = self._lookup(upload_id)
            found = entry.session.model_copy(deep=True) if entry else None
        if expired is not None:
            await self._fire_expired(expired)
        logger.debug(
            "[sessions] Session lookup: %s - %s", upload_id, "FOUND" if found else "NOT FOUND"
        )
        return found

    async def attach_external_info(
        self, upload_id: str, external_upload_id: str, external_object_key: str
    ) -> bool:
        attached = False
        async with self._lock:
            entry, expired = self._lookup(upload_id)
            if entry is not None:
                session = entry.session
                if session.state == SessionState.CREATED and not session.has_external_upload:
                    session.external_upload_id = external_upload_id
                    session.external_object_key = external_object_key
                    session.state = SessionState.AWAITING_PARTS
                    attached = True
        if expired is not None:
            await self._fire_expired(expired)

        if attached:
            logger.info(
                "[sessions] External upload attached: %s -> %s (%s)",
                upload_id, external_upload_id, external_object_key,
            )
        else:
            logger.error("[sessions] Cannot attach external upload, session not attachable: %s", upload_id)
        return attached

    async def transition(
        self, upload_id: str, from_states: Iterable[SessionState], to_state: SessionState
    ) -> bool:
        allowed = frozenset(from_states)
        moved = False
        async with self._lock:
            entry, expired = self._lookup(upload_id)
            if entry is not None and entry.session.state in allowed:
                entry.session.state = to_state
                moved = True
        if expired is not None:
            await self._fire_expired(expired)
        return moved

    async def delete(self, upload_id: str) -> bool:
        async with self._lock:
            entry = self._entries.pop(upload_id, None)
            if entry is not None:
                entry.cancel_timer()
        logger.debug(
            "[sessions] Session deleted: %s - %s", upload_id, "SUCCESS" if entry else "NOT FOUND"
        )
        return entry is not None

    async def count(self) -> int:
        return len(await self.list_ids())

    async def list_ids(self) -> List[str]:
        async with self._lock:
            return [
                upload_id
                for upload_id, entry in self._entries.items()
                if not entry.session.is_expired()
            ]

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def schedule_expiry(self, upload_id: str, ttl_seconds: float) -> bool:
        async with self._lock:
            entry, expired = self._lookup(upload_id)
            if entry is not None:
                entry.cancel_timer()
                entry.session.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
                entry.timer = asyncio.create_task(self._expire_after(upload_id, ttl_seconds))
        if expired is not None:
            await self._fire_expired(expired)
            return False
        if entry is None:
            return False
        logger.debug("[sessions] Expiry scheduled for %s in %ss", upload_id, ttl_seconds)
        return True

    async def cancel_expiry_timer(self, upload_id: str) -> bool:
        async with self._lock:
            entry = self._entries.get(upload_id)
            if entry is None:
                return False
            entry.cancel_timer()
            entry.session.expires_at = None
        return True

    async def _expire_after(self, upload_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        expired: Optional[UploadSession] = None
        async with self._lock:
            entry = self._entries.get(upload_id)
            # The timer is authoritative once it fires, as long as it is
            # still the session's current timer.
            if (
                entry is not None
                and entry.timer is asyncio.current_task()
                and entry.session.expires_at is not None
                and entry.session.state in EXPIRABLE_STATES
            ):
                expired = self._evict(upload_id)
        if expired is not None:
            await self._fire_expired(expired)

    async def sweep_expired(self) -> int:
        async with self._lock:
            now = utcnow()
            due = [
                upload_id
                for upload_id, entry in self._entries.items()
                if entry.session.is_expired(now)
            ]
            expired = [self._evict(upload_id) for upload_id in due]
        for session in expired:
            await self._fire_expired(session)
        if expired:
            logger.info("[sessions] Sweep: evicted %d expired sessions", len(expired))
        return len(expired)

    async def expired_recently(self, upload_id: str) -> bool:
        async with self._lock:
            return upload_id in self._tombstones

    async def stop(self) -> None:
        await super().stop()
        async with self._lock:
            timers = [e.timer for e in self._entries.values() if e.timer is not None]
            for entry in self._entries.values():
                entry.cancel_timer()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
