"""Redis-backed session registry for multi-replica deployments.

Layout (``prefix`` defaults to ``uploads``):
  * ``{prefix}:session:{upload_id}``   session JSON
  * ``{prefix}:expiry``                sorted set, score = TTL deadline (epoch seconds)
  * ``{prefix}:expired:{upload_id}``   tombstone left by expiry

Read-modify-write operations run under WATCH/MULTI.  The reaper claims an
expired session with ZREM: only the replica whose ZREM removed the member
frees the store-side upload, so concurrent reaper passes never double-abort.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from .registry import SessionRegistry
from .schemas import SessionState, UploadSession, utcnow

logger = logging.getLogger(__name__)

_TOMBSTONE_TTL_SECONDS = 24 * 60 * 60


class RedisSessionRegistry(SessionRegistry):
    """Session registry shared by every replica through one Redis keyspace.

    Args:
        client:                  ``redis.asyncio`` client created with
                                 ``decode_responses=True``.
        key_prefix:              Namespace for all keys.
        reaper_interval_seconds: Period of the background sweep.
    """

    def __init__(
        self,
        client: "redis.Redis",
        key_prefix: str = "uploads",
        reaper_interval_seconds: float = 60,
    ) -> None:
        super().__init__(reaper_interval_seconds)
        self._redis = client
        self._prefix = key_prefix.rstrip(":")

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSessionRegistry":
        client = redis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    async def close(self) -> None:
        await self.stop()
        await self._redis.aclose()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _session_key(self, upload_id: str) -> str:
        return f"{self._prefix}:session:{upload_id}"

    def _tombstone_key(self, upload_id: str) -> str:
        return f"{self._prefix}:expired:{upload_id}"

    @property
    def _expiry_key(self) -> str:
        return f"{self._prefix}:expiry"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load(self, upload_id: str) -> Optional[UploadSession]:
        raw = await self._redis.get(self._session_key(upload_id))
        if raw is None:
            return None
        return UploadSession.model_validate_json(raw)

    async def _claim_expired(self, upload_id: str) -> Optional[UploadSession]:
        """Remove an expired session if this caller wins the ZREM race.

        A session whose deadline was cleared (finalization in flight) keeps
        its key; only the stale deadline entry is dropped.
        """
        if not await self._redis.zrem(self._expiry_key, upload_id):
            return None
        key = self._session_key(upload_id)
        raw = await self._redis.get(key)
        if raw is None:
            return None
        session = UploadSession.model_validate_json(raw)
        if not session.is_expired():
            if session.expires_at is not None:
                # Deadline was pushed back after the sweep read the set.
                await self._redis.zadd(self._expiry_key, {upload_id: session.expires_at.timestamp()})
            return None
        await self._redis.delete(key)
        await self._redis.set(self._tombstone_key(upload_id), "1", ex=_TOMBSTONE_TTL_SECONDS)
        return session

    async def _expire(self, upload_id: str) -> None:
        session = await self._claim_expired(upload_id)
        if session is not None:
            await self._fire_expired(session)

    async def _update(
        self, upload_id: str, mutate: Callable[[UploadSession], bool]
    ) -> Tuple[Optional[UploadSession], bool]:
        """Apply *mutate* under WATCH.

        Returns ``(session, expired)``: the stored session when *mutate*
        accepted it, and whether the session was found past its TTL.
        """
        key = self._session_key(upload_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.reset()
                        return None, False
                    session = UploadSession.model_validate_json(raw)
                    if session.is_expired():
                        await pipe.reset()
                        return None, True
                    if not mutate(session):
                        await pipe.reset()
                        return None, False
                    pipe.multi()
                    pipe.set(key, session.model_dump_json(), xx=True)
                    await pipe.execute()
                    return session, False
                except WatchError:
                    logger.debug("[sessions/redis] Concurrent update on %s, retrying", upload_id)
                    continue

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, session: UploadSession) -> None:
        stored = await self._redis.set(
            self._session_key(session.upload_id), session.model_dump_json(), nx=True
        )
        if not stored:
            raise ValueError(f"Upload session already exists: {session.upload_id}")
        logger.debug("[sessions/redis] Session stored: %s", session.upload_id)

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        session = await self._load(upload_id)
        if session is None:
            return None
        if session.is_expired():
            await self._expire(upload_id)
            return None
        return session

    async def attach_external_info(
        self, upload_id: str, external_upload_id: str, external_object_key: str
    ) -> bool:
        def _attach(session: UploadSession) -> bool:
            if session.state != SessionState.CREATED or session.has_external_upload:
                return False
            session.external_upload_id = external_upload_id
            session.external_object_key = external_object_key
            session.state = SessionState.AWAITING_PARTS
            return True

        session, expired = await self._update(upload_id, _attach)
        if expired:
            await self._expire(upload_id)
        if session is None:
            logger.error("[sessions/redis] Cannot attach external upload, session not attachable: %s", upload_id)
            return False
        logger.info(
            "[sessions/redis] External upload attached: %s -> %s (%s)",
            upload_id, external_upload_id, external_object_key,
        )
        return True

    async def transition(
        self, upload_id: str, from_states: Iterable[SessionState], to_state: SessionState
    ) -> bool:
        allowed = frozenset(from_states)

        def _move(session: UploadSession) -> bool:
            if session.state not in allowed:
                return False
            session.state = to_state
            return True

        session, expired = await self._update(upload_id, _move)
        if expired:
            await self._expire(upload_id)
        return session is not None

    async def delete(self, upload_id: str) -> bool:
        removed = await self._redis.delete(self._session_key(upload_id))
        await self._redis.zrem(self._expiry_key, upload_id)
        return bool(removed)

    async def count(self) -> int:
        return len(await self.list_ids())

    async def list_ids(self) -> List[str]:
        marker = self._session_key("")
        ids: List[str] = []
        async for key in self._redis.scan_iter(match=f"{marker}*"):
            upload_id = key[len(marker):]
            session = await self._load(upload_id)
            if session is not None and not session.is_expired():
                ids.append(upload_id)
        return ids

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def schedule_expiry(self, upload_id: str, ttl_seconds: float) -> bool:
        deadline = utcnow() + timedelta(seconds=ttl_seconds)

        def _set_deadline(session: UploadSession) -> bool:
            session.expires_at = deadline
            return True

        session, expired = await self._update(upload_id, _set_deadline)
        if expired:
            await self._expire(upload_id)
        if session is None:
            return False
        await self._redis.zadd(self._expiry_key, {upload_id: deadline.timestamp()})
        return True

    async def cancel_expiry_timer(self, upload_id: str) -> bool:
        def _clear_deadline(session: UploadSession) -> bool:
            session.expires_at = None
            return True

        session, expired = await self._update(upload_id, _clear_deadline)
        if expired:
            await self._expire(upload_id)
            return False
        if session is None:
            return False
        await self._redis.zrem(self._expiry_key, upload_id)
        return True

    async def sweep_expired(self) -> int:
        due = await self._redis.zrangebyscore(self._expiry_key, "-inf", utcnow().timestamp())
        freed = 0
        for upload_id in due:
            session = await self._claim_expired(upload_id)
            if session is None:
                continue
            await self._fire_expired(session)
            freed += 1
        if freed:
            logger.info("[sessions/redis] Sweep: evicted %d expired sessions", freed)
        return freed

    async def expired_recently(self, upload_id: str) -> bool:
        return bool(await self._redis.exists(self._tombstone_key(upload_id)))
