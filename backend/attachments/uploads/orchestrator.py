"""Upload orchestrator.

Composes the session registry and the storage gateway into the operations the
file-attachment pipeline calls:

    initiate  -> session + store-side multipart upload + N part URLs
    complete  -> validate tokens, assemble, return the object descriptor
    abort     -> drop the session and free the store-side upload

Failures never escape as exceptions: each operation returns a result model
carrying an ``UploadFailure`` (reason code + message).  Any failure after the
store-side upload was attached triggers a best-effort abort so no billable
multipart upload is orphaned.
"""
import asyncio
import logging
import uuid
from typing import Callable, List, Optional, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from attachments.errors import (
    ExpiredSession,
    InvalidSessionState,
    PartCountMismatch,
    SessionNotFound,
    SessionOwnershipError,
    StoreCompletionFailure,
    StoreInitiationFailure,
    UploadError,
    UploadRejected,
)
from attachments.events.schemas import UploadEvent, UploadOutcome
from attachments.events.service import UploadEventLog
from attachments.sessions.registry import SessionRegistry
from attachments.sessions.schemas import EXPIRABLE_STATES, SessionState, UploadSession
from attachments.storage.gateway import S3MultipartGateway
from attachments.storage.schemas import ObjectDescriptor

from .schemas import (
    AbortUploadRequest,
    AbortUploadResult,
    ActiveSessions,
    CompleteUploadRequest,
    CompleteUploadResult,
    InitiateUploadRequest,
    InitiateUploadResult,
    SessionView,
    UploadFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SESSION_TTL = 7200            # 2 hours
DEFAULT_MAX_FILE_SIZE = 500 * 1024 * 1024
DEFAULT_MAX_PARTS = 10000


class UploadOrchestrator:
    """Resumable multipart upload coordinator.

    Args:
        registry:            Session registry (in-memory or Redis).
        gateway:             Object store gateway.
        session_ttl_seconds: Time a session may stay pending before it is
                             treated as abandoned.
        max_file_size_bytes: Upper bound on the declared file size.
        max_parts:           Upper bound on ``totalChunks``.
        events:              Optional ledger of finished sessions.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        gateway: S3MultipartGateway,
        session_ttl_seconds: float = DEFAULT_SESSION_TTL,
        max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE,
        max_parts: int = DEFAULT_MAX_PARTS,
        events: Optional[UploadEventLog] = None,
    ) -> None:
        self._registry = registry
        self._gateway = gateway
        self._session_ttl = session_ttl_seconds
        self._max_file_size = max_file_size_bytes
        self._max_parts = max_parts
        self._events = events
        registry.set_expiry_handler(self.handle_expired)

    @classmethod
    def from_config(
        cls,
        config,
        registry: SessionRegistry,
        gateway: S3MultipartGateway,
        events: Optional[UploadEventLog] = None,
    ) -> "UploadOrchestrator":
        uploads = config.uploads
        return cls(
            registry=registry,
            gateway=gateway,
            session_ttl_seconds=uploads.session_ttl_seconds,
            max_file_size_bytes=uploads.max_file_size_bytes,
            max_parts=uploads.max_parts,
            events=events,
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def gateway(self) -> S3MultipartGateway:
        return self._gateway

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    async def _run(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking gateway call in the default executor."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    def _record(self, session: UploadSession, outcome: UploadOutcome,
                reason: Optional[str] = None, size: Optional[int] = None) -> None:
        if self._events is None:
            return
        # Stays on the loop thread: the DuckDB connection is single-threaded
        # and an append is a short local write.
        try:
            self._events.record(UploadEvent(
                upload_id=session.upload_id,
                conversation_id=session.conversation_id,
                outcome=outcome,
                reason=reason,
                total_chunks=session.total_chunks,
                object_key=session.external_object_key,
                size=size,
            ))
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[uploads] Failed to record %s event for %s: %s",
                           outcome.value, session.upload_id, exc)

    def _validate(self, request: InitiateUploadRequest) -> None:
        if request.file_size > self._max_file_size:
            limit_mb = self._max_file_size // (1024 * 1024)
            raise UploadRejected(f"File size exceeds maximum of {limit_mb} MB")
        if request.total_chunks > self._max_parts:
            raise UploadRejected(
                f"Too many parts: {request.total_chunks} (maximum {self._max_parts})"
            )

    @staticmethod
    def _check_owner(session: UploadSession, owner_id: Optional[str]) -> None:
        if owner_id is not None and owner_id != session.owner_id:
            raise SessionOwnershipError(session.upload_id)

    async def _missing(self, upload_id: str) -> SessionNotFound:
        if await self._registry.expired_recently(upload_id):
            logger.info("[uploads] Upload %s was abandoned (expired)", upload_id)
            return ExpiredSession(upload_id)
        return SessionNotFound(upload_id)

    async def _abort_store_upload(self, key: str, external_upload_id: str) -> bool:
        return await self._run(self._gateway.abort_upload, key, external_upload_id)

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def initiate(self, request: InitiateUploadRequest) -> InitiateUploadResult:
        """Register a session, start the store-side upload and issue part URLs."""
        try:
            self._validate(request)
        except UploadRejected as exc:
            logger.warning("[uploads] Initiation rejected: %s", exc.message)
            return InitiateUploadResult(success=False, error=UploadFailure.from_error(exc))

        upload_id = str(uuid.uuid4())
        session = UploadSession(
            upload_id=upload_id,
            conversation_id=request.conversation_id,
            owner_id=request.owner_id,
            file_name=request.file_name,
            file_size=request.file_size,
            file_type=request.file_type,
            total_chunks=request.total_chunks,
        )
        await self._registry.create(session)
        await self._registry.schedule_expiry(upload_id, self._session_ttl)

        key = self._gateway.build_object_key(request.conversation_id, upload_id)
        metadata = {
            "upload-id": upload_id,
            "conversation-id": request.conversation_id,
            "total-chunks": str(request.total_chunks),
        }

        try:
            external_upload_id = await self._run(
                self._gateway.initiate_multipart, key, request.file_type, metadata
            )
        except StoreInitiationFailure as exc:
            await self._registry.delete(upload_id)
            exc.upload_id = upload_id
            self._record(session, UploadOutcome.FAILED, exc.reason.value)
            return InitiateUploadResult(success=False, error=UploadFailure.from_error(exc))

        if not await self._registry.attach_external_info(upload_id, external_upload_id, key):
            # Session vanished (aborted or expired) while the store call ran.
            await self._abort_store_upload(key, external_upload_id)
            await self._registry.delete(upload_id)
            exc = SessionNotFound(upload_id)
            return InitiateUploadResult(success=False, error=UploadFailure.from_error(exc))

        try:
            authorizations = await self._run(
                self._gateway.generate_part_authorizations,
                external_upload_id, key, request.total_chunks,
            )
        except StoreInitiationFailure as exc:
            await self._abort_store_upload(key, external_upload_id)
            await self._registry.delete(upload_id)
            exc.upload_id = upload_id
            self._record(session, UploadOutcome.FAILED, exc.reason.value)
            return InitiateUploadResult(success=False, error=UploadFailure.from_error(exc))

        logger.info(
            "[uploads] Upload initiated: %s (%s, %d parts, conversation=%s)",
            upload_id, request.file_name, request.total_chunks, request.conversation_id,
        )
        return InitiateUploadResult(
            success=True,
            upload_id=upload_id,
            part_authorizations=authorizations,
            expires_in=self._gateway.part_url_ttl_seconds,
        )

    async def complete(
        self, upload_id: str, request: CompleteUploadRequest
    ) -> CompleteUploadResult:
        """Assemble the uploaded parts into the final object.

        A token-count mismatch leaves the session and the store-side upload
        untouched; the client may retry or abort.
        """
        session = await self._registry.get(upload_id)
        if session is None:
            exc = await self._missing(upload_id)
            return CompleteUploadResult(
                success=False, upload_id=upload_id, error=UploadFailure.from_error(exc)
            )

        try:
            self._check_owner(session, request.owner_id)
            if not session.has_external_upload:
                raise InvalidSessionState(
                    "Upload has not been initialized with the store yet", upload_id
                )
            if len(request.completion_tokens) != session.total_chunks:
                raise PartCountMismatch(
                    expected=session.total_chunks,
                    received=len(request.completion_tokens),
                    upload_id=upload_id,
                )
        except UploadError as exc:
            logger.warning("[uploads] Completion refused for %s: %s", upload_id, exc.message)
            return CompleteUploadResult(
                success=False, upload_id=upload_id, error=UploadFailure.from_error(exc)
            )

        if not await self._registry.transition(
            upload_id, [SessionState.AWAITING_PARTS], SessionState.COMPLETING
        ):
            current = await self._registry.get(upload_id)
            if current is None:
                exc = await self._missing(upload_id)
            else:
                exc = InvalidSessionState(
                    f"Upload session is {current.state.value}", upload_id
                )
            return CompleteUploadResult(
                success=False, upload_id=upload_id, error=UploadFailure.from_error(exc)
            )

        await self._registry.cancel_expiry_timer(upload_id)

        try:
            descriptor = await self._run(
                self._gateway.complete_multipart, session, request.completion_tokens
            )
        except StoreCompletionFailure as exc:
            descriptor = await self._reconcile(session, exc)
            if descriptor is None:
                return await self._fail_completion(session, exc)
        except asyncio.CancelledError:
            # The store call may still finish; hand the session back to the
            # TTL so a retry reconciles it or expiry frees it.
            logger.warning("[uploads] Completion of %s cancelled, restoring session", upload_id)
            await self._registry.transition(
                upload_id, [SessionState.COMPLETING], SessionState.AWAITING_PARTS
            )
            await self._registry.schedule_expiry(upload_id, self._session_ttl)
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("[uploads] Unexpected error completing %s", upload_id)
            failure = StoreCompletionFailure(
                f"Failed to complete multipart upload: {exc}", upload_id
            )
            return await self._fail_completion(session, failure)

        await self._registry.delete(upload_id)
        self._record(session, UploadOutcome.COMPLETED, size=descriptor.size)
        logger.info(
            "[uploads] Upload completed: %s -> %s (%d bytes)",
            upload_id, descriptor.key, descriptor.size,
        )
        return CompleteUploadResult(success=True, upload_id=upload_id, descriptor=descriptor)

    async def _fail_completion(
        self, session: UploadSession, exc: StoreCompletionFailure
    ) -> CompleteUploadResult:
        """Free the store-side upload and drop a session whose assembly failed."""
        upload_id = session.upload_id
        try:
            await self._run(self._gateway.abort_multipart, session)
        finally:
            await self._registry.delete(upload_id)
            self._record(session, UploadOutcome.FAILED, exc.reason.value)
        return CompleteUploadResult(
            success=False, upload_id=upload_id, error=UploadFailure.from_error(exc)
        )

    async def _reconcile(
        self, session: UploadSession, exc: StoreCompletionFailure
    ) -> Optional[ObjectDescriptor]:
        """Recover a completion whose response was lost.

        ``NoSuchUpload`` after a completion call can mean an earlier attempt
        already assembled the object; if the object exists, treat it as done.
        """
        if exc.store_code != "NoSuchUpload":
            return None
        key = session.external_object_key
        try:
            exists = await self._run(self._gateway.exists_object, key)
        except (ClientError, BotoCoreError) as lookup_exc:
            logger.error("[uploads] Existence check failed for %s: %s", key, lookup_exc)
            return None
        if not exists:
            return None
        logger.info("[uploads] Upload %s already assembled at %s", session.upload_id, key)
        return await self._run(self._gateway.describe_object, key)

    async def abort(
        self, upload_id: str, request: Optional[AbortUploadRequest] = None
    ) -> AbortUploadResult:
        """Cancel an upload.  Aborting an unknown or finished upload is a no-op."""
        owner_id = request.owner_id if request else None

        session = await self._registry.get(upload_id)
        if session is None:
            logger.info("[uploads] Abort requested for unknown upload %s", upload_id)
            return AbortUploadResult(aborted=False)

        try:
            self._check_owner(session, owner_id)
        except SessionOwnershipError as exc:
            return AbortUploadResult(success=False, error=UploadFailure.from_error(exc))

        if not await self._registry.transition(upload_id, EXPIRABLE_STATES, SessionState.ABORTED):
            current = await self._registry.get(upload_id)
            if current is None:
                return AbortUploadResult(aborted=False)
            exc = InvalidSessionState(
                "Upload is being finalized and can no longer be aborted", upload_id
            )
            return AbortUploadResult(success=False, error=UploadFailure.from_error(exc))

        # Re-read: external ids may have been attached since the first lookup.
        session = await self._registry.get(upload_id) or session
        await self._registry.delete(upload_id)

        if session.has_external_upload:
            await self._run(self._gateway.abort_multipart, session)
        self._record(session, UploadOutcome.ABORTED)
        logger.info("[uploads] Upload aborted: %s", upload_id)
        return AbortUploadResult(aborted=True)

    async def handle_expired(self, session: UploadSession) -> None:
        """Expiry callback: free the abandoned store-side upload."""
        if session.has_external_upload:
            await self._run(self._gateway.abort_multipart, session)
        self._record(session, UploadOutcome.EXPIRED, reason="abandoned")

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    async def get_session(self, upload_id: str) -> Optional[SessionView]:
        session = await self._registry.get(upload_id)
        if session is None:
            return None
        return SessionView(
            upload_id=session.upload_id,
            conversation_id=session.conversation_id,
            file_name=session.file_name,
            file_type=session.file_type,
            total_chunks=session.total_chunks,
            state=session.state,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )

    async def list_sessions(self) -> ActiveSessions:
        upload_ids: List[str] = await self._registry.list_ids()
        return ActiveSessions(upload_ids=upload_ids, count=len(upload_ids))
