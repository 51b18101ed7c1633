"""Tests for the upload orchestrator (registry in memory, S3 client mocked)."""
import asyncio
import threading
from unittest.mock import AsyncMock, patch

import pytest

from attachments.errors import RESTART_MESSAGE, FailureReason
from attachments.events.schemas import UploadOutcome
from attachments.sessions.schemas import SessionState
from attachments.uploads.orchestrator import UploadOrchestrator
from attachments.uploads.schemas import (
    AbortUploadRequest,
    CompleteUploadRequest,
    InitiateUploadRequest,
)

from conftest import EXTERNAL_UPLOAD_ID, OBJECT_SIZE, client_error


def _request(total_chunks: int = 3, **overrides) -> InitiateUploadRequest:
    fields = dict(
        conversation_id="conv-1",
        owner_id="user-1",
        file_name="scan.pdf.enc",
        file_size=3 * 1024 * 1024,
        file_type="application/pdf",
        total_chunks=total_chunks,
    )
    fields.update(overrides)
    return InitiateUploadRequest(**fields)


def _tokens(count: int):
    return CompleteUploadRequest(completion_tokens=[f'"etag-{i}"' for i in range(1, count + 1)])


def _outcomes(event_log, upload_id):
    return [e.outcome for e in event_log.get_events(upload_id=upload_id)]


class TestInitiate:
    @pytest.mark.asyncio
    async def test_issues_one_authorization_per_part(self, orchestrator, registry):
        result = await orchestrator.initiate(_request(total_chunks=4))

        assert result.success
        assert [a.part_number for a in result.part_authorizations] == [1, 2, 3, 4]
        assert len({a.url for a in result.part_authorizations}) == 4
        assert result.expires_in == 7200

        session = await registry.get(result.upload_id)
        assert session.state == SessionState.AWAITING_PARTS
        assert session.external_upload_id == EXTERNAL_UPLOAD_ID
        assert session.external_object_key.startswith(f"encrypted/conv-1/{result.upload_id}/")
        assert session.expires_at is not None

    @pytest.mark.asyncio
    async def test_store_metadata(self, orchestrator, s3_client):
        result = await orchestrator.initiate(_request(total_chunks=2))
        kwargs = s3_client.create_multipart_upload.call_args.kwargs
        assert kwargs["Metadata"] == {
            "upload-id": result.upload_id,
            "conversation-id": "conv-1",
            "total-chunks": "2",
        }
        assert kwargs["ContentType"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_upload_ids_are_unique(self, orchestrator):
        first = await orchestrator.initiate(_request())
        second = await orchestrator.initiate(_request())
        assert first.upload_id != second.upload_id

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self, orchestrator, s3_client, registry):
        result = await orchestrator.initiate(_request(file_size=11 * 1024 * 1024))
        assert not result.success
        assert result.error.reason == FailureReason.UPLOAD_REJECTED
        assert "10 MB" in result.error.message
        s3_client.create_multipart_upload.assert_not_called()
        assert await registry.count() == 0

    @pytest.mark.asyncio
    async def test_too_many_parts_rejected(self, orchestrator, s3_client):
        result = await orchestrator.initiate(_request(total_chunks=101))
        assert result.error.reason == FailureReason.UPLOAD_REJECTED
        s3_client.create_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_initiation_failure_leaks_nothing(
        self, orchestrator, s3_client, registry, event_log
    ):
        s3_client.create_multipart_upload.side_effect = client_error(
            "ServiceUnavailable", "CreateMultipartUpload", 503
        )
        result = await orchestrator.initiate(_request())

        assert not result.success
        assert result.error.reason == FailureReason.STORE_INITIATION_FAILURE
        assert result.error.status_code == 502
        assert await registry.count() == 0
        s3_client.abort_multipart_upload.assert_not_called()
        assert [e.outcome for e in event_log.get_events()] == [UploadOutcome.FAILED]

    @pytest.mark.asyncio
    async def test_attach_failure_triggers_exactly_one_abort(
        self, orchestrator, registry, s3_client
    ):
        with patch.object(registry, "attach_external_info", AsyncMock(return_value=False)):
            result = await orchestrator.initiate(_request())

        assert not result.success
        assert result.error.reason == FailureReason.SESSION_NOT_FOUND
        assert result.error.message == RESTART_MESSAGE
        assert s3_client.abort_multipart_upload.call_count == 1
        assert s3_client.abort_multipart_upload.call_args.kwargs["UploadId"] == EXTERNAL_UPLOAD_ID
        s3_client.generate_presigned_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_presign_failure_aborts_and_drops_session(
        self, orchestrator, registry, s3_client
    ):
        s3_client.generate_presigned_url.side_effect = client_error(
            "InvalidAccessKeyId", "UploadPart", 403
        )
        result = await orchestrator.initiate(_request())

        assert result.error.reason == FailureReason.STORE_INITIATION_FAILURE
        assert s3_client.abort_multipart_upload.call_count == 1
        assert await registry.count() == 0


class TestComplete:
    @pytest.mark.asyncio
    async def test_scenario_a_three_parts(self, orchestrator, registry, s3_client, event_log):
        """init(3) -> 3 authorizations -> complete with 3 tokens -> descriptor."""
        init = await orchestrator.initiate(_request(total_chunks=3))
        assert len(init.part_authorizations) == 3

        result = await orchestrator.complete(init.upload_id, _tokens(3))

        assert result.success
        assert result.descriptor.key
        assert result.descriptor.size == OBJECT_SIZE
        assert await registry.get(init.upload_id) is None
        s3_client.complete_multipart_upload.assert_called_once()
        assert _outcomes(event_log, init.upload_id) == [UploadOutcome.COMPLETED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [4, 6])
    async def test_count_mismatch_never_reaches_store(
        self, orchestrator, registry, s3_client, count
    ):
        init = await orchestrator.initiate(_request(total_chunks=5))

        result = await orchestrator.complete(init.upload_id, _tokens(count))

        assert not result.success
        assert result.error.reason == FailureReason.PART_COUNT_MISMATCH
        assert result.error.message == f"Expected 5 parts, received {count}"
        s3_client.complete_multipart_upload.assert_not_called()
        s3_client.abort_multipart_upload.assert_not_called()
        assert (await registry.get(init.upload_id)).state == SessionState.AWAITING_PARTS

    @pytest.mark.asyncio
    async def test_scenario_b_mismatch_then_abort(self, orchestrator, s3_client, event_log):
        """init(5) -> complete with 4 -> mismatch -> abort succeeds -> second abort is a no-op."""
        init = await orchestrator.initiate(_request(total_chunks=5))

        mismatch = await orchestrator.complete(init.upload_id, _tokens(4))
        assert mismatch.error.reason == FailureReason.PART_COUNT_MISMATCH

        first = await orchestrator.abort(init.upload_id)
        second = await orchestrator.abort(init.upload_id)

        assert first.aborted is True
        assert second.success and second.aborted is False
        assert s3_client.abort_multipart_upload.call_count == 1
        assert _outcomes(event_log, init.upload_id) == [UploadOutcome.ABORTED]

    @pytest.mark.asyncio
    async def test_retry_after_mismatch_is_safe(self, orchestrator, s3_client):
        init = await orchestrator.initiate(_request(total_chunks=3))
        first = await orchestrator.complete(init.upload_id, _tokens(2))
        retry = await orchestrator.complete(init.upload_id, _tokens(2))
        assert first.error.reason == retry.error.reason == FailureReason.PART_COUNT_MISMATCH

        done = await orchestrator.complete(init.upload_id, _tokens(3))
        assert done.success
        s3_client.complete_multipart_upload.assert_called_once()

    @pytest.mark.asyncio
    async def test_unknown_upload(self, orchestrator):
        result = await orchestrator.complete("does-not-exist", _tokens(1))
        assert result.error.reason == FailureReason.SESSION_NOT_FOUND
        assert result.error.message == RESTART_MESSAGE
        assert result.error.status_code == 404

    @pytest.mark.asyncio
    async def test_second_completion_after_success(self, orchestrator):
        init = await orchestrator.initiate(_request(total_chunks=1))
        assert (await orchestrator.complete(init.upload_id, _tokens(1))).success
        again = await orchestrator.complete(init.upload_id, _tokens(1))
        assert again.error.reason == FailureReason.SESSION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_store_rejection_aborts_automatically(
        self, orchestrator, registry, s3_client, event_log
    ):
        s3_client.complete_multipart_upload.side_effect = client_error("InvalidPart")
        init = await orchestrator.initiate(_request(total_chunks=2))

        result = await orchestrator.complete(init.upload_id, _tokens(2))

        assert result.error.reason == FailureReason.STORE_COMPLETION_FAILURE
        assert s3_client.abort_multipart_upload.call_count == 1
        assert await registry.get(init.upload_id) is None
        assert _outcomes(event_log, init.upload_id) == [UploadOutcome.FAILED]

    @pytest.mark.asyncio
    async def test_lost_response_reconciled_when_object_exists(
        self, orchestrator, s3_client
    ):
        """NoSuchUpload with the object present means an earlier attempt assembled it."""
        s3_client.complete_multipart_upload.side_effect = client_error("NoSuchUpload", status=404)
        init = await orchestrator.initiate(_request(total_chunks=2))

        result = await orchestrator.complete(init.upload_id, _tokens(2))

        assert result.success
        assert result.descriptor.size == OBJECT_SIZE
        s3_client.abort_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_such_upload_without_object_fails(self, orchestrator, s3_client):
        s3_client.complete_multipart_upload.side_effect = client_error("NoSuchUpload", status=404)
        s3_client.head_object.side_effect = client_error("404", "HeadObject", 404)
        init = await orchestrator.initiate(_request(total_chunks=2))

        result = await orchestrator.complete(init.upload_id, _tokens(2))

        assert result.error.reason == FailureReason.STORE_COMPLETION_FAILURE

    @pytest.mark.asyncio
    async def test_wrong_owner_leaves_session_intact(self, orchestrator, registry, s3_client):
        init = await orchestrator.initiate(_request(total_chunks=1))
        request = CompleteUploadRequest(completion_tokens=["e1"], owner_id="intruder")

        result = await orchestrator.complete(init.upload_id, request)

        assert result.error.reason == FailureReason.SESSION_OWNERSHIP
        assert result.error.status_code == 403
        s3_client.complete_multipart_upload.assert_not_called()
        assert await registry.get(init.upload_id) is not None

    @pytest.mark.asyncio
    async def test_concurrent_completions_finalize_once(self, orchestrator, s3_client):
        init = await orchestrator.initiate(_request(total_chunks=2))

        results = await asyncio.gather(
            orchestrator.complete(init.upload_id, _tokens(2)),
            orchestrator.complete(init.upload_id, _tokens(2)),
        )

        assert sum(1 for r in results if r.success) == 1
        assert s3_client.complete_multipart_upload.call_count == 1

    @pytest.mark.asyncio
    async def test_completion_stops_ttl(self, orchestrator, registry):
        init = await orchestrator.initiate(_request(total_chunks=1))
        with patch.object(registry, "cancel_expiry_timer", wraps=registry.cancel_expiry_timer) as spy:
            await orchestrator.complete(init.upload_id, _tokens(1))
        spy.assert_awaited_once_with(init.upload_id)

    @pytest.mark.asyncio
    async def test_unexpected_error_during_finalization_cleans_up(
        self, orchestrator, registry, s3_client, event_log
    ):
        s3_client.complete_multipart_upload.side_effect = RuntimeError("boom")
        init = await orchestrator.initiate(_request(total_chunks=2))

        result = await orchestrator.complete(init.upload_id, _tokens(2))

        assert not result.success
        assert result.error.reason == FailureReason.STORE_COMPLETION_FAILURE
        assert "boom" in result.error.message
        assert s3_client.abort_multipart_upload.call_count == 1
        assert await registry.get(init.upload_id) is None
        assert _outcomes(event_log, init.upload_id) == [UploadOutcome.FAILED]
        assert (await orchestrator.abort(init.upload_id)).aborted is False

    @pytest.mark.asyncio
    async def test_cancelled_finalization_restores_session(
        self, orchestrator, registry, s3_client
    ):
        started = threading.Event()
        release = threading.Event()

        def slow_complete(**kwargs):
            started.set()
            release.wait(5)
            return {}

        s3_client.complete_multipart_upload.side_effect = slow_complete
        init = await orchestrator.initiate(_request(total_chunks=2))

        task = asyncio.create_task(orchestrator.complete(init.upload_id, _tokens(2)))
        while not started.is_set():
            await asyncio.sleep(0.01)
        task.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

        session = await registry.get(init.upload_id)
        assert session.state == SessionState.AWAITING_PARTS
        assert session.expires_at is not None
        assert (await orchestrator.abort(init.upload_id)).aborted is True


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_unknown(self, orchestrator, s3_client):
        result = await orchestrator.abort("ghost")
        assert result.success
        assert result.aborted is False
        s3_client.abort_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_wrong_owner(self, orchestrator, registry):
        init = await orchestrator.initiate(_request())
        result = await orchestrator.abort(init.upload_id, AbortUploadRequest(owner_id="intruder"))
        assert result.error.reason == FailureReason.SESSION_OWNERSHIP
        assert await registry.get(init.upload_id) is not None

    @pytest.mark.asyncio
    async def test_abort_during_completion_refused(self, orchestrator, registry, s3_client):
        init = await orchestrator.initiate(_request())
        await registry.transition(
            init.upload_id, [SessionState.AWAITING_PARTS], SessionState.COMPLETING
        )

        result = await orchestrator.abort(init.upload_id)

        assert result.error.reason == FailureReason.INVALID_SESSION_STATE
        s3_client.abort_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_complete_after_abort(self, orchestrator):
        init = await orchestrator.initiate(_request(total_chunks=1))
        await orchestrator.abort(init.upload_id)
        result = await orchestrator.complete(init.upload_id, _tokens(1))
        assert result.error.reason == FailureReason.SESSION_NOT_FOUND


class TestExpiry:
    @pytest.mark.asyncio
    async def test_abandoned_upload_freed_once(self, registry, gateway, s3_client, event_log):
        orchestrator = UploadOrchestrator(
            registry=registry, gateway=gateway, session_ttl_seconds=0.05, events=event_log
        )
        init = await orchestrator.initiate(_request(total_chunks=2))

        await asyncio.sleep(0.2)
        await asyncio.gather(registry.sweep_expired(), registry.sweep_expired())

        assert await registry.get(init.upload_id) is None
        assert s3_client.abort_multipart_upload.call_count == 1
        assert _outcomes(event_log, init.upload_id) == [UploadOutcome.EXPIRED]

        result = await orchestrator.complete(init.upload_id, _tokens(2))
        assert result.error.reason == FailureReason.SESSION_NOT_FOUND
        assert result.error.message == RESTART_MESSAGE
        s3_client.complete_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_abort_is_noop(self, registry, gateway, s3_client):
        orchestrator = UploadOrchestrator(registry=registry, gateway=gateway, session_ttl_seconds=0.05)
        init = await orchestrator.initiate(_request())
        await asyncio.sleep(0.2)

        result = await orchestrator.abort(init.upload_id)

        assert result.aborted is False
        assert s3_client.abort_multipart_upload.call_count == 1


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_session_view_and_listing(self, orchestrator):
        init = await orchestrator.initiate(_request(total_chunks=7))
        view = await orchestrator.get_session(init.upload_id)
        assert view.total_chunks == 7
        assert view.state == SessionState.AWAITING_PARTS
        assert "externalUploadId" not in view.to_wire()

        active = await orchestrator.list_sessions()
        assert active.upload_ids == [init.upload_id]
        assert active.count == 1

    @pytest.mark.asyncio
    async def test_ledger_failure_does_not_fail_upload(self, orchestrator, event_log):
        init = await orchestrator.initiate(_request(total_chunks=1))
        with patch.object(event_log, "record", side_effect=RuntimeError("disk full")):
            result = await orchestrator.complete(init.upload_id, _tokens(1))
        assert result.success

    @pytest.mark.asyncio
    async def test_ledger_writes_stay_on_loop_thread(self, orchestrator, event_log):
        loop_thread = threading.get_ident()
        threads = []
        original = event_log.record

        def record(event):
            threads.append(threading.get_ident())
            original(event)

        init = await orchestrator.initiate(_request(total_chunks=1))
        with patch.object(event_log, "record", side_effect=record):
            await orchestrator.complete(init.upload_id, _tokens(1))
            await orchestrator.abort((await orchestrator.initiate(_request())).upload_id)

        assert threads == [loop_thread, loop_thread]
