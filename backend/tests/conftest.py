"""Shared test fixtures and configuration for backend tests."""
import fnmatch
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from redis.exceptions import WatchError

from attachments.events.service import UploadEventLog
from attachments.sessions.registry import InMemorySessionRegistry
from attachments.storage.gateway import S3MultipartGateway
from attachments.uploads.orchestrator import UploadOrchestrator

BUCKET = "test-bucket"
EXTERNAL_UPLOAD_ID = "ext-upload-1"
OBJECT_SIZE = 4096


def client_error(code: str, operation: str = "CompleteMultipartUpload",
                 status: int = 400) -> ClientError:
    """Build a botocore ClientError the way the S3 client raises it."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} (simulated)"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


# ---------------------------------------------------------------------------
# Fake async Redis
# ---------------------------------------------------------------------------


class FakePipeline:
    """Just enough of ``redis.asyncio`` Pipeline for WATCH/MULTI/EXEC."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._watched: Dict[str, int] = {}
        self._queue: List[Callable[[], Any]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.reset()

    async def watch(self, *keys: str) -> None:
        for key in keys:
            self._watched[key] = self._redis.version(key)

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    def multi(self) -> None:
        self._queue = []

    def set(self, key: str, value: str, ex=None, nx=False, xx=False) -> "FakePipeline":
        self._queue.append(lambda: self._redis._set(key, value, nx=nx, xx=xx))
        return self

    async def execute(self) -> List[Any]:
        hook = self._redis.before_execute
        if hook is not None:
            self._redis.before_execute = None
            await hook()
        for key, seen in self._watched.items():
            if self._redis.version(key) != seen:
                self._queue = []
                self._watched = {}
                raise WatchError("Watched variable changed.")
        results = [command() for command in self._queue]
        self._queue = []
        self._watched = {}
        return results

    async def reset(self) -> None:
        self._queue = []
        self._watched = {}


class FakeRedis:
    """In-process stand-in for ``redis.asyncio.Redis`` (decode_responses=True)."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self._versions: Dict[str, int] = {}
        self.before_execute: Optional[Callable[[], Any]] = None
        self.closed = False

    def version(self, key: str) -> int:
        return self._versions.get(key, 0)

    def _touch(self, key: str) -> None:
        self._versions[key] = self.version(key) + 1

    def _set(self, key: str, value: str, nx: bool = False, xx: bool = False) -> Optional[bool]:
        if nx and key in self.data:
            return None
        if xx and key not in self.data:
            return None
        self.data[key] = value
        self._touch(key)
        return True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex=None, nx: bool = False, xx: bool = False):
        return self._set(key, value, nx=nx, xx=xx)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self._touch(key)
                removed += 1
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)

    async def zadd(self, name: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, name: str, *members: str) -> int:
        zset = self.zsets.get(name, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    async def zrangebyscore(self, name: str, min, max) -> List[str]:
        low, high = float(min), float(max)
        zset = self.zsets.get(name, {})
        return [m for m, s in sorted(zset.items(), key=lambda item: item[1]) if low <= s <= high]

    async def scan_iter(self, match: Optional[str] = None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ---------------------------------------------------------------------------
# Storage / registry / orchestrator
# ---------------------------------------------------------------------------


def _presign(operation, Params, ExpiresIn):
    return (
        f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}"
        f"?partNumber={Params['PartNumber']}&uploadId={Params['UploadId']}"
        f"&X-Amz-Expires={ExpiresIn}"
    )


@pytest.fixture
def s3_client():
    """MagicMock S3 client answering every multipart call successfully."""
    client = MagicMock()
    client.create_multipart_upload.return_value = {"UploadId": EXTERNAL_UPLOAD_ID}
    client.generate_presigned_url.side_effect = _presign
    client.complete_multipart_upload.return_value = {"ETag": '"final-etag"'}
    client.head_object.return_value = {"ContentLength": OBJECT_SIZE}
    client.abort_multipart_upload.return_value = {}
    return client


@pytest.fixture
def gateway(s3_client):
    gw = S3MultipartGateway(bucket=BUCKET, region="us-east-1")
    gw._client = s3_client
    return gw


@pytest_asyncio.fixture
async def registry():
    reg = InMemorySessionRegistry(reaper_interval_seconds=3600)
    yield reg
    await reg.stop()


@pytest.fixture
def event_log():
    log = UploadEventLog(db_path=":memory:")
    yield log
    log.close()


@pytest_asyncio.fixture
async def orchestrator(registry, gateway, event_log):
    return UploadOrchestrator(
        registry=registry,
        gateway=gateway,
        session_ttl_seconds=3600,
        max_file_size_bytes=10 * 1024 * 1024,
        max_parts=100,
        events=event_log,
    )
