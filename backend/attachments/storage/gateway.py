"""S3 multipart upload gateway.

Wraps the object store's multipart protocol so the orchestrator never deals
with boto3 directly:

    initiate_multipart            -> CreateMultipartUpload
    generate_part_authorizations  -> presigned UploadPart URLs (one per part)
    complete_multipart            -> CompleteMultipartUpload + HeadObject
    abort_multipart               -> AbortMultipartUpload
    exists_object                 -> HeadObject

Part bytes never pass through this service: clients PUT each part straight
to the presigned URL and echo back the ETag the store returns.

All methods are synchronous (boto3); async callers run them in an executor.
"""
import logging
import time
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from attachments.errors import (
    InvalidSessionState,
    PartCountMismatch,
    StoreCompletionFailure,
    StoreInitiationFailure,
)
from attachments.sessions.schemas import UploadSession

from .schemas import ObjectDescriptor, PartAuthorization

logger = logging.getLogger(__name__)

DEFAULT_REGION       = "us-east-1"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_PART_URL_TTL = 7200  # 2 hours

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "Unknown")
    return type(exc).__name__


class S3MultipartGateway:
    """Multipart upload operations against one S3 (or S3-compatible) bucket.

    Args:
        bucket:                 Target bucket.  Required.
        region:                 AWS region.  Defaults to ``us-east-1``.
        endpoint_url:           Custom endpoint for S3-compatible stores.
        aws_access_key_id:      AWS access key.  ``None`` → default credential chain.
        aws_secret_access_key:  AWS secret access key.
        aws_session_token:      Optional temporary-credential session token.
        key_prefix:             First segment of every object key.
        part_url_ttl_seconds:   Validity of each part authorization URL.
        server_side_encryption: ``ServerSideEncryption`` value, or None to omit.
        public_base_url:        Base URL for object links; defaults to the
                                virtual-hosted AWS URL.
        max_attempts:           botocore retry budget per call.

    Raises:
        ValueError: If *bucket* is empty.
    """

    def __init__(
        self,
        bucket: Optional[str],
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
        key_prefix: str = "encrypted",
        part_url_ttl_seconds: int = DEFAULT_PART_URL_TTL,
        server_side_encryption: Optional[str] = "AES256",
        public_base_url: Optional[str] = None,
        max_attempts: int = 4,
    ) -> None:
        if not bucket:
            raise ValueError("Missing S3 bucket configuration (storage.bucket)")
        self._bucket        = bucket
        self._region        = region or DEFAULT_REGION
        self._endpoint_url  = endpoint_url
        self._access_key    = aws_access_key_id
        self._secret_key    = aws_secret_access_key
        self._session_token = aws_session_token
        self._key_prefix    = key_prefix.strip("/")
        self._part_url_ttl  = part_url_ttl_seconds
        self._sse           = server_side_encryption
        self._public_base   = public_base_url.rstrip("/") if public_base_url else None
        self._max_attempts  = max_attempts
        self._client: Optional[object] = None

    @classmethod
    def from_config(cls, config) -> "S3MultipartGateway":
        """Build a gateway from an ``AppConfig``."""
        storage = config.storage
        aws = config.secrets.aws
        return cls(
            bucket=storage.bucket,
            region=storage.region,
            endpoint_url=storage.endpoint_url,
            aws_access_key_id=aws.access_key_id,
            aws_secret_access_key=aws.secret_access_key,
            aws_session_token=aws.session_token,
            key_prefix=storage.key_prefix,
            part_url_ttl_seconds=storage.part_url_ttl_seconds,
            server_side_encryption=storage.server_side_encryption,
            public_base_url=storage.public_base_url,
            max_attempts=storage.max_attempts,
        )

    # -----------------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------------

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def part_url_ttl_seconds(self) -> int:
        return self._part_url_ttl

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _get_client(self):
        """Return a cached boto3 S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config

            kwargs: dict = {
                "region_name": self._region,
                "config": Config(
                    signature_version="s3v4",
                    retries={"max_attempts": self._max_attempts, "mode": "standard"},
                ),
            }
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"]     = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            if self._session_token:
                kwargs["aws_session_token"] = self._session_token

            self._client = boto3.client("s3", **kwargs)

        return self._client

    def build_object_key(
        self, conversation_id: str, upload_id: str, now_ms: Optional[int] = None
    ) -> str:
        """Key layout: ``{prefix}/{conversation}/{upload}/{epoch_ms}.enc``."""
        timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
        return f"{self._key_prefix}/{conversation_id}/{upload_id}/{timestamp}.enc"

    def object_url(self, key: str) -> str:
        if self._public_base:
            return f"{self._public_base}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    # -----------------------------------------------------------------------
    # Multipart protocol
    # -----------------------------------------------------------------------

    def initiate_multipart(
        self, key: str, content_type: Optional[str], metadata: Dict[str, str]
    ) -> str:
        """Start one store-side multipart upload.

        Returns:
            The store-assigned multipart upload ID.

        Raises:
            StoreInitiationFailure: On any store or transport error.
        """
        params = {
            "Bucket": self._bucket,
            "Key": key,
            "ContentType": content_type or DEFAULT_CONTENT_TYPE,
            "Metadata": metadata,
        }
        if self._sse:
            params["ServerSideEncryption"] = self._sse

        try:
            response = self._get_client().create_multipart_upload(**params)
        except (ClientError, BotoCoreError) as exc:
            logger.error("[storage/s3] Failed to initiate multipart upload for %s: %s", key, exc)
            raise StoreInitiationFailure(
                f"Failed to initiate multipart upload: {exc}",
                upload_id=metadata.get("upload-id"),
                store_code=_error_code(exc),
            ) from exc

        external_upload_id = response["UploadId"]
        logger.info("[storage/s3] Multipart upload initiated: %s (key=%s)", external_upload_id, key)
        return external_upload_id

    def generate_part_authorizations(
        self, external_upload_id: str, key: str, total_chunks: int
    ) -> List[PartAuthorization]:
        """Presign one UploadPart URL per part number ``1..total_chunks``.

        Raises:
            ValueError: If *total_chunks* is below 1.
            StoreInitiationFailure: If presigning fails.
        """
        if total_chunks < 1:
            raise ValueError(f"total_chunks must be >= 1, got {total_chunks}")

        client = self._get_client()
        authorizations: List[PartAuthorization] = []
        try:
            for part_number in range(1, total_chunks + 1):
                url = client.generate_presigned_url(
                    "upload_part",
                    Params={
                        "Bucket": self._bucket,
                        "Key": key,
                        "UploadId": external_upload_id,
                        "PartNumber": part_number,
                    },
                    ExpiresIn=self._part_url_ttl,
                )
                authorizations.append(PartAuthorization(part_number=part_number, url=url))
                if part_number % 100 == 0:
                    logger.debug("[storage/s3] Presigned %d/%d part URLs", part_number, total_chunks)
        except (ClientError, BotoCoreError) as exc:
            raise StoreInitiationFailure(
                f"Failed to generate upload URLs: {exc}", store_code=_error_code(exc)
            ) from exc

        logger.info(
            "[storage/s3] Generated %d part URLs for %s (expire in %ss)",
            len(authorizations), external_upload_id, self._part_url_ttl,
        )
        return authorizations

    def complete_multipart(
        self, session: UploadSession, completion_tokens: List[str]
    ) -> ObjectDescriptor:
        """Assemble the uploaded parts into the final object.

        Tokens must be the ETags returned for parts ``1..N`` in order; a count
        mismatch fails before the store is contacted.

        Raises:
            InvalidSessionState: If no store-side upload is attached.
            PartCountMismatch: If ``len(completion_tokens) != total_chunks``.
            StoreCompletionFailure: If the store rejects the assembly.
        """
        if not session.has_external_upload:
            raise InvalidSessionState(
                "Store upload info not found in session. Please restart upload.",
                session.upload_id,
            )
        if len(completion_tokens) != session.total_chunks:
            raise PartCountMismatch(
                expected=session.total_chunks,
                received=len(completion_tokens),
                upload_id=session.upload_id,
            )

        parts = [
            {"ETag": token.replace('"', ""), "PartNumber": index}
            for index, token in enumerate(completion_tokens, start=1)
        ]
        key = session.external_object_key

        start = time.monotonic()
        try:
            self._get_client().complete_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                UploadId=session.external_upload_id,
                MultipartUpload={"Parts": parts},
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(
                "[storage/s3] Store rejected completion of %s: %s", session.upload_id, exc
            )
            raise StoreCompletionFailure(
                f"Failed to complete multipart upload: {exc}",
                upload_id=session.upload_id,
                store_code=_error_code(exc),
            ) from exc

        logger.info(
            "[storage/s3] Multipart upload %s completed in %.2fs (%d parts)",
            session.upload_id, time.monotonic() - start, len(parts),
        )
        return self.describe_object(key)

    def describe_object(self, key: str) -> ObjectDescriptor:
        """Descriptor for *key* with the size reported by the store.

        A failed size lookup is logged and yields ``size=0``.
        """
        size = 0
        try:
            head = self._get_client().head_object(Bucket=self._bucket, Key=key)
            size = int(head.get("ContentLength") or 0)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("[storage/s3] Failed to get object size for %s: %s", key, exc)
        return ObjectDescriptor(url=self.object_url(key), key=key, size=size, bucket=self._bucket)

    def abort_multipart(self, session: UploadSession) -> bool:
        """Abort the session's store-side upload.

        Returns False (never raises) when nothing is attached, the upload is
        already gone, or the store call fails.
        """
        if not session.has_external_upload:
            logger.info(
                "[storage/s3] No store upload attached to %s, nothing to abort", session.upload_id
            )
            return False
        return self.abort_upload(session.external_object_key, session.external_upload_id)

    def abort_upload(self, key: str, external_upload_id: str) -> bool:
        """Abort a store-side upload by its identifiers (best effort)."""
        try:
            self._get_client().abort_multipart_upload(
                Bucket=self._bucket, Key=key, UploadId=external_upload_id
            )
        except ClientError as exc:
            if _error_code(exc) == "NoSuchUpload":
                logger.info("[storage/s3] Upload %s already gone", external_upload_id)
            else:
                logger.error("[storage/s3] Failed to abort upload %s: %s", external_upload_id, exc)
            return False
        except BotoCoreError as exc:
            logger.error("[storage/s3] Failed to abort upload %s: %s", external_upload_id, exc)
            return False

        logger.info("[storage/s3] Multipart upload aborted: %s", external_upload_id)
        return True

    def exists_object(self, key: str) -> bool:
        """Return True if *key* exists in the bucket.

        Raises:
            ClientError: For errors other than "not found".
        """
        try:
            self._get_client().head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if _error_code(exc) in _NOT_FOUND_CODES or status == 404:
                return False
            logger.error("[storage/s3] Error checking existence of %s: %s", key, exc)
            raise
