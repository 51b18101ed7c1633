"""Pydantic schemas for the storage gateway.

- PartAuthorization: presigned URL for uploading one part of a multipart upload
- ObjectDescriptor:  the durable object produced by a completed upload
"""
from pydantic import Field

from attachments.schemas import CamelModel


class PartAuthorization(CamelModel):
    """Time-boxed URL letting the client PUT exactly one part.

    The URL is bound to (external upload id, object key, part number) and is
    presented unmodified by the client to the object store.
    """
    part_number: int = Field(..., ge=1, description="1-indexed part number")
    url: str = Field(..., description="Presigned upload_part URL")


class ObjectDescriptor(CamelModel):
    """Final object handed to the file-attachment pipeline.

    ``size`` comes from the store after assembly, never from the
    client-declared file size.
    """
    url: str = Field(..., description="Object URL")
    key: str = Field(..., min_length=1, description="Object key in the bucket")
    size: int = Field(..., ge=0, description="Authoritative size in bytes")
    bucket: str = Field(..., description="Bucket holding the object")
