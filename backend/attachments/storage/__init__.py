"""Object store access for multipart uploads."""
from .gateway import S3MultipartGateway
from .schemas import ObjectDescriptor, PartAuthorization

__all__ = [
    "S3MultipartGateway",
    "ObjectDescriptor",
    "PartAuthorization",
]
