"""Upload session registry.

Holds the ephemeral per-upload records between initiation and completion,
with TTL-based expiry.  ``InMemorySessionRegistry`` serves a single process;
``RedisSessionRegistry`` is shared by replicas.
"""
from .schemas import SessionState, UploadSession
from .registry import InMemorySessionRegistry, SessionRegistry
from .redis_registry import RedisSessionRegistry

__all__ = [
    "SessionState",
    "UploadSession",
    "SessionRegistry",
    "InMemorySessionRegistry",
    "RedisSessionRegistry",
]
