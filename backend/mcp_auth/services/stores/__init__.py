"""Store backends and the factory that picks one from settings."""

import logging
from typing import Optional

from redis.asyncio import Redis

from ...config import Settings, settings
from ..crypto import TokenCipher
from ..state_store import StateStore
from .base import (
    PreAuthSessionStore,
    SessionMetadataStore,
    StoreBundle,
    TokenStore,
    VerifierStore,
)
from .memory import (
    MemoryPreAuthSessionStore,
    MemorySessionMetadataStore,
    MemoryTokenStore,
    MemoryVerifierStore,
)
from .redis import (
    RedisPreAuthSessionStore,
    RedisSessionMetadataStore,
    RedisTokenStore,
    RedisVerifierStore,
)
from .sqlite import (
    SqlitePreAuthSessionStore,
    SqliteSessionMetadataStore,
    SqliteTokenStore,
    SqliteVerifierStore,
)

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("memory", "sqlite", "redis", "auto")


def build_memory_stores() -> StoreBundle:
    return StoreBundle(
        backend="memory",
        verifiers=MemoryVerifierStore(),
        sessions=MemoryPreAuthSessionStore(),
        tokens=MemoryTokenStore(),
        metadata=MemorySessionMetadataStore(),
    )


def build_sqlite_stores(
    db_path: Optional[str] = None, cipher: Optional[TokenCipher] = None
) -> StoreBundle:
    state_store = StateStore(db_path, cipher=cipher)
    state_store.init_schema()
    return StoreBundle(
        backend="sqlite",
        verifiers=SqliteVerifierStore(state_store),
        sessions=SqlitePreAuthSessionStore(state_store),
        tokens=SqliteTokenStore(state_store),
        metadata=SqliteSessionMetadataStore(state_store),
    )


def build_redis_stores(
    client: Redis, key_prefix: str = "", cipher: Optional[TokenCipher] = None
) -> StoreBundle:
    """Wrap one shared client. The bundle closes the client on close()."""
    return StoreBundle(
        backend="redis",
        verifiers=RedisVerifierStore(client, key_prefix),
        sessions=RedisPreAuthSessionStore(client, key_prefix),
        tokens=RedisTokenStore(client, key_prefix, cipher=cipher),
        metadata=RedisSessionMetadataStore(client, key_prefix),
        closers=[client.aclose],
    )


def build_stores(config: Optional[Settings] = None) -> StoreBundle:
    """Build the store bundle selected by STORE_BACKEND.

    `auto` picks redis when REDIS_URL is set and memory otherwise.
    """
    config = config or settings
    backend = (config.store_backend or "auto").strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(f"Unsupported STORE_BACKEND: {config.store_backend}")
    if backend == "auto":
        backend = "redis" if config.redis_url else "memory"

    if backend == "redis":
        if not config.redis_url:
            raise ValueError("STORE_BACKEND=redis requires REDIS_URL")
        client = Redis.from_url(config.redis_url, decode_responses=True)
        bundle = build_redis_stores(
            client, config.redis_key_prefix, cipher=TokenCipher.from_settings(config)
        )
    elif backend == "sqlite":
        bundle = build_sqlite_stores(
            config.state_db_path, cipher=TokenCipher.from_settings(config)
        )
    else:
        bundle = build_memory_stores()

    logger.info("Using %s store backend", bundle.backend)
    return bundle


__all__ = [
    "PreAuthSessionStore",
    "SessionMetadataStore",
    "StoreBundle",
    "TokenStore",
    "VerifierStore",
    "build_memory_stores",
    "build_redis_stores",
    "build_sqlite_stores",
    "build_stores",
]
