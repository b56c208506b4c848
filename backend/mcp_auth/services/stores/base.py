"""Store contracts shared by every backend.

All operations are async. Deleting an absent key is a no-op, and an expired
entry behaves exactly like a missing one. `has()` on the verifier and token
stores is answered from the store alone and never calls an identity provider.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from ...models.state import PreAuthSession, SessionMetadata, TokenRecord, VerifierEntry


class VerifierStore(ABC):
    """PKCE verifiers keyed by `{provider_type}:{authorization_code}`."""

    @abstractmethod
    async def set(self, key: str, entry: VerifierEntry, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[VerifierEntry]: ...

    @abstractmethod
    async def get_and_delete(self, key: str) -> Optional[VerifierEntry]:
        """Atomically read and remove an entry so a code can be consumed once."""

    @abstractmethod
    async def has(self, key: str) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def cleanup(self) -> int:
        """Remove expired entries, including those left by abandoned flows."""

    async def close(self) -> None:
        return None


class PreAuthSessionStore(ABC):
    """In-flight authorization sessions keyed by state."""

    @abstractmethod
    async def set(self, state: str, session: PreAuthSession, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def get(self, state: str) -> Optional[PreAuthSession]: ...

    @abstractmethod
    async def delete(self, state: str) -> None: ...

    @abstractmethod
    async def cleanup(self) -> int:
        """Remove expired sessions and return how many were removed."""

    @abstractmethod
    async def count(self) -> int: ...

    async def close(self) -> None:
        return None


class TokenStore(ABC):
    """Issued tokens keyed by access token, with a refresh-token index."""

    @abstractmethod
    async def set(self, access_token: str, record: TokenRecord) -> None: ...

    @abstractmethod
    async def get(self, access_token: str) -> Optional[TokenRecord]: ...

    @abstractmethod
    async def find_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[Tuple[str, TokenRecord]]:
        """Return `(access_token, record)` owning the refresh token."""

    @abstractmethod
    async def has(self, access_token: str) -> bool: ...

    @abstractmethod
    async def delete(self, access_token: str) -> None:
        """Remove the record and its refresh-token index entry."""

    @abstractmethod
    async def cleanup(self) -> int: ...

    @abstractmethod
    async def count(self) -> int: ...

    async def close(self) -> None:
        return None


class SessionMetadataStore(ABC):
    """Durable protocol session facts used for reconstruction."""

    @abstractmethod
    async def set(self, session_id: str, metadata: SessionMetadata) -> None: ...

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionMetadata]: ...

    @abstractmethod
    async def delete(self, session_id: str) -> None: ...

    @abstractmethod
    async def cleanup(self) -> int: ...

    @abstractmethod
    async def count(self) -> int: ...

    async def close(self) -> None:
        return None


@dataclass
class StoreBundle:
    """The four stores one process shares between its providers and session manager."""

    backend: str
    verifiers: VerifierStore
    sessions: PreAuthSessionStore
    tokens: TokenStore
    metadata: SessionMetadataStore
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def close(self) -> None:
        for store in (self.verifiers, self.sessions, self.tokens, self.metadata):
            await store.close()
        for closer in self.closers:
            await closer()
        self.closers.clear()
