"""E-mail allowlist applied after a successful identity provider login."""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from ..config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allowlist:
    """Case-insensitive set of permitted user e-mails.

    An empty allowlist is disabled and admits every authenticated user.
    """

    allowed_users: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def enabled(self) -> bool:
        return bool(self.allowed_users)

    @classmethod
    def from_emails(cls, emails: Iterable[str]) -> "Allowlist":
        normalized = frozenset(e.strip().lower() for e in emails if e and e.strip())
        return cls(allowed_users=normalized)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "Allowlist":
        """Build from ALLOWED_USERS."""
        config = config or settings
        allowlist = cls.from_emails(config.allowed_users_list)
        if allowlist.enabled:
            logger.info("User allowlist loaded (%d entries)", len(allowlist.allowed_users))
        else:
            logger.warning(
                "User allowlist not configured; all authenticated users will be allowed. "
                "Set ALLOWED_USERS to restrict access."
            )
        return allowlist

    def is_allowed(self, email: Optional[str]) -> bool:
        if not self.enabled:
            return True
        if not email:
            logger.warning("Access denied: no user e-mail provided")
            return False
        normalized = email.strip().lower()
        if normalized not in self.allowed_users:
            logger.warning("Access denied: %s is not on the allowlist", normalized)
            return False
        return True

    def check(self, email: Optional[str]) -> Optional[str]:
        """Return a denial message, or None when the user may proceed."""
        if self.is_allowed(email):
            return None
        if not email:
            return "Access denied: No email address provided by OAuth provider"
        return "Access denied: Your account is not authorized to access this server"
