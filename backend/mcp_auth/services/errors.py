"""Exception taxonomy shared by providers, stores and the session manager."""

from typing import List, Optional


class OAuthError(Exception):
    """Base OAuth error carrying an RFC 6749 error code and HTTP status."""

    error_code = "server_error"
    status_code = 500

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider

    @property
    def description(self) -> str:
        return str(self)


class InvalidRequestError(OAuthError):
    """Missing or malformed request parameter."""

    error_code = "invalid_request"
    status_code = 400


class UnsupportedGrantTypeError(OAuthError):
    """grant_type is not one the endpoint understands."""

    error_code = "unsupported_grant_type"
    status_code = 400


class OAuthStateError(OAuthError):
    """state is missing, unknown, already consumed or expired."""

    error_code = "oauth_state_error"
    status_code = 400


class InvalidGrantError(OAuthError):
    """Authorization code, PKCE verifier or refresh token was rejected."""

    error_code = "invalid_grant"
    status_code = 400


class InvalidTokenError(OAuthError):
    """Bearer token is unknown, expired, or could not be verified."""

    error_code = "invalid_token"
    status_code = 401


class AccessDeniedError(OAuthError):
    """The identity provider or the allowlist refused the user."""

    error_code = "access_denied"
    status_code = 403


class AuthorizationDeniedError(OAuthError):
    """The identity provider reported an error on the callback."""

    error_code = "access_denied"
    status_code = 400


class OAuthProviderError(OAuthError):
    """Identity provider is unreachable or answered with an error."""

    error_code = "server_error"
    status_code = 500


class OAuthTokenError(OAuthProviderError):
    """Token endpoint failure. Upstream status and body are kept for logging only."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
    ) -> None:
        super().__init__(message, provider)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class ProviderConfigurationError(OAuthError):
    """Provider cannot be constructed, typically because credentials are missing."""


class StoreUnavailableError(Exception):
    """Backing store failed. Callers may retry the request."""

    error_code = "server_error"
    status_code = 503

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation


class SessionNotFoundError(Exception):
    """No usable session metadata exists for a protocol session id."""

    error_code = "session_not_found"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ProviderDisposalError(Exception):
    """One or more providers failed to dispose."""

    def __init__(self, errors: List[BaseException]) -> None:
        message = "; ".join(str(err) for err in errors)
        super().__init__(f"One or more OAuth providers failed to dispose: {message}")
        self.errors = list(errors)
