"""
Error taxonomy for the vaulting pipeline.

Every error carries a machine-readable ``kind`` (used in OAuth callback
redirects and in VaultedDocument.failure_reason) and the HTTP status code a
router should answer with when the error reaches a client.
"""

from typing import Iterable, Optional

_MAX_BODY_CHARS = 500


class VaultError(Exception):
    """Base class for all pipeline errors."""

    kind = "server_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(VaultError):
    """Missing or malformed input. No side effects have happened."""

    kind = "invalid_request"
    status_code = 400


class InvalidPayload(InvalidRequest):
    """A webhook body lacks the event discriminator or document identifier."""


class AuthenticationFailure(VaultError):
    kind = "authentication_failure"
    status_code = 401


class InvalidState(AuthenticationFailure):
    """OAuth state is unknown, already used, expired, or for another provider."""

    kind = "invalid_state"


class InvalidSignature(AuthenticationFailure):
    kind = "invalid_signature"


class DownstreamProviderError(VaultError):
    """
    A provider API answered with a non-2xx status or could not be reached.

    ``body`` holds a truncated copy of the upstream response for diagnostics.
    Client secrets are redacted from it before the error is constructed.
    """

    kind = "token_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.upstream_status = upstream_status
        self.body = body

    def __str__(self) -> str:
        if self.upstream_status is not None:
            return f"{self.message} (status={self.upstream_status})"
        return self.message


class TokenExchangeError(DownstreamProviderError):
    pass


class TokenRefreshError(DownstreamProviderError):
    pass


class ProfileFetchError(DownstreamProviderError):
    pass


class DownloadError(DownstreamProviderError):
    kind = "download_error"


class StorageError(VaultError):
    """Object upload / download / delete failed."""

    kind = "storage_error"


class PersistenceError(VaultError):
    """A database read or write failed."""

    kind = "database_error"


class ConnectionNotFound(VaultError):
    kind = "connection_not_found"
    status_code = 404


class DocumentNotFound(VaultError):
    kind = "document_not_found"
    status_code = 404


class InternalError(VaultError):
    kind = "server_error"


def redact(text: Optional[str], secrets: Iterable[str]) -> str:
    """Truncate an upstream body and blank out any configured secret values."""
    if not text:
        return ""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "[REDACTED]")
    return text[:_MAX_BODY_CHARS]
