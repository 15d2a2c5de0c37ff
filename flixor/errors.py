"""Gateway error taxonomy.

Every error carries a generic ``public_message`` that is safe to return to
clients and an optional internal ``detail`` that only ever reaches the logs.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors surfaced to gateway clients."""

    status_code = 500
    code = "internal_error"
    public_message = "Internal server error"
    retryable = False

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(detail or self.public_message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.public_message,
            "retryable": self.retryable,
        }


class AuthenticationRequired(GatewayError):
    """No valid session cookie or bearer token accompanied the request."""

    status_code = 401
    code = "authentication_required"
    public_message = "Authentication required"


class LoginFailed(GatewayError):
    status_code = 401
    code = "invalid_login"
    public_message = "Invalid username or password"


class CredentialInvalid(GatewayError):
    """The stored upstream credential cannot be used.

    Raised when decryption fails or the upstream rejects the stored token.
    Clients must restart the upstream sign-in flow rather than retry.
    """

    status_code = 401
    code = "credential_invalid"
    public_message = "Stored media server credential is invalid, please sign in again"


class UpstreamUnavailable(GatewayError):
    status_code = 502
    code = "upstream_unavailable"
    public_message = "Media server is unavailable, try again shortly"
    retryable = True
    retry_after_seconds = 5


class ServerNotConfigured(GatewayError):
    status_code = 409
    code = "server_not_configured"
    public_message = "No media server is configured for this account"


class Conflict(GatewayError):
    status_code = 409
    code = "conflict"
    public_message = "Resource already exists"
