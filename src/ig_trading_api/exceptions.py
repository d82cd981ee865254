from typing import Dict, Optional


class IGError(Exception):
    """Base class for every error raised by the IG client."""


class ConfigError(IGError, ValueError):
    """Missing or invalid configuration. Not retried."""


class AuthError(IGError):
    """
    Base class for failures of the login / refresh handshake.

    Raised to the caller and never retried by the session manager itself.
    """


class LoginRejected(AuthError):
    def __init__(self, status: int, payload: Optional[Dict] = None):
        self.status = status
        self.payload = payload
        super().__init__(f"Login failed with status code: {status}")


class MissingCredentialHeaders(AuthError):
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            "Login response is missing credential headers: "
            + ", ".join(self.missing)
        )


class MissingCredentialFields(AuthError):
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            "Login response is missing credential fields: "
            + ", ".join(self.missing)
        )


class RefreshUnsupported(AuthError):
    def __init__(self, version):
        self.version = version
        super().__init__(
            f"Token refresh is only available for session version 3, "
            f"not {int(version)}"
        )


class RefreshRejected(AuthError):
    def __init__(self, status: int, payload: Optional[Dict] = None):
        self.status = status
        self.payload = payload
        super().__init__(f"Token refresh failed with status code: {status}")


class TransportError(IGError):
    """Network-level failure talking to the REST or streaming endpoints."""


class StreamingError(TransportError):
    """The streaming server refused or dropped the session."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class ApiError(IGError):
    """
    Non-2xx REST response.

    Attributes
    ----------
    status : int
        HTTP status code.
    payload : dict or None
        Parsed error body (typically ``{"errorCode": "..."}``) when the
        server sent one.
    """

    def __init__(
        self,
        status: int,
        payload: Optional[Dict] = None,
        message: Optional[str] = None,
    ):
        self.status = status
        self.payload = payload
        self.error_code = (payload or {}).get("errorCode")
        if message is None:
            message = f"Request failed with status code: {status}"
            if self.error_code:
                message += f" ({self.error_code})"
        super().__init__(message)


class AuthFailure(ApiError):
    """The session is no longer valid; log in or refresh once, then retry."""


class ClientError(ApiError):
    """4xx response other than an authentication failure."""


class ServerError(ApiError):
    """5xx response."""
