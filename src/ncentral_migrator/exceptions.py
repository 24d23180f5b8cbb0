"""
Custom exception classes for the N-central migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ApiError(MigrationError):
    """Base class for REST API errors."""


class AuthenticationError(ApiError):
    """Raised when the credential is rejected or no session exists."""


class TokenExpiredError(ApiError):
    """Raised when the refresh token has expired and a new login is required."""

    def __init__(self, message: str = "Token expired") -> None:
        super().__init__(message)


class RateLimitedError(ApiError):
    """Raised when the server keeps throttling after all retries."""

    retry_after: int

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Rate limited - retry after {retry_after} seconds")
        self.retry_after = retry_after


class NotFoundError(ApiError):
    """Raised on HTTP 404."""

    path: str

    def __init__(self, path: str) -> None:
        super().__init__(f"Resource not found: {path}")
        self.path = path


class ServerError(ApiError):
    """Raised for any other non-2xx response."""

    status: int
    body: str

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Server error: {status} - {body}")
        self.status = status
        self.body = body


class InvalidResponseError(ApiError):
    """Raised when a response body cannot be decoded or lacks required data."""


class RequestFailedError(ApiError):
    """Raised when the HTTP request itself fails (connection, TLS, timeout)."""


class SoapError(MigrationError):
    """Base class for SOAP API errors."""


class SoapFaultError(SoapError):
    """Raised when the SOAP response carries a fault."""

    code: str
    message: str

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"SOAP fault [{code}]: {message}")
        self.code = code
        self.message = message


class SoapParseError(SoapError):
    """Raised when the expected return value is missing from a SOAP response."""


class SoapHttpError(SoapError):
    """Raised when the SOAP request fails without a parseable fault."""


class FallbackError(MigrationError):
    """Raised when both the REST attempt and the SOAP fallback failed."""

    description: str
    rest_error: Exception
    soap_error: Exception | None

    def __init__(self, description: str, rest_error: Exception, soap_error: Exception | None = None) -> None:
        if soap_error is None:
            msg = f"{description}: REST failed ({rest_error}); no SOAP fallback available"
        else:
            msg = f"{description}: REST failed ({rest_error}); SOAP failed ({soap_error})"
        super().__init__(msg)
        self.description = description
        self.rest_error = rest_error
        self.soap_error = soap_error


class ExportError(MigrationError):
    """Raised when writing exported records fails."""


class CredentialError(MigrationError):
    """Base class for credential store errors."""


class PassError(CredentialError):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid or the entry does not exist."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""
