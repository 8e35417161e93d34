"""
Error taxonomy for the credential core.

Each error carries the HTTP status it maps to at the API boundary and a
short ``code`` used in the JSON error envelope.
"""

from __future__ import annotations


class CredentialCoreError(Exception):
    """Base exception for the credential core."""

    status_code: int = 500
    code: str = "error"


class ValidationError(CredentialCoreError):
    """Malformed input (bad email, weak password, missing fields)."""

    status_code = 400
    code = "validation_error"


class ConflictError(CredentialCoreError):
    """A uniqueness constraint was violated (duplicate email)."""

    status_code = 409
    code = "conflict"


class AuthenticationError(CredentialCoreError):
    """Bad credentials or an invalid / expired session token."""

    status_code = 401
    code = "authentication_error"


class NotFoundError(CredentialCoreError):
    """No such record (e.g. service not connected)."""

    status_code = 404
    code = "not_found"


class StorageError(CredentialCoreError):
    """Durable store could not be read or written."""

    status_code = 500
    code = "storage_error"
