"""Error taxonomy for the ledger client.

Every failure the client can surface derives from ``LedgerClientError`` and
carries a machine-readable ``error`` code, a human-readable ``message`` and a
``details`` dict with context for logs.
"""

from __future__ import annotations

from typing import Any


class LedgerClientError(Exception):
    """Base class for all ledger client errors."""

    default_error = "LEDGER_CLIENT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error or self.default_error
        self.message = message
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(error={self.error!r}, message={self.message!r})"


# --- identity layer ---


class IdentityConflict(LedgerClientError):
    """An alias is already bound to a different identity."""

    default_error = "IDENTITY_CONFLICT"


class IdentityNotFound(LedgerClientError):
    """No identity is stored under the requested alias."""

    default_error = "IDENTITY_NOT_FOUND"


class AmbiguousKeyMaterial(LedgerClientError):
    """The keystore directory does not contain exactly one key file."""

    default_error = "AMBIGUOUS_KEY_MATERIAL"


class CredentialError(LedgerClientError):
    """Certificate or private key in the credential bundle is unusable."""

    default_error = "INVALID_CREDENTIALS"


# --- session layer ---


class LedgerConnectionError(LedgerClientError):
    """Transport, TLS, discovery or authentication failure while connecting."""

    default_error = "CONNECTION_FAILED"


class NetworkNotFound(LedgerClientError):
    """The requested channel does not exist or is not visible to the identity."""

    default_error = "NETWORK_NOT_FOUND"


class ProfileError(LedgerClientError):
    """The connection profile is missing, unparsable or incomplete."""

    default_error = "INVALID_CONNECTION_PROFILE"


# --- transaction layer ---


class TransactionRejected(LedgerClientError):
    """Endorsement or validation failure reported by the network."""

    default_error = "TRANSACTION_REJECTED"

    @property
    def tx_id(self) -> str | None:
        value = self.details.get("tx_id")
        return value if isinstance(value, str) else None


class TransactionTimeout(LedgerClientError):
    """No commit was observed within the network's window.

    The outcome is ambiguous: the transaction may still have committed.
    """

    default_error = "TRANSACTION_TIMEOUT"

    @property
    def tx_id(self) -> str | None:
        value = self.details.get("tx_id")
        return value if isinstance(value, str) else None


class QueryError(LedgerClientError):
    """A read-only evaluation failed."""

    default_error = "QUERY_FAILED"


# --- codec layer ---


class MalformedRecord(LedgerClientError):
    """A ledger payload does not match the expected record schema."""

    default_error = "MALFORMED_RECORD"


__all__ = [
    "AmbiguousKeyMaterial",
    "CredentialError",
    "IdentityConflict",
    "IdentityNotFound",
    "LedgerClientError",
    "LedgerConnectionError",
    "MalformedRecord",
    "NetworkNotFound",
    "ProfileError",
    "QueryError",
    "TransactionRejected",
    "TransactionTimeout",
]
