"""
Error taxonomy for the credential registry client.

Every failure surfaced by the client is one of four kinds:

- ValidationError: malformed input caught before any ledger call
- AuthorizationError: the ledger rejects because the caller lacks a role
- NotFoundError: the referenced token was never minted
- ConnectivityError: no provider available or the network is unreachable

A transaction that was accepted but then failed during execution is a
TransactionRevertedError.
"""

from __future__ import annotations


class CredentialRegistryError(Exception):
    """Base class for all client errors."""


class ValidationError(CredentialRegistryError):
    """Raised when input is malformed (account, token id, payload, digest)."""


class InvalidTransitionError(ValidationError):
    """Raised when a lifecycle transition is not permitted from the current state."""


class AuthorizationError(CredentialRegistryError):
    """Raised when the caller lacks the role an operation requires."""


class NotFoundError(CredentialRegistryError):
    """Raised when a token id has never been minted."""


class ConnectivityError(CredentialRegistryError):
    """Raised when the ledger provider is unavailable or unreachable."""


class TransactionRevertedError(CredentialRegistryError):
    """Raised when a submitted transaction is mined with a failed status."""
