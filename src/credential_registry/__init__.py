"""
Credential Registry - client for on-chain, non-transferable credential NFTs.

Supports:
- keccak-256 integrity digests over canonical credential metadata
- Issuer allowlist management, issuance and revocation
- Employer verification by token id, with optional payload integrity check
- Ethereum JSON-RPC ledgers and an in-memory reference ledger
"""

from credential_registry.config import Session
from credential_registry.errors import (
    AuthorizationError,
    ConnectivityError,
    CredentialRegistryError,
    InvalidTransitionError,
    NotFoundError,
    TransactionRevertedError,
    ValidationError,
)
from credential_registry.hashing import (
    CredentialMetadata,
    canonical_json,
    digest,
    format_digest,
    metadata_from_json,
    parse_digest,
)
from credential_registry.ledger import InMemoryLedger, Ledger, PendingTransaction
from credential_registry.lifecycle import CredentialState, CredentialStateMachine
from credential_registry.models import CredentialRecord, OnChainCredential, TransactionReceipt
from credential_registry.registry import IssuedCredential, MintScan, RegistryClient, RoleSummary
from credential_registry.rpc import JsonRpcLedger
from credential_registry.verifier import (
    TRUST_NOTICE,
    VerificationEngine,
    VerificationResult,
    VerificationStatus,
    check_integrity,
    verify_token,
)

__version__ = "0.1.0"

__all__ = [
    "Session",
    "CredentialRegistryError",
    "ValidationError",
    "InvalidTransitionError",
    "AuthorizationError",
    "NotFoundError",
    "ConnectivityError",
    "TransactionRevertedError",
    "CredentialMetadata",
    "canonical_json",
    "digest",
    "format_digest",
    "parse_digest",
    "metadata_from_json",
    "Ledger",
    "PendingTransaction",
    "InMemoryLedger",
    "JsonRpcLedger",
    "CredentialState",
    "CredentialStateMachine",
    "CredentialRecord",
    "OnChainCredential",
    "TransactionReceipt",
    "RegistryClient",
    "RoleSummary",
    "IssuedCredential",
    "MintScan",
    "VerificationEngine",
    "VerificationResult",
    "VerificationStatus",
    "TRUST_NOTICE",
    "check_integrity",
    "verify_token",
]
