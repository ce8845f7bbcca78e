"""
Credential verification.

Verifies a credential token against the registry:

- reads owner, token URI and the credential tuple concurrently
- renders a verdict: REVOKED if the issuer revoked it, VALID otherwise
- optionally checks a revealed payload against the on-chain digest
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from credential_registry.config import Session
from credential_registry.hashing import (
    CredentialMetadata,
    digest,
    format_digest,
    metadata_from_json,
    parse_digest,
)
from credential_registry.models import parse_token_id
from credential_registry.registry import RegistryClient


TRUST_NOTICE = (
    "A hash match proves this payload is exactly what the issuer committed "
    "on-chain at mint time. It does not prove the claims in the payload are "
    "true; that rests on the issuer's honesty."
)


class VerificationStatus(Enum):
    """Verdict for a minted credential."""

    VALID = "VALID"
    REVOKED = "REVOKED"


@dataclass
class VerificationResult:
    """Current on-chain state of a credential token."""

    token_id: int
    owner: str
    issuer: str
    credential_hash: bytes
    issued_at: int
    revoked: bool
    uri: str

    @property
    def status(self) -> VerificationStatus:
        return VerificationStatus.REVOKED if self.revoked else VerificationStatus.VALID

    @property
    def is_valid(self) -> bool:
        return self.status == VerificationStatus.VALID

    @property
    def digest_hex(self) -> str:
        return format_digest(self.credential_hash)

    @property
    def issued_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.issued_at, tz=timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "tokenId": self.token_id,
            "owner": self.owner,
            "issuer": self.issuer,
            "credentialHash": self.digest_hex,
            "issuedAt": self.issued_at,
            "revoked": self.revoked,
            "uri": self.uri,
        }


@dataclass(frozen=True)
class IntegrityCheck:
    """Outcome of comparing a revealed payload with the stored digest."""

    matches: bool
    computed_digest: str
    stored_digest: str


ClaimedPayload = str | bytes | Mapping[str, Any] | CredentialMetadata


def _payload_digest(claimed_payload: ClaimedPayload) -> bytes:
    if isinstance(claimed_payload, CredentialMetadata):
        return digest(claimed_payload)
    return digest(metadata_from_json(claimed_payload))


def check_integrity(claimed_payload: ClaimedPayload, stored_digest: str | bytes) -> bool:
    """Check that a claimed payload hashes to the digest stored on-chain.

    Local and pure: no ledger access. See ``TRUST_NOTICE`` for what a match
    does and does not establish.

    Raises:
        ValidationError: If the payload or the digest is malformed.
    """
    return _payload_digest(claimed_payload) == parse_digest(stored_digest)


def integrity_report(claimed_payload: ClaimedPayload, stored_digest: str | bytes) -> IntegrityCheck:
    """Like ``check_integrity`` but also returns both digests for display."""
    computed = _payload_digest(claimed_payload)
    stored = parse_digest(stored_digest)
    return IntegrityCheck(
        matches=computed == stored,
        computed_digest=format_digest(computed),
        stored_digest=format_digest(stored),
    )


class VerificationEngine:
    """Turns registry state into a verification verdict."""

    TRUST_NOTICE = TRUST_NOTICE

    def __init__(self, registry: RegistryClient) -> None:
        self.registry = registry

    async def verify(self, token_id: int | str) -> VerificationResult:
        """Verify a credential token.

        Args:
            token_id: Non-negative integer, or its decimal text.

        Returns:
            VerificationResult with the token's current state.

        Raises:
            ValidationError: If ``token_id`` is not a non-negative integer.
                Raised before any ledger call.
            NotFoundError: If the token was never minted.
        """
        record = await self.registry.get_record(parse_token_id(token_id))
        return VerificationResult(
            token_id=record.token_id,
            owner=record.owner,
            issuer=record.issuer,
            credential_hash=record.credential_hash,
            issued_at=record.issued_at,
            revoked=record.revoked,
            uri=record.uri,
        )

    def check_integrity(self, claimed_payload: ClaimedPayload, stored_digest: str | bytes) -> bool:
        return check_integrity(claimed_payload, stored_digest)

    def integrity_report(
        self, claimed_payload: ClaimedPayload, stored_digest: str | bytes
    ) -> IntegrityCheck:
        return integrity_report(claimed_payload, stored_digest)


async def verify_token(session: Session, token_id: int | str) -> VerificationResult:
    """Convenience function to verify one token over a fresh JSON-RPC session.

    Args:
        session: Network and contract to read from.
        token_id: Token to verify.

    Returns:
        VerificationResult for the token.
    """
    parse_token_id(token_id)
    async with RegistryClient(session) as registry:
        return await VerificationEngine(registry).verify(token_id)
