"""
Data model shared by the ledger implementations, the registry client and the
verification engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from eth_utils import is_address, to_checksum_address

from credential_registry.errors import ValidationError


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1

_DIGITS = re.compile(r"^\d+$")


def normalize_address(value: Any, label: str = "account") -> str:
    """Validate an account identifier and return its checksum form.

    Args:
        value: Candidate address, ``0x`` followed by 40 hex digits.
        label: Name used in the error message.

    Returns:
        EIP-55 checksum address.

    Raises:
        ValidationError: If the value is not a well-formed address.
    """
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(f"Bad {label} address: {value!r}")
    return to_checksum_address(value)


def same_address(a: str | None, b: str | None) -> bool:
    """Case-insensitive account comparison."""
    if not a or not b:
        return False
    return a.lower() == b.lower()


def short_address(address: str | None) -> str:
    """Abbreviate an address for display (0x1234...abcd)."""
    if not address:
        return "-"
    return f"{address[:6]}...{address[-4:]}"


def parse_token_id(value: Union[int, str]) -> int:
    """Parse a token id from user input.

    Accepts a non-negative int or a string of decimal digits.

    Raises:
        ValidationError: For anything else, including booleans and values
            beyond the uint256 range.
    """
    if isinstance(value, bool):
        raise ValidationError("tokenId must be integer")
    if isinstance(value, int):
        token_id = value
    elif isinstance(value, str) and _DIGITS.match(value.strip()):
        token_id = int(value.strip())
    else:
        raise ValidationError(f"tokenId must be integer, got {value!r}")
    if token_id < 0 or token_id > MAX_UINT256:
        raise ValidationError(f"tokenId out of range: {token_id}")
    return token_id


class TransactionStatus(Enum):
    """Settlement state of a write."""

    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class OnChainCredential:
    """The tuple returned by ``credentialOf``."""

    issuer: str
    credential_hash: bytes
    issued_at: int
    revoked: bool


@dataclass(frozen=True)
class CredentialRecord:
    """A credential as held by the ledger."""

    token_id: int
    issuer: str
    credential_hash: bytes
    issued_at: int
    revoked: bool
    owner: str
    uri: str = ""


@dataclass(frozen=True)
class CredentialMinted:
    """CredentialMinted(tokenId, issuer, learner, credHash, uri)."""

    token_id: int
    issuer: str
    learner: str
    credential_hash: bytes
    uri: str
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class CredentialRevoked:
    """CredentialRevoked(tokenId, issuer)."""

    token_id: int
    issuer: str
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class IssuerUpdated:
    """IssuerUpdated(issuer, allowed)."""

    issuer: str
    allowed: bool
    block_number: int = 0
    log_index: int = 0


LedgerEvent = Union[CredentialMinted, CredentialRevoked, IssuerUpdated]


@dataclass
class TransactionReceipt:
    """Settlement record of a transaction."""

    tx_hash: str
    block_number: int
    status: TransactionStatus
    events: list[LedgerEvent] = field(default_factory=list)

    def find_event(self, event_type: type) -> Any | None:
        """Return the first decoded event of the given type, if any."""
        for event in self.events:
            if isinstance(event, event_type):
                return event
        return None
