"""
Credential metadata hashing.

The ledger stores only a 32-byte commitment to a credential's content:
keccak-256 over the compact JSON serialization of five metadata fields in a
fixed key order. The payload itself stays with the issuer (and whoever the
learner shares it with).
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from eth_utils import keccak

from credential_registry.errors import ValidationError
from credential_registry.models import normalize_address


DIGEST_SIZE = 32

# Serialized key order. Changing it changes every digest.
METADATA_KEYS = ("course", "moduleId", "learner", "issuer", "issuedAtISO")


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with milliseconds, e.g. 2025-01-15T10:00:00.000Z."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class CredentialMetadata:
    """Off-chain credential content committed to by the on-chain digest."""

    course: str
    module_id: str
    learner: str
    issuer: str
    issued_at: str

    def __post_init__(self) -> None:
        for name, value in self.as_dict().items():
            if not isinstance(value, str):
                raise ValidationError(
                    f"Metadata field {name!r} must be text, got {type(value).__name__}"
                )

    @classmethod
    def build(
        cls,
        course: str,
        module_id: str,
        learner: str,
        issuer: str,
        issued_at: str | None = None,
    ) -> CredentialMetadata:
        """Create metadata for a new credential.

        Accounts are validated and normalized to checksum form; ``issued_at``
        defaults to the current UTC time.

        Raises:
            ValidationError: If either account is malformed.
        """
        return cls(
            course=course,
            module_id=module_id,
            learner=normalize_address(learner, "learner"),
            issuer=normalize_address(issuer, "issuer"),
            issued_at=issued_at if issued_at is not None else utc_now_iso(),
        )

    def as_dict(self) -> dict[str, Any]:
        """Serialized field mapping, in canonical key order."""
        return {
            "course": self.course,
            "moduleId": self.module_id,
            "learner": self.learner,
            "issuer": self.issuer,
            "issuedAtISO": self.issued_at,
        }


def canonical_json(metadata: CredentialMetadata) -> str:
    """Compact JSON of the metadata in the fixed key order."""
    return json.dumps(metadata.as_dict(), separators=(",", ":"), ensure_ascii=False)


def digest(metadata: CredentialMetadata) -> bytes:
    """Compute the 32-byte integrity digest of credential metadata.

    Raises:
        ValidationError: If the metadata text cannot be UTF-8 encoded.
    """
    try:
        payload = canonical_json(metadata).encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValidationError(f"Metadata is not UTF-8 encodable: {e}") from e
    return keccak(payload)


def format_digest(value: bytes) -> str:
    """Render a digest as lowercase 0x-prefixed hex."""
    return "0x" + bytes(value).hex()


def parse_digest(value: str | bytes) -> bytes:
    """Parse a digest from hex text (any casing, optional 0x) or raw bytes.

    Raises:
        ValidationError: If the value is not exactly 32 bytes.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as e:
            raise ValidationError(f"Digest is not hex: {value!r}") from e
    else:
        raise ValidationError(f"Digest must be hex text or bytes, got {type(value).__name__}")

    if len(raw) != DIGEST_SIZE:
        raise ValidationError(f"Digest must be {DIGEST_SIZE} bytes, got {len(raw)}")
    return raw


def digests_equal(a: str | bytes, b: str | bytes) -> bool:
    """Compare two digests as fixed-width byte sequences."""
    return parse_digest(a) == parse_digest(b)


def metadata_from_json(payload: str | bytes | Mapping[str, Any]) -> CredentialMetadata:
    """Parse a claimed credential payload into metadata.

    The payload must be a JSON object with exactly the five metadata keys,
    all text. Key order and whitespace in the input do not matter; the digest
    is always computed over the canonical serialization.

    Raises:
        ValidationError: If the payload cannot be parsed into that shape.
    """
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"Invalid JSON: {e}") from e
    else:
        data = payload

    if not isinstance(data, Mapping):
        raise ValidationError("Credential payload must be a JSON object")

    missing = [k for k in METADATA_KEYS if k not in data]
    if missing:
        raise ValidationError(f"Credential payload missing: {', '.join(missing)}")
    unknown = sorted(set(data) - set(METADATA_KEYS))
    if unknown:
        raise ValidationError(f"Credential payload has unknown keys: {', '.join(unknown)}")

    return CredentialMetadata(
        course=data["course"],
        module_id=data["moduleId"],
        learner=data["learner"],
        issuer=data["issuer"],
        issued_at=data["issuedAtISO"],
    )
