"""
Credential lifecycle state machine.

    UNMINTED --mint--> VALID --revoke--> REVOKED

REVOKED is terminal and nothing removes a record. The ledger enforces these
rules; this module mirrors them so the client can refuse an operation before
submitting it. A ledger rejection always wins over a local verdict.
"""

from __future__ import annotations

import logging
from enum import Enum

from credential_registry.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from credential_registry.models import (
    ZERO_ADDRESS,
    OnChainCredential,
    normalize_address,
    same_address,
)


logger = logging.getLogger(__name__)


class CredentialState(Enum):
    """Lifecycle states of a single credential."""

    UNMINTED = "unminted"
    VALID = "valid"
    REVOKED = "revoked"


class CredentialAction(Enum):
    """Lifecycle transitions."""

    MINT = "mint"
    REVOKE = "revoke"


TRANSITIONS: dict[tuple[CredentialState, CredentialAction], CredentialState] = {
    (CredentialState.UNMINTED, CredentialAction.MINT): CredentialState.VALID,
    (CredentialState.VALID, CredentialAction.REVOKE): CredentialState.REVOKED,
}


def state_of(credential: OnChainCredential | None) -> CredentialState:
    """Lifecycle state of a credential as read from the ledger (None = unminted)."""
    if credential is None:
        return CredentialState.UNMINTED
    if credential.revoked:
        return CredentialState.REVOKED
    return CredentialState.VALID


def next_state(state: CredentialState, action: CredentialAction) -> CredentialState:
    """Apply an action to a state.

    Raises:
        InvalidTransitionError: If the action is not allowed from ``state``.
    """
    try:
        return TRANSITIONS[(state, action)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot {action.value} a credential that is {state.value}"
        ) from None


class CredentialStateMachine:
    """Advisory authorization rules for registry writes.

    Revocation is issuer-only unless ``allow_owner_revocation`` is set. The
    deployed contract exposes no owner override, so enabling it only relaxes
    the local check; the ledger may still reject.
    """

    def __init__(self, allow_owner_revocation: bool = False) -> None:
        self.allow_owner_revocation = allow_owner_revocation

    def check_set_issuer(self, caller: str, owner: str) -> None:
        """Only the registry owner may change the issuer allowlist."""
        if not same_address(caller, owner):
            raise AuthorizationError(
                f"setIssuer failed: {caller} is not the registry owner"
            )

    def check_mint(
        self,
        caller: str,
        caller_is_issuer: bool,
        learner: str,
    ) -> CredentialState:
        """Check that ``caller`` may mint a credential to ``learner``.

        Returns:
            The state the credential will be in after minting.

        Raises:
            ValidationError: If the learner address is malformed or zero.
            AuthorizationError: If the caller is not an allowed issuer.
        """
        learner = normalize_address(learner, "learner")
        if same_address(learner, ZERO_ADDRESS):
            raise ValidationError("Bad learner address: zero address")
        if not caller_is_issuer:
            raise AuthorizationError(f"Mint failed: {caller} is not an issuer")
        return next_state(CredentialState.UNMINTED, CredentialAction.MINT)

    def check_revoke(
        self,
        caller: str,
        credential: OnChainCredential | None,
        owner: str | None = None,
        token_id: int | None = None,
    ) -> CredentialState:
        """Check that ``caller`` may revoke ``credential``.

        Returns:
            The state the credential will be in after revocation.

        Raises:
            NotFoundError: If the credential was never minted.
            InvalidTransitionError: If it is already revoked.
            AuthorizationError: If the caller is not the recorded issuer.
        """
        label = f"token {token_id}" if token_id is not None else "credential"
        if credential is None:
            raise NotFoundError(f"{label} does not exist")

        new_state = next_state(state_of(credential), CredentialAction.REVOKE)

        if same_address(caller, credential.issuer):
            return new_state
        if self.allow_owner_revocation and same_address(caller, owner):
            logger.debug("Owner override revoking %s issued by %s", label, credential.issuer)
            return new_state
        raise AuthorizationError(
            f"Revoke failed: {caller} is not the issuer of {label}"
        )
