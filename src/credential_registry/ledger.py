"""
Ledger interface.

The credential registry contract lives on an external ledger that enforces
authorization and immutability. ``Ledger`` is the fixed surface the client
depends on: one coroutine per contract function, plus the event query and
provider metadata the client needs.

``InMemoryLedger`` implements the same contract rules in process. It mines
every accepted transaction into its own block immediately, like a local
development node.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable

from eth_utils import keccak

from credential_registry.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from credential_registry.models import (
    ZERO_ADDRESS,
    CredentialMinted,
    CredentialRecord,
    CredentialRevoked,
    IssuerUpdated,
    LedgerEvent,
    OnChainCredential,
    TransactionReceipt,
    TransactionStatus,
    normalize_address,
    same_address,
)


logger = logging.getLogger(__name__)


class PendingTransaction(ABC):
    """A write the ledger has accepted for inclusion but may not have settled.

    Abandoning ``wait()`` does not retract the transaction.
    """

    def __init__(self, tx_hash: str) -> None:
        self.tx_hash = tx_hash
        self.status = TransactionStatus.SUBMITTED

    @abstractmethod
    async def wait(self) -> TransactionReceipt:
        """Wait for the transaction to settle and return its receipt."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.tx_hash} {self.status.value}>"


class Ledger(ABC):
    """Async surface of the credential registry contract."""

    # Provider

    @abstractmethod
    async def chain_id(self) -> int:
        """Chain id of the connected network."""

    @abstractmethod
    async def accounts(self) -> list[str]:
        """Accounts the provider can send transactions from."""

    @abstractmethod
    async def block_number(self) -> int:
        """Latest block number."""

    # Views

    @abstractmethod
    async def owner(self) -> str: ...

    @abstractmethod
    async def is_issuer(self, account: str) -> bool: ...

    @abstractmethod
    async def next_token_id(self) -> int: ...

    @abstractmethod
    async def is_valid(self, token_id: int) -> bool: ...

    @abstractmethod
    async def owner_of(self, token_id: int) -> str: ...

    @abstractmethod
    async def token_uri(self, token_id: int) -> str: ...

    @abstractmethod
    async def credential_of(self, token_id: int) -> OnChainCredential: ...

    # Writes

    @abstractmethod
    async def set_issuer(self, sender: str, issuer: str, allowed: bool) -> PendingTransaction: ...

    @abstractmethod
    async def mint_credential(
        self, sender: str, learner: str, credential_hash: bytes, uri: str
    ) -> PendingTransaction: ...

    @abstractmethod
    async def revoke(self, sender: str, token_id: int) -> PendingTransaction: ...

    # Events

    @abstractmethod
    async def minted_events(
        self, learner: str, from_block: int, to_block: int
    ) -> list[CredentialMinted]:
        """CredentialMinted events for ``learner`` in [from_block, to_block], in ledger order."""

    async def aclose(self) -> None:
        """Release transport resources."""


class SettledTransaction(PendingTransaction):
    """A transaction whose receipt is already known."""

    def __init__(self, receipt: TransactionReceipt) -> None:
        super().__init__(receipt.tx_hash)
        self._receipt = receipt

    async def wait(self) -> TransactionReceipt:
        self.status = self._receipt.status
        return self._receipt


class InMemoryLedger(Ledger):
    """Reference ledger enforcing the registry contract's rules in memory.

    Token ids start at 0 and increase by one per mint. A rejected write
    raises at submission and never reaches a block.
    """

    def __init__(
        self,
        owner: str,
        accounts: list[str] | None = None,
        chain_id: int = 31337,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            owner: Registry owner (the deploying account).
            accounts: Additional provider-managed accounts.
            chain_id: Reported chain id.
            clock: Returns the block timestamp in seconds.
        """
        self._owner = normalize_address(owner, "owner")
        self._accounts = [self._owner] + [
            normalize_address(a) for a in (accounts or []) if not same_address(a, owner)
        ]
        self._chain_id = chain_id
        self.clock = clock or (lambda: int(time.time()))

        self._issuers: dict[str, bool] = {}
        self._records: dict[int, CredentialRecord] = {}
        self._next_token_id = 0
        self._block = 0
        self._tx_count = 0
        self._events: list[LedgerEvent] = []

    async def chain_id(self) -> int:
        return self._chain_id

    async def accounts(self) -> list[str]:
        return list(self._accounts)

    async def block_number(self) -> int:
        return self._block

    async def owner(self) -> str:
        return self._owner

    async def is_issuer(self, account: str) -> bool:
        return self._issuers.get(account.lower(), False)

    async def next_token_id(self) -> int:
        return self._next_token_id

    async def is_valid(self, token_id: int) -> bool:
        return not self._record(token_id).revoked

    async def owner_of(self, token_id: int) -> str:
        return self._record(token_id).owner

    async def token_uri(self, token_id: int) -> str:
        return self._record(token_id).uri

    async def credential_of(self, token_id: int) -> OnChainCredential:
        record = self._record(token_id)
        return OnChainCredential(
            issuer=record.issuer,
            credential_hash=record.credential_hash,
            issued_at=record.issued_at,
            revoked=record.revoked,
        )

    async def set_issuer(self, sender: str, issuer: str, allowed: bool) -> PendingTransaction:
        if not same_address(sender, self._owner):
            raise AuthorizationError(f"setIssuer reverted: {sender} is not the owner")
        issuer = normalize_address(issuer, "issuer")
        self._issuers[issuer.lower()] = bool(allowed)
        return self._commit([IssuerUpdated(issuer=issuer, allowed=bool(allowed))])

    async def mint_credential(
        self, sender: str, learner: str, credential_hash: bytes, uri: str
    ) -> PendingTransaction:
        if not self._issuers.get(sender.lower(), False):
            raise AuthorizationError(f"mintCredential reverted: {sender} is not an issuer")
        learner = normalize_address(learner, "learner")
        if same_address(learner, ZERO_ADDRESS):
            raise ValidationError("mintCredential reverted: invalid receiver")
        if len(credential_hash) != 32:
            raise ValidationError("mintCredential reverted: digest must be 32 bytes")

        token_id = self._next_token_id
        self._next_token_id += 1
        issuer = normalize_address(sender, "issuer")
        self._records[token_id] = CredentialRecord(
            token_id=token_id,
            issuer=issuer,
            credential_hash=bytes(credential_hash),
            issued_at=int(self.clock()),
            revoked=False,
            owner=learner,
            uri=uri,
        )
        return self._commit([
            CredentialMinted(
                token_id=token_id,
                issuer=issuer,
                learner=learner,
                credential_hash=bytes(credential_hash),
                uri=uri,
            )
        ])

    async def revoke(self, sender: str, token_id: int) -> PendingTransaction:
        record = self._record(token_id)
        if not same_address(sender, record.issuer):
            raise AuthorizationError(f"revoke reverted: {sender} is not the issuer")
        if record.revoked:
            raise InvalidTransitionError(f"revoke reverted: token {token_id} already revoked")

        self._records[token_id] = replace(record, revoked=True)
        return self._commit([CredentialRevoked(token_id=token_id, issuer=record.issuer)])

    async def minted_events(
        self, learner: str, from_block: int, to_block: int
    ) -> list[CredentialMinted]:
        return [
            e
            for e in self._events
            if isinstance(e, CredentialMinted)
            and same_address(e.learner, learner)
            and from_block <= e.block_number <= to_block
        ]

    def _record(self, token_id: int) -> CredentialRecord:
        try:
            return self._records[token_id]
        except KeyError:
            raise NotFoundError(f"token {token_id} does not exist") from None

    def _commit(self, events: list[LedgerEvent]) -> PendingTransaction:
        self._block += 1
        self._tx_count += 1
        tx_hash = "0x" + keccak(text=f"{self._chain_id}:{self._tx_count}").hex()

        placed: list[LedgerEvent] = [
            replace(event, block_number=self._block, log_index=index)
            for index, event in enumerate(events)
        ]
        self._events.extend(placed)

        receipt = TransactionReceipt(
            tx_hash=tx_hash,
            block_number=self._block,
            status=TransactionStatus.CONFIRMED,
            events=placed,
        )
        logger.debug("Mined %s in block %d", tx_hash, self._block)
        return SettledTransaction(receipt)
