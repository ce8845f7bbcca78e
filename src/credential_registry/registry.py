"""
Registry client.

Typed façade over the credential registry contract. Reads pass straight
through to the ledger; writes are checked locally against the lifecycle
rules, submitted, reported as submitted, and awaited until the ledger settles
them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import Any, Callable, Union

from credential_registry.config import Session
from credential_registry.errors import (
    AuthorizationError,
    ConnectivityError,
    NotFoundError,
    TransactionRevertedError,
    ValidationError,
)
from credential_registry.hashing import (
    CredentialMetadata,
    canonical_json,
    digest,
    format_digest,
    parse_digest,
)
from credential_registry.ledger import Ledger, PendingTransaction
from credential_registry.lifecycle import CredentialStateMachine
from credential_registry.models import (
    CredentialMinted,
    CredentialRecord,
    OnChainCredential,
    TransactionReceipt,
    TransactionStatus,
    normalize_address,
    parse_token_id,
    same_address,
)
from credential_registry.rpc import JsonRpcLedger


logger = logging.getLogger(__name__)

SubmittedCallback = Callable[[PendingTransaction], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class SessionInfo:
    """Result of connecting a session to its ledger."""

    account: str | None
    chain_id: int


@dataclass(frozen=True)
class RoleSummary:
    """Registry roles as seen by one account."""

    owner: str
    account: str | None
    is_owner: bool
    is_issuer: bool


@dataclass(frozen=True)
class IssuedCredential:
    """What an issuer must retain after minting to later prove the content."""

    token_id: int
    credential_hash: bytes
    metadata: CredentialMetadata
    tx_hash: str

    @property
    def digest_hex(self) -> str:
        return format_digest(self.credential_hash)

    @property
    def payload(self) -> str:
        """The exact JSON the digest was computed over."""
        return canonical_json(self.metadata)


class MintScan:
    """Token ids minted to a learner, recomputed from CredentialMinted events.

    Each iteration scans from ``from_block`` up to the latest block at the
    moment iteration starts, so the sequence is finite, and iterating again
    restarts the scan. Nothing is cached between iterations.
    """

    def __init__(
        self,
        ledger: Ledger,
        learner: str,
        from_block: int = 0,
        block_span: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.learner = learner
        self.from_block = from_block
        self.block_span = block_span

    def __aiter__(self) -> AsyncIterator[int]:
        return self._scan()

    async def _scan(self) -> AsyncIterator[int]:
        to_block = await self.ledger.block_number()
        start = self.from_block
        while start <= to_block:
            end = to_block if self.block_span is None else min(to_block, start + self.block_span - 1)
            logger.debug("Scanning CredentialMinted for %s in blocks %d-%d", self.learner, start, end)
            for event in await self.ledger.minted_events(self.learner, start, end):
                yield event.token_id
            start = end + 1

    async def collect(self) -> list[int]:
        """Run the scan to completion."""
        return [token_id async for token_id in self]


class RegistryClient:
    """Role queries, issuance, revocation and lookup against the registry."""

    def __init__(
        self,
        session: Session,
        ledger: Ledger | None = None,
        state_machine: CredentialStateMachine | None = None,
        preflight: bool = True,
    ) -> None:
        """Initialize the client.

        Args:
            session: Network, contract and acting account.
            ledger: Custom ledger. A JSON-RPC ledger is built from the
                session (and owned by the client) if not provided.
            state_machine: Local lifecycle rules used for preflight checks.
            preflight: Whether to check writes locally before submitting.
        """
        self.session = session
        self._owns_ledger = ledger is None
        self.ledger = ledger or JsonRpcLedger.from_session(session)
        self.rules = state_machine or CredentialStateMachine()
        self.preflight = preflight

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_ledger:
            await self.ledger.aclose()

    async def reset(self, session: Session, ledger: Ledger | None = None) -> None:
        """Start over with a new session after an account or network change."""
        logger.info("Resetting session (account %s, rpc %s)", session.account, session.rpc_url)
        await self.aclose()
        self.session = session
        self._owns_ledger = ledger is None
        self.ledger = ledger or JsonRpcLedger.from_session(session)

    async def connect(self, require_account: bool = True) -> SessionInfo:
        """Check the provider and settle which account acts.

        Adopts the provider's first account when the session names none.

        Raises:
            ConnectivityError: If the provider is unreachable, on the wrong
                chain, or has no usable account.
        """
        chain_id = await self.ledger.chain_id()
        if self.session.chain_id is not None and chain_id != self.session.chain_id:
            raise ConnectivityError(
                f"Connected to chain {chain_id}, expected {self.session.chain_id}"
            )

        accounts = await self.ledger.accounts()
        account = self.session.account
        if account is not None:
            if require_account and not any(same_address(account, a) for a in accounts):
                raise ConnectivityError(f"Account {account} is not available on the provider")
        elif accounts:
            account = accounts[0]
            self.session = self.session.with_account(account)
        elif require_account:
            raise ConnectivityError("No accounts available on the provider")

        logger.info("Connected to chain %d as %s", chain_id, account)
        return SessionInfo(account=account, chain_id=chain_id)

    def _require_account(self) -> str:
        if self.session.account is None:
            raise ConnectivityError("No account connected")
        return self.session.account

    # Reads

    async def get_owner(self) -> str:
        return await self.ledger.owner()

    async def is_issuer(self, account: str) -> bool:
        return await self.ledger.is_issuer(normalize_address(account))

    async def roles(self, account: str | None = None) -> RoleSummary:
        """Owner of the registry and the roles held by ``account`` (default: session account)."""
        account = normalize_address(account) if account else self.session.account
        owner = await self.ledger.owner()
        is_issuer = await self.ledger.is_issuer(account) if account else False
        return RoleSummary(
            owner=owner,
            account=account,
            is_owner=same_address(owner, account),
            is_issuer=is_issuer,
        )

    async def next_token_id(self) -> int:
        return await self.ledger.next_token_id()

    async def is_valid(self, token_id: int | str) -> bool:
        return await self.ledger.is_valid(parse_token_id(token_id))

    async def owner_of(self, token_id: int | str) -> str:
        return await self.ledger.owner_of(parse_token_id(token_id))

    async def token_uri(self, token_id: int | str) -> str:
        return await self.ledger.token_uri(parse_token_id(token_id))

    async def credential_of(self, token_id: int | str) -> OnChainCredential:
        return await self.ledger.credential_of(parse_token_id(token_id))

    async def get_record(self, token_id: int | str) -> CredentialRecord:
        """Read owner, URI and credential tuple concurrently.

        All three reads must succeed; the first failure is raised.
        """
        token_id = parse_token_id(token_id)
        owner, uri, credential = await asyncio.gather(
            self.ledger.owner_of(token_id),
            self.ledger.token_uri(token_id),
            self.ledger.credential_of(token_id),
        )
        return CredentialRecord(
            token_id=token_id,
            issuer=credential.issuer,
            credential_hash=credential.credential_hash,
            issued_at=credential.issued_at,
            revoked=credential.revoked,
            owner=owner,
            uri=uri,
        )

    def query_minted_to(self, learner: str, from_block: int | None = None) -> MintScan:
        """Token ids minted to ``learner``, in mint order."""
        return MintScan(
            self.ledger,
            normalize_address(learner, "learner"),
            from_block=self.session.from_block if from_block is None else from_block,
            block_span=self.session.log_block_span,
        )

    # Writes

    async def set_issuer(
        self,
        account: str,
        allowed: bool,
        on_submitted: SubmittedCallback | None = None,
    ) -> TransactionReceipt:
        """Grant or remove issuer rights. Owner only.

        Raises:
            ValidationError: If ``account`` is malformed.
            AuthorizationError: If the session account is not the owner.
        """
        account = normalize_address(account, "issuer")
        sender = self._require_account()
        if self.preflight:
            self.rules.check_set_issuer(sender, await self.ledger.owner())

        pending = await self._submit(
            "setIssuer", self.ledger.set_issuer(sender, account, allowed)
        )
        return await self._settle("setIssuer", pending, on_submitted)

    async def mint(
        self,
        learner: str,
        credential_hash: str | bytes,
        uri: str = "",
        on_submitted: SubmittedCallback | None = None,
    ) -> int:
        """Mint a credential to ``learner`` and return its token id.

        The token id comes from the CredentialMinted event in the receipt.

        Raises:
            ValidationError: If the learner or digest is malformed.
            AuthorizationError: If the session account is not an issuer.
            TransactionRevertedError: If the transaction fails on-chain.
        """
        learner = normalize_address(learner, "learner")
        credential_hash = parse_digest(credential_hash)
        sender = self._require_account()
        if self.preflight:
            self.rules.check_mint(sender, await self.ledger.is_issuer(sender), learner)

        pending = await self._submit(
            "mintCredential",
            self.ledger.mint_credential(sender, learner, credential_hash, uri),
        )
        receipt = await self._settle("mintCredential", pending, on_submitted)

        event = receipt.find_event(CredentialMinted)
        if event is None:
            raise NotFoundError(f"No CredentialMinted event in receipt {receipt.tx_hash}")
        logger.info("Minted token %d to %s", event.token_id, learner)
        return event.token_id

    async def issue(
        self,
        course: str,
        module_id: str,
        learner: str,
        uri: str = "",
        on_submitted: SubmittedCallback | None = None,
    ) -> IssuedCredential:
        """Build metadata, hash it and mint, with the session account as issuer."""
        sender = self._require_account()
        metadata = CredentialMetadata.build(course, module_id, learner, sender)
        credential_hash = digest(metadata)

        tx_hashes: list[str] = []

        async def submitted(pending: PendingTransaction) -> None:
            tx_hashes.append(pending.tx_hash)
            if on_submitted is not None:
                result = on_submitted(pending)
                if inspect.isawaitable(result):
                    await result

        token_id = await self.mint(metadata.learner, credential_hash, uri, on_submitted=submitted)
        return IssuedCredential(
            token_id=token_id,
            credential_hash=credential_hash,
            metadata=metadata,
            tx_hash=tx_hashes[0] if tx_hashes else "",
        )

    async def revoke(
        self,
        token_id: int | str,
        on_submitted: SubmittedCallback | None = None,
    ) -> TransactionReceipt:
        """Revoke a credential. Only its recorded issuer may do so.

        Raises:
            NotFoundError: If the token was never minted.
            InvalidTransitionError: If it is already revoked.
            AuthorizationError: If the session account is not the issuer.
        """
        token_id = parse_token_id(token_id)
        sender = self._require_account()
        if self.preflight:
            credential = await self.ledger.credential_of(token_id)
            owner = await self.ledger.owner() if self.rules.allow_owner_revocation else None
            self.rules.check_revoke(sender, credential, owner=owner, token_id=token_id)

        pending = await self._submit("revoke", self.ledger.revoke(sender, token_id))
        return await self._settle("revoke", pending, on_submitted)

    async def _submit(
        self, operation: str, submission: Awaitable[PendingTransaction]
    ) -> PendingTransaction:
        try:
            return await submission
        except (AuthorizationError, NotFoundError, ValidationError) as e:
            if self.preflight:
                logger.warning("Ledger rejected %s after local checks passed: %s", operation, e)
            raise

    async def _settle(
        self,
        operation: str,
        pending: PendingTransaction,
        on_submitted: SubmittedCallback | None,
    ) -> TransactionReceipt:
        logger.info("%s submitted: %s", operation, pending.tx_hash)
        if on_submitted is not None:
            result = on_submitted(pending)
            if inspect.isawaitable(result):
                await result

        receipt = await pending.wait()
        if receipt.status == TransactionStatus.REJECTED:
            raise TransactionRevertedError(
                f"{operation} transaction {receipt.tx_hash} reverted on-chain"
            )
        return receipt
