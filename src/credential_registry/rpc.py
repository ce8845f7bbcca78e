"""
Ethereum JSON-RPC ledger.

Talks to the credential registry contract through a JSON-RPC endpoint.
Calldata and return values are ABI-coded with eth-abi; writes are sent with
``eth_sendTransaction`` from an account the provider manages (a development
node or a signing proxy), so no key material ever passes through the client.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from credential_registry.config import Session
from credential_registry.errors import (
    AuthorizationError,
    ConnectivityError,
    CredentialRegistryError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from credential_registry.ledger import Ledger, PendingTransaction
from credential_registry.models import (
    CredentialMinted,
    CredentialRevoked,
    IssuerUpdated,
    LedgerEvent,
    OnChainCredential,
    TransactionReceipt,
    TransactionStatus,
)


logger = logging.getLogger(__name__)


# name -> (input types, output types)
FUNCTIONS: dict[str, tuple[list[str], list[str]]] = {
    "owner": ([], ["address"]),
    "isIssuer": (["address"], ["bool"]),
    "setIssuer": (["address", "bool"], []),
    "nextTokenId": ([], ["uint256"]),
    "mintCredential": (["address", "bytes32", "string"], ["uint256"]),
    "revoke": (["uint256"], []),
    "isValid": (["uint256"], ["bool"]),
    "ownerOf": (["uint256"], ["address"]),
    "tokenURI": (["uint256"], ["string"]),
    "credentialOf": (["uint256"], ["address", "bytes32", "uint64", "bool"]),
}

EVENT_SIGNATURES = {
    "CredentialMinted": "CredentialMinted(uint256,address,address,bytes32,string)",
    "CredentialRevoked": "CredentialRevoked(uint256,address)",
    "IssuerUpdated": "IssuerUpdated(address,bool)",
}


def function_selector(signature: str) -> bytes:
    """First four bytes of the keccak-256 of a function or error signature."""
    return keccak(text=signature)[:4]


def event_topic(name: str) -> str:
    """Topic 0 of an event, as 0x-prefixed hex."""
    return "0x" + keccak(text=EVENT_SIGNATURES[name]).hex()


def encode_call(name: str, *args: Any) -> str:
    """ABI-encode a call to a registry function as 0x-prefixed calldata."""
    inputs, _ = FUNCTIONS[name]
    selector = function_selector(f"{name}({','.join(inputs)})")
    return "0x" + (selector + encode(inputs, list(args))).hex()


def decode_result(name: str, data: str) -> tuple:
    """ABI-decode the return data of a registry function."""
    _, outputs = FUNCTIONS[name]
    return decode(outputs, _hex_bytes(data))


def address_topic(address: str) -> str:
    """An address left-padded to a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address[2:].lower()


def _hex_bytes(value: str) -> bytes:
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def _hex_int(value: str | int) -> int:
    return value if isinstance(value, int) else int(value, 16)


TOPIC_MINTED = event_topic("CredentialMinted")
TOPIC_REVOKED = event_topic("CredentialRevoked")
TOPIC_ISSUER_UPDATED = event_topic("IssuerUpdated")

_ERROR_STRING = function_selector("Error(string)")
_NOT_FOUND_SELECTORS = {function_selector("ERC721NonexistentToken(uint256)")}
_AUTH_SELECTORS = {function_selector("OwnableUnauthorizedAccount(address)")}
_RECEIVER_SELECTORS = {function_selector("ERC721InvalidReceiver(address)")}

_NOT_FOUND_HINTS = ("nonexistent", "not minted", "invalid token", "does not exist", "no such token")
_AUTH_HINTS = ("not owner", "not issuer", "not the owner", "not the issuer", "only owner",
               "only issuer", "caller is not", "unauthorized")


class JsonRpcError(ConnectivityError):
    """Error object returned by the JSON-RPC endpoint."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.message = message
        if isinstance(data, dict):
            data = data.get("data")
        self.data = data if isinstance(data, str) else None

    @property
    def is_revert(self) -> bool:
        return self.code == 3 or "revert" in self.message.lower()

    def revert_reason(self) -> str:
        """Decoded ``Error(string)`` reason, or the raw message."""
        if self.data and self.data.startswith("0x") and len(self.data) >= 10:
            raw = _hex_bytes(self.data)
            if raw[:4] == _ERROR_STRING:
                try:
                    return decode(["string"], raw[4:])[0]
                except Exception:
                    logger.debug("Undecodable revert data %s", self.data)
        return self.message

    def revert_selector(self) -> bytes | None:
        if self.data and len(self.data) >= 10:
            return _hex_bytes(self.data[:10])
        return None


def classify_revert(
    error: JsonRpcError,
    operation: str,
    default: type[CredentialRegistryError],
) -> CredentialRegistryError:
    """Map a contract revert onto the error taxonomy.

    Args:
        error: The JSON-RPC error carrying the revert.
        operation: Contract function name, for the message.
        default: Error class used when the revert is not recognized.
    """
    reason = error.revert_reason()
    text = f"{error.message} {reason}".lower()
    selector = error.revert_selector()
    message = f"{operation} reverted: {reason}"

    if selector in _NOT_FOUND_SELECTORS or any(h in text for h in _NOT_FOUND_HINTS):
        return NotFoundError(message)
    if selector in _AUTH_SELECTORS or any(h in text for h in _AUTH_HINTS):
        return AuthorizationError(message)
    if "already revoked" in text:
        return InvalidTransitionError(message)
    if selector in _RECEIVER_SELECTORS or "invalid receiver" in text:
        return ValidationError(message)
    return default(message)


class RpcPendingTransaction(PendingTransaction):
    """A submitted transaction, settled by polling for its receipt."""

    def __init__(self, ledger: JsonRpcLedger, tx_hash: str, operation: str) -> None:
        super().__init__(tx_hash)
        self.ledger = ledger
        self.operation = operation

    async def wait(self) -> TransactionReceipt:
        """Poll until the receipt is available.

        Raises:
            ConnectivityError: If ``confirmation_timeout`` elapses first. The
                transaction may still settle afterwards.
        """
        started = time.monotonic()
        timeout = self.ledger.confirmation_timeout
        while True:
            raw = await self.ledger.request("eth_getTransactionReceipt", [self.tx_hash])
            if raw is not None:
                break
            if timeout is not None and time.monotonic() - started >= timeout:
                raise ConnectivityError(
                    f"{self.operation} {self.tx_hash} not confirmed after {timeout:g}s"
                )
            await asyncio.sleep(self.ledger.poll_interval)

        receipt = self.ledger.parse_receipt(raw)
        self.status = receipt.status
        logger.info("%s %s %s in block %d", self.operation, self.tx_hash,
                    receipt.status.value, receipt.block_number)
        return receipt


class JsonRpcLedger(Ledger):
    """Registry contract accessed over Ethereum JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        poll_interval: float = 1.0,
        confirmation_timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            rpc_url: JSON-RPC endpoint.
            contract_address: Address of the credential registry.
            timeout: HTTP request timeout in seconds.
            verify_ssl: Whether to verify SSL certificates.
            poll_interval: Seconds between receipt polls.
            confirmation_timeout: Give up waiting for a receipt after this
                many seconds. None waits indefinitely.
            client: Custom HTTP client. Created (and owned) if not provided.
        """
        self.rpc_url = rpc_url
        self.contract_address = to_checksum_address(contract_address)
        self.poll_interval = poll_interval
        self.confirmation_timeout = confirmation_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, verify=verify_ssl)
        self._request_id = 0

    @classmethod
    def from_session(cls, session: Session) -> JsonRpcLedger:
        return cls(
            rpc_url=session.rpc_url,
            contract_address=session.contract_address,
            timeout=session.timeout,
            verify_ssl=session.verify_ssl,
            poll_interval=session.poll_interval,
            confirmation_timeout=session.confirmation_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request and return its result.

        Raises:
            ConnectivityError: On transport failure, HTTP error or a malformed
                response.
            JsonRpcError: If the endpoint returns an error object.
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        logger.debug("-> %s %s", method, params)

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise ConnectivityError(
                f"HTTP error from {self.rpc_url}: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise ConnectivityError(f"Network error reaching {self.rpc_url}: {e}") from e
        except ValueError as e:
            raise ConnectivityError(f"Invalid JSON-RPC response from {self.rpc_url}") from e

        if not isinstance(body, dict):
            raise ConnectivityError(f"Invalid JSON-RPC response from {self.rpc_url}")
        error = body.get("error")
        if error:
            raise JsonRpcError(
                code=int(error.get("code", 0)),
                message=str(error.get("message", "")),
                data=error.get("data"),
            )
        return body.get("result")

    async def call(
        self,
        name: str,
        *args: Any,
        sender: str | None = None,
        default: type[CredentialRegistryError] = NotFoundError,
    ) -> tuple:
        """Execute a contract function with ``eth_call`` and decode its result.

        Args:
            name: Contract function name.
            *args: Function arguments.
            sender: Optional ``from`` address (used to simulate writes).
            default: Error class for unrecognized reverts.
        """
        tx: dict[str, Any] = {"to": self.contract_address, "data": encode_call(name, *args)}
        if sender is not None:
            tx["from"] = sender
        try:
            result = await self.request("eth_call", [tx, "latest"])
        except JsonRpcError as e:
            if e.is_revert:
                raise classify_revert(e, name, default) from e
            raise

        if not result or result == "0x":
            if not FUNCTIONS[name][1]:
                return ()
            raise ConnectivityError(f"No registry contract at {self.contract_address}")
        return decode_result(name, result)

    async def transact(self, sender: str, name: str, *args: Any) -> RpcPendingTransaction:
        """Simulate then submit a write from a provider-managed account."""
        await self.call(name, *args, sender=sender, default=AuthorizationError)

        tx = {"from": sender, "to": self.contract_address, "data": encode_call(name, *args)}
        try:
            tx_hash = await self.request("eth_sendTransaction", [tx])
        except JsonRpcError as e:
            if e.is_revert:
                raise classify_revert(e, name, AuthorizationError) from e
            raise
        logger.info("Submitted %s from %s: %s", name, sender, tx_hash)
        return RpcPendingTransaction(self, tx_hash, name)

    # Provider

    async def chain_id(self) -> int:
        return _hex_int(await self.request("eth_chainId", []))

    async def accounts(self) -> list[str]:
        result = await self.request("eth_accounts", [])
        return [to_checksum_address(a) for a in result or []]

    async def block_number(self) -> int:
        return _hex_int(await self.request("eth_blockNumber", []))

    # Views

    async def owner(self) -> str:
        (owner,) = await self.call("owner", default=ConnectivityError)
        return to_checksum_address(owner)

    async def is_issuer(self, account: str) -> bool:
        (allowed,) = await self.call("isIssuer", account, default=ConnectivityError)
        return bool(allowed)

    async def next_token_id(self) -> int:
        (token_id,) = await self.call("nextTokenId", default=ConnectivityError)
        return int(token_id)

    async def is_valid(self, token_id: int) -> bool:
        (valid,) = await self.call("isValid", token_id)
        return bool(valid)

    async def owner_of(self, token_id: int) -> str:
        (owner,) = await self.call("ownerOf", token_id)
        return to_checksum_address(owner)

    async def token_uri(self, token_id: int) -> str:
        (uri,) = await self.call("tokenURI", token_id)
        return uri

    async def credential_of(self, token_id: int) -> OnChainCredential:
        issuer, credential_hash, issued_at, revoked = await self.call("credentialOf", token_id)
        return OnChainCredential(
            issuer=to_checksum_address(issuer),
            credential_hash=bytes(credential_hash),
            issued_at=int(issued_at),
            revoked=bool(revoked),
        )

    # Writes

    async def set_issuer(self, sender: str, issuer: str, allowed: bool) -> PendingTransaction:
        return await self.transact(sender, "setIssuer", issuer, bool(allowed))

    async def mint_credential(
        self, sender: str, learner: str, credential_hash: bytes, uri: str
    ) -> PendingTransaction:
        return await self.transact(sender, "mintCredential", learner, bytes(credential_hash), uri)

    async def revoke(self, sender: str, token_id: int) -> PendingTransaction:
        return await self.transact(sender, "revoke", token_id)

    # Events

    async def minted_events(
        self, learner: str, from_block: int, to_block: int
    ) -> list[CredentialMinted]:
        query = {
            "address": self.contract_address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": [TOPIC_MINTED, None, None, address_topic(learner)],
        }
        logs = await self.request("eth_getLogs", [query])
        events = [e for e in map(self.decode_log, logs or []) if isinstance(e, CredentialMinted)]
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    def decode_log(self, log: dict[str, Any]) -> LedgerEvent | None:
        """Decode a registry event log; None for logs of other contracts or events."""
        if str(log.get("address", "")).lower() != self.contract_address.lower():
            return None
        topics = log.get("topics") or []
        if not topics:
            return None

        block_number = _hex_int(log.get("blockNumber") or 0)
        log_index = _hex_int(log.get("logIndex") or 0)
        data = _hex_bytes(log.get("data") or "0x")
        topic0 = topics[0].lower()

        if topic0 == TOPIC_MINTED:
            credential_hash, uri = decode(["bytes32", "string"], data)
            return CredentialMinted(
                token_id=_hex_int(topics[1]),
                issuer=to_checksum_address("0x" + topics[2][-40:]),
                learner=to_checksum_address("0x" + topics[3][-40:]),
                credential_hash=bytes(credential_hash),
                uri=uri,
                block_number=block_number,
                log_index=log_index,
            )
        if topic0 == TOPIC_REVOKED:
            return CredentialRevoked(
                token_id=_hex_int(topics[1]),
                issuer=to_checksum_address("0x" + topics[2][-40:]),
                block_number=block_number,
                log_index=log_index,
            )
        if topic0 == TOPIC_ISSUER_UPDATED:
            (allowed,) = decode(["bool"], data)
            return IssuerUpdated(
                issuer=to_checksum_address("0x" + topics[1][-40:]),
                allowed=bool(allowed),
                block_number=block_number,
                log_index=log_index,
            )
        return None

    def parse_receipt(self, raw: dict[str, Any]) -> TransactionReceipt:
        """Build a receipt from ``eth_getTransactionReceipt`` output."""
        ok = _hex_int(raw.get("status") or "0x0") == 1
        events = [e for e in map(self.decode_log, raw.get("logs") or []) if e is not None]
        return TransactionReceipt(
            tx_hash=raw.get("transactionHash", ""),
            block_number=_hex_int(raw.get("blockNumber") or 0),
            status=TransactionStatus.CONFIRMED if ok else TransactionStatus.REJECTED,
            events=events,
        )
