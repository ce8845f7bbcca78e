"""
Session configuration.

A ``Session`` names the network, the registry contract and the acting
account. It is passed to ``RegistryClient`` explicitly; when the account or
network changes, build a new session and reset the client with it.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace

from credential_registry.errors import ValidationError
from credential_registry.models import normalize_address


DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_CONTRACT_ADDRESS = "0x8cb1654cd2a85f572f80a360b78eb24743c0f356"

ENV_PREFIX = "CREDREG_"


@dataclass(frozen=True)
class Session:
    """Connection settings for one account on one network."""

    rpc_url: str = DEFAULT_RPC_URL
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    account: str | None = None
    chain_id: int | None = None
    timeout: float = 30.0
    verify_ssl: bool = True
    poll_interval: float = 1.0
    confirmation_timeout: float | None = None
    from_block: int = 0
    log_block_span: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "contract_address", normalize_address(self.contract_address, "contract")
        )
        if self.account is not None:
            object.__setattr__(self, "account", normalize_address(self.account))
        if self.from_block < 0:
            raise ValidationError("from_block must be non-negative")
        if self.log_block_span is not None and self.log_block_span < 1:
            raise ValidationError("log_block_span must be positive")
        if self.poll_interval <= 0:
            raise ValidationError("poll_interval must be positive")

    def with_account(self, account: str | None) -> Session:
        """Session for another account on the same network."""
        return replace(self, account=account)

    def with_network(
        self,
        rpc_url: str,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> Session:
        """Session for the same account on another network."""
        return replace(
            self,
            rpc_url=rpc_url,
            chain_id=chain_id,
            contract_address=contract_address or self.contract_address,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Session:
        """Build a session from ``CREDREG_*`` environment variables.

        Recognized: RPC_URL, CONTRACT, ACCOUNT, CHAIN_ID, TIMEOUT, VERIFY_SSL,
        POLL_INTERVAL, CONFIRMATION_TIMEOUT, FROM_BLOCK, LOG_BLOCK_SPAN.

        Raises:
            ValidationError: If a value cannot be parsed.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        def number(name: str, kind: type, default):
            raw = get(name)
            if raw is None:
                return default
            try:
                return kind(raw)
            except ValueError as e:
                raise ValidationError(f"{ENV_PREFIX}{name} must be {kind.__name__}: {raw!r}") from e

        verify_ssl = (get("VERIFY_SSL") or "true").lower() not in ("0", "false", "no")

        return cls(
            rpc_url=get("RPC_URL") or DEFAULT_RPC_URL,
            contract_address=get("CONTRACT") or DEFAULT_CONTRACT_ADDRESS,
            account=get("ACCOUNT"),
            chain_id=number("CHAIN_ID", int, None),
            timeout=number("TIMEOUT", float, 30.0),
            verify_ssl=verify_ssl,
            poll_interval=number("POLL_INTERVAL", float, 1.0),
            confirmation_timeout=number("CONFIRMATION_TIMEOUT", float, None),
            from_block=number("FROM_BLOCK", int, 0),
            log_block_span=number("LOG_BLOCK_SPAN", int, None),
        )
