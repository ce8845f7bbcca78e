"""
Command-line interface for the credential registry.

Usage:
    credreg verify 0
    credreg verify 0 --payload credential.json
    credreg mint 0xLearner --course "Entrepreneurship Basics" --module-id M1
    credreg revoke 0
    credreg set-issuer 0xIssuer --allow
    credreg tokens 0xLearner
    credreg hash credential.json
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Awaitable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, NoReturn, TypeVar

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from credential_registry.config import DEFAULT_CONTRACT_ADDRESS, DEFAULT_RPC_URL, Session
from credential_registry.errors import ConnectivityError, CredentialRegistryError, ValidationError
from credential_registry.hashing import canonical_json, digest, format_digest, metadata_from_json
from credential_registry.ledger import Ledger, PendingTransaction
from credential_registry.log import setup_logging
from credential_registry.models import parse_token_id, short_address
from credential_registry.registry import RegistryClient
from credential_registry.rpc import JsonRpcLedger
from credential_registry.verifier import (
    IntegrityCheck,
    VerificationEngine,
    VerificationResult,
    VerificationStatus,
    integrity_report,
)


console = Console()
status_console = Console(stderr=True)

T = TypeVar("T")


@dataclass
class CliState:
    session: Session
    json_output: bool


def build_ledger(session: Session) -> Ledger:
    """Ledger used by every command."""
    return JsonRpcLedger.from_session(session)


async def _with_client(session: Session, action: Callable[[RegistryClient], Awaitable[T]]) -> T:
    ledger = build_ledger(session)
    try:
        return await action(RegistryClient(session, ledger=ledger))
    finally:
        await ledger.aclose()


def _fail(state: CliState, message: str) -> NoReturn:
    if state.json_output:
        console.print_json(data={"error": message})
    else:
        console.print(f"[red]Error:[/] {message}")
    sys.exit(2)


def _execute(state: CliState, action: Callable[[RegistryClient], Awaitable[T]]) -> T:
    """Run one operation; any failure becomes a single status message."""
    try:
        return asyncio.run(_with_client(state.session, action))
    except CredentialRegistryError as e:
        _fail(state, str(e))
    except httpx.HTTPError as e:
        _fail(state, f"HTTP error: {e}")
    except Exception as e:
        _fail(state, f"Unexpected error: {e}")


def _announce(pending: PendingTransaction) -> None:
    status_console.print(f"[dim]Submitted[/] {pending.tx_hash} [dim]awaiting confirmation...[/]")


def format_result(result: VerificationResult, integrity: IntegrityCheck | None = None) -> None:
    """Format and print verification result."""
    if result.status == VerificationStatus.VALID:
        status_icon = "[bold green]VALID[/]"
        panel_style = "green"
    else:
        status_icon = "[bold red]REVOKED[/]"
        panel_style = "red"

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value")

    table.add_row("Status", status_icon)
    table.add_row("Issued", result.issued_at_datetime.isoformat())
    table.add_row("TokenId", str(result.token_id))
    table.add_row("Owner (learner)", result.owner)
    table.add_row("Issuer", result.issuer)
    table.add_row("credHash", result.digest_hex)
    table.add_row("tokenURI", result.uri or "-")

    if integrity is not None:
        match = "[green]true[/]" if integrity.matches else "[red]false[/]"
        table.add_row("Payload match", match)
        if not integrity.matches:
            table.add_row("Payload hash", integrity.computed_digest)

    console.print(Panel(table, title="Verification Result", border_style=panel_style))

    if integrity is not None:
        console.print(f"\n[dim]{VerificationEngine.TRUST_NOTICE}[/]")


def load_payload(source: str) -> str:
    """Read a credential payload from a file or stdin ("-").

    The text is returned exactly as stored.

    Raises:
        ValidationError: If the file does not exist or cannot be read as
            UTF-8 text.
    """
    if source == "-":
        return sys.stdin.read()

    path = Path(source)
    if not path.exists():
        raise ValidationError(f"File not found: {source}")
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(f"Payload is not UTF-8 text: {source}") from e
    except OSError as e:
        raise ValidationError(f"Cannot read {source}: {e.strerror or e}") from e


def check_save_path(path: Path) -> None:
    """Refuse a --save target that cannot be written, before anything is minted.

    Raises:
        ValidationError: If the target is a directory, its parent is missing,
            or either is not writable.
    """
    if path.is_dir():
        raise ValidationError(f"Cannot save payload to {path}: it is a directory")
    parent = path.parent
    if not parent.is_dir():
        raise ValidationError(f"Cannot save payload to {path}: {parent} does not exist")
    if not os.access(parent, os.W_OK) or (path.exists() and not os.access(path, os.W_OK)):
        raise ValidationError(f"Cannot save payload to {path}: permission denied")


async def fetch_payload(url: str, session: Session) -> str:
    """Fetch a credential payload over HTTP(S).

    Raises:
        ValidationError: If the URL is empty or its scheme is not http(s).
        ConnectivityError: On network failure or an HTTP error status.
    """
    if not url or not url.startswith(("http://", "https://")):
        raise ValidationError(f"Cannot fetch payload from {url!r}: only http(s) URLs are supported")
    async with httpx.AsyncClient(timeout=session.timeout, verify=session.verify_ssl) as client:
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ConnectivityError(
                f"HTTP error fetching payload from {url}: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise ConnectivityError(f"Network error fetching payload: {e}") from e
        return response.text


@click.group()
@click.option("--rpc-url", envvar="CREDREG_RPC_URL", default=DEFAULT_RPC_URL, show_default=True,
              help="JSON-RPC endpoint of the ledger")
@click.option("--contract", envvar="CREDREG_CONTRACT", default=DEFAULT_CONTRACT_ADDRESS,
              show_default=True, help="Credential registry contract address")
@click.option("--account", envvar="CREDREG_ACCOUNT", default=None,
              help="Acting account (default: the provider's first account)")
@click.option("--chain-id", envvar="CREDREG_CHAIN_ID", type=int, default=None,
              help="Refuse to act on any other chain")
@click.option("--timeout", envvar="CREDREG_TIMEOUT", type=float, default=30.0,
              help="HTTP request timeout in seconds")
@click.option("--poll-interval", envvar="CREDREG_POLL_INTERVAL", type=float, default=1.0,
              help="Seconds between receipt polls")
@click.option("--confirmation-timeout", envvar="CREDREG_CONFIRMATION_TIMEOUT", type=float,
              default=None, help="Stop waiting for confirmation after this many seconds")
@click.option("--from-block", envvar="CREDREG_FROM_BLOCK", type=int, default=0,
              help="First block scanned for events")
@click.option("--log-block-span", envvar="CREDREG_LOG_BLOCK_SPAN", type=int, default=None,
              help="Blocks per event query")
@click.option("--no-ssl-verify", is_flag=True, help="Disable SSL certificate verification")
@click.option("--json-output", is_flag=True, help="Output results as JSON")
@click.option("--log-level", envvar="CREDREG_LOG_LEVEL", default="warning",
              type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False))
@click.version_option(package_name="credential-registry-client")
@click.pass_context
def main(
    ctx: click.Context,
    rpc_url: str,
    contract: str,
    account: str | None,
    chain_id: int | None,
    timeout: float,
    poll_interval: float,
    confirmation_timeout: float | None,
    from_block: int,
    log_block_span: int | None,
    no_ssl_verify: bool,
    json_output: bool,
    log_level: str,
) -> None:
    """Issue, revoke and verify credential NFTs on the registry contract."""
    setup_logging(log_level)
    state = CliState(session=Session(), json_output=json_output)
    try:
        state.session = Session(
            rpc_url=rpc_url,
            contract_address=contract,
            account=account,
            chain_id=chain_id,
            timeout=timeout,
            verify_ssl=not no_ssl_verify,
            poll_interval=poll_interval,
            confirmation_timeout=confirmation_timeout,
            from_block=from_block,
            log_block_span=log_block_span,
        )
    except ValidationError as e:
        _fail(state, str(e))
    ctx.obj = state


@main.command()
@click.argument("account", required=False)
@click.pass_obj
def roles(state: CliState, account: str | None) -> None:
    """Show the registry owner and the roles of ACCOUNT (default: connected account)."""

    async def action(client: RegistryClient) -> tuple[int, Any]:
        info = await client.connect(require_account=False)
        return info.chain_id, await client.roles(account)

    chain_id, summary = _execute(state, action)

    if state.json_output:
        console.print_json(data={
            "chainId": chain_id,
            "owner": summary.owner,
            "account": summary.account,
            "isOwner": summary.is_owner,
            "isIssuer": summary.is_issuer,
        })
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value")
    table.add_row("Contract", state.session.contract_address)
    table.add_row("Chain", str(chain_id))
    table.add_row("Owner", summary.owner)
    table.add_row("Account", summary.account or "-")
    table.add_row("Owner?", "[green]true[/]" if summary.is_owner else "false")
    table.add_row("Issuer?", "[green]true[/]" if summary.is_issuer else "false")
    console.print(Panel(table, title="Roles"))


@main.command("set-issuer")
@click.argument("address")
@click.option("--allow/--deny", default=True, help="Grant (default) or remove issuer rights")
@click.pass_obj
def set_issuer(state: CliState, address: str, allow: bool) -> None:
    """Grant or remove issuer rights for ADDRESS. Registry owner only."""

    async def action(client: RegistryClient) -> Any:
        await client.connect()
        return await client.set_issuer(address, allow, on_submitted=_announce)

    receipt = _execute(state, action)

    if state.json_output:
        console.print_json(data={"issuer": address, "allowed": allow, "txHash": receipt.tx_hash})
    else:
        verb = "granted to" if allow else "removed from"
        console.print(f"[green]Issuer updated:[/] rights {verb} {address} ({short_address(receipt.tx_hash)})")


@main.command()
@click.argument("learner")
@click.option("--course", default="Entrepreneurship Basics", show_default=True)
@click.option("--module-id", default="M1", show_default=True)
@click.option("--uri", default="", help="Optional pointer to the off-chain payload")
@click.option("--save", "save_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the exact payload JSON to this file")
@click.pass_obj
def mint(
    state: CliState,
    learner: str,
    course: str,
    module_id: str,
    uri: str,
    save_path: Path | None,
) -> None:
    """Mint a credential NFT to LEARNER. Issuers only.

    Only the digest goes on-chain. Keep the printed JSON: it is the only way
    to prove the credential's content later.
    """
    if save_path is not None:
        try:
            check_save_path(save_path)
        except ValidationError as e:
            _fail(state, str(e))

    async def action(client: RegistryClient) -> Any:
        await client.connect()
        return await client.issue(course, module_id, learner, uri, on_submitted=_announce)

    issued = _execute(state, action)

    # Payload goes out before the file write
    if state.json_output:
        console.print_json(data={
            "tokenId": issued.token_id,
            "credentialHash": issued.digest_hex,
            "txHash": issued.tx_hash,
            "payload": issued.metadata.as_dict(),
        })
    else:
        console.print(f"[green]Minted![/] tokenId [bold]{issued.token_id}[/]")
        console.print(f"credHash {issued.digest_hex}")
        console.print(f"tx       {issued.tx_hash}")
        console.print("\n[bold]Save tokenId + this JSON used for the hash:[/]")
        console.print(issued.payload, markup=False, highlight=False, soft_wrap=True)

    if save_path is None:
        return
    try:
        save_path.write_text(issued.payload, encoding="utf-8")
    except OSError as e:
        _fail(state, f"Minted tokenId {issued.token_id} but could not write {save_path}: {e}")
    if not state.json_output:
        console.print(f"\n[dim]Payload written to {save_path}[/]")


@main.command()
@click.argument("token_id")
@click.pass_obj
def revoke(state: CliState, token_id: str) -> None:
    """Revoke credential TOKEN_ID. Only its issuer may revoke it."""
    try:
        parsed = parse_token_id(token_id)
    except ValidationError as e:
        _fail(state, str(e))

    async def action(client: RegistryClient) -> Any:
        await client.connect()
        return await client.revoke(parsed, on_submitted=_announce)

    receipt = _execute(state, action)

    if state.json_output:
        console.print_json(data={"tokenId": parsed, "revoked": True, "txHash": receipt.tx_hash})
    else:
        console.print(f"[yellow]Revoked[/] tokenId {parsed} ({short_address(receipt.tx_hash)})")


@main.command()
@click.argument("token_id")
@click.option("--payload", "payload_source", default=None,
              help="Credential JSON to check against the stored hash (file, URL or '-')")
@click.option("--fetch-uri", is_flag=True, help="Check the payload served at the token's URI")
@click.pass_obj
def verify(state: CliState, token_id: str, payload_source: str | None, fetch_uri: bool) -> None:
    """Verify credential TOKEN_ID.

    Exits 0 when the credential is valid (and the payload, if given,
    matches), 1 when it is revoked or the payload does not match, and 2 on
    errors.
    """
    try:
        parsed = parse_token_id(token_id)
        payload = None
        if payload_source and not payload_source.startswith(("http://", "https://")):
            payload = load_payload(payload_source)
    except ValidationError as e:
        _fail(state, str(e))

    async def action(client: RegistryClient) -> tuple[VerificationResult, IntegrityCheck | None]:
        result = await VerificationEngine(client).verify(parsed)
        text = payload
        if text is None and payload_source:
            text = await fetch_payload(payload_source, state.session)
        elif text is None and fetch_uri:
            text = await fetch_payload(result.uri, state.session)
        integrity = integrity_report(text, result.credential_hash) if text is not None else None
        return result, integrity

    result, integrity = _execute(state, action)

    if state.json_output:
        output = result.to_dict()
        if integrity is not None:
            output["integrity"] = {
                "matches": integrity.matches,
                "computedHash": integrity.computed_digest,
                "notice": VerificationEngine.TRUST_NOTICE,
            }
        console.print_json(data=output)
    else:
        format_result(result, integrity)

    ok = result.is_valid and (integrity is None or integrity.matches)
    sys.exit(0 if ok else 1)


@main.command()
@click.argument("learner", required=False)
@click.option("--from-block", type=int, default=None, help="Override the first scanned block")
@click.pass_obj
def tokens(state: CliState, learner: str | None, from_block: int | None) -> None:
    """List credential tokens minted to LEARNER (default: connected account)."""

    async def action(client: RegistryClient) -> tuple[str, list[int]]:
        target = learner
        if target is None:
            info = await client.connect()
            target = info.account
        return target, await client.query_minted_to(target, from_block=from_block).collect()

    target, token_ids = _execute(state, action)

    if state.json_output:
        console.print_json(data={"learner": target, "tokenIds": token_ids})
        return

    if not token_ids:
        console.print(f"No credentials minted to {target}")
        return
    console.print(f"Found {len(token_ids)} credential(s) for {target}")
    for token_id in token_ids:
        console.print(f"  tokenId #{token_id}")


@main.command("hash")
@click.argument("source")
@click.pass_obj
def hash_payload(state: CliState, source: str) -> None:
    """Compute the digest of a credential JSON (file or '-') without the ledger."""
    try:
        text = load_payload(source)
        metadata = metadata_from_json(text)
        value = format_digest(digest(metadata))
    except ValidationError as e:
        _fail(state, str(e))

    canonical = canonical_json(metadata)
    if state.json_output:
        console.print_json(data={"credentialHash": value, "canonical": text.strip() == canonical})
        return

    console.print(value)
    if text.strip() != canonical:
        status_console.print("[yellow]![/] Input is not in canonical form; hashed as:")
        status_console.print(canonical, markup=False, highlight=False, soft_wrap=True)


if __name__ == "__main__":
    main()
