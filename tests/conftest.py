"""Shared fixtures: a reference ledger and one registry client per role."""

import asyncio

import pytest

from credential_registry import InMemoryLedger, RegistryClient, Session


OWNER = "0x1111111111111111111111111111111111111111"
ISSUER = "0x2222222222222222222222222222222222222222"
LEARNER = "0x3333333333333333333333333333333333333333"
OTHER = "0x4444444444444444444444444444444444444444"

ISSUED_AT = 1736935200  # 2025-01-15T10:00:00Z


def run(coro):
    """Drive a coroutine to completion from a plain test."""
    return asyncio.run(coro)


def client_for(ledger, account, **kwargs) -> RegistryClient:
    return RegistryClient(Session(account=account), ledger=ledger, **kwargs)


@pytest.fixture
def ledger():
    """Reference ledger owned by OWNER with a fixed block timestamp."""
    return InMemoryLedger(
        owner=OWNER,
        accounts=[ISSUER, LEARNER, OTHER],
        clock=lambda: ISSUED_AT,
    )


@pytest.fixture
def owner_client(ledger):
    return client_for(ledger, OWNER)


@pytest.fixture
def issuer_client(ledger, owner_client):
    """Client for ISSUER, already on the allowlist."""
    run(owner_client.set_issuer(ISSUER, True))
    return client_for(ledger, ISSUER)


@pytest.fixture
def other_client(ledger):
    return client_for(ledger, OTHER)


@pytest.fixture
def reader(ledger):
    """Client with no account, as a verifier would use."""
    return client_for(ledger, None)
