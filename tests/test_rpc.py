"""Tests for the JSON-RPC ledger, against a mocked node."""

import json

import httpx
import pytest
import respx
from eth_abi import encode
from httpx import Response

from credential_registry import (
    AuthorizationError,
    ConnectivityError,
    InvalidTransitionError,
    NotFoundError,
    RegistryClient,
    Session,
    TransactionRevertedError,
    ValidationError,
)
from credential_registry.models import CredentialMinted, TransactionStatus
from credential_registry.rpc import (
    FUNCTIONS,
    TOPIC_MINTED,
    JsonRpcError,
    JsonRpcLedger,
    address_topic,
    classify_revert,
    encode_call,
    function_selector,
)

from conftest import ISSUED_AT, ISSUER, LEARNER, OTHER, OWNER, run


RPC_URL = "http://node.test:8545"
CONTRACT = "0x5555555555555555555555555555555555555555"
DIGEST = b"\xaa" * 32
TX_HASH = "0x" + "ab" * 32


def revert_data(signature, types=(), values=()):
    return "0x" + (function_selector(signature) + encode(list(types), list(values))).hex()


def minted_log(token_id, learner, block_number, log_index=0, address=CONTRACT):
    return {
        "address": address.lower(),
        "topics": [
            TOPIC_MINTED,
            "0x" + token_id.to_bytes(32, "big").hex(),
            address_topic(ISSUER),
            address_topic(learner),
        ],
        "data": "0x" + encode(["bytes32", "string"], [DIGEST, f"ipfs://{token_id}"]).hex(),
        "blockNumber": hex(block_number),
        "logIndex": hex(log_index),
    }


class FakeNode:
    """Canned JSON-RPC node.

    ``eth_call`` replies are keyed by function selector; other methods reply
    from a queue whose last entry repeats.
    """

    def __init__(self):
        self.calls = {}
        self.results = {}
        self.requests = []

    def on_call(self, name, *returns, error=None):
        inputs, outputs = FUNCTIONS[name]
        selector = "0x" + function_selector(f"{name}({','.join(inputs)})").hex()
        if error is not None:
            self.calls[selector] = {"error": error}
        else:
            self.calls[selector] = {"result": "0x" + encode(outputs, list(returns)).hex()}

    def on(self, method, *results):
        self.results[method] = list(results)

    def sent(self, method):
        return [r for r in self.requests if r["method"] == method]

    def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append(body)
        method = body["method"]
        if method == "eth_call":
            reply = self.calls.get(body["params"][0]["data"][:10], {"result": "0x"})
        else:
            queue = self.results[method]
            reply = {"result": queue.pop(0) if len(queue) > 1 else queue[0]}
        return Response(200, json={"jsonrpc": "2.0", "id": body["id"], **reply})


@pytest.fixture
def node():
    fake = FakeNode()
    with respx.mock(assert_all_called=False) as mock:
        mock.post(RPC_URL).mock(side_effect=fake)
        yield fake


@pytest.fixture
def rpc_ledger():
    return JsonRpcLedger(RPC_URL, CONTRACT, poll_interval=0.01)


@pytest.fixture
def rpc_client(rpc_ledger):
    session = Session(rpc_url=RPC_URL, contract_address=CONTRACT, account=ISSUER)
    return RegistryClient(session, ledger=rpc_ledger)


class TestEncoding:
    """Tests for calldata encoding."""

    def test_known_selectors(self):
        assert encode_call("owner") == "0x8da5cb5b"
        assert encode_call("ownerOf", 1).startswith("0x6352211e")
        assert encode_call("tokenURI", 1).startswith("0xc87b56dd")

    def test_address_topic(self):
        assert address_topic(LEARNER) == "0x" + "0" * 24 + "3" * 40


class TestViews:
    """Tests for contract reads."""

    def test_owner(self, node, rpc_ledger):
        node.on_call("owner", OWNER)
        assert run(rpc_ledger.owner()) == OWNER

        request = node.sent("eth_call")[0]
        assert request["params"][0]["to"] == CONTRACT
        assert request["params"][1] == "latest"

    def test_credential_of(self, node, rpc_ledger):
        node.on_call("credentialOf", ISSUER, DIGEST, ISSUED_AT, True)
        credential = run(rpc_ledger.credential_of(0))
        assert credential.issuer == ISSUER
        assert credential.credential_hash == DIGEST
        assert credential.issued_at == ISSUED_AT
        assert credential.revoked is True

    def test_token_uri(self, node, rpc_ledger):
        node.on_call("tokenURI", "ipfs://cred")
        assert run(rpc_ledger.token_uri(3)) == "ipfs://cred"

    def test_nonexistent_token(self, node, rpc_ledger):
        """Test the ERC721NonexistentToken revert maps to NotFoundError."""
        node.on_call("ownerOf", error={
            "code": 3,
            "message": "execution reverted",
            "data": revert_data("ERC721NonexistentToken(uint256)", ["uint256"], [7]),
        })
        with pytest.raises(NotFoundError, match="ownerOf"):
            run(rpc_ledger.owner_of(7))

    def test_empty_result_means_no_contract(self, node, rpc_ledger):
        with pytest.raises(ConnectivityError, match="No registry contract"):
            run(rpc_ledger.owner())

    def test_non_revert_error_propagates(self, node, rpc_ledger):
        node.on_call("owner", error={"code": -32601, "message": "method not found"})
        with pytest.raises(JsonRpcError) as info:
            run(rpc_ledger.owner())
        assert info.value.code == -32601
        assert isinstance(info.value, ConnectivityError)

    def test_chain_and_accounts(self, node, rpc_ledger):
        node.on("eth_chainId", "0x7a69")
        node.on("eth_accounts", [OWNER.lower(), ISSUER])
        assert run(rpc_ledger.chain_id()) == 31337
        assert run(rpc_ledger.accounts()) == [OWNER, ISSUER]


class TestTransport:
    """Tests for transport failures."""

    @respx.mock
    def test_connect_error(self, rpc_ledger):
        respx.post(RPC_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ConnectivityError, match="Network error"):
            run(rpc_ledger.block_number())

    @respx.mock
    def test_http_error(self, rpc_ledger):
        respx.post(RPC_URL).mock(return_value=Response(500))
        with pytest.raises(ConnectivityError, match="500"):
            run(rpc_ledger.block_number())

    @respx.mock
    def test_invalid_body(self, rpc_ledger):
        respx.post(RPC_URL).mock(return_value=Response(200, text="<html>"))
        with pytest.raises(ConnectivityError, match="Invalid JSON-RPC"):
            run(rpc_ledger.block_number())


class TestRevertClassification:
    """Tests for mapping reverts onto the error taxonomy."""

    @pytest.mark.parametrize(
        "reason,expected",
        [
            ("not issuer", AuthorizationError),
            ("Ownable: caller is not the owner", AuthorizationError),
            ("already revoked", InvalidTransitionError),
            ("ERC721: invalid token ID", NotFoundError),
            ("something else", ValidationError),
        ],
    )
    def test_error_string(self, reason, expected):
        error = JsonRpcError(3, "execution reverted", revert_data("Error(string)", ["string"], [reason]))
        assert error.revert_reason() == reason
        assert type(classify_revert(error, "revoke", ValidationError)) is expected

    def test_custom_error_selector(self):
        data = revert_data("OwnableUnauthorizedAccount(address)", ["address"], [OTHER])
        error = JsonRpcError(3, "execution reverted", {"data": data})
        assert isinstance(classify_revert(error, "setIssuer", ValidationError), AuthorizationError)

    def test_message_only(self):
        error = JsonRpcError(-32000, "execution reverted: not issuer")
        assert error.is_revert
        assert isinstance(classify_revert(error, "mintCredential", ValidationError), AuthorizationError)


class TestWrites:
    """Tests for simulate, submit and settle."""

    def receipt(self, status="0x1", logs=()):
        return {
            "transactionHash": TX_HASH,
            "blockNumber": "0x5",
            "status": status,
            "logs": list(logs),
        }

    def test_mint_flow(self, node, rpc_client):
        """Test the client polls for the receipt and reads the minted token id."""
        node.on_call("isIssuer", True)
        node.on_call("mintCredential", 7)
        node.on("eth_sendTransaction", TX_HASH)
        node.on("eth_getTransactionReceipt", None, self.receipt(logs=[minted_log(7, LEARNER, 5)]))

        seen = []
        token_id = run(rpc_client.mint(LEARNER, DIGEST, "ipfs://7", on_submitted=seen.append))

        assert token_id == 7
        assert [p.tx_hash for p in seen] == [TX_HASH]
        assert len(node.sent("eth_getTransactionReceipt")) == 2

        (sent,) = node.sent("eth_sendTransaction")
        assert sent["params"][0]["from"] == ISSUER
        assert sent["params"][0]["data"] == encode_call("mintCredential", LEARNER, DIGEST, "ipfs://7")

    def test_simulation_revert_blocks_submission(self, node, rpc_client):
        node.on_call("isIssuer", True)
        node.on_call("mintCredential", error={
            "code": 3,
            "message": "execution reverted",
            "data": revert_data("Error(string)", ["string"], ["not issuer"]),
        })
        with pytest.raises(AuthorizationError, match="not issuer"):
            run(rpc_client.mint(LEARNER, DIGEST))
        assert node.sent("eth_sendTransaction") == []

    def test_failed_receipt(self, node, rpc_ledger):
        node.on_call("revoke")
        node.on("eth_sendTransaction", TX_HASH)
        node.on("eth_getTransactionReceipt", self.receipt(status="0x0"))

        client = RegistryClient(Session(account=ISSUER), ledger=rpc_ledger, preflight=False)
        with pytest.raises(TransactionRevertedError, match="reverted on-chain"):
            run(client.revoke(1))

    def test_confirmation_timeout(self, node):
        ledger = JsonRpcLedger(RPC_URL, CONTRACT, poll_interval=0.01, confirmation_timeout=0.05)
        node.on_call("revoke")
        node.on("eth_sendTransaction", TX_HASH)
        node.on("eth_getTransactionReceipt", None)

        async def submit_and_wait():
            pending = await ledger.revoke(ISSUER, 1)
            assert pending.status == TransactionStatus.SUBMITTED
            return await pending.wait()

        with pytest.raises(ConnectivityError, match="not confirmed"):
            run(submit_and_wait())

    def test_receipt_events_decoded(self, rpc_ledger):
        receipt = rpc_ledger.parse_receipt(self.receipt(logs=[
            minted_log(2, LEARNER, 5),
            minted_log(9, LEARNER, 5, address=OTHER),
        ]))
        assert receipt.status == TransactionStatus.CONFIRMED
        assert receipt.block_number == 5
        assert len(receipt.events) == 1
        event = receipt.find_event(CredentialMinted)
        assert event.token_id == 2
        assert event.issuer == ISSUER
        assert event.learner == LEARNER
        assert event.credential_hash == DIGEST
        assert event.uri == "ipfs://2"


class TestMintedEvents:
    """Tests for the eth_getLogs scan."""

    def test_filter_and_order(self, node, rpc_client):
        node.on("eth_blockNumber", "0xa")
        node.on("eth_getLogs", [
            minted_log(4, LEARNER, 9),
            minted_log(1, LEARNER, 4, log_index=1),
            minted_log(0, LEARNER, 4, log_index=0),
            minted_log(8, LEARNER, 9, address=OTHER),
        ])

        assert run(rpc_client.query_minted_to(LEARNER).collect()) == [0, 1, 4]

        (query,) = node.sent("eth_getLogs")[0]["params"]
        assert query["fromBlock"] == "0x0"
        assert query["toBlock"] == "0xa"
        assert query["topics"] == [TOPIC_MINTED, None, None, address_topic(LEARNER)]

    def test_chunked(self, node, rpc_ledger):
        node.on("eth_blockNumber", "0x9")
        node.on("eth_getLogs", [])
        session = Session(rpc_url=RPC_URL, contract_address=CONTRACT, log_block_span=4)
        client = RegistryClient(session, ledger=rpc_ledger)

        assert run(client.query_minted_to(LEARNER).collect()) == []
        ranges = [(q["params"][0]["fromBlock"], q["params"][0]["toBlock"])
                  for q in node.sent("eth_getLogs")]
        assert ranges == [("0x0", "0x3"), ("0x4", "0x7"), ("0x8", "0x9")]
