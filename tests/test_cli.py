"""Tests for the command-line interface, backed by the reference ledger."""

import json

import httpx
import pytest
import respx
from click.testing import CliRunner
from httpx import Response
from rich.console import Console

from credential_registry import ConnectivityError, Session, ValidationError, cli
from credential_registry.cli import fetch_payload, main
from credential_registry.hashing import digest, format_digest, metadata_from_json

from conftest import ISSUER, LEARNER, OTHER, OWNER, run


@pytest.fixture(autouse=True)
def cli_ledger(ledger, monkeypatch):
    """Route every command to the shared reference ledger."""
    monkeypatch.setattr(cli, "build_ledger", lambda session: ledger)
    monkeypatch.setattr(cli, "console", Console(color_system=None, width=200, soft_wrap=True))
    return ledger


def invoke(*args):
    return CliRunner().invoke(main, list(args), catch_exceptions=False)


def mint_with_payload(tmp_path):
    path = tmp_path / "credential.json"
    result = invoke("--account", ISSUER, "mint", LEARNER, "--module-id", "M1", "--save", str(path))
    assert result.exit_code == 0, result.output
    return path


class TestRoles:
    """Tests for the roles command."""

    def test_owner_connects_by_default(self):
        result = invoke("--json-output", "roles")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["owner"] == OWNER
        assert data["account"] == OWNER
        assert data["isOwner"] is True
        assert data["chainId"] == 31337

    def test_named_account(self, issuer_client):
        result = invoke("--json-output", "roles", ISSUER)
        data = json.loads(result.output)
        assert data["isIssuer"] is True
        assert data["isOwner"] is False

    def test_table(self):
        result = invoke("roles")
        assert result.exit_code == 0
        assert "Roles" in result.output
        assert OWNER in result.output


class TestSetIssuer:
    """Tests for allowlist updates."""

    def test_grant_and_remove(self, cli_ledger):
        result = invoke("--account", OWNER, "set-issuer", ISSUER)
        assert result.exit_code == 0, result.output
        assert "Issuer updated" in result.output
        assert run(cli_ledger.is_issuer(ISSUER)) is True

        result = invoke("--account", OWNER, "set-issuer", ISSUER, "--deny")
        assert result.exit_code == 0
        assert run(cli_ledger.is_issuer(ISSUER)) is False

    def test_non_owner(self, cli_ledger):
        result = invoke("--account", OTHER, "set-issuer", OTHER)
        assert result.exit_code == 2
        assert "Error" in result.output
        assert run(cli_ledger.is_issuer(OTHER)) is False


class TestMint:
    """Tests for issuing from the command line."""

    def test_mint_saves_payload(self, issuer_client, tmp_path):
        """Test the saved JSON is exactly what was hashed."""
        path = mint_with_payload(tmp_path)

        stored = run(issuer_client.credential_of(0))
        metadata = metadata_from_json(path.read_text(encoding="utf-8"))
        assert metadata.module_id == "M1"
        assert metadata.learner == LEARNER
        assert metadata.issuer == ISSUER
        assert digest(metadata) == stored.credential_hash

    def test_mint_output(self, issuer_client):
        result = invoke("--account", ISSUER, "mint", LEARNER)
        assert result.exit_code == 0
        assert "Minted! tokenId 0" in result.output
        assert '"course":"Entrepreneurship Basics"' in result.output

    def test_mint_not_issuer(self):
        result = invoke("--account", OTHER, "mint", LEARNER)
        assert result.exit_code == 2
        assert "Error" in result.output

    def test_mint_bad_learner(self, issuer_client):
        result = invoke("--account", ISSUER, "mint", "0x1234")
        assert result.exit_code == 2
        assert "learner" in result.output


class TestVerify:
    """Tests for verification exit codes and output."""

    def test_valid(self, issuer_client, tmp_path):
        mint_with_payload(tmp_path)
        result = invoke("--json-output", "verify", "0")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "VALID"
        assert data["owner"] == LEARNER
        assert data["issuer"] == ISSUER

    def test_matching_payload(self, issuer_client, tmp_path):
        path = mint_with_payload(tmp_path)
        result = invoke("--json-output", "verify", "0", "--payload", str(path))
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["integrity"]["matches"] is True
        assert "does not prove" in data["integrity"]["notice"]

    def test_forged_payload(self, issuer_client, tmp_path):
        """Test a payload claiming module M2 fails verification."""
        path = mint_with_payload(tmp_path)
        forged = json.loads(path.read_text(encoding="utf-8"))
        forged["moduleId"] = "M2"
        forged_path = tmp_path / "forged.json"
        forged_path.write_text(json.dumps(forged), encoding="utf-8")

        result = invoke("--json-output", "verify", "0", "--payload", str(forged_path))
        assert result.exit_code == 1
        assert json.loads(result.output)["integrity"]["matches"] is False

    def test_revoked(self, issuer_client, tmp_path):
        mint_with_payload(tmp_path)
        run(issuer_client.revoke(0))

        result = invoke("verify", "0")
        assert result.exit_code == 1
        assert "REVOKED" in result.output

    @pytest.mark.parametrize("token_id", ["abc", "-1"])
    def test_bad_token_id(self, token_id):
        result = invoke("verify", "--", token_id)
        assert result.exit_code == 2
        assert "Error" in result.output

    def test_unminted(self):
        result = invoke("--json-output", "verify", "5")
        assert result.exit_code == 2
        assert "error" in json.loads(result.output)

    def test_missing_payload_file(self, issuer_client, tmp_path):
        mint_with_payload(tmp_path)
        result = invoke("verify", "0", "--payload", str(tmp_path / "missing.json"))
        assert result.exit_code == 2
        assert "File not found" in result.output


class TestTokens:
    """Tests for listing a learner's tokens."""

    def test_lists_learner_tokens(self, issuer_client):
        run(issuer_client.mint(LEARNER, b"\x01" * 32))
        run(issuer_client.mint(OTHER, b"\x02" * 32))
        run(issuer_client.mint(LEARNER, b"\x03" * 32))

        result = invoke("--json-output", "tokens", LEARNER)
        assert result.exit_code == 0
        assert json.loads(result.output) == {"learner": LEARNER, "tokenIds": [0, 2]}

    def test_none(self):
        result = invoke("tokens", LEARNER)
        assert result.exit_code == 0
        assert "No credentials" in result.output


class TestHash:
    """Tests for offline digest computation."""

    def test_hash_saved_payload(self, issuer_client, tmp_path):
        path = mint_with_payload(tmp_path)
        result = invoke("--json-output", "hash", str(path))
        assert result.exit_code == 0
        data = json.loads(result.output)

        metadata = metadata_from_json(path.read_text(encoding="utf-8"))
        assert data["credentialHash"] == format_digest(digest(metadata))
        assert data["canonical"] is True

    def test_hash_missing_file(self, tmp_path):
        result = invoke("hash", str(tmp_path / "nope.json"))
        assert result.exit_code == 2


class TestMintSave:
    """Tests for writing the payload file at mint time."""

    def test_missing_directory_refused_before_mint(self, issuer_client, cli_ledger, tmp_path):
        """Test an unwritable --save target stops the command before anything is minted."""
        target = tmp_path / "no_such_dir" / "credential.json"
        result = invoke("--account", ISSUER, "mint", LEARNER, "--save", str(target))

        assert result.exit_code == 2
        assert "does not exist" in result.output
        assert run(cli_ledger.next_token_id()) == 0

    def test_directory_target_refused_before_mint(self, issuer_client, cli_ledger, tmp_path):
        result = invoke("--account", ISSUER, "mint", LEARNER, "--save", str(tmp_path))
        assert result.exit_code == 2
        assert run(cli_ledger.next_token_id()) == 0

    def test_failed_write_still_prints_payload(self, issuer_client, cli_ledger, tmp_path, monkeypatch):
        """Test the payload reaches the terminal even when the file write fails."""
        monkeypatch.setattr(cli, "check_save_path", lambda path: None)
        target = tmp_path / "gone" / "credential.json"

        result = invoke("--account", ISSUER, "mint", LEARNER, "--save", str(target))

        assert result.exit_code == 2
        assert run(cli_ledger.next_token_id()) == 1
        assert '"course":"Entrepreneurship Basics"' in result.output
        assert "could not write" in result.output


class TestPayloadFiles:
    """Tests for unreadable payload files."""

    def test_verify_non_utf8_payload(self, issuer_client, tmp_path):
        mint_with_payload(tmp_path)
        bad = tmp_path / "bad.json"
        bad.write_bytes(b'{"course":"\xff"}')

        result = invoke("verify", "0", "--payload", str(bad))
        assert result.exit_code == 2
        assert "not UTF-8" in result.output

    def test_hash_directory(self, tmp_path):
        result = invoke("hash", str(tmp_path))
        assert result.exit_code == 2
        assert "Cannot read" in result.output


class TestFetchPayload:
    """Tests for checking a payload served over HTTP."""

    URI = "https://issuer.test/credentials/0.json"

    def mint_at_uri(self, tmp_path, uri):
        path = tmp_path / "credential.json"
        result = invoke("--account", ISSUER, "mint", LEARNER, "--uri", uri, "--save", str(path))
        assert result.exit_code == 0, result.output
        return path.read_text(encoding="utf-8")

    @respx.mock
    def test_fetch_from_token_uri(self, issuer_client, tmp_path):
        """Test the payload served at the token URI matches the stored hash."""
        payload = self.mint_at_uri(tmp_path, self.URI)
        respx.get(self.URI).mock(return_value=Response(200, text=payload))

        result = invoke("--json-output", "verify", "0", "--fetch-uri")
        assert result.exit_code == 0
        assert json.loads(result.output)["integrity"]["matches"] is True

    @respx.mock
    def test_payload_url(self, issuer_client, tmp_path):
        payload = self.mint_at_uri(tmp_path, "")
        respx.get(self.URI).mock(return_value=Response(200, text=payload))

        result = invoke("--json-output", "verify", "0", "--payload", self.URI)
        assert result.exit_code == 0
        assert json.loads(result.output)["integrity"]["matches"] is True

    @respx.mock
    def test_not_found(self, issuer_client, tmp_path):
        self.mint_at_uri(tmp_path, self.URI)
        respx.get(self.URI).mock(return_value=Response(404))

        result = invoke("verify", "0", "--fetch-uri")
        assert result.exit_code == 2
        assert "404" in result.output

    def test_empty_uri(self, issuer_client, tmp_path):
        self.mint_at_uri(tmp_path, "")
        result = invoke("verify", "0", "--fetch-uri")
        assert result.exit_code == 2
        assert "only http(s)" in result.output

    def test_non_http_uri(self, issuer_client, tmp_path):
        self.mint_at_uri(tmp_path, "ipfs://cred")
        result = invoke("verify", "0", "--fetch-uri")
        assert result.exit_code == 2
        assert "only http(s)" in result.output


class TestFetchPayloadHelper:
    """Tests for the payload fetch helper."""

    @pytest.mark.parametrize("url", ["", "ipfs://cred", "file:///etc/passwd"])
    def test_rejects_non_http(self, url):
        with pytest.raises(ValidationError):
            run(fetch_payload(url, Session()))

    @respx.mock
    def test_network_error(self):
        respx.get(TestFetchPayload.URI).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ConnectivityError):
            run(fetch_payload(TestFetchPayload.URI, Session()))
