"""
Tests for the assetgate command line interface.
"""

import json

import pytest

from assetgate.audit import AuditTrailStore
from assetgate.cli import AssetGateCLI, CLIError, OutputFormat, format_output
from assetgate.models import AuditEntry, AuditKind, TokenRecord
from assetgate.store import JsonFileDocumentStore
from conftest import metal_batch, metal_payload

SIGNING_KEY = "cli-test-key"


def run_cli(capsys, *argv):
    code = AssetGateCLI().run(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "assetgate.yaml"
    path.write_text(
        "oracle:\n"
        "  max_retries: 5\n"
        "audit:\n"
        f"  signing_key: {SIGNING_KEY}\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def store_file(tmp_path):
    path = tmp_path / "store.json"
    audit = AuditTrailStore(JsonFileDocumentStore(path), signing_key=SIGNING_KEY)
    audit.append(AuditEntry(AuditKind.VERIFICATION, "GOLD-001", {"verified": True}, "verifier"))
    audit.append(AuditEntry(AuditKind.MINT, "1", {"token": {"tokenId": "1"}}, "escrow"))
    audit.put_token(TokenRecord(
        token_id="1",
        asset_id="GOLD-001",
        deal_id="deal-7",
        metadata_ref="cas://sha256:" + "c" * 64,
        provenance_hash="d" * 64,
        minted_at="2026-03-01T12:00:00Z",
    ))
    return path


# =============================================================================
# OUTPUT
# =============================================================================

class TestFormatOutput:
    def test_json(self):
        assert json.loads(format_output({"a": 1})) == {"a": 1}

    def test_yaml(self):
        assert format_output({"a": 1}, OutputFormat.YAML).strip() == "a: 1"

    def test_text(self):
        text = format_output({"a": 1, "b": [1, 2]}, OutputFormat.TEXT)
        assert text.splitlines() == ["a: 1", "b: [1, 2]"]

    def test_cli_error_exit_code(self):
        assert CLIError("nope", exit_code=3).exit_code == 3


# =============================================================================
# COMMANDS
# =============================================================================

class TestConfigCommands:
    def test_get(self, capsys, config_file):
        code, out, _ = run_cli(capsys, "--config", str(config_file), "config", "get", "oracle.max_retries")
        assert code == 0
        assert json.loads(out) == {"path": "oracle.max_retries", "value": 5}

    def test_get_secret_is_masked(self, capsys, config_file):
        code, out, _ = run_cli(capsys, "--config", str(config_file), "config", "get", "audit.signing_key")
        assert code == 0
        assert SIGNING_KEY not in out
        assert json.loads(out)["value"] == "********"

    def test_show_masks_secrets(self, capsys, config_file):
        code, out, _ = run_cli(capsys, "-c", str(config_file), "-f", "yaml", "config", "show")
        assert code == 0
        assert "max_retries: 5" in out
        assert SIGNING_KEY not in out

    def test_validate(self, capsys, config_file):
        code, out, _ = run_cli(capsys, "-c", str(config_file), "config", "validate")
        assert code == 0
        assert json.loads(out) == {"valid": True, "errors": []}

    def test_missing_config_file(self, capsys, tmp_path):
        code, _, err = run_cli(capsys, "-c", str(tmp_path / "nope.yaml"), "config", "show")
        assert code == 1
        assert "not found" in err

    def test_quiet_suppresses_errors(self, capsys, tmp_path):
        code, _, err = run_cli(capsys, "-q", "-c", str(tmp_path / "nope.yaml"), "config", "show")
        assert code == 1
        assert "Error:" not in err


class TestSchemaCommand:
    def test_valid_payload(self, capsys, tmp_path):
        path = tmp_path / "payload.json"
        path.write_text(json.dumps(metal_payload()), encoding="utf-8")

        code, out, _ = run_cli(capsys, "schema", "validate", str(path), "--asset-id", "GOLD-001")
        assert code == 0
        assert json.loads(out)["valid"] is True

    def test_wrong_asset(self, capsys, tmp_path):
        path = tmp_path / "payload.json"
        path.write_text(json.dumps(metal_payload()), encoding="utf-8")

        code, out, _ = run_cli(capsys, "schema", "validate", str(path), "--asset-id", "GOLD-999")
        assert code == 1
        assert "expected 'GOLD-999'" in json.loads(out)["errors"][0]

    def test_yaml_batch(self, capsys, tmp_path):
        path = tmp_path / "batch.yaml"
        path.write_text(
            "assetId: GOLD-001\n"
            "assetType: gold\n"
            "attributes: {purity: 99.95, weight: 1000, origin: Perth Mint}\n"
            "certificateRef: https://certs.example/GOLD-001.pdf\n"
            "owner: '0xA11CE'\n",
            encoding="utf-8",
        )
        code, out, _ = run_cli(capsys, "schema", "validate", str(path), "--kind", "asset-batch")
        assert code == 0
        assert json.loads(out)["kind"] == "asset-batch"

    def test_unparseable_file(self, capsys, tmp_path):
        path = tmp_path / "payload.json"
        path.write_text("{", encoding="utf-8")
        code, _, err = run_cli(capsys, "schema", "validate", str(path))
        assert code == 1
        assert "Cannot parse" in err


class TestProvenanceCommand:
    def test_hash_and_metadata(self, capsys, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps(metal_batch("GOLD-001")), encoding="utf-8")

        code, out, _ = run_cli(capsys, "provenance", str(path), "--deal", "deal-7")
        result = json.loads(out)
        assert code == 0
        assert len(result["provenanceHash"]) == 64
        assert result["metadata"]["deal_id"] == "deal-7"
        assert result["metadata"]["description"] == "1000 g of 99.95% gold from Perth Mint"

    def test_same_hash_as_weight_written_differently(self, capsys, tmp_path):
        a = tmp_path / "a.json"
        b = tmp_path / "b.json"
        a.write_text(json.dumps(metal_batch("GOLD-001")), encoding="utf-8")
        batch = metal_batch("GOLD-001")
        batch["attributes"]["weight"] = 1000.0
        b.write_text(json.dumps(batch), encoding="utf-8")

        _, out_a, _ = run_cli(capsys, "provenance", str(a))
        _, out_b, _ = run_cli(capsys, "provenance", str(b))
        assert json.loads(out_a)["provenanceHash"] == json.loads(out_b)["provenanceHash"]


class TestAuditCommands:
    def test_list(self, capsys, config_file, store_file):
        code, out, _ = run_cli(capsys, "-c", str(config_file), "audit", "list", "--store", str(store_file))
        result = json.loads(out)
        assert code == 0
        assert result["count"] == 2
        assert [e["kind"] for e in result["entries"]] == ["verification", "mint"]

    def test_list_filtered(self, capsys, config_file, store_file):
        code, out, _ = run_cli(
            capsys, "-c", str(config_file), "audit", "list", "-s", str(store_file), "--kind", "mint",
        )
        assert code == 0
        assert json.loads(out)["entries"][0]["subjectId"] == "1"

    def test_verify_clean(self, capsys, config_file, store_file):
        code, out, _ = run_cli(capsys, "-c", str(config_file), "audit", "verify", "-s", str(store_file))
        result = json.loads(out)
        assert code == 0
        assert result == {"valid": True, "entries": 2, "signed": True, "problems": []}

    def test_verify_tampered(self, capsys, config_file, store_file):
        data = json.loads(store_file.read_text(encoding="utf-8"))
        for doc in data["auditLog"].values():
            if doc["kind"] == "verification":
                doc["payload"]["verified"] = False
        store_file.write_text(json.dumps(data), encoding="utf-8")

        code, out, _ = run_cli(capsys, "-c", str(config_file), "audit", "verify", "-s", str(store_file))
        assert code == 1
        assert json.loads(out)["valid"] is False

    def test_missing_store(self, capsys, config_file, tmp_path):
        code, _, err = run_cli(
            capsys, "-c", str(config_file), "audit", "list", "-s", str(tmp_path / "absent.json"),
        )
        assert code == 1
        assert "Store not found" in err


class TestTokenCommand:
    def test_show(self, capsys, config_file, store_file):
        code, out, _ = run_cli(capsys, "-c", str(config_file), "token", "show", "1", "-s", str(store_file))
        result = json.loads(out)
        assert code == 0
        assert result["token"]["assetId"] == "GOLD-001"
        assert result["mapping"] == {"tokenId": "1", "dealId": "deal-7", "assetId": "GOLD-001"}

    def test_unknown_token(self, capsys, config_file, store_file):
        code, _, err = run_cli(capsys, "-c", str(config_file), "token", "show", "99", "-s", str(store_file))
        assert code == 1
        assert "Token not found" in err


def test_no_command_prints_help(capsys):
    assert AssetGateCLI().run([]) == 0
    assert "usage: assetgate" in capsys.readouterr().out
