"""
In-memory ledger behaviour and certificate retrieval.
"""

import pytest
import requests

from assetgate.certificates import (
    HttpCertificateFetcher,
    StaticCertificateFetcher,
    check_certificate,
)
from assetgate.core import sha256_bytes
from assetgate.errors import CertificateInvalid, LedgerError
from assetgate.ledger import TOKEN_MINTED, TOKEN_REVOKED, InMemoryLedger, ReceiptStatus

MINT_ARGS = {"owner": "0xA11CE", "assetId": "GOLD-001", "metadataRef": "cas://sha256:" + "e" * 64}


# =============================================================================
# LEDGER
# =============================================================================

class TestInMemoryLedger:
    """Sequential ids, events and failure injection."""

    def test_mint_emits_event(self):
        ledger = InMemoryLedger()
        receipt = ledger.call("asset-token", "mint", MINT_ARGS)

        assert receipt.is_confirmed
        event = receipt.find_event(TOKEN_MINTED)
        assert event.args["tokenId"] == "1"
        assert event.block_number == receipt.block_number
        assert ledger.token("1")["assetId"] == "GOLD-001"

        second = ledger.call("asset-token", "mint", dict(MINT_ARGS, assetId="GOLD-002"))
        assert second.find_event(TOKEN_MINTED).args["tokenId"] == "2"
        assert second.tx_hash != receipt.tx_hash

    def test_mint_requires_fields(self):
        with pytest.raises(LedgerError, match="requires 'owner'"):
            InMemoryLedger().call("asset-token", "mint", dict(MINT_ARGS, owner=""))

    def test_revoke(self):
        ledger = InMemoryLedger()
        ledger.call("asset-token", "mint", MINT_ARGS)
        receipt = ledger.call("asset-token", "revoke", {"tokenId": "1", "reason": "recall"})

        assert receipt.find_event(TOKEN_REVOKED).args == {"tokenId": "1", "reason": "recall"}
        with pytest.raises(LedgerError, match="already revoked"):
            ledger.call("asset-token", "revoke", {"tokenId": "1", "reason": "again"})
        with pytest.raises(LedgerError, match="unknown token"):
            ledger.call("asset-token", "revoke", {"tokenId": "9", "reason": "x"})

    def test_unknown_method(self):
        with pytest.raises(LedgerError, match="unknown method"):
            InMemoryLedger().call("asset-token", "burn", {})

    def test_fail_next(self):
        ledger = InMemoryLedger()
        ledger.fail_next("mint", count=2)

        for _ in range(2):
            with pytest.raises(LedgerError, match="injected mint failure"):
                ledger.call("asset-token", "mint", MINT_ARGS)
        assert ledger.call("asset-token", "mint", MINT_ARGS).is_confirmed
        assert len(ledger.calls) == 3

    def test_unconfirmed_receipt_has_no_effect(self):
        ledger = InMemoryLedger()
        ledger.leave_unconfirmed("mint")
        receipt = ledger.call("asset-token", "mint", MINT_ARGS)

        assert receipt.status is ReceiptStatus.PENDING
        assert not receipt.is_confirmed
        assert receipt.events == []
        assert ledger.token("1") is None


class TestLedgerSubscriptions:
    def test_filtered_delivery(self):
        ledger = InMemoryLedger()
        seen = []
        ledger.subscribe("asset-token", TOKEN_MINTED, seen.append, {"assetId": "GOLD-002"})

        ledger.call("asset-token", "mint", MINT_ARGS)
        ledger.call("asset-token", "mint", dict(MINT_ARGS, assetId="GOLD-002"))

        assert [e.args["assetId"] for e in seen] == ["GOLD-002"]

    def test_other_target_not_delivered(self):
        ledger = InMemoryLedger()
        seen = []
        ledger.subscribe("other-contract", TOKEN_MINTED, seen.append)
        ledger.call("asset-token", "mint", MINT_ARGS)
        assert seen == []

    def test_listener_error_isolated(self):
        ledger = InMemoryLedger()
        seen = []

        def broken(event):
            raise RuntimeError("listener down")

        ledger.subscribe("asset-token", TOKEN_MINTED, broken)
        ledger.subscribe("asset-token", TOKEN_MINTED, seen.append)

        assert ledger.call("asset-token", "mint", MINT_ARGS).is_confirmed
        assert len(seen) == 1

    def test_unsubscribe(self):
        ledger = InMemoryLedger()
        seen = []
        sub = ledger.subscribe("asset-token", TOKEN_MINTED, seen.append)
        assert ledger.unsubscribe(sub)
        assert not ledger.unsubscribe(sub)
        ledger.call("asset-token", "mint", MINT_ARGS)
        assert seen == []


# =============================================================================
# CERTIFICATES
# =============================================================================

class _Response:
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content


class _Session:
    def __init__(self, result):
        self.result = result
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append((url, timeout))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestCertificateFetchers:
    def test_http_ok(self):
        session = _Session(_Response(200, b"%PDF-1.7 assay"))
        fetcher = HttpCertificateFetcher(timeout_seconds=3.0, session=session)
        assert fetcher.fetch("https://certs.example/GOLD-001.pdf") == b"%PDF-1.7 assay"
        assert session.requested == [("https://certs.example/GOLD-001.pdf", 3.0)]

    def test_http_status(self):
        fetcher = HttpCertificateFetcher(session=_Session(_Response(404)))
        with pytest.raises(CertificateInvalid, match="HTTP 404"):
            fetcher.fetch("https://certs.example/missing.pdf")

    def test_http_transport_error(self):
        fetcher = HttpCertificateFetcher(session=_Session(requests.ConnectionError("refused")))
        with pytest.raises(CertificateInvalid, match="cannot retrieve"):
            fetcher.fetch("https://certs.example/GOLD-001.pdf")

    def test_file_scheme(self, tmp_path):
        path = tmp_path / "deed.pdf"
        path.write_bytes(b"deed")
        fetcher = HttpCertificateFetcher(session=_Session(_Response(500)))
        assert fetcher.fetch(path.as_uri()) == b"deed"
        with pytest.raises(CertificateInvalid):
            fetcher.fetch((tmp_path / "absent.pdf").as_uri())

    def test_unsupported_scheme(self):
        fetcher = HttpCertificateFetcher(session=_Session(_Response(200, b"x")))
        with pytest.raises(CertificateInvalid, match="unsupported"):
            fetcher.fetch("ipfs://bafy123")


class TestCheckCertificate:
    def test_valid(self):
        fetcher = StaticCertificateFetcher({"https://certs.example/a.pdf": "assay report"})
        check = check_certificate(fetcher, "https://certs.example/a.pdf")
        assert check.valid
        assert check.digest == sha256_bytes(b"assay report")
        assert check.content == b"assay report"

    @pytest.mark.parametrize("uri, documents, reason", [
        (None, {}, "missing"),
        ("https://certs.example/a.pdf", {}, "not found"),
        ("https://certs.example/a.pdf", {"https://certs.example/a.pdf": b""}, "empty"),
    ])
    def test_invalid(self, uri, documents, reason):
        check = check_certificate(StaticCertificateFetcher(documents), uri)
        assert not check.valid
        assert check.digest is None
        assert reason in check.reason
