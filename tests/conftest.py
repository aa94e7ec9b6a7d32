import os
import pathlib
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import assetgate`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from assetgate.audit import AuditTrailStore  # noqa: E402
from assetgate.cas import InMemoryContentStore  # noqa: E402
from assetgate.certificates import StaticCertificateFetcher  # noqa: E402
from assetgate.ledger import InMemoryLedger  # noqa: E402
from assetgate.oracle import ExternalDataClient, OracleEndpoint  # noqa: E402
from assetgate.signatures import DeedSigner  # noqa: E402
from assetgate.errors import StoreUnavailable  # noqa: E402
from assetgate.store import InMemoryDocumentStore, JsonFileDocumentStore  # noqa: E402
from assetgate.tokenization import LedgerTokenizationService  # noqa: E402
from assetgate.verification import AssetVerificationService  # noqa: E402

TIMESTAMP = "2026-03-01T12:00:00Z"
COUNTY_RECORDER = "County Recorder"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless ASSETGATE_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('ASSETGATE_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set ASSETGATE_RUN_SLOW=1 to enable'))


# =============================================================================
# ORACLE DOUBLES
# =============================================================================

class ScriptedEndpoint(OracleEndpoint):
    """
    Oracle endpoint that replays a script of responses.

    Each script item is either a response body (dict) or an exception to
    raise. The last item repeats once the script runs out.
    """

    def __init__(self, script: Optional[List[Any]] = None):
        self.script: List[Any] = list(script or [])
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._last: Any = None

    def push(self, *items: Any) -> None:
        self.script.extend(items)

    def request(self, job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((job_id, dict(params)))
        if self.script:
            self._last = self.script.pop(0)
        item = self._last
        if item is None:
            raise AssertionError("ScriptedEndpoint has no responses")
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingSleep:
    """Sleep replacement that records requested delays instead of blocking."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# =============================================================================
# STORE DOUBLES
# =============================================================================

class FlakyFileStore(JsonFileDocumentStore):
    """File-backed store whose next ``failures`` commits fail."""

    def __init__(self, path):
        super().__init__(path)
        self.failures = 0

    def _commit(self) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable(f"Cannot write document store {self.path}: disk full")
        super()._commit()


def ok(data: Dict[str, Any], request_id: str = "run-1") -> Dict[str, Any]:
    return {"success": True, "data": data, "requestId": request_id}


def metal_payload(
    asset_id: str = "GOLD-001",
    asset_type: str = "gold",
    purity: Any = 99.95,
    weight: Any = 1000,
    origin: str = "Perth Mint",
    certificate_ref: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    payload = {
        "assetId": asset_id,
        "assetType": asset_type,
        "attributes": {"purity": purity, "weight": weight, "origin": origin},
        "issuer": "Perth Assay Office",
        "certificateRef": certificate_ref or f"https://certs.example/{asset_id}.pdf",
        "timestamp": TIMESTAMP,
    }
    payload.update(extra)
    return payload


def deed_document(asset_id: str) -> bytes:
    return f"Deed of title for parcel {asset_id}".encode("utf-8")


def property_payload(
    signer: DeedSigner,
    asset_id: str = "PROP-001",
    asset_type: str = "residential",
    document: Optional[bytes] = None,
    issuer: str = COUNTY_RECORDER,
    **attribute_overrides: Any,
) -> Dict[str, Any]:
    attributes = {
        "location": "12 Harbour Street, Springfield",
        "coordinates": {"lat": 40.7128, "lng": -74.006},
        "size": 2400,
        "valuation": 750000,
        "zoning": "R-1",
    }
    attributes.update(signer.sign_document(document if document is not None else deed_document(asset_id)))
    attributes.update(attribute_overrides)
    return {
        "assetId": asset_id,
        "assetType": asset_type,
        "attributes": attributes,
        "issuer": issuer,
        "certificateRef": f"https://deeds.example/{asset_id}.pdf",
        "timestamp": TIMESTAMP,
    }


def metal_batch(asset_id: str = "GOLD-001", **overrides: Any) -> Dict[str, Any]:
    batch = {
        "assetId": asset_id,
        "assetType": "gold",
        "attributes": {"purity": 99.95, "weight": 1000, "origin": "Perth Mint"},
        "certificateRef": f"https://certs.example/{asset_id}.pdf",
        "owner": "0xA11CE",
        "verified": True,
    }
    batch.update(overrides)
    return batch


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def doc_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def audit(doc_store) -> AuditTrailStore:
    return AuditTrailStore(doc_store, signing_key="test-audit-key")


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def content_store() -> InMemoryContentStore:
    return InMemoryContentStore()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def endpoint() -> ScriptedEndpoint:
    return ScriptedEndpoint()


@pytest.fixture
def client(endpoint, recording_sleep) -> ExternalDataClient:
    c = ExternalDataClient(endpoint, sleep=recording_sleep, rng=lambda: 0.0)
    yield c
    c.close()


@pytest.fixture
def notary() -> DeedSigner:
    return DeedSigner.generate()


@pytest.fixture
def certificates() -> StaticCertificateFetcher:
    return StaticCertificateFetcher({
        "https://certs.example/GOLD-001.pdf": b"%PDF assay certificate GOLD-001",
        "https://certs.example/GOLD-002.pdf": b"%PDF assay certificate GOLD-002",
        "https://certs.example/SILVER-001.pdf": b"%PDF assay certificate SILVER-001",
        "https://deeds.example/PROP-001.pdf": deed_document("PROP-001"),
    })


@pytest.fixture
def verifier(client, audit, certificates, notary) -> AssetVerificationService:
    return AssetVerificationService(
        client,
        audit,
        certificates,
        trusted_signers={COUNTY_RECORDER: notary.did},
    )


@pytest.fixture
def tokenizer(ledger, audit, content_store) -> LedgerTokenizationService:
    return LedgerTokenizationService(ledger, audit, content_store)


@pytest.fixture
def verified_gold(endpoint, verifier) -> Callable[..., Any]:
    """Record a passing verification for a gold asset."""
    def _verify(asset_id: str = "GOLD-001"):
        endpoint.push(ok(metal_payload(asset_id)))
        result = verifier.verify(asset_id)
        assert result.verified, result.reason
        return result
    return _verify
