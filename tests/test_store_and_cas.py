"""
Document store, content-addressed storage and canonical JSON tests.
"""

import threading
from decimal import Decimal

import pytest

from assetgate.cas import (
    DirectoryContentStore,
    InMemoryContentStore,
    make_ref,
    normalize_content_type,
    parse_ref,
)
from assetgate.core import canonical_json_bytes, canonicalize, decimal_str, sha256_bytes, to_decimal
from assetgate.errors import StoreUnavailable
from assetgate.store import InMemoryDocumentStore, JsonFileDocumentStore

from conftest import FlakyFileStore


# =============================================================================
# CANONICAL JSON
# =============================================================================

class TestCanonicalJson:
    def test_sorted_compact(self):
        assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    def test_floats_rejected(self):
        with pytest.raises(ValueError, match="Float not allowed"):
            canonical_json_bytes({"x": {"y": 1.5}})

    def test_canonicalize_numbers(self):
        assert canonicalize({"p": 99.90, "w": Decimal("1E+3"), "ok": True, "n": None}) == {
            "p": "99.9", "w": "1000", "ok": True, "n": None,
        }

    def test_decimal_str(self):
        assert decimal_str(100) == "100"
        assert decimal_str("99.950") == "99.95"
        assert decimal_str(1e6) == "1000000"

    def test_to_decimal_rejects_bool(self):
        with pytest.raises(ValueError):
            to_decimal(True)
        with pytest.raises(ValueError):
            to_decimal("ninety")


# =============================================================================
# DOCUMENT STORE
# =============================================================================

class TestInMemoryDocumentStore:
    """Basic CRUD plus the atomic create and compare-and-set primitives."""

    def test_documents_are_copies(self):
        store = InMemoryDocumentStore()
        doc = {"nested": {"v": 1}}
        store.set("c", "1", doc)
        doc["nested"]["v"] = 2

        fetched = store.get("c", "1")
        assert fetched == {"nested": {"v": 1}}
        fetched["nested"]["v"] = 3
        assert store.get("c", "1")["nested"]["v"] == 1

    def test_update_merges(self):
        store = InMemoryDocumentStore()
        store.set("c", "1", {"a": 1, "b": 2})
        assert store.update("c", "1", {"b": 3}) == {"a": 1, "b": 3}
        with pytest.raises(KeyError):
            store.update("c", "missing", {"b": 3})

    def test_create_only_once(self):
        store = InMemoryDocumentStore()
        assert store.create("c", "1", {"v": 1})
        assert not store.create("c", "1", {"v": 2})
        assert store.get("c", "1") == {"v": 1}

    def test_compare_and_set(self):
        store = InMemoryDocumentStore()
        store.set("tokens", "1", {"revoked": False, "meta": {"v": 1}})

        applied, doc = store.compare_and_set("tokens", "1", {"revoked": False, "meta.v": 1}, {"revoked": True})
        assert applied and doc["revoked"] is True

        applied, doc = store.compare_and_set("tokens", "1", {"revoked": False}, {"reason": "late"})
        assert not applied and "reason" not in doc

        assert store.compare_and_set("tokens", "2", {}, {"x": 1}) == (False, None)

    def test_create_is_exclusive_across_threads(self):
        store = InMemoryDocumentStore()
        winners = []
        barrier = threading.Barrier(8)

        def contend(i):
            barrier.wait()
            if store.create("claims", "GOLD-001", {"by": i}):
                winners.append(i)

        threads = [threading.Thread(target=contend, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1

    def test_where_order_limit(self):
        store = InMemoryDocumentStore()
        store.set("log", "a", {"kind": "mint", "seq": 2})
        store.set("log", "b", {"kind": "mint", "seq": 1})
        store.set("log", "c", {"kind": "revoke", "seq": 3})
        store.set("log", "d", {"kind": "mint"})

        rows = store.where("log", "kind", "mint").order_by("seq").get()
        assert [doc_id for doc_id, _ in rows] == ["b", "a", "d"]

        rows = store.where("log", "kind", "mint").order_by("seq", descending=True).limit(1).get()
        assert [doc_id for doc_id, _ in rows] == ["a"]

        with pytest.raises(ValueError):
            store.where("log", "kind", "mint").limit(-1)

    def test_delete_and_count(self):
        store = InMemoryDocumentStore()
        store.set("c", "1", {})
        assert store.count("c") == 1
        assert store.delete("c", "1") is True
        assert store.delete("c", "1") is False
        assert store.count("c") == 0


class TestJsonFileDocumentStore:
    def test_persists_every_write(self, tmp_path):
        path = tmp_path / "nested" / "docs.json"
        store = JsonFileDocumentStore(path)
        store.set("c", "1", {"v": 1})
        store.create("c", "2", {"v": 2})
        store.compare_and_set("c", "1", {"v": 1}, {"v": 10})

        reopened = JsonFileDocumentStore(path)
        assert reopened.get("c", "1") == {"v": 10}
        assert reopened.get("c", "2") == {"v": 2}
        assert not list(path.parent.glob(".assetgate-*"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "docs.json"
        path.write_text("", encoding="utf-8")
        assert JsonFileDocumentStore(path).count("c") == 0

    @pytest.mark.parametrize("write", [
        lambda s: s.set("c", "1", {"v": 99}),
        lambda s: s.set("c", "new", {"v": 3}),
        lambda s: s.update("c", "1", {"v": 99}),
        lambda s: s.create("c", "new", {"v": 3}),
        lambda s: s.compare_and_set("c", "1", {"v": 1}, {"v": 99}),
        lambda s: s.delete("c", "1"),
        lambda s: s.set("other", "1", {"v": 3}),
    ])
    def test_failed_commit_leaves_memory_unchanged(self, tmp_path, write):
        path = tmp_path / "docs.json"
        store = FlakyFileStore(path)
        store.set("c", "1", {"v": 1})
        before = {name: dict(store.scan(name)) for name in ("c", "other")}

        store.failures = 1
        with pytest.raises(StoreUnavailable, match="disk full"):
            write(store)

        assert {name: dict(store.scan(name)) for name in ("c", "other")} == before
        assert "other" not in store._data
        store.set("c", "2", {"v": 2})
        reopened = JsonFileDocumentStore(path)
        assert dict(reopened.scan("c")) == {"1": {"v": 1}, "2": {"v": 2}}


# =============================================================================
# CONTENT STORE
# =============================================================================

class TestRefs:
    def test_make_and_parse(self):
        digest = sha256_bytes(b"x")
        ref = make_ref(digest.upper())
        assert ref == f"cas://sha256:{digest}"
        assert parse_ref(ref) == digest

    def test_bad_refs(self):
        with pytest.raises(ValueError):
            parse_ref("ipfs://Qm123")
        with pytest.raises(ValueError):
            parse_ref("cas://sha256:abc")
        with pytest.raises(ValueError):
            normalize_content_type("../metadata")


@pytest.fixture(params=["memory", "directory"])
def cas(request, tmp_path):
    if request.param == "memory":
        return InMemoryContentStore()
    return DirectoryContentStore(tmp_path / "cas")


class TestContentStore:
    """Both backends honour the same contract."""

    def test_put_get(self, cas):
        ref = cas.put(b'{"name":"Gold"}')
        assert ref == make_ref(sha256_bytes(b'{"name":"Gold"}'))
        assert cas.get(ref) == b'{"name":"Gold"}'

    def test_put_is_idempotent(self, cas):
        assert cas.put(b"same") == cas.put(b"same")

    def test_put_json_canonical(self, cas):
        ref_a = cas.put_json({"b": 1, "a": Decimal("99.950")})
        ref_b = cas.put_json({"a": "99.95", "b": 1})
        assert ref_a == ref_b
        assert cas.get_json(ref_a) == {"a": "99.95", "b": 1}

    def test_missing(self, cas):
        with pytest.raises(KeyError):
            cas.get(make_ref("0" * 64))

    def test_delete(self, cas):
        ref = cas.put(b"gone")
        assert cas.delete(ref) is True
        assert cas.delete(ref) is False

    def test_directory_layout(self, tmp_path):
        store = DirectoryContentStore(tmp_path)
        ref = store.put(b"{}", content_type="metadata")
        assert (tmp_path / "metadata" / f"{parse_ref(ref)}.json").exists()
