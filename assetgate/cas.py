"""Content-addressed storage for token metadata.

References have the form ``cas://sha256:<digest>`` where ``<digest>`` is the
lowercase sha256 hex of the stored bytes. The same bytes always produce the
same reference, so storing is idempotent.

On disk (DirectoryContentStore) objects live at ``<root>/<type>/<digest>.json``.
"""

from __future__ import annotations

import json
import os
import pathlib
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Union

from assetgate.core import canonical_json_bytes, canonicalize, load_json, sha256_bytes

REF_PREFIX = "cas://sha256:"
SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")
CONTENT_TYPE_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")


def make_ref(digest: str) -> str:
    return f"{REF_PREFIX}{normalize_digest(digest)}"


def normalize_digest(digest: str) -> str:
    dd = str(digest or "").strip().lower()
    if not SHA256_HEX_RE.match(dd):
        raise ValueError("digest must be 64 lowercase hex chars")
    return dd


def parse_ref(ref: str) -> str:
    """Return the digest inside a ``cas://sha256:`` reference."""
    if not isinstance(ref, str) or not ref.startswith(REF_PREFIX):
        raise ValueError(f"not a content reference: {ref!r}")
    return normalize_digest(ref[len(REF_PREFIX):])


def normalize_content_type(t: str) -> str:
    tt = str(t or "").strip().lower()
    if not CONTENT_TYPE_RE.match(tt):
        raise ValueError("content type must match ^[a-z0-9][a-z0-9-]{0,63}$")
    return tt


class ContentStore(ABC):
    """Store bytes, get back a stable reference."""

    @abstractmethod
    def put(self, data: bytes, content_type: str = "metadata") -> str:
        pass

    @abstractmethod
    def get(self, ref: str) -> bytes:
        """
        Raises:
            KeyError: nothing stored under ``ref``.
        """

    @abstractmethod
    def delete(self, ref: str) -> bool:
        pass

    def put_json(self, obj: Any, content_type: str = "metadata") -> str:
        """Store the canonical JSON encoding of ``obj``."""
        return self.put(canonical_json_bytes(canonicalize(obj)), content_type)

    def get_json(self, ref: str) -> Any:
        return json.loads(self.get(ref).decode("utf-8"))


class InMemoryContentStore(ContentStore):
    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, content_type: str = "metadata") -> str:
        normalize_content_type(content_type)
        digest = sha256_bytes(data)
        with self._lock:
            self._objects.setdefault(digest, bytes(data))
        return make_ref(digest)

    def get(self, ref: str) -> bytes:
        digest = parse_ref(ref)
        with self._lock:
            return self._objects[digest]

    def delete(self, ref: str) -> bool:
        digest = parse_ref(ref)
        with self._lock:
            return self._objects.pop(digest, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class DirectoryContentStore(ContentStore):
    """Filesystem CAS under ``<root>/<type>/<digest>.json``."""

    def __init__(self, root: Union[str, pathlib.Path]):
        self.root = pathlib.Path(root)

    def _find(self, digest: str) -> pathlib.Path:
        for path in self.root.glob(f"*/{digest}.json"):
            return path
        raise KeyError(make_ref(digest))

    def put(self, data: bytes, content_type: str = "metadata") -> str:
        tt = normalize_content_type(content_type)
        digest = sha256_bytes(data)
        dest = self.root / tt / f"{digest}.json"
        if dest.exists():
            existing = sha256_bytes(dest.read_bytes())
            if existing != digest:
                raise ValueError(f"Hash collision detected: {dest} has content hash {existing}, expected {digest}")
            return make_ref(digest)

        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".cas-", dir=str(dest.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return make_ref(digest)

    def get(self, ref: str) -> bytes:
        return self._find(parse_ref(ref)).read_bytes()

    def get_json(self, ref: str) -> Any:
        return load_json(self._find(parse_ref(ref)))

    def delete(self, ref: str) -> bool:
        try:
            path = self._find(parse_ref(ref))
        except KeyError:
            return False
        path.unlink()
        return True
