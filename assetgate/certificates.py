"""
Certificate retrieval and digest checks.

A certificate reference is a URI to the assay certificate or deed document.
Checking it means: the content can be retrieved, it is non-empty, and its
sha256 digest is well formed. Matching the digest against a registry of
known-good certificates is not done here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union
from urllib.parse import unquote, urlparse

import requests

from assetgate.core import sha256_bytes
from assetgate.errors import CertificateInvalid
from assetgate.hardening import Validators


class CertificateFetcher(ABC):
    """Retrieves certificate content by URI."""

    @abstractmethod
    def fetch(self, uri: str) -> bytes:
        """
        Raises:
            CertificateInvalid: the content could not be retrieved.
        """


class HttpCertificateFetcher(CertificateFetcher):
    """Fetches ``http(s)://`` references with requests and ``file://`` from disk."""

    def __init__(self, timeout_seconds: float = 15.0, session: Optional[requests.Session] = None):
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def fetch(self, uri: str) -> bytes:
        parsed = urlparse(uri)
        if parsed.scheme == "file":
            try:
                return Path(unquote(parsed.path)).read_bytes()
            except OSError as e:
                raise CertificateInvalid(f"cannot read {uri}: {e}") from e
        if parsed.scheme not in ("http", "https"):
            raise CertificateInvalid(f"unsupported certificate scheme: {parsed.scheme or '(none)'}")
        try:
            response = self._session.get(uri, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise CertificateInvalid(f"cannot retrieve {uri}: {e}") from e
        if not 200 <= response.status_code < 300:
            raise CertificateInvalid(f"cannot retrieve {uri}: HTTP {response.status_code}")
        return response.content


class StaticCertificateFetcher(CertificateFetcher):
    """Serves certificates from a fixed URI -> content mapping."""

    def __init__(self, documents: Optional[Dict[str, Union[bytes, str]]] = None):
        self.documents: Dict[str, bytes] = {}
        for uri, content in (documents or {}).items():
            self.add(uri, content)

    def add(self, uri: str, content: Union[bytes, str]) -> None:
        self.documents[uri] = content.encode("utf-8") if isinstance(content, str) else content

    def fetch(self, uri: str) -> bytes:
        try:
            return self.documents[uri]
        except KeyError:
            raise CertificateInvalid(f"certificate not found: {uri}") from None


@dataclass(frozen=True)
class CertificateCheck:
    valid: bool
    digest: Optional[str] = None
    content: Optional[bytes] = None
    reason: Optional[str] = None


def check_certificate(fetcher: CertificateFetcher, uri: Optional[str]) -> CertificateCheck:
    """Retrieve ``uri`` and validate the shape of its content digest."""
    if not uri:
        return CertificateCheck(False, reason="certificate reference missing")
    try:
        content = fetcher.fetch(uri)
    except CertificateInvalid as e:
        return CertificateCheck(False, reason=str(e))
    if not content:
        return CertificateCheck(False, reason=f"certificate {uri} is empty")

    digest = sha256_bytes(content)
    result = Validators.validate_digest(digest, "certificate_digest")
    if not result.is_valid:
        return CertificateCheck(False, reason=f"certificate digest malformed: {result.errors[0].message}")
    return CertificateCheck(True, digest=result.sanitized_value, content=content)
