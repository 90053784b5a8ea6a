"""Shared test fixtures for csaf-walker tests."""

from __future__ import annotations

import copy
import hashlib
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
import pytest

from csaf_walker.config import Settings
from csaf_walker.models import SignatureOutcome
from csaf_walker.verify import KeySet, SignatureCheck, TrustedKey

VALID_DOC: Dict[str, Any] = {
    "document": {
        "category": "csaf_security_advisory",
        "csaf_version": "2.0",
        "title": "Example advisory",
        "publisher": {
            "category": "vendor",
            "name": "Example Vendor",
            "namespace": "https://example.com",
        },
        "distribution": {"tlp": {"label": "WHITE"}},
        "tracking": {
            "id": "EX-2024-0001",
            "status": "final",
            "version": "2",
            "initial_release_date": "2024-01-01T00:00:00Z",
            "current_release_date": "2024-02-01T00:00:00Z",
            "revision_history": [
                {"date": "2024-01-01T00:00:00Z", "number": "1", "summary": "Initial release"},
                {"date": "2024-02-01T00:00:00Z", "number": "2", "summary": "Added fix"},
            ],
        },
    },
    "product_tree": {
        "full_product_names": [{"name": "Widget 1.0", "product_id": "WIDGET-1"}],
    },
    "vulnerabilities": [
        {
            "cve": "CVE-2024-0001",
            "product_status": {"known_affected": ["WIDGET-1"]},
            "remediations": [
                {"category": "vendor_fix", "details": "Upgrade to 1.1", "product_ids": ["WIDGET-1"]}
            ],
        }
    ],
}


def make_doc(tracking_id: str = "EX-2024-0001") -> Dict[str, Any]:
    """Return a fresh copy of a document that passes every rule."""
    doc = copy.deepcopy(VALID_DOC)
    doc["document"]["tracking"]["id"] = tracking_id
    return doc


def to_bytes(doc: Dict[str, Any]) -> bytes:
    return json.dumps(doc, indent=2).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fake_signature(data: bytes) -> bytes:
    """Signature format understood by FakeBackend."""
    return b"signed:" + sha256_hex(data).encode("ascii")


class FakeBackend:
    """Signature backend that accepts ``signed:<sha256 of data>``."""

    def load_key(self, material: bytes) -> TrustedKey:
        return TrustedKey(fingerprint=material.decode("utf-8").strip().upper())

    def verify(self, data: bytes, signature: bytes, keys: Sequence[TrustedKey]) -> SignatureCheck:
        if signature == fake_signature(data):
            return SignatureCheck(SignatureOutcome.VERIFIED, fingerprint=keys[0].fingerprint)
        return SignatureCheck(SignatureOutcome.INVALID, message="bad signature")


FAKE_KEYS = KeySet((TrustedKey(fingerprint="0123456789ABCDEF0123456789ABCDEF01234567"),))

Route = Union[Callable[[httpx.Request], Any], tuple]


class FakeProvider:
    """In-memory CSAF provider served through httpx.MockTransport.

    Routes map absolute URLs to ``(status, body, headers)`` tuples or to
    handler callables. A route with an ``etag`` header answers a matching
    ``If-None-Match`` with 304. Unknown URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        url: str,
        body: Union[bytes, str] = b"",
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = (status, body, headers or {})

    def add_json(self, url: str, payload: Any) -> None:
        self.add(url, json.dumps(payload), headers={"content-type": "application/json"})

    def add_document(
        self,
        url: str,
        data: bytes,
        *,
        digest: Optional[bytes] = None,
        signature: Optional[bytes] = None,
        etag: Optional[str] = None,
    ) -> None:
        """Serve a document with a sha256 file and a fake signature by default."""
        headers = {"content-type": "application/json"}
        if etag:
            headers["etag"] = etag
        self.add(url, data, headers=headers)
        self.add(url + ".sha256", digest if digest is not None else f"{sha256_hex(data)}  doc.json\n".encode())
        self.add(url + ".asc", signature if signature is not None else fake_signature(data))

    def handler(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        status, body, headers = route
        etag = headers.get("etag")
        if etag and request.headers.get("if-none-match") == etag:
            return httpx.Response(304, headers=headers)
        return httpx.Response(status, content=body, headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def hits(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    def requests_for(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with no backoff delays and a throwaway cache directory."""
    return Settings(
        cache_dir=tmp_path / "cache",
        retry_limit=2,
        backoff_multiplier=0,
        backoff_min=0,
        backoff_max=0,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def valid_doc() -> Dict[str, Any]:
    return make_doc()


@pytest.fixture
def valid_bytes(valid_doc: Dict[str, Any]) -> bytes:
    return to_bytes(valid_doc)
