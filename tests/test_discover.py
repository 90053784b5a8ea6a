"""Tests for source discovery across index kinds and provider-metadata approaches."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import pytest
from conftest import FakeProvider

from csaf_walker.config import Settings
from csaf_walker.discover import (
    ProviderMetadata,
    SourceLocator,
    classify_index,
    parse_security_txt,
)
from csaf_walker.errors import DiscoveryError
from csaf_walker.ingest_http import build_client
from csaf_walker.models import AdvisoryDescriptor, DiscoveryFinding

BASE = "https://example.com/.well-known/csaf"
METADATA_URL = f"{BASE}/provider-metadata.json"


def _discover(
    settings: Settings, provider: FakeProvider, source: str, resolver=None
) -> Tuple[List[AdvisoryDescriptor], List[DiscoveryFinding]]:
    async def run():
        async with build_client(settings, transport=provider.transport()) as client:
            locator = SourceLocator(source, client, settings, resolver=resolver)
            found = [d async for d in locator.discover()]
            return found, locator.findings

    return asyncio.run(run())


def _metadata(distributions) -> dict:
    return {
        "canonical_url": METADATA_URL,
        "metadata_version": "2.0",
        "role": "csaf_trusted_provider",
        "publisher": {"category": "vendor", "name": "Example", "namespace": "https://example.com"},
        "distributions": distributions,
    }


def _feed(*entries) -> dict:
    return {"feed": {"id": "example-feed", "entry": list(entries)}}


def _feed_entry(url: str, updated: str = "2024-01-01T00:00:00Z") -> dict:
    return {
        "id": url.rsplit("/", 1)[-1],
        "updated": updated,
        "content": {"type": "application/json", "src": url},
        "link": [
            {"rel": "self", "href": url},
            {"rel": "hash", "href": url + ".sha512"},
            {"rel": "signature", "href": url + ".asc"},
        ],
    }


class TestClassify:
    """Tests for index classification and security.txt parsing."""

    def test_kinds(self):
        assert classify_index("https://x/changes.csv", b"a.json,2024-01-01")[0] == "changes"
        assert classify_index("https://x/index.txt", b"a.json")[0] == "index"
        assert classify_index("https://x/p.json", json.dumps(_metadata([])).encode())[0] == "metadata"
        assert classify_index("https://x/f.json", json.dumps(_feed()).encode())[0] == "feed"
        assert classify_index("https://x/l.json", b'["a.json"]') == ("documents", ["a.json"])
        assert classify_index("https://x/l.json", b'{"documents": ["a.json"]}') == ("documents", ["a.json"])

    def test_unrecognized_json(self):
        with pytest.raises(DiscoveryError):
            classify_index("https://x/l.json", b'{"documents": "a.json"}')

    def test_invalid_json(self):
        with pytest.raises(DiscoveryError):
            classify_index("https://x/l.json", b"{")

    def test_security_txt(self):
        text = "Contact: mailto:psirt@example.com\nCSAF: http://insecure.example/p.json\nCSAF: https://example.com/p.json\n"
        assert parse_security_txt(text) == "https://example.com/p.json"
        assert parse_security_txt("Contact: x") is None


class TestProviderMetadata:
    """Tests for walking provider metadata distributions."""

    def test_rolie_feed_and_directory(self, settings, provider):
        provider.add_json(
            METADATA_URL,
            _metadata(
                [
                    {"rolie": {"feeds": [{"url": f"{BASE}/feed.json", "tlp_label": "WHITE"}]}},
                    {"directory_url": f"{BASE}/white"},
                ]
            ),
        )
        provider.add_json(f"{BASE}/feed.json", _feed(_feed_entry(f"{BASE}/2024/a.json"), _feed_entry(f"{BASE}/2024/b.json")))
        provider.add(f"{BASE}/white/changes.csv", '"2024/c.json","2024-03-01T00:00:00Z"\n')

        found, findings = _discover(settings, provider, METADATA_URL)

        assert [d.url for d in found] == [f"{BASE}/2024/a.json", f"{BASE}/2024/b.json", f"{BASE}/white/2024/c.json"]
        assert [d.position for d in found] == [0, 1, 2]
        assert found[0].digest_url == f"{BASE}/2024/a.json.sha512"
        assert found[0].signature_url == f"{BASE}/2024/a.json.asc"
        assert found[2].modified == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert findings == []

    def test_directory_falls_back_to_index_txt(self, settings, provider):
        provider.add_json(METADATA_URL, _metadata([{"directory_url": f"{BASE}/white/"}]))
        provider.add(f"{BASE}/white/index.txt", "2024/a.json\n\n2024/b.json\n")
        found, _ = _discover(settings, provider, METADATA_URL)
        assert [d.url for d in found] == [f"{BASE}/white/2024/a.json", f"{BASE}/white/2024/b.json"]

    def test_broken_entries_become_findings(self, settings, provider):
        provider.add_json(
            METADATA_URL,
            _metadata(
                [
                    {"rolie": {"feeds": [{"url": f"{BASE}/missing-feed.json"}]}},
                    {"summary": "neither kind"},
                    {"rolie": {"feeds": [{"url": f"{BASE}/feed.json"}]}},
                ]
            ),
        )
        provider.add_json(
            f"{BASE}/feed.json",
            _feed({"id": "no-url"}, _feed_entry(f"{BASE}/2024/a.json"), "not-an-object"),
        )

        found, findings = _discover(settings, provider, METADATA_URL)

        assert [d.url for d in found] == [f"{BASE}/2024/a.json"]
        assert [f.entry for f in findings] == [
            "/distributions/0/rolie/feeds/0",
            "/distributions/1",
            "/feed/entry/0",
            "/feed/entry/2",
        ]

    def test_duplicates_listed_once(self, settings, provider):
        provider.add_json(
            METADATA_URL,
            _metadata(
                [
                    {"rolie": {"feeds": [{"url": f"{BASE}/feed.json"}]}},
                    {"directory_url": f"{BASE}"},
                ]
            ),
        )
        provider.add_json(f"{BASE}/feed.json", _feed(_feed_entry(f"{BASE}/2024/a.json")))
        provider.add(f"{BASE}/changes.csv", "2024/a.json,2024-01-01T00:00:00Z\n2024/b.json,2024-01-02T00:00:00Z\n")
        found, _ = _discover(settings, provider, METADATA_URL)
        assert [d.url for d in found] == [f"{BASE}/2024/a.json", f"{BASE}/2024/b.json"]

    def test_since_filter(self, tmp_path, provider):
        settings = Settings(cache_dir=tmp_path, since=datetime(2024, 2, 1, tzinfo=timezone.utc))
        provider.add(
            f"{BASE}/changes.csv",
            "2024/old.json,2024-01-01T00:00:00Z\n2024/new.json,2024-03-01T00:00:00Z\n",
        )
        found, _ = _discover(settings, provider, f"{BASE}/changes.csv")
        assert [d.url for d in found] == [f"{BASE}/2024/new.json"]
        assert found[0].position == 0

    def test_unparseable_feed_urls_become_findings(self, settings, provider):
        good = _feed_entry(f"{BASE}/2024/b.json")
        bad_hash = _feed_entry(f"{BASE}/2024/c.json")
        bad_hash["link"][1]["href"] = "https://[bad/c.json.sha512"
        provider.add_json(METADATA_URL, _metadata([{"rolie": {"feeds": [{"url": f"{BASE}/feed.json"}]}}]))
        provider.add_json(f"{BASE}/feed.json", _feed(_feed_entry("https://[bad/a.json"), good, bad_hash))

        found, findings = _discover(settings, provider, METADATA_URL)

        assert [d.url for d in found] == [f"{BASE}/2024/b.json"]
        assert [(f.source, f.entry) for f in findings] == [
            (f"{BASE}/feed.json", "/feed/entry/0"),
            (f"{BASE}/feed.json", "/feed/entry/2"),
        ]

    def test_unparseable_feed_reference_becomes_finding(self, settings, provider):
        provider.add_json(
            METADATA_URL,
            _metadata([{"rolie": {"feeds": [{"url": "https://[bad/feed.json"}, {"url": f"{BASE}/feed.json"}]}}]),
        )
        provider.add_json(f"{BASE}/feed.json", _feed(_feed_entry(f"{BASE}/2024/a.json")))
        found, findings = _discover(settings, provider, METADATA_URL)
        assert [d.url for d in found] == [f"{BASE}/2024/a.json"]
        assert [f.entry for f in findings] == ["/distributions/0/rolie/feeds/0"]

    def test_unparseable_changes_row_skipped(self, settings, provider):
        provider.add(f"{BASE}/changes.csv", "https://[bad/a.json,2024-01-01T00:00:00Z\nb.json,2024-01-01T00:00:00Z\n")
        found, findings = _discover(settings, provider, f"{BASE}/changes.csv")
        assert [d.url for d in found] == [f"{BASE}/b.json"]
        assert [f.entry for f in findings] == ["line 1"]

    def test_bad_timestamp_row_skipped(self, settings, provider):
        provider.add(f"{BASE}/changes.csv", "a.json,yesterday\nb.json,2024-01-01T00:00:00Z\n")
        found, findings = _discover(settings, provider, f"{BASE}/changes.csv")
        assert [d.url for d in found] == [f"{BASE}/b.json"]
        assert findings[0].entry == "line 1"


class TestRootIndex:
    """Tests for loading the root index."""

    def test_document_list(self, settings, provider):
        provider.add_json(
            "https://example.com/list.json",
            {"documents": ["a.json", {"url": "b.json", "signature_url": "sig/b.asc"}, 42]},
        )
        found, findings = _discover(settings, provider, "https://example.com/list.json")
        assert [d.url for d in found] == ["https://example.com/a.json", "https://example.com/b.json"]
        assert found[1].signature_url == "https://example.com/sig/b.asc"
        assert [f.entry for f in findings] == ["/documents/2"]

    def test_malformed_document_entries_skipped(self, settings, provider):
        provider.add_json(
            "https://example.com/list.json",
            {
                "documents": [
                    "https://example.com/a.json",
                    {"url": "https://example.com/b.json", "digest_url": 123},
                    {"url": "https://example.com/c.json", "signature_url": ["c.asc"]},
                    "https://[bad/x.json",
                    "d.json",
                ]
            },
        )
        found, findings = _discover(settings, provider, "https://example.com/list.json")
        assert [d.url for d in found] == ["https://example.com/a.json", "https://example.com/d.json"]
        assert [d.position for d in found] == [0, 1]
        assert [f.entry for f in findings] == ["/documents/1", "/documents/2", "/documents/3"]
        assert all(f.message.startswith("malformed entry:") for f in findings)

    def test_unreachable_root_raises(self, settings, provider):
        with pytest.raises(DiscoveryError):
            _discover(settings, provider, "https://example.com/missing.json")

    def test_root_server_error_raises(self, settings, provider):
        provider.add("https://example.com/index.json", b"", status=500)
        with pytest.raises(DiscoveryError):
            _discover(settings, provider, "https://example.com/index.json")

    def test_malformed_root_raises(self, settings, provider):
        provider.add("https://example.com/index.json", b"<html>")
        with pytest.raises(DiscoveryError):
            _discover(settings, provider, "https://example.com/index.json")

    def test_local_index(self, settings, provider, tmp_path: Path):
        (tmp_path / "index.txt").write_text("# advisories\na.json\nsub/b.json\n", encoding="utf-8")
        found, _ = _discover(settings, provider, str(tmp_path / "index.txt"))
        assert [d.url for d in found] == [str(tmp_path / "a.json"), str(tmp_path / "sub" / "b.json")]
        assert provider.requests == []

    def test_entries_require_open(self, settings, provider):
        async def run():
            async with build_client(settings, transport=provider.transport()) as client:
                locator = SourceLocator("https://example.com/index.txt", client, settings)
                return [e async for e in locator._entries()]

        with pytest.raises(RuntimeError):
            asyncio.run(run())

    def test_discover_is_one_shot(self, settings, provider):
        provider.add("https://example.com/index.txt", "a.json\n")

        async def run():
            async with build_client(settings, transport=provider.transport()) as client:
                locator = SourceLocator("https://example.com/index.txt", client, settings)
                first = [d async for d in locator.discover()]
                with pytest.raises(RuntimeError):
                    [d async for d in locator.discover()]
                return first

        assert len(asyncio.run(run())) == 1


class TestDomainApproaches:
    """Tests for locating provider metadata from a bare domain."""

    def _resolver(self, known: Optional[str] = None):
        async def resolve(host: str) -> bool:
            return host == known

        return resolve

    def test_well_known(self, settings, provider):
        provider.add_json(METADATA_URL, _metadata([]))
        found, _ = _discover(settings, provider, "example.com", resolver=self._resolver())
        assert found == []
        assert provider.hits(METADATA_URL) == 1

    def test_security_txt(self, settings, provider):
        provider.add("https://example.com/.well-known/security.txt", "CSAF: https://example.com/csaf/pm.json\n")
        provider.add_json("https://example.com/csaf/pm.json", _metadata([{"directory_url": "https://example.com/csaf"}]))
        provider.add("https://example.com/csaf/index.txt", "a.json\n")
        found, _ = _discover(settings, provider, "example.com", resolver=self._resolver())
        assert [d.url for d in found] == ["https://example.com/csaf/a.json"]

    def test_legacy_security_txt_location(self, settings, provider):
        provider.add("https://example.com/security.txt", "CSAF: https://example.com/csaf/pm.json\n")
        provider.add_json("https://example.com/csaf/pm.json", _metadata([]))
        _discover(settings, provider, "example.com", resolver=self._resolver())
        assert provider.hits("https://example.com/csaf/pm.json") == 1

    def test_dns(self, settings, provider):
        provider.add_json("https://csaf.data.security.example.com/", _metadata([]))
        _discover(settings, provider, "example.com", resolver=self._resolver("csaf.data.security.example.com"))
        assert provider.hits("https://csaf.data.security.example.com/") == 1

    def test_nothing_found(self, settings, provider):
        with pytest.raises(DiscoveryError):
            _discover(settings, provider, "example.com", resolver=self._resolver())

    def test_all_approaches_reported(self, settings, provider):
        provider.add_json(METADATA_URL, _metadata([]))

        async def run():
            async with build_client(settings, transport=provider.transport()) as client:
                locator = SourceLocator("example.com", client, settings, resolver=self._resolver())
                return await locator.approaches()

        results = dict(asyncio.run(run()))
        assert results["Direct URL"] is None
        assert isinstance(results["Well-known"], ProviderMetadata)
        assert results["/.well-known/security.txt"] is None
        assert results["DNS"] is None

    def test_load_metadata(self, settings, provider):
        provider.add_json(METADATA_URL, _metadata([]))

        async def run():
            async with build_client(settings, transport=provider.transport()) as client:
                return await SourceLocator(METADATA_URL, client, settings).load_metadata()

        metadata = asyncio.run(run())
        assert metadata.role == "csaf_trusted_provider"
        assert metadata.canonical_url == METADATA_URL
