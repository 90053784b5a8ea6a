"""Source discovery: resolve a provider index into advisory descriptors.

The root index is read exactly once, without retries. Nested listings
(ROLIE feeds, directory change lists) and individual entries that cannot be
read are recorded as discovery findings and skipped.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import socket
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .config import Settings
from .errors import DiscoveryError
from .ingest_http import NOT_FOUND_STATUS, is_local, local_path, read_if_exists, resolve_location
from .models import AdvisoryDescriptor, DiscoveryFinding

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = ".well-known/csaf/provider-metadata.json"
SECURITY_TXT_PATHS = (".well-known/security.txt", "security.txt")
DNS_PREFIX = "csaf.data.security."
CHANGES_CSV = "changes.csv"
INDEX_TXT = "index.txt"

Resolver = Callable[[str], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Index models
# ---------------------------------------------------------------------------

class RolieFeedRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str
    tlp_label: Optional[str] = None
    summary: Optional[str] = None


class RolieDistribution(BaseModel):
    model_config = ConfigDict(extra="allow")

    feeds: List[RolieFeedRef] = []


class Distribution(BaseModel):
    """One entry of provider-metadata ``distributions``."""

    model_config = ConfigDict(extra="allow")

    directory_url: Optional[str] = None
    rolie: Optional[RolieDistribution] = None


class PublicKeyRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str
    fingerprint: Optional[str] = None


class ProviderMetadata(BaseModel):
    """The parts of ``provider-metadata.json`` the walker uses."""

    model_config = ConfigDict(extra="allow")

    canonical_url: Optional[str] = None
    metadata_version: Optional[str] = None
    role: Optional[str] = None
    last_updated: Optional[str] = None
    publisher: Dict[str, Any] = {}
    distributions: List[Dict[str, Any]] = []
    public_openpgp_keys: List[PublicKeyRef] = []


class _Entry(BaseModel):
    url: str
    digest_url: Optional[str] = None
    signature_url: Optional[str] = None
    modified: Optional[datetime] = None
    source: str


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def classify_index(location: str, data: bytes) -> Tuple[str, Any]:
    """Return ``(kind, payload)`` for a loaded index.

    Raises:
        DiscoveryError: If the content is neither a listing nor a known JSON index.
    """
    name = urlparse(location).path.rsplit("/", 1)[-1] if not is_local(location) else local_path(location).name
    text = data.decode("utf-8", errors="replace")
    if name == CHANGES_CSV:
        return "changes", text
    if name == INDEX_TXT:
        return "index", text

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DiscoveryError(f"Index {location} is not valid JSON: {exc}", source=location) from exc

    if isinstance(payload, list):
        return "documents", payload
    if isinstance(payload, dict):
        if "distributions" in payload or "metadata_version" in payload:
            return "metadata", payload
        if "feed" in payload:
            return "feed", payload
        if isinstance(payload.get("documents"), list):
            return "documents", payload["documents"]
    raise DiscoveryError(f"Index {location} is not a recognized CSAF index", source=location)


def parse_security_txt(text: str) -> Optional[str]:
    """Return the first https ``CSAF:`` entry of a security.txt."""
    for line in text.splitlines():
        name, sep, value = line.partition(":")
        if not sep or name.strip().lower() != "csaf":
            continue
        value = value.strip()
        if urlparse(value).scheme == "https":
            return value
    return None


def _rolie_links(entry: Dict[str, Any]) -> Dict[str, List[str]]:
    links: Dict[str, List[str]] = {}
    raw = entry.get("link", [])
    if isinstance(raw, dict):
        raw = [raw]
    for link in raw if isinstance(raw, list) else []:
        if isinstance(link, dict) and isinstance(link.get("href"), str):
            links.setdefault(str(link.get("rel", "")).lower(), []).append(link["href"])
    return links


async def _default_resolver(host: str) -> bool:
    """Return True when ``host`` resolves to at least one address."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, 443, type=socket.SOCK_STREAM)
    except socket.gaierror:
        return False
    return bool(infos)


# ---------------------------------------------------------------------------
# Locator
# ---------------------------------------------------------------------------

class SourceLocator:
    """Turns a root index location into a one-shot stream of descriptors.

    ``source`` may be an http(s) URL, a local path or ``file://`` URL, or a
    bare domain, in which case the provider metadata is located through the
    well-known URL, security.txt and DNS approaches in that order.
    """

    def __init__(
        self,
        source: str,
        client: httpx.AsyncClient,
        settings: Settings,
        *,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self.source = source
        self.client = client
        self.settings = settings
        self.findings: List[DiscoveryFinding] = []
        self.index_url: Optional[str] = None
        self._resolver = resolver or _default_resolver
        self._root: Optional[Tuple[str, Any]] = None
        self._consumed = False

    # -- loading ------------------------------------------------------------

    async def _load(self, url: str) -> Optional[bytes]:
        """Read a location once. Returns None on 404/410 or a missing file."""
        if is_local(url):
            path = local_path(url)
            try:
                return await asyncio.to_thread(read_if_exists, path)
            except OSError as exc:
                raise DiscoveryError(f"Cannot read {path}: {exc}", source=url) from exc
        try:
            resp = await self.client.get(url)
        except (httpx.TransportError, httpx.InvalidURL) as exc:
            raise DiscoveryError(f"{type(exc).__name__} for {url}: {exc}", source=url) from exc
        if resp.status_code in NOT_FOUND_STATUS:
            return None
        if resp.status_code >= 400:
            raise DiscoveryError(f"HTTP {resp.status_code} for {url}", source=url)
        return resp.content

    async def _load_required(self, url: str) -> bytes:
        data = await self._load(url)
        if data is None:
            raise DiscoveryError(f"Index not found: {url}", source=url)
        return data

    def _is_domain(self) -> bool:
        if not is_local(self.source):
            return False
        if local_path(self.source).exists() or self.source.startswith("file:"):
            return False
        return "/" not in self.source and "\\" not in self.source and "." in self.source

    # -- provider metadata approaches --------------------------------------

    async def approach_full_url(self) -> Optional[Tuple[str, bytes]]:
        if self._is_domain():
            return None
        return self.source, await self._load_required(self.source)

    async def approach_well_known(self) -> Optional[Tuple[str, bytes]]:
        url = f"https://{self.source}/{WELL_KNOWN_PATH}"
        logger.debug("Trying to retrieve by well-known approach: %s", url)
        data = await self._load(url)
        return (url, data) if data is not None else None

    async def approach_security_txt(self, path: str) -> Optional[Tuple[str, bytes]]:
        url = f"https://{self.source}/{path.lstrip('/')}"
        logger.debug("Trying to retrieve by security.txt approach: %s", url)
        text = await self._load(url)
        if text is None:
            return None
        target = parse_security_txt(text.decode("utf-8", errors="replace"))
        if target is None:
            return None
        # security.txt pointed here, so a missing target is an error
        return target, await self._load_required(target)

    async def approach_dns(self) -> Optional[Tuple[str, bytes]]:
        host = DNS_PREFIX + self.source
        logger.debug("Trying to retrieve by DNS approach: %s", host)
        if not await self._resolver(host):
            return None
        url = f"https://{host}"
        data = await self._load(url)
        return (url, data) if data is not None else None

    async def approaches(self) -> List[Tuple[str, Union[ProviderMetadata, DiscoveryError, None]]]:
        """Run every approach and report each result, for diagnostics."""
        candidates = [
            ("Direct URL", self.approach_full_url()),
            ("Well-known", self.approach_well_known()),
            ("/.well-known/security.txt", self.approach_security_txt(SECURITY_TXT_PATHS[0])),
            ("/security.txt", self.approach_security_txt(SECURITY_TXT_PATHS[1])),
            ("DNS", self.approach_dns()),
        ]
        results: List[Tuple[str, Union[ProviderMetadata, DiscoveryError, None]]] = []
        for name, pending in candidates:
            try:
                found = await pending
                results.append((name, self._metadata(*found) if found else None))
            except DiscoveryError as exc:
                results.append((name, exc))
        return results

    def _metadata(self, url: str, data: bytes) -> ProviderMetadata:
        kind, payload = classify_index(url, data)
        if kind != "metadata":
            raise DiscoveryError(f"{url} is not provider metadata", source=url)
        try:
            return ProviderMetadata.model_validate(payload)
        except ValidationError as exc:
            raise DiscoveryError(f"Malformed provider metadata at {url}: {exc}", source=url) from exc

    async def load_metadata(self) -> ProviderMetadata:
        """Return the provider metadata the root index resolves to."""
        await self.open()
        kind, payload = self._opened()
        if kind != "metadata":
            raise DiscoveryError(f"{self.index_url} is not provider metadata", source=self.index_url)
        try:
            return ProviderMetadata.model_validate(payload)
        except ValidationError as exc:
            raise DiscoveryError(f"Malformed provider metadata: {exc}", source=self.index_url) from exc

    async def open(self) -> None:
        """Locate and parse the root index.

        Raises:
            DiscoveryError: If the root index is unreachable, malformed, or
                cannot be located by any approach.
        """
        if self._root is not None:
            return
        if self._is_domain():
            approaches = (
                self.approach_well_known,
                lambda: self.approach_security_txt(SECURITY_TXT_PATHS[0]),
                lambda: self.approach_security_txt(SECURITY_TXT_PATHS[1]),
                self.approach_dns,
            )
            found = None
            for approach in approaches:
                found = await approach()
                if found is not None:
                    break
            if found is None:
                raise DiscoveryError(f"Unable to discover provider metadata for {self.source}", source=self.source)
        else:
            found = await self.approach_full_url()
            if found is None:
                raise DiscoveryError(f"Unable to load index {self.source}", source=self.source)

        url, data = found
        self._root = classify_index(url, data)
        if self._root[0] == "metadata" and not isinstance(self._root[1].get("distributions", []), list):
            raise DiscoveryError(f"Malformed provider metadata at {url}: distributions is not a list", source=url)
        self.index_url = url
        logger.info("Using %s index at %s", self._root[0], url)

    # -- entry listing ------------------------------------------------------

    def _skip(self, source: str, entry: str, message: str) -> None:
        finding = DiscoveryFinding(source=source, entry=entry, message=message)
        self.findings.append(finding)
        logger.warning("Skipping %s in %s: %s", entry, source, message)

    async def _nested(self, url: str, entry: str, parent: str) -> Optional[bytes]:
        try:
            data = await self._load(url)
        except DiscoveryError as exc:
            self._skip(parent, entry, str(exc))
            return None
        if data is None:
            self._skip(parent, entry, f"not found: {url}")
        return data

    def _entry(
        self,
        base: str,
        pointer: str,
        url: Any,
        *,
        digest: Any = None,
        signature: Any = None,
        modified: Optional[datetime] = None,
    ) -> Optional[_Entry]:
        """Resolve an entry's locations, or record it as skipped."""
        try:
            return _Entry(
                url=resolve_location(base, url),
                digest_url=resolve_location(base, digest) if digest else None,
                signature_url=resolve_location(base, signature) if signature else None,
                modified=modified,
                source=base,
            )
        except (TypeError, ValueError, AttributeError, ValidationError) as exc:
            self._skip(base, pointer, f"malformed entry: {exc}")
            return None

    def _changes_entries(self, base: str, text: str) -> List[_Entry]:
        entries: List[_Entry] = []
        for line_no, row in enumerate(csv.reader(io.StringIO(text)), 1):
            if not row or not row[0].strip():
                continue
            try:
                modified = _parse_timestamp(row[1]) if len(row) > 1 else None
            except ValueError:
                self._skip(base, f"line {line_no}", f"invalid timestamp {row[1]!r}")
                continue
            entry = self._entry(base, f"line {line_no}", row[0].strip(), modified=modified)
            if entry is not None:
                entries.append(entry)
        return entries

    def _index_entries(self, base: str, text: str) -> List[_Entry]:
        entries: List[_Entry] = []
        for line_no, line in enumerate(text.splitlines(), 1):
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            entry = self._entry(base, f"line {line_no}", line.strip())
            if entry is not None:
                entries.append(entry)
        return entries

    def _feed_entries(self, base: str, payload: Any) -> List[_Entry]:
        feed = payload.get("feed") if isinstance(payload, dict) else None
        raw = feed.get("entry", []) if isinstance(feed, dict) else None
        if not isinstance(raw, list):
            self._skip(base, "/feed/entry", "feed has no entry list")
            return []
        entries: List[_Entry] = []
        for i, item in enumerate(raw):
            pointer = f"/feed/entry/{i}"
            if not isinstance(item, dict):
                self._skip(base, pointer, "entry is not an object")
                continue
            links = _rolie_links(item)
            content = item.get("content")
            url = content.get("src") if isinstance(content, dict) else None
            url = url or next(iter(links.get("self", [])), None)
            if not isinstance(url, str) or not url:
                self._skip(base, pointer, "entry has no document URL")
                continue
            try:
                modified = _parse_timestamp(item.get("updated"))
            except ValueError:
                self._skip(base, pointer, f"invalid updated timestamp {item.get('updated')!r}")
                continue
            entry = self._entry(
                base,
                pointer,
                url,
                digest=next(iter(links.get("hash", [])), None),
                signature=next(iter(links.get("signature", [])), None),
                modified=modified,
            )
            if entry is not None:
                entries.append(entry)
        return entries

    def _document_entries(self, base: str, items: List[Any]) -> List[_Entry]:
        entries: List[_Entry] = []
        for i, item in enumerate(items):
            pointer = f"/documents/{i}"
            if isinstance(item, str) and item:
                entry = self._entry(base, pointer, item)
            elif isinstance(item, dict) and isinstance(item.get("url"), str):
                entry = self._entry(
                    base,
                    pointer,
                    item["url"],
                    digest=item.get("digest_url"),
                    signature=item.get("signature_url"),
                )
            else:
                self._skip(base, pointer, "entry is neither a URL nor an object with a url")
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    async def _directory(self, directory_url: str, parent: str, entry: str) -> List[_Entry]:
        base = directory_url if directory_url.endswith("/") or is_local(directory_url) else directory_url + "/"
        changes = resolve_location(base, CHANGES_CSV) if not is_local(base) else str(local_path(base) / CHANGES_CSV)
        try:
            data = await self._load(changes)
        except DiscoveryError as exc:
            self._skip(parent, entry, str(exc))
            return []
        if data is not None:
            return self._changes_entries(changes, data.decode("utf-8", errors="replace"))
        index = resolve_location(base, INDEX_TXT) if not is_local(base) else str(local_path(base) / INDEX_TXT)
        data = await self._nested(index, entry, parent)
        if data is None:
            return []
        return self._index_entries(index, data.decode("utf-8", errors="replace"))

    async def _feed(self, url: str, parent: str, entry: str) -> List[_Entry]:
        data = await self._nested(url, entry, parent)
        if data is None:
            return []
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            self._skip(parent, entry, f"feed {url} is not valid JSON: {exc}")
            return []
        return self._feed_entries(url, payload)

    async def _metadata_entries(self, base: str, payload: Dict[str, Any]) -> AsyncIterator[_Entry]:
        for i, raw in enumerate(payload.get("distributions", [])):
            pointer = f"/distributions/{i}"
            try:
                dist = Distribution.model_validate(raw)
            except ValidationError as exc:
                self._skip(base, pointer, f"malformed distribution: {exc}")
                continue
            if dist.directory_url is None and dist.rolie is None:
                self._skip(base, pointer, "distribution has neither directory_url nor rolie")
                continue
            if dist.directory_url is not None:
                entry = f"{pointer}/directory_url"
                try:
                    directory = resolve_location(base, dist.directory_url)
                except ValueError as exc:
                    self._skip(base, entry, f"malformed directory_url: {exc}")
                else:
                    for item in await self._directory(directory, base, entry):
                        yield item
            if dist.rolie is not None:
                for j, feed in enumerate(dist.rolie.feeds):
                    entry = f"{pointer}/rolie/feeds/{j}"
                    try:
                        feed_url = resolve_location(base, feed.url)
                    except ValueError as exc:
                        self._skip(base, entry, f"malformed feed url: {exc}")
                        continue
                    for item in await self._feed(feed_url, base, entry):
                        yield item

    def _opened(self) -> Tuple[str, Any]:
        if self._root is None or self.index_url is None:
            raise RuntimeError("root index not loaded; call open() first")
        return self._root

    async def _entries(self) -> AsyncIterator[_Entry]:
        kind, payload = self._opened()
        base = self.index_url
        if kind == "metadata":
            async for item in self._metadata_entries(base, payload):
                yield item
            return
        if kind == "feed":
            items = self._feed_entries(base, payload)
        elif kind == "changes":
            items = self._changes_entries(base, payload)
        elif kind == "index":
            items = self._index_entries(base, payload)
        else:
            items = self._document_entries(base, payload)
        for item in items:
            yield item

    async def discover(self) -> AsyncIterator[AdvisoryDescriptor]:
        """Yield descriptors in index order. May be iterated only once.

        Raises:
            DiscoveryError: If the root index cannot be loaded.
            RuntimeError: If called a second time on the same locator.
        """
        if self._consumed:
            raise RuntimeError("discovery pass already started; create a new SourceLocator")
        self._consumed = True
        await self.open()

        since = _as_utc(self.settings.since) if self.settings.since else None
        seen: Set[str] = set()
        position = 0
        async for item in self._entries():
            if item.url in seen:
                logger.debug("Duplicate entry %s from %s", item.url, item.source)
                continue
            seen.add(item.url)
            if since is not None and item.modified is not None and item.modified < since:
                logger.debug("Skipping %s: modified %s before %s", item.url, item.modified, since)
                continue
            yield AdvisoryDescriptor(
                url=item.url,
                position=position,
                digest_url=item.digest_url,
                signature_url=item.signature_url,
                modified=item.modified,
                source=item.source,
            )
            position += 1
        logger.info(
            "Discovered %d document(s) from %s (%d finding(s))",
            position, self.index_url, len(self.findings),
        )
