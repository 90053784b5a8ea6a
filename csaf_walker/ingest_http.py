"""Document retrieval with conditional GET, companion files, and retry."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse
from urllib.request import url2pathname

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .cache import write_json_atomic
from .config import Settings
from .errors import FetchError, FetchErrorKind
from .models import AdvisoryDescriptor, DigestFile, RetrievedDocument, SignatureState

logger = logging.getLogger(__name__)

# 4xx, including 408 and 429, is permanent
RETRY_STATUS = frozenset({500, 502, 503, 504})
NOT_FOUND_STATUS = frozenset({404, 410})
SIGNATURE_SUFFIX = ".asc"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Location helpers
# ---------------------------------------------------------------------------

def is_local(location: str) -> bool:
    """Return True for filesystem paths and file:// URLs."""
    scheme = urlparse(location).scheme.lower()
    return scheme not in ("http", "https")


def local_path(location: str) -> Path:
    parsed = urlparse(location)
    if parsed.scheme.lower() == "file":
        return Path(url2pathname(parsed.path))
    return Path(location)


def resolve_location(base: str, ref: str) -> str:
    """Resolve an index entry against the location of the index that listed it."""
    if not is_local(ref) or urlparse(ref).scheme.lower() == "file":
        return ref
    if is_local(base):
        ref_path = Path(ref)
        if ref_path.is_absolute():
            return str(ref_path)
        return str(local_path(base).parent / ref_path)
    return urljoin(base, ref)


def store_relative_path(location: str) -> Path:
    """Map a document location to ``<host>/<path>`` with dot segments removed."""
    if is_local(location):
        return Path("local") / local_path(location).name
    parsed = urlparse(location)
    segments = [
        s for s in unquote(parsed.path).replace("\\", "/").split("/") if s not in ("", ".", "..")
    ]
    return Path(parsed.netloc, *segments)


def read_if_exists(path: Path) -> Optional[bytes]:
    if not path.exists():
        return None
    return path.read_bytes()


def build_client(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.timeout_total,
        follow_redirects=True,
        transport=transport,
        headers={
            "user-agent": settings.user_agent,
            "accept": "application/json, text/plain;q=0.9, */*;q=0.8",
        },
    )


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _normalize_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def _raise_for_retryable_status(resp: httpx.Response) -> None:
    if resp.status_code in RETRY_STATUS:
        raise httpx.HTTPStatusError(
            f"Retryable HTTP {resp.status_code} for {resp.request.url}",
            request=resp.request,
            response=resp,
        )


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRY_STATUS
    return isinstance(exc, httpx.TransportError)


def _build_conditional_headers(descriptor: AdvisoryDescriptor) -> Dict[str, str]:
    """Build If-None-Match / If-Modified-Since headers from the descriptor."""
    h: Dict[str, str] = {}
    if descriptor.etag:
        h["if-none-match"] = descriptor.etag
    if descriptor.last_modified:
        h["if-modified-since"] = descriptor.last_modified
    return h


def _retry_decorator(settings: Settings):
    return retry(
        stop=stop_after_attempt(settings.retry_limit + 1),
        wait=wait_exponential(
            multiplier=settings.backoff_multiplier,
            min=settings.backoff_min,
            max=settings.backoff_max,
        ),
        retry=retry_if_exception(_is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def parse_digest_text(text: str) -> Optional[str]:
    """Extract the hex digest from `sha256sum`-style output.

    Accepts ``<hex>``, ``<hex>  <name>`` and ``<hex> *<name>``.
    """
    for line in text.splitlines():
        tokens = line.strip().split()
        if tokens:
            return tokens[0].lower()
    return None


def _algorithm_of(url: str) -> str:
    return url.rsplit(".", 1)[-1].lower()


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

class Retriever:
    """Fetches descriptors over HTTP(S) or from disk.

    Every network request holds a slot of a semaphore sized by
    ``max_concurrency``; backoff sleeps do not.
    """

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self._slots = asyncio.Semaphore(settings.max_concurrency)

    async def _request(
        self, url: str, headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        @_retry_decorator(self.settings)
        async def _do_request() -> httpx.Response:
            async with self._slots:
                resp = await self.client.get(url, headers=headers)
            _raise_for_retryable_status(resp)
            return resp

        try:
            return await _do_request()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise FetchError(
                f"HTTP {status} for {url} after {self.settings.retry_limit} retries",
                url=url,
                kind=FetchErrorKind.TRANSIENT,
                status=status,
            ) from exc
        except httpx.TransportError as exc:
            raise FetchError(
                f"{type(exc).__name__} for {url}: {exc}",
                url=url,
                kind=FetchErrorKind.TRANSIENT,
            ) from exc

    async def fetch(self, descriptor: AdvisoryDescriptor) -> RetrievedDocument:
        """Fetch a descriptor's document and, on a fresh fetch, its companions.

        Raises:
            FetchError: Permanent for 4xx and missing local files, transient
                once the retry budget for timeouts and 5xx is spent.
        """
        if is_local(descriptor.url):
            doc = await self._fetch_local(descriptor)
        else:
            doc = await self._fetch_remote(descriptor)
            if doc.cache_hit:
                return doc

        digest, digest_error = await self._fetch_digest(descriptor)
        signature, sig_state, sig_error = await self._fetch_signature(descriptor)
        doc = doc.model_copy(
            update={
                "digest": digest,
                "digest_error": digest_error,
                "signature": signature,
                "signature_state": sig_state,
                "signature_error": sig_error,
            }
        )

        if self.settings.store_dir is not None:
            await asyncio.to_thread(self._persist, doc)
        return doc

    async def _fetch_remote(self, descriptor: AdvisoryDescriptor) -> RetrievedDocument:
        url = descriptor.url
        cond_headers = _build_conditional_headers(descriptor)
        logger.info("Fetching: %s (conditional=%s)", url, bool(cond_headers))

        resp = await self._request(url, cond_headers)
        headers = _normalize_headers(resp.headers)
        fetched_at = utc_now()

        # 304 Not Modified: content unchanged since the validators were stored
        if resp.status_code == 304:
            if not cond_headers:
                raise FetchError(
                    f"304 for {url} without a conditional request",
                    url=url,
                    kind=FetchErrorKind.PERMANENT,
                    status=304,
                )
            logger.info("Not modified (304): %s", url)
            return RetrievedDocument(
                url=url,
                retrieved_at=fetched_at,
                status=304,
                cache_hit=True,
                etag=headers.get("etag") or descriptor.etag,
                last_modified=headers.get("last-modified") or descriptor.last_modified,
            )

        if resp.status_code >= 400:
            logger.error("HTTP %d for %s", resp.status_code, url)
            raise FetchError(
                f"HTTP {resp.status_code} for {url}",
                url=url,
                kind=FetchErrorKind.PERMANENT,
                status=resp.status_code,
            )

        body = resp.content
        logger.info("Fetched OK: %s (hash=%s)", url, sha256_bytes(body)[:12])
        return RetrievedDocument(
            url=url,
            retrieved_at=fetched_at,
            status=resp.status_code,
            data=body,
            content_type=headers.get("content-type"),
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )

    async def _fetch_local(self, descriptor: AdvisoryDescriptor) -> RetrievedDocument:
        path = local_path(descriptor.url)
        try:
            body = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise FetchError(
                f"Cannot read {path}: {exc}",
                url=descriptor.url,
                kind=FetchErrorKind.PERMANENT,
            ) from exc
        logger.info("Read local document: %s (%d bytes)", path, len(body))
        return RetrievedDocument(
            url=descriptor.url,
            retrieved_at=utc_now(),
            status=200,
            data=body,
            content_type="application/json",
        )

    async def _fetch_companion(self, url: str) -> Optional[bytes]:
        """Return companion bytes, or None when the file does not exist."""
        if is_local(url):
            return await asyncio.to_thread(read_if_exists, local_path(url))

        resp = await self._request(url)
        if resp.status_code in NOT_FOUND_STATUS:
            return None
        if resp.status_code >= 400:
            raise FetchError(
                f"HTTP {resp.status_code} for {url}",
                url=url,
                kind=FetchErrorKind.PERMANENT,
                status=resp.status_code,
            )
        return resp.content

    def _digest_candidates(self, descriptor: AdvisoryDescriptor) -> List[str]:
        candidates: List[str] = []
        if descriptor.digest_url:
            candidates.append(descriptor.digest_url)
        for algorithm in self.settings.hash_algorithms:
            guess = f"{descriptor.url}.{algorithm}"
            if guess not in candidates:
                candidates.append(guess)
        return candidates

    async def _fetch_digest(
        self, descriptor: AdvisoryDescriptor
    ) -> Tuple[Optional[DigestFile], Optional[str]]:
        """Return the first available digest file among the candidates."""
        errors: List[str] = []
        for url in self._digest_candidates(descriptor):
            algorithm = _algorithm_of(url)
            if algorithm not in self.settings.hash_algorithms:
                errors.append(f"{url}: algorithm {algorithm!r} not accepted")
                continue
            try:
                raw = await self._fetch_companion(url)
            except (FetchError, OSError) as exc:
                logger.warning("Digest file unavailable: %s", exc)
                errors.append(str(exc))
                continue
            if raw is None:
                continue
            expected = parse_digest_text(raw.decode("utf-8", errors="replace"))
            if expected is None:
                errors.append(f"{url}: empty digest file")
                continue
            return DigestFile(algorithm=algorithm, url=url, expected=expected), None
        return None, "; ".join(errors) or None

    async def _fetch_signature(
        self, descriptor: AdvisoryDescriptor
    ) -> Tuple[Optional[bytes], SignatureState, Optional[str]]:
        url = descriptor.signature_url or descriptor.url + SIGNATURE_SUFFIX
        try:
            raw = await self._fetch_companion(url)
        except (FetchError, OSError) as exc:
            logger.warning("Signature file unavailable: %s", exc)
            return None, SignatureState.UNAVAILABLE, str(exc)
        if raw is None:
            return None, SignatureState.MISSING, None
        return raw, SignatureState.PRESENT, None

    def _persist(self, doc: RetrievedDocument) -> Optional[Path]:
        """Save the document and its companions under store_dir. Idempotent.

        Returns None, writing nothing, when the location would land outside
        store_dir.
        """
        if self.settings.store_dir is None:
            raise RuntimeError("store_dir is not configured")
        root = self.settings.store_dir.resolve()
        target = (root / store_relative_path(doc.url)).resolve()
        if root not in target.parents:
            logger.error("Not storing %s: target %s is outside %s", doc.url, target, root)
            return None
        target.parent.mkdir(parents=True, exist_ok=True)

        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(doc.data)
        tmp.replace(target)
        if doc.signature is not None:
            target.with_name(target.name + SIGNATURE_SUFFIX).write_bytes(doc.signature)
        if doc.digest is not None:
            target.with_name(f"{target.name}.{doc.digest.algorithm}").write_text(
                f"{doc.digest.expected}  {target.name}\n", encoding="utf-8"
            )
        write_json_atomic(
            target.with_name(target.name + ".meta.json"),
            {
                "source_url": doc.url,
                "retrieved_at": doc.retrieved_at.isoformat(),
                "status": doc.status,
                "etag": doc.etag,
                "last_modified": doc.last_modified,
                "content_hash": sha256_bytes(doc.data),
            },
        )
        logger.info("Stored %s (%d bytes)", target, len(doc.data))
        return target
