"""Walk coordination: discovery, retrieval, verification and validation per document.

Each descriptor runs through its own pipeline task. A failure inside one
pipeline becomes that descriptor's outcome; it never ends the walk.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import httpx

from .cache import CacheStore, JsonFileCacheStore
from .config import Settings, SignaturePolicy
from .discover import Resolver, SourceLocator
from .errors import FetchError, FetchErrorKind
from .ingest_http import Retriever, build_client, sha256_bytes, utc_now
from .models import (
    AdvisoryDescriptor,
    CacheEntry,
    DigestOutcome,
    DiscoveryFinding,
    FetchErrorInfo,
    RetrievalInfo,
    RetrievedDocument,
    Severity,
    SignatureOutcome,
    TrustResult,
    ValidationFinding,
    WalkOutcome,
    WalkStatus,
    WalkSummary,
)
from .validate import Validator
from .verify import KeySet, PgpSignatureBackend, SignatureBackend, load_key_set, verify_document

logger = logging.getLogger(__name__)

CANCEL_POLL_SECONDS = 0.05
CANCELLED_MESSAGE = "walk cancelled"
VALIDATOR_RULE = "csaf-validator"
TIMED_OUT_MESSAGE = "check timed out"

Sink = Callable[[WalkOutcome], Any]


def config_fingerprint(settings: Settings, keys: KeySet, rule_ids: List[str]) -> str:
    """Hash of everything that changes a verdict for unchanged bytes."""
    material = {
        "policy": settings.signature_policy.value,
        "keys": sorted(keys.fingerprints),
        "hash_algorithms": settings.hash_algorithms,
        "rules": rule_ids,
        "schema": str(settings.schema_path) if settings.schema_path else None,
    }
    return hashlib.sha256(json.dumps(material, sort_keys=True).encode("utf-8")).hexdigest()


async def _wait_for(cancel: Any) -> None:
    if isinstance(cancel, asyncio.Event):
        await cancel.wait()
        return
    while not cancel.is_set():
        await asyncio.sleep(CANCEL_POLL_SECONDS)


class _Done:
    """End-of-scheduling marker carrying the number of launched pipelines."""

    def __init__(self, launched: int, error: Optional[BaseException]) -> None:
        self.launched = launched
        self.error = error


class Walker:
    """Runs walk passes against provider indexes.

    Trusted keys and rules are resolved once, at construction, so that
    configuration faults surface before any document is touched.

    Raises:
        ConfigurationError: From construction, on bad key material or
            unknown rule ids.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: Optional[CacheStore] = None,
        keys: Optional[KeySet] = None,
        backend: Optional[SignatureBackend] = None,
        validator: Optional[Validator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache if cache is not None else JsonFileCacheStore(settings.cache_dir)
        if backend is None and settings.trusted_keys:
            backend = PgpSignatureBackend()
        self.backend = backend
        if keys is None:
            keys = (
                load_key_set(
                    settings.trusted_keys, backend, fingerprints=settings.trusted_fingerprints
                )
                if backend is not None and settings.trusted_keys
                else KeySet()
            )
        self.keys = keys
        if settings.signature_policy is SignaturePolicy.REQUIRED and not keys.fingerprints:
            logger.warning(
                "Signature policy is 'required' but no trusted keys are configured; "
                "every document will fail trust checks"
            )
        self.validator = validator if validator is not None else Validator.from_settings(settings)
        self.fingerprint = config_fingerprint(settings, keys, self.validator.rule_ids)
        self.discovery_findings: List[DiscoveryFinding] = []
        self._transport = transport
        self._resolver = resolver

    # -- per-descriptor pipeline ---------------------------------------------

    def _reusable(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None or entry.status is None or entry.status is WalkStatus.FETCH_FAILED:
            return False
        if entry.config_fingerprint == self.fingerprint:
            return True
        return not self.settings.revalidate_on_config_change

    def _fetch_failed(self, descriptor: AdvisoryDescriptor, exc: FetchError) -> WalkOutcome:
        logger.error("Fetch failed for %s: %s", descriptor.url, exc)
        return WalkOutcome(
            descriptor=descriptor,
            status=WalkStatus.FETCH_FAILED,
            error=FetchErrorInfo(kind=exc.kind.value, message=str(exc), status=exc.status),
        )

    def _cancelled(self, descriptor: AdvisoryDescriptor) -> WalkOutcome:
        return WalkOutcome(
            descriptor=descriptor,
            status=WalkStatus.FETCH_FAILED,
            error=FetchErrorInfo(kind=FetchErrorKind.TRANSIENT.value, message=CANCELLED_MESSAGE),
        )

    def _cache_hit(
        self, descriptor: AdvisoryDescriptor, doc: RetrievedDocument, entry: CacheEntry
    ) -> WalkOutcome:
        self.cache.put(
            descriptor.url,
            entry.model_copy(
                update={"etag": doc.etag, "last_modified": doc.last_modified, "last_seen_at": doc.retrieved_at}
            ),
        )
        logger.info("Reusing cached result for %s (%s)", descriptor.url, entry.status.value)
        return WalkOutcome(
            descriptor=descriptor,
            status=entry.status,
            retrieval=RetrievalInfo(
                retrieved_at=doc.retrieved_at,
                cache_hit=True,
                status=doc.status,
                etag=doc.etag,
                last_modified=doc.last_modified,
            ),
            trust=entry.trust,
            findings=entry.findings,
        )

    async def _verify(self, doc: RetrievedDocument) -> tuple[TrustResult, bool]:
        try:
            trust = await asyncio.to_thread(
                verify_document, doc, self.keys, self.settings.signature_policy, self.backend
            )
            return trust, trust.passed
        except Exception as exc:  # noqa: BLE001 - captured on the outcome
            logger.exception("Verification crashed for %s", doc.url)
            trust = TrustResult(
                digest=DigestOutcome.UNAVAILABLE,
                signature=SignatureOutcome.UNAVAILABLE,
                policy=self.settings.signature_policy,
                messages=(f"verification error: {type(exc).__name__}: {exc}",),
            )
            return trust, False

    async def _validate(self, doc: RetrievedDocument) -> List[ValidationFinding]:
        try:
            report = await asyncio.wait_for(
                asyncio.to_thread(self.validator.validate, doc.data),
                timeout=self.settings.validation_timeout,
            )
            return report.findings
        except asyncio.TimeoutError:
            # the worker thread cannot be interrupted and finishes on its own
            logger.error(
                "Validation of %s exceeded %ss", doc.url, self.settings.validation_timeout
            )
            return [
                ValidationFinding(
                    rule=VALIDATOR_RULE, severity=Severity.ERROR, message=TIMED_OUT_MESSAGE
                )
            ]
        except Exception as exc:  # noqa: BLE001 - captured on the outcome
            logger.exception("Validation crashed for %s", doc.url)
            return [
                ValidationFinding(
                    rule=VALIDATOR_RULE,
                    severity=Severity.ERROR,
                    message=f"validation error: {type(exc).__name__}: {exc}",
                )
            ]

    async def process(self, retriever: Retriever, descriptor: AdvisoryDescriptor) -> WalkOutcome:
        """Run one descriptor through fetch, verify and validate.

        Returns an outcome for every input; only cancellation propagates.
        """
        entry = self.cache.get(descriptor.url)
        reusable = self._reusable(entry)
        if reusable and entry is not None:
            descriptor = descriptor.with_validators(entry.etag, entry.last_modified)

        try:
            doc = await retriever.fetch(descriptor)
        except FetchError as exc:
            return self._fetch_failed(descriptor, exc)
        except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as exc:
            return self._fetch_failed(
                descriptor,
                FetchError(str(exc), url=descriptor.url, kind=FetchErrorKind.PERMANENT),
            )

        if doc.cache_hit:
            if not reusable or entry is None:
                return self._fetch_failed(
                    descriptor,
                    FetchError(
                        "not modified without a reusable cached result",
                        url=descriptor.url,
                        kind=FetchErrorKind.PERMANENT,
                        status=doc.status,
                    ),
                )
            return self._cache_hit(descriptor, doc, entry)

        trust, trusted = await self._verify(doc)
        findings = tuple(await self._validate(doc))

        status = WalkStatus.OK if trusted else WalkStatus.TRUST_FAILED
        if any(f.severity is Severity.ERROR for f in findings):
            status = status.worse(WalkStatus.VALIDATION_FAILED)

        self.cache.put(
            descriptor.url,
            CacheEntry(
                etag=doc.etag,
                last_modified=doc.last_modified,
                status=status,
                trust=trust,
                findings=findings,
                config_fingerprint=self.fingerprint,
                last_seen_at=doc.retrieved_at,
            ),
        )
        logger.info("Processed %s: %s", descriptor.url, status.value)
        return WalkOutcome(
            descriptor=descriptor,
            status=status,
            retrieval=RetrievalInfo(
                retrieved_at=doc.retrieved_at,
                cache_hit=False,
                status=doc.status,
                content_type=doc.content_type,
                etag=doc.etag,
                last_modified=doc.last_modified,
                sha256=sha256_bytes(doc.data),
            ),
            trust=trust,
            findings=findings,
        )

    # -- scheduling ----------------------------------------------------------

    async def walk(self, source: str, *, cancel: Any = None) -> AsyncIterator[WalkOutcome]:
        """Yield one outcome per discovered descriptor, in completion order.

        ``cancel`` is an ``asyncio.Event`` or any object with ``is_set()``.
        Once it is set no further descriptors are scheduled, in-flight
        pipelines are abandoned and reported as failed fetches, and outcomes
        already produced are still yielded.

        Raises:
            DiscoveryError: If the root index cannot be located or parsed.
        """
        async with build_client(self.settings, transport=self._transport) as client:
            locator = SourceLocator(source, client, self.settings, resolver=self._resolver)
            await locator.open()
            retriever = Retriever(client, self.settings)
            outcomes = self._schedule(locator, retriever, cancel)
            try:
                async for outcome in outcomes:
                    yield outcome
            finally:
                await outcomes.aclose()
                self.discovery_findings = list(locator.findings)
                await asyncio.to_thread(self.cache.flush)

    async def _schedule(
        self, locator: SourceLocator, retriever: Retriever, cancel: Any
    ) -> AsyncIterator[WalkOutcome]:
        slots = asyncio.Semaphore(self.settings.max_concurrency)
        results: asyncio.Queue = asyncio.Queue()
        tasks: Set[asyncio.Task] = set()

        def _finished(task: asyncio.Task, descriptor: AdvisoryDescriptor) -> None:
            tasks.discard(task)
            if task.cancelled():
                results.put_nowait(self._cancelled(descriptor))
            elif task.exception() is not None:
                exc = task.exception()
                logger.error("Pipeline crashed for %s: %s", descriptor.url, exc)
                results.put_nowait(
                    self._fetch_failed(
                        descriptor,
                        FetchError(str(exc), url=descriptor.url, kind=FetchErrorKind.PERMANENT),
                    )
                )
            else:
                results.put_nowait(task.result())

        launched = 0

        async def _feed() -> None:
            nonlocal launched
            waiting: Optional[AdvisoryDescriptor] = None
            try:
                async for descriptor in locator.discover():
                    waiting = descriptor
                    await slots.acquire()
                    waiting = None
                    task = asyncio.create_task(self.process(retriever, descriptor))
                    tasks.add(task)
                    task.add_done_callback(lambda t, d=descriptor: _finished(t, d))
                    launched += 1
            except asyncio.CancelledError:
                if waiting is not None:
                    # discovered while every slot was taken
                    results.put_nowait(self._cancelled(waiting))
                    launched += 1
                logger.warning("Walk cancelled after scheduling %d document(s)", launched)

        def _fed(task: asyncio.Task) -> None:
            # also fires when the feeder is cancelled before it ever ran
            error = None if task.cancelled() else task.exception()
            results.put_nowait(_Done(launched, error))

        feeder = asyncio.create_task(_feed())
        feeder.add_done_callback(_fed)

        async def _watch() -> None:
            await _wait_for(cancel)
            logger.warning("Cancellation requested; abandoning %d in-flight document(s)", len(tasks))
            feeder.cancel()
            for task in list(tasks):
                task.cancel()

        watcher = asyncio.create_task(_watch()) if cancel is not None else None

        received = 0
        done: Optional[_Done] = None
        try:
            while done is None or received < done.launched:
                item = await results.get()
                if isinstance(item, _Done):
                    done = item
                    continue
                received += 1
                slots.release()
                yield item
        finally:
            pending = [t for t in (feeder, watcher) if t is not None and not t.done()]
            pending.extend(tasks)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if done is not None and done.error is not None:
            raise done.error

    async def run(self, source: str, sink: Sink, *, cancel: Any = None) -> WalkSummary:
        """Stream every outcome of one pass into ``sink`` and summarize."""
        summary = WalkSummary(source=source)
        async for outcome in self.walk(source, cancel=cancel):
            result = sink(outcome)
            if inspect.isawaitable(result):
                await result
            summary.record(outcome)
        summary.discovery_findings = list(self.discovery_findings)
        summary.cancelled = bool(cancel is not None and cancel.is_set())
        logger.info(
            "Walk of %s finished: %d outcome(s), %d ok",
            source, summary.total, summary.counts.get(WalkStatus.OK, 0),
        )
        return summary


def run_walk(
    settings: Settings,
    source: str,
    sink: Optional[Sink] = None,
    *,
    cancel: Any = None,
    **walker_options: Any,
) -> WalkSummary:
    """Synchronous entry point: run one pass and return its summary.

    ``cancel`` may be a ``threading.Event`` set from another thread.
    """
    walker = Walker(settings, **walker_options)
    return asyncio.run(walker.run(source, sink or (lambda outcome: None), cancel=cancel))
