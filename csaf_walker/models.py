"""Pydantic models shared across the walker stages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .config import SignaturePolicy


class AdvisoryDescriptor(BaseModel):
    """A document listed by a provider index, in discovery order."""

    model_config = ConfigDict(frozen=True)

    url: str
    position: int
    digest_url: Optional[str] = None
    signature_url: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    modified: Optional[datetime] = None
    source: Optional[str] = None

    def with_validators(
        self, etag: Optional[str], last_modified: Optional[str]
    ) -> "AdvisoryDescriptor":
        """Return a copy carrying the given cache validators."""
        return self.model_copy(update={"etag": etag, "last_modified": last_modified})

    @property
    def has_validators(self) -> bool:
        return bool(self.etag or self.last_modified)


class SignatureState(str, Enum):
    PRESENT = "present"
    MISSING = "missing"
    UNAVAILABLE = "unavailable"


class DigestFile(BaseModel):
    """The parsed content of a companion checksum file."""

    algorithm: str
    url: str
    expected: str


class RetrievedDocument(BaseModel):
    """Result of fetching one descriptor, including its companion files."""

    url: str
    retrieved_at: datetime
    status: int
    cache_hit: bool = False
    data: bytes = b""
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    digest: Optional[DigestFile] = None
    digest_error: Optional[str] = None
    signature: Optional[bytes] = None
    signature_state: SignatureState = SignatureState.MISSING
    signature_error: Optional[str] = None


class DigestOutcome(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    UNAVAILABLE = "unavailable"


class SignatureOutcome(str, Enum):
    VERIFIED = "verified"
    INVALID = "invalid"
    MISSING = "missing"
    UNKNOWN_KEY = "unknown_key"
    UNAVAILABLE = "unavailable"


# Outcomes that only count against a document when the policy asks for a signature.
_POLICY_GATED = frozenset(
    {SignatureOutcome.MISSING, SignatureOutcome.UNKNOWN_KEY, SignatureOutcome.UNAVAILABLE}
)


class TrustResult(BaseModel):
    """Digest and signature verdict for one document under one policy."""

    model_config = ConfigDict(frozen=True)

    digest: DigestOutcome
    signature: SignatureOutcome
    policy: SignaturePolicy
    digest_algorithm: Optional[str] = None
    fingerprint: Optional[str] = None
    messages: Tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        """Return True when the document is trusted under the applied policy."""
        if self.digest is DigestOutcome.MISMATCH:
            return False
        if self.signature is SignatureOutcome.INVALID:
            return False
        if self.signature in _POLICY_GATED:
            return self.policy is not SignaturePolicy.REQUIRED
        return True

    @property
    def warnings(self) -> List[str]:
        """Policy warnings that do not fail the document."""
        if self.policy is SignaturePolicy.OPTIONAL and self.signature in _POLICY_GATED:
            return [f"signature {self.signature.value}"]
        return []


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationFinding(BaseModel):
    """A single validation result for a document."""

    model_config = ConfigDict(frozen=True)

    rule: str
    severity: Severity
    location: str = ""
    message: str

    def summary(self) -> str:
        where = self.location or "/"
        return f"[{self.severity.value.upper()}] {self.rule} at {where}: {self.message}"


class WalkStatus(str, Enum):
    OK = "ok"
    VALIDATION_FAILED = "validation_failed"
    TRUST_FAILED = "trust_failed"
    FETCH_FAILED = "fetch_failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def worse(self, other: "WalkStatus") -> "WalkStatus":
        return self if self.rank >= other.rank else other


_STATUS_RANK = {
    WalkStatus.OK: 0,
    WalkStatus.VALIDATION_FAILED: 1,
    WalkStatus.TRUST_FAILED: 2,
    WalkStatus.FETCH_FAILED: 3,
}


class FetchErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    status: Optional[int] = None


class RetrievalInfo(BaseModel):
    """The part of a retrieval that outlives the document bytes."""

    model_config = ConfigDict(frozen=True)

    retrieved_at: datetime
    cache_hit: bool = False
    status: Optional[int] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    sha256: Optional[str] = None


class WalkOutcome(BaseModel):
    """Everything the walker learned about one descriptor in one pass."""

    model_config = ConfigDict(frozen=True)

    descriptor: AdvisoryDescriptor
    status: WalkStatus
    retrieval: Optional[RetrievalInfo] = None
    trust: Optional[TrustResult] = None
    findings: Tuple[ValidationFinding, ...] = ()
    error: Optional[FetchErrorInfo] = None

    @property
    def url(self) -> str:
        return self.descriptor.url

    @property
    def is_ok(self) -> bool:
        return self.status is WalkStatus.OK

    def comparable(self) -> Tuple[Any, ...]:
        """Identity tuple used to compare outcomes across passes."""
        return (self.descriptor.url, self.status, self.trust, self.findings)


class DiscoveryFinding(BaseModel):
    """A skipped index entry or nested listing."""

    model_config = ConfigDict(frozen=True)

    source: str
    entry: str
    message: str


class CacheEntry(BaseModel):
    """Per-URL state carried from one pass to the next."""

    etag: Optional[str] = None
    last_modified: Optional[str] = None
    status: Optional[WalkStatus] = None
    trust: Optional[TrustResult] = None
    findings: Tuple[ValidationFinding, ...] = ()
    config_fingerprint: Optional[str] = None
    last_seen_at: Optional[datetime] = None


class WalkSummary(BaseModel):
    """Counts collected by the synchronous walk facade."""

    source: str
    counts: Dict[WalkStatus, int] = Field(default_factory=dict)
    discovery_findings: List[DiscoveryFinding] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def passed(self) -> bool:
        return self.total == self.counts.get(WalkStatus.OK, 0)

    def record(self, outcome: WalkOutcome) -> None:
        self.counts[outcome.status] = self.counts.get(outcome.status, 0) + 1


class TrackingHeader(BaseModel):
    id: str
    initial_release_date: str


class DocumentHeader(BaseModel):
    title: str
    tracking: TrackingHeader


class AdvisoryHeader(BaseModel):
    """The identifying fields of an advisory, without the rest of its body."""

    document: DocumentHeader

    @property
    def tracking_id(self) -> str:
        return self.document.tracking.id
