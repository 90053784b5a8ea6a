"""Digest and signature verification of retrieved documents."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from .config import SignaturePolicy
from .errors import ConfigurationError
from .models import (
    DigestOutcome,
    RetrievedDocument,
    SignatureOutcome,
    SignatureState,
    TrustResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrustedKey:
    """A public key accepted for signature verification."""

    fingerprint: str
    handle: Any = None

    @property
    def key_id(self) -> str:
        return self.fingerprint[-16:]


@dataclass(frozen=True)
class KeySet:
    """The explicit set of trusted keys handed to each verification call."""

    keys: Tuple[TrustedKey, ...] = ()

    def __iter__(self):
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    @property
    def fingerprints(self) -> FrozenSet[str]:
        return frozenset(k.fingerprint for k in self.keys)


@dataclass(frozen=True)
class SignatureCheck:
    outcome: SignatureOutcome
    fingerprint: Optional[str] = None
    message: Optional[str] = None


class SignatureBackend(Protocol):
    """Parses key material and checks detached signatures."""

    def load_key(self, material: bytes) -> TrustedKey: ...

    def verify(
        self, data: bytes, signature: bytes, keys: Sequence[TrustedKey]
    ) -> SignatureCheck: ...


class PgpSignatureBackend:
    """OpenPGP detached signatures (``.asc``) checked with PGPy."""

    def __init__(self) -> None:
        import pgpy
        from pgpy.errors import PGPError

        self._pgpy = pgpy
        self._pgp_error = PGPError
        self._parse_errors = (ValueError, TypeError, IndexError, KeyError, NotImplementedError, PGPError)

    def load_key(self, material: bytes) -> TrustedKey:
        try:
            key, _ = self._pgpy.PGPKey.from_blob(material)
        except self._parse_errors as exc:
            raise ConfigurationError(f"Invalid OpenPGP key material: {exc}") from exc
        if not key.is_public:
            key = key.pubkey
        return TrustedKey(fingerprint=_normalize_fingerprint(str(key.fingerprint)), handle=key)

    def verify(
        self, data: bytes, signature: bytes, keys: Sequence[TrustedKey]
    ) -> SignatureCheck:
        try:
            sig = self._pgpy.PGPSignature.from_blob(signature)
        except self._parse_errors as exc:
            return SignatureCheck(SignatureOutcome.INVALID, message=f"unparseable signature: {exc}")

        signer = (sig.signer or "").upper()
        signer_known = False
        for key in keys:
            ids = {key.key_id, *(k.upper() for k in key.handle.subkeys)}
            if signer and signer not in ids:
                continue
            signer_known = True
            try:
                if key.handle.verify(data, sig):
                    return SignatureCheck(SignatureOutcome.VERIFIED, fingerprint=key.fingerprint)
            except self._pgp_error as exc:
                logger.debug("Key %s rejected signature: %s", key.fingerprint, exc)

        if signer_known:
            return SignatureCheck(SignatureOutcome.INVALID, message=f"bad signature by {signer}")
        return SignatureCheck(
            SignatureOutcome.UNKNOWN_KEY, message=f"signed by untrusted key {signer or '?'}"
        )


def _normalize_fingerprint(value: str) -> str:
    return value.replace(" ", "").upper()


def load_key_set(
    paths: Iterable[Path],
    backend: SignatureBackend,
    *,
    fingerprints: Iterable[str] = (),
) -> KeySet:
    """Load armored public keys from disk.

    Raises:
        ConfigurationError: On unreadable key files, invalid key material, or
            a pinned fingerprint that none of the loaded keys carries.
    """
    keys: List[TrustedKey] = []
    for path in paths:
        try:
            material = Path(path).read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read trusted key {path}: {exc}") from exc
        key = backend.load_key(material)
        logger.info("Loaded trusted key %s from %s", key.fingerprint, path)
        keys.append(key)

    key_set = KeySet(tuple(keys))
    pins = {_normalize_fingerprint(fp) for fp in fingerprints}
    missing = sorted(pins - key_set.fingerprints)
    if missing:
        raise ConfigurationError(f"Pinned fingerprint(s) not found in trusted keys: {missing}")
    if pins:
        key_set = KeySet(tuple(k for k in keys if k.fingerprint in pins))
    return key_set


def compute_digest(data: bytes, algorithm: str) -> str:
    return hashlib.new(algorithm, data).hexdigest()


def check_digest(document: RetrievedDocument) -> Tuple[DigestOutcome, Optional[str], Optional[str]]:
    """Compare the document bytes against its digest file, if one was found."""
    if document.digest is None:
        return DigestOutcome.UNAVAILABLE, None, document.digest_error
    algorithm = document.digest.algorithm
    try:
        actual = compute_digest(document.data, algorithm)
    except ValueError as exc:
        return DigestOutcome.UNAVAILABLE, algorithm, f"cannot compute {algorithm}: {exc}"
    if hmac.compare_digest(actual.lower().encode(), document.digest.expected.lower().encode()):
        return DigestOutcome.MATCH, algorithm, None
    return DigestOutcome.MISMATCH, algorithm, f"{algorithm} mismatch: expected {document.digest.expected}, got {actual}"


def check_signature(
    document: RetrievedDocument, keys: KeySet, backend: Optional[SignatureBackend]
) -> SignatureCheck:
    if document.signature_state is SignatureState.MISSING:
        return SignatureCheck(SignatureOutcome.MISSING, message="no signature file")
    if document.signature_state is SignatureState.UNAVAILABLE or document.signature is None:
        return SignatureCheck(SignatureOutcome.UNAVAILABLE, message=document.signature_error)
    if backend is None or not len(keys):
        return SignatureCheck(SignatureOutcome.UNAVAILABLE, message="no trusted keys configured")
    return backend.verify(document.data, document.signature, keys.keys)


def verify_document(
    document: RetrievedDocument,
    keys: KeySet,
    policy: SignaturePolicy,
    backend: Optional[SignatureBackend],
) -> TrustResult:
    """Check digest and signature of a fetched document under a trust policy.

    Never raises for missing inputs; absence is encoded in the result.
    """
    digest, algorithm, digest_msg = check_digest(document)
    sig = check_signature(document, keys, backend)

    messages = tuple(m for m in (digest_msg, sig.message) if m)
    result = TrustResult(
        digest=digest,
        digest_algorithm=algorithm,
        signature=sig.outcome,
        fingerprint=sig.fingerprint,
        policy=policy,
        messages=messages,
    )
    logger.debug(
        "Trust for %s: digest=%s signature=%s passed=%s",
        document.url, digest.value, sig.outcome.value, result.passed,
    )
    return result
