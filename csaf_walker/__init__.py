"""csaf-walker: discover, retrieve, verify and validate CSAF advisories."""

from .config import Settings, SignaturePolicy, ValidationProfile, __version__, get_settings
from .discover import ProviderMetadata, SourceLocator
from .errors import ConfigurationError, DiscoveryError, FetchError, WalkerError
from .ingest_http import Retriever
from .models import AdvisoryDescriptor, TrustResult, ValidationFinding, WalkOutcome, WalkStatus, WalkSummary
from .validate import ValidationReport, Validator, validate_file
from .verify import KeySet, PgpSignatureBackend, load_key_set, verify_document
from .walker import Walker, run_walk

__all__ = [
    "__version__",
    "Settings",
    "SignaturePolicy",
    "ValidationProfile",
    "get_settings",
    "SourceLocator",
    "ProviderMetadata",
    "Retriever",
    "verify_document",
    "load_key_set",
    "KeySet",
    "PgpSignatureBackend",
    "Validator",
    "ValidationReport",
    "validate_file",
    "Walker",
    "run_walk",
    "AdvisoryDescriptor",
    "TrustResult",
    "ValidationFinding",
    "WalkOutcome",
    "WalkStatus",
    "WalkSummary",
    "WalkerError",
    "ConfigurationError",
    "DiscoveryError",
    "FetchError",
]
