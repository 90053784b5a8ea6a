"""Exception taxonomy for the walker.

Only configuration faults and a broken root index escape a walk. Everything
that goes wrong for a single document is recorded on its WalkOutcome.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class WalkerError(Exception):
    """Base class for all walker errors."""


class ConfigurationError(WalkerError):
    """Invalid configuration: unreadable key material, unknown rule ids, ..."""


class DiscoveryError(WalkerError):
    """The root index could not be located, fetched or parsed."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class FetchErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class FetchError(WalkerError):
    """A document could not be retrieved."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        kind: FetchErrorKind,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.kind = kind
        self.status = status

    @property
    def is_transient(self) -> bool:
        return self.kind is FetchErrorKind.TRANSIENT

    @property
    def is_not_found(self) -> bool:
        return self.status in (404, 410)
