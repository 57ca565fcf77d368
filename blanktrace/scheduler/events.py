"""
Event types carried by the event pipeline.

Each event knows how to apply itself to the persistent store. Events are
immutable and timestamped at creation, so the stored timestamp reflects when
the decision was made rather than when the consumer got to it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from blanktrace.utils.logging import get_logger

if TYPE_CHECKING:
    from blanktrace.storage.database import Database

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, kw_only=True)
class Event(ABC):
    """Base class for pipeline events."""

    timestamp: datetime = field(default_factory=_now)

    @property
    def kind(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def apply(self, db: "Database") -> None:
        """Write this event to the store."""


@dataclass(frozen=True, kw_only=True)
class CookieEvent(Event):
    """A cookie was stripped (blocked=True) or only logged (blocked=False)."""

    domain: str
    cookie: str
    blocked: bool

    async def apply(self, db: "Database") -> None:
        await db.append_cookie_event(
            self.domain, self.cookie, self.blocked, timestamp=self.timestamp
        )


@dataclass(frozen=True, kw_only=True)
class FingerprintEvent(Event):
    """Fingerprint header values were regenerated."""

    user_agent: str
    accept_language: str
    mode: str

    async def apply(self, db: "Database") -> None:
        await db.append_fingerprint_event(
            self.user_agent, self.accept_language, self.mode, timestamp=self.timestamp
        )


@dataclass(frozen=True, kw_only=True)
class RequestEvent(Event):
    """A request was forwarded upstream."""

    domain: str
    path: str
    user_agent: str
    client_ip: str

    async def apply(self, db: "Database") -> None:
        await db.append_request_event(
            self.domain,
            self.path,
            self.user_agent,
            self.client_ip,
            timestamp=self.timestamp,
        )


@dataclass(frozen=True, kw_only=True)
class TrackerHitEvent(Event):
    """A host matched a block pattern.

    The hit is already counted by the blocker's synchronous increment, so
    applying this event only records it in the log.
    """

    domain: str
    category: str | None = None
    hit_count: int = 0
    blocked: bool = False

    async def apply(self, db: "Database") -> None:
        logger.debug(
            "Tracker hit",
            domain=self.domain,
            category=self.category,
            hit_count=self.hit_count,
            blocked=self.blocked,
        )
