"""
Domain blocking with hit tracking and auto-block escalation.

Decision order for a host:
1. Whitelist (exact domain) -> allow, nothing tracked
2. Block patterns (regex search) -> no match: allow, nothing tracked
3. Match: increment hit counter and read blocked flag atomically
4. Auto-block once the counter reaches the threshold (one-way)

Storage failures are asymmetric: a failed whitelist lookup fails open
(continue to pattern matching), a failed increment fails closed (block).
"""

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from blanktrace.scheduler.events import TrackerHitEvent
from blanktrace.utils.errors import StorageError
from blanktrace.utils.logging import get_logger

if TYPE_CHECKING:
    from blanktrace.scheduler.pipeline import EventPipeline
    from blanktrace.storage.database import Database
    from blanktrace.utils.config import BlockingConfig

logger = get_logger(__name__)

# Category recorded for domains tracked through a pattern match
PATTERN_MATCH_CATEGORY = "regex_match"


@dataclass(frozen=True)
class BlockingPolicy:
    """Immutable blocking policy snapshot."""

    patterns: tuple[re.Pattern[str], ...] = ()
    auto_block: bool = False
    auto_block_threshold: int = 1

    def __post_init__(self) -> None:
        if self.auto_block_threshold < 1:
            raise ValueError("auto_block_threshold must be positive")

    @classmethod
    def from_config(cls, config: "BlockingConfig") -> "BlockingPolicy":
        return cls(
            patterns=tuple(re.compile(p) for p in config.block_patterns),
            auto_block=config.auto_block,
            auto_block_threshold=config.auto_block_threshold,
        )

    def matches(self, host: str) -> bool:
        """True if any pattern matches anywhere in host."""
        return any(pattern.search(host) for pattern in self.patterns)


class Blocker:
    """Classifies hosts and escalates repeat trackers to blocked."""

    def __init__(
        self,
        policy: BlockingPolicy,
        db: "Database",
        pipeline: "EventPipeline | None" = None,
    ):
        self.policy = policy
        self._db = db
        self._pipeline = pipeline

    async def check_and_track(self, host: str) -> bool:
        """Decide whether a request to host must be blocked.

        Args:
            host: Destination hostname.

        Returns:
            True if the request should be blocked.
        """
        try:
            if await self._db.is_whitelisted(host):
                return False
        except StorageError as e:
            logger.warning("Whitelist lookup failed, continuing", host=host, error=str(e))

        if not self.policy.matches(host):
            return False

        try:
            hit_count, blocked = await self._db.increment_and_get_flag(
                host, PATTERN_MATCH_CATEGORY
            )
        except StorageError as e:
            logger.error("Tracker increment failed, blocking", host=host, error=str(e))
            return True

        if (
            not blocked
            and self.policy.auto_block
            and hit_count >= self.policy.auto_block_threshold
        ):
            try:
                blocked = await self._db.set_blocked(host)
            except StorageError as e:
                logger.error("Auto-block update failed", host=host, error=str(e))
            else:
                if blocked:
                    logger.warning(
                        "Domain auto-blocked",
                        host=host,
                        hit_count=hit_count,
                        threshold=self.policy.auto_block_threshold,
                    )

        if self._pipeline is not None:
            await self._pipeline.publish(
                TrackerHitEvent(
                    domain=host,
                    category=PATTERN_MATCH_CATEGORY,
                    hit_count=hit_count,
                    blocked=blocked,
                )
            )

        return blocked
