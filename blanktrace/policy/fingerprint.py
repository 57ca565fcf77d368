"""
Fingerprint header rotation.

Keeps the current User-Agent / Accept-Language pair and decides, per
request, whether to regenerate it:

- every_request: regenerate the enabled fields on every call
- interval: regenerate once rotation_interval seconds have passed
- launch: keep the values picked at initialization

The read-decide-write step runs under a lock so two concurrent requests
cannot both see "rotation due" and regenerate independently.
"""

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fake_useragent import UserAgent

from blanktrace.utils.config import RotationMode
from blanktrace.utils.logging import get_logger

if TYPE_CHECKING:
    from blanktrace.utils.config import FingerprintConfig

logger = get_logger(__name__)

FALLBACK_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
FALLBACK_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

UserAgentSource = Callable[[], str]


def default_user_agent_source() -> UserAgentSource:
    """Random desktop/mobile User-Agent strings from fake-useragent."""
    generator = UserAgent(fallback=FALLBACK_USER_AGENT)
    return lambda: generator.random


@dataclass(frozen=True)
class RotationPolicy:
    """Immutable rotation policy snapshot."""

    mode: RotationMode = RotationMode.EVERY_REQUEST
    interval_seconds: float = 3600
    randomize_user_agent: bool = True
    randomize_accept_language: bool = True
    strip_referer: bool = False
    language_pool: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: "FingerprintConfig") -> "RotationPolicy":
        return cls(
            mode=config.rotation_mode,
            interval_seconds=config.rotation_interval,
            randomize_user_agent=config.randomize_user_agent,
            randomize_accept_language=config.randomize_accept_language,
            strip_referer=config.strip_referer,
            language_pool=tuple(config.accept_languages),
        )

    @property
    def rotates_headers(self) -> bool:
        return self.randomize_user_agent or self.randomize_accept_language


@dataclass(frozen=True)
class RotatorState:
    current_user_agent: str
    current_accept_language: str
    last_rotation_time: float


@dataclass(frozen=True)
class RotationDecision:
    user_agent: str
    accept_language: str
    rotated: bool


class FingerprintRotator:
    """Stateful generator of fingerprint header values."""

    def __init__(
        self,
        policy: RotationPolicy,
        *,
        user_agent_source: UserAgentSource | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        self.policy = policy
        self._next_user_agent = user_agent_source or default_user_agent_source()
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._state: RotatorState
        self.initialize()

    @property
    def state(self) -> RotatorState:
        return self._state

    def initialize(self) -> RotatorState:
        """Pick fresh values, store them as the current state and restart the rotation clock."""
        with self._lock:
            self._state = RotatorState(
                current_user_agent=self._next_user_agent(),
                current_accept_language=self._pick_language(),
                last_rotation_time=self._clock(),
            )
            state = self._state
        logger.debug("Fingerprint initialized", mode=self.policy.mode.value)
        return state

    def decide_and_rotate(self) -> RotationDecision:
        """Return the values to send, regenerating them if the mode says so."""
        with self._lock:
            state = self._state
            now = self._clock()

            if self.policy.mode is RotationMode.EVERY_REQUEST:
                due = True
            elif self.policy.mode is RotationMode.INTERVAL:
                due = now - state.last_rotation_time >= self.policy.interval_seconds
            else:
                due = False

            if not due:
                return RotationDecision(
                    state.current_user_agent, state.current_accept_language, rotated=False
                )

            user_agent = state.current_user_agent
            accept_language = state.current_accept_language
            if self.policy.randomize_user_agent:
                user_agent = self._next_user_agent()
            if self.policy.randomize_accept_language:
                accept_language = self._pick_language()

            self._state = RotatorState(user_agent, accept_language, now)
            return RotationDecision(user_agent, accept_language, rotated=True)

    def _pick_language(self) -> str:
        if not self.policy.language_pool:
            return FALLBACK_ACCEPT_LANGUAGE
        return self._rng.choice(self.policy.language_pool)
