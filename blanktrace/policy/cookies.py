"""
Cookie policy evaluation.

Precedence (request and response):
1. allow_list suffix match -> ALLOW (untouched, not logged)
2. block_list suffix match or block_all -> STRIP (removed, value reported)
3. log_attempts -> LOG (kept, value reported)
4. otherwise -> ALLOW

Matching is a case-sensitive suffix test on the configured value. On the
response path the host may be unknown; then only block_all / log_attempts
apply.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from multidict import CIMultiDict

if TYPE_CHECKING:
    from blanktrace.utils.config import CookiesConfig

COOKIE_HEADER = "Cookie"
SET_COOKIE_HEADER = "Set-Cookie"

# Domain recorded for response cookies when the host cannot be resolved
UNRESOLVED_DOMAIN = "unresolved"


class CookieAction(str, Enum):
    ALLOW = "allow"
    STRIP = "strip"
    LOG = "log"


@dataclass(frozen=True)
class CookiePolicy:
    """Immutable cookie policy snapshot."""

    block_all: bool = False
    log_attempts: bool = False
    allow_list: frozenset[str] = frozenset()
    block_list: frozenset[str] = frozenset()

    @classmethod
    def from_config(cls, config: "CookiesConfig") -> "CookiePolicy":
        return cls(
            block_all=config.block_all,
            log_attempts=config.log_attempts,
            allow_list=frozenset(config.allow_list),
            block_list=frozenset(config.block_list),
        )


@dataclass(frozen=True)
class CookieDecision:
    """Outcome of applying the policy to a message's cookie headers.

    values holds the original header values for STRIP and LOG, empty for
    ALLOW.
    """

    action: CookieAction
    values: tuple[str, ...] = field(default_factory=tuple)

    @property
    def blocked(self) -> bool:
        return self.action is CookieAction.STRIP


def _suffix_match(host: str, domains: Iterable[str]) -> bool:
    return any(host.endswith(domain) for domain in domains)


class CookieGuard:
    """Stateless cookie policy evaluator."""

    def __init__(self, policy: CookiePolicy):
        self.policy = policy

    def evaluate_request_cookie(self, host: str, has_cookie: bool) -> CookieAction:
        return self._evaluate(host, has_cookie)

    def evaluate_response_cookie(self, host: str | None, has_cookie: bool) -> CookieAction:
        return self._evaluate(host, has_cookie)

    def _evaluate(self, host: str | None, has_cookie: bool) -> CookieAction:
        if not has_cookie:
            return CookieAction.ALLOW

        if host is not None and _suffix_match(host, self.policy.allow_list):
            return CookieAction.ALLOW

        explicitly_blocked = host is not None and _suffix_match(host, self.policy.block_list)
        if explicitly_blocked or self.policy.block_all:
            return CookieAction.STRIP

        if self.policy.log_attempts:
            return CookieAction.LOG

        return CookieAction.ALLOW

    def apply_request(self, host: str, headers: CIMultiDict[str]) -> CookieDecision:
        """Evaluate and mutate the Cookie header of an outgoing request."""
        return self._apply(host, headers, COOKIE_HEADER, self._evaluate)

    def apply_response(self, host: str | None, headers: CIMultiDict[str]) -> CookieDecision:
        """Evaluate and mutate the Set-Cookie headers of an incoming response."""
        return self._apply(host, headers, SET_COOKIE_HEADER, self._evaluate)

    @staticmethod
    def _apply(
        host: str | None,
        headers: CIMultiDict[str],
        header: str,
        evaluate: Callable[[str | None, bool], CookieAction],
    ) -> CookieDecision:
        values = tuple(headers.getall(header, ()))
        action = evaluate(host, bool(values))

        if action is CookieAction.STRIP:
            headers.popall(header, None)
            return CookieDecision(action, values)
        if action is CookieAction.LOG:
            return CookieDecision(action, values)
        return CookieDecision(CookieAction.ALLOW)
