"""
Per-exchange composition of the privacy policies.

The transport layer hands every intercepted request to on_request() and
every upstream response to on_response(). Policy decisions happen inline;
everything that has to be persisted goes through the event pipeline so the
request path never waits on storage writes.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from multidict import CIMultiDict

from blanktrace.policy.blocker import Blocker, BlockingPolicy
from blanktrace.policy.cookies import UNRESOLVED_DOMAIN, CookieAction, CookieGuard, CookiePolicy
from blanktrace.policy.fingerprint import FingerprintRotator, RotationPolicy
from blanktrace.scheduler.cleanup import CleanupScheduler
from blanktrace.scheduler.events import CookieEvent, FingerprintEvent, RequestEvent
from blanktrace.scheduler.pipeline import EventPipeline
from blanktrace.utils.logging import LogContext, get_logger

if TYPE_CHECKING:
    from blanktrace.storage.database import Database
    from blanktrace.utils.config import Settings

logger = get_logger(__name__)

UNKNOWN = "unknown"
BLOCKED_STATUS = 403
BLOCKED_BODY = "Blocked by privacy proxy"

USER_AGENT_HEADER = "User-Agent"
ACCEPT_LANGUAGE_HEADER = "Accept-Language"
REFERER_HEADER = "Referer"


@dataclass
class InterceptedRequest:
    """Transport-neutral view of an outbound request. Headers are mutated in place."""

    host: str | None
    path: str
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    client_ip: str | None = None


@dataclass
class InterceptedResponse:
    """Transport-neutral view of an upstream response."""

    status: int
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    host: str | None = None


@dataclass(frozen=True)
class DenyResponse:
    """Terminal response synthesized for a blocked destination."""

    host: str
    status: int = BLOCKED_STATUS
    body: str = BLOCKED_BODY


class Orchestrator:
    """Runs blocking, cookie and fingerprint policies for each exchange."""

    def __init__(
        self,
        blocker: Blocker,
        cookie_guard: CookieGuard,
        rotator: FingerprintRotator,
        pipeline: EventPipeline,
        cleanup: CleanupScheduler | None = None,
    ):
        self.blocker = blocker
        self.cookie_guard = cookie_guard
        self.rotator = rotator
        self.pipeline = pipeline
        self.cleanup = cleanup

    async def start(self) -> None:
        """Start the pipeline consumer and, if configured, the cleanup task."""
        self.pipeline.start()
        if self.cleanup is not None:
            self.cleanup.start()

    async def stop(self) -> None:
        if self.cleanup is not None:
            await self.cleanup.stop()
        await self.pipeline.stop()

    def stats(self) -> dict[str, Any]:
        result: dict[str, Any] = {"pipeline": self.pipeline.stats()}
        if self.cleanup is not None:
            result["cleanup"] = {
                "runs": self.cleanup.runs,
                "failures": self.cleanup.failures,
                "total_deleted": self.cleanup.total_deleted,
            }
        return result

    async def on_request(self, request: InterceptedRequest) -> InterceptedRequest | DenyResponse:
        """Apply request-path policies.

        Returns:
            DenyResponse if the destination is blocked, otherwise the same
            request with its headers mutated.
        """
        host = request.host or UNKNOWN

        with LogContext(host=host):
            if await self.blocker.check_and_track(host):
                logger.info("Blocking request")
                return DenyResponse(host=host)

            decision = self.cookie_guard.apply_request(host, request.headers)
            if decision.action is not CookieAction.ALLOW:
                for value in decision.values:
                    logger.debug("Request cookie", action=decision.action.value, cookie=value)
                    await self.pipeline.publish(
                        CookieEvent(domain=host, cookie=value, blocked=decision.blocked)
                    )

            await self._apply_fingerprint(request.headers)

            await self.pipeline.publish(
                RequestEvent(
                    domain=host,
                    path=request.path,
                    user_agent=request.headers.get(USER_AGENT_HEADER, UNKNOWN),
                    client_ip=request.client_ip or UNKNOWN,
                )
            )

        return request

    async def on_response(self, response: InterceptedResponse) -> InterceptedResponse:
        """Apply response-path policies (Set-Cookie handling)."""
        decision = self.cookie_guard.apply_response(response.host, response.headers)
        if decision.action is not CookieAction.ALLOW:
            domain = response.host or UNRESOLVED_DOMAIN
            for value in decision.values:
                logger.debug(
                    "Response cookie", domain=domain, action=decision.action.value, cookie=value
                )
                await self.pipeline.publish(
                    CookieEvent(domain=domain, cookie=value, blocked=decision.blocked)
                )
        return response

    async def _apply_fingerprint(self, headers: CIMultiDict[str]) -> None:
        policy = self.rotator.policy

        if policy.rotates_headers:
            rotation = self.rotator.decide_and_rotate()
            # Current values are written on every request, rotated or not.
            # Only the rotation record below depends on `rotated`.
            if policy.randomize_user_agent:
                headers[USER_AGENT_HEADER] = rotation.user_agent
            if policy.randomize_accept_language:
                headers[ACCEPT_LANGUAGE_HEADER] = rotation.accept_language
            if rotation.rotated:
                await self.pipeline.publish(
                    FingerprintEvent(
                        user_agent=rotation.user_agent if policy.randomize_user_agent else "",
                        accept_language=(
                            rotation.accept_language if policy.randomize_accept_language else ""
                        ),
                        mode=policy.mode.value,
                    )
                )

        if policy.strip_referer:
            headers.popall(REFERER_HEADER, None)


def build_orchestrator(settings: "Settings", db: "Database") -> Orchestrator:
    """Compose an orchestrator from a settings snapshot."""
    pipeline = EventPipeline.from_config(db, settings.pipeline)
    blocker = Blocker(BlockingPolicy.from_config(settings.blocking), db, pipeline)
    cookie_guard = CookieGuard(CookiePolicy.from_config(settings.cookies))
    rotator = FingerprintRotator(RotationPolicy.from_config(settings.fingerprint))
    cleanup = (
        CleanupScheduler.from_config(db, settings.cleanup) if settings.cleanup.enabled else None
    )
    return Orchestrator(blocker, cookie_guard, rotator, pipeline, cleanup)
