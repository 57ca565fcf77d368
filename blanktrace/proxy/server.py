"""
BlankTrace forward proxy transport.

Plain-HTTP forward proxy: clients send absolute-form requests, each one is
run through the Orchestrator and, unless blocked, forwarded upstream with
httpx. TLS interception (CONNECT) is not handled here.

Routes:
  /__blanktrace__/health on the listener address -> pipeline / cleanup counters
  everything else                                -> proxied

Security:
- Listener is bound to 127.0.0.1 by default
- No authentication (trusted local clients)
"""

import asyncio
import functools
import signal

import httpx
from aiohttp import web
from multidict import CIMultiDict

from blanktrace.proxy.orchestrator import (
    DenyResponse,
    InterceptedRequest,
    InterceptedResponse,
    Orchestrator,
)
from blanktrace.utils.logging import get_logger

logger = get_logger(__name__)

HEALTH_PATH = "/__blanktrace__/health"
REQUEST_TIMEOUT = 60.0

ORCHESTRATOR_KEY = web.AppKey("orchestrator", Orchestrator)
CLIENT_KEY = web.AppKey("http_client", httpx.AsyncClient)

# Hop-by-hop headers are never forwarded in either direction
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


def _filter_headers(items, *, extra: frozenset[str] = frozenset()) -> CIMultiDict[str]:
    headers: CIMultiDict[str] = CIMultiDict()
    for key, value in items:
        key_lower = key.lower()
        if key_lower not in HOP_BY_HOP and key_lower not in extra:
            headers.add(key, value)
    return headers


def _addressed_to_proxy(request: web.Request) -> bool:
    """True if the request targets the listener itself rather than an upstream host."""
    if request.transport is None:
        return False
    sockname = request.transport.get_extra_info("sockname")
    if not sockname:
        return False
    local_host, local_port = sockname[0], sockname[1]
    return request.url.host in (local_host, "localhost") and request.url.port == local_port


async def proxy_request(request: web.Request) -> web.StreamResponse:
    """Run one exchange through the orchestrator and forward it upstream."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    client = request.app[CLIENT_KEY]

    if request.method == "CONNECT":
        return web.json_response(
            {"error": "CONNECT tunnelling is not supported by the plain HTTP transport"},
            status=405,
        )

    # Any other host with this path is an ordinary proxied request
    if request.path == HEALTH_PATH and _addressed_to_proxy(request):
        return await handle_health(request)

    intercepted = InterceptedRequest(
        host=request.url.host,
        path=request.path,
        headers=_filter_headers(request.headers.items(), extra=frozenset({"host", "content-length"})),
        client_ip=request.remote,
    )

    outcome = await orchestrator.on_request(intercepted)
    if isinstance(outcome, DenyResponse):
        return web.Response(status=outcome.status, text=outcome.body)

    target_url = str(request.url)
    body = await request.read()

    try:
        upstream = await client.request(
            method=request.method,
            url=target_url,
            headers=list(outcome.headers.items()),
            content=body if body else None,
        )
    except httpx.ConnectError as e:
        logger.error("Upstream connection error", target=target_url, error=str(e))
        return web.json_response(
            {"error": f"Connection failed: {request.url.host}", "details": str(e)},
            status=502,
        )
    except httpx.TimeoutException as e:
        logger.error("Upstream timeout", target=target_url, error=str(e))
        return web.json_response(
            {"error": "Request timeout", "details": str(e)},
            status=504,
        )
    except httpx.HTTPError as e:
        logger.error("Upstream error", target=target_url, error=str(e))
        return web.json_response(
            {"error": "Proxy error", "details": str(e)},
            status=502,
        )

    # httpx already decoded the body, so length/encoding headers no longer apply
    response = InterceptedResponse(
        status=upstream.status_code,
        headers=_filter_headers(
            upstream.headers.multi_items(),
            extra=frozenset({"content-encoding", "content-length"}),
        ),
        host=request.url.host,
    )
    response = await orchestrator.on_response(response)

    return web.Response(
        status=response.status,
        headers=response.headers,
        body=upstream.content,
    )


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint with pipeline counters."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    stats = orchestrator.stats()
    status = "ok" if orchestrator.pipeline.is_running else "degraded"
    return web.json_response({"status": status, **stats})


def create_app(
    orchestrator: Orchestrator,
    client: httpx.AsyncClient | None = None,
) -> web.Application:
    """Create aiohttp application.

    Args:
        orchestrator: Policy orchestrator for every exchange.
        client: Upstream HTTP client. A default client is created and closed
            with the app if omitted.
    """
    app = web.Application()
    app[ORCHESTRATOR_KEY] = orchestrator

    owns_client = client is None
    app[CLIENT_KEY] = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT, follow_redirects=False)

    async def _close_client(app: web.Application) -> None:
        if owns_client:
            await app[CLIENT_KEY].aclose()

    app.on_cleanup.append(_close_client)
    app.router.add_route("*", "/{path:.*}", proxy_request)
    return app


async def run_proxy(orchestrator: Orchestrator, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Serve the proxy until SIGINT/SIGTERM."""
    app = create_app(orchestrator)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info("Privacy proxy listening", host=host, port=port)

    stop_event = asyncio.Event()

    def handle_signal(sig: int) -> None:
        logger.info("Received shutdown signal", signal=sig)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, functools.partial(handle_signal, sig))

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down proxy server")
        await runner.cleanup()
