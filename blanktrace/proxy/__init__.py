"""
BlankTrace proxy: per-exchange orchestration and the HTTP transport.
"""

from blanktrace.proxy.orchestrator import (
    DenyResponse,
    InterceptedRequest,
    InterceptedResponse,
    Orchestrator,
    build_orchestrator,
)

__all__ = [
    "DenyResponse",
    "InterceptedRequest",
    "InterceptedResponse",
    "Orchestrator",
    "build_orchestrator",
]
