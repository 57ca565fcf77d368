"""
Background tasks for BlankTrace: the event pipeline consumer and the
retention cleanup scheduler.
"""

from blanktrace.scheduler.cleanup import CleanupScheduler
from blanktrace.scheduler.events import (
    CookieEvent,
    Event,
    FingerprintEvent,
    RequestEvent,
    TrackerHitEvent,
)
from blanktrace.scheduler.pipeline import EventPipeline

__all__ = [
    "CleanupScheduler",
    "CookieEvent",
    "Event",
    "EventPipeline",
    "FingerprintEvent",
    "RequestEvent",
    "TrackerHitEvent",
]
