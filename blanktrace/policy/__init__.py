"""
Per-exchange privacy policies: domain blocking, cookie handling and
fingerprint rotation.
"""

from blanktrace.policy.blocker import Blocker, BlockingPolicy
from blanktrace.policy.cookies import CookieAction, CookieDecision, CookieGuard, CookiePolicy
from blanktrace.policy.fingerprint import (
    FingerprintRotator,
    RotationDecision,
    RotationPolicy,
    RotatorState,
)

__all__ = [
    "Blocker",
    "BlockingPolicy",
    "CookieAction",
    "CookieDecision",
    "CookieGuard",
    "CookiePolicy",
    "FingerprintRotator",
    "RotationDecision",
    "RotationPolicy",
    "RotatorState",
]
