"""
Tests for blanktrace/policy/blocker.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective | Expected Result | Notes |
|---------|----------------------|-------------|-----------------|-------|
| TC-WL-N-01 | Whitelisted host matching a pattern | Normal | False, counter untouched | Whitelist wins |
| TC-PM-N-01 | Host matches no pattern | Normal | False, not tracked | - |
| TC-PM-N-02 | Pattern matched mid-string | Normal | Tracked | Unanchored search |
| TC-AB-N-01 | `.*bad.*`, threshold 1, auto_block on | Normal | True on first call | - |
| TC-AB-N-02 | `.*tracker.*`, auto_block off | Normal | False twice, hit_count 2 | Counting only |
| TC-AB-B-01 | Threshold 3 | Boundary | Blocks on third hit | - |
| TC-AB-N-03 | Manually blocked, auto_block off | Normal | True | Flag honored |
| TC-AB-N-04 | Blocked, later calls | Normal | Stays blocked | No auto-unblock |
| TC-ERR-A-01 | Whitelist lookup raises | Abnormal | Fails open, continues | - |
| TC-ERR-A-02 | Increment raises | Abnormal | Fails closed (True) | - |
| TC-ERR-A-03 | set_blocked raises | Abnormal | Returns stored flag | - |
| TC-EVT-N-01 | Pipeline attached | Normal | TrackerHitEvent published | - |
| TC-CFG-A-01 | Threshold 0 | Abnormal | ValueError | - |
"""

import re
from unittest.mock import AsyncMock

import pytest

from blanktrace.policy.blocker import PATTERN_MATCH_CATEGORY, Blocker, BlockingPolicy
from blanktrace.scheduler.events import TrackerHitEvent
from blanktrace.storage.database import Database
from blanktrace.utils.errors import StorageError

pytestmark = pytest.mark.unit


def make_policy(*patterns: str, auto_block: bool = False, threshold: int = 1) -> BlockingPolicy:
    return BlockingPolicy(
        patterns=tuple(re.compile(p) for p in patterns),
        auto_block=auto_block,
        auto_block_threshold=threshold,
    )


class TestWhitelistAndPatterns:
    """Tests for whitelist precedence and pattern matching."""

    @pytest.mark.asyncio
    async def test_whitelist_overrides_pattern(self, test_database: Database) -> None:
        """TC-WL-N-01: Whitelisted host is allowed and never counted."""
        # Given: A host that matches a pattern but is whitelisted
        await test_database.add_whitelist("bad.example.com")
        blocker = Blocker(make_policy(".*bad.*", auto_block=True), test_database)

        # When: Checking it
        result = await blocker.check_and_track("bad.example.com")

        # Then: Allowed with no tracking record
        assert result is False
        assert await test_database.get_tracking_domain("bad.example.com") is None

    @pytest.mark.asyncio
    async def test_unmatched_host_not_tracked(self, test_database: Database) -> None:
        """TC-PM-N-01: Hosts without a pattern match are not counted."""
        # Given: A policy for trackers
        blocker = Blocker(make_policy(".*tracker.*"), test_database)

        # When: Checking an ordinary host
        result = await blocker.check_and_track("example.org")

        # Then: Allowed and untracked
        assert result is False
        assert await test_database.count_rows("tracking_domains") == 0

    @pytest.mark.asyncio
    async def test_pattern_search_is_unanchored(self, test_database: Database) -> None:
        """TC-PM-N-02: A pattern may match anywhere in the host."""
        # Given: An unanchored pattern
        blocker = Blocker(make_policy("doubleclick"), test_database)

        # When: Checking a host containing it
        await blocker.check_and_track("ad.doubleclick.net")

        # Then: Tracked with the pattern category
        record = await test_database.get_tracking_domain("ad.doubleclick.net")
        assert record is not None
        assert record.hit_count == 1
        assert record.category == PATTERN_MATCH_CATEGORY


class TestAutoBlock:
    """Tests for counting and auto-block escalation."""

    @pytest.mark.asyncio
    async def test_threshold_one_blocks_first_call(self, test_database: Database) -> None:
        """TC-AB-N-01: Threshold 1 blocks on the first match."""
        # Given: auto_block with threshold 1
        blocker = Blocker(make_policy(".*bad.*", auto_block=True, threshold=1), test_database)

        # When: First request
        result = await blocker.check_and_track("bad.example.com")

        # Then: Blocked and persisted
        assert result is True
        record = await test_database.get_tracking_domain("bad.example.com")
        assert record is not None
        assert record.blocked is True

    @pytest.mark.asyncio
    async def test_counting_without_auto_block(self, test_database: Database) -> None:
        """TC-AB-N-02: Without auto_block the host is counted but allowed."""
        # Given: auto_block disabled
        blocker = Blocker(make_policy(".*tracker.*", auto_block=False), test_database)

        # When: Two requests
        first = await blocker.check_and_track("tracker.com")
        second = await blocker.check_and_track("tracker.com")

        # Then: Both allowed, two hits recorded
        assert (first, second) == (False, False)
        record = await test_database.get_tracking_domain("tracker.com")
        assert record is not None
        assert record.hit_count == 2
        assert record.blocked is False

    @pytest.mark.asyncio
    async def test_blocks_when_threshold_reached(self, test_database: Database) -> None:
        """TC-AB-B-01: Threshold 3 allows two hits then blocks."""
        # Given: threshold 3
        blocker = Blocker(make_policy("tracker", auto_block=True, threshold=3), test_database)

        # When: Three requests
        results = [await blocker.check_and_track("tracker.com") for _ in range(3)]

        # Then: Only the third is blocked
        assert results == [False, False, True]

    @pytest.mark.asyncio
    async def test_manual_block_honored_without_auto_block(self, test_database: Database) -> None:
        """TC-AB-N-03: A stored blocked flag blocks even with auto_block off."""
        # Given: A tracked domain blocked administratively
        blocker = Blocker(make_policy("tracker"), test_database)
        await blocker.check_and_track("tracker.com")
        await test_database.manual_block("tracker.com")

        # When: Next request
        result = await blocker.check_and_track("tracker.com")

        # Then: Blocked
        assert result is True

    @pytest.mark.asyncio
    async def test_blocked_domain_stays_blocked(self, test_database: Database) -> None:
        """TC-AB-N-04: Counting continues after block and the flag never clears."""
        # Given: A domain auto-blocked on first hit
        blocker = Blocker(make_policy("bad", auto_block=True), test_database)
        await blocker.check_and_track("bad.com")

        # When: More requests arrive
        results = [await blocker.check_and_track("bad.com") for _ in range(3)]

        # Then: Still blocked, hits keep counting
        assert results == [True, True, True]
        record = await test_database.get_tracking_domain("bad.com")
        assert record is not None
        assert record.hit_count == 4


class TestStorageFailures:
    """Tests for fail-open / fail-closed behavior."""

    @pytest.mark.asyncio
    async def test_whitelist_failure_fails_open(self) -> None:
        """TC-ERR-A-01: A failed whitelist lookup falls through to patterns."""
        # Given: A store whose whitelist lookup fails
        db = AsyncMock()
        db.is_whitelisted.side_effect = StorageError("fetch_one", "disk I/O error")
        db.increment_and_get_flag.return_value = (1, False)
        blocker = Blocker(make_policy("tracker"), db)

        # When: Checking a tracker host
        result = await blocker.check_and_track("tracker.com")

        # Then: Still tracked, allowed
        assert result is False
        db.increment_and_get_flag.assert_awaited_once_with("tracker.com", PATTERN_MATCH_CATEGORY)

    @pytest.mark.asyncio
    async def test_increment_failure_fails_closed(self) -> None:
        """TC-ERR-A-02: A failed increment blocks the request."""
        # Given: A store whose increment fails
        db = AsyncMock()
        db.is_whitelisted.return_value = False
        db.increment_and_get_flag.side_effect = StorageError("increment_and_get_flag", "locked")
        blocker = Blocker(make_policy("tracker", auto_block=True), db)

        # When: Checking a tracker host
        result = await blocker.check_and_track("tracker.com")

        # Then: Blocked, no auto-block attempt
        assert result is True
        db.set_blocked.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_set_blocked_failure_returns_stored_flag(self) -> None:
        """TC-ERR-A-03: A failed auto-block update does not block this request."""
        # Given: Threshold reached but the update fails
        db = AsyncMock()
        db.is_whitelisted.return_value = False
        db.increment_and_get_flag.return_value = (5, False)
        db.set_blocked.side_effect = StorageError("execute", "readonly database")
        blocker = Blocker(make_policy("tracker", auto_block=True, threshold=5), db)

        # When: Checking
        result = await blocker.check_and_track("tracker.com")

        # Then: Stored flag (False) is returned
        assert result is False

    @pytest.mark.asyncio
    async def test_unmatched_host_skips_storage(self) -> None:
        """Hosts matching no pattern never reach the counter."""
        # Given: A mocked store
        db = AsyncMock()
        db.is_whitelisted.return_value = False
        blocker = Blocker(make_policy("tracker"), db)

        # When: Checking an ordinary host
        await blocker.check_and_track("example.org")

        # Then: No increment
        db.increment_and_get_flag.assert_not_awaited()


class TestEvents:
    """Tests for tracker-hit event publication."""

    @pytest.mark.asyncio
    async def test_tracker_hit_published(self, test_database: Database) -> None:
        """TC-EVT-N-01: A matched host produces a TrackerHitEvent."""
        # Given: A blocker with a mocked pipeline
        pipeline = AsyncMock()
        blocker = Blocker(make_policy("bad", auto_block=True), test_database, pipeline)

        # When: Checking a tracker
        await blocker.check_and_track("bad.com")

        # Then: Event reflects the outcome
        pipeline.publish.assert_awaited_once()
        event = pipeline.publish.await_args.args[0]
        assert isinstance(event, TrackerHitEvent)
        assert event.domain == "bad.com"
        assert event.hit_count == 1
        assert event.blocked is True


def test_threshold_must_be_positive() -> None:
    """TC-CFG-A-01: A zero threshold is rejected."""
    with pytest.raises(ValueError, match="auto_block_threshold"):
        BlockingPolicy(auto_block=True, auto_block_threshold=0)
