"""Unit tests for the onboarding rate limiter state machine."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from onboarding_limiter.adapters.store.in_memory import InMemoryRecordStore
from onboarding_limiter.core.errors import ConcurrentUpdateError, StoreUnavailableError
from onboarding_limiter.schemas.rate_limit import RateLimitRecord
from onboarding_limiter.services.rate_limiter import OnboardingRateLimiter, apply_failed_attempt


def _record(store: InMemoryRecordStore, chat_id: int) -> RateLimitRecord | None:
    document = store.get(f"onboard_{chat_id}")
    if document is None:
        return None
    return RateLimitRecord.model_validate(document)


class TestApplyFailedAttempt:
    """Pure transition function."""

    NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def _apply(self, existing, now=None, **kwargs):
        return apply_failed_attempt(
            existing,
            chat_id=42,
            now=now or self.NOW,
            max_attempts=kwargs.pop("max_attempts", 3),
            block_duration=kwargs.pop("block_duration", timedelta(minutes=15)),
            **kwargs,
        )

    def test_no_record_creates_first_attempt(self) -> None:
        record, transition = self._apply(None)

        assert transition == "created"
        assert record.attempts == 1
        assert record.first_attempt_at == record.last_attempt_at == self.NOW
        assert record.blocked_until is None

    def test_threshold_sets_block_from_last_attempt(self) -> None:
        existing = RateLimitRecord(
            chat_id=42,
            attempts=2,
            first_attempt_at=self.NOW - timedelta(minutes=1),
            last_attempt_at=self.NOW - timedelta(seconds=30),
        )

        record, transition = self._apply(existing)

        assert transition == "blocked"
        assert record.attempts == 3
        assert record.blocked_until == record.last_attempt_at + timedelta(minutes=15)
        assert record.first_attempt_at == existing.first_attempt_at

    def test_failure_while_blocked_keeps_block(self) -> None:
        blocked_until = self.NOW + timedelta(minutes=10)
        existing = RateLimitRecord(
            chat_id=42,
            attempts=3,
            first_attempt_at=self.NOW - timedelta(minutes=5),
            last_attempt_at=self.NOW - timedelta(minutes=5),
            blocked_until=blocked_until,
        )

        record, transition = self._apply(existing)

        assert transition == "incremented"
        assert record.attempts == 4
        assert record.blocked_until == blocked_until

    def test_failure_while_blocked_can_extend_block(self) -> None:
        existing = RateLimitRecord(
            chat_id=42,
            attempts=3,
            first_attempt_at=self.NOW - timedelta(minutes=5),
            last_attempt_at=self.NOW - timedelta(minutes=5),
            blocked_until=self.NOW + timedelta(minutes=10),
        )

        record, transition = self._apply(existing, extend_block_on_retry=True)

        assert transition == "blocked"
        assert record.blocked_until == self.NOW + timedelta(minutes=15)

    def test_expired_block_resets_window(self) -> None:
        existing = RateLimitRecord(
            chat_id=42,
            attempts=5,
            first_attempt_at=self.NOW - timedelta(minutes=30),
            last_attempt_at=self.NOW - timedelta(minutes=20),
            blocked_until=self.NOW,
        )

        record, transition = self._apply(existing)

        assert transition == "reset"
        assert record.attempts == 1
        assert record.blocked_until is None
        assert record.first_attempt_at == self.NOW


class TestRecordFailedAttempt:
    """Store-backed behavior of record_failed_attempt()."""

    def test_first_attempt_creates_record(self, limiter, store) -> None:
        limiter.record_failed_attempt(42)

        record = _record(store, 42)
        assert record is not None
        assert record.chat_id == 42
        assert record.attempts == 1
        assert record.blocked_until is None

    @pytest.mark.parametrize("count", [1, 2])
    def test_attempts_below_threshold_do_not_block(self, limiter, store, clock, count) -> None:
        for _ in range(count):
            limiter.record_failed_attempt(42)
            clock.advance(10)

        record = _record(store, 42)
        assert record.attempts == count
        assert record.blocked_until is None

    def test_max_attempts_blocks_for_block_duration(self, limiter, store, clock) -> None:
        limiter.record_failed_attempt(42)
        clock.advance(20)
        limiter.record_failed_attempt(42)
        clock.advance(20)
        limiter.record_failed_attempt(42)

        record = _record(store, 42)
        assert record.attempts == 3
        assert record.blocked_until == record.last_attempt_at + timedelta(minutes=15)
        assert limiter.is_rate_limited(42) is True

    def test_every_call_writes(self, store) -> None:
        mock_store = MagicMock(wraps=store)
        limiter = OnboardingRateLimiter(mock_store, max_attempts=3)

        for _ in range(5):
            limiter.record_failed_attempt(42)

        writes = mock_store.set.call_count + mock_store.update.call_count
        assert writes == 5

    def test_concrete_block_scenario(self, limiter, store, clock) -> None:
        """Three failures in a minute block; a 4th keeps the block; expiry resets."""
        start = store.now()
        limiter.record_failed_attempt(42)
        clock.advance(20)
        limiter.record_failed_attempt(42)
        clock.advance(20)
        limiter.record_failed_attempt(42)

        after_third = _record(store, 42)
        third_at = after_third.last_attempt_at
        assert after_third.attempts == 3
        assert after_third.blocked_until == third_at + timedelta(minutes=15)
        assert third_at - start < timedelta(minutes=1)

        clock.advance(minutes=1)
        limiter.record_failed_attempt(42)

        after_fourth = _record(store, 42)
        assert after_fourth.attempts == 4
        assert after_fourth.blocked_until == after_third.blocked_until
        assert after_fourth.last_attempt_at == third_at + timedelta(minutes=1)

        clock.advance(minutes=15)  # 16 minutes after the third call
        limiter.record_failed_attempt(42)

        after_fifth = _record(store, 42)
        assert after_fifth.attempts == 1
        assert after_fifth.blocked_until is None
        assert after_fifth.first_attempt_at == after_fifth.last_attempt_at

    def test_reset_exactly_at_block_expiry(self, limiter, store, clock) -> None:
        for _ in range(3):
            limiter.record_failed_attempt(42)

        clock.advance(minutes=15)
        limiter.record_failed_attempt(42)

        assert _record(store, 42).attempts == 1

    def test_chats_are_independent(self, limiter, store) -> None:
        for _ in range(3):
            limiter.record_failed_attempt(1)
        limiter.record_failed_attempt(2)

        assert limiter.is_rate_limited(1) is True
        assert limiter.is_rate_limited(2) is False
        assert _record(store, 2).attempts == 1

    @pytest.mark.parametrize(
        "document",
        [
            {"chatId": 42},
            {"chatId": 42, "attempts": 0, "firstAttemptAt": "2026-01-01T00:00:00Z",
             "lastAttemptAt": "2026-01-01T00:00:00Z"},
            {"chatId": 42, "attempts": "many", "firstAttemptAt": "x", "lastAttemptAt": "y"},
        ],
    )
    def test_corrupt_record_resets_window(self, limiter, store, document) -> None:
        store.set("onboard_42", document)

        limiter.record_failed_attempt(42)

        record = _record(store, 42)
        assert record.attempts == 1
        assert record.blocked_until is None

    def test_corrupt_record_resets_window_in_atomic_mode(self, store) -> None:
        limiter = OnboardingRateLimiter(store, atomic_updates=True)
        store.set("onboard_42", {"attempts": -1})

        limiter.record_failed_attempt(42)

        assert _record(store, 42).attempts == 1

    def test_record_cleared_between_read_and_update(self, store) -> None:
        """A concurrent clear turns the pending increment into a fresh record."""
        limiter = OnboardingRateLimiter(store, max_attempts=3)
        limiter.record_failed_attempt(42)

        original_update = store.update

        def _clear_then_update(key, fields):
            store.delete(key)
            return original_update(key, fields)

        store.update = _clear_then_update  # type: ignore[method-assign]
        limiter.record_failed_attempt(42)

        record = _record(store, 42)
        assert record.attempts == 1

    def test_store_unavailable_propagates(self) -> None:
        failing_store = MagicMock()
        failing_store.get_versioned.side_effect = StoreUnavailableError(
            code="store_unavailable",
            message="down",
        )
        limiter = OnboardingRateLimiter(failing_store)

        with pytest.raises(StoreUnavailableError):
            limiter.record_failed_attempt(42)

        failing_store.set.assert_not_called()
        failing_store.update.assert_not_called()

    def test_rejects_non_integer_chat_id(self, limiter) -> None:
        with pytest.raises(ValueError):
            limiter.record_failed_attempt("42")  # type: ignore[arg-type]
        with pytest.raises(ValueError):
            limiter.record_failed_attempt(True)  # type: ignore[arg-type]


class TestConcurrentWriters:
    """Lost updates in the default mode versus compare-and-set."""

    def _interleave_one_writer(self, store: InMemoryRecordStore, other: OnboardingRateLimiter):
        """Make another process record a failure right after our first read."""
        original = store.get_versioned
        state = {"injected": False}

        def _get_versioned(key):
            result = original(key)
            if not state["injected"]:
                state["injected"] = True
                other.record_failed_attempt(42)
            return result

        store.get_versioned = _get_versioned  # type: ignore[method-assign]

    def test_unconditional_write_can_lose_an_increment(self, store) -> None:
        ours = OnboardingRateLimiter(store, max_attempts=10)
        theirs = OnboardingRateLimiter(store, max_attempts=10)  # second process, same store
        ours.record_failed_attempt(42)

        self._interleave_one_writer(store, theirs)
        ours.record_failed_attempt(42)

        # Both computed 2 from the same read: undercount, never overcount.
        assert _record(store, 42).attempts == 2

    def test_atomic_mode_retries_and_counts_both(self, store) -> None:
        ours = OnboardingRateLimiter(store, max_attempts=10, atomic_updates=True)
        theirs = OnboardingRateLimiter(store, max_attempts=10)
        ours.record_failed_attempt(42)

        original = store.get_versioned
        state = {"injected": False}

        def _get_versioned(key):
            result = original(key)
            if not state["injected"]:
                state["injected"] = True
                store.get_versioned = original  # type: ignore[method-assign]
                theirs.record_failed_attempt(42)
            return result

        store.get_versioned = _get_versioned  # type: ignore[method-assign]
        ours.record_failed_attempt(42)

        assert _record(store, 42).attempts == 3

    def test_atomic_mode_gives_up_after_max_retries(self) -> None:
        contended = MagicMock()
        contended.get_versioned.return_value = (None, None)
        contended.now.return_value = datetime(2026, 10, 19, tzinfo=timezone.utc)
        contended.compare_and_set.return_value = False
        limiter = OnboardingRateLimiter(contended, atomic_updates=True, max_retries=3)

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            limiter.record_failed_attempt(42)

        assert exc_info.value.code == "concurrent_update"
        assert contended.compare_and_set.call_count == 3


class TestClearRateLimit:
    def test_clear_removes_record(self, limiter, store) -> None:
        for _ in range(3):
            limiter.record_failed_attempt(42)

        limiter.clear_rate_limit(42)

        assert store.get("onboard_42") is None
        assert limiter.is_rate_limited(42) is False

    def test_attempt_after_clear_starts_fresh(self, limiter, store) -> None:
        for _ in range(3):
            limiter.record_failed_attempt(42)
        limiter.clear_rate_limit(42)

        limiter.record_failed_attempt(42)

        record = _record(store, 42)
        assert record.attempts == 1
        assert record.blocked_until is None

    def test_clear_absent_record_is_noop(self, limiter, store) -> None:
        limiter.clear_rate_limit(7)
        limiter.clear_rate_limit(7)

        assert store.get("onboard_7") is None


class TestGetStatus:
    def test_clean_chat(self, limiter) -> None:
        status = limiter.get_status(42)

        assert status.blocked is False
        assert status.attempts == 0
        assert status.remaining_attempts == 3
        assert status.blocked_until is None

    def test_blocked_chat_reports_retry_after(self, limiter, clock) -> None:
        for _ in range(3):
            limiter.record_failed_attempt(42)
        clock.advance(minutes=5)

        status = limiter.get_status(42)

        assert status.blocked is True
        assert status.attempts == 3
        assert status.remaining_attempts == 0
        assert status.retry_after_seconds == 10 * 60

    def test_expired_block_reads_as_clean(self, limiter, store, clock) -> None:
        for _ in range(3):
            limiter.record_failed_attempt(42)
        clock.advance(minutes=16)

        status = limiter.get_status(42)

        assert status.blocked is False
        assert status.attempts == 0
        assert store.get("onboard_42") is not None  # read-only

    def test_corrupt_record_reads_as_clean(self, limiter, store) -> None:
        store.set("onboard_42", {"chatId": "not-a-chat"})

        assert limiter.get_status(42).blocked is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"block_duration": timedelta(0)},
        {"max_retries": 0},
        {"key_prefix": ""},
    ],
)
def test_invalid_constructor_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        OnboardingRateLimiter(InMemoryRecordStore(), **kwargs)


def test_record_key_uses_prefix() -> None:
    limiter = OnboardingRateLimiter(InMemoryRecordStore(), key_prefix="signup")

    assert limiter.record_key(42) == "signup_42"
