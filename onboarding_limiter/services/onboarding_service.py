"""Caller-side policy around the onboarding rate limiter.

The limiter reports state and surfaces store failures; it never decides
whether an unreachable store means "allow" or "deny". This service makes
that decision for the onboarding flow and turns limiter state into the
messages a chat sees:

- Blocked chats get a cooldown message with the minutes remaining.
- Store failures get a generic "try again later" message, never internals.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal

from onboarding_limiter.core.errors import ConcurrentUpdateError, StoreUnavailableError
from onboarding_limiter.schemas.rate_limit import RateLimitStatus
from onboarding_limiter.services.rate_limiter import OnboardingRateLimiter

logger = logging.getLogger(__name__)

DecisionReason = Literal["allowed", "rate_limited", "store_unavailable"]

COOLDOWN_MESSAGE = (
    "Too many unsuccessful onboarding attempts. "
    "Please try again in {minutes} minute{plural}."
)
TRY_AGAIN_LATER_MESSAGE = "Something went wrong on our side. Please try again later."
INVALID_INVITE_MESSAGE = (
    "That invitation code is not valid. You have {remaining} attempt{plural} left."
)


def format_cooldown_message(retry_after_seconds: int | None) -> str:
    """Build the cooldown text for a blocked chat (always at least 1 minute)."""
    minutes = max(1, math.ceil((retry_after_seconds or 0) / 60))
    return COOLDOWN_MESSAGE.format(minutes=minutes, plural="" if minutes == 1 else "s")


@dataclass(frozen=True)
class OnboardingDecision:
    """Outcome of an onboarding gate check.

    Attributes:
        allowed: Whether onboarding may proceed.
        reason: Machine-readable reason for the decision.
        message: User-facing text, or None when nothing needs saying.
        status: Limiter status the decision was based on (None on store failure).
    """

    allowed: bool
    reason: DecisionReason
    message: str | None = None
    status: RateLimitStatus | None = None


class OnboardingService:
    """Gate onboarding attempts behind the shared rate limiter."""

    def __init__(self, limiter: OnboardingRateLimiter, *, fail_open: bool = True) -> None:
        """Initialize the service.

        Args:
            limiter: Rate limiter bound to the shared store.
            fail_open: Allow onboarding when the store cannot be consulted.
        """
        self.limiter = limiter
        self.fail_open = fail_open

    def _store_failure(self, chat_id: int, operation: str, exc: Exception) -> OnboardingDecision:
        logger.error(
            "onboarding.store_error",
            extra={
                "chat_id": chat_id,
                "operation": operation,
                "error_type": type(exc).__name__,
                "fail_open": self.fail_open,
            },
        )
        if self.fail_open:
            return OnboardingDecision(allowed=True, reason="store_unavailable")
        return OnboardingDecision(
            allowed=False,
            reason="store_unavailable",
            message=TRY_AGAIN_LATER_MESSAGE,
        )

    def _decide(self, status: RateLimitStatus) -> OnboardingDecision:
        if status.blocked:
            return OnboardingDecision(
                allowed=False,
                reason="rate_limited",
                message=format_cooldown_message(status.retry_after_seconds),
                status=status,
            )
        return OnboardingDecision(allowed=True, reason="allowed", status=status)

    def check_access(self, chat_id: int) -> OnboardingDecision:
        """Decide whether chat_id may attempt onboarding now."""
        try:
            status = self.limiter.get_status(chat_id)
        except StoreUnavailableError as exc:
            return self._store_failure(chat_id, "check_access", exc)

        decision = self._decide(status)
        if not decision.allowed:
            logger.warning(
                "onboarding.rate_limited",
                extra={
                    "chat_id": chat_id,
                    "attempts": status.attempts,
                    "blocked_until": status.blocked_until,
                },
            )
        return decision

    def register_failed_attempt(self, chat_id: int) -> OnboardingDecision:
        """Record an invalid invitation and report the resulting state.

        Returns:
            Decision after the failure: blocked chats get the cooldown text,
            others learn how many attempts remain.
        """
        try:
            self.limiter.record_failed_attempt(chat_id)
            status = self.limiter.get_status(chat_id)
        except (StoreUnavailableError, ConcurrentUpdateError) as exc:
            # Recording is best effort; the user still only sees a generic reply.
            decision = self._store_failure(chat_id, "register_failed_attempt", exc)
            return OnboardingDecision(
                allowed=decision.allowed,
                reason=decision.reason,
                message=TRY_AGAIN_LATER_MESSAGE,
            )

        decision = self._decide(status)
        if decision.allowed:
            remaining = status.remaining_attempts
            return OnboardingDecision(
                allowed=True,
                reason="allowed",
                message=INVALID_INVITE_MESSAGE.format(
                    remaining=remaining,
                    plural="" if remaining == 1 else "s",
                ),
                status=status,
            )
        return decision

    def complete_onboarding(self, chat_id: int) -> None:
        """Clear throttling once chat_id onboarded with a valid invitation.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        self.limiter.clear_rate_limit(chat_id)
        logger.info("onboarding.completed", extra={"chat_id": chat_id})
