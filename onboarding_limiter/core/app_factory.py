"""Startup hook shared by the processes that handle onboarding.

The webhook handler and the background worker each call
create_onboarding_service() once at startup. Both end up with a service
bound to the same shared store, so either can record, check or clear a
chat's rate limit.
"""

from __future__ import annotations

import logging

from onboarding_limiter.core.config import settings
from onboarding_limiter.core.logging import configure_logging
from onboarding_limiter.core.rate_limit import get_onboarding_rate_limiter
from onboarding_limiter.services.onboarding_service import OnboardingService

logger = logging.getLogger(__name__)


def create_onboarding_service(*, configure_logs: bool = True) -> OnboardingService:
    """Create the onboarding service for this process.

    Args:
        configure_logs: Install the JSON log handler first (disable when the
            host process owns logging configuration).

    Returns:
        OnboardingService bound to the process-wide rate limiter.
    """
    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(settings.log)

    service = OnboardingService(
        get_onboarding_rate_limiter(),
        fail_open=settings.onboard.fail_open,
    )
    logger.info(
        "onboarding.service_ready",
        extra={"app_env": settings.app_env, "fail_open": settings.onboard.fail_open},
    )
    return service
