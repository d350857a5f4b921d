"""
Per-company error/backoff model.

Pure functions over BackoffInfo and ScrapingError lists; nothing here touches
the datastore. Every function that needs the current time accepts `now` so
callers (and tests) control the clock.
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Iterable
from datetime import datetime, timedelta

from .models import BackoffInfo, Company, ErrorType, ScrapingError
from .utils import utc_now

LOG = logging.getLogger(__name__)

ERROR_SEVERITY_WEIGHTS: dict[str, int] = {
    # network/connectivity
    ErrorType.FETCH_FAILED.value: 1,
    ErrorType.TIMEOUT.value: 1,
    ErrorType.NETWORK_ERROR.value: 1,
    # rate limiting
    ErrorType.RATE_LIMITED.value: 2,
    ErrorType.TOO_MANY_REQUESTS.value: 2,
    # content / parsing
    ErrorType.PARSE_ERROR.value: 3,
    ErrorType.SCRAPING_FAILED.value: 3,
    ErrorType.JOB_FETCH_FAILED.value: 2,
    ErrorType.JOB_DETAILS_FAILED.value: 2,
    # access
    ErrorType.UNAUTHORIZED.value: 4,
    ErrorType.FORBIDDEN.value: 4,
    ErrorType.BLOCKED.value: 5,
    # server side
    ErrorType.SERVER_ERROR.value: 3,
    ErrorType.SERVICE_UNAVAILABLE.value: 2,
    ErrorType.UNKNOWN.value: 2,
}

BASE_DELAYS: tuple[timedelta, ...] = (
    timedelta(0),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
    timedelta(hours=6),
    timedelta(hours=24),
    timedelta(days=3),
    timedelta(days=7),
)
MAX_LEVEL = 7
MIN_FAILURES_FOR_BACKOFF = 3
MAX_TOTAL_FAILURES = 50
RECENT_FAILURE_WINDOW = timedelta(hours=24)
JITTER_FRACTION = 0.2

# Company health thresholds
PROBLEMATIC_ERROR_COUNT = 10
PERMANENT_LEVEL = 3


def recent_errors(errors: Iterable[ScrapingError], now: datetime | None = None) -> list[ScrapingError]:
    """Errors inside the rolling 24h window."""
    cutoff = (now or utc_now()) - RECENT_FAILURE_WINDOW
    return [e for e in errors if e.timestamp > cutoff]


def calculate_error_severity(errors: Iterable[ScrapingError]) -> int:
    unknown = ERROR_SEVERITY_WEIGHTS[ErrorType.UNKNOWN.value]
    return sum(ERROR_SEVERITY_WEIGHTS.get(e.error_type, unknown) for e in errors)


def calculate_backoff_after_failure(
    current: BackoffInfo | None,
    error_type: str,
    recent: Iterable[ScrapingError],
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> BackoffInfo:
    """
    Fold one more failure into the backoff state.

    The level only moves once consecutive failures reach 3; it then rises by
    1 or 2 depending on how severe the recent errors are, capped at 7.
    `recent` is expected to already include the error being recorded.
    """
    now = now or utc_now()
    cur = current or BackoffInfo(next_allowed_scrape=now)

    consecutive = cur.consecutive_failures + 1
    total = cur.total_failures + 1
    severity = calculate_error_severity(recent)

    level = cur.level
    if consecutive >= MIN_FAILURES_FOR_BACKOFF:
        increase = min(2, max(1, severity // 5))
        level = min(MAX_LEVEL, cur.level + increase)

    base = BASE_DELAYS[min(level, MAX_LEVEL)]
    jitter = base * (JITTER_FRACTION * ((rng or random).random() - 0.5))

    LOG.info(
        "backoff after %s: level %d -> %d, consecutive=%d, next in ~%d min",
        error_type,
        cur.level,
        level,
        consecutive,
        math.ceil(base.total_seconds() / 60),
    )
    return BackoffInfo(
        level=level,
        next_allowed_scrape=now + base + jitter,
        consecutive_failures=consecutive,
        last_successful_scrape=cur.last_successful_scrape,
        total_failures=total,
    )


def calculate_backoff_after_success(current: BackoffInfo | None, *, now: datetime | None = None) -> BackoffInfo:
    """One level down per success; consecutive failures reset, lifetime total kept."""
    now = now or utc_now()
    if current is None:
        return BackoffInfo(level=0, next_allowed_scrape=now, last_successful_scrape=now)
    return BackoffInfo(
        level=max(0, current.level - 1),
        next_allowed_scrape=now,
        consecutive_failures=0,
        last_successful_scrape=now,
        total_failures=current.total_failures,
    )


def is_permanent(info: BackoffInfo | None) -> bool:
    return info is not None and info.total_failures >= MAX_TOTAL_FAILURES


def should_skip_due_to_backoff(info: BackoffInfo | None, *, now: datetime | None = None) -> bool:
    if info is None:
        return False
    if is_permanent(info):
        return True
    return info.next_allowed_scrape is not None and (now or utc_now()) < info.next_allowed_scrape


def get_backoff_status_description(info: BackoffInfo | None, *, now: datetime | None = None) -> str:
    if info is None or info.level == 0:
        return "No backoff - scraping normally"
    if is_permanent(info):
        return "Permanent backoff due to excessive failures"

    now = now or utc_now()
    if info.next_allowed_scrape is not None and now < info.next_allowed_scrape:
        remaining = (info.next_allowed_scrape - now).total_seconds()
        hours = math.ceil(remaining / 3600)
        if hours >= 2:
            return f"Backoff level {info.level} - {hours} hours remaining"
        return f"Backoff level {info.level} - {math.ceil(remaining / 60)} minutes remaining"
    return f"Backoff level {info.level} - ready for next attempt"


def company_health(company: Company, *, now: datetime | None = None) -> str:
    """'healthy', 'problematic' (>=10 errors in 24h) or 'permanent'."""
    info = company.backoff_info
    if info is not None and (info.level >= PERMANENT_LEVEL or info.total_failures >= MAX_TOTAL_FAILURES):
        return "permanent"
    if len(recent_errors(company.scraping_errors, now)) >= PROBLEMATIC_ERROR_COUNT:
        return "problematic"
    return "healthy"
