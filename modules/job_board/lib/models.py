from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SourceType(str, Enum):
    """Which job-board platform serves a company's board (selects the adapter)."""

    ASHBY = "ashby"
    GREENHOUSE = "greenhouse"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | SourceType | None) -> SourceType:
        if isinstance(value, SourceType):
            return value
        key = (value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        return cls.OTHER


class ErrorType(str, Enum):
    """Error tags consumed by the severity model. Stored by `.value`."""

    FETCH_FAILED = "fetch_failed"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    TOO_MANY_REQUESTS = "too_many_requests"
    PARSE_ERROR = "parse_error"
    SCRAPING_FAILED = "scraping_failed"
    JOB_FETCH_FAILED = "job_fetch_failed"
    JOB_DETAILS_FAILED = "job_details_failed"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    BLOCKED = "blocked"
    SERVER_ERROR = "server_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


def error_type_str(value: str | ErrorType) -> str:
    return value.value if isinstance(value, ErrorType) else str(value)


# =============================================================================
# COMPANY-SIDE STATE
# =============================================================================
@dataclass(frozen=True)
class ScrapingError:
    """One entry in a company's rolling 24h error log. Never mutated once appended."""

    timestamp: datetime
    error_type: str
    error_message: str
    url: str | None = None


@dataclass(frozen=True)
class BackoffInfo:
    level: int = 0
    next_allowed_scrape: datetime | None = None
    consecutive_failures: int = 0
    last_successful_scrape: datetime | None = None
    total_failures: int = 0


@dataclass
class Company:
    id: int
    name: str
    job_board_url: str
    source_type: SourceType = SourceType.OTHER
    scraping_errors: list[ScrapingError] = field(default_factory=list)
    backoff_info: BackoffInfo | None = None
    last_scraped: datetime | None = None


# =============================================================================
# JOB DETAILS (closed structure; every field optional until enrichment)
# =============================================================================
EDUCATION_LEVELS = (
    "high-school",
    "associates",
    "bachelors",
    "masters",
    "phd",
    "bootcamp",
    "self-taught",
    "no-requirement",
)
ROLE_TYPES = (
    "software-engineering",
    "data-science",
    "product-management",
    "design",
    "marketing",
    "sales",
    "operations",
    "finance",
    "hr",
    "legal",
    "customer-success",
    "business-development",
    "general-apply",
)
EMPLOYMENT_TYPES = ("permanent", "contract", "part-time", "temporary", "freelance", "internship")
COMPENSATION_TYPES = ("annual", "hourly", "weekly", "monthly")
REMOTE_OPTIONS = ("on-site", "remote", "hybrid")


@dataclass(frozen=True)
class ExperienceRange:
    min: float
    max: float | None = None


@dataclass(frozen=True)
class InternshipRequirements:
    graduation_date: str | None = None
    eligible_programs: list[str] | None = None
    additional_requirements: str | None = None


@dataclass(frozen=True)
class Compensation:
    type: str
    min: float | None = None
    max: float | None = None
    currency: str | None = None


@dataclass(frozen=True)
class Equity:
    offered: bool
    percentage: float | None = None
    details: str | None = None


@dataclass(frozen=True)
class JobDetails:
    """
    Partial, best-effort structured fields for a posting.

    `from_dict` is deliberately forgiving: unknown keys are ignored and values
    of the wrong shape (or outside the allowed enum sets) are dropped rather
    than raising, since the extraction service may return anything.
    """

    title: str | None = None
    description: str | None = None
    locations: list[str] | None = None
    education_level: str | None = None
    years_of_experience: ExperienceRange | None = None
    role_type: str | None = None
    employment_type: str | None = None
    is_internship: bool | None = None
    internship_requirements: InternshipRequirements | None = None
    additional_requirements: str | None = None
    compensation: Compensation | None = None
    remote_options: str | None = None
    equity: Equity | None = None

    def to_dict(self) -> dict[str, Any]:
        """Only the populated fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def is_empty(self) -> bool:
        return not self.to_dict()

    def merged_with(self, other: JobDetails) -> JobDetails:
        """Overlay `other`'s populated fields on top of this one."""
        base = {k: getattr(self, k) for k in self.__dataclass_fields__}
        for k in other.__dataclass_fields__:
            v = getattr(other, k)
            if v is not None:
                base[k] = v
        return JobDetails(**base)

    @classmethod
    def from_dict(cls, data: Any) -> JobDetails:
        if not isinstance(data, dict):
            return cls()
        return cls(
            title=_opt_str(data.get("title")),
            description=_opt_str(data.get("description")),
            locations=_opt_str_list(data.get("locations")),
            education_level=_opt_enum(data.get("education_level"), EDUCATION_LEVELS),
            years_of_experience=_opt_experience(data.get("years_of_experience")),
            role_type=_opt_enum(data.get("role_type"), ROLE_TYPES),
            employment_type=_opt_enum(data.get("employment_type"), EMPLOYMENT_TYPES),
            is_internship=data.get("is_internship") if isinstance(data.get("is_internship"), bool) else None,
            internship_requirements=_opt_internship(data.get("internship_requirements")),
            additional_requirements=_opt_str(data.get("additional_requirements")),
            compensation=_opt_compensation(data.get("compensation")),
            remote_options=_opt_enum(data.get("remote_options"), REMOTE_OPTIONS),
            equity=_opt_equity(data.get("equity")),
        )


def _opt_str(v: Any) -> str | None:
    if not isinstance(v, str):
        return None
    s = v.strip()
    return s or None


def _opt_num(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return v


def _opt_str_list(v: Any) -> list[str] | None:
    if not isinstance(v, list):
        return None
    out = [s.strip() for s in v if isinstance(s, str) and s.strip()]
    return out or None


def _opt_enum(v: Any, allowed: tuple[str, ...]) -> str | None:
    s = _opt_str(v)
    if s is None:
        return None
    s = s.lower()
    return s if s in allowed else None


def _opt_experience(v: Any) -> ExperienceRange | None:
    if not isinstance(v, dict):
        return None
    lo = _opt_num(v.get("min"))
    if lo is None:
        return None
    return ExperienceRange(min=lo, max=_opt_num(v.get("max")))


def _opt_internship(v: Any) -> InternshipRequirements | None:
    if not isinstance(v, dict):
        return None
    req = InternshipRequirements(
        graduation_date=_opt_str(v.get("graduation_date")),
        eligible_programs=_opt_str_list(v.get("eligible_programs")),
        additional_requirements=_opt_str(v.get("additional_requirements")),
    )
    if req == InternshipRequirements():
        return None
    return req


def _opt_compensation(v: Any) -> Compensation | None:
    if not isinstance(v, dict):
        return None
    kind = _opt_enum(v.get("type"), COMPENSATION_TYPES)
    if kind is None:
        return None
    return Compensation(
        type=kind,
        min=_opt_num(v.get("min")),
        max=_opt_num(v.get("max")),
        currency=_opt_str(v.get("currency")),
    )


def _opt_equity(v: Any) -> Equity | None:
    if not isinstance(v, dict) or not isinstance(v.get("offered"), bool):
        return None
    return Equity(
        offered=v["offered"],
        percentage=_opt_num(v.get("percentage")),
        details=_opt_str(v.get("details")),
    )


# =============================================================================
# JOB
# =============================================================================
@dataclass
class Job:
    """
    A posting tracked for a company. `url` is the natural key and never changes;
    `is_fetched=False` marks a placeholder whose details haven't been parsed.
    """

    id: int
    company_id: int
    url: str
    title: str
    description: str = ""
    details: JobDetails = field(default_factory=JobDetails)
    source: str | None = None
    is_fetched: bool = False
    first_seen_at: datetime | None = None
    last_scraped: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


# =============================================================================
# METRICS (append-only, one per scrape attempt)
# =============================================================================
@dataclass(frozen=True)
class ScrapingMetrics:
    company_id: int
    scraped_at: datetime
    success: bool
    total_jobs_found: int | None = None
    new_jobs_created: int | None = None
    existing_jobs_skipped: int | None = None
    jobs_soft_deleted: int | None = None
    scrape_duration_ms: int | None = None
    ats_type: str | None = None
    error_type: str | None = None
    error_message: str | None = None
    net_job_change: int | None = None
