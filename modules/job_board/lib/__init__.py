# modules/job_board/lib/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .config import ConfigError, Settings
from .db import JobStore
from .engine import JobBoardPipeline, ScrapeOutcome
from .models import BackoffInfo, Company, ErrorType, Job, JobDetails, ScrapingError, ScrapingMetrics, SourceType

__all__ = [
    "BackoffInfo",
    "Company",
    "ConfigError",
    "ErrorType",
    "Job",
    "JobBoardPipeline",
    "JobDetails",
    "JobStore",
    "ScrapeOutcome",
    "ScrapingError",
    "ScrapingMetrics",
    "Settings",
    "SourceType",
]
