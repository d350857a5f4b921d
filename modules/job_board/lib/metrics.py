from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from .db import JobStore
from .models import ScrapingMetrics, error_type_str
from .reconciler import ReconcileResult


def build_metrics(
    *,
    company_id: int,
    scraped_at: datetime,
    duration_ms: int,
    ats_type: str | None,
    result: ReconcileResult | None = None,
    error_type: str | None = None,
    error_message: str | None = None,
) -> ScrapingMetrics:
    """One metrics row for a scrape attempt; `result` is None when it failed."""
    if result is None:
        return ScrapingMetrics(
            company_id=company_id,
            scraped_at=scraped_at,
            success=False,
            scrape_duration_ms=duration_ms,
            ats_type=ats_type,
            error_type=error_type_str(error_type) if error_type else None,
            error_message=error_message,
        )
    return ScrapingMetrics(
        company_id=company_id,
        scraped_at=scraped_at,
        success=True,
        total_jobs_found=result.total_found,
        new_jobs_created=result.new_jobs_count,
        existing_jobs_skipped=result.skipped_jobs_count,
        jobs_soft_deleted=result.soft_deleted_count,
        scrape_duration_ms=duration_ms,
        ats_type=ats_type,
        net_job_change=result.new_jobs_count + result.restored_count - result.soft_deleted_count,
    )


def aggregate_stats(metrics: Sequence[ScrapingMetrics]) -> dict[str, Any]:
    total = len(metrics)
    ok = sum(1 for m in metrics if m.success)
    new_jobs = sum(m.new_jobs_created or 0 for m in metrics)
    deleted = sum(m.jobs_soft_deleted or 0 for m in metrics)
    durations = [m.scrape_duration_ms for m in metrics if m.scrape_duration_ms is not None]
    return {
        "total_scrapes": total,
        "successful_scrapes": ok,
        "failed_scrapes": total - ok,
        "success_rate": ok / total if total else 0.0,
        "total_new_jobs": new_jobs,
        "total_deleted_jobs": deleted,
        "net_job_growth": new_jobs - deleted,
        "avg_scrape_duration_ms": (sum(durations) / len(durations)) if durations else None,
    }


def summarize(
    store: JobStore,
    *,
    company_id: int | None = None,
    hours_back: float = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """aggregate_stats over the trailing window, fleet-wide or for one company."""
    rows = store.recent_metrics(hours_back=hours_back, limit=None, now=now)
    if company_id is not None:
        rows = [m for m in rows if m.company_id == company_id]
    return aggregate_stats(rows)
