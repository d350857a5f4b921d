from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlsplit

from . import logging_bridge
from .adapters.utils import resolve_url
from .db import JobStore
from .models import Job
from .utils import utc_now

RECENT_WINDOW = timedelta(days=7)


@dataclass
class ReconcileResult:
    total_found: int = 0
    new_jobs_count: int = 0
    skipped_jobs_count: int = 0
    soft_deleted_count: int = 0
    restored_count: int = 0
    new_jobs: list[Job] = field(default_factory=list)


def placeholder_title(url: str) -> str:
    """Last path segment with dashes/underscores as spaces, e.g. '.../senior-engineer' -> 'senior engineer'."""
    path = urlsplit(url).path.rstrip("/")
    slug = path.rsplit("/", 1)[-1] if path else ""
    title = slug.replace("-", " ").replace("_", " ").strip()
    return title or "Job"


def reconcile(
    store: JobStore,
    company_id: int,
    links: Sequence[str],
    base_url: str,
    ats_type: str,
    now: datetime | None = None,
) -> ReconcileResult:
    """
    Diff a freshly extracted link list against the company's stored jobs.

    - seen within the last 7 days: last_scraped bumped, counted as skipped
    - known but stale: last_scraped bumped
    - soft-deleted and back on the board: restored
    - never seen: placeholder inserted (is_fetched=False) and returned in
      `new_jobs` so the caller can schedule detail fetches afterwards
    - active but missing from `links`: soft-deleted

    Re-running with the same links is a no-op apart from timestamps.
    """
    now = now or utc_now()
    week_ago = now - RECENT_WINDOW
    result = ReconcileResult(total_found=len(links))

    previously_active = store.active_job_urls(company_id)
    found: set[str] = set()

    for link in links:
        url = resolve_url(link, base_url)
        if url in found:
            continue
        found.add(url)

        recent = store.find_recently_scraped(company_id, url, week_ago)
        if recent is not None:
            store.update_last_scraped(recent.id, now)
            result.skipped_jobs_count += 1
            continue

        existing = store.find_by_url(company_id, url)
        if existing is not None:
            if existing.deleted_at is not None:
                store.restore(existing.id, now)
                result.restored_count += 1
            else:
                store.update_last_scraped(existing.id, now)
            continue

        job = store.insert_job(
            company_id=company_id,
            url=url,
            title=placeholder_title(url),
            description="",
            source=f"{ats_type}-scraper",
            now=now,
        )
        if job is None:
            # Lost a race with a concurrent insert of the same URL.
            continue
        result.new_jobs.append(job)
        result.new_jobs_count += 1

    for url in previously_active:
        if url in found:
            continue
        job = store.find_by_url(company_id, url)
        if job is not None and job.deleted_at is None and store.soft_delete(job.id, now):
            result.soft_deleted_count += 1

    logging_bridge.activity({
        "component": "job_board.reconciler",
        "op": "reconciled",
        "company_id": company_id,
        "ats_type": ats_type,
        "total_found": result.total_found,
        "new": result.new_jobs_count,
        "skipped": result.skipped_jobs_count,
        "soft_deleted": result.soft_deleted_count,
        "restored": result.restored_count,
    })
    return result
