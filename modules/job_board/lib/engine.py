"""
Scrape orchestrator for the job-board pipeline.

Per company:
  backoff check -> polite delay + GET -> adapter links -> reconcile ->
  backoff/last_scraped update -> detail fetches queued -> metrics row

Features:
  - Per-company in-process lock (a second concurrent scrape is skipped)
  - Every failure recorded as ONE company error through an atomic
    read-modify-write (`add_company_error`), which feeds the backoff model
  - Guard against an empty link list wiping out a company's active jobs
  - Dependency injection for testability (`get_adapter`, `sleep`, `clock`)
  - Structured logging via `logging_bridge`
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

import requests

from . import logging_bridge
from .adapters.base import JobLinkAdapter
from .backoff import (
    MAX_TOTAL_FAILURES,
    PROBLEMATIC_ERROR_COUNT,
    calculate_backoff_after_failure,
    calculate_backoff_after_success,
    get_backoff_status_description,
    recent_errors,
    should_skip_due_to_backoff,
)
from .config import Settings
from .db import JobStore
from .extraction import ExtractionService
from .http_client import HttpClient
from .metrics import build_metrics
from .models import Company, ErrorType, ScrapingError, error_type_str
from .page_render import BrowserRenderer
from .reconciler import ReconcileResult, reconcile
from .utils import utc_now

TASK_FETCH_JOB_DETAILS = "fetch_job_details"
TASK_SCRAPE_COMPANY = "scrape_company"


# =============================================================================
# ERRORS / RESULTS
# =============================================================================
class ScrapeError(Exception):
    """A failed scrape step, tagged with the error type the backoff model should see."""

    def __init__(self, error_type: ErrorType | str, message: str, *, status: int | None = None):
        super().__init__(message)
        self.error_type = error_type_str(error_type)
        self.message = message
        self.status = status


@dataclass
class ScrapeOutcome:
    company_id: int
    success: bool
    error: str | None = None
    error_type: str | None = None
    skipped: bool = False
    ats_type: str | None = None
    total_found: int | None = None
    new_jobs_count: int | None = None
    skipped_jobs_count: int | None = None
    soft_deleted_count: int | None = None
    restored_count: int | None = None
    detail_fetches_scheduled: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def classify_status(status: int) -> ErrorType:
    if status == 401:
        return ErrorType.UNAUTHORIZED
    if status == 403:
        return ErrorType.FORBIDDEN
    if status == 429:
        return ErrorType.RATE_LIMITED
    if status == 503:
        return ErrorType.SERVICE_UNAVAILABLE
    if 500 <= status < 600:
        return ErrorType.SERVER_ERROR
    return ErrorType.FETCH_FAILED


def classify_exception(exc: BaseException) -> ErrorType:
    """Transport failures: timeouts vs. connection problems vs. anything else."""
    if isinstance(exc, requests.Timeout) or "timed out" in str(exc).lower():
        return ErrorType.TIMEOUT
    if isinstance(exc, requests.ConnectionError):
        return ErrorType.NETWORK_ERROR
    return ErrorType.FETCH_FAILED


# =============================================================================
# DEFAULT ADAPTER LOOKUP (PRODUCTION)
# =============================================================================
def _default_get_adapter(kind: str) -> type[JobLinkAdapter]:
    from .adapters.registry import get as get_adapter_class

    return get_adapter_class(kind)


# =============================================================================
# PIPELINE
# =============================================================================
class JobBoardPipeline:
    """
    Owns the collaborators for one process: datastore, HTTP client, extraction
    service, task queue and (optionally) a JS-rendering fetcher.

    All public operations return structured results instead of raising.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        http: HttpClient,
        extractor: ExtractionService | None,
        queue: Any,
        renderer: BrowserRenderer | None = None,
        get_adapter: Callable[[str], type[JobLinkAdapter]] | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.http = http
        self.extractor = extractor
        self.queue = queue
        self.renderer = renderer
        self.get_adapter = get_adapter or _default_get_adapter
        self.sleep = sleep
        self.clock = clock

        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Company scrape
    # -------------------------------------------------------------------------
    def scrape_company(self, company_id: int) -> ScrapeOutcome:
        company = self.store.get_company(company_id)
        if company is None:
            return ScrapeOutcome(company_id=company_id, success=False, error="Company not found")

        lock = self._company_lock(company_id)
        if not lock.acquire(blocking=False):
            logging_bridge.activity({
                "component": "job_board.engine",
                "op": "skipped_in_progress",
                "company_id": company_id,
            })
            return ScrapeOutcome(
                company_id=company_id,
                success=False,
                skipped=True,
                error="Company skipped: scrape already in progress",
            )
        try:
            return self._scrape_locked(company)
        finally:
            lock.release()

    def _scrape_locked(self, company: Company) -> ScrapeOutcome:
        now = self.clock()
        ats_type = company.source_type.value

        reason = self._skip_reason(company, now)
        if reason:
            logging_bridge.activity({
                "component": "job_board.engine",
                "op": "skipped_backoff",
                "company_id": company.id,
                "company": company.name,
                "reason": reason,
            })
            return ScrapeOutcome(
                company_id=company.id,
                success=False,
                skipped=True,
                error=f"Company skipped: {reason}",
                ats_type=ats_type,
            )

        t0 = time.perf_counter_ns()
        try:
            html = self._fetch_board(company)
            links = self._extract_links(company, html)
            if self.settings.guard_empty_results and not links and self.store.active_job_urls(company.id):
                raise ScrapeError(
                    ErrorType.PARSE_ERROR,
                    "Adapter returned no job links but the company has active jobs; refusing to soft-delete them",
                )
            result = reconcile(self.store, company.id, links, company.job_board_url, ats_type, self.clock())
        except Exception as e:
            etype = e.error_type if isinstance(e, ScrapeError) else ErrorType.SCRAPING_FAILED.value
            message = str(e) or e.__class__.__name__
            self.add_company_error(company.id, etype, message, company.job_board_url)
            duration_ms = (time.perf_counter_ns() - t0) // 1_000_000
            self._record_metrics(
                build_metrics(
                    company_id=company.id,
                    scraped_at=now,
                    duration_ms=duration_ms,
                    ats_type=ats_type,
                    error_type=etype,
                    error_message=message,
                )
            )
            logging_bridge.error({
                "component": "job_board.engine",
                "op": "scrape_failed",
                "company_id": company.id,
                "company": company.name,
                "url": company.job_board_url,
                "error_type": etype,
                "error": message,
                "duration_ms": duration_ms,
            })
            return ScrapeOutcome(
                company_id=company.id,
                success=False,
                error=message,
                error_type=etype,
                ats_type=ats_type,
            )

        # placeholders are already committed; queue their detail fetches first
        scheduled = self._schedule_detail_fetches(result)
        self._mark_success(company.id)
        duration_ms = (time.perf_counter_ns() - t0) // 1_000_000
        self._record_metrics(
            build_metrics(
                company_id=company.id,
                scraped_at=now,
                duration_ms=duration_ms,
                ats_type=ats_type,
                result=result,
            )
        )
        logging_bridge.activity({
            "component": "job_board.engine",
            "op": "scrape_succeeded",
            "company_id": company.id,
            "company": company.name,
            "ats_type": ats_type,
            "total_found": result.total_found,
            "new": result.new_jobs_count,
            "skipped": result.skipped_jobs_count,
            "soft_deleted": result.soft_deleted_count,
            "restored": result.restored_count,
            "detail_fetches_scheduled": scheduled,
            "duration_ms": duration_ms,
        })
        return ScrapeOutcome(
            company_id=company.id,
            success=True,
            ats_type=ats_type,
            total_found=result.total_found,
            new_jobs_count=result.new_jobs_count,
            skipped_jobs_count=result.skipped_jobs_count,
            soft_deleted_count=result.soft_deleted_count,
            restored_count=result.restored_count,
            detail_fetches_scheduled=scheduled,
        )

    def _skip_reason(self, company: Company, now: datetime) -> str | None:
        if self.settings.skip_network:
            return "network disabled (skip_network)"
        if should_skip_due_to_backoff(company.backoff_info, now=now):
            return get_backoff_status_description(company.backoff_info, now=now)
        recent = recent_errors(company.scraping_errors, now)
        if len(recent) >= PROBLEMATIC_ERROR_COUNT:
            return f"{len(recent)} errors in 24h"
        return None

    def _fetch_board(self, company: Company) -> str:
        if self.settings.job_board_delay_s:
            self.sleep(self.settings.job_board_delay_s)
        try:
            res = self.http.fetch(company.job_board_url)
        except requests.RequestException as e:
            raise ScrapeError(classify_exception(e), f"{e.__class__.__name__}: {e}") from e
        if not res.ok:
            raise ScrapeError(classify_status(res.status), f"HTTP {res.status}", status=res.status)
        return res.body

    def _extract_links(self, company: Company, html: str) -> list[str]:
        try:
            adapter_cls = self.get_adapter(company.source_type.value)
            adapter = adapter_cls(
                http=self.http,
                extractor=self.extractor,
                page_delay_s=self.settings.job_board_delay_s,
                sleep=self.sleep,
            )
            return list(adapter.extract_job_links(html, company.job_board_url))
        except Exception as e:
            raise ScrapeError(ErrorType.SCRAPING_FAILED, str(e) or e.__class__.__name__) from e

    def _mark_success(self, company_id: int) -> None:
        done = self.clock()

        def _mutate(c: Company) -> Company:
            return replace(
                c,
                backoff_info=calculate_backoff_after_success(c.backoff_info, now=done),
                last_scraped=done,
            )

        try:
            self.store.update_company(company_id, _mutate)
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.engine",
                "op": "mark_success_failed",
                "company_id": company_id,
                "error": repr(e),
            })

    def _schedule_detail_fetches(self, result: ReconcileResult) -> int:
        scheduled = 0
        for i, job in enumerate(result.new_jobs):
            if self._enqueue_details(job.id, job.url, self.settings.job_details_delay_s * (i + 1)):
                scheduled += 1
        return scheduled

    def _enqueue_details(self, job_id: int, job_url: str, delay_s: float) -> bool:
        try:
            self.queue.enqueue(delay_s, TASK_FETCH_JOB_DETAILS, {"job_id": job_id, "job_url": job_url})
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.engine",
                "op": "enqueue_failed",
                "job_id": job_id,
                "url": job_url,
                "error": repr(e),
            })
            return False
        return True

    def _record_metrics(self, m: Any) -> None:
        try:
            self.store.insert_metrics(m)
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.engine",
                "op": "metrics_failed",
                "company_id": m.company_id,
                "error": repr(e),
            })

    def _company_lock(self, company_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = self._locks[company_id] = threading.Lock()
            return lock

    # -------------------------------------------------------------------------
    # Fleet
    # -------------------------------------------------------------------------
    def scrape_all_companies(self) -> dict[str, Any]:
        """Scrape every company in turn; one company's failure never stops the loop."""
        try:
            companies = self.store.list_companies()
        except Exception as e:
            logging_bridge.error({"component": "job_board.engine", "op": "list_companies_failed", "error": repr(e)})
            return {"success": False, "error": str(e), "companies_scheduled": 0}

        t0 = time.perf_counter_ns()
        tally = {"succeeded": 0, "failed": 0, "skipped": 0}
        for company in companies:
            try:
                outcome = self.scrape_company(company.id)
                if outcome.skipped:
                    tally["skipped"] += 1
                elif outcome.success:
                    tally["succeeded"] += 1
                else:
                    tally["failed"] += 1
            except Exception as e:
                tally["failed"] += 1
                logging_bridge.error({
                    "component": "job_board.engine",
                    "op": "company_scrape_crashed",
                    "company_id": company.id,
                    "company": company.name,
                    "error": repr(e),
                })
            if self.settings.inter_company_delay_s:
                self.sleep(self.settings.inter_company_delay_s)

        logging_bridge.activity({
            "component": "job_board.engine",
            "op": "scrape_all_done",
            "companies": len(companies),
            "duration_ms": (time.perf_counter_ns() - t0) // 1_000_000,
            **tally,
        })
        return {"success": True, "companies_scheduled": len(companies), **tally}

    # -------------------------------------------------------------------------
    # Retry surface / manual overrides
    # -------------------------------------------------------------------------
    def retry_failed_job(self, job_id: int) -> dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            return {"success": False, "error": "Job not found"}
        if job.is_fetched:
            return {"success": False, "error": "Job details already fetched"}
        if not self._enqueue_details(job.id, job.url, self.settings.job_details_delay_s):
            return {"success": False, "error": "Could not schedule detail fetch"}
        return {"success": True, "retried_count": 1}

    def retry_failed_jobs_for_company(self, company_id: int) -> dict[str, Any]:
        if self.store.get_company(company_id) is None:
            return {"success": False, "error": "Company not found"}
        retried = 0
        for i, job in enumerate(self.store.failed_jobs(company_id)):
            if self._enqueue_details(job.id, job.url, self.settings.job_details_delay_s * (i + 1)):
                retried += 1
        logging_bridge.activity({
            "component": "job_board.engine",
            "op": "retry_failed_jobs",
            "company_id": company_id,
            "retried": retried,
        })
        return {"success": True, "retried_count": retried}

    def refetch_job(self, job_id: int) -> dict[str, Any]:
        """Re-run enrichment for any job, fetched or not."""
        job = self.store.get_job(job_id)
        if job is None:
            return {"success": False, "error": "Job not found"}
        if not self._enqueue_details(job.id, job.url, self.settings.job_details_delay_s):
            return {"success": False, "error": "Could not schedule detail fetch"}
        return {"success": True}

    def clear_company_errors(self, company_id: int) -> dict[str, Any]:
        """Manual override: empty error log and no backoff (also lifts permanent backoff)."""
        try:
            updated = self.store.update_company(
                company_id, lambda c: replace(c, scraping_errors=[], backoff_info=None)
            )
        except Exception as e:
            return {"success": False, "error": str(e)}
        if updated is None:
            return {"success": False, "error": "Company not found"}
        logging_bridge.activity({"component": "job_board.engine", "op": "errors_cleared", "company_id": company_id})
        return {"success": True}

    def cleanup_old_errors(self, now: datetime | None = None) -> dict[str, Any]:
        """Drop errors older than 24h from every company's log."""
        now = now or self.clock()
        cleaned = 0
        updated = 0
        companies = self.store.list_companies()
        for company in companies:
            if not company.scraping_errors:
                continue
            if len(recent_errors(company.scraping_errors, now)) == len(company.scraping_errors):
                continue
            removed = 0

            def _prune(c: Company) -> Company:
                nonlocal removed
                keep = recent_errors(c.scraping_errors, now)
                removed = len(c.scraping_errors) - len(keep)
                return replace(c, scraping_errors=keep)

            self.store.update_company(company.id, _prune)
            if removed:
                cleaned += removed
                updated += 1

        result = {
            "total_errors_cleaned": cleaned,
            "companies_updated": updated,
            "total_companies_checked": len(companies),
        }
        logging_bridge.activity({"component": "job_board.engine", "op": "cleanup_errors", **result})
        return result

    # -------------------------------------------------------------------------
    # Error recording (must never raise)
    # -------------------------------------------------------------------------
    def add_company_error(
        self,
        company_id: int,
        error_type: ErrorType | str,
        message: str,
        url: str | None = None,
    ) -> None:
        etype = error_type_str(error_type)
        try:
            now = self.clock()
            entry = ScrapingError(timestamp=now, error_type=etype, error_message=message, url=url)

            def _mutate(c: Company) -> Company:
                errors = recent_errors(c.scraping_errors, now) + [entry]
                backoff = calculate_backoff_after_failure(c.backoff_info, etype, errors, now=now)
                return replace(c, scraping_errors=errors, backoff_info=backoff)

            updated = self.store.update_company(company_id, _mutate)
            if updated is None:
                return
            info = updated.backoff_info
            logging_bridge.activity({
                "component": "job_board.engine",
                "op": "company_error",
                "company_id": company_id,
                "error_type": etype,
                "message": message,
                "url": url,
                "recent_errors": len(updated.scraping_errors),
                "backoff": get_backoff_status_description(info, now=now),
                "permanent": bool(info and info.total_failures >= MAX_TOTAL_FAILURES),
            })
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.engine",
                "op": "add_company_error_failed",
                "company_id": company_id,
                "error_type": etype,
                "error": repr(e),
            })

    # -------------------------------------------------------------------------
    # Queue dispatch
    # -------------------------------------------------------------------------
    def run_task(self, task_id: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Entry point for queued work (scheduler DateTrigger jobs / inline queue)."""
        from .enricher import enrich_job

        try:
            if task_id == TASK_FETCH_JOB_DETAILS:
                return enrich_job(self, int(payload["job_id"]), str(payload["job_url"]))
            if task_id == TASK_SCRAPE_COMPANY:
                return self.scrape_company(int(payload["company_id"])).to_dict()
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.engine",
                "op": "task_failed",
                "task_id": task_id,
                "payload": dict(payload),
                "error": repr(e),
            })
            return {"success": False, "error": str(e)}

        logging_bridge.error({"component": "job_board.engine", "op": "unknown_task", "task_id": task_id})
        return {"success": False, "error": f"Unknown task: {task_id}"}
