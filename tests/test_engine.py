# tests/test_engine.py
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
import requests
from conftest import FakeHttp

from modules.job_board.lib import engine
from modules.job_board.lib.adapters import registry
from modules.job_board.lib.adapters.base import JobLinkAdapter
from modules.job_board.lib.http_client import FetchResult
from modules.job_board.lib.models import BackoffInfo, ErrorType, ScrapingError

GH_BASE = "https://job-boards.greenhouse.io/acme"
NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _gh_page(ids):
    return "<html>" + "".join(f'<a href="{GH_BASE}/jobs/{i}">x</a>' for i in ids) + "</html>"


@pytest.fixture
def company(store):
    return store.add_company("Acme", GH_BASE, "greenhouse")


# ----------------------------------------------------------------------
# Happy path
# ----------------------------------------------------------------------
def test_scrape_company_inserts_jobs_queues_details_and_records_metrics(pipeline, store, http, queue, company):
    http.pages[GH_BASE] = _gh_page([1, 2])

    out = pipeline.scrape_company(company.id)

    assert out.success is True
    assert out.total_found == 2
    assert out.new_jobs_count == 2
    assert out.detail_fetches_scheduled == 2
    assert [t[1] for t in queue.tasks] == [engine.TASK_FETCH_JOB_DETAILS] * 2
    assert queue.tasks[0][2] == {"job_id": 1, "job_url": f"{GH_BASE}/jobs/1"}

    c = store.get_company(company.id)
    assert c.last_scraped is not None
    assert c.backoff_info.level == 0
    assert c.backoff_info.last_successful_scrape is not None

    [m] = store.company_metrics(company.id)
    assert m.success is True
    assert m.total_jobs_found == 2
    assert m.new_jobs_created == 2
    assert m.net_job_change == 2
    assert m.ats_type == "greenhouse"


def test_detail_fetches_are_staggered(make_pipeline, settings, queue, http, company):
    settings.job_details_delay_s = 2.5
    http.pages[GH_BASE] = _gh_page([1, 2, 3])

    make_pipeline().scrape_company(company.id)

    assert [t[0] for t in queue.tasks] == [2.5, 5.0, 7.5]


def test_locked_database_after_reconcile_still_queues_details_and_metrics(
    pipeline, store, http, queue, company, monkeypatch
):
    http.pages[GH_BASE] = _gh_page([1, 2])

    def _locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "update_company", _locked)

    out = pipeline.scrape_company(company.id)

    assert out.success is True
    assert out.new_jobs_count == 2
    assert out.detail_fetches_scheduled == 2
    assert [t[2]["job_url"] for t in queue.tasks] == [f"{GH_BASE}/jobs/1", f"{GH_BASE}/jobs/2"]
    [m] = store.company_metrics(company.id)
    assert m.success is True
    assert m.new_jobs_created == 2


def test_board_pagination_uses_injected_sleep(make_pipeline, settings, http, company):
    settings.job_board_delay_s = 1.5
    anchors = "".join(f'<a href="{GH_BASE}/jobs/{i}">x</a>' for i in range(1, 51))
    http.pages[GH_BASE] = f"<html><h2>60 jobs</h2>{anchors}</html>"
    http.pages[f"{GH_BASE}?page=2"] = _gh_page(range(51, 61))
    slept = []

    out = make_pipeline(sleep=slept.append).scrape_company(company.id)

    assert out.total_found == 60
    assert slept == [1.5, 1.5]  # board GET, then page 2


def test_second_scrape_skips_existing_and_deletes_missing(pipeline, store, http, queue, company):
    http.pages[GH_BASE] = _gh_page([1, 2])
    pipeline.scrape_company(company.id)
    queue.tasks.clear()

    http.pages[GH_BASE] = _gh_page([2, 3])
    out = pipeline.scrape_company(company.id)

    assert out.new_jobs_count == 1
    assert out.skipped_jobs_count == 1
    assert out.soft_deleted_count == 1
    assert len(queue.tasks) == 1
    assert sorted(store.active_job_urls(company.id)) == [f"{GH_BASE}/jobs/2", f"{GH_BASE}/jobs/3"]


def test_success_lowers_existing_backoff_level(pipeline, store, http, company):
    store.update_company(
        company.id,
        lambda c: replace(c, backoff_info=BackoffInfo(level=2, next_allowed_scrape=NOW, consecutive_failures=3)),
    )
    http.pages[GH_BASE] = _gh_page([1])

    pipeline.scrape_company(company.id)

    info = store.get_company(company.id).backoff_info
    assert info.level == 1
    assert info.consecutive_failures == 0


# ----------------------------------------------------------------------
# Failure classification: exactly one error per failed scrape
# ----------------------------------------------------------------------
@pytest.mark.parametrize(
    "page,expected",
    [
        (FetchResult(status=401, body="", ok=False), "unauthorized"),
        (FetchResult(status=403, body="", ok=False), "forbidden"),
        (FetchResult(status=429, body="", ok=False), "rate_limited"),
        (FetchResult(status=503, body="", ok=False), "service_unavailable"),
        (FetchResult(status=502, body="", ok=False), "server_error"),
        (FetchResult(status=404, body="", ok=False), "fetch_failed"),
        (requests.Timeout("read timed out"), "timeout"),
        (requests.ConnectionError("refused"), "network_error"),
    ],
)
def test_fetch_failures_are_classified(pipeline, store, http, queue, company, page, expected):
    http.pages[GH_BASE] = page

    out = pipeline.scrape_company(company.id)

    assert out.success is False
    assert out.error_type == expected
    c = store.get_company(company.id)
    assert [e.error_type for e in c.scraping_errors] == [expected]
    assert c.scraping_errors[0].url == GH_BASE
    assert c.backoff_info.consecutive_failures == 1
    assert queue.tasks == []

    [m] = store.company_metrics(company.id)
    assert m.success is False
    assert m.error_type == expected


def test_adapter_exception_is_scraping_failed(make_pipeline, store, http, company):
    class Broken(JobLinkAdapter):
        kind = "broken"

        def extract_job_links(self, html, base_url):
            raise RuntimeError("layout changed")

    http.pages[GH_BASE] = "<html></html>"
    out = make_pipeline(get_adapter=lambda kind: Broken).scrape_company(company.id)

    assert out.error_type == ErrorType.SCRAPING_FAILED.value
    assert "layout changed" in out.error
    assert len(store.get_company(company.id).scraping_errors) == 1


def test_generic_board_without_extraction_records_scraping_failed(make_pipeline, store, http):
    other = store.add_company("Plain", "https://plain.test/careers", "other")
    http.pages["https://plain.test/careers"] = "<html></html>"

    out = make_pipeline(extractor=None).scrape_company(other.id)

    assert out.success is False
    assert out.error_type == "scraping_failed"


def test_empty_result_guard_protects_active_jobs(pipeline, store, http, company):
    http.pages[GH_BASE] = _gh_page([1, 2])
    pipeline.scrape_company(company.id)

    http.pages[GH_BASE] = "<html>maintenance</html>"
    out = pipeline.scrape_company(company.id)

    assert out.success is False
    assert out.error_type == "parse_error"
    assert len(store.active_job_urls(company.id)) == 2


def test_empty_result_guard_can_be_disabled(make_pipeline, settings, store, http, company):
    settings.guard_empty_results = False
    p = make_pipeline()
    http.pages[GH_BASE] = _gh_page([1, 2])
    p.scrape_company(company.id)

    http.pages[GH_BASE] = "<html>maintenance</html>"
    out = p.scrape_company(company.id)

    assert out.success is True
    assert out.soft_deleted_count == 2


def test_empty_board_for_new_company_is_success(pipeline, http, company):
    http.pages[GH_BASE] = "<html>no openings</html>"
    out = pipeline.scrape_company(company.id)
    assert out.success is True
    assert out.total_found == 0


# ----------------------------------------------------------------------
# Skips
# ----------------------------------------------------------------------
def test_company_not_found(pipeline):
    out = pipeline.scrape_company(42)
    assert out.success is False
    assert out.error == "Company not found"


def test_backoff_window_skips_without_fetching(pipeline, store, http, company):
    store.update_company(
        company.id,
        lambda c: replace(
            c, backoff_info=BackoffInfo(level=2, next_allowed_scrape=datetime.now(timezone.utc) + timedelta(hours=1))
        ),
    )

    out = pipeline.scrape_company(company.id)

    assert out.skipped is True
    assert out.success is False
    assert "Backoff level 2" in out.error
    assert http.calls == []
    assert store.company_metrics(company.id) == []


def test_permanent_backoff_skips(pipeline, store, http, company):
    store.update_company(
        company.id,
        lambda c: replace(c, backoff_info=BackoffInfo(level=1, next_allowed_scrape=None, total_failures=50)),
    )
    out = pipeline.scrape_company(company.id)
    assert out.skipped is True
    assert "Permanent" in out.error
    assert http.calls == []


def test_many_recent_errors_skip(pipeline, store, http, company):
    now = datetime.now(timezone.utc)
    errors = [ScrapingError(timestamp=now - timedelta(minutes=i), error_type="timeout", error_message="x") for i in range(10)]
    store.update_company(company.id, lambda c: replace(c, scraping_errors=errors))

    out = pipeline.scrape_company(company.id)

    assert out.skipped is True
    assert http.calls == []


def test_skip_network(make_pipeline, settings, http, company):
    settings.skip_network = True
    out = make_pipeline().scrape_company(company.id)
    assert out.skipped is True
    assert http.calls == []


def test_concurrent_scrape_of_same_company_is_skipped(make_pipeline, store, company):
    entered = threading.Event()
    release = threading.Event()

    class SlowHttp(FakeHttp):
        def fetch(self, url, **kwargs):
            entered.set()
            release.wait(5)
            return super().fetch(url, **kwargs)

    p = make_pipeline(http=SlowHttp({GH_BASE: _gh_page([1])}))
    results = []
    t = threading.Thread(target=lambda: results.append(p.scrape_company(company.id)))
    t.start()
    assert entered.wait(5)

    second = p.scrape_company(company.id)
    release.set()
    t.join(5)

    assert second.skipped is True
    assert "already in progress" in second.error
    assert results[0].success is True
    assert store.count_jobs(company.id) == 1


# ----------------------------------------------------------------------
# Fleet + overrides
# ----------------------------------------------------------------------
def test_scrape_all_continues_past_failures(pipeline, store, http, company):
    broken = store.add_company("Broken", "https://broken.test/jobs", "greenhouse")
    http.pages[GH_BASE] = _gh_page([1])
    http.pages[broken.job_board_url] = FetchResult(status=500, body="", ok=False)

    out = pipeline.scrape_all_companies()

    assert out == {"success": True, "companies_scheduled": 2, "succeeded": 1, "failed": 1, "skipped": 0}


def test_scrape_all_isolates_a_throwing_adapter(make_pipeline, store, http):
    class Broken(JobLinkAdapter):
        kind = "ashby"

        def extract_job_links(self, html, base_url):
            raise RuntimeError("unexpected markup")

    ids = []
    for i in range(1, 6):
        url = f"https://board{i}.test/jobs"
        ids.append(store.add_company(f"Co{i}", url, "ashby" if i == 3 else "greenhouse").id)
        http.pages[url] = "<html></html>"
    p = make_pipeline(get_adapter=lambda kind: Broken if kind == "ashby" else registry.get(kind))

    out = p.scrape_all_companies()

    assert out == {"success": True, "companies_scheduled": 5, "succeeded": 4, "failed": 1, "skipped": 0}
    assert http.calls == [f"https://board{i}.test/jobs" for i in range(1, 6)]
    for cid in ids:
        assert len(store.company_metrics(cid)) == 1
    assert [e.error_type for e in store.get_company(ids[2]).scraping_errors] == ["scraping_failed"]


def test_scrape_all_sleeps_between_companies(make_pipeline, settings, store, http, company):
    settings.inter_company_delay_s = 2.0
    store.add_company("Second", "https://second.test/jobs", "greenhouse")
    slept = []

    make_pipeline(sleep=slept.append).scrape_all_companies()

    assert slept == [2.0, 2.0]


def test_add_company_error_feeds_backoff_after_three(pipeline, store, company):
    for _ in range(3):
        pipeline.add_company_error(company.id, ErrorType.TIMEOUT, "slow")

    c = store.get_company(company.id)
    assert len(c.scraping_errors) == 3
    assert c.backoff_info.consecutive_failures == 3
    assert c.backoff_info.level == 1


def test_add_company_error_never_raises(pipeline):
    pipeline.add_company_error(999, "timeout", "no such company")


def test_add_company_error_prunes_old_entries(make_pipeline, store, company):
    old = ScrapingError(timestamp=NOW - timedelta(days=2), error_type="timeout", error_message="old")
    store.update_company(company.id, lambda c: replace(c, scraping_errors=[old]))

    make_pipeline(clock=lambda: NOW).add_company_error(company.id, "blocked", "new")

    assert [e.error_message for e in store.get_company(company.id).scraping_errors] == ["new"]


def test_clear_company_errors(pipeline, store, company):
    for _ in range(3):
        pipeline.add_company_error(company.id, "blocked", "nope")

    assert pipeline.clear_company_errors(company.id) == {"success": True}
    c = store.get_company(company.id)
    assert c.scraping_errors == []
    assert c.backoff_info is None
    assert pipeline.clear_company_errors(999)["success"] is False


def test_clear_company_errors_lifts_permanent_backoff(pipeline, store, http, company):
    store.update_company(
        company.id,
        lambda c: replace(
            c,
            scraping_errors=[ScrapingError(timestamp=datetime.now(timezone.utc), error_type="blocked", error_message="x")],
            backoff_info=BackoffInfo(level=7, next_allowed_scrape=None, consecutive_failures=50, total_failures=50),
        ),
    )
    http.pages[GH_BASE] = _gh_page([1])
    assert pipeline.scrape_company(company.id).skipped is True

    pipeline.clear_company_errors(company.id)
    out = pipeline.scrape_company(company.id)

    assert out.skipped is False
    assert out.success is True
    assert store.get_company(company.id).backoff_info.total_failures == 0


def test_cleanup_old_errors(make_pipeline, store, company):
    other = store.add_company("Other", "https://other.test", "greenhouse")
    store.add_company("Clean", "https://clean.test", "greenhouse")
    old = ScrapingError(timestamp=NOW - timedelta(hours=30), error_type="timeout", error_message="old")
    fresh = ScrapingError(timestamp=NOW - timedelta(hours=1), error_type="timeout", error_message="fresh")
    store.update_company(company.id, lambda c: replace(c, scraping_errors=[old, old, fresh]))
    store.update_company(other.id, lambda c: replace(c, scraping_errors=[fresh]))

    out = make_pipeline().cleanup_old_errors(now=NOW)

    assert out == {"total_errors_cleaned": 2, "companies_updated": 1, "total_companies_checked": 3}
    assert store.get_company(company.id).scraping_errors == [fresh]
    assert store.get_company(other.id).scraping_errors == [fresh]


def test_retry_failed_job_paths(pipeline, store, queue, company):
    job = store.insert_job(company_id=company.id, url=f"{GH_BASE}/jobs/1", title="1")

    assert pipeline.retry_failed_job(999) == {"success": False, "error": "Job not found"}
    assert pipeline.retry_failed_job(job.id) == {"success": True, "retried_count": 1}
    assert queue.tasks[-1][1:] == (engine.TASK_FETCH_JOB_DETAILS, {"job_id": job.id, "job_url": job.url})

    from modules.job_board.lib.models import JobDetails

    store.patch_job(job.id, JobDetails(), is_fetched=True)
    assert pipeline.retry_failed_job(job.id) == {"success": False, "error": "Job details already fetched"}
    # refetch ignores the fetched flag
    assert pipeline.refetch_job(job.id) == {"success": True}


def test_retry_failed_jobs_for_company(pipeline, store, queue, company):
    for i in range(3):
        store.insert_job(company_id=company.id, url=f"{GH_BASE}/jobs/{i}", title=str(i))

    assert pipeline.retry_failed_jobs_for_company(company.id) == {"success": True, "retried_count": 3}
    assert len(queue.tasks) == 3
    assert pipeline.retry_failed_jobs_for_company(999)["success"] is False


def test_run_task_unknown_and_malformed(pipeline):
    assert pipeline.run_task("nope", {})["success"] is False
    assert pipeline.run_task(engine.TASK_FETCH_JOB_DETAILS, {})["success"] is False


def test_run_task_scrape_company(pipeline, http, company):
    http.pages[GH_BASE] = _gh_page([1])
    out = pipeline.run_task(engine.TASK_SCRAPE_COMPANY, {"company_id": company.id})
    assert out["success"] is True
    assert out["new_jobs_count"] == 1


@pytest.mark.parametrize(
    "status,expected",
    [(401, ErrorType.UNAUTHORIZED), (403, ErrorType.FORBIDDEN), (429, ErrorType.RATE_LIMITED),
     (500, ErrorType.SERVER_ERROR), (503, ErrorType.SERVICE_UNAVAILABLE), (410, ErrorType.FETCH_FAILED)],
)
def test_classify_status(status, expected):
    assert engine.classify_status(status) is expected


def test_classify_exception_reads_timeout_message():
    # requests surfaces exhausted read-timeout retries as ConnectionError
    exc = requests.ConnectionError("HTTPSConnectionPool: Read timed out. (read timeout=15)")
    assert engine.classify_exception(exc) is ErrorType.TIMEOUT
    assert engine.classify_exception(requests.ConnectionError("Connection refused")) is ErrorType.NETWORK_ERROR
    assert engine.classify_exception(ValueError("?")) is ErrorType.FETCH_FAILED
