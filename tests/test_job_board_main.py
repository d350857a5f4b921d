# tests/test_job_board_main.py
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from conftest import FakeChat, RecordingQueue

from modules.job_board import main
from modules.job_board.lib.extraction import ExtractionService
from modules.job_board.lib.models import ScrapingError
from service.scheduler import InlineTaskQueue


def test_build_pipeline_without_api_key_disables_extraction(settings, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    p = main.build_pipeline(settings)
    try:
        assert p.extractor is None
        assert isinstance(p.queue, InlineTaskQueue)
        assert p.renderer is not None
    finally:
        p.http.close()


def test_build_pipeline_keeps_injected_queue_and_extractor(settings):
    queue = RecordingQueue()
    extractor = ExtractionService(FakeChat())
    p = main.build_pipeline(settings, queue, extractor=extractor)
    try:
        assert p.queue is queue
        assert p.extractor is extractor
    finally:
        p.http.close()


def test_run_rejects_unknown_action():
    out = main.run(action="explode")
    assert out["success"] is False
    assert "Unknown action" in out["error"]


def test_run_scrape_requires_company_id(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    out = main.run(action="scrape", sqlite_path=str(tmp_path / "jb.db"))
    assert out == {"success": False, "error": "company_id is required for action='scrape'"}


def test_run_cleanup_errors(tmp_path, monkeypatch, store):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    c = store.add_company("Acme", "https://acme.test", "greenhouse")

    old = ScrapingError(
        timestamp=datetime.now(timezone.utc) - timedelta(days=3), error_type="timeout", error_message="old"
    )
    store.update_company(c.id, lambda co: replace(co, scraping_errors=[old]))

    out = main.run(action="cleanup_errors", sqlite_path=store.sqlite_path)

    assert out == {"total_errors_cleaned": 1, "companies_updated": 1, "total_companies_checked": 1}


def test_run_scrape_all_with_network_disabled(store, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    store.add_company("Acme", "https://acme.test", "greenhouse")

    out = main.run(sqlite_path=store.sqlite_path, skip_network=True, inter_company_delay_s=0)

    assert out["success"] is True
    assert out["skipped"] == 1
