# tests/conftest.py
import json
import os
import tempfile
from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from modules.job_board.lib.config import Settings
from modules.job_board.lib.db import JobStore
from modules.job_board.lib.engine import JobBoardPipeline
from modules.job_board.lib.extraction import ExtractionService
from modules.job_board.lib.http_client import FetchResult


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (network calls or external services).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "live: marks tests that perform live network calls or hit external services (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    tmp_logs = tempfile.mkdtemp(prefix="jb-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("JOB_BOARD_SQLITE_PATH", raising=False)
    monkeypatch.delenv("LLM_MD_ENABLE", raising=False)
    yield


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------
class FakeHttp:
    """url -> FetchResult | Exception | str (200 body). Records every URL fetched."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls: list[str] = []

    def fetch(self, url, **kwargs):
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            return FetchResult(status=404, body="", ok=False, url=url)
        if isinstance(page, BaseException):
            raise page
        if isinstance(page, str):
            return FetchResult(status=200, body=page, ok=True, url=url)
        return page

    def close(self):
        pass


class RecordingQueue:
    def __init__(self):
        self.tasks: list[tuple[float, str, dict]] = []

    def enqueue(self, delay_s, task_id, payload):
        self.tasks.append((delay_s, task_id, dict(payload)))


class FakeChat:
    """Returns queued replies in order; records every prompt."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple[str, str, bool]] = []

    def chat(self, system_msg, user_msg, *, json_mode=False):
        self.calls.append((system_msg, user_msg, json_mode))
        reply = self.replies.pop(0) if self.replies else "{}"
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


class FakeRenderer:
    def __init__(self, result):
        self.result = result
        self.calls: list[str] = []

    def render_and_fetch(self, url):
        self.calls.append(url)
        return self.result


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path):
    return Settings.from_env_and_kwargs({
        "sqlite_path": str(tmp_path / "jobboard.db"),
        "job_board_delay_s": 0,
        "job_details_delay_s": 0,
        "inter_company_delay_s": 0,
    })


@pytest.fixture
def store(settings):
    return JobStore(settings.sqlite_path)


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def make_pipeline(settings, store, http, queue, chat):
    """Factory so tests can swap single collaborators (renderer, clock, settings)."""

    def _make(**overrides):
        kw = {
            "settings": settings,
            "store": store,
            "http": http,
            "extractor": ExtractionService(chat),
            "queue": queue,
            "renderer": None,
            "sleep": lambda s: None,
        }
        kw.update(overrides)
        return JobBoardPipeline(**kw)

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()
