from __future__ import annotations

import logging
import os
from typing import Any

from modules._shared.utils import OpenAIChat, build_openai_client

from .lib.config import Settings
from .lib.db import JobStore
from .lib.engine import JobBoardPipeline
from .lib.extraction import ExtractionService
from .lib.http_client import HttpClient
from .lib.logging_bridge import activity as log_activity
from .lib.page_render import BrowserRenderer

LOG = logging.getLogger(__name__)

ACTIONS = ("scrape_all", "cleanup_errors", "scrape")


def build_extractor(settings: Settings) -> ExtractionService | None:
    """
    Build the extraction service around one OpenAI client for the process.
    Returns None (logged) when no API key is configured; generic boards and
    detail enrichment then fail per call and are recorded as company errors.
    """
    if not os.getenv("OPENAI_API_KEY"):
        LOG.warning("OPENAI_API_KEY not set; extraction service disabled")
        return None
    client = build_openai_client()
    chat = OpenAIChat(client=client, model_env=settings.openai_model_env, temp_env=settings.openai_temp_env)
    return ExtractionService(chat)


def build_pipeline(
    settings: Settings,
    queue: Any = None,
    *,
    extractor: ExtractionService | None = None,
) -> JobBoardPipeline:
    """
    Wire the production collaborators. Without a queue, detail fetches run
    inline (synchronously) after each scrape.
    """
    from service.scheduler import InlineTaskQueue

    store = JobStore(settings.sqlite_path)
    http = HttpClient(timeout=settings.http_timeout_s, user_agent=settings.user_agent)
    renderer = BrowserRenderer(wait_ms=settings.render_wait_ms, user_agent=settings.user_agent)
    inline = queue is None
    if inline:
        queue = InlineTaskQueue()

    pipeline = JobBoardPipeline(
        settings=settings,
        store=store,
        http=http,
        extractor=extractor if extractor is not None else build_extractor(settings),
        queue=queue,
        renderer=renderer,
    )
    if inline:
        queue.bind(pipeline.run_task)
    return pipeline


def run(**kwargs: Any) -> dict[str, Any]:
    """
    Entry point for the 'job_board' module.

    Accepts kwargs (from scheduler/CLI), including:
      action: str = "scrape_all"       # "scrape_all" | "cleanup_errors" | "scrape"
      company_id: int                  # required for action="scrape"
      sqlite_path: str = "/app/local/state/jobboard.db"
      job_board_delay_s / job_details_delay_s / inter_company_delay_s: float
      render_source_types: list[str] = ["ashby"]
      guard_empty_results: bool = True
      skip_network: bool = False

    Returns the structured result of the action ({success, ...}).
    """
    kw = dict(kwargs)
    action = str(kw.pop("action", "scrape_all") or "scrape_all").strip().lower()
    company_id = kw.pop("company_id", None)
    queue = kw.pop("queue", None)
    if action not in ACTIONS:
        return {"success": False, "error": f"Unknown action {action!r}; expected one of {list(ACTIONS)}"}

    settings = Settings.from_env_and_kwargs(kw)
    log_activity({
        "component": "job_board.main",
        "op": "start",
        "action": action,
        "company_id": company_id,
        "sqlite_path": settings.sqlite_path,
        "skip_network": settings.skip_network,
    })

    pipeline = build_pipeline(settings, queue)
    try:
        if action == "cleanup_errors":
            return pipeline.cleanup_old_errors()
        if action == "scrape":
            if company_id is None:
                return {"success": False, "error": "company_id is required for action='scrape'"}
            return pipeline.scrape_company(int(company_id)).to_dict()
        return pipeline.scrape_all_companies()
    finally:
        pipeline.http.close()
