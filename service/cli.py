# service/cli.py
"""
User-facing command-line entrypoints for the container.

Subcommands
-----------
serve
    - Starts the APScheduler service loop via service.scheduler.start()
    - Registers signal handlers for graceful shutdown

scrape COMPANY_ID / scrape-all / cleanup-errors
    - One-shot pipeline runs; detail fetches run inline after the scrape

retry-failed COMPANY_ID / retry-job JOB_ID / refetch-job JOB_ID / clear-errors COMPANY_ID
    - Manual retry surface and backoff override

add-company NAME URL [--source-type ...] / list-companies / status COMPANY_ID
    - Company registry and health view

metrics [--company ID] [--hours N]
    - Aggregated scrape statistics over a trailing window

validate-config
    - Loads/validates config and returns nonzero on error

Every pipeline command prints its structured result as JSON and exits 1
when the result reports success=false.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable
from datetime import datetime
from types import SimpleNamespace
from typing import Any

from service import config_schema as _config_schema
from service import logging_utils as L
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    """Initialize a reasonable logging setup if none exists yet."""
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _now_iso():
    return datetime.now().astimezone().isoformat()


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _print_table(rows: Iterable[tuple[str, ...]], headers: tuple[str, ...]) -> None:
    """Very simple column table printer."""
    rows = [tuple(str(c) for c in r) for r in rows]
    widths = [max([len(h)] + [len(r[i]) for r in rows]) for i, h in enumerate(headers)]
    sep = "+-" + "-+-".join("-" * w for w in widths) + "-+"
    print(sep)
    print("| " + " | ".join(h.ljust(w) for h, w in zip(headers, widths)) + " |")
    print(sep)
    for r in rows:
        print("| " + " | ".join(c.ljust(w) for c, w in zip(r, widths)) + " |")
    print(sep)


def _load_config_with_optional_path(path: str | None) -> dict[str, Any]:
    return _config_schema.load_config(path)


def _settings(args: argparse.Namespace):
    from modules.job_board.lib.config import Settings

    cfg = _load_config_with_optional_path(args.config)
    return Settings.from_env_and_kwargs(cfg.get("job_board"))


def _pipeline(args: argparse.Namespace):
    """One-shot pipeline: detail fetches dispatch inline on this thread."""
    from modules.job_board.main import build_pipeline

    return build_pipeline(_settings(args))


def _store(args: argparse.Namespace):
    from modules.job_board.lib.db import JobStore

    return JobStore(_settings(args).sqlite_path)


def _finish(result: dict[str, Any]) -> int:
    _print_json(result)
    return 0 if result.get("success", True) else 1


def _run_pipeline_cmd(args: argparse.Namespace, name: str, call) -> int:
    started = time.monotonic()
    try:
        pipeline = _pipeline(args)
        try:
            result = call(pipeline)
        finally:
            pipeline.http.close()
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        LOG.exception("%s failed: %s", name, e)
        print(f"FAILURE: {e}", file=sys.stderr)
        L.write_error_log({"component": "cli", "op": name, "error": repr(e), "ts": _now_iso()})
        return 1

    if hasattr(result, "to_dict"):
        result = result.to_dict()
    L.write_activity_log({
        "component": "cli",
        "op": name,
        "success": result.get("success"),
        "duration_ms": int((time.monotonic() - started) * 1000),
    })
    return _finish(result)


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _load_config_with_optional_path(args.config)
        _config_schema.validate(cfg)
        print("OK: configuration is valid.")
        return 0
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        LOG.exception("Configuration validation failed: %s", e)
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1


def cmd_scrape(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "scrape", lambda p: p.scrape_company(args.company_id))


def cmd_scrape_all(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "scrape_all", lambda p: p.scrape_all_companies())


def cmd_retry_failed(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "retry_failed", lambda p: p.retry_failed_jobs_for_company(args.company_id))


def cmd_retry_job(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "retry_job", lambda p: p.retry_failed_job(args.job_id))


def cmd_refetch_job(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "refetch_job", lambda p: p.refetch_job(args.job_id))


def cmd_clear_errors(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "clear_errors", lambda p: p.clear_company_errors(args.company_id))


def cmd_cleanup_errors(args: argparse.Namespace) -> int:
    return _run_pipeline_cmd(args, "cleanup_errors", lambda p: p.cleanup_old_errors())


def cmd_add_company(args: argparse.Namespace) -> int:
    from modules.job_board.lib.models import SourceType

    try:
        company = _store(args).add_company(args.name, args.url, SourceType.parse(args.source_type))
    except Exception as e:
        print(f"ERROR: could not add company: {e}", file=sys.stderr)
        return 1
    _print_json({"success": True, "id": company.id, "name": company.name, "source_type": company.source_type.value})
    return 0


def cmd_list_companies(args: argparse.Namespace) -> int:
    from modules.job_board.lib.backoff import company_health

    store = _store(args)
    companies = store.list_companies()
    if not companies:
        print("No companies registered.")
        return 0
    rows = [
        (
            str(c.id),
            c.name,
            c.source_type.value,
            company_health(c),
            str(store.count_jobs(c.id, include_deleted=False)),
            c.last_scraped.isoformat() if c.last_scraped else "-",
        )
        for c in companies
    ]
    _print_table(rows, headers=("ID", "NAME", "SOURCE", "HEALTH", "ACTIVE JOBS", "LAST SCRAPED"))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    from modules.job_board.lib.backoff import company_health, get_backoff_status_description, recent_errors

    store = _store(args)
    company = store.get_company(args.company_id)
    if company is None:
        return _finish({"success": False, "error": "Company not found"})
    errors = recent_errors(company.scraping_errors)
    _print_json({
        "success": True,
        "id": company.id,
        "name": company.name,
        "job_board_url": company.job_board_url,
        "source_type": company.source_type.value,
        "health": company_health(company),
        "backoff": get_backoff_status_description(company.backoff_info),
        "last_scraped": company.last_scraped,
        "recent_errors": [
            {"timestamp": e.timestamp, "error_type": e.error_type, "error_message": e.error_message, "url": e.url}
            for e in errors
        ],
        "active_jobs": store.count_jobs(company.id, include_deleted=False),
        "total_jobs": store.count_jobs(company.id),
        "failed_jobs": len(store.failed_jobs(company.id)),
    })
    return 0


def cmd_metrics(args: argparse.Namespace) -> int:
    from modules.job_board.lib.metrics import summarize

    stats = summarize(_store(args), company_id=args.company, hours_back=args.hours)
    _print_json({"success": True, "hours_back": args.hours, "company_id": args.company, **stats})
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run the scheduler loop in a daemon-like fashion until a termination
    signal is received.
    """
    L.write_activity_log({"component": "cli", "op": "serve_start", "ts": _now_iso()})

    stop_event = threading.Event()
    running = SimpleNamespace(sched=None)

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()
        _safe_stop("scheduler", running.sched)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        running.sched = _scheduler.start(config_path=args.config)
        LOG.info("Scheduler started: %r", running.sched)

        # Main wait loop (respond quickly to signals)
        while not stop_event.is_set():
            time.sleep(0.3)

        _safe_stop("scheduler", running.sched)
        L.write_activity_log({"component": "cli", "op": "serve_stop", "ts": _now_iso()})
        return 0

    except KeyboardInterrupt:
        _graceful_shutdown("KeyboardInterrupt")
        return 130
    except Exception as e:
        LOG.exception("Fatal error in serve: %s", e)
        _graceful_shutdown("UnhandledException")
        return 1


def _safe_stop(name: str, handle: Any) -> None:
    """Best-effort stop & join for a scheduler controller."""
    if handle is None:
        return
    try:
        handle.stop()
        handle.join(timeout=10.0)
    except Exception:  # pragma: no cover
        LOG.exception("Error stopping %s", name)


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="job-board",
        description="Job-board scraping pipeline",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or built-in defaults).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the scheduler loop (daily scrape + error cleanup).")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("scrape", help="Scrape one company's board now.")
    sp.add_argument("company_id", type=int)
    sp.set_defaults(func=cmd_scrape)

    sp = sub.add_parser("scrape-all", help="Scrape every registered company now.")
    sp.set_defaults(func=cmd_scrape_all)

    sp = sub.add_parser("retry-failed", help="Re-run detail fetches for a company's unfetched jobs.")
    sp.add_argument("company_id", type=int)
    sp.set_defaults(func=cmd_retry_failed)

    sp = sub.add_parser("retry-job", help="Re-run the detail fetch for one unfetched job.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_retry_job)

    sp = sub.add_parser("refetch-job", help="Re-run the detail fetch for any job.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_refetch_job)

    sp = sub.add_parser("clear-errors", help="Clear a company's error log and backoff state.")
    sp.add_argument("company_id", type=int)
    sp.set_defaults(func=cmd_clear_errors)

    sp = sub.add_parser("cleanup-errors", help="Drop errors older than 24h from every company.")
    sp.set_defaults(func=cmd_cleanup_errors)

    sp = sub.add_parser("add-company", help="Register a company's job board.")
    sp.add_argument("name")
    sp.add_argument("url")
    sp.add_argument("--source-type", default="other", choices=["ashby", "greenhouse", "other"])
    sp.set_defaults(func=cmd_add_company)

    sp = sub.add_parser("list-companies", help="Print registered companies with their health.")
    sp.set_defaults(func=cmd_list_companies)

    sp = sub.add_parser("status", help="Show one company's backoff state, errors and job counts.")
    sp.add_argument("company_id", type=int)
    sp.set_defaults(func=cmd_status)

    sp = sub.add_parser("metrics", help="Aggregate scrape statistics over a trailing window.")
    sp.add_argument("--company", type=int, default=None, help="Limit to one company id.")
    sp.add_argument("--hours", type=float, default=24.0, help="Window size in hours (default 24).")
    sp.set_defaults(func=cmd_metrics)

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
