# service/scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time as _time
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Protocol

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from . import config_schema
from .logging_utils import write_activity_log

LOG = logging.getLogger(__name__)

Dispatch = Callable[[str, Mapping[str, Any]], Any]

# Queued detail fetches should still run if the pool was busy for a while.
TASK_MISFIRE_GRACE_S = 3600


# ---- Task queues ------------------------------------------------------------


class TaskQueue(Protocol):
    def enqueue(self, delay_s: float, task_id: str, payload: Mapping[str, Any]) -> None: ...


class SchedulerTaskQueue:
    """
    Delayed work on the running APScheduler: each enqueue becomes a one-shot
    DateTrigger job at now + delay that calls `dispatch(task_id, payload)`.
    """

    def __init__(self, scheduler: BackgroundScheduler, dispatch: Dispatch | None = None) -> None:
        self._scheduler = scheduler
        self._dispatch = dispatch

    def bind(self, dispatch: Dispatch) -> None:
        self._dispatch = dispatch

    def enqueue(self, delay_s: float, task_id: str, payload: Mapping[str, Any]) -> None:
        if self._dispatch is None:
            raise RuntimeError("SchedulerTaskQueue has no dispatch bound")
        run_at = datetime.now(tz=self._scheduler.timezone) + timedelta(seconds=max(0.0, float(delay_s)))
        job_id = f"{task_id}:{uuid.uuid4().hex}"
        self._scheduler.add_job(
            func=_run_task,
            trigger=DateTrigger(run_date=run_at),
            args=(self._dispatch, task_id, dict(payload)),
            id=job_id,
            misfire_grace_time=TASK_MISFIRE_GRACE_S,
            coalesce=False,
            max_instances=1,
        )
        LOG.debug("Queued task %s at %s", job_id, run_at.isoformat())


class InlineTaskQueue:
    """
    Dispatches immediately on the caller's thread (CLI one-shots, tests).
    The enricher applies its own politeness delay, so the requested delay
    is not slept here.
    """

    def __init__(self, dispatch: Dispatch | None = None) -> None:
        self._dispatch = dispatch

    def bind(self, dispatch: Dispatch) -> None:
        self._dispatch = dispatch

    def enqueue(self, delay_s: float, task_id: str, payload: Mapping[str, Any]) -> None:
        if self._dispatch is None:
            raise RuntimeError("InlineTaskQueue has no dispatch bound")
        result = self._dispatch(task_id, dict(payload))
        LOG.debug("Inline task %s finished: %s", task_id, result)


def _run_task(dispatch: Dispatch, task_id: str, payload: dict[str, Any]) -> None:
    started = _time.monotonic()
    try:
        result = dispatch(task_id, payload)
    except Exception:
        LOG.exception("Task %s raised an exception.", task_id)
        return
    LOG.info("Task %s finished in %.3fs: %s", task_id, _time.monotonic() - started, result)


# ---- Public controller ------------------------------------------------------


class SchedulerController:
    """
    A small façade around APScheduler so the CLI can manage lifecycle cleanly.
    """

    def __init__(self, scheduler: BackgroundScheduler, pipeline: Any = None) -> None:
        self._scheduler = scheduler
        self.pipeline = pipeline
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            # wait=False -> stop immediately; jobs in-flight are allowed to finish.
            self._scheduler.shutdown(wait=False)
        if self.pipeline is not None:
            self.pipeline.http.close()
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        """
        Block until the scheduler is fully stopped (or timeout).
        Returns True if stopped before timeout, else False.
        """
        return self._stopped_evt.wait(timeout=timeout)

    def get_job_ids(self) -> Iterable[str]:
        if not self._scheduler:
            return []
        return (job.id for job in self._scheduler.get_jobs())


# ---- Module API -------------------------------------------------------------


def build_scheduler(cfg: dict[str, Any]) -> BackgroundScheduler:
    job_defaults = {
        "coalesce": True,  # run only the latest if many were missed
        "max_instances": 1,
    }
    grace = _int_or(cfg.get("misfire_grace_time"), None)
    if grace is not None:
        job_defaults["misfire_grace_time"] = grace
    executors = {"default": ThreadPoolExecutor(_int_or(cfg.get("executor_workers"), 10))}
    return BackgroundScheduler(
        timezone=_resolve_timezone(cfg),
        job_defaults=job_defaults,
        executors=executors,
        jobstores={"default": MemoryJobStore()},
    )


def start(config_path: str | None = None) -> SchedulerController:
    """
    Load configuration, build the pipeline around a scheduler-backed task
    queue, register the periodic jobs and start.

    Periodic jobs:
      scrape_all      -> pipeline.scrape_all_companies()
      cleanup_errors  -> pipeline.cleanup_old_errors()
    A cron set to null in the config is not registered.
    """
    from modules.job_board.lib.config import Settings
    from modules.job_board.main import build_pipeline

    cfg = config_schema.load_config(config_path)
    config_schema.validate(cfg)
    settings = Settings.from_env_and_kwargs(cfg.get("job_board"))

    scheduler = build_scheduler(cfg)
    queue = SchedulerTaskQueue(scheduler)
    pipeline = build_pipeline(settings, queue)
    queue.bind(pipeline.run_task)

    periodic = {
        "scrape_all": pipeline.scrape_all_companies,
        "cleanup_errors": pipeline.cleanup_old_errors,
    }
    for name, func in periodic.items():
        spec = cfg["crons"].get(name)
        if spec is None:
            LOG.info("Cron %s disabled by config.", name)
            continue
        _add_periodic_job(scheduler, name, func, _build_cron_trigger(spec, scheduler.timezone))

    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler, pipeline)


# ---- Helpers ----------------------------------------------------------------


def _preview_trigger(trigger, tz, count: int = 6, start=None):
    """
    Return next `count` fire times for visibility in logs/prints.
    Seeds previous_fire_time = now = `start` (or "now" in tz), then advances
    `now` by 1µs after each hit so the next lookup moves forward.
    """
    now = start or datetime.now(tz=tz)
    prev = now
    times = []
    for _ in range(count):
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        times.append(nxt)
        prev = nxt
        now = nxt + timedelta(microseconds=1)
    return times


def _resolve_timezone(cfg: dict[str, Any]):
    """
    APScheduler 3.x expects a pytz timezone. We accept either:
    - config['timezone'] (e.g., 'America/Indiana/Indianapolis')
    - env TZ
    - default to UTC
    """
    import pytz

    tz_name = cfg.get("timezone") or os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Falling back to UTC timezone (invalid or missing tz '%s')", tz_name)
        return pytz.UTC


def _build_cron_trigger(spec: Any, tz) -> CronTrigger:
    """
    Supported shapes:
      "0 */12 * * *"                                  # crontab, scheduler tz
      "0 0 0 * * *"                                   # 6 fields: leading seconds
      {second?, minute?, hour?, day?, day_of_week?, month?, timezone?, jitter?}
    """
    if isinstance(spec, str):
        fields = spec.strip().split()
        if len(fields) == 5:
            return CronTrigger.from_crontab(spec, timezone=tz)
        if len(fields) == 6:
            second, minute, hour, day, month, dow = fields
            return CronTrigger(
                second=second, minute=minute, hour=hour, day=day, month=month, day_of_week=dow, timezone=tz
            )
        raise ValueError(f"cron string must have 5 or 6 fields (got {len(fields)}): {spec!r}")
    if isinstance(spec, dict):
        allowed = {"second", "minute", "hour", "day", "day_of_week", "month", "timezone", "jitter"}
        unknown = set(spec) - allowed
        if unknown:
            raise ValueError(f"cron has unknown field(s): {sorted(unknown)}")
        return CronTrigger(
            second=spec.get("second", 0),
            minute=spec.get("minute", 0),
            hour=spec.get("hour", 0),
            day=spec.get("day"),
            day_of_week=spec.get("day_of_week"),
            month=spec.get("month"),
            jitter=spec.get("jitter"),
            timezone=spec.get("timezone") or tz,
        )
    raise ValueError("cron must be a crontab string or an object")


def _add_periodic_job(scheduler: BackgroundScheduler, name: str, func: Callable[[], Any], trigger: Any) -> None:
    def _job_wrapper():
        started = _time.monotonic()
        LOG.info("Job[%s] starting", name)
        try:
            result = func()
        except Exception:
            LOG.exception("Job[%s] raised an exception.", name)
            _write_activity(name, status="error", duration_s=_time.monotonic() - started)
            return
        duration = _time.monotonic() - started
        LOG.info("Job[%s] finished in %.3fs", name, duration)
        _write_activity(name, status="ok", duration_s=duration, result=result)

    if os.getenv("SCHEDULER_PREVIEW") == "1":
        preview = _preview_trigger(trigger, scheduler.timezone, count=int(os.getenv("SCHEDULER_PREVIEW_COUNT", "6")))
        print(f"PREVIEW[{name}]:", ", ".join(t.isoformat() for t in preview) if preview else "(none)")

    scheduler.add_job(func=_job_wrapper, trigger=trigger, id=name, replace_existing=True)
    LOG.info("Registered job[%s] trigger=%s", name, trigger)


def _write_activity(name: str, status: str, duration_s: float, result: Any = None) -> None:
    """Best-effort activity logging; non-fatal on errors."""
    try:
        write_activity_log({
            "component": "scheduler",
            "op": "job_run",
            "job_id": name,
            "status": status,
            "duration_ms": int(duration_s * 1000),
            "result": result if isinstance(result, dict) else None,
        })
    except Exception:
        LOG.debug("write_activity_log failed for job[%s]", name, exc_info=True)


def _int_or(v: Any, default: int | None) -> int | None:
    """Return int(v) or default if v is None/invalid (lenient for config)."""
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default
