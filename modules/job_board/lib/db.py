from __future__ import annotations

import contextlib
import json
import os
import sqlite3
from collections.abc import Callable, Iterator
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any

from .logging_bridge import error as log_error
from .models import (
    BackoffInfo,
    Company,
    Job,
    JobDetails,
    ScrapingError,
    ScrapingMetrics,
    SourceType,
)
from .utils import from_iso, now_iso, to_iso, utc_now

# ---- Public API -------------------------------------------------------------


def init_db(sqlite_path: str) -> None:
    """
    Ensure the SQLite database and schema exist.
    Safe to call multiple times.
    """
    _ensure_dir(sqlite_path)
    with contextlib.closing(_connect(sqlite_path)) as conn:
        _apply_pragmas(conn)
        _ensure_schema(conn)


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)


class JobStore:
    """
    SQLite-backed datastore for companies, jobs and scraping metrics.

    Every call opens its own short-lived connection, so one store can be shared
    by scheduler worker threads. Company mutations go through `update_company`,
    which does the read-modify-write inside a single `BEGIN IMMEDIATE`
    transaction; two writers touching the same company serialize on the
    database write lock instead of overwriting each other.
    """

    def __init__(self, sqlite_path: str) -> None:
        self.sqlite_path = sqlite_path
        init_db(sqlite_path)

    # ---- companies ----------------------------------------------------------

    def add_company(
        self,
        name: str,
        job_board_url: str,
        source_type: SourceType | str = SourceType.OTHER,
    ) -> Company:
        st = SourceType.parse(source_type)
        with self._tx() as cur:
            cur.execute(
                """
                INSERT INTO companies (name, job_board_url, source_type, scraping_errors, created_utc)
                VALUES (?, ?, ?, '[]', ?)
                """,
                (name.strip(), job_board_url.strip(), st.value, now_iso()),
            )
            company_id = int(cur.lastrowid)
        return Company(id=company_id, name=name.strip(), job_board_url=job_board_url.strip(), source_type=st)

    def get_company(self, company_id: int) -> Company | None:
        with self._read() as cur:
            cur.execute("SELECT * FROM companies WHERE id = ?", (company_id,))
            row = cur.fetchone()
        return _row_to_company(row) if row else None

    def list_companies(self) -> list[Company]:
        with self._read() as cur:
            cur.execute("SELECT * FROM companies ORDER BY id")
            rows = cur.fetchall()
        return [_row_to_company(r) for r in rows]

    def update_company(self, company_id: int, mutate: Callable[[Company], Company]) -> Company | None:
        """
        Atomically apply `mutate` to the latest stored company record.

        `mutate` receives the freshly-read Company and returns the new value;
        only scraping_errors, backoff_info and last_scraped are persisted.
        Returns the updated Company, or None if it doesn't exist.
        """
        with self._tx() as cur:
            cur.execute("SELECT * FROM companies WHERE id = ?", (company_id,))
            row = cur.fetchone()
            if row is None:
                return None
            updated = mutate(_row_to_company(row))
            cur.execute(
                """
                UPDATE companies
                   SET scraping_errors = ?, backoff_info = ?, last_scraped = ?
                 WHERE id = ?
                """,
                (
                    _dump_errors(updated.scraping_errors),
                    _dump_backoff(updated.backoff_info),
                    to_iso(updated.last_scraped),
                    company_id,
                ),
            )
        return updated

    # ---- jobs ---------------------------------------------------------------

    def insert_job(
        self,
        *,
        company_id: int,
        url: str,
        title: str,
        description: str = "",
        source: str | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Insert a placeholder job. Returns None when (company_id, url) already
        exists; the unique index guarantees one row per pair.
        """
        ts = now or utc_now()
        with self._tx() as cur:
            cur.execute(
                """
                INSERT OR IGNORE INTO jobs
                  (company_id, url, title, description, details, source, is_fetched, first_seen_at, last_scraped)
                VALUES (?, ?, ?, ?, '{}', ?, 0, ?, ?)
                """,
                (company_id, url, title, description, source, to_iso(ts), to_iso(ts)),
            )
            if cur.rowcount != 1:
                return None
            job_id = int(cur.lastrowid)
        return Job(
            id=job_id,
            company_id=company_id,
            url=url,
            title=title,
            description=description,
            source=source,
            is_fetched=False,
            first_seen_at=ts,
            last_scraped=ts,
        )

    def get_job(self, job_id: int) -> Job | None:
        return self._one("SELECT * FROM jobs WHERE id = ?", (job_id,))

    def find_by_url(self, company_id: int, url: str) -> Job | None:
        """Any job (active or soft-deleted) with this URL for the company."""
        return self._one("SELECT * FROM jobs WHERE company_id = ? AND url = ?", (company_id, url))

    def find_recently_scraped(self, company_id: int, url: str, since: datetime) -> Job | None:
        """Active job with this URL whose last_scraped is at or after `since`."""
        return self._one(
            """
            SELECT * FROM jobs
             WHERE company_id = ? AND url = ? AND deleted_at IS NULL AND last_scraped >= ?
            """,
            (company_id, url, to_iso(since)),
        )

    def update_last_scraped(self, job_id: int, ts: datetime) -> None:
        self._exec("UPDATE jobs SET last_scraped = ? WHERE id = ?", (to_iso(ts), job_id))

    def soft_delete(self, job_id: int, ts: datetime) -> bool:
        """Mark as no longer posted. False if it was already deleted."""
        return self._exec(
            "UPDATE jobs SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
            (to_iso(ts), job_id),
        ) == 1

    def restore(self, job_id: int, ts: datetime) -> bool:
        """Clear the soft-delete marker and bump last_scraped."""
        return self._exec(
            "UPDATE jobs SET deleted_at = NULL, last_scraped = ? WHERE id = ? AND deleted_at IS NOT NULL",
            (to_iso(ts), job_id),
        ) == 1

    def patch_job(self, job_id: int, details: JobDetails, *, is_fetched: bool | None = None) -> Job | None:
        """
        Merge structured fields into a job. `title`/`description` also update
        the top-level columns; the URL is never touched.
        """
        with self._tx() as cur:
            cur.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = cur.fetchone()
            if row is None:
                return None
            job = _row_to_job(row)
            merged = job.details.merged_with(details)
            job = replace(
                job,
                details=merged,
                title=details.title or job.title,
                description=details.description if details.description is not None else job.description,
                is_fetched=job.is_fetched if is_fetched is None else is_fetched,
            )
            cur.execute(
                "UPDATE jobs SET title = ?, description = ?, details = ?, is_fetched = ? WHERE id = ?",
                (job.title, job.description, json.dumps(merged.to_dict()), int(job.is_fetched), job_id),
            )
        return job

    def active_job_urls(self, company_id: int) -> list[str]:
        with self._read() as cur:
            cur.execute(
                "SELECT url FROM jobs WHERE company_id = ? AND deleted_at IS NULL ORDER BY id",
                (company_id,),
            )
            return [r["url"] for r in cur.fetchall()]

    def active_jobs(self, company_id: int) -> list[Job]:
        return self._many(
            "SELECT * FROM jobs WHERE company_id = ? AND deleted_at IS NULL ORDER BY id",
            (company_id,),
        )

    def failed_jobs(self, company_id: int) -> list[Job]:
        """Active jobs whose details were never parsed."""
        return self._many(
            "SELECT * FROM jobs WHERE company_id = ? AND deleted_at IS NULL AND is_fetched = 0 ORDER BY id",
            (company_id,),
        )

    def count_jobs(self, company_id: int | None = None, *, include_deleted: bool = True) -> int:
        sql = "SELECT COUNT(*) AS n FROM jobs WHERE 1 = 1"
        params: list[Any] = []
        if company_id is not None:
            sql += " AND company_id = ?"
            params.append(company_id)
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._read() as cur:
            cur.execute(sql, params)
            return int(cur.fetchone()["n"] or 0)

    # ---- metrics ------------------------------------------------------------

    def insert_metrics(self, m: ScrapingMetrics) -> int:
        row = asdict(m)
        row["scraped_at"] = to_iso(m.scraped_at)
        row["success"] = int(m.success)
        cols = ", ".join(row.keys())
        marks = ", ".join("?" for _ in row)
        with self._tx() as cur:
            cur.execute(f"INSERT INTO scraping_metrics ({cols}) VALUES ({marks})", tuple(row.values()))
            return int(cur.lastrowid)

    def company_metrics(self, company_id: int, limit: int = 50, since: datetime | None = None) -> list[ScrapingMetrics]:
        sql = "SELECT * FROM scraping_metrics WHERE company_id = ?"
        params: list[Any] = [company_id]
        if since is not None:
            sql += " AND scraped_at >= ?"
            params.append(to_iso(since))
        sql += " ORDER BY scraped_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._read() as cur:
            cur.execute(sql, params)
            return [_row_to_metrics(r) for r in cur.fetchall()]

    def recent_metrics(
        self, hours_back: float = 24, limit: int | None = 100, now: datetime | None = None
    ) -> list[ScrapingMetrics]:
        """Metrics across all companies from the last `hours_back` hours, newest first."""
        since = (now or utc_now()) - timedelta(hours=hours_back)
        sql = "SELECT * FROM scraping_metrics WHERE scraped_at >= ? ORDER BY scraped_at DESC, id DESC"
        params: list[Any] = [to_iso(since)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._read() as cur:
            cur.execute(sql, params)
            return [_row_to_metrics(r) for r in cur.fetchall()]

    # ---- internals ----------------------------------------------------------

    @contextlib.contextmanager
    def _read(self) -> Iterator[sqlite3.Cursor]:
        with contextlib.closing(_connect(self.sqlite_path)) as conn:
            _apply_pragmas(conn)
            yield conn.cursor()

    @contextlib.contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        with contextlib.closing(_connect(self.sqlite_path)) as conn:
            _apply_pragmas(conn)
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except Exception as e:
                conn.rollback()
                log_error({
                    "component": "job_board.db",
                    "op": "transaction",
                    "sqlite_path": self.sqlite_path,
                    "error": repr(e),
                })
                raise
            conn.commit()

    def _exec(self, sql: str, params: tuple[Any, ...]) -> int:
        with self._tx() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def _one(self, sql: str, params: tuple[Any, ...]) -> Job | None:
        with self._read() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return _row_to_job(row) if row else None

    def _many(self, sql: str, params: tuple[Any, ...]) -> list[Job]:
        with self._read() as cur:
            cur.execute(sql, params)
            return [_row_to_job(r) for r in cur.fetchall()]


# ---- Internal utilities -----------------------------------------------------


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # isolation_level=None gives autocommit mode; we manage transactions explicitly.
    conn = sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA cache_size=-8000;")  # approx 8MB cache


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS companies (
          id INTEGER PRIMARY KEY,
          name TEXT NOT NULL,
          job_board_url TEXT NOT NULL,
          source_type TEXT NOT NULL,
          scraping_errors TEXT NOT NULL DEFAULT '[]',
          backoff_info TEXT,
          last_scraped TEXT,
          created_utc TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
          id INTEGER PRIMARY KEY,
          company_id INTEGER NOT NULL REFERENCES companies(id),
          url TEXT NOT NULL,
          title TEXT NOT NULL,
          description TEXT NOT NULL DEFAULT '',
          details TEXT NOT NULL DEFAULT '{}',
          source TEXT,
          is_fetched INTEGER NOT NULL DEFAULT 0,
          first_seen_at TEXT,
          last_scraped TEXT,
          deleted_at TEXT
        );
        """
    )
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS ux_jobs_company_url ON jobs (company_id, url);")
    conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_url ON jobs (url);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scraping_metrics (
          id INTEGER PRIMARY KEY,
          company_id INTEGER NOT NULL,
          scraped_at TEXT NOT NULL,
          success INTEGER NOT NULL,
          total_jobs_found INTEGER,
          new_jobs_created INTEGER,
          existing_jobs_skipped INTEGER,
          jobs_soft_deleted INTEGER,
          scrape_duration_ms INTEGER,
          ats_type TEXT,
          error_type TEXT,
          error_message TEXT,
          net_job_change INTEGER
        );
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS ix_metrics_company_date ON scraping_metrics (company_id, scraped_at);"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS ix_metrics_date ON scraping_metrics (scraped_at);")


# ---- (de)serialization ------------------------------------------------------


def _dump_errors(errors: list[ScrapingError]) -> str:
    return json.dumps([
        {
            "timestamp": to_iso(e.timestamp),
            "error_type": e.error_type,
            "error_message": e.error_message,
            "url": e.url,
        }
        for e in errors
    ])


def _load_errors(raw: str | None) -> list[ScrapingError]:
    out: list[ScrapingError] = []
    for item in json.loads(raw or "[]"):
        out.append(
            ScrapingError(
                timestamp=from_iso(item["timestamp"]),
                error_type=item["error_type"],
                error_message=item.get("error_message") or "",
                url=item.get("url"),
            )
        )
    return out


def _dump_backoff(info: BackoffInfo | None) -> str | None:
    if info is None:
        return None
    return json.dumps({
        "level": info.level,
        "next_allowed_scrape": to_iso(info.next_allowed_scrape),
        "consecutive_failures": info.consecutive_failures,
        "last_successful_scrape": to_iso(info.last_successful_scrape),
        "total_failures": info.total_failures,
    })


def _load_backoff(raw: str | None) -> BackoffInfo | None:
    if not raw:
        return None
    d = json.loads(raw)
    return BackoffInfo(
        level=int(d.get("level") or 0),
        next_allowed_scrape=from_iso(d.get("next_allowed_scrape")),
        consecutive_failures=int(d.get("consecutive_failures") or 0),
        last_successful_scrape=from_iso(d.get("last_successful_scrape")),
        total_failures=int(d.get("total_failures") or 0),
    )


def _row_to_company(row: sqlite3.Row) -> Company:
    return Company(
        id=int(row["id"]),
        name=row["name"],
        job_board_url=row["job_board_url"],
        source_type=SourceType.parse(row["source_type"]),
        scraping_errors=_load_errors(row["scraping_errors"]),
        backoff_info=_load_backoff(row["backoff_info"]),
        last_scraped=from_iso(row["last_scraped"]),
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        url=row["url"],
        title=row["title"],
        description=row["description"] or "",
        details=JobDetails.from_dict(json.loads(row["details"] or "{}")),
        source=row["source"],
        is_fetched=bool(row["is_fetched"]),
        first_seen_at=from_iso(row["first_seen_at"]),
        last_scraped=from_iso(row["last_scraped"]),
        deleted_at=from_iso(row["deleted_at"]),
    )


def _row_to_metrics(row: sqlite3.Row) -> ScrapingMetrics:
    return ScrapingMetrics(
        company_id=int(row["company_id"]),
        scraped_at=from_iso(row["scraped_at"]),
        success=bool(row["success"]),
        total_jobs_found=row["total_jobs_found"],
        new_jobs_created=row["new_jobs_created"],
        existing_jobs_skipped=row["existing_jobs_skipped"],
        jobs_soft_deleted=row["jobs_soft_deleted"],
        scrape_duration_ms=row["scrape_duration_ms"],
        ats_type=row["ats_type"],
        error_type=row["error_type"],
        error_message=row["error_message"],
        net_job_change=row["net_job_change"],
    )
