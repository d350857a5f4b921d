#!/usr/bin/env python3

import glob
import os
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

# Path to search for .db files
PROJECT_ROOT = Path(__file__).resolve().parent.parent  # ../scripts → project root
DB_DIR = PROJECT_ROOT / "local" / "state"
DB_PATTERN = str(DB_DIR / "*.db")  # glob needs a string


def get_db_files() -> list[str]:
    """Return list of .db files in the target directory."""
    return sorted(glob.glob(DB_PATTERN))


def get_latest_jobs(db_path: str, limit: int = 15) -> list[tuple[str, str, str, str, int, str | None]]:
    """
    Fetch the newest `limit` jobs across companies, sorted by first_seen_at DESC.
    Returns list of (company, title, url, first_seen_at, is_fetched, deleted_at)
    """
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT c.name, j.title, j.url, j.first_seen_at, j.is_fetched, j.deleted_at
              FROM jobs j
              JOIN companies c ON c.id = j.company_id
             ORDER BY j.first_seen_at DESC, j.id DESC
             LIMIT ?
            """,
            (limit,),
        )
        rows = cur.fetchall()
        conn.close()
        return rows
    except sqlite3.Error as e:
        print(f"Error reading {db_path}: {e}", file=sys.stderr)
        return []


def get_recent_failures(db_path: str, limit: int = 10) -> list[tuple[str, str, str, str]]:
    """Latest failed scrape attempts: (company, scraped_at, error_type, error_message)."""
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT c.name, m.scraped_at, m.error_type, m.error_message
              FROM scraping_metrics m
              JOIN companies c ON c.id = m.company_id
             WHERE m.success = 0
             ORDER BY m.scraped_at DESC
             LIMIT ?
            """,
            (limit,),
        )
        rows = cur.fetchall()
        conn.close()
        return rows
    except sqlite3.Error as e:
        print(f"Error reading {db_path}: {e}", file=sys.stderr)
        return []


def format_timestamp(iso_str: str | None) -> str:
    """Convert ISO timestamp to readable local format."""
    if not iso_str:
        return "-"
    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
        return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    except ValueError:
        return iso_str


def main():
    if not os.path.exists(DB_DIR):
        print(f"Directory not found: {DB_DIR}")
        sys.exit(1)

    db_files = get_db_files()
    if not db_files:
        print(f"No .db files found in {DB_DIR}")
        return

    # Parse optional limit
    limit = 15
    if len(sys.argv) > 1:
        try:
            limit = int(sys.argv[1])
            if limit <= 0:
                raise ValueError
        except ValueError:
            print(f"Invalid limit: {sys.argv[1]}. Using default (15).", file=sys.stderr)
            limit = 15

    print(f"Found {len(db_files)} database(s). Showing last {limit} jobs per DB.\n")

    for db_path in db_files:
        print("=" * 80)
        print(f"DATABASE: {os.path.basename(db_path)}")
        print("-" * 80)

        jobs = get_latest_jobs(db_path, limit)
        if not jobs:
            print("  No jobs found or error accessing database.")
        for i, (company, title, url, ts, fetched, deleted) in enumerate(jobs, 1):
            flags = []
            if not fetched:
                flags.append("details pending")
            if deleted:
                flags.append(f"removed {format_timestamp(deleted)}")
            suffix = f"  ({', '.join(flags)})" if flags else ""
            print(f"{i:2d}. [{format_timestamp(ts)}] {company}{suffix}")
            print(f"     Title: {title}")
            print(f"     URL:   {url}")

        failures = get_recent_failures(db_path)
        if failures:
            print("\n  Recent failed scrapes:")
            for company, ts, etype, msg in failures:
                print(f"   - [{format_timestamp(ts)}] {company}: {etype} {msg or ''}".rstrip())
        print()


if __name__ == "__main__":
    main()
