from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment  # pip install beautifulsoup4 html5lib

_WS_RE = re.compile(r"\s+")
_BETWEEN_TAGS_RE = re.compile(r">\s+<")
_JOB_COUNT_RE = re.compile(r"(\d+)\s+jobs?", re.I)


def clean_text(text: str | None) -> str:
    return _WS_RE.sub(" ", (text or "").strip())


def resolve_url(url: str, base_url: str) -> str:
    """Absolute URLs pass through; anything else is joined onto base_url."""
    u = (url or "").strip()
    if u.startswith(("http://", "https://")):
        return u
    return urljoin(base_url, u)


def dedupe(items: Iterable[str]) -> list[str]:
    """Order-preserving de-duplication."""
    seen: set[str] = set()
    out: list[str] = []
    for it in items:
        if it in seen:
            continue
        seen.add(it)
        out.append(it)
    return out


def clean_html_for_parsing(html: str, max_length: int = 6000) -> str:
    """
    Shrink a page before handing it to the extraction service.

    Drops script/style/noscript elements and comments, collapses whitespace,
    and truncates to `max_length` characters with a trailing "...".
    """
    soup = BeautifulSoup(html or "", "html5lib")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for c in soup.find_all(string=lambda s: isinstance(s, Comment)):
        c.extract()

    cleaned = _WS_RE.sub(" ", str(soup))
    cleaned = _BETWEEN_TAGS_RE.sub("><", cleaned).strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length] + "..."
    return cleaned


def extract_job_count(html: str) -> int | None:
    """First "<n> jobs" phrase on the page, if any."""
    m = _JOB_COUNT_RE.search(html or "")
    return int(m.group(1)) if m else None
