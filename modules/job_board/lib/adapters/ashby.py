# modules/job_board/lib/adapters/ashby.py
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .. import logging_bridge
from .base import JobLinkAdapter
from .registry import register

LOG = logging.getLogger(__name__)

_POSTINGS_KEY = '"jobPostings":'
_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.I)
_TITLE_KEY = '"title":'
_TITLE_WINDOW = 400


def _matching_bracket(text: str, start: int) -> int:
    """
    Index of the ']' closing the '[' at `start`, or -1.
    Brackets inside JSON string literals (and escaped quotes) are ignored.
    """
    depth = 0
    in_str = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _ids_near_titles(html: str) -> list[str]:
    """Fallback: UUID-shaped tokens that sit close to a "title": key."""
    out: list[str] = []
    for m in _UUID_RE.finditer(html):
        lo = max(0, m.start() - _TITLE_WINDOW)
        hi = m.end() + _TITLE_WINDOW
        if _TITLE_KEY in html[lo:hi] and m.group(0) not in out:
            out.append(m.group(0))
    return out


@register
class AshbyAdapter(JobLinkAdapter):
    """
    Ashby boards embed their postings as a JSON array under "jobPostings"
    in the (rendered) page. Each listed posting becomes `<board>/<id>`.
    """

    kind = "ashby"

    def extract_job_links(self, html: str, base_url: str) -> list[str]:
        html = html or ""
        ids = self._posting_ids(html)
        if not ids:
            logging_bridge.activity({
                "component": "job_board.adapters.ashby",
                "op": "no_postings",
                "base_url": base_url,
                "html_sample": html[:500],
            })
            return []

        board = base_url[:-1] if base_url.endswith("/") else base_url
        links = [f"{board}/{pid}" for pid in ids]
        LOG.debug("ashby: %d links for %s", len(links), base_url)
        return links

    def _posting_ids(self, html: str) -> list[str]:
        key_at = html.find(_POSTINGS_KEY)
        if key_at == -1:
            return []
        start = html.find("[", key_at)
        if start == -1:
            return []
        end = _matching_bracket(html, start)
        if end == -1:
            LOG.info("ashby: unterminated jobPostings array; scanning for ids")
            return _ids_near_titles(html)

        try:
            postings: Any = json.loads(html[start : end + 1])
        except json.JSONDecodeError as e:
            LOG.info("ashby: jobPostings JSON did not parse (%s); scanning for ids", e)
            return _ids_near_titles(html)
        if not isinstance(postings, list):
            return []

        ids: list[str] = []
        for p in postings:
            if not isinstance(p, dict):
                continue
            pid = p.get("id")
            if not pid or p.get("isListed") is False:
                continue
            ids.append(str(pid))
        return ids
