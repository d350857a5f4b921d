# modules/job_board/lib/adapters/greenhouse.py
from __future__ import annotations

import logging
import math
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .. import logging_bridge
from .base import JobLinkAdapter
from .registry import register
from .utils import dedupe, extract_job_count

LOG = logging.getLogger(__name__)

_JOB_LINK_RE = re.compile(r'href="(https://job-boards\.greenhouse\.io/[^"]+/jobs/\d+)"')
PAGE_SIZE = 50


def _page_url(base_url: str, page: int) -> str:
    parts = urlsplit(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def links_on_page(html: str) -> list[str]:
    return dedupe(m.group(1) for m in _JOB_LINK_RE.finditer(html or ""))


@register
class GreenhouseAdapter(JobLinkAdapter):
    """
    Greenhouse job-boards list postings as plain anchors. When the page
    advertises more jobs than it shows (and an HTTP client is available),
    the remaining `?page=N` pages are fetched too.
    """

    kind = "greenhouse"

    def extract_job_links(self, html: str, base_url: str) -> list[str]:
        links = links_on_page(html)
        total = extract_job_count(html)
        if self.http is None or not total or total <= len(links):
            return links

        pages = math.ceil(total / PAGE_SIZE)
        LOG.debug("greenhouse: %s advertises %d jobs over %d pages", base_url, total, pages)
        for page in range(2, pages + 1):
            url = _page_url(base_url, page)
            if self.page_delay_s:
                self.sleep(self.page_delay_s)
            try:
                res = self.http.fetch(url)
            except Exception as e:
                logging_bridge.error({
                    "component": "job_board.adapters.greenhouse",
                    "op": "page_failed",
                    "url": url,
                    "error": repr(e),
                })
                continue
            if not res.ok:
                logging_bridge.error({
                    "component": "job_board.adapters.greenhouse",
                    "op": "page_failed",
                    "url": url,
                    "status": res.status,
                })
                continue
            page_links = links_on_page(res.body)
            if not page_links:
                break
            links.extend(page_links)

        return dedupe(links)
