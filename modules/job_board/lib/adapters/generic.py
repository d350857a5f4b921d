# modules/job_board/lib/adapters/generic.py
from __future__ import annotations

from ..extraction import ExtractionError
from .base import JobLinkAdapter
from .registry import register
from .utils import dedupe, resolve_url


@register
class GenericAdapter(JobLinkAdapter):
    """
    Fallback for boards without a dedicated adapter: the extraction service
    picks the posting URLs out of the cleaned page. Its failures propagate.
    """

    kind = "other"

    def extract_job_links(self, html: str, base_url: str) -> list[str]:
        if self.extractor is None:
            raise ExtractionError("GenericAdapter needs an extraction service")
        urls = self.extractor.extract_job_links(html)
        return dedupe(resolve_url(u, base_url) for u in urls)
