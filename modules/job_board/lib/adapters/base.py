from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..extraction import ExtractionService
    from ..http_client import HttpClient


class JobLinkAdapter(ABC):
    """
    Turns one company's job-board page into the list of individual posting URLs.

    Contract:
      - extract_job_links(html, base_url) returns URLs (absolute or relative)
        pointing at individual postings; the reconciler resolves and de-dupes.
      - Structured and pattern adapters never raise for "nothing found"; they
        return []. Adapters that depend on an external service let that
        service's failure propagate so the caller can record it.
      - No datastore access, no scheduling.
    """

    # Concrete subclasses MUST set this to the SourceType value they serve, e.g. "ashby"
    kind: str = ""

    def __init__(
        self,
        *,
        http: HttpClient | None = None,
        extractor: ExtractionService | None = None,
        page_delay_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.http = http
        self.extractor = extractor
        # pause between follow-up page fetches (paginated boards)
        self.page_delay_s = float(page_delay_s)
        self.sleep = sleep

    @abstractmethod
    def extract_job_links(self, html: str, base_url: str) -> list[str]:
        raise NotImplementedError
