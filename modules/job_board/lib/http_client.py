from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    status: int
    body: str
    ok: bool
    url: str = ""


class HttpClient:
    """Shared HTTP client with retrying session and a status-preserving fetch."""

    def __init__(
        self,
        timeout: float = 15.0,
        user_agent: str = "JobScraper/1.0",
    ):
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        })

        retry = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset(["GET", "HEAD"]),
            raise_on_status=False,
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=20)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def fetch(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> FetchResult:
        """
        GET `url` and return status + decoded body without raising on HTTP errors.

        Transport failures still raise (requests.Timeout, requests.ConnectionError)
        so callers can tell a slow site from a refused connection.
        """
        resp = self.session.get(url, headers=headers, timeout=timeout or self.timeout, **kwargs)
        if not resp.encoding and resp.apparent_encoding:
            resp.encoding = resp.apparent_encoding
        LOG.debug("GET %s -> %s (%d bytes)", url, resp.status_code, len(resp.content or b""))
        return FetchResult(status=resp.status_code, body=resp.text, ok=resp.ok, url=resp.url or url)

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            LOG.debug("HttpClient.close() swallow", exc_info=True)
