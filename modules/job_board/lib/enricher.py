from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import logging_bridge
from .models import ErrorType

if TYPE_CHECKING:
    from .engine import JobBoardPipeline

LOG = logging.getLogger(__name__)


class DetailFetchError(Exception):
    """The posting page could not be retrieved (non-2xx or render failure)."""


def enrich_job(pipeline: JobBoardPipeline, job_id: int, job_url: str) -> dict[str, Any]:
    """
    Fetch one posting, extract its structured fields and patch the job.

    The job is marked fetched even when extraction returns nothing, so it is
    not reprocessed forever. Failures are recorded against the company (the
    backoff model is company-wide) and returned, never raised.
    """
    settings = pipeline.settings
    store = pipeline.store

    job = store.get_job(job_id)
    if job is None:
        return {"success": False, "error": "Job not found"}
    if settings.skip_network:
        return {"success": False, "error": "network disabled (skip_network)"}

    company = store.get_company(job.company_id)
    try:
        if settings.job_details_delay_s:
            pipeline.sleep(settings.job_details_delay_s)
        html = _fetch_posting(pipeline, job_url, company.source_type if company else None)

        if pipeline.extractor is None:
            raise RuntimeError("no extraction service configured")
        details = pipeline.extractor.extract_job_details(html)
        store.patch_job(job_id, details, is_fetched=True)
    except DetailFetchError as e:
        pipeline.add_company_error(job.company_id, ErrorType.JOB_FETCH_FAILED, str(e), job_url)
        return {"success": False, "error": str(e)}
    except Exception as e:
        message = str(e) or e.__class__.__name__
        pipeline.add_company_error(job.company_id, ErrorType.JOB_DETAILS_FAILED, message, job_url)
        logging_bridge.error({
            "component": "job_board.enricher",
            "op": "details_failed",
            "job_id": job_id,
            "url": job_url,
            "error": repr(e),
        })
        return {"success": False, "error": message}

    fields = len(details.to_dict())
    logging_bridge.activity({
        "component": "job_board.enricher",
        "op": "details_fetched",
        "job_id": job_id,
        "url": job_url,
        "fields": fields,
    })
    return {"success": True, "fields_updated": fields}


def _fetch_posting(pipeline: JobBoardPipeline, url: str, source_type: Any) -> str:
    if pipeline.settings.requires_rendering(source_type):
        if pipeline.renderer is not None:
            rendered = pipeline.renderer.render_and_fetch(url)
            if not rendered.success or rendered.html is None:
                raise DetailFetchError(f"Failed to render job details: {rendered.error or 'no html'}")
            return rendered.html
        LOG.info("rendering requested for %s but no renderer configured; using plain GET", url)

    res = pipeline.http.fetch(url)
    if not res.ok:
        raise DetailFetchError(f"Failed to fetch job details: HTTP {res.status}")
    return res.body
