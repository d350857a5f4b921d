"""
Extraction service: turns raw board/posting HTML into structured data via the
shared OpenAI chat facade.

The chat client is injected (built once per process in `main.build_pipeline`);
tests pass a fake with the same `chat(system_msg, user_msg, json_mode=...)`
signature.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from . import logging_bridge
from .adapters.utils import clean_html_for_parsing
from .models import (
    COMPENSATION_TYPES,
    EDUCATION_LEVELS,
    EMPLOYMENT_TYPES,
    REMOTE_OPTIONS,
    ROLE_TYPES,
    JobDetails,
)

LOG = logging.getLogger(__name__)

LINKS_HTML_LIMIT = 6000
DETAILS_HTML_LIMIT = 8000


class ExtractionError(Exception):
    """Extraction call failed or returned something that isn't usable JSON."""


class ChatClient(Protocol):
    def chat(self, system_msg: str, user_msg: str, *, json_mode: bool = False) -> str: ...


JOB_LINKS_SCHEMA: dict[str, Any] = {
    "urls": ["string (absolute or relative URL of ONE job posting)"],
}

JOB_DETAILS_SCHEMA: dict[str, Any] = {
    "title": "string",
    "description": "string (full job description)",
    "locations": ["string"],
    "education_level": " | ".join(EDUCATION_LEVELS),
    "years_of_experience": {"min": "number", "max": "number | null"},
    "role_type": " | ".join(ROLE_TYPES),
    "employment_type": " | ".join(EMPLOYMENT_TYPES),
    "is_internship": "boolean",
    "internship_requirements": {
        "graduation_date": "string",
        "eligible_programs": ["string"],
        "additional_requirements": "string",
    },
    "additional_requirements": "string",
    "compensation": {
        "type": " | ".join(COMPENSATION_TYPES),
        "min": "number",
        "max": "number",
        "currency": "string (ISO code, e.g. USD)",
    },
    "remote_options": " | ".join(REMOTE_OPTIONS),
    "equity": {"offered": "boolean", "percentage": "number", "details": "string"},
}

_SYSTEM_MSG = (
    "You extract structured data from web pages. "
    "Reply with a single JSON object matching the requested shape and nothing else."
)

_LINKS_PROMPT = """\
Extract job listing URLs from this HTML content. Only return the URLs/links that
lead to individual job postings.

Look for:
- URLs containing "/jobs/", "/careers/", "/job/", "/position/"
- Links that clearly lead to individual job postings (not category pages)

Ignore navigation links, footer links, or other non-job-related links."""

_DETAILS_PROMPT = """\
Extract detailed job information from this job posting.

Instructions:
- Only include fields that are clearly mentioned in the content; omit the rest
- For experience, extract minimum and maximum years if specified
- For education, role type, employment type and remote options use one of the listed values
- For compensation, extract numbers, currency and pay period
- For equity, look for mentions of stock options, equity, or ownership
- Be conservative: if unsure, leave the field out"""


def extract_json_from_response(response: str) -> dict[str, Any]:
    """
    Pull a JSON object out of a model reply.

    Tries, in order: the whole reply, a ```json fenced block, then the first
    {...} span. Raises ValueError if none parse to an object.
    """
    text = (response or "").strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fenced:
        try:
            data = json.loads(fenced.group(1))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    braces = re.search(r"\{.*\}", text, re.DOTALL)
    if braces:
        try:
            data = json.loads(braces.group())
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    raise ValueError(f"Could not extract a JSON object from response. Preview: {text[:200]!r}")


class ExtractionService:
    def __init__(self, chat: ChatClient) -> None:
        self.chat = chat

    def generate_structured(self, schema: dict[str, Any], prompt: str, html: str | None = None) -> dict[str, Any]:
        """
        Ask the model for a JSON object shaped like `schema`.
        Any transport or decoding failure is raised as ExtractionError.
        """
        parts = [prompt.strip(), "", "Return JSON shaped like:", json.dumps(schema, indent=2)]
        if html is not None:
            parts += ["", "HTML content to parse:", html]
        user_msg = "\n".join(parts)

        try:
            raw = self.chat.chat(_SYSTEM_MSG, user_msg, json_mode=True)
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.extraction",
                "op": "chat_failed",
                "error": repr(e),
            })
            raise ExtractionError(f"extraction call failed: {e}") from e

        try:
            return extract_json_from_response(raw)
        except ValueError as e:
            raise ExtractionError(str(e)) from e

    def extract_job_links(self, html: str) -> list[str]:
        cleaned = clean_html_for_parsing(html, LINKS_HTML_LIMIT)
        data = self.generate_structured(JOB_LINKS_SCHEMA, _LINKS_PROMPT, cleaned)
        urls = data.get("urls")
        if not isinstance(urls, list):
            raise ExtractionError("extraction result has no 'urls' list")
        return [u.strip() for u in urls if isinstance(u, str) and u.strip()]

    def extract_job_details(self, html: str) -> JobDetails:
        cleaned = clean_html_for_parsing(html, DETAILS_HTML_LIMIT)
        data = self.generate_structured(JOB_DETAILS_SCHEMA, _DETAILS_PROMPT, cleaned)
        details = JobDetails.from_dict(data)
        LOG.debug("extracted %d detail fields", len(details.to_dict()))
        return details
