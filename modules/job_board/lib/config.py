from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import SourceType
from .utils import truthy

DEFAULT_SQLITE_PATH = "/app/local/state/jobboard.db"


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings."""


# -----------------------------
# Models
# -----------------------------
@dataclass
class Settings:
    """
    Canonical configuration for the job-board scraping pipeline.

    Delays are deliberate politeness pauses (seconds), not I/O timeouts:
      job_board_delay_s      before fetching a company's board page
      job_details_delay_s    before each posting fetch; also the per-item
                             stagger used when scheduling detail fetches
      inter_company_delay_s  between companies in a fleet-wide run
    """

    sqlite_path: str = DEFAULT_SQLITE_PATH

    # Rate limiting
    job_board_delay_s: float = 1.0
    job_details_delay_s: float = 1.0
    inter_company_delay_s: float = 2.0

    # HTTP / rendering
    http_timeout_s: float = 15.0
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) JobScraper/1.0 Safari/537.36"
    )
    render_source_types: list[str] = field(default_factory=lambda: [SourceType.ASHBY.value])
    render_wait_ms: int = 2000

    # Refuse to reconcile an empty link list for a company that has active jobs
    guard_empty_results: bool = True

    # Extraction service (OpenAI facade reads these env var names)
    openai_model_env: str = "OPENAI_MODEL_JOB_BOARD"
    openai_temp_env: str = "OPENAI_TEMP_JOB_BOARD"

    skip_network: bool = False

    def requires_rendering(self, source_type: SourceType | str | None) -> bool:
        return SourceType.parse(source_type).value in self.render_source_types

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None = None) -> Settings:
        """
        Build Settings from kwargs (scheduler/CLI) with env fallbacks.

        Expected kwargs (all optional):

            sqlite_path: str            # env JOB_BOARD_SQLITE_PATH
            job_board_delay_s: float
            job_details_delay_s: float
            inter_company_delay_s: float
            http_timeout_s: float
            user_agent: str
            render_source_types: list[str] | "ashby,greenhouse"
            render_wait_ms: int
            guard_empty_results: bool
            openai_model_env: str
            openai_temp_env: str
            skip_network: bool
        """
        kw = dict(kwargs or {})
        defaults = cls()

        sqlite_path = str(
            kw.get("sqlite_path") or os.getenv("JOB_BOARD_SQLITE_PATH") or defaults.sqlite_path
        ).strip()

        try:
            settings = cls(
                sqlite_path=sqlite_path,
                job_board_delay_s=_float(kw, "job_board_delay_s", defaults.job_board_delay_s),
                job_details_delay_s=_float(kw, "job_details_delay_s", defaults.job_details_delay_s),
                inter_company_delay_s=_float(kw, "inter_company_delay_s", defaults.inter_company_delay_s),
                http_timeout_s=_float(kw, "http_timeout_s", defaults.http_timeout_s),
                user_agent=str(kw.get("user_agent") or defaults.user_agent),
                render_source_types=_source_types(kw.get("render_source_types"), defaults.render_source_types),
                render_wait_ms=int(kw.get("render_wait_ms") if kw.get("render_wait_ms") is not None else defaults.render_wait_ms),
                guard_empty_results=(
                    truthy(kw["guard_empty_results"]) if "guard_empty_results" in kw else defaults.guard_empty_results
                ),
                openai_model_env=str(kw.get("openai_model_env") or defaults.openai_model_env),
                openai_temp_env=str(kw.get("openai_temp_env") or defaults.openai_temp_env),
                skip_network=truthy(kw.get("skip_network")),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid job_board settings: {e}") from e

        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _float(kw: Mapping[str, Any], key: str, default: float) -> float:
    v = kw.get(key)
    if v is None or v == "":
        return default
    return float(v)


def _source_types(raw: Any, default: list[str]) -> list[str]:
    if raw is None:
        return list(default)
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = [str(s) for s in raw]
    else:
        raise ConfigError("'render_source_types' must be a list or comma-separated string.")
    out: list[str] = []
    for s in items:
        s = s.strip().lower()
        if not s:
            continue
        if s not in {t.value for t in SourceType}:
            raise ConfigError(f"Unknown source type in 'render_source_types': {s!r}")
        out.append(s)
    return out


def _validate_settings(s: Settings) -> None:
    if not s.sqlite_path:
        raise ConfigError("'sqlite_path' cannot be empty.")
    for name in ("job_board_delay_s", "job_details_delay_s", "inter_company_delay_s"):
        if getattr(s, name) < 0:
            raise ConfigError(f"'{name}' must be >= 0.")
    if s.http_timeout_s <= 0:
        raise ConfigError("'http_timeout_s' must be > 0.")
    if s.render_wait_ms < 0:
        raise ConfigError("'render_wait_ms' must be >= 0.")
