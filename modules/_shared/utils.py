# modules/_shared/utils.py
from __future__ import annotations

import contextlib
import glob
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_TEMPERATURE = 0.0


def _truthy(s: str | None) -> bool:
    return (s or "").strip().lower() in {"1", "true", "yes", "on"}


def _get_float_env(name: str | None, default: float) -> float:
    if not name:
        return default
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except Exception:
        log.warning("Invalid float in %s=%r; using default %s", name, raw, default)
        return default


def build_openai_client(api_key_env: str = "OPENAI_API_KEY") -> Any:
    """
    Construct the OpenAI client once per process. The result is handed to
    OpenAIChat explicitly; nothing here caches it globally.
    """
    from openai import OpenAI  # local import to keep tests light

    api_key = os.getenv(api_key_env)
    if not api_key:
        raise RuntimeError(f"{api_key_env} not set")
    return OpenAI(api_key=api_key)


@dataclass
class OpenAIChat:
    """
    Thin facade over client.chat.completions with:
      - an explicitly injected client (see `build_openai_client`)
      - model loaded from env via `model_env` (DEFAULT_MODEL if unset)
      - temperature from `temp_env` (DEFAULT_TEMPERATURE if unset/invalid)
      - optional JSON-object response mode
      - optional markdown archival controlled by LLM_MD_* envs
    """

    client: Any
    model_env: str
    temp_env: str

    def chat(self, system_msg: str, user_msg: str, *, json_mode: bool = False) -> str:
        model = os.getenv(self.model_env) or DEFAULT_MODEL
        temp = _get_float_env(self.temp_env, DEFAULT_TEMPERATURE)

        log.debug("OpenAIChat.chat(model=%r, temperature=%s, json_mode=%s)", model, temp, json_mode)
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = self.client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": system_msg}, {"role": "user", "content": user_msg}],
            temperature=temp,
            **kwargs,
        )
        content = (resp.choices[0].message.content or "").strip()
        log.debug("OpenAIChat.chat() received %d chars", len(content))

        _archive_markdown(content)
        return content


def _archive_markdown(content: str) -> None:
    """Write the reply under LLM_MD_DIR when LLM_MD_ENABLE is set. Never raises."""
    try:
        if not _truthy(os.getenv("LLM_MD_ENABLE")):
            return
        md_dir = os.getenv("LLM_MD_DIR", "/app/state/llm")
        prefix = os.getenv("LLM_MD_PREFIX", "llm")
        max_keep = int(os.getenv("LLM_MD_MAX", "0"))  # 0 = unlimited
        os.makedirs(md_dir, exist_ok=True)
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        safe_prefix = re.sub(r"[^a-zA-Z0-9._-]+", "-", prefix).strip("-")
        fname = f"{safe_prefix + '-' if safe_prefix else ''}{ts}.md"
        out_path = os.path.join(md_dir, fname)
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(content + "\n")
        log.debug("Wrote LLM markdown to %s", out_path)
        if max_keep > 0:
            pattern = os.path.join(md_dir, f"{safe_prefix + '-' if safe_prefix else ''}*.md")
            files = sorted(glob.glob(pattern), key=os.path.getmtime, reverse=True)
            for old in files[max_keep:]:
                with contextlib.suppress(Exception):
                    os.remove(old)
    except Exception as werr:
        log.debug("LLM markdown write skipped: %r", werr)
