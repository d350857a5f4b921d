from __future__ import annotations

import copy
import logging
from typing import Any

# Prefer the service's JSONL writer; default to stdlib logging when the
# service package isn't importable (e.g. the library used standalone).
_logging_backend = None
try:
    from service import logging_utils as _svc_logging  # type: ignore

    _logging_backend = _svc_logging
except ImportError:
    _logging_backend = None

# Keys that should be redacted from structured logs
_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
    "auth",
    "bearer",
}


def _redact_record(record: dict[str, Any]) -> dict[str, Any]:
    """
    Shallow-copy record and redact obvious secret-like fields at top level.
    The service writer does a deep pass on top of this.
    """
    redacted = copy.copy(record)
    for k in list(redacted.keys()):
        lk = str(k).lower()
        if lk in _REDACT_KEYS or lk.endswith("_secret") or lk.endswith("_api_key"):
            redacted[k] = "***REDACTED***"
    return redacted


def activity(record: dict[str, Any]) -> None:
    """
    Write an activity record to the service logging utility if available.
    Falls back to stdlib logging as structured info.
    """
    payload = _redact_record(record)
    if _logging_backend and hasattr(_logging_backend, "write_activity_log"):
        try:
            _logging_backend.write_activity_log(payload)  # type: ignore[attr-defined]
            return
        except Exception:
            logging.getLogger("job_board.activity").debug("activity sink failed", exc_info=True)
    logging.getLogger("job_board.activity").info(payload)


def error(record: dict[str, Any]) -> None:
    """
    Write an error record to the service logging utility if available.
    Falls back to stdlib logging as structured error.
    """
    payload = _redact_record(record)
    if _logging_backend and hasattr(_logging_backend, "write_error_log"):
        try:
            _logging_backend.write_error_log(payload)  # type: ignore[attr-defined]
            return
        except Exception:
            logging.getLogger("job_board.error").debug("error sink failed", exc_info=True)
    logging.getLogger("job_board.error").error(payload)
