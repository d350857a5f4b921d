# tests/test_logging_utils.py
import json
from datetime import datetime, timezone

from modules.job_board.lib import logging_bridge
from modules.job_board.lib.models import ErrorType
from service import logging_utils as L


def _lines(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def test_activity_log_is_jsonl_with_metadata():
    L.write_activity_log({"component": "test", "op": "one"})
    L.write_activity_log({"component": "test", "op": "two"})

    path = L.get_activity_log_path()
    assert "activity-test-" in path
    rows = _lines(path)
    assert [r["op"] for r in rows] == ["one", "two"]
    assert "ts" in rows[0]
    assert set(rows[0]["_meta"]) >= {"host", "pid"}


def test_secret_keys_are_redacted_deeply():
    L.write_error_log({
        "component": "test",
        "op": "redact",
        "api_key": "sk-123",
        "nested": {"Authorization": "Bearer abc", "ok": "Bearer xyz"},
    })
    [row] = _lines(L.get_error_log_path())
    assert row["api_key"] == "***REDACTED***"
    assert row["nested"]["Authorization"] == "***REDACTED***"
    assert row["nested"]["ok"] == "Bearer ***REDACTED***"


def test_redact_does_not_mutate_input():
    rec = {"password": "x", "list": [{"token": "y"}]}
    out = L.redact(rec)
    assert rec["password"] == "x"
    assert out["list"][0]["token"] == "***REDACTED***"


def test_non_json_values_are_serialized():
    when = datetime(2025, 1, 1, tzinfo=timezone.utc)
    L.write_activity_log({"component": "test", "op": "types", "when": when, "kind": ErrorType.TIMEOUT, "s": {"b", "a"}})
    [row] = _lines(L.get_activity_log_path())
    assert row["when"] == "2025-01-01T00:00:00+00:00"
    assert row["kind"] == "timeout"
    assert row["s"] == ["a", "b"]


def test_bridge_writes_through_service_logger():
    logging_bridge.activity({"component": "job_board.test", "op": "bridge", "secret": "hide"})
    logging_bridge.error({"component": "job_board.test", "op": "bridge_err"})

    [act] = _lines(L.get_activity_log_path())
    [err] = _lines(L.get_error_log_path())
    assert act["op"] == "bridge"
    assert act["secret"] == "***REDACTED***"
    assert err["op"] == "bridge_err"
