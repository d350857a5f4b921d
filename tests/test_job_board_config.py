# tests/test_job_board_config.py
import pytest

from modules.job_board.lib.config import DEFAULT_SQLITE_PATH, ConfigError, Settings


def test_defaults():
    s = Settings.from_env_and_kwargs({})
    assert s.sqlite_path == DEFAULT_SQLITE_PATH
    assert (s.job_board_delay_s, s.job_details_delay_s, s.inter_company_delay_s) == (1.0, 1.0, 2.0)
    assert s.render_source_types == ["ashby"]
    assert s.guard_empty_results is True
    assert s.skip_network is False


def test_env_sqlite_path_and_kwarg_precedence(monkeypatch):
    monkeypatch.setenv("JOB_BOARD_SQLITE_PATH", "/tmp/env.db")
    assert Settings.from_env_and_kwargs({}).sqlite_path == "/tmp/env.db"
    assert Settings.from_env_and_kwargs({"sqlite_path": "/tmp/kw.db"}).sqlite_path == "/tmp/kw.db"


def test_string_values_are_coerced():
    s = Settings.from_env_and_kwargs({
        "job_board_delay_s": "0.25",
        "render_source_types": "Ashby, greenhouse ,",
        "guard_empty_results": "false",
        "skip_network": "yes",
        "render_wait_ms": "500",
    })
    assert s.job_board_delay_s == 0.25
    assert s.render_source_types == ["ashby", "greenhouse"]
    assert s.guard_empty_results is False
    assert s.skip_network is True
    assert s.render_wait_ms == 500


def test_requires_rendering():
    s = Settings.from_env_and_kwargs({"render_source_types": ["greenhouse"]})
    assert s.requires_rendering("greenhouse")
    assert not s.requires_rendering("ashby")
    assert not s.requires_rendering(None)


@pytest.mark.parametrize(
    "kw",
    [
        {"inter_company_delay_s": -0.1},
        {"http_timeout_s": 0},
        {"render_wait_ms": -5},
        {"render_source_types": 7},
        {"render_source_types": ["bamboohr"]},
        {"job_details_delay_s": "soon"},
    ],
)
def test_invalid_settings_raise(kw):
    with pytest.raises(ConfigError):
        Settings.from_env_and_kwargs(kw)
