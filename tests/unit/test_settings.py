import pytest

from connections.credentials import resolve_secret
from utils.env_loader import load_environments
from utils.settings import load_settings


def test_env_file_fills_unset_names_only(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# warehouse\n"
        "export WAREHOUSE_PASSWORD='s3cret'\n"
        "POOL_MAX_SESSIONS=7\n"
        "LOG_LEVEL=debug\n"
        "not a setting\n",
        encoding="utf-8",
    )
    # setenv first so teardown also removes what the file adds.
    for name in ("WAREHOUSE_PASSWORD", "POOL_MAX_SESSIONS"):
        monkeypatch.setenv(name, "unset")
        monkeypatch.delenv(name)
    monkeypatch.setenv("LOG_LEVEL", "warning")

    loaded = load_environments(str(env_file))
    assert loaded == ["WAREHOUSE_PASSWORD", "POOL_MAX_SESSIONS"]
    assert resolve_secret("env:WAREHOUSE_PASSWORD") == "s3cret"

    settings = load_settings(str(env_file))
    assert settings.pool_max_sessions == 7
    assert settings.log_level == "WARNING"


def test_missing_env_file_is_ignored(tmp_path):
    assert load_environments(str(tmp_path / "absent.env")) == []


def test_invalid_numbers_are_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("POOL_MAX_SESSIONS", "0")
    with pytest.raises(ValueError, match="POOL_MAX_SESSIONS must be >= 1"):
        load_settings(str(tmp_path / "absent.env"))
    monkeypatch.setenv("POOL_MAX_SESSIONS", "many")
    with pytest.raises(ValueError, match="must be an integer"):
        load_settings(str(tmp_path / "absent.env"))
