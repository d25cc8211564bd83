"""Tests for data directory resolution."""

from pathlib import Path

from lastmile.utils.paths import (
    ensure_dirs_exist,
    get_data_dir,
    get_default_db_path,
    get_user_config_dir,
)


def test_get_data_dir_uses_platformdirs(monkeypatch):
    """Without an override the data dir comes from platformdirs."""
    monkeypatch.delenv("LASTMILE_DATA_DIR", raising=False)
    result = get_data_dir()
    assert isinstance(result, Path)
    assert "lastmile" in str(result).lower()


def test_env_var_overrides_data_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LASTMILE_DATA_DIR", str(tmp_path))
    assert get_data_dir() == tmp_path


def test_get_default_db_path(monkeypatch, tmp_path):
    """Default DB path combines data dir + lastmile.db."""
    monkeypatch.setenv("LASTMILE_DATA_DIR", str(tmp_path))
    assert get_default_db_path() == tmp_path / "lastmile.db"


def test_ensure_dirs_exist_creates_data_dir(monkeypatch, tmp_path):
    target = tmp_path / "nested" / "data"
    monkeypatch.setenv("LASTMILE_DATA_DIR", str(target))
    ensure_dirs_exist()
    assert target.is_dir()


def test_user_config_dir_is_in_home():
    assert get_user_config_dir() == Path.home() / ".lastmile"
