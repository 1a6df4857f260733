from pathlib import Path

import pytest
from pydantic import ValidationError

from memora.application.config import AppConfig, resolve_config


def _write_config(home: Path, text: str) -> Path:
    path = home / ".config/memora/config.toml"
    path.parent.mkdir(parents=True)
    path.write_text(text)
    return path


def test_defaults(mock_home):
    config = resolve_config()

    assert config.timezone == "UTC"
    assert config.server_url == "http://localhost:8777"
    assert config.data_dir == mock_home / ".local/share/memora"
    assert config.mirror_path == config.data_dir / "mirror.db"
    assert config.server_db == config.data_dir / "server.db"


def test_toml_file_is_loaded(mock_home):
    _write_config(mock_home, 'timezone = "Asia/Tokyo"\nsync_interval = 5\n')

    config = resolve_config()

    assert config.timezone == "Asia/Tokyo"
    assert config.sync_interval == 5


def test_env_overrides_toml(mock_home, monkeypatch):
    _write_config(mock_home, 'timezone = "Asia/Tokyo"\n')
    monkeypatch.setenv("MEMORA_TIMEZONE", "Europe/Berlin")

    assert resolve_config().timezone == "Europe/Berlin"


def test_cli_overrides_env(mock_home, monkeypatch):
    monkeypatch.setenv("MEMORA_TIMEZONE", "Europe/Berlin")

    config = resolve_config({"timezone": "America/Chicago", "server_url": None})

    assert config.timezone == "America/Chicago"
    assert config.server_url == "http://localhost:8777"


def test_data_dir_moves_default_paths(mock_home, tmp_path):
    config = resolve_config({"data_dir": str(tmp_path / "data")})

    assert config.mirror_path == tmp_path / "data" / "mirror.db"


def test_unknown_timezone_rejected(mock_home):
    with pytest.raises(ValidationError):
        AppConfig(timezone="Mars/Olympus")


def test_tz_property(mock_home):
    config = AppConfig(timezone="Europe/Berlin")

    assert str(config.tz) == "Europe/Berlin"


def test_verbose_from_env(mock_home, monkeypatch):
    assert resolve_config().verbose == 0
    monkeypatch.setenv("MEMORA_VERBOSE", "2")

    assert resolve_config().verbose == 2
    assert resolve_config({"verbose": 1}).verbose == 1
