"""Tests for settings loading and path resolution."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from chatpulse.config import AppSettings, PresenceSettings, load_config


def test_defaults_when_files_missing(tmp_path):
    cfg = load_config(settings_path=tmp_path / "chatpulse.settings.yaml")

    assert cfg.server.port == 5000
    assert cfg.presence.grace_seconds == 5.0
    assert cfg.presence.snapshot_interval_seconds == 5.0
    assert cfg.auth.token_expire_minutes == 1440
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_relative_paths_resolve_against_settings_dir(tmp_path):
    settings_file = tmp_path / "chatpulse.settings.yaml"
    settings_file.write_text(
        "database:\n"
        "  path: data/chat.duckdb\n"
        "uploads:\n"
        "  upload_dir: media\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.database.path) == tmp_path / "data" / "chat.duckdb"
    assert Path(cfg.uploads.upload_dir) == tmp_path / "media"


def test_memory_database_and_absolute_paths_unchanged(tmp_path):
    absolute_uploads = tmp_path / "elsewhere" / "uploads"
    settings_file = tmp_path / "chatpulse.settings.yaml"
    settings_file.write_text(
        "database:\n"
        "  path: ':memory:'\n"
        "uploads:\n"
        f"  upload_dir: {absolute_uploads}\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.database.path == ":memory:"
    assert Path(cfg.uploads.upload_dir) == absolute_uploads


def test_secrets_loaded_from_settings_dir(tmp_path):
    settings_file = tmp_path / "chatpulse.settings.yaml"
    settings_file.write_text("presence:\n  grace_seconds: 0\n", encoding="utf-8")
    (tmp_path / "chatpulse.secrets.yaml").write_text(
        "jwt:\n  secret_key: from-file\n", encoding="utf-8"
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.secrets.jwt.secret_key == "from-file"
    assert cfg.presence.grace_seconds == 0


@pytest.mark.parametrize(
    "values",
    [
        {"grace_seconds": -1},
        {"snapshot_interval_seconds": 0},
    ],
)
def test_presence_validation(values):
    with pytest.raises(ValidationError):
        PresenceSettings(**values)


def test_database_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        AppSettings(database={"query_timeout_seconds": 0})
