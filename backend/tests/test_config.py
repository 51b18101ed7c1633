"""Tests for configuration loading and path resolution."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from attachments.config import AppConfig, get_config, load_config, set_config


def test_defaults_without_files(tmp_path):
    """Missing settings and secrets files fall back to defaults."""
    cfg = load_config(
        settings_path=tmp_path / "missing.settings.yaml",
        secrets_path=tmp_path / "missing.secrets.yaml",
    )
    assert cfg.storage.bucket is None
    assert cfg.storage.region == "us-east-1"
    assert cfg.storage.part_url_ttl_seconds == 7200
    assert cfg.uploads.session_ttl_seconds == 7200
    assert cfg.uploads.registry_backend == "memory"
    assert cfg.uploads.max_file_size_bytes == 500 * 1024 * 1024


def test_settings_and_secrets_are_merged(tmp_path):
    settings_file = tmp_path / "attachments.settings.yaml"
    settings_file.write_text(
        "storage:\n"
        "  bucket: chat-attachments\n"
        "  key_prefix: /uploads/\n"
        "uploads:\n"
        "  registry_backend: redis\n"
        "  session_ttl_seconds: 600\n",
        encoding="utf-8",
    )
    secrets_file = tmp_path / "attachments.secrets.yaml"
    secrets_file.write_text(
        "aws:\n"
        "  access_key_id: AKIAEXAMPLE\n"
        "  secret_access_key: example\n"
        "redis:\n"
        "  url: redis://cache:6379/2\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file, secrets_path=secrets_file)

    assert cfg.storage.bucket == "chat-attachments"
    assert cfg.storage.key_prefix == "uploads"
    assert cfg.uploads.registry_backend == "redis"
    assert cfg.uploads.session_ttl_seconds == 600
    assert cfg.secrets.aws.access_key_id == "AKIAEXAMPLE"
    assert cfg.secrets.redis.url == "redis://cache:6379/2"


def test_unknown_registry_backend_rejected():
    with pytest.raises(ValidationError):
        AppConfig(**{"uploads": {"registry_backend": "memcached"}})


def test_events_path_relative_to_project_root_when_settings_in_config_dir(tmp_path):
    """Relative events_path resolves from project root for ./config layout."""
    project_root = tmp_path / "project"
    config_dir = project_root / "config"
    config_dir.mkdir(parents=True)

    settings_file = config_dir / "attachments.settings.yaml"
    settings_file.write_text(
        "logging:\n"
        "  events_path: data/upload_events.duckdb\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file, secrets_path=config_dir / "none.yaml")
    assert Path(cfg.logging.events_path) == project_root / "data" / "upload_events.duckdb"


def test_events_path_relative_to_settings_dir_for_nonstandard_layout(tmp_path):
    settings_file = tmp_path / "attachments.settings.yaml"
    settings_file.write_text(
        "logging:\n"
        "  events_path: local/upload_events.duckdb\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file, secrets_path=tmp_path / "none.yaml")
    assert Path(cfg.logging.events_path) == tmp_path / "local" / "upload_events.duckdb"


def test_events_path_absolute_remains_unchanged(tmp_path):
    absolute_path = tmp_path / "absolute" / "upload_events.duckdb"
    settings_file = tmp_path / "attachments.settings.yaml"
    settings_file.write_text(
        "logging:\n"
        f"  events_path: {absolute_path}\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file, secrets_path=tmp_path / "none.yaml")
    assert Path(cfg.logging.events_path) == absolute_path


def test_set_config_overrides_global():
    custom = AppConfig(**{"storage": {"bucket": "override"}})
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        set_config(None)
