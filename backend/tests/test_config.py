"""Tests for settings loading from quorum.settings.yaml / quorum.secrets.yaml."""
import pytest
from pydantic import ValidationError

from quorum.config import (
    AppSettings,
    HistorySettings,
    RealtimeSettings,
    get_config,
    load_settings,
    reset_config,
)


class TestDefaults:
    def test_defaults(self):
        cfg = AppSettings()
        assert cfg.storage.backend == "memory"
        assert cfg.realtime.outbound_queue_size == 256
        assert cfg.history.default_page_size <= cfg.history.max_page_size
        assert cfg.membership.open_groups is True
        assert cfg.secrets.mongo.url is None

    def test_queue_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            RealtimeSettings(outbound_queue_size=0)

    def test_default_page_size_within_max(self):
        with pytest.raises(ValidationError):
            HistorySettings(default_page_size=500, max_page_size=100)

    def test_unknown_storage_backend_rejected(self):
        with pytest.raises(ValidationError):
            AppSettings(storage={"backend": "postgres"})


class TestLoadSettings:
    def test_missing_files_fall_back_to_defaults(self, tmp_path):
        cfg = load_settings(tmp_path / "nope.yaml", tmp_path / "nope-secrets.yaml")
        assert cfg == AppSettings()

    def test_merges_settings_and_secrets(self, tmp_path):
        settings_file = tmp_path / "quorum.settings.yaml"
        secrets_file = tmp_path / "quorum.secrets.yaml"
        settings_file.write_text(
            "server:\n"
            "  port: 8080\n"
            "storage:\n"
            "  backend: mongo\n"
            "  database: chat\n"
            "membership:\n"
            "  open_groups: false\n"
            "  groups:\n"
            "    group123: [alice, bob]\n"
        )
        secrets_file.write_text("mongo:\n  url: mongodb://db:27017\n")

        cfg = load_settings(settings_file, secrets_file)

        assert cfg.server.port == 8080
        assert cfg.storage.backend == "mongo"
        assert cfg.storage.database == "chat"
        assert cfg.membership.groups == {"group123": ["alice", "bob"]}
        assert cfg.secrets.mongo.url == "mongodb://db:27017"

    def test_env_overrides_paths(self, tmp_path, monkeypatch):
        settings_file = tmp_path / "custom.yaml"
        settings_file.write_text("logging:\n  level: debug\n")
        monkeypatch.setenv("QUORUM_SETTINGS_FILE", str(settings_file))
        monkeypatch.setenv("QUORUM_SECRETS_FILE", str(tmp_path / "missing.yaml"))

        assert load_settings().logging.level == "debug"

    def test_empty_file_is_defaults(self, tmp_path):
        settings_file = tmp_path / "empty.yaml"
        settings_file.write_text("")
        cfg = load_settings(settings_file, tmp_path / "missing.yaml")
        assert cfg.server.port == AppSettings().server.port


class TestGetConfig:
    def test_cached_until_reset(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QUORUM_SETTINGS_FILE", str(tmp_path / "a.yaml"))
        monkeypatch.setenv("QUORUM_SECRETS_FILE", str(tmp_path / "b.yaml"))
        reset_config()
        try:
            first = get_config()
            assert get_config() is first
            reset_config()
            assert get_config() is not first
        finally:
            reset_config()
