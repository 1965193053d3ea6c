"""Unit tests for platform-aware configuration defaults."""

from __future__ import annotations

import platformdirs
import pytest

from docbuilder.config import (
    _DEFAULT_DATA_DIR,
    _DEFAULT_DB_PATH,
    DEFAULT_DOWNLOAD_URL,
    Settings,
    StorageSettings,
)


class TestPlatformDefaults:
    """Verify config defaults use platformdirs instead of hardcoded Unix paths."""

    def test_default_data_dir_matches_platformdirs(self) -> None:
        expected = platformdirs.user_data_dir("docbuilder")
        assert expected == _DEFAULT_DATA_DIR

    def test_default_db_path_under_data_dir(self) -> None:
        assert _DEFAULT_DB_PATH.startswith(_DEFAULT_DATA_DIR)
        assert _DEFAULT_DB_PATH.endswith("docbuilder.db")

    def test_storage_settings_uses_platform_default(self) -> None:
        assert StorageSettings().db_path == _DEFAULT_DB_PATH


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.worker.idle_sleep_seconds == 60
        assert settings.builder.skip_if_exists is False
        assert settings.builder.skip_if_log_exists is False
        assert settings.fetcher.download_url == DEFAULT_DOWNLOAD_URL

    def test_env_overrides_nested_field(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DOCBUILDER__WORKER__IDLE_SLEEP_SECONDS", "5")
        monkeypatch.setenv("DOCBUILDER__BUILDER__SKIP_IF_EXISTS", "true")
        settings = Settings()
        assert settings.worker.idle_sleep_seconds == 5
        assert settings.builder.skip_if_exists is True

    def test_constructor_args_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DOCBUILDER__BUILDER__CHROOT_USER", "from-env")
        settings = Settings(builder={"chroot_user": "from-args"})
        assert settings.builder.chroot_user == "from-args"
