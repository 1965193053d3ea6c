"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (DOCBUILDER__WORKER__IDLE_SLEEP_SECONDS=10)
  2. docbuilder.yaml        (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("docbuilder")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "docbuilder.db")

DEFAULT_DOWNLOAD_URL = "https://static.crates.io/crates/{name}/{name}-{version}.crate"


def _find_config_file() -> str | None:
    """Return the path of the first docbuilder.yaml found, or None."""
    candidates = [
        Path("docbuilder.yaml"),
        Path(platformdirs.user_config_dir("docbuilder")) / "docbuilder.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class BuilderSettings(BaseModel):
    chroot_path: str = str(Path(_DEFAULT_DATA_DIR) / "chroot")
    chroot_user: str = "cratesfyi"
    container_name: str = "cratesfyi-container"
    destination: str = str(Path(_DEFAULT_DATA_DIR) / "public_html" / "crates")
    sources_path: str = str(Path(_DEFAULT_DATA_DIR) / "sources")
    doc_tool: str = "cratesfyi"
    toolchain_command: str = "rustc"
    skip_if_exists: bool = False
    skip_if_log_exists: bool = False
    command_timeout_seconds: float | None = None


class WorkerSettings(BaseModel):
    idle_sleep_seconds: float = 60
    tempdir_prefix: str = "docbuilder-docs"
    max_attempts: int = 5


class StorageSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH


class FetcherSettings(BaseModel):
    download_url: str = DEFAULT_DOWNLOAD_URL
    timeout_seconds: float = 30.0


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: DOCBUILDER__BUILDER__CHROOT_USER=docs
        env_prefix="DOCBUILDER__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    builder: BuilderSettings = BuilderSettings()
    worker: WorkerSettings = WorkerSettings()
    storage: StorageSettings = StorageSettings()
    fetcher: FetcherSettings = FetcherSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
