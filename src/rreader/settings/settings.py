"""
Configuration settings.
=======================

This module defines the configuration settings for the RReader ingestion service.

Order of precedence:
    1. Environment variables
    2. `.env` file
    3. Secrets directory (e.g. `/run/secrets`).
    4. YAML configuration file, with the following locations:
        - User defined settings file ($RREADER_CONFIG_FILE)
        - User defined settings ($XDG_CONFIG_HOME)
        - System wide settings ($XDG_CONFIG_DIRS)
        - Local settings: `./config.yaml`
        - Docker settings: `/config/config.yaml`

"""
import logging
import os
from contextvars import ContextVar
from importlib.metadata import PackageNotFoundError, metadata
from pathlib import Path
from typing import Literal, Optional, Type

from platformdirs import site_config_dir, user_config_dir, user_data_dir
from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

DEFAULT_BOT_ID = "RReader"

_pkg_name, *_ = (__package__ or "rreader").split(".")
try:
    _pkg_metadata = dict(metadata(_pkg_name))
except PackageNotFoundError:
    # Running from a source checkout
    _pkg_metadata = {"Version": "0.0.0"}

_pkg_metadata.setdefault("Home-page", _pkg_metadata.get("Project-URL", ", ").split(", ")[-1])


# User defined settings
_user_config_path = Path(user_config_dir("rreader"), "config.yaml")
DEFAULT_CONFIG_PATH = _user_config_path

# Locations to look for the settings file
# notice: order is reversed to give precedence to the user defined settings
_settings_file_location: list[Path] = [
    Path("/config/config.yaml"),  # Docker settings
    Path.cwd() / "config.yaml",  # Local settings
    Path(site_config_dir("rreader")) / "config.yaml",  # System wide settings
    _user_config_path
]
if _conf_file := os.getenv("RREADER_CONFIG_FILE"):
    _conf_file = Path(_conf_file)
    _settings_file_location.append(_conf_file)
    DEFAULT_CONFIG_PATH = _conf_file

_default_database_url = "sqlite:///" + str(Path(user_data_dir("rreader"), "rreader.db"))


class CelerySettings(BaseSettings):
    """
    Celery transport used to dispatch fetch cycles to workers.

    ..seealso:: https://docs.celeryq.dev/en/stable/userguide/configuration.html
    """
    broker_url: str = Field("redis://localhost:6379/0", description="Celery broker URL.")
    result_backend: Optional[str] = Field(None, description="Celery result backend. Results are not needed for fetches.")
    task_ignore_result: bool = Field(True, description="Do not store task results.")


class Settings(BaseSettings):
    DEBUG: bool = Field(
        False,
        description="Enable debug mode.",
    )

    TRACING_ENABLED: bool = Field(
        True,
        description="Enable OpenTelemetry tracing.",
    )

    BOT_ID: str = Field(DEFAULT_BOT_ID, description="Bot ID.")
    BOT_USER_AGENT: str = Field(
        "Mozilla/5.0 (compatible;)",
        description="User agent for outbound requests. Computed from package metadata and `BOT_ID` when not set.",
    )

    # Logging settings
    LOGGING_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO",
        description="Logging level.",
    )

    DATABASE_URL: str = Field(_default_database_url, description="SQLAlchemy database URL for feeds and articles.")

    MAX_WORKERS: int = Field(4, ge=1, description="Maximum number of feeds fetched concurrently.")

    DISCOVERY_TIMEOUT: float = Field(15, gt=0, description="Timeout in seconds for feed discovery and feed fetches.")
    EXTRACT_TIMEOUT: float = Field(10, gt=0, description="Timeout in seconds for live article fetches.")
    ARCHIVE_TIMEOUT: float = Field(15, gt=0, description="Timeout in seconds for web archive lookups and snapshot fetches.")

    FIRST_FETCH_LIMIT: int = Field(10, ge=1, description="Number of entries ingested on the first fetch of a new feed.")
    FETCH_LEASE_TIMEOUT: float = Field(
        300, gt=0, description="Seconds a feed stays claimed by a running cycle, in case the cycle dies without releasing it."
    )

    WAYBACK_AVAILABILITY_URL: str = Field(
        "https://archive.org/wayback/available",
        description="Wayback Machine availability endpoint used as content fallback.",
    )
    WAYBACK_CDX_URL: str = Field(
        "https://web.archive.org/cdx/search/cdx",
        description="Wayback Machine CDX endpoint used to list archived feed snapshots.",
    )

    celery: CelerySettings = Field(default_factory=CelerySettings, description="Celery worker settings.")

    @model_validator(mode="before")
    @classmethod
    def _compute_user_agent(cls, values):
        """
        Compute the user-agent string.
        """
        if not isinstance(values, dict):
            return values

        bot_info = _pkg_metadata.copy()
        bot_info.setdefault("BOT_ID", values.get("BOT_ID", DEFAULT_BOT_ID))
        user_agent = "Mozilla/5.0 (compatible; {BOT_ID}/{Version}; +{Home-page})".format(**bot_info)
        values.setdefault('BOT_USER_AGENT', user_agent)
        return values

    @classmethod
    def settings_customise_sources(cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    model_config = SettingsConfigDict(
        secrets_dir='/run/secrets',
        yaml_file=_settings_file_location,
        yaml_file_encoding="utf-8",
        env_prefix="RREADER_",
        env_nested_delimiter="__",
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',  # If dotenv contains extra keys, ignore them
    )


settings_var: ContextVar[Settings] = ContextVar(f"{__package__}.settings_var", default=Settings())
settings = settings_var.get()
