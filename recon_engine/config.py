"""
Engine settings.

Settings come from an optional JSON file, then RECON_* environment
variables (or a .env file) override individual values.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Runtime configuration for the service, API and CLI."""

    model_config = SettingsConfigDict(
        env_prefix="RECON_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path = Path("data")
    directory_file: str = "directory.json"
    audit_dir_name: str = "audit_logs"
    schedules_file: str = "schedules.json"
    policy_dir: Optional[Path] = None
    default_company_code: Optional[str] = None
    scheduler_interval_seconds: int = Field(60, ge=1)
    run_scheduler: bool = False
    notification_webhook_url: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values passed in from the JSON settings file
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @property
    def directory_path(self) -> Path:
        return self.data_dir / self.directory_file

    @property
    def audit_dir(self) -> Path:
        return self.data_dir / self.audit_dir_name

    @property
    def schedules_path(self) -> Path:
        return self.data_dir / self.schedules_file


def load_settings(config_path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Build settings from a JSON file and the environment.

    Args:
        config_path: Optional JSON file with settings keys

    Returns:
        Validated EngineSettings
    """
    values: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, encoding="utf-8") as f:
                values.update(json.load(f))
            logger.info(f"Loaded settings from {path}")
        else:
            logger.warning(f"Settings file not found: {path}, using defaults")

    return EngineSettings(**values)
