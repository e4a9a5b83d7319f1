"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DEFAULT_DATABASE_PATH, DEFAULT_OUTPUT_DIR, DEFAULT_OUTPUT_TEMPLATE


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    output_dir: Path = DEFAULT_OUTPUT_DIR
    database_path: Path = DEFAULT_DATABASE_PATH
    yt_dlp_path: Optional[Path] = None
    output_template: str = DEFAULT_OUTPUT_TEMPLATE
    restrict_filenames: bool = True
    extra_args: List[str] = Field(default_factory=list)
    prefetch_metadata: bool = True
    metadata_timeout: Optional[float] = Field(default=None, gt=0)
    termination_grace_period: float = Field(default=10.0, gt=0, le=300)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('output_template')
    @classmethod
    def validate_output_template(cls, value: str) -> str:
        """
        Validates the yt-dlp output filename template.

        Raises:
            ValueError: If the template is invalid.
        """
        is_invalid = (
            not value or
            not re.search(r'%\((?:title|id)\)', value) or
            '/' in value or '\\' in value or '..' in value or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Output template is invalid. It must include %(title)s or %(id)s and cannot contain path separators.")
        return value


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)

    def load(self) -> Settings:
        """
        Loads config from file, validates, and returns it.

        If the file doesn't exist a default configuration is written and
        returned. Invalid files are backed up and defaults are used.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
