"""
Configuration management using Pydantic models loaded from YAML.
"""

from pathlib import Path
from typing import Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator


class BookingDefaults(BaseModel):
    """Tunables of the availability and booking engine."""
    buffer_minutes: int = 15
    default_duration_minutes: int = 60
    lookahead_days: int = 30
    submit_timeout_seconds: float = 15.0
    max_slot_iterations: int = 24 * 60
    cache_max_entries: int = 512

    @field_validator(
        "default_duration_minutes",
        "lookahead_days",
        "submit_timeout_seconds",
        "max_slot_iterations",
        "cache_max_entries",
    )
    @classmethod
    def validate_positive(cls, value):
        """Ensure the value is greater than zero."""
        if value <= 0:
            raise ValueError(f"Value must be greater than zero, got {value}")
        return value

    @field_validator("buffer_minutes")
    @classmethod
    def validate_buffer(cls, value: int) -> int:
        """Buffer may be zero but not negative."""
        if value < 0:
            raise ValueError(f"buffer_minutes must not be negative, got {value}")
        return value


class AppConfig(BaseModel):
    """Application configuration."""
    api_base_url: str = "http://localhost:3000/api"
    timezone: str = "UTC"
    booking: BookingDefaults = Field(default_factory=BookingDefaults)
    mock_data_file: Optional[Path] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the timezone is a known IANA name."""
        try:
            pendulum.timezone(value)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("api_base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        """Strip trailing slashes so paths can be appended."""
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"api_base_url must be an http(s) URL, got {value!r}")
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of slotbooking/)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
