"""Configuration settings for multiwrite.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the MULTIWRITE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="MULTIWRITE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Image source
    image_url: str | None = Field(
        default=None,
        description="URL of the disk image to flash (required to run)",
    )
    image_data_dir: Path = Field(
        default=Path("/data"),
        description="Directory the downloaded image is cached in",
    )

    # Discovery
    drive_blacklist: str = Field(
        default="",
        description="Comma-separated device identifiers that are never flashed",
    )
    poll_interval: float = Field(
        default=0.5,
        ge=0,
        description="Seconds to wait between drive enumeration polls",
    )

    # Display
    render_interval: float = Field(
        default=0.3,
        gt=0,
        description="Seconds between progress frame redraws",
    )
    error_hold: float = Field(
        default=3.0,
        ge=0,
        description="Seconds a failed drive stays on screen",
    )
    unmount_hold: float = Field(
        default=10.0,
        ge=0,
        description="Seconds a finished drive stays registered before release",
    )

    # Writing
    block_size: int = Field(
        default=1024 * 1024,
        ge=512,
        description="I/O block size for writing and verifying",
    )
    download_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for the image download",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Logging level",
    )
    log_file: Path | None = Field(
        default=None,
        description="Write logs to this file instead of stderr",
    )

    @property
    def blacklist(self) -> frozenset[str]:
        """Device identifiers parsed from drive_blacklist."""
        return frozenset(
            item.strip() for item in self.drive_blacklist.split(",") if item.strip()
        )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
