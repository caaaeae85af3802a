"""Configuration and environment settings for the backup tool."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Annotated, Self

from pydantic import Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImapSettings(BaseSettings):
    """IMAP connection and listing settings."""

    model_config = SettingsConfigDict(extra="forbid")

    host: Annotated[str, Field(min_length=1)]
    port: int = 993
    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1, repr=False)]
    ssl: bool = True

    timeout_seconds: Annotated[float, Field(gt=0)] = 120.0
    fetch_timeout_seconds: Annotated[float, Field(gt=0)] = 1800.0

    list_pattern: Annotated[str, Field(min_length=1)] = "%"
    folder_include: list[str] = Field(default_factory=list)
    folder_exclude: list[str] = Field(default_factory=list)

    connections: Annotated[int, Field(ge=1, le=10)] = 1
    connect_attempts: Annotated[int, Field(ge=1, le=10)] = 3


class StorageSettings(BaseSettings):
    """Settings for the local archive, state database and reports."""

    model_config = SettingsConfigDict(extra="forbid")

    root_dir: Path = Path("./backup")
    archive_dir_override: Path | None = None
    reports_dir_override: Path | None = None
    sqlite_path_override: Path | None = None

    @field_validator("root_dir")
    @classmethod
    def _root_dir_to_absolute(cls, value: Path) -> Path:
        """Resolve the storage root directory to an absolute path."""
        return value.expanduser().resolve()

    @field_validator("archive_dir_override", "reports_dir_override", "sqlite_path_override")
    @classmethod
    def _paths_to_absolute(cls, value: Path | None) -> Path | None:
        """Resolve optional override paths to absolute paths."""
        return value.expanduser().resolve() if value is not None else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def archive_dir(self) -> Path:
        """Return the resolved archive directory."""
        return (self.archive_dir_override or (self.root_dir / "archive")).resolve()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reports_dir(self) -> Path:
        """Return the resolved reports directory."""
        return (self.reports_dir_override or (self.root_dir / "reports")).resolve()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sqlite_path(self) -> Path:
        """Return the resolved sqlite database path."""
        return (self.sqlite_path_override or (self.root_dir / "state.sqlite3")).resolve()


class RetentionSettings(BaseSettings):
    """Server-side retention: delete archived messages older than a cutoff."""

    model_config = SettingsConfigDict(extra="forbid")

    delete_before: date | None = None
    older_than_days: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _one_cutoff_source(self) -> Self:
        """Reject configurations that set both cutoff sources."""
        if self.delete_before is not None and self.older_than_days is not None:
            raise ValueError("set either delete_before or older_than_days, not both")
        return self

    def cutoff(self, *, now: datetime | None = None) -> datetime | None:
        """Return the retention cutoff, if retention is enabled.

        Args:
            now: Reference time for `older_than_days` (defaults to the current UTC time).

        Returns:
            Timezone-aware cutoff, or None when retention is disabled.
        """
        if self.delete_before is not None:
            return datetime.combine(self.delete_before, datetime.min.time(), tzinfo=UTC)
        if self.older_than_days is not None:
            reference = now or datetime.now(tz=UTC)
            return reference - timedelta(days=self.older_than_days)
        return None


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(extra="forbid")

    level: Annotated[str, Field(min_length=1)] = "INFO"
    json_logs: bool = True


class AppSettings(BaseSettings):
    """Top-level application settings."""

    model_config = SettingsConfigDict(
        env_prefix="IMAP_BACKUP_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    imap: ImapSettings | None = None
    storage: StorageSettings = Field(default_factory=StorageSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(*, env_file: Path | None) -> AppSettings:
    """Load validated settings from environment and optional file.

    Args:
        env_file: Optional .env file path.

    Returns:
        Validated AppSettings instance.
    """
    if env_file is None:
        return AppSettings()
    return AppSettings(_env_file=env_file)  # type: ignore[call-arg]
