"""Configuration management for snapkeep.

Loads configuration from environment variables and provides defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from dotenv import load_dotenv

if TYPE_CHECKING:
    from .backup.schemas import RetentionPolicy

# Load .env file if present
load_dotenv()


DEFAULT_CONFIG_KEYS = ("NODE_ENV", "APP_ENV", "PORT", "PUBLIC_DOMAINS", "LOG_LEVEL", "TZ")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> list[str]:
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """Application configuration."""

    # Storage locations
    db_path: Path
    backup_dir: Path
    uploads_dir: Path
    env_file: Path

    # Retention (days / weeks / months)
    retention_daily_days: int = 7
    retention_weekly_weeks: int = 4
    retention_monthly_months: int = 12

    # Runs
    export_timeout: float = 300.0  # seconds
    strict_integrity: bool = False
    app_env: str = "development"

    # Notifications
    notify_on_success: bool = True
    notify_on_failure: bool = True
    webhook_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # Extra process-environment keys captured by the config exporter
    config_keys: list[str] = field(default_factory=lambda: list(DEFAULT_CONFIG_KEYS))

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        log_file = os.environ.get("SNAPKEEP_LOG_FILE")

        return cls(
            db_path=Path(os.environ.get("SNAPKEEP_DB_PATH", "./data/snapkeep.db")).expanduser(),
            backup_dir=Path(os.environ.get("SNAPKEEP_BACKUP_DIR", "./backups")).expanduser(),
            uploads_dir=Path(os.environ.get("SNAPKEEP_UPLOADS_DIR", "./uploads")).expanduser(),
            env_file=Path(os.environ.get("SNAPKEEP_ENV_FILE", ".env")).expanduser(),
            retention_daily_days=int(os.environ.get("SNAPKEEP_RETENTION_DAILY_DAYS", "7")),
            retention_weekly_weeks=int(os.environ.get("SNAPKEEP_RETENTION_WEEKLY_WEEKS", "4")),
            retention_monthly_months=int(
                os.environ.get("SNAPKEEP_RETENTION_MONTHLY_MONTHS", "12")
            ),
            export_timeout=float(os.environ.get("SNAPKEEP_EXPORT_TIMEOUT", "300")),
            strict_integrity=_env_bool("SNAPKEEP_STRICT_INTEGRITY", False),
            app_env=os.environ.get("SNAPKEEP_APP_ENV", "development"),
            notify_on_success=_env_bool("SNAPKEEP_NOTIFY_ON_SUCCESS", True),
            notify_on_failure=_env_bool("SNAPKEEP_NOTIFY_ON_FAILURE", True),
            webhook_url=os.environ.get("SNAPKEEP_WEBHOOK_URL") or None,
            log_level=os.environ.get("SNAPKEEP_LOG_LEVEL", "INFO").upper(),
            log_file=Path(log_file).expanduser() if log_file else None,
            config_keys=_env_list("SNAPKEEP_CONFIG_KEYS", DEFAULT_CONFIG_KEYS),
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        for label, directory in (
            ("database", self.db_path.parent),
            ("backup", self.backup_dir),
        ):
            if not directory.exists():
                try:
                    directory.mkdir(parents=True, exist_ok=True)
                except PermissionError:
                    errors.append(f"Cannot create {label} directory: {directory}")

        if min(
            self.retention_daily_days,
            self.retention_weekly_weeks,
            self.retention_monthly_months,
        ) < 0:
            errors.append("Retention values must not be negative")

        if self.export_timeout <= 0:
            errors.append(f"Export timeout must be positive, got {self.export_timeout}")

        return errors

    def retention_policy(self) -> "RetentionPolicy":
        """Build the retention policy from configured thresholds."""
        from .backup.schemas import RetentionPolicy

        return RetentionPolicy(
            daily_keep_days=self.retention_daily_days,
            weekly_keep_weeks=self.retention_weekly_weeks,
            monthly_keep_months=self.retention_monthly_months,
        )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
