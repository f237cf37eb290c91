from datetime import timedelta, tzinfo
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo

import tzlocal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration, read from ``BACKUP_SCHEDULER_*`` environment
    variables and an optional ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = Field(Path("/var/lib/backup-scheduler"), description="State directory")
    database_url: Optional[str] = Field(None, description="Async SQLAlchemy URL, defaults to a SQLite file in data_dir")
    destinations_file: Optional[Path] = Field(None, description="JSON list of destinations")
    accounts_file: Optional[Path] = Field(None, description="JSON object mapping owners to their accounts")
    audit_log_file: Optional[Path] = Field(None, description="JSON-lines operations log")
    log_level: str = "INFO"
    timezone: Optional[str] = Field(None, description="Zone schedules are evaluated in, defaults to the host zone")
    root_user: str = "root"

    lock_stale_after: int = Field(3600, gt=0, description="Seconds before an unverifiable lock may be discarded")
    completed_retention_days: int = Field(30, ge=0)
    default_retention: int = Field(30, ge=0)
    default_preferred_hour: int = Field(2, ge=0, le=23)

    backup_command: List[str] = Field(default_factory=list, description="argv template for backing up one account")
    restore_command: List[str] = Field(default_factory=list, description="argv template for restoring one account")

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir / 'state.db'}"

    @property
    def resolved_destinations_file(self) -> Path:
        return self.destinations_file or self.data_dir / "destinations.json"

    @property
    def resolved_accounts_file(self) -> Path:
        return self.accounts_file or self.data_dir / "accounts.json"

    @property
    def resolved_audit_log_file(self) -> Path:
        return self.audit_log_file or self.data_dir / "logs" / "operations.log"

    @property
    def tzinfo(self) -> tzinfo:
        if self.timezone:
            return ZoneInfo(self.timezone)
        return tzlocal.get_localzone()

    @property
    def lock_stale_delta(self) -> timedelta:
        return timedelta(seconds=self.lock_stale_after)
