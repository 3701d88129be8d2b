"""
Application configuration management using Pydantic Settings.
"""
from typing import Optional, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    SCRIPT_NAME: str = "kvm-backup-script"

    # Storage
    IMAGES_PATH: str = "/mnt/storage/libvirt"
    BACKUP_PATH: str = "/mnt/storage/backups"
    IMAGE_GLOB: str = "*.qcow2"
    REQUIRED_TOOLS: str = "cp"  # comma-separated

    # libvirt
    LIBVIRT_DEFAULT_URI: str = "qemu:///system"
    SNAPSHOT_NAME_PREFIX: str = "kvm-backup-of-"
    SNAPSHOT_OVERLAY_SUFFIX: Optional[str] = None
    BLOCK_JOB_POLL_INTERVAL: float = 1.0  # seconds

    # Email/SMTP
    MAIL_ENABLED: bool = True
    MAIL_TO: str = "root@localhost"  # comma-separated
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_TLS: bool = False
    SMTP_FROM_EMAIL: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text
    LOG_FILE: Optional[str] = None
    SYSLOG_ENABLED: bool = True
    SYSLOG_ADDRESS: str = "/dev/log"
    SYSLOG_HOST: Optional[str] = None
    SYSLOG_PORT: int = 514

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v):
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @field_validator("BLOCK_JOB_POLL_INTERVAL")
    @classmethod
    def validate_poll_interval(cls, v):
        if v < 0:
            raise ValueError("BLOCK_JOB_POLL_INTERVAL must not be negative")
        return v

    @property
    def required_tools(self) -> List[str]:
        return _split_csv(self.REQUIRED_TOOLS)

    @property
    def mail_recipients(self) -> List[str]:
        return _split_csv(self.MAIL_TO)


# Global settings instance
settings = Settings()
