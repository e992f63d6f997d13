"""
Configuration settings for the mastery engine.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Logical storage keys, shared with the mobile app's durable storage
MODULE_PROGRESS_KEY = "@quantara_module_progress"
REMEDIATION_REGISTRY_KEY = "@quantara_wrong_answer_registry"


class StorageBackend(str, Enum):
    """Key/value substrate used for durable progress snapshots."""

    MEMORY = "memory"
    JSON = "json"
    SQLITE = "sqlite"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Storage
    # ========================================
    storage_backend: StorageBackend = Field(
        default=StorageBackend.JSON,
        description="Persistence substrate: memory, json or sqlite",
    )
    data_dir: Path = Field(
        default=Path.home() / ".mastery",
        description="Directory holding JSON snapshots or the SQLite database",
    )
    sqlite_filename: str = Field(
        default="mastery.db",
        description="SQLite database file name inside data_dir",
    )
    background_writes: bool = Field(
        default=True,
        description="Dispatch snapshot writes on a background worker",
    )

    # ─── Logical keys (one per store) ───────────────────────────────────────────
    module_progress_key: str = Field(
        default=MODULE_PROGRESS_KEY,
        description="Storage key for the module progress snapshot",
    )
    remediation_registry_key: str = Field(
        default=REMEDIATION_REGISTRY_KEY,
        description="Storage key for the remediation registry snapshot",
    )

    # ========================================
    # Mastery
    # ========================================
    default_mastery_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Fraction of 100 a quiz score must reach when the module sets no threshold",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    audit_log_enabled: bool = Field(
        default=False,
        description="Write remediation events to an append-only audit log",
    )
    audit_log_filename: str = Field(
        default="remediation_audit.log",
        description="Audit log file name inside data_dir",
    )

    @property
    def sqlite_path(self) -> Path:
        return self.data_dir / self.sqlite_filename

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / self.audit_log_filename


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
