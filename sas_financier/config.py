"""Configuration for SAS Financier."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from sas_financier.exceptions import ConfigurationError

DEFAULT_APP_NAME = "SAS Financier"
DEFAULT_DB_PATH = "sas_financier.db"
DEFAULT_UPLOAD_DIR = "uploads"
DEV_SECRET_KEY = "dev_key_for_development_only"

LOG_FORMATS = ("standard", "json")


@dataclass
class AppConfig:
    """Runtime configuration of the web application."""

    db_path: Path = field(default_factory=lambda: Path(DEFAULT_DB_PATH))
    upload_dir: Path = field(default_factory=lambda: Path(DEFAULT_UPLOAD_DIR))
    secret_key: str = DEV_SECRET_KEY
    default_app_name: str = DEFAULT_APP_NAME
    bootstrap_email: str = "admin@sas.local"
    bootstrap_password: str = "admin1234"
    log_level: str = "INFO"
    log_format: str = "standard"
    min_password_length: int = 6

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.upload_dir = Path(self.upload_dir)
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(f"Format de log inconnu: {self.log_format}")
        if self.min_password_length < 1:
            raise ConfigurationError("La longueur minimale du mot de passe doit être positive")
        if not self.secret_key:
            raise ConfigurationError("SAS_SECRET_KEY ne peut pas être vide")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create config from environment variables."""
        return cls(
            db_path=Path(os.getenv("SAS_DB", DEFAULT_DB_PATH)),
            upload_dir=Path(os.getenv("SAS_UPLOAD_DIR", DEFAULT_UPLOAD_DIR)),
            secret_key=os.getenv("SAS_SECRET_KEY", DEV_SECRET_KEY),
            default_app_name=os.getenv("SAS_APP_NAME", DEFAULT_APP_NAME),
            bootstrap_email=os.getenv("SAS_ADMIN_EMAIL", "admin@sas.local"),
            bootstrap_password=os.getenv("SAS_ADMIN_PASSWORD", "admin1234"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard").lower(),
        )
