"""
Centralized configuration for qbank-ingest.

All configuration values should be imported from this module.
Supports environment variable overrides for containerization.
"""

import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def _find_project_root() -> Path:
    """Find project root by looking for pyproject.toml or .git."""
    current = Path(__file__).resolve().parent
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return current.parent


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """qbank-ingest configuration."""

    # ==========================================================================
    # Paths
    # ==========================================================================
    PROJECT_ROOT: Path = field(default_factory=_find_project_root)

    @property
    def STAGING_DIR(self) -> Path:
        return Path(os.environ.get("STAGING_DIR", str(self.PROJECT_ROOT / "ingest_staging")))

    @property
    def ARTIFACT_DIR(self) -> Path:
        return Path(os.environ.get("ARTIFACT_DIR", str(self.PROJECT_ROOT / "artifacts")))

    # ==========================================================================
    # Database
    # ==========================================================================
    @property
    def POSTGRES_DSN(self) -> str:
        return os.environ.get(
            "POSTGRES_DSN",
            "dbname=qbank user=qbank host=/var/run/postgresql"
        )

    # ==========================================================================
    # Object Storage
    # ==========================================================================
    @property
    def STORAGE_BACKEND(self) -> str:
        return os.environ.get("STORAGE_BACKEND", "local").lower()

    @property
    def MINIO_ENDPOINT(self) -> str:
        return os.environ.get("MINIO_ENDPOINT", "localhost:9000")

    @property
    def MINIO_ACCESS_KEY(self) -> Optional[str]:
        return os.environ.get("MINIO_ACCESS_KEY")

    @property
    def MINIO_SECRET_KEY(self) -> Optional[str]:
        return os.environ.get("MINIO_SECRET_KEY")

    @property
    def MINIO_SECURE(self) -> bool:
        return _env_bool("MINIO_SECURE")

    @property
    def MINIO_BUCKET(self) -> str:
        return os.environ.get("MINIO_BUCKET", "question-images")

    # ==========================================================================
    # Extraction Service
    # ==========================================================================
    @property
    def EXTRACTION_API_URL(self) -> str:
        return os.environ.get(
            "EXTRACTION_API_URL",
            "https://ai.gateway.lovable.dev/v1/chat/completions",
        )

    @property
    def EXTRACTION_API_KEY(self) -> Optional[str]:
        return os.environ.get("EXTRACTION_API_KEY")

    @property
    def EXTRACTION_MODEL(self) -> str:
        return os.environ.get("EXTRACTION_MODEL", "google/gemini-2.5-flash")

    @property
    def EXTRACTION_TIMEOUT(self) -> float:
        return float(os.environ.get("EXTRACTION_TIMEOUT", "120"))

    @property
    def EXTRACTION_MAX_TOKENS(self) -> int:
        return int(os.environ.get("EXTRACTION_MAX_TOKENS", "8000"))

    @property
    def FETCH_TIMEOUT(self) -> float:
        return float(os.environ.get("FETCH_TIMEOUT", "30"))

    # ==========================================================================
    # Processing
    # ==========================================================================
    @property
    def RENDER_DPI(self) -> int:
        return int(os.environ.get("RENDER_DPI", "144"))

    @property
    def UPLOAD_CONCURRENCY(self) -> int:
        return int(os.environ.get("UPLOAD_CONCURRENCY", "3"))

    @property
    def RETRY_ATTEMPTS(self) -> int:
        return int(os.environ.get("RETRY_ATTEMPTS", "3"))

    @property
    def RETRY_BACKOFF_SECONDS(self) -> float:
        return float(os.environ.get("RETRY_BACKOFF_SECONDS", "1.0"))

    @property
    def MAX_SESSION_RETRIES(self) -> int:
        return int(os.environ.get("MAX_SESSION_RETRIES", "5"))

    @property
    def PERSIST_BATCH_SIZE(self) -> int:
        return int(os.environ.get("PERSIST_BATCH_SIZE", "10"))

    @property
    def LOG_LEVEL(self) -> str:
        return os.environ.get("LOG_LEVEL", "INFO")

    @property
    def TELEMETRY_ENABLED(self) -> bool:
        return _env_bool("QBANK_TELEMETRY")

    # ==========================================================================
    # Validation
    # ==========================================================================
    def validate(self) -> list[str]:
        """Return list of configuration errors."""
        errors = []

        if not self.PROJECT_ROOT.exists():
            errors.append(f"PROJECT_ROOT does not exist: {self.PROJECT_ROOT}")

        if not self.EXTRACTION_API_KEY:
            errors.append("EXTRACTION_API_KEY not set")

        if self.STORAGE_BACKEND not in ("local", "minio"):
            errors.append(f"Unknown STORAGE_BACKEND: {self.STORAGE_BACKEND}")
        elif self.STORAGE_BACKEND == "minio":
            if not self.MINIO_ACCESS_KEY or not self.MINIO_SECRET_KEY:
                errors.append("MINIO_ACCESS_KEY / MINIO_SECRET_KEY not set")

        if self.UPLOAD_CONCURRENCY < 1:
            errors.append(f"UPLOAD_CONCURRENCY must be positive: {self.UPLOAD_CONCURRENCY}")

        if self.RETRY_ATTEMPTS < 1:
            errors.append(f"RETRY_ATTEMPTS must be positive: {self.RETRY_ATTEMPTS}")

        return errors

    def ensure_dirs(self):
        """Create required directories if they don't exist."""
        self.STAGING_DIR.mkdir(parents=True, exist_ok=True)
        if self.STORAGE_BACKEND == "local":
            self.ARTIFACT_DIR.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return (
            f"Config(\n"
            f"  PROJECT_ROOT={self.PROJECT_ROOT}\n"
            f"  POSTGRES_DSN={self.POSTGRES_DSN[:30]}...\n"
            f"  STORAGE_BACKEND={self.STORAGE_BACKEND}\n"
            f"  EXTRACTION_MODEL={self.EXTRACTION_MODEL}\n"
            f"  UPLOAD_CONCURRENCY={self.UPLOAD_CONCURRENCY}\n"
            f")"
        )


# Global config instance
config = Config()


# Convenience exports
POSTGRES_DSN = config.POSTGRES_DSN
EXTRACTION_MODEL = config.EXTRACTION_MODEL
EXTRACTION_API_URL = config.EXTRACTION_API_URL
