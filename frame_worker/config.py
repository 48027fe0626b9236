"""
Configuration management for the frame extraction worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
import tempfile
from typing import Dict, Any
from dataclasses import dataclass, field


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class WorkerConfig:
    """Configuration for the frame extraction worker"""

    # Backends
    LEDGER_TYPE: str = "postgres"  # postgres, memory
    QUEUE_TYPE: str = "postgres"  # postgres, memory
    STORAGE_TYPE: str = "local"  # local, s3, memory
    DATABASE_CONFIG: Dict[str, Any] = field(default_factory=dict)
    STORAGE_CONFIG: Dict[str, Any] = field(default_factory=dict)

    # Worker loop
    WORKER_CONCURRENCY: int = 1
    POLL_INTERVAL_MS: int = 1500
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 12000

    # Retry policy applied by the queue transport
    MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    CLAIM_LEASE_SEC: int = 300

    # Extraction
    MAX_DURATION_SEC: float = 60.0
    PROGRESS_MIN_INTERVAL_MS: int = 250
    SCRATCH_DIR: str = tempfile.gettempdir()

    # Retrieval
    SIGNED_URL_EXPIRY_SEC: int = 3600

    # Orphan reconciliation
    RECONCILE_INTERVAL_SEC: int = 60
    ORPHAN_AGE_SEC: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = ""

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        config.LEDGER_TYPE = os.getenv("LEDGER_TYPE", "postgres")
        config.QUEUE_TYPE = os.getenv("QUEUE_TYPE", "postgres")
        config.STORAGE_TYPE = os.getenv("STORAGE_TYPE", "local")
        config.DATABASE_CONFIG = cls._parse_database_config()
        config.STORAGE_CONFIG = cls._parse_storage_config()

        config.WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "1"))
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "1500"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("WORKER_MAX_BACKOFF_MS", "12000"))

        config.MAX_ATTEMPTS = int(os.getenv("WORKER_MAX_ATTEMPTS", "3"))
        config.RETRY_BASE_DELAY_MS = int(os.getenv("RETRY_BASE_DELAY_MS", "1000"))
        config.CLAIM_LEASE_SEC = int(os.getenv("WORKER_CLAIM_LEASE_SEC", "300"))

        config.MAX_DURATION_SEC = float(os.getenv("MAX_DURATION_SEC", "60"))
        config.PROGRESS_MIN_INTERVAL_MS = int(os.getenv("PROGRESS_MIN_INTERVAL_MS", "250"))
        config.SCRATCH_DIR = os.getenv("SCRATCH_DIR", tempfile.gettempdir())

        config.SIGNED_URL_EXPIRY_SEC = int(os.getenv("SIGNED_URL_EXPIRY_SEC", "3600"))

        config.RECONCILE_INTERVAL_SEC = int(os.getenv("RECONCILE_INTERVAL_SEC", "60"))
        config.ORPHAN_AGE_SEC = int(os.getenv("ORPHAN_AGE_SEC", "300"))

        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        config.LOG_DIR = os.getenv("LOG_DIR", "")

        config.ENABLE_HTTP_SERVER = _env_bool("WORKER_DEV_HTTP", "false")
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))

        return config

    @classmethod
    def _parse_database_config(cls) -> Dict[str, Any]:
        """Parse ledger/queue database configuration"""
        return {
            "database_url": os.getenv("DATABASE_URL"),
            "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
            "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
        }

    @classmethod
    def _parse_storage_config(cls) -> Dict[str, Any]:
        """Parse object store specific configuration"""
        storage_type = os.getenv("STORAGE_TYPE", "local")

        if storage_type == "local":
            return {
                "base_path": os.getenv("LOCAL_STORAGE_PATH", "./storage"),
                "base_url": os.getenv("API_BASE_URL", "http://localhost:3001")
            }
        elif storage_type == "s3":
            return {
                "bucket": os.getenv("AWS_S3_BUCKET"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "endpoint_url": os.getenv("S3_ENDPOINT_URL"),
                "public_url": os.getenv("S3_PUBLIC_URL"),
                "prefix": os.getenv("S3_PREFIX", "")
            }
        else:
            return {}

    def validate(self) -> None:
        """Validate configuration and raise errors for missing or invalid values"""
        required_vars = []

        uses_postgres = "postgres" in (self.LEDGER_TYPE, self.QUEUE_TYPE)
        if uses_postgres and not self.DATABASE_CONFIG.get("database_url"):
            required_vars.append("DATABASE_URL")

        if self.STORAGE_TYPE == "s3" and not self.STORAGE_CONFIG.get("bucket"):
            required_vars.append("AWS_S3_BUCKET")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

        if self.LEDGER_TYPE not in ("postgres", "memory"):
            raise ValueError(f"Unsupported ledger type: {self.LEDGER_TYPE}")
        if self.QUEUE_TYPE not in ("postgres", "memory"):
            raise ValueError(f"Unsupported queue type: {self.QUEUE_TYPE}")
        if self.STORAGE_TYPE not in ("local", "s3", "memory"):
            raise ValueError(f"Unsupported storage type: {self.STORAGE_TYPE}")
        if self.WORKER_CONCURRENCY < 1:
            raise ValueError("WORKER_CONCURRENCY must be at least 1")
        if self.MAX_ATTEMPTS < 1:
            raise ValueError("WORKER_MAX_ATTEMPTS must be at least 1")
        if self.CLAIM_LEASE_SEC < 1:
            raise ValueError("WORKER_CLAIM_LEASE_SEC must be at least 1")

    def retry_delay_sec(self, attempt: int) -> float:
        """Exponential backoff delay before the attempt after `attempt` (1-based)"""
        return (self.RETRY_BASE_DELAY_MS / 1000.0) * (2 ** max(attempt - 1, 0))
