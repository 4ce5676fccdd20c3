"""
Environment-driven configuration for the ABAC service.

Values are read once from the process environment (a local .env file is
loaded first). Every setting has a development default so the service can
start against an in-memory SQLite database.
"""

import os
import logging
from typing import List, Optional

import dotenv

logger = logging.getLogger(__name__)

dotenv.load_dotenv()

# 30 days, matches the TTL index of the audit collection
DEFAULT_AUDIT_TTL_SECONDS = 2_592_000


class ABACConfig:
    """Configuration for database, audit recorder and token verification"""

    def __init__(self):
        self.database_url = os.getenv("ABAC_DATABASE_URL", "sqlite:///:memory:")

        # Connection pooling (ignored for SQLite)
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "20"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1500"))
        self.echo = os.getenv("DB_ECHO", "False").lower() == "true"

        # Audit trail
        self.audit_ttl_seconds = int(
            os.getenv("ABAC_AUDIT_TTL_SECONDS", str(DEFAULT_AUDIT_TTL_SECONDS))
        )
        self.recorder_workers = int(os.getenv("ABAC_RECORDER_WORKERS", "2"))
        self.recorder_timeout_seconds = float(
            os.getenv("ABAC_RECORDER_TIMEOUT_SECONDS", "5")
        )

        # Optional YAML seed for attributes/policies
        self.policy_file: Optional[str] = os.getenv("ABAC_POLICY_FILE") or None

        # Token verification (tokens are minted by the auth service)
        self.jwt_secret_key = os.getenv("JWT_SECRET_KEY", "change-me")
        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")

        self.cors_origins: List[str] = [
            origin.strip()
            for origin in os.getenv(
                "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
            ).split(",")
            if origin.strip()
        ]

        logger.info(
            f"ABAC config: database={self.database_url.split('://')[0]}, "
            f"audit_ttl={self.audit_ttl_seconds}s, recorder_workers={self.recorder_workers}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")
