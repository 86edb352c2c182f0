"""
Configuration module for HireChat.
Stores all realtime-core settings; every value can be overridden from the environment.
"""

import os
from typing import Dict, Any


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


class Config:
    """Application configuration class."""

    # JWT Configuration (internal signing secret, checked first)
    JWT_SECRET = os.environ.get("JWT_SECRET", "default-secret-key-change-in-production")
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

    # External identity provider (fallback verification)
    IDP_URL = os.environ.get("IDP_URL", "")
    IDP_API_KEY = os.environ.get("IDP_API_KEY", "")
    IDP_TIMEOUT = _env_float("IDP_TIMEOUT", 5.0)

    # Server Configuration
    DEFAULT_HOST = os.environ.get("HIRECHAT_HOST", "localhost")
    DEFAULT_SERVER_PORT = int(os.environ.get("HIRECHAT_PORT", "8765"))
    DEFAULT_API_PORT = int(os.environ.get("HIRECHAT_API_PORT", "8766"))

    # SQLite database (chat threads, messages, notifications, profiles)
    SQLITE_DB_FILE = os.environ.get("HIRECHAT_DB", "hirechat.db")

    # Upper bound for a single storage call before it is reported as failed
    STORE_TIMEOUT = _env_float("STORE_TIMEOUT", 5.0)

    # Liveness: clients are prompted every interval and evicted after grace
    HEARTBEAT_INTERVAL = _env_float("HEARTBEAT_INTERVAL", 25.0)
    HEARTBEAT_GRACE = _env_float("HEARTBEAT_GRACE", 75.0)

    # "last_socket" or "per_socket"
    PRESENCE_POLICY = os.environ.get("PRESENCE_POLICY", "last_socket")

    # Empty means the admin HTTP endpoints are open
    ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Get all configuration values as a dictionary."""
        return {
            "JWT_ALGORITHM": cls.JWT_ALGORITHM,
            "IDP_URL": cls.IDP_URL,
            "IDP_TIMEOUT": cls.IDP_TIMEOUT,
            "DEFAULT_HOST": cls.DEFAULT_HOST,
            "DEFAULT_SERVER_PORT": cls.DEFAULT_SERVER_PORT,
            "DEFAULT_API_PORT": cls.DEFAULT_API_PORT,
            "SQLITE_DB_FILE": cls.SQLITE_DB_FILE,
            "STORE_TIMEOUT": cls.STORE_TIMEOUT,
            "HEARTBEAT_INTERVAL": cls.HEARTBEAT_INTERVAL,
            "HEARTBEAT_GRACE": cls.HEARTBEAT_GRACE,
            "PRESENCE_POLICY": cls.PRESENCE_POLICY,
        }


# Create config instance
config = Config()
