"""Runtime configuration for the clinic queue.

Everything is read from environment variables once, at import time.  The
defaults are suitable for local development: a SQLite file next to this
module, no Redis (live updates fall back to timed re-reads) and the demo
front-desk PIN.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")


def normalize_database_url(url: str) -> str:
    """Turn whatever was put in DATABASE_URL into a SQLAlchemy URL.

    A bare path is treated as a SQLite file.  Hosting platforms hand out
    ``postgres://`` URLs which SQLAlchemy no longer accepts.
    """
    if "://" not in url:
        return f"sqlite:///{url}"
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", DEFAULT_DB_FILENAME))
REDIS_URL = os.getenv("REDIS_URL")

# Shared front-desk PIN.  Overrides the value stored in settings on startup.
ADMIN_PASS = os.getenv("ADMIN_PASS")
DEFAULT_ADMIN_PASSCODE = "1234"

DEFAULT_CONSULTATION_MINUTES = int(os.getenv("DEFAULT_CONSULTATION_MINUTES", 15))

# Live update streams
FALLBACK_POLL_SECONDS = float(os.getenv("FALLBACK_POLL_SECONDS", 5))
HEARTBEAT_SECONDS = float(os.getenv("HEARTBEAT_SECONDS", 15))
SUBSCRIPTION_POLL_SECONDS = 0.2

# Registration rate limiting (per phone, or per client host)
RATE_LIMIT = int(os.getenv("RATE_LIMIT", 5))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", 300))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
