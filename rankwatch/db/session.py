"""Engine construction."""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

DEFAULT_DATABASE_URL = "sqlite:///rankwatch.db"


def create_engine_from_env(url: str | None = None) -> Engine:
    """Create an engine from ``DATABASE_URL``; SQLite connections are shared with executor threads."""
    url = url or os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
