"""Database engine helpers."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from adwatch.errors import ConfigurationError, PersistenceError

DEFAULT_POOL_SIZE = 5
DEFAULT_POOL_TIMEOUT = 30.0
DEFAULT_STATEMENT_TIMEOUT_MS = 60_000


def create_engine_from_env() -> Engine:
    """Create an engine using the DATABASE_URL environment variable."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise ConfigurationError("DATABASE_URL is not set")
    try:
        parsed = make_url(url)
    except ArgumentError as exc:
        raise ConfigurationError(f"Invalid DATABASE_URL: {exc}") from exc
    if parsed.get_backend_name() == "sqlite":
        return create_engine(parsed, connect_args={"timeout": _pool_timeout()}, future=True)
    statement_timeout = int(os.environ.get("DB_STATEMENT_TIMEOUT_MS", DEFAULT_STATEMENT_TIMEOUT_MS))
    return create_engine(
        parsed,
        pool_pre_ping=True,
        pool_size=int(os.environ.get("DB_POOL_SIZE", DEFAULT_POOL_SIZE)),
        pool_timeout=_pool_timeout(),
        connect_args={"options": f"-c statement_timeout={statement_timeout}"},
        future=True,
    )


def _pool_timeout() -> float:
    return float(os.environ.get("DB_POOL_TIMEOUT", DEFAULT_POOL_TIMEOUT))


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    """Provide a transactional connection; database failures surface as PersistenceError."""
    try:
        with engine.begin() as conn:
            yield conn
    except SQLAlchemyError as exc:
        raise PersistenceError(str(exc)) from exc
