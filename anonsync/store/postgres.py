"""
PostgreSQL access for the Postgres checkpoint backend (psycopg3 + psycopg_pool)

Connection settings come from PG_HOST, PG_PORT, PG_DATABASE, PG_USER and
PG_PASSWORD unless passed explicitly.
"""
import os
import time
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout
from pydantic import BaseModel, Field

from anonsync.core.errors import ConnectionFailure
from anonsync.observability.logger import get_logger

logger = get_logger(__name__)


class PostgresSettings(BaseModel):
    """
    Connection settings of the checkpoint database.

    Attributes:
        host: Server host
        port: Server port
        database: Database name
        user: Login role
        password: Login password (required)
        connect_timeout: Seconds to wait for a connection
    """

    host: str = "localhost"
    port: int = 5432
    database: str = "anonsync"
    user: str = "anonsync"
    password: str = Field(..., min_length=1)
    connect_timeout: float = Field(30.0, gt=0)

    @classmethod
    def from_env(cls, **explicit: Any) -> "PostgresSettings":
        """Resolve settings from PG_* environment variables; explicit values win."""
        values = {
            "host": os.getenv("PG_HOST"),
            "port": os.getenv("PG_PORT"),
            "database": os.getenv("PG_DATABASE"),
            "user": os.getenv("PG_USER"),
            "password": os.getenv("PG_PASSWORD"),
        }
        values.update({k: v for k, v in explicit.items() if v is not None})
        return cls(**{k: v for k, v in values.items() if v is not None})

    @property
    def conninfo(self) -> str:
        return make_conninfo(
            host=self.host,
            port=self.port,
            dbname=self.database,
            user=self.user,
            password=self.password,
            connect_timeout=int(self.connect_timeout),
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"


class DatabaseConnectionPool:
    """
    Small psycopg3 pool whose connections return rows as dictionaries.
    """

    def __init__(self, settings: PostgresSettings | None = None, min_size: int = 1, max_size: int = 4) -> None:
        """
        Args:
            settings: Connection settings (resolved from the environment if omitted)
            min_size: Connections kept open
            max_size: Upper bound of concurrent connections
        """
        self.settings = settings or PostgresSettings.from_env()
        self.min_size = min_size
        self.max_size = max_size
        self._pool: ConnectionPool | None = None

    def open(self, max_retries: int = 1, retry_delay: float = 2.0) -> "DatabaseConnectionPool":
        """
        Open the pool and wait until its first connections are ready.

        Raises:
            ConnectionFailure: If the server is unreachable after all attempts
        """
        if self._pool is not None:
            return self

        timeout = self.settings.connect_timeout
        attempt = 1
        while True:
            pool = ConnectionPool(
                conninfo=self.settings.conninfo,
                min_size=self.min_size,
                max_size=self.max_size,
                timeout=timeout,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            try:
                pool.open(wait=True, timeout=timeout)
            except (psycopg.OperationalError, PoolTimeout) as e:
                pool.close()
                if attempt >= max_retries:
                    raise ConnectionFailure(
                        f"Failed to connect to PostgreSQL at {self.settings.address} "
                        f"after {attempt} attempt(s): {e}"
                    ) from e
                logger.warning(f"PostgreSQL not ready (attempt {attempt}/{max_retries}): {e}")
                time.sleep(retry_delay)
                attempt += 1
                continue

            self._pool = pool
            logger.info(f"Connected to PostgreSQL at {self.settings.address}")
            return self

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """Borrow a connection; the pool commits on clean exit and rolls back on error."""
        if self._pool is None:
            raise RuntimeError("Connection pool is not open. Call open() first.")
        with self._pool.connection() as conn:
            yield conn

    def fetch_all(self, query: str, params: tuple | None = None) -> list[dict[str, Any]]:
        with self.connection() as conn:
            return conn.execute(query, params).fetchall()

    def execute(self, command: str, params: tuple | None = None) -> int:
        """
        Run a statement in its own transaction.

        Returns:
            Number of rows affected
        """
        with self.connection() as conn:
            return conn.execute(command, params).rowcount

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
