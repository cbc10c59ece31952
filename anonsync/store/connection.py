"""
MongoDB connection management using pymongo

Wraps a MongoClient with an explicit open/close lifecycle. Opening pings the
server so an unreachable store fails fast at startup instead of on the first
change stream or bulk write.
"""
import os
import time

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from anonsync.core.errors import ConnectionFailure
from anonsync.observability.logger import get_logger

logger = get_logger(__name__)


class MongoConnection:
    """
    MongoDB client manager.

    Provides access to the sync database and its collections once opened.
    """

    def __init__(
        self,
        uri: str | None = None,
        database: str | None = None,
        timeout_ms: int = 5000,
    ) -> None:
        """
        Initialize the connection manager

        Args:
            uri: MongoDB connection string (defaults to env var DB_URI)
            database: Database name (defaults to env var DB_NAME, then "synchronize")
            timeout_ms: Server selection timeout in milliseconds
        """
        self.uri = uri or os.getenv("DB_URI")
        self.database_name = database or os.getenv("DB_NAME", "synchronize")
        self.timeout_ms = timeout_ms

        if not self.uri:
            raise ValueError(
                "MongoDB URI must be provided. "
                "Set DB_URI environment variable or pass to constructor."
            )

        self._client: MongoClient | None = None

    def open(self, max_retries: int = 1, retry_delay: float = 2.0) -> "MongoConnection":
        """
        Create the client and verify the server is reachable.

        Args:
            max_retries: Maximum number of connection attempts
            retry_delay: Delay between attempts in seconds

        Returns:
            self, for chaining

        Raises:
            ConnectionFailure: If the server cannot be reached after all attempts
        """
        if self._client is not None:
            return self

        client = MongoClient(self.uri, serverSelectionTimeoutMS=self.timeout_ms)

        for attempt in range(1, max_retries + 1):
            try:
                client.admin.command("ping")
                self._client = client
                logger.info(f"Connected to MongoDB (database: {self.database_name})")
                return self
            except PyMongoError as e:
                if attempt < max_retries:
                    logger.warning(f"MongoDB ping failed (attempt {attempt}/{max_retries}): {e}")
                    time.sleep(retry_delay)
                else:
                    client.close()
                    raise ConnectionFailure(
                        f"Failed to connect to MongoDB after {max_retries} attempt(s): {e}"
                    ) from e

        return self

    def close(self) -> None:
        """Close the client"""
        if self._client is not None:
            self._client.close()
            self._client = None

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            raise RuntimeError("MongoDB connection is not open. Call open() first.")
        return self._client

    @property
    def database(self) -> Database:
        return self.client[self.database_name]

    def collection(self, name: str) -> Collection:
        """Get a collection of the sync database"""
        return self.database[name]

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
