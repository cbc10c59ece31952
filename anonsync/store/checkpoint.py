"""
Durable storage of the change feed checkpoint.

A checkpoint is a single named slot holding the resume token of the last
committed flush. It is read once at startup and overwritten after every
committed flush. Tokens are opaque and round-tripped without interpretation.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import psycopg
from bson import json_util
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from anonsync.core.errors import ConnectionFailure, WriteFailure
from anonsync.core.models import Checkpoint
from anonsync.observability.logger import get_logger

from .postgres import DatabaseConnectionPool

logger = get_logger(__name__)


class CheckpointStore(ABC):
    """Point lookup and upsert of checkpoints by key."""

    @abstractmethod
    def load(self, key: str) -> Optional[Checkpoint]:
        """
        Read the checkpoint stored under ``key``.

        Returns:
            Checkpoint, or None when nothing was committed yet

        Raises:
            ConnectionFailure: If the store cannot be read
        """

    @abstractmethod
    def save(self, key: str, resume_token: dict[str, Any]) -> Checkpoint:
        """
        Overwrite the checkpoint stored under ``key``.

        Raises:
            WriteFailure: If the write fails
        """

    @abstractmethod
    def clear(self, key: str) -> bool:
        """
        Remove the checkpoint stored under ``key``.

        Returns:
            True if a checkpoint was removed
        """

    def load_token(self, key: str) -> Optional[dict[str, Any]]:
        checkpoint = self.load(key)
        return checkpoint.resume_token if checkpoint else None

    def close(self) -> None:
        """Release resources owned by the store."""


class MongoCheckpointStore(CheckpointStore):
    """
    Checkpoints kept in a MongoDB collection, one document per key.

    Document shape: ``{"_id": key, "resumeToken": {...}, "updatedAt": datetime}``
    """

    def __init__(self, collection: Collection):
        self.collection = collection

    def load(self, key: str) -> Optional[Checkpoint]:
        try:
            document = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise ConnectionFailure(f"Failed to read checkpoint '{key}': {e}") from e

        if document is None:
            return None
        return Checkpoint(
            key=key,
            resume_token=document["resumeToken"],
            updated_at=document["updatedAt"],
        )

    def save(self, key: str, resume_token: dict[str, Any]) -> Checkpoint:
        checkpoint = Checkpoint(key=key, resume_token=resume_token)
        try:
            self.collection.replace_one(
                {"_id": key},
                {"resumeToken": resume_token, "updatedAt": checkpoint.updated_at},
                upsert=True,
            )
        except PyMongoError as e:
            raise WriteFailure(f"Failed to write checkpoint '{key}': {e}") from e
        return checkpoint

    def clear(self, key: str) -> bool:
        try:
            result = self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise WriteFailure(f"Failed to clear checkpoint '{key}': {e}") from e
        return result.deleted_count > 0


class PostgresCheckpointStore(CheckpointStore):
    """
    Checkpoints kept in a PostgreSQL table.

    Tokens are serialized as canonical Extended JSON so every BSON type they
    may carry survives the round trip.
    """

    TABLE_DDL = """
        CREATE TABLE IF NOT EXISTS sync_checkpoint (
            checkpoint_key TEXT PRIMARY KEY,
            resume_token TEXT NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL
        )
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Args:
            pool: Opened connection pool
        """
        self.pool = pool

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the checkpoint table if it does not exist."""
        self.pool.execute(self.TABLE_DDL)

    def load(self, key: str) -> Optional[Checkpoint]:
        try:
            rows = self.pool.fetch_all(
                "SELECT resume_token, updated_at FROM sync_checkpoint WHERE checkpoint_key = %s",
                (key,),
            )
        except psycopg.Error as e:
            raise ConnectionFailure(f"Failed to read checkpoint '{key}': {e}") from e

        if not rows:
            return None
        return Checkpoint(
            key=key,
            resume_token=json_util.loads(rows[0]["resume_token"]),
            updated_at=rows[0]["updated_at"],
        )

    def save(self, key: str, resume_token: dict[str, Any]) -> Checkpoint:
        checkpoint = Checkpoint(
            key=key,
            resume_token=resume_token,
            updated_at=datetime.now(timezone.utc),
        )
        serialized = json_util.dumps(resume_token, json_options=json_util.CANONICAL_JSON_OPTIONS)
        try:
            self.pool.execute(
                """
                INSERT INTO sync_checkpoint (checkpoint_key, resume_token, updated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (checkpoint_key) DO UPDATE SET
                    resume_token = EXCLUDED.resume_token,
                    updated_at = EXCLUDED.updated_at
                """,
                (key, serialized, checkpoint.updated_at),
            )
        except psycopg.Error as e:
            raise WriteFailure(f"Failed to write checkpoint '{key}': {e}") from e
        return checkpoint

    def clear(self, key: str) -> bool:
        try:
            deleted = self.pool.execute(
                "DELETE FROM sync_checkpoint WHERE checkpoint_key = %s",
                (key,),
            )
        except psycopg.Error as e:
            raise WriteFailure(f"Failed to clear checkpoint '{key}': {e}") from e
        return deleted > 0


def create_checkpoint_store(config, connection) -> CheckpointStore:
    """
    Build the checkpoint store selected by the configuration.

    Args:
        config: SyncConfig
        connection: Opened MongoConnection (used by the mongo backend)

    Returns:
        Ready-to-use CheckpointStore
    """
    if config.checkpoint_backend == "mongo":
        return MongoCheckpointStore(connection.collection(config.checkpoint_collection))
    elif config.checkpoint_backend == "postgres":
        pool = DatabaseConnectionPool()
        pool.open()
        store = PostgresCheckpointStore(pool)
        store.ensure_schema()
        logger.info(f"Using PostgreSQL checkpoint store at {pool.settings.address}")
        return store
    else:
        raise ValueError(f"Unsupported checkpoint backend: {config.checkpoint_backend}")
