"""
Pytest configuration and fixtures for anonsync tests

This module provides shared fixtures for unit, integration, and E2E tests.
Unit tests run against in-memory stores; integration and E2E tests start
MongoDB and PostgreSQL with testcontainers.
"""
import time
from datetime import datetime, timedelta
from typing import Any, Generator, Optional

import pytest
from bson import ObjectId
from pymongo import MongoClient
from testcontainers.core.container import DockerContainer
from testcontainers.mongodb import MongoDbContainer
from testcontainers.postgres import PostgresContainer

from anonsync.core.errors import SubscriptionFailure, WriteFailure
from anonsync.core.models import CREATED_AT_FIELD, ChangeEvent, Checkpoint, UpsertOperation
from anonsync.store.checkpoint import CheckpointStore


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# DOCUMENT FACTORIES
# =======================

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def make_customer_document(index: int = 0, created_at: Optional[datetime] = None, **overrides) -> dict[str, Any]:
    """Build a raw customer document as it appears in the source collection."""
    document = {
        "_id": ObjectId(),
        "firstName": f"First{index}",
        "lastName": f"Last{index}",
        "email": f"user{index}@example.com",
        "address": {
            "line1": f"{index} Main Street",
            "line2": f"Apt. {index}",
            "postcode": f"PC{index:04d}",
            "city": "Springfield",
            "state": "IL",
            "country": "US",
        },
        CREATED_AT_FIELD: created_at or BASE_TIME + timedelta(seconds=index),
    }
    document.update(overrides)
    return document


def make_event(document: Optional[dict[str, Any]], sequence: int, operation_type: str = "insert") -> ChangeEvent:
    """Build a change event whose resume token encodes ``sequence``."""
    return ChangeEvent(
        operation_type=operation_type,
        full_document=document,
        resume_token={"_data": f"{sequence:08d}"},
    )


@pytest.fixture
def customer_document() -> dict[str, Any]:
    return make_customer_document(1)


@pytest.fixture
def customer_documents() -> list[dict[str, Any]]:
    return [make_customer_document(i) for i in range(5)]


# =======================
# IN-MEMORY STORES
# =======================

class FakeChangeStream:
    """
    Scripted change feed.

    ``items`` are returned in order; an Exception item is raised instead.
    Once exhausted, ``on_exhausted`` is called (typically ``consumer.stop``)
    and every further poll waits ``idle_delay`` and returns None.
    """

    def __init__(self, items: list, on_exhausted=None, idle_delay: float = 0.005):
        self.items = list(items)
        self.on_exhausted = on_exhausted
        self.idle_delay = idle_delay
        self.closed = False
        self.polls = 0

    def try_next(self) -> Optional[ChangeEvent]:
        self.polls += 1
        if self.items:
            item = self.items.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.on_exhausted is not None:
            callback, self.on_exhausted = self.on_exhausted, None
            callback()
        time.sleep(self.idle_delay)
        return None

    def close(self) -> None:
        self.closed = True


class FakeCustomerStore:
    """
    In-memory customer collection implementing the source and target seams.
    """

    def __init__(self, documents: Optional[list[dict[str, Any]]] = None):
        self.documents: dict[Any, dict[str, Any]] = {}
        for document in documents or []:
            self.documents[document["_id"]] = dict(document)
        self.stream: Optional[FakeChangeStream] = None
        self.watch_calls: list[Optional[dict[str, Any]]] = []
        self.watch_error: Optional[Exception] = None
        self.bulk_calls: list[list[UpsertOperation]] = []
        self.fail_writes = 0

    def watch(self, resume_after=None, max_await_time_ms: int = 500) -> FakeChangeStream:
        self.watch_calls.append(resume_after)
        if self.watch_error is not None:
            raise self.watch_error
        if self.stream is None:
            raise SubscriptionFailure("no change stream scripted")
        return self.stream

    def iter_documents(self, created_since=None, batch_size=None):
        documents = list(self.documents.values())
        if created_since is not None:
            documents = [d for d in documents if d[CREATED_AT_FIELD] >= created_since]
            documents.sort(key=lambda d: d[CREATED_AT_FIELD])
        return iter(documents)

    def find_latest(self) -> Optional[dict[str, Any]]:
        if not self.documents:
            return None
        latest = max(self.documents.values(), key=lambda d: d[CREATED_AT_FIELD])
        return {"_id": latest["_id"], CREATED_AT_FIELD: latest[CREATED_AT_FIELD]}

    def bulk_upsert(self, operations: list[UpsertOperation]) -> int:
        self.bulk_calls.append(operations)
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise WriteFailure("simulated bulk write failure")
        for op in operations:
            key = op.filter["_id"]
            self.documents[key] = {**op.replacement, "_id": key}
        return len(operations)

    def insert_many(self, documents: list[dict[str, Any]]) -> int:
        for document in documents:
            document.setdefault("_id", ObjectId())
            self.documents[document["_id"]] = dict(document)
        return len(documents)

    def count(self) -> int:
        return len(self.documents)


class FakeCheckpointStore(CheckpointStore):
    """Dictionary-backed checkpoint store recording every save."""

    def __init__(self):
        self.checkpoints: dict[str, Checkpoint] = {}
        self.saved_tokens: list[dict[str, Any]] = []
        self.fail_saves = 0

    def load(self, key: str) -> Optional[Checkpoint]:
        return self.checkpoints.get(key)

    def save(self, key: str, resume_token: dict[str, Any]) -> Checkpoint:
        if self.fail_saves > 0:
            self.fail_saves -= 1
            raise WriteFailure("simulated checkpoint write failure")
        checkpoint = Checkpoint(key=key, resume_token=resume_token)
        self.checkpoints[key] = checkpoint
        self.saved_tokens.append(resume_token)
        return checkpoint

    def clear(self, key: str) -> bool:
        return self.checkpoints.pop(key, None) is not None


@pytest.fixture
def source_store() -> FakeCustomerStore:
    return FakeCustomerStore()


@pytest.fixture
def target_store() -> FakeCustomerStore:
    return FakeCustomerStore()


@pytest.fixture
def checkpoint_store() -> FakeCheckpointStore:
    return FakeCheckpointStore()


# =======================
# CONFIGURATION FIXTURES
# =======================

@pytest.fixture
def clean_env(monkeypatch):
    """
    Remove every anonsync environment variable for the duration of a test

    Also stops ``load_dotenv`` from picking up a developer's local .env file.
    """
    from anonsync.core.config import ENV_MAPPING

    for env_name in ENV_MAPPING.values():
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.setattr("anonsync.core.config.load_dotenv", lambda *args, **kwargs: False)
    return monkeypatch


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def mongo_container() -> Generator[MongoDbContainer, None, None]:
    """
    Start MongoDB container for integration tests

    Yields:
        MongoDbContainer instance
    """
    with MongoDbContainer("mongo:7.0") as mongo:
        yield mongo


@pytest.fixture(scope="session")
def mongo_uri(mongo_container) -> str:
    return mongo_container.get_connection_url()


@pytest.fixture(scope="function")
def mongo_database(mongo_uri):
    """
    Provide a clean test database for a single test

    Yields:
        pymongo Database, dropped after the test
    """
    client = MongoClient(mongo_uri)
    database = client["anonsync_test"]
    yield database
    client.drop_database("anonsync_test")
    client.close()


@pytest.fixture(scope="session")
def replica_set_uri() -> Generator[str, None, None]:
    """
    Start a single-member MongoDB replica set, which change streams require

    Yields:
        Direct connection URI of the primary
    """
    with DockerContainer("mongo:7.0").with_command("--replSet rs0 --bind_ip_all").with_exposed_ports(27017) as mongo:
        uri = (
            f"mongodb://{mongo.get_container_host_ip()}:{mongo.get_exposed_port(27017)}/"
            "?directConnection=true"
        )
        client = MongoClient(uri, serverSelectionTimeoutMS=30000)
        client.admin.command(
            "replSetInitiate",
            {"_id": "rs0", "members": [{"_id": 0, "host": "localhost:27017"}]},
        )

        deadline = time.monotonic() + 30
        while not client.admin.command("hello").get("isWritablePrimary"):
            if time.monotonic() > deadline:
                raise RuntimeError("Replica set did not elect a primary")
            time.sleep(0.2)
        client.close()
        yield uri


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for checkpoint backend tests

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_anonsync",
        password="test_password",
        dbname="test_checkpoints"
    ) as postgres:
        yield postgres


@pytest.fixture(scope="function")
def postgres_pool(postgres_container):
    """
    Provide an opened connection pool against the test database

    Yields:
        DatabaseConnectionPool; the checkpoint table is dropped afterwards
    """
    from anonsync.store.postgres import DatabaseConnectionPool, PostgresSettings

    settings = PostgresSettings(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_checkpoints",
        user="test_anonsync",
        password="test_password",
    )
    pool = DatabaseConnectionPool(settings).open(max_retries=5)
    yield pool
    pool.execute("DROP TABLE IF EXISTS sync_checkpoint")
    pool.close()
