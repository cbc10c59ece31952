"""
Sync pipeline configuration.

Values are resolved with the precedence: field defaults < YAML file <
environment variables. A ``.env`` file in the working directory is loaded
into the environment first.

Expected YAML format:
```yaml
db_uri: mongodb://localhost:27017/?replicaSet=rs0
database: synchronize
batch_count: 500
save_interval_ms: 2000
anonymizer_strategy: keyed_hash
```
"""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Environment variable for each config field
ENV_MAPPING = {
    "db_uri": "DB_URI",
    "database": "DB_NAME",
    "source_collection": "SOURCE_COLLECTION",
    "target_collection": "TARGET_COLLECTION",
    "checkpoint_backend": "CHECKPOINT_BACKEND",
    "checkpoint_collection": "CHECKPOINT_COLLECTION",
    "checkpoint_key": "CHECKPOINT_KEY",
    "batch_count": "BATCH_COUNT",
    "save_interval_ms": "SAVE_INTERVAL_MS",
    "max_write_batch_size": "MAX_WRITE_BATCH_SIZE",
    "anonymizer_strategy": "ANONYMIZER_STRATEGY",
    "anonymizer_key": "ANONYMIZER_KEY",
    "catch_up_on_start": "CATCH_UP_ON_START",
    "max_await_time_ms": "MAX_AWAIT_TIME_MS",
    "connect_timeout_ms": "CONNECT_TIMEOUT_MS",
    "backfill_max_retries": "BACKFILL_MAX_RETRIES",
    "backfill_retry_delay": "BACKFILL_RETRY_DELAY",
}


class SyncConfig(BaseModel):
    """
    Runtime settings of the sync pipeline.

    Attributes:
        db_uri: MongoDB connection string for the source/target store
        database: Database holding the collections
        source_collection: Collection receiving the raw customer records
        target_collection: Collection receiving the anonymized records
        checkpoint_backend: Where the resume token is persisted ("mongo" or "postgres")
        checkpoint_collection: Mongo collection for checkpoints (mongo backend)
        checkpoint_key: Name of the checkpoint slot
        batch_count: Size trigger threshold of the batch buffer
        save_interval_ms: Period of the time-triggered flush
        max_write_batch_size: Page size of backfill runs
        anonymizer_strategy: Value generator ("random" or "keyed_hash")
        anonymizer_key: Secret key of the keyed_hash generator
        catch_up_on_start: Run incremental backfill when no checkpoint exists
        max_await_time_ms: Longest wait of one change stream poll
        connect_timeout_ms: Server selection timeout at startup
        backfill_max_retries: Attempts per backfill page before giving up
        backfill_retry_delay: Seconds between backfill page attempts
    """

    db_uri: str = Field(..., min_length=1)
    database: str = "synchronize"
    source_collection: str = "customers"
    target_collection: str = "customers_anonymised"
    checkpoint_backend: Literal["mongo", "postgres"] = "mongo"
    checkpoint_collection: str = "sync_checkpoints"
    checkpoint_key: str = Field("customers_anonymised", min_length=1)
    batch_count: int = Field(1000, gt=0)
    save_interval_ms: int = Field(1000, gt=0)
    max_write_batch_size: int = Field(100000, gt=0)
    anonymizer_strategy: Literal["random", "keyed_hash"] = "random"
    anonymizer_key: str | None = None
    catch_up_on_start: bool = True
    max_await_time_ms: int = Field(500, gt=0)
    connect_timeout_ms: int = Field(5000, gt=0)
    backfill_max_retries: int = Field(3, ge=1)
    backfill_retry_delay: float = Field(2.0, ge=0)

    @model_validator(mode="after")
    def _check_anonymizer_key(self) -> "SyncConfig":
        if self.anonymizer_strategy == "keyed_hash" and not self.anonymizer_key:
            raise ValueError("anonymizer_key is required for the keyed_hash strategy")
        return self


def _read_yaml(config_path: str | Path) -> dict[str, Any]:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")

    unknown = set(data) - set(SyncConfig.model_fields)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    return data


def _read_env() -> dict[str, str]:
    values = {}
    for field_name, env_name in ENV_MAPPING.items():
        value = os.getenv(env_name)
        if value is not None and value != "":
            values[field_name] = value
    return values


def load_config(config_path: str | Path | None = None, **overrides: Any) -> SyncConfig:
    """
    Load the sync configuration.

    Args:
        config_path: Optional YAML configuration file
        **overrides: Explicit values that win over every other source

    Returns:
        Validated SyncConfig

    Raises:
        FileNotFoundError: If config_path does not exist
        pydantic.ValidationError: If the resolved values are invalid
    """
    load_dotenv()

    values: dict[str, Any] = {}
    if config_path:
        values.update(_read_yaml(config_path))
    values.update(_read_env())
    values.update({k: v for k, v in overrides.items() if v is not None})

    return SyncConfig(**values)
