"""
CLI for the anonymizing sync pipeline.

Provides commands to run the pipeline (continuous feed or full reindex),
inspect or reset its checkpoint, and generate synthetic source load.
"""

import argparse
import json
import os
import signal
import sys

from pydantic import ValidationError

from anonsync.batch.backfill import create_backfill_runner
from anonsync.core.config import SyncConfig, load_config
from anonsync.loadgen import CustomersGenerator
from anonsync.observability.logger import get_logger
from anonsync.observability.metrics import start_metrics_server
from anonsync.store.checkpoint import create_checkpoint_store
from anonsync.store.collections import MongoCustomerStore
from anonsync.store.connection import MongoConnection
from anonsync.streaming.pipeline import create_feed_consumer

logger = get_logger(__name__)


def _print_error(error: Exception) -> None:
    print(json.dumps({"status": "error", "error": str(error)}), file=sys.stderr)


def _load_config(args: argparse.Namespace) -> SyncConfig:
    return load_config(getattr(args, "config", None))


def _start_metrics(args: argparse.Namespace) -> int | None:
    """Serve metrics when --metrics-port or METRICS_PORT is set."""
    if args.metrics_port or os.getenv("METRICS_PORT"):
        return start_metrics_server(args.metrics_port)
    return None


def _open_connection(config: SyncConfig) -> MongoConnection:
    return MongoConnection(
        uri=config.db_uri,
        database=config.database,
        timeout_ms=config.connect_timeout_ms,
    ).open()


def run_sync(args: argparse.Namespace) -> int:
    """
    Run the pipeline in full-reindex or continuous feed mode.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    try:
        config = _load_config(args)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        logger.error(f"Invalid configuration: {e}")
        _print_error(e)
        return 1

    _start_metrics(args)

    connection = None
    checkpoint_store = None
    try:
        connection = _open_connection(config)
        source = MongoCustomerStore(connection.collection(config.source_collection))
        target = MongoCustomerStore(connection.collection(config.target_collection))
        backfill = create_backfill_runner(config, source, target)

        if args.full_reindex:
            result = backfill.run_full()
            print(json.dumps({"status": "completed", **result.to_dict()}, indent=2))
            return 0

        checkpoint_store = create_checkpoint_store(config, connection)
        consumer = create_feed_consumer(config, source, target, checkpoint_store)

        on_subscribed = None
        if config.catch_up_on_start and checkpoint_store.load(config.checkpoint_key) is None:
            on_subscribed = backfill.run_incremental

        def handle_signal(signum, frame):  # type: ignore[no-untyped-def]
            logger.info(f"Received {signal.Signals(signum).name} signal, initiating graceful shutdown...")
            consumer.stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        consumer.run(on_subscribed=on_subscribed)
        print(json.dumps({"status": "stopped", **consumer.get_status()}, indent=2))
        return 0

    except Exception as e:
        logger.error(f"Sync pipeline failed: {e}", exc_info=True)
        _print_error(e)
        return 1
    finally:
        if checkpoint_store is not None:
            checkpoint_store.close()
        if connection is not None:
            connection.close()


def checkpoint_command(args: argparse.Namespace) -> int:
    """
    Show or clear the stored checkpoint.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    connection = None
    store = None
    try:
        config = _load_config(args)
        connection = _open_connection(config)
        store = create_checkpoint_store(config, connection)

        if args.action == "show":
            checkpoint = store.load(config.checkpoint_key)
            if checkpoint is None:
                output = {"checkpoint_key": config.checkpoint_key, "exists": False}
            else:
                output = {
                    "checkpoint_key": checkpoint.key,
                    "exists": True,
                    "updated_at": checkpoint.updated_at.isoformat(),
                    "resume_token": checkpoint.resume_token,
                }
        else:
            removed = store.clear(config.checkpoint_key)
            logger.info(f"Checkpoint '{config.checkpoint_key}' cleared: {removed}")
            output = {"checkpoint_key": config.checkpoint_key, "cleared": removed}

        print(json.dumps(output, indent=2, default=str))
        return 0

    except Exception as e:
        logger.error(f"Checkpoint command failed: {e}", exc_info=True)
        _print_error(e)
        return 1
    finally:
        if store is not None:
            store.close()
        if connection is not None:
            connection.close()


def generate_load(args: argparse.Namespace) -> int:
    """
    Insert synthetic customers into the source collection.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    connection = None
    try:
        config = _load_config(args)
        connection = _open_connection(config)
        source = MongoCustomerStore(connection.collection(config.source_collection))
        generator = CustomersGenerator(source, interval_ms=args.interval_ms, seed=args.seed)

        def handle_signal(signum, frame):  # type: ignore[no-untyped-def]
            logger.info(f"Received {signal.Signals(signum).name} signal, stopping generator...")
            generator.stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        inserted = generator.run(max_batches=args.max_batches)
        print(json.dumps({"status": "stopped", "inserted": inserted}, indent=2))
        return 0

    except Exception as e:
        logger.error(f"Load generator failed: {e}", exc_info=True)
        _print_error(e)
        return 1
    finally:
        if connection is not None:
            connection.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anonsync",
        description="Replicate a customer collection into an anonymized copy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Follow the change feed (resumes from the stored checkpoint)
  %(prog)s run

  # Re-transform the whole source collection, then exit
  %(prog)s run --full-reindex

  # Inspect or reset the checkpoint
  %(prog)s checkpoint show
  %(prog)s checkpoint clear

  # Insert fake customers every 200ms
  %(prog)s generate --interval-ms 200
        """
    )
    parser.add_argument(
        "--config",
        help="Path to a YAML configuration file (environment variables take precedence)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    run_parser = subparsers.add_parser("run", help="Run the sync pipeline")
    run_parser.add_argument(
        "--full-reindex",
        action="store_true",
        help="Re-transform the entire source collection and exit"
    )
    run_parser.add_argument(
        "--metrics-port",
        type=int,
        help="Expose Prometheus metrics on this port"
    )

    checkpoint_parser = subparsers.add_parser("checkpoint", help="Inspect or reset the checkpoint")
    checkpoint_parser.add_argument("action", choices=["show", "clear"])

    generate_parser = subparsers.add_parser("generate", help="Insert synthetic customers")
    generate_parser.add_argument(
        "--interval-ms",
        type=int,
        default=200,
        help="Delay between inserts (default: 200)"
    )
    generate_parser.add_argument(
        "--max-batches",
        type=int,
        help="Stop after this many inserts (default: run until interrupted)"
    )
    generate_parser.add_argument(
        "--seed",
        type=int,
        help="Seed for reproducible data"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the anonsync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "run":
        return run_sync(args)
    elif args.command == "checkpoint":
        return checkpoint_command(args)
    elif args.command == "generate":
        return generate_load(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
