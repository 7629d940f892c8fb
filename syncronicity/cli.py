"""CLI entry point for the transfer pipeline."""

from __future__ import annotations

import argparse
import sys

from syncronicity.config import get_config
from syncronicity.exceptions import ConfigurationError, TransferError
from syncronicity.logging_utils import get_logger, setup_logging
from syncronicity.models import Outcome
from syncronicity.pipeline import run_transfer

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Transfer one BigQuery table into Snowflake through a Parquet stage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m syncronicity.cli
  python -m syncronicity.cli --project my-proj --dataset sales --table orders
  python -m syncronicity.cli --stage @raw.orders_stage --destination-table RAW.ORDERS --load-mode per_file
        """,
    )

    # Source
    parser.add_argument("--project", type=str, help="GCP project of the source table")
    parser.add_argument("--dataset", type=str, help="BigQuery dataset of the source table")
    parser.add_argument("--table", type=str, help="BigQuery source table")
    parser.add_argument("--service-account", type=str, help="Path to a service account JSON key")
    parser.add_argument("--max-streams", type=int, help="Maximum number of read streams")

    # Destination
    parser.add_argument("--stage", type=str, help="Snowflake stage, e.g. @db.schema.stage")
    parser.add_argument("--destination-table", type=str, help="Snowflake table loaded by COPY INTO")
    parser.add_argument("--load-mode", choices=["end", "per_file"], help="Load once at the end or per staged file")

    parser.add_argument("--timeout", type=float, help="Transfer deadline in seconds")
    parser.add_argument("--env-file", type=str, default="config.env", help="Env file read before the environment")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")
    parser.add_argument("--log-format", choices=["json", "text"], default="json")

    parsed = parser.parse_args(argv)

    if parsed.max_streams is not None and parsed.max_streams < 1:
        parser.error("--max-streams must be >= 1")

    return parsed


def config_overrides(args: argparse.Namespace) -> dict:
    """Map CLI flags to configuration fields; flags not given are left to the config."""
    return {
        "project_id": args.project,
        "dataset": args.dataset,
        "table": args.table,
        "service_account_file": args.service_account,
        "max_stream_count": args.max_streams,
        "snowflake_stage": args.stage,
        "destination_table": args.destination_table,
        "load_mode": args.load_mode,
        "transfer_timeout_seconds": args.timeout,
        "log_level": args.log_level,
    }


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI execution."""
    args = parse_args(argv)
    setup_logging(level=args.log_level, json_format=(args.log_format == "json"))

    try:
        config = get_config(env_file=args.env_file, **config_overrides(args))
        result = run_transfer(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FAILED
    except TransferError as e:
        logger.error(f"Transfer failed: {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Transfer interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_FAILED

    summary = result.to_dict()
    if result.outcome is Outcome.SUCCESS:
        logger.info("Transfer succeeded", extra=summary)
        return EXIT_OK

    logger.error(f"Transfer finished with outcome {result.outcome.value}", extra=summary)
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
