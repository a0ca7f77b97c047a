"""
Replicate PostgreSQL tables into Redshift via S3.

Every run is a full replace: each source table is streamed out with COPY,
uploaded to S3 as export/<table>.psv.gz and swapped into the warehouse.
"""

import argparse
import logging
import sys
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import MEGABYTE, ReplicationConfig
from replica_etl.exceptions import ConfigError
from replica_etl.pipeline import replicate

LOG_FORMAT = "[%(levelname)s] %(asctime)s %(name)s: %(message)s"

EXIT_OK = 0
EXIT_TABLE_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replicate PostgreSQL tables into Redshift through S3",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Replicate every table in the source schema
  replicate-tables

  # Skip audit tables, use a specific env file
  replicate-tables --exclude audit_log --exclude sessions --env-file .env.cloud

  # Only export and upload two tables, leave Redshift untouched
  replicate-tables --table users --table orders --skip-load

  # Show what would run
  replicate-tables --dry-run
        """,
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="TABLE",
        help="Source table to skip (repeatable, adds to REPLICA_EXCLUDE_TABLES)",
    )
    parser.add_argument(
        "--table",
        action="append",
        default=[],
        metavar="TABLE",
        help="Only replicate this source table (repeatable)",
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument(
        "--segment-size-mb",
        type=int,
        help="Uncompressed megabytes per exported segment (default: 5120)",
    )
    parser.add_argument(
        "--skip-load",
        action="store_true",
        help="Export and upload only; do not touch the warehouse",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Discover tables and print the statements without running them",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    # boto3 is noisy at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)

    segment_size = args.segment_size_mb * MEGABYTE if args.segment_size_mb is not None else None

    try:
        config = ReplicationConfig.from_env(args.env_file, segment_size=segment_size)
        summary = replicate(
            config,
            only=args.table or None,
            exclude=args.exclude,
            skip_load=args.skip_load,
            dry_run=args.dry_run,
        )
    except (ConfigError, FileNotFoundError) as exc:
        logging.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    except SQLAlchemyError as exc:
        logging.error("Could not read the source catalog: %s", exc)
        return EXIT_TABLE_FAILED

    for result in summary.failed:
        logging.error("%s failed during %s: %s", result.source, result.stage, result.error)

    return EXIT_OK if summary.ok else EXIT_TABLE_FAILED


if __name__ == "__main__":
    sys.exit(main())
