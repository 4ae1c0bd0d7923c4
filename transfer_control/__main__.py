"""
Command line entry point

    python -m transfer_control run --config control_config.yaml
    python -m transfer_control history --config control_config.yaml
"""

import argparse
import asyncio
import sys

from loguru import logger

from .control_config import configure_logging, load_config
from .control_plane import ControlPlane
from .errors import ConfigurationError
from .transaction_history import TransactionHistoryDB


def _run(config) -> int:
    plane = ControlPlane.from_config(config)
    asyncio.run(plane.run_forever())
    return 0


def _history(config, limit: int) -> int:
    db = TransactionHistoryDB(config.storage.db_path)
    try:
        db.print_statistics()
        for record in db.get_all_records(limit=limit):
            print(f"{record.created_at.isoformat()}  {record.status:<9}  {record.amount:>12} {record.currency}  "
                  f"{record.source_label:<20}  {record.tx_hash}")
    finally:
        db.close()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="transfer_control", description="Agent liveness supervisor and transfer orchestrator")
    parser.add_argument("--config", default="control_config.yaml", help="Path to control config YAML")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the supervisor and the transfer scheduler")
    history_parser = subparsers.add_parser("history", help="Show transfer history statistics")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of recent records to list")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        configure_logging(config.logging)

        if args.command == "run":
            return _run(config)
        return _history(config, args.limit)

    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
