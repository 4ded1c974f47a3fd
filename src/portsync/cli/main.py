#!/usr/bin/env python3
"""Main entry point for the portsync CLI."""

import argparse
import sys

from ..config import load_settings
from ..logging_config import configure_logging


def main(argv=None):
    """Parse CLI arguments and dispatch to the appropriate subcommand.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        int: Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="portsync",
        description="portsync - replay a portfolio ledger into live holdings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  portsync report ledger.json                         Holdings at last transaction prices
  portsync report ledger.xlsx --prices prices.json    Holdings at prices from a file
  portsync report ledger.json --fx 15500 -c USD       Report in USD at a fixed rate
  portsync report ledger.json --live                  Fetch prices and FX from Yahoo Finance
        """,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        help="Available commands",
    )

    from .report import register_subcommand as register_report
    from .version import register_subcommand as register_version

    register_report(subparsers)
    register_version(subparsers)

    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    args.settings = settings

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
