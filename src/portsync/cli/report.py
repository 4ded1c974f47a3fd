#!/usr/bin/env python3
"""Report subcommand - Display holdings replayed from a ledger file."""

import json
from decimal import Decimal, InvalidOperation
from pathlib import Path

import pandas as pd
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from ..builder import provider_symbols
from ..config import load_settings
from ..currency import Currency, YFinanceExchangeRateManager, convert_amount
from ..errors import PortfolioError
from ..pricingdata import YFinancePricingDataManager, price_table_from_dict
from ..state import PortfolioStore
from ..transactions import AssetClass, transactions_from_records


def register_subcommand(subparsers):
    """Register the report subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "report",
        help="Display portfolio holdings report",
        description="Replay a ledger file (.json or .xlsx) and display current holdings and totals.",
    )
    parser.add_argument("filename", help="Path to the ledger file (.json or .xlsx)")
    parser.add_argument(
        "--prices",
        "-p",
        metavar="FILE",
        help="JSON price table mapping symbols to prices",
    )
    parser.add_argument(
        "--fx",
        metavar="RATE",
        help="USD->IDR exchange rate (default: PORTSYNC_FX_RATE)",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Fetch prices and the exchange rate from Yahoo Finance",
    )
    parser.add_argument(
        "--currency",
        "-c",
        default=None,
        help="Currency for totals, IDR or USD (default: PORTSYNC_REPORT_CURRENCY)",
    )
    parser.set_defaults(func=run)


def _clean_record(record: dict) -> dict:
    # pandas fills empty cells with NaN; the ledger parser expects missing values
    return {key: (None if not isinstance(value, (list, dict)) and pd.isna(value) else value) for key, value in record.items()}


def load_ledger_records(file_path: str) -> list[dict]:
    """Read plain ledger records from a JSON or Excel file.

    A JSON file holds either a list of records or an object with a
    ``transactions`` list. An Excel file holds one record per row with the
    record field names as column headers.

    Args:
        file_path: Path to the ledger file.

    Returns:
        The records, in file order.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file type is not supported or the JSON is not a
            list of records.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Ledger file not found: {file_path}")

    suffix = path.suffix.lower()
    if suffix == ".json":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("transactions", [])
        if not isinstance(data, list):
            raise ValueError(f"Expected a list of transactions in {file_path}")
        return data

    if suffix in (".xlsx", ".xls"):
        df = pd.read_excel(path)
        if df.empty:
            return []
        if "timestamp" in df.columns:
            df["timestamp"] = df["timestamp"].astype(str)
        return [_clean_record(record) for record in df.to_dict("records")]

    raise ValueError(f"Unsupported ledger file type: {path.suffix}")


def load_price_file(file_path: str) -> dict:
    """Read a JSON price table (see price_table_from_dict)."""
    with open(file_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping of symbols to prices in {file_path}")
    return price_table_from_dict(data)


def _format_gain(gain_pct: Decimal) -> str:
    if gain_pct >= 0:
        return f"[green]+{gain_pct:.2f}%[/green]"
    return f"[red]{gain_pct:.2f}%[/red]"


def run(args, console: Console | None = None):
    """Display holdings and totals for a ledger file.

    Args:
        args: Parsed argparse namespace with filename, prices, fx, live and
            currency attributes.
        console: Console to print to. Defaults to a new rich Console.

    Returns:
        int: Exit code (0 for success, 1 for errors).
    """
    console = console or Console()
    settings = getattr(args, "settings", None) or load_settings()

    # Parse currency
    raw_currency = args.currency or settings.report_currency.value
    try:
        report_currency = Currency(raw_currency.upper())
    except ValueError:
        console.print(f"[red]Error: Unknown currency '{raw_currency}'[/red]")
        return 1

    try:
        records = load_ledger_records(args.filename)
        transactions = transactions_from_records(records, origin=args.filename)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    fx_rate = settings.fx_rate
    if args.fx is not None:
        try:
            fx_rate = Decimal(args.fx)
        except InvalidOperation:
            console.print(f"[red]Error: Invalid exchange rate '{args.fx}'[/red]")
            return 1

    prices = {}
    if args.prices:
        try:
            prices = load_price_file(args.prices)
        except (OSError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")
            return 1

    if args.live:
        live_rate = YFinanceExchangeRateManager().get_usd_idr_rate()
        if live_rate is not None:
            fx_rate = live_rate
        symbols = provider_symbols(transactions, settings.idx_suffix)
        live_prices = YFinancePricingDataManager().get_price_table(symbols.keys(), symbols)
        prices = {**prices, **live_prices}

    store = PortfolioStore.from_settings(settings)
    try:
        if fx_rate is not None:
            store.record_fx_rate(fx_rate)
        if prices:
            store.record_prices(prices)
        store.initialize(transactions)
    except PortfolioError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    snapshot = store.snapshot()
    summary = store.summary(report_currency)
    code = report_currency.value

    holdings_table = Table(title=f"Holdings ({len(snapshot.transactions)} transactions replayed)")
    holdings_table.add_column("Class", style="blue", justify="left")
    holdings_table.add_column("Asset", style="cyan", justify="left")
    holdings_table.add_column("Quantity", style="magenta", justify="right")
    holdings_table.add_column("Unit Price\n(Average → Market)", justify="right")
    holdings_table.add_column(f"Cost ({code})", style="yellow", justify="right")
    holdings_table.add_column(f"Value ({code})", style="green", justify="right")
    holdings_table.add_column("Gain/Loss %", justify="right")

    for asset_class in AssetClass:
        for key, position in sorted(snapshot.assets[asset_class].items()):
            if position.lots is not None:
                quantity_str = f"{position.display_quantity:,.0f} ({position.lots} lots)"
            else:
                quantity_str = f"{position.quantity:,.8f}".rstrip("0").rstrip(".")

            native = position.native_currency.value
            unit_price_str = (
                f"[yellow]{position.average_price:,.2f}[/yellow] → "
                f"[green]{position.current_price:,.2f}[/green] {native}"
            )
            if position.manual_price is not None:
                unit_price_str += " (manual)"

            cost = convert_amount(position.cost_basis_native, position.native_currency, report_currency, snapshot.fx_rate)
            value = convert_amount(position.primary_valuation, position.native_currency, report_currency, snapshot.fx_rate)

            holdings_table.add_row(
                asset_class.value,
                key,
                quantity_str,
                unit_price_str,
                f"{cost:,.2f}",
                f"{value:,.2f}",
                _format_gain(position.gain_percent),
            )

    console.print(holdings_table)

    if snapshot.fx_rate is None:
        console.print("[yellow]No USD/IDR rate available; foreign holdings are excluded from totals.[/yellow]")

    console.print(
        Panel(
            f"[bold green]Total Value: {summary.total_value:,.2f} {code}[/bold green]\n"
            f"Total Cost: {summary.total_cost:,.2f} {code}\n"
            f"Unrealized Gain: {summary.total_gain:,.2f} {code} ({_format_gain(summary.total_gain_percent)})\n"
            f"Open Positions: {summary.asset_count}",
            title="Summary",
        )
    )

    return 0
