"""Runtime settings read from the environment (and a local .env file)."""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

from .builder import DEFAULT_IDX_SUFFIX, DEFAULT_LOT_SIZE
from .currency import Currency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Engine and CLI settings.

    Attributes:
        lot_size: Shares per IDX lot.
        idx_suffix: Suffix of IDX tickers in price tables.
        report_currency: Default currency for summaries.
        fx_rate: Fixed USD->IDR rate to use when no live rate is fetched.
        log_level: Root log level name.
        log_json: Emit single-line JSON logs instead of rich console output.
    """

    lot_size: int = DEFAULT_LOT_SIZE
    idx_suffix: str = DEFAULT_IDX_SUFFIX
    report_currency: Currency = Currency.IDR
    fx_rate: Decimal | None = None
    log_level: str = "INFO"
    log_json: bool = False


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return default
    return value


def _env_decimal(name: str) -> Decimal | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return None
    if not value.is_finite() or value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return None
    return value


def _env_currency(name: str, default: Currency) -> Currency:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return Currency(raw.strip().upper())
    except ValueError:
        logger.warning("Ignoring %s=%r: unsupported currency", name, raw)
        return default


def load_settings(dotenv: bool = True) -> Settings:
    """Build Settings from environment variables.

    Malformed values are logged and replaced by their defaults.

    Args:
        dotenv: Load a .env file into the environment first.

    Returns:
        The Settings.
    """
    if dotenv:
        load_dotenv()

    return Settings(
        lot_size=_env_int("PORTSYNC_LOT_SIZE", DEFAULT_LOT_SIZE),
        idx_suffix=os.getenv("PORTSYNC_IDX_SUFFIX") or DEFAULT_IDX_SUFFIX,
        report_currency=_env_currency("PORTSYNC_REPORT_CURRENCY", Currency.IDR),
        fx_rate=_env_decimal("PORTSYNC_FX_RATE"),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        log_json=os.getenv("LOG_JSON", "").lower() in ("1", "true", "yes"),
    )
