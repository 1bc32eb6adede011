# utils.py - Utility Functions for the Order Service
"""
Helper functions for logging, environment validation, identifiers,
money and date arithmetic.
"""

import calendar
import logging
import logging.handlers
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CRITICAL_ENV_VARS = ("MONGO_URI", "RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET")
QUIET_LOGGERS = ("httpx", "httpcore", "pymongo", "asyncio")


def setup_logging(log_level: str = "INFO", logs_dir: Union[str, Path] = "logs") -> None:
    """Console plus a rotating `orders.log`; LOG_LEVEL in the environment wins over the argument."""
    level_name = os.getenv("LOG_LEVEL", log_level).upper()
    logs_path = Path(logs_dir)
    logs_path.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, "%Y-%m-%d %H:%M:%S")
    file_handler = logging.handlers.RotatingFileHandler(
        logs_path / "orders.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    handlers = [logging.StreamHandler(), file_handler]
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), handlers=handlers, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured with level: {level_name}")


def generate_id(prefix: str) -> str:
    """Generate a sortable unique id such as `ord-20250101120000-1A2B3C4D5E6F`."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_suffix = uuid.uuid4().hex[:12].upper()
    return f"{prefix}-{timestamp}-{unique_suffix}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse ISO datetime string safely, handling Z suffix and timezone-naive inputs.
    Returns timezone-aware datetime in UTC, or None if invalid.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid datetime format: {value} - {e}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month (Jan 31 + 1 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def to_minor_units(amount: Union[int, float, str, Decimal]) -> int:
    """Convert a two-decimal currency amount into minor units (e.g. rupees -> paise)."""
    try:
        value = Decimal(str(amount))
    except Exception as e:
        raise ValueError(f"Invalid amount: {amount}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_environment() -> List[str]:
    """Return the critical variables that are unset or blank, logging them at CRITICAL."""
    missing = [var for var in CRITICAL_ENV_VARS if not (os.getenv(var) or "").strip()]
    if missing:
        logger.critical(f"Missing critical environment variables: {', '.join(missing)}")
    return missing


def strip_mongo_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Convert a document's ObjectId `_id` to a string for serialization."""
    if doc and "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc
