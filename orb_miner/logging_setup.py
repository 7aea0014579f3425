"""Logging: rich console output plus rotating files under the log dir."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_BYTES = 5 * 1024 * 1024


def configure_logging(config, console=None) -> None:
    """
    Install handlers on the root logger.

    combined.log gets everything, error.log errors only, and
    transactions.log just the confirmed-write lines from the
    orb_miner.transactions logger.
    """
    log_dir = Path(config.storage.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(FILE_FORMAT)

    combined = RotatingFileHandler(log_dir / "combined.log", maxBytes=MAX_BYTES,
                                   backupCount=5, encoding="utf-8")
    combined.setFormatter(formatter)

    errors = RotatingFileHandler(log_dir / "error.log", maxBytes=MAX_BYTES,
                                 backupCount=5, encoding="utf-8")
    errors.setLevel(logging.ERROR)
    errors.setFormatter(formatter)

    console_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    console_handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.storage.log_level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(combined)
    root.addHandler(errors)
    root.addHandler(console_handler)

    transactions = RotatingFileHandler(log_dir / "transactions.log", maxBytes=MAX_BYTES,
                                       backupCount=10, encoding="utf-8")
    transactions.setFormatter(formatter)
    tx_logger = logging.getLogger("orb_miner.transactions")
    tx_logger.handlers.clear()
    tx_logger.addHandler(transactions)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
