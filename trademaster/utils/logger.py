"""
Logging configuration and utilities
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Dict, Iterable, List, Optional

# Third-party loggers that flood the console at DEBUG
QUIET_LOGGERS = ("aiohttp", "asyncio")


class ColoredFormatter(logging.Formatter):
    """Console formatter: time, level, short source module, message"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        if self.use_color:
            color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
            reset = self.COLORS['RESET']
        else:
            color = reset = ""

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        # "trademaster.core.quote_stream" -> "core.quote_stream"
        source = ".".join(record.name.split(".")[-2:])

        formatted = f"{color}[{timestamp}] {record.levelname:8}{reset} | {source:28} | {record.getMessage()}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class TradeLogger:
    """
    Journal of trade results, connection changes and performance snapshots

    One JSON object per line, so the files can be tailed or loaded back
    with ``read``.
    """

    FILES = {
        "trade": "trades.log",
        "connection": "connection.log",
        "performance": "performance.log",
    }

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.trade_file = self.log_dir / self.FILES["trade"]
        self.connection_file = self.log_dir / self.FILES["connection"]
        self.performance_file = self.log_dir / self.FILES["performance"]

    def _append(self, path: Path, event: str, data: Dict) -> None:
        entry = {"time": datetime.now(timezone.utc).isoformat(), "event": event, **data}
        with open(path, 'a') as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log_trade(self, trade_data: Dict) -> None:
        self._append(self.trade_file, "trade", trade_data)

    def log_connection(self, status_data: Dict) -> None:
        self._append(self.connection_file, "connection", status_data)

    def log_performance(self, metrics: Dict) -> None:
        self._append(self.performance_file, "performance", metrics)

    def read(self, kind: str, limit: Optional[int] = None) -> List[Dict]:
        """
        Load journal entries back

        Args:
            kind: "trade", "connection" or "performance"
            limit: Only the last ``limit`` entries

        Lines that are not valid JSON are skipped.
        """
        path = self.log_dir / self.FILES[kind]
        if not path.exists():
            return []

        entries = []
        with open(path) as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries[-limit:] if limit else entries


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 20,
    backup_count: int = 5,
    quiet: Iterable[str] = QUIET_LOGGERS
) -> logging.Logger:
    """
    Setup logging configuration

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for file logging
        max_size_mb: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        quiet: Logger names held at WARNING regardless of ``level``

    Returns:
        Root logger instance
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
        ))
        root_logger.addHandler(file_handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a named logger"""
    return logging.getLogger(name)
