"""Structured logging for the poller and its collaborators."""

import json
import logging
import sys
from datetime import datetime, timezone

from presence_bot.config import LOG_FORMAT, LOG_LEVEL
from presence_bot.models import CycleStats

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

_COLORS = {
    "DEBUG": "\033[36m",     # cyan
    "INFO": "\033[32m",      # green
    "WARNING": "\033[33m",   # yellow
    "ERROR": "\033[31m",     # red
    "CRITICAL": "\033[1;31m",  # bold red
    "RESET": "\033[0m",
}


class _PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        color = _COLORS.get(record.levelname, "")
        reset = _COLORS["RESET"]
        line = f"{color}[{ts}] [{record.levelname}]{reset} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra_data"):
            entry.update(record.extra_data)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(fmt: str = LOG_FORMAT, level: str = LOG_LEVEL) -> logging.Logger:
    """Configure the "presence_bot" logger once; later calls only adjust the level."""
    logger = logging.getLogger("presence_bot")
    logger.setLevel(getattr(logging, level, logging.DEBUG))
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_PrettyFormatter() if fmt == "pretty" else _JSONFormatter())
    logger.addHandler(handler)
    return logger


logger = setup_logging()

# ---------------------------------------------------------------------------
# Structured transition logging
# ---------------------------------------------------------------------------

def log_transition(
    entity: str,
    old_status: str,
    new_status: str,
    subscribers: int,
    detail: str = "",
) -> None:
    parts = [
        f"\n{'='*60}",
        f"  Entity      : {entity}",
        f"  Transition  : {old_status} → {new_status}",
        f"  Subscribers : {subscribers}",
    ]
    if detail:
        parts.append(f"  Detail      : {detail}")
    parts.append(f"{'='*60}")
    logger.info(
        "\n".join(parts),
        extra={
            "extra_data": {
                "entity": entity,
                "old_status": old_status,
                "new_status": new_status,
                "subscribers": subscribers,
            }
        },
    )


def log_cycle(stats: CycleStats) -> None:
    """One summary line per poll cycle; the JSON formatter gets every counter."""
    level = logging.INFO if stats.outcome == "completed" else logging.ERROR
    logger.log(
        level,
        f"[poller] Cycle {stats.outcome}: {stats.checked}/{stats.queued} checked, "
        f"{stats.skipped_unknown} unknown, {stats.transitions} transition(s), "
        f"{stats.notifications_sent} sent, {stats.errors} error(s) in {stats.duration:.1f}s",
        extra={"extra_data": {"cycle": stats.model_dump()}},
    )
