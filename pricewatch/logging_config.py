"""Log output for the reconciliation service.

Console lines are meant for people watching a run; the JSON lines files are
meant for log shipping, one object per record.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from pythonjsonlogger import jsonlogger

from pricewatch.config import settings

CONSOLE_HANDLER = "pricewatch.console"
RECORDS_HANDLER = "pricewatch.records"
FAILURES_HANDLER = "pricewatch.failures"

# Libraries that log every request or scheduler tick
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.WARNING,
    "apscheduler.executors": logging.WARNING,
}


class RunRecordFormatter(jsonlogger.JsonFormatter):
    """Tags each record with the service name and the code location.

    Fields passed through ``extra`` (``run_id``, ``competitor``) are kept by
    the base formatter.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_record["timestamp"] = created.isoformat().replace("+00:00", "Z")
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = settings.log_service_name
        log_record["where"] = f"{record.module}.{record.funcName}:{record.lineno}"


def _named(handler: logging.Handler, name: str, level: int, formatter: logging.Formatter):
    handler.set_name(name)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str | Path | None = None) -> logging.Logger:
    """
    Install the console and JSON handlers on the root logger.

    Calling it again replaces the handlers it installed before and leaves any
    other handler alone.

    Args:
        log_dir: Directory for the JSON files (defaults to settings.log_dir)

    Returns:
        The root logger
    """
    directory = Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    service = settings.log_service_name

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        if handler.get_name() in (CONSOLE_HANDLER, RECORDS_HANDLER, FAILURES_HANDLER):
            root.removeHandler(handler)
            handler.close()

    records_format = RunRecordFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root.addHandler(_named(
        logging.StreamHandler(sys.stdout),
        CONSOLE_HANDLER,
        logging.DEBUG,
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"),
    ))
    root.addHandler(_named(
        logging.FileHandler(directory / f"{service}.jsonl", encoding="utf-8"),
        RECORDS_HANDLER,
        logging.DEBUG,
        records_format,
    ))
    root.addHandler(_named(
        logging.FileHandler(directory / f"{service}-errors.jsonl", encoding="utf-8"),
        FAILURES_HANDLER,
        logging.ERROR,
        records_format,
    ))

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    return root
