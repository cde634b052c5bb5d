"""Logging setup: readable console output plus JSON log files for sync runs."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from nft_tracker.config import settings

# Context fields attached by get_logger(); copied into every JSON record
CONTEXT_FIELDS = ("job_type", "run_id")


class SyncJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that always emits level, logger, source and run context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        log_record.pop('context', None)  # console-only

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


class ContextFilter(logging.Filter):
    """Fills missing context fields so the console format never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = " ".join(
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        record.context = f" [{context}]" if context else ""
        return True


def setup_logging(base_dir: str | Path | None = None):
    """Configure the root logger.

    Console gets human-readable lines; ``logs/app.log`` gets every record as
    JSON and ``logs/error.log`` only errors (failed runs, exhausted retries).

    Args:
        base_dir: Directory that holds ``logs/``; defaults to the working directory
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.addFilter(ContextFilter())
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s%(context)s - %(message)s"
    ))
    root_logger.addHandler(console_handler)

    json_formatter = SyncJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger


class SyncLoggerAdapter(logging.LoggerAdapter):
    """Adds fixed context (job type, run id) to each record's ``extra``."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> SyncLoggerAdapter:
    """
    Get a logger that tags every record with the given context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. job_type='listings', run_id='ab12'

    Returns:
        SyncLoggerAdapter carrying the context
    """
    return SyncLoggerAdapter(logging.getLogger(name), context)
