# /tripmodel/src/tripmodel/utils/logging.py

"""
Workflow Logging

Modules log through ``logging.getLogger(__name__)`` with event-style
messages (``stage.started``, ``prediction.mismatch``) and their values in
``extra``. This module renders those records and brackets workflow stages:

- StructuredFormatter: one JSON object per record, extras under ``extra``
- TextFormatter: readable line with extras appended as ``key=value``
- WorkflowLogger: logger carrying run context into every record
- stage_logging: started/failed/completed events with durations
- setup_workflow_logging: handlers on the ``tripmodel`` package logger
"""

import json
import logging
import logging.handlers
import sys
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


PACKAGE_LOGGER = "tripmodel"

# attributes every LogRecord has; anything else came in through ``extra``
_STANDARD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime"
}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in vars(record).items()
        if key not in _STANDARD_ATTRIBUTES and not key.startswith("_")
    }


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Render records as single-line JSON."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        if self.include_extra:
            extra = {key: _json_safe(value) for key, value in _extra_fields(record).items()}
            if extra:
                entry["extra"] = extra

        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """``time - logger - LEVEL - message [key=value, ...]``"""

    def __init__(self, include_extra: bool = True):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = _extra_fields(record) if self.include_extra else {}
        if extra:
            line += " [" + ", ".join(f"{key}={value}" for key, value in extra.items()) + "]"
        return line


class WorkflowLogger:
    """
    Logger that merges a run context (environment, current stage) into the
    ``extra`` of every record it emits.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self._context: Dict[str, Any] = {}

    def set_context(self, **kwargs) -> None:
        self._context.update(kwargs)

    def clear_context(self) -> None:
        self._context.clear()

    @contextmanager
    def context(self, **kwargs):
        """Context added for the duration of the block, then restored."""
        saved = dict(self._context)
        self._context.update(kwargs)
        try:
            yield self
        finally:
            self._context = saved

    def _log(self, level: int, message: str, extra: Optional[Dict[str, Any]], exc_info: bool = False) -> None:
        fields = {**self._context, **(extra or {})}
        self.logger.log(level, message, extra=fields or None, exc_info=exc_info)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.INFO, message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None, exc_info: bool = True) -> None:
        self._log(logging.ERROR, message, extra, exc_info=exc_info)


def setup_workflow_logging(level: str = "INFO",
                           log_format: str = "text",
                           log_dir: str = "logs/workflow",
                           enable_console: bool = True,
                           enable_file: bool = False) -> Dict[str, Any]:
    """
    Attach handlers to the ``tripmodel`` logger; module loggers inherit them.

    Calling it again replaces the handlers of the previous call. File output
    is always JSON and rotates at 100 MB, keeping ten files.

    Returns:
        The applied settings
    """
    config = {
        "log_level": level.upper(),
        "log_format": log_format.lower(),
        "log_dir": log_dir,
        "enable_console": enable_console,
        "enable_file": enable_file,
    }

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(getattr(logging, config["log_level"]))

    if enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(StructuredFormatter() if config["log_format"] == "json" else TextFormatter())
        package_logger.addHandler(console)

    if enable_file:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            directory / "workflow.log", maxBytes=100 * 1024 * 1024, backupCount=10
        )
        file_handler.setFormatter(StructuredFormatter())
        package_logger.addHandler(file_handler)

    WorkflowLogger(PACKAGE_LOGGER).info("workflow_logging.initialized", extra={
        "log_level": config["log_level"],
        "log_format": config["log_format"]
    })

    return config


@contextmanager
def stage_logging(logger: WorkflowLogger, stage_name: str, **context):
    """Log start, failure and completion of a stage with its duration."""
    with logger.context(stage=stage_name, **context):
        logger.info("stage.started", extra={"stage_name": stage_name})

        start_time = time.time()
        try:
            yield logger
        except Exception as e:
            logger.error("stage.failed", extra={
                "stage_name": stage_name,
                "error": str(e),
                "duration": time.time() - start_time
            })
            raise
        finally:
            logger.info("stage.completed", extra={
                "stage_name": stage_name,
                "duration": time.time() - start_time
            })
