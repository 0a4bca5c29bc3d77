"""
Structured Logger - JSON log lines for the retrieval core
Every line carries an event name plus keyword fields; the request id of the
current asyncio task is attached automatically
"""
import logging
import json
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

LOGGER_NAME = "mf_retrieval"
LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class StructuredLogger:
    """JSON event logger bound to the 'mf_retrieval' stdlib logger"""

    def __init__(self, log_level: str = "INFO", log_file: Optional[str] = None):
        """
        Initialize structured logger

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Optional log file path, written in addition to stdout
        """
        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        self.logger.handlers = []

        formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
        handlers = [logging.StreamHandler(sys.stdout)]
        if log_file:
            handlers.append(logging.FileHandler(log_file))
        for handler in handlers:
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    # ------------------------------------------------------------------
    # Request ids
    # ------------------------------------------------------------------

    def get_request_id(self) -> Optional[str]:
        return _request_id.get()

    @contextmanager
    def request_context(self, request_id: Optional[str] = None) -> Iterator[str]:
        """Attach a request id to every line logged inside the block"""
        request_id = request_id or generate_request_id()
        token = _request_id.set(request_id)
        try:
            yield request_id
        finally:
            _request_id.reset(token)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def _emit(self, level: int, event: str, fields: Dict[str, Any]):
        if not self.logger.isEnabledFor(level):
            return
        payload = {
            'timestamp': datetime.now().isoformat(),
            'level': logging.getLevelName(level),
            'message': event,
            **fields
        }
        request_id = _request_id.get()
        if request_id:
            payload['request_id'] = request_id
        self.logger.log(level, json.dumps(payload, default=str))

    def debug(self, event: str, **fields):
        self._emit(logging.DEBUG, event, fields)

    def info(self, event: str, **fields):
        self._emit(logging.INFO, event, fields)

    def warning(self, event: str, **fields):
        self._emit(logging.WARNING, event, fields)

    def error(self, event: str, **fields):
        self._emit(logging.ERROR, event, fields)

    def critical(self, event: str, **fields):
        self._emit(logging.CRITICAL, event, fields)

    # ------------------------------------------------------------------
    # Retrieval events
    # ------------------------------------------------------------------

    def log_strategy(self, method: str, hit_count: int):
        """One cascade step finished (debug level)"""
        self.debug("strategy_tried", method=method, hits=hit_count)

    def log_retrieval(self, query: str, method: str, result_count: int,
                      elapsed: float, **fields):
        """One retrieve() call finished"""
        self.info("retrieval_completed",
            query=query[:100],  # Truncate long queries
            method=method,
            result_count=result_count,
            elapsed_seconds=round(elapsed, 4),
            **fields
        )

    def log_degraded(self, component: str, reason: str, **fields):
        """A component is off and the retriever runs with reduced capability"""
        self.warning(f"{component}_disabled", reason=reason, **fields)

    def log_error(self, error: Exception, context: Dict[str, Any]):
        self.error("error_occurred",
            error_type=type(error).__name__,
            error_message=str(error),
            **context
        )


_logger_instance: Optional[StructuredLogger] = None

def get_logger() -> StructuredLogger:
    """Shared logger (created with defaults on first use)"""
    global _logger_instance
    if _logger_instance is None:
        _logger_instance = StructuredLogger()
    return _logger_instance

def configure_logger(log_level: str = "INFO", log_file: Optional[str] = None) -> StructuredLogger:
    """Replace the shared logger with one using the given level/file"""
    global _logger_instance
    _logger_instance = StructuredLogger(log_level=log_level, log_file=log_file)
    return _logger_instance

def generate_request_id() -> str:
    return str(uuid.uuid4())
