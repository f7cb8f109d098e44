"""
Logging utility module for oplog-sync.

Provides JSON-structured logging with a tail-session id propagated through
a context variable, so every record emitted during one tailing session can
be correlated.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variable for the current tail session id
_session_id: ContextVar[Optional[str]] = ContextVar('session_id', default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime', 'taskName'}


def get_session_id() -> Optional[str]:
    """Get the current tail session id from context."""
    return _session_id.get()


def set_session_id(session_id: Optional[str] = None) -> str:
    """Set the tail session id in context.

    Args:
        session_id: Optional id. If None, generates a short random id.

    Returns:
        The session id that was set
    """
    if session_id is None:
        session_id = uuid.uuid4().hex[:12]
    _session_id.set(session_id)
    return session_id


def clear_session_id():
    """Clear the session id from context."""
    _session_id.set(None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        session_id = get_session_id()
        if session_id:
            log_data['session_id'] = session_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Fields passed via logger.info(..., extra={...})
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class SessionFilter(logging.Filter):
    """Adds ``session_id`` to records for plain-text formats."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = get_session_id() or '-'
        return True


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure the root logger once for the command-line process.

    Args:
        level: Logging level name
        json_format: JSON lines if True, otherwise a plain text format
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(SessionFilter())
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s [%(session_id)s] %(name)s: %(message)s'
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())


class SessionContext:
    """Context manager scoping a tail session id."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        self._previous_id = get_session_id()
        return set_session_id(self.session_id)

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous_id is not None:
            set_session_id(self._previous_id)
        else:
            clear_session_id()
