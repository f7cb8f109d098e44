from .logging import JSONFormatter, SessionContext, configure_logging, get_session_id, set_session_id

__all__ = [
    "JSONFormatter",
    "SessionContext",
    "configure_logging",
    "get_session_id",
    "set_session_id",
]
