"""
Target database connection manager.

Owns at most one live SQLAlchemy connection. Concurrent ``acquire()`` calls
made while a connect attempt is in flight wait on that same attempt
(single-flight) instead of opening a second connection.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from pymysql.constants import CLIENT
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Connection, CursorResult, Engine, make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlalchemy.sql import Executable

from ..errors import StatementError, SyncConnectionError

logger = logging.getLogger(__name__)

DEFAULT_TARGET_URL = "mysql+pymysql://root@localhost/test"


def normalize_target_url(url: Optional[str]) -> str:
    """
    Accept ``mysql://host/db?user=root&password=x`` style URLs and turn them
    into SQLAlchemy URLs using the PyMySQL driver. Credentials are escaped,
    so passwords may contain ``@``, ``:`` or ``/``.

    Example:
        >>> normalize_target_url("mysql://localhost/test?user=root")
        'mysql+pymysql://root@localhost/test'
    """
    if not url:
        return DEFAULT_TARGET_URL
    parts = urlsplit(url)
    if parts.scheme != "mysql":
        return url

    query = dict(parse_qsl(parts.query))
    user = query.pop("user", None) or _unquote(parts.username)
    password = query.pop("password", None) or _unquote(parts.password)
    target = URL.create(
        drivername="mysql+pymysql",
        username=user or None,
        password=password,
        host=parts.hostname or "localhost",
        port=parts.port,
        database=parts.path.lstrip("/") or None,
        query=query,
    )
    return target.render_as_string(hide_password=False)


def _unquote(value: Optional[str]) -> Optional[str]:
    return unquote(value) if value else value


def create_target_engine(url: str) -> Engine:
    """
    Engine without pooling: the manager holds the only connection itself.
    MySQL connections enable multi-statement execution.
    """
    sa_url = make_url(normalize_target_url(url))
    connect_args = {}
    if sa_url.get_backend_name() == "mysql" and sa_url.get_driver_name() == "pymysql":
        # FOUND_ROWS keeps UPDATE rowcounts meaningful when values are unchanged
        connect_args["client_flag"] = CLIENT.MULTI_STATEMENTS | CLIENT.FOUND_ROWS
    return create_engine(sa_url, poolclass=NullPool, connect_args=connect_args)


class ConnectionManager:
    """
    Single-connection manager for the target store.

    Guarantees:
    - at most one physical connection
    - at most one connect attempt in flight; other callers wait for it
    - a handle is probed before reuse and replaced when dead
    - no retries: a failed connect is reported to every waiter and the
      caller decides what to do

    Thread Safety: acquire() is thread-safe. Statement execution on the
    shared handle is meant for a single worker.
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        """
        Args:
            url: Target database URL (ignored when ``engine`` is given)
            engine: Pre-built engine, mainly for tests and embedding
        """
        self.engine = engine if engine is not None else create_target_engine(url)
        self._handle: Optional[Connection] = None
        self._pending: Optional[Future] = None
        self._lock = threading.Lock()
        self._counter = 0

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def acquire(self) -> Connection:
        """
        Return a usable connection, connecting if needed.

        Raises:
            SyncConnectionError: If the connect attempt fails
        """
        handle = self._handle
        if handle is not None:
            if self.is_alive(handle):
                return handle
            self._discard(handle)

        with self._lock:
            if self._handle is not None and self._handle is not handle:
                # another caller finished connecting meanwhile
                return self._handle
            pending = self._pending
            owner = pending is None
            if owner:
                pending = self._pending = Future()
            self._counter += 1
            counter = self._counter

        if not owner:
            logger.info(f"Waiting for connection... {counter}")
            return pending.result()

        logger.info(f"Connect to target database... {counter}")
        try:
            handle = self.engine.connect()
        except Exception as e:
            error = SyncConnectionError(f"Target connect failed: {e}")
            error.__cause__ = e
            logger.error(f"Target connect error: {counter} {e}")
            with self._lock:
                self._pending = None
            pending.set_exception(error)
            raise error

        logger.info(f"Target connect succeeded: {counter}")
        with self._lock:
            self._handle = handle
            self._pending = None
        pending.set_result(handle)
        return handle

    def is_alive(self, handle: Optional[Connection]) -> bool:
        """True if the handle's transport still answers a ping."""
        if handle is None or handle.closed or handle.invalidated:
            return False
        try:
            return bool(self.engine.dialect.do_ping(handle.connection.dbapi_connection))
        except Exception as e:
            logger.warning(f"Target connection liveness probe failed: {e}")
            return False

    def execute(self, statement: Executable, params: Optional[Mapping[str, Any]] = None) -> CursorResult:
        """
        Execute one statement on the managed connection and commit it.

        Returns:
            The statement result (use ``rowcount`` for DML)

        Raises:
            SyncConnectionError: The connection dropped (the handle is discarded)
            StatementError: The statement was rejected
        """
        return self._run(statement, params, scalar=False)

    def scalar(self, statement: Executable, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Execute a SELECT returning at most one value; the value is read before commit."""
        return self._run(statement, params, scalar=True)

    def _run(self, statement: Executable, params: Optional[Mapping[str, Any]], scalar: bool) -> Any:
        handle = self.acquire()
        try:
            result = handle.execute(statement, params) if params else handle.execute(statement)
            value = result.scalar_one_or_none() if scalar else result
            handle.commit()
            return value
        except DBAPIError as e:
            if e.connection_invalidated:
                self._discard(handle)
                raise SyncConnectionError(f"Target connection lost: {e.orig}") from e
            self._rollback(handle)
            raise StatementError(f"Statement failed: {e.orig}", orig=e) from e
        except SQLAlchemyError as e:
            self._rollback(handle)
            raise StatementError(f"Statement failed: {e}", orig=e) from e

    def close(self) -> None:
        """Close the connection and dispose of the engine."""
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            self._close_handle(handle)
        self.engine.dispose()
        logger.info("Target connection closed")

    def _discard(self, handle: Connection) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None
        self._close_handle(handle)

    def _rollback(self, handle: Connection) -> None:
        if handle.closed or handle.invalidated:
            return
        try:
            handle.rollback()
        except SQLAlchemyError as e:
            logger.warning(f"Rollback failed: {e}")

    @staticmethod
    def _close_handle(handle: Connection) -> None:
        try:
            handle.close()
        except SQLAlchemyError as e:
            logger.debug(f"Error closing target connection: {e}")
