from __future__ import annotations

import threading
from typing import Any, Optional

from loguru import logger
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine, RootTransaction
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..errors import StoreError
from .interfaces import SqlExecutor


def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class _TxState(threading.local):
    def __init__(self) -> None:
        self.conn: Optional[Connection] = None
        self.trans: Optional[RootTransaction] = None
        self.depth = 0


class SqlAlchemyExecutor(SqlExecutor):
    """Run parameterised `text()` statements on a SQLAlchemy engine.

    Statements issued outside `begin()`/`commit()` run in their own short
    transaction. Transactions are tracked per thread and nest by depth, so an
    inner `transaction()` joins the outer one.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._state = _TxState()
        self._known_tables: set[str] = set()
        # A single StaticPool connection must not be shared concurrently.
        self._serial = threading.RLock() if isinstance(engine.pool, StaticPool) else None

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAlchemyExecutor":
        return cls(make_engine(database_url))

    def begin(self) -> None:
        state = self._state
        if state.depth == 0:
            if self._serial is not None:
                self._serial.acquire()
            try:
                state.conn = self.engine.connect()
                state.trans = state.conn.begin()
            except SQLAlchemyError as exc:
                self._release()
                raise StoreError(f"Could not open transaction: {exc}") from exc
        state.depth += 1

    def commit(self) -> None:
        state = self._state
        if state.depth == 0:
            return
        state.depth -= 1
        if state.depth > 0:
            return
        try:
            if state.trans is not None:
                state.trans.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Commit failed: {exc}") from exc
        finally:
            self._close()

    def rollback(self) -> None:
        state = self._state
        if state.depth == 0:
            return
        try:
            if state.trans is not None and state.trans.is_active:
                state.trans.rollback()
        finally:
            state.depth = 0
            self._close()

    def _close(self) -> None:
        state = self._state
        if state.conn is not None:
            state.conn.close()
        state.conn = None
        state.trans = None
        self._release()

    def _release(self) -> None:
        if self._serial is not None:
            self._serial.release()

    @staticmethod
    def _execute_on(conn: Connection, sql: str, params: Optional[dict[str, Any]], fetch: bool) -> Any:
        try:
            result = conn.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result] if fetch else result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError(f"Statement failed: {exc}") from exc

    def _run(self, sql: str, params: Optional[dict[str, Any]], fetch: bool) -> Any:
        conn = self._state.conn
        if conn is not None:
            return self._execute_on(conn, sql, params, fetch)
        self.begin()
        try:
            value = self._execute_on(self._state.conn, sql, params, fetch)
        except BaseException:
            self.rollback()
            raise
        self.commit()
        return value

    def execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        return self._run(sql, params, fetch=False)

    def fetch_all(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        return self._run(sql, params, fetch=True)

    def has_table(self, name: str) -> bool:
        if name in self._known_tables:
            return True
        conn = self._state.conn
        try:
            if conn is not None:
                found = inspect(conn).has_table(name)
            else:
                self.begin()
                try:
                    found = inspect(self._state.conn).has_table(name)
                finally:
                    self.commit()
        except SQLAlchemyError as exc:
            logger.warning("Table lookup for {} failed: {}", name, exc)
            return False
        if found:
            self._known_tables.add(name)
        return found

    def forget_table(self, name: str) -> None:
        self._known_tables.discard(name)

    def dispose(self) -> None:
        self.engine.dispose()
