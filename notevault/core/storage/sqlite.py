from __future__ import annotations

import contextlib
import os
import sqlite3
import threading
from typing import Any, Iterator, List

from notevault.core.errors import StorageFailure


def append_only_triggers(table: str) -> List[str]:
    """DDL that makes `table` reject UPDATE and DELETE at the storage layer."""
    return [
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_update BEFORE UPDATE ON {table}
        BEGIN
          SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_delete BEFORE DELETE ON {table}
        BEGIN
          SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
    ]


class SqliteStore:
    """
    Base for the engine's SQLite-backed stores.

    NOTES:
    - one short-lived connection per call, guarded by a store-level lock
    - sqlite3.Error never escapes: it is re-raised as StorageFailure
    """

    def __init__(self, *, db_path: str, journal_mode: str = "WAL", logger: Any = None):
        self.db_path = str(db_path)
        self.journal_mode = str(journal_mode or "WAL").upper()
        self.logger = logger
        self._lock = threading.RLock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        with self._session() as conn:
            self._init_db(conn)

    # ---- sqlite helpers ----
    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA journal_mode={self.journal_mode};")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """
        Lock + connection + commit/rollback in one place.
        """
        with self._lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StorageFailure(f"Could not open database: {e}", db_path=self.db_path) from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageFailure(f"Database operation failed: {e}", table=self.__class__.__name__) from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_db(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError
