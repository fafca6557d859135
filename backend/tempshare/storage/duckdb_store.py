"""DuckDB-backed key-value store.

Gives the metadata and token stores a persistent tier that survives a
process restart. Each store owns one table in a shared database file:

    <table>:
        - key:        VARCHAR primary key
        - value:      VARCHAR
        - expires_at: DOUBLE (Unix seconds)

Thread Safety:
    A DuckDB connection is NOT thread-safe. The stores are only used from
    the event loop, so a single connection is shared by every table in the
    same database file.
"""
import logging
import re
import time
from typing import Callable, Optional

import duckdb

from .base import KeyValueStore

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DuckDBKeyValueStore(KeyValueStore):
    """Key-value store persisted in one DuckDB table.

    Attributes:
        table: Name of the backing table.
    """

    def __init__(
        self,
        table: str,
        db_path: Optional[str] = None,
        connection: Optional[duckdb.DuckDBPyConnection] = None,
        clock: Callable[[], float] = time.time,
        grace_seconds: float = 0.0,
    ) -> None:
        """Initialize the store.

        Args:
            table: Table name, must be a plain SQL identifier.
            db_path: Path to the DuckDB file. Ignored when *connection* is given.
            connection: An existing connection to share with other stores.
            clock: Source of the current Unix time.
            grace_seconds: How long rows outlive their expiration.
        """
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.table = table
        self._db_path = db_path or ":memory:"
        self._connection = connection
        self._owns_connection = connection is None
        self._clock = clock
        self._grace = grace_seconds
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                key VARCHAR PRIMARY KEY,
                value VARCHAR NOT NULL,
                expires_at DOUBLE NOT NULL
            )
        """)
        logger.info("[DuckDBKeyValueStore] table=%s db=%s", self.table, self._db_path)

    async def get(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            f"SELECT value, expires_at FROM {self.table} WHERE key = ?",
            [key],
        ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if self._clock() >= expires_at + self._grace:
            conn.execute(f"DELETE FROM {self.table} WHERE key = ?", [key])
            return None
        return value

    async def put(self, key: str, value: str, expires_at: float) -> None:
        conn = self._get_connection()
        conn.execute(
            f"INSERT OR REPLACE INTO {self.table} (key, value, expires_at) VALUES (?, ?, ?)",
            [key, value, float(expires_at)],
        )

    async def delete(self, key: str) -> None:
        conn = self._get_connection()
        conn.execute(f"DELETE FROM {self.table} WHERE key = ?", [key])

    async def sweep(self) -> int:
        conn = self._get_connection()
        cutoff = self._clock() - self._grace
        count = conn.execute(
            f"SELECT COUNT(*) FROM {self.table} WHERE expires_at <= ?",
            [cutoff],
        ).fetchone()[0]
        if count:
            conn.execute(f"DELETE FROM {self.table} WHERE expires_at <= ?", [cutoff])
            logger.info("[%s] sweep removed %d expired rows", self.table, count)
        return count

    def close(self) -> None:
        """Close the connection if this store opened it."""
        if self._owns_connection and self._connection is not None:
            self._connection.close()
            self._connection = None
