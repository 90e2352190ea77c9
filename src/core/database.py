"""
Generic PostgreSQL connection management.
Reused by the diagnostics store and the knowledge store.
"""

import threading
from contextlib import contextmanager
from typing import Any

import psycopg2
import structlog

logger = structlog.get_logger(__name__)


class PostgresConnection:
    """Base class for PostgreSQL connection management

    A single connection is shared by the threads of a run, so cursor usage is
    serialized with a lock. Every ``get_cursor`` block is its own transaction.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        connect_timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self.connection = None
        self._lock = threading.RLock()
        self._connect()

    def _connect(self):
        """Establish connection to PostgreSQL"""
        try:
            self.connection = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                connect_timeout=self.connect_timeout,
            )
            logger.info(
                "PostgreSQL connection established",
                host=self.host,
                database=self.database,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise

    @contextmanager
    def get_cursor(self):
        """Context manager for database cursor with automatic commit/rollback"""
        with self._lock:
            cursor = self.connection.cursor()
            try:
                yield cursor
                self.connection.commit()
            except Exception as e:
                self.connection.rollback()
                logger.error("Database operation failed", error=str(e))
                raise
            finally:
                cursor.close()

    def execute_query(self, query: str, params: dict[str, Any] | None = None) -> bool:
        """Execute a single statement, returning False instead of raising"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params or {})
            return True
        except Exception as e:
            logger.error("Query execution failed", error=str(e), query=query)
            return False

    def fetch_all(self, query: str, params: dict[str, Any] | tuple | None = None) -> list[dict]:
        """Run a query and return every row as a column -> value dict"""
        with self.get_cursor() as cursor:
            cursor.execute(query, params or {})
            return self._rows(cursor, cursor.fetchall())

    def fetch_one(self, query: str, params: dict[str, Any] | tuple | None = None) -> dict | None:
        """Run a query and return the first row as a dict, or None"""
        with self.get_cursor() as cursor:
            cursor.execute(query, params or {})
            row = cursor.fetchone()
            if row is None:
                return None
            return self._rows(cursor, [row])[0]

    @staticmethod
    def _rows(cursor, rows) -> list[dict]:
        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, row, strict=False)) for row in rows]

    def check_health(self) -> bool:
        """Check if database connection is healthy"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self):
        """Close database connection"""
        if self.connection:
            self.connection.close()
            logger.info("PostgreSQL connection closed")
