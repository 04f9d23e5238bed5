"""
DuckDB-backed key-value store for tickercache.

Provides the get/set/multi-get/delete/scan surface the ingestion pipeline
needs, with optional per-key expiry and a version counter per key for
compare-and-set writes.

Values are JSON-serializable Python objects; they are stored as JSON text.
Expired keys behave as absent on every read and are purged lazily.

Example:
    store = get_store()
    store.set("ticker-data:AAPL", {"2020": {"price": 74.3}})
    store.set("batch_job:abc", job_dict, ttl=86400)
    store.mget(["ticker-data:AAPL", "ticker-data:MSFT"])
"""

import json
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, List, Optional, Set, Tuple, Union

import duckdb
from loguru import logger

from tickercache.data.schema import KV_TABLE_SQL
from tickercache.exceptions import ConcurrentUpdateError, StoreUnavailableError

# Default data directory
DEFAULT_DATA_DIR = Path.home() / "tickercache-data"
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "tickercache.duckdb"


class ConnectionPool:
    """
    Thread-safe connection pool for DuckDB.

    A DuckDB connection must not be shared between threads, yet every
    fill_chunk worker thread reads and writes the key-value store. The pool
    gives each such thread its own connection and keeps at most max_size of
    them open, whatever the worker count. Released connections are reused by
    later key-value calls; a thread that finds the pool exhausted waits.
    """

    def __init__(self, db_path: Union[str, Path], max_size: int = 5):
        """
        Initialize connection pool.

        Args:
            db_path: Path to the DuckDB database file
            max_size: Maximum number of connections in the pool
        """
        self.db_path = str(db_path)
        self.max_size = max_size
        self._pool: List[duckdb.DuckDBPyConnection] = []
        self._in_use: Set[duckdb.DuckDBPyConnection] = set()
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        logger.debug(f"ConnectionPool initialized: {self.db_path}, max_size={self.max_size}")

    def _is_connection_valid(self, conn: duckdb.DuckDBPyConnection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except Exception as e:
            logger.debug(f"Connection validation failed: {e}")
            return False

    def acquire(self) -> duckdb.DuckDBPyConnection:
        """
        Acquire a connection, waiting while the pool is exhausted.

        Returns:
            A DuckDB connection
        """
        with self._condition:
            while len(self._pool) == 0 and len(self._in_use) >= self.max_size:
                logger.debug("Connection pool exhausted, waiting...")
                self._condition.wait()

            conn = None
            while self._pool:
                candidate = self._pool.pop()
                if self._is_connection_valid(candidate):
                    conn = candidate
                    break
                logger.debug("Discarding invalid connection from pool")
                try:
                    candidate.close()
                except Exception:
                    pass  # Ignore errors when closing invalid connection

            if conn is None:
                conn = duckdb.connect(self.db_path)
                logger.debug(
                    f"Created new connection to {self.db_path} "
                    f"(in use: {len(self._in_use) + 1}/{self.max_size})"
                )

            self._in_use.add(conn)
            return conn

    def release(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Return a connection to the pool, discarding it if unhealthy."""
        with self._condition:
            if conn not in self._in_use:
                logger.warning("Attempted to release connection not in use")
                return

            self._in_use.remove(conn)
            if self._is_connection_valid(conn):
                self._pool.append(conn)
            else:
                logger.debug("Discarding invalid connection on release")
                try:
                    conn.close()
                except Exception:
                    pass  # Ignore errors when closing invalid connection

            self._condition.notify()

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def close_all(self) -> None:
        """Close idle and in-use connections and clear the pool."""
        with self._lock:
            for conn in self._pool:
                conn.close()
            for conn in self._in_use:
                conn.close()
            self._pool.clear()
            self._in_use.clear()
            logger.debug("All connections closed")


class KeyValueStore:
    """
    Durable string-key to JSON-value mapping on top of DuckDB.

    Singleton per database path: every service in the process shares one
    connection pool. Writes are serialized through a process-wide lock; DuckDB
    aborts concurrent transactions touching the same row, and the failed-ticker
    registry is a single shared row.
    """

    _instances: dict = {}
    _lock = threading.Lock()

    def __new__(cls, db_path: Union[Path, str, None] = None, max_connections: int = 5):
        """Singleton pattern per database path."""
        instance_key = str(db_path) if db_path else None
        if instance_key not in cls._instances:
            with cls._lock:
                if instance_key not in cls._instances:
                    instance = super().__new__(cls)
                    instance._initialized = False
                    cls._instances[instance_key] = instance
        return cls._instances[instance_key]

    def __init__(self, db_path: Union[Path, str, None] = None, max_connections: int = 5):
        """
        Initialize the store and ensure its table exists.

        Args:
            db_path: Path to DuckDB file. Defaults to TICKERCACHE_DB_PATH, then
                TICKERCACHE_DATA_DIR/tickercache.duckdb, then ~/tickercache-data
            max_connections: Maximum number of pooled connections
        """
        if self._initialized:
            return

        self.db_path = Path(db_path) if db_path else self._get_db_path()
        self.max_connections = max_connections
        self._write_lock = threading.RLock()
        self._initialized = True

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool = ConnectionPool(self.db_path, max_size=self.max_connections)

        with self.connection() as conn:
            conn.execute(KV_TABLE_SQL)

        logger.info(f"Key-value store initialized: {self.db_path} (max_connections: {self.max_connections})")

    def _get_db_path(self) -> Path:
        db_path = os.getenv("TICKERCACHE_DB_PATH")
        if db_path:
            return Path(db_path).expanduser()

        data_dir = os.getenv("TICKERCACHE_DATA_DIR", str(DEFAULT_DATA_DIR))
        return Path(data_dir).expanduser() / "tickercache.duckdb"

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Pooled connection; DuckDB failures surface as StoreUnavailableError.

        Yields:
            A DuckDB connection from the pool
        """
        try:
            with self._pool.connection() as conn:
                yield conn
        except duckdb.Error as e:
            logger.error(f"Store error: {e}")
            raise StoreUnavailableError(str(e)) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the value for key, or None if absent or expired."""
        value, _ = self.get_with_version(key)
        return value

    def get_with_version(self, key: str) -> Tuple[Any, Optional[int]]:
        """
        Return (value, version) for key, or (None, None) if absent or expired.
        """
        now = time.time()
        with self.connection() as conn:
            row = conn.execute(
                "SELECT value, version FROM kv_store "
                "WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                [key, now],
            ).fetchone()
        if row is None:
            return None, None
        return json.loads(row[0]), row[1]

    def mget(self, keys: List[str]) -> List[Any]:
        """
        Fetch many keys in one query.

        Returns:
            Values in the same order as keys; None where absent or expired
        """
        if not keys:
            return []

        now = time.time()
        placeholders = ", ".join("?" for _ in keys)
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT key, value FROM kv_store WHERE key IN ({placeholders}) "
                "AND (expires_at IS NULL OR expires_at > ?)",
                [*keys, now],
            ).fetchall()

        found = {k: json.loads(v) for k, v in rows}
        return [found.get(k) for k in keys]

    def keys(self, pattern: str = "*") -> List[str]:
        """List live keys matching a glob pattern (``*`` and ``?`` wildcards)."""
        now = time.time()
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE key GLOB ? "
                "AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                [pattern, now],
            ).fetchall()
        return [r[0] for r in rows]

    def scan(self, cursor: int = 0, count: int = 100, pattern: str = "*") -> Tuple[int, List[str]]:
        """
        Iterate keys page by page.

        Args:
            cursor: 0 to start; pass back the returned cursor to continue
            count: Page size
            pattern: Glob pattern filter

        Returns:
            (next_cursor, keys); next_cursor is 0 once iteration is finished
        """
        now = time.time()
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE key GLOB ? "
                "AND (expires_at IS NULL OR expires_at > ?) "
                f"ORDER BY key LIMIT {int(count)} OFFSET {int(cursor)}",
                [pattern, now],
            ).fetchall()
        page = [r[0] for r in rows]
        next_cursor = cursor + len(page) if len(page) == count else 0
        return next_cursor, page

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until key expires; None if it never expires or is absent."""
        with self.connection() as conn:
            row = conn.execute("SELECT expires_at FROM kv_store WHERE key = ?", [key]).fetchone()
        if row is None or row[0] is None:
            return None
        return max(0.0, row[0] - time.time())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> int:
        """
        Store value under key, replacing any previous value.

        Args:
            key: Key
            value: JSON-serializable value
            ttl: Seconds until expiry; None = never expires

        Returns:
            The key's new version
        """
        with self._write_lock:
            _, current = self._current_version(key)
            return self._write(key, value, ttl, current)

    def compare_and_set(
        self, key: str, value: Any, expected_version: Optional[int], ttl: Optional[float] = None
    ) -> int:
        """
        Write only if the key's live version equals expected_version.

        Args:
            key: Key
            value: JSON-serializable value
            expected_version: Version read earlier; None means "must not exist"
            ttl: Seconds until expiry; None = never expires

        Returns:
            The key's new version

        Raises:
            ConcurrentUpdateError: If another writer got there first
        """
        with self._write_lock:
            live, current = self._current_version(key)
            live_version = current if live else None
            if live_version != expected_version:
                raise ConcurrentUpdateError(
                    f"Version mismatch on {key}: expected {expected_version}, found {live_version}"
                )
            return self._write(key, value, ttl, current)

    def delete(self, key: str) -> bool:
        """Delete key. Returns True if a row was removed."""
        return self.mdelete([key]) > 0

    def mdelete(self, keys: List[str]) -> int:
        """Delete many keys. Returns the number of rows removed."""
        if not keys:
            return 0

        placeholders = ", ".join("?" for _ in keys)
        with self._write_lock, self.connection() as conn:
            existing = conn.execute(
                f"SELECT COUNT(*) FROM kv_store WHERE key IN ({placeholders})", keys
            ).fetchone()[0]
            conn.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", keys)
        return existing

    def purge_expired(self) -> int:
        """Physically remove expired rows. Returns the number removed."""
        now = time.time()
        with self._write_lock, self.connection() as conn:
            expired = conn.execute(
                "SELECT COUNT(*) FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?", [now]
            ).fetchone()[0]
            conn.execute("DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?", [now])
        if expired:
            logger.debug(f"Purged {expired} expired keys")
        return expired

    def _current_version(self, key: str) -> Tuple[bool, Optional[int]]:
        """(is_live, stored_version) for key; stored_version is None if no row."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT version, expires_at FROM kv_store WHERE key = ?", [key]
            ).fetchone()
        if row is None:
            return False, None
        version, expires_at = row
        return expires_at is None or expires_at > time.time(), version

    def _write(self, key: str, value: Any, ttl: Optional[float], stored_version: Optional[int]) -> int:
        payload = json.dumps(value)
        now = time.time()
        expires_at = now + ttl if ttl else None

        with self.connection() as conn:
            if stored_version is None:
                new_version = 1
                conn.execute(
                    "INSERT INTO kv_store (key, value, expires_at, version, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [key, payload, expires_at, new_version, now],
                )
            else:
                new_version = stored_version + 1
                conn.execute(
                    "UPDATE kv_store SET value = ?, expires_at = ?, version = ?, updated_at = ? "
                    "WHERE key = ?",
                    [payload, expires_at, new_version, now, key],
                )
        return new_version

    def get_stats(self) -> dict:
        """Key counts for health reporting."""
        now = time.time()
        with self.connection() as conn:
            total, expiring = conn.execute(
                "SELECT COUNT(*), COUNT(expires_at) FROM kv_store "
                "WHERE expires_at IS NULL OR expires_at > ?",
                [now],
            ).fetchone()
        return {"keys": total, "expiring_keys": expiring, "db_path": str(self.db_path)}

    def close(self) -> None:
        """Close all pooled connections."""
        if hasattr(self, "_pool"):
            self._pool.close_all()

    @classmethod
    def reset(cls) -> None:
        """Reset all singleton instances (useful for testing)."""
        with cls._lock:
            for instance in cls._instances.values():
                instance.close()
            cls._instances.clear()


def get_store(db_path: Union[Path, str, None] = None, max_connections: int = 5) -> KeyValueStore:
    """
    Get the key-value store for a database path (singleton per path).

    Args:
        db_path: Path to DuckDB file. Defaults to the configured location
        max_connections: Maximum number of pooled connections

    Returns:
        KeyValueStore instance
    """
    return KeyValueStore(db_path, max_connections)
