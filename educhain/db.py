"""
Database module for EduChain.

Provides SQLite-based storage for certificates, usage periods and the mint
journal. One Database instance is created per application and handed to the
components that need it; each thread gets its own connection.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import StoreError

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS certificates (
        id TEXT PRIMARY KEY,
        student_address TEXT NOT NULL,
        student_address_lc TEXT NOT NULL,
        student_name TEXT NOT NULL,
        course_name TEXT NOT NULL,
        grade TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        completion_date TEXT NOT NULL,
        certificate_type TEXT NOT NULL,
        issuer_id TEXT NOT NULL,
        issuer_name TEXT NOT NULL,
        issued_at TEXT NOT NULL,
        is_valid INTEGER NOT NULL DEFAULT 1,
        mint_state TEXT NOT NULL DEFAULT 'unminted'
            CHECK (mint_state IN ('unminted', 'minted')),
        token_id TEXT UNIQUE,
        minted_to_address TEXT,
        minted_at TEXT,
        revoked_at TEXT,
        revoked_by TEXT,
        artifact_size INTEGER NOT NULL DEFAULT 0,
        CHECK ((mint_state = 'minted') = (token_id IS NOT NULL))
    );""",
    "CREATE INDEX IF NOT EXISTS idx_certificates_content_hash ON certificates(content_hash);",
    "CREATE INDEX IF NOT EXISTS idx_certificates_owner ON certificates(student_address_lc);",
    "CREATE INDEX IF NOT EXISTS idx_certificates_issuer ON certificates(issuer_id);",
    """
    CREATE TABLE IF NOT EXISTS usage_periods (
        institution_id TEXT PRIMARY KEY,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        certificates_issued INTEGER NOT NULL DEFAULT 0,
        storage_bytes_used INTEGER NOT NULL DEFAULT 0,
        api_calls INTEGER NOT NULL DEFAULT 0
    );""",
    """
    CREATE TABLE IF NOT EXISTS mint_journal (
        certificate_id TEXT PRIMARY KEY,
        status TEXT NOT NULL CHECK (status IN ('pending', 'submitted', 'bound')),
        wallet_address TEXT NOT NULL,
        token_id TEXT,
        tx_hash TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        last_error TEXT
    );""",
    "CREATE INDEX IF NOT EXISTS idx_mint_journal_status ON mint_journal(status);",
    "CREATE INDEX IF NOT EXISTS idx_mint_journal_token ON mint_journal(token_id);",
]

TABLES = ["certificates", "usage_periods", "mint_journal"]


class Database:
    """
    SQLite database handle shared by the store, quota tracker and mint binder.

    Connections run in autocommit mode; write paths open an explicit
    ``BEGIN IMMEDIATE`` through :meth:`transaction` so concurrent writers are
    serialized by SQLite itself. A transaction opened while another one is
    active on the same thread joins it, which is how issuance makes the
    certificate insert and the usage increment commit together.
    """

    def __init__(self, path: str, busy_timeout: float = 30.0):
        self._path = Path(path)
        self._busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self._path),
                    timeout=self._busy_timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA foreign_keys=ON;")
            except sqlite3.Error as e:
                raise StoreError(f"cannot open database: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.
        Commits on success, rolls back on any failure. SQLite errors surface
        as StoreError; domain errors raised inside propagate unchanged.
        """
        conn = self.connection()
        if conn.in_transaction:
            yield conn
            return
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StoreError(f"cannot begin transaction: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        except BaseException:
            conn.rollback()
            raise
        else:
            try:
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"commit failed: {e}") from e

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        try:
            return self.connection().execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self.connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def init_schema(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def stats(self) -> Dict[str, int]:
        """Row counts per table, for the health endpoint."""
        result = {}
        for table in TABLES:
            row = self.fetchone(f"SELECT COUNT(*) AS cnt FROM {table}")
            result[f"{table}_count"] = row["cnt"]
        return result

    def close(self) -> None:
        """Close every connection this instance opened."""
        with self._lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        self._local = threading.local()
