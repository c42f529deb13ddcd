"""
Database Connection Layer

Supports SQLite (dev/tests) and PostgreSQL (production) with automatic schema migration.
Queries are written with `?` placeholders and adapted for psycopg2.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Weekly commitments
CREATE TABLE IF NOT EXISTS commitments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_start TEXT NOT NULL,
    week_end TEXT NOT NULL,
    grace_expires_at TEXT NOT NULL,
    limit_minutes INTEGER NOT NULL,
    penalty_per_minute_cents INTEGER NOT NULL,
    max_charge_cents INTEGER NOT NULL,
    apps_to_limit TEXT NOT NULL,  -- JSON object {app_ids, category_ids}
    monitoring_status TEXT NOT NULL DEFAULT 'ok',
    monitoring_revoked_at TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    saved_payment_method_ref TEXT,
    customer_ref TEXT,
    created_at TEXT NOT NULL
);

-- Per-day usage reports (real and estimated)
CREATE TABLE IF NOT EXISTS daily_usage (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    commitment_id TEXT NOT NULL,
    date TEXT NOT NULL,
    used_minutes REAL NOT NULL,
    limit_minutes INTEGER NOT NULL,
    exceeded_minutes REAL NOT NULL,
    penalty_cents INTEGER NOT NULL,
    is_estimated INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT 'client_sync',
    reported_at TEXT NOT NULL,
    UNIQUE (user_id, date, commitment_id),
    FOREIGN KEY (commitment_id) REFERENCES commitments(id)
);

-- Per-(user, week) settlement state
CREATE TABLE IF NOT EXISTS user_week_penalties (
    user_id TEXT NOT NULL,
    week_start TEXT NOT NULL,
    week_end TEXT NOT NULL,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    actual_amount_cents INTEGER NOT NULL DEFAULT 0,
    charged_amount_cents INTEGER NOT NULL DEFAULT 0,
    settlement_status TEXT NOT NULL DEFAULT 'pending',
    needs_reconciliation INTEGER NOT NULL DEFAULT 0,
    reconciliation_delta_cents INTEGER NOT NULL DEFAULT 0,
    reconciliation_reason TEXT,
    reconciliation_detected_at TEXT,
    refund_amount_cents INTEGER NOT NULL DEFAULT 0,
    charged_at TEXT,
    refund_issued_at TEXT,
    charge_gateway_ref TEXT,
    refund_gateway_ref TEXT,
    failure_reason TEXT,
    last_updated TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, week_start)
);

-- Append-only payment audit trail
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_start TEXT NOT NULL,
    amount_cents INTEGER NOT NULL,
    payment_type TEXT NOT NULL,
    status TEXT NOT NULL,
    gateway_ref TEXT,
    related_gateway_ref TEXT,
    idempotency_key TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- Weekly pools
CREATE TABLE IF NOT EXISTS weekly_pools (
    week_start TEXT PRIMARY KEY,
    week_end TEXT NOT NULL,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'open',
    closed_at TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_commitments_week_end ON commitments(week_end);
CREATE INDEX IF NOT EXISTS idx_commitments_user ON commitments(user_id);
CREATE INDEX IF NOT EXISTS idx_daily_usage_commitment ON daily_usage(commitment_id);
CREATE INDEX IF NOT EXISTS idx_penalties_reconciliation ON user_week_penalties(needs_reconciliation);
CREATE INDEX IF NOT EXISTS idx_penalties_week ON user_week_penalties(week_start);
CREATE INDEX IF NOT EXISTS idx_payments_user_week ON payments(user_id, week_start);
CREATE INDEX IF NOT EXISTS idx_payments_gateway_ref ON payments(gateway_ref);
"""

POSTGRES_SCHEMA_SQL = """
-- Weekly commitments
CREATE TABLE IF NOT EXISTS commitments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_start TIMESTAMPTZ NOT NULL,
    week_end TIMESTAMPTZ NOT NULL,
    grace_expires_at TIMESTAMPTZ NOT NULL,
    limit_minutes INTEGER NOT NULL,
    penalty_per_minute_cents INTEGER NOT NULL,
    max_charge_cents INTEGER NOT NULL,
    apps_to_limit JSONB NOT NULL,
    monitoring_status TEXT NOT NULL DEFAULT 'ok',
    monitoring_revoked_at TIMESTAMPTZ,
    status TEXT NOT NULL DEFAULT 'pending',
    saved_payment_method_ref TEXT,
    customer_ref TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Daily usage
CREATE TABLE IF NOT EXISTS daily_usage (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    commitment_id TEXT NOT NULL REFERENCES commitments(id),
    date DATE NOT NULL,
    used_minutes DOUBLE PRECISION NOT NULL,
    limit_minutes INTEGER NOT NULL,
    exceeded_minutes DOUBLE PRECISION NOT NULL,
    penalty_cents INTEGER NOT NULL,
    is_estimated BOOLEAN NOT NULL DEFAULT FALSE,
    source TEXT NOT NULL DEFAULT 'client_sync',
    reported_at TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, date, commitment_id)
);

-- Per-(user, week) settlement state
CREATE TABLE IF NOT EXISTS user_week_penalties (
    user_id TEXT NOT NULL,
    week_start TIMESTAMPTZ NOT NULL,
    week_end TIMESTAMPTZ NOT NULL,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    actual_amount_cents INTEGER NOT NULL DEFAULT 0,
    charged_amount_cents INTEGER NOT NULL DEFAULT 0,
    settlement_status TEXT NOT NULL DEFAULT 'pending',
    needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
    reconciliation_delta_cents INTEGER NOT NULL DEFAULT 0,
    reconciliation_reason TEXT,
    reconciliation_detected_at TIMESTAMPTZ,
    refund_amount_cents INTEGER NOT NULL DEFAULT 0,
    charged_at TIMESTAMPTZ,
    refund_issued_at TIMESTAMPTZ,
    charge_gateway_ref TEXT,
    refund_gateway_ref TEXT,
    failure_reason TEXT,
    last_updated TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, week_start)
);

-- Payments
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_start TIMESTAMPTZ NOT NULL,
    amount_cents INTEGER NOT NULL,
    payment_type TEXT NOT NULL,
    status TEXT NOT NULL,
    gateway_ref TEXT,
    related_gateway_ref TEXT,
    idempotency_key TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL
);

-- Weekly pools
CREATE TABLE IF NOT EXISTS weekly_pools (
    week_start TIMESTAMPTZ PRIMARY KEY,
    week_end TIMESTAMPTZ NOT NULL,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'open',
    closed_at TIMESTAMPTZ
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_commitments_week_end ON commitments(week_end);
CREATE INDEX IF NOT EXISTS idx_commitments_user ON commitments(user_id);
CREATE INDEX IF NOT EXISTS idx_daily_usage_commitment ON daily_usage(commitment_id);
CREATE INDEX IF NOT EXISTS idx_penalties_reconciliation ON user_week_penalties(needs_reconciliation);
CREATE INDEX IF NOT EXISTS idx_penalties_week ON user_week_penalties(week_start);
CREATE INDEX IF NOT EXISTS idx_payments_user_week ON payments(user_id, week_start);
CREATE INDEX IF NOT EXISTS idx_payments_gateway_ref ON payments(gateway_ref);
"""


class Transaction:
    """
    A unit of work on one connection.

    Every statement runs on the same connection; the owning
    Database.transaction() commits once at the end or rolls back on error.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self._conn = conn
        self._is_postgres = is_postgres
        self.rowcount = 0

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if self._is_postgres:
            cursor = self._conn.cursor()
            cursor.execute(_adapt_placeholders(query), params)
        else:
            cursor = self._conn.execute(query, params)
        self.rowcount = cursor.rowcount
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []


def _adapt_placeholders(query: str) -> str:
    return query.replace("?", "%s")


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        rows = db.execute("SELECT * FROM commitments WHERE week_end = ?", (week_end,))

        with db.transaction() as tx:
            tx.execute("UPDATE user_week_penalties SET ... WHERE version = ?", (...))
            if tx.rowcount == 0:
                ...  # lost the race
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///settlement.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "settlement.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
            with self._connections_lock:
                self._connections.append(self._local.conn)

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """Run several statements atomically."""
        with self.connection() as conn:
            yield Transaction(conn, self.is_postgres)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                else:
                    conn.executescript(schema)

                # Record schema version
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def close(self) -> None:
        """Close database connections opened by any thread."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
        self._local = threading.local()


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
