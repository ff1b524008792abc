"""SQLite database manager implementation.

This module provides the DatabaseManager class for handling all interactions
with the SQLite database: the single-row risk ledger record and the
append-only audit log.

All failures are raised as StorageError. Callers in the risk layer decide
whether a failure is fatal (it never is for ledger or audit writes).
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from src.utils.exceptions import StorageError
from src.utils.logging import get_logger

logger = get_logger(__name__)

LEDGER_COLUMNS = (
    "daily_pnl",
    "open_position_count",
    "exposure_per_market",
    "kill_switch_active",
    "kill_switch_reason",
    "last_reset_at",
)

AUDIT_JSON_COLUMNS = ("details", "risk_state_before", "risk_state_after")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DatabaseManager:
    """Manages SQLite database interactions.

    Each thread gets its own connection, so one manager can be shared by
    the ledger store and the audit log across worker threads. Because of
    that, ``":memory:"`` is not a usable path; tests use a temp file.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str | Path):
        """Initialize database manager.

        Nothing touches the filesystem until the first query, so an
        unusable path surfaces as StorageError from that query.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = str(db_path)
        self._local = threading.local()
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        """Open (or reuse) the thread-local connection."""
        if not hasattr(self._local, "connection"):
            try:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path, timeout=5.0)
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Cannot open database at {self.db_path}: {e}")
                raise StorageError(f"Cannot open database at {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection with the schema in place."""
        conn = self._connect()
        if not self._schema_ready:
            with self._schema_lock:
                if not self._schema_ready:
                    self.create_tables()
        return conn

    def create_tables(self) -> None:
        """Create necessary database tables if they don't exist.

        Raises:
            StorageError: If the file cannot be opened or is not a database
        """
        schema_path = Path(__file__).parent / "schema.sql"
        conn = self._connect()
        try:
            with open(schema_path, "r") as f:
                schema = f.read()

            conn.executescript(schema)
            conn.commit()
            self._schema_ready = True
            logger.info(f"Database initialized at {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to create tables: {e}")
            raise StorageError(f"Database initialization failed: {e}") from e

    # ------------------------------------------------------------------
    # Risk ledger
    # ------------------------------------------------------------------

    def load_ledger_row(self) -> Optional[Dict[str, Any]]:
        """Load the persisted ledger record.

        Returns:
            Dict with LEDGER_COLUMNS (exposure decoded to a dict, kill
            switch as bool), or None if nothing has been saved yet.
        """
        query = f"SELECT {', '.join(LEDGER_COLUMNS)} FROM risk_ledger WHERE id = 1"
        conn = self._get_connection()
        try:
            row = conn.execute(query).fetchone()
        except Exception as e:
            logger.error(f"Failed to load risk ledger: {e}")
            raise StorageError(f"Failed to load risk ledger: {e}") from e

        if row is None:
            return None

        record = dict(row)
        try:
            record["exposure_per_market"] = json.loads(record["exposure_per_market"] or "{}")
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt exposure column: {e}") from e
        record["kill_switch_active"] = bool(record["kill_switch_active"])
        return record

    def save_ledger_row(self, record: Dict[str, Any]) -> None:
        """Upsert the ledger record as a single write.

        Args:
            record: Dict with LEDGER_COLUMNS. ``exposure_per_market`` is a
                dict and ``last_reset_at`` an ISO string.
        """
        upsert_sql = """
            INSERT INTO risk_ledger
            (id, daily_pnl, open_position_count, exposure_per_market,
             kill_switch_active, kill_switch_reason, last_reset_at, updated_at)
            VALUES (1, :daily_pnl, :open_position_count, :exposure_per_market,
                    :kill_switch_active, :kill_switch_reason, :last_reset_at, :updated_at)
            ON CONFLICT(id) DO UPDATE SET
            daily_pnl=excluded.daily_pnl,
            open_position_count=excluded.open_position_count,
            exposure_per_market=excluded.exposure_per_market,
            kill_switch_active=excluded.kill_switch_active,
            kill_switch_reason=excluded.kill_switch_reason,
            last_reset_at=excluded.last_reset_at,
            updated_at=excluded.updated_at
        """
        params = {
            "daily_pnl": float(record["daily_pnl"]),
            "open_position_count": int(record["open_position_count"]),
            "exposure_per_market": json.dumps(record["exposure_per_market"], sort_keys=True),
            "kill_switch_active": 1 if record["kill_switch_active"] else 0,
            "kill_switch_reason": record.get("kill_switch_reason"),
            "last_reset_at": record["last_reset_at"],
            "updated_at": _utc_now_iso(),
        }

        conn = self._get_connection()
        try:
            with conn:
                conn.execute(upsert_sql, params)
            logger.debug("Risk ledger persisted")
        except Exception as e:
            logger.error(f"Failed to save risk ledger: {e}")
            raise StorageError(f"Failed to save risk ledger: {e}") from e

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit(self, record: Dict[str, Any]) -> int:
        """Append one audit record.

        Args:
            record: Dict with event_type, actor, action and optional
                details, market_id, pnl_impact, risk_state_before,
                risk_state_after, created_at.

        Returns:
            Row id of the inserted record
        """
        insert_sql = """
            INSERT INTO audit_log
            (event_type, actor, action, details, market_id, pnl_impact,
             risk_state_before, risk_state_after, created_at)
            VALUES (:event_type, :actor, :action, :details, :market_id, :pnl_impact,
                    :risk_state_before, :risk_state_after, :created_at)
        """
        params = {
            "event_type": record["event_type"],
            "actor": record["actor"],
            "action": record["action"],
            "market_id": record.get("market_id"),
            "pnl_impact": record.get("pnl_impact"),
            "created_at": record.get("created_at") or _utc_now_iso(),
        }
        for column in AUDIT_JSON_COLUMNS:
            value = record.get(column)
            params[column] = json.dumps(value, default=str) if value is not None else None

        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute(insert_sql, params)
            return cursor.lastrowid
        except Exception as e:
            logger.error(f"Failed to append audit record: {e}")
            raise StorageError(f"Failed to append audit record: {e}") from e

    def load_audit(
        self,
        limit: int = 100,
        event_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Load the most recent audit records, newest first.

        Args:
            limit: Maximum number of records
            event_type: Optional filter on event type

        Returns:
            List of dicts with JSON columns decoded
        """
        query = "SELECT * FROM audit_log"
        params: list = []
        if event_type is not None:
            query += " WHERE event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = self._get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        except Exception as e:
            logger.error(f"Failed to load audit log: {e}")
            raise StorageError(f"Failed to load audit log: {e}") from e

        records = []
        for row in rows:
            record = dict(row)
            for column in AUDIT_JSON_COLUMNS:
                if record[column] is not None:
                    record[column] = json.loads(record[column])
            records.append(record)
        return records

    def load_audit_frame(
        self,
        limit: int = 100,
        event_type: Optional[str] = None,
    ) -> pd.DataFrame:
        """Load recent audit records as a DataFrame for reporting.

        Returns:
            DataFrame indexed by ``created_at`` (newest first), JSON columns
            left as raw strings.
        """
        query = "SELECT id, event_type, actor, action, market_id, pnl_impact, created_at FROM audit_log"
        params: list = []
        if event_type is not None:
            query += " WHERE event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = self._get_connection()
        try:
            df = pd.read_sql_query(query, conn, params=params, parse_dates=["created_at"])
            if not df.empty:
                df.set_index("created_at", inplace=True)
            return df
        except Exception as e:
            logger.error(f"Failed to load audit frame: {e}")
            raise StorageError(f"Failed to load audit frame: {e}") from e

    def close(self):
        """Close the thread-local connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection
