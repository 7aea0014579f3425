"""
Ledger - append-only record of every write the miner makes.

SQLite in WAL mode so the CLI report can read while the miner writes.
Two tables:
- transactions: one row per confirmed (or failed) write
- settings: key/value, holds the PnL baseline

Rows are never updated or deleted, except by archive_and_reset().
"""

import logging
import shutil
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from orb_miner.errors import BaselineAlreadySet

logger = logging.getLogger(__name__)

BASELINE_KEY = "baseline_balance"


class TxType(Enum):
    DEPLOY = "deploy"
    CHECKPOINT = "checkpoint"
    AUTOMATION_SETUP = "automation_setup"
    AUTOMATION_CLOSE = "automation_close"
    AUTOMATION_REFUND = "automation_refund"
    CLAIM_NATIVE = "claim_native"
    CLAIM_TOKEN = "claim_token"
    CLAIM_STAKE_YIELD = "claim_stake_yield"
    STAKE = "stake"
    SWAP = "swap"
    BASELINE = "baseline"


@dataclass
class TransactionRecord:
    type: TxType
    signature: str = ""
    native_amount: float = 0.0
    token_amount: float = 0.0
    round_id: Optional[int] = None
    fee: Optional[float] = None
    status: str = "success"  # "success" or "failed"
    timestamp: float = field(default_factory=time.time)
    notes: str = ""
    id: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class Ledger:
    """
    Persistent transaction history and settings.

    The connection is opened lazily and can be released with close(), which
    the miner does while the maintenance flag is up so the reset flow can
    move the database file.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=30000")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._init_schema(conn)
            self._conn = conn
        return self._conn

    def _init_schema(self, conn: sqlite3.Connection):
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    type TEXT NOT NULL,
                    signature TEXT NOT NULL DEFAULT '',
                    native_amount REAL NOT NULL DEFAULT 0,
                    token_amount REAL NOT NULL DEFAULT 0,
                    round_id INTEGER,
                    fee REAL,
                    status TEXT NOT NULL DEFAULT 'success',
                    timestamp REAL NOT NULL,
                    notes TEXT NOT NULL DEFAULT ''
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_type ON transactions (type, timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_time ON transactions (timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_round ON transactions (round_id)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def append(self, record: TransactionRecord) -> TransactionRecord:
        conn = self._connection()
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO transactions
                    (type, signature, native_amount, token_amount, round_id, fee, status, timestamp, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (record.type.value, record.signature, record.native_amount, record.token_amount,
                 record.round_id, record.fee, record.status, record.timestamp, record.notes),
            )
        record.id = cursor.lastrowid
        return record

    def query(self, types: Optional[Iterable[TxType]] = None, status: Optional[str] = None,
              since: Optional[float] = None, round_id: Optional[int] = None,
              limit: Optional[int] = None) -> list:
        """Records matching every given filter, oldest first."""
        clauses, args = [], []
        if types is not None:
            values = [t.value for t in types]
            if not values:
                return []
            clauses.append(f"type IN ({', '.join('?' for _ in values)})")
            args.extend(values)
        if status is not None:
            clauses.append("status = ?")
            args.append(status)
        if since is not None:
            clauses.append("timestamp >= ?")
            args.append(since)
        if round_id is not None:
            clauses.append("round_id = ?")
            args.append(round_id)

        sql = "SELECT * FROM transactions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))

        rows = self._connection().execute(sql, args).fetchall()
        return [self._row_to_record(row) for row in rows]

    def recent(self, limit: int = 20) -> list:
        """Most recent records, newest first."""
        rows = self._connection().execute(
            "SELECT * FROM transactions ORDER BY timestamp DESC, id DESC LIMIT ?", (int(limit),)
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        return self._connection().execute("SELECT COUNT(*) FROM transactions").fetchone()[0]

    def daily_aggregates(self, days: int = 7, now: Optional[float] = None) -> list:
        """Per-day deployed, claimed and fee totals for the last `days` days."""
        now = time.time() if now is None else now
        since = now - days * 86400
        rows = self._connection().execute(
            """
            SELECT date(timestamp, 'unixepoch') AS day,
                   SUM(CASE WHEN type = 'deploy' THEN native_amount ELSE 0 END) AS deployed,
                   SUM(CASE WHEN type = 'deploy' THEN 1 ELSE 0 END) AS deploys,
                   SUM(CASE WHEN type = 'claim_native' THEN native_amount ELSE 0 END) AS claimed_native,
                   SUM(CASE WHEN type IN ('claim_token', 'claim_stake_yield')
                            THEN token_amount ELSE 0 END) AS claimed_token,
                   SUM(COALESCE(fee, 0)) AS fees
            FROM transactions
            WHERE timestamp >= ? AND status = 'success'
            GROUP BY day
            ORDER BY day DESC
            """,
            (since,),
        ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TransactionRecord:
        return TransactionRecord(
            id=row["id"],
            type=TxType(row["type"]),
            signature=row["signature"],
            native_amount=row["native_amount"],
            token_amount=row["token_amount"],
            round_id=row["round_id"],
            fee=row["fee"],
            status=row["status"],
            timestamp=row["timestamp"],
            notes=row["notes"],
        )

    # ------------------------------------------------------------------
    # Settings and baseline
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        row = self._connection().execute(
            "SELECT value FROM settings WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str):
        conn = self._connection()
        with conn:
            conn.execute(
                "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, str(value), time.time()),
            )

    def all_settings(self) -> dict:
        rows = self._connection().execute("SELECT key, value FROM settings").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def get_baseline(self) -> Optional[float]:
        value = self.get_setting(BASELINE_KEY)
        return float(value) if value is not None else None

    def set_baseline(self, amount: float):
        """Set-once. Raises BaselineAlreadySet if one exists."""
        existing = self.get_baseline()
        if existing is not None:
            raise BaselineAlreadySet(
                f"Baseline already set to {existing:.6f} SOL. Use reset-pnl to start over."
            )
        if amount < 0:
            raise ValueError("Baseline cannot be negative")
        self.set_setting(BASELINE_KEY, repr(float(amount)))
        logger.info("PnL baseline set to %.6f SOL", amount)

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def archive_and_reset(self, backup_dir: Path) -> Optional[Path]:
        """
        Copy the database aside, then clear history and the baseline.

        Other settings survive the reset. Returns the backup path, or None
        when there was no database yet.
        """
        settings = {}
        backup_path = None
        if self.db_path.exists():
            settings = self.all_settings()
            settings.pop(BASELINE_KEY, None)
            self.close()
            backup_dir = Path(backup_dir)
            backup_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = backup_dir / f"{self.db_path.stem}_{stamp}{self.db_path.suffix}"
            shutil.copy2(self.db_path, backup_path)
            for suffix in ("", "-wal", "-shm"):
                Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
            logger.info("Ledger archived to %s", backup_path)

        for key, value in settings.items():
            self.set_setting(key, value)
        return backup_path
