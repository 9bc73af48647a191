"""SQLite-backed persistent store for the transaction ledger."""

import logging
import sqlite3
import time
from pathlib import Path

import vaultflow.constants as C
from vaultflow.constants import HistoryStatus, OperationKind
from vaultflow.models import ChainTransactions, HistoryEntry

log = logging.getLogger("vaultflow.sqlite_store")


class SQLiteLedgerStore:
    """Persistent ledger store backed by SQLite."""

    def __init__(self, db_path: str | Path = "vaultflow_ledger.db") -> None:
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(
                """
                -- One row per chain, handles are NULL until produced
                CREATE TABLE IF NOT EXISTS chain_transactions (
                    chain_id INTEGER PRIMARY KEY,
                    approval_handle TEXT,
                    approval_confirmed_handle TEXT,
                    deposit_handle TEXT,
                    deposit_confirmed_handle TEXT,
                    last_approved_amount TEXT,
                    updated_at REAL NOT NULL
                );

                -- Transaction history, one row per (hash, chain)
                CREATE TABLE IF NOT EXISTS history (
                    tx_hash TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    error TEXT,
                    timestamp REAL NOT NULL,
                    PRIMARY KEY (tx_hash, chain_id)
                );
                CREATE INDEX IF NOT EXISTS idx_history_ts ON history(timestamp);
                """
            )
            conn.commit()
            log.debug(f"SQLite database initialized at {self.db_path}")
        finally:
            conn.close()

    # =========================================================================
    # Ledger persistence
    # =========================================================================

    def load(self) -> dict[int, ChainTransactions]:
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT chain_id, approval_handle, approval_confirmed_handle, deposit_handle, "
                "deposit_confirmed_handle, last_approved_amount FROM chain_transactions"
            )
            out = {}
            for chain_id, a, ac, d, dc, amt in cursor.fetchall():
                out[chain_id] = ChainTransactions(
                    approval_handle=a,
                    approval_confirmed_handle=ac,
                    deposit_handle=d,
                    deposit_confirmed_handle=dc,
                    last_approved_amount=amt,
                )
            log.debug("Loaded %s chain record(s) from %s", len(out), self.db_path)
            return out
        finally:
            conn.close()

    def save(self, txs: dict[int, ChainTransactions]) -> None:
        """Replace the stored ledger with `txs` in a single transaction."""
        conn = sqlite3.connect(self.db_path)
        try:
            now = time.time()
            with conn:
                if txs:
                    marks = ",".join("?" for _ in txs)
                    conn.execute(f"DELETE FROM chain_transactions WHERE chain_id NOT IN ({marks})", tuple(txs))
                else:
                    conn.execute("DELETE FROM chain_transactions")
                for chain_id, rec in txs.items():
                    conn.execute(
                        """
                        INSERT INTO chain_transactions (chain_id, approval_handle, approval_confirmed_handle,
                                                        deposit_handle, deposit_confirmed_handle,
                                                        last_approved_amount, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(chain_id) DO UPDATE SET
                            approval_handle = excluded.approval_handle,
                            approval_confirmed_handle = excluded.approval_confirmed_handle,
                            deposit_handle = excluded.deposit_handle,
                            deposit_confirmed_handle = excluded.deposit_confirmed_handle,
                            last_approved_amount = excluded.last_approved_amount,
                            updated_at = excluded.updated_at
                        """,
                        (
                            chain_id,
                            rec.approval_handle,
                            rec.approval_confirmed_handle,
                            rec.deposit_handle,
                            rec.deposit_confirmed_handle,
                            rec.last_approved_amount,
                            now,
                        ),
                    )
        finally:
            conn.close()

    # =========================================================================
    # History
    # =========================================================================

    def add_history(self, entry: HistoryEntry) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO history (tx_hash, chain_id, kind, status, amount, error, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(tx_hash, chain_id) DO UPDATE SET
                        status = excluded.status,
                        error = excluded.error
                    """,
                    (
                        entry.tx_hash,
                        entry.chain_id,
                        str(entry.kind),
                        str(entry.status),
                        entry.amount,
                        entry.error,
                        entry.timestamp,
                    ),
                )
                # keep the table bounded like the in-memory deque
                conn.execute(
                    "DELETE FROM history WHERE rowid NOT IN "
                    "(SELECT rowid FROM history ORDER BY timestamp DESC LIMIT ?)",
                    (C.HISTORY_LIMIT,),
                )
        finally:
            conn.close()

    def list_history(self, limit: int = C.HISTORY_LIMIT) -> list[HistoryEntry]:
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT tx_hash, chain_id, kind, status, amount, error, timestamp "
                "FROM history ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (limit,),
            )
            return [
                HistoryEntry(
                    tx_hash=tx_hash,
                    chain_id=chain_id,
                    kind=OperationKind(kind),
                    status=HistoryStatus(status),
                    amount=amount,
                    timestamp=ts,
                    error=error,
                )
                for tx_hash, chain_id, kind, status, amount, error, ts in cursor.fetchall()
            ]
        finally:
            conn.close()

    def clear_history(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                conn.execute("DELETE FROM history")
        finally:
            conn.close()
