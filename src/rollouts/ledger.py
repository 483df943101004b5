"""
Deployment Ledger.

Append-only record of rollout transitions stored in SQLite. The table refuses
UPDATE and DELETE through triggers; appends are serialized with a lock so the
sequence column gives a total order across units.
"""
import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from .errors import LedgerReadError, LedgerWriteError
from .models import TERMINAL_STATES, LedgerEntry, RolloutState

logger = logging.getLogger(__name__)

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS rollout_ledger (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        rollout_id TEXT NOT NULL,
        unit_id TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        detail TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_ledger_rollout ON rollout_ledger (rollout_id, sequence)',
    'CREATE INDEX IF NOT EXISTS idx_ledger_unit ON rollout_ledger (unit_id, sequence)',
    '''
    CREATE TRIGGER IF NOT EXISTS rollout_ledger_no_update
    BEFORE UPDATE ON rollout_ledger
    BEGIN
        SELECT RAISE(ABORT, 'rollout_ledger is append-only');
    END
    ''',
    '''
    CREATE TRIGGER IF NOT EXISTS rollout_ledger_no_delete
    BEFORE DELETE ON rollout_ledger
    BEGIN
        SELECT RAISE(ABORT, 'rollout_ledger is append-only');
    END
    ''',
    '''
    CREATE TABLE IF NOT EXISTS cancel_requests (
        rollout_id TEXT PRIMARY KEY,
        requested_at TEXT NOT NULL
    )
    ''',
]

COLUMNS = "sequence, rollout_id, unit_id, from_state, to_state, timestamp, detail"


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        rollout_id=row["rollout_id"],
        unit_id=row["unit_id"],
        from_state=RolloutState(row["from_state"]) if row["from_state"] else None,
        to_state=RolloutState(row["to_state"]),
        timestamp=datetime.fromisoformat(row["timestamp"]),
        detail=json.loads(row["detail"]),
        sequence=row["sequence"],
    )


class DeploymentLedger:
    """SQLite-backed, append-only transition log."""

    def __init__(self, db_path: str = "rollouts.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        """Create the ledger tables in the database."""
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Cannot open ledger at {self.db_path}: {e}") from e
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
            logger.info(f"Deployment ledger initialized in database: {self.db_path}")
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Cannot initialize ledger at {self.db_path}: {e}") from e
        finally:
            conn.close()

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Durably record a transition.

        Args:
            entry: The transition to record; its ``sequence`` is ignored

        Returns:
            The entry carrying the store-assigned sequence number

        Raises:
            LedgerWriteError: the store is unavailable or refused the write
        """
        detail = json.dumps(entry.detail, sort_keys=True, default=str)
        with self._lock:
            try:
                conn = self._connect()
                try:
                    cursor = conn.execute(
                        '''
                        INSERT INTO rollout_ledger
                        (rollout_id, unit_id, from_state, to_state, timestamp, detail)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ''',
                        (
                            entry.rollout_id,
                            entry.unit_id,
                            entry.from_state.value if entry.from_state else None,
                            entry.to_state.value,
                            entry.timestamp.isoformat(),
                            detail,
                        ),
                    )
                    conn.commit()
                    sequence = cursor.lastrowid
                finally:
                    conn.close()
            except sqlite3.Error as e:
                logger.error(f"Ledger write failed for rollout {entry.rollout_id}: {e}")
                raise LedgerWriteError(
                    f"Ledger unavailable: {e}",
                    rollout_id=entry.rollout_id,
                    state=entry.to_state.value,
                ) from e

        from_state = entry.from_state.value if entry.from_state else "-"
        logger.debug(f"Ledger #{sequence}: {entry.rollout_id} {from_state} -> {entry.to_state.value}")
        return LedgerEntry(
            rollout_id=entry.rollout_id,
            unit_id=entry.unit_id,
            from_state=entry.from_state,
            to_state=entry.to_state,
            timestamp=entry.timestamp,
            detail=entry.detail,
            sequence=sequence,
        )

    def _query(self, sql: str, params: tuple = ()) -> List[LedgerEntry]:
        try:
            conn = self._connect()
            try:
                return [_row_to_entry(row) for row in conn.execute(sql, params).fetchall()]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerReadError(f"Ledger query failed: {e}") from e

    def entries(self, rollout_id: str) -> List[LedgerEntry]:
        """All entries of a rollout in append order."""
        return self._query(
            f'SELECT {COLUMNS} FROM rollout_ledger WHERE rollout_id = ? ORDER BY sequence',
            (rollout_id,),
        )

    def last_entry(self, unit_id: str) -> Optional[LedgerEntry]:
        rows = self._query(
            f'SELECT {COLUMNS} FROM rollout_ledger WHERE unit_id = ? ORDER BY sequence DESC LIMIT 1',
            (unit_id,),
        )
        return rows[0] if rows else None

    def last_completed(self, unit_id: str) -> Optional[LedgerEntry]:
        """The most recent COMPLETE entry of a unit, if it was ever deployed."""
        rows = self._query(
            f'''
            SELECT {COLUMNS} FROM rollout_ledger
            WHERE unit_id = ? AND to_state = ?
            ORDER BY sequence DESC LIMIT 1
            ''',
            (unit_id, RolloutState.COMPLETE.value),
        )
        return rows[0] if rows else None

    def unfinished(self) -> List[LedgerEntry]:
        """Last entry of every unit whose latest rollout is not terminal."""
        rows = self._query(
            f'''
            SELECT {COLUMNS} FROM rollout_ledger
            WHERE sequence IN (SELECT MAX(sequence) FROM rollout_ledger GROUP BY unit_id)
            ORDER BY sequence
            '''
        )
        return [entry for entry in rows if entry.to_state not in TERMINAL_STATES]

    def rollout_ids(self, unit_id: str) -> List[str]:
        """Rollouts of a unit, oldest first."""
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    '''
                    SELECT rollout_id FROM rollout_ledger
                    WHERE unit_id = ? GROUP BY rollout_id ORDER BY MIN(sequence)
                    ''',
                    (unit_id,),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerReadError(f"Ledger query failed: {e}") from e
        return [row["rollout_id"] for row in rows]

    def request_cancel(self, rollout_id: str, requested_at: Optional[datetime] = None) -> None:
        """Persist a cancellation request so any process driving the rollout sees it."""
        requested_at = requested_at or datetime.now().astimezone()
        with self._lock:
            try:
                conn = self._connect()
                try:
                    conn.execute(
                        'INSERT OR IGNORE INTO cancel_requests (rollout_id, requested_at) VALUES (?, ?)',
                        (rollout_id, requested_at.isoformat()),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise LedgerWriteError(f"Could not record cancellation: {e}", rollout_id=rollout_id) from e
        logger.info(f"Cancellation requested for rollout {rollout_id}")

    def cancel_requested(self, rollout_id: str) -> bool:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    'SELECT 1 FROM cancel_requests WHERE rollout_id = ?', (rollout_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerReadError(f"Ledger query failed: {e}", rollout_id=rollout_id) from e
        return row is not None
