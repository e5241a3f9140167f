"""SQLite persistence for stake workflows."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from stakestore.core.exceptions import DuplicateRequest
from stakestore.models.enums import TERMINAL_PHASES, RequestSource, WorkflowPhase
from stakestore.models.stake import StakeRequest, StakeWorkflowState


class WorkflowDatabase:
    """SQLite database for stake workflow state.

    Features:
    - WAL mode for better concurrency
    - One row per request id; the primary key is the idempotency key
    - Event audit trail
    - Recorded holding associations for completed stakes

    Workflow rows are never deleted.
    """

    def __init__(self, db_path: str = "data/stakes.db", logger: Optional[logging.Logger] = None):
        """Initialize database.

        Args:
            db_path: Path to SQLite database file
            logger: Optional logger instance
        """
        self.db_path = Path(db_path)
        self.logger = logger or logging.getLogger(__name__)

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            # Amounts are TEXT: uint256 values overflow SQLite integers
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    request_id TEXT PRIMARY KEY,
                    user_address TEXT NOT NULL,
                    input_token_address TEXT NOT NULL,
                    input_amount TEXT NOT NULL,
                    target_market TEXT NOT NULL,
                    slippage_tolerance REAL NOT NULL,
                    source TEXT NOT NULL,
                    request_created_at TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    last_error TEXT,
                    approval_tx_hash TEXT,
                    mint_tx_hash TEXT,
                    attempts TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wf_phase ON workflows(phase)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wf_user ON workflows(user_address)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details TEXT,
                    FOREIGN KEY (request_id) REFERENCES workflows(request_id)
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_event_request ON workflow_events(request_id)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stake_records (
                    request_id TEXT PRIMARY KEY,
                    user_address TEXT NOT NULL,
                    market_id TEXT NOT NULL,
                    principal_token_address TEXT NOT NULL,
                    principal_token_balance TEXT NOT NULL,
                    mint_tx_hash TEXT NOT NULL,
                    block_number INTEGER,
                    recorded_at TEXT NOT NULL,
                    FOREIGN KEY (request_id) REFERENCES workflows(request_id)
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_record_user ON stake_records(user_address)")

        self.logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with auto-commit/rollback.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create_workflow(self, request: StakeRequest, state: StakeWorkflowState) -> None:
        """Insert a new workflow row.

        Raises:
            DuplicateRequest: If the request id already exists
        """
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO workflows (
                        request_id, user_address, input_token_address, input_amount,
                        target_market, slippage_tolerance, source, request_created_at,
                        phase, last_error, approval_tx_hash, mint_tx_hash, attempts,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        request.request_id,
                        request.user_address,
                        request.input_token_address,
                        str(request.input_amount),
                        request.target_market,
                        request.slippage_tolerance,
                        request.source.value,
                        request.created_at.isoformat(),
                        state.phase.value,
                        state.last_error,
                        state.approval_tx_hash,
                        state.mint_tx_hash,
                        json.dumps(state.attempts),
                        state.created_at.isoformat(),
                        state.updated_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRequest(request.request_id) from e

    def save_state(self, state: StakeWorkflowState) -> None:
        """Persist a workflow state.

        A recorded mint hash is never overwritten or cleared, and a recorded
        approval hash is never cleared.
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE workflows SET
                    phase = ?,
                    last_error = ?,
                    approval_tx_hash = COALESCE(?, approval_tx_hash),
                    mint_tx_hash = COALESCE(mint_tx_hash, ?),
                    attempts = ?,
                    updated_at = ?
                WHERE request_id = ?
            """,
                (
                    state.phase.value,
                    state.last_error,
                    state.approval_tx_hash,
                    state.mint_tx_hash,
                    json.dumps(state.attempts),
                    state.updated_at.isoformat(),
                    state.request_id,
                ),
            )

    def set_mint_tx_hash(self, request_id: str, tx_hash: str) -> bool:
        """Record the mint hash if none is recorded yet.

        Returns:
            True if this call recorded it
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE workflows SET mint_tx_hash = ?, updated_at = ?
                WHERE request_id = ? AND mint_tx_hash IS NULL
            """,
                (tx_hash, datetime.now().isoformat(), request_id),
            )
            return cursor.rowcount == 1

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> StakeRequest:
        return StakeRequest(
            request_id=row["request_id"],
            user_address=row["user_address"],
            input_token_address=row["input_token_address"],
            input_amount=int(row["input_amount"]),
            target_market=row["target_market"],
            slippage_tolerance=row["slippage_tolerance"],
            source=RequestSource(row["source"]),
            created_at=datetime.fromisoformat(row["request_created_at"]),
        )

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> StakeWorkflowState:
        return StakeWorkflowState(
            request_id=row["request_id"],
            phase=WorkflowPhase(row["phase"]),
            last_error=row["last_error"],
            approval_tx_hash=row["approval_tx_hash"],
            mint_tx_hash=row["mint_tx_hash"],
            attempts=json.loads(row["attempts"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _fetch_row(self, request_id: str) -> Optional[sqlite3.Row]:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT * FROM workflows WHERE request_id = ?", (request_id,)
            ).fetchone()

    def load_state(self, request_id: str) -> Optional[StakeWorkflowState]:
        row = self._fetch_row(request_id)
        return self._row_to_state(row) if row else None

    def load_request(self, request_id: str) -> Optional[StakeRequest]:
        row = self._fetch_row(request_id)
        return self._row_to_request(row) if row else None

    def load_unfinished_workflows(self) -> list[tuple[StakeRequest, StakeWorkflowState]]:
        """Load workflows that were interrupted before reaching a terminal phase.

        Returns:
            (request, state) pairs ordered by creation time
        """
        terminal = [p.value for p in TERMINAL_PHASES]
        placeholders = ", ".join("?" for _ in terminal)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM workflows
                WHERE phase NOT IN ({placeholders})
                ORDER BY created_at
            """,
                terminal,
            ).fetchall()
        return [(self._row_to_request(r), self._row_to_state(r)) for r in rows]

    def list_workflows(
        self, phase: Optional[WorkflowPhase] = None, limit: int = 100
    ) -> list[StakeWorkflowState]:
        """Query workflows, newest first.

        Args:
            phase: Optional phase filter
            limit: Maximum number of workflows to return
        """
        with self._get_connection() as conn:
            if phase:
                rows = conn.execute(
                    """
                    SELECT * FROM workflows WHERE phase = ?
                    ORDER BY created_at DESC LIMIT ?
                """,
                    (phase.value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM workflows ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
        return [self._row_to_state(r) for r in rows]

    def record_event(self, request_id: str, event_type: str, details: dict):
        """Record an event.

        Args:
            request_id: Stake request identifier
            event_type: Event type name
            details: Event details dictionary
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO workflow_events (request_id, event_type, timestamp, details)
                VALUES (?, ?, ?, ?)
            """,
                (request_id, event_type, datetime.now().isoformat(), json.dumps(details, default=str)),
            )

    def get_events(self, request_id: str) -> list[dict]:
        """Get events for a workflow, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_events
                WHERE request_id = ?
                ORDER BY id
            """,
                (request_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def record_stake(
        self,
        request_id: str,
        user_address: str,
        market_id: str,
        principal_token_address: str,
        principal_token_balance: int,
        mint_tx_hash: str,
        block_number: Optional[int] = None,
    ) -> None:
        """Persist the holding association of a completed stake (idempotent per request)."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO stake_records (
                    request_id, user_address, market_id, principal_token_address,
                    principal_token_balance, mint_tx_hash, block_number, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    request_id,
                    user_address,
                    market_id,
                    principal_token_address,
                    str(principal_token_balance),
                    mint_tx_hash,
                    block_number,
                    datetime.now().isoformat(),
                ),
            )

    def get_stake_records(self, user_address: Optional[str] = None) -> list[dict]:
        """Get recorded stakes, optionally for one user."""
        with self._get_connection() as conn:
            if user_address:
                rows = conn.execute(
                    """
                    SELECT * FROM stake_records
                    WHERE lower(user_address) = lower(?)
                    ORDER BY recorded_at
                """,
                    (user_address,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM stake_records ORDER BY recorded_at").fetchall()
        records = [dict(row) for row in rows]
        for record in records:
            record["principal_token_balance"] = int(record["principal_token_balance"])
        return records
