"""DuckDB-based upload event ledger.

Every upload session that leaves the registry (completed, aborted, expired or
failed) is appended here, giving operators a queryable history of abandoned
and failed uploads without scraping logs.

Database Schema:
    upload_events table:
        - id: Auto-incrementing primary key
        - upload_id: Upload session identifier
        - conversation_id: Conversation the attachment belongs to
        - outcome: 'completed', 'aborted', 'expired' or 'failed'
        - reason: Failure reason code (failed/aborted only)
        - total_chunks: Declared part count
        - object_key: Store object key, if one was assigned
        - size: Final object size in bytes (completed only)
        - timestamp: When the event was recorded (UTC)

Thread Safety:
    The DuckDB connection is NOT thread-safe. Each worker process holds its
    own connection to the same file.

Usage:
    ledger = UploadEventLog.get_instance()
    ledger.record(UploadEvent(upload_id="abc", outcome=UploadOutcome.EXPIRED))
    counts = ledger.outcome_counts()
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

import duckdb

from .schemas import UploadEvent, UploadOutcome

_COLUMNS = (
    "upload_id, conversation_id, outcome, reason, total_chunks, "
    "object_key, size, timestamp"
)


class UploadEventLog:
    """Singleton ledger of finished upload sessions stored in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["UploadEventLog"] = None
    _db_path: str = "upload_events.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the ledger database.

        Args:
            db_path: Path to DuckDB file. Defaults to "upload_events.duckdb".
                ``":memory:"`` keeps the ledger in memory.
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "UploadEventLog":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS upload_events_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS upload_events (
                id INTEGER DEFAULT nextval('upload_events_seq') PRIMARY KEY,
                upload_id VARCHAR NOT NULL,
                conversation_id VARCHAR,
                outcome VARCHAR NOT NULL,
                reason VARCHAR,
                total_chunks INTEGER,
                object_key VARCHAR,
                size BIGINT,
                timestamp TIMESTAMP NOT NULL
            )
        """)

    def record(self, event: UploadEvent) -> UploadEvent:
        """Append one event.

        Args:
            event: The event to store. ``timestamp`` is overwritten.

        Returns:
            The stored event with its timestamp.
        """
        timestamp = datetime.now(timezone.utc).replace(tzinfo=None)
        conn = self._get_connection()
        conn.execute(
            f"""
            INSERT INTO upload_events ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                event.upload_id,
                event.conversation_id,
                event.outcome.value,
                event.reason,
                event.total_chunks,
                event.object_key,
                event.size,
                timestamp,
            ]
        )
        return event.model_copy(update={"timestamp": timestamp})

    def get_events(
        self,
        upload_id: Optional[str] = None,
        outcome: Optional[UploadOutcome] = None,
        limit: int = 100,
    ) -> List[UploadEvent]:
        """Return events newest first, optionally filtered.

        Args:
            upload_id: Only events for this session.
            outcome: Only events with this outcome.
            limit: Maximum number of events to return.
        """
        clauses = []
        params: list = []
        if upload_id:
            clauses.append("upload_id = ?")
            params.append(upload_id)
        if outcome is not None:
            clauses.append("outcome = ?")
            params.append(outcome.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        rows = self._get_connection().execute(
            f"""
            SELECT {_COLUMNS}
            FROM upload_events
            {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            params
        ).fetchall()

        return [
            UploadEvent(
                upload_id=row[0],
                conversation_id=row[1],
                outcome=UploadOutcome(row[2]),
                reason=row[3],
                total_chunks=row[4],
                object_key=row[5],
                size=row[6],
                timestamp=row[7],
            )
            for row in rows
        ]

    def outcome_counts(self) -> Dict[str, int]:
        """Number of recorded events per outcome (every outcome present)."""
        rows = self._get_connection().execute(
            "SELECT outcome, COUNT(*) FROM upload_events GROUP BY outcome"
        ).fetchall()
        counts = {outcome.value: 0 for outcome in UploadOutcome}
        for outcome, total in rows:
            counts[outcome] = int(total)
        return counts

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
