"""
Audit trail for PatientMatch.

Every state mutation in the engine emits one audit event. Events are
written to an append-only SQLite table and exported as CSV for the
external compliance store; the engine itself never reads them back.
"""

import sqlite3
import logging
import pandas as pd
from datetime import datetime
from typing import Any, Dict, List, Optional
from pathlib import Path
import json

from ..models import utc_now

logger = logging.getLogger(__name__)


class AuditSink:
    """
    Append-only sink for audit events.

    The events table is protected by triggers that abort any UPDATE or
    DELETE, so recorded events cannot be rewritten.
    """

    def __init__(self, db_path: str = "data/audit.db", export_path: str = "data/audit_exports"):
        """
        Initialize audit sink.

        Args:
            db_path: Path to the audit SQLite database
            export_path: Directory for CSV exports
        """
        self.db_path = db_path
        self.export_path = export_path

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info("Initialized AuditSink")

    def _init_database(self):
        """Initialize audit database with the events table and its guards."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_events (
                event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_ids TEXT NOT NULL,
                before_state TEXT,
                after_state TEXT,
                occurred_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS audit_events_no_update
            BEFORE UPDATE ON audit_events
            BEGIN
                SELECT RAISE(ABORT, 'audit events are append-only');
            END
        ''')

        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS audit_events_no_delete
            BEFORE DELETE ON audit_events
            BEGIN
                SELECT RAISE(ABORT, 'audit events are append-only');
            END
        ''')

        conn.commit()
        conn.close()

        logger.info("Initialized audit database")

    def emit(self, actor: str, action: str, entity_type: str, entity_ids: List[str],
             before: Optional[Dict[str, Any]] = None, after: Optional[Dict[str, Any]] = None) -> int:
        """
        Record one audit event.

        Args:
            actor: User or system identity that performed the action
            action: Action name (e.g. ``candidate.reviewed``)
            entity_type: Kind of entity changed
            entity_ids: Ids of the entities involved
            before: Summary of state before the change
            after: Summary of state after the change

        Returns:
            Event id
        """
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.execute('''
                INSERT INTO audit_events
                (actor, action, entity_type, entity_ids, before_state, after_state, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', [
                actor,
                action,
                entity_type,
                json.dumps(list(entity_ids)),
                json.dumps(before, sort_keys=True, default=str) if before is not None else None,
                json.dumps(after, sort_keys=True, default=str) if after is not None else None,
                utc_now(),
            ])
            conn.commit()
            event_id = cursor.lastrowid
        finally:
            conn.close()

        logger.debug(f"Audit event {event_id}: {action} on {entity_type} by {actor}")
        return event_id

    def export_events(self, output_path: Optional[str] = None, since: Optional[str] = None) -> str:
        """
        Export audit events to CSV for the external compliance store.

        Args:
            output_path: Output file path (optional)
            since: Only export events at or after this ISO timestamp

        Returns:
            Path to exported file
        """
        if output_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            Path(self.export_path).mkdir(parents=True, exist_ok=True)
            output_path = f"{self.export_path}/audit_events_{timestamp}.csv"

        query = "SELECT * FROM audit_events"
        params: List[Any] = []
        if since:
            query += " WHERE occurred_at >= ?"
            params.append(since)
        query += " ORDER BY event_id"

        conn = sqlite3.connect(self.db_path)
        try:
            events_df = pd.read_sql_query(query, conn, params=params)
        finally:
            conn.close()

        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        events_df.to_csv(output_path, index=False)
        logger.info(f"Exported {len(events_df)} audit events to {output_path}")

        return output_path


def create_audit_sink(config: Dict) -> AuditSink:
    """
    Convenience function to create an audit sink from the engine configuration.

    Args:
        config: Engine configuration

    Returns:
        Initialized audit sink
    """
    audit_config = config.get("audit", {})
    return AuditSink(
        db_path=audit_config.get("db_path", "data/audit.db"),
        export_path=audit_config.get("export_path", "data/audit_exports"),
    )
