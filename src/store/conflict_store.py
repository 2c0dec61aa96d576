"""
Conflict record persistence for PatientMatch.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..errors import NotFound
from ..models import ConflictRecord, ConflictStatus, ResolutionAction, utc_now

logger = logging.getLogger(__name__)


class ConflictStore:
    """Reads and writes source/local conflict records."""

    def insert_conflict(self, conn: sqlite3.Connection, record: ConflictRecord) -> ConflictRecord:
        conn.execute('''
            INSERT INTO conflict_records (
                id, resource_type, resource_id, source_system, source_payload,
                local_payload, diverging_fields, status, requires_manual_correction,
                detected_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [
            record.id, record.resource_type, record.resource_id, record.source_system,
            json.dumps(record.source_payload, sort_keys=True, default=str),
            json.dumps(record.local_payload, sort_keys=True, default=str),
            json.dumps(record.diverging_fields),
            ConflictStatus.OPEN.value, 0, record.detected_at,
        ])
        return record

    def get_conflict(self, conn: sqlite3.Connection, conflict_id: str) -> ConflictRecord:
        row = conn.execute("SELECT * FROM conflict_records WHERE id = ?", [conflict_id]).fetchone()
        if row is None:
            raise NotFound(f"Conflict {conflict_id} not found", entity_id=conflict_id)
        return ConflictRecord.from_row(row)

    def find_open_conflict(self, conn: sqlite3.Connection, resource_type: str,
                           resource_id: str) -> Optional[ConflictRecord]:
        row = conn.execute(
            "SELECT * FROM conflict_records WHERE resource_type = ? AND resource_id = ? AND status = ? "
            "ORDER BY detected_at DESC LIMIT 1",
            [resource_type, resource_id, ConflictStatus.OPEN.value],
        ).fetchone()
        return ConflictRecord.from_row(row) if row else None

    def mark_resolved(self, conn: sqlite3.Connection, conflict_id: str, action: ResolutionAction,
                      resolved_payload: Optional[Dict[str, Any]], resolver_id: str,
                      notes: Optional[str], requires_manual_correction: bool) -> bool:
        """
        Resolve an open conflict.

        Returns:
            False when the conflict was no longer open
        """
        cursor = conn.execute('''
            UPDATE conflict_records
            SET status = ?, resolution_action = ?, resolved_payload = ?, resolver_id = ?,
                notes = ?, requires_manual_correction = ?, resolved_at = ?
            WHERE id = ? AND status = ?
        ''', [
            ConflictStatus.RESOLVED.value, action.value,
            json.dumps(resolved_payload, sort_keys=True, default=str) if resolved_payload is not None else None,
            resolver_id, notes, 1 if requires_manual_correction else 0, utc_now(),
            conflict_id, ConflictStatus.OPEN.value,
        ])
        return cursor.rowcount == 1

    def list_conflicts(self, conn: sqlite3.Connection, status: Optional[str] = None,
                       resource_type: Optional[str] = None, limit: int = 50,
                       offset: int = 0) -> List[ConflictRecord]:
        query = "SELECT * FROM conflict_records WHERE 1=1"
        params: List[Any] = []
        if status:
            query += " AND status = ?"
            params.append(ConflictStatus(status).value)
        if resource_type:
            query += " AND resource_type = ?"
            params.append(resource_type)
        query += " ORDER BY detected_at DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [ConflictRecord.from_row(row) for row in conn.execute(query, params).fetchall()]
