"""
Match candidate and review decision persistence for PatientMatch.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd

from ..errors import InvalidRequest, NotFound, StateConflict
from ..models import (
    DISPLAY_FIELDS, OPEN_STATUSES, MatchCandidate, MatchPriority, MatchStatus,
    ReviewDecision, new_id, utc_now,
)

logger = logging.getLogger(__name__)

# Columns refreshed when an existing pair is re-scored; status and review
# fields are never touched by scoring.
SCORE_COLUMNS = [
    "overall_match_score",
    "field_scores",
    "matching_fields_used",
    "priority",
    "blocking_key",
    "auto_match_eligible",
    "auto_match_blocked_reason",
]


def _score_values(candidate: MatchCandidate) -> Dict[str, Any]:
    return {
        "overall_match_score": candidate.overall_match_score,
        "field_scores": json.dumps(candidate.field_scores, sort_keys=True),
        "matching_fields_used": json.dumps(candidate.matching_fields_used),
        "priority": candidate.priority.value,
        "blocking_key": candidate.blocking_key,
        "auto_match_eligible": 1 if candidate.auto_match_eligible else 0,
        "auto_match_blocked_reason": candidate.auto_match_blocked_reason,
    }


def _parse(enum_type, value):
    try:
        return enum_type(value)
    except ValueError as e:
        raise InvalidRequest(f"Unknown {enum_type.__name__}: {value!r}") from e


def _escape_like(term: str) -> str:
    """Escape LIKE wildcards so the term matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CandidateStore:
    """
    Reads and writes match candidates and their review decisions.

    Methods take an open connection; state changes are compare-and-set so
    they only apply when the stored status is the one the caller read.
    """

    def upsert_candidate(self, conn: sqlite3.Connection,
                         candidate: MatchCandidate) -> Tuple[MatchCandidate, bool]:
        """
        Insert a candidate, or refresh the scores of the existing candidate
        for the same pair and algorithm version.

        Returns:
            Tuple of (stored candidate, created flag)
        """
        row = conn.execute(
            "SELECT id FROM match_candidates "
            "WHERE patient_id_a = ? AND patient_id_b = ? AND algorithm_version = ?",
            [candidate.patient_id_a, candidate.patient_id_b, candidate.algorithm_version],
        ).fetchone()

        values = _score_values(candidate)
        now = utc_now()

        if row is not None:
            assignments = ", ".join(f"{column} = ?" for column in SCORE_COLUMNS)
            conn.execute(
                f"UPDATE match_candidates SET {assignments}, updated_at = ? WHERE id = ?",
                [values[column] for column in SCORE_COLUMNS] + [now, row["id"]],
            )
            return self.get_candidate(conn, row["id"]), False

        conn.execute('''
            INSERT INTO match_candidates (
                id, tenant_id, patient_id_a, patient_id_b, overall_match_score,
                field_scores, matching_fields_used, priority, status, blocking_key,
                algorithm_version, auto_match_eligible, auto_match_blocked_reason,
                detected_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [
            candidate.id, candidate.tenant_id, candidate.patient_id_a, candidate.patient_id_b,
            values["overall_match_score"], values["field_scores"], values["matching_fields_used"],
            values["priority"], MatchStatus.PENDING.value, values["blocking_key"],
            candidate.algorithm_version, values["auto_match_eligible"],
            values["auto_match_blocked_reason"], now, now,
        ])
        return self.get_candidate(conn, candidate.id), True

    def get_candidate(self, conn: sqlite3.Connection, candidate_id: str) -> MatchCandidate:
        row = conn.execute("SELECT * FROM match_candidates WHERE id = ?", [candidate_id]).fetchone()
        if row is None:
            raise NotFound(f"Match candidate {candidate_id} not found", entity_id=candidate_id)
        return MatchCandidate.from_row(row)

    def find_candidate(self, conn: sqlite3.Connection, patient_id_a: str, patient_id_b: str,
                       algorithm_version: Optional[str] = None) -> Optional[MatchCandidate]:
        """Find the candidate for an unordered pair, optionally for one algorithm version."""
        a, b = sorted((patient_id_a, patient_id_b))
        query = "SELECT * FROM match_candidates WHERE patient_id_a = ? AND patient_id_b = ?"
        params: List[Any] = [a, b]
        if algorithm_version:
            query += " AND algorithm_version = ?"
            params.append(algorithm_version)
        query += " ORDER BY detected_at DESC LIMIT 1"
        row = conn.execute(query, params).fetchone()
        return MatchCandidate.from_row(row) if row else None

    def candidates_for_identity(self, conn: sqlite3.Connection, identity_id: str,
                                statuses: Optional[List[MatchStatus]] = None) -> List[MatchCandidate]:
        query = "SELECT * FROM match_candidates WHERE (patient_id_a = ? OR patient_id_b = ?)"
        params: List[Any] = [identity_id, identity_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(status.value for status in statuses)
        return [MatchCandidate.from_row(row) for row in conn.execute(query, params).fetchall()]

    def compare_and_set_status(self, conn: sqlite3.Connection, candidate_id: str,
                               expected: MatchStatus, new_status: MatchStatus,
                               reviewer_id: Optional[str] = None, notes: Optional[str] = None) -> MatchCandidate:
        """
        Move a candidate from ``expected`` to ``new_status``.

        Raises:
            StateConflict: If the stored status is no longer ``expected``
        """
        now = utc_now()
        cursor = conn.execute('''
            UPDATE match_candidates
            SET status = ?, updated_at = ?,
                reviewed_by = COALESCE(?, reviewed_by),
                reviewed_at = CASE WHEN ? IS NULL THEN reviewed_at ELSE ? END,
                review_notes = COALESCE(?, review_notes)
            WHERE id = ? AND status = ?
        ''', [new_status.value, now, reviewer_id, reviewer_id, now, notes,
              candidate_id, expected.value])

        if cursor.rowcount != 1:
            actual = self.get_candidate(conn, candidate_id).status
            raise StateConflict(
                f"Candidate {candidate_id} is {actual.value}, expected {expected.value}",
                entity_id=candidate_id, expected=expected.value, actual=actual.value,
            )
        return self.get_candidate(conn, candidate_id)

    def insert_review_decision(self, conn: sqlite3.Connection, candidate_id: str, reviewer_id: str,
                               from_status: MatchStatus, decision: MatchStatus,
                               notes: Optional[str] = None) -> ReviewDecision:
        record = ReviewDecision(
            id=new_id(),
            candidate_id=candidate_id,
            reviewer_id=reviewer_id,
            from_status=from_status,
            decision=decision,
            notes=notes,
        )
        conn.execute(
            "INSERT INTO review_decisions (id, candidate_id, reviewer_id, from_status, decision, notes, decided_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            [record.id, record.candidate_id, record.reviewer_id, record.from_status.value,
             record.decision.value, record.notes, record.decided_at],
        )
        return record

    def list_review_decisions(self, conn: sqlite3.Connection, candidate_id: str) -> List[ReviewDecision]:
        rows = conn.execute(
            "SELECT * FROM review_decisions WHERE candidate_id = ? ORDER BY decided_at, rowid",
            [candidate_id],
        ).fetchall()
        return [ReviewDecision.from_row(row) for row in rows]

    def list_candidates(self, conn: sqlite3.Connection, tenant_id: Optional[str] = None,
                        status: Optional[str] = None, priority: Optional[str] = None,
                        search: Optional[str] = None, limit: int = 50,
                        offset: int = 0) -> List[MatchCandidate]:
        """
        List candidates joined with display demographics of both sides.

        Ordered by priority (urgent first), then score, then detection time.
        Open candidates are only listed while both identities are active.

        Args:
            tenant_id: Restrict to one tenant
            status: Filter by candidate status
            priority: Filter by priority tier
            search: Case-insensitive substring matched against either side's
                name, MRN or phone
            limit: Page size
            offset: Page offset

        Returns:
            Page of candidates with ``patient_a``/``patient_b`` populated
        """
        side_columns = []
        for side in ("a", "b"):
            for name in DISPLAY_FIELDS:
                side_columns.append(f"p{side}.{name} AS {side}_{name}")

        open_statuses = ", ".join(f"'{s.value}'" for s in OPEN_STATUSES)
        query = f'''
            SELECT c.*, {", ".join(side_columns)}
            FROM match_candidates AS c
            JOIN patient_identities AS pa ON pa.id = c.patient_id_a
            JOIN patient_identities AS pb ON pb.id = c.patient_id_b
            WHERE (c.status NOT IN ({open_statuses}) OR (pa.active = 1 AND pb.active = 1))
        '''
        params: List[Any] = []
        if tenant_id:
            query += " AND c.tenant_id = ?"
            params.append(tenant_id)
        if status:
            query += " AND c.status = ?"
            params.append(_parse(MatchStatus, status).value)
        if priority:
            query += " AND c.priority = ?"
            params.append(_parse(MatchPriority, priority).value)
        if search:
            pattern = "%" + _escape_like(search.lower()) + "%"
            clauses = []
            for side in ("pa", "pb"):
                for name in ("first_name", "last_name", "mrn", "phone"):
                    clauses.append(f"LOWER({side}.{name}) LIKE ? ESCAPE '\\'")
                    params.append(pattern)
            query += " AND (" + " OR ".join(clauses) + ")"

        rank = " ".join(f"WHEN '{p.value}' THEN {p.rank}" for p in MatchPriority)
        query += f'''
            ORDER BY CASE c.priority {rank} ELSE -1 END DESC,
                     c.overall_match_score DESC, c.detected_at, c.id
            LIMIT ? OFFSET ?
        '''
        params.extend([int(limit), int(offset)])

        candidates = []
        for row in conn.execute(query, params).fetchall():
            record = dict(row)
            candidate = MatchCandidate.from_row(record)
            candidate.patient_a = {"id": record["patient_id_a"],
                                   **{name: record[f"a_{name}"] for name in DISPLAY_FIELDS}}
            candidate.patient_b = {"id": record["patient_id_b"],
                                   **{name: record[f"b_{name}"] for name in DISPLAY_FIELDS}}
            candidates.append(candidate)
        return candidates

    def candidate_stats(self, conn: sqlite3.Connection, tenant_id: Optional[str] = None) -> Dict[str, int]:
        """
        Count candidates by status, plus high and urgent priority among pending.

        Returns:
            Dictionary of counts
        """
        query = "SELECT status, priority FROM match_candidates"
        params: List[Any] = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        df = pd.read_sql_query(query, conn, params=params)

        by_status = df["status"].value_counts().to_dict() if not df.empty else {}
        pending = df[df["status"] == MatchStatus.PENDING.value] if not df.empty else df

        return {
            "total": int(len(df)),
            "pending": int(by_status.get(MatchStatus.PENDING.value, 0)),
            "under_review": int(by_status.get(MatchStatus.UNDER_REVIEW.value, 0)),
            "confirmed_match": int(by_status.get(MatchStatus.CONFIRMED_MATCH.value, 0)),
            "confirmed_not_match": int(by_status.get(MatchStatus.CONFIRMED_NOT_MATCH.value, 0)),
            "deferred": int(by_status.get(MatchStatus.DEFERRED.value, 0)),
            "merged": int(by_status.get(MatchStatus.MERGED.value, 0)),
            "superseded": int(by_status.get(MatchStatus.SUPERSEDED.value, 0)),
            "high_priority": int((pending["priority"] == MatchPriority.HIGH.value).sum()) if len(pending) else 0,
            "urgent_priority": int((pending["priority"] == MatchPriority.URGENT.value).sum()) if len(pending) else 0,
        }

    def count_auto_merges_since(self, conn: sqlite3.Connection, actor: str, since: str) -> int:
        """Count merges performed by ``actor`` at or after ``since``."""
        row = conn.execute(
            "SELECT COUNT(*) FROM merge_records WHERE performed_by = ? AND performed_at >= ?",
            [actor, since],
        ).fetchone()
        return int(row[0])
