"""
Patient record merger for PatientMatch.

Merges a confirmed duplicate pair into one surviving identity inside a
single database transaction: dependent rows are re-pointed at the survivor,
empty survivor attributes are filled from the merged identity with
provenance, and the merged identity is tombstoned.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd

from ..audit.audit_logger import AuditSink
from ..errors import InvalidRequest, MergeFailure, NotFound, StateConflict
from ..models import (
    DEMOGRAPHIC_FIELDS, OPEN_STATUSES, MatchStatus, MergeRecord, PatientIdentity, SurvivorPolicy,
    new_id, utc_now,
)
from ..store.candidate_store import CandidateStore
from ..store.database import Database
from ..store.identity_store import IdentityStore

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class MergeExecutor:
    """
    Executes merges of confirmed match candidates.

    Each merge is all-or-nothing: any failure rolls back every change and
    leaves the candidate in ``confirmed_match``.
    """

    def __init__(self, db: Database, config: Dict, audit: Optional[AuditSink] = None):
        """
        Initialize merge executor with configuration.

        Args:
            db: Engine database
            config: Merge configuration (survivor_policy, dependent_tables)
            audit: Audit sink for merge events
        """
        self.db = db
        self.config = config
        self.survivor_policy = SurvivorPolicy(config.get("survivor_policy", "earliest_created"))
        self.dependent_tables = list(config.get("dependent_tables", []))
        self.audit = audit
        self.identities = IdentityStore()
        self.candidates = CandidateStore()

        self.db.ensure_dependent_tables(self.dependent_tables)

        logger.info(f"Initialized MergeExecutor ({self.survivor_policy.value}, "
                    f"{len(self.dependent_tables)} dependent tables)")

    def select_survivor(self, identity_a: PatientIdentity,
                        identity_b: PatientIdentity) -> Tuple[PatientIdentity, PatientIdentity]:
        """
        Choose which identity survives the merge.

        Returns:
            Tuple of (survivor, merged)
        """
        if self.survivor_policy == SurvivorPolicy.MOST_COMPLETE:
            def rank(identity):
                filled = sum(1 for v in identity.demographics().values() if not _is_empty(v))
                return (-filled, identity.id)
        else:
            def rank(identity):
                return (identity.created_at, identity.id)

        survivor, merged = sorted([identity_a, identity_b], key=rank)
        return survivor, merged

    def merge_candidate(self, candidate_id: str, performed_by: str, survivor_id: Optional[str] = None,
                        reason: Optional[str] = None) -> MergeRecord:
        """
        Merge the two identities of a confirmed match candidate.

        Open candidates that involve the merged identity are superseded in
        the same transaction.

        Args:
            candidate_id: Candidate in ``confirmed_match``
            performed_by: Actor performing the merge
            survivor_id: Identity to keep, overriding the survivor policy
            reason: Why the records were merged

        Returns:
            The stored MergeRecord

        Raises:
            InvalidRequest: If performed_by is empty or survivor_id is not
                one of the pair
            StateConflict: If the candidate is not ``confirmed_match``
            MergeFailure: If the merge could not be completed; nothing was changed
        """
        if not performed_by:
            raise InvalidRequest("performed_by is required", entity_id=candidate_id)

        try:
            with self.db.transaction() as conn:
                record = self._merge(conn, candidate_id, performed_by, survivor_id, reason)
        except (StateConflict, NotFound, MergeFailure, InvalidRequest):
            raise
        except Exception as e:
            logger.error(f"Merge of candidate {candidate_id} rolled back: {e}")
            raise MergeFailure(
                f"Merge of candidate {candidate_id} failed: {e}", entity_id=candidate_id, cause=e
            ) from e

        logger.info(f"Merged identity {record.merged_id} into {record.survivor_id} "
                    f"({record.rows_moved} dependent rows moved, "
                    f"{len(record.superseded_candidates)} candidates superseded)")

        if self.audit:
            self.audit.emit(
                performed_by, "identity.merged", "patient_identity",
                [record.survivor_id, record.merged_id],
                before={"candidate_id": candidate_id, "status": MatchStatus.CONFIRMED_MATCH.value},
                after={"merge_id": record.id, "survivor_id": record.survivor_id,
                       "survivor_selection": record.survivor_selection, "reason": reason,
                       "fields_filled": sorted(f for f, src in record.field_provenance.items()
                                               if src == record.merged_id),
                       "rows_moved": record.rows_moved,
                       "superseded_candidates": record.superseded_candidates},
            )

        return record

    def _supersede_open_candidates(self, conn: sqlite3.Connection, merged_id: str, merge_id: str,
                                   performed_by: str, merging_candidate_id: str) -> List[str]:
        superseded = []
        statuses = OPEN_STATUSES + [MatchStatus.CONFIRMED_MATCH]
        for candidate in self.candidates.candidates_for_identity(conn, merged_id, statuses):
            if candidate.id == merging_candidate_id:
                continue
            self.candidates.insert_review_decision(
                conn, candidate.id, performed_by, candidate.status, MatchStatus.SUPERSEDED,
                notes=f"identity {merged_id} merged by {merge_id}",
            )
            self.candidates.compare_and_set_status(conn, candidate.id, candidate.status, MatchStatus.SUPERSEDED)
            superseded.append(candidate.id)
        return superseded

    def _merge(self, conn: sqlite3.Connection, candidate_id: str, performed_by: str,
               survivor_id: Optional[str] = None, reason: Optional[str] = None) -> MergeRecord:
        candidate = self.candidates.get_candidate(conn, candidate_id)
        if candidate.status != MatchStatus.CONFIRMED_MATCH:
            raise StateConflict(
                f"Candidate {candidate_id} is {candidate.status.value}, expected confirmed_match",
                entity_id=candidate_id,
                expected=MatchStatus.CONFIRMED_MATCH.value,
                actual=candidate.status.value,
            )
        if survivor_id is not None and survivor_id not in candidate.pair:
            raise InvalidRequest(f"Survivor {survivor_id} is not part of candidate {candidate_id}",
                                 entity_id=candidate_id)

        identity_a = self.identities.get_identity(conn, candidate.patient_id_a)
        identity_b = self.identities.get_identity(conn, candidate.patient_id_b)
        for identity in (identity_a, identity_b):
            if not identity.active:
                raise MergeFailure(
                    f"Identity {identity.id} was already merged into {identity.merged_into}",
                    entity_id=candidate_id,
                )

        if survivor_id is not None:
            survivor, merged = (identity_a, identity_b) if survivor_id == identity_a.id else (identity_b, identity_a)
            selection = "manual"
        else:
            survivor, merged = self.select_survivor(identity_a, identity_b)
            selection = self.survivor_policy.value

        migrations = []
        for dependent in self.dependent_tables:
            row_ids = self.identities.dependent_row_ids(conn, dependent["table"], dependent["column"], merged.id)
            self.identities.reassign_rows(conn, dependent["table"], dependent["column"], row_ids, survivor.id)
            migrations.append({"table": dependent["table"], "column": dependent["column"], "row_ids": row_ids})

        fills = {}
        provenance = {}
        for field_name in DEMOGRAPHIC_FIELDS:
            survivor_value = getattr(survivor, field_name)
            merged_value = getattr(merged, field_name)
            if not _is_empty(survivor_value):
                provenance[field_name] = survivor.id
            elif not _is_empty(merged_value):
                fills[field_name] = merged_value
                provenance[field_name] = merged.id

        self.identities.update_attributes(conn, survivor.id, fills)
        self.identities.tombstone(conn, merged.id, survivor.id)
        self.identities.clear_block_keys(conn, merged.id)

        merge_id = new_id()
        superseded = self._supersede_open_candidates(conn, merged.id, merge_id, performed_by, candidate.id)

        record = MergeRecord(
            id=merge_id,
            candidate_id=candidate.id,
            survivor_id=survivor.id,
            merged_id=merged.id,
            field_provenance=provenance,
            survivor_snapshot=survivor.to_dict(),
            merged_snapshot=merged.to_dict(),
            data_migrations=migrations,
            performed_by=performed_by,
            reason=reason,
            match_score=candidate.overall_match_score,
            survivor_selection=selection,
            superseded_candidates=superseded,
        )
        conn.execute('''
            INSERT INTO merge_records (
                id, candidate_id, survivor_id, merged_id, field_provenance,
                survivor_snapshot, merged_snapshot, data_migrations, performed_by, performed_at,
                reason, match_score, survivor_selection, superseded_candidates
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [
            record.id, record.candidate_id, record.survivor_id, record.merged_id,
            json.dumps(record.field_provenance, sort_keys=True),
            json.dumps(record.survivor_snapshot, sort_keys=True, default=str),
            json.dumps(record.merged_snapshot, sort_keys=True, default=str),
            json.dumps(record.data_migrations),
            record.performed_by, record.performed_at,
            record.reason, record.match_score, record.survivor_selection,
            json.dumps(record.superseded_candidates),
        ])

        self.candidates.insert_review_decision(
            conn, candidate.id, performed_by, MatchStatus.CONFIRMED_MATCH, MatchStatus.MERGED,
            notes=f"merge {record.id}",
        )
        self.candidates.compare_and_set_status(
            conn, candidate.id, MatchStatus.CONFIRMED_MATCH, MatchStatus.MERGED
        )
        return record

    def get_merge_record(self, merge_id: str) -> MergeRecord:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM merge_records WHERE id = ?", [merge_id]).fetchone()
        if row is None:
            raise NotFound(f"Merge {merge_id} not found", entity_id=merge_id)
        return MergeRecord.from_row(row)

    def unmerge(self, merge_id: str, performed_by: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Undo a merge.

        Reactivates the merged identity, moves its dependent rows back and
        restores the survivor's attributes from the pre-merge snapshot. The
        MergeRecord itself is kept unchanged; the rollback is recorded
        separately.

        Args:
            merge_id: Merge to undo
            performed_by: Actor performing the rollback
            reason: Free-text reason

        Returns:
            Rollback summary

        Raises:
            NotFound: If the merge does not exist
            StateConflict: If the merge was already rolled back, or the
                survivor has since been merged into another identity
        """
        if not performed_by:
            raise InvalidRequest("performed_by is required", entity_id=merge_id)

        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM merge_records WHERE id = ?", [merge_id]).fetchone()
            if row is None:
                raise NotFound(f"Merge {merge_id} not found", entity_id=merge_id)
            record = MergeRecord.from_row(row)

            rolled_back = conn.execute(
                "SELECT 1 FROM merge_rollbacks WHERE merge_id = ?", [merge_id]
            ).fetchone()
            if rolled_back:
                raise StateConflict(f"Merge {merge_id} was already rolled back", entity_id=merge_id,
                                    expected="merged", actual="rolled_back")

            survivor = self.identities.get_identity(conn, record.survivor_id)
            merged = self.identities.get_identity(conn, record.merged_id)
            if not survivor.active:
                raise StateConflict(
                    f"Survivor {survivor.id} has since been merged into {survivor.merged_into}",
                    entity_id=merge_id, expected="active", actual="merged",
                )
            if merged.active or merged.merged_into != survivor.id:
                raise StateConflict(f"Identity {merged.id} is no longer merged into {survivor.id}",
                                    entity_id=merge_id)

            for migration in record.data_migrations:
                self.identities.reassign_rows(
                    conn, migration["table"], migration["column"], migration["row_ids"], merged.id
                )

            self.identities.update_attributes(
                conn, survivor.id,
                {name: record.survivor_snapshot.get(name) for name in DEMOGRAPHIC_FIELDS},
            )
            self.identities.reactivate(conn, merged.id)

            reopened = []
            for candidate_id in record.superseded_candidates:
                candidate = self.candidates.get_candidate(conn, candidate_id)
                if candidate.status != MatchStatus.SUPERSEDED:
                    continue
                other_id = candidate.patient_id_b if candidate.patient_id_a == merged.id else candidate.patient_id_a
                if not self.identities.get_identity(conn, other_id).active:
                    continue
                self.candidates.insert_review_decision(
                    conn, candidate_id, performed_by, MatchStatus.SUPERSEDED, MatchStatus.PENDING,
                    notes=f"merge {merge_id} rolled back",
                )
                self.candidates.compare_and_set_status(conn, candidate_id, MatchStatus.SUPERSEDED,
                                                       MatchStatus.PENDING)
                reopened.append(candidate_id)

            rollback = {
                "id": new_id(),
                "merge_id": merge_id,
                "performed_by": performed_by,
                "reason": reason,
                "rolled_back_at": utc_now(),
            }
            conn.execute(
                "INSERT INTO merge_rollbacks (id, merge_id, performed_by, reason, rolled_back_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [rollback["id"], merge_id, performed_by, reason, rollback["rolled_back_at"]],
            )

        logger.info(f"Rolled back merge {merge_id}: identity {record.merged_id} restored")

        if self.audit:
            self.audit.emit(
                performed_by, "identity.unmerged", "patient_identity",
                [record.survivor_id, record.merged_id],
                before={"merge_id": merge_id, "merged_into": record.survivor_id},
                after={"rollback_id": rollback["id"], "reason": reason,
                       "rows_restored": record.rows_moved, "candidates_reopened": reopened},
            )

        return {**rollback, "survivor_id": record.survivor_id, "restored_id": record.merged_id,
                "rows_restored": record.rows_moved, "candidates_reopened": reopened}

    def verify_merge(self, merge_id: str, verified_by: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Record that a reviewer checked a completed merge.

        The stored merge is compared with the current state: the merged
        identity must still be tombstoned into the survivor and no
        configured dependent table may still point at it.

        Args:
            merge_id: Merge to verify
            verified_by: Reviewer verifying the merge
            notes: Verification notes

        Returns:
            Verification summary with ``consistent`` and ``issues``

        Raises:
            NotFound: If the merge does not exist
            StateConflict: If the merge was rolled back or already verified
        """
        if not verified_by:
            raise InvalidRequest("verified_by is required", entity_id=merge_id)

        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM merge_records WHERE id = ?", [merge_id]).fetchone()
            if row is None:
                raise NotFound(f"Merge {merge_id} not found", entity_id=merge_id)
            record = MergeRecord.from_row(row)

            if conn.execute("SELECT 1 FROM merge_rollbacks WHERE merge_id = ?", [merge_id]).fetchone():
                raise StateConflict(f"Merge {merge_id} was rolled back", entity_id=merge_id,
                                    expected="merged", actual="rolled_back")
            if conn.execute("SELECT 1 FROM merge_verifications WHERE merge_id = ?", [merge_id]).fetchone():
                raise StateConflict(f"Merge {merge_id} was already verified", entity_id=merge_id,
                                    expected="unverified", actual="verified")

            issues = []
            merged = self.identities.get_identity(conn, record.merged_id)
            if merged.active or merged.merged_into != record.survivor_id:
                issues.append(f"identity {merged.id} is not merged into {record.survivor_id}")
            for dependent in self.dependent_tables:
                left = self.identities.dependent_row_ids(conn, dependent["table"], dependent["column"], merged.id)
                if left:
                    issues.append(f"{len(left)} rows in {dependent['table']} still reference {merged.id}")

            verification = {
                "id": new_id(),
                "merge_id": merge_id,
                "verified_by": verified_by,
                "consistent": not issues,
                "issues": issues,
                "notes": notes,
                "verified_at": utc_now(),
            }
            conn.execute(
                "INSERT INTO merge_verifications (id, merge_id, verified_by, consistent, issues, notes, verified_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [verification["id"], merge_id, verified_by, 1 if not issues else 0,
                 json.dumps(issues), notes, verification["verified_at"]],
            )

        if issues:
            logger.warning(f"Merge {merge_id} verified with {len(issues)} issues")
        else:
            logger.info(f"Merge {merge_id} verified by {verified_by}")

        if self.audit:
            self.audit.emit(
                verified_by, "merge.verified", "merge_record", [merge_id, record.survivor_id],
                after={"consistent": verification["consistent"], "issues": issues},
            )

        return verification

    def get_reversible_merges(self, limit: int = 50) -> List[Dict[str, Any]]:
        """List merges that can still be rolled back, newest first."""
        with self.db.read() as conn:
            rows = conn.execute('''
                SELECT m.*
                FROM merge_records AS m
                JOIN patient_identities AS s ON s.id = m.survivor_id
                JOIN patient_identities AS l ON l.id = m.merged_id
                LEFT JOIN merge_rollbacks AS r ON r.merge_id = m.id
                WHERE r.id IS NULL
                  AND s.active = 1
                  AND l.active = 0 AND l.merged_into = m.survivor_id
                ORDER BY m.performed_at DESC
                LIMIT ?
            ''', [limit]).fetchall()

        return [
            {
                "merge_id": record.id,
                "survivor_id": record.survivor_id,
                "merged_id": record.merged_id,
                "performed_by": record.performed_by,
                "performed_at": record.performed_at,
                "reason": record.reason,
                "match_score": record.match_score,
            }
            for record in (MergeRecord.from_row(row) for row in rows)
        ]

    def get_merge_history(self, identity_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """
        List merges, newest first, optionally involving one identity.

        Returns:
            List of merge summaries with rollback and verification state
        """
        query = '''
            SELECT m.*, r.rolled_back_at, v.verified_by, v.verified_at, v.consistent
            FROM merge_records AS m
            LEFT JOIN merge_rollbacks AS r ON r.merge_id = m.id
            LEFT JOIN merge_verifications AS v ON v.merge_id = m.id
        '''
        params: List[Any] = []
        if identity_id:
            query += " WHERE m.survivor_id = ? OR m.merged_id = ?"
            params.extend([identity_id, identity_id])
        query += " ORDER BY m.performed_at DESC LIMIT ?"
        params.append(limit)

        with self.db.read() as conn:
            rows = conn.execute(query, params).fetchall()

        history = []
        for row in rows:
            record = MergeRecord.from_row(row)
            history.append({
                "merge_id": record.id,
                "candidate_id": record.candidate_id,
                "survivor_id": record.survivor_id,
                "merged_id": record.merged_id,
                "performed_by": record.performed_by,
                "performed_at": record.performed_at,
                "rows_moved": record.rows_moved,
                "field_provenance": record.field_provenance,
                "reason": record.reason,
                "match_score": record.match_score,
                "survivor_selection": record.survivor_selection,
                "superseded_candidates": record.superseded_candidates,
                "rolled_back": row["rolled_back_at"] is not None,
                "rolled_back_at": row["rolled_back_at"],
                "verified_by": row["verified_by"],
                "verified_at": row["verified_at"],
                "consistent": None if row["consistent"] is None else bool(row["consistent"]),
            })
        return history

    def get_merge_statistics(self) -> Dict[str, Any]:
        """
        Calculate merge statistics.

        Returns:
            Dictionary with merge statistics
        """
        with self.db.read() as conn:
            merges_df = pd.read_sql_query('''
                SELECT m.id, m.performed_by, m.performed_at, m.data_migrations, m.match_score,
                       r.id AS rollback_id, v.id AS verification_id
                FROM merge_records AS m
                LEFT JOIN merge_rollbacks AS r ON r.merge_id = m.id
                LEFT JOIN merge_verifications AS v ON v.merge_id = m.id
            ''', conn)

        if merges_df.empty:
            return {"total_merges": 0, "rolled_back": 0, "rows_moved": 0,
                    "pending_verification": 0, "average_match_score": None,
                    "merges_by_actor": {}, "last_merge_at": None}

        rows_moved = merges_df["data_migrations"].map(
            lambda raw: sum(len(m.get("row_ids", [])) for m in json.loads(raw))
        )
        rolled_back = merges_df["rollback_id"].notna()
        pending_verification = ~rolled_back & merges_df["verification_id"].isna()
        scores = merges_df["match_score"].dropna()

        return {
            "total_merges": int(len(merges_df)),
            "rolled_back": int(rolled_back.sum()),
            "rows_moved": int(rows_moved.sum()),
            "pending_verification": int(pending_verification.sum()),
            "average_match_score": round(float(scores.mean()), 2) if len(scores) else None,
            "merges_by_actor": merges_df["performed_by"].value_counts().to_dict(),
            "last_merge_at": merges_df["performed_at"].max(),
        }
