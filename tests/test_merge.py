"""
Unit tests for the merge executor.
"""

import pytest
import sqlite3
import tempfile
import shutil
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.audit.audit_logger import AuditSink
from src.errors import InvalidRequest, MergeFailure, NotFound, StateConflict
from src.merge.merger import MergeExecutor
from src.models import MatchCandidate, MatchPriority, MatchStatus, PatientIdentity, new_id
from src.normalize.config import get_default_config
from src.store.candidate_store import CandidateStore
from src.store.database import Database
from src.store.identity_store import IdentityStore


class TestMergeExecutor:
    """Test cases for merging confirmed candidates."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = get_default_config()
        self.db = Database(str(Path(self.temp_dir) / "patient_match.db"))
        self.audit = AuditSink(str(Path(self.temp_dir) / "audit.db"), str(Path(self.temp_dir) / "exports"))
        self.executor = MergeExecutor(self.db, self.config["merge"], self.audit)
        self.identities = IdentityStore()
        self.candidates = CandidateStore()

        with self.db.transaction() as conn:
            # The older record has no phone; the newer one does
            self.identities.insert_identity(conn, PatientIdentity(
                id="pat-a", first_name="John", last_name="Doe", date_of_birth="1950-01-15",
                created_at="2020-01-01T00:00:00+00:00"))
            self.identities.insert_identity(conn, PatientIdentity(
                id="pat-b", first_name="Jon", last_name="Doe", date_of_birth="1950-01-15",
                phone="5550101", email="jon@example.org", created_at="2021-06-01T00:00:00+00:00"))
            self.identities.insert_identity(conn, PatientIdentity(
                id="pat-c", first_name="Johnny", last_name="Doe", date_of_birth="1950-01-15",
                created_at="2019-01-01T00:00:00+00:00"))

            self.encounter_ids = [
                self.identities.add_dependent_row(conn, "encounters", "patient_id", "pat-b", {"visit": n})
                for n in range(3)
            ]
            self.appointment_id = self.identities.add_dependent_row(
                conn, "appointments", "patient_id", "pat-b", {"slot": "09:00"})
            self.identities.add_dependent_row(conn, "encounters", "patient_id", "pat-a", {"visit": "own"})

        self.candidate_id = self.confirmed_candidate("pat-a", "pat-b")

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir)

    def confirmed_candidate(self, id_a, id_b, status=MatchStatus.CONFIRMED_MATCH, version="v1.0-jw-soundex"):
        with self.db.transaction() as conn:
            candidate, _ = self.candidates.upsert_candidate(conn, MatchCandidate(
                id=new_id(), patient_id_a=id_a, patient_id_b=id_b,
                overall_match_score=98.57, priority=MatchPriority.URGENT,
                status=MatchStatus.PENDING, algorithm_version=version,
            ))
            path = [MatchStatus.PENDING, MatchStatus.UNDER_REVIEW, status]
            for current, target in zip(path, path[1:]):
                if current == target:
                    continue
                self.candidates.compare_and_set_status(conn, candidate.id, current, target, "rev-1")
        return candidate.id

    def test_merge_candidate(self):
        """Dependent rows move, gaps are filled and the loser is tombstoned."""
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")

        assert record.survivor_id == "pat-a"
        assert record.merged_id == "pat-b"
        assert record.field_provenance["first_name"] == "pat-a"
        assert record.field_provenance["phone"] == "pat-b"
        assert record.field_provenance["email"] == "pat-b"
        assert "mrn" not in record.field_provenance
        assert record.rows_moved == 4
        assert record.survivor_snapshot["phone"] is None

        with self.db.read() as conn:
            survivor = self.identities.get_identity(conn, "pat-a")
            merged = self.identities.get_identity(conn, "pat-b")
            encounters = self.identities.dependent_row_ids(conn, "encounters", "patient_id", "pat-a")
            leftover = self.identities.dependent_row_ids(conn, "encounters", "patient_id", "pat-b")
            candidate = self.candidates.get_candidate(conn, self.candidate_id)
            decisions = self.candidates.list_review_decisions(conn, self.candidate_id)

        assert survivor.first_name == "John"
        assert survivor.phone == "5550101"
        assert survivor.email == "jon@example.org"
        assert not merged.active
        assert merged.merged_into == "pat-a"
        assert len(encounters) == 4
        assert leftover == []
        assert candidate.status == MatchStatus.MERGED
        assert decisions[-1].decision == MatchStatus.MERGED
        assert decisions[-1].notes == f"merge {record.id}"

    def test_merge_requires_confirmed_candidate(self):
        pending_id = self.confirmed_candidate("pat-a", "pat-c", status=MatchStatus.UNDER_REVIEW)

        with pytest.raises(StateConflict):
            self.executor.merge_candidate(pending_id, "rev-1")
        with pytest.raises(NotFound):
            self.executor.merge_candidate("missing", "rev-1")
        with pytest.raises(ValueError):
            self.executor.merge_candidate(self.candidate_id, "")

    def test_merge_twice_rejected(self):
        self.executor.merge_candidate(self.candidate_id, "rev-1")
        with pytest.raises(StateConflict):
            self.executor.merge_candidate(self.candidate_id, "rev-1")

    def test_merge_of_already_merged_identity_rejected(self):
        """A candidate whose identity was tombstoned elsewhere fails and stays confirmed."""
        other_id = self.confirmed_candidate("pat-b", "pat-c")
        with self.db.transaction() as conn:
            self.identities.tombstone(conn, "pat-b", "pat-a")

        with pytest.raises(MergeFailure):
            self.executor.merge_candidate(other_id, "rev-1")

        with self.db.read() as conn:
            assert self.candidates.get_candidate(conn, other_id).status == MatchStatus.CONFIRMED_MATCH
            assert self.identities.get_identity(conn, "pat-c").active

    def test_merge_supersedes_candidates_of_merged_identity(self):
        """Open and confirmed pairs of the loser are retired with the merge, and reopened on rollback."""
        open_id = self.confirmed_candidate("pat-b", "pat-c", status=MatchStatus.UNDER_REVIEW)
        confirmed_id = self.confirmed_candidate("pat-b", "pat-c", version="v0.9-jw-soundex")
        untouched_id = self.confirmed_candidate("pat-a", "pat-c", status=MatchStatus.UNDER_REVIEW)

        record = self.executor.merge_candidate(self.candidate_id, "rev-1")

        assert sorted(record.superseded_candidates) == sorted([open_id, confirmed_id])
        with self.db.read() as conn:
            superseded = self.candidates.get_candidate(conn, open_id)
            decisions = self.candidates.list_review_decisions(conn, open_id)
            untouched = self.candidates.get_candidate(conn, untouched_id)
        assert superseded.status == MatchStatus.SUPERSEDED
        assert decisions[-1].from_status == MatchStatus.UNDER_REVIEW
        assert decisions[-1].decision == MatchStatus.SUPERSEDED
        assert untouched.status == MatchStatus.UNDER_REVIEW

        result = self.executor.unmerge(record.id, "admin-1")

        assert sorted(result["candidates_reopened"]) == sorted([open_id, confirmed_id])
        with self.db.read() as conn:
            assert self.candidates.get_candidate(conn, open_id).status == MatchStatus.PENDING
            assert self.candidates.get_candidate(conn, confirmed_id).status == MatchStatus.PENDING

    def test_manual_survivor_and_reason(self):
        with pytest.raises(InvalidRequest):
            self.executor.merge_candidate(self.candidate_id, "rev-1", survivor_id="pat-c")

        record = self.executor.merge_candidate(self.candidate_id, "rev-1", survivor_id="pat-b",
                                               reason="registration duplicate")

        assert record.survivor_id == "pat-b"
        assert record.merged_id == "pat-a"
        assert record.survivor_selection == "manual"
        assert record.reason == "registration duplicate"
        assert record.match_score == 98.57
        assert self.executor.get_merge_record(record.id) == record
        with self.db.read() as conn:
            assert self.identities.get_identity(conn, "pat-a").merged_into == "pat-b"

    def test_verify_merge(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")

        verification = self.executor.verify_merge(record.id, "qa-1", notes="looks right")

        assert verification["consistent"]
        assert verification["issues"] == []
        with pytest.raises(StateConflict):
            self.executor.verify_merge(record.id, "qa-2")
        with pytest.raises(NotFound):
            self.executor.verify_merge("missing", "qa-1")
        with pytest.raises(InvalidRequest):
            self.executor.verify_merge(record.id, "")

        history = self.executor.get_merge_history("pat-a")
        assert history[0]["verified_by"] == "qa-1"
        assert history[0]["consistent"] is True

    def test_verify_merge_reports_stray_rows(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")
        with self.db.transaction() as conn:
            self.identities.add_dependent_row(conn, "encounters", "patient_id", "pat-b", {"visit": "late"})

        verification = self.executor.verify_merge(record.id, "qa-1")

        assert not verification["consistent"]
        assert verification["issues"] == ["1 rows in encounters still reference pat-b"]

    def test_verify_rolled_back_merge_refused(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")
        self.executor.unmerge(record.id, "admin-1")

        with pytest.raises(StateConflict):
            self.executor.verify_merge(record.id, "qa-1")

    def test_reversible_merges(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1", reason="same person")

        reversible = self.executor.get_reversible_merges()
        assert [m["merge_id"] for m in reversible] == [record.id]
        assert reversible[0]["reason"] == "same person"

        # Once the survivor is merged away the first merge can no longer be undone
        second_id = self.confirmed_candidate("pat-a", "pat-c")
        second = self.executor.merge_candidate(second_id, "rev-1")

        assert [m["merge_id"] for m in self.executor.get_reversible_merges()] == [second.id]

    def test_failed_merge_rolls_back_everything(self):
        """A failure midway through leaves no partial changes."""
        broken = MergeExecutor(self.db, {
            "dependent_tables": [
                {"table": "encounters", "column": "patient_id"},
                {"table": "appointments", "column": "subject_id"},
            ]
        })

        with pytest.raises(MergeFailure) as excinfo:
            broken.merge_candidate(self.candidate_id, "rev-1")

        assert isinstance(excinfo.value.cause, sqlite3.OperationalError)
        with self.db.read() as conn:
            moved = self.identities.dependent_row_ids(conn, "encounters", "patient_id", "pat-b")
            merged = self.identities.get_identity(conn, "pat-b")
            survivor = self.identities.get_identity(conn, "pat-a")
            candidate = self.candidates.get_candidate(conn, self.candidate_id)
            merges = conn.execute("SELECT COUNT(*) FROM merge_records").fetchone()[0]

        assert moved == self.encounter_ids
        assert merged.active
        assert survivor.phone is None
        assert candidate.status == MatchStatus.CONFIRMED_MATCH
        assert merges == 0

    def test_most_complete_survivor_policy(self):
        executor = MergeExecutor(self.db, dict(self.config["merge"], survivor_policy="most_complete"))

        record = executor.merge_candidate(self.candidate_id, "rev-1")

        assert record.survivor_id == "pat-b"
        assert record.field_provenance["phone"] == "pat-b"

    def test_unmerge(self):
        """Rolling back restores both identities and the moved rows."""
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")

        result = self.executor.unmerge(record.id, "admin-1", reason="wrong patient")

        assert result["restored_id"] == "pat-b"
        assert result["rows_restored"] == 4
        with self.db.read() as conn:
            survivor = self.identities.get_identity(conn, "pat-a")
            restored = self.identities.get_identity(conn, "pat-b")
            encounters = self.identities.dependent_row_ids(conn, "encounters", "patient_id", "pat-b")
            appointments = self.identities.dependent_row_ids(conn, "appointments", "patient_id", "pat-b")

        assert restored.active
        assert restored.merged_into is None
        assert survivor.phone is None
        assert survivor.email is None
        assert encounters == self.encounter_ids
        assert appointments == [self.appointment_id]

        with pytest.raises(StateConflict):
            self.executor.unmerge(record.id, "admin-1")

        # The merge record itself is unchanged
        assert self.executor.get_merge_record(record.id) == record

    def test_unmerge_refused_when_survivor_merged_again(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")
        second_id = self.confirmed_candidate("pat-a", "pat-c")
        second = self.executor.merge_candidate(second_id, "rev-1")
        assert second.survivor_id == "pat-c"

        with pytest.raises(StateConflict):
            self.executor.unmerge(record.id, "admin-1")

    def test_merge_records_are_immutable(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")

        with pytest.raises(sqlite3.DatabaseError):
            with self.db.transaction() as conn:
                conn.execute("UPDATE merge_records SET performed_by = 'someone' WHERE id = ?", [record.id])

    def test_merge_history_and_statistics(self):
        record = self.executor.merge_candidate(self.candidate_id, "rev-1")
        self.executor.unmerge(record.id, "admin-1")

        history = self.executor.get_merge_history("pat-b")
        stats = self.executor.get_merge_statistics()

        assert len(history) == 1
        assert history[0]["merge_id"] == record.id
        assert history[0]["rolled_back"]
        assert self.executor.get_merge_history("pat-c") == []
        assert stats["total_merges"] == 1
        assert stats["rolled_back"] == 1
        assert stats["rows_moved"] == 4
        assert stats["merges_by_actor"] == {"rev-1": 1}
        assert stats["pending_verification"] == 0
        assert stats["average_match_score"] == 98.57
        assert history[0]["match_score"] == 98.57


if __name__ == "__main__":
    pytest.main([__file__])
