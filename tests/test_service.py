"""
Tests for the MPI service interface.
"""

import pytest
import sqlite3
import tempfile
import shutil
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.api.service import MPIService
from src.models import MatchPriority, MatchStatus
from src.normalize.config import get_default_config


def make_config(temp_dir):
    config = get_default_config()
    config["storage"]["db_path"] = str(Path(temp_dir) / "patient_match.db")
    config["audit"]["db_path"] = str(Path(temp_dir) / "audit.db")
    config["audit"]["export_path"] = str(Path(temp_dir) / "exports")
    return config


class TestMPIService:
    """Test cases for the service layer."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = make_config(self.temp_dir)
        self.service = MPIService(config=self.config)

        first = self.service.register_identity({
            "first_name": "John", "last_name": "Doe", "date_of_birth": "1950-01-15", "phone": "555-0101",
        }, source="registration")
        second = self.service.register_identity({
            "first_name": "Jon", "last_name": "Doe", "date_of_birth": "1950-01-15", "phone": "555-0101",
        }, source="lab-interface")

        self.john = first.value["identity"]
        self.jon = second.value["identity"]
        self.detected = second.value["candidates"]

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir)

    def audit_actions(self):
        conn = sqlite3.connect(self.config["audit"]["db_path"])
        try:
            return [row[0] for row in conn.execute("SELECT action FROM audit_events ORDER BY event_id")]
        finally:
            conn.close()

    def test_register_detects_duplicate(self):
        """Registering Jon Doe surfaces the existing John Doe."""
        assert len(self.detected) == 1
        candidate = self.detected[0]
        assert set(candidate.pair) == {self.john.id, self.jon.id}
        assert candidate.priority == MatchPriority.URGENT
        assert candidate.auto_match_eligible
        assert candidate.status == MatchStatus.PENDING

    def test_detection_is_idempotent(self):
        result = self.service.detect_duplicates(self.jon.id)

        assert result.ok
        assert [c.id for c in result.value] == [self.detected[0].id]
        assert self.service.get_candidate_stats()["total"] == 1

    def test_list_candidates_and_stats(self):
        listed = self.service.list_candidates({"status": "pending", "search": "doe"})
        stats = self.service.get_candidate_stats()

        assert len(listed) == 1
        sides = {listed[0].patient_a["first_name"], listed[0].patient_b["first_name"]}
        assert sides == {"John", "Jon"}
        assert stats == {"total": 1, "pending": 1, "under_review": 0, "merged": 0, "superseded": 0,
                         "confirmed_not_match": 0, "high_priority": 0, "urgent_priority": 1}
        assert self.service.list_candidates({"priority": "low"}) == []

    def test_review_confirm_merges(self):
        candidate_id = self.detected[0].id

        result = self.service.review_candidate(candidate_id, "rev-1", "confirmed_match")

        assert result.ok
        outcome = result.value
        assert outcome.candidate.status == MatchStatus.MERGED
        assert outcome.merge_record.survivor_id == self.john.id
        assert self.service.get_candidate_stats()["merged"] == 1
        assert self.service.get_merge_statistics()["total_merges"] == 1
        assert "identity.merged" in self.audit_actions()

    def test_stale_review_returns_state_conflict(self):
        candidate_id = self.detected[0].id
        assert self.service.review_candidate(candidate_id, "rev-1", "confirmed_not_match").ok

        result = self.service.review_candidate(candidate_id, "rev-2", "confirmed_match")

        assert not result.ok
        assert result.error_code == "StateConflict"
        assert result.error.user_message == "This item was just updated, please refresh."

    def test_review_flow_with_history(self):
        candidate_id = self.detected[0].id

        assert self.service.start_review(candidate_id, "rev-1").ok
        assert self.service.review_candidate(candidate_id, "rev-1", "deferred",
                                             expected_status="under_review").ok
        assert self.service.requeue_candidate(candidate_id, "rev-1").ok

        history = self.service.get_review_history(candidate_id)
        assert history.ok
        assert [d.decision for d in history.value] == [
            MatchStatus.UNDER_REVIEW, MatchStatus.DEFERRED, MatchStatus.PENDING,
        ]

    def test_unmerge_restores_detection(self):
        candidate_id = self.detected[0].id
        merge = self.service.review_candidate(candidate_id, "rev-1", "confirmed_match").value.merge_record

        result = self.service.unmerge(merge.id, "admin-1", reason="twins")

        assert result.ok
        assert result.value["restored_id"] == self.jon.id
        history = self.service.get_merge_history(self.jon.id)
        assert history[0]["rolled_back"]
        # The restored identity is indexed again and finds its block mate
        assert self.service.detect_duplicates(self.jon.id).value[0].id == candidate_id

        again = self.service.unmerge(merge.id, "admin-1")
        assert again.error_code == "StateConflict"
        assert self.service.unmerge("missing", "admin-1").error_code == "NotFound"

    def test_merge_of_unconfirmed_candidate(self):
        result = self.service.merge_confirmed_candidate(self.detected[0].id, "rev-1")
        assert result.error_code == "StateConflict"

    def test_update_identity(self):
        result = self.service.update_identity(self.jon.id, {"mrn": "A-100"}, actor="clerk-1")

        assert result.ok
        assert result.value.mrn == "A-100"
        assert self.service.update_identity("missing", {"mrn": "X"}).error_code == "NotFound"
        assert "identity.updated" in self.audit_actions()

    def test_conflicts(self):
        detected = self.service.detect_conflict(
            "Patient", self.john.id, {"birthDate": "1950-01-16", "given": "John"}, source_system="fhir"
        )
        assert detected.ok
        conflict = detected.value
        assert conflict.diverging_fields == ["date_of_birth"]

        resolved = self.service.resolve_conflict(conflict.id, "use_source", "verified", "admin-1")
        assert resolved.ok
        assert resolved.value.resolved_payload["date_of_birth"] == "1950-01-16"

        again = self.service.resolve_conflict(conflict.id, "use_local", None, "admin-1")
        assert again.error_code == "AlreadyResolved"
        assert self.service.list_conflicts({"status": "resolved"})[0].id == conflict.id
        assert "conflict.resolved" in self.audit_actions()

    def test_invalid_input_returns_failure(self):
        candidate_id = self.detected[0].id

        bogus_decision = self.service.review_candidate(candidate_id, "rev-1", "bogus")
        assert not bogus_decision.ok
        assert bogus_decision.error_code == "InvalidRequest"
        assert bogus_decision.error.user_message == "The request is invalid."

        not_a_decision = self.service.review_candidate(candidate_id, "rev-1", "merged")
        assert not_a_decision.error_code == "InvalidRequest"

        conflict = self.service.detect_conflict("Patient", self.john.id, {"birthDate": "1950-01-16"}).value
        bogus_action = self.service.resolve_conflict(conflict.id, "overwrite", None, "admin-1")
        assert bogus_action.error_code == "InvalidRequest"
        assert self.service.resolve_conflict(conflict.id, "use_source", None, "").error_code == "InvalidRequest"

        # Nothing was recorded by the refused calls
        assert self.service.get_review_history(candidate_id).value == []

    def test_manual_survivor_and_reason(self):
        candidate_id = self.detected[0].id
        self.service.workflow.merge_on_confirm = False
        assert self.service.review_candidate(candidate_id, "rev-1", "confirmed_match").ok

        bad = self.service.merge_confirmed_candidate(candidate_id, "rev-1", survivor_id="someone-else")
        assert bad.error_code == "InvalidRequest"

        result = self.service.merge_confirmed_candidate(candidate_id, "rev-1", survivor_id=self.jon.id,
                                                        reason="newer chart is authoritative")
        assert result.ok
        record = result.value
        assert record.survivor_id == self.jon.id
        assert record.merged_id == self.john.id
        assert record.survivor_selection == "manual"
        assert record.reason == "newer chart is authoritative"
        assert record.match_score == self.detected[0].overall_match_score

        history = self.service.get_merge_history(self.john.id)
        assert history[0]["reason"] == "newer chart is authoritative"
        assert history[0]["survivor_selection"] == "manual"

    def test_verify_and_reversible_merges(self):
        candidate_id = self.detected[0].id
        merge = self.service.review_candidate(candidate_id, "rev-1", "confirmed_match").value.merge_record

        reversible = self.service.list_reversible_merges()
        assert [m["merge_id"] for m in reversible] == [merge.id]
        assert self.service.get_merge_statistics()["pending_verification"] == 1

        verified = self.service.verify_merge(merge.id, "qa-1", notes="charts checked")
        assert verified.ok
        assert verified.value["consistent"]
        assert verified.value["issues"] == []
        assert self.service.verify_merge(merge.id, "qa-2").error_code == "StateConflict"
        assert self.service.get_merge_statistics()["pending_verification"] == 0
        assert self.service.get_merge_history(self.jon.id)[0]["verified_by"] == "qa-1"

        assert self.service.unmerge(merge.id, "admin-1").ok
        assert self.service.list_reversible_merges() == []
        assert self.service.verify_merge("missing", "qa-1").error_code == "NotFound"

    def test_resolution_after_merge_reindexes_survivor(self):
        merge = self.service.review_candidate(self.detected[0].id, "rev-1", "confirmed_match").value.merge_record
        conflict = self.service.detect_conflict("Patient", self.jon.id, {"identifier_mrn": "A-7"}).value

        resolved = self.service.resolve_conflict(conflict.id, "use_source", None, "admin-1")

        assert resolved.ok
        with self.service.db.read() as conn:
            survivor = self.service.pipeline.identities.get_identity(conn, merge.survivor_id)
            loser = self.service.pipeline.identities.get_identity(conn, self.jon.id)
        assert survivor.mrn == "A-7"
        assert loser.mrn is None


if __name__ == "__main__":
    pytest.main([__file__])
