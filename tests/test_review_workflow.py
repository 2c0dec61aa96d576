"""
Unit tests for the review workflow.
"""

import pytest
import tempfile
import shutil
import threading
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.audit.audit_logger import AuditSink
from src.errors import InvalidRequest, MergeFailure, StateConflict
from src.merge.merger import MergeExecutor
from src.models import MatchCandidate, MatchPriority, MatchStatus, PatientIdentity, new_id
from src.normalize.config import get_default_config
from src.review.workflow import ReviewWorkflow, can_transition
from src.store.candidate_store import CandidateStore
from src.store.database import Database
from src.store.identity_store import IdentityStore


class TestTransitions:
    """Test cases for the review state machine."""

    def test_allowed_transitions(self):
        assert can_transition(MatchStatus.PENDING, MatchStatus.UNDER_REVIEW)
        assert can_transition(MatchStatus.UNDER_REVIEW, MatchStatus.CONFIRMED_MATCH)
        assert can_transition(MatchStatus.UNDER_REVIEW, MatchStatus.DEFERRED)
        assert can_transition(MatchStatus.DEFERRED, MatchStatus.PENDING)
        assert can_transition(MatchStatus.CONFIRMED_MATCH, MatchStatus.MERGED)

    def test_forbidden_transitions(self):
        assert not can_transition(MatchStatus.PENDING, MatchStatus.MERGED)
        assert not can_transition(MatchStatus.CONFIRMED_MATCH, MatchStatus.CONFIRMED_NOT_MATCH)
        for status in MatchStatus:
            assert not can_transition(MatchStatus.MERGED, status)
            assert not can_transition(MatchStatus.CONFIRMED_NOT_MATCH, status)
            assert not can_transition(MatchStatus.SUPERSEDED, status)


class TestReviewWorkflow:
    """Test cases for reviewer decisions."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = get_default_config()
        self.db = Database(str(Path(self.temp_dir) / "patient_match.db"))
        self.audit = AuditSink(str(Path(self.temp_dir) / "audit.db"), str(Path(self.temp_dir) / "exports"))
        self.merge_executor = MergeExecutor(self.db, self.config["merge"], self.audit)
        self.workflow = ReviewWorkflow(self.db, {"merge_on_confirm": False},
                                       merge_executor=self.merge_executor, audit=self.audit)
        self.candidates = CandidateStore()
        self.identities = IdentityStore()

        with self.db.transaction() as conn:
            self.identities.insert_identity(conn, PatientIdentity(
                id="pat-a", first_name="John", last_name="Doe", date_of_birth="1950-01-15",
                created_at="2020-01-01T00:00:00+00:00"))
            self.identities.insert_identity(conn, PatientIdentity(
                id="pat-b", first_name="Jon", last_name="Doe", date_of_birth="1950-01-15",
                phone="5550101", created_at="2021-01-01T00:00:00+00:00"))
            candidate, _ = self.candidates.upsert_candidate(conn, MatchCandidate(
                id=new_id(), patient_id_a="pat-a", patient_id_b="pat-b",
                overall_match_score=98.57, priority=MatchPriority.URGENT,
                status=MatchStatus.PENDING, algorithm_version="v1.0-jw-soundex",
                field_scores={"first_name": 0.9333, "last_name": 1.0, "date_of_birth": 1.0},
            ))
        self.candidate_id = candidate.id

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir)

    def test_start_review(self):
        candidate = self.workflow.start_review(self.candidate_id, "rev-1")
        assert candidate.status == MatchStatus.UNDER_REVIEW
        assert candidate.reviewed_by == "rev-1"

        with pytest.raises(StateConflict):
            self.workflow.start_review(self.candidate_id, "rev-2")

    def test_direct_decision_records_two_transitions(self):
        """Deciding a pending candidate passes through under_review."""
        outcome = self.workflow.review_candidate(self.candidate_id, "rev-1", "confirmed_not_match",
                                                 notes="different people")

        assert outcome.candidate.status == MatchStatus.CONFIRMED_NOT_MATCH
        assert outcome.candidate.review_notes == "different people"
        assert outcome.merge_record is None

        history = self.workflow.get_review_history(self.candidate_id)
        assert [(d.from_status, d.decision) for d in history] == [
            (MatchStatus.PENDING, MatchStatus.UNDER_REVIEW),
            (MatchStatus.UNDER_REVIEW, MatchStatus.CONFIRMED_NOT_MATCH),
        ]
        assert all(d.reviewer_id == "rev-1" for d in history)

    def test_terminal_status_rejects_further_decisions(self):
        self.workflow.review_candidate(self.candidate_id, "rev-1", "confirmed_not_match")

        with pytest.raises(StateConflict):
            self.workflow.review_candidate(self.candidate_id, "rev-2", "confirmed_match")

        assert self.workflow.get_candidate(self.candidate_id).status == MatchStatus.CONFIRMED_NOT_MATCH
        assert len(self.workflow.get_review_history(self.candidate_id)) == 2

    def test_expected_status_mismatch(self):
        """A reviewer acting on a stale view is refused."""
        self.workflow.start_review(self.candidate_id, "rev-1")

        with pytest.raises(StateConflict) as excinfo:
            self.workflow.review_candidate(self.candidate_id, "rev-2", "confirmed_match",
                                           expected_status="pending")

        assert excinfo.value.actual == "under_review"
        assert self.workflow.get_candidate(self.candidate_id).status == MatchStatus.UNDER_REVIEW

    def test_deferred_requeue(self):
        """A deferred candidate returns to pending with the same id."""
        self.workflow.review_candidate(self.candidate_id, "rev-1", MatchStatus.DEFERRED)
        candidate = self.workflow.requeue(self.candidate_id, "rev-1", notes="needs chart pull")

        assert candidate.id == self.candidate_id
        assert candidate.status == MatchStatus.PENDING
        assert len(self.workflow.get_review_history(self.candidate_id)) == 3

        with pytest.raises(StateConflict):
            self.workflow.requeue(self.candidate_id, "rev-1")

    def test_invalid_arguments(self):
        with pytest.raises(InvalidRequest):
            self.workflow.review_candidate(self.candidate_id, "", "confirmed_match")
        with pytest.raises(InvalidRequest):
            self.workflow.review_candidate(self.candidate_id, "rev-1", "merged")
        with pytest.raises(InvalidRequest):
            self.workflow.review_candidate(self.candidate_id, "rev-1", "maybe")
        with pytest.raises(InvalidRequest):
            self.workflow.review_candidate(self.candidate_id, "rev-1", "deferred", expected_status="open")
        with pytest.raises(ValueError):
            self.workflow.start_review(self.candidate_id, None)

        assert self.workflow.get_review_history(self.candidate_id) == []

    def test_confirm_refused_for_merged_identity(self):
        """A pair whose identity was merged away cannot be confirmed."""
        with self.db.transaction() as conn:
            self.identities.tombstone(conn, "pat-b", "pat-a")

        with pytest.raises(StateConflict) as excinfo:
            self.workflow.review_candidate(self.candidate_id, "rev-1", "confirmed_match")

        assert excinfo.value.actual == "inactive"
        assert self.workflow.get_candidate(self.candidate_id).status == MatchStatus.PENDING
        assert self.workflow.get_review_history(self.candidate_id) == []

        # Rejecting the pair is still allowed
        outcome = self.workflow.review_candidate(self.candidate_id, "rev-1", "confirmed_not_match")
        assert outcome.candidate.status == MatchStatus.CONFIRMED_NOT_MATCH

    def test_superseded_candidate_cannot_be_reviewed(self):
        with self.db.transaction() as conn:
            self.candidates.compare_and_set_status(conn, self.candidate_id, MatchStatus.PENDING,
                                                   MatchStatus.SUPERSEDED)

        with pytest.raises(StateConflict):
            self.workflow.review_candidate(self.candidate_id, "rev-1", "deferred")
        with pytest.raises(StateConflict):
            self.workflow.start_review(self.candidate_id, "rev-1")

    def test_concurrent_reviewers(self):
        """Exactly one of two simultaneous decisions wins."""
        barrier = threading.Barrier(2)
        results = {}

        def decide(reviewer_id, decision):
            barrier.wait()
            try:
                outcome = self.workflow.review_candidate(self.candidate_id, reviewer_id, decision)
                results[reviewer_id] = outcome.candidate.status
            except StateConflict as e:
                results[reviewer_id] = e

        threads = [
            threading.Thread(target=decide, args=("rev-1", "confirmed_match")),
            threading.Thread(target=decide, args=("rev-2", "confirmed_not_match")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        conflicts = [r for r in results.values() if isinstance(r, StateConflict)]
        assert len(conflicts) == 1
        assert len(self.workflow.get_review_history(self.candidate_id)) == 2

    def test_confirm_merges_immediately(self):
        workflow = ReviewWorkflow(self.db, {"merge_on_confirm": True},
                                  merge_executor=self.merge_executor, audit=self.audit)

        outcome = workflow.review_candidate(self.candidate_id, "rev-1", "confirmed_match")

        assert outcome.merge_error is None
        assert outcome.merge_record.survivor_id == "pat-a"
        assert outcome.candidate.status == MatchStatus.MERGED
        decisions = [d.decision for d in workflow.get_review_history(self.candidate_id)]
        assert decisions == [MatchStatus.UNDER_REVIEW, MatchStatus.CONFIRMED_MATCH, MatchStatus.MERGED]

    def test_failed_merge_keeps_confirmation(self):
        """A merge failure after confirming leaves the candidate confirmed."""
        broken = MergeExecutor(self.db, {"dependent_tables": [{"table": "encounters", "column": "subject_id"}]})
        workflow = ReviewWorkflow(self.db, {"merge_on_confirm": True}, merge_executor=broken)

        outcome = workflow.review_candidate(self.candidate_id, "rev-1", "confirmed_match")

        assert isinstance(outcome.merge_error, MergeFailure)
        assert outcome.merge_record is None
        assert outcome.candidate.status == MatchStatus.CONFIRMED_MATCH
        assert workflow.get_candidate(self.candidate_id).status == MatchStatus.CONFIRMED_MATCH


if __name__ == "__main__":
    pytest.main([__file__])
