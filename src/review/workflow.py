"""
Review workflow for PatientMatch.

Moves match candidates through the review state machine. Every transition
is recorded as an immutable ReviewDecision and applied as a compare-and-set
on the status the caller expects, so concurrent reviewers cannot overwrite
each other.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from ..audit.audit_logger import AuditSink
from ..errors import InvalidRequest, MergeFailure, StateConflict
from ..merge.merger import MergeExecutor
from ..models import MatchCandidate, MatchStatus, MergeRecord, ReviewDecision
from ..store.candidate_store import CandidateStore
from ..store.database import Database
from ..store.identity_store import IdentityStore

logger = logging.getLogger(__name__)

TRANSITIONS = {
    MatchStatus.PENDING: {MatchStatus.UNDER_REVIEW},
    MatchStatus.UNDER_REVIEW: {
        MatchStatus.CONFIRMED_MATCH,
        MatchStatus.CONFIRMED_NOT_MATCH,
        MatchStatus.DEFERRED,
    },
    MatchStatus.CONFIRMED_MATCH: {MatchStatus.MERGED},
    MatchStatus.DEFERRED: {MatchStatus.PENDING},
    MatchStatus.CONFIRMED_NOT_MATCH: set(),
    MatchStatus.MERGED: set(),
    MatchStatus.SUPERSEDED: set(),
}

REVIEW_DECISIONS = {
    MatchStatus.CONFIRMED_MATCH,
    MatchStatus.CONFIRMED_NOT_MATCH,
    MatchStatus.DEFERRED,
}


def can_transition(current: MatchStatus, target: MatchStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class ReviewOutcome:
    """Result of a review decision, including the follow-up merge if one ran."""

    candidate: MatchCandidate
    merge_record: Optional[MergeRecord] = None
    merge_error: Optional[Exception] = None


class ReviewWorkflow:
    """
    Applies reviewer decisions to match candidates.
    """

    def __init__(self, db: Database, config: Optional[Dict] = None,
                 merge_executor: Optional[MergeExecutor] = None,
                 audit: Optional[AuditSink] = None):
        """
        Initialize review workflow.

        Args:
            db: Engine database
            config: Review configuration (merge_on_confirm)
            merge_executor: Executor used when a confirmed match merges immediately
            audit: Audit sink for transition events
        """
        config = config or {}
        self.db = db
        self.config = config
        self.merge_on_confirm = bool(config.get("merge_on_confirm", True))
        self.merge_executor = merge_executor
        self.audit = audit
        self.candidates = CandidateStore()
        self.identities = IdentityStore()

        logger.info("Initialized ReviewWorkflow")

    def _transition(self, conn: sqlite3.Connection, candidate: MatchCandidate, target: MatchStatus,
                    reviewer_id: str, notes: Optional[str]) -> MatchCandidate:
        if not can_transition(candidate.status, target):
            raise StateConflict(
                f"Candidate {candidate.id} cannot move from {candidate.status.value} to {target.value}",
                entity_id=candidate.id, expected=None, actual=candidate.status.value,
            )

        self.candidates.insert_review_decision(conn, candidate.id, reviewer_id, candidate.status, target, notes)
        return self.candidates.compare_and_set_status(
            conn, candidate.id, candidate.status, target, reviewer_id=reviewer_id, notes=notes
        )

    def _emit(self, reviewer_id: str, before: MatchCandidate, after: MatchCandidate):
        if self.audit:
            self.audit.emit(
                reviewer_id, "candidate.reviewed", "match_candidate",
                [after.id, after.patient_id_a, after.patient_id_b],
                before={"status": before.status.value},
                after={"status": after.status.value, "notes": after.review_notes},
            )

    def start_review(self, candidate_id: str, reviewer_id: str,
                     notes: Optional[str] = None) -> MatchCandidate:
        """
        Claim a pending candidate for review.

        Raises:
            StateConflict: If the candidate is not pending
        """
        if not reviewer_id:
            raise InvalidRequest("reviewer_id is required")

        with self.db.transaction() as conn:
            before = self.candidates.get_candidate(conn, candidate_id)
            after = self._transition(conn, before, MatchStatus.UNDER_REVIEW, reviewer_id, notes)

        logger.info(f"Candidate {candidate_id} under review by {reviewer_id}")
        self._emit(reviewer_id, before, after)
        return after

    def review_candidate(self, candidate_id: str, reviewer_id: str,
                         decision: Union[MatchStatus, str], notes: Optional[str] = None,
                         expected_status: Optional[Union[MatchStatus, str]] = None) -> ReviewOutcome:
        """
        Record a reviewer's decision on a candidate.

        A pending candidate passes through ``under_review`` in the same
        transaction, so two decision rows are written.

        Args:
            candidate_id: Candidate to decide
            reviewer_id: Reviewer making the decision
            decision: confirmed_match, confirmed_not_match or deferred
            notes: Reviewer notes
            expected_status: Status the reviewer saw; the decision is refused
                if the stored status differs

        Returns:
            ReviewOutcome with the updated candidate and, for a confirmed
            match with merge_on_confirm, the merge result or merge error

        Raises:
            InvalidRequest: If reviewer_id is empty or decision is not a review decision
            StateConflict: If the candidate is not pending/under review, not in
                ``expected_status``, or a confirmed match names a merged identity
        """
        if not reviewer_id:
            raise InvalidRequest("reviewer_id is required")

        try:
            target = MatchStatus(decision)
            expected = MatchStatus(expected_status) if expected_status is not None else None
        except ValueError as e:
            raise InvalidRequest(f"Unknown candidate status: {e}", entity_id=candidate_id) from e
        if target not in REVIEW_DECISIONS:
            raise InvalidRequest(f"{target.value} is not a review decision", entity_id=candidate_id)

        with self.db.transaction() as conn:
            before = self.candidates.get_candidate(conn, candidate_id)
            if expected is not None and before.status != expected:
                raise StateConflict(
                    f"Candidate {candidate_id} is {before.status.value}, expected {expected.value}",
                    entity_id=candidate_id, expected=expected.value, actual=before.status.value,
                )

            if target == MatchStatus.CONFIRMED_MATCH:
                for identity_id in before.pair:
                    identity = self.identities.get_identity(conn, identity_id)
                    if not identity.active:
                        raise StateConflict(
                            f"Identity {identity_id} was merged into {identity.merged_into}; "
                            f"candidate {candidate_id} cannot be confirmed",
                            entity_id=candidate_id, expected="active", actual="inactive",
                        )

            current = before
            if current.status == MatchStatus.PENDING:
                current = self._transition(conn, current, MatchStatus.UNDER_REVIEW, reviewer_id, None)
            after = self._transition(conn, current, target, reviewer_id, notes)

        logger.info(f"Candidate {candidate_id}: {before.status.value} -> {after.status.value} "
                    f"by {reviewer_id}")
        self._emit(reviewer_id, before, after)

        outcome = ReviewOutcome(candidate=after)
        if target == MatchStatus.CONFIRMED_MATCH and self.merge_on_confirm and self.merge_executor:
            try:
                outcome.merge_record = self.merge_executor.merge_candidate(candidate_id, reviewer_id, reason=notes)
                outcome.candidate = self.get_candidate(candidate_id)
            except (MergeFailure, StateConflict) as e:
                # The confirmation stands; the merge can be retried
                logger.error(f"Merge after confirming candidate {candidate_id} failed: {e}")
                outcome.merge_error = e

        return outcome

    def requeue(self, candidate_id: str, reviewer_id: str, notes: Optional[str] = None) -> MatchCandidate:
        """
        Return a deferred candidate to the pending queue.

        Raises:
            StateConflict: If the candidate is not deferred
        """
        if not reviewer_id:
            raise InvalidRequest("reviewer_id is required")

        with self.db.transaction() as conn:
            before = self.candidates.get_candidate(conn, candidate_id)
            after = self._transition(conn, before, MatchStatus.PENDING, reviewer_id, notes)

        logger.info(f"Candidate {candidate_id} re-queued by {reviewer_id}")
        self._emit(reviewer_id, before, after)
        return after

    def get_candidate(self, candidate_id: str) -> MatchCandidate:
        with self.db.read() as conn:
            return self.candidates.get_candidate(conn, candidate_id)

    def get_review_history(self, candidate_id: str) -> List[ReviewDecision]:
        with self.db.read() as conn:
            self.candidates.get_candidate(conn, candidate_id)
            return self.candidates.list_review_decisions(conn, candidate_id)
