"""
Service interface for PatientMatch.

Entry point for review UIs and integrations. Mutating operations return a
ServiceResult instead of raising, so callers handle StateConflict,
AlreadyResolved, MergeFailure and InvalidRequest as values. Unexpected
exceptions still propagate.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..errors import PatientMatchError
from ..models import ConflictRecord, MatchCandidate, ServiceResult
from ..normalize.config import DEFAULT_CONFIG_PATH
from ..pipeline.run_patient_match import MatchingPipeline

logger = logging.getLogger(__name__)


class MPIService:
    """
    Master patient index service: candidate review, merges and conflicts.
    """

    def __init__(self, config: Optional[Dict] = None, config_path: str = DEFAULT_CONFIG_PATH,
                 pipeline: Optional[MatchingPipeline] = None):
        """
        Initialize the service.

        Args:
            config: Engine configuration (loaded from ``config_path`` when omitted)
            config_path: Path to configuration file
            pipeline: Pre-built pipeline sharing the same database
        """
        self.pipeline = pipeline or MatchingPipeline(config=config, config_path=config_path)
        self.db = self.pipeline.db
        self.workflow = self.pipeline.workflow
        self.merge_executor = self.pipeline.merge_executor
        self.resolver = self.pipeline.resolver

        logger.info("Initialized MPIService")

    def _call(self, operation: str, func: Callable[[], Any]) -> ServiceResult:
        try:
            return ServiceResult.success(func())
        except PatientMatchError as e:
            logger.warning(f"{operation} failed: {type(e).__name__}: {e.message}")
            return ServiceResult.failure(e)

    # Identities

    def register_identity(self, demographics: Dict[str, Any], source: str = "unknown",
                          tenant_id: str = "default", actor: str = "system") -> ServiceResult:
        """Register an identity and detect duplicates for it."""
        def register():
            identity = self.pipeline.register_identity(demographics, source, tenant_id, actor)
            candidates = self.pipeline.detect_for_identity(identity.id, actor)
            return {"identity": identity, "candidates": candidates}
        return self._call("register_identity", register)

    def update_identity(self, identity_id: str, changes: Dict[str, Any],
                        actor: str = "system") -> ServiceResult:
        return self._call("update_identity",
                          lambda: self.pipeline.update_identity(identity_id, changes, actor))

    def detect_duplicates(self, identity_id: str, actor: str = "system") -> ServiceResult:
        return self._call("detect_duplicates",
                          lambda: self.pipeline.detect_for_identity(identity_id, actor))

    # Candidates

    def list_candidates(self, filter: Optional[Dict[str, Any]] = None, limit: int = 50,
                        offset: int = 0, tenant_id: Optional[str] = None) -> List[MatchCandidate]:
        """
        List match candidates for review.

        Args:
            filter: Optional status, priority and search terms
            limit: Page size
            offset: Page offset
            tenant_id: Restrict to one tenant

        Returns:
            Candidates with both sides' demographic summaries
        """
        filter = filter or {}
        with self.db.read() as conn:
            return self.pipeline.candidates.list_candidates(
                conn,
                tenant_id=tenant_id,
                status=filter.get("status"),
                priority=filter.get("priority"),
                search=filter.get("search"),
                limit=limit,
                offset=offset,
            )

    def get_candidate_stats(self, scope: Optional[str] = None) -> Dict[str, int]:
        """Candidate counts for a tenant (or all tenants when scope is None)."""
        with self.db.read() as conn:
            stats = self.pipeline.candidates.candidate_stats(conn, scope)
        return {key: stats[key] for key in ("total", "pending", "under_review", "merged", "superseded",
                                            "confirmed_not_match", "high_priority", "urgent_priority")}

    def start_review(self, candidate_id: str, reviewer_id: str) -> ServiceResult:
        return self._call("start_review", lambda: self.workflow.start_review(candidate_id, reviewer_id))

    def review_candidate(self, candidate_id: str, reviewer_id: str, decision: str,
                         notes: Optional[str] = None,
                         expected_status: Optional[str] = None) -> ServiceResult:
        """
        Record a review decision.

        A confirmed match may be merged immediately; if that merge fails the
        decision still succeeds and the outcome carries the merge error.
        """
        def review():
            outcome = self.workflow.review_candidate(candidate_id, reviewer_id, decision, notes, expected_status)
            if outcome.merge_record is not None:
                self.pipeline.refresh_after_merge(outcome.merge_record, reviewer_id)
            return outcome
        return self._call("review_candidate", review)

    def requeue_candidate(self, candidate_id: str, reviewer_id: str,
                          notes: Optional[str] = None) -> ServiceResult:
        return self._call("requeue_candidate",
                          lambda: self.workflow.requeue(candidate_id, reviewer_id, notes))

    def get_review_history(self, candidate_id: str) -> ServiceResult:
        return self._call("get_review_history", lambda: self.workflow.get_review_history(candidate_id))

    # Merges

    def merge_confirmed_candidate(self, candidate_id: str, performed_by: str,
                                  survivor_id: Optional[str] = None,
                                  reason: Optional[str] = None) -> ServiceResult:
        """
        Merge a confirmed candidate.

        Args:
            candidate_id: Candidate in ``confirmed_match``
            performed_by: Actor performing the merge
            survivor_id: Identity to keep instead of the policy's choice
            reason: Why the records were merged
        """
        def merge():
            record = self.merge_executor.merge_candidate(candidate_id, performed_by, survivor_id, reason)
            self.pipeline.refresh_after_merge(record, performed_by)
            return record
        return self._call("merge_confirmed_candidate", merge)

    def unmerge(self, merge_id: str, performed_by: str, reason: Optional[str] = None) -> ServiceResult:
        """Roll back a merge and re-index both identities."""
        def rollback():
            result = self.merge_executor.unmerge(merge_id, performed_by, reason)
            self.pipeline.reindex_identity(result["restored_id"])
            self.pipeline.reindex_identity(result["survivor_id"])
            return result
        return self._call("unmerge", rollback)

    def verify_merge(self, merge_id: str, verified_by: str, notes: Optional[str] = None) -> ServiceResult:
        return self._call("verify_merge",
                          lambda: self.merge_executor.verify_merge(merge_id, verified_by, notes))

    def list_reversible_merges(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.merge_executor.get_reversible_merges(limit)

    def get_merge_history(self, identity_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self.merge_executor.get_merge_history(identity_id, limit)

    def get_merge_statistics(self) -> Dict[str, Any]:
        return self.merge_executor.get_merge_statistics()

    # Conflicts

    def detect_conflict(self, resource_type: str, resource_id: str, source_payload: Dict[str, Any],
                        local_payload: Optional[Dict[str, Any]] = None,
                        source_system: str = "external") -> ServiceResult:
        return self._call(
            "detect_conflict",
            lambda: self.resolver.detect_conflict(resource_type, resource_id, source_payload,
                                                  local_payload, source_system),
        )

    def list_conflicts(self, filter: Optional[Dict[str, Any]] = None, limit: int = 50,
                       offset: int = 0) -> List[ConflictRecord]:
        filter = filter or {}
        return self.resolver.list_conflicts(
            status=filter.get("status"),
            resource_type=filter.get("resource_type"),
            limit=limit,
            offset=offset,
        )

    def resolve_conflict(self, conflict_id: str, action: str, notes: Optional[str],
                         resolver_id: str) -> ServiceResult:
        """
        Resolve a conflict.

        A Patient resolution re-indexes the identity it was applied to, which
        is the survivor when the Patient has since been merged.
        """
        def resolve():
            record = self.resolver.resolve(conflict_id, action, resolver_id, notes)
            if record.resource_type == "Patient" and record.resolved_payload is not None:
                with self.db.read() as conn:
                    target = self.pipeline.identities.resolve_active(conn, record.resource_id)
                self.pipeline.reindex_identity(target.id)
            return record
        return self._call("resolve_conflict", resolve)
