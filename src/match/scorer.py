"""
Candidate scorer for PatientMatch.

Combines per-field similarities into a weighted overall score, classifies
the pair into a priority tier and decides whether it may be auto-merged.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd
import numpy as np

from ..errors import InsufficientData, ScoringConfigError
from ..models import MatchCandidate, MatchPriority, MatchStatus, new_id
from ..store.candidate_store import CandidateStore
from .field_comparator import FieldComparator

logger = logging.getLogger(__name__)

THRESHOLD_ORDER = ["t_discard", "t_review_normal", "t_review_high", "t_auto"]

MRN_CONFLICT = "mrn_conflict"
MRN_MISSING = "mrn_missing"


class CandidateScorer:
    """
    Scores candidate pairs and classifies them by configured thresholds.

    Overall score is ``100 * sum(w * s) / sum(w)`` over the fields present on
    both sides, so a missing field is excluded instead of counted as zero.
    """

    def __init__(self, config: Dict, store: Optional[CandidateStore] = None):
        """
        Initialize candidate scorer with configuration.

        Args:
            config: Scoring configuration (weights, thresholds, comparison,
                algorithm_version, require_mrn_match)
            store: Candidate store used to persist scored pairs

        Raises:
            ScoringConfigError: If weights or thresholds are invalid
        """
        self.config = config
        self.weights = dict(config.get("weights", {}))
        self.thresholds = dict(config.get("thresholds", {}))
        self.algorithm_version = config.get("algorithm_version", "v1.0-jw-soundex")
        self.require_mrn_match = bool(config.get("require_mrn_match", False))
        self.comparator = FieldComparator(config.get("comparison", {}))
        self.store = store or CandidateStore()

        self._validate()

        logger.info(f"Initialized CandidateScorer ({self.algorithm_version})")

    def _validate(self):
        if not self.weights:
            raise ScoringConfigError("Scoring weights are not configured")

        for field_name, weight in self.weights.items():
            if weight < 0:
                raise ScoringConfigError(f"Weight for {field_name} is negative: {weight}")

        total = float(sum(self.weights.values()))
        if not np.isclose(total, 1.0, rtol=0.0, atol=1e-6):
            raise ScoringConfigError(f"Scoring weights must sum to 1.0, got {total:.6f}")

        missing = [name for name in THRESHOLD_ORDER if name not in self.thresholds]
        if missing:
            raise ScoringConfigError(f"Missing thresholds: {', '.join(missing)}")

        values = [float(self.thresholds[name]) for name in THRESHOLD_ORDER]
        if any(low >= high for low, high in zip(values, values[1:])):
            raise ScoringConfigError(
                "Thresholds must be strictly increasing: "
                "t_discard < t_review_normal < t_review_high < t_auto"
            )
        if values[-1] > 100:
            raise ScoringConfigError(f"t_auto must not exceed 100, got {values[-1]}")

    def calculate_overall_score(self, field_scores: Dict[str, Optional[float]]) -> Tuple[float, List[str]]:
        """
        Weighted overall score on a 0-100 scale.

        Args:
            field_scores: Field -> similarity, None for missing fields

        Returns:
            Tuple of (overall score, fields used)

        Raises:
            InsufficientData: If no weighted field is present on both sides
        """
        used = [name for name, score in field_scores.items()
                if score is not None and self.weights.get(name, 0) > 0]
        if not used:
            raise InsufficientData("No comparable fields between the two identities")

        weights = np.array([self.weights[name] for name in used], dtype=float)
        scores = np.array([field_scores[name] for name in used], dtype=float)
        overall = 100.0 * float(np.dot(weights, scores) / weights.sum())
        return round(overall, 4), used

    def determine_priority(self, overall: float, field_scores: Dict[str, Optional[float]]) -> Optional[MatchPriority]:
        """
        Map an overall score to a priority tier.

        Two identities sharing one MRN are always urgent.

        Returns:
            Priority, or None when the pair should be discarded
        """
        if field_scores.get("mrn") == 1.0:
            return MatchPriority.URGENT

        if overall >= self.thresholds["t_auto"]:
            return MatchPriority.URGENT
        if overall >= self.thresholds["t_review_high"]:
            return MatchPriority.HIGH
        if overall >= self.thresholds["t_review_normal"]:
            return MatchPriority.NORMAL
        if overall >= self.thresholds["t_discard"]:
            return MatchPriority.LOW
        return None

    def auto_match_blocked_reason(self, field_scores: Dict[str, Optional[float]]) -> Optional[str]:
        mrn_score = field_scores.get("mrn")
        if mrn_score is not None and mrn_score < 1.0:
            return MRN_CONFLICT
        if self.require_mrn_match and mrn_score is None:
            return MRN_MISSING
        return None

    def score_pair(self, features_a: Dict[str, Any], features_b: Dict[str, Any],
                   blocking_key: Optional[str] = None) -> Optional[MatchCandidate]:
        """
        Score one pair of normalized identities.

        Args:
            features_a: Normalized features of one identity
            features_b: Normalized features of the other identity
            blocking_key: Block the pair was found in

        Returns:
            Unsaved MatchCandidate, or None when below the discard threshold

        Raises:
            InsufficientData: If the pair has no comparable fields
        """
        if features_a["id"] > features_b["id"]:
            features_a, features_b = features_b, features_a

        field_scores = self.comparator.compare_identities(features_a, features_b)
        overall, used = self.calculate_overall_score(field_scores)
        priority = self.determine_priority(overall, field_scores)
        if priority is None:
            return None

        blocked_reason = self.auto_match_blocked_reason(field_scores)
        eligible = overall >= self.thresholds["t_auto"] and blocked_reason is None
        if overall < self.thresholds["t_auto"]:
            blocked_reason = None

        return MatchCandidate(
            id=new_id(),
            patient_id_a=features_a["id"],
            patient_id_b=features_b["id"],
            overall_match_score=overall,
            priority=priority,
            status=MatchStatus.PENDING,
            algorithm_version=self.algorithm_version,
            field_scores={name: round(float(score), 4) for name, score in field_scores.items()
                          if score is not None},
            matching_fields_used=used,
            blocking_key=blocking_key,
            tenant_id=features_a.get("tenant_id") or "default",
            auto_match_eligible=eligible,
            auto_match_blocked_reason=blocked_reason,
        )

    def persist_candidate(self, conn: sqlite3.Connection, candidate: MatchCandidate) -> Tuple[MatchCandidate, bool]:
        """Upsert a scored candidate; re-scoring updates scores but never status."""
        return self.store.upsert_candidate(conn, candidate)

    def get_scoring_statistics(self, candidates: List[MatchCandidate]) -> Dict[str, Any]:
        """
        Calculate scoring statistics for a batch of candidates.

        Args:
            candidates: Scored candidates

        Returns:
            Dictionary with scoring statistics
        """
        if not candidates:
            return {"total_pairs": 0}

        df = pd.DataFrame([{
            "score": c.overall_match_score,
            "priority": c.priority.value,
            "auto_match_eligible": c.auto_match_eligible,
        } for c in candidates])
        scores = df["score"]

        return {
            "total_pairs": len(df),
            "score_statistics": {
                "mean_score": float(scores.mean()),
                "median_score": float(scores.median()),
                "std_score": float(np.nan_to_num(scores.std())),
                "min_score": float(scores.min()),
                "max_score": float(scores.max()),
            },
            "priority_distribution": df["priority"].value_counts().to_dict(),
            "auto_match_eligible_count": int(df["auto_match_eligible"].sum()),
            "thresholds": self.thresholds,
        }


def create_candidate_scorer(config: Dict) -> CandidateScorer:
    """
    Convenience function to create a candidate scorer from the full engine
    configuration.

    Args:
        config: Engine configuration

    Returns:
        Initialized candidate scorer
    """
    return CandidateScorer(config.get("scoring", {}))
