"""
Unit tests for candidate scorer.
"""

import pytest
import copy
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.errors import InsufficientData, ScoringConfigError
from src.match.scorer import CandidateScorer, MRN_CONFLICT, MRN_MISSING, create_candidate_scorer
from src.models import MatchPriority, MatchStatus
from src.normalize.config import get_default_config
from src.normalize.contact_normalizer import IdentityNormalizer


class TestScoringConfig:
    """Test cases for scoring configuration validation."""

    def setup_method(self):
        """Setup test fixtures."""
        self.config = get_default_config()["scoring"]

    def test_default_config_is_valid(self):
        scorer = CandidateScorer(self.config)
        assert scorer.thresholds["t_auto"] == 95.0

    def test_weights_must_sum_to_one(self):
        config = copy.deepcopy(self.config)
        config["weights"]["first_name"] = 0.05
        with pytest.raises(ScoringConfigError):
            CandidateScorer(config)

    def test_negative_weight_rejected(self):
        config = copy.deepcopy(self.config)
        config["weights"]["gender"] = -0.05
        config["weights"]["first_name"] = 0.25
        with pytest.raises(ScoringConfigError):
            CandidateScorer(config)

    def test_thresholds_must_increase(self):
        config = copy.deepcopy(self.config)
        config["thresholds"]["t_review_high"] = 70.0
        with pytest.raises(ScoringConfigError):
            CandidateScorer(config)

    def test_t_auto_capped_at_100(self):
        config = copy.deepcopy(self.config)
        config["thresholds"]["t_auto"] = 101.0
        with pytest.raises(ScoringConfigError):
            CandidateScorer(config)

    def test_missing_threshold_rejected(self):
        config = copy.deepcopy(self.config)
        del config["thresholds"]["t_discard"]
        with pytest.raises(ScoringConfigError):
            CandidateScorer(config)


class TestCandidateScorer:
    """Test cases for candidate scoring."""

    def setup_method(self):
        """Setup test fixtures."""
        config = get_default_config()
        self.scorer = create_candidate_scorer(config)
        self.normalizer = IdentityNormalizer(config["normalization"])

        self.john = self.normalizer.normalize_identity({
            "id": "a", "first_name": "John", "last_name": "Doe",
            "date_of_birth": "1950-01-15", "phone": "555-0101",
        })
        self.jon = self.normalizer.normalize_identity({
            "id": "b", "first_name": "Jon", "last_name": "Doe",
            "date_of_birth": "1950-01-15", "phone": "555-0101",
        })

    def test_missing_fields_excluded(self):
        """Missing fields leave the denominator instead of counting as zero."""
        overall, used = self.scorer.calculate_overall_score({"first_name": 1.0, "phone": None})
        assert overall == 100.0
        assert used == ["first_name"]

        overall, _ = self.scorer.calculate_overall_score({"last_name": 1.0, "date_of_birth": 0.0})
        assert overall == pytest.approx(100 * 0.20 / 0.45, abs=1e-4)

    def test_insufficient_data(self):
        with pytest.raises(InsufficientData):
            self.scorer.calculate_overall_score({"first_name": None, "mrn": None})

    def test_score_monotonic_in_each_field(self):
        """Raising any single field score never lowers the overall score."""
        base = {"first_name": 0.6, "last_name": 0.7, "date_of_birth": 0.8, "phone": 0.5,
                "address": 0.4, "mrn": None, "gender": 1.0}
        base_score, _ = self.scorer.calculate_overall_score(base)

        for field_name, value in base.items():
            if value is None:
                continue
            raised = dict(base, **{field_name: min(1.0, value + 0.2)})
            raised_score, _ = self.scorer.calculate_overall_score(raised)
            assert raised_score >= base_score

    def test_determine_priority(self):
        assert self.scorer.determine_priority(96.0, {}) == MatchPriority.URGENT
        assert self.scorer.determine_priority(95.0, {}) == MatchPriority.URGENT
        assert self.scorer.determine_priority(90.0, {}) == MatchPriority.HIGH
        assert self.scorer.determine_priority(80.0, {}) == MatchPriority.NORMAL
        assert self.scorer.determine_priority(60.0, {}) == MatchPriority.LOW
        assert self.scorer.determine_priority(59.9, {}) is None
        # A shared MRN is urgent whatever the score
        assert self.scorer.determine_priority(20.0, {"mrn": 1.0}) == MatchPriority.URGENT

    def test_auto_match_blocked_reason(self):
        assert self.scorer.auto_match_blocked_reason({"mrn": 0.0}) == MRN_CONFLICT
        assert self.scorer.auto_match_blocked_reason({"mrn": 1.0}) is None
        assert self.scorer.auto_match_blocked_reason({"mrn": None}) is None

    def test_score_pair_phonetic_variant(self):
        """John/Jon Doe with matching birth date and phone is an urgent auto-match."""
        candidate = self.scorer.score_pair(self.john, self.jon, "phone:abc")

        assert candidate.overall_match_score >= 95.0
        assert candidate.priority == MatchPriority.URGENT
        assert candidate.status == MatchStatus.PENDING
        assert candidate.auto_match_eligible
        assert candidate.auto_match_blocked_reason is None
        assert candidate.field_scores["first_name"] >= 0.85
        assert candidate.field_scores["date_of_birth"] == 1.0
        assert "address" not in candidate.field_scores
        assert set(candidate.matching_fields_used) == {"first_name", "last_name", "date_of_birth", "phone"}
        assert candidate.blocking_key == "phone:abc"
        assert candidate.algorithm_version == "v1.0-jw-soundex"

    def test_score_pair_is_symmetric(self):
        forward = self.scorer.score_pair(self.john, self.jon)
        backward = self.scorer.score_pair(self.jon, self.john)

        assert (forward.patient_id_a, forward.patient_id_b) == ("a", "b")
        assert (backward.patient_id_a, backward.patient_id_b) == ("a", "b")
        assert forward.overall_match_score == backward.overall_match_score
        assert forward.field_scores == backward.field_scores

    def test_shared_mrn_kept_below_discard(self):
        """Two identities sharing an MRN surface even when nothing else agrees."""
        alice = self.normalizer.normalize_identity({
            "id": "m1", "first_name": "Alice", "last_name": "Walker",
            "date_of_birth": "1940-02-02", "mrn": "Z-77",
        })
        robert = self.normalizer.normalize_identity({
            "id": "m2", "first_name": "Robert", "last_name": "Jones",
            "date_of_birth": "1988-11-30", "mrn": "Z77",
        })

        candidate = self.scorer.score_pair(alice, robert)

        assert candidate is not None
        assert candidate.overall_match_score < 60.0
        assert candidate.priority == MatchPriority.URGENT
        assert not candidate.auto_match_eligible

    def test_low_score_discarded(self):
        other = self.normalizer.normalize_identity({
            "id": "c", "first_name": "Maria", "last_name": "Ortiz",
            "date_of_birth": "1989-06-30", "phone": "410-955-5000",
        })
        assert self.scorer.score_pair(self.john, other) is None

    def test_require_mrn_match_blocks_auto_merge(self):
        config = get_default_config()
        config["scoring"]["require_mrn_match"] = True
        scorer = create_candidate_scorer(config)

        candidate = scorer.score_pair(self.john, self.jon)

        assert candidate.priority == MatchPriority.URGENT
        assert not candidate.auto_match_eligible
        assert candidate.auto_match_blocked_reason == MRN_MISSING

    def test_scoring_statistics(self):
        candidate = self.scorer.score_pair(self.john, self.jon)
        stats = self.scorer.get_scoring_statistics([candidate])

        assert stats["total_pairs"] == 1
        assert stats["auto_match_eligible_count"] == 1
        assert stats["priority_distribution"] == {"urgent": 1}
        assert self.scorer.get_scoring_statistics([]) == {"total_pairs": 0}


if __name__ == "__main__":
    pytest.main([__file__])
