"""
Field-level similarity for PatientMatch.

Compares two normalized identities field by field. Every comparison
returns a similarity in [0, 1], or None when either side lacks the field,
and gives the same result whichever identity is passed first.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional
from thefuzz import fuzz
from Levenshtein import distance as levenshtein_distance
from jellyfish import jaro_winkler_similarity

logger = logging.getLogger(__name__)

COMPARED_FIELDS = ["first_name", "last_name", "date_of_birth", "phone", "address", "mrn", "gender"]


def _ordered(a: str, b: str):
    # Comparisons run on a canonical ordering so that argument order never
    # changes the result
    return (a, b) if a <= b else (b, a)


class FieldComparator:
    """
    Computes per-field similarity between two normalized identities.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize field comparator with configuration.

        Args:
            config: Comparison parameters (``scoring.comparison``)
        """
        config = config or {}
        self.config = config
        self.phonetic_floor = config.get("phonetic_floor", 0.85)
        self.dob_max_days = config.get("dob_max_days", 365)
        self.dob_typo_score = config.get("dob_typo_score", 0.8)
        self.phone_local_match_score = config.get("phone_local_match_score", 0.9)
        self.phone_typo_score = config.get("phone_typo_score", 0.5)

        logger.info("Initialized FieldComparator")

    def compare_name(self, name1: str, name2: str, codes1: Dict[str, str],
                     codes2: Dict[str, str]) -> Optional[float]:
        """
        Jaro-Winkler similarity of two normalized names, floored when the
        names sound alike.

        Args:
            name1: First normalized name
            name2: Second normalized name
            codes1: Soundex/metaphone codes of the first name
            codes2: Soundex/metaphone codes of the second name

        Returns:
            Similarity in [0, 1] or None when either name is missing
        """
        if not name1 or not name2:
            return None
        if name1 == name2:
            return 1.0

        first, second = _ordered(name1, name2)
        score = jaro_winkler_similarity(first, second)

        sounds_alike = (
            codes1.get("soundex") and codes1.get("soundex") == codes2.get("soundex")
            and codes1.get("metaphone") == codes2.get("metaphone")
        )
        if sounds_alike:
            score = max(score, self.phonetic_floor)

        return float(min(score, 1.0))

    def compare_date_of_birth(self, dob1: str, dob2: str) -> Optional[float]:
        """
        Compare two ISO dates of birth.

        Exact dates score 1.0; a day/month swap or a single-character typo
        scores ``dob_typo_score``; other dates decay linearly with the number
        of days between them and never reach the typo score.
        """
        if not dob1 or not dob2:
            return None
        if dob1 == dob2:
            return 1.0

        first, second = _ordered(dob1, dob2)
        d1 = date.fromisoformat(first)
        d2 = date.fromisoformat(second)

        swapped = d1.year == d2.year and d1.month == d2.day and d1.day == d2.month
        if swapped or levenshtein_distance(first, second) <= 1:
            return self.dob_typo_score

        days_apart = abs((d2 - d1).days)
        decay = max(0.0, 1.0 - days_apart / float(self.dob_max_days))
        return min(decay, self.dob_typo_score)

    def compare_phone(self, phone1: str, phone2: str) -> Optional[float]:
        """
        Compare two normalized phone numbers (digits only).

        Returns:
            1.0 when equal, ``phone_local_match_score`` when the last seven
            digits agree, ``phone_typo_score`` at edit distance 1, else 0.0
        """
        if not phone1 or not phone2:
            return None
        if phone1 == phone2:
            return 1.0
        if len(phone1) >= 7 and len(phone2) >= 7 and phone1[-7:] == phone2[-7:]:
            return self.phone_local_match_score

        first, second = _ordered(phone1, phone2)
        if levenshtein_distance(first, second) == 1:
            return self.phone_typo_score
        return 0.0

    def compare_mrn(self, mrn1: str, mrn2: str) -> Optional[float]:
        if not mrn1 or not mrn2:
            return None
        return 1.0 if mrn1 == mrn2 else 0.0

    def compare_address(self, address1: str, address2: str) -> Optional[float]:
        """Token sort ratio of normalized street + ZIP, scaled to [0, 1]."""
        if not address1 or not address2:
            return None
        first, second = _ordered(address1, address2)
        return fuzz.token_sort_ratio(first, second) / 100.0

    def compare_gender(self, gender1: str, gender2: str) -> Optional[float]:
        # Unknown gender is normalized to "" upstream and counts as missing
        if not gender1 or not gender2:
            return None
        return 1.0 if gender1 == gender2 else 0.0

    def compare_identities(self, features1: Dict[str, Any],
                           features2: Dict[str, Any]) -> Dict[str, Optional[float]]:
        """
        Compare two normalized identities on every supported field.

        Args:
            features1: Normalized features of the first identity
            features2: Normalized features of the second identity

        Returns:
            Dictionary of field -> similarity (None when missing on either side)
        """
        def codes(features, prefix):
            return {
                "soundex": features.get(f"{prefix}_soundex", ""),
                "metaphone": features.get(f"{prefix}_metaphone", ""),
            }

        return {
            "first_name": self.compare_name(
                features1.get("first_name"), features2.get("first_name"),
                codes(features1, "first_name"), codes(features2, "first_name"),
            ),
            "last_name": self.compare_name(
                features1.get("last_name"), features2.get("last_name"),
                codes(features1, "last_name"), codes(features2, "last_name"),
            ),
            "date_of_birth": self.compare_date_of_birth(
                features1.get("date_of_birth"), features2.get("date_of_birth")
            ),
            "phone": self.compare_phone(features1.get("phone_norm"), features2.get("phone_norm")),
            "address": self.compare_address(features1.get("address_norm"), features2.get("address_norm")),
            "mrn": self.compare_mrn(features1.get("mrn_norm"), features2.get("mrn_norm")),
            "gender": self.compare_gender(features1.get("gender_norm"), features2.get("gender_norm")),
        }
