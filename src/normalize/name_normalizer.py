"""
Name normalization for PatientMatch.

Standardizes patient names by removing titles/suffixes, diacritics and
punctuation, and provides phonetic encodings for blocking and matching.
"""

import re
import logging
import unicodedata
from typing import Dict, Optional, Tuple
from jellyfish import metaphone, soundex

logger = logging.getLogger(__name__)


class NameNormalizer:
    """
    Normalizes patient names for identity matching.

    Handles title/suffix removal, diacritic folding, case normalization,
    and phonetic encoding.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize name normalizer with configuration.

        Args:
            config: Configuration dictionary with normalization rules
        """
        config = config or {}
        self.config = config
        self.remove_titles = config.get("remove_titles", ["Dr.", "Dr", "Mr.", "Mr", "Mrs.", "Mrs", "Ms.", "Ms"])
        self.remove_suffixes = config.get("remove_suffixes", ["Jr.", "Jr", "Sr.", "Sr", "II", "III", "IV"])

        # Compile regex patterns for efficiency
        self.title_pattern = re.compile(
            r'^(?:' + '|'.join(map(re.escape, self.remove_titles)) + r')(?:\.|\s|$)', re.IGNORECASE
        )
        self.suffix_pattern = re.compile(
            r'(?:,|\s)\s*(?:' + '|'.join(map(re.escape, self.remove_suffixes)) + r')\.?$', re.IGNORECASE
        )
        self.non_alpha_pattern = re.compile(r"[^a-z\s-]")
        self.whitespace_pattern = re.compile(r'\s+')

    def normalize_name(self, name: Optional[str]) -> str:
        """
        Normalize a single name component.

        Args:
            name: Raw name

        Returns:
            Normalized lower-case name, empty string when missing
        """
        if not isinstance(name, str):
            return ""

        name = name.strip()
        name = self.title_pattern.sub('', name).strip()
        name = self.suffix_pattern.sub('', name).strip()

        # Fold diacritics (e.g. "José" -> "jose")
        name = unicodedata.normalize("NFKD", name)
        name = "".join(c for c in name if not unicodedata.combining(c))

        name = name.lower()
        name = self.non_alpha_pattern.sub('', name)
        name = name.replace('-', ' ')
        return self.whitespace_pattern.sub(' ', name).strip()

    def split_name_components(self, name: str) -> Tuple[str, str, str]:
        """
        Split a full name into first, last, and middle components.

        Args:
            name: Full name

        Returns:
            Tuple of (first_name, last_name, middle_name)
        """
        normalized = self.normalize_name(name)
        parts = normalized.split()

        if not parts:
            return "", "", ""
        if len(parts) == 1:
            # Single name, treat as last name
            return "", parts[0], ""
        if len(parts) == 2:
            return parts[0], parts[1], ""
        return parts[0], parts[-1], ' '.join(parts[1:-1])

    def get_phonetic_encodings(self, name: Optional[str]) -> Dict[str, str]:
        """
        Generate phonetic encodings for name matching.

        Args:
            name: Normalized name

        Returns:
            Dictionary with soundex and metaphone codes (empty when missing)
        """
        normalized = self.normalize_name(name)
        if not normalized:
            return {"soundex": "", "metaphone": ""}

        # Compound surnames are encoded without the space
        compact = normalized.replace(' ', '')
        return {
            "soundex": soundex(compact),
            "metaphone": metaphone(compact),
        }
