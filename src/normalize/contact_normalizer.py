"""
Demographic normalization for PatientMatch.

Standardizes phone numbers, dates of birth, MRNs, gender codes, addresses
and emails, and assembles the per-identity feature dictionary used by the
blocking indexer and the field comparator.
"""

import re
import logging
from typing import Any, Dict, Optional
import pandas as pd
import phonenumbers
from phonenumbers import PhoneNumberFormat

from .name_normalizer import NameNormalizer

logger = logging.getLogger(__name__)

GENDER_CODES = {
    "m": "male", "male": "male", "man": "male",
    "f": "female", "female": "female", "woman": "female",
    "o": "other", "other": "other", "x": "other", "nonbinary": "other",
    "u": "unknown", "unknown": "unknown", "unk": "unknown", "": "unknown",
}


class ContactNormalizer:
    """
    Normalizes non-name demographic attributes for consistent matching.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize contact normalizer with configuration.

        Args:
            config: Normalization configuration (the ``phone`` subsection is used)
        """
        config = config or {}
        self.config = config
        self.default_country = config.get("phone", {}).get("default_country_code", "US")

        self.street_directions = {
            "north": "n", "south": "s", "east": "e", "west": "w",
            "northeast": "ne", "northwest": "nw", "southeast": "se", "southwest": "sw"
        }
        self.street_types = {
            "street": "st", "avenue": "ave", "boulevard": "blvd", "drive": "dr",
            "lane": "ln", "road": "rd", "court": "ct", "place": "pl",
            "square": "sq", "terrace": "ter", "highway": "hwy", "circle": "cir",
            "apartment": "apt", "suite": "ste"
        }

        self.digits_pattern = re.compile(r"\D")
        self.punctuation_pattern = re.compile(r"[^\w\s]")
        self.whitespace_pattern = re.compile(r"\s+")
        self.zip_pattern = re.compile(r"\d{5}")

    def normalize_phone(self, phone: Optional[str]) -> str:
        """
        Normalize a phone number to digits.

        Valid numbers are formatted as E.164 (without the leading plus);
        numbers phonenumbers cannot validate, such as 7-digit local numbers,
        fall back to their bare digits.

        Args:
            phone: Raw phone number

        Returns:
            Digit string, empty when missing
        """
        if not isinstance(phone, str) or not phone.strip():
            return ""

        try:
            parsed = phonenumbers.parse(phone, self.default_country)
            if phonenumbers.is_valid_number(parsed):
                return phonenumbers.format_number(parsed, PhoneNumberFormat.E164).lstrip("+")
        except phonenumbers.NumberParseException:
            logger.debug("Phone number could not be parsed, using bare digits")

        return self.digits_pattern.sub("", phone)

    def normalize_date_of_birth(self, dob: Any) -> str:
        """
        Normalize a date of birth to ISO format (YYYY-MM-DD).

        Args:
            dob: Raw date (string, date or datetime)

        Returns:
            ISO date string, empty when missing or unparseable
        """
        if dob is None or (isinstance(dob, str) and not dob.strip()):
            return ""

        parsed = pd.to_datetime(dob, errors="coerce")
        if pd.isna(parsed):
            logger.warning("Unparseable date of birth ignored")
            return ""
        return parsed.date().isoformat()

    def normalize_mrn(self, mrn: Optional[str]) -> str:
        """Upper-case the MRN and drop whitespace and separators."""
        if mrn is None:
            return ""
        return re.sub(r"[\s-]", "", str(mrn)).upper()

    def normalize_gender(self, gender: Optional[str]) -> str:
        """Map free-form gender values onto male/female/other/unknown."""
        if not isinstance(gender, str):
            return "unknown"
        return GENDER_CODES.get(gender.strip().lower(), "unknown")

    def normalize_email(self, email: Optional[str]) -> str:
        if not isinstance(email, str):
            return ""
        return email.strip().lower()

    def normalize_street(self, street: Optional[str]) -> str:
        """
        Normalize a street line: lower case, no punctuation, abbreviated
        directions and street types.

        Args:
            street: Raw street line

        Returns:
            Normalized street line
        """
        if not isinstance(street, str):
            return ""

        street = self.punctuation_pattern.sub(" ", street.lower())
        tokens = []
        for token in self.whitespace_pattern.split(street.strip()):
            if not token:
                continue
            token = self.street_directions.get(token, token)
            token = self.street_types.get(token, token)
            tokens.append(token)
        return " ".join(tokens)

    def normalize_zip(self, zip_code: Optional[str]) -> str:
        if zip_code is None:
            return ""
        match = self.zip_pattern.search(str(zip_code))
        return match.group(0) if match else ""


class IdentityNormalizer:
    """
    Builds the normalized feature dictionary for a patient identity.
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.name_normalizer = NameNormalizer(config.get("name", {}))
        self.contact_normalizer = ContactNormalizer(config)

    def normalize_identity(self, identity) -> Dict[str, Any]:
        """
        Normalize an identity into comparison features.

        Args:
            identity: PatientIdentity or a dict of demographic attributes

        Returns:
            Feature dictionary; missing attributes are empty strings
        """
        record = identity if isinstance(identity, dict) else identity.to_dict()
        names = self.name_normalizer
        contact = self.contact_normalizer

        first_name = names.normalize_name(record.get("first_name"))
        last_name = names.normalize_name(record.get("last_name"))
        first_codes = names.get_phonetic_encodings(first_name)
        last_codes = names.get_phonetic_encodings(last_name)
        dob = contact.normalize_date_of_birth(record.get("date_of_birth"))

        street = contact.normalize_street(record.get("address"))
        zip5 = contact.normalize_zip(record.get("zip_code"))
        address_norm = " ".join(part for part in (street, zip5) if part)

        gender = contact.normalize_gender(record.get("gender"))

        return {
            "id": record.get("id"),
            "tenant_id": record.get("tenant_id") or "default",
            "first_name": first_name,
            "last_name": last_name,
            "middle_name": names.normalize_name(record.get("middle_name")),
            "first_initial": first_name[:1],
            "first_name_soundex": first_codes["soundex"],
            "first_name_metaphone": first_codes["metaphone"],
            "last_name_soundex": last_codes["soundex"],
            "last_name_metaphone": last_codes["metaphone"],
            "date_of_birth": dob,
            "birth_year": dob[:4],
            "phone_norm": contact.normalize_phone(record.get("phone")),
            "mrn_norm": contact.normalize_mrn(record.get("mrn")),
            "gender_norm": "" if gender == "unknown" else gender,
            "address_norm": address_norm,
            "zip5": zip5,
            "email_norm": contact.normalize_email(record.get("email")),
        }
