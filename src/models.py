"""
Domain types for PatientMatch.

Statuses, priorities and resolution actions are explicit enums so that
transition logic works on tagged values instead of free-form strings.
"""

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DEMOGRAPHIC_FIELDS = [
    "first_name",
    "middle_name",
    "last_name",
    "date_of_birth",
    "gender",
    "phone",
    "email",
    "mrn",
    "address",
    "city",
    "state",
    "zip_code",
]

# Fields shown next to each side of a candidate in review listings
DISPLAY_FIELDS = ["first_name", "last_name", "date_of_birth", "phone", "mrn", "source"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class MatchStatus(str, Enum):
    """Review status of a match candidate."""

    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    CONFIRMED_MATCH = "confirmed_match"
    CONFIRMED_NOT_MATCH = "confirmed_not_match"
    MERGED = "merged"
    DEFERRED = "deferred"
    # Retired because a merge tombstoned one of its identities
    SUPERSEDED = "superseded"


# Statuses still waiting on a reviewer
OPEN_STATUSES = [MatchStatus.PENDING, MatchStatus.UNDER_REVIEW, MatchStatus.DEFERRED]


class MatchPriority(str, Enum):
    """Priority tier of a match candidate."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    MatchPriority.LOW: 0,
    MatchPriority.NORMAL: 1,
    MatchPriority.HIGH: 2,
    MatchPriority.URGENT: 3,
}


class ResolutionAction(str, Enum):
    """How a source/local conflict is settled."""

    USE_SOURCE = "use_source"
    USE_LOCAL = "use_local"
    MERGE = "merge"
    MANUAL = "manual"


class ConflictStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class FieldClass(str, Enum):
    """Field classification used by the merge resolution policy."""

    CLINICAL = "clinical"
    ADMINISTRATIVE = "administrative"
    UNCLASSIFIED = "unclassified"


class SurvivorPolicy(str, Enum):
    EARLIEST_CREATED = "earliest_created"
    MOST_COMPLETE = "most_complete"


def _loads(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


@dataclass
class PatientIdentity:
    """One known patient identity. Merged identities are tombstoned, never deleted."""

    id: str
    tenant_id: str = "default"
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    mrn: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    source: str = "unknown"
    active: bool = True
    merged_into: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "PatientIdentity":
        data = dict(row)
        data["active"] = bool(data.get("active", 1))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def demographics(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in DEMOGRAPHIC_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MatchCandidate:
    """A scored, unordered pair of identities suspected to be the same patient."""

    id: str
    patient_id_a: str
    patient_id_b: str
    overall_match_score: float
    priority: MatchPriority
    status: MatchStatus
    algorithm_version: str
    field_scores: Dict[str, float] = field(default_factory=dict)
    matching_fields_used: List[str] = field(default_factory=list)
    blocking_key: Optional[str] = None
    tenant_id: str = "default"
    auto_match_eligible: bool = False
    auto_match_blocked_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_notes: Optional[str] = None
    detected_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    patient_a: Optional[Dict[str, Any]] = None
    patient_b: Optional[Dict[str, Any]] = None

    @property
    def pair(self):
        return (self.patient_id_a, self.patient_id_b)

    @classmethod
    def from_row(cls, row) -> "MatchCandidate":
        data = dict(row)
        return cls(
            id=data["id"],
            patient_id_a=data["patient_id_a"],
            patient_id_b=data["patient_id_b"],
            overall_match_score=float(data["overall_match_score"]),
            priority=MatchPriority(data["priority"]),
            status=MatchStatus(data["status"]),
            algorithm_version=data["algorithm_version"],
            field_scores=_loads(data.get("field_scores"), {}),
            matching_fields_used=_loads(data.get("matching_fields_used"), []),
            blocking_key=data.get("blocking_key"),
            tenant_id=data.get("tenant_id", "default"),
            auto_match_eligible=bool(data.get("auto_match_eligible", 0)),
            auto_match_blocked_reason=data.get("auto_match_blocked_reason"),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=data.get("reviewed_at"),
            review_notes=data.get("review_notes"),
            detected_at=data.get("detected_at"),
            updated_at=data.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class ReviewDecision:
    """One recorded state transition. Append-only."""

    id: str
    candidate_id: str
    reviewer_id: str
    from_status: MatchStatus
    decision: MatchStatus
    notes: Optional[str] = None
    decided_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "ReviewDecision":
        data = dict(row)
        return cls(
            id=data["id"],
            candidate_id=data["candidate_id"],
            reviewer_id=data["reviewer_id"],
            from_status=MatchStatus(data["from_status"]),
            decision=MatchStatus(data["decision"]),
            notes=data.get("notes"),
            decided_at=data["decided_at"],
        )


@dataclass(frozen=True)
class MergeRecord:
    """Result of one completed merge. Immutable."""

    id: str
    candidate_id: Optional[str]
    survivor_id: str
    merged_id: str
    field_provenance: Dict[str, str]
    survivor_snapshot: Dict[str, Any]
    merged_snapshot: Dict[str, Any]
    data_migrations: List[Dict[str, Any]]
    performed_by: str
    performed_at: str = field(default_factory=utc_now)
    reason: Optional[str] = None
    match_score: Optional[float] = None
    survivor_selection: str = SurvivorPolicy.EARLIEST_CREATED.value
    superseded_candidates: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "MergeRecord":
        data = dict(row)
        return cls(
            id=data["id"],
            candidate_id=data.get("candidate_id"),
            survivor_id=data["survivor_id"],
            merged_id=data["merged_id"],
            field_provenance=_loads(data.get("field_provenance"), {}),
            survivor_snapshot=_loads(data.get("survivor_snapshot"), {}),
            merged_snapshot=_loads(data.get("merged_snapshot"), {}),
            data_migrations=_loads(data.get("data_migrations"), []),
            performed_by=data["performed_by"],
            performed_at=data["performed_at"],
            reason=data.get("reason"),
            match_score=data.get("match_score"),
            survivor_selection=data.get("survivor_selection") or SurvivorPolicy.EARLIEST_CREATED.value,
            superseded_candidates=_loads(data.get("superseded_candidates"), []),
        )

    @property
    def rows_moved(self) -> int:
        return sum(len(m.get("row_ids", [])) for m in self.data_migrations)


@dataclass
class ConflictRecord:
    """Divergence between an externally sourced record and the local record."""

    id: str
    resource_type: str
    resource_id: str
    source_payload: Dict[str, Any]
    local_payload: Dict[str, Any]
    source_system: str = "external"
    diverging_fields: List[str] = field(default_factory=list)
    status: ConflictStatus = ConflictStatus.OPEN
    resolution_action: Optional[ResolutionAction] = None
    resolved_payload: Optional[Dict[str, Any]] = None
    resolver_id: Optional[str] = None
    notes: Optional[str] = None
    requires_manual_correction: bool = False
    detected_at: str = field(default_factory=utc_now)
    resolved_at: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status == ConflictStatus.RESOLVED

    @classmethod
    def from_row(cls, row) -> "ConflictRecord":
        data = dict(row)
        action = data.get("resolution_action")
        return cls(
            id=data["id"],
            resource_type=data["resource_type"],
            resource_id=data["resource_id"],
            source_system=data.get("source_system") or "external",
            source_payload=_loads(data.get("source_payload"), {}),
            local_payload=_loads(data.get("local_payload"), {}),
            diverging_fields=_loads(data.get("diverging_fields"), []),
            status=ConflictStatus(data["status"]),
            resolution_action=ResolutionAction(action) if action else None,
            resolved_payload=_loads(data.get("resolved_payload"), None),
            resolver_id=data.get("resolver_id"),
            notes=data.get("notes"),
            requires_manual_correction=bool(data.get("requires_manual_correction", 0)),
            detected_at=data["detected_at"],
            resolved_at=data.get("resolved_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["resolution_action"] = self.resolution_action.value if self.resolution_action else None
        return data


@dataclass
class ServiceResult:
    """Explicit success/error value returned by the service layer."""

    ok: bool
    value: Any = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: Any) -> "ServiceResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "ServiceResult":
        return cls(ok=False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None
