"""
Source/local conflict resolution for PatientMatch.

When an externally sourced record (for example from a FHIR sync) disagrees
with the local copy, a ConflictRecord is opened. Resolving it applies one
of four actions using a per-resource-type field policy loaded from
configuration: which source fields map to which local fields, and which
local fields are clinical or administrative.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Union

from ..audit.audit_logger import AuditSink
from ..errors import AlreadyResolved, InvalidRequest
from ..models import (
    DEMOGRAPHIC_FIELDS, ConflictRecord, FieldClass, PatientIdentity, ResolutionAction, new_id,
)
from ..store.conflict_store import ConflictStore
from ..store.database import Database
from ..store.identity_store import IdentityStore

logger = logging.getLogger(__name__)


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


def _same(left: Any, right: Any) -> bool:
    if not _present(left) and not _present(right):
        return True
    if not _present(left) or not _present(right):
        return False
    return str(left).strip() == str(right).strip()


class ResourcePolicy:
    """Field mapping and classification for one resource type."""

    def __init__(self, resource_type: str, config: Optional[Dict] = None):
        config = config or {}
        self.resource_type = resource_type
        self.field_mapping = dict(config.get("field_mapping", {}))
        self.clinical = set(config.get("clinical", []))
        self.administrative = set(config.get("administrative", []))

    def classify(self, field_name: str) -> FieldClass:
        if field_name in self.administrative:
            return FieldClass.ADMINISTRATIVE
        if field_name in self.clinical:
            return FieldClass.CLINICAL
        return FieldClass.UNCLASSIFIED

    def map_source(self, source_payload: Dict[str, Any]) -> Dict[str, Any]:
        """Rename source fields to local field names; unmapped fields keep their name."""
        return {self.field_mapping.get(key, key): value for key, value in source_payload.items()}


class PatientApplier:
    """
    Reads and writes the local copy of Patient resources (patient identities).

    A Patient merged away since the conflict was opened is read from and
    written to its surviving identity.
    """

    def __init__(self, identities: Optional[IdentityStore] = None):
        self.identities = identities or IdentityStore()

    def load(self, conn: sqlite3.Connection, resource_id: str) -> Dict[str, Any]:
        identity = self.identities.resolve_active(conn, resource_id)
        return {
            **identity.demographics(),
            "tenant_id": identity.tenant_id,
            "source": identity.source,
            "created_at": identity.created_at,
        }

    def apply(self, conn: sqlite3.Connection, resource_id: str,
              changes: Dict[str, Any]) -> PatientIdentity:
        identity = self.identities.resolve_active(conn, resource_id)
        if identity.id != resource_id:
            logger.info(f"Patient {resource_id} was merged; applying resolution to {identity.id}")
        return self.identities.update_attributes(
            conn, identity.id, {k: v for k, v in changes.items() if k in DEMOGRAPHIC_FIELDS}
        )


class ConflictResolver:
    """
    Detects and resolves divergence between source and local records.
    """

    def __init__(self, db: Database, config: Optional[Dict] = None,
                 audit: Optional[AuditSink] = None, appliers: Optional[Dict[str, Any]] = None):
        """
        Initialize conflict resolver with configuration.

        Args:
            db: Engine database
            config: Conflict resolution configuration (resource_types)
            audit: Audit sink for conflict events
            appliers: Resource type -> applier writing resolved payloads to
                the local store; defaults to a Patient applier
        """
        config = config or {}
        self.db = db
        self.config = config
        self.audit = audit
        self.conflicts = ConflictStore()
        self.policies = {
            resource_type: ResourcePolicy(resource_type, policy)
            for resource_type, policy in config.get("resource_types", {}).items()
        }
        self.appliers = appliers if appliers is not None else {"Patient": PatientApplier()}

        logger.info(f"Initialized ConflictResolver for {len(self.policies)} resource types")

    def get_policy(self, resource_type: str) -> ResourcePolicy:
        policy = self.policies.get(resource_type)
        if policy is None:
            logger.warning(f"No conflict policy configured for {resource_type}, using identity mapping")
            policy = ResourcePolicy(resource_type)
        return policy

    def diverging_fields(self, policy: ResourcePolicy, source_payload: Dict[str, Any],
                         local_payload: Dict[str, Any]) -> List[str]:
        mapped = policy.map_source(source_payload)
        return sorted(name for name, value in mapped.items() if not _same(value, local_payload.get(name)))

    def detect_conflict(self, resource_type: str, resource_id: str, source_payload: Dict[str, Any],
                        local_payload: Optional[Dict[str, Any]] = None,
                        source_system: str = "external") -> Optional[ConflictRecord]:
        """
        Compare a source record with the local copy and open a conflict if
        they diverge.

        Args:
            resource_type: Resource type (e.g. ``Patient``)
            resource_id: Local id of the resource
            source_payload: Record as received from the source system
            local_payload: Local copy; loaded through the resource type's
                applier when omitted
            source_system: Name of the source system

        Returns:
            The open ConflictRecord, or None when nothing diverges
        """
        policy = self.get_policy(resource_type)

        with self.db.transaction() as conn:
            if local_payload is None:
                applier = self.appliers.get(resource_type)
                if applier is None:
                    raise InvalidRequest(f"No local store for {resource_type}; pass local_payload")
                local_payload = applier.load(conn, resource_id)

            diverging = self.diverging_fields(policy, source_payload, local_payload)
            if not diverging:
                return None

            existing = self.conflicts.find_open_conflict(conn, resource_type, resource_id)
            if (existing is not None and existing.diverging_fields == diverging
                    and self.diverging_fields(policy, existing.source_payload, source_payload) == []):
                return existing

            record = ConflictRecord(
                id=new_id(),
                resource_type=resource_type,
                resource_id=resource_id,
                source_payload=dict(source_payload),
                local_payload=dict(local_payload),
                source_system=source_system,
                diverging_fields=diverging,
            )
            self.conflicts.insert_conflict(conn, record)

        logger.info(f"Opened conflict {record.id} for {resource_type}/{resource_id}: "
                    f"{len(diverging)} diverging fields")

        if self.audit:
            self.audit.emit(
                source_system, "conflict.detected", "conflict_record", [record.id, resource_id],
                after={"resource_type": resource_type, "diverging_fields": diverging},
            )

        return record

    def build_resolved_payload(self, policy: ResourcePolicy, action: ResolutionAction,
                               source_payload: Dict[str, Any],
                               local_payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Compute the resolved local record for an action.

        Returns:
            Resolved payload, or None for ``manual``
        """
        mapped = policy.map_source(source_payload)

        if action == ResolutionAction.MANUAL:
            return None

        if action == ResolutionAction.USE_LOCAL:
            return dict(local_payload)

        if action == ResolutionAction.USE_SOURCE:
            resolved = dict(local_payload)
            for name, value in mapped.items():
                if policy.classify(name) != FieldClass.ADMINISTRATIVE:
                    resolved[name] = value
            return resolved

        resolved = {}
        for name in sorted(set(mapped) | set(local_payload)):
            source_value = mapped.get(name)
            local_value = local_payload.get(name)
            field_class = policy.classify(name)

            if field_class == FieldClass.ADMINISTRATIVE:
                if name in local_payload:
                    resolved[name] = local_value
            elif not _present(local_value):
                resolved[name] = source_value
            elif not _present(source_value):
                resolved[name] = local_value
            elif field_class == FieldClass.CLINICAL:
                resolved[name] = source_value
            else:
                resolved[name] = local_value
        return resolved

    def resolve(self, conflict_id: str, action: Union[ResolutionAction, str], resolver_id: str,
                notes: Optional[str] = None) -> ConflictRecord:
        """
        Resolve an open conflict.

        Resolving again with the same action returns the stored record
        unchanged.

        Args:
            conflict_id: Conflict to resolve
            action: use_source, use_local, merge or manual
            resolver_id: User resolving the conflict
            notes: Resolution notes

        Returns:
            The resolved ConflictRecord

        Raises:
            AlreadyResolved: If the conflict was resolved with a different action
        """
        if not resolver_id:
            raise InvalidRequest("resolver_id is required")
        try:
            action = ResolutionAction(action)
        except ValueError as e:
            raise InvalidRequest(f"Unknown resolution action: {action!r}", entity_id=conflict_id) from e

        with self.db.transaction() as conn:
            record = self.conflicts.get_conflict(conn, conflict_id)
            if record.is_resolved:
                if record.resolution_action == action:
                    logger.info(f"Conflict {conflict_id} already resolved with {action.value}")
                    return record
                raise AlreadyResolved(
                    f"Conflict {conflict_id} was resolved with {record.resolution_action.value}",
                    entity_id=conflict_id, resolution_action=record.resolution_action.value,
                )

            policy = self.get_policy(record.resource_type)
            applier = self.appliers.get(record.resource_type)

            # Fields the local store holds are resolved against their current
            # values, not the ones captured when the conflict was opened
            local = dict(record.local_payload)
            if applier is not None:
                current = applier.load(conn, record.resource_id)
                local = {name: current.get(name, value) for name, value in local.items()}
            resolved = self.build_resolved_payload(policy, action, record.source_payload, local)
            requires_manual = action == ResolutionAction.MANUAL

            if not self.conflicts.mark_resolved(conn, conflict_id, action, resolved, resolver_id,
                                                notes, requires_manual):
                raise AlreadyResolved(f"Conflict {conflict_id} is no longer open", entity_id=conflict_id)

            if action == ResolutionAction.USE_LOCAL:
                rejected = {name: record.source_payload.get(name) for name in record.diverging_fields}
                logger.info(f"Conflict {conflict_id}: kept local values, rejected source fields "
                            f"{sorted(rejected)}")
            elif action in (ResolutionAction.USE_SOURCE, ResolutionAction.MERGE) and applier is not None:
                # Only fields the source speaks to are written back
                changes = {
                    name: resolved[name] for name in policy.map_source(record.source_payload)
                    if name in resolved and not _same(resolved[name], local.get(name))
                }
                if changes:
                    applier.apply(conn, record.resource_id, changes)

            stored = self.conflicts.get_conflict(conn, conflict_id)

        logger.info(f"Resolved conflict {conflict_id} with {action.value} by {resolver_id}")

        if self.audit:
            self.audit.emit(
                resolver_id, "conflict.resolved", "conflict_record", [conflict_id, stored.resource_id],
                before={"status": "open", "local": local},
                after={"status": stored.status.value, "action": action.value,
                       "resolved": stored.resolved_payload,
                       "requires_manual_correction": stored.requires_manual_correction},
            )

        return stored

    def get_conflict(self, conflict_id: str) -> ConflictRecord:
        with self.db.read() as conn:
            return self.conflicts.get_conflict(conn, conflict_id)

    def list_conflicts(self, status: Optional[str] = None, resource_type: Optional[str] = None,
                       limit: int = 50, offset: int = 0) -> List[ConflictRecord]:
        with self.db.read() as conn:
            return self.conflicts.list_conflicts(conn, status, resource_type, limit, offset)
