"""
Patient identity persistence for PatientMatch.

Identities are the long-lived aggregate: created on enrollment or sync,
updated by merges and conflict resolution, tombstoned (never deleted) when
merged away.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple
import pandas as pd

from ..errors import NotFound, StateConflict
from ..models import DEMOGRAPHIC_FIELDS, PatientIdentity, utc_now
from .database import check_identifier

logger = logging.getLogger(__name__)

IDENTITY_COLUMNS = list(PatientIdentity.__dataclass_fields__.keys())


class IdentityStore:
    """
    Reads and writes patient identities, their blocking keys and the
    patient-owned rows of dependent tables.

    Methods take an open connection so callers can compose several writes
    into one transaction.
    """

    def insert_identity(self, conn: sqlite3.Connection, identity: PatientIdentity) -> PatientIdentity:
        data = identity.to_dict()
        data["active"] = 1 if identity.active else 0
        placeholders = ", ".join("?" for _ in IDENTITY_COLUMNS)
        conn.execute(
            f"INSERT INTO patient_identities ({', '.join(IDENTITY_COLUMNS)}) VALUES ({placeholders})",
            [data[column] for column in IDENTITY_COLUMNS],
        )
        logger.debug(f"Inserted identity {identity.id}")
        return identity

    def get_identity(self, conn: sqlite3.Connection, identity_id: str) -> PatientIdentity:
        row = conn.execute(
            "SELECT * FROM patient_identities WHERE id = ?", [identity_id]
        ).fetchone()
        if row is None:
            raise NotFound(f"Identity {identity_id} not found", entity_id=identity_id)
        return PatientIdentity.from_row(row)

    def resolve_active(self, conn: sqlite3.Connection, identity_id: str) -> PatientIdentity:
        """
        Follow merge tombstones from an identity to the active identity it
        now lives in.

        Raises:
            NotFound: If an identity on the way does not exist
            StateConflict: If the chain ends in an inactive identity or loops
        """
        identity = self.get_identity(conn, identity_id)
        seen = {identity.id}
        while not identity.active:
            if not identity.merged_into or identity.merged_into in seen:
                raise StateConflict(f"Identity {identity_id} is inactive with no surviving identity",
                                    entity_id=identity_id, expected="active", actual="inactive")
            identity = self.get_identity(conn, identity.merged_into)
            seen.add(identity.id)
        return identity

    def get_identities(self, conn: sqlite3.Connection, identity_ids: Iterable[str]) -> Dict[str, PatientIdentity]:
        ids = list(identity_ids)
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT * FROM patient_identities WHERE id IN ({placeholders})", ids
        ).fetchall()
        return {row["id"]: PatientIdentity.from_row(row) for row in rows}

    def list_identities(self, conn: sqlite3.Connection, tenant_id: Optional[str] = None,
                        active_only: bool = True) -> List[PatientIdentity]:
        query = "SELECT * FROM patient_identities WHERE 1=1"
        params: List[Any] = []
        if active_only:
            query += " AND active = 1"
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY created_at, id"
        return [PatientIdentity.from_row(row) for row in conn.execute(query, params).fetchall()]

    def update_attributes(self, conn: sqlite3.Connection, identity_id: str,
                          attributes: Dict[str, Any]) -> PatientIdentity:
        """
        Overwrite demographic attributes of an identity.

        Keys that are not demographic fields are ignored.
        """
        updates = {k: v for k, v in attributes.items() if k in DEMOGRAPHIC_FIELDS}
        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            cursor = conn.execute(
                f"UPDATE patient_identities SET {assignments}, updated_at = ? WHERE id = ?",
                list(updates.values()) + [utc_now(), identity_id],
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Identity {identity_id} not found", entity_id=identity_id)
        return self.get_identity(conn, identity_id)

    def tombstone(self, conn: sqlite3.Connection, identity_id: str, survivor_id: str):
        """Mark a merged-away identity inactive and point it at its survivor."""
        cursor = conn.execute(
            "UPDATE patient_identities SET active = 0, merged_into = ?, updated_at = ? "
            "WHERE id = ? AND active = 1",
            [survivor_id, utc_now(), identity_id],
        )
        if cursor.rowcount != 1:
            raise sqlite3.IntegrityError(f"Identity {identity_id} is not active and cannot be tombstoned")

    def reactivate(self, conn: sqlite3.Connection, identity_id: str):
        conn.execute(
            "UPDATE patient_identities SET active = 1, merged_into = NULL, updated_at = ? WHERE id = ?",
            [utc_now(), identity_id],
        )

    def load_frame(self, conn: sqlite3.Connection, tenant_id: Optional[str] = None) -> pd.DataFrame:
        """Load active identities as a DataFrame indexed by identity id."""
        query = "SELECT * FROM patient_identities WHERE active = 1"
        params: List[Any] = []
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        df = pd.read_sql_query(query, conn, params=params)
        return df.set_index("id", drop=False)

    # Blocking index

    def replace_block_keys(self, conn: sqlite3.Connection, identity_id: str, tenant_id: str,
                           keys: List[Tuple[str, str]]):
        """
        Replace the stored blocking keys of one identity.

        Args:
            keys: List of (strategy, block_key) tuples
        """
        conn.execute("DELETE FROM identity_block_keys WHERE identity_id = ?", [identity_id])
        conn.executemany(
            "INSERT OR IGNORE INTO identity_block_keys (identity_id, block_key, strategy, tenant_id) "
            "VALUES (?, ?, ?, ?)",
            [(identity_id, key, strategy, tenant_id) for strategy, key in keys],
        )

    def clear_block_keys(self, conn: sqlite3.Connection, identity_id: str):
        conn.execute("DELETE FROM identity_block_keys WHERE identity_id = ?", [identity_id])

    def find_block_mates(self, conn: sqlite3.Connection, identity_id: str) -> List[Tuple[str, str]]:
        """
        Find active identities sharing at least one blocking key.

        Returns:
            Sorted list of (other_identity_id, first shared block_key)
        """
        rows = conn.execute('''
            SELECT other.identity_id AS other_id, MIN(other.block_key) AS block_key
            FROM identity_block_keys AS mine
            JOIN identity_block_keys AS other
                ON other.block_key = mine.block_key AND other.identity_id != mine.identity_id
            JOIN patient_identities AS p ON p.id = other.identity_id AND p.active = 1
            WHERE mine.identity_id = ?
            GROUP BY other.identity_id
            ORDER BY other.identity_id
        ''', [identity_id]).fetchall()
        return [(row["other_id"], row["block_key"]) for row in rows]

    def block_key_frame(self, conn: sqlite3.Connection, tenant_id: Optional[str] = None) -> pd.DataFrame:
        """Blocking keys of active identities as a DataFrame (identity_id, block_key, strategy)."""
        query = '''
            SELECT k.identity_id, k.block_key, k.strategy
            FROM identity_block_keys AS k
            JOIN patient_identities AS p ON p.id = k.identity_id AND p.active = 1
        '''
        params: List[Any] = []
        if tenant_id:
            query += " WHERE k.tenant_id = ?"
            params.append(tenant_id)
        return pd.read_sql_query(query, conn, params=params)

    # Dependent tables

    def add_dependent_row(self, conn: sqlite3.Connection, table: str, column: str,
                          patient_id: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Insert a patient-owned row (encounter, appointment, ...) into a dependent table."""
        table = check_identifier(table)
        column = check_identifier(column)
        cursor = conn.execute(
            f"INSERT INTO {table} ({column}, payload, created_at) VALUES (?, ?, ?)",
            [patient_id, json.dumps(payload or {}), utc_now()],
        )
        return cursor.lastrowid

    def dependent_row_ids(self, conn: sqlite3.Connection, table: str, column: str,
                          patient_id: str) -> List[int]:
        table = check_identifier(table)
        column = check_identifier(column)
        rows = conn.execute(
            f"SELECT rowid FROM {table} WHERE {column} = ? ORDER BY rowid", [patient_id]
        ).fetchall()
        return [row[0] for row in rows]

    def reassign_rows(self, conn: sqlite3.Connection, table: str, column: str,
                      row_ids: List[int], patient_id: str):
        """Point the given rows of a dependent table at another patient."""
        if not row_ids:
            return
        table = check_identifier(table)
        column = check_identifier(column)
        placeholders = ", ".join("?" for _ in row_ids)
        conn.execute(
            f"UPDATE {table} SET {column} = ? WHERE rowid IN ({placeholders})",
            [patient_id] + list(row_ids),
        )
