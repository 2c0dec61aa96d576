"""
SQLite storage for PatientMatch.

Owns the schema for identities, blocking keys, match candidates, review
decisions, merge records, conflict records and scoring-run checkpoints,
and hands out connections and write transactions.
"""

import re
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS patient_identities (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL DEFAULT 'default',
        first_name TEXT,
        middle_name TEXT,
        last_name TEXT,
        date_of_birth TEXT,
        gender TEXT,
        phone TEXT,
        email TEXT,
        mrn TEXT,
        address TEXT,
        city TEXT,
        state TEXT,
        zip_code TEXT,
        source TEXT NOT NULL DEFAULT 'unknown',
        active INTEGER NOT NULL DEFAULT 1,
        merged_into TEXT REFERENCES patient_identities(id),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS identity_block_keys (
        identity_id TEXT NOT NULL REFERENCES patient_identities(id),
        block_key TEXT NOT NULL,
        strategy TEXT NOT NULL,
        tenant_id TEXT NOT NULL DEFAULT 'default',
        PRIMARY KEY (identity_id, block_key)
    );
    CREATE INDEX IF NOT EXISTS idx_block_keys_key ON identity_block_keys(block_key);

    CREATE TABLE IF NOT EXISTS match_candidates (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL DEFAULT 'default',
        patient_id_a TEXT NOT NULL REFERENCES patient_identities(id),
        patient_id_b TEXT NOT NULL REFERENCES patient_identities(id),
        overall_match_score REAL NOT NULL,
        field_scores TEXT NOT NULL DEFAULT '{}',
        matching_fields_used TEXT NOT NULL DEFAULT '[]',
        priority TEXT NOT NULL DEFAULT 'normal',
        status TEXT NOT NULL DEFAULT 'pending',
        blocking_key TEXT,
        algorithm_version TEXT NOT NULL,
        auto_match_eligible INTEGER NOT NULL DEFAULT 0,
        auto_match_blocked_reason TEXT,
        reviewed_by TEXT,
        reviewed_at TEXT,
        review_notes TEXT,
        detected_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (patient_id_a, patient_id_b, algorithm_version),
        CHECK (patient_id_a < patient_id_b)
    );
    CREATE INDEX IF NOT EXISTS idx_candidates_status ON match_candidates(status, priority);

    CREATE TABLE IF NOT EXISTS review_decisions (
        id TEXT PRIMARY KEY,
        candidate_id TEXT NOT NULL REFERENCES match_candidates(id),
        reviewer_id TEXT NOT NULL,
        from_status TEXT NOT NULL,
        decision TEXT NOT NULL,
        notes TEXT,
        decided_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_decisions_candidate ON review_decisions(candidate_id);

    CREATE TABLE IF NOT EXISTS merge_records (
        id TEXT PRIMARY KEY,
        candidate_id TEXT REFERENCES match_candidates(id),
        survivor_id TEXT NOT NULL REFERENCES patient_identities(id),
        merged_id TEXT NOT NULL REFERENCES patient_identities(id),
        field_provenance TEXT NOT NULL,
        survivor_snapshot TEXT NOT NULL,
        merged_snapshot TEXT NOT NULL,
        data_migrations TEXT NOT NULL,
        performed_by TEXT NOT NULL,
        performed_at TEXT NOT NULL,
        reason TEXT,
        match_score REAL,
        survivor_selection TEXT NOT NULL DEFAULT 'earliest_created',
        superseded_candidates TEXT NOT NULL DEFAULT '[]'
    );

    CREATE TABLE IF NOT EXISTS merge_verifications (
        id TEXT PRIMARY KEY,
        merge_id TEXT NOT NULL UNIQUE REFERENCES merge_records(id),
        verified_by TEXT NOT NULL,
        consistent INTEGER NOT NULL,
        issues TEXT NOT NULL DEFAULT '[]',
        notes TEXT,
        verified_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS merge_rollbacks (
        id TEXT PRIMARY KEY,
        merge_id TEXT NOT NULL UNIQUE REFERENCES merge_records(id),
        performed_by TEXT NOT NULL,
        reason TEXT,
        rolled_back_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS conflict_records (
        id TEXT PRIMARY KEY,
        resource_type TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        source_system TEXT NOT NULL,
        source_payload TEXT NOT NULL,
        local_payload TEXT NOT NULL,
        diverging_fields TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open',
        resolution_action TEXT,
        resolved_payload TEXT,
        resolver_id TEXT,
        notes TEXT,
        requires_manual_correction INTEGER NOT NULL DEFAULT 0,
        detected_at TEXT NOT NULL,
        resolved_at TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_conflicts_resource ON conflict_records(resource_type, resource_id);

    CREATE TABLE IF NOT EXISTS scoring_runs (
        id TEXT PRIMARY KEY,
        algorithm_version TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        blocks_total INTEGER NOT NULL DEFAULT 0,
        blocks_completed INTEGER NOT NULL DEFAULT 0,
        candidates_written INTEGER NOT NULL DEFAULT 0,
        insufficient_data INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS scoring_run_blocks (
        run_id TEXT NOT NULL REFERENCES scoring_runs(id),
        block_key TEXT NOT NULL,
        completed_at TEXT NOT NULL,
        PRIMARY KEY (run_id, block_key)
    );

    CREATE TRIGGER IF NOT EXISTS review_decisions_no_update
    BEFORE UPDATE ON review_decisions
    BEGIN
        SELECT RAISE(ABORT, 'review decisions are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS review_decisions_no_delete
    BEFORE DELETE ON review_decisions
    BEGIN
        SELECT RAISE(ABORT, 'review decisions are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS merge_records_no_update
    BEFORE UPDATE ON merge_records
    BEGIN
        SELECT RAISE(ABORT, 'merge records are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS merge_verifications_no_update
    BEFORE UPDATE ON merge_verifications
    BEGIN
        SELECT RAISE(ABORT, 'merge verifications are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS match_candidates_no_delete
    BEFORE DELETE ON match_candidates
    BEGIN
        SELECT RAISE(ABORT, 'match candidates are never deleted');
    END;

    CREATE TRIGGER IF NOT EXISTS patient_identities_no_delete
    BEFORE DELETE ON patient_identities
    BEGIN
        SELECT RAISE(ABORT, 'patient identities are tombstoned, never deleted');
    END;
'''


def check_identifier(name: str) -> str:
    """Reject table/column names that are not plain SQL identifiers."""
    if not IDENTIFIER_PATTERN.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class Database:
    """
    Connection factory and schema owner for the engine's SQLite database.

    Every write goes through ``transaction()``, which takes the database
    write lock up front (BEGIN IMMEDIATE) so that reads made inside the
    transaction cannot be invalidated by a concurrent writer.
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        """
        Initialize the database and create the schema if needed.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait for a competing writer
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

        logger.info(f"Initialized database at {db_path}")

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection; callers manage transactions explicitly."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self):
        conn = self.connect()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        Commits on success; rolls back and re-raises on any exception.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for reads only."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def ensure_dependent_tables(self, dependent_tables: List[Dict[str, str]]):
        """
        Create minimal patient-owned tables for configured dependents that do
        not exist yet. Existing tables are left untouched.

        Args:
            dependent_tables: List of {"table": ..., "column": ...} specs
        """
        conn = self.connect()
        try:
            for dependent in dependent_tables:
                table = check_identifier(dependent["table"])
                column = check_identifier(dependent["column"])
                conn.execute(f'''
                    CREATE TABLE IF NOT EXISTS {table} (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        {column} TEXT NOT NULL,
                        payload TEXT,
                        created_at TEXT
                    )
                ''')
        finally:
            conn.close()
