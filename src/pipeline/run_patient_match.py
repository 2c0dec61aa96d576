"""
Main pipeline orchestrator for PatientMatch.

Coordinates identity ingestion, blocking, candidate scoring, auto-merge and
on-demand duplicate detection. Batch scoring runs are checkpointed per
block so an interrupted run can be resumed.
"""

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
import pandas as pd

from ..audit.audit_logger import AuditSink, create_audit_sink
from ..blocking.block_key_builder import BlockKeyBuilder
from ..errors import InsufficientData, MergeFailure, StateConflict
from ..ingestion.schema_validator import validate_identities
from ..match.scorer import CandidateScorer
from ..merge.merger import MergeExecutor
from ..models import (
    DEMOGRAPHIC_FIELDS, MatchCandidate, MatchStatus, MergeRecord, PatientIdentity, new_id, utc_now,
)
from ..normalize.config import DEFAULT_CONFIG_PATH, load_engine_config, validate_engine_config
from ..normalize.contact_normalizer import IdentityNormalizer
from ..resolve.conflict_resolver import ConflictResolver
from ..review.workflow import ReviewWorkflow
from ..store.candidate_store import CandidateStore
from ..store.database import Database
from ..store.identity_store import IdentityStore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:pipeline"


class MatchingPipeline:
    """
    Main pipeline orchestrator for PatientMatch.

    Owns the engine components and wires them to one database and audit sink.
    """

    def __init__(self, config: Optional[Dict] = None, config_path: str = DEFAULT_CONFIG_PATH,
                 db: Optional[Database] = None, audit: Optional[AuditSink] = None):
        """
        Initialize pipeline with configuration.

        Args:
            config: Engine configuration; loaded from ``config_path`` when omitted
            config_path: Path to configuration file
            db: Engine database (defaults to ``storage.db_path``)
            audit: Audit sink (defaults to the ``audit`` section)
        """
        self.config = config if config is not None else load_engine_config(config_path)
        if not validate_engine_config(self.config):
            raise ValueError("Invalid engine configuration")

        self.db = db or Database(self.config["storage"]["db_path"])
        self.audit = audit or create_audit_sink(self.config)

        self.normalizer = IdentityNormalizer(self.config["normalization"])
        self.block_builder = BlockKeyBuilder(self.config["blocking"])
        self.scorer = CandidateScorer(self.config["scoring"])
        self.merge_executor = MergeExecutor(self.db, self.config["merge"], self.audit)
        self.workflow = ReviewWorkflow(self.db, self.config["review"], self.merge_executor, self.audit)
        self.resolver = ConflictResolver(self.db, self.config["conflict_resolution"], self.audit)

        self.identities = IdentityStore()
        self.candidates = CandidateStore()

        pipeline_config = self.config.get("pipeline", {})
        self.max_workers = pipeline_config.get("max_workers", 4)
        self.time_budget_seconds = pipeline_config.get("time_budget_seconds")

        self.stage_times = {}
        self.last_validation: Dict[str, Any] = {}

        logger.info("Initialized PatientMatch pipeline")

    def _start_stage_timer(self, stage_name: str):
        """Start timing for a pipeline stage."""
        self.stage_times[stage_name] = time.time()
        logger.info(f"Starting stage: {stage_name}")

    def _end_stage_timer(self, stage_name: str):
        """End timing for a pipeline stage."""
        if stage_name in self.stage_times:
            duration = time.time() - self.stage_times[stage_name]
            logger.info(f"Completed stage: {stage_name} in {duration:.2f} seconds")

    # Identity registration

    def _index_identity(self, conn, identity: PatientIdentity) -> List[Tuple[str, str]]:
        features = self.normalizer.normalize_identity(identity)
        keys = self.block_builder.build_keys(features)
        self.identities.replace_block_keys(conn, identity.id, identity.tenant_id, keys)
        return keys

    def register_identity(self, demographics: Dict[str, Any], source: str = "unknown",
                          tenant_id: str = "default", actor: str = SYSTEM_ACTOR,
                          identity_id: Optional[str] = None) -> PatientIdentity:
        """
        Register a new patient identity and index it for blocking.

        Args:
            demographics: Demographic attributes; unknown keys are ignored
            source: Intake channel
            tenant_id: Tenant owning the identity
            actor: User or system registering the identity
            identity_id: Explicit id (generated when omitted)

        Returns:
            The stored identity
        """
        identity = PatientIdentity(
            id=identity_id or new_id(),
            tenant_id=tenant_id,
            source=source,
            **{k: v for k, v in demographics.items() if k in DEMOGRAPHIC_FIELDS},
        )
        with self.db.transaction() as conn:
            self.identities.insert_identity(conn, identity)
            keys = self._index_identity(conn, identity)

        logger.info(f"Registered identity {identity.id} from {source} ({len(keys)} block keys)")
        self.audit.emit(actor, "identity.registered", "patient_identity", [identity.id],
                        after={"source": source, "tenant_id": tenant_id, "block_keys": len(keys)})
        return identity

    def update_identity(self, identity_id: str, changes: Dict[str, Any],
                        actor: str = SYSTEM_ACTOR) -> PatientIdentity:
        """Update demographic attributes of an identity and re-index it."""
        with self.db.transaction() as conn:
            before = self.identities.get_identity(conn, identity_id)
            after = self.identities.update_attributes(conn, identity_id, changes)
            if after.active:
                self._index_identity(conn, after)

        changed = sorted(k for k in changes if k in DEMOGRAPHIC_FIELDS)
        logger.info(f"Updated identity {identity_id}: {changed}")
        self.audit.emit(actor, "identity.updated", "patient_identity", [identity_id],
                        before={k: getattr(before, k) for k in changed},
                        after={k: getattr(after, k) for k in changed})
        return after

    def validate_data(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Validate an identity batch against the ingestion schema.

        Args:
            df: Identity DataFrame read with string dtypes

        Returns:
            Validated and cleaned DataFrame
        """
        self._start_stage_timer("data_validation")

        try:
            validated_df, validation_summary = validate_identities(df, self.config.get("ingestion", {}))

            logger.info(f"Data validation completed: {validation_summary.get('success_rate', 0):.2%} success rate, "
                        f"{validation_summary['rows_rejected']} rows rejected")

            self.last_validation = validation_summary
            self._end_stage_timer("data_validation")
            return validated_df

        except Exception as e:
            logger.error(f"Data validation failed: {e}")
            raise

    def ingest_identities(self, input_path: str, source: str, tenant_id: str = "default",
                          actor: str = SYSTEM_ACTOR) -> List[str]:
        """
        Ingest patient identities from a CSV file.

        Columns matching demographic fields are loaded; optional ``id`` and
        ``created_at`` columns are kept. Rows failing validation, and rows
        whose id is already registered, are rejected and counted in
        ``last_validation``.

        Args:
            input_path: Path to CSV file
            source: Intake channel label
            tenant_id: Tenant owning the identities

        Returns:
            Ids of the registered identities
        """
        self._start_stage_timer("ingestion")

        if not input_path.endswith(".csv"):
            raise ValueError(f"Unsupported file format: {input_path}")

        df = self.validate_data(pd.read_csv(input_path, dtype=str))
        df = df.astype(object).where(pd.notna(df), None)

        identities = []
        for record in df.to_dict("records"):
            identity = PatientIdentity(
                id=record.get("id") or new_id(),
                tenant_id=record.get("tenant_id") or tenant_id,
                source=source,
                **{k: record.get(k) for k in DEMOGRAPHIC_FIELDS},
            )
            if record.get("created_at"):
                identity.created_at = record["created_at"]
            identities.append(identity)

        with self.db.transaction() as conn:
            existing = self.identities.get_identities(conn, [identity.id for identity in identities])
            for identity in identities:
                if identity.id in existing:
                    continue
                self.identities.insert_identity(conn, identity)
                self._index_identity(conn, identity)

        if existing:
            logger.warning(f"Rejected {len(existing)} rows whose id is already registered")
            self.last_validation["rows_rejected"] += len(existing)
            self.last_validation["already_registered"] = len(existing)

        ids = [identity.id for identity in identities if identity.id not in existing]
        logger.info(f"Ingested {len(ids)} identities from {input_path} "
                    f"({self.last_validation['rows_rejected']} rejected)")
        self.audit.emit(actor, "identity.registered", "patient_identity", ids,
                        after={"source": source, "count": len(ids),
                               "rejected": self.last_validation["rows_rejected"]})

        self._end_stage_timer("ingestion")
        return ids

    def reindex_identity(self, identity_id: str) -> List[Tuple[str, str]]:
        """Rebuild blocking keys for one identity; inactive identities lose their keys."""
        with self.db.transaction() as conn:
            identity = self.identities.get_identity(conn, identity_id)
            if not identity.active:
                self.identities.clear_block_keys(conn, identity_id)
                return []
            return self._index_identity(conn, identity)

    def index_identities(self, tenant_id: Optional[str] = None) -> int:
        """Rebuild blocking keys for every active identity."""
        self._start_stage_timer("indexing")
        with self.db.transaction() as conn:
            active = self.identities.list_identities(conn, tenant_id)
            for identity in active:
                self._index_identity(conn, identity)
        self._end_stage_timer("indexing")
        return len(active)

    def refresh_after_merge(self, record: MergeRecord, actor: str = SYSTEM_ACTOR) -> List[MatchCandidate]:
        """
        Re-index the survivor of a merge and re-score it against every
        identity whose open candidate with the merged identity was superseded.

        Args:
            record: Completed merge
            actor: User or system that performed the merge

        Returns:
            Candidates created or refreshed for the survivor
        """
        self.reindex_identity(record.survivor_id)

        results = []
        with self.db.transaction() as conn:
            survivor = self.identities.get_identity(conn, record.survivor_id)
            if not survivor.active:
                return []
            survivor_features = self.normalizer.normalize_identity(survivor)

            for candidate_id in record.superseded_candidates:
                stale = self.candidates.get_candidate(conn, candidate_id)
                other_id = stale.patient_id_b if stale.patient_id_a == record.merged_id else stale.patient_id_a
                if other_id == survivor.id:
                    continue
                other = self.identities.get_identity(conn, other_id)
                if not other.active:
                    continue
                try:
                    candidate = self.scorer.score_pair(
                        survivor_features, self.normalizer.normalize_identity(other), stale.blocking_key
                    )
                except InsufficientData:
                    logger.warning(f"Insufficient data to compare {survivor.id} and {other_id}")
                    continue
                if candidate is None:
                    continue
                stored, _ = self.scorer.persist_candidate(conn, candidate)
                results.append(stored)

        logger.info(f"Merge {record.id}: {len(record.superseded_candidates)} superseded candidates, "
                    f"{len(results)} re-scored against survivor {record.survivor_id}")
        if results:
            self.audit.emit(actor, "candidate.detected", "match_candidate",
                            [c.id for c in results],
                            after={"identity_id": record.survivor_id, "merge_id": record.id,
                                   "priorities": sorted(c.priority.value for c in results)})
        return results

    # Batch candidate generation

    def generate_candidates(self, tenant_id: Optional[str] = None,
                            completed_blocks: Optional[Set[str]] = None) -> pd.DataFrame:
        """
        Generate candidate pairs from the stored blocking index.

        Returns:
            DataFrame with patient_id_a, patient_id_b, block_key, strategy
        """
        self._start_stage_timer("candidate_generation")
        with self.db.read() as conn:
            keys_df = self.identities.block_key_frame(conn, tenant_id)
            total_records = len(self.identities.list_identities(conn, tenant_id))

        pairs_df = self.block_builder.generate_candidate_pairs(keys_df, completed_blocks)
        self.block_builder.get_blocking_statistics(keys_df, total_records, pairs_df)
        self._end_stage_timer("candidate_generation")
        return pairs_df

    def _load_features(self, tenant_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        with self.db.read() as conn:
            frame = self.identities.load_frame(conn, tenant_id)
        frame = frame.astype(object).where(pd.notna(frame), None)
        return {record["id"]: self.normalizer.normalize_identity(record)
                for record in frame.to_dict("records")}

    def _score_block(self, block_key: str, pairs: List[Tuple[str, str]],
                     features: Dict[str, Dict[str, Any]]) -> Tuple[str, List[MatchCandidate], int]:
        """Score every pair of one block. Pure; runs in a worker thread."""
        scored = []
        insufficient = 0
        for id_a, id_b in pairs:
            if id_a not in features or id_b not in features:
                continue
            try:
                candidate = self.scorer.score_pair(features[id_a], features[id_b], block_key)
            except InsufficientData:
                insufficient += 1
                continue
            if candidate is not None:
                scored.append(candidate)
        return block_key, scored, insufficient

    def _start_run(self, blocks_total: int) -> str:
        run_id = new_id()
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO scoring_runs (id, algorithm_version, status, started_at, blocks_total) "
                "VALUES (?, ?, ?, ?, ?)",
                [run_id, self.scorer.algorithm_version, "running", utc_now(), blocks_total],
            )
        return run_id

    def get_run(self, run_id: str) -> Dict[str, Any]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM scoring_runs WHERE id = ?", [run_id]).fetchone()
        if row is None:
            raise ValueError(f"Scoring run {run_id} not found")
        return dict(row)

    def completed_blocks(self, run_id: str) -> Set[str]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT block_key FROM scoring_run_blocks WHERE run_id = ?", [run_id]
            ).fetchall()
        return {row["block_key"] for row in rows}

    def _store_block(self, run_id: str, block_key: str, scored: List[MatchCandidate],
                     insufficient: int) -> Tuple[int, int]:
        created = 0
        with self.db.transaction() as conn:
            for candidate in scored:
                _, is_new = self.scorer.persist_candidate(conn, candidate)
                created += 1 if is_new else 0
            conn.execute(
                "INSERT OR IGNORE INTO scoring_run_blocks (run_id, block_key, completed_at) VALUES (?, ?, ?)",
                [run_id, block_key, utc_now()],
            )
            conn.execute(
                "UPDATE scoring_runs SET blocks_completed = blocks_completed + 1, "
                "candidates_written = candidates_written + ?, insufficient_data = insufficient_data + ? "
                "WHERE id = ?",
                [len(scored), insufficient, run_id],
            )
        return created, len(scored) - created

    def score_candidates(self, pairs_df: pd.DataFrame, run_id: Optional[str] = None,
                         time_budget: Optional[float] = None,
                         tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Score candidate pairs block by block and persist the results.

        Blocks are scored in a thread pool; results are written by the
        calling thread, one transaction per block, and each finished block is
        checkpointed against the run.

        Args:
            pairs_df: Candidate pairs from generate_candidates
            run_id: Existing run to continue (a new run is started when omitted)
            time_budget: Seconds after which no new blocks are started
            tenant_id: Restrict identity features to one tenant

        Returns:
            Scoring report
        """
        self._start_stage_timer("scoring")
        started = time.time()
        time_budget = time_budget if time_budget is not None else self.time_budget_seconds

        blocks: Dict[str, List[Tuple[str, str]]] = {}
        for block_key, group in pairs_df.groupby("block_key", sort=True):
            blocks[block_key] = list(zip(group["patient_id_a"], group["patient_id_b"]))

        if run_id is None:
            run_id = self._start_run(len(blocks))
        else:
            with self.db.transaction() as conn:
                conn.execute("UPDATE scoring_runs SET status = 'running', blocks_total = blocks_completed + ? "
                             "WHERE id = ?", [len(blocks), run_id])

        features = self._load_features(tenant_id)
        pending = list(blocks.items())
        created = updated = insufficient = 0
        all_scored: List[MatchCandidate] = []
        out_of_time = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            while pending:
                if time_budget is not None and time.time() - started >= time_budget:
                    out_of_time = True
                    logger.warning(f"Time budget of {time_budget}s exhausted with "
                                   f"{len(pending)} blocks left; run {run_id} is incomplete")
                    break

                batch, pending = pending[:self.max_workers], pending[self.max_workers:]
                futures = [executor.submit(self._score_block, key, pairs, features) for key, pairs in batch]
                for future in futures:
                    block_key, scored, block_insufficient = future.result()
                    new, refreshed = self._store_block(run_id, block_key, scored, block_insufficient)
                    created += new
                    updated += refreshed
                    insufficient += block_insufficient
                    all_scored.extend(scored)

        status = "incomplete" if out_of_time else "completed"
        with self.db.transaction() as conn:
            conn.execute("UPDATE scoring_runs SET status = ?, finished_at = ? WHERE id = ?",
                         [status, utc_now(), run_id])

        report = {
            "run_id": run_id,
            "status": status,
            "blocks_scored": len(blocks) - len(pending),
            "blocks_remaining": len(pending),
            "candidates_created": created,
            "candidates_updated": updated,
            "insufficient_data": insufficient + self.block_builder.insufficient_data,
            "scoring_statistics": self.scorer.get_scoring_statistics(all_scored),
        }

        self.audit.emit(SYSTEM_ACTOR, "scoring.run", "scoring_run", [run_id],
                        after={k: report[k] for k in ("status", "blocks_scored", "candidates_created",
                                                      "candidates_updated")})
        self._end_stage_timer("scoring")
        return report

    # Auto-merge

    def apply_auto_merges(self) -> Dict[str, int]:
        """
        Merge pending candidates eligible for auto-match, up to the daily cap.

        Returns:
            Counts of merged, failed and skipped candidates
        """
        auto_config = self.config["review"].get("auto_merge", {})
        result = {"merged": 0, "failed": 0, "skipped": 0}
        if not auto_config.get("enabled", False):
            logger.info("Auto-merge disabled")
            return result

        actor = auto_config.get("actor", "system:auto-merge")
        max_per_day = int(auto_config.get("max_per_day", 10))
        day_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0).isoformat()

        with self.db.read() as conn:
            already = self.candidates.count_auto_merges_since(conn, actor, day_start)
            rows = conn.execute('''
                SELECT c.id
                FROM match_candidates AS c
                JOIN patient_identities AS pa ON pa.id = c.patient_id_a AND pa.active = 1
                JOIN patient_identities AS pb ON pb.id = c.patient_id_b AND pb.active = 1
                WHERE c.status = ? AND c.auto_match_eligible = 1 AND c.auto_match_blocked_reason IS NULL
                ORDER BY c.overall_match_score DESC, c.id
            ''', [MatchStatus.PENDING.value]).fetchall()

        remaining = max(0, max_per_day - already)
        for row in rows:
            if remaining <= 0:
                result["skipped"] += 1
                continue
            try:
                outcome = self.workflow.review_candidate(row["id"], actor, MatchStatus.CONFIRMED_MATCH,
                                                         notes="auto-match")
                if outcome.merge_error is not None:
                    raise outcome.merge_error
                record = outcome.merge_record or self.merge_executor.merge_candidate(row["id"], actor)
                self.refresh_after_merge(record, actor)
            except StateConflict as e:
                logger.warning(f"Auto-merge skipped candidate {row['id']}: {e}")
                result["skipped"] += 1
                continue
            except MergeFailure as e:
                logger.error(f"Auto-merge failed for candidate {row['id']}: {e}")
                result["failed"] += 1
                continue
            result["merged"] += 1
            remaining -= 1

        logger.info(f"Auto-merge: {result['merged']} merged, {result['failed']} failed, "
                    f"{result['skipped']} skipped")
        return result

    # On-demand detection

    def detect_for_identity(self, identity_id: str, actor: str = SYSTEM_ACTOR) -> List[MatchCandidate]:
        """
        Score one identity against every identity sharing a blocking key.

        Returns:
            Candidates created or refreshed for this identity
        """
        with self.db.transaction() as conn:
            identity = self.identities.get_identity(conn, identity_id)
            if not identity.active:
                return []
            features = self.normalizer.normalize_identity(identity)
            mates = self.identities.find_block_mates(conn, identity_id)
            others = self.identities.get_identities(conn, [mate_id for mate_id, _ in mates])

            results = []
            for mate_id, block_key in mates:
                other = self.normalizer.normalize_identity(others[mate_id])
                try:
                    candidate = self.scorer.score_pair(features, other, block_key)
                except InsufficientData:
                    logger.warning(f"Insufficient data to compare {identity_id} and {mate_id}")
                    continue
                if candidate is None:
                    continue
                stored, _ = self.scorer.persist_candidate(conn, candidate)
                results.append(stored)

        logger.info(f"Detected {len(results)} candidates for identity {identity_id}")
        if results:
            self.audit.emit(actor, "candidate.detected", "match_candidate",
                            [c.id for c in results],
                            after={"identity_id": identity_id,
                                   "priorities": sorted(c.priority.value for c in results)})
        return results

    def run(self, input_path: Optional[str] = None, source: str = "unknown",
            resume_run_id: Optional[str] = None, time_budget: Optional[float] = None,
            reindex: bool = False) -> Dict[str, Any]:
        """
        Run the batch pipeline.

        Args:
            input_path: Optional CSV of identities to ingest first
            source: Intake channel label for ingested identities
            resume_run_id: Continue a previous run, skipping its completed blocks
            time_budget: Seconds after which no new blocks are started
            reindex: Rebuild every blocking key first (after a blocking config change)

        Returns:
            Pipeline execution report
        """
        pipeline_start_time = time.time()
        logger.info("Starting PatientMatch pipeline")

        # Identities skipped by blocking are counted per run
        self.block_builder.insufficient_data = 0

        try:
            ingested = []
            rejected = 0
            if input_path:
                ingested = self.ingest_identities(input_path, source)
                rejected = self.last_validation.get("rows_rejected", 0)
            if reindex:
                self.index_identities()

            completed = self.completed_blocks(resume_run_id) if resume_run_id else set()
            if resume_run_id:
                logger.info(f"Resuming run {resume_run_id} ({len(completed)} blocks already scored)")

            pairs_df = self.generate_candidates(completed_blocks=completed)
            scoring = self.score_candidates(pairs_df, run_id=resume_run_id, time_budget=time_budget)
            auto_merge = self.apply_auto_merges()

            with self.db.read() as conn:
                stats = self.candidates.candidate_stats(conn)

            report = {
                "records_ingested": len(ingested),
                "records_rejected": rejected,
                "candidate_pairs": len(pairs_df),
                "scoring": scoring,
                "auto_merge": auto_merge,
                "candidate_stats": stats,
                "total_duration": time.time() - pipeline_start_time,
            }

            logger.info(f"Pipeline completed in {report['total_duration']:.2f} seconds")
            return report

        except Exception as e:
            logger.error(f"Pipeline failed: {e}")
            raise


def main():
    """Main entry point for the PatientMatch pipeline."""
    parser = argparse.ArgumentParser(description="PatientMatch duplicate detection pipeline")
    parser.add_argument("--input", help="CSV file of patient identities to ingest")
    parser.add_argument("--source", default="unknown", help="Intake channel label")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path")
    parser.add_argument("--resume-run", help="Scoring run id to resume")
    parser.add_argument("--time-budget", type=float, help="Seconds after which no new blocks are scored")
    parser.add_argument("--reindex", action="store_true", help="Rebuild blocking keys before scoring")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args()

    # Ensure log directory exists
    Path("logs").mkdir(exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler("logs/patient_match.log")
        ]
    )

    try:
        pipeline = MatchingPipeline(config_path=args.config)
        report = pipeline.run(
            input_path=args.input,
            source=args.source,
            resume_run_id=args.resume_run,
            time_budget=args.time_budget,
            reindex=args.reindex,
        )

        scoring = report["scoring"]
        stats = report["candidate_stats"]
        print("\n" + "=" * 50)
        print("PATIENTMATCH RUN SUMMARY")
        print("=" * 50)
        print(f"Run: {scoring['run_id']} ({scoring['status']})")
        print(f"Records Ingested: {report['records_ingested']:,}")
        print(f"Candidate Pairs: {report['candidate_pairs']:,}")
        print(f"Candidates Created: {scoring['candidates_created']:,}")
        print(f"Pending Review: {stats['pending']:,} ({stats['urgent_priority']:,} urgent)")
        print(f"Auto-merged: {report['auto_merge']['merged']:,}")
        print(f"Total Duration: {report['total_duration']:.2f} seconds")
        print("=" * 50)

    except Exception as e:
        logger.error(f"Pipeline execution failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
