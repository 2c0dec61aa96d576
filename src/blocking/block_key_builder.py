"""
Block key builder for PatientMatch.

Generates deterministic block keys for multi-strategy blocking so that only
identities sharing a key are compared pairwise.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd
from itertools import combinations

logger = logging.getLogger(__name__)

PAIR_COLUMNS = ["patient_id_a", "patient_id_b", "block_key", "strategy"]


class BlockKeyBuilder:
    """
    Builds block keys for configured blocking strategies.

    Each strategy combines normalized features (for example soundex of the
    last name plus birth year). Keys are hashed, so they never carry raw
    demographics.
    """

    def __init__(self, config: Dict):
        """
        Initialize block key builder with configuration.

        Args:
            config: Blocking configuration (strategies, required_any,
                max_candidates_per_block)
        """
        self.config = config
        self.strategies = config.get("strategies", [])
        self.required_any = config.get("required_any", ["last_name", "date_of_birth"])
        self.max_candidates_per_block = config.get("max_candidates_per_block", 1000)
        self.insufficient_data = 0

        logger.info(f"Initialized BlockKeyBuilder with {len(self.strategies)} blocking strategies")

    def has_sufficient_data(self, features: Dict[str, Any]) -> bool:
        return any(features.get(name) for name in self.required_any)

    def build_keys(self, features: Dict[str, Any]) -> List[Tuple[str, str]]:
        """
        Build block keys for one normalized identity.

        Args:
            features: Output of IdentityNormalizer.normalize_identity

        Returns:
            List of (strategy, block_key); empty when the identity lacks
            every required field
        """
        if not self.has_sufficient_data(features):
            self.insufficient_data += 1
            logger.warning(f"Identity {features.get('id')} has insufficient data for blocking")
            return []

        tenant = features.get("tenant_id") or "default"
        keys = []
        for strategy in self.strategies:
            name = strategy.get("name", "unnamed")
            components = [features.get(field) for field in strategy.get("keys", [])]

            # A strategy only applies when all of its components are present
            if not components or not all(components):
                continue

            raw = "|".join([tenant] + [str(c) for c in components])
            digest = hashlib.md5(raw.encode()).hexdigest()[:16]
            keys.append((name, f"{name}:{digest}"))

        return keys

    def generate_block_keys(self, features: List[Dict[str, Any]]) -> pd.DataFrame:
        """
        Build block keys for a batch of normalized identities.

        Args:
            features: List of normalized feature dictionaries

        Returns:
            Long DataFrame with columns identity_id, block_key, strategy
        """
        rows = []
        for record in features:
            for strategy, key in self.build_keys(record):
                rows.append({"identity_id": record["id"], "block_key": key, "strategy": strategy})

        logger.info(f"Generated {len(rows)} block keys for {len(features)} identities")
        return pd.DataFrame(rows, columns=["identity_id", "block_key", "strategy"])

    def generate_candidate_pairs(self, keys_df: pd.DataFrame,
                                 completed_blocks: Optional[set] = None) -> pd.DataFrame:
        """
        Generate unordered candidate pairs from identities sharing a key.

        Args:
            keys_df: DataFrame with identity_id, block_key, strategy
            completed_blocks: Block keys to skip (already scored)

        Returns:
            DataFrame with patient_id_a < patient_id_b, block_key, strategy;
            a pair found under several keys keeps the first key in sorted order
        """
        completed_blocks = completed_blocks or set()
        all_candidates = []

        if keys_df.empty:
            return pd.DataFrame(columns=PAIR_COLUMNS)

        for block_key, group in keys_df.sort_values("block_key").groupby("block_key", sort=True):
            record_ids = sorted(set(group["identity_id"]))
            if len(record_ids) < 2:
                continue

            # Limit block size to prevent pair explosion
            if len(record_ids) > self.max_candidates_per_block:
                logger.warning(f"Block {block_key} too large ({len(record_ids)} records), skipping")
                continue

            strategy = group["strategy"].iloc[0]
            for id_a, id_b in combinations(record_ids, 2):
                all_candidates.append({
                    "patient_id_a": id_a,
                    "patient_id_b": id_b,
                    "block_key": block_key,
                    "strategy": strategy,
                })

        if not all_candidates:
            logger.warning("No candidate pairs generated")
            return pd.DataFrame(columns=PAIR_COLUMNS)

        candidates_df = pd.DataFrame(all_candidates, columns=PAIR_COLUMNS)
        candidates_df = candidates_df.drop_duplicates(subset=["patient_id_a", "patient_id_b"], keep="first")

        # A pair belongs to the first block it was found in, so completed
        # blocks are dropped only after deduplication
        if completed_blocks:
            candidates_df = candidates_df[~candidates_df["block_key"].isin(completed_blocks)]
        candidates_df = candidates_df.reset_index(drop=True)

        logger.info(f"Generated {len(candidates_df)} unique candidate pairs")
        return candidates_df

    def get_blocking_statistics(self, keys_df: pd.DataFrame, total_records: int,
                                candidates_df: pd.DataFrame) -> Dict[str, Any]:
        """
        Calculate blocking efficiency statistics.

        Args:
            keys_df: Block keys DataFrame
            total_records: Number of identities considered
            candidates_df: Candidate pairs DataFrame

        Returns:
            Dictionary with blocking statistics
        """
        total_possible_pairs = total_records * (total_records - 1) // 2
        generated_candidates = len(candidates_df)
        reduction_ratio = 1 - (generated_candidates / total_possible_pairs) if total_possible_pairs > 0 else 0

        block_stats = {}
        if not keys_df.empty:
            for strategy_name, group in keys_df.groupby("strategy"):
                sizes = group.groupby("block_key").size()
                block_stats[strategy_name] = {
                    "num_blocks": int(sizes.shape[0]),
                    "avg_block_size": float(sizes.mean()),
                    "max_block_size": int(sizes.max()),
                    "coverage": group["identity_id"].nunique() / total_records if total_records else 0,
                }

        statistics = {
            "total_records": total_records,
            "total_possible_pairs": total_possible_pairs,
            "generated_candidates": generated_candidates,
            "reduction_ratio": reduction_ratio,
            "reduction_percentage": reduction_ratio * 100,
            "insufficient_data": self.insufficient_data,
            "blocking_strategies": block_stats,
        }

        logger.info(f"Blocking statistics: {generated_candidates:,} candidates from "
                    f"{total_possible_pairs:,} possible pairs "
                    f"({statistics['reduction_percentage']:.2f}% reduction)")

        return statistics


def create_blocking_keys(features: List[Dict[str, Any]], config: Dict) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Convenience function to build block keys and generate candidate pairs.

    Args:
        features: Normalized identity features
        config: Blocking configuration

    Returns:
        Tuple of (block_keys_df, candidate_pairs_df)
    """
    builder = BlockKeyBuilder(config)
    keys_df = builder.generate_block_keys(features)
    candidates_df = builder.generate_candidate_pairs(keys_df)

    stats = builder.get_blocking_statistics(keys_df, len(features), candidates_df)
    logger.info(f"Blocking completed: {stats['generated_candidates']:,} candidate pairs "
                f"({stats['reduction_percentage']:.1f}% reduction)")

    return keys_df, candidates_df
