"""
Configuration utilities for PatientMatch.

Loads the engine configuration from YAML and fills in defaults for every
section so components can be built from a partial file.
"""

import copy
import logging
import yaml
from typing import Dict, Any
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/patient_match.yaml"

REQUIRED_SECTIONS = ["normalization", "blocking", "scoring", "review", "merge",
                     "conflict_resolution", "pipeline", "storage"]


def load_engine_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load engine configuration from YAML file.

    Missing sections are filled from the defaults.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning(f"Configuration file {config_path} not found, using defaults")
        return get_default_config()

    with open(config_file, 'r') as f:
        loaded = yaml.safe_load(f) or {}

    config = merge_configs(get_default_config(), loaded)
    logger.info(f"Loaded engine configuration from {config_path}")
    return config


def get_default_config() -> Dict[str, Any]:
    """
    Get default engine configuration.

    Returns:
        Default configuration dictionary
    """
    return {
        "normalization": {
            "name": {
                "remove_titles": ["Dr.", "Dr", "Mr.", "Mr", "Mrs.", "Mrs", "Ms.", "Ms"],
                "remove_suffixes": ["Jr.", "Jr", "Sr.", "Sr", "II", "III", "IV"],
            },
            "phone": {
                "default_country_code": "US",
            },
        },
        "blocking": {
            "strategies": [
                {"name": "last_soundex_birth_year", "keys": ["last_name_soundex", "birth_year"]},
                {"name": "dob_first_initial", "keys": ["date_of_birth", "first_initial"]},
                {"name": "phone", "keys": ["phone_norm"]},
                {"name": "mrn", "keys": ["mrn_norm"]},
            ],
            "required_any": ["last_name", "date_of_birth"],
            "max_candidates_per_block": 1000,
        },
        "scoring": {
            "algorithm_version": "v1.0-jw-soundex",
            "weights": {
                "first_name": 0.15,
                "last_name": 0.20,
                "date_of_birth": 0.25,
                "phone": 0.10,
                "address": 0.10,
                "mrn": 0.15,
                "gender": 0.05,
            },
            "thresholds": {
                "t_auto": 95.0,
                "t_review_high": 85.0,
                "t_review_normal": 75.0,
                "t_discard": 60.0,
            },
            "comparison": {
                "phonetic_floor": 0.85,
                "dob_max_days": 365,
                "dob_typo_score": 0.8,
                "phone_local_match_score": 0.9,
                "phone_typo_score": 0.5,
            },
            "require_mrn_match": False,
        },
        "review": {
            "merge_on_confirm": True,
            "auto_merge": {
                "enabled": False,
                "max_per_day": 10,
                "actor": "system:auto-merge",
            },
        },
        "merge": {
            "survivor_policy": "earliest_created",
            "dependent_tables": [
                {"table": "encounters", "column": "patient_id"},
                {"table": "appointments", "column": "patient_id"},
                {"table": "patient_medications", "column": "patient_id"},
                {"table": "clinical_notes", "column": "patient_id"},
            ],
        },
        "conflict_resolution": {
            "resource_types": {
                "Patient": {
                    "field_mapping": {
                        "given": "first_name",
                        "family": "last_name",
                        "birthDate": "date_of_birth",
                        "gender": "gender",
                        "telecom_phone": "phone",
                        "telecom_email": "email",
                        "address_line": "address",
                        "address_city": "city",
                        "address_state": "state",
                        "address_postalCode": "zip_code",
                        "identifier_mrn": "mrn",
                    },
                    "clinical": ["date_of_birth", "gender"],
                    "administrative": ["tenant_id", "created_at", "created_by", "notes", "source"],
                },
            },
        },
        "ingestion": {
            "required_columns": ["first_name", "last_name", "date_of_birth"],
            "not_null_columns": [],
            "max_rejected_fraction": 1.0,
        },
        "pipeline": {
            "max_workers": 4,
            "time_budget_seconds": None,
        },
        "audit": {
            "db_path": "data/audit.db",
            "export_path": "data/audit_exports",
        },
        "storage": {
            "db_path": "data/patient_match.db",
        },
    }


def validate_engine_config(config: Dict[str, Any]) -> bool:
    """
    Validate engine configuration structure.

    Scoring weights and thresholds are checked by the scorer itself, which
    raises ScoringConfigError.

    Args:
        config: Configuration dictionary

    Returns:
        True if configuration is valid, False otherwise
    """
    for section in REQUIRED_SECTIONS:
        if section not in config:
            logger.error(f"Missing required configuration section: {section}")
            return False

    strategies = config["blocking"].get("strategies", [])
    if not isinstance(strategies, list) or not strategies:
        logger.error("blocking.strategies must be a non-empty list")
        return False

    for strategy in strategies:
        if not strategy.get("name") or not strategy.get("keys"):
            logger.error(f"Blocking strategy needs a name and keys: {strategy}")
            return False

    for dependent in config["merge"].get("dependent_tables", []):
        if not dependent.get("table") or not dependent.get("column"):
            logger.error(f"Dependent table needs table and column: {dependent}")
            return False

    fraction = config.get("ingestion", {}).get("max_rejected_fraction", 1.0)
    if not 0.0 <= float(fraction) <= 1.0:
        logger.error(f"ingestion.max_rejected_fraction must be between 0 and 1: {fraction}")
        return False

    resource_types = config["conflict_resolution"].get("resource_types", {})
    if not isinstance(resource_types, dict):
        logger.error("conflict_resolution.resource_types must be a mapping")
        return False

    logger.info("Configuration validation passed")
    return True


def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge two configuration dictionaries.

    Args:
        base_config: Base configuration
        override_config: Override configuration

    Returns:
        Merged configuration
    """
    merged = copy.deepcopy(base_config)

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def save_engine_config(config: Dict[str, Any], config_path: str) -> None:
    """
    Save engine configuration to YAML file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration
    """
    config_file = Path(config_path)
    config_file.parent.mkdir(parents=True, exist_ok=True)

    with open(config_file, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, indent=2)

    logger.info(f"Saved configuration to {config_path}")
