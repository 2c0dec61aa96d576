"""
Schema validation using Great Expectations for PatientMatch.

Validates patient identity batches against the expected columns and data
quality rules before they are registered. Rows failing a row-level rule are
rejected; format problems in contact fields are only reported.

Security note: validation logs carry column names and counts, never values.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd
import great_expectations as gx

from ..models import new_id

logger = logging.getLogger(__name__)

# Keep the ephemeral context from reporting usage
os.environ.setdefault("GX_ANALYTICS_ENABLED", "false")

DEFAULT_REQUIRED_COLUMNS = ["first_name", "last_name", "date_of_birth"]

DOB_PATTERN = r"^(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4})$"
PHONE_PATTERN = r"^[\d\-\(\)\s\+\.]+$"
EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

# Expectations whose failing rows are dropped from the batch
REJECTING_EXPECTATIONS = {
    "expect_column_values_to_not_be_null",
    "expect_column_values_to_be_unique",
}
REJECTING_COLUMNS = {"date_of_birth"}


class IdentitySchemaValidator:
    """
    Validates patient identity batches with Great Expectations.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize validator with configuration.

        Args:
            config: Ingestion configuration (required_columns,
                not_null_columns, max_rejected_fraction)
        """
        config = config or {}
        self.config = config
        self.required_columns = list(config.get("required_columns", DEFAULT_REQUIRED_COLUMNS))
        self.not_null_columns = list(config.get("not_null_columns", []))
        self.max_rejected_fraction = float(config.get("max_rejected_fraction", 1.0))

        self.context = gx.get_context(mode="ephemeral")
        data_source = self.context.data_sources.add_pandas(name="patient_identities")
        data_asset = data_source.add_dataframe_asset(name="identity_batch")
        self.batch_definition = data_asset.add_batch_definition_whole_dataframe("identity_batch")

        logger.info(f"Initialized IdentitySchemaValidator ({len(self.required_columns)} required columns)")

    def check_columns(self, df: pd.DataFrame):
        """
        Fail fast when required columns are missing.

        Raises:
            ValueError: If any required column is absent
        """
        missing = [column for column in self.required_columns if column not in df.columns]
        if missing:
            raise ValueError(f"Identity file is missing required columns: {missing}")

    def create_expectations(self, df: pd.DataFrame) -> gx.ExpectationSuite:
        """
        Create the expectation suite for one batch.

        Column rules are only added for columns the batch carries.

        Returns:
            ExpectationSuite with validation rules
        """
        suite = gx.ExpectationSuite(name=f"patient_identity_validation_{new_id()[:8]}")

        for column in self.required_columns:
            suite.add_expectation(gx.expectations.ExpectColumnToExist(column=column))
        for column in self.not_null_columns:
            if column in df.columns:
                suite.add_expectation(gx.expectations.ExpectColumnValuesToNotBeNull(column=column))

        suite.add_expectation(gx.expectations.ExpectTableRowCountToBeBetween(min_value=1, max_value=None))

        if "id" in df.columns:
            suite.add_expectation(gx.expectations.ExpectColumnValuesToBeUnique(column="id"))

        if "date_of_birth" in df.columns:
            suite.add_expectation(
                gx.expectations.ExpectColumnValuesToMatchRegex(column="date_of_birth", regex=DOB_PATTERN)
            )
        if "phone" in df.columns:
            suite.add_expectation(
                gx.expectations.ExpectColumnValuesToMatchRegex(column="phone", regex=PHONE_PATTERN)
            )
        if "email" in df.columns:
            suite.add_expectation(
                gx.expectations.ExpectColumnValuesToMatchRegex(column="email", regex=EMAIL_PATTERN)
            )

        suite = self.context.suites.add(suite)
        logger.info(f"Created expectation suite '{suite.name}' with {len(suite.expectations)} expectations")
        return suite

    def validate_data(self, df: pd.DataFrame, suite: Optional[gx.ExpectationSuite] = None):
        """
        Validate a batch against the expectation suite.

        Returns:
            ExpectationSuiteValidationResult
        """
        if suite is None:
            suite = self.create_expectations(df)

        batch = self.batch_definition.get_batch(batch_parameters={"dataframe": df})
        results = batch.validate(suite, result_format="COMPLETE")

        for result in results.results:
            if not result.success:
                logger.warning(
                    f"Failed expectation: {result.expectation_config.type} "
                    f"for column: {result.expectation_config.kwargs.get('column', 'N/A')}"
                )
        return results

    def unparseable_dates(self, df: pd.DataFrame) -> List[Any]:
        """Index labels of rows whose date of birth has the right shape but is not a real date."""
        if "date_of_birth" not in df.columns:
            return []
        present = df["date_of_birth"].dropna()
        parsed = present.map(lambda value: pd.to_datetime(value, errors="coerce"))
        return list(parsed[parsed.isna()].index)

    def get_validation_summary(self, results, unparseable: List[Any]) -> Dict[str, Any]:
        """
        Extract a PHI-free summary from validation results.

        Returns:
            Dictionary with validation summary
        """
        summary = {
            "success": bool(results.success) and not unparseable,
            "total_expectations": len(results.results),
            "successful_expectations": 0,
            "failed_expectations": 0,
            "failed_expectations_details": [],
        }

        for result in results.results:
            if result.success:
                summary["successful_expectations"] += 1
                continue
            summary["failed_expectations"] += 1
            summary["failed_expectations_details"].append({
                "expectation_type": result.expectation_config.type,
                "column": result.expectation_config.kwargs.get("column", "N/A"),
                "unexpected_count": result.result.get("unexpected_count", 0),
            })

        if unparseable:
            summary["failed_expectations_details"].append({
                "expectation_type": "date_of_birth_parseable",
                "column": "date_of_birth",
                "unexpected_count": len(unparseable),
            })

        if summary["total_expectations"] > 0:
            summary["success_rate"] = summary["successful_expectations"] / summary["total_expectations"]
        else:
            summary["success_rate"] = 0.0

        logger.info(f"Validation summary: {summary['successful_expectations']}/{summary['total_expectations']} passed "
                    f"({summary['success_rate']:.2%} success rate)")
        return summary

    def rejected_rows(self, df: pd.DataFrame, results, unparseable: List[Any]) -> Dict[Any, List[str]]:
        """
        Map index labels of rejected rows to the rules they broke.

        Duplicate ids keep their first occurrence.
        """
        rejected: Dict[Any, List[str]] = {}

        for result in results.results:
            if result.success:
                continue
            expectation_type = result.expectation_config.type
            column = result.expectation_config.kwargs.get("column")
            if expectation_type not in REJECTING_EXPECTATIONS and column not in REJECTING_COLUMNS:
                continue

            if expectation_type == "expect_column_values_to_be_unique":
                labels = list(df.index[df[column].duplicated(keep="first") & df[column].notna()])
            else:
                labels = list(result.result.get("unexpected_index_list") or [])

            for label in labels:
                rejected.setdefault(label, []).append(f"{expectation_type}:{column}")

        for label in unparseable:
            rejected.setdefault(label, []).append("date_of_birth_parseable:date_of_birth")

        return rejected

    def clean_invalid_data(self, df: pd.DataFrame, rejected: Dict[Any, List[str]]) -> pd.DataFrame:
        """
        Drop rejected rows.

        Raises:
            ValueError: If more than ``max_rejected_fraction`` of the batch was rejected
        """
        original_rows = len(df)
        cleaned_df = df.drop(index=list(rejected))
        removed_rows = original_rows - len(cleaned_df)

        if original_rows and removed_rows / original_rows > self.max_rejected_fraction:
            raise ValueError(f"Identity file rejected: {removed_rows} of {original_rows} rows failed validation")

        if removed_rows:
            logger.info(f"Data cleaning completed: removed {removed_rows} invalid rows "
                        f"({removed_rows / original_rows:.2%} of data)")
        return cleaned_df


def validate_identities(df: pd.DataFrame, config: Optional[Dict[str, Any]] = None) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Convenience function to validate and clean an identity batch.

    Args:
        df: Identity DataFrame read with string dtypes and the default index
        config: Ingestion configuration

    Returns:
        Tuple of (cleaned_df, validation_summary); the summary's ``rejected``
        maps each rejected row number to the rules it broke
    """
    validator = IdentitySchemaValidator(config)
    validator.check_columns(df)

    results = validator.validate_data(df)
    unparseable = validator.unparseable_dates(df)
    summary = validator.get_validation_summary(results, unparseable)
    rejected = validator.rejected_rows(df, results, unparseable)
    summary["rejected"] = {int(label): rules for label, rules in rejected.items()}
    summary["rows_rejected"] = len(rejected)

    if summary["success"]:
        logger.info("All validation expectations passed")
        return df, summary

    logger.warning("Validation failed, cleaning invalid data")
    return validator.clean_invalid_data(df, rejected), summary
