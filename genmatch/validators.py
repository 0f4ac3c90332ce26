"""Input validation utilities for genmatch.

Checks a DataFrame against the column roles used by a matching run.  All
checks produce MatchAdvisory namedtuples -- advisories never block a run.
Hard failures (missing columns, non-binary treatment) are raised by the
entry point in ``genmatch/pipeline.py`` instead.
"""

from __future__ import annotations

import warnings
from collections import namedtuple
from typing import Sequence

import pandas as pd

# ---------------------------------------------------------------------------
# Public types
# ---------------------------------------------------------------------------

MatchAdvisory = namedtuple(
    "MatchAdvisory",
    ["source", "severity", "message"],
)
"""A single advisory message produced while preparing or running a match.

Attributes:
    source: Column name the advisory applies to, ``"__dataset__"`` for
        dataset-level checks, or the stage that produced it
        (``"optimizer"``, ``"matcher"``, ``"capacity"``).
    severity: One of ``"info"``, ``"warning"``, or ``"error"`` (still
        advisory -- ``"error"`` means the run is likely to fail or give
        poor matches).
    message: Human-readable description.
"""

# Sentinel for dataset-level (non-column-specific) advisories
_DATASET = "__dataset__"


def emit_advisory(
    advisories: list[MatchAdvisory],
    source: str,
    message: str,
    category: type[Warning] | None = None,
    severity: str = "warning",
    stacklevel: int = 3,
) -> MatchAdvisory:
    """Record an advisory and, when *category* is given, raise it as a warning.

    Args:
        advisories: List the advisory is appended to.
        source: Advisory source (see :data:`MatchAdvisory`).
        message: Advisory text.
        category: Warning class to emit through :func:`warnings.warn`, or
            None to only record it.
        severity: Advisory severity.
        stacklevel: Forwarded to :func:`warnings.warn`.

    Returns:
        The recorded advisory.
    """
    advisory = MatchAdvisory(source=source, severity=severity, message=message)
    advisories.append(advisory)
    if category is not None:
        warnings.warn(message, category, stacklevel=stacklevel)
    return advisory


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _null_check(df: pd.DataFrame, column: str) -> list[MatchAdvisory]:
    """Flag covariates with any missing values.

    Matching variables cannot be imputed, so any null is an ``"error"``.
    """
    n_null = int(df[column].isna().sum())
    if n_null == 0:
        return []
    return [
        MatchAdvisory(
            source=column,
            severity="error",
            message=(
                f"{n_null:,} values are null. Missing covariate values must be "
                "imputed or the rows dropped before matching."
            ),
        )
    ]


def _cardinality_check(
    df: pd.DataFrame,
    column: str,
    threshold: int = 50,
) -> list[MatchAdvisory]:
    """Warn when a categorical covariate has more unique values than *threshold*.

    Every level becomes its own dummy column in the matching variables, so
    high-cardinality columns blow up the distance metric.
    """
    if pd.api.types.is_numeric_dtype(df[column]) or pd.api.types.is_bool_dtype(
        df[column]
    ):
        return []

    n_unique = df[column].nunique(dropna=True)
    if n_unique > threshold:
        return [
            MatchAdvisory(
                source=column,
                severity="warning",
                message=(
                    f"{n_unique} unique categories detected. Each level becomes "
                    "a separate matching variable. Consider binning or using "
                    "the column for exact matching instead."
                ),
            )
        ]
    return []


def _constant_check(df: pd.DataFrame, column: str) -> list[MatchAdvisory]:
    """Flag covariates with a single distinct value (no information for distance)."""
    if df[column].nunique(dropna=True) > 1:
        return []
    return [
        MatchAdvisory(
            source=column,
            severity="info",
            message="Column is constant and contributes nothing to the distance.",
        )
    ]


def _balance_check(
    df: pd.DataFrame,
    treatment_col: str,
) -> list[MatchAdvisory]:
    """Warn if the treated share is outside 10%-90%."""
    binary = pd.to_numeric(df[treatment_col], errors="coerce")
    if binary.isna().any():
        return []  # Entry point raises on non-binary treatment

    treated_frac = float((binary == 1).mean())
    n_treated = int((binary == 1).sum())
    n_control = int((binary == 0).sum())

    if treated_frac < 0.10 or treated_frac > 0.90:
        return [
            MatchAdvisory(
                source=treatment_col,
                severity="warning",
                message=(
                    f"{treated_frac:.1%} of rows are treated "
                    f"({n_treated:,} treated vs {n_control:,} control). "
                    "Severe imbalance leaves little room for the optimizer."
                ),
            )
        ]
    return []


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_match_inputs(
    df: pd.DataFrame,
    treatment_col: str,
    covariate_cols: Sequence[str],
    extra_cols: Sequence[str] = (),
) -> list[MatchAdvisory]:
    """Validate a DataFrame against the column roles of a matching run.

    Checks performed:
        - Duplicate row labels (dataset level)
        - Treatment balance (treated share outside 10%-90%)
        - Missing values in covariates and extra matching columns
        - Constant covariates
        - High-cardinality categorical covariates (>50 levels)

    Args:
        df: The input DataFrame.  Must not be empty.
        treatment_col: Binary treatment column.
        covariate_cols: Balance covariates.
        extra_cols: Additional columns used by the run (mahvars, exact,
            antiexact and caliper variables).  Only checked for nulls.

    Returns:
        List of MatchAdvisory namedtuples, dataset-level checks first.
        Columns missing from *df* are skipped; the entry point raises on
        them.

    Raises:
        ValueError: If *df* is empty.
    """
    if df.empty:
        raise ValueError("DataFrame is empty; cannot validate.")

    advisories: list[MatchAdvisory] = []

    n_dupes = int(df.index.duplicated().sum())
    if n_dupes > 0:
        advisories.append(
            MatchAdvisory(
                source=_DATASET,
                severity="error",
                message=(
                    f"{n_dupes:,} duplicate row labels detected. Unit labels "
                    "must be unique to report matches."
                ),
            )
        )

    if treatment_col in df.columns:
        advisories.extend(_balance_check(df, treatment_col))

    for col in covariate_cols:
        if col not in df.columns:
            continue
        advisories.extend(_null_check(df, col))
        advisories.extend(_constant_check(df, col))
        advisories.extend(_cardinality_check(df, col))

    seen = set(covariate_cols)
    for col in extra_cols:
        if col in seen or col not in df.columns:
            continue
        seen.add(col)
        advisories.extend(_null_check(df, col))

    return advisories
