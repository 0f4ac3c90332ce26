"""Matching-variable construction for genmatch.

Covariates play two roles in genetic matching: they are the variables whose
balance the optimizer targets (the *balance matrix*), and they are the
variables entering the generalized Mahalanobis distance (the *matching
variables*, ``X``).  This module builds both from a DataFrame.

``X`` is assembled in one of three modes:

``"score_plus_covariates"``
    All balance covariates plus the score column.  Used when a score is
    supplied and no ``mahvars`` subset is requested.
``"custom_subset"``
    Only the ``mahvars`` covariates; the score is left out of the distance.
``"full_covariate"``
    All balance covariates, no score (no score was supplied).

Exact-match, caliper-only and (in custom-subset mode) score-caliper columns
are appended afterwards so that every constrained dimension is a column of
``X``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

import numpy as np
import pandas as pd

from genmatch.errors import ConfigurationError, InvalidCaliperDimension, NoCovariatesError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCORE_COLUMN = "score"
EXACT_COLUMN = "exact_group"

# Caliper keys that refer to the score rather than a covariate
SCORE_KEYS = ("", SCORE_COLUMN)

VariableMode = Literal["score_plus_covariates", "custom_subset", "full_covariate"]


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class MatchingVariables:
    """Matching variables and balance covariates for one matching run.

    Attributes:
        X: Matching-variable matrix, one row per unit in the original data
            order (discarded units included; the matcher skips them).
            Column names are preserved for caliper alignment.
        balance: Encoded balance covariates, same rows as ``X``.
        exact_mask: Boolean array, one entry per column of ``X``; True for
            exact-only columns that never enter the distance.
        mode: Which of the three construction modes was used.
        score_column: Name of the score column in ``X``, or None when the
            score is not part of ``X``.
    """

    X: pd.DataFrame
    balance: pd.DataFrame
    exact_mask: np.ndarray
    mode: VariableMode
    score_column: str | None

    @property
    def distance_columns(self) -> list[str]:
        """Columns of ``X`` that enter the distance metric."""
        return [c for c, ex in zip(self.X.columns, self.exact_mask) if not ex]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _is_categorical(series: pd.Series) -> bool:
    """Return True for object, string or categorical series."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return True
    return series.dtype.kind in ("O", "U", "S") or pd.api.types.is_string_dtype(
        series.dtype
    )


def encode_covariates(df_cov: pd.DataFrame) -> pd.DataFrame:
    """Dummy-encode categorical columns and cast everything to float.

    Every level of a categorical column becomes its own 0/1 column named
    ``<column>_<level>`` (no reference level is dropped; the generalized
    inverse used for the distance tolerates the resulting collinearity).
    Boolean columns become 0/1 floats.

    Args:
        df_cov: DataFrame containing only covariate columns.

    Returns:
        Float DataFrame with the same index as *df_cov*.

    Raises:
        ConfigurationError: If any covariate has missing values.
    """
    missing = [c for c in df_cov.columns if df_cov[c].isna().any()]
    if missing:
        raise ConfigurationError(
            f"Missing values found in matching variables: {missing}. "
            "Impute or drop these rows before matching."
        )

    cat_cols = [c for c in df_cov.columns if _is_categorical(df_cov[c])]
    df_out = df_cov.copy()
    if cat_cols:
        df_out = pd.get_dummies(
            df_out, columns=cat_cols, prefix_sep="_", drop_first=False, dtype=float
        )

    return df_out.astype(float)


def select_mode(has_score: bool, mahvars: Sequence[str] | None) -> VariableMode:
    """Pick the matching-variable mode from the run configuration."""
    if mahvars:
        return "custom_subset"
    if has_score:
        return "score_plus_covariates"
    return "full_covariate"


def _resolve_columns(df: pd.DataFrame, cols: Sequence[str], role: str) -> list[str]:
    cols = list(cols)
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise KeyError(f"{role} columns not found in DataFrame: {missing}")
    return cols


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_matching_variables(
    df: pd.DataFrame,
    covariate_cols: Sequence[str],
    score: np.ndarray | None = None,
    mahvars: Sequence[str] | None = None,
    exact_codes: np.ndarray | None = None,
    caliper_dims: Sequence[str] = (),
) -> MatchingVariables:
    """Assemble the matching-variable matrix ``X`` and the balance matrix.

    Args:
        df: Input data, one row per unit.
        covariate_cols: Balance covariates.  Must be non-empty.
        score: Optional propensity-type score aligned with *df*.
        mahvars: Optional subset of columns to use as matching variables
            instead of the balance covariates (custom-subset mode).
        exact_codes: Integer exact-group label per unit, from
            :func:`genmatch.constraints.build_exact_groups`.  Appended as
            an exact-only column.
        caliper_dims: Caliper dimension keys.  Covariate keys not already
            in ``X`` are appended; a score key (``""`` or ``"score"``) in
            custom-subset mode appends the score last.

    Returns:
        A :class:`MatchingVariables` instance.

    Raises:
        NoCovariatesError: If *covariate_cols* is empty.
        InvalidCaliperDimension: If a caliper key is neither a numeric
            column of *df* nor the score (with a score supplied).
        ConfigurationError: If the score or exact-group column name
            collides with a matching variable, or any matching variable
            has missing values.
        KeyError: If a named column is absent from *df*.
    """
    if not covariate_cols:
        raise NoCovariatesError(
            "Covariates must be specified to use genetic matching; "
            "matching cannot proceed without variables to balance."
        )

    covariate_cols = _resolve_columns(df, covariate_cols, "Covariate")
    balance = encode_covariates(df[covariate_cols])

    has_score = score is not None
    mode = select_mode(has_score, mahvars)
    score_values = None
    if has_score:
        score_values = np.asarray(score, dtype=float)
        if score_values.shape != (len(df),):
            raise ConfigurationError(
                f"score length ({score_values.shape[0]}) must match df length ({len(df)})."
            )
        if np.isnan(score_values).any():
            raise ConfigurationError("score contains missing values.")

    # --- Base matrix ---
    score_column: str | None = None
    if mode == "custom_subset":
        mahvars = _resolve_columns(df, mahvars, "mahvars")
        X = encode_covariates(df[mahvars])
    else:
        X = balance.copy()
        if mode == "score_plus_covariates":
            if SCORE_COLUMN in X.columns:
                raise ConfigurationError(
                    f"Covariate name '{SCORE_COLUMN}' is reserved for the score column."
                )
            X[SCORE_COLUMN] = score_values
            score_column = SCORE_COLUMN
    exact_mask = [False] * X.shape[1]

    # --- Exact-only column ---
    if exact_codes is not None:
        if EXACT_COLUMN in X.columns:
            raise ConfigurationError(
                f"Column name '{EXACT_COLUMN}' is reserved for the exact-match group "
                "when exact matching is used."
            )
        X[EXACT_COLUMN] = np.asarray(exact_codes, dtype=float)
        exact_mask.append(True)

    # --- Caliper-only columns ---
    score_caliper = False
    for dim in caliper_dims:
        if dim in SCORE_KEYS:
            score_caliper = True
            continue
        if dim == EXACT_COLUMN and exact_codes is not None:
            raise ConfigurationError(
                f"Column name '{EXACT_COLUMN}' is reserved for the exact-match group "
                "when exact matching is used."
            )
        if dim in X.columns:
            continue
        if dim not in df.columns or _is_categorical(df[dim]):
            raise InvalidCaliperDimension(
                f"Caliper variable '{dim}' is not a numeric column of the data."
            )
        X = pd.concat([X, encode_covariates(df[[dim]])], axis=1)
        exact_mask.append(False)

    if score_caliper:
        if not has_score:
            raise InvalidCaliperDimension(
                "A caliper was placed on the score, but no score was supplied."
            )
        if score_column is None:
            if SCORE_COLUMN in X.columns:
                raise ConfigurationError(
                    f"Column name '{SCORE_COLUMN}' is reserved for the score column."
                )
            X[SCORE_COLUMN] = score_values
            exact_mask.append(False)
            score_column = SCORE_COLUMN

    return MatchingVariables(
        X=X,
        balance=balance,
        exact_mask=np.asarray(exact_mask, dtype=bool),
        mode=mode,
        score_column=score_column,
    )
