"""Genetic matching entry point.

Wires the pieces together for one matching run:

  1. validate inputs and normalize the treatment to a focal indicator
  2. build exact groups, matching variables, calipers and anti-exact pairs
  3. obtain the weight matrix from the weighting strategy (optimizer or
     fixed matrix)
  4. run the constrained matcher in the chosen processing order
  5. assemble the match matrix, subclasses and weights

Scores (e.g. propensity scores) are accepted pre-computed; this module
does no model fitting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Sequence

import numpy as np
import pandas as pd

from genmatch.assemble import assemble_match_result
from genmatch.calipers import CaliperSpec, normalize_calipers
from genmatch.constraints import ExactGroups, build_antiexact_pairs, build_exact_groups
from genmatch.errors import CapacityWarning, ConfigurationError
from genmatch.genetic import GeneticOptimizer
from genmatch.matcher import MatchOrder, RawMatches, order_units, resolve_m_order
from genmatch.optimizer import (
    OptimizationProblem,
    OptimizedWeighting,
    WeightingStrategy,
)
from genmatch.options import GeneticOptions
from genmatch.validators import MatchAdvisory, emit_advisory, validate_match_inputs
from genmatch.variables import build_matching_variables

Estimand = Literal["ATT", "ATC"]


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class MatchResult:
    """Results from a genetic matching run.

    Attributes:
        match_matrix: One row per non-discarded focal unit (index = unit
            label, data order) and ``ratio`` columns holding matched unit
            labels, padded with None.  Under ATC the rows are control units
            and the entries treated units.
        subclass: Subclass per unit (nullable ``Int64``, index = unit
            labels), or None when matching with replacement.
        weights: Matching weight per unit, aligned with the input index.
        weight_matrix: Raw-unit weight matrix of the generalized distance,
            indexed by matching-variable column.
        obj: Optimizer diagnostics when ``include_obj=True``, else None.
        advisories: Advisory messages collected during the run.
        estimand: ``"ATT"`` or ``"ATC"``.
        ratio: Matches sought per focal unit.
        replace: Whether matching was done with replacement.
        m_order: Processing-order policy actually used.
    """

    match_matrix: pd.DataFrame
    subclass: pd.Series | None
    weights: pd.Series
    weight_matrix: pd.DataFrame = field(repr=False)
    obj: Any = field(default=None, repr=False)
    advisories: list[MatchAdvisory] = field(default_factory=list, repr=False)
    estimand: Estimand = "ATT"
    ratio: int = 1
    replace: bool = False
    m_order: MatchOrder = "data"

    @property
    def n_matched_focal(self) -> int:
        """Focal units with at least one match."""
        return int(self.match_matrix.notna().any(axis=1).sum())

    @property
    def n_unmatched_focal(self) -> int:
        """Non-discarded focal units without a match."""
        return len(self.match_matrix) - self.n_matched_focal


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def focal_indicator(treatment: np.ndarray, estimand: str) -> np.ndarray:
    """Map a 0/1 treatment vector to a 0/1 focal indicator.

    ATT makes treated units focal; ATC makes control units focal.  Returns a
    new array; the input is never modified.
    """
    treatment = np.asarray(treatment, dtype=int)
    if estimand == "ATC":
        return (treatment == 0).astype(int)
    return (treatment == 1).astype(int)


def _binary_treatment(df: pd.DataFrame, treatment_col: str) -> np.ndarray:
    if treatment_col not in df.columns:
        raise KeyError(f"Treatment column '{treatment_col}' not found in DataFrame.")
    series = df[treatment_col]
    if series.isna().any():
        raise ConfigurationError("treatment_col contains missing values.")
    unique_vals = set(pd.unique(series))
    if not unique_vals.issubset({0, 1, True, False}):
        raise ConfigurationError(
            f"treatment_col must be binary (0/1).  Found unique values: {unique_vals}."
        )
    treatment = series.astype(int).to_numpy()
    if (treatment == 1).sum() == 0:
        raise ConfigurationError("No treated units found.")
    if (treatment == 0).sum() == 0:
        raise ConfigurationError("No control units found.")
    return treatment


def _aligned_vector(
    values: np.ndarray | pd.Series | None,
    df: pd.DataFrame,
    name: str,
    dtype: type,
) -> np.ndarray | None:
    if values is None:
        return None
    if isinstance(values, pd.Series):
        if not values.index.equals(df.index):
            missing = df.index.difference(values.index)
            if len(missing):
                raise ConfigurationError(
                    f"{name} has no entry for {len(missing):,} unit label(s) of df, "
                    f"e.g. {list(missing[:5])}."
                )
            values = values.reindex(df.index)
        values = values.to_numpy()
    if dtype is bool and pd.isna(values).any():
        raise ConfigurationError(f"{name} contains missing values.")
    out = np.asarray(values, dtype=dtype)
    if out.shape != (len(df),):
        raise ConfigurationError(
            f"{name} length ({out.shape[0] if out.ndim else 1}) must match "
            f"df length ({len(df)})."
        )
    return out


def _check_capacity(
    focal: np.ndarray,
    discarded: np.ndarray,
    ratio: int,
    estimand: str,
    advisories: list[MatchAdvisory],
) -> None:
    """Warn or fail when there are too few non-focal units for no-replacement matching."""
    focal_name, other_name = ("control", "treated") if estimand == "ATC" else ("treated", "control")
    keep = ~discarded
    n_focal = int((keep & (focal == 1)).sum())
    n_other = int((keep & (focal == 0)).sum())
    if n_other < n_focal:
        emit_advisory(
            advisories,
            "capacity",
            f"Fewer {other_name} units than {focal_name} units; not all "
            f"{focal_name} units will get a match.",
            CapacityWarning,
            stacklevel=4,
        )
    elif n_other < n_focal * ratio:
        raise ConfigurationError(
            f"Not enough {other_name} units for {ratio} matches for each "
            f"{focal_name} unit."
        )


def _report_stranded_groups(
    groups: ExactGroups,
    focal: np.ndarray,
    discarded: np.ndarray,
    advisories: list[MatchAdvisory],
) -> None:
    """Warn about focal units whose exact-match group has no non-focal units."""
    keep = ~discarded
    other_codes = set(groups.codes[keep & (focal == 0)].tolist())
    stranded = [
        pos
        for pos in np.flatnonzero(keep & (focal == 1))
        if groups.codes[pos] not in other_codes
    ]
    if not stranded:
        return
    keys = sorted({groups.label(pos) for pos in stranded})
    shown = "; ".join(keys[:5]) + ("; ..." if len(keys) > 5 else "")
    emit_advisory(
        advisories,
        "exact",
        f"{len(stranded):,} focal units are in exact-match groups without "
        f"non-focal units and cannot be matched: {shown}",
        CapacityWarning,
        stacklevel=4,
    )


def _report_calipers(calipers: CaliperSpec, advisories: list[MatchAdvisory]) -> None:
    sd_units = calipers.in_sd_units()
    parts = [
        f"{col} = {width:.4g} ({sd_units[col]:.3g} SD)"
        for col, width in calipers.widths.items()
    ]
    emit_advisory(advisories, "caliper", "Calipers: " + ", ".join(parts), severity="info")


def _report_shortfall(raw: RawMatches, advisories: list[MatchAdvisory]) -> None:
    """Record how many focal units ended with fewer than ``ratio`` matches."""
    states = list(raw.states().values())
    n_short = sum(1 for s in states if s != "matched")
    if not n_short:
        return
    n_none = states.count("exhausted")
    emit_advisory(
        advisories,
        "matcher",
        f"{n_short:,} focal units received fewer than {raw.ratio} matches "
        f"({n_none:,} with none).",
        severity="info",
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def run_genetic_matching(
    df: pd.DataFrame,
    treatment_col: str,
    covariate_cols: Sequence[str],
    score: np.ndarray | pd.Series | None = None,
    *,
    estimand: Estimand = "ATT",
    ratio: int = 1,
    replace: bool = False,
    m_order: MatchOrder | None = None,
    caliper: Mapping[str, float] | None = None,
    std_caliper: bool | Mapping[str, bool] = True,
    exact: Sequence[str] | None = None,
    antiexact: Sequence[str] | None = None,
    mahvars: Sequence[str] | None = None,
    discarded: np.ndarray | pd.Series | None = None,
    s_weights: np.ndarray | pd.Series | None = None,
    restrict: Iterable[tuple[Any, Any]] | None = None,
    weighting: WeightingStrategy | None = None,
    optimizer_options: Mapping[str, Any] | None = None,
    include_obj: bool = False,
    verbose: bool = False,
    seed: int | None = None,
) -> MatchResult:
    """Match focal units to non-focal units under an optimized generalized distance.

    Args:
        df: Input data, one row per unit.  The index holds the unit labels
            and must be unique.
        treatment_col: Binary (0/1 or bool) treatment column.
        covariate_cols: Covariates whose balance is optimized.  Numeric or
            categorical; categorical columns are dummy-encoded.
        score: Optional pre-computed propensity-type score aligned with
            ``df``.  When given (and ``mahvars`` is not), it is included in
            the distance alongside the covariates.
        estimand: ``"ATT"`` (treated units are focal) or ``"ATC"`` (control
            units are focal).
        ratio: Number of non-focal matches sought per focal unit.
        replace: Whether a non-focal unit may be matched more than once.
        m_order: Processing order: ``"largest"``, ``"smallest"``,
            ``"random"`` or ``"data"``.  Defaults to ``"largest"`` with a
            score (``"smallest"`` for ATC) and ``"data"`` without one.
        caliper: Mapping from dimension to caliper width.  ``""`` or
            ``"score"`` denotes the score; other keys name covariates.
        std_caliper: Whether widths are in standard-deviation units; one
            flag for all calipers or a mapping per key (default True).
        exact: Variables requiring exact matches.
        antiexact: Variables on which matched units must differ.
        mahvars: Use only these covariates in the distance (the score is
            then excluded from it unless it carries a caliper).
        discarded: Boolean flag per unit; discarded units are never matched.
        s_weights: Sampling weights, used by the optimizer and the default
            correlation-based weight matrix.
        restrict: Extra ``(label, label)`` pairs that must not be matched.
        weighting: Weight-matrix strategy.  Defaults to
            ``OptimizedWeighting(GeneticOptimizer())``.
        optimizer_options: Optimizer tuning options (see
            :class:`genmatch.options.GeneticOptions`).  Unknown keys raise.
        include_obj: Return the optimizer's diagnostic object.
        verbose: Record progress messages as ``"info"`` advisories.
        seed: Seed for the random processing order and the optimizer.

    Returns:
        A :class:`MatchResult` dataclass.

    Raises:
        ConfigurationError: On invalid arguments (bad ratio, unknown
            estimand or caliper dimension, empty covariates, too few
            non-focal units for ``ratio`` matches without replacement).
        StructuralInfeasibilityError: When no exact group overlaps or no
            match is found at all.
        OptimizerFailure: When the optimizer raises.
        KeyError: If a named column is missing from ``df``.
    """
    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------
    if df.empty:
        raise ConfigurationError("DataFrame is empty; nothing to match.")
    if not df.index.is_unique:
        raise ConfigurationError("df index must hold unique unit labels.")

    estimand = str(estimand).upper()  # type: ignore[assignment]
    if estimand not in ("ATT", "ATC"):
        raise ConfigurationError(
            f"Unknown estimand '{estimand}'. Choose from 'ATT', 'ATC'."
        )
    if isinstance(ratio, bool) or int(ratio) != ratio or ratio < 1:
        raise ConfigurationError(f"ratio must be a positive integer; got {ratio!r}.")
    ratio = int(ratio)

    treatment = _binary_treatment(df, treatment_col)
    score_arr = _aligned_vector(score, df, "score", float)
    discarded_arr = _aligned_vector(discarded, df, "discarded", bool)
    if discarded_arr is None:
        discarded_arr = np.zeros(len(df), dtype=bool)
    weights_arr = _aligned_vector(s_weights, df, "s_weights", float)
    if weights_arr is not None and (np.isnan(weights_arr).any() or (weights_arr < 0).any()):
        raise ConfigurationError("s_weights must be non-negative and non-missing.")

    options = GeneticOptions.from_mapping(optimizer_options)

    extra_cols = [*(mahvars or []), *(exact or []), *(antiexact or [])]
    extra_cols += [k for k in (caliper or {}) if k in df.columns]
    advisories = validate_match_inputs(df, treatment_col, covariate_cols, extra_cols)

    if verbose:
        emit_advisory(advisories, "genmatch", "Genetic matching...", severity="info")

    # ATC is handled by swapping labels; everything downstream is ATT
    focal = focal_indicator(treatment, estimand)
    if not replace:
        _check_capacity(focal, discarded_arr, ratio, estimand, advisories)

    # ------------------------------------------------------------------
    # Processing order
    # ------------------------------------------------------------------
    m_order = resolve_m_order(m_order, score_arr is not None, estimand)
    rng = np.random.default_rng(seed)
    order = order_units(score_arr, discarded_arr, m_order, rng)

    # ------------------------------------------------------------------
    # Constraints and matching variables
    # ------------------------------------------------------------------
    exact_groups = None
    if exact:
        exact_groups = build_exact_groups(df, exact, focal, discarded_arr)
        _report_stranded_groups(exact_groups, focal, discarded_arr, advisories)

    variables = build_matching_variables(
        df,
        covariate_cols,
        score=score_arr,
        mahvars=mahvars,
        exact_codes=None if exact_groups is None else exact_groups.codes,
        caliper_dims=list(caliper or {}),
    )
    caliper_spec = normalize_calipers(
        caliper, std_caliper, variables.X, variables.score_column, discarded_arr
    )
    if verbose and caliper_spec:
        _report_calipers(caliper_spec, advisories)
    antiexact_pairs = build_antiexact_pairs(df, antiexact, restrict)

    # ------------------------------------------------------------------
    # Weight matrix
    # ------------------------------------------------------------------
    problem = OptimizationProblem(
        X=variables.X,
        balance=variables.balance,
        focal=focal,
        order=order,
        exact_mask=variables.exact_mask,
        ratio=ratio,
        replace=replace,
        s_weights=weights_arr,
        caliper=caliper_spec if caliper_spec else None,
        exact=exact_groups,
        antiexact=antiexact_pairs if antiexact_pairs else None,
        options=options,
        seed=seed,
    )
    if weighting is None:
        weighting = OptimizedWeighting(GeneticOptimizer())
    outcome = weighting.weight_matrix(problem, advisories)

    # ------------------------------------------------------------------
    # Matching and assembly
    # ------------------------------------------------------------------
    raw = problem.matcher().match(
        variables.X, focal, order, outcome.weight_matrix.to_numpy()
    )
    _report_shortfall(raw, advisories)

    if verbose:
        emit_advisory(
            advisories, "genmatch", "Calculating matching weights...", severity="info"
        )
    assembled = assemble_match_result(raw, df.index, focal, discarded_arr)
    if verbose:
        emit_advisory(advisories, "genmatch", "Done.", severity="info")

    return MatchResult(
        match_matrix=assembled.match_matrix,
        subclass=assembled.subclass,
        weights=assembled.weights,
        weight_matrix=outcome.weight_matrix,
        obj=outcome.obj if include_obj else None,
        advisories=advisories,
        estimand=estimand,  # type: ignore[arg-type]
        ratio=ratio,
        replace=bool(replace),
        m_order=m_order,
    )
