"""Weight-matrix strategies for the generalized distance.

The matcher needs one weight matrix ``W`` aligned with the matching
variables.  Two interchangeable strategies produce it:

``OptimizedWeighting``
    Hands an :class:`OptimizationProblem` to a pluggable optimizer (the
    bundled :class:`genmatch.genetic.GeneticOptimizer`, or any object with
    an ``optimize(problem)`` method) and converts its answer to raw units.
``FixedWeighting``
    Uses a caller-supplied matrix as-is, or by default the generalized
    inverse of the (sample-weighted) correlation matrix of the matching
    variables, i.e. the Mahalanobis metric.

Optimizers work on the SD-standardized scale: a weight matrix ``W_s`` for
standardized variables corresponds to ``D^-1 W_s D^-1`` in raw units, where
``D`` is the diagonal matrix of standard deviations.  Exact-only columns
always get zero weight.
"""

from __future__ import annotations

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Union, runtime_checkable

import numpy as np
import pandas as pd
from scipy import linalg

from genmatch.calipers import CaliperSpec
from genmatch.constraints import AntiExactPairs, ExactGroups
from genmatch.errors import (
    CapacityWarning,
    ConfigurationError,
    OptimizerFailure,
    OptimizerWarning,
)
from genmatch.matcher import ConstrainedMatcher
from genmatch.options import GeneticOptions
from genmatch.validators import MatchAdvisory, emit_advisory


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Optimizers that match internally warn with this text when there are more
# (weighted) focal than non-focal units; such warnings are consolidated.
CAPACITY_WARNING_PREFIX = (
    "replace=False, but there are more (weighted) focal units than non-focal units"
)

_SYMMETRY_TOL = 1e-8


# ---------------------------------------------------------------------------
# Problem and output dataclasses
# ---------------------------------------------------------------------------


@dataclass
class OptimizationProblem:
    """Everything an optimizer needs to choose a weight matrix.

    Focal units are always coded 1 (the ATT convention); an ATC request is
    handled by swapping labels before the problem is built.

    Attributes:
        X: Matching variables, rows in original data order.
        balance: Balance covariates whose balance is optimized.
        focal: 0/1 focal indicator per row.
        order: Non-discarded row positions in processing order.
        exact_mask: True for exact-only columns of ``X``.
        ratio: Matches per focal unit.
        replace: Matching with replacement.
        s_weights: Sampling weights per row, or None.
        caliper: Calipers in raw units, or None.
        exact: Exact-match groups, or None.
        antiexact: Forbidden pairs, or None.
        options: Optimizer tuning options.
        seed: Seed for the optimizer's random source, or None.
        estimand: Always ``"ATT"``.
    """

    X: pd.DataFrame
    balance: pd.DataFrame
    focal: np.ndarray
    order: np.ndarray
    exact_mask: np.ndarray
    ratio: int = 1
    replace: bool = False
    s_weights: np.ndarray | None = None
    caliper: CaliperSpec | None = None
    exact: ExactGroups | None = None
    antiexact: AntiExactPairs | None = None
    options: GeneticOptions = field(default_factory=GeneticOptions)
    seed: int | None = None
    estimand: str = "ATT"

    @property
    def distance_columns(self) -> list[str]:
        """Columns of ``X`` that enter the distance (non-exact)."""
        return [c for c, ex in zip(self.X.columns, self.exact_mask) if not ex]

    def covariance(self) -> np.ndarray:
        """(Weighted) covariance of the distance columns over processed units."""
        values = self.X[self.distance_columns].to_numpy(dtype=float)[self.order]
        weights = None if self.s_weights is None else self.s_weights[self.order]
        if values.shape[0] < 2:
            return np.zeros((values.shape[1], values.shape[1]))
        cov = np.cov(values, rowvar=False, aweights=weights)
        return np.atleast_2d(cov)

    def scale(self) -> np.ndarray:
        """Standard deviation of each distance column (0 for constant columns)."""
        return np.sqrt(np.clip(np.diag(self.covariance()), 0.0, None))

    def matcher(self) -> ConstrainedMatcher:
        """A matcher configured with this problem's constraints."""
        return ConstrainedMatcher(
            ratio=self.ratio,
            replace=self.replace,
            caliper=self.caliper,
            exact=self.exact,
            antiexact=self.antiexact,
            distance_tolerance=self.options.distance_tolerance,
        )

    def embed(self, matrix: np.ndarray) -> np.ndarray:
        """Place a matrix over the distance columns into a matrix over all
        columns of ``X``, with zero rows and columns for exact-only columns."""
        n = self.X.shape[1]
        full = np.zeros((n, n))
        idx = np.flatnonzero(~np.asarray(self.exact_mask, dtype=bool))
        full[np.ix_(idx, idx)] = matrix
        return full

    def to_raw_scale(self, standardized: np.ndarray) -> np.ndarray:
        """Convert a standardized-scale matrix over the distance columns to a
        raw-unit matrix over all columns of ``X`` (zeros for exact-only and
        constant columns)."""
        sd = self.scale()
        inv_sd = np.divide(1.0, sd, out=np.zeros_like(sd), where=sd > 0)
        return self.embed(standardized * np.outer(inv_sd, inv_sd))


@dataclass
class OptimizerOutput:
    """What an optimizer returns.

    Attributes:
        weight_matrix: Square matrix over ``problem.distance_columns`` on
            the SD-standardized scale.  Must be symmetric.
        obj: Optional diagnostic object, passed through to the caller.
    """

    weight_matrix: np.ndarray | pd.DataFrame
    obj: Any = None


@runtime_checkable
class WeightOptimizer(Protocol):
    """Protocol for pluggable weight optimizers."""

    def optimize(self, problem: OptimizationProblem) -> OptimizerOutput:
        ...


OptimizerLike = Union[WeightOptimizer, Callable[[OptimizationProblem], OptimizerOutput]]


@dataclass
class WeightingOutcome:
    """A raw-unit weight matrix aligned with ``X`` plus optimizer diagnostics."""

    weight_matrix: pd.DataFrame
    obj: Any = None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def correlation_weight_matrix(problem: OptimizationProblem) -> np.ndarray:
    """Generalized inverse of the (weighted) correlation of the distance columns.

    Constant columns are left out of the correlation and get zero weight.
    Returned on the SD-standardized scale.
    """
    cov = problem.covariance()
    sd = np.sqrt(np.clip(np.diag(cov), 0.0, None))
    k = len(sd)
    out = np.zeros((k, k))
    live = np.flatnonzero(sd > 0)
    if live.size == 0:
        return out
    corr = cov[np.ix_(live, live)] / np.outer(sd[live], sd[live])
    out[np.ix_(live, live)] = linalg.pinvh(corr)
    return out


def _check_output(
    matrix: np.ndarray,
    k: int,
    error: type[Exception] = OptimizerFailure,
    source: str = "Optimizer returned",
) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.shape != (k, k):
        raise error(
            f"{source} a weight matrix of shape {matrix.shape}; "
            f"expected ({k}, {k})."
        )
    if not np.all(np.isfinite(matrix)):
        raise error(f"{source} a weight matrix with non-finite entries.")
    if not np.allclose(matrix, matrix.T, atol=_SYMMETRY_TOL):
        raise error(f"{source} a non-symmetric weight matrix.")
    return (matrix + matrix.T) / 2.0


def run_optimizer(
    optimizer: OptimizerLike,
    problem: OptimizationProblem,
    advisories: list[MatchAdvisory],
) -> OptimizerOutput:
    """Invoke *optimizer* on *problem*, translating its errors and warnings.

    Errors are re-raised as :class:`OptimizerFailure` with a
    ``(from optimizer)`` prefix and the original exception chained.
    Capacity warnings are collapsed into a single :class:`CapacityWarning`;
    every other warning is re-emitted as an :class:`OptimizerWarning` with
    the same prefix.  All of them are recorded in *advisories*.
    """
    fn = optimizer.optimize if isinstance(optimizer, WeightOptimizer) else optimizer

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            output = fn(problem)
        except OptimizerFailure:
            raise
        except Exception as exc:
            raise OptimizerFailure(f"(from optimizer) {exc}") from exc

    n_capacity = 0
    for w in caught:
        message = str(w.message)
        if message.startswith(CAPACITY_WARNING_PREFIX):
            n_capacity += 1
            continue
        emit_advisory(
            advisories, "optimizer", f"(from optimizer) {message}", OptimizerWarning
        )
    if n_capacity:
        emit_advisory(
            advisories,
            "capacity",
            "There are more (weighted) focal units than non-focal units; "
            "not all focal units will get a match.",
            CapacityWarning,
        )

    if not isinstance(output, OptimizerOutput):
        raise OptimizerFailure(
            f"Optimizer must return an OptimizerOutput; got {type(output).__name__}."
        )
    return output


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class WeightingStrategy(ABC):
    """Produces the raw-unit weight matrix for one matching run."""

    @abstractmethod
    def weight_matrix(
        self,
        problem: OptimizationProblem,
        advisories: list[MatchAdvisory],
    ) -> WeightingOutcome:
        ...


class FixedWeighting(WeightingStrategy):
    """Fixed weight matrix, no optimization.

    Args:
        matrix: Raw-unit matrix over the distance columns of ``X`` (every
            matching variable except the exact-only group column).  A
            DataFrame is reindexed by column name.  None selects the
            generalized inverse of the (weighted) correlation matrix.
    """

    def __init__(self, matrix: np.ndarray | pd.DataFrame | None = None) -> None:
        self.matrix = matrix

    def weight_matrix(
        self,
        problem: OptimizationProblem,
        advisories: list[MatchAdvisory],
    ) -> WeightingOutcome:
        columns = list(problem.X.columns)
        dist_cols = problem.distance_columns
        if self.matrix is None:
            raw = problem.to_raw_scale(correlation_weight_matrix(problem))
        else:
            matrix = self.matrix
            if isinstance(matrix, pd.DataFrame):
                missing = [c for c in dist_cols if c not in matrix.columns or c not in matrix.index]
                if missing:
                    raise ConfigurationError(
                        f"Fixed weight matrix is missing columns: {missing}"
                    )
                matrix = matrix.loc[dist_cols, dist_cols].to_numpy()
            raw = problem.embed(
                _check_output(
                    matrix, len(dist_cols), ConfigurationError, "FixedWeighting was given"
                )
            )
        return WeightingOutcome(
            weight_matrix=pd.DataFrame(raw, index=columns, columns=columns)
        )


class OptimizedWeighting(WeightingStrategy):
    """Weight matrix chosen by an optimizer.

    Args:
        optimizer: A :class:`WeightOptimizer` or a callable taking an
            :class:`OptimizationProblem` and returning an
            :class:`OptimizerOutput`.
    """

    def __init__(self, optimizer: OptimizerLike) -> None:
        self.optimizer = optimizer

    def weight_matrix(
        self,
        problem: OptimizationProblem,
        advisories: list[MatchAdvisory],
    ) -> WeightingOutcome:
        output = run_optimizer(self.optimizer, problem, advisories)
        k = len(problem.distance_columns)
        matrix = output.weight_matrix
        if isinstance(matrix, pd.DataFrame):
            cols = problem.distance_columns
            matrix = matrix.loc[cols, cols].to_numpy()
        standardized = _check_output(matrix, k)
        columns = list(problem.X.columns)
        return WeightingOutcome(
            weight_matrix=pd.DataFrame(
                problem.to_raw_scale(standardized), index=columns, columns=columns
            ),
            obj=output.obj,
        )
