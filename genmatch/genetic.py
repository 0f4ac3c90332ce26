"""Evolutionary search for generalized-distance weights.

Genetic matching chooses one non-negative weight per matching variable so
that nearest-neighbor matching on the weighted (standardized) distance gives
the best covariate balance.  The search here uses differential evolution
(``scipy.optimize.differential_evolution``) over diagonal weight matrices.
Each candidate is scored by running the matcher and measuring balance on
the matched pairs:

``"pvals"`` (default)
    The smallest p-value across paired t-tests, and two-sample
    Kolmogorov-Smirnov tests when ``ks=True``, over all balance
    covariates.  Larger is better.
``"smd"``
    The largest absolute standardized mean difference.  Smaller is better.

References:
    Diamond & Sekhon (2013). Genetic matching for estimating causal effects:
        A general multivariate matching method for achieving balance in
        observational studies. Review of Economics and Statistics, 95(3),
        932-945.
    Sekhon (2011). Multivariate and propensity score matching software with
        automated balance optimization. Journal of Statistical Software,
        42(1), 1-52.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import optimize, stats

from genmatch.matcher import RawMatches
from genmatch.optimizer import (
    CAPACITY_WARNING_PREFIX,
    OptimizationProblem,
    OptimizerOutput,
)
from genmatch.options import GeneticOptions


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Objective assigned to candidates that produce no matched pairs
_WORST_PVALS = 0.0
_WORST_SMD = 1e6


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class GeneticDiagnostics:
    """Diagnostics from a :class:`GeneticOptimizer` run.

    Attributes:
        weights: Best per-variable weight, indexed by distance column.
        value: Fitness of the best candidate (smallest p-value for
            ``"pvals"``, largest absolute SMD for ``"smd"``).
        generations: Generations actually run.
        n_evaluations: Number of candidate evaluations.
        fit_func: The balance criterion used.
        converged: True when the search stopped because the best fitness
            stalled for ``wait_generations`` generations.
    """

    weights: pd.Series
    value: float
    generations: int
    n_evaluations: int
    fit_func: str
    converged: bool


# ---------------------------------------------------------------------------
# Balance helpers
# ---------------------------------------------------------------------------


def _pair_weights(raw: RawMatches, s_weights: np.ndarray | None) -> np.ndarray:
    """Weight per matched pair: 1 / (focal unit's match count) times its sampling weight."""
    out = []
    for f, found in raw.matches.items():
        if not found:
            continue
        w = 1.0 if s_weights is None else float(s_weights[f])
        out.extend([w / len(found)] * len(found))
    return np.asarray(out, dtype=float)


def _paired_t_pvalue(diff: np.ndarray, weights: np.ndarray) -> float:
    """Two-sided p-value of a weighted paired t-test on *diff*.

    Returns 1.0 when every difference is zero and 0.0 when the differences
    are constant but non-zero.
    """
    w = weights / weights.sum()
    mean = float(np.dot(w, diff))
    var = float(np.dot(w, (diff - mean) ** 2))
    n_eff = 1.0 / float(np.sum(w**2))
    if var <= 0.0 or n_eff <= 1.0:
        return 1.0 if abs(mean) == 0.0 else 0.0
    se = math.sqrt(var * n_eff / (n_eff - 1.0) / n_eff)
    t_stat = mean / se
    return float(2.0 * stats.t.sf(abs(t_stat), df=n_eff - 1.0))


def _smd(
    treated: np.ndarray,
    control: np.ndarray,
    weights: np.ndarray,
    pooled_sd: float,
) -> float:
    """Weighted mean difference over a fixed pre-matching pooled SD."""
    if pooled_sd == 0.0:
        return 0.0
    mean_t = np.average(treated, weights=weights)
    mean_c = np.average(control, weights=weights)
    return float((mean_t - mean_c) / pooled_sd)


def _pooled_sd(values: np.ndarray, focal: np.ndarray) -> np.ndarray:
    """Per-column sqrt((var_T + var_C) / 2) before matching.

    Uses ddof=1; a group with fewer than two units contributes zero variance.
    """
    t = values[focal == 1]
    c = values[focal == 0]
    var_t = t.var(axis=0, ddof=1) if len(t) > 1 else np.zeros(values.shape[1])
    var_c = c.var(axis=0, ddof=1) if len(c) > 1 else np.zeros(values.shape[1])
    return np.sqrt((var_t + var_c) / 2.0)


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------


class GeneticOptimizer:
    """Differential-evolution search over diagonal weight matrices.

    Tuning comes from ``problem.options`` (a
    :class:`genmatch.options.GeneticOptions`); the seed from
    ``problem.seed``.  The returned matrix is on the SD-standardized scale.
    """

    def optimize(self, problem: OptimizationProblem) -> OptimizerOutput:
        options = problem.options
        columns = problem.distance_columns
        k = len(columns)
        if k == 0:
            raise ValueError("No matching variables enter the distance; nothing to optimize.")

        focal = np.asarray(problem.focal, dtype=int)
        order = np.asarray(problem.order, dtype=int)
        s_weights = problem.s_weights

        if not problem.replace:
            w = np.ones(len(focal)) if s_weights is None else np.asarray(s_weights)
            if w[order][focal[order] == 1].sum() > w[order][focal[order] == 0].sum():
                warnings.warn(
                    f"{CAPACITY_WARNING_PREFIX}; not all focal units will get a match.",
                    UserWarning,
                    stacklevel=2,
                )

        balance = problem.balance.to_numpy(dtype=float)
        pooled_sd = _pooled_sd(balance[order], focal[order])
        matcher = problem.matcher()
        maximize = options.fit_func == "pvals"

        state = {"evals": 0, "best": math.inf}

        def objective(x: np.ndarray) -> float:
            state["evals"] += 1
            raw_w = problem.to_raw_scale(np.diag(x))
            raw = matcher.match(problem.X, focal, order, raw_w, require_matches=False)
            value = self._fitness(raw, balance, s_weights, pooled_sd, options)
            loss = -value if maximize else value
            state["best"] = min(state["best"], loss)
            return loss

        history = {"generation": 0, "stall": 0, "last": math.inf, "converged": False}

        def callback(xk, convergence=None) -> bool:
            history["generation"] += 1
            if state["best"] < history["last"]:
                history["last"] = state["best"]
                history["stall"] = 0
            else:
                history["stall"] += 1
            if history["stall"] >= options.wait_generations:
                history["converged"] = True
                return True
            return False

        x0 = np.ones(k) if options.weight_domain >= 1.0 else None
        result = optimize.differential_evolution(
            objective,
            bounds=[(0.0, options.weight_domain)] * k,
            popsize=max(1, math.ceil(options.pop_size / k)),
            maxiter=options.max_generations,
            seed=problem.seed,
            polish=False,
            tol=0.0,
            callback=callback,
            x0=x0,
        )

        best = np.asarray(result.x, dtype=float)
        value = -float(result.fun) if maximize else float(result.fun)
        diagnostics = GeneticDiagnostics(
            weights=pd.Series(best, index=columns, name="weight"),
            value=value,
            generations=history["generation"],
            n_evaluations=state["evals"],
            fit_func=options.fit_func,
            converged=history["converged"],
        )
        return OptimizerOutput(weight_matrix=np.diag(best), obj=diagnostics)

    def _fitness(
        self,
        raw: RawMatches,
        balance: np.ndarray,
        s_weights: np.ndarray | None,
        pooled_sd: np.ndarray,
        options: GeneticOptions,
    ) -> float:
        """Balance criterion of one candidate's matches (see module docstring)."""
        pairs = raw.pairs()
        pvals_mode = options.fit_func == "pvals"
        if len(pairs) == 0:
            return _WORST_PVALS if pvals_mode else _WORST_SMD

        weights = _pair_weights(raw, s_weights)
        treated = balance[pairs[:, 0]]
        control = balance[pairs[:, 1]]

        if not pvals_mode:
            return max(
                abs(_smd(treated[:, j], control[:, j], weights, float(pooled_sd[j])))
                for j in range(balance.shape[1])
            )

        pvalues = []
        for j in range(balance.shape[1]):
            pvalues.append(_paired_t_pvalue(treated[:, j] - control[:, j], weights))
            if options.ks and np.ptp(balance[:, j]) > 0:
                pvalues.append(float(stats.ks_2samp(treated[:, j], control[:, j]).pvalue))
        return min(pvalues)
