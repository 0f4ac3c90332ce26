"""Constrained nearest-neighbor matching under a generalized distance.

Focal units are visited one at a time in a processing order.  For each one
the eligible non-focal candidates are scanned (SEARCH), the ``ratio``
nearest are recorded (ASSIGN), or the unit is left with fewer matches when
no eligible candidate remains (EXHAUSTED).

A candidate is eligible for focal unit ``i`` when it is non-focal, not
discarded, still available (without replacement every non-focal unit is
used at most once), in the same exact group as ``i``, not forbidden by an
anti-exact pair, and within every caliper.

Distances are the generalized Mahalanobis distance

    d(i, j)^2 = (X_i - X_j)^T W (X_i - X_j)

computed through a whitening transform of ``W`` so that the search reduces
to Euclidean distances, as in the whitening used for distributed
Mahalanobis matching.  Ties keep processing order (first encountered wins).

References:
    Diamond & Sekhon (2013). Genetic matching for estimating causal effects.
        Review of Economics and Statistics, 95(3), 932-945.
    Abadie & Imbens (2006). Large sample properties of matching estimators
        for average treatment effects. Econometrica, 74(1), 235-267.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd

from genmatch.calipers import CaliperSpec
from genmatch.constraints import AntiExactPairs, ExactGroups
from genmatch.errors import ConfigurationError, NoMatchesFoundError


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

MatchOrder = Literal["largest", "smallest", "random", "data"]
MatchState = Literal["matched", "partial", "exhausted"]

_ORDERS = ("largest", "smallest", "random", "data")


@dataclass
class RawMatches:
    """Index-level output of :class:`ConstrainedMatcher`.

    Attributes:
        matches: Mapping from focal row position to the list of matched
            non-focal row positions, nearest first.  Keys follow the
            processing order; every non-discarded focal unit is present
            (with an empty list when it found no match).
        ratio: Requested number of matches per focal unit.
        replace: Whether non-focal units could be reused.
    """

    matches: dict[int, list[int]] = field(default_factory=dict)
    ratio: int = 1
    replace: bool = False

    @property
    def n_pairs(self) -> int:
        return sum(len(v) for v in self.matches.values())

    @property
    def n_matched_focal(self) -> int:
        return sum(1 for v in self.matches.values() if v)

    def states(self) -> dict[int, MatchState]:
        """Final state of every focal unit."""
        out: dict[int, MatchState] = {}
        for pos, found in self.matches.items():
            if len(found) >= self.ratio:
                out[pos] = "matched"
            elif found:
                out[pos] = "partial"
            else:
                out[pos] = "exhausted"
        return out

    def pairs(self) -> np.ndarray:
        """Array of shape (n_pairs, 2) with columns (focal, non-focal)."""
        rows = [(f, c) for f, found in self.matches.items() for c in found]
        return np.array(rows, dtype=int).reshape(-1, 2)


# ---------------------------------------------------------------------------
# Ordering policy
# ---------------------------------------------------------------------------


def resolve_m_order(
    m_order: str | None,
    has_score: bool,
    estimand: str = "ATT",
) -> MatchOrder:
    """Return the processing-order policy, applying the defaults.

    Defaults: ``"largest"`` with a score, ``"smallest"`` with a score when the
    estimand is ATC, ``"data"`` without a score.  Without a score only
    ``"data"`` and ``"random"`` are allowed.

    Raises:
        ConfigurationError: If *m_order* is unknown or needs a missing score.
    """
    if m_order is None:
        if not has_score:
            return "data"
        return "smallest" if estimand == "ATC" else "largest"
    if m_order not in _ORDERS:
        raise ConfigurationError(
            f"Unknown m_order '{m_order}'. Choose from {', '.join(_ORDERS)}."
        )
    if not has_score and m_order in ("largest", "smallest"):
        raise ConfigurationError(
            f"m_order='{m_order}' requires a score; use 'data' or 'random'."
        )
    return m_order  # type: ignore[return-value]


def order_units(
    score: np.ndarray | None,
    discarded: np.ndarray,
    m_order: MatchOrder,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Return non-discarded row positions in processing order.

    Sorting is stable, so units with equal scores keep their data order.

    Args:
        score: Score per unit (required for ``"largest"``/``"smallest"``).
        discarded: Boolean discard flag per unit.
        m_order: Ordering policy.
        rng: Random generator, used only for ``"random"``.

    Returns:
        Integer array of row positions.
    """
    discarded = np.asarray(discarded, dtype=bool)
    n = len(discarded)
    if m_order == "largest":
        ord_ = np.argsort(-np.asarray(score, dtype=float), kind="stable")
    elif m_order == "smallest":
        ord_ = np.argsort(np.asarray(score, dtype=float), kind="stable")
    elif m_order == "random":
        if rng is None:
            rng = np.random.default_rng()
        ord_ = rng.permutation(n)
    else:
        ord_ = np.arange(n)
    return ord_[~discarded[ord_]]


# ---------------------------------------------------------------------------
# Distance helpers
# ---------------------------------------------------------------------------


def whitening_transform(weight_matrix: np.ndarray) -> np.ndarray:
    """Return ``L`` with ``L @ L.T == W`` for a symmetric PSD matrix ``W``.

    Uses an eigendecomposition; tiny negative eigenvalues from round-off are
    clipped to zero, so generalized inverses of singular matrices work.
    Distances between rows of ``X @ L`` are generalized distances under W.
    """
    w = np.asarray(weight_matrix, dtype=float)
    w = (w + w.T) / 2.0
    eigenvalues, eigenvectors = np.linalg.eigh(w)
    eigenvalues = np.clip(eigenvalues, 0.0, None)
    return eigenvectors * np.sqrt(eigenvalues)


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class ConstrainedMatcher:
    """Ordered ratio-k nearest-neighbor matcher with replacement control.

    Args:
        ratio: Matches sought per focal unit (positive integer).
        replace: Whether a non-focal unit may be matched more than once.
        caliper: Calipers in raw units, keyed by ``X`` column.
        exact: Exact-match groups, or None.
        antiexact: Forbidden pairs, or None.
        distance_tolerance: Distances at or below this value are treated
            as zero, so such candidates tie and keep processing order.
    """

    def __init__(
        self,
        ratio: int = 1,
        replace: bool = False,
        caliper: CaliperSpec | None = None,
        exact: ExactGroups | None = None,
        antiexact: AntiExactPairs | None = None,
        distance_tolerance: float = 0.0,
    ) -> None:
        if isinstance(ratio, bool) or int(ratio) != ratio or ratio < 1:
            raise ConfigurationError(f"ratio must be a positive integer; got {ratio!r}.")
        if distance_tolerance < 0:
            raise ConfigurationError("distance_tolerance must be non-negative.")
        self.ratio = int(ratio)
        self.replace = bool(replace)
        self.caliper = caliper if caliper else None
        self.exact = exact
        self.antiexact = antiexact if antiexact else None
        self.distance_tolerance = float(distance_tolerance)

    def match(
        self,
        X: pd.DataFrame,
        focal: np.ndarray,
        order: np.ndarray,
        weight_matrix: np.ndarray,
        require_matches: bool = True,
    ) -> RawMatches:
        """Match every focal unit in *order* to its nearest eligible candidates.

        Args:
            X: Matching-variable matrix, rows in original data order.
            focal: 0/1 focal indicator per row of *X*.
            order: Non-discarded row positions in processing order (see
                :func:`order_units`); rows absent from it are discarded.
            weight_matrix: Square matrix aligned with the columns of *X*.
            require_matches: Raise when no focal unit finds a match.

        Returns:
            A :class:`RawMatches` instance.

        Raises:
            ConfigurationError: If *weight_matrix* does not fit *X*.
            NoMatchesFoundError: If no pair was formed and
                *require_matches* is True.
        """
        values = X.to_numpy(dtype=float)
        n_cols = values.shape[1]
        weight_matrix = np.asarray(weight_matrix, dtype=float)
        if weight_matrix.shape != (n_cols, n_cols):
            raise ConfigurationError(
                f"Weight matrix shape {weight_matrix.shape} does not match "
                f"{n_cols} matching variables."
            )

        focal = np.asarray(focal, dtype=int)
        order = np.asarray(order, dtype=int)
        z = values @ whitening_transform(weight_matrix)

        cal_dims = np.empty(0, dtype=int)
        cal_widths = np.empty(0, dtype=float)
        if self.caliper is not None:
            widths = self.caliper.as_vector(list(X.columns))
            cal_dims = np.flatnonzero(np.isfinite(widths))
            cal_widths = widths[cal_dims]

        pool = order[focal[order] == 0]
        focal_seq = order[focal[order] == 1]
        available = np.ones(len(pool), dtype=bool)

        result = RawMatches(ratio=self.ratio, replace=self.replace)
        for i in focal_seq:
            # SEARCH
            cand = np.flatnonzero(available) if not self.replace else np.arange(len(pool))
            if cand.size:
                cand = cand[self._eligible(int(i), pool[cand], values, cal_dims, cal_widths)]
            if cand.size == 0:
                result.matches[int(i)] = []  # EXHAUSTED
                continue

            # ASSIGN
            dists = np.sqrt(((z[pool[cand]] - z[i]) ** 2).sum(axis=1))
            if self.distance_tolerance > 0:
                dists[dists <= self.distance_tolerance] = 0.0
            chosen = cand[np.argsort(dists, kind="stable")[: self.ratio]]
            result.matches[int(i)] = pool[chosen].tolist()
            if not self.replace:
                available[chosen] = False

        if require_matches and result.n_pairs == 0:
            raise NoMatchesFoundError(
                "No matches were found. Consider widening the calipers or "
                "relaxing the exact/anti-exact constraints."
            )
        return result

    def _eligible(
        self,
        i: int,
        candidates: np.ndarray,
        values: np.ndarray,
        cal_dims: np.ndarray,
        cal_widths: np.ndarray,
    ) -> np.ndarray:
        """Boolean mask over *candidates* that pass every constraint for *i*."""
        mask = np.ones(len(candidates), dtype=bool)
        if self.exact is not None:
            mask &= self.exact.codes[candidates] == self.exact.codes[i]
        if self.antiexact is not None:
            mask &= ~self.antiexact.forbidden_mask(i, candidates)
        if cal_dims.size:
            diffs = np.abs(values[np.ix_(candidates, cal_dims)] - values[i, cal_dims])
            mask &= (diffs <= cal_widths).all(axis=1)
        return mask
