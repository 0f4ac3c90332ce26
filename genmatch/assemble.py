"""Translate raw index matches into the public match structures.

Produces:
  - the match matrix: one row per non-discarded focal unit, ``ratio``
    columns of matched unit labels padded with None
  - subclass labels (matching without replacement only)
  - matching weights: 1 for matched focal units, and for a non-focal unit the
    sum over its focal partners of 1 / (that partner's realized match count)
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from genmatch.matcher import RawMatches


@dataclass
class AssembledMatches:
    """Label-level view of a matching run.

    Attributes:
        match_matrix: DataFrame indexed by focal unit label (data order),
            columns ``1..ratio``; entries are matched unit labels or None.
        subclass: Nullable integer subclass per unit (index = unit labels),
            or None when matching was done with replacement.
        weights: Non-negative matching weight per unit.
    """

    match_matrix: pd.DataFrame
    subclass: pd.Series | None
    weights: pd.Series


def build_match_matrix(
    raw: RawMatches,
    labels: pd.Index,
    focal: np.ndarray,
    discarded: np.ndarray,
) -> pd.DataFrame:
    """Match matrix keyed by focal labels, padded with None."""
    focal = np.asarray(focal, dtype=int)
    rows = np.flatnonzero((focal == 1) & ~np.asarray(discarded, dtype=bool))
    data = []
    for pos in rows:
        found = [labels[c] for c in raw.matches.get(int(pos), [])]
        data.append(found + [None] * (raw.ratio - len(found)))
    mm = pd.DataFrame(
        data,
        index=labels[rows],
        columns=range(1, raw.ratio + 1),
        dtype=object,
    )
    mm.index.name = labels.name
    return mm


def build_subclass(
    raw: RawMatches,
    labels: pd.Index,
    focal: np.ndarray,
) -> pd.Series:
    """Subclass per unit from connected components of the matched-pair graph.

    Components containing at least one pair are numbered 1..K following the
    data order of their focal units; unmatched units get ``<NA>``.
    """
    n = len(labels)
    pairs = raw.pairs()
    graph = sparse.coo_matrix(
        (np.ones(len(pairs)), (pairs[:, 0], pairs[:, 1])), shape=(n, n)
    )
    _, component = connected_components(graph, directed=False)

    matched = np.zeros(n, dtype=bool)
    matched[pairs.ravel()] = True

    subclass = pd.array([pd.NA] * n, dtype="Int64")
    numbering: dict[int, int] = {}
    for pos in np.flatnonzero(matched & (np.asarray(focal, dtype=int) == 1)):
        numbering.setdefault(int(component[pos]), len(numbering) + 1)
    for pos in np.flatnonzero(matched):
        subclass[pos] = numbering[int(component[pos])]

    return pd.Series(subclass, index=labels, name="subclass")


def compute_match_weights(
    raw: RawMatches,
    labels: pd.Index,
) -> pd.Series:
    """Matching weights per unit.

    A matched focal unit gets 1.  Each of its ``k`` realized matches receives
    ``1 / k`` from it, so the non-focal weights attached to one focal unit
    always sum to 1.  Unmatched and discarded units get 0.
    """
    weights = np.zeros(len(labels), dtype=float)
    for f, found in raw.matches.items():
        if not found:
            continue
        weights[f] = 1.0
        share = 1.0 / len(found)
        for c in found:
            weights[c] += share
    return pd.Series(weights, index=labels, name="weights")


def assemble_match_result(
    raw: RawMatches,
    labels: pd.Index,
    focal: np.ndarray,
    discarded: np.ndarray,
) -> AssembledMatches:
    """Build the match matrix, subclasses and weights from *raw*.

    Args:
        raw: Output of :meth:`genmatch.matcher.ConstrainedMatcher.match`.
        labels: Unit labels (the input DataFrame's index).
        focal: 0/1 focal indicator per unit.
        discarded: Boolean discard flag per unit.

    Returns:
        An :class:`AssembledMatches` instance.  ``subclass`` is None under
        replacement because a reused non-focal unit can belong to several
        overlapping groups.
    """
    return AssembledMatches(
        match_matrix=build_match_matrix(raw, labels, focal, discarded),
        subclass=None if raw.replace else build_subclass(raw, labels, focal),
        weights=compute_match_weights(raw, labels),
    )
