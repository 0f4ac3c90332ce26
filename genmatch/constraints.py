"""Exact and anti-exact matching constraints.

Exact matching restricts matches to units sharing the same value on every
exact variable.  Anti-exact matching forbids matches between units sharing
a value on any anti-exact variable.  Both constraints are expressed on
positional unit indices (row positions in the input DataFrame).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from genmatch.errors import ConfigurationError, NoOverlapError


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ExactGroups:
    """Composite exact-match group label for every unit.

    Attributes:
        codes: Integer group code per unit (row position).  Two units are
            matchable only if their codes are equal.
        keys: Human-readable composite key for each code, e.g.
            ``"race=black, married=1"``; ``keys[code]`` labels ``code``.
        variables: The exact-match variables, in the order given.
    """

    codes: np.ndarray
    keys: list[str]
    variables: list[str]

    def label(self, position: int) -> str:
        """Composite key of the unit at *position*."""
        return self.keys[int(self.codes[position])]


@dataclass
class AntiExactPairs:
    """Unordered unit pairs that must never be matched together.

    Pairs come from two sources: units sharing a value on any anti-exact
    variable (stored compactly as per-variable value codes) and an explicit
    list of forbidden pairs supplied by the caller.

    Attributes:
        codes: Array of shape (n_units, n_variables) with one integer value
            code per anti-exact variable; empty second axis when no
            anti-exact variables were given.
        extra: Explicit forbidden pairs as sorted position tuples.
    """

    codes: np.ndarray
    extra: frozenset[tuple[int, int]] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        partners: dict[int, set[int]] = {}
        for a, b in self.extra:
            partners.setdefault(a, set()).add(b)
            partners.setdefault(b, set()).add(a)
        self._partners = partners

    def __bool__(self) -> bool:
        return self.codes.shape[1] > 0 or bool(self.extra)

    def forbidden_mask(self, i: int, candidates: np.ndarray) -> np.ndarray:
        """Boolean mask over *candidates*: True where matching with *i* is forbidden."""
        candidates = np.asarray(candidates, dtype=int)
        if self.codes.shape[1] > 0:
            mask = (self.codes[candidates] == self.codes[i]).any(axis=1)
        else:
            mask = np.zeros(len(candidates), dtype=bool)
        partners = self._partners.get(int(i))
        if partners:
            mask |= np.isin(candidates, list(partners))
        return mask


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _check_columns(df: pd.DataFrame, cols: Sequence[str], role: str) -> list[str]:
    cols = list(cols)
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise KeyError(f"{role} columns not found in DataFrame: {missing}")
    nulls = [c for c in cols if df[c].isna().any()]
    if nulls:
        raise ConfigurationError(f"{role} variables contain missing values: {nulls}")
    return cols


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_exact_groups(
    df: pd.DataFrame,
    exact: Sequence[str],
    focal: np.ndarray,
    discarded: np.ndarray,
) -> ExactGroups:
    """Compute a composite exact-match group code per unit.

    Codes come from grouping on the tuple of exact-variable values (sorted
    group order), so identical value combinations always share a code
    regardless of the values' types.

    Args:
        df: Input data.
        exact: Exact-match variables (at least one).
        focal: 0/1 focal indicator per unit.
        discarded: Boolean discard flag per unit.

    Returns:
        An :class:`ExactGroups` instance.

    Raises:
        NoOverlapError: If no group contains both a non-discarded focal unit
            and a non-discarded non-focal unit.
        ConfigurationError: If an exact variable has missing values.
        KeyError: If an exact variable is not a column of *df*.
    """
    exact = _check_columns(df, exact, "Exact")
    frame = df[exact].reset_index(drop=True)
    codes = frame.groupby(exact, sort=True, observed=True).ngroup().to_numpy(dtype=int)

    first = frame.assign(_code=codes).drop_duplicates("_code").sort_values("_code")
    keys = [
        ", ".join(f"{var}={row[var]}" for var in exact)
        for _, row in first.iterrows()
    ]

    focal = np.asarray(focal, dtype=int)
    keep = ~np.asarray(discarded, dtype=bool)
    common = np.intersect1d(codes[keep & (focal == 1)], codes[keep & (focal == 0)])
    if common.size == 0:
        raise NoOverlapError(
            "No matches were found: no exact-match group contains both focal "
            "and non-focal units."
        )

    return ExactGroups(codes=codes, keys=keys, variables=exact)


def build_antiexact_pairs(
    df: pd.DataFrame,
    antiexact: Sequence[str] | None = None,
    restrict: Iterable[tuple[object, object]] | None = None,
) -> AntiExactPairs:
    """Build the set of forbidden unit pairs.

    For each anti-exact variable, units are partitioned by value and every
    pair within a partition is forbidden.  Several variables union their
    pairs.  *restrict* adds caller-supplied forbidden pairs on top.

    Args:
        df: Input data; its index holds the unit labels.
        antiexact: Anti-exact variables, or None.
        restrict: Iterable of ``(label_a, label_b)`` pairs of unit labels
            that must not be matched, or None.

    Returns:
        An :class:`AntiExactPairs` instance (falsy when nothing is forbidden).

    Raises:
        ConfigurationError: If *restrict* names an unknown label or pairs a
            unit with itself, or an anti-exact variable has missing values.
        KeyError: If an anti-exact variable is not a column of *df*.
    """
    n = len(df)
    if antiexact:
        antiexact = _check_columns(df, antiexact, "Anti-exact")
        codes = np.column_stack(
            [pd.factorize(df[var], sort=True)[0] for var in antiexact]
        ).astype(int)
    else:
        codes = np.empty((n, 0), dtype=int)

    extra: set[tuple[int, int]] = set()
    if restrict is not None:
        for pair in restrict:
            if len(pair) != 2:
                raise ConfigurationError(
                    f"restrict entries must be (label, label) pairs; got {pair!r}."
                )
            positions = df.index.get_indexer(list(pair))
            if (positions < 0).any():
                raise ConfigurationError(f"restrict pair {pair!r} names an unknown unit.")
            a, b = (int(p) for p in positions)
            if a == b:
                raise ConfigurationError(f"restrict pair {pair!r} pairs a unit with itself.")
            extra.add((min(a, b), max(a, b)))

    return AntiExactPairs(codes=codes, extra=frozenset(extra))
