"""Caliper processing for genmatch.

A caliper is a per-dimension limit on how far apart two matched units may
be.  Users give widths either in raw units or in standard-deviation units;
this module resolves each caliper to a column of the matching-variable
matrix and converts every width to raw units so the matcher can compare
absolute differences directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

import numpy as np
import pandas as pd

from genmatch.errors import ConfigurationError, InvalidCaliperDimension
from genmatch.variables import SCORE_KEYS


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class CaliperSpec:
    """Calipers resolved to matching-variable columns, in raw units.

    Attributes:
        widths: Mapping from column name of ``X`` to the maximum allowed
            absolute difference between matched units on that column.
        pop_sd: Population standard deviation (over non-discarded units) of
            each caliper column, used by :meth:`in_sd_units`.
    """

    widths: dict[str, float] = field(default_factory=dict)
    pop_sd: dict[str, float] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.widths)

    def in_sd_units(self) -> dict[str, float]:
        """Return each width divided by its column's population SD.

        Used to report calipers on the standardized scale.  A zero-SD
        column maps to 0 for a zero width and to ``inf`` otherwise.
        """
        out: dict[str, float] = {}
        for col, width in self.widths.items():
            sd = self.pop_sd[col]
            if sd > 0.0:
                out[col] = width / sd
            else:
                out[col] = 0.0 if width == 0.0 else float("inf")
        return out

    def as_vector(self, columns: list[str]) -> np.ndarray:
        """Return widths aligned to *columns*, ``inf`` where no caliper applies."""
        return np.array([self.widths.get(c, np.inf) for c in columns], dtype=float)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def population_sd(values: np.ndarray) -> float:
    """Standard deviation with denominator n (not n - 1)."""
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((values - values.mean()) ** 2)))


def _is_standardized(std_caliper: bool | Mapping[str, bool], key: str) -> bool:
    if isinstance(std_caliper, Mapping):
        return bool(std_caliper.get(key, True))
    return bool(std_caliper)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_calipers(
    caliper: Mapping[str, float] | None,
    std_caliper: bool | Mapping[str, bool],
    X: pd.DataFrame,
    score_column: str | None,
    discarded: np.ndarray,
) -> CaliperSpec:
    """Resolve caliper keys to columns of *X* and convert widths to raw units.

    Standardized widths (``std_caliper`` True for that key) are multiplied
    by the population SD of the column over non-discarded units.

    Args:
        caliper: Mapping from dimension key to width.  The keys ``""`` and
            ``"score"`` denote the score; any other key must be a column of
            *X*.  None or empty means no calipers.
        std_caliper: Either one flag for every caliper or a mapping from
            key to flag (missing keys default to True).
        X: Matching-variable matrix from
            :func:`genmatch.variables.build_matching_variables`.
        score_column: Name of the score column in *X*, or None.
        discarded: Boolean array flagging discarded units.

    Returns:
        A :class:`CaliperSpec` (empty when no calipers were given).

    Raises:
        InvalidCaliperDimension: If a key does not name a column of *X*
            or the score.
        ConfigurationError: If a width is negative or NaN, or two keys
            name the same dimension.
    """
    spec = CaliperSpec()
    if not caliper:
        return spec

    keep = ~np.asarray(discarded, dtype=bool)

    for key, width in caliper.items():
        width = float(width)
        if np.isnan(width) or width < 0.0:
            raise ConfigurationError(
                f"Caliper widths must be non-negative; got {width} for '{key}'."
            )

        if key in SCORE_KEYS and score_column is not None:
            col = score_column
        elif key in SCORE_KEYS and key not in X.columns:
            raise InvalidCaliperDimension(
                "A caliper was placed on the score, but no score is available."
            )
        elif key in X.columns:
            col = key
        else:
            raise InvalidCaliperDimension(
                f"Caliper variable '{key}' is not a matching variable or the score. "
                f"Available: {list(X.columns)}"
            )

        if col in spec.widths:
            raise ConfigurationError(
                f"More than one caliper was given for '{col}'; "
                "'' and 'score' both denote the score."
            )

        sd = population_sd(X[col].to_numpy()[keep])
        spec.pop_sd[col] = sd
        spec.widths[col] = width * sd if _is_standardized(std_caliper, key) else width

    return spec
