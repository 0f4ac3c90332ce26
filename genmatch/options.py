"""Tuning options for the weight optimizer.

Options arrive as a plain mapping (``optimizer_options={"pop_size": 50}``)
and are resolved once into a frozen :class:`GeneticOptions`.  Unknown keys
are rejected rather than silently forwarded.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Literal, Mapping

from genmatch.errors import ConfigurationError

FitFunc = Literal["pvals", "smd"]


@dataclass(frozen=True)
class GeneticOptions:
    """Optimizer tuning options.

    Attributes:
        pop_size: Number of candidate weight vectors per generation.
        max_generations: Maximum number of generations.
        wait_generations: Stop early after this many generations without
            improvement of the best fitness value.
        fit_func: Balance criterion.  ``"pvals"`` maximizes the smallest
            p-value across paired t-tests (and KS tests when ``ks`` is
            True); ``"smd"`` minimizes the largest absolute standardized
            mean difference.
        ks: Include Kolmogorov-Smirnov p-values in the ``"pvals"`` criterion.
        weight_domain: Upper bound for each per-variable weight (lower
            bound is 0).
        distance_tolerance: Distances at or below this value count as
            ties during matching.
    """

    pop_size: int = 100
    max_generations: int = 100
    wait_generations: int = 4
    fit_func: FitFunc = "pvals"
    ks: bool = True
    weight_domain: float = 1000.0
    distance_tolerance: float = 0.0

    def __post_init__(self) -> None:
        for name in ("pop_size", "max_generations", "wait_generations"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer; got {value!r}.")
        if self.fit_func not in ("pvals", "smd"):
            raise ConfigurationError(
                f"Unknown fit_func '{self.fit_func}'. Choose from 'pvals', 'smd'."
            )
        if not self.weight_domain > 0:
            raise ConfigurationError("weight_domain must be positive.")
        if self.distance_tolerance < 0:
            raise ConfigurationError("distance_tolerance must be non-negative.")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None) -> "GeneticOptions":
        """Build options from a mapping, rejecting unrecognized keys.

        Raises:
            ConfigurationError: On unknown keys or invalid values.
        """
        if not options:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"Unrecognized optimizer options: {unknown}. "
                f"Allowed: {sorted(known)}."
            )
        return cls(**dict(options))
