"""Exception and warning taxonomy for genmatch.

Fatal problems are raised as exceptions.  ``ConfigurationError`` and
``StructuralInfeasibilityError`` subclass ``ValueError`` so callers that only
guard against bad input keep working.  Advisory problems are warnings (and
are also recorded as :class:`genmatch.validators.MatchAdvisory` entries on
the match result).
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MatchingError(Exception):
    """Base class for every error raised by genmatch."""


class ConfigurationError(MatchingError, ValueError):
    """Invalid argument or combination of arguments.  Always fatal."""


class InvalidCaliperDimension(ConfigurationError):
    """A caliper names a dimension that is neither a matching column nor the score."""


class NoCovariatesError(ConfigurationError):
    """The balance-covariate set is empty."""


class StructuralInfeasibilityError(MatchingError, ValueError):
    """The constraints make matching impossible."""


class NoOverlapError(StructuralInfeasibilityError):
    """No exact-match group contains both focal and non-focal units."""


class NoMatchesFoundError(StructuralInfeasibilityError):
    """Matching finished without a single matched pair."""


class OptimizerFailure(MatchingError, RuntimeError):
    """The weight optimizer raised.  The message carries a ``(from optimizer)`` prefix."""


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


class MatchingWarning(UserWarning):
    """Base class for advisory warnings."""


class CapacityWarning(MatchingWarning):
    """Fewer eligible non-focal units than the requested matches need."""


class OptimizerWarning(MatchingWarning):
    """A warning raised inside the weight optimizer, re-surfaced to the caller."""
