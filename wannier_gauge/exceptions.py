"""
Error taxonomy of the gauge-optimization engine.

Fatal problems are exceptions; degraded-but-usable outcomes (iteration cap
hit, divergence caught) are warnings plus a `ConvergenceReport` status, so the
caller decides whether to carry on with the returned gauge.
"""
from __future__ import annotations


class WannierGaugeError(Exception):
    """Base class for all errors raised by wannier_gauge."""


class InputInconsistencyError(WannierGaugeError, ValueError):
    """Shape, unitarity or lattice mismatch in the input data."""


class SchemeConstructionError(WannierGaugeError):
    """The finite-difference b-vector scheme could not be built."""


class InsufficientShellsError(SchemeConstructionError):
    """No union of shells within the search radius satisfies completeness."""


class DegenerateWeightsError(SchemeConstructionError):
    """The linear system for the shell weights is singular."""


class NonSeparableSubspaceError(WannierGaugeError, ValueError):
    """A requested subspace split is inconsistent or leaks across blocks."""


class ConvergenceWarning(UserWarning):
    """An iterative stage stopped at its iteration cap."""


class DisentanglementNotConverged(ConvergenceWarning):
    pass


class MaxIterExceeded(ConvergenceWarning):
    pass


class NumericalDivergenceWarning(RuntimeWarning):
    """The spread blew up; the last valid gauge was returned."""
