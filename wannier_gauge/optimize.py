"""
Descent engine shared by the optimal-rotation and max-localization stages.

Both stages minimize a spread over a product of unitary groups. The engine is
written against two callables:

- `evaluate(X) -> (value, generator)` where `generator` is the skew-Hermitian
  gradient in the local frame of `X`;
- `retract(X, D, t) -> X'`, the point reached from `X` along `-D` with step `t`
  (here always `X exp(-t D)`).

State machine
-------------
INITIALIZED -> ITERATING -> {CONVERGED, MAX_ITER_EXCEEDED, DIVERGED}.
Terminal states are final; the caller gets the gauge and a ConvergenceReport.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Callable, List, Optional, Tuple
import warnings

import numpy as np

from .exceptions import MaxIterExceeded, NumericalDivergenceWarning

logger = logging.getLogger(__name__)

# Armijo sufficient-decrease constant
_ARMIJO_C1 = 1e-4


class OptimizationStatus(Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"
    DIVERGED = "diverged"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OptimizationStatus.CONVERGED,
            OptimizationStatus.MAX_ITER_EXCEEDED,
            OptimizationStatus.DIVERGED,
        )


@dataclass
class ConvergenceReport:
    """Outcome of an iterative stage."""
    status: OptimizationStatus = OptimizationStatus.INITIALIZED
    iterations: int = 0
    history: List[float] = field(default_factory=list)
    grad_norm: float = float("nan")
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.status is OptimizationStatus.CONVERGED

    @property
    def final_value(self) -> float:
        return self.history[-1] if self.history else float("nan")

    def __str__(self) -> str:
        text = f"{self.status.value} after {self.iterations} iteration(s), final value {self.final_value:.10g}"
        # stages without a gradient (disentangle) leave grad_norm at nan
        if np.isfinite(self.grad_norm):
            text += f", |grad| {self.grad_norm:.3e}"
        if self.message:
            text += f" ({self.message})"
        return text


def _inner(A: np.ndarray, B: np.ndarray) -> float:
    """Real Frobenius inner product Re tr(A† B) summed over all leading axes."""
    return float(np.real(np.vdot(A, B)))


def minimize_gauge(
    evaluate: Callable[[np.ndarray], Tuple[float, np.ndarray]],
    retract: Callable[[np.ndarray, np.ndarray, float], np.ndarray],
    X0: np.ndarray,
    *,
    max_iterations: int,
    convergence_tolerance: float,
    gradient_tolerance: float,
    step_size: float,
    convergence_window: int = 3,
    conjugate_gradient: bool = True,
    line_search: bool = True,
    max_backtracks: int = 30,
    divergence_factor: float = 10.0,
    stage: str = "minimize",
) -> Tuple[np.ndarray, ConvergenceReport]:
    """
    Polak-Ribière conjugate gradient on the unitary group.

    With `line_search=True` every accepted step satisfies the Armijo condition,
    so the recorded history is non-increasing. In fixed-step mode a value above
    `divergence_factor` times the best value seen stops the run as DIVERGED.

    Returns
    -------
    X : point with the lowest value seen (the last point along a line search)
    report : ConvergenceReport
    """
    report = ConvergenceReport()
    X = X0
    value, g = evaluate(X)
    report.history.append(value)
    report.grad_norm = float(np.sqrt(_inner(g, g)))

    if not np.isfinite(value):
        report.status = OptimizationStatus.DIVERGED
        report.message = "non-finite value at the starting point"
        logger.warning("%s: %s.", stage, report.message)
        warnings.warn(f"{stage}: {report.message}.", NumericalDivergenceWarning, stacklevel=3)
        return X, report

    best_X, best_value = X, value
    report.status = OptimizationStatus.ITERATING
    logger.debug("%s: start value %.12g, |grad| %.3e", stage, value, report.grad_norm)

    g_prev: Optional[np.ndarray] = None
    D_prev: Optional[np.ndarray] = None
    n_small = 0

    for it in range(1, max_iterations + 1):
        if report.grad_norm < gradient_tolerance:
            report.status = OptimizationStatus.CONVERGED
            report.message = "gradient below tolerance"
            break

        D = g
        if conjugate_gradient and g_prev is not None:
            beta = max(0.0, _inner(g, g - g_prev) / _inner(g_prev, g_prev))
            D = g + beta * D_prev
            if _inner(g, D) <= 0.0:
                D = g
        slope = _inner(g, D)

        if line_search:
            t = step_size
            accepted = False
            for _ in range(max_backtracks + 1):
                X_new = retract(X, D, t)
                value_new, g_new = evaluate(X_new)
                if np.isfinite(value_new) and value_new <= value - _ARMIJO_C1 * t * slope:
                    accepted = True
                    break
                t *= 0.5
            if not accepted:
                report.status = OptimizationStatus.CONVERGED
                report.message = "line search cannot decrease the value further"
                break
        else:
            X_new = retract(X, D, step_size)
            value_new, g_new = evaluate(X_new)
            if not np.isfinite(value_new) or value_new > divergence_factor * max(best_value, convergence_tolerance):
                report.status = OptimizationStatus.DIVERGED
                report.message = f"value {value_new:.6g} exceeded {divergence_factor} x best {best_value:.6g}"
                logger.warning("%s: diverged at iteration %d: %s.", stage, it, report.message)
                warnings.warn(f"{stage}: {report.message}; returning last valid gauge.",
                              NumericalDivergenceWarning, stacklevel=3)
                return best_X, report

        delta = abs(value_new - value)
        X, value = X_new, value_new
        g_prev, D_prev, g = g, D, g_new
        report.history.append(value)
        report.iterations = it
        report.grad_norm = float(np.sqrt(_inner(g, g)))
        if value < best_value:
            best_X, best_value = X, value
        logger.debug("%s: iter %4d  value %.12g  dvalue %.3e  |grad| %.3e",
                     stage, it, value, delta, report.grad_norm)

        n_small = n_small + 1 if delta < convergence_tolerance else 0
        if n_small >= convergence_window:
            report.status = OptimizationStatus.CONVERGED
            report.message = f"value change below tolerance for {convergence_window} iterations"
            break
    else:
        report.status = OptimizationStatus.MAX_ITER_EXCEEDED
        report.message = f"stopped at max_iterations={max_iterations}"
        logger.warning("%s: %s, returning best gauge (value %.10g).", stage, report.message, best_value)
        warnings.warn(f"{stage}: {report.message}.", MaxIterExceeded, stacklevel=3)
        return best_X, report

    logger.info("%s: %s", stage, report)
    return best_X, report
