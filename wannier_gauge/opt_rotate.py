"""
Optimal global rotation: the single W in U(n_wann) minimizing Ω(U_k W).

Used after parallel transport, where the gauge is already smooth and only a
k-independent rotation is left to fix. The generator at W is the sum over k
of the per-k spread generators at U_k W.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import numpy as np

from .config import OptRotateParameters
from .model import Model
from .optimize import ConvergenceReport, minimize_gauge
from .spread import spread_functional
from .utils import unitary_exp

logger = logging.getLogger(__name__)


def opt_rotate(
    model: Model,
    params: Optional[OptRotateParameters] = None,
    return_report: bool = False,
) -> Union[np.ndarray, Tuple[np.ndarray, ConvergenceReport]]:
    """
    Find the global rotation W (n_wann x n_wann, unitary).

    Apply it with `rotate_gauge(model.U, W)`.
    """
    params = OptRotateParameters() if params is None else params
    model.validate()
    M, bvectors, U = model.M, model.bvectors, model.U

    def evaluate(W: np.ndarray):
        res = spread_functional(M, bvectors, U @ W)
        return res.omega, np.sum(res.generator, axis=0)

    def retract(W: np.ndarray, D: np.ndarray, t: float) -> np.ndarray:
        return W @ unitary_exp(D, -t)

    W, report = minimize_gauge(
        evaluate,
        retract,
        np.eye(model.n_wann, dtype=complex),
        max_iterations=params.max_iterations,
        convergence_tolerance=params.convergence_tolerance,
        gradient_tolerance=params.gradient_tolerance,
        step_size=params.step_size,
        convergence_window=params.convergence_window,
        max_backtracks=params.max_backtracks,
        stage="opt_rotate",
    )
    logger.info("opt_rotate: spread %.10g -> %.10g", report.history[0], report.final_value)
    if return_report:
        return W, report
    return W
