"""
Souza-Marzari-Vanderbilt disentanglement.

Selects, at every k, the n_wann-dimensional subspace of the n_bands Bloch
states that minimizes the gauge-invariant spread Ω_I (PRB 65, 035109).

Iteration
---------
For the current subspaces with projectors P_k:

    Z_k = Σ_b w_b M[k,b] P_{k+b} M[k,b]†          (n_bands x n_bands)
    Z_k <- α Z_k + (1 - α) Z_k^prev                 (linear mixing)

Restricted to the free (non-frozen) bands, the eigenvectors of Z_k with the
largest eigenvalues span the new subspace; frozen bands are always included.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple
import warnings

import numpy as np

from .config import DisentangleParameters
from .exceptions import DisentanglementNotConverged, InputInconsistencyError
from .model import Model
from .optimize import ConvergenceReport, OptimizationStatus
from .parallel import map_kpoints
from .spread import spread_functional
from .utils import dagger, polar_unitary

logger = logging.getLogger(__name__)


def _top_eigvecs(Z: np.ndarray, n_keep: int) -> np.ndarray:
    """Eigenvectors of Hermitian Z for the n_keep largest eigenvalues."""
    evals, evecs = np.linalg.eigh(Z)
    # descending, ties broken by eigenvector index
    order = np.argsort(-evals, kind="stable")
    return evecs[:, order[:n_keep]]


def _subspace(Z: np.ndarray, frozen: np.ndarray, n_wann: int) -> np.ndarray:
    """
    Orthonormal (n_bands, n_wann) basis: frozen unit vectors first, then the
    leading eigenvectors of Z restricted to the free bands.
    """
    n_bands = Z.shape[0]
    frozen_idx = np.flatnonzero(frozen)
    free_idx = np.flatnonzero(~frozen)
    n_free = n_wann - frozen_idx.size

    V = np.zeros((n_bands, n_wann), dtype=complex)
    V[frozen_idx, np.arange(frozen_idx.size)] = 1.0
    if n_free > 0:
        X = _top_eigvecs(Z[np.ix_(free_idx, free_idx)], n_free)
        V[free_idx, frozen_idx.size:] = X
    return V


def _validate_frozen(model: Model, frozen: np.ndarray) -> np.ndarray:
    frozen = np.asarray(frozen, dtype=bool)
    if frozen.shape != (model.n_kpts, model.n_bands):
        raise InputInconsistencyError(
            f"frozen_bands shape {frozen.shape}, expected {(model.n_kpts, model.n_bands)}."
        )
    counts = frozen.sum(axis=1)
    if np.any(counts > model.n_wann):
        k = int(np.argmax(counts))
        raise InputInconsistencyError(
            f"{counts[k]} frozen bands at k-point {k} exceed n_wann={model.n_wann}."
        )
    return frozen


def disentangle(
    model: Model,
    params: Optional[DisentangleParameters] = None,
    *,
    frozen_bands: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, ConvergenceReport]:
    """
    Run SMV disentanglement starting from the projection gauge `model.U`.

    Parameters
    ----------
    model : Model, `model.U` is the initial projection
    params : DisentangleParameters
    frozen_bands : (n_kpts, n_bands) bool, overrides `model.frozen_bands`

    Returns
    -------
    U : (n_kpts, n_bands, n_wann) gauge spanning the optimal subspace,
        aligned with the initial projection
    report : ConvergenceReport, `history` holds Ω_I per iteration
    """
    params = DisentangleParameters() if params is None else params
    model.validate()
    frozen = _validate_frozen(model, model.frozen_bands if frozen_bands is None else frozen_bands)
    M, bvectors = model.M, model.bvectors
    kpb_k, weights = bvectors.kpb_k, bvectors.weights
    n_kpts, n_bands, n_wann = model.n_kpts, model.n_bands, model.n_wann
    n_workers = params.n_workers
    U0 = model.U

    report = ConvergenceReport()
    if n_wann == n_bands and not frozen.any():
        report.status = OptimizationStatus.CONVERGED
        report.history.append(spread_functional(M, bvectors, U0, with_gradient=False).omega_i)
        report.message = "n_wann == n_bands, nothing to disentangle"
        logger.info("disentangle: %s", report.message)
        return U0.copy(), report

    def omega_i(V: np.ndarray) -> float:
        return spread_functional(M, bvectors, V, with_gradient=False).omega_i

    # initial subspace: projection restricted to the free bands
    P0 = U0 @ dagger(U0)
    V = map_kpoints(
        lambda ks: np.stack([_subspace(P0[k], frozen[k], n_wann) for k in ks]),
        n_kpts, n_workers,
    )

    omega_prev = omega_i(V)
    report.history.append(omega_prev)
    report.status = OptimizationStatus.ITERATING
    best_V, best_omega = V, omega_prev
    logger.info("disentangle: initial Ω_I = %.12g", omega_prev)

    alpha = params.mix_ratio
    Z_prev = None
    n_small = 0
    for it in range(1, params.max_iterations + 1):
        P = V @ dagger(V)

        def _z(ks: np.ndarray) -> np.ndarray:
            MPM = M[ks] @ P[kpb_k[ks]] @ dagger(M[ks])
            return np.einsum("b,kbmn->kmn", weights, MPM)

        Z = map_kpoints(_z, n_kpts, n_workers)
        if Z_prev is not None:
            Z = alpha * Z + (1.0 - alpha) * Z_prev
        Z_prev = Z

        V = map_kpoints(
            lambda ks: np.stack([_subspace(Z[k], frozen[k], n_wann) for k in ks]),
            n_kpts, n_workers,
        )
        omega_new = omega_i(V)
        report.history.append(omega_new)
        report.iterations = it
        # relative change, absolute once Ω_I drops below 1
        rel = abs(omega_new - omega_prev) / max(abs(omega_new), 1.0)
        logger.debug("disentangle: iter %4d  Ω_I %.12g  rel. change %.3e", it, omega_new, rel)
        if omega_new < best_omega:
            best_V, best_omega = V, omega_new
        omega_prev = omega_new

        n_small = n_small + 1 if rel < params.convergence_tolerance else 0
        if n_small >= params.convergence_window:
            report.status = OptimizationStatus.CONVERGED
            report.message = f"Ω_I converged for {params.convergence_window} iterations"
            break
    else:
        report.status = OptimizationStatus.MAX_ITER_EXCEEDED
        report.message = f"stopped at max_iterations={params.max_iterations}"
        logger.warning("disentangle: %s, best Ω_I = %.12g", report.message, best_omega)
        warnings.warn(f"disentangle: {report.message}.", DisentanglementNotConverged, stacklevel=2)

    # rotate inside the optimal subspace to stay close to the projection
    U = best_V @ polar_unitary(dagger(best_V) @ U0)
    logger.info("disentangle: %s, Ω_I = %.12g", report.status.value, omega_i(U))
    return U, report
