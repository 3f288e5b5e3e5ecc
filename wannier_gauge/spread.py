"""
Marzari-Vanderbilt spread functional and its gauge gradient.

With the rotated overlaps N[k,b] = U_k† M[k,b] U_{k+b} and N_k k-points:

    r_n  = -1/N_k Σ_{k,b} w_b b Im ln N_nn
    Ω_I  =  1/N_k Σ_{k,b} w_b (n_wann - Σ_mn |N_mn|²)
    Ω_OD =  1/N_k Σ_{k,b} w_b Σ_{m≠n} |N_mn|²
    Ω_D  =  1/N_k Σ_{k,b} w_b Σ_n (Im ln N_nn + b·r_n)²
    Ω    =  Ω_I + Ω_OD + Ω_D

(Marzari & Vanderbilt, PRB 56, 12847, Eqs. 31-36.)

The gradient is expressed on the tangent space of rotations inside the
current span: `generator[k]` is the skew-Hermitian A_k with

    dΩ = -t Σ_k ||A_k||²   for   U_k -> U_k exp(-t A_k),

so `-generator` is the steepest-descent direction on the unitary group.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .bvector import BVectors
from .parallel import map_kpoints
from .utils import dagger, imaglog, rotate_M, skew_hermitian


@dataclass
class SpreadResult:
    omega: float
    omega_i: float
    omega_od: float
    omega_d: float
    omega_tilde: float
    centers: np.ndarray                  # (n_wann, 3) Cartesian
    spreads: np.ndarray                  # (n_wann,) ω_n
    gradient: Optional[np.ndarray] = None    # (n_kpts, n_bands, n_wann), U_k A_k
    generator: Optional[np.ndarray] = None   # (n_kpts, n_wann, n_wann), skew-Hermitian

    @property
    def grad_norm(self) -> float:
        if self.generator is None:
            return float("nan")
        return float(np.sqrt(np.sum(np.abs(self.generator) ** 2)))

    def __str__(self) -> str:
        lines = ["  WF      center (x, y, z)                         spread"]
        for n, (c, s) in enumerate(zip(self.centers, self.spreads), 1):
            lines.append(f"  {n:3d}  ({c[0]:12.6f}, {c[1]:12.6f}, {c[2]:12.6f})  {s:12.6f}")
        lines.append(f"  Sum  {' ' * 43}{np.sum(self.spreads):12.6f}")
        lines.append(
            f"  Ω = {self.omega:.8f}  Ω_I = {self.omega_i:.8f}  "
            f"Ω_OD = {self.omega_od:.8f}  Ω_D = {self.omega_d:.8f}  Ω̃ = {self.omega_tilde:.8f}"
        )
        return "\n".join(lines)


def spread_functional(
    M: np.ndarray,
    bvectors: BVectors,
    U: np.ndarray,
    *,
    with_gradient: bool = True,
    n_workers: int = 1,
) -> SpreadResult:
    """
    Evaluate the spread of gauge `U`.

    Parameters
    ----------
    M : (n_kpts, n_bvecs, n_bands, n_bands) overlaps
    bvectors : neighbour scheme matching the b axis of `M`
    U : (n_kpts, n_bands, n_wann) semi-unitary gauge
    with_gradient : also compute the gradient/generator
    n_workers : pool size for the per-k gradient assembly

    Returns
    -------
    SpreadResult
    """
    M = np.asarray(M, complex)
    U = np.asarray(U, complex)
    n_kpts, _, n_wann = U.shape
    w = bvectors.weights
    bv = bvectors.vectors
    kpb_k = bvectors.kpb_k

    N = rotate_M(M, kpb_k, U)
    Nd = np.diagonal(N, axis1=-2, axis2=-1)            # (n_kpts, n_bvecs, n_wann)
    phase = imaglog(Nd)
    abs2 = np.abs(N) ** 2
    diag_abs2 = np.abs(Nd) ** 2

    centers = -np.einsum("b,bi,kbn->ni", w, bv, phase) / n_kpts
    sum_abs2 = abs2.sum(axis=(-2, -1))
    sum_diag = diag_abs2.sum(axis=-1)
    omega_i = float(np.einsum("b,kb->", w, n_wann - sum_abs2) / n_kpts)
    omega_od = float(np.einsum("b,kb->", w, sum_abs2 - sum_diag) / n_kpts)

    q = phase + np.einsum("bi,ni->bn", bv, centers)[None, :, :]
    omega_d = float(np.einsum("b,kbn->", w, q ** 2) / n_kpts)

    r2 = np.sum(centers ** 2, axis=1)
    spreads = np.einsum("b,kbn->n", w, 1.0 - diag_abs2 + phase ** 2) / n_kpts - r2

    result = SpreadResult(
        omega=omega_i + omega_od + omega_d,
        omega_i=omega_i,
        omega_od=omega_od,
        omega_d=omega_d,
        omega_tilde=omega_od + omega_d,
        centers=centers,
        spreads=spreads,
    )
    if not with_gradient:
        return result

    # Euclidean gradient; the factor 4 collects the k+b <-> k partner term
    coef = -np.conj(Nd) - 1j * q / Nd

    def _euclidean(ks: np.ndarray) -> np.ndarray:
        MV = M[ks] @ U[kpb_k[ks]]
        return 4.0 / n_kpts * np.einsum("b,kbmn,kbn->kmn", w, MV, coef[ks])

    G = map_kpoints(_euclidean, n_kpts, n_workers)
    A = skew_hermitian(dagger(U) @ G)
    result.generator = A
    result.gradient = U @ A
    return result


def spread_gradient(M: np.ndarray, bvectors: BVectors, U: np.ndarray, n_workers: int = 1) -> np.ndarray:
    """Gradient U_k A_k only, shape of `U`."""
    return spread_functional(M, bvectors, U, n_workers=n_workers).gradient


def omega(model, U: Optional[np.ndarray] = None) -> SpreadResult:
    """Spread of `model` in its own gauge, or in gauge `U` when given."""
    U = model.U if U is None else U
    return spread_functional(model.M, model.bvectors, U)


def center(model, U: Optional[np.ndarray] = None) -> np.ndarray:
    """Wannier centers (n_wann, 3) in Cartesian coordinates."""
    U = model.U if U is None else U
    return spread_functional(model.M, model.bvectors, U, with_gradient=False).centers
