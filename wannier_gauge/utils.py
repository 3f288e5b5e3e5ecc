"""
Small linear-algebra utilities used across the package.

All batched helpers act on the last two axes, so a gauge `U` of shape
(n_kpts, n_bands, n_wann) or a stack of overlaps (n_kpts, n_bvecs, n, n) can
be passed directly.
"""
from __future__ import annotations

import numpy as np


def dagger(A: np.ndarray) -> np.ndarray:
    """Conjugate transpose of the last two axes."""
    return np.conj(np.swapaxes(A, -1, -2))


def hermitian_part(X: np.ndarray) -> np.ndarray:
    return 0.5 * (X + dagger(X))


def skew_hermitian(X: np.ndarray) -> np.ndarray:
    """Anti-Hermitian part (X - X†)/2."""
    return 0.5 * (X - dagger(X))


def imaglog(z: np.ndarray) -> np.ndarray:
    """Im ln z on the principal branch, i.e. arg z in (-π, π]."""
    return np.angle(z)


def polar_unitary(S: np.ndarray) -> np.ndarray:
    """
    Unitary factor W of the polar decomposition S = W H (batched).

    For a rectangular (m, n) input with m >= n, W is the semi-unitary matrix
    closest to S in Frobenius norm, i.e. the batched Löwdin orthonormalization.
    """
    P, _, Qh = np.linalg.svd(S, full_matrices=False)
    return P @ Qh


def orthonormalize_projections(A: np.ndarray) -> np.ndarray:
    """
    Turn projections A[k] = <psi_{m,k}|g_{n,k}> into a semi-unitary gauge.

    Parameters
    ----------
    A : (n_kpts, n_bands, n_wann)

    Returns
    -------
    U : (n_kpts, n_bands, n_wann) with U[k]† U[k] = I
    """
    A = np.asarray(A, complex)
    if A.ndim != 3 or A.shape[1] < A.shape[2]:
        raise ValueError("A must have shape (n_kpts, n_bands, n_wann) with n_bands >= n_wann.")
    return polar_unitary(A)


def unitary_exp(A: np.ndarray, t: float = 1.0) -> np.ndarray:
    """
    exp(t A) for skew-Hermitian A (batched).

    iA is Hermitian, so the exponential is built from its eigendecomposition
    and stays unitary to machine precision.
    """
    lam, V = np.linalg.eigh(1j * A)
    phase = np.exp(-1j * t * lam)
    return (V * phase[..., None, :]) @ dagger(V)


def unitary_power(W: np.ndarray, t: np.ndarray | float) -> np.ndarray:
    """
    W**t for a unitary W on the principal branch of the eigenphases.

    `t` may be an array; the result then has shape t.shape + W.shape.
    """
    lam, V = np.linalg.eig(W)
    phi = np.angle(lam)
    t = np.asarray(t, float)
    phase = np.exp(1j * t[..., None] * phi)
    Vinv = np.linalg.inv(V)
    return (V * phase[..., None, :]) @ Vinv


def unitarity_error(U: np.ndarray) -> float:
    """max_k || U[k]† U[k] - I ||_max."""
    n = U.shape[-1]
    UHU = dagger(U) @ U
    return float(np.max(np.abs(UHU - np.eye(n)))) if UHU.size else 0.0


def is_unitary(U: np.ndarray, atol: float = 1e-8) -> bool:
    return unitarity_error(U) <= atol


def identity_gauge(n_kpts: int, n_bands: int, n_wann: int | None = None, dtype=complex) -> np.ndarray:
    """Identity (or truncated identity) gauge of shape (n_kpts, n_bands, n_wann)."""
    n_wann = n_bands if n_wann is None else n_wann
    eye = np.eye(n_bands, n_wann, dtype=dtype)
    return np.repeat(eye[None, :, :], n_kpts, axis=0)


def rotate_M(M: np.ndarray, kpb_k: np.ndarray, U: np.ndarray) -> np.ndarray:
    """
    Overlaps in the rotated basis: N[k,b] = U[k]† M[k,b] U[kpb_k[k,b]].

    Parameters
    ----------
    M : (n_kpts, n_bvecs, n_bands, n_bands)
    kpb_k : (n_kpts, n_bvecs) neighbour indices
    U : (n_kpts, n_bands, n_wann)

    Returns
    -------
    N : (n_kpts, n_bvecs, n_wann, n_wann)
    """
    U_kpb = U[kpb_k]
    return dagger(U)[:, None, :, :] @ M @ U_kpb


def rotate_gauge(U: np.ndarray, W: np.ndarray) -> np.ndarray:
    """U[k] @ W (k-independent W) or U[k] @ W[k] (per-k W)."""
    return np.asarray(U) @ np.asarray(W)

