"""
Orbital tight-binding models as a source of Wannierization input.

This is the collaborator used by the examples and tests: it diagonalizes a
Bloch Hamiltonian on a Monkhorst-Pack mesh and builds the overlaps M, the
projections A and the starting gauge U of a `Model`.

Conventions
-----------
- Hoppings are a dict {R: t_R} with integer lattice vectors R (3-tuples) and
  (n_orb, n_orb) matrices; H(k) = Σ_R t_R exp(2πi k·(R + τ_j - τ_i)) with
  fractional k and orbital positions τ.
- With that phase convention H(k + G) = D_G† H(k) D_G, D_G = diag(exp(2πi G·τ)),
  so the eigenvectors at k + b = k_{kpb} + G are D_G† ψ_{kpb}.
"""
from __future__ import annotations

from typing import Dict, Literal, Optional, Tuple

import numpy as np
import scipy.linalg as sla

from .bvector import BVectors, build_bvectors
from .config import BVectorParameters
from .exceptions import InputInconsistencyError
from .lattice import get_reciprocal_lattice
from .model import Model
from .utils import orthonormalize_projections

Hoppings = Dict[Tuple[int, int, int], np.ndarray]


def monkhorst_pack(k_grid: Tuple[int, int, int]) -> np.ndarray:
    """Unshifted mesh i/n along each axis, lexicographic (x slowest), (Nk, 3)."""
    axes = [np.arange(n) / n for n in k_grid]
    kx, ky, kz = np.meshgrid(*axes, indexing="ij")
    return np.stack([kx.ravel(), ky.ravel(), kz.ravel()], axis=1)


def bloch_hamiltonian(
    hoppings: Hoppings,
    k: np.ndarray,
    positions: Optional[np.ndarray] = None,
) -> np.ndarray:
    """H(k) for fractional k, (n_orb, n_orb)."""
    k = np.asarray(k, float)
    H = None
    for R, t in hoppings.items():
        t = np.asarray(t, complex)
        term = t * np.exp(2j * np.pi * np.dot(k, np.asarray(R, float)))
        H = term if H is None else H + term
    if positions is not None:
        tau = np.asarray(positions, float)
        phase = np.exp(2j * np.pi * (tau @ k))
        H = np.conj(phase)[:, None] * H * phase[None, :]
    if not np.allclose(H, H.conj().T, atol=1e-10):
        raise InputInconsistencyError("Hoppings do not give a Hermitian H(k); include t_{-R} = t_R^†.")
    return H


def reorder_eigensystem(
    evals: np.ndarray,
    evecs: np.ndarray,
    order: Literal["energy", "abs"] = "energy",
) -> tuple[np.ndarray, np.ndarray]:
    """
    Reorder eigenpairs consistently.

    Parameters
    ----------
    evals : (..., nb)
    evecs : (..., dim, nb)
    order : "energy" | "abs"
    """
    if order == "energy":
        idx = np.argsort(evals, axis=-1)
    elif order == "abs":
        idx = np.argsort(np.abs(evals), axis=-1)
    else:
        raise ValueError(f"Unknown order '{order}'")
    evals_new = np.take_along_axis(evals, idx, axis=-1)
    evecs_new = np.take_along_axis(evecs, idx[..., None, :], axis=-1)
    return evals_new, evecs_new


def select_bands(
    evals: np.ndarray,
    evecs: np.ndarray,
    n: int,
    center: Optional[float] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Keep `n` bands per k, sorted by energy.

    Without `center` the lowest `n` bands are kept; otherwise the `n` bands
    closest to the energy `center`.

    Returns
    -------
    evals_sel : (Nk, n)
    evecs_sel : (Nk, dim, n)
    """
    nb = evals.shape[-1]
    if n > nb:
        raise ValueError(f"Requested n={n} bands, but only nb={nb} available.")
    if center is None:
        evals, evecs = reorder_eigensystem(evals, evecs, order="energy")
        return evals[..., :n], evecs[..., :n]
    evals_c, evecs_c = reorder_eigensystem(evals - center, evecs, order="abs")
    return reorder_eigensystem(evals_c[..., :n] + center, evecs_c[..., :n], order="energy")


def solve_kpoints(
    hoppings: Hoppings,
    k_points: np.ndarray,
    positions: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Dense diagonalization on every k-point.

    Returns
    -------
    evals : (Nk, n_orb) ascending
    evecs : (Nk, n_orb, n_orb), columns are eigenvectors
    """
    evals_all, evecs_all = [], []
    for k in np.asarray(k_points, float):
        ev, V = sla.eigh(bloch_hamiltonian(hoppings, k, positions))
        evals_all.append(ev)
        evecs_all.append(V)
    return np.stack(evals_all, axis=0), np.stack(evecs_all, axis=0)


def build_amn(evecs: np.ndarray, trials: np.ndarray) -> np.ndarray:
    """
    A[k, m, n] = <psi_{m k}|g_{n}>.

    `trials` is (n_orb, n_wann) in the orbital basis, or (Nk, n_orb, n_wann).
    """
    trials = np.asarray(trials, complex)
    if trials.ndim == 2:
        trials = np.broadcast_to(trials, (evecs.shape[0],) + trials.shape)
    return np.conj(np.swapaxes(evecs, -1, -2)) @ trials


def build_mmn(
    evecs: np.ndarray,
    bvectors: BVectors,
    positions: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    M[k, b] = <u_{m,k}|u_{n,k+b}> from orbital-basis eigenvectors.

    Returns
    -------
    M : (Nk, n_bvecs, nb, nb)
    """
    n_kpts, n_orb, nb = evecs.shape
    tau = np.zeros((n_orb, 3)) if positions is None else np.asarray(positions, float)
    evecs_H = np.conj(np.swapaxes(evecs, -1, -2))
    M = np.empty((n_kpts, bvectors.n_bvecs, nb, nb), dtype=complex)
    for ib in range(bvectors.n_bvecs):
        G = bvectors.kpb_G[:, ib, :]                         # (Nk, 3)
        D_conj = np.exp(-2j * np.pi * (G @ tau.T))           # (Nk, n_orb)
        V2 = D_conj[:, :, None] * evecs[bvectors.kpb_k[:, ib]]
        M[:, ib] = evecs_H @ V2
    return M


def cubic_dimer_hoppings(
    t_intra: float = -1.0,
    t_inter: float = -0.4,
    t_perp: float = -0.2,
    onsite: float = 0.0,
) -> Hoppings:
    """
    Two orbitals per simple-cubic cell, dimerized along x, with equal
    nearest-neighbour hopping along y and z. Gapped whenever |t_intra| != |t_inter|.
    """
    hop: Hoppings = {}
    hop[(0, 0, 0)] = np.array([[onsite, t_intra], [t_intra, onsite]], dtype=complex)
    fwd = np.array([[0.0, 0.0], [t_inter, 0.0]], dtype=complex)
    hop[(1, 0, 0)] = fwd
    hop[(-1, 0, 0)] = fwd.conj().T
    for R in [(0, 1, 0), (0, -1, 0), (0, 0, 1), (0, 0, -1)]:
        hop[R] = t_perp * np.eye(2, dtype=complex)
    return hop


def tight_binding_model(
    lattice: np.ndarray,
    hoppings: Hoppings,
    k_grid: Tuple[int, int, int],
    trials: np.ndarray,
    *,
    positions: Optional[np.ndarray] = None,
    n_bands: Optional[int] = None,
    band_center: Optional[float] = None,
    frozen_max: Optional[float] = None,
    bvector_params: Optional[BVectorParameters] = None,
    verbose: bool = False,
) -> Model:
    """
    Build a `Model` from a tight-binding Hamiltonian.

    Parameters
    ----------
    lattice : (3,3), columns are lattice vectors
    hoppings : {R: t_R}
    k_grid : Monkhorst-Pack dimensions
    trials : (n_orb, n_wann) trial orbitals in the orbital basis
    positions : (n_orb, 3) fractional orbital positions (default all at 0)
    n_bands : number of Bloch bands kept (default all)
    band_center : keep the n_bands closest to this energy instead of the lowest
    frozen_max : bands with E <= frozen_max are frozen
    verbose : print a short summary

    Returns
    -------
    Model with U the Löwdin-orthonormalized projections.
    """
    k_points = monkhorst_pack(k_grid)
    bvectors = build_bvectors(k_points, get_reciprocal_lattice(lattice), params=bvector_params)
    evals, evecs = solve_kpoints(hoppings, k_points, positions)
    if n_bands is not None:
        evals, evecs = select_bands(evals, evecs, n_bands, center=band_center)

    M = build_mmn(evecs, bvectors, positions)
    A = build_amn(evecs, trials)
    U = orthonormalize_projections(A)
    frozen = np.zeros(evals.shape, dtype=bool) if frozen_max is None else evals <= frozen_max

    model = Model.build(
        lattice, k_points, M, U, evals,
        frozen_bands=frozen,
        bvectors=bvectors,
        atom_positions=positions,
    )
    if verbose:
        print(model)
        print(f"  energy range [{evals.min():.4f}, {evals.max():.4f}]")
    return model
