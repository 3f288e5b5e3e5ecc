"""
Finite-difference b-vector scheme on a Monkhorst-Pack mesh.

The b-vectors connect each k-point to a set of neighbouring mesh points. Their
weights solve the completeness ("B1") condition

    Σ_b w_b b ⊗ b = I₃

which makes the finite-difference estimate of the Berry connection exact to
leading order (Marzari & Vanderbilt, PRB 56, 12847; Wannier90 review,
CPC 178, 685).

Shell search
------------
Candidate vectors are b = B (g / kgrid) for integer g in a cube [-r, r]³,
sorted by length and grouped into shells. Vectors parallel to one of an already
kept shell are dropped, and shells are added one at a time until the weight system
is satisfied. Inside a shell the vectors are ordered lexicographically in g,
so the scheme (and everything downstream) is deterministic.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional, Tuple

import numpy as np

from .config import BVectorParameters
from .exceptions import DegenerateWeightsError, InputInconsistencyError, InsufficientShellsError
from .lattice import get_kgrid, mesh_coordinates

logger = logging.getLogger(__name__)

# completeness target in Voigt-like order (xx, yy, zz, xy, yz, zx)
_B1_TARGET = np.array([1, 1, 1, 0, 0, 0], dtype=float)


@dataclass(frozen=True)
class BVectors:
    """
    Neighbour scheme of a k-mesh.

    vectors : (n_bvecs, 3) Cartesian b-vectors
    weights : (n_bvecs,) finite-difference weights
    kpb_k : (n_kpts, n_bvecs) index of the mesh point k + b (wrapped)
    kpb_G : (n_kpts, n_bvecs, 3) integer reciprocal vector G with
            k + b = k_points[kpb_k] + G (fractional coordinates)
    """
    vectors: np.ndarray
    weights: np.ndarray
    kpb_k: np.ndarray
    kpb_G: np.ndarray

    def __post_init__(self) -> None:
        vectors = np.asarray(self.vectors, float).reshape(-1, 3)
        weights = np.asarray(self.weights, float).ravel()
        kpb_k = np.asarray(self.kpb_k, int)
        kpb_G = np.asarray(self.kpb_G, int)
        object.__setattr__(self, "vectors", vectors)
        object.__setattr__(self, "weights", weights)
        object.__setattr__(self, "kpb_k", kpb_k)
        object.__setattr__(self, "kpb_G", kpb_G)

        n_bvecs = vectors.shape[0]
        if weights.shape != (n_bvecs,):
            raise InputInconsistencyError("weights must have one entry per b-vector.")
        if kpb_k.ndim != 2 or kpb_k.shape[1] != n_bvecs:
            raise InputInconsistencyError("kpb_k must have shape (n_kpts, n_bvecs).")
        if kpb_G.shape != kpb_k.shape + (3,):
            raise InputInconsistencyError("kpb_G must have shape (n_kpts, n_bvecs, 3).")
        n_kpts = kpb_k.shape[0]
        expected = np.arange(n_kpts)
        for ib in range(n_bvecs):
            if not np.array_equal(np.sort(kpb_k[:, ib]), expected):
                raise InputInconsistencyError(
                    f"kpb_k[:, {ib}] is not a permutation of the k-points."
                )

    @property
    def n_bvecs(self) -> int:
        return self.vectors.shape[0]

    @property
    def n_kpts(self) -> int:
        return self.kpb_k.shape[0]

    def completeness(self) -> np.ndarray:
        """Σ_b w_b b ⊗ b, equal to the 3x3 identity for a valid scheme."""
        return np.einsum("b,bi,bj->ij", self.weights, self.vectors, self.vectors)

    def index_of(self, b_cart: np.ndarray, atol: float = 1e-6) -> int:
        """Index of the b-vector equal to `b_cart`; KeyError when absent."""
        diff = np.linalg.norm(self.vectors - np.asarray(b_cart, float)[None, :], axis=1)
        hits = np.flatnonzero(diff < atol)
        if hits.size == 0:
            raise KeyError(f"b-vector {b_cart} is not part of the scheme.")
        return int(hits[0])


def _search_range(recip_steps: np.ndarray) -> int:
    # grow the range with the anisotropy of the mesh spacing (as ASE does)
    lengths = np.linalg.norm(recip_steps, axis=0)
    return max(2, int(np.ceil(lengths.max() / lengths.min())) + 1)


def search_shells(
    kgrid: Tuple[int, int, int],
    reciprocal_lattice: np.ndarray,
    kmesh_tol: float = 1e-6,
    max_shells: int = 36,
    search_range: Optional[int] = None,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Enumerate shells of candidate b-vectors by increasing length.

    Returns
    -------
    shells : list of (g, b) with g (n_s, 3) integer mesh offsets and
             b (n_s, 3) Cartesian vectors of equal length.
    """
    steps = np.asarray(reciprocal_lattice, float) / np.asarray(kgrid, float)[None, :]
    r = _search_range(steps) if search_range is None else int(search_range)

    g_range = np.arange(-r, r + 1, dtype=int)
    gi, gj, gl = np.meshgrid(g_range, g_range, g_range, indexing="ij")
    comb = np.stack([gi.ravel(), gj.ravel(), gl.ravel()], axis=1)
    comb = comb[np.any(comb != 0, axis=1)]

    b_cart = comb @ steps.T
    b_dist = np.linalg.norm(b_cart, axis=1)
    order = np.argsort(b_dist, kind="stable")
    comb, b_cart, b_dist = comb[order], b_cart[order], b_dist[order]

    # only shells entirely inside the search box are complete
    volume = abs(np.linalg.det(steps))
    face_dist = [
        r * volume / np.linalg.norm(np.cross(steps[:, (i + 1) % 3], steps[:, (i + 2) % 3]))
        for i in range(3)
    ]
    inscribed = min(face_dist)

    shells = []
    start = 0
    n = len(b_dist)
    while start < n and len(shells) < max_shells:
        stop = start + 1
        while stop < n and abs(b_dist[stop] - b_dist[start]) < kmesh_tol:
            stop += 1
        if b_dist[start] > inscribed + kmesh_tol:
            break
        shells.append((comb[start:stop], b_cart[start:stop]))
        start = stop
    return shells


def _parallel_mask(vectors: np.ndarray, previous: List[np.ndarray], atol: float) -> np.ndarray:
    """True for each vector pointing along a vector of an earlier shell."""
    mask = np.zeros(len(vectors), dtype=bool)
    for prev in previous:
        dots = vectors @ prev.T
        norms = np.linalg.norm(vectors, axis=1)[:, None] * np.linalg.norm(prev, axis=1)[None, :]
        # same direction only; the anti-parallel vector is the -b partner
        mask |= np.any(np.abs(dots - norms) < atol * np.maximum(norms, 1.0), axis=1)
    return mask


def bvector_weights(shells: List[np.ndarray], atol: float = 1e-6) -> Tuple[np.ndarray, float]:
    """
    Solve the completeness equations for one weight per shell.

    Parameters
    ----------
    shells : list of (n_s, 3) Cartesian b-vectors, one array per shell

    Returns
    -------
    weights : (n_shells,) weight of each shell
    residual : max |A w - q| of the 6-component completeness system

    Raises
    ------
    DegenerateWeightsError
        If the system is singular (the shells do not determine unique weights).
    """
    A = np.zeros((6, len(shells)), dtype=float)
    for s, b in enumerate(shells):
        b = np.asarray(b, float)
        A[0:3, s] = np.sum(b * b, axis=0)
        A[3:6, s] = np.sum(b * b[:, [1, 2, 0]], axis=0)
    U, sv, Vt = np.linalg.svd(A, full_matrices=False)
    if sv.size == 0 or np.any(sv < atol * max(sv.max(), 1.0)):
        raise DegenerateWeightsError(
            f"Singular b-vector weight system (singular values {sv})."
        )
    weights = Vt.T @ ((U.T @ _B1_TARGET) / sv)
    residual = float(np.max(np.abs(A @ weights - _B1_TARGET)))
    return weights, residual


def neighbors(
    k_points: np.ndarray,
    kgrid: Tuple[int, int, int],
    g_offsets: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    k + b lookup for every k-point and integer mesh offset.

    Returns
    -------
    kpb_k : (n_kpts, n_bvecs)
    kpb_G : (n_kpts, n_bvecs, 3), k + b = k_points[kpb_k] + kpb_G
    """
    k_points = np.asarray(k_points, float)
    kgrid_arr = np.asarray(kgrid, int)
    coords = mesh_coordinates(k_points, kgrid)
    lookup = -np.ones(tuple(kgrid_arr), dtype=int)
    lookup[coords[:, 0], coords[:, 1], coords[:, 2]] = np.arange(len(k_points))
    if np.any(lookup < 0):
        raise InputInconsistencyError("k_points do not cover the full mesh.")

    target = np.mod(coords[:, None, :] + g_offsets[None, :, :], kgrid_arr)
    kpb_k = lookup[target[..., 0], target[..., 1], target[..., 2]]

    kpb_frac = k_points[:, None, :] + g_offsets[None, :, :] / kgrid_arr
    G = kpb_frac - k_points[kpb_k]
    kpb_G = np.rint(G).astype(int)
    if not np.allclose(G, kpb_G, atol=1e-5):
        raise InputInconsistencyError("Could not map k + b back onto the mesh.")
    return kpb_k, kpb_G


def build_bvectors(
    k_points: np.ndarray,
    reciprocal_lattice: np.ndarray,
    kmesh_tol: Optional[float] = None,
    params: Optional[BVectorParameters] = None,
) -> BVectors:
    """
    Build the b-vector scheme satisfying the B1 completeness condition.

    Parameters
    ----------
    k_points : (n_kpts, 3) fractional coordinates of a full Monkhorst-Pack mesh
    reciprocal_lattice : 3x3, reciprocal vectors as columns
    kmesh_tol : overrides `params.kmesh_tol` when given

    Raises
    ------
    InsufficientShellsError
        No union of shells in the search radius satisfies completeness.
    InputInconsistencyError
        k_points are not a full mesh.
    """
    params = BVectorParameters() if params is None else params
    tol = params.kmesh_tol if kmesh_tol is None else float(kmesh_tol)
    reciprocal_lattice = np.asarray(reciprocal_lattice, float)
    if reciprocal_lattice.shape != (3, 3):
        raise InputInconsistencyError("reciprocal_lattice must be 3x3.")

    kgrid = get_kgrid(k_points, atol=tol)
    shells = search_shells(kgrid, reciprocal_lattice, tol, params.max_shells, params.search_range)

    kept_g: List[np.ndarray] = []
    kept_b: List[np.ndarray] = []
    weights = None
    for g, b in shells:
        parallel = _parallel_mask(b, kept_b, tol)
        if parallel.all():
            logger.debug("Skipping shell |b|=%.6f: parallel to a previous shell.", np.linalg.norm(b[0]))
            continue
        g, b = g[~parallel], b[~parallel]
        try:
            w, residual = bvector_weights(kept_b + [b], atol=tol)
        except DegenerateWeightsError:
            logger.debug("Skipping shell |b|=%.6f: singular weight system.", np.linalg.norm(b[0]))
            continue
        kept_g.append(g)
        kept_b.append(b)
        if residual < tol:
            weights = w
            break

    if weights is None:
        raise InsufficientShellsError(
            f"B1 condition not satisfied with {len(shells)} candidate shells "
            f"(kgrid={kgrid}); increase max_shells or search_range."
        )

    n_per_shell = [len(b) for b in kept_b]
    logger.info("B1 condition satisfied with %d shell(s), %d b-vectors.", len(kept_b), sum(n_per_shell))
    logger.debug("Shell weights: %s", weights)

    g_all = np.concatenate(kept_g, axis=0)
    b_all = np.concatenate(kept_b, axis=0)
    w_all = np.repeat(weights, n_per_shell)
    kpb_k, kpb_G = neighbors(k_points, kgrid, g_all)
    return BVectors(vectors=b_all, weights=w_all, kpb_k=kpb_k, kpb_G=kpb_G)
