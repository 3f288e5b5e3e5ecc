"""
The optimization state threaded through every pipeline stage.

A `Model` is built once from collaborator data (overlaps, projections,
eigenvalues, lattice, k-mesh) and then handed from stage to stage. Stages
return new gauges; the caller assigns them back (`model.U = U`), so only one
stage owns the model at a time.

Array layout (k-leading, so numpy batches over k):
  M            : (n_kpts, n_bvecs, n_bands, n_bands)
  U            : (n_kpts, n_bands, n_wann)
  E            : (n_kpts, n_bands)
  frozen_bands : (n_kpts, n_bands) bool
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import List, Optional, Tuple

import numpy as np

from .bvector import BVectors, build_bvectors
from .config import BVectorParameters
from .exceptions import InputInconsistencyError
from .lattice import get_kgrid, get_reciprocal_lattice
from .utils import identity_gauge, rotate_M, unitarity_error

logger = logging.getLogger(__name__)


@dataclass
class Model:
    lattice: np.ndarray                 # (3,3) columns are lattice vectors
    k_grid: Tuple[int, int, int]
    k_points: np.ndarray                # (n_kpts, 3) fractional
    bvectors: BVectors
    frozen_bands: np.ndarray            # (n_kpts, n_bands) bool
    M: np.ndarray                       # (n_kpts, n_bvecs, n_bands, n_bands)
    U: np.ndarray                       # (n_kpts, n_bands, n_wann)
    E: np.ndarray                       # (n_kpts, n_bands)
    atom_positions: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    atom_labels: List[str] = field(default_factory=list)
    unitarity_tol: float = 1e-6

    def __post_init__(self) -> None:
        self.lattice = np.asarray(self.lattice, float)
        self.k_grid = tuple(int(n) for n in self.k_grid)
        self.k_points = np.asarray(self.k_points, float)
        self.frozen_bands = np.asarray(self.frozen_bands, bool)
        self.M = np.asarray(self.M, complex)
        self.U = np.asarray(self.U, complex)
        self.E = np.asarray(self.E, float)
        self.atom_positions = np.asarray(self.atom_positions, float).reshape(-1, 3)
        self.validate()

    def validate(self) -> None:
        """Check every shape/unitarity invariant; raise InputInconsistencyError."""
        get_reciprocal_lattice(self.lattice)
        if len(self.k_grid) != 3 or any(n < 1 for n in self.k_grid):
            raise InputInconsistencyError(f"k_grid must be 3 positive integers, got {self.k_grid}.")
        n_kpts = int(np.prod(self.k_grid))
        if self.k_points.shape != (n_kpts, 3):
            raise InputInconsistencyError(
                f"k_points shape {self.k_points.shape} does not match k_grid {self.k_grid}."
            )
        if self.U.ndim != 3 or self.U.shape[0] != n_kpts:
            raise InputInconsistencyError("U must have shape (n_kpts, n_bands, n_wann).")
        _, n_bands, n_wann = self.U.shape
        if n_wann > n_bands:
            raise InputInconsistencyError(f"n_wann ({n_wann}) > n_bands ({n_bands}).")
        if self.bvectors.n_kpts != n_kpts:
            raise InputInconsistencyError("bvectors were built for a different k-mesh.")
        expected_M = (n_kpts, self.bvectors.n_bvecs, n_bands, n_bands)
        if self.M.shape != expected_M:
            raise InputInconsistencyError(f"M shape {self.M.shape}, expected {expected_M}.")
        if self.E.shape != (n_kpts, n_bands):
            raise InputInconsistencyError(f"E shape {self.E.shape}, expected {(n_kpts, n_bands)}.")
        if self.frozen_bands.shape != (n_kpts, n_bands):
            raise InputInconsistencyError(
                f"frozen_bands shape {self.frozen_bands.shape}, expected {(n_kpts, n_bands)}."
            )
        err = unitarity_error(self.U)
        if err > self.unitarity_tol:
            raise InputInconsistencyError(f"U is not (semi-)unitary: max |U†U - I| = {err:.2e}.")

    @property
    def reciprocal_lattice(self) -> np.ndarray:
        return get_reciprocal_lattice(self.lattice)

    @property
    def n_kpts(self) -> int:
        return self.k_points.shape[0]

    @property
    def n_bands(self) -> int:
        return self.U.shape[1]

    @property
    def n_wann(self) -> int:
        return self.U.shape[2]

    @property
    def n_bvecs(self) -> int:
        return self.bvectors.n_bvecs

    @staticmethod
    def build(
        lattice: np.ndarray,
        k_points: np.ndarray,
        M: np.ndarray,
        U: np.ndarray,
        E: Optional[np.ndarray] = None,
        *,
        frozen_bands: Optional[np.ndarray] = None,
        bvectors: Optional[BVectors] = None,
        bvector_params: Optional[BVectorParameters] = None,
        atom_positions: Optional[np.ndarray] = None,
        atom_labels: Optional[List[str]] = None,
    ) -> "Model":
        """
        Construct a Model from collaborator arrays.

        When `bvectors` is omitted it is generated from the k-points; the
        b ordering of `M` must then match `build_bvectors`.
        """
        lattice = np.asarray(lattice, float)
        k_points = np.asarray(k_points, float)
        U = np.asarray(U, complex)
        if bvectors is None:
            bvectors = build_bvectors(k_points, get_reciprocal_lattice(lattice), params=bvector_params)
        kgrid = get_kgrid(k_points)
        n_kpts, n_bands = U.shape[0], U.shape[1]
        if E is None:
            E = np.zeros((n_kpts, n_bands))
        if frozen_bands is None:
            frozen_bands = np.zeros((n_kpts, n_bands), dtype=bool)
        return Model(
            lattice=lattice,
            k_grid=kgrid,
            k_points=k_points,
            bvectors=bvectors,
            frozen_bands=frozen_bands,
            M=M,
            U=U,
            E=E,
            atom_positions=np.zeros((0, 3)) if atom_positions is None else atom_positions,
            atom_labels=[] if atom_labels is None else list(atom_labels),
        )

    def copy(self) -> "Model":
        return replace(
            self,
            lattice=self.lattice.copy(),
            k_points=self.k_points.copy(),
            frozen_bands=self.frozen_bands.copy(),
            M=self.M.copy(),
            U=self.U.copy(),
            E=self.E.copy(),
            atom_positions=self.atom_positions.copy(),
            atom_labels=list(self.atom_labels),
        )

    def with_gauge(self, U: np.ndarray) -> "Model":
        """Copy of the model carrying gauge `U` (same band space)."""
        new = self.copy()
        new.U = np.asarray(U, complex).copy()
        new.validate()
        return new

    def rotated(self, U: Optional[np.ndarray] = None) -> "Model":
        """
        Model expressed in the basis spanned by `U` (default: the current gauge).

        The returned model has n_bands == n_wann, M rotated into the new basis,
        identity gauge, no frozen bands, and E the diagonal of U† diag(E) U.
        """
        U = self.U if U is None else np.asarray(U, complex)
        n_wann = U.shape[2]
        M_rot = rotate_M(self.M, self.bvectors.kpb_k, U)
        H = np.conj(np.swapaxes(U, -1, -2)) @ (self.E[:, :, None] * U)
        E_rot = np.real(np.diagonal(H, axis1=-2, axis2=-1))
        return Model(
            lattice=self.lattice.copy(),
            k_grid=self.k_grid,
            k_points=self.k_points.copy(),
            bvectors=self.bvectors,
            frozen_bands=np.zeros((self.n_kpts, n_wann), dtype=bool),
            M=M_rot,
            U=identity_gauge(self.n_kpts, n_wann),
            E=E_rot,
            atom_positions=self.atom_positions.copy(),
            atom_labels=list(self.atom_labels),
        )

    def __str__(self) -> str:
        lines = [
            "Model",
            f"  lattice (columns):\n{np.array2string(self.lattice, precision=6, prefix='    ')}",
            f"  k_grid  = {self.k_grid}",
            f"  n_kpts  = {self.n_kpts}",
            f"  n_bands = {self.n_bands}",
            f"  n_wann  = {self.n_wann}",
            f"  n_bvecs = {self.n_bvecs}",
            f"  frozen  = {int(self.frozen_bands.sum())} (band, k) pairs",
        ]
        return "\n".join(lines)
