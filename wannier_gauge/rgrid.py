"""
Real-space sampling grids and per-subspace rotation of grid data.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .exceptions import InputInconsistencyError


@dataclass(frozen=True)
class RGrid:
    """
    Regular grid of points given by fractional coordinates w.r.t. `basis`.

    basis : (3,3), columns are basis vectors (usually the lattice vectors)
    X, Y, Z : (nx, ny, nz) fractional coordinates of each grid point

    The fractional coordinates may lie outside [0, 1), so `basis` need not be
    the spanning vectors of the grid; see `span_vectors`.
    """
    basis: np.ndarray
    X: np.ndarray
    Y: np.ndarray
    Z: np.ndarray

    def __post_init__(self) -> None:
        basis = np.asarray(self.basis, float)
        if basis.shape != (3, 3):
            raise InputInconsistencyError("RGrid basis must be 3x3.")
        X, Y, Z = (np.asarray(a, float) for a in (self.X, self.Y, self.Z))
        if not (X.shape == Y.shape == Z.shape) or X.ndim != 3:
            raise InputInconsistencyError("X, Y, Z must be 3D arrays of the same shape.")
        object.__setattr__(self, "basis", basis)
        object.__setattr__(self, "X", X)
        object.__setattr__(self, "Y", Y)
        object.__setattr__(self, "Z", Z)

    @classmethod
    def regular(cls, basis: np.ndarray, n_points: Tuple[int, int, int]) -> "RGrid":
        """Grid [0,1)^3 with n_points per axis (periodic images excluded)."""
        axes = [np.arange(n) / n for n in n_points]
        X, Y, Z = np.meshgrid(*axes, indexing="ij")
        return cls(basis, X, Y, Z)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.X.shape

    def origin(self) -> np.ndarray:
        """Cartesian coordinate of the first grid point."""
        return self.basis @ np.array([self.X[0, 0, 0], self.Y[0, 0, 0], self.Z[0, 0, 0]])

    def span_vectors(self) -> np.ndarray:
        """Cartesian spanning vectors as columns (first point to last along each axis)."""
        O = np.array([self.X[0, 0, 0], self.Y[0, 0, 0], self.Z[0, 0, 0]])
        ends = [
            (self.X[-1, 0, 0], self.Y[-1, 0, 0], self.Z[-1, 0, 0]),
            (self.X[0, -1, 0], self.Y[0, -1, 0], self.Z[0, -1, 0]),
            (self.X[0, 0, -1], self.Y[0, 0, -1], self.Z[0, 0, -1]),
        ]
        frac = np.array(ends, dtype=float).T - O[:, None]
        return self.basis @ frac

    def cartesianize_xyz(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """X, Y, Z in Cartesian coordinates, each of shape (nx, ny, nz)."""
        frac = np.stack([self.X.ravel(), self.Y.ravel(), self.Z.ravel()], axis=0)
        cart = self.basis @ frac
        return tuple(c.reshape(self.shape) for c in cart)


def rotate_bloch_functions(unk: np.ndarray, U: np.ndarray) -> np.ndarray:
    """
    Rotate periodic Bloch functions into a (sub)space gauge.

    Parameters
    ----------
    unk : (n_kpts, n_bands, nx, ny, nz) u_{m,k}(r) on an RGrid
    U : (n_kpts, n_bands, n_wann) gauge, e.g. one block from `split_subspace`

    Returns
    -------
    (n_kpts, n_wann, nx, ny, nz) with u'_{n,k} = Σ_m u_{m,k} U[k, m, n]
    """
    unk = np.asarray(unk)
    U = np.asarray(U)
    if unk.shape[:2] != U.shape[:2]:
        raise InputInconsistencyError(
            f"unk (n_kpts, n_bands) = {unk.shape[:2]} does not match U {U.shape[:2]}."
        )
    return np.einsum("kmxyz,kmn->knxyz", unk, U)
