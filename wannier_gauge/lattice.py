"""
Real/reciprocal lattice conventions and Monkhorst-Pack mesh bookkeeping.

Conventions
-----------
- `lattice` is 3x3 with the real-space lattice vectors as *columns*.
- `reciprocal_lattice = 2π inv(lattice)ᵀ`, also with vectors as columns, so
  that a_i · b_j = 2π δ_ij.
- k-points are fractional w.r.t. the reciprocal vectors; the Cartesian
  vector is `reciprocal_lattice @ k_frac`.
"""
from __future__ import annotations

from typing import Tuple

import numpy as np

from .exceptions import InputInconsistencyError


def get_reciprocal_lattice(lattice: np.ndarray) -> np.ndarray:
    lattice = np.asarray(lattice, float)
    if lattice.shape != (3, 3):
        raise InputInconsistencyError(f"lattice must be 3x3, got {lattice.shape}.")
    if abs(np.linalg.det(lattice)) < 1e-12:
        raise InputInconsistencyError("lattice vectors are linearly dependent.")
    return 2 * np.pi * np.linalg.inv(lattice).T


def get_kgrid(k_points: np.ndarray, atol: float = 1e-6) -> Tuple[int, int, int]:
    """
    Infer the Monkhorst-Pack dimensions from a list of fractional k-points.

    Counts distinct coordinates (modulo 1) along each axis and checks that the
    list is the full product mesh.
    """
    k_points = np.asarray(k_points, float)
    if k_points.ndim != 2 or k_points.shape[1] != 3:
        raise InputInconsistencyError("k_points must have shape (n_kpts, 3).")
    grid = []
    for i in range(3):
        x = np.sort(k_points[:, i] - np.floor(k_points[:, i] + atol))
        n_unique = 1 + int(np.sum(np.diff(x) > atol))
        grid.append(n_unique)
    kgrid = tuple(int(n) for n in grid)
    if int(np.prod(kgrid)) != k_points.shape[0]:
        raise InputInconsistencyError(
            f"k_points ({k_points.shape[0]}) do not form a full mesh of size {kgrid}."
        )
    return kgrid


def mesh_coordinates(k_points: np.ndarray, kgrid: Tuple[int, int, int]) -> np.ndarray:
    """
    Integer mesh coordinates (i, j, l) of each k-point, measured from the first
    k-point so that shifted meshes work as well.
    """
    k_points = np.asarray(k_points, float)
    kgrid_arr = np.asarray(kgrid)
    raw = (k_points - k_points[0]) * kgrid_arr
    coords = np.rint(raw).astype(int)
    if not np.allclose(raw, coords, atol=1e-5):
        raise InputInconsistencyError("k_points are not on a regular mesh.")
    return np.mod(coords, kgrid_arr)

