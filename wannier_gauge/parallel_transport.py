"""
Parallel-transport gauge construction.

A closed-form initializer: the gauge is propagated along a fixed spanning
path of the mesh, each step choosing the rotation at k' closest (Frobenius)
to the transported gauge at k. For a step k -> k' with overlap O = <u_k|u_k'>:

    S = U_k† O U_k' = W H   (polar)      U_k' <- U_k' W†

after which U_k† O U_k' is Hermitian positive.

Path
----
With `path_order = "xyz"` (default) the path is lexicographic: first the x-line
through the first k-point, then the y-lines starting from every point of that
line, then the z-lines starting from every point of the (x, y) plane. Lines of
the second and third stages are independent and may run concurrently.

Obstruction
-----------
Going once around a line leaves a unitary mismatch Obs = polar(U_{N-1}† O U_0).
With `fix_obstruction` it is spread evenly, U_i <- U_i Obs^{i/N}, so every link
of the line (wrap-around included) carries Obs^{1/N}.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

import numpy as np

from .config import ParallelTransportParameters
from .exceptions import InputInconsistencyError
from .lattice import mesh_coordinates
from .model import Model
from .parallel import map_tasks
from .utils import dagger, polar_unitary, unitary_power

logger = logging.getLogger(__name__)


class _MeshSteps:
    """Overlap lookup for one-spacing steps along each mesh axis."""

    def __init__(self, model: Model):
        self.model = model
        self.kgrid = np.asarray(model.k_grid, int)
        coords = mesh_coordinates(model.k_points, model.k_grid)
        self.coords = coords
        self.lookup = -np.ones(tuple(self.kgrid), dtype=int)
        self.lookup[coords[:, 0], coords[:, 1], coords[:, 2]] = np.arange(model.n_kpts)
        self._step: dict = {}

    def _bvector_for_axis(self, axis: int) -> Tuple[int, bool]:
        """(b index, forward) for a +1 step along `axis`; forward=False means -b."""
        if axis in self._step:
            return self._step[axis]
        bvecs = self.model.bvectors
        b_cart = self.model.reciprocal_lattice[:, axis] / self.kgrid[axis]
        tol = 1e-6 * max(1.0, np.linalg.norm(b_cart))
        try:
            found = (bvecs.index_of(b_cart, atol=tol), True)
        except KeyError:
            try:
                found = (bvecs.index_of(-b_cart, atol=tol), False)
            except KeyError:
                raise InputInconsistencyError(
                    f"The mesh step along axis {axis} is not a b-vector; "
                    "parallel transport needs nearest-neighbour b-vectors along every mesh axis."
                ) from None
        self._step[axis] = found
        return found

    def neighbour(self, k: int, axis: int) -> int:
        c = self.coords[k].copy()
        c[axis] = (c[axis] + 1) % self.kgrid[axis]
        return int(self.lookup[c[0], c[1], c[2]])

    def overlap(self, k: int, axis: int) -> Tuple[np.ndarray, int]:
        """<u_k|u_k'> (n_bands x n_bands) for k' one step along `axis`."""
        ib, forward = self._bvector_for_axis(axis)
        M, kpb_k = self.model.M, self.model.bvectors.kpb_k
        k_next = self.neighbour(k, axis)
        if forward:
            if kpb_k[k, ib] != k_next:
                raise InputInconsistencyError(f"b-vector {ib} from k={k} does not reach the mesh neighbour.")
            return M[k, ib], k_next
        if kpb_k[k_next, ib] != k:
            raise InputInconsistencyError(f"b-vector {ib} from k={k_next} does not reach the mesh neighbour.")
        return dagger(M[k_next, ib]), k_next

    def line(self, k_start: int, axis: int) -> List[int]:
        ks = [k_start]
        for _ in range(self.kgrid[axis] - 1):
            ks.append(self.neighbour(ks[-1], axis))
        return ks


def transport_line(
    U_line: np.ndarray,
    overlaps: List[np.ndarray],
    fix_obstruction: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Parallel transport along one closed line of N mesh points.

    Parameters
    ----------
    U_line : (N, n_bands, n_wann) gauge on the line; U_line[0] is kept
    overlaps : N overlaps; overlaps[i] = <u_i|u_{i+1}>, the last one wraps to 0
    fix_obstruction : spread the wrap-around mismatch evenly along the line

    Returns
    -------
    U_new : (N, n_bands, n_wann)
    obstruction : (n_wann, n_wann) unitary mismatch after transport
    """
    U_new = np.array(U_line, dtype=complex, copy=True)
    n = U_new.shape[0]
    for i in range(1, n):
        S = dagger(U_new[i - 1]) @ overlaps[i - 1] @ U_new[i]
        U_new[i] = U_new[i] @ dagger(polar_unitary(S))

    obstruction = polar_unitary(dagger(U_new[n - 1]) @ overlaps[n - 1] @ U_new[0])
    if fix_obstruction and n > 1:
        U_new = U_new @ unitary_power(obstruction, np.arange(n) / n)
    return U_new, obstruction


def parallel_transport(
    model: Model,
    params: Optional[ParallelTransportParameters] = None,
) -> np.ndarray:
    """
    Build a smooth gauge by parallel transport inside the span of `model.U`.

    Returns
    -------
    U : (n_kpts, n_bands, n_wann)
    """
    params = ParallelTransportParameters() if params is None else params
    model.validate()
    steps = _MeshSteps(model)
    U = model.U.copy()
    axes = [a for a in params.axes if model.k_grid[a] > 1]

    def run_line(k_start: int, axis: int, U_snapshot: np.ndarray) -> Tuple[List[int], np.ndarray]:
        ks = steps.line(k_start, axis)
        overlaps = [steps.overlap(k, axis)[0] for k in ks]
        U_line, obstruction = transport_line(U_snapshot[ks], overlaps, params.fix_obstruction)
        logger.debug(
            "parallel_transport: axis %d from k=%d, obstruction phases %s",
            axis, k_start, np.round(np.angle(np.linalg.eigvals(obstruction)), 6),
        )
        return ks, U_line

    # starting points grow stage by stage: origin, then the first line, ...
    starts = [0]
    for axis in axes:
        U_snapshot = U
        results = map_tasks(lambda k0: run_line(k0, axis, U_snapshot), starts, params.n_workers)
        U = U_snapshot.copy()
        new_starts = []
        for ks, U_line in results:
            U[ks] = U_line
            new_starts.extend(ks)
        starts = new_starts
        logger.info("parallel_transport: axis %s done (%d line(s)).", "xyz"[axis], len(results))
    return U
