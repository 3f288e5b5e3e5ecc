"""
Split a Wannier manifold into independent subspaces (e.g. valence/conduction).

At every k a Hermitian indicator operator is diagonalized in the Wannier
basis; consecutive groups of its eigenvectors define the blocks:

- "energy": H_k = U_k† diag(E_k) U_k, ascending, so the first block is the
  lowest-energy (valence) part;
- "bands":  X_k = U_k† diag(mask_k) U_k, descending, so the first block is
  the part spanned by the masked bands.

Block i gets the gauge Ū_i = U V_k[:, block_i] and a new Model written in that
basis (rotated M, identity U, block eigenvalues as E).
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import MaxLocalizeParameters, SplitParameters
from .exceptions import NonSeparableSubspaceError
from .max_localize import max_localize
from .model import Model
from .opt_rotate import opt_rotate
from .parallel_transport import parallel_transport
from .utils import dagger, hermitian_part

logger = logging.getLogger(__name__)


def _block_sizes(partition: Union[int, Sequence[int]], n_wann: int) -> Tuple[int, ...]:
    if np.isscalar(partition):
        sizes = (int(partition), n_wann - int(partition))
    else:
        sizes = tuple(int(n) for n in partition)
    if len(sizes) < 2:
        raise NonSeparableSubspaceError("A split needs at least two blocks.")
    if any(n < 1 for n in sizes):
        raise NonSeparableSubspaceError(f"Block sizes must be positive, got {sizes}.")
    if sum(sizes) != n_wann:
        raise NonSeparableSubspaceError(f"Block sizes {sizes} do not sum to n_wann={n_wann}.")
    return sizes


def indicator_eigen(
    model: Model,
    indicator: str = "energy",
    band_mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigen-decomposition of the indicator operator in the Wannier basis.

    Returns
    -------
    evals : (n_kpts, n_wann), sorted in block order
    V : (n_kpts, n_wann, n_wann) unitary, columns in the same order
    """
    U = model.U
    if indicator == "energy":
        diag = model.E
    elif indicator == "bands":
        if band_mask is None:
            raise NonSeparableSubspaceError("indicator='bands' needs a band_mask.")
        mask = np.asarray(band_mask, dtype=bool)
        if mask.ndim == 1:
            mask = np.broadcast_to(mask, (model.n_kpts, mask.size))
        if mask.shape != (model.n_kpts, model.n_bands):
            raise NonSeparableSubspaceError(
                f"band_mask shape {mask.shape}, expected {(model.n_kpts, model.n_bands)}."
            )
        diag = mask.astype(float)
    else:
        raise ValueError(f"Unknown indicator '{indicator}'.")

    X = dagger(U) @ (diag[:, :, None] * U)
    evals, V = np.linalg.eigh(hermitian_part(X))
    if indicator == "bands":
        evals, V = evals[:, ::-1], V[:, :, ::-1]
    return evals, V


def max_cross_overlap(model: Model, gauges: Sequence[np.ndarray]) -> float:
    """max over k, b and i != j of |Ū_i(k)† M[k,b] Ū_j(k+b)|."""
    M, kpb_k = model.M, model.bvectors.kpb_k
    largest = 0.0
    for i, Ui in enumerate(gauges):
        Ui_H = dagger(Ui)[:, None]
        for j, Uj in enumerate(gauges):
            if i == j:
                continue
            cross = Ui_H @ M @ Uj[kpb_k]
            largest = max(largest, float(np.max(np.abs(cross))))
    return largest


def split_subspace(
    model: Model,
    partition: Union[int, Sequence[int]],
    params: Optional[SplitParameters] = None,
    *,
    band_mask: Optional[np.ndarray] = None,
) -> Tuple[List[Model], List[np.ndarray]]:
    """
    Split `model` into independent models of the given block sizes.

    Parameters
    ----------
    model : Model with a converged gauge
    partition : block sizes summing to n_wann; an int n1 means (n1, n_wann - n1)
    params : SplitParameters (indicator, tolerance)
    band_mask : (n_kpts, n_bands) or (n_bands,) bool, for indicator="bands"

    Returns
    -------
    models : one Model per block, U = identity
    gauges : per block, (n_kpts, n_bands, n_i) = U V[:, block]

    Raises
    ------
    NonSeparableSubspaceError
        Inconsistent sizes, degenerate indicator eigenvalues across a block
        boundary, (indicator="bands") leakage above `tolerance`, or a
        cross-block overlap above `overlap_tolerance`.
    """
    params = SplitParameters() if params is None else params
    model.validate()
    sizes = _block_sizes(partition, model.n_wann)
    if params.indicator == "bands" and len(sizes) != 2:
        raise NonSeparableSubspaceError("indicator='bands' separates exactly two blocks.")

    evals, V = indicator_eigen(model, params.indicator, band_mask)
    edges = np.cumsum((0,) + sizes)

    for edge in edges[1:-1]:
        gap = np.abs(evals[:, edge] - evals[:, edge - 1])
        k = int(np.argmin(gap))
        if gap[k] < params.tolerance:
            raise NonSeparableSubspaceError(
                f"Indicator eigenvalues are degenerate across the block boundary at "
                f"position {edge} (k-point {k}, gap {gap[k]:.3e})."
            )

    if params.indicator == "bands":
        n1 = sizes[0]
        leakage = max(float(np.max(1.0 - evals[:, :n1])), float(np.max(evals[:, n1:])))
        if leakage > params.tolerance:
            raise NonSeparableSubspaceError(
                f"Masked bands leak across the split (max leakage {leakage:.3e} > {params.tolerance})."
            )

    gauges = [model.U @ V[:, :, edges[i]:edges[i + 1]] for i in range(len(sizes))]
    overlap = max_cross_overlap(model, gauges)
    logger.debug("split_subspace: max cross-block |overlap| = %.3e", overlap)
    if overlap > params.overlap_tolerance:
        raise NonSeparableSubspaceError(
            f"Blocks are coupled by the overlaps: max cross-block |overlap| {overlap:.3e} "
            f"> {params.overlap_tolerance}."
        )

    models = []
    for i, Ub in enumerate(gauges):
        sub = model.rotated(Ub)
        # the indicator eigenvalues are exact for the energy split
        if params.indicator == "energy":
            sub.E = evals[:, edges[i]:edges[i + 1]].copy()
        models.append(sub)
        logger.info("split_subspace: block %d with %d function(s).", i, sizes[i])
    return models, gauges


def split_wannierize(
    model: Model,
    n_val: int,
    params: Optional[SplitParameters] = None,
    max_localize_params: Optional[MaxLocalizeParameters] = None,
    *,
    band_mask: Optional[np.ndarray] = None,
) -> Tuple[Tuple[Model, np.ndarray], Tuple[Model, np.ndarray]]:
    """
    Split into valence/conduction and re-gauge each block.

    Each block is parallel transported and, depending on `params`, optimally
    rotated and maximally localized. The returned models carry the final
    block gauge in `U`; the returned arrays are the combined gauges
    (n_kpts, n_bands, n_i) in the band basis of the input model.
    """
    params = SplitParameters() if params is None else params
    models, gauges = split_subspace(model, n_val, params, band_mask=band_mask)

    out = []
    for name, sub, Ub in zip(("valence", "conduction"), models, gauges):
        if params.run_parallel_transport:
            sub.U = parallel_transport(sub)
        if params.run_opt_rotate:
            sub.U = sub.U @ opt_rotate(sub)
        if params.run_max_localize:
            sub.U, report = max_localize(sub, max_localize_params)
            logger.info("split_wannierize: %s max_localize %s", name, report)
        out.append((sub, Ub @ sub.U))
    return out[0], out[1]
