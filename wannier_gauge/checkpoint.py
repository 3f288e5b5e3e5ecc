"""
Checkpoint of a Wannierization: the model data plus the final gauge.

The layout mirrors a Wannier90 `.chk` file (header, excluded bands, lattice,
k-mesh, disentanglement flag, U_dis, U_loc, rotated M, centers, spreads).
On disk it is a compressed `.npz` with the arrays as entries and the scalar
fields in a `meta_json` string.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .bvector import build_bvectors
from .config import BVectorParameters
from .exceptions import InputInconsistencyError
from .lattice import get_reciprocal_lattice
from .model import Model
from .spread import spread_functional
from .utils import identity_gauge, rotate_M

logger = logging.getLogger(__name__)

_ARRAY_FIELDS = (
    "lattice", "recip_lattice", "k_points", "dis_bands",
    "U_dis", "U_loc", "M", "centers", "spreads",
)


@dataclass
class Checkpoint:
    header: str
    exclude_bands: List[int]
    lattice: np.ndarray             # (3,3) columns
    recip_lattice: np.ndarray       # (3,3) columns
    k_grid: Tuple[int, int, int]
    k_points: np.ndarray            # (n_kpts, 3)
    checkpoint: str
    have_disentangled: bool
    omega_i: float
    dis_bands: np.ndarray           # (n_kpts, n_bands) bool
    U_dis: np.ndarray               # (n_kpts, n_bands, n_wann)
    U_loc: np.ndarray               # (n_kpts, n_wann, n_wann)
    M: np.ndarray                   # (n_kpts, n_bvecs, n_wann, n_wann), rotated by the gauge
    centers: np.ndarray             # (n_wann, 3)
    spreads: np.ndarray             # (n_wann,)

    @property
    def n_kpts(self) -> int:
        return self.k_points.shape[0]

    @property
    def n_bands(self) -> int:
        return self.U_dis.shape[1]

    @property
    def n_wann(self) -> int:
        return self.U_loc.shape[2]

    @property
    def n_bvecs(self) -> int:
        return self.M.shape[1]

    @property
    def gauge(self) -> np.ndarray:
        """Full gauge U_dis @ U_loc, (n_kpts, n_bands, n_wann)."""
        return self.U_dis @ self.U_loc


def checkpoint_from_model(
    model: Model,
    U: Optional[np.ndarray] = None,
    exclude_bands: Optional[Sequence[int]] = None,
    have_disentangled: bool = True,
) -> Checkpoint:
    """
    Checkpoint of `model` in gauge `U` (default `model.U`).

    The full gauge is stored as U_dis with an identity U_loc, and M is stored
    rotated by it. `exclude_bands` is carried for provenance only.
    """
    U = model.U if U is None else np.asarray(U, complex)
    res = spread_functional(model.M, model.bvectors, U, with_gradient=False)
    return Checkpoint(
        header=f"Created by wannier_gauge {datetime.now().isoformat(timespec='seconds')}",
        exclude_bands=[] if exclude_bands is None else [int(i) for i in exclude_bands],
        lattice=model.lattice.copy(),
        recip_lattice=model.reciprocal_lattice,
        k_grid=tuple(model.k_grid),
        k_points=model.k_points.copy(),
        checkpoint="postwann",
        have_disentangled=bool(have_disentangled),
        omega_i=res.omega_i,
        dis_bands=np.ones((model.n_kpts, model.n_bands), dtype=bool),
        U_dis=U.copy(),
        U_loc=identity_gauge(model.n_kpts, model.n_wann),
        M=rotate_M(model.M, model.bvectors.kpb_k, U),
        centers=res.centers,
        spreads=res.spreads,
    )


def model_from_checkpoint(chk: Checkpoint, bvector_params: Optional[BVectorParameters] = None) -> Model:
    """
    Rebuild a Model from a checkpoint.

    M in the checkpoint is already rotated, so the model gets an identity
    gauge and zero energies. The b-vectors are regenerated from the k-points
    and must match the stored M.
    """
    bvectors = build_bvectors(chk.k_points, get_reciprocal_lattice(chk.lattice), params=bvector_params)
    if bvectors.n_bvecs != chk.n_bvecs:
        raise InputInconsistencyError(
            f"Regenerated {bvectors.n_bvecs} b-vectors, checkpoint has {chk.n_bvecs}."
        )
    n_kpts, n_wann = chk.n_kpts, chk.n_wann
    return Model(
        lattice=chk.lattice.copy(),
        k_grid=chk.k_grid,
        k_points=chk.k_points.copy(),
        bvectors=bvectors,
        frozen_bands=np.zeros((n_kpts, n_wann), dtype=bool),
        M=chk.M.copy(),
        U=identity_gauge(n_kpts, n_wann),
        E=np.zeros((n_kpts, n_wann)),
    )


def save_checkpoint(path: str | os.PathLike, chk: Checkpoint) -> None:
    """Save to a compressed .npz; scalars live in `meta_json`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    meta = {
        "header": chk.header,
        "exclude_bands": list(chk.exclude_bands),
        "k_grid": list(chk.k_grid),
        "checkpoint": chk.checkpoint,
        "have_disentangled": bool(chk.have_disentangled),
        "omega_i": float(chk.omega_i),
    }
    arrays = {name: np.asarray(getattr(chk, name)) for name in _ARRAY_FIELDS}
    np.savez_compressed(path, meta_json=np.array(json.dumps(meta, sort_keys=True)), **arrays)
    logger.info("Saved checkpoint to %s", path)


def load_checkpoint(path: str | os.PathLike) -> Checkpoint:
    path = Path(path)
    with np.load(path, allow_pickle=False) as data:
        if "meta_json" not in data:
            raise ValueError(f"{path} is not a checkpoint file (no meta_json).")
        meta = json.loads(str(data["meta_json"]))
        arrays = {name: np.array(data[name]) for name in _ARRAY_FIELDS}
    return Checkpoint(
        header=meta["header"],
        exclude_bands=[int(i) for i in meta["exclude_bands"]],
        k_grid=tuple(int(n) for n in meta["k_grid"]),
        checkpoint=meta["checkpoint"],
        have_disentangled=bool(meta["have_disentangled"]),
        omega_i=float(meta["omega_i"]),
        **arrays,
    )
