"""
Stage parameters for the Wannierization pipeline.

Each stage (b-vector search, disentanglement, parallel transport, optimal
rotation, max localization, splitting) reads one frozen dataclass. Values are
checked in `__post_init__` and every class round-trips through JSON, so a
run can be stored next to its checkpoint and replayed.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional, Literal
import json


class _Parameters:
    """JSON round-trip shared by all parameter dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, path: str) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise ValueError(f"Unknown {cls.__name__} fields: {sorted(unknown)}")
        return cls(**d)

    @classmethod
    def from_json(cls, path: str):
        with open(path, "r") as f:
            d = json.load(f)
        return cls.from_dict(d)


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ValueError(f"{name} must be positive, got {value}.")


@dataclass(frozen=True)
class BVectorParameters(_Parameters):
    """
    Parameters for the finite-difference b-vector search.

    Notes
    -----
    `kmesh_tol` is used both to group candidate vectors into equal-length
    shells and as the residual threshold of the completeness (B1) condition,
    matching Wannier90's `kmesh_tol`.
    `max_shells` bounds the search radius (Wannier90 `search_shells`).
    `search_range` overrides the integer range of candidate mesh offsets; by
    default it grows with the anisotropy of the k-mesh spacing.
    """
    kmesh_tol: float = 1e-6
    max_shells: int = 36
    search_range: Optional[int] = None

    def __post_init__(self) -> None:
        _check_positive("kmesh_tol", self.kmesh_tol)
        if self.max_shells < 1:
            raise ValueError("max_shells must be >= 1.")
        if self.search_range is not None and self.search_range < 1:
            raise ValueError("search_range must be >= 1 when given.")


@dataclass(frozen=True)
class DisentangleParameters(_Parameters):
    """
    Souza-Marzari-Vanderbilt disentanglement.

    Defaults follow Wannier90 (`dis_num_iter`, `dis_conv_tol`,
    `dis_conv_window`, `dis_mix_ratio`).
    """
    max_iterations: int = 200
    convergence_tolerance: float = 1e-10
    convergence_window: int = 3
    mix_ratio: float = 0.5
    n_workers: int = 1

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        _check_positive("convergence_tolerance", self.convergence_tolerance)
        if self.convergence_window < 1:
            raise ValueError("convergence_window must be >= 1.")
        if not 0.0 < self.mix_ratio <= 1.0:
            raise ValueError("mix_ratio must be in (0, 1].")
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1.")


@dataclass(frozen=True)
class ParallelTransportParameters(_Parameters):
    """
    Parallel-transport gauge construction.

    `path_order` is a permutation of "xyz": the spanning path first walks the
    line along the first axis through the origin, then the lines along the
    second axis, then the third. Lexicographic "xyz" is the default and is
    what makes results reproducible.
    """
    path_order: str = "xyz"
    fix_obstruction: bool = True
    n_workers: int = 1

    def __post_init__(self) -> None:
        if sorted(self.path_order) != ["x", "y", "z"]:
            raise ValueError(f"path_order must be a permutation of 'xyz', got '{self.path_order}'.")
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1.")

    @property
    def axes(self) -> tuple[int, int, int]:
        return tuple("xyz".index(c) for c in self.path_order)


@dataclass(frozen=True)
class OptRotateParameters(_Parameters):
    """Single global rotation after parallel transport."""
    max_iterations: int = 200
    convergence_tolerance: float = 1e-7
    gradient_tolerance: float = 1e-5
    step_size: float = 1.0
    convergence_window: int = 3
    max_backtracks: int = 30

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        _check_positive("convergence_tolerance", self.convergence_tolerance)
        _check_positive("gradient_tolerance", self.gradient_tolerance)
        _check_positive("step_size", self.step_size)
        if self.convergence_window < 1:
            raise ValueError("convergence_window must be >= 1.")


@dataclass(frozen=True)
class MaxLocalizeParameters(_Parameters):
    """
    Full k-space maximal localization.

    Conventions
    -----------
    - `step_size` is the first trial step of the line search, or the fixed
      step when `line_search=False`.
    - Converged when the spread changes by less than `convergence_tolerance`
      for `convergence_window` consecutive iterations, or when the gradient
      norm drops below `gradient_tolerance`.
    - In fixed-step mode a spread above `divergence_factor` times the best
      spread so far aborts the run (status DIVERGED).
    """
    max_iterations: int = 200
    convergence_tolerance: float = 1e-7
    gradient_tolerance: float = 1e-5
    step_size: float = 1.0
    convergence_window: int = 3
    conjugate_gradient: bool = True
    line_search: bool = True
    max_backtracks: int = 30
    divergence_factor: float = 10.0
    n_workers: int = 1

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        _check_positive("convergence_tolerance", self.convergence_tolerance)
        _check_positive("gradient_tolerance", self.gradient_tolerance)
        _check_positive("step_size", self.step_size)
        if self.convergence_window < 1:
            raise ValueError("convergence_window must be >= 1.")
        if self.max_backtracks < 0:
            raise ValueError("max_backtracks must be >= 0.")
        if self.divergence_factor <= 1.0:
            raise ValueError("divergence_factor must be > 1.")
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1.")


@dataclass(frozen=True)
class SplitParameters(_Parameters):
    """
    Subspace splitting.

    `indicator` selects the Hermitian operator whose eigenvectors
    block-diagonalize the gauge: "energy" orders by band energy (valence
    first), "bands" uses an explicit band mask (masked bands first).
    The `run_*` flags only matter for `split_wannierize`.

    `overlap_tolerance` bounds |Ū_i(k)† M[k,b] Ū_j(k+b)| between different
    blocks. Separate blocks still overlap at O(|b|) on a finite mesh, so it
    is much looser than `tolerance`.
    """
    indicator: Literal["energy", "bands"] = "energy"
    tolerance: float = 1e-6
    overlap_tolerance: float = 0.75
    run_parallel_transport: bool = True
    run_opt_rotate: bool = False
    run_max_localize: bool = False

    def __post_init__(self) -> None:
        if self.indicator not in ("energy", "bands"):
            raise ValueError(f"Unknown indicator '{self.indicator}'. Allowed values: 'energy', 'bands'.")
        _check_positive("tolerance", self.tolerance)
        _check_positive("overlap_tolerance", self.overlap_tolerance)
