"""
wannier_gauge: gauge optimization for maximally localized Wannier functions.

Modules:
- config: parameter dataclasses (one per pipeline stage)
- exceptions: error and warning taxonomy
- lattice: lattice conventions and k-mesh bookkeeping
- bvector: finite-difference b-vector scheme (B1 completeness)
- model: the Model container threaded through the stages
- spread: spread functional, centers and gauge gradient
- disentangle: Souza-Marzari-Vanderbilt subspace selection
- parallel_transport: closed-form smooth gauge initializer
- opt_rotate: single global rotation
- max_localize: per-k conjugate-gradient localization
- split: valence/conduction (or band-mask) subspace splitting
- rgrid: real-space grids and rotation of grid data
- checkpoint: .npz checkpoints of a Wannierization
- tightbinding: tight-binding models as input source
- parallel: worker-pool fan-out over k-points
"""
from .config import (BVectorParameters, DisentangleParameters, ParallelTransportParameters,
                     OptRotateParameters, MaxLocalizeParameters, SplitParameters)
from .exceptions import (WannierGaugeError, InputInconsistencyError, SchemeConstructionError,
                         InsufficientShellsError, DegenerateWeightsError, NonSeparableSubspaceError,
                         ConvergenceWarning, DisentanglementNotConverged, MaxIterExceeded,
                         NumericalDivergenceWarning)
from .lattice import get_reciprocal_lattice, get_kgrid
from .bvector import BVectors, build_bvectors
from .model import Model
from .spread import SpreadResult, spread_functional, spread_gradient, omega, center
from .optimize import OptimizationStatus, ConvergenceReport
from .disentangle import disentangle
from .parallel_transport import parallel_transport
from .opt_rotate import opt_rotate
from .max_localize import max_localize
from .split import split_subspace, split_wannierize
from .rgrid import RGrid, rotate_bloch_functions
from .checkpoint import (Checkpoint, checkpoint_from_model, model_from_checkpoint,
                         save_checkpoint, load_checkpoint)
from .tightbinding import tight_binding_model, monkhorst_pack, cubic_dimer_hoppings
from .utils import orthonormalize_projections, rotate_M, rotate_gauge, is_unitary

__all__ = [
    "BVectorParameters", "DisentangleParameters", "ParallelTransportParameters",
    "OptRotateParameters", "MaxLocalizeParameters", "SplitParameters",
    "WannierGaugeError", "InputInconsistencyError", "SchemeConstructionError",
    "InsufficientShellsError", "DegenerateWeightsError", "NonSeparableSubspaceError",
    "ConvergenceWarning", "DisentanglementNotConverged", "MaxIterExceeded",
    "NumericalDivergenceWarning",
    "get_reciprocal_lattice", "get_kgrid",
    "BVectors", "build_bvectors",
    "Model",
    "SpreadResult", "spread_functional", "spread_gradient", "omega", "center",
    "OptimizationStatus", "ConvergenceReport",
    "disentangle", "parallel_transport", "opt_rotate", "max_localize",
    "split_subspace", "split_wannierize",
    "RGrid", "rotate_bloch_functions",
    "Checkpoint", "checkpoint_from_model", "model_from_checkpoint",
    "save_checkpoint", "load_checkpoint",
    "tight_binding_model", "monkhorst_pack", "cubic_dimer_hoppings",
    "orthonormalize_projections", "rotate_M", "rotate_gauge", "is_unitary",
]
