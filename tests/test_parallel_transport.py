import warnings

import numpy as np
import pytest

from wannier_gauge.bvector import BVectors
from wannier_gauge.config import DisentangleParameters, ParallelTransportParameters
from wannier_gauge.disentangle import disentangle
from wannier_gauge.exceptions import DisentanglementNotConverged, InputInconsistencyError
from wannier_gauge.model import Model
from wannier_gauge.parallel_transport import parallel_transport, transport_line
from wannier_gauge.spread import omega
from wannier_gauge.tightbinding import cubic_dimer_hoppings, tight_binding_model
from wannier_gauge.utils import is_unitary, unitary_exp


def _s_band_hoppings() -> dict:
    hop = {}
    for R in [(1, 0, 0), (-1, 0, 0), (0, 1, 0), (0, -1, 0), (0, 0, 1), (0, 0, -1)]:
        hop[R] = np.array([[-1.0]], dtype=complex)
    return hop


def _random_phases(model: Model, seed: int) -> Model:
    rng = np.random.default_rng(seed)
    phases = np.exp(2j * np.pi * rng.random(model.n_kpts))
    model.U = model.U * phases[:, None, None]
    return model


def _scrambled_dimer(seed: int = 2) -> Model:
    rng = np.random.default_rng(seed)
    model = tight_binding_model(np.eye(3), cubic_dimer_hoppings(), (4, 4, 4), np.eye(2))
    X = rng.normal(size=(model.n_kpts, 2, 2)) + 1j * rng.normal(size=(model.n_kpts, 2, 2))
    model.U = model.U @ unitary_exp(0.5 * (X - np.conj(np.swapaxes(X, -1, -2))))
    return model


def test_transport_line_distributes_obstruction() -> None:
    alpha = 0.3
    overlaps = [np.array([[np.exp(1j * alpha)]])] * 4
    U_line = np.ones((4, 1, 1), dtype=complex)

    U_raw, obs = transport_line(U_line, overlaps, fix_obstruction=False)
    assert np.allclose(U_raw[:, 0, 0], np.exp(-1j * alpha * np.arange(4)))
    assert np.allclose(obs, np.exp(4j * alpha))

    U_fixed, _ = transport_line(U_line, overlaps, fix_obstruction=True)
    assert np.allclose(U_fixed, 1.0)


def test_single_band_random_phases_are_removed() -> None:
    model = tight_binding_model(np.eye(3), _s_band_hoppings(), (4, 4, 4), np.eye(1))
    model = _random_phases(model, seed=0)
    assert omega(model).omega > 1.0

    U = parallel_transport(model)
    assert is_unitary(U)
    assert omega(model, U).omega < 1e-10


@pytest.mark.parametrize("path_order", ["xyz", "zyx", "yxz"])
def test_path_order_variants(path_order: str) -> None:
    model = _random_phases(tight_binding_model(np.eye(3), _s_band_hoppings(), (3, 2, 4), np.eye(1)), 4)
    U = parallel_transport(model, ParallelTransportParameters(path_order=path_order))
    assert omega(model, U).omega < 1e-10


def test_dimer_spread_drops() -> None:
    model = _scrambled_dimer()
    before = omega(model).omega
    U = parallel_transport(model)
    assert is_unitary(U)
    assert omega(model, U).omega < 0.5 * before


def test_workers_do_not_change_result() -> None:
    model = _scrambled_dimer()
    U1 = parallel_transport(model, ParallelTransportParameters(n_workers=1))
    U4 = parallel_transport(model, ParallelTransportParameters(n_workers=4))
    assert np.allclose(U1, U4)


def test_missing_mesh_bvector_raises() -> None:
    delta = 1.0 / np.sqrt(2.0)
    bvectors = BVectors(
        vectors=np.array([[delta, 0, 0], [-delta, 0, 0]]),
        weights=np.array([1.0, 1.0]),
        kpb_k=np.array([[1, 1], [0, 0]]),
        kpb_G=np.zeros((2, 2, 3), dtype=int),
    )
    model = Model(
        lattice=np.eye(3),
        k_grid=(2, 1, 1),
        k_points=np.array([[0, 0, 0], [0.5, 0, 0]]),
        bvectors=bvectors,
        frozen_bands=np.zeros((2, 1), dtype=bool),
        M=np.ones((2, 2, 1, 1), dtype=complex),
        U=np.ones((2, 1, 1), dtype=complex),
        E=np.zeros((2, 1)),
    )
    with pytest.raises(InputInconsistencyError):
        parallel_transport(model)


def _entangled_hoppings() -> dict:
    hop = {}
    hop[(0, 0, 0)] = np.array([[0.0, -1.0, -0.5], [-1.0, 0.0, 0.0], [-0.5, 0.0, 1.5]], dtype=complex)
    fwd = np.zeros((3, 3), dtype=complex)
    fwd[1, 0] = -0.4
    fwd[2, 2] = -0.3
    hop[(1, 0, 0)] = fwd
    hop[(-1, 0, 0)] = fwd.conj().T
    for R in [(0, 1, 0), (0, -1, 0), (0, 0, 1), (0, 0, -1)]:
        hop[R] = -0.2 * np.eye(3, dtype=complex)
    return hop


def test_transport_of_a_disentangled_gauge() -> None:
    trials = np.eye(3)[:, [0]]
    model = tight_binding_model(np.eye(3), _entangled_hoppings(), (3, 3, 3), trials, n_bands=2)
    assert (model.n_bands, model.n_wann) == (2, 1)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DisentanglementNotConverged)
        U_dis, _ = disentangle(model, DisentangleParameters(max_iterations=300))

    model = _random_phases(model.with_gauge(U_dis), seed=7)
    before = omega(model).omega
    U = parallel_transport(model)

    assert U.shape == (model.n_kpts, 2, 1)
    assert is_unitary(U)
    # transport only rotates inside the disentangled subspace
    assert np.allclose(U @ np.conj(np.swapaxes(U, -1, -2)), model.U @ np.conj(np.swapaxes(model.U, -1, -2)))
    assert omega(model, U).omega < 0.5 * before
