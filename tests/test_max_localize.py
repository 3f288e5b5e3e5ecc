import warnings

import numpy as np
import pytest

from wannier_gauge.bvector import BVectors
from wannier_gauge.config import DisentangleParameters, MaxLocalizeParameters
from wannier_gauge.disentangle import disentangle
from wannier_gauge.exceptions import MaxIterExceeded, NumericalDivergenceWarning
from wannier_gauge.max_localize import max_localize
from wannier_gauge.model import Model
from wannier_gauge.optimize import OptimizationStatus
from wannier_gauge.spread import omega
from wannier_gauge.tightbinding import cubic_dimer_hoppings, tight_binding_model
from wannier_gauge.utils import is_unitary, unitary_exp


def _toy_model() -> Model:
    delta = 1.0 / np.sqrt(2.0)
    bvectors = BVectors(
        vectors=np.array([[delta, 0, 0], [-delta, 0, 0]]),
        weights=np.array([1.0, 1.0]),
        kpb_k=np.array([[1, 1], [0, 0]]),
        kpb_G=np.zeros((2, 2, 3), dtype=int),
    )
    M = np.zeros((2, 2, 1, 1), dtype=complex)
    M[0, 0] = np.exp(0.3j)
    M[0, 1] = np.exp(-0.1j)
    M[1, 0] = np.conj(M[0, 1])
    M[1, 1] = np.conj(M[0, 0])
    return Model(
        lattice=np.eye(3),
        k_grid=(2, 1, 1),
        k_points=np.array([[0, 0, 0], [0.5, 0, 0]]),
        bvectors=bvectors,
        frozen_bands=np.zeros((2, 1), dtype=bool),
        M=M,
        U=np.ones((2, 1, 1), dtype=complex),
        E=np.zeros((2, 1)),
    )


def _scrambled_dimer(seed: int = 11) -> Model:
    rng = np.random.default_rng(seed)
    model = tight_binding_model(np.eye(3), cubic_dimer_hoppings(), (3, 3, 3), np.eye(2))
    X = rng.normal(size=(model.n_kpts, 2, 2)) + 1j * rng.normal(size=(model.n_kpts, 2, 2))
    A = 0.5 * (X - np.conj(np.swapaxes(X, -1, -2)))
    model.U = model.U @ unitary_exp(A, 0.4)
    return model


def test_toy_converges_to_phase_aligned_gauge() -> None:
    model = _toy_model()
    U, report = max_localize(model)

    assert report.status is OptimizationStatus.CONVERGED
    assert report.iterations <= 10
    assert omega(model, U).omega < 1e-10
    # relative phase between the two k-points cancels the overlap phases
    rel = np.angle(U[1, 0, 0] * np.conj(U[0, 0, 0]))
    assert abs(rel + 0.1) < 1e-6
    assert is_unitary(U)


def test_history_is_monotone_and_gauge_unitary() -> None:
    model = _scrambled_dimer()
    U, report = max_localize(model, MaxLocalizeParameters(max_iterations=100))

    history = np.asarray(report.history)
    assert np.all(np.diff(history) <= 1e-12)
    assert history[-1] < history[0]
    assert is_unitary(U, atol=1e-8)
    assert report.status in (OptimizationStatus.CONVERGED, OptimizationStatus.MAX_ITER_EXCEEDED)


def test_steepest_descent_also_decreases() -> None:
    model = _scrambled_dimer(seed=5)
    params = MaxLocalizeParameters(max_iterations=30, conjugate_gradient=False)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MaxIterExceeded)
        U, report = max_localize(model, params)
    assert np.all(np.diff(report.history) <= 1e-12)
    assert omega(model, U).omega < report.history[0]


def test_iteration_cap_returns_best_gauge_with_warning() -> None:
    model = _toy_model()
    with pytest.warns(MaxIterExceeded):
        U, report = max_localize(model, MaxLocalizeParameters(max_iterations=1))
    assert report.status is OptimizationStatus.MAX_ITER_EXCEEDED
    assert report.iterations == 1
    assert np.isclose(omega(model, U).omega, min(report.history))


def test_fixed_step_divergence_returns_last_valid_gauge() -> None:
    model = _toy_model()
    params = MaxLocalizeParameters(line_search=False, step_size=50.0)
    with pytest.warns(NumericalDivergenceWarning):
        U, report = max_localize(model, params)
    assert report.status is OptimizationStatus.DIVERGED
    assert np.allclose(U, model.U)


def test_workers_do_not_change_result() -> None:
    model = _scrambled_dimer()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MaxIterExceeded)
        U1, _ = max_localize(model, MaxLocalizeParameters(max_iterations=20))
        U4, _ = max_localize(model, MaxLocalizeParameters(max_iterations=20, n_workers=4))
    assert np.allclose(U1, U4)


def test_disentangle_then_maxloc_matches_maxloc_when_nothing_to_disentangle() -> None:
    model = _scrambled_dimer()
    params = MaxLocalizeParameters(max_iterations=40)

    direct, _ = max_localize(model, params)
    U_dis, report = disentangle(model, DisentangleParameters())
    assert report.status is OptimizationStatus.CONVERGED
    chained, _ = max_localize(model.with_gauge(U_dis), params)

    assert np.isclose(omega(model, direct).omega, omega(model, chained).omega)
    assert np.allclose(direct, chained)
