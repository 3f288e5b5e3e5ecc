import warnings

import numpy as np
import pytest

from wannier_gauge.config import MaxLocalizeParameters, SplitParameters
from wannier_gauge.exceptions import MaxIterExceeded, NonSeparableSubspaceError
from wannier_gauge.max_localize import max_localize
from wannier_gauge.model import Model
from wannier_gauge.spread import omega
from wannier_gauge.split import indicator_eigen, max_cross_overlap, split_subspace, split_wannierize
from wannier_gauge.tightbinding import cubic_dimer_hoppings, tight_binding_model
from wannier_gauge.utils import is_unitary, unitary_exp


def _dimer(seed=None) -> Model:
    model = tight_binding_model(np.eye(3), cubic_dimer_hoppings(), (3, 3, 3), np.eye(2))
    if seed is not None:
        rng = np.random.default_rng(seed)
        X = rng.normal(size=(model.n_kpts, 2, 2)) + 1j * rng.normal(size=(model.n_kpts, 2, 2))
        model.U = model.U @ unitary_exp(0.5 * (X - np.conj(np.swapaxes(X, -1, -2))))
    return model


def _hybridized_hoppings() -> dict:
    hop = {}
    hop[(0, 0, 0)] = np.array([[0.0, -1.0, -0.5], [-1.0, 0.0, 0.0], [-0.5, 0.0, 1.5]], dtype=complex)
    fwd = np.zeros((3, 3), dtype=complex)
    fwd[1, 0] = -0.4
    hop[(1, 0, 0)] = fwd
    hop[(-1, 0, 0)] = fwd.conj().T
    return hop


def test_energy_split_separates_the_bands() -> None:
    model = _dimer(seed=3)
    models, gauges = split_subspace(model, 1)

    assert len(models) == len(gauges) == 2
    Uv, Uc = gauges
    assert Uv.shape == Uc.shape == (model.n_kpts, 2, 1)
    assert np.allclose(np.abs(Uv[:, 0, 0]), 1.0)
    assert np.allclose(np.abs(Uc[:, 1, 0]), 1.0)
    assert np.allclose(models[0].E[:, 0], model.E[:, 0])
    assert np.allclose(models[1].E[:, 0], model.E[:, 1])
    for sub in models:
        assert sub.n_bands == sub.n_wann == 1


def test_block_model_spread_matches_full_basis() -> None:
    model = _dimer(seed=4)
    models, gauges = split_subspace(model, 1)
    for sub, Ub in zip(models, gauges):
        assert np.isclose(omega(sub).omega, omega(model, Ub).omega)


def test_indicator_eigen_orders_blocks() -> None:
    model = _dimer(seed=6)
    evals, V = indicator_eigen(model, "energy")
    assert np.all(np.diff(evals, axis=1) >= 0)
    assert is_unitary(V)

    evals, _ = indicator_eigen(model, "bands", np.array([False, True]))
    assert np.allclose(evals[:, 0], 1.0)
    assert np.allclose(evals[:, 1], 0.0)


@pytest.mark.parametrize("partition", [(1, 2), 0, (2,)])
def test_bad_partitions_raise(partition) -> None:
    with pytest.raises(NonSeparableSubspaceError):
        split_subspace(_dimer(), partition)


def test_degenerate_indicator_raises() -> None:
    model = _dimer(seed=1)
    flat = Model.build(model.lattice, model.k_points, model.M, model.U, bvectors=model.bvectors)
    with pytest.raises(NonSeparableSubspaceError):
        split_subspace(flat, 1)


def test_band_mask_split() -> None:
    model = _dimer(seed=2)
    params = SplitParameters(indicator="bands")
    models, gauges = split_subspace(model, 1, params, band_mask=np.array([True, False]))

    assert np.allclose(np.abs(gauges[0][:, 0, 0]), 1.0)
    assert np.allclose(gauges[0][:, 1, 0], 0.0)
    assert np.allclose(np.abs(gauges[1][:, 1, 0]), 1.0)

    with pytest.raises(NonSeparableSubspaceError):
        split_subspace(model, (1, 1), params)


def test_band_mask_leaking_out_of_the_subspace_raises() -> None:
    trials = np.eye(3)[:, :2]
    model = tight_binding_model(np.eye(3), _hybridized_hoppings(), (3, 3, 3), trials)
    assert (model.n_bands, model.n_wann) == (3, 2)
    mask = np.array([True, False, False])
    with pytest.raises(NonSeparableSubspaceError):
        split_subspace(model, 1, SplitParameters(indicator="bands"), band_mask=mask)


def test_split_wannierize_gauges() -> None:
    model = _dimer(seed=8)
    (model_v, Uv), (model_c, Uc) = split_wannierize(model, 1)

    assert Uv.shape == Uc.shape == (model.n_kpts, 2, 1)
    assert is_unitary(Uv) and is_unitary(Uc)
    # the two blocks stay orthogonal at every k
    assert np.allclose(np.conj(np.swapaxes(Uv, -1, -2)) @ Uc, 0.0)
    assert np.isclose(omega(model_v).omega, omega(model, Uv).omega)
    assert np.isclose(omega(model_c).omega, omega(model, Uc).omega)


def test_blocks_coupled_across_k_raise() -> None:
    model = _dimer(seed=5)
    _, gauges = split_subspace(model, 1)
    assert max_cross_overlap(model, gauges) < 0.5

    # relabel the two bands on every other k-point: the energy blocks then
    # jump between the bonding and antibonding states from one k to the next
    swapped = model.copy()
    swapped.E[::2] = swapped.E[::2, ::-1]
    with pytest.raises(NonSeparableSubspaceError):
        split_subspace(swapped, 1)

    loose = SplitParameters(overlap_tolerance=1.5)
    _, gauges = split_subspace(swapped, 1, loose)
    assert max_cross_overlap(swapped, gauges) > 0.9


def test_split_spread_is_bounded_below_by_the_full_manifold() -> None:
    model = _dimer(seed=12)
    params = SplitParameters(run_opt_rotate=True, run_max_localize=True)
    loc = MaxLocalizeParameters(max_iterations=100)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MaxIterExceeded)
        (_, Uv), (_, Uc) = split_wannierize(model, 1, params, loc)
        split_sum = omega(model, Uv).omega + omega(model, Uc).omega

        # the two block gauges together are one gauge of the full manifold
        combined = np.concatenate([Uv, Uc], axis=2)
        assert is_unitary(combined)
        assert np.isclose(omega(model, combined).omega, split_sum)

        U_full, report = max_localize(model.with_gauge(combined), loc)
        U_scrambled, _ = max_localize(model, loc)

    assert report.history[0] == pytest.approx(split_sum)
    assert omega(model, U_full).omega <= split_sum + 1e-10
    assert omega(model, U_scrambled).omega < omega(model).omega
