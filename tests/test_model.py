import numpy as np
import pytest

from wannier_gauge.exceptions import InputInconsistencyError
from wannier_gauge.model import Model
from wannier_gauge.tightbinding import cubic_dimer_hoppings, tight_binding_model
from wannier_gauge.utils import is_unitary, rotate_M


def _dimer_model(nk: int = 3) -> Model:
    return tight_binding_model(np.eye(3), cubic_dimer_hoppings(), (nk, nk, nk), np.eye(2))


def test_dimensions_and_reciprocal_lattice() -> None:
    model = _dimer_model()
    assert model.k_grid == (3, 3, 3)
    assert (model.n_kpts, model.n_bands, model.n_wann, model.n_bvecs) == (27, 2, 2, 6)
    assert np.allclose(model.lattice.T @ model.reciprocal_lattice, 2 * np.pi * np.eye(3))
    assert is_unitary(model.U)


def test_energies_are_the_dimer_bands() -> None:
    model = _dimer_model()
    kx = 2 * np.pi * model.k_points[:, 0]
    ky = 2 * np.pi * model.k_points[:, 1]
    kz = 2 * np.pi * model.k_points[:, 2]
    diag = -0.4 * (np.cos(ky) + np.cos(kz))
    split = np.abs(-1.0 - 0.4 * np.exp(-1j * kx))
    assert np.allclose(model.E[:, 0], diag - split)
    assert np.allclose(model.E[:, 1], diag + split)


def test_overlaps_are_hermitian_partners() -> None:
    model = _dimer_model()
    bv = model.bvectors
    for ib in range(bv.n_bvecs):
        ib_neg = bv.index_of(-bv.vectors[ib])
        for k in range(model.n_kpts):
            kpb = bv.kpb_k[k, ib]
            assert np.allclose(model.M[kpb, ib_neg], model.M[k, ib].conj().T)


def test_validation_errors() -> None:
    model = _dimer_model()
    with pytest.raises(InputInconsistencyError):
        model.with_gauge(2.0 * model.U)
    with pytest.raises(InputInconsistencyError):
        Model.build(model.lattice, model.k_points, model.M[:, :3], model.U, bvectors=model.bvectors)
    with pytest.raises(InputInconsistencyError):
        Model.build(model.lattice, model.k_points, model.M, model.U, model.E[:, :1],
                    bvectors=model.bvectors)
    with pytest.raises(InputInconsistencyError):
        Model.build(np.zeros((3, 3)), model.k_points, model.M, model.U, bvectors=model.bvectors)


def test_copy_is_independent() -> None:
    model = _dimer_model()
    other = model.copy()
    other.U[0] = 0.0
    other.M[0, 0] = 0.0
    assert is_unitary(model.U)
    assert not np.allclose(model.M[0, 0], 0.0)


def test_rotated_model_has_identity_gauge() -> None:
    model = _dimer_model()
    U = model.U[:, :, :1]
    sub = model.rotated(U)
    assert (sub.n_bands, sub.n_wann) == (1, 1)
    assert np.allclose(sub.U, 1.0)
    assert np.allclose(sub.M, rotate_M(model.M, model.bvectors.kpb_k, U))
    assert not sub.frozen_bands.any()
