"""
Tests for the minimum-eigenpair computation (dense and Lanczos paths).
"""

import numpy as np
import pytest
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from sesync.blocks.eig import DENSE_EIG_MAX_DIM, minimum_eigenpair


def diagonal_operator(values):
    return spla.aslinearoperator(sp.diags(np.asarray(values, dtype=float)))


def test_dense_path(rng):
    B = rng.standard_normal((20, 20))
    C = B + B.T
    converged, lam, v = minimum_eigenpair(spla.aslinearoperator(C), 100, 1e-8, 20)
    assert converged
    assert lam == pytest.approx(np.linalg.eigvalsh(C)[0], abs=1e-10)
    np.testing.assert_allclose(C @ v, lam * v, atol=1e-8)


@pytest.mark.parametrize("lowest", [-3.0, 0.0, 0.25])
def test_lanczos_path_with_shift(lowest):
    n = DENSE_EIG_MAX_DIM + 144
    values = np.concatenate([[lowest], np.linspace(1.0, 5.0, n - 1)])
    converged, lam, v = minimum_eigenpair(diagonal_operator(values), 10000, 1e-8, 20)
    assert converged
    assert lam == pytest.approx(lowest, abs=1e-6)
    assert abs(abs(v[0]) - 1.0) < 1e-3


def test_lanczos_path_negative_dominant():
    # the largest-magnitude eigenvalue is already the minimum
    n = DENSE_EIG_MAX_DIM + 44
    values = np.concatenate([[-50.0], np.linspace(0.0, 2.0, n - 1)])
    converged, lam, _ = minimum_eigenpair(diagonal_operator(values), 10000, 1e-8, 20)
    assert converged
    assert lam == pytest.approx(-50.0, abs=1e-6)


@pytest.mark.parametrize("max_iterations", [0, -5])
def test_no_iterations_never_converges(max_iterations):
    converged, lam, v = minimum_eigenpair(diagonal_operator(np.arange(10.0)), max_iterations, 1e-8, 20)
    assert not converged
    assert np.isnan(lam)
    assert v.shape == (10,)


def test_lanczos_iteration_cap_reports_non_convergence():
    n = DENSE_EIG_MAX_DIM + 400
    values = np.linspace(1.0, 2.0, n)
    converged, lam, _ = minimum_eigenpair(diagonal_operator(values), 1, 1e-14, 3)
    assert not converged
    assert np.isnan(lam)
