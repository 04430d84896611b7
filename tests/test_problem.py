"""
Tests for SESyncProblem: derivatives, certificate, initialization, rounding.
"""

import numpy as np
import pytest

from sesync.blocks.aux import Formulation, Preconditioner, ProjectionFactorization
from sesync.problem import SESyncProblem


def inner(A, B):
    return float(np.vdot(A, B))


@pytest.fixture(params=[Formulation.SIMPLIFIED, Formulation.EXPLICIT], ids=["simplified", "explicit"])
def formulation(request):
    return request.param


@pytest.fixture
def noisy_problem(noisy_se2, formulation):
    meas, _, _ = noisy_se2
    problem = SESyncProblem(meas, formulation=formulation, preconditioner=Preconditioner.JACOBI, seed=1)
    problem.set_relaxation_rank(4)
    yield problem
    problem.close()


def lift(X, r, rng):
    """Embed a d x k matrix into R^{r x k} through a random orthonormal frame."""
    U, _ = np.linalg.qr(rng.standard_normal((r, X.shape[0])))
    return U @ X


class TestDerivatives:
    def test_gradient_matches_directional_derivative(self, noisy_problem, rng):
        p = noisy_problem
        Y = p.random_sample()
        V = p.manifold.project(Y, rng.standard_normal(Y.shape))
        t = 1e-5
        fd = (p.evaluate_objective(p.retract(Y, t * V)) - p.evaluate_objective(p.retract(Y, -t * V))) / (2 * t)
        assert fd == pytest.approx(inner(p.Riemannian_gradient(Y), V), rel=1e-5, abs=1e-7)

    def test_euclidean_gradient(self, noisy_problem, rng):
        p = noisy_problem
        Y = rng.standard_normal(p.iterate_shape())
        E = rng.standard_normal(Y.shape)
        t = 1e-6
        fd = (p.evaluate_objective(Y + t * E) - p.evaluate_objective(Y - t * E)) / (2 * t)
        assert fd == pytest.approx(inner(p.Euclidean_gradient(Y), E), rel=1e-6)

    def test_gradient_is_tangent(self, noisy_problem):
        p = noisy_problem
        Y = p.random_sample()
        G = p.Riemannian_gradient(Y)
        np.testing.assert_allclose(p.manifold.project(Y, G), G, atol=1e-10)

    def test_hessian_matches_finite_difference_of_gradient(self, noisy_problem, rng):
        p = noisy_problem
        Y = p.random_sample()
        V = p.manifold.project(Y, rng.standard_normal(Y.shape))
        t = 1e-6
        fd = p.manifold.project(
            Y, (p.Riemannian_gradient(Y + t * V) - p.Riemannian_gradient(Y - t * V)) / (2 * t)
        )
        H = p.Riemannian_Hessian_vector_product(Y, p.Euclidean_gradient(Y), V)
        assert np.linalg.norm(H - fd) <= 1e-5 * np.linalg.norm(H)

    def test_hessian_is_self_adjoint(self, noisy_problem, rng):
        p = noisy_problem
        Y = p.random_sample()
        NablaF = p.Euclidean_gradient(Y)
        U = p.manifold.project(Y, rng.standard_normal(Y.shape))
        V = p.manifold.project(Y, rng.standard_normal(Y.shape))
        HU = p.Riemannian_Hessian_vector_product(Y, NablaF, U)
        HV = p.Riemannian_Hessian_vector_product(Y, NablaF, V)
        assert inner(U, HV) == pytest.approx(inner(HU, V), rel=1e-9, abs=1e-9)

    def test_preconditioned_direction_is_tangent(self, noisy_problem, rng):
        p = noisy_problem
        assert p.has_preconditioner
        Y = p.random_sample()
        Z = p.precondition(Y, p.Riemannian_gradient(Y))
        np.testing.assert_allclose(p.manifold.project(Y, Z), Z, atol=1e-10)


class TestCertificate:
    def test_operator_matches_dense_matrix(self, noisy_problem, rng):
        p = noisy_problem
        Y = p.random_sample()
        k = p.manifold.num_cols
        C = p.certificate_operator(Y).matmat(np.eye(k))
        np.testing.assert_allclose(C, C.T, atol=1e-9)
        x = rng.standard_normal(k)
        np.testing.assert_allclose(p.certificate_operator(Y).matvec(x), C @ x, atol=1e-9)

        S = p.data_matrix_product(np.eye(k))
        Lambda = p.compute_Lambda_blocks(Y)
        blockdiag = np.zeros((k, k))
        off, d = p.manifold.offset, p.d
        for i in range(p.n):
            sl = slice(off + i * d, off + (i + 1) * d)
            blockdiag[sl, sl] = Lambda[i]
        np.testing.assert_allclose(C, S - blockdiag, atol=1e-9)

    def test_ground_truth_is_certified(self, cycle3_se3):
        meas, Rs, _ = cycle3_se3
        p = SESyncProblem(meas)
        Y = np.hstack(Rs)
        converged, lam, v = p.compute_certificate_min_eig(Y, 1000, 1e-8, 20)
        assert converged
        assert lam > -1e-8
        # the certificate annihilates Y^T at a critical point
        C = p.certificate_operator(Y)
        np.testing.assert_allclose(C.matmat(Y.T), 0.0, atol=1e-9)

    def test_non_positive_iteration_budget(self, noisy_problem):
        Y = noisy_problem.random_sample()
        converged, lam, _ = noisy_problem.compute_certificate_min_eig(Y, 0, 1e-5, 20)
        assert not converged and np.isnan(lam)


class TestInitialization:
    def test_chordal_is_exact_without_noise(self, cycle3_se3):
        meas, Rs, _ = cycle3_se3
        p = SESyncProblem(meas)
        p.set_relaxation_rank(5)
        Y = p.chordal_initialization()
        assert Y.shape == (5, 9)
        np.testing.assert_allclose(Y[3:], 0.0)
        for i in range(3):
            np.testing.assert_allclose(Y[:3, 3 * i : 3 * i + 3], Rs[-1].T @ Rs[i], atol=1e-10)
        assert p.evaluate_objective(Y) == pytest.approx(0.0, abs=1e-10)

    def test_chordal_explicit_includes_optimal_translations(self, cycle3_se2):
        meas, Rs, ts = cycle3_se2
        p = SESyncProblem(meas, formulation=Formulation.EXPLICIT)
        Y = p.chordal_initialization()
        assert Y.shape == (2, 3 + 6)
        assert p.evaluate_objective(Y) == pytest.approx(0.0, abs=1e-10)
        np.testing.assert_allclose(Y[:, 2], 0.0, atol=1e-12)

    def test_random_sample_is_seeded(self, noisy_se2):
        meas, _, _ = noisy_se2
        a, b = SESyncProblem(meas, seed=5), SESyncProblem(meas, seed=5)
        for p in (a, b):
            p.set_relaxation_rank(4)
        Ya, Yb = a.random_sample(), b.random_sample()
        np.testing.assert_array_equal(Ya, Yb)
        assert a.manifold.check(Ya)

    def test_rank_below_dimension(self, noisy_se2):
        meas, _, _ = noisy_se2
        p = SESyncProblem(meas)
        with pytest.raises(ValueError):
            p.set_relaxation_rank(1)
        assert p.relaxation_rank() == 2
        assert p.iterate_shape(7) == (7, 16)


class TestRounding:
    def test_round_lifted_ground_truth(self, cycle3_se3, formulation, rng):
        meas, Rs, ts = cycle3_se3
        p = SESyncProblem(meas, formulation=formulation)
        R = np.hstack(Rs)
        X = R if formulation is Formulation.SIMPLIFIED else np.hstack([np.column_stack(ts), R])
        Y = lift(X, 5, rng)
        xhat = p.round_solution(Y)
        assert xhat.shape == (3, 3 + 9)
        for i in range(3):
            block = xhat[:, 3 + 3 * i : 3 + 3 * i + 3]
            np.testing.assert_allclose(block.T @ block, np.eye(3), atol=1e-10)
            assert np.linalg.det(block) == pytest.approx(1.0)
        np.testing.assert_allclose(xhat[:, 2], 0.0, atol=1e-12)
        assert p.evaluate_rounded_objective(xhat) == pytest.approx(0.0, abs=1e-9)

    def test_reflected_solution_is_corrected(self, cycle3_se3):
        meas, Rs, _ = cycle3_se3
        p = SESyncProblem(meas)
        Y = np.diag([1.0, 1.0, -1.0]) @ np.hstack(Rs)
        xhat = p.round_solution(Y)
        dets = [np.linalg.det(xhat[:, 3 + 3 * i : 6 + 3 * i]) for i in range(3)]
        np.testing.assert_allclose(dets, 1.0)
        assert p.evaluate_rounded_objective(xhat) == pytest.approx(0.0, abs=1e-9)

    def test_rounded_objective_agrees_across_formulations(self, noisy_se2, rng):
        meas, _, _ = noisy_se2
        simplified = SESyncProblem(meas)
        explicit = SESyncProblem(meas, formulation=Formulation.EXPLICIT,
                                 projection_factorization=ProjectionFactorization.QR)
        simplified.set_relaxation_rank(3)
        xhat = simplified.round_solution(simplified.random_sample())
        assert explicit.evaluate_rounded_objective(xhat) == pytest.approx(
            simplified.evaluate_rounded_objective(xhat), rel=1e-9
        )
