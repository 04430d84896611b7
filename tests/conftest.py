"""
pytest configuration and synthetic pose-graph fixtures.
"""

import logging

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from sesync.blocks.aux import Preconditioner, RelativePoseMeasurement, SESyncOpts

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)  # Reduce noise during tests


def rot2(theta):
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, -s], [s, c]])


def random_rotation(d, rng):
    Q, R = np.linalg.qr(rng.standard_normal((d, d)))
    Q = Q @ np.diag(np.sign(np.diag(R)))
    if np.linalg.det(Q) < 0:
        Q[:, -1] *= -1.0
    return Q


def measurements_from_poses(Rs, ts, edges, kappa=1.0, tau=1.0, rot_noise=None, trans_noise=0.0, rng=None):
    """R_ij = R_i^T R_j, t_ij = R_i^T (t_j - t_i), optionally perturbed."""
    out = []
    for i, j in edges:
        R = Rs[i].T @ Rs[j]
        t = Rs[i].T @ (ts[j] - ts[i])
        if rot_noise is not None:
            R = R @ rot_noise(rng)
        if trans_noise > 0:
            t = t + trans_noise * rng.standard_normal(t.shape)
        out.append(RelativePoseMeasurement(i, j, R, t, kappa, tau))
    return out


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def cycle3_se3():
    """Noiseless 3-pose cycle in SE(3) together with its ground truth."""
    gen = np.random.default_rng(7)
    Rs = [random_rotation(3, gen) for _ in range(3)]
    ts = [gen.standard_normal(3) for _ in range(3)]
    meas = measurements_from_poses(Rs, ts, [(0, 1), (1, 2), (0, 2)])
    return meas, Rs, ts


@pytest.fixture
def cycle3_se2():
    """Noiseless 3-pose cycle in SE(2) together with its ground truth."""
    Rs = [rot2(0.3), rot2(1.4), rot2(-2.0)]
    ts = [np.array([0.0, 0.0]), np.array([1.0, 0.5]), np.array([0.2, 2.0])]
    meas = measurements_from_poses(Rs, ts, [(0, 1), (1, 2), (0, 2)])
    return meas, Rs, ts


@pytest.fixture
def coincident_cycle3_se2():
    """
    3-pose SE(2) cycle with identity rotations and zero translations, plus a
    first-order critical point that is not a global optimum: rotations
    (I, I, -I). Its certificate has minimum eigenvalue -3.
    """
    I = np.eye(2)
    meas = [RelativePoseMeasurement(i, j, I, np.zeros(2)) for i, j in [(0, 1), (1, 2), (0, 2)]]
    Y_saddle = np.hstack([I, I, -I])
    return meas, Y_saddle


@pytest.fixture
def noisy_se2():
    """Eight poses on a loop with odometry and loop closures, mildly noisy."""
    gen = np.random.default_rng(3)
    n = 8
    Rs = [rot2(2 * np.pi * k / n) for k in range(n)]
    ts = [3.0 * np.array([np.cos(2 * np.pi * k / n), np.sin(2 * np.pi * k / n)]) for k in range(n)]
    edges = [(k, k + 1) for k in range(n - 1)] + [(0, n - 1), (1, 5), (2, 6)]
    meas = measurements_from_poses(
        Rs, ts, edges, kappa=10.0, tau=5.0,
        rot_noise=lambda g: rot2(0.02 * g.standard_normal()), trans_noise=0.02, rng=gen,
    )
    return meas, Rs, ts


@pytest.fixture
def stiff_se3_loop():
    """Thirty SE(3) poses on a loop with very high measurement precisions."""
    gen = np.random.default_rng(5)
    n = 30
    angles = 2 * np.pi * np.arange(n) / n
    Rs = list(Rotation.from_euler("z", angles).as_matrix())
    ts = [np.array([4.0 * np.cos(a), 4.0 * np.sin(a), 0.1 * np.sin(3 * a)]) for a in angles]
    edges = [(k, k + 1) for k in range(n - 1)] + [(0, n - 1)]
    meas = measurements_from_poses(
        Rs, ts, edges, kappa=1e6, tau=1e5,
        rot_noise=lambda g: Rotation.from_rotvec(0.01 * g.standard_normal(3)).as_matrix(),
        trans_noise=0.01, rng=gen,
    )
    return meas, Rs, ts


@pytest.fixture
def long_se2_loop():
    """150-pose SE(2) loop; its certificate is too large to solve densely."""
    gen = np.random.default_rng(9)
    n = 150
    Rs = [rot2(2 * np.pi * k / n) for k in range(n)]
    ts = [20.0 * np.array([np.cos(2 * np.pi * k / n), np.sin(2 * np.pi * k / n)]) for k in range(n)]
    edges = [(k, k + 1) for k in range(n - 1)] + [(0, n - 1), (0, n // 2)]
    meas = measurements_from_poses(
        Rs, ts, edges, kappa=10.0, tau=5.0,
        rot_noise=lambda g: rot2(0.01 * g.standard_normal()), trans_noise=0.01, rng=gen,
    )
    return meas, Rs, ts


@pytest.fixture
def tight_opts():
    """Tolerances tight enough to compare against closed-form answers."""
    return SESyncOpts(
        r0=3,
        rmax=6,
        grad_norm_tol=1e-6,
        preconditioned_grad_norm_tol=1e-12,
        rel_func_decrease_tol=1e-15,
        stepsize_tol=1e-12,
        min_eig_num_tol=1e-5,
        max_iterations=500,
        precon=Preconditioner.JACOBI,
    )
