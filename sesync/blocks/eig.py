"""
Minimum-eigenpair computation for the optimality certificate S - Λ(Y).

Large operators use Lanczos (ARPACK) with spectral shifting: the
largest-magnitude eigenvalue λ_lm is computed first; if it is negative it is
already the minimum, otherwise the minimum eigenvalue of S - Λ becomes the
largest-magnitude eigenvalue of S - Λ - 2 λ_lm I. Small operators are
materialized and solved densely.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.linalg as la
import scipy.sparse.linalg as spla
from scipy.sparse.linalg import ArpackError, ArpackNoConvergence

DENSE_EIG_MAX_DIM = 256


def _starting_vector(n: int) -> np.ndarray:
    # fixed start so the certificate is reproducible
    return np.random.default_rng(0).standard_normal(n)


def _largest_magnitude(
    op: spla.LinearOperator, max_iterations: int, tol: float, ncv: int, v0: np.ndarray
) -> Tuple[float, np.ndarray]:
    w, V = spla.eigsh(op, k=1, which="LM", maxiter=max_iterations, tol=tol, ncv=ncv, v0=v0)
    return float(w[0]), V[:, 0]


def minimum_eigenpair(
    op: spla.LinearOperator,
    max_iterations: int,
    tol: float,
    num_Lanczos_vectors: int,
    v0: Optional[np.ndarray] = None,
) -> Tuple[bool, float, np.ndarray]:
    """
    Returns (converged, lambda_min, v_min) for a symmetric operator.

    `tol` is an absolute accuracy target for lambda_min. A non-positive
    iteration budget never converges.
    """
    n = op.shape[0]
    if max_iterations <= 0:
        logging.debug(f"Eigen-solver given no iterations (max_iterations={max_iterations})")
        return False, float("nan"), np.zeros(n)

    if n <= DENSE_EIG_MAX_DIM:
        C = np.asarray(op.matmat(np.eye(n)), dtype=float)
        C = 0.5 * (C + C.T)
        w, V = la.eigh(C, subset_by_index=[0, 0])
        return True, float(w[0]), V[:, 0]

    ncv = int(min(n, max(num_Lanczos_vectors, 2)))
    v0 = _starting_vector(n) if v0 is None else np.asarray(v0, dtype=float)
    try:
        lam_lm, v_lm = _largest_magnitude(op, max_iterations, tol, ncv, v0)
        if lam_lm < 0:
            return True, lam_lm, v_lm

        shift = 2.0 * lam_lm
        shifted = spla.LinearOperator(
            (n, n), matvec=lambda x: op.matvec(x) - shift * x, dtype=float
        )
        # relative tolerance on |μ| ≈ shift, i.e. absolute accuracy ~ tol
        rel_tol = tol / max(shift, 1.0)
        mu, v_min = _largest_magnitude(shifted, max_iterations, rel_tol, ncv, v0)
    except ArpackNoConvergence as e:
        logging.debug(f"ARPACK did not converge: {e}")
        return False, float("nan"), np.zeros(n)
    except ArpackError as e:
        logging.warning(f"ARPACK failed: {e}")
        return False, float("nan"), np.zeros(n)

    return True, mu + shift, v_min
