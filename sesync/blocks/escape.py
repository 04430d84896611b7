import logging
from typing import Optional, Tuple

import numpy as np

from .aux import ManifoldProblem

# Step-length constants of the escape line search (not configurable).
ESCAPE_INITIAL_STEP_FACTOR = 200.0
ESCAPE_MIN_STEPSIZE = 1e-6


def escape_saddle(
    problem: ManifoldProblem,
    Y: np.ndarray,
    lambda_min: float,
    v_min: np.ndarray,
    gradient_tolerance: float,
) -> Tuple[bool, Optional[np.ndarray]]:
    """
    Leave the saddle point Y (rank r) for a point at rank r + 1.

    v_min is an eigenvector of the certificate matrix for the negative
    eigenvalue lambda_min. Lifting Y to [Y; 0], the tangent vector
    Ydot = e_{r+1} v_min^T is a direction of negative curvature, so a small
    enough step along it strictly decreases the objective. The step starts at
    200 * tol / |lambda_min| (the local quadratic model then predicts a
    gradient well above the solver's stopping tolerance) and is halved until
    the trial point has a lower objective and a gradient norm above
    `gradient_tolerance`, or until it drops to the floor.

    Returns (success, Y_plus); Y_plus is None on failure. Deterministic in
    its inputs.
    """
    Y = np.asarray(Y, dtype=float)
    v_min = np.asarray(v_min, dtype=float).ravel()
    r, k = Y.shape
    if v_min.size != k:
        raise ValueError(f"v_min has length {v_min.size}, expected {k}")
    if not lambda_min < 0:
        raise ValueError(f"lambda_min must be negative at a saddle, got {lambda_min}")

    FY = problem.evaluate_objective(Y)

    Y_augmented = np.zeros((r + 1, k))
    Y_augmented[:r] = Y
    Ydot = np.zeros((r + 1, k))
    Ydot[r] = v_min

    alpha = ESCAPE_INITIAL_STEP_FACTOR * gradient_tolerance / abs(lambda_min)
    it = 0
    while True:
        alpha /= 2
        it += 1

        Ytest = problem.retract(Y_augmented, alpha * Ydot)
        FY_test = problem.evaluate_objective(Ytest)
        FY_test_gradnorm = float(np.linalg.norm(problem.Riemannian_gradient(Ytest)))

        if FY_test < FY and FY_test_gradnorm > gradient_tolerance:
            logging.debug(
                f"[Escape] accepted alpha={alpha:.3e} after {it} trials: "
                f"F={FY_test:.6e} (saddle {FY:.6e}), |grad|={FY_test_gradnorm:.3e}"
            )
            return True, Ytest

        if alpha <= ESCAPE_MIN_STEPSIZE:
            break

    logging.debug(
        f"[Escape] step size fell to {alpha:.3e} after {it} trials without leaving the saddle"
    )
    return False, None
