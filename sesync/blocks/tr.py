from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from .aux import frobenius_inner

Mat = np.ndarray

# Callable shapes used by TNT. Iterates and tangent vectors are matrices.
Objective = Callable[[Mat], float]
HessianOperator = Callable[[Mat], Mat]
QuadraticModel = Callable[[Mat], Tuple[Mat, HessianOperator, Mat]]  # -> (grad, HessOp, NablaF)
RiemannianMetric = Callable[[Mat, Mat, Mat], float]  # (Y, V1, V2)
Retraction = Callable[[Mat, Mat], Mat]
LinearOperator = Callable[[Mat, Mat], Mat]  # (Y, V) -> V'
UserFunction = Callable[..., None]


# ---------------------------- Configuration ---------------------------- #
class TRStatus(Enum):
    """Exit reason of the truncated CG inner solver."""

    SUCCESS = "success"
    BOUNDARY = "boundary"
    NEG_CURV = "negative_curvature"
    MAX_ITER = "max_iterations"


class TNTStatus(Enum):
    """Exit reason of the outer trust-region loop."""

    GRADIENT = "gradient"
    PRECONDITIONED_GRADIENT = "preconditioned_gradient"
    RELATIVE_DECREASE = "relative_decrease"
    STEPSIZE = "stepsize"
    ITERATION_LIMIT = "iteration_limit"
    ELAPSED_TIME = "elapsed_time"


@dataclass
class TNTParams:
    # stopping criteria
    gradient_tolerance: float = 1e-6
    preconditioned_gradient_tolerance: float = 1e-6
    relative_decrease_tolerance: float = 1e-9
    stepsize_tolerance: float = 1e-9
    max_iterations: int = 1000
    max_TPCG_iterations: int = 1000
    max_computation_time: float = math.inf

    # trust-region radius control
    Delta0: float = 1.0
    eta1: float = 0.01  # accept threshold
    eta2: float = 0.9  # expand threshold
    alpha1: float = 0.25  # shrink factor
    alpha2: float = 2.5  # expand factor

    # truncated CG forcing sequence: stop when ||r|| <= ||r0|| min(||r0||^theta, kappa)
    kappa_fgr: float = 0.1
    theta: float = 0.5

    verbose: bool = False


@dataclass
class TNTResult:
    x: Optional[Mat] = None
    f: float = math.nan
    grad_f_x_norm: float = math.nan
    preconditioned_grad_f_x_norm: float = math.nan
    status: TNTStatus = TNTStatus.ITERATION_LIMIT
    elapsed_time: float = 0.0

    # per-iteration records (entry 0 is the initial point)
    objective_values: List[float] = field(default_factory=list)
    gradient_norms: List[float] = field(default_factory=list)
    preconditioned_gradient_norms: List[float] = field(default_factory=list)
    time: List[float] = field(default_factory=list)
    inner_iterations: List[int] = field(default_factory=list)
    update_step_norms: List[float] = field(default_factory=list)


# ---------------------------- Steihaug–Toint CG ---------------------------- #
def _boundary_tau(e_Pe: float, e_Pd: float, d_Pd: float, Delta: float) -> float:
    if d_Pd <= 1e-32:
        return 0.0
    disc = max(0.0, e_Pd * e_Pd + d_Pd * (Delta * Delta - e_Pe))
    return (-e_Pd + math.sqrt(disc)) / d_Pd


def truncated_cg(
    Y: Mat,
    grad: Mat,
    HessOp: HessianOperator,
    Delta: float,
    metric: RiemannianMetric,
    precon: Optional[LinearOperator] = None,
    kappa: float = 0.1,
    theta: float = 0.5,
    maxiter: int = 1000,
) -> Tuple[Mat, Mat, TRStatus, int]:
    """
    Steihaug–Toint truncated preconditioned CG for min <g,h> + 1/2 <h,H h>
    subject to ||h||_P <= Delta, where ||.||_P is the norm induced by the
    preconditioner. Returns (h, H h, status, iterations).
    """
    inner = lambda A, B: metric(Y, A, B)
    apply_prec = (lambda R: precon(Y, R)) if precon is not None else (lambda R: R)

    h = np.zeros_like(grad)
    Hh = np.zeros_like(grad)
    r = grad.copy()
    norm_r0 = math.sqrt(max(inner(r, r), 0.0))
    if norm_r0 == 0.0:
        return h, Hh, TRStatus.SUCCESS, 0

    z = apply_prec(r)
    z_r = inner(z, r)
    d_Pd = z_r
    delta = -z
    e_Pe = 0.0
    e_Pd = 0.0
    target = norm_r0 * min(norm_r0**theta, kappa)

    for k in range(maxiter):
        Hd = HessOp(delta)
        d_Hd = inner(delta, Hd)
        alpha = z_r / d_Hd if d_Hd != 0 else 0.0
        e_Pe_new = e_Pe + 2.0 * alpha * e_Pd + alpha * alpha * d_Pd

        if d_Hd <= 0 or e_Pe_new >= Delta * Delta:
            tau = _boundary_tau(e_Pe, e_Pd, d_Pd, Delta)
            status = TRStatus.NEG_CURV if d_Hd <= 0 else TRStatus.BOUNDARY
            return h + tau * delta, Hh + tau * Hd, status, k + 1

        e_Pe = e_Pe_new
        h = h + alpha * delta
        Hh = Hh + alpha * Hd
        r = r + alpha * Hd
        if math.sqrt(max(inner(r, r), 0.0)) <= target:
            return h, Hh, TRStatus.SUCCESS, k + 1

        z = apply_prec(r)
        z_r_next = inner(z, r)
        beta = z_r_next / max(z_r, 1e-32)
        z_r = z_r_next
        delta = -z + beta * delta
        e_Pd = beta * (e_Pd + alpha * d_Pd)
        d_Pd = z_r + beta * beta * d_Pd

    return h, Hh, TRStatus.MAX_ITER, maxiter


# ---------------------------- Outer loop ---------------------------- #
class TrustRegionRadius:
    """Classic ratio-test radius update (shrink on poor agreement, expand on the boundary)."""

    def __init__(self, params: TNTParams):
        self.params = params
        self.delta = float(params.Delta0)
        self.rejection_count = 0

    @staticmethod
    def ratio(predicted_reduction: float, actual_reduction: float) -> float:
        if not (predicted_reduction > 0) or not np.isfinite(actual_reduction):
            return -math.inf
        return actual_reduction / predicted_reduction

    def update(self, rho: float, cg_status: TRStatus) -> bool:
        """Adjust the radius; returns True iff the step is accepted."""
        p = self.params
        if rho < p.eta1:
            self.delta *= p.alpha1
            self.rejection_count += 1
        elif rho > p.eta2 and cg_status in (TRStatus.BOUNDARY, TRStatus.NEG_CURV):
            self.delta *= p.alpha2
        accepted = rho > p.eta1
        if accepted:
            self.rejection_count = 0
        return accepted


def TNT(
    F: Objective,
    QM: QuadraticModel,
    metric: RiemannianMetric,
    retraction: Retraction,
    Y0: Mat,
    precon: Optional[LinearOperator] = None,
    params: Optional[TNTParams] = None,
    user_function: Optional[UserFunction] = None,
) -> TNTResult:
    """
    Riemannian truncated-Newton trust-region method.

    `QM(Y)` returns the Riemannian gradient, a Hessian-vector operator at Y
    and the Euclidean gradient cache that operator closes over. Steps are
    only accepted on a sufficient ratio of actual to predicted decrease, so
    the objective is non-increasing along the recorded trace.
    """
    params = TNTParams() if params is None else params
    start = time.perf_counter()

    x = np.array(Y0, dtype=float, copy=True)
    f = float(F(x))
    grad, HessOp, _NablaF = QM(x)
    gnorm = math.sqrt(max(metric(x, grad, grad), 0.0))
    pgnorm = (
        math.sqrt(max(metric(x, grad, precon(x, grad)), 0.0)) if precon is not None else gnorm
    )

    res = TNTResult()
    res.objective_values.append(f)
    res.gradient_norms.append(gnorm)
    res.preconditioned_gradient_norms.append(pgnorm)
    res.time.append(time.perf_counter() - start)

    radius = TrustRegionRadius(params)
    status = TNTStatus.ITERATION_LIMIT

    if params.verbose:
        print(f"{'iter':>5} {'f':>16} {'|grad|':>12} {'Delta':>10} {'inner':>6} {'rho':>10}  ")

    for it in range(params.max_iterations):
        elapsed = time.perf_counter() - start
        if elapsed >= params.max_computation_time:
            status = TNTStatus.ELAPSED_TIME
            break
        if gnorm < params.gradient_tolerance:
            status = TNTStatus.GRADIENT
            break
        if precon is not None and pgnorm < params.preconditioned_gradient_tolerance:
            status = TNTStatus.PRECONDITIONED_GRADIENT
            break

        Delta = radius.delta
        h, Hh, cg_status, inner_iters = truncated_cg(
            x, grad, HessOp, Delta, metric, precon,
            kappa=params.kappa_fgr, theta=params.theta, maxiter=params.max_TPCG_iterations,
        )
        h_norm = math.sqrt(max(metric(x, h, h), 0.0))
        predicted = -(metric(x, grad, h) + 0.5 * metric(x, h, Hh))

        x_prop = retraction(x, h)
        f_prop = float(F(x_prop))
        df = f - f_prop
        rho = radius.ratio(predicted, df)
        accepted = radius.update(rho, cg_status)

        logging.debug(
            f"[TNT] it={it} f={f:.6e} |g|={gnorm:.3e} Delta={Delta:.3e} "
            f"tCG={cg_status.value}/{inner_iters} |h|={h_norm:.3e} rho={rho:.3e} "
            f"{'accept' if accepted else 'reject'}"
        )

        if user_function is not None:
            user_function(
                time.perf_counter() - start, x, f, grad, HessOp, Delta,
                inner_iters, h, df, rho, accepted,
            )

        f_prev = f
        if accepted:
            x = x_prop
            f = f_prop
            grad, HessOp, _NablaF = QM(x)
            gnorm = math.sqrt(max(metric(x, grad, grad), 0.0))
            pgnorm = (
                math.sqrt(max(metric(x, grad, precon(x, grad)), 0.0))
                if precon is not None
                else gnorm
            )

        res.objective_values.append(f)
        res.gradient_norms.append(gnorm)
        res.preconditioned_gradient_norms.append(pgnorm)
        res.time.append(time.perf_counter() - start)
        res.inner_iterations.append(inner_iters)
        res.update_step_norms.append(h_norm if accepted else 0.0)

        if params.verbose:
            print(
                f"{it:5d} {f:16.8e} {gnorm:12.4e} {Delta:10.3e} {inner_iters:6d} {rho:10.3e} "
                f"{'' if accepted else '(rejected)'}"
            )

        if accepted and (f_prev - f) / (abs(f_prev) + 1e-16) < params.relative_decrease_tolerance:
            status = TNTStatus.RELATIVE_DECREASE
            break
        if h_norm < params.stepsize_tolerance:
            status = TNTStatus.STEPSIZE
            break
    else:
        if gnorm < params.gradient_tolerance:
            status = TNTStatus.GRADIENT

    res.x = x
    res.f = f
    res.grad_f_x_norm = gnorm
    res.preconditioned_grad_f_x_norm = pgnorm
    res.status = status
    res.elapsed_time = time.perf_counter() - start
    return res
