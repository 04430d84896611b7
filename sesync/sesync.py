# sesync.py
# SE-Sync driver: the Riemannian Staircase over a rank-restricted relaxation.
# - Solve at rank r with the truncated-Newton trust-region method (TNT)
# - Certify with the minimum eigenvalue of S - Λ(Y)
# - Escape saddles along the negative-curvature direction into rank r + 1
# - Round the final relaxed iterate onto SE(d)^n
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .blocks.aux import (
    ManifoldProblem,
    Preconditioner,
    RelativePoseMeasurement,
    SESyncOpts,
    SESyncResult,
    StaircaseStatus,
    frobenius_inner,
)
from .blocks.escape import escape_saddle
from .blocks.tr import TNT, TNTParams
from .problem import SESyncProblem


# =============================================================================
# Riemannian Staircase
# =============================================================================
class RiemannianStaircase:
    """
    Rank-increasing outer loop. Each level r runs TNT from the current
    iterate, then checks the certificate:

      λ_min > -ε          → GLOBAL_OPTIMUM
      eigen-solver fails  → EIGENVALUE_IMPRECISE
      r == rmax           → RANK_LIMIT_REACHED (no escape is attempted)
      escape fails        → SADDLE_ESCAPE_FAILED
      otherwise           → escape to rank r + 1 and repeat

    Terminal conditions are reported through `SESyncResult.status`; only
    malformed input raises. The problem's relaxation rank is mutated as the
    staircase climbs.
    """

    def __init__(self, options: Optional[SESyncOpts] = None):
        self.opts = (options if options is not None else SESyncOpts()).validate()

    # -------------------------------------------------------------------------
    # Setup helpers
    # -------------------------------------------------------------------------
    def _tnt_params(self) -> TNTParams:
        o = self.opts
        return TNTParams(
            gradient_tolerance=o.grad_norm_tol,
            preconditioned_gradient_tolerance=o.preconditioned_grad_norm_tol,
            relative_decrease_tolerance=o.rel_func_decrease_tol,
            stepsize_tolerance=o.stepsize_tol,
            max_iterations=o.max_iterations,
            max_TPCG_iterations=o.max_tCG_iterations,
            max_computation_time=o.max_computation_time,
            verbose=o.verbose,
        )

    @staticmethod
    def _bind(problem: ManifoldProblem):
        """Function handles for TNT, all closing over the shared problem."""

        def F(Y):
            return problem.evaluate_objective(Y)

        def QM(Y):
            NablaF_Y = problem.Euclidean_gradient(Y)
            grad = problem.Riemannian_gradient(Y, NablaF_Y)

            def HessOp(Ydot):
                return problem.Riemannian_Hessian_vector_product(Y, NablaF_Y, Ydot)

            return grad, HessOp, NablaF_Y

        # product of Stiefel manifolds embedded in R^{r x k}: Euclidean metric
        def metric(Y, V1, V2):
            return frobenius_inner(V1, V2)

        def retraction(Y, Ydot):
            return problem.retract(Y, Ydot)

        precon = problem.precondition if problem.has_preconditioner else None
        return F, QM, metric, retraction, precon

    def _initialize(self, problem: ManifoldProblem, Y0: Optional[np.ndarray]) -> np.ndarray:
        if Y0 is not None:
            Y0 = np.asarray(Y0, dtype=float)
            expected = problem.iterate_shape(self.opts.r0)
            if Y0.shape != expected:
                raise ValueError(f"Y0 has shape {Y0.shape}, expected {expected}")
            if self.opts.verbose:
                print(" Using user-supplied initial iterate Y0")
            return Y0.copy()
        if self.opts.use_chordal_initialization:
            if self.opts.verbose:
                print(" Computing chordal initialization ...")
            return problem.chordal_initialization()
        if self.opts.verbose:
            print(" Sampling a random initialization ...")
        return problem.random_sample()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def run(self, problem: ManifoldProblem, Y0: Optional[np.ndarray] = None) -> SESyncResult:
        o = self.opts
        res = SESyncResult()
        start = time.perf_counter()

        if o.verbose:
            self._print_settings()

        problem.set_relaxation_rank(o.r0)
        Y = self._initialize(problem, Y0)
        res.initialization_time = time.perf_counter() - start
        if o.verbose:
            print(f" Initialization finished; elapsed time: {res.initialization_time:.4f} s")
            print(f"Initial objective value: {problem.evaluate_objective(Y):.8e}")

        F, QM, metric, retraction, precon = self._bind(problem)
        params = self._tnt_params()
        user_function = self._iterate_logger(res.iterates) if o.log_iterates else None

        res.status = StaircaseStatus.RANK_LIMIT_REACHED
        for r in range(o.r0, o.rmax + 1):
            if problem.relaxation_rank() != r:
                problem.set_relaxation_rank(r)
            res.ranks.append(r)
            if o.verbose:
                print(f"\n====== RIEMANNIAN STAIRCASE (level r = {r}) ======\n")

            # ---- solve at this level ----
            tnt = TNT(F, QM, metric, retraction, Y, precon, params, user_function)
            res.Yopt = tnt.x
            res.SDPval = tnt.f
            res.gradnorm = float(np.linalg.norm(problem.Riemannian_gradient(res.Yopt)))
            res.function_values.append(list(tnt.objective_values))
            res.gradient_norms.append(list(tnt.gradient_norms))
            res.elapsed_optimization_times.append(list(tnt.time))
            logging.debug(
                f"[Staircase] r={r}: TNT {tnt.status.value} after {len(tnt.objective_values) - 1} "
                f"iterations, F={res.SDPval:.6e}, |grad|={res.gradnorm:.3e}"
            )
            if o.verbose:
                print(
                    f"Found first-order critical point with value F(Y) = {res.SDPval:.8e}! "
                    f"Elapsed computation time: {tnt.elapsed_time:.4f} s"
                )

            # ---- certify ----
            eig_start = time.perf_counter()
            converged, lambda_min, v_min = problem.compute_certificate_min_eig(
                res.Yopt, o.max_eig_iterations, o.min_eig_num_tol, o.num_Lanczos_vectors
            )
            eig_elapsed = time.perf_counter() - eig_start

            if not converged:
                logging.warning(
                    "Minimum eigenvalue computation did not converge to the desired precision; "
                    "increase max_eig_iterations or num_Lanczos_vectors"
                )
                res.status = StaircaseStatus.EIGENVALUE_IMPRECISE
                break

            res.lambda_min = lambda_min
            res.v_min = v_min
            res.minimum_eigenvalues.append(lambda_min)
            res.minimum_eigenvalue_computation_times.append(eig_elapsed)

            if lambda_min > -o.min_eig_num_tol:
                if o.verbose:
                    print(
                        f"Found second-order critical point! (minimum eigenvalue = {lambda_min:.6e}). "
                        f"Elapsed computation time: {eig_elapsed:.4f} s"
                    )
                res.status = StaircaseStatus.GLOBAL_OPTIMUM
                break

            if o.verbose:
                print(
                    f"Saddle point detected (minimum eigenvalue = {lambda_min:.6e}). "
                    f"Elapsed computation time: {eig_elapsed:.4f} s"
                )
            if r == o.rmax:
                res.status = StaircaseStatus.RANK_LIMIT_REACHED
                break

            # ---- escape to the next level ----
            success, Yplus = escape_saddle(problem, res.Yopt, lambda_min, v_min, o.grad_norm_tol)
            if not success:
                logging.warning("Backtracking line search failed to escape from saddle point")
                res.status = StaircaseStatus.SADDLE_ESCAPE_FAILED
                break
            problem.set_relaxation_rank(r + 1)
            Y = Yplus

        # ---- round ----
        rounding_start = time.perf_counter()
        res.xhat = problem.round_solution(res.Yopt)
        res.Fxhat = problem.evaluate_rounded_objective(res.xhat)
        res.suboptimality_bound = res.Fxhat - res.SDPval
        res.total_computation_time = time.perf_counter() - start

        if o.verbose:
            print(f"Rounding solution ... elapsed time: {time.perf_counter() - rounding_start:.4f} s")
            self._print_summary(res)
        return res

    @staticmethod
    def _iterate_logger(iterates: List[np.ndarray]) -> Callable[..., None]:
        def log_iterate(t, Y, f, g, HessOp, Delta, num_inner, h, df, rho, accepted):
            iterates.append(np.array(Y, copy=True))

        return log_iterate

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------
    def _print_settings(self) -> None:
        o = self.opts
        print("========= SE-Sync ==========\n")
        print("ALGORITHM SETTINGS:")
        print(f" SE-Sync problem formulation: {o.formulation.value}")
        print(f" Initial level of Riemannian staircase: {o.r0}")
        print(f" Maximum level of Riemannian staircase: {o.rmax}")
        print(f" Number of Lanczos vectors in minimum eigenvalue computation: {o.num_Lanczos_vectors}")
        print(f" Maximum number of iterations for eigenvalue computation: {o.max_eig_iterations}")
        print(f" Tolerance for accepting an eigenvalue as numerically nonnegative: {o.min_eig_num_tol}")
        print(f" Orthogonal projection factorization: {o.projection_factorization.value}")
        print(f" Initialization method: {'chordal' if o.use_chordal_initialization else 'random'}")
        if o.log_iterates:
            print(" Logging entire sequence of Riemannian Staircase iterates")
        print(f" Running SE-Sync with {o.num_threads} threads")
        print("Riemannian trust-region settings:")
        print(f" Stopping tolerance for norm of Riemannian gradient: {o.grad_norm_tol}")
        print(f" Stopping tolerance for norm of preconditioned Riemannian gradient: {o.preconditioned_grad_norm_tol}")
        print(f" Stopping tolerance for relative function decrease: {o.rel_func_decrease_tol}")
        print(f" Stopping tolerance for the norm of an accepted update step: {o.stepsize_tol}")
        print(f" Maximum number of trust-region iterations: {o.max_iterations}")
        print(f" Maximum number of truncated conjugate gradient iterations per outer iteration: {o.max_tCG_iterations}")
        precon_name = {
            Preconditioner.NONE: "the identity preconditioner",
            Preconditioner.JACOBI: "Jacobi preconditioner",
            Preconditioner.INCOMPLETE_CHOLESKY: "incomplete factorization preconditioner",
        }[o.precon]
        print(f" Preconditioning the truncated conjugate gradient method using {precon_name}\n")

    @staticmethod
    def _print_summary(res: SESyncResult) -> None:
        print("\n===== END RIEMANNIAN STAIRCASE =====\n")
        messages = {
            StaircaseStatus.GLOBAL_OPTIMUM: "Found global optimum!",
            StaircaseStatus.EIGENVALUE_IMPRECISE: (
                "WARNING: Minimum eigenvalue computation did not achieve sufficient accuracy; "
                "solution may not be globally optimal!"
            ),
            StaircaseStatus.SADDLE_ESCAPE_FAILED: "WARNING: Line-search was unable to escape saddle point!",
            StaircaseStatus.RANK_LIMIT_REACHED: (
                "WARNING: Riemannian Staircase reached the maximum level before finding global optimum!"
            ),
        }
        print(messages[res.status])
        print(f"Value of SDP solution F(Y): {res.SDPval:.8e}")
        print(f"Norm of Riemannian gradient grad F(Y): {res.gradnorm:.4e}")
        print(f"Minimum eigenvalue of certificate matrix S - Lambda(Y): {res.lambda_min:.6e}")
        print(f"Value of rounded pose estimates F(x): {res.Fxhat:.8e}")
        print(f"Suboptimality bound of recovered pose estimate: {res.suboptimality_bound:.6e}")
        print(f"Total elapsed computation time: {res.total_computation_time:.4f} s\n")
        print("===== END SE-SYNC =====\n")


def riemannian_staircase(
    problem: ManifoldProblem,
    options: Optional[SESyncOpts] = None,
    Y0: Optional[np.ndarray] = None,
) -> SESyncResult:
    return RiemannianStaircase(options).run(problem, Y0)


# =============================================================================
# Top-level entry point
# =============================================================================
def sesync(
    measurements: Sequence[RelativePoseMeasurement],
    options: Optional[SESyncOpts] = None,
    Y0: Optional[np.ndarray] = None,
) -> Tuple[SESyncResult, SESyncProblem]:
    """
    Build the SE-Sync problem for `measurements` and run the staircase.

    Returns the result together with the problem instance (for inspecting
    the data matrices or re-evaluating the certificate). The returned problem
    is already closed: its worker pool is shut down and any further
    evaluation runs on the calling thread.
    """
    opts = (options if options is not None else SESyncOpts()).validate()
    if opts.verbose:
        print("INITIALIZATION:\n Constructing SE-Sync problem instance ...")

    construction_start = time.perf_counter()
    problem = SESyncProblem(
        measurements,
        formulation=opts.formulation,
        projection_factorization=opts.projection_factorization,
        preconditioner=opts.precon,
        num_threads=opts.num_threads,
        reg_Cholesky_precon_max_condition_number=opts.reg_Cholesky_precon_max_condition_number,
        seed=opts.seed,
    )
    if opts.verbose:
        print(f" Problem construction time: {time.perf_counter() - construction_start:.4f} s")

    with problem:
        result = RiemannianStaircase(opts).run(problem, Y0)
    return result, problem
