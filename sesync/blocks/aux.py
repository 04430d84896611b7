# aux.py
# Shared configuration, enums, measurement/result containers and the abstract
# manifold-problem interface used by the Riemannian Staircase.

from __future__ import annotations

# =========================
# Standard library
# =========================
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

# =========================
# Third-party
# =========================
import numpy as np


# ======================================
# Enums
# ======================================
class Formulation(Enum):
    """Which form of the SE-Sync relaxation to optimize."""

    SIMPLIFIED = "simplified"  # translations analytically eliminated
    EXPLICIT = "explicit"  # translations kept as unconstrained variables


class ProjectionFactorization(Enum):
    """How the orthogonal projection onto ker(A Ω^{1/2}) is applied."""

    CHOLESKY = "cholesky"
    QR = "qr"


class Preconditioner(Enum):
    """Preconditioner for the truncated CG inner solver."""

    NONE = "none"
    JACOBI = "jacobi"
    INCOMPLETE_CHOLESKY = "incomplete_cholesky"


class StaircaseStatus(Enum):
    """Terminal status of the Riemannian Staircase."""

    GLOBAL_OPTIMUM = "global_optimum"
    EIGENVALUE_IMPRECISE = "eigenvalue_imprecise"
    SADDLE_ESCAPE_FAILED = "saddle_escape_failed"
    RANK_LIMIT_REACHED = "rank_limit_reached"


# ======================================
# Global configuration
# ======================================
@dataclass
class SESyncOpts:
    """
    Options for SE-Sync and the Riemannian Staircase.

    Notes
    -----
    • Trust-region fields are forwarded to the TNT solver at every level.
    • `r0` must be at least the dimension d of the problem; this is checked
      against the problem when the staircase starts.
    """

    # ---------------- Riemannian Staircase ----------------
    r0: int = 5
    rmax: int = 10
    num_Lanczos_vectors: int = 20
    max_eig_iterations: int = 10000
    min_eig_num_tol: float = 1e-5

    # ---------------- Problem formulation ----------------
    formulation: Formulation = Formulation.SIMPLIFIED
    projection_factorization: ProjectionFactorization = ProjectionFactorization.CHOLESKY
    precon: Preconditioner = Preconditioner.INCOMPLETE_CHOLESKY
    reg_Cholesky_precon_max_condition_number: float = 1e6
    use_chordal_initialization: bool = True
    seed: int = 0

    # ---------------- Trust region (TNT) ----------------
    grad_norm_tol: float = 1e-2
    preconditioned_grad_norm_tol: float = 0.0  # 0 disables this stopping test
    rel_func_decrease_tol: float = 1e-5
    stepsize_tol: float = 1e-3
    max_iterations: int = 1000
    max_tCG_iterations: int = 10000
    max_computation_time: float = math.inf

    # ---------------- Output / execution ----------------
    log_iterates: bool = False
    verbose: bool = False
    num_threads: int = 1

    def validate(self) -> "SESyncOpts":
        if self.r0 < 1:
            raise ValueError(f"r0 must be positive, got {self.r0}")
        if self.rmax < self.r0:
            raise ValueError(f"rmax ({self.rmax}) must be >= r0 ({self.r0})")
        if self.num_Lanczos_vectors < 2:
            raise ValueError(
                f"num_Lanczos_vectors must be at least 2, got {self.num_Lanczos_vectors}"
            )
        if self.min_eig_num_tol <= 0:
            raise ValueError(f"min_eig_num_tol must be positive, got {self.min_eig_num_tol}")
        if self.grad_norm_tol <= 0:
            raise ValueError(f"grad_norm_tol must be positive, got {self.grad_norm_tol}")
        if self.preconditioned_grad_norm_tol < 0:
            raise ValueError(
                "preconditioned_grad_norm_tol must be nonnegative, "
                f"got {self.preconditioned_grad_norm_tol}"
            )
        if self.num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {self.num_threads}")
        if self.reg_Cholesky_precon_max_condition_number <= 1:
            raise ValueError("reg_Cholesky_precon_max_condition_number must exceed 1")
        for name, enum_t in (
            ("formulation", Formulation),
            ("projection_factorization", ProjectionFactorization),
            ("precon", Preconditioner),
        ):
            if not isinstance(getattr(self, name), enum_t):
                raise ValueError(f"{name} must be a {enum_t.__name__}, got {getattr(self, name)!r}")
        return self


# ======================================
# Measurements
# ======================================
@dataclass(frozen=True)
class RelativePoseMeasurement:
    """
    Noisy measurement of the pose of `j` expressed in the frame of pose `i`.

    R : (d, d) measured relative rotation
    t : (d,)   measured relative translation
    kappa : rotational concentration (> 0)
    tau   : translational precision (> 0)
    """

    i: int
    j: int
    R: np.ndarray
    t: np.ndarray
    kappa: float = 1.0
    tau: float = 1.0

    @property
    def dimension(self) -> int:
        return int(np.asarray(self.R).shape[0])


# ======================================
# Results
# ======================================
@dataclass
class SESyncResult:
    """Everything the staircase produces; per-level lists are appended in order."""

    status: Optional[StaircaseStatus] = None

    # Relaxed solution at the final level
    Yopt: Optional[np.ndarray] = None
    SDPval: float = math.nan
    gradnorm: float = math.nan
    lambda_min: float = math.nan
    v_min: Optional[np.ndarray] = None

    # Rounded solution xhat = [t | R]
    xhat: Optional[np.ndarray] = None
    Fxhat: float = math.nan
    suboptimality_bound: float = math.nan

    # Per-level diagnostics
    ranks: List[int] = field(default_factory=list)
    function_values: List[List[float]] = field(default_factory=list)
    gradient_norms: List[List[float]] = field(default_factory=list)
    elapsed_optimization_times: List[List[float]] = field(default_factory=list)
    minimum_eigenvalues: List[float] = field(default_factory=list)
    minimum_eigenvalue_computation_times: List[float] = field(default_factory=list)
    iterates: List[np.ndarray] = field(default_factory=list)

    # Timing
    initialization_time: float = 0.0
    total_computation_time: float = 0.0


# ======================================
# Problem interface
# ======================================
class ManifoldProblem(ABC):
    """
    Capability set the staircase needs from a rank-restricted problem.

    Iterates are (r, k) matrices; every operation infers r from its argument,
    while `relaxation_rank` is the level the staircase is currently on (used
    for sampling/initialization and shape checks).
    """

    @abstractmethod
    def evaluate_objective(self, Y: np.ndarray) -> float: ...

    @abstractmethod
    def Euclidean_gradient(self, Y: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def Riemannian_gradient(
        self, Y: np.ndarray, NablaF_Y: Optional[np.ndarray] = None
    ) -> np.ndarray: ...

    @abstractmethod
    def Riemannian_Hessian_vector_product(
        self, Y: np.ndarray, NablaF_Y: np.ndarray, Ydot: np.ndarray
    ) -> np.ndarray: ...

    @abstractmethod
    def retract(self, Y: np.ndarray, Ydot: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def precondition(self, Y: np.ndarray, Ydot: np.ndarray) -> np.ndarray: ...

    @property
    @abstractmethod
    def has_preconditioner(self) -> bool: ...

    @abstractmethod
    def set_relaxation_rank(self, r: int) -> None: ...

    @abstractmethod
    def relaxation_rank(self) -> int: ...

    @abstractmethod
    def iterate_shape(self, r: Optional[int] = None) -> Tuple[int, int]: ...

    @abstractmethod
    def chordal_initialization(self) -> np.ndarray: ...

    @abstractmethod
    def random_sample(self) -> np.ndarray: ...

    @abstractmethod
    def compute_certificate_min_eig(
        self,
        Y: np.ndarray,
        max_iterations: int,
        tol: float,
        num_Lanczos_vectors: int,
    ) -> Tuple[bool, float, np.ndarray]: ...

    @abstractmethod
    def round_solution(self, Y: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def evaluate_rounded_objective(self, xhat: np.ndarray) -> float: ...


def frobenius_inner(A: np.ndarray, B: np.ndarray) -> float:
    """Euclidean metric on R^{r x k}: tr(A B^T)."""
    return float(np.vdot(A, B))
