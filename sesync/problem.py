# problem.py
# The rank-restricted SE-Sync relaxation as a manifold optimization problem:
# objective, derivatives, geometry, certificate, initialization and rounding.
from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
import scipy.sparse.linalg as spla

from .blocks.aux import (
    Formulation,
    ManifoldProblem,
    Preconditioner,
    ProjectionFactorization,
    RelativePoseMeasurement,
)
from .blocks.eig import minimum_eigenpair
from .blocks.graph import PoseGraphData
from .blocks.precon import make_preconditioner
from .blocks.stiefel import KernelExecutor, StiefelProduct, project_to_rotation_group


class SESyncProblem(ManifoldProblem):
    """
    SE-Sync relaxation over St(d, r)^n (simplified) or R^{r x n} x St(d, r)^n
    (explicit), with objective F(Y) = tr(Y M Y^T).

    Iterates are (r, k) matrices with k = dn (simplified) or n + dn
    (explicit, translation columns first). The active relaxation rank is
    mutable state; do not share one instance between concurrent runs.
    """

    def __init__(
        self,
        measurements: Sequence[RelativePoseMeasurement],
        formulation: Formulation = Formulation.SIMPLIFIED,
        projection_factorization: ProjectionFactorization = ProjectionFactorization.CHOLESKY,
        preconditioner: Preconditioner = Preconditioner.INCOMPLETE_CHOLESKY,
        num_threads: int = 1,
        reg_Cholesky_precon_max_condition_number: float = 1e6,
        seed: int = 0,
    ):
        self.formulation = formulation
        self.data = PoseGraphData(measurements, projection_factorization)
        self.n = self.data.n
        self.d = self.data.d
        self.executor = KernelExecutor(num_threads)

        offset = self.n if formulation is Formulation.EXPLICIT else 0
        self.manifold = StiefelProduct(self.n, self.d, offset=offset, executor=self.executor)

        self._M = self.data.data_matrix() if formulation is Formulation.EXPLICIT else None
        precon_matrix = self._M if self._M is not None else self.data.LGrho
        self.preconditioner = make_preconditioner(
            preconditioner, precon_matrix, reg_Cholesky_precon_max_condition_number
        )
        self._rng = np.random.default_rng(seed)
        self._r = self.d

    # ---------- bookkeeping ----------
    def num_poses(self) -> int:
        return self.n

    def dimension(self) -> int:
        return self.d

    def set_relaxation_rank(self, r: int) -> None:
        if r < self.d:
            raise ValueError(f"Relaxation rank {r} is below the problem dimension {self.d}")
        self._r = int(r)

    def relaxation_rank(self) -> int:
        return self._r

    def iterate_shape(self, r: Optional[int] = None) -> Tuple[int, int]:
        return (self._r if r is None else int(r), self.manifold.num_cols)

    @property
    def has_preconditioner(self) -> bool:
        return self.preconditioner is not None

    def close(self) -> None:
        """Shut down the kernel thread pool; later evaluations run serially."""
        self.executor.close()

    def __enter__(self) -> "SESyncProblem":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- data matrix ----------
    def data_matrix_product(self, X: np.ndarray) -> np.ndarray:
        """M X for X ∈ R^{k x p}, with M the formulation's data matrix."""
        if self._M is not None:
            return np.asarray(self._M @ X)
        return self.data.simplified_data_matrix_product(X)

    # ---------- objective and derivatives ----------
    def evaluate_objective(self, Y: np.ndarray) -> float:
        return float(np.vdot(Y, self.data_matrix_product(Y.T).T))

    def Euclidean_gradient(self, Y: np.ndarray) -> np.ndarray:
        return 2.0 * self.data_matrix_product(Y.T).T

    def Riemannian_gradient(
        self, Y: np.ndarray, NablaF_Y: Optional[np.ndarray] = None
    ) -> np.ndarray:
        if NablaF_Y is None:
            NablaF_Y = self.Euclidean_gradient(Y)
        return self.manifold.project(Y, NablaF_Y)

    def Riemannian_Hessian_vector_product(
        self, Y: np.ndarray, NablaF_Y: np.ndarray, Ydot: np.ndarray
    ) -> np.ndarray:
        # Hess F(Y)[Ydot] = P_Y(2 Ydot M - Ydot SymBlockDiag(Y^T ∇F(Y)))
        S = self.manifold.SymBlockDiag_product(Y, NablaF_Y)
        ambient = 2.0 * self.data_matrix_product(Ydot.T).T - self.manifold.block_right_multiply(Ydot, S)
        return self.manifold.project(Y, ambient)

    def retract(self, Y: np.ndarray, Ydot: np.ndarray) -> np.ndarray:
        return self.manifold.retract(Y, Ydot)

    def precondition(self, Y: np.ndarray, Ydot: np.ndarray) -> np.ndarray:
        if self.preconditioner is None:
            return Ydot
        return self.manifold.project(Y, self.preconditioner.apply(Ydot))

    # ---------- certificate ----------
    def compute_Lambda_blocks(self, Y: np.ndarray) -> np.ndarray:
        """Stacked (n, d, d) blocks Λ_i = sym((Y M)_i^T Y_i)."""
        YM = self.data_matrix_product(Y.T).T
        return self.manifold.SymBlockDiag_product(Y, YM)

    def certificate_operator(self, Y: np.ndarray) -> spla.LinearOperator:
        """S - Λ(Y) as a k x k linear operator."""
        Lambda = self.compute_Lambda_blocks(Y)
        n, d, offset = self.n, self.d, self.manifold.offset
        k = self.manifold.num_cols

        def matmat(X):
            X = np.asarray(X, dtype=float)
            squeeze = X.ndim == 1
            if squeeze:
                X = X[:, None]
            out = np.asarray(self.data_matrix_product(X), dtype=float)
            Xr = X[offset:].reshape(n, d, -1)
            out[offset:] -= np.einsum("iab,ibp->iap", Lambda, Xr).reshape(n * d, -1)
            return out[:, 0] if squeeze else out

        return spla.LinearOperator((k, k), matvec=matmat, matmat=matmat, dtype=float)

    def compute_certificate_min_eig(
        self,
        Y: np.ndarray,
        max_iterations: int,
        tol: float,
        num_Lanczos_vectors: int,
    ) -> Tuple[bool, float, np.ndarray]:
        return minimum_eigenpair(
            self.certificate_operator(Y), max_iterations, tol, num_Lanczos_vectors
        )

    # ---------- initialization ----------
    def chordal_initialization(self) -> np.ndarray:
        """
        Rotations from the anchored linear relaxation of the rotational
        objective (last pose fixed to I_d), each projected onto SO(d);
        zero-padded to the current relaxation rank.
        """
        n, d = self.n, self.d
        R = np.tile(np.eye(d), (1, n))
        if n > 1:
            L = self.data.LGrho.tocsc()
            m = d * (n - 1)
            L_aa = L[:m, :m].tocsc()
            L_an = L[:m, m:].toarray()
            # L_aa R_a^T = -L_an
            Ra_T = spla.splu(L_aa).solve(-L_an)
            blocks = Ra_T.T.reshape(d, n - 1, d).transpose(1, 0, 2)
            R[:, :m] = project_to_rotation_group(blocks).transpose(1, 0, 2).reshape(d, m)

        Y = np.zeros(self.iterate_shape())
        Y[:d, self.manifold.offset :] = R
        if self.formulation is Formulation.EXPLICIT:
            Y[:d, : n] = self.data.recover_translations(R)
        return Y

    def random_sample(self) -> np.ndarray:
        return self.manifold.random_sample(self._r, self._rng)

    # ---------- rounding ----------
    def round_solution(self, Y: np.ndarray) -> np.ndarray:
        """
        Project a relaxed iterate onto SE(d)^n. Returns xhat = [t | R] with
        shape (d, n + dn); the last pose's translation is the origin.
        """
        n, d, offset = self.n, self.d, self.manifold.offset
        YR = np.asarray(Y, dtype=float)[:, offset:]

        # rank-d approximation: R = Σ_d V_d^T
        _, s, Vt = np.linalg.svd(YR, full_matrices=False)
        R = s[:d, None] * Vt[:d]

        # fix the global reflection so most blocks have positive determinant
        dets = np.linalg.det(R.reshape(d, n, d).transpose(1, 0, 2))
        if np.count_nonzero(dets > 0) < n / 2:
            R[-1] *= -1.0

        blocks = project_to_rotation_group(R.reshape(d, n, d).transpose(1, 0, 2))
        R = blocks.transpose(1, 0, 2).reshape(d, n * d)

        xhat = np.empty((d, n + n * d))
        xhat[:, :n] = self.data.recover_translations(R)
        xhat[:, n:] = R
        return xhat

    def evaluate_rounded_objective(self, xhat: np.ndarray) -> float:
        if self.formulation is Formulation.EXPLICIT:
            return self.evaluate_objective(xhat)
        return self.evaluate_objective(xhat[:, self.n :])
