"""
Pose-graph data matrices for the SE-Sync relaxation.

For measurements e = (i, j) with rotation R̃_e, translation t̃_e, rotational
concentration κ_e and translational precision τ_e, the maximum-likelihood
objective

    Σ_e κ_e ||R_j - R_i R̃_e||_F^2 + τ_e ||t_j - t_i - R_i t̃_e||_2^2

equals tr(X M X^T) for X = [t | R] ∈ R^{d x (n + dn)} with

    M = [[ L(W^τ),   Ṽ            ],
         [ Ṽ^T,      L(G̃^ρ) + Σ̃ ]]

where, with A the oriented incidence matrix (A[i, e] = -1, A[j, e] = +1),
Ω = diag(τ) and T̃ the (m x dn) matrix whose row e holds -t̃_e^T in block i:

    L(W^τ) = A Ω A^T,   Ṽ = A Ω T̃,   Σ̃ = T̃^T Ω T̃.

Eliminating the translations gives the simplified data matrix

    Q = L(G̃^ρ) + T̃^T Ω^{1/2} Π Ω^{1/2} T̃,

with Π the orthogonal projection onto ker(A Ω^{1/2}). Anchoring the last pose
at the origin removes the last row of A (the "reduced" incidence matrix), which
makes A_red Ω A_red^T positive definite for a connected graph.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np
import scipy.linalg as la
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from scipy.sparse.csgraph import connected_components

from .aux import ProjectionFactorization, RelativePoseMeasurement


# ---------------------------- Validation ---------------------------- #
def validate_measurements(
    measurements: Sequence[RelativePoseMeasurement],
) -> Tuple[int, int]:
    """Check a measurement list and return (num_poses, dimension)."""
    if len(measurements) == 0:
        raise ValueError("At least one measurement is required")

    d = measurements[0].dimension
    if d not in (2, 3):
        raise ValueError(f"Only SE(2) and SE(3) are supported, got dimension {d}")

    n = 0
    for k, meas in enumerate(measurements):
        R = np.asarray(meas.R, dtype=float)
        t = np.asarray(meas.t, dtype=float).ravel()
        if R.shape != (d, d) or t.size != d:
            raise ValueError(
                f"Measurement {k}: expected R {(d, d)} and t ({d},), got {R.shape} and {t.shape}"
            )
        if meas.i < 0 or meas.j < 0 or meas.i == meas.j:
            raise ValueError(f"Measurement {k}: invalid pose indices ({meas.i}, {meas.j})")
        if not (meas.kappa > 0 and meas.tau > 0):
            raise ValueError(
                f"Measurement {k}: weights must be positive, got kappa={meas.kappa}, tau={meas.tau}"
            )
        if not (np.isfinite(R).all() and np.isfinite(t).all()):
            raise ValueError(f"Measurement {k}: non-finite values")
        n = max(n, meas.i + 1, meas.j + 1)

    A = construct_oriented_incidence_matrix(measurements, n)
    adjacency = abs(A) @ abs(A).T
    num_components, _ = connected_components(adjacency, directed=False)
    if num_components != 1:
        raise ValueError(f"Measurement graph must be connected, found {num_components} components")
    return n, d


# ---------------------------- Constructors ---------------------------- #
def construct_oriented_incidence_matrix(
    measurements: Sequence[RelativePoseMeasurement], n: int
) -> sp.csc_matrix:
    m = len(measurements)
    rows = np.empty(2 * m, dtype=np.int64)
    cols = np.repeat(np.arange(m, dtype=np.int64), 2)
    vals = np.tile(np.array([-1.0, 1.0]), m)
    for e, meas in enumerate(measurements):
        rows[2 * e] = meas.i
        rows[2 * e + 1] = meas.j
    return sp.csc_matrix((vals, (rows, cols)), shape=(n, m))


def construct_translational_precision_matrix(
    measurements: Sequence[RelativePoseMeasurement],
) -> sp.dia_matrix:
    tau = np.array([meas.tau for meas in measurements], dtype=float)
    return sp.diags(tau)


def construct_translational_data_matrix(
    measurements: Sequence[RelativePoseMeasurement], n: int, d: int
) -> sp.csr_matrix:
    m = len(measurements)
    rows = np.repeat(np.arange(m, dtype=np.int64), d)
    cols = np.empty(m * d, dtype=np.int64)
    vals = np.empty(m * d, dtype=float)
    for e, meas in enumerate(measurements):
        cols[e * d : (e + 1) * d] = d * meas.i + np.arange(d)
        vals[e * d : (e + 1) * d] = -np.asarray(meas.t, dtype=float).ravel()
    return sp.csr_matrix((vals, (rows, cols)), shape=(m, d * n))


def construct_rotational_connection_Laplacian(
    measurements: Sequence[RelativePoseMeasurement], n: int, d: int
) -> sp.csr_matrix:
    """L(G̃^ρ): κ-weighted degree on the diagonal, -κ R̃_ij / -κ R̃_ij^T off it."""
    rows: List[np.ndarray] = []
    cols: List[np.ndarray] = []
    vals: List[np.ndarray] = []
    bi, bj = np.meshgrid(np.arange(d), np.arange(d), indexing="ij")
    bi = bi.ravel()
    bj = bj.ravel()
    eye = np.eye(d).ravel()

    for meas in measurements:
        i, j, kappa = meas.i, meas.j, float(meas.kappa)
        R = np.asarray(meas.R, dtype=float)

        # diagonal blocks
        for p in (i, j):
            rows.append(d * p + bi)
            cols.append(d * p + bj)
            vals.append(kappa * eye)

        # off-diagonal blocks
        rows.append(d * i + bi)
        cols.append(d * j + bj)
        vals.append(-kappa * R.ravel())
        rows.append(d * j + bi)
        cols.append(d * i + bj)
        vals.append(-kappa * R.T.ravel())

    L = sp.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(d * n, d * n),
    )
    return L.tocsr()


# ---------------------------- Pose-graph data ---------------------------- #
class PoseGraphData:
    """
    All sparse data matrices for a measurement set, plus the anchored
    translational Laplacian and the machinery to apply Π and to recover
    optimal translations.
    """

    def __init__(
        self,
        measurements: Sequence[RelativePoseMeasurement],
        projection_factorization: ProjectionFactorization = ProjectionFactorization.CHOLESKY,
    ):
        self.n, self.d = validate_measurements(measurements)
        self.m = len(measurements)
        n, d = self.n, self.d
        self.projection_factorization = projection_factorization

        self.A = construct_oriented_incidence_matrix(measurements, n)
        self.Omega = construct_translational_precision_matrix(measurements)
        self.T = construct_translational_data_matrix(measurements, n, d)
        self.LGrho = construct_rotational_connection_Laplacian(measurements, n, d)

        sqrt_tau = np.sqrt(self.Omega.diagonal())
        self.sqrt_Omega = sp.diags(sqrt_tau)
        self.sqrt_Omega_T = (self.sqrt_Omega @ self.T).tocsr()

        self.LWtau = (self.A @ self.Omega @ self.A.T).tocsr()
        self.V = (self.A @ self.Omega @ self.T).tocsr()
        self.Sigma = (self.T.T @ self.Omega @ self.T).tocsr()

        # anchored (reduced) quantities: pose n-1 pinned at the origin
        self.A_red = self.A[: n - 1, :].tocsc()
        self.V_red = (self.A_red @ self.Omega @ self.T).tocsr()

        if n > 1:
            if projection_factorization is ProjectionFactorization.CHOLESKY:
                L_red = (self.A_red @ self.Omega @ self.A_red.T).tocsc()
                self._L_red_lu = spla.splu(L_red)
                self._R_qr = None
            else:
                B = (self.sqrt_Omega @ self.A_red.T).toarray()
                self._Q_qr, self._R_qr = la.qr(B, mode="economic")
                self._L_red_lu = None
        else:
            self._L_red_lu = None
            self._R_qr = None

    # ---- full data matrix (explicit formulation) ---- #
    def data_matrix(self) -> sp.csr_matrix:
        return sp.bmat(
            [[self.LWtau, self.V], [self.V.T, self.LGrho + self.Sigma]], format="csr"
        )

    # ---- anchored Laplacian solves ---- #
    def solve_reduced_Laplacian(self, rhs: np.ndarray) -> np.ndarray:
        """Solve (A_red Ω A_red^T) X = rhs for an (n-1) x k right-hand side."""
        if self.n == 1:
            return np.zeros((0,) + rhs.shape[1:])
        if self._L_red_lu is not None:
            return self._L_red_lu.solve(np.asarray(rhs, dtype=float))
        # (B^T B) = R^T R  ->  two triangular solves
        y = la.solve_triangular(self._R_qr, rhs, trans="T", lower=False, check_finite=False)
        return la.solve_triangular(self._R_qr, y, lower=False, check_finite=False)

    def orthogonal_projection(self, W: np.ndarray) -> np.ndarray:
        """Π W for W ∈ R^{m x k}: remove the component in range(Ω^{1/2} A_red^T)."""
        if self.n == 1:
            return W
        if self._R_qr is not None:
            return W - self._Q_qr @ (self._Q_qr.T @ W)
        B_T_W = self.A_red @ (self.sqrt_Omega @ W)
        return W - self.sqrt_Omega @ (self.A_red.T @ self.solve_reduced_Laplacian(B_T_W))

    def simplified_data_matrix_product(self, X: np.ndarray) -> np.ndarray:
        """Q X for X ∈ R^{dn x k}, without forming Q."""
        X = np.asarray(X, dtype=float)
        W = self.sqrt_Omega_T @ X
        return self.LGrho @ X + self.sqrt_Omega_T.T @ self.orthogonal_projection(W)

    def recover_translations(self, R: np.ndarray) -> np.ndarray:
        """Optimal translations (d x n) for rotations R (d x dn), last pose at 0."""
        R = np.asarray(R, dtype=float)
        t = np.zeros((R.shape[0], self.n))
        if self.n > 1:
            rhs = -(self.V_red @ R.T)
            t[:, : self.n - 1] = self.solve_reduced_Laplacian(rhs).T
        return t
