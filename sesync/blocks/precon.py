from __future__ import annotations

from typing import Optional, Union

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from .aux import Preconditioner


# ---------------------------- Preconditioners ---------------------------- #
# Both act on iterates stored row-wise: for Ydot ∈ R^{r x k} they return
# (P^{-1} Ydot^T)^T, with P a sparse approximation of the k x k data matrix.
def gershgorin_upper_bound(S: sp.spmatrix) -> float:
    S = sp.csr_matrix(S)
    return float(np.max(np.asarray(abs(S).sum(axis=1)).ravel(), initial=0.0))


class JacobiPreconditioner:
    """Inverse of diag(S)."""

    def __init__(self, S: sp.spmatrix):
        d = np.asarray(S.diagonal(), dtype=np.float64)
        self.invd = np.where(np.abs(d) > 0, 1.0 / np.where(d == 0, 1.0, d), 1.0)

    def apply(self, Ydot: np.ndarray) -> np.ndarray:
        return Ydot * self.invd[None, :]


class ILUPreconditioner:
    """
    Incomplete LU of S + λI, with λ chosen so that the shifted matrix has a
    condition number of at most `max_condition_number` (using a Gershgorin
    bound on λ_max; S itself is positive semidefinite).
    """

    def __init__(
        self,
        S: sp.spmatrix,
        max_condition_number: float = 1e6,
        drop_tol: float = 1e-4,
        fill_factor: float = 10.0,
    ):
        S = sp.csr_matrix(S, dtype=np.float64)
        S = 0.5 * (S + S.T)
        lam_max = gershgorin_upper_bound(S)
        self.shift = max(lam_max / (max_condition_number - 1.0), 1e-10)
        n = S.shape[0]
        S = S + self.shift * sp.eye(n, format="csc")
        self.lu = spla.spilu(S.tocsc(), drop_tol=drop_tol, fill_factor=fill_factor)

    def apply(self, Ydot: np.ndarray) -> np.ndarray:
        rhs = np.ascontiguousarray(Ydot.T, dtype=np.float64)
        return np.asarray(self.lu.solve(rhs), dtype=np.float64).T


def make_preconditioner(
    kind: Preconditioner, S: sp.spmatrix, max_condition_number: float = 1e6
) -> Optional[Union[JacobiPreconditioner, ILUPreconditioner]]:
    if kind is Preconditioner.NONE:
        return None
    if kind is Preconditioner.JACOBI:
        return JacobiPreconditioner(S)
    if kind is Preconditioner.INCOMPLETE_CHOLESKY:
        return ILUPreconditioner(S, max_condition_number=max_condition_number)
    raise ValueError(f"Unknown preconditioner kind: {kind!r}")
