from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

import numpy as np
from numba import njit


# ---------------------------- Numba kernels ---------------------------- #
# Kernels work on the block range [lo, hi) and write disjoint slices of `out`,
# so several threads may run them on the same arrays. They are compiled
# without the GIL.
@njit(cache=True, nogil=True)
def _sym_block_products(lo, hi, A, B, d, offset, out):
    """out[i] = sym(A_i^T B_i) for the d-column blocks starting at `offset`."""
    r = A.shape[0]
    for i in range(lo, hi):
        c0 = offset + i * d
        for a in range(d):
            for b in range(a, d):
                s = 0.0
                for k in range(r):
                    s += A[k, c0 + a] * B[k, c0 + b] + A[k, c0 + b] * B[k, c0 + a]
                out[i, a, b] = 0.5 * s
                out[i, b, a] = 0.5 * s


@njit(cache=True, nogil=True)
def _block_right_multiply(lo, hi, Y, S, d, offset, out):
    """out_i = Y_i S_i for the d-column blocks starting at `offset`."""
    r = Y.shape[0]
    for i in range(lo, hi):
        c0 = offset + i * d
        for k in range(r):
            for b in range(d):
                s = 0.0
                for a in range(d):
                    s += Y[k, c0 + a] * S[i, a, b]
                out[k, c0 + b] = s


# ---------------------------- Executor ---------------------------- #
class KernelExecutor:
    """
    Runs block kernels over a fixed number of worker threads.

    The thread count belongs to the executor (and hence to the problem that
    owns it), so independent problems can use different settings. After
    `close()` the pool is gone for good and kernels run on the calling thread.
    """

    def __init__(self, num_threads: int = 1):
        if num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {num_threads}")
        self.num_threads = int(num_threads)
        self._pool: Optional[ThreadPoolExecutor] = None
        self.closed = False

    def chunks(self, n: int) -> List[Tuple[int, int]]:
        k = max(1, min(self.num_threads, n))
        bounds = np.linspace(0, n, k + 1).astype(np.int64)
        return [(int(bounds[c]), int(bounds[c + 1])) for c in range(k)]

    def map_blocks(self, kernel: Callable, n: int, *args) -> None:
        parts = self.chunks(n)
        if len(parts) == 1 or self.closed:
            for lo, hi in parts:
                kernel(lo, hi, *args)
            return
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.num_threads, thread_name_prefix="sesync-kernel"
            )
        futures = [self._pool.submit(kernel, lo, hi, *args) for lo, hi in parts]
        for fut in futures:
            fut.result()

    def close(self) -> None:
        self.closed = True
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def __enter__(self) -> "KernelExecutor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ---------------------------- Rotation helpers ---------------------------- #
def project_to_rotation_group(M: np.ndarray) -> np.ndarray:
    """Closest element of SO(d) to each (d, d) block in a stacked array."""
    U, _, Vt = np.linalg.svd(M)
    det = np.linalg.det(U @ Vt)
    flip = det < 0
    if np.any(flip):
        U = U.copy()
        U[flip, :, -1] *= -1.0
    return U @ Vt


# ---------------------------- Manifold ---------------------------- #
class StiefelProduct:
    """
    The product St(d, r)^n realized inside R^{r x (offset + dn)}.

    The first `offset` columns (translations in the explicit formulation)
    are an unconstrained Euclidean factor; the remaining columns form n
    blocks Y_i ∈ R^{r x d} with Y_i^T Y_i = I_d. The induced metric is the
    Frobenius inner product.
    """

    def __init__(self, n: int, d: int, offset: int = 0, executor: Optional[KernelExecutor] = None):
        self.n = int(n)
        self.d = int(d)
        self.offset = int(offset)
        self.executor = executor if executor is not None else KernelExecutor(1)

    @property
    def num_cols(self) -> int:
        return self.offset + self.n * self.d

    # ---- block views ---- #
    def blocks(self, Y: np.ndarray) -> np.ndarray:
        r = Y.shape[0]
        return Y[:, self.offset :].reshape(r, self.n, self.d).transpose(1, 0, 2)

    def from_blocks(self, B: np.ndarray, translations: Optional[np.ndarray] = None) -> np.ndarray:
        r = B.shape[1]
        out = np.empty((r, self.num_cols))
        out[:, : self.offset] = 0.0 if translations is None else translations
        out[:, self.offset :] = B.transpose(1, 0, 2).reshape(r, self.n * self.d)
        return out

    # ---- block kernels ---- #
    def SymBlockDiag_product(self, A: np.ndarray, B: np.ndarray) -> np.ndarray:
        """Stacked (n, d, d) blocks sym(A_i^T B_i)."""
        A = np.ascontiguousarray(A, dtype=np.float64)
        B = np.ascontiguousarray(B, dtype=np.float64)
        out = np.empty((self.n, self.d, self.d))
        self.executor.map_blocks(_sym_block_products, self.n, A, B, self.d, self.offset, out)
        return out

    def block_right_multiply(self, Y: np.ndarray, S: np.ndarray) -> np.ndarray:
        """Matrix whose rotation blocks are Y_i S_i and translation columns are 0."""
        Y = np.ascontiguousarray(Y, dtype=np.float64)
        S = np.ascontiguousarray(S, dtype=np.float64)
        out = np.zeros_like(Y)
        self.executor.map_blocks(_block_right_multiply, self.n, Y, S, self.d, self.offset, out)
        return out

    # ---- geometry ---- #
    def project(self, Y: np.ndarray, V: np.ndarray) -> np.ndarray:
        """Orthogonal projection of V onto the tangent space at Y."""
        return V - self.block_right_multiply(Y, self.SymBlockDiag_product(Y, V))

    def retract(self, Y: np.ndarray, V: np.ndarray) -> np.ndarray:
        """Polar retraction on the Stiefel blocks, addition on the Euclidean columns."""
        X = self.blocks(Y + V)
        U, _, Vt = np.linalg.svd(X, full_matrices=False)
        return self.from_blocks(U @ Vt, (Y + V)[:, : self.offset])

    def random_sample(self, r: int, rng: np.random.Generator) -> np.ndarray:
        G = rng.standard_normal((self.n, r, self.d))
        Qs, _ = np.linalg.qr(G)
        translations = rng.standard_normal((r, self.offset)) if self.offset else None
        return self.from_blocks(Qs, translations)

    def check(self, Y: np.ndarray, tol: float = 1e-8) -> bool:
        """True iff every block of Y has orthonormal columns (to `tol`)."""
        B = self.blocks(Y)
        gram = np.einsum("nka,nkb->nab", B, B)
        return bool(np.max(np.abs(gram - np.eye(self.d)), initial=0.0) <= tol)
