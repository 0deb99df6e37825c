from __future__ import annotations

import numpy as np
from scipy import linalg


def packed_index(rows, cols):
    """Position of (row, col) in row-major lower-triangular packed storage."""
    rows = np.asarray(rows, dtype=np.int64)
    cols = np.asarray(cols, dtype=np.int64)
    hi = np.maximum(rows, cols)
    lo = np.minimum(rows, cols)
    return hi * (hi + 1) // 2 + lo


class SymMatrix:
    """
    Symmetric matrix stored as its packed lower triangle.

    Symmetry is structural: (i, j) and (j, i) address the same slot, so a
    value added through either index is seen through both.
    """

    # let ndarray @ SymMatrix fall through to __rmatmul__
    __array_ufunc__ = None

    def __init__(self, size: int, data=None):
        self.size = int(size)
        n = self.size * (self.size + 1) // 2
        if data is None:
            self.data = np.zeros(n, dtype=np.float64)
        else:
            self.data = np.asarray(data, dtype=np.float64).ravel()
            if self.data.size != n:
                raise ValueError(f"packed data of length {self.data.size} does not fit size {size}")

    @property
    def shape(self) -> tuple[int, int]:
        return (self.size, self.size)

    @property
    def T(self) -> "SymMatrix":
        return self

    def __repr__(self) -> str:
        return f"SymMatrix(size={self.size})"

    def __getitem__(self, ij):
        i, j = ij
        return self.data[packed_index(i, j)]

    def __setitem__(self, ij, value):
        i, j = ij
        self.data[packed_index(i, j)] = value

    def copy(self) -> "SymMatrix":
        return SymMatrix(self.size, self.data.copy())

    # ------------------------------------------------------------ accumulation
    def add_block(self, rows, cols, block, *, lower_only: bool = False) -> None:
        """
        Accumulate a dense block at (rows x cols).

        With `lower_only`, entries whose global row is smaller than their
        column are skipped; use it when the block is itself symmetric so each
        unordered pair is added once.
        """
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        block = np.asarray(block, dtype=np.float64).reshape(len(rows), len(cols))
        R, C = np.meshgrid(rows, cols, indexing="ij")
        if lower_only:
            keep = R >= C
            R, C, block = R[keep], C[keep], block[keep]
        np.add.at(self.data, packed_index(R, C).ravel(), block.ravel())

    def add_entries(self, rows, cols, values) -> None:
        """Scatter-add values; (i, j) and (j, i) hit the same slot."""
        np.add.at(self.data, packed_index(rows, cols).ravel(), np.asarray(values, dtype=np.float64).ravel())

    def add_constant(self, indices, value: float) -> None:
        """Add `value` to every unordered pair (diagonal included) of `indices`."""
        idx = np.asarray(indices, dtype=np.int64)
        R, C = np.meshgrid(idx, idx, indexing="ij")
        keep = R >= C
        np.add.at(self.data, packed_index(R[keep], C[keep]), value)

    # -------------------------------------------------------------- conversion
    def to_dense(self) -> np.ndarray:
        out = np.zeros((self.size, self.size))
        il = np.tril_indices(self.size)
        out[il] = self.data
        out.T[il] = self.data
        return out

    @classmethod
    def from_dense(cls, mat) -> "SymMatrix":
        mat = np.asarray(mat, dtype=np.float64)
        if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
            raise ValueError(f"expected a square matrix, got shape {mat.shape}")
        return cls(mat.shape[0], mat[np.tril_indices(mat.shape[0])])

    def submatrix(self, rows, cols) -> np.ndarray:
        R, C = np.meshgrid(np.asarray(rows), np.asarray(cols), indexing="ij")
        return self.data[packed_index(R, C)]

    # -------------------------------------------------------------- algebra
    def __matmul__(self, other):
        return self.to_dense() @ other

    def __rmatmul__(self, other):
        return other @ self.to_dense()

    def frobenius_norm(self) -> float:
        return float(np.linalg.norm(self.to_dense()))

    def inverse(self) -> "SymMatrix":
        return SymMatrix.from_dense(linalg.inv(self.to_dense()))

    def pinv(self) -> "SymMatrix":
        return SymMatrix.from_dense(linalg.pinvh(self.to_dense()))
