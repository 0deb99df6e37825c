from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

import numpy as np
from scipy import sparse

from ..errors import MatrixFormatError, UnknownFormatError
from .symmatrix import SymMatrix

LOG = logging.getLogger(__name__)

Kind = Literal["dense", "symmetric", "sparse"]

_NPY_MAGIC = b"\x93NUMPY"


@dataclass(frozen=True, slots=True)
class MatrixFormat:
    identity: str
    suffixes: tuple[str, ...]
    identify: Callable[[bytes], bool]
    read: Callable[[Path, str], object]
    write: Callable[[Path, object], None]


def _kind_of(mat) -> str:
    if isinstance(mat, SymMatrix):
        return "symmetric"
    if sparse.issparse(mat):
        return "sparse"
    return "dense"


# --------------------------------- ascii ----------------------------------
def _identify_ascii(head: bytes) -> bool:
    tokens = head.split()
    if not tokens:
        return False
    try:
        float(tokens[0])
    except ValueError:
        return False
    return True


def _read_ascii(path: Path, kind: str):
    lines = [ln.split() for ln in path.read_text().splitlines() if ln.strip()]
    try:
        if kind == "sparse":
            rows, cols, vals = [], [], []
            for tok in lines:
                if len(tok) != 3:
                    raise MatrixFormatError(f"{path}: sparse line with {len(tok)} tokens, expected 3")
                rows.append(int(tok[0]))
                cols.append(int(tok[1]))
                vals.append(float(tok[2]))
            shape = (max(rows, default=-1) + 1, max(cols, default=-1) + 1)
            out = sparse.coo_matrix((vals, (rows, cols)), shape=shape).tocsr()
            out.eliminate_zeros()
            return out

        if kind == "symmetric":
            n = len(lines)
            data = np.empty(n * (n + 1) // 2)
            for i, tok in enumerate(lines):
                if len(tok) != n - i:
                    raise MatrixFormatError(
                        f"{path}: symmetric row {i} has {len(tok)} entries, expected {n - i}")
                j = np.arange(i, n)
                data[j * (j + 1) // 2 + i] = np.asarray(tok, dtype=np.float64)
            return SymMatrix(n, data)

        ncol = len(lines[0]) if lines else 0
        if any(len(tok) != ncol for tok in lines):
            raise MatrixFormatError(f"{path}: rows of unequal length")
        return np.asarray(lines, dtype=np.float64).reshape(len(lines), ncol)
    except ValueError as exc:
        if isinstance(exc, MatrixFormatError):
            raise
        raise MatrixFormatError(f"{path}: {exc}") from None


def _write_ascii(path: Path, mat) -> None:
    kind = _kind_of(mat)
    with open(path, "w") as f:
        if kind == "sparse":
            coo = sparse.coo_matrix(mat)
            for i, j, v in zip(coo.row, coo.col, coo.data):
                f.write(f"{i} {j} {v:.17g}\n")
            # explicit corner entry keeps empty trailing rows and columns
            nlin, ncol = coo.shape
            if nlin and ncol and not np.any((coo.row == nlin - 1) & (coo.col == ncol - 1)):
                f.write(f"{nlin - 1} {ncol - 1} 0\n")
        elif kind == "symmetric":
            n = mat.size
            for i in range(n):
                j = np.arange(i, n)
                f.write("\t".join(f"{v:.17g}" for v in mat.data[j * (j + 1) // 2 + i]) + "\n")
        else:
            arr = np.atleast_2d(np.asarray(mat, dtype=np.float64))
            if np.ndim(mat) == 1:
                arr = arr.T
            for row in arr:
                f.write("\t".join(f"{v:.17g}" for v in row) + "\n")


# --------------------------------- binary ---------------------------------
def _read_binary(path: Path, kind: str):
    raw = path.read_bytes()
    if len(raw) < 8:
        raise MatrixFormatError(f"{path}: truncated header")
    nlin, ncol = struct.unpack_from("<II", raw, 0)
    body = np.frombuffer(raw, dtype="<f8", offset=8) if len(raw) > 8 else np.empty(0)
    if kind == "sparse":
        raise MatrixFormatError(f"{path}: the binary format stores dense or symmetric matrices only")
    if kind == "symmetric":
        if nlin != ncol or body.size != nlin * (nlin + 1) // 2:
            raise MatrixFormatError(f"{path}: {body.size} values do not form a packed {nlin}x{ncol}")
        return SymMatrix(nlin, body.astype(np.float64))
    if body.size != nlin * ncol:
        raise MatrixFormatError(f"{path}: header announces {nlin}x{ncol}, found {body.size} values")
    return body.astype(np.float64).reshape(nlin, ncol)


def _write_binary(path: Path, mat) -> None:
    kind = _kind_of(mat)
    if kind == "sparse":
        raise MatrixFormatError(f"{path}: the binary format cannot store sparse matrices")
    if kind == "symmetric":
        nlin = ncol = mat.size
        body = mat.data
    else:
        arr = np.asarray(mat, dtype=np.float64)
        arr = arr.reshape(-1, 1) if arr.ndim == 1 else arr
        nlin, ncol = arr.shape
        body = arr.ravel()
    with open(path, "wb") as f:
        f.write(struct.pack("<II", nlin, ncol))
        f.write(np.asarray(body, dtype="<f8").tobytes())


# --------------------------------- numpy ----------------------------------
def _identify_npy(head: bytes) -> bool:
    return head.startswith(_NPY_MAGIC)


def _read_npy(path: Path, kind: str):
    arr = np.load(path, allow_pickle=False)
    if kind == "symmetric":
        if arr.ndim != 2 or arr.shape[0] != arr.shape[1] or not np.allclose(arr, arr.T):
            raise MatrixFormatError(f"{path}: array of shape {arr.shape} is not symmetric")
        return SymMatrix.from_dense(arr)
    if kind == "sparse":
        return sparse.csr_matrix(arr)
    return arr


def _write_npy(path: Path, mat) -> None:
    kind = _kind_of(mat)
    if kind == "symmetric":
        mat = mat.to_dense()
    elif kind == "sparse":
        mat = mat.toarray()
    with open(path, "wb") as f:
        np.save(f, np.asarray(mat, dtype=np.float64))


# -------------------------------- registry --------------------------------
# Content sniffing walks this tuple in order; npy is tested before ascii
# because its magic string is unambiguous.
FORMATS: tuple[MatrixFormat, ...] = (
    MatrixFormat("numpy", (".npy",), _identify_npy, _read_npy, _write_npy),
    MatrixFormat("ascii", (".txt",), _identify_ascii, _read_ascii, _write_ascii),
    MatrixFormat("binary", (".bin",), lambda head: False, _read_binary, _write_binary),
)


def find_format(path: str | Path, fmt: str | None = None, *, sniff: bool = True) -> MatrixFormat:
    """Explicit name, then suffix, then content sniffing (reads only)."""
    path = Path(path)
    if fmt is not None:
        for mf in FORMATS:
            if mf.identity == fmt.lower():
                return mf
        raise UnknownFormatError(f"unknown matrix format '{fmt}'")

    suffix = path.suffix.lower()
    for mf in FORMATS:
        if suffix in mf.suffixes:
            return mf

    if sniff and path.is_file():
        with open(path, "rb") as f:
            head = f.read(256)
        for mf in FORMATS:
            if mf.identify(head):
                LOG.debug("%s identified as '%s' by content.", path, mf.identity)
                return mf
    raise UnknownFormatError(f"{path}: cannot determine the matrix format")


def load_matrix(path: str | Path, kind: Kind = "dense", fmt: str | None = None):
    path = Path(path)
    mf = find_format(path, fmt)
    LOG.info("Loading %s matrix from %s (%s).", kind, path, mf.identity)
    return mf.read(path, kind)


def save_matrix(mat, path: str | Path, fmt: str | None = None) -> None:
    path = Path(path)
    if _kind_of(mat) == "dense":
        mat = np.asarray(mat, dtype=np.float64)
    mf = find_format(path, fmt, sniff=False)
    mf.write(path, mat)
    LOG.info("Saved %s matrix %s to %s (%s).", _kind_of(mat),
             "x".join(str(s) for s in mat.shape), path, mf.identity)
