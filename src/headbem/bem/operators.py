from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

import numpy as np
from scipy import sparse

from ..linalg.symmatrix import SymMatrix
from ..mesh.surface import Surface
from .core import BEMConfig, d_points, d_rows, quadrature_points, s_points, s_rows

LOG = logging.getLogger(__name__)


# ----------------------------- Row scheduling -----------------------------
def _by_rows(kernel: Callable[[np.ndarray], np.ndarray], n_rows: int, n_cols: int,
             cfg: BEMConfig) -> np.ndarray:
    """
    Evaluate `kernel` over disjoint row chunks and stack the results in order.

    Workers only return their own rows; the caller owns the output, so no
    shared entry is ever written concurrently.
    """
    rows = np.arange(n_rows, dtype=np.int64)
    chunks = [rows[k:k + cfg.chunk_rows] for k in range(0, n_rows, cfg.chunk_rows)]
    if not chunks:
        return np.zeros((0, n_cols))

    if cfg.workers == 1 or len(chunks) == 1:
        parts = [kernel(c) for c in chunks]
    else:
        parts = [None] * len(chunks)
        with ThreadPoolExecutor(max_workers=int(cfg.workers)) as pool:
            futures = {pool.submit(kernel, c): k for k, c in enumerate(chunks)}
            for fut in as_completed(futures):
                parts[futures[fut]] = fut.result()
    return np.vstack(parts)


# ------------------------------ Raw blocks --------------------------------
def single_layer_block(a: Surface, b: Surface, cfg: BEMConfig) -> np.ndarray:
    """
    (Ma, Mb) integrals of 1/|x - y| over triangle pairs (P0 x P0).

    For a surface against itself only the lower half is integrated and then
    mirrored, so the block is exactly symmetric.
    """
    nodes, weights = quadrature_points(a.triangle_points, cfg.gauss_order)
    tri_b = np.ascontiguousarray(b.triangle_points)
    same = a is b
    block = _by_rows(lambda r: s_rows(r, nodes, weights, tri_b, same),
                     a.nb_triangles, b.nb_triangles, cfg)
    if same:
        block = np.tril(block) + np.tril(block, -1).T
    return block


def double_layer_block(a: Surface, b: Surface, cfg: BEMConfig) -> np.ndarray:
    """(Ma, NVb): P0 tests on the triangles of `a`, P1 double layer on the vertices of `b`."""
    nodes, weights = quadrature_points(a.triangle_points, cfg.gauss_order)
    tri_b = np.ascontiguousarray(b.triangle_points)
    faces_b = np.ascontiguousarray(b.faces, dtype=np.int64)
    return _by_rows(lambda r: d_rows(r, nodes, weights, tri_b, faces_b, b.nb_vertices),
                    a.nb_triangles, b.nb_vertices, cfg)


def curl_matrices(surface: Surface) -> list[sparse.csr_matrix]:
    """
    Surface curls of the P1 hat functions, one sparse (NV, M) matrix per component.

    On triangle T the curl of the hat of vertex k is (next - prev) / (2 area).
    """
    tp = surface.triangle_points
    faces = surface.faces
    area2 = 2.0 * surface.areas
    rows, cols, vals = [], [], []
    tri = np.arange(surface.nb_triangles)
    for k in range(3):
        curl = (tp[:, (k + 1) % 3] - tp[:, (k + 2) % 3]) / area2[:, None]
        rows.append(faces[:, k])
        cols.append(tri)
        vals.append(curl)
    rows = np.concatenate(rows)
    cols = np.concatenate(cols)
    vals = np.concatenate(vals)
    shape = (surface.nb_vertices, surface.nb_triangles)
    return [sparse.csr_matrix((vals[:, c], (rows, cols)), shape=shape) for c in range(3)]


def hypersingular_block(a: Surface, b: Surface, s_block: np.ndarray) -> np.ndarray:
    """(NVa, NVb) sum over curl components of Ca @ S @ Cb^T."""
    ca = curl_matrices(a)
    cb = ca if a is b else curl_matrices(b)
    out = np.zeros((a.nb_vertices, b.nb_vertices))
    for c in range(3):
        out += ca[c] @ (cb[c] @ s_block.T).T
    return out


# --------------------------- Matrix accumulation --------------------------
def operator_s(a: Surface, b: Surface, mat: SymMatrix, coeff: float, s_raw: np.ndarray) -> np.ndarray:
    """Add coeff * S into the triangle x triangle block; returns the scaled block."""
    block = coeff * s_raw
    mat.add_block(a.triangle_index, b.triangle_index, block, lower_only=a is b)
    return block


def operator_d(a: Surface, b: Surface, mat: SymMatrix, coeff: float, cfg: BEMConfig) -> None:
    """Add coeff * D with rows on the triangles of `a` and columns on the vertices of `b`."""
    LOG.debug("D block %s x %s", a.name, b.name)
    block = coeff * double_layer_block(a, b, cfg)
    mat.add_block(a.triangle_index, b.vertex_index, block)


def operator_n(a: Surface, b: Surface, mat: SymMatrix, coeff: float, s_block: np.ndarray) -> None:
    """
    Add the hypersingular block, rows on the vertices of `a`, columns on those of `b`.

    A vertex shared by two different surfaces appears in both index sets; its
    diagonal entry is reached from both orderings and is counted half each time.
    """
    LOG.debug("N block %s x %s", a.name, b.name)
    block = -coeff * hypersingular_block(a, b, s_block)
    if a is b:
        mat.add_block(a.vertex_index, a.vertex_index, block, lower_only=True)
        return
    shared = a.vertex_index[:, None] == b.vertex_index[None, :]
    block[shared] *= 0.5
    mat.add_block(a.vertex_index, b.vertex_index, block)


def operator_s_internal(points: np.ndarray, surface: Surface, cfg: BEMConfig) -> np.ndarray:
    """(P, M) single layer from every triangle of `surface` evaluated at `points`."""
    pts = np.ascontiguousarray(points, dtype=np.float64)
    tri = np.ascontiguousarray(surface.triangle_points)
    return _by_rows(lambda r: s_points(pts[r], tri), len(pts), surface.nb_triangles, cfg)


def operator_d_internal(points: np.ndarray, surface: Surface, cfg: BEMConfig) -> np.ndarray:
    """(P, NV) P1 double layer of `surface` evaluated at `points`."""
    pts = np.ascontiguousarray(points, dtype=np.float64)
    tri = np.ascontiguousarray(surface.triangle_points)
    faces = np.ascontiguousarray(surface.faces, dtype=np.int64)
    return _by_rows(lambda r: d_points(pts[r], tri, faces, surface.nb_vertices),
                    len(pts), surface.nb_vertices, cfg)


# ------------------------------ Regularization ----------------------------
def gradient_norm2(surface: Surface, mat: SymMatrix) -> None:
    """
    Add the squared-gradient energy of `surface` into `mat`.

    Vertices: P1 stiffness, area * grad(phi_i) . grad(phi_j) per triangle.
    Triangles (non-outermost only): jump across each shared edge, weighted by
    edge length over the distance between the two centroids.
    """
    tp = surface.triangle_points
    normals = surface.normals
    area2 = 2.0 * surface.areas
    grads = np.stack([
        np.cross(normals, tp[:, (k + 2) % 3] - tp[:, (k + 1) % 3]) / area2[:, None]
        for k in range(3)
    ], axis=1)                                              # (M, 3, 3)
    local = 0.5 * area2[:, None, None] * np.einsum("mic,mjc->mij", grads, grads)

    gv = surface.vertex_index[surface.faces]                # (M, 3)
    R = np.repeat(gv[:, :, None], 3, axis=2)
    C = np.repeat(gv[:, None, :], 3, axis=1)
    keep = R >= C
    mat.add_entries(R[keep], C[keep], local[keep])

    if surface.outermost:
        return

    centroids = surface.centroids
    edges: dict[tuple[int, int], list[int]] = {}
    for t, tri in enumerate(surface.faces):
        for k in range(3):
            a, b = int(tri[k]), int(tri[(k + 1) % 3])
            edges.setdefault((a, b) if a < b else (b, a), []).append(t)

    rows, cols, vals = [], [], []
    pts = surface.points
    for (a, b), tris in edges.items():
        if len(tris) != 2:
            continue
        t1, t2 = tris
        w = np.linalg.norm(pts[a] - pts[b]) / np.linalg.norm(centroids[t1] - centroids[t2])
        i1, i2 = surface.triangle_index[t1], surface.triangle_index[t2]
        rows += [i1, i2, i1]
        cols += [i1, i2, i2]
        vals += [w, w, -w]
    if rows:
        mat.add_entries(np.array(rows), np.array(cols), np.array(vals))
