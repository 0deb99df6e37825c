from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import numpy as np
from scipy import linalg

from ..errors import GeometryError
from ..geometry.geometry import Geometry
from ..linalg.matrix_io import load_matrix, save_matrix
from ..linalg.symmatrix import SymMatrix
from ..mesh.surface import Surface
from .core import BEMConfig, K
from .operators import (
    gradient_norm2,
    operator_d,
    operator_d_internal,
    operator_n,
    operator_s,
    operator_s_internal,
    single_layer_block,
)

LOG = logging.getLogger(__name__)


# ------------------------------- Head matrix ------------------------------
def deflate(mat: SymMatrix, geo: Geometry) -> float:
    """
    Zero-mean gauge on the outermost interface.

    Adds M[i, i] / n to every pair of its n vertices, i being the first one.
    Returns the constant added.
    """
    idx = geo.outermost_interface.vertex_indices
    first = int(geo.outermost_interface.surfaces[0].vertex_index[0])
    coef = float(mat[first, first]) / len(idx)
    mat.add_constant(idx, coef)
    LOG.debug("Deflation constant %g over %d outermost vertices.", coef, len(idx))
    return coef


def _assemble_pairs(geo: Geometry, mat: SymMatrix, cfg: BEMConfig,
                    exclude: Surface | None = None) -> None:
    """
    Fill the lower half of the head matrix pair by pair (A ranked >= B).

    With `exclude`, the self-interaction of that surface (S, D and N) is left out.
    """
    for ia, a in enumerate(geo.surfaces):
        for b in geo.surfaces[:ia + 1]:
            orientation = geo.oriented(a, b)
            if orientation == 0:
                continue
            skip_self = exclude is not None and a is b and a is exclude
            LOG.info("Pair %s / %s (orientation %+d)%s", a.name, b.name, orientation,
                     " without self terms" if skip_self else "")
            if skip_self:
                continue

            dcoeff = -orientation * geo.indicator(a, b) * K
            s_raw = single_layer_block(a, b, cfg)

            # S first: N reuses the scaled S block when it exists
            if not (a.outermost or b.outermost):
                scoeff = orientation * geo.sigma_inv(a, b) * K
                s_block = operator_s(a, b, mat, scoeff, s_raw)
                ncoeff = geo.sigma(a, b) / geo.sigma_inv(a, b)
            else:
                s_block = s_raw
                ncoeff = orientation * geo.sigma(a, b) * K

            if not a.outermost:
                operator_d(a, b, mat, dcoeff, cfg)
            if a is not b and not b.outermost:
                operator_d(b, a, mat, dcoeff, cfg)

            operator_n(a, b, mat, ncoeff, s_block)


def assemble_head_matrix(geo: Geometry, config: BEMConfig | None = None) -> SymMatrix:
    """
    Symmetric BEM head matrix of `geo`.

    Unknowns are the potentials on every vertex and the normal currents on
    every non-outermost triangle, numbered as in `geo`.
    """
    cfg = config or BEMConfig()
    LOG.info("Assembling head matrix of size %d (gauss order %d, %d worker(s)).",
             geo.size, cfg.gauss_order, cfg.workers)
    mat = SymMatrix(geo.size)
    _assemble_pairs(geo, mat, cfg)
    deflate(mat, geo)
    return mat


# ----------------------------- Cortical mapping ---------------------------
def _cortex(geo: Geometry, domain_name: str) -> Surface:
    domain = geo.domain(domain_name)
    if len(domain.halfspaces) != 1 or not domain.halfspaces[0].inside:
        raise GeometryError(
            f"source domain '{domain_name}' must be the inside of exactly one interface"
        )
    interface = domain.halfspaces[0].interface
    if len(interface.surfaces) != 1:
        raise GeometryError(
            f"interface '{interface.name}' bounding '{domain_name}' must hold exactly one surface, "
            f"found {len(interface.surfaces)}"
        )
    cortex = interface.surfaces[0]
    if cortex.outermost:
        raise GeometryError(f"the source surface '{cortex.name}' cannot be the outermost one")
    shared = np.intersect1d(cortex.vertex_ids,
                            np.concatenate([s.vertex_ids for s in geo.surfaces if s is not cortex]))
    if shared.size:
        raise GeometryError(f"the source surface '{cortex.name}' shares vertices with other surfaces")
    return cortex


def projector_cache_path(directory: str | Path, geo: Geometry, domain_name: str,
                         gauss_order: int) -> Path:
    """Cache file for the cortical projector, named from a hash of the problem."""
    h = hashlib.sha1()
    h.update(f"{domain_name}|{gauss_order}|{geo.size}".encode())
    for s in geo.surfaces:
        h.update(s.name.encode())
        h.update(np.ascontiguousarray(s.points).tobytes())
        h.update(np.ascontiguousarray(s.faces, dtype=np.int64).tobytes())
    for i in geo.interfaces:
        members = ",".join(f"{s.name}:{o}" for s, o in zip(i.surfaces, i.orientations))
        h.update(f"I {i.name}={members}".encode())
    for d in geo.domains:
        sides = ",".join(f"{hs.interface.name}:{int(hs.inside)}" for hs in d.halfspaces)
        h.update(f"D {d.name}={d.conductivity!r}|{sides}".encode())
    return Path(directory) / f"cortical_P_{h.hexdigest()[:16]}.npy"


def reduced_head_matrix(geo: Geometry, domain_name: str, config: BEMConfig | None = None
                        ) -> tuple[np.ndarray, np.ndarray]:
    """
    Head matrix without the source surface's self terms, minus its rows.

    Returns the (Nl, size) matrix and the kept row indices.
    """
    cfg = config or BEMConfig()
    cortex = _cortex(geo, domain_name)
    mat = SymMatrix(geo.size)
    _assemble_pairs(geo, mat, cfg, exclude=cortex)
    deflate(mat, geo)

    drop = np.concatenate([cortex.vertex_index, cortex.triangle_index])
    keep = np.setdiff1d(np.arange(geo.size), drop)
    return mat.submatrix(keep, np.arange(geo.size)), keep


def cortical_projector(geo: Geometry, domain_name: str, config: BEMConfig | None = None,
                       cache: str | Path | None = None) -> np.ndarray:
    """
    Null-space projector of the head matrix with the source rows removed.

    P = W[:, Nl:] W[:, Nl:]^T with W the right singular vectors, so P @ P == P
    and (reduced matrix) @ P == 0. A readable `cache` file is loaded instead
    of recomputing; otherwise the result is written there.
    """
    cfg = config or BEMConfig()
    _cortex(geo, domain_name)

    if cache is not None and Path(cache).is_file():
        LOG.info("Loading projector P (%s).", cache)
        P = np.asarray(load_matrix(cache, "dense"), dtype=np.float64)
        if P.shape != (geo.size, geo.size):
            raise GeometryError(f"cached projector {cache} has shape {P.shape}, expected "
                                f"{(geo.size, geo.size)}")
        return P

    reduced, _ = reduced_head_matrix(geo, domain_name, cfg)
    nl = reduced.shape[0]
    LOG.info("SVD of the %dx%d reduced head matrix.", nl, geo.size)

    _, _, vh = linalg.svd(reduced, full_matrices=True)
    W = vh.T
    P = W[:, nl:] @ W[:, nl:].T

    if cache is not None:
        LOG.info("Saving projector P (%s).", cache)
        save_matrix(P, cache)
    return P


def regularization_weights(geo: Geometry, MM: np.ndarray, RR: np.ndarray,
                           alpha: float, beta: float, cfg: BEMConfig) -> tuple[np.ndarray, float, float]:
    """
    Diagonal of the penalty weights.

    alpha < 0 selects both values automatically; beta < 0 alone follows alpha.
    """
    if alpha < 0:
        vidx = geo.vertex_indices
        nrr_v = np.linalg.norm(RR[np.ix_(vidx, vidx)])
        alpha = np.linalg.norm(MM) / (cfg.auto_alpha_ratio * nrr_v)
        beta = alpha * cfg.beta_over_alpha
        LOG.info("Automatic alpha = %g, beta = %g", alpha, beta)
    elif beta < 0:
        beta = alpha * cfg.beta_over_alpha
        LOG.info("alpha = %g, beta = %g (from alpha)", alpha, beta)
    else:
        LOG.info("alpha = %g, beta = %g", alpha, beta)
    alphas = np.zeros(geo.size)
    alphas[geo.vertex_indices] = alpha
    alphas[geo.triangle_indices] = beta
    return alphas, float(alpha), float(beta)


def assemble_cortical(
    geo: Geometry,
    M,
    domain_name: str,
    config: BEMConfig | None = None,
    alpha: float = -1.0,
    beta: float = -1.0,
    cache: str | Path | None = None,
) -> np.ndarray:
    """
    Cortical mapping: sensor values -> all unknowns, through the source-free subspace.

    Parameters
    ----------
    M           : (n_sensors, size) measurement transfer matrix (dense or sparse)
    domain_name : domain holding the sources; inside a single one-surface interface
    alpha, beta : penalty weights on vertex / triangle unknowns; alpha < 0 estimates both,
                  beta < 0 alone is derived from alpha
    cache       : optional projector cache file

    Returns
    -------
    (size, n_sensors) mapping = P pinv(P^T (M^T M + diag(alphas) R) P) P^T M^T
    """
    cfg = config or BEMConfig()
    M = M.toarray() if hasattr(M, "toarray") else np.asarray(M, dtype=np.float64)
    if M.shape[1] != geo.size:
        raise GeometryError(f"transfer matrix has {M.shape[1]} columns, geometry has {geo.size} unknowns")

    P = cortical_projector(geo, domain_name, cfg, cache)

    MM = M.T @ M
    R = SymMatrix(geo.size)
    for s in geo.surfaces:
        gradient_norm2(s, R)
    RR = R.to_dense()

    alphas, _, _ = regularization_weights(geo, MM, RR, alpha, beta, cfg)
    Z = P.T @ (MM + alphas[:, None] * RR) @ P
    return P @ linalg.pinv(Z) @ (P.T @ M.T)


# ----------------------------- Surface to volume --------------------------
def assemble_surf2vol(geo: Geometry, points, config: BEMConfig | None = None
                      ) -> tuple[np.ndarray, np.ndarray]:
    """
    Potential at interior points from the surface unknowns.

    Points outside every bounded domain are dropped with a warning. Rows
    follow the input order of the kept points.

    Returns
    -------
    mat  : (n_kept, size)
    kept : indices of the kept points in `points`
    """
    cfg = config or BEMConfig()
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    domains = geo.domains_of(points)

    kept = []
    for i, d in enumerate(domains):
        if d.bounded:
            kept.append(i)
        else:
            LOG.warning("Surf2Vol: point %d %s is outside the head; dropped.", i, points[i].tolist())
    kept = np.asarray(kept, dtype=np.int64)

    mat = np.zeros((len(kept), geo.size))
    for d in geo.domains:
        if not d.bounded:
            continue
        sel = np.array([k for k, i in enumerate(kept) if domains[i] is d], dtype=np.int64)
        if sel.size == 0:
            continue
        pts = points[kept[sel]]
        for s in geo.surfaces:
            orientation = d.mesh_orientation(s)
            if orientation == 0:
                continue
            block = orientation * -K * operator_d_internal(pts, s, cfg)
            mat[np.ix_(sel, s.vertex_index)] += block
            if not s.outermost:
                block = orientation * K / d.conductivity * operator_s_internal(pts, s, cfg)
                mat[np.ix_(sel, s.triangle_index)] += block
    return mat, kept
