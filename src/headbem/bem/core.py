# bem/core.py
from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
from numba import njit

FOURPI = 4.0 * math.pi
K = 1.0 / FOURPI


# ----------------------------- Configuration -----------------------------
@dataclass(slots=True)
class BEMConfig:
    gauss_order: int = 3
    workers: int = 1
    chunk_rows: int = 128
    auto_alpha_ratio: float = 1e3
    beta_over_alpha: float = 5e4

    def __post_init__(self):
        if self.gauss_order not in _QUADRATURE:
            raise ValueError(
                f"gauss_order must be one of {sorted(_QUADRATURE)}, got {self.gauss_order}"
            )
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.chunk_rows < 1:
            raise ValueError(f"chunk_rows must be >= 1, got {self.chunk_rows}")


# ------------------------------ Quadrature -------------------------------
def _orbit3(a: float) -> list[tuple[float, float, float]]:
    b = 1.0 - 2.0 * a
    return [(b, a, a), (a, b, a), (a, a, b)]


def _orbit6(a: float, b: float) -> list[tuple[float, float, float]]:
    c = 1.0 - a - b
    return [(a, b, c), (a, c, b), (b, a, c), (b, c, a), (c, a, b), (c, b, a)]


def _rule(groups) -> tuple[np.ndarray, np.ndarray]:
    pts, wts = [], []
    for points, w in groups:
        pts.extend(points)
        wts.extend([w] * len(points))
    return np.array(pts, dtype=np.float64), np.array(wts, dtype=np.float64)


# Symmetric rules on the triangle in barycentric coordinates; weights sum to 1
# and are multiplied by the physical area.
_QUADRATURE = {
    0: _rule([([(1 / 3, 1 / 3, 1 / 3)], 1.0)]),
    1: _rule([(_orbit3(1 / 6), 1 / 3)]),
    2: _rule([
        (_orbit3(0.445948490915965), 0.223381589678011),
        (_orbit3(0.091576213509771), 0.109951743655322),
    ]),
    3: _rule([
        ([(1 / 3, 1 / 3, 1 / 3)], 0.225),
        (_orbit3(0.470142064105115), 0.132394152788506),
        (_orbit3(0.101286507323456), 0.125939180544827),
    ]),
    4: _rule([
        (_orbit3(0.249286745170910), 0.116786275726379),
        (_orbit3(0.063089014491502), 0.050844906370207),
        (_orbit6(0.053145049844817, 0.310352451033784), 0.082851075618374),
    ]),
}


def quadrature(gauss_order: int) -> tuple[np.ndarray, np.ndarray]:
    """Barycentric nodes (n, 3) and unit-sum weights (n,) of a rule."""
    if gauss_order not in _QUADRATURE:
        raise ValueError(f"no quadrature rule of order {gauss_order}")
    return _QUADRATURE[gauss_order]


def quadrature_points(tri_points: np.ndarray, gauss_order: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Physical quadrature nodes and weights for a batch of triangles.

    Parameters
    ----------
    tri_points : (M, 3, 3) vertex positions per triangle

    Returns
    -------
    nodes   : (M, n, 3)
    weights : (M, n), already scaled by each triangle's area
    """
    bary, w = quadrature(gauss_order)
    nodes = np.einsum("qk,mkj->mqj", bary, tri_points)
    areas = 0.5 * np.linalg.norm(
        np.cross(tri_points[:, 1] - tri_points[:, 0], tri_points[:, 2] - tri_points[:, 0]), axis=1
    )
    return nodes, areas[:, None] * w[None, :]


# ----------------------------- Utilities ---------------------------------
@njit(cache=True, fastmath=True, nogil=True)
def _dot3(a, b) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


@njit(cache=True, fastmath=True, nogil=True)
def _cross3(a, b):
    out = np.empty(3)
    out[0] = a[1] * b[2] - a[2] * b[1]
    out[1] = a[2] * b[0] - a[0] * b[2]
    out[2] = a[0] * b[1] - a[1] * b[0]
    return out


@njit(cache=True, fastmath=True, nogil=True)
def _norm3(a) -> float:
    return math.sqrt(_dot3(a, a))


@njit(cache=True, fastmath=True, nogil=True)
def _edge_log(R: float, l: float, r0sq: float) -> float:
    # R + l, rewritten as r0^2 / (R - l) when l < 0 to avoid cancellation
    if l >= 0.0:
        return R + l
    return r0sq / (R - l)


@njit(cache=True, fastmath=True, nogil=True)
def _closest_point_barycentric(x, v0, v1, v2):
    # Closest point of triangle (v0,v1,v2) to x as barycentric weights
    # (Christer Ericson, "Real-Time Collision Detection", robust form)
    out = np.zeros(3)
    ab = v1 - v0
    ac = v2 - v0
    ap = x - v0
    d1 = _dot3(ab, ap)
    d2 = _dot3(ac, ap)
    if d1 <= 0.0 and d2 <= 0.0:
        out[0] = 1.0
        return out

    bp = x - v1
    d3 = _dot3(ab, bp)
    d4 = _dot3(ac, bp)
    if d3 >= 0.0 and d4 <= d3:
        out[1] = 1.0
        return out

    vc = d1 * d4 - d3 * d2
    if vc <= 0.0 and d1 >= 0.0 and d3 <= 0.0:
        v = d1 / (d1 - d3)
        out[0] = 1.0 - v
        out[1] = v
        return out

    cp = x - v2
    d5 = _dot3(ab, cp)
    d6 = _dot3(ac, cp)
    if d6 >= 0.0 and d5 <= d6:
        out[2] = 1.0
        return out

    vb = d5 * d2 - d1 * d6
    if vb <= 0.0 and d2 >= 0.0 and d6 <= 0.0:
        w = d2 / (d2 - d6)
        out[0] = 1.0 - w
        out[2] = w
        return out

    va = d3 * d6 - d5 * d4
    if va <= 0.0 and (d4 - d3) >= 0.0 and (d5 - d6) >= 0.0:
        w = (d4 - d3) / ((d4 - d3) + (d5 - d6))
        out[1] = 1.0 - w
        out[2] = w
        return out

    # Inside face region
    denom = 1.0 / (va + vb + vc)
    out[1] = vb * denom
    out[2] = vc * denom
    out[0] = 1.0 - out[1] - out[2]
    return out


# --------------------------- Analytic integrals --------------------------
@njit(cache=True, fastmath=True, nogil=True)
def solid_angle(x, p0, p1, p2) -> float:
    """Signed solid angle of triangle (p0,p1,p2) seen from x; positive behind the normal."""
    r1 = p0 - x
    r2 = p1 - x
    r3 = p2 - x
    n1 = _norm3(r1)
    n2 = _norm3(r2)
    n3 = _norm3(r3)
    num = _dot3(r1, _cross3(r2, r3))
    den = n1 * n2 * n3 + _dot3(r1, r2) * n3 + _dot3(r1, r3) * n2 + _dot3(r2, r3) * n1
    return 2.0 * math.atan2(num, den)


@njit(cache=True, fastmath=True, nogil=True)
def solid_angle_sum(x, tri_points) -> float:
    acc = 0.0
    for t in range(tri_points.shape[0]):
        acc += solid_angle(x, tri_points[t, 0], tri_points[t, 1], tri_points[t, 2])
    return acc


@njit(cache=True, fastmath=True, nogil=True)
def single_layer(x, p0, p1, p2) -> float:
    """
    Closed form of the integral of 1/|x - y| over the flat triangle (p0,p1,p2).

    Edge-wise formula for a constant density; finite for x on the triangle.
    """
    nrm = _cross3(p1 - p0, p2 - p0)
    nrm = nrm / _norm3(nrm)
    d = _dot3(x - p0, nrm)
    ad = abs(d)
    xp = x - d * nrm

    acc = 0.0
    for e in range(3):
        if e == 0:
            a, b = p0, p1
        elif e == 1:
            a, b = p1, p2
        else:
            a, b = p2, p0
        edge = b - a
        length = _norm3(edge)
        s = edge / length
        u = _cross3(s, nrm)
        P0 = _dot3(a - xp, u)
        if abs(P0) <= 1e-12 * length:
            continue
        lm = _dot3(a - xp, s)
        lp = _dot3(b - xp, s)
        r0sq = P0 * P0 + d * d
        Rm = _norm3(a - x)
        Rp = _norm3(b - x)
        acc += P0 * math.log(_edge_log(Rp, lp, r0sq) / _edge_log(Rm, lm, r0sq))
        acc -= ad * (math.atan(P0 * lp / (r0sq + ad * Rp)) - math.atan(P0 * lm / (r0sq + ad * Rm)))
    return acc


@njit(cache=True, fastmath=True, nogil=True)
def double_layer(x, p0, p1, p2):
    """
    Integrals of phi_i(y) * n.(x - y)/|x - y|^3 over the triangle, one per vertex.

    phi_i are the linear hat functions of the triangle; the result is zero
    for x in the plane of the triangle.
    """
    out = np.zeros(3)
    nrm = _cross3(p1 - p0, p2 - p0)
    area2 = _norm3(nrm)
    nrm = nrm / area2
    d = _dot3(x - p0, nrm)
    if abs(d) <= 1e-12 * math.sqrt(area2):
        return out
    xp = x - d * nrm

    I0 = -solid_angle(x, p0, p1, p2)

    J = np.zeros(3)
    for e in range(3):
        if e == 0:
            a, b = p0, p1
        elif e == 1:
            a, b = p1, p2
        else:
            a, b = p2, p0
        edge = b - a
        s = edge / _norm3(edge)
        u = _cross3(s, nrm)
        P0 = _dot3(a - xp, u)
        lm = _dot3(a - xp, s)
        lp = _dot3(b - xp, s)
        r0sq = P0 * P0 + d * d
        ln = math.log(_edge_log(_norm3(b - x), lp, r0sq) / _edge_log(_norm3(a - x), lm, r0sq))
        J -= ln * u

    for i in range(3):
        if i == 0:
            pi, pa, pb = p0, p1, p2
        elif i == 1:
            pi, pa, pb = p1, p2, p0
        else:
            pi, pa, pb = p2, p0, p1
        grad = _cross3(nrm, pb - pa) / area2
        phi = 1.0 + _dot3(grad, xp - pi)
        out[i] = phi * I0 + d * _dot3(grad, J)
    return out


# --------------------------- Block integrators ---------------------------
@njit(cache=True, fastmath=True, nogil=True)
def s_rows(rows, nodes_a, weights_a, tri_b, lower):
    """
    Rows of the single-layer block: outer quadrature on triangles `rows` of
    the first surface, closed-form inner integral on every triangle of the
    second. With `lower`, only columns j <= row index are filled.
    """
    out = np.zeros((rows.shape[0], tri_b.shape[0]))
    for r in range(rows.shape[0]):
        i = rows[r]
        ncol = i + 1 if lower else tri_b.shape[0]
        for j in range(ncol):
            acc = 0.0
            for q in range(nodes_a.shape[1]):
                acc += weights_a[i, q] * single_layer(nodes_a[i, q], tri_b[j, 0], tri_b[j, 1], tri_b[j, 2])
            out[r, j] = acc
    return out


@njit(cache=True, fastmath=True, nogil=True)
def d_rows(rows, nodes_a, weights_a, tri_b, faces_b, nv_b):
    """Rows of the double-layer block: P0 tests on `rows`, P1 columns on the second surface."""
    out = np.zeros((rows.shape[0], nv_b))
    for r in range(rows.shape[0]):
        i = rows[r]
        for j in range(tri_b.shape[0]):
            for q in range(nodes_a.shape[1]):
                vals = double_layer(nodes_a[i, q], tri_b[j, 0], tri_b[j, 1], tri_b[j, 2])
                w = weights_a[i, q]
                for k in range(3):
                    out[r, faces_b[j, k]] += w * vals[k]
    return out


@njit(cache=True, fastmath=True, nogil=True)
def s_points(points, tri_b):
    out = np.zeros((points.shape[0], tri_b.shape[0]))
    for p in range(points.shape[0]):
        for j in range(tri_b.shape[0]):
            out[p, j] = single_layer(points[p], tri_b[j, 0], tri_b[j, 1], tri_b[j, 2])
    return out


@njit(cache=True, fastmath=True, nogil=True)
def d_points(points, tri_b, faces_b, nv_b):
    out = np.zeros((points.shape[0], nv_b))
    for p in range(points.shape[0]):
        for j in range(tri_b.shape[0]):
            vals = double_layer(points[p], tri_b[j, 0], tri_b[j, 1], tri_b[j, 2])
            for k in range(3):
                out[p, faces_b[j, k]] += vals[k]
    return out


@njit(cache=True, fastmath=True, nogil=True)
def closest_on_surface(x, tri_points):
    """Index of the closest triangle and the barycentric weights of the closest point."""
    best = -1
    best_d2 = 1e300
    best_w = np.zeros(3)
    for t in range(tri_points.shape[0]):
        w = _closest_point_barycentric(x, tri_points[t, 0], tri_points[t, 1], tri_points[t, 2])
        y = w[0] * tri_points[t, 0] + w[1] * tri_points[t, 1] + w[2] * tri_points[t, 2]
        diff = x - y
        d2 = _dot3(diff, diff)
        if d2 < best_d2:
            best_d2 = d2
            best = t
            best_w = w
    return best, best_w
