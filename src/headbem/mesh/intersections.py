from __future__ import annotations

import numpy as np
from scipy.spatial import cKDTree

EPS = 1e-12


def segment_triangle_intersection(p0, p1, tri_vertices):
    """
    Returns (hit_bool, intersection_point, tval)
    Möller–Trumbore intersection with segment p0->p1
    """
    v0, v1, v2 = tri_vertices
    dir_seg = p1 - p0

    edge1 = v1 - v0
    edge2 = v2 - v0
    h = np.cross(dir_seg, edge2)
    a = np.dot(edge1, h)
    if abs(a) < EPS:
        return (False, None, np.inf)
    f = 1.0 / a
    s = p0 - v0
    u = f * np.dot(s, h)
    if u < 0.0 or u > 1.0:
        return (False, None, np.inf)
    q = np.cross(s, edge1)
    v = f * np.dot(dir_seg, q)
    if v < 0.0 or (u + v) > 1.0:
        return (False, None, np.inf)
    t = f * np.dot(edge2, q)
    if t < 0.0 or t > 1.0:
        return (False, None, np.inf)
    return (True, p0 + t * dir_seg, t)


# ----------------------------- coplanar case -----------------------------
def _orient2d(a, b, c) -> float:
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def _segments_cross_2d(a, b, c, d, tol) -> bool:
    d1 = _orient2d(c, d, a)
    d2 = _orient2d(c, d, b)
    d3 = _orient2d(a, b, c)
    d4 = _orient2d(a, b, d)
    if ((d1 > tol and d2 < -tol) or (d1 < -tol and d2 > tol)) and \
       ((d3 > tol and d4 < -tol) or (d3 < -tol and d4 > tol)):
        return True

    def on_segment(p, q, r, dd):
        return abs(dd) <= tol and min(p[0], q[0]) - tol <= r[0] <= max(p[0], q[0]) + tol \
            and min(p[1], q[1]) - tol <= r[1] <= max(p[1], q[1]) + tol

    return (on_segment(c, d, a, d1) or on_segment(c, d, b, d2)
            or on_segment(a, b, c, d3) or on_segment(a, b, d, d4))


def _point_in_triangle_2d(p, tri, tol) -> bool:
    s0 = _orient2d(tri[0], tri[1], p)
    s1 = _orient2d(tri[1], tri[2], p)
    s2 = _orient2d(tri[2], tri[0], p)
    has_neg = s0 < -tol or s1 < -tol or s2 < -tol
    has_pos = s0 > tol or s1 > tol or s2 > tol
    return not (has_neg and has_pos)


def _coplanar_overlap(t1, t2, normal) -> bool:
    # drop the dominant axis of the common normal
    axis = int(np.argmax(np.abs(normal)))
    keep = [k for k in range(3) if k != axis]
    a = t1[:, keep]
    b = t2[:, keep]
    scale = max(np.ptp(np.vstack([a, b]), axis=0).max(), 1.0)
    tol = EPS * scale * scale
    for i in range(3):
        for j in range(3):
            if _segments_cross_2d(a[i], a[(i + 1) % 3], b[j], b[(j + 1) % 3], tol):
                return True
    return _point_in_triangle_2d(a[0], b, tol) or _point_in_triangle_2d(b[0], a, tol)


# ------------------------------ public API -------------------------------
def triangles_intersect(t1, t2) -> bool:
    """
    Triangle/triangle overlap predicate on vertex positions only.

    Parameters
    ----------
    t1, t2 : (3, 3) array_like
        Vertex positions of each triangle (one vertex per row).

    Returns
    -------
    bool
        True when the two closed triangles share at least one point.
    """
    t1 = np.asarray(t1, dtype=np.float64)
    t2 = np.asarray(t2, dtype=np.float64)

    n1 = np.cross(t1[1] - t1[0], t1[2] - t1[0])
    n2 = np.cross(t2[1] - t2[0], t2[2] - t2[0])
    scale = max(np.linalg.norm(n1), np.linalg.norm(n2), EPS)

    # signed distances of each triangle's vertices to the other's plane
    d2 = (t2 - t1[0]) @ n1
    d1 = (t1 - t2[0]) @ n2
    tol = 1e-10 * scale
    if np.all(d2 > tol) or np.all(d2 < -tol) or np.all(d1 > tol) or np.all(d1 < -tol):
        return False

    if np.all(np.abs(d2) <= tol):
        return _coplanar_overlap(t1, t2, n1)

    for a, b in ((t1, t2), (t2, t1)):
        for k in range(3):
            hit, _, _ = segment_triangle_intersection(a[k], a[(k + 1) % 3], b)
            if hit:
                return True
    return False


def _bounding_radii(tri_points: np.ndarray) -> tuple[np.ndarray, float]:
    centroids = tri_points.mean(axis=1)
    radius = float(np.max(np.linalg.norm(tri_points - centroids[:, None, :], axis=2)))
    return centroids, radius


def self_intersecting_pairs(tri_points: np.ndarray, faces: np.ndarray) -> list[tuple[int, int]]:
    """
    All pairs (i, j), i < j, of triangles that intersect without sharing a vertex.

    Triangles sharing a vertex or an edge touch by construction and are skipped.
    """
    if len(faces) < 2:
        return []
    centroids, radius = _bounding_radii(tri_points)
    candidates = cKDTree(centroids).query_pairs(r=2.0 * radius + EPS)

    pairs = []
    for i, j in sorted(candidates):
        if set(faces[i]).intersection(faces[j]):
            continue
        if triangles_intersect(tri_points[i], tri_points[j]):
            pairs.append((i, j))
    return pairs


def surfaces_intersect(tri_points_a: np.ndarray, tri_points_b: np.ndarray) -> bool:
    """True when any triangle of the first set meets any triangle of the second."""
    if len(tri_points_a) == 0 or len(tri_points_b) == 0:
        return False
    ca, ra = _bounding_radii(tri_points_a)
    cb, rb = _bounding_radii(tri_points_b)
    near = cKDTree(ca).query_ball_tree(cKDTree(cb), r=ra + rb + EPS)
    for i, js in enumerate(near):
        for j in js:
            if triangles_intersect(tri_points_a[i], tri_points_b[j]):
                return True
    return False
