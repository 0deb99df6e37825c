from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

import numpy as np
from scipy.sparse import coo_matrix

from ..errors import OrientationError
from .intersections import self_intersecting_pairs, surfaces_intersect
from .orientation import (
    OrientationReport,
    adjacent_triangles,
    edge_votes,
    has_correct_orientation,
    orient_from_seed,
    triangle_links,
)

LOG = logging.getLogger(__name__)

_TINY = 1e3 * np.finfo(np.float64).tiny


# ----------------------------- Vertex storage -----------------------------
class VertexArena:
    """
    Growable store of vertex positions and normals addressed by integer ids.

    `extend` deduplicates by position equality, so two surfaces built on the
    same arena share any vertex they have in common.
    """

    def __init__(self) -> None:
        self.positions = np.empty((0, 3), dtype=np.float64)
        self.normals = np.empty((0, 3), dtype=np.float64)
        self._lookup: dict[tuple[float, float, float], int] = {}

    def __len__(self) -> int:
        return len(self.positions)

    @staticmethod
    def _key(p) -> tuple[float, float, float]:
        return (float(p[0]), float(p[1]), float(p[2]))

    def extend(self, points, normals=None) -> np.ndarray:
        """Add points (deduplicated) and return their ids, one per input row."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if normals is None:
            normals = np.zeros_like(points)
        else:
            normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
            if normals.shape != points.shape:
                raise ValueError(
                    f"got {len(normals)} normals for {len(points)} vertices"
                )

        ids = np.empty(len(points), dtype=np.int64)
        base = len(self.positions)
        new_rows: list[int] = []
        for i, p in enumerate(points):
            key = self._key(p)
            idx = self._lookup.get(key)
            if idx is None:
                idx = base + len(new_rows)
                self._lookup[key] = idx
                new_rows.append(i)
            ids[i] = idx

        if new_rows:
            self.positions = np.vstack([self.positions, points[new_rows]])
            self.normals = np.vstack([self.normals, normals[new_rows]])
        return ids

    def move(self, ids, positions) -> None:
        self.positions[np.asarray(ids)] = positions
        self._lookup = {self._key(p): i for i, p in enumerate(self.positions)}


# ----------------------------- Element views ------------------------------
@dataclass(frozen=True, slots=True)
class Vertex:
    position: np.ndarray
    normal: np.ndarray
    index: int


@dataclass(frozen=True, slots=True)
class Triangle:
    vertices: tuple[int, int, int]
    points: np.ndarray
    normal: np.ndarray
    area: float
    index: int

    def next(self, v: int) -> int:
        k = self.vertices.index(v)
        return self.vertices[(k + 1) % 3]

    def prev(self, v: int) -> int:
        k = self.vertices.index(v)
        return self.vertices[(k + 2) % 3]


# -------------------------------- Surface ---------------------------------
class Surface:
    """
    Triangulated surface: vertices (arena ids) and oriented triangular facets.

    Parameters
    ----------
    points  : (N, 3) vertex positions
    faces   : (M, 3) indices into `points`; the order of a row defines the winding
    normals : optional (N, 3) vertex normals; recomputed from facets when absent
    arena   : shared VertexArena; when omitted the surface owns a private one
    resolve : repair inconsistent facet winding after construction
    """

    def __init__(
        self,
        points,
        faces,
        normals=None,
        *,
        name: str = "",
        outermost: bool = False,
        arena: VertexArena | None = None,
        resolve: bool = True,
    ) -> None:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
        if faces.size and (faces.min() < 0 or faces.max() >= len(points)):
            raise ValueError(
                f"surface '{name}': triangle references a vertex outside 0..{len(points) - 1}"
            )

        self.name = name
        self.outermost = outermost
        self.owns_vertices = arena is None
        self.arena = VertexArena() if arena is None else arena
        self.orientation_report: OrientationReport | None = None

        ids = self.arena.extend(points, normals)
        self.vertex_ids = np.asarray(list(dict.fromkeys(ids.tolist())), dtype=np.int64)
        lut = np.full(int(ids.max()) + 1 if ids.size else 0, -1, dtype=np.int64)
        lut[self.vertex_ids] = np.arange(len(self.vertex_ids))
        self.faces = lut[ids[faces]] if faces.size else np.empty((0, 3), dtype=np.int64)

        # unknown indices, overwritten when the surface joins a Geometry
        self.vertex_index = np.arange(self.nb_vertices, dtype=np.int64)
        self.triangle_index = np.arange(self.nb_triangles, dtype=np.int64)

        self.update(resolve=resolve)

    # ------------------------------------------------------------ basic data
    @property
    def nb_vertices(self) -> int:
        return len(self.vertex_ids)

    @property
    def nb_triangles(self) -> int:
        return len(self.faces)

    def __len__(self) -> int:
        return self.nb_triangles

    def __repr__(self) -> str:
        return (f"Surface(name={self.name!r}, vertices={self.nb_vertices}, "
                f"triangles={self.nb_triangles}, outermost={self.outermost})")

    @property
    def points(self) -> np.ndarray:
        return self.arena.positions[self.vertex_ids]

    @property
    def vertex_normals(self) -> np.ndarray:
        return self.arena.normals[self.vertex_ids]

    @property
    def triangles(self) -> np.ndarray:
        """Triangles as arena ids (comparable across surfaces of one arena)."""
        return self.vertex_ids[self.faces]

    @property
    def triangle_points(self) -> np.ndarray:
        return self.points[self.faces]

    @property
    def centroids(self) -> np.ndarray:
        return self.triangle_points.mean(axis=1)

    def vertex(self, i: int) -> Vertex:
        return Vertex(self.points[i], self.vertex_normals[i], int(self.vertex_index[i]))

    def triangle(self, t: int) -> Triangle:
        return Triangle(
            tuple(int(v) for v in self.faces[t]),
            self.triangle_points[t],
            self.normals[t],
            float(self.areas[t]),
            int(self.triangle_index[t]),
        )

    def iter_triangles(self) -> Iterator[Triangle]:
        for t in range(self.nb_triangles):
            yield self.triangle(t)

    def triangles_for_vertex(self, i: int) -> list[int]:
        return self.links[i]

    # -------------------------------------------------------------- updating
    def _compute_triangle_geometry(self) -> None:
        tp = self.triangle_points
        cross = np.cross(tp[:, 1] - tp[:, 0], tp[:, 2] - tp[:, 0])
        norm = np.linalg.norm(cross, axis=1)
        degenerate = norm <= _TINY
        if np.any(degenerate):
            LOG.warning("Surface '%s': %d degenerate triangle(s) with zero area.",
                        self.name, int(degenerate.sum()))
        self.areas = 0.5 * norm
        self.normals = np.divide(cross, norm[:, None], out=np.zeros_like(cross),
                                 where=~degenerate[:, None])

    def _compute_vertex_normals(self) -> None:
        vn = self.vertex_normals
        missing = np.linalg.norm(vn, axis=1) < _TINY
        if not np.any(missing):
            return
        LOG.debug("Surface '%s': recomputing %d vertex normal(s).", self.name, int(missing.sum()))
        acc = np.zeros((self.nb_vertices, 3))
        for k in range(3):
            np.add.at(acc, self.faces[:, k], self.normals)
        length = np.linalg.norm(acc, axis=1)
        acc = np.divide(acc, length[:, None], out=np.zeros_like(acc), where=length[:, None] > 0)
        self.arena.normals[self.vertex_ids[missing]] = acc[missing]

    def update(self, *, resolve: bool = True) -> None:
        """Recompute facet normals/areas and vertex links; optionally repair orientation."""
        self._compute_triangle_geometry()
        self.links = triangle_links(self.faces, self.nb_vertices)
        self._compute_vertex_normals()
        if resolve:
            self.resolve_orientation()

    # ----------------------------------------------------------- orientation
    def edge_map(self) -> dict[tuple[int, int], int]:
        return edge_votes(self.faces)

    def has_correct_orientation(self) -> bool:
        return has_correct_orientation(self.faces)

    def adjacent_triangles(self, t: int) -> list[int]:
        return adjacent_triangles(self.faces, self.links, t)

    def resolve_orientation(self, *, strict: bool = False) -> OrientationReport:
        """
        Make facet winding locally consistent by propagating it from triangle 0.

        Triangles not connected to the seed are left untouched and listed in
        the returned report; with `strict=True` that condition raises
        OrientationError instead.
        """
        if self.has_correct_orientation():
            report = OrientationReport(self.name, was_consistent=True)
        else:
            LOG.warning("Surface '%s': local orientation problem, reorienting.", self.name)
            faces, flipped, unreached = orient_from_seed(self.faces, self.links, seed=0)
            self.faces = faces
            self._compute_triangle_geometry()
            report = OrientationReport(self.name, False, flipped, unreached)
            LOG.info("Surface '%s': flipped %d triangle(s).", self.name, len(flipped))
            if unreached:
                LOG.warning("Surface '%s': %d triangle(s) unreachable from the seed; "
                            "their orientation was not checked.", self.name, len(unreached))

        self.orientation_report = report
        if strict and not report.ok:
            raise OrientationError(report)
        return report

    def flip_triangles(self) -> None:
        """Reverse the winding of every facet."""
        self.faces = self.faces[:, [0, 2, 1]]
        self.normals = -self.normals

    # ------------------------------------------------------------- geometry
    def signed_volume(self) -> float:
        """Divergence-theorem volume; positive for a closed surface with outward normals."""
        tp = self.triangle_points
        return float(np.einsum("ij,ij->i", tp[:, 0], np.cross(tp[:, 1], tp[:, 2])).sum() / 6.0)

    def is_closed(self) -> bool:
        counts: dict[tuple[int, int], int] = {}
        for tri in self.faces:
            for k in range(3):
                a, b = int(tri[k]), int(tri[(k + 1) % 3])
                key = (a, b) if a < b else (b, a)
                counts[key] = counts.get(key, 0) + 1
        return bool(counts) and all(c == 2 for c in counts.values())

    def euler_characteristic(self) -> int:
        return self.nb_vertices - len(self.edge_map()) + self.nb_triangles

    def info(self) -> None:
        LOG.info("Surface '%s'", self.name)
        LOG.info("  # vertices  : %d", self.nb_vertices)
        LOG.info("  # triangles : %d", self.nb_triangles)
        LOG.info("  Euler characteristic : %d", self.euler_characteristic())
        if self.nb_triangles:
            LOG.info("  Min area : %g", float(self.areas.min()))
            LOG.info("  Max area : %g", float(self.areas.max()))

    def smooth(self, intensity: float, niter: int) -> None:
        """Laplacian smoothing: move each vertex towards the mean of its neighbours."""
        if not self.owns_vertices:
            LOG.warning("Surface '%s' borrows its vertices; smoothing moves them for "
                        "every surface sharing them.", self.name)
        rows = np.concatenate([self.faces[:, k] for k in (0, 1, 2, 1, 2, 0)])
        cols = np.concatenate([self.faces[:, k] for k in (1, 2, 0, 0, 1, 2)])
        adj = coo_matrix((np.ones(len(rows)), (rows, cols)),
                         shape=(self.nb_vertices, self.nb_vertices)).tocsr()
        adj.data[:] = 1.0  # duplicated edges collapse to a single neighbour
        degree = np.asarray(adj.sum(axis=1)).ravel()
        degree[degree == 0] = 1.0

        pts = self.points
        for _ in range(int(niter)):
            pts = pts + intensity * (adj @ pts / degree[:, None] - pts)
        self.arena.move(self.vertex_ids, pts)
        self.arena.normals[self.vertex_ids] = 0.0
        self.update(resolve=False)

    # ----------------------------------------------------------- intersection
    def intersecting_pairs(self) -> list[tuple[int, int]]:
        return self_intersecting_pairs(self.triangle_points, self.faces)

    def has_self_intersection(self) -> bool:
        pairs = self.intersecting_pairs()
        for i, j in pairs:
            LOG.info("Surface '%s': triangles %d and %d are intersecting.", self.name, i, j)
        return bool(pairs)

    def intersects(self, other: "Surface") -> bool:
        return surfaces_intersect(self.triangle_points, other.triangle_points)

    # ----------------------------------------------------------- constructors
    def copy(self, *, arena: VertexArena | None = None, name: str | None = None) -> "Surface":
        """Duplicate the surface, optionally re-binding its vertices to a shared arena."""
        return Surface(
            self.points,
            self.faces,
            self.vertex_normals,
            name=self.name if name is None else name,
            outermost=self.outermost,
            arena=arena,
            resolve=False,
        )

    @classmethod
    def merge(cls, first: "Surface", second: "Surface", *, name: str = "") -> "Surface":
        """Union of two surfaces; vertices at equal positions are merged."""
        points = np.vstack([first.points, second.points])
        normals = np.vstack([first.vertex_normals, second.vertex_normals])
        faces = np.vstack([first.faces, second.faces + first.nb_vertices])
        return cls(points, faces, normals, name=name or f"{first.name}+{second.name}")
