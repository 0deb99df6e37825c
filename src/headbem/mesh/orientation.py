from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

import numpy as np

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class OrientationReport:
    """Outcome of an orientation repair pass over one surface."""
    surface: str
    was_consistent: bool
    flipped: list[int] = field(default_factory=list)
    unreached: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.unreached


def edge_votes(faces: np.ndarray) -> dict[tuple[int, int], int]:
    """
    Signed vote per undirected edge.

    Each triangle adds +1 to an edge it walks from the lower to the higher
    vertex index and -1 otherwise. A well oriented shared edge sums to 0, a
    border edge to +-1 and a locally inconsistent edge to +-2.
    """
    votes: dict[tuple[int, int], int] = {}
    for tri in faces:
        for k in range(3):
            a, b = int(tri[k]), int(tri[(k + 1) % 3])
            key = (a, b) if a < b else (b, a)
            votes[key] = votes.get(key, 0) + (1 if a < b else -1)
    return votes


def has_correct_orientation(faces: np.ndarray) -> bool:
    for vote in edge_votes(faces).values():
        if abs(vote) >= 2:
            return False
    return True


def inconsistent_edges(faces: np.ndarray) -> list[tuple[int, int]]:
    return [edge for edge, vote in edge_votes(faces).items() if abs(vote) >= 2]


def triangle_links(faces: np.ndarray, n_vertices: int) -> list[list[int]]:
    """For every vertex, the triangles that reference it."""
    links: list[list[int]] = [[] for _ in range(n_vertices)]
    for t, tri in enumerate(faces):
        for v in tri:
            links[int(v)].append(t)
    return links


def adjacent_triangles(faces: np.ndarray, links: list[list[int]], t: int) -> list[int]:
    """Triangles sharing exactly two vertices (an edge) with triangle `t`."""
    counts = Counter()
    for v in faces[t]:
        counts.update(links[int(v)])
    return [other for other, n in counts.items() if n == 2]


def _directed_edges(tri) -> set[tuple[int, int]]:
    return {(int(tri[k]), int(tri[(k + 1) % 3])) for k in range(3)}


def orient_from_seed(faces: np.ndarray, links: list[list[int]], seed: int = 0
                     ) -> tuple[np.ndarray, list[int], list[int]]:
    """
    Propagate the winding of `seed` to every triangle reachable through shared edges.

    Uses an explicit stack; a neighbour is flipped when it walks the shared edge
    in the same direction as the already resolved triangle.

    Returns
    -------
    faces     : (M, 3) int array with corrected winding
    flipped   : indices of the triangles whose winding was reversed
    unreached : indices of the triangles not connected to the seed
    """
    faces = np.array(faces, copy=True)
    n = len(faces)
    if n == 0:
        return faces, [], []

    visited = np.zeros(n, dtype=bool)
    visited[seed] = True
    stack = [seed]
    flipped: list[int] = []

    while stack:
        t = stack.pop()
        t_edges = _directed_edges(faces[t])
        for other in adjacent_triangles(faces, links, t):
            if visited[other]:
                continue
            if _directed_edges(faces[other]) & t_edges:
                faces[other] = faces[other][[0, 2, 1]]
                flipped.append(int(other))
            visited[other] = True
            stack.append(other)

    unreached = [int(i) for i in np.flatnonzero(~visited)]
    return faces, flipped, unreached
