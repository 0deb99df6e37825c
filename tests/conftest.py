"""
Shared fixtures: icosahedral spheres and nested-shell geometries.
"""

from __future__ import annotations

import numpy as np
import pytest

from headbem.geometry.geometry import Geometry
from headbem.mesh.formats import save_surface
from headbem.mesh.surface import Surface

_T = (1.0 + np.sqrt(5.0)) / 2.0

_ICO_POINTS = np.array([
    [-1, _T, 0], [1, _T, 0], [-1, -_T, 0], [1, -_T, 0],
    [0, -1, _T], [0, 1, _T], [0, -1, -_T], [0, 1, -_T],
    [_T, 0, -1], [_T, 0, 1], [-_T, 0, -1], [-_T, 0, 1],
], dtype=float)

_ICO_FACES = np.array([
    [0, 11, 5], [0, 5, 1], [0, 1, 7], [0, 7, 10], [0, 10, 11],
    [1, 5, 9], [5, 11, 4], [11, 10, 2], [10, 7, 6], [7, 1, 8],
    [3, 9, 4], [3, 4, 2], [3, 2, 6], [3, 6, 8], [3, 8, 9],
    [4, 9, 5], [2, 4, 11], [6, 2, 10], [8, 6, 7], [9, 8, 1],
])


def icosphere(radius: float = 1.0, subdivisions: int = 0, center=(0.0, 0.0, 0.0)):
    """Points and outward-oriented faces of a subdivided icosahedron."""
    pts = [p / np.linalg.norm(p) for p in _ICO_POINTS]
    faces = [tuple(f) for f in _ICO_FACES]
    for _ in range(subdivisions):
        cache: dict[tuple[int, int], int] = {}

        def midpoint(i, j):
            key = (min(i, j), max(i, j))
            if key not in cache:
                m = pts[i] + pts[j]
                pts.append(m / np.linalg.norm(m))
                cache[key] = len(pts) - 1
            return cache[key]

        new_faces = []
        for a, b, c in faces:
            ab, bc, ca = midpoint(a, b), midpoint(b, c), midpoint(c, a)
            new_faces += [(a, ab, ca), (b, bc, ab), (c, ca, bc), (ab, bc, ca)]
        faces = new_faces

    pts = np.array(pts)
    faces = np.array(faces, dtype=np.int64)
    # make every face point away from the centre
    tp = pts[faces]
    n = np.cross(tp[:, 1] - tp[:, 0], tp[:, 2] - tp[:, 0])
    inward = np.einsum("ij,ij->i", n, tp.mean(axis=1)) < 0
    faces[inward] = faces[inward][:, [0, 2, 1]]
    return radius * pts + np.asarray(center, dtype=float), faces


def sphere_surface(radius=1.0, subdivisions=0, name="sphere", center=(0.0, 0.0, 0.0)) -> Surface:
    pts, faces = icosphere(radius, subdivisions, center)
    return Surface(pts, faces, name=name)


@pytest.fixture
def ico():
    return icosphere()


@pytest.fixture
def sphere() -> Surface:
    return sphere_surface()


@pytest.fixture
def two_shells() -> Geometry:
    inner = sphere_surface(1.0, name="inner")
    outer = sphere_surface(2.0, name="outer")
    return Geometry.nested([inner, outer], [1.0, 0.33], names=["Brain", "Scalp"])


@pytest.fixture
def three_shells() -> Geometry:
    cortex = sphere_surface(1.0, name="cortex")
    skull = sphere_surface(1.5, name="skull")
    scalp = sphere_surface(2.0, name="scalp")
    return Geometry.nested([cortex, skull, scalp], [1.0, 0.0125, 1.0],
                           names=["Brain", "Skull", "Scalp"])


GEOM_11 = """# Domain Description 1.1

Meshes 2

Mesh inner: "inner.tri"
Mesh outer: "outer.tri"

Interfaces 2

Interface Cortex: +inner
Interface Head: +outer

Domains 3

Domain Brain: -Cortex
Domain Scalp: -Head +Cortex
Domain Air: +Head
"""

COND = """# conductivities (S/m)
Air    0.0
Scalp  0.33
Brain  1.0
"""


@pytest.fixture
def head_files(tmp_path):
    """Two-shell head on disk: (geom, cond) paths."""
    save_surface(sphere_surface(1.0, name="inner"), tmp_path / "inner.tri")
    save_surface(sphere_surface(2.0, name="outer"), tmp_path / "outer.tri")
    geom = tmp_path / "head.geom"
    cond = tmp_path / "head.cond"
    geom.write_text(GEOM_11)
    cond.write_text(COND)
    return geom, cond
