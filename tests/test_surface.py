"""
Surface, VertexArena and orientation repair.
"""

from __future__ import annotations

import numpy as np
import pytest

from conftest import icosphere, sphere_surface
from headbem.errors import OrientationError
from headbem.mesh.orientation import edge_votes, has_correct_orientation, inconsistent_edges
from headbem.mesh.surface import Surface, VertexArena


# =============================================================================
# VertexArena
# =============================================================================


class TestVertexArena:
    """Position-deduplicating vertex storage."""

    def test_extend_deduplicates(self) -> None:
        arena = VertexArena()
        ids = arena.extend([[0, 0, 0], [1, 0, 0], [0, 0, 0]])
        assert ids.tolist() == [0, 1, 0]
        assert len(arena) == 2

    def test_second_extend_reuses_existing_ids(self) -> None:
        arena = VertexArena()
        arena.extend([[0, 0, 0], [1, 0, 0]])
        ids = arena.extend([[1, 0, 0], [0, 1, 0]])
        assert ids.tolist() == [1, 2]

    def test_normals_shape_mismatch(self) -> None:
        arena = VertexArena()
        with pytest.raises(ValueError):
            arena.extend(np.zeros((3, 3)), np.zeros((2, 3)))

    def test_move_updates_lookup(self) -> None:
        arena = VertexArena()
        arena.extend([[0, 0, 0], [1, 0, 0]])
        arena.move([1], [[2.0, 0.0, 0.0]])
        assert arena.extend([[2, 0, 0]]).tolist() == [1]
        assert arena.extend([[1, 0, 0]]).tolist() == [2]


# =============================================================================
# Surface
# =============================================================================


class TestSurface:
    """Construction, derived geometry and topology queries."""

    def test_counts(self, sphere) -> None:
        assert sphere.nb_vertices == 12
        assert sphere.nb_triangles == 20
        assert len(sphere) == 20

    def test_closed_sphere_topology(self, sphere) -> None:
        assert sphere.is_closed()
        assert sphere.euler_characteristic() == 2
        assert sphere.has_correct_orientation()

    def test_areas_and_normals(self, sphere) -> None:
        assert np.all(sphere.areas > 0)
        np.testing.assert_allclose(np.linalg.norm(sphere.normals, axis=1), 1.0)
        # outward on a sphere centred at the origin
        assert np.all(np.einsum("ij,ij->i", sphere.normals, sphere.centroids) > 0)

    def test_vertex_normals_are_computed(self, sphere) -> None:
        vn = sphere.vertex_normals
        np.testing.assert_allclose(np.linalg.norm(vn, axis=1), 1.0)
        # the icosahedron is symmetric: vertex normals are radial
        np.testing.assert_allclose(vn, sphere.points / np.linalg.norm(sphere.points, axis=1)[:, None],
                                   atol=1e-12)

    def test_signed_volume(self, sphere) -> None:
        vol = sphere.signed_volume()
        assert 0 < vol < 4.0 * np.pi / 3.0
        sphere.flip_triangles()
        assert sphere.signed_volume() == pytest.approx(-vol)
        assert np.all(np.einsum("ij,ij->i", sphere.normals, sphere.centroids) < 0)

    def test_invalid_face_index(self) -> None:
        pts, faces = icosphere()
        faces = faces.copy()
        faces[0, 0] = 12
        with pytest.raises(ValueError):
            Surface(pts, faces)

    def test_triangle_view(self, sphere) -> None:
        tri = sphere.triangle(3)
        a, b, c = tri.vertices
        assert tri.next(a) == b and tri.next(c) == a
        assert tri.prev(a) == c
        assert tri.area == pytest.approx(sphere.areas[3])
        assert len(list(sphere.iter_triangles())) == sphere.nb_triangles

    def test_links(self, sphere) -> None:
        # every icosahedron vertex touches five triangles
        assert all(len(sphere.triangles_for_vertex(i)) == 5 for i in range(sphere.nb_vertices))
        assert len(sphere.adjacent_triangles(0)) == 3

    def test_shared_arena(self) -> None:
        pts, faces = icosphere()
        arena = VertexArena()
        a = Surface(pts, faces[:10], name="a", arena=arena, resolve=False)
        b = Surface(pts, faces[10:], name="b", arena=arena, resolve=False)
        assert not a.owns_vertices and not b.owns_vertices
        assert len(arena) == 12
        np.testing.assert_array_equal(np.sort(a.vertex_ids), np.sort(b.vertex_ids))

    def test_copy_rebinds_arena(self, sphere) -> None:
        arena = VertexArena()
        dup = sphere.copy(arena=arena, name="dup")
        assert dup.name == "dup"
        assert dup.arena is arena
        np.testing.assert_array_equal(dup.points, sphere.points)
        np.testing.assert_array_equal(dup.faces, sphere.faces)

    def test_merge_disjoint(self) -> None:
        a = sphere_surface(1.0, name="a")
        b = sphere_surface(1.0, name="b", center=(5.0, 0.0, 0.0))
        merged = Surface.merge(a, b)
        assert merged.name == "a+b"
        assert merged.nb_vertices == 24
        assert merged.nb_triangles == 40
        assert merged.euler_characteristic() == 4

    def test_merge_deduplicates_equal_positions(self) -> None:
        pts, faces = icosphere()
        a = Surface(pts, faces[:10], name="a", resolve=False)
        b = Surface(pts, faces[10:], name="b", resolve=False)
        merged = Surface.merge(a, b, name="whole")
        assert merged.nb_vertices == 12
        assert merged.is_closed()

    def test_smooth_shrinks(self) -> None:
        s = sphere_surface(1.0, subdivisions=1)
        before = s.signed_volume()
        s.smooth(0.5, 3)
        assert s.signed_volume() < before
        assert s.is_closed()

    def test_no_self_intersection(self, sphere) -> None:
        assert sphere.intersecting_pairs() == []
        assert not sphere.has_self_intersection()


# =============================================================================
# Orientation
# =============================================================================


class TestOrientation:
    """Edge votes and seed propagation."""

    def test_votes_of_consistent_mesh(self, ico) -> None:
        _, faces = ico
        assert set(edge_votes(faces).values()) == {0}
        assert has_correct_orientation(faces)
        assert inconsistent_edges(faces) == []

    def test_one_flipped_face_is_detected(self, ico) -> None:
        _, faces = ico
        faces = faces.copy()
        faces[5] = faces[5][[0, 2, 1]]
        assert not has_correct_orientation(faces)
        assert len(inconsistent_edges(faces)) == 3

    def test_repair_flips_back(self, ico) -> None:
        pts, faces = ico
        faces = faces.copy()
        faces[5] = faces[5][[0, 2, 1]]
        s = Surface(pts, faces)
        report = s.orientation_report
        assert not report.was_consistent
        assert report.flipped == [5]
        assert report.ok
        assert s.has_correct_orientation()
        assert s.signed_volume() > 0

    @pytest.mark.parametrize("second,flipped", [([1, 3, 2], []), ([1, 2, 3], [1])])
    def test_open_strip(self, second, flipped) -> None:
        pts = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 1.0, 0.0]])
        faces = np.array([[0, 1, 2], second])
        s = Surface(pts, faces)
        votes = edge_votes(s.faces)
        assert max(abs(v) for v in votes.values()) == 1
        assert sum(1 for v in votes.values() if v == 0) == 1
        assert s.has_correct_orientation()
        assert not s.is_closed()
        assert s.orientation_report.flipped == flipped

    def test_repair_is_idempotent(self, sphere) -> None:
        faces = sphere.faces.copy()
        report = sphere.resolve_orientation()
        assert report.was_consistent
        np.testing.assert_array_equal(sphere.faces, faces)

    def test_unreachable_triangles_are_reported(self) -> None:
        pts_a, faces_a = icosphere()
        pts_b, faces_b = icosphere(center=(5.0, 0.0, 0.0))
        faces_b = faces_b.copy()
        faces_b[0] = faces_b[0][[0, 2, 1]]
        s = Surface(np.vstack([pts_a, pts_b]), np.vstack([faces_a, faces_b + 12]), resolve=False)

        report = s.resolve_orientation()
        assert not report.ok
        assert report.unreached == list(range(20, 40))

        with pytest.raises(OrientationError) as info:
            s.resolve_orientation(strict=True)
        assert len(info.value.report.unreached) == 20
