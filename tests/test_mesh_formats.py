"""
Surface file readers and writers.
"""

from __future__ import annotations

import numpy as np
import pytest

from headbem.errors import MeshFormatError, UnknownFormatError
from headbem.mesh.formats import (
    count_vertices,
    find_format,
    load_surface,
    read_mesh,
    save_surface,
)

TRIANGLE_TRI = """- 3
0 0 0 0 0 1
1 0 0 0 0 1
0 1 0 0 0 1
- 1 1 1
0 1 2
"""


class TestRegistry:
    """Format selection by name and suffix."""

    @pytest.mark.parametrize("name,identity", [
        ("a.tri", "tri"), ("a.BND", "bnd"), ("a.off", "off"), ("a.mesh", "mesh"),
        ("a.vtp", "vtk"), ("a.gii", "gii"), ("lh.white", "freesurfer"),
    ])
    def test_by_suffix(self, name, identity) -> None:
        assert find_format(name).identity == identity

    def test_explicit_name_wins(self) -> None:
        assert find_format("surface.txt", "off").identity == "off"

    def test_unknown_suffix(self) -> None:
        with pytest.raises(UnknownFormatError):
            find_format("surface.xyz")

    def test_unknown_name(self) -> None:
        with pytest.raises(UnknownFormatError):
            find_format("surface.tri", "stl")


class TestTextFormats:
    """tri, bnd and off store positions at full precision."""

    @pytest.mark.parametrize("suffix", [".tri", ".bnd", ".off"])
    def test_write_then_read(self, tmp_path, sphere, suffix) -> None:
        path = tmp_path / f"head{suffix}"
        save_surface(sphere, path)
        back = load_surface(path)
        assert back.name == "head"
        np.testing.assert_array_equal(back.points, sphere.points)
        np.testing.assert_array_equal(back.faces, sphere.faces)
        assert count_vertices(path) == sphere.nb_vertices

    def test_tri_keeps_normals(self, tmp_path) -> None:
        path = tmp_path / "one.tri"
        path.write_text(TRIANGLE_TRI)
        data = read_mesh(path)
        assert data.faces.tolist() == [[0, 1, 2]]
        np.testing.assert_array_equal(data.normals, np.tile([0.0, 0.0, 1.0], (3, 1)))

    def test_tri_truncated(self, tmp_path) -> None:
        path = tmp_path / "bad.tri"
        path.write_text(TRIANGLE_TRI.splitlines()[0] + "\n0 0 0 0 0 1\n")
        with pytest.raises(MeshFormatError, match="truncated"):
            read_mesh(path)

    def test_tri_index_out_of_range(self, tmp_path) -> None:
        path = tmp_path / "bad.tri"
        path.write_text(TRIANGLE_TRI.replace("0 1 2", "0 1 3"))
        with pytest.raises(MeshFormatError, match="out of range"):
            read_mesh(path)

    def test_tri_inconsistent_counts(self, tmp_path) -> None:
        path = tmp_path / "bad.tri"
        path.write_text(TRIANGLE_TRI.replace("- 1 1 1", "- 1 2 1"))
        with pytest.raises(MeshFormatError):
            read_mesh(path)

    def test_bnd_comments_are_ignored(self, tmp_path) -> None:
        path = tmp_path / "c.bnd"
        path.write_text(
            "# comment\nNumberPositions= 3 # trailing\nPositions\n"
            "0 0 0\n1 0 0\n0 1 0\nNumberPolygons= 1\nTypePolygons= 3\nPolygons\n0 1 2\n"
        )
        data = read_mesh(path)
        assert data.points.shape == (3, 3)
        assert data.faces.tolist() == [[0, 1, 2]]

    def test_off_rejects_quads(self, tmp_path) -> None:
        path = tmp_path / "q.off"
        path.write_text("OFF\n4 1 0\n0 0 0\n1 0 0\n1 1 0\n0 1 0\n4 0 1 2 3\n")
        with pytest.raises(MeshFormatError):
            read_mesh(path)


class TestBinaryFormats:
    """Single-precision and third-party formats."""

    def test_brainvisa_mesh(self, tmp_path, sphere) -> None:
        path = tmp_path / "head.mesh"
        save_surface(sphere, path)
        assert count_vertices(path) == 12
        data = read_mesh(path)
        np.testing.assert_allclose(data.points, sphere.points, rtol=1e-6)
        np.testing.assert_array_equal(data.faces, sphere.faces)
        np.testing.assert_allclose(data.normals, sphere.vertex_normals, rtol=1e-6, atol=1e-7)

    def test_brainvisa_bad_magic(self, tmp_path) -> None:
        path = tmp_path / "bad.mesh"
        path.write_bytes(b"ascii" + b"\0" * 40)
        with pytest.raises(MeshFormatError):
            read_mesh(path)

    def test_gifti(self, tmp_path, sphere) -> None:
        pytest.importorskip("nibabel")
        path = tmp_path / "head.gii"
        save_surface(sphere, path)
        assert count_vertices(path) == 12
        back = load_surface(path)
        np.testing.assert_allclose(back.points, sphere.points, rtol=1e-6)
        np.testing.assert_array_equal(back.faces, sphere.faces)

    def test_freesurfer(self, tmp_path, sphere) -> None:
        pytest.importorskip("nibabel")
        path = tmp_path / "lh.white"
        save_surface(sphere, path)
        data = read_mesh(path)
        np.testing.assert_allclose(data.points, sphere.points, rtol=1e-6)
        np.testing.assert_array_equal(data.faces, sphere.faces)

    def test_vtk(self, tmp_path, sphere) -> None:
        pytest.importorskip("pyvista")
        path = tmp_path / "head.vtk"
        save_surface(sphere, path)
        assert count_vertices(path) == 12
        data = read_mesh(path)
        np.testing.assert_allclose(data.points, sphere.points)
        np.testing.assert_array_equal(data.faces, sphere.faces)
        assert data.normals is not None
