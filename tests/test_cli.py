"""
End-to-end runs of the headbem command line.
"""

from __future__ import annotations

import numpy as np
import pytest

from conftest import sphere_surface
from headbem.bem.assemble import assemble_head_matrix
from headbem.geometry.geom_io import load_geometry
from headbem.linalg.matrix_io import load_matrix
from headbem.main.main import build_argparser, main
from headbem.mesh.formats import save_surface


class TestArgparser:
    """Sub-command wiring."""

    def test_requires_a_command(self) -> None:
        with pytest.raises(SystemExit):
            build_argparser().parse_args([])

    def test_assembly_defaults(self) -> None:
        args = build_argparser().parse_args(["headmat", "h.geom", "h.cond", "out.bin"])
        assert args.gauss_order == 3
        assert args.parallel is False

    def test_gauss_order_choices(self) -> None:
        with pytest.raises(SystemExit):
            build_argparser().parse_args(["headmat", "h.geom", "h.cond", "out.bin", "--gauss-order", "8"])


class TestCommands:
    """headmat / surf2vol / cortical / check."""

    def test_headmat(self, head_files, tmp_path) -> None:
        out = tmp_path / "hm.bin"
        assert main(["--log-level", "WARNING", "headmat", *map(str, head_files), str(out)]) == 0
        got = load_matrix(out, "symmetric")
        ref = assemble_head_matrix(load_geometry(*head_files))
        assert got.size == 44
        np.testing.assert_array_equal(got.data, ref.data)

    def test_headmat_parallel(self, head_files, tmp_path) -> None:
        serial = tmp_path / "serial.npy"
        parallel = tmp_path / "parallel.npy"
        assert main(["headmat", *map(str, head_files), str(serial)]) == 0
        assert main(["headmat", *map(str, head_files), str(parallel), "--parallel", "--workers", "2"]) == 0
        np.testing.assert_allclose(load_matrix(parallel), load_matrix(serial), rtol=1e-14)

    def test_surf2vol(self, head_files, tmp_path) -> None:
        points = tmp_path / "points.txt"
        points.write_text("0 0 0\n0 0 3\n0 0 1.2\n")
        out = tmp_path / "s2v.txt"
        assert main(["surf2vol", *map(str, head_files), str(points), str(out)]) == 0
        assert load_matrix(out).shape == (2, 44)

    def test_cortical_with_cache(self, head_files, tmp_path) -> None:
        electrodes = tmp_path / "electrodes.txt"
        np.savetxt(electrodes, sphere_surface(2.0).points)
        out = tmp_path / "cortical.npy"
        cache_dir = tmp_path / "cache"
        args = ["cortical", *map(str, head_files), str(electrodes), "Brain", str(out),
                "--cache-dir", str(cache_dir)]
        assert main(args) == 0
        assert load_matrix(out).shape == (44, 12)
        assert len(list(cache_dir.glob("cortical_P_*.npy"))) == 1

    def test_check(self, head_files) -> None:
        assert main(["check", *map(str, head_files)]) == 0

    def test_check_reports_intersections(self, head_files, tmp_path) -> None:
        save_surface(sphere_surface(1.5, center=(1.0, 0.0, 0.0)), tmp_path / "inner.tri")
        assert main(["check", *map(str, head_files)]) == 1

    def test_bad_input_exits_with_2(self, head_files, caplog) -> None:
        geom, cond = head_files
        cond.write_text("Brain 1.0\n")
        assert main(["headmat", str(geom), str(cond), str(geom.parent / "out.bin")]) == 2
        assert "Scalp" in caplog.text

    def test_bad_points_file(self, head_files, tmp_path) -> None:
        points = tmp_path / "points.txt"
        points.write_text("0 0\n1 1\n")
        assert main(["surf2vol", *map(str, head_files), str(points), str(tmp_path / "o.txt")]) == 2
