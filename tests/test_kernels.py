"""
Quadrature rules and the analytic triangle integrals.
"""

from __future__ import annotations

import numpy as np
import pytest
from scipy import integrate

from headbem.bem.core import (
    FOURPI,
    BEMConfig,
    closest_on_surface,
    double_layer,
    quadrature,
    quadrature_points,
    single_layer,
    solid_angle,
    solid_angle_sum,
)

P0 = np.array([0.0, 0.0, 0.0])
P1 = np.array([1.0, 0.0, 0.0])
P2 = np.array([0.0, 1.0, 0.0])


def _over_unit_triangle(f) -> float:
    val, _ = integrate.dblquad(lambda v, u: f(u, v), 0.0, 1.0, 0.0, lambda u: 1.0 - u,
                               epsabs=1e-12, epsrel=1e-12)
    return val


class TestQuadrature:
    """Symmetric triangle rules."""

    @pytest.mark.parametrize("order,n", [(0, 1), (1, 3), (2, 6), (3, 7), (4, 12)])
    def test_sizes_and_weights(self, order, n) -> None:
        bary, w = quadrature(order)
        assert bary.shape == (n, 3)
        np.testing.assert_allclose(bary.sum(axis=1), 1.0)
        assert w.sum() == pytest.approx(1.0, abs=1e-12)

    @pytest.mark.parametrize("order", [1, 2, 3, 4])
    def test_integrates_xy(self, order) -> None:
        nodes, w = quadrature_points(np.array([[P0, P1, P2]]), order)
        val = np.sum(w[0] * nodes[0, :, 0] * nodes[0, :, 1])
        assert val == pytest.approx(1.0 / 24.0, abs=1e-10)

    def test_weights_scale_with_area(self) -> None:
        _, w = quadrature_points(np.array([[P0, 2 * P1, 2 * P2]]), 3)
        assert w.sum() == pytest.approx(2.0)

    def test_unknown_order(self) -> None:
        with pytest.raises(ValueError):
            quadrature(7)

    def test_config_validation(self) -> None:
        with pytest.raises(ValueError):
            BEMConfig(gauss_order=9)
        with pytest.raises(ValueError):
            BEMConfig(workers=0)
        with pytest.raises(ValueError):
            BEMConfig(chunk_rows=0)


class TestSolidAngle:
    """Signed solid angle; positive behind the normal."""

    def test_sign(self) -> None:
        assert solid_angle(np.array([0.2, 0.2, -1.0]), P0, P1, P2) > 0
        assert solid_angle(np.array([0.2, 0.2, 1.0]), P0, P1, P2) < 0
        assert solid_angle(np.array([3.0, 3.0, 0.0]), P0, P1, P2) == pytest.approx(0.0, abs=1e-14)

    def test_closed_surface(self, sphere) -> None:
        tp = np.ascontiguousarray(sphere.triangle_points)
        assert solid_angle_sum(np.array([0.1, -0.2, 0.3]), tp) == pytest.approx(FOURPI)
        assert solid_angle_sum(np.array([0.0, 0.0, 4.0]), tp) == pytest.approx(0.0, abs=1e-12)


class TestSingleLayer:
    """Closed-form integral of 1/|x - y|."""

    @pytest.mark.parametrize("x", [[0.2, 0.2, 0.5], [1.5, -0.3, 0.2], [0.1, 0.3, -2.0]])
    def test_against_numerical(self, x) -> None:
        x = np.array(x)
        ref = _over_unit_triangle(lambda u, v: 1.0 / np.linalg.norm(x - [u, v, 0.0]))
        assert single_layer(x, P0, P1, P2) == pytest.approx(ref, rel=1e-8)

    def test_far_field(self) -> None:
        x = np.array([1 / 3, 1 / 3, 100.0])
        assert single_layer(x, P0, P1, P2) == pytest.approx(0.5 / 100.0, rel=1e-4)

    def test_on_the_triangle_is_finite(self) -> None:
        val = single_layer(np.array([0.25, 0.25, 0.0]), P0, P1, P2)
        assert np.isfinite(val) and val > 0

    def test_winding_does_not_matter(self) -> None:
        x = np.array([0.3, 0.1, 0.7])
        assert single_layer(x, P0, P2, P1) == pytest.approx(single_layer(x, P0, P1, P2))


class TestDoubleLayer:
    """P1 double layer, one value per vertex hat."""

    @pytest.mark.parametrize("x", [[0.2, 0.2, 0.5], [1.2, 0.4, -0.3]])
    def test_against_numerical(self, x) -> None:
        x = np.array(x)
        hats = (lambda u, v: 1.0 - u - v, lambda u, v: u, lambda u, v: v)
        vals = double_layer(x, P0, P1, P2)
        for i, phi in enumerate(hats):
            ref = _over_unit_triangle(
                lambda u, v: phi(u, v) * x[2] / np.linalg.norm(x - [u, v, 0.0]) ** 3
            )
            assert vals[i] == pytest.approx(ref, rel=1e-7, abs=1e-12)

    def test_sum_is_minus_solid_angle(self) -> None:
        x = np.array([0.4, -0.1, 0.3])
        assert double_layer(x, P0, P1, P2).sum() == pytest.approx(-solid_angle(x, P0, P1, P2))

    def test_in_plane_is_zero(self) -> None:
        np.testing.assert_array_equal(double_layer(np.array([0.2, 0.3, 0.0]), P0, P1, P2), 0.0)


class TestClosestPoint:
    """Closest triangle and barycentric weights."""

    def test_projection_inside_a_face(self) -> None:
        tp = np.ascontiguousarray(np.array([[P0, P1, P2]]))
        t, w = closest_on_surface(np.array([0.2, 0.3, 5.0]), tp)
        assert t == 0
        np.testing.assert_allclose(w, [0.5, 0.2, 0.3])

    def test_vertex_region(self) -> None:
        tp = np.ascontiguousarray(np.array([[P0, P1, P2]]))
        _, w = closest_on_surface(np.array([2.0, -1.0, 0.0]), tp)
        np.testing.assert_allclose(w, [0.0, 1.0, 0.0])

    def test_on_sphere(self, sphere) -> None:
        tp = np.ascontiguousarray(sphere.triangle_points)
        x = 3.0 * sphere.centroids[7] / np.linalg.norm(sphere.centroids[7])
        t, w = closest_on_surface(x, tp)
        assert t == 7
        np.testing.assert_allclose(w, 1.0 / 3.0, rtol=1e-6)
