from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

import numpy as np

from ..bem.core import FOURPI, solid_angle_sum
from ..errors import GeometryError
from ..mesh.surface import Surface, VertexArena

LOG = logging.getLogger(__name__)

AIR = "Air"


@dataclass(slots=True)
class Interface:
    """A closed boundary made of one or more oriented surfaces."""
    name: str
    surfaces: list[Surface]
    orientations: list[int]
    outermost: bool = False

    def __iter__(self):
        return iter(self.surfaces)

    def __len__(self) -> int:
        return len(self.surfaces)

    def orientation_of(self, surface: Surface) -> int:
        for s, o in zip(self.surfaces, self.orientations):
            if s is surface:
                return o
        return 0

    @property
    def vertex_indices(self) -> np.ndarray:
        idx = np.concatenate([s.vertex_index for s in self.surfaces])
        return np.asarray(list(dict.fromkeys(idx.tolist())), dtype=np.int64)

    @property
    def nb_vertices(self) -> int:
        return len(self.vertex_indices)

    @property
    def nb_triangles(self) -> int:
        return sum(s.nb_triangles for s in self.surfaces)

    def winding(self, point) -> float:
        """Winding number of the interface around `point` (+-1 inside, 0 outside)."""
        p = np.asarray(point, dtype=np.float64)
        acc = 0.0
        for s, o in zip(self.surfaces, self.orientations):
            acc += o * solid_angle_sum(p, s.triangle_points)
        return acc / FOURPI

    def contains_point(self, point) -> bool:
        return abs(self.winding(point)) > 0.5

    def is_closed(self) -> bool:
        counts: dict[tuple[int, int], int] = {}
        for s in self.surfaces:
            for tri in s.triangles:
                for k in range(3):
                    a, b = int(tri[k]), int(tri[(k + 1) % 3])
                    key = (a, b) if a < b else (b, a)
                    counts[key] = counts.get(key, 0) + 1
        return bool(counts) and all(c == 2 for c in counts.values())


@dataclass(slots=True)
class HalfSpace:
    interface: Interface
    inside: bool


@dataclass(slots=True)
class Domain:
    """Homogeneous region: intersection of half-spaces, with a conductivity."""
    name: str
    halfspaces: list[HalfSpace] = field(default_factory=list)
    conductivity: float = 1.0

    @property
    def bounded(self) -> bool:
        return any(hs.inside for hs in self.halfspaces)

    def mesh_orientation(self, surface: Surface) -> int:
        """+-1 when `surface` bounds this domain (sign of its normal relative to the domain), else 0."""
        for hs in self.halfspaces:
            o = hs.interface.orientation_of(surface)
            if o:
                return o if hs.inside else -o
        return 0

    def contains_surface(self, surface: Surface) -> bool:
        return self.mesh_orientation(surface) != 0

    def contains_point(self, point) -> bool:
        return all(hs.interface.contains_point(point) == hs.inside for hs in self.halfspaces)


class Geometry:
    """
    Ordered surfaces grouped into interfaces and domains.

    Parameters
    ----------
    surfaces      : surfaces in assembly order; re-bound into one shared vertex arena
    interfaces    : (name, [(surface_name, +-1), ...]) per interface
    domains       : (name, [(interface_name, inside), ...]) per domain
    conductivities: domain name -> conductivity; the unbounded domain defaults to 0
    """

    def __init__(
        self,
        surfaces: Sequence[Surface],
        interfaces: Sequence[tuple[str, Sequence[tuple[str, int]]]],
        domains: Sequence[tuple[str, Sequence[tuple[str, bool]]]],
        conductivities: Mapping[str, float] | None = None,
    ) -> None:
        names = [s.name for s in surfaces]
        if len(set(names)) != len(names):
            raise GeometryError(f"surface names must be unique, got {names}")

        self.arena = VertexArena()
        self.surfaces: list[Surface] = [s.copy(arena=self.arena) for s in surfaces]
        by_name = {s.name: s for s in self.surfaces}

        self.interfaces: list[Interface] = []
        for iname, members in interfaces:
            try:
                surfs = [by_name[m] for m, _ in members]
            except KeyError as exc:
                raise GeometryError(f"interface '{iname}' references unknown surface {exc}") from None
            self.interfaces.append(Interface(iname, surfs, [1 if o >= 0 else -1 for _, o in members]))
        iface_by_name = {i.name: i for i in self.interfaces}

        conductivities = dict(conductivities or {})
        self.domains: list[Domain] = []
        for dname, sides in domains:
            try:
                hs = [HalfSpace(iface_by_name[i], bool(inside)) for i, inside in sides]
            except KeyError as exc:
                raise GeometryError(f"domain '{dname}' references unknown interface {exc}") from None
            self.domains.append(Domain(dname, hs))

        unbounded = [d for d in self.domains if not d.bounded]
        if len(unbounded) != 1:
            raise GeometryError(
                f"exactly one unbounded domain is required, found {[d.name for d in unbounded]}"
            )
        self.air = unbounded[0]
        outer = [hs.interface for hs in self.air.halfspaces]
        if len(outer) != 1:
            raise GeometryError(f"the unbounded domain '{self.air.name}' must be bounded by one interface")
        self._outermost = outer[0]
        self._outermost.outermost = True
        for s in self.surfaces:
            s.outermost = False
        for s in self._outermost.surfaces:
            s.outermost = True

        for d in self.domains:
            if d.name in conductivities:
                d.conductivity = float(conductivities[d.name])
            elif d is self.air:
                d.conductivity = 0.0
            else:
                raise GeometryError(f"no conductivity given for domain '{d.name}'")

        self._generate_indices()
        LOG.info("Geometry: %d surface(s), %d interface(s), %d domain(s), %d unknowns.",
                 len(self.surfaces), len(self.interfaces), len(self.domains), self.size)

    # --------------------------------------------------------------- indices
    def _generate_indices(self) -> None:
        # all vertices first (shared ones once), then non-outermost triangles
        assigned: dict[int, int] = {}
        for s in self.surfaces:
            for vid in s.vertex_ids.tolist():
                assigned.setdefault(vid, len(assigned))
        for s in self.surfaces:
            s.vertex_index = np.array([assigned[v] for v in s.vertex_ids.tolist()], dtype=np.int64)
        index = len(assigned)
        for s in self.surfaces:
            if not s.outermost:
                s.triangle_index = np.arange(index, index + s.nb_triangles, dtype=np.int64)
                index += s.nb_triangles
        self.nb_vertices = len(assigned)
        self.size = index
        # outermost triangles are not unknowns; give them indices past the end
        for s in self.surfaces:
            if s.outermost:
                s.triangle_index = np.arange(index, index + s.nb_triangles, dtype=np.int64)
                index += s.nb_triangles

    # ---------------------------------------------------------------- access
    def __iter__(self):
        return iter(self.surfaces)

    def __len__(self) -> int:
        return len(self.surfaces)

    @property
    def outermost_interface(self) -> Interface:
        return self._outermost

    @property
    def vertex_indices(self) -> np.ndarray:
        return np.arange(self.nb_vertices, dtype=np.int64)

    @property
    def triangle_indices(self) -> np.ndarray:
        """Unknown indices of every non-outermost triangle."""
        parts = [s.triangle_index for s in self.surfaces if not s.outermost]
        return np.concatenate(parts) if parts else np.empty(0, dtype=np.int64)

    def surface(self, name: str) -> Surface:
        for s in self.surfaces:
            if s.name == name:
                return s
        raise GeometryError(f"no surface named '{name}'")

    def interface(self, name: str) -> Interface:
        for i in self.interfaces:
            if i.name == name:
                return i
        raise GeometryError(f"no interface named '{name}'")

    def domain(self, name: str) -> Domain:
        for d in self.domains:
            if d.name == name:
                return d
        raise GeometryError(f"no domain named '{name}'")

    # ------------------------------------------------------------- relations
    def _common_domains(self, a: Surface, b: Surface) -> list[Domain]:
        return [d for d in self.domains if d.contains_surface(a) and d.contains_surface(b)]

    def oriented(self, a: Surface, b: Surface) -> int:
        """0 without a shared domain, +1 if both normals point the same way into it, -1 otherwise."""
        for d in self._common_domains(a, b):
            return 1 if d.mesh_orientation(a) == d.mesh_orientation(b) else -1
        return 0

    def sigma(self, a: Surface, b: Surface) -> float:
        return sum(d.conductivity for d in self._common_domains(a, b))

    def sigma_inv(self, a: Surface, b: Surface) -> float:
        return sum(1.0 / d.conductivity for d in self._common_domains(a, b))

    def indicator(self, a: Surface, b: Surface) -> int:
        return len(self._common_domains(a, b))

    # ---------------------------------------------------------------- points
    def domain_of(self, point) -> Domain:
        """First bounded domain containing `point`, else the unbounded one."""
        for d in self.domains:
            if d.bounded and d.contains_point(point):
                return d
        return self.air

    def domains_of(self, points) -> list[Domain]:
        return [self.domain_of(p) for p in np.asarray(points, dtype=np.float64).reshape(-1, 3)]

    # ----------------------------------------------------------------- checks
    def check(self) -> tuple[bool, list[str]]:
        """Closedness, orientation and intersection checks; returns (ok, issues)."""
        issues: list[str] = []
        for i in self.interfaces:
            if not i.is_closed():
                issues.append(f"[interface {i.name}] is not closed")
        for s in self.surfaces:
            if not s.has_correct_orientation():
                issues.append(f"[surface {s.name}] has inconsistent triangle orientation")
            if s.has_self_intersection():
                issues.append(f"[surface {s.name}] self-intersects")
        for k, a in enumerate(self.surfaces):
            for b in self.surfaces[k + 1:]:
                if _share_vertices(a, b):
                    continue
                if a.intersects(b):
                    issues.append(f"[surfaces {a.name}/{b.name}] intersect")
        ok = (len(issues) == 0)
        return ok, issues

    def info(self) -> None:
        LOG.info("Geometry with %d unknowns (%d vertices).", self.size, self.nb_vertices)
        for s in self.surfaces:
            s.info()
        for d in self.domains:
            LOG.info("Domain '%s': conductivity %g, bounded=%s", d.name, d.conductivity, d.bounded)

    # ------------------------------------------------------------ constructors
    @classmethod
    def nested(
        cls,
        surfaces: Sequence[Surface],
        conductivities: Iterable[float],
        names: Sequence[str] | None = None,
    ) -> "Geometry":
        """
        Nested shells, innermost first; one conductivity per enclosed layer.

        Every surface is its own interface (oriented +1). Layer k lies inside
        surface k and outside surface k-1; the region outside the last surface
        is the unbounded Air domain.
        """
        sigmas = [float(c) for c in conductivities]
        if len(sigmas) != len(surfaces):
            raise GeometryError(f"{len(surfaces)} surfaces need {len(surfaces)} conductivities, "
                                f"got {len(sigmas)}")
        if names is None:
            names = [f"Layer{k}" for k in range(len(surfaces))]
        if len(names) != len(surfaces):
            raise GeometryError("one domain name per surface is required")
        if any(math.isclose(s, 0.0) for s in sigmas):
            raise GeometryError("bounded domains need a non-zero conductivity")

        interfaces = [(s.name, [(s.name, 1)]) for s in surfaces]
        domains = []
        for k, s in enumerate(surfaces):
            sides = [(s.name, True)]
            if k > 0:
                sides.append((surfaces[k - 1].name, False))
            domains.append((names[k], sides))
        domains.append((AIR, [(surfaces[-1].name, False)]))
        return cls(surfaces, interfaces, domains, dict(zip(names, sigmas)))


def _share_vertices(a: Surface, b: Surface) -> bool:
    return bool(np.intersect1d(a.vertex_ids, b.vertex_ids).size)
