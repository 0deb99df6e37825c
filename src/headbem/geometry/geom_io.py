from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import GeometryFormatError
from ..mesh.formats import load_surface
from .geometry import Geometry

LOG = logging.getLogger(__name__)

_HEADER = re.compile(r"#\s*Domain\s+Description\s+(\d+\.\d+)", re.IGNORECASE)
VERSIONS = ("1.0", "1.1")


@dataclass(slots=True)
class GeometryDescription:
    version: str
    meshes: list[tuple[str, Path]] = field(default_factory=list)
    interfaces: list[tuple[str, list[tuple[str, int]]]] = field(default_factory=list)
    domains: list[tuple[str, list[tuple[str, bool]]]] = field(default_factory=list)


def _lines(path: Path) -> list[tuple[int, list[str]]]:
    out = []
    for lineno, raw in enumerate(path.read_text().splitlines(), start=1):
        text = raw.split("#", 1)[0].strip()
        if not text:
            continue
        try:
            out.append((lineno, shlex.split(text)))
        except ValueError as exc:
            raise GeometryFormatError(f"{path}:{lineno}: {exc}") from None
    return out


def _signed(token: str) -> tuple[str, int]:
    if token[:1] in "+-":
        return token[1:], (-1 if token[0] == "-" else 1)
    return token, 1


def _section(lines, pos: int, path: Path, keyword: str) -> tuple[int, int]:
    """Parse '<keyword> N [...]' at lines[pos]; returns (count, next position)."""
    if pos >= len(lines):
        raise GeometryFormatError(f"{path}: missing '{keyword}' section")
    lineno, tok = lines[pos]
    if not tok or tok[0] != keyword or len(tok) < 2:
        raise GeometryFormatError(f"{path}:{lineno}: expected '{keyword} <count>', found {' '.join(tok)!r}")
    try:
        return int(tok[1]), pos + 1
    except ValueError:
        raise GeometryFormatError(f"{path}:{lineno}: '{tok[1]}' is not a count") from None


def _take(lines, pos: int, count: int, path: Path, what: str):
    if pos + count > len(lines):
        raise GeometryFormatError(f"{path}: expected {count} {what} line(s), file ends early")
    return lines[pos:pos + count], pos + count


def _named(tok: list[str], keyword: str, default: str) -> tuple[str, list[str]]:
    # "Keyword name: a b c" or "Keyword: a b c" or "Keyword name a b c"
    head = tok[0]
    rest = tok[1:]
    if head.endswith(":") and head[:-1] == keyword:
        return default, rest
    if head != keyword:
        raise ValueError(f"expected '{keyword}', found '{head}'")
    if not rest:
        raise ValueError(f"'{keyword}' line without content")
    name = rest[0]
    if name.endswith(":"):
        return name[:-1], rest[1:]
    return name, rest[1:]


def read_geom(path: str | Path) -> GeometryDescription:
    """Parse a domain description file (versions 1.0 and 1.1)."""
    path = Path(path)
    text = path.read_text()
    first = next((ln for ln in text.splitlines() if ln.strip()), "")
    m = _HEADER.search(first)
    if m is None:
        raise GeometryFormatError(f"{path}: missing '# Domain Description <version>' header")
    version = m.group(1)
    if version not in VERSIONS:
        raise GeometryFormatError(f"{path}: unsupported domain description version {version}")

    base = path.parent
    lines = _lines(path)
    desc = GeometryDescription(version)
    pos = 0

    try:
        if version == "1.0":
            n, pos = _section(lines, pos, path, "Interfaces")
            rows, pos = _take(lines, pos, n, path, "mesh file")
            for _, tok in rows:
                mesh_path = base / tok[0]
                name = mesh_path.stem
                desc.meshes.append((name, mesh_path))
                desc.interfaces.append((name, [(name, 1)]))
        else:
            if lines and lines[pos][1][0] == "Meshes":
                n, pos = _section(lines, pos, path, "Meshes")
                rows, pos = _take(lines, pos, n, path, "mesh")
                for _, tok in rows:
                    if tok[0] in ("Mesh", "Mesh:"):
                        name, rest = _named(tok, "Mesh", "")
                    else:
                        name, rest = "", tok
                    if len(rest) != 1:
                        raise ValueError(f"mesh line needs exactly one file, got {rest}")
                    mesh_path = base / rest[0]
                    desc.meshes.append((name or mesh_path.stem, mesh_path))

            n, pos = _section(lines, pos, path, "Interfaces")
            rows, pos = _take(lines, pos, n, path, "interface")
            known = {name for name, _ in desc.meshes}
            for k, (_, tok) in enumerate(rows, start=1):
                name, rest = _named(tok, "Interface", f"Interface{k}")
                members = []
                for item in rest:
                    mesh, sign = _signed(item)
                    if mesh not in known and "." in mesh:
                        # mesh given directly by its file name
                        mesh_path = base / mesh
                        mesh = mesh_path.stem
                        if mesh not in known:
                            desc.meshes.append((mesh, mesh_path))
                            known.add(mesh)
                    if mesh not in known:
                        raise ValueError(f"interface '{name}' uses unknown mesh '{mesh}'")
                    members.append((mesh, sign))
                if not members:
                    raise ValueError(f"interface '{name}' has no mesh")
                desc.interfaces.append((name, members))

        n, pos = _section(lines, pos, path, "Domains")
        rows, pos = _take(lines, pos, n, path, "domain")
        iface_names = [name for name, _ in desc.interfaces]
        for _, tok in rows:
            name, rest = _named(tok, "Domain", "")
            if not name:
                raise ValueError("domain without a name")
            sides = []
            for item in rest:
                ref, sign = _signed(item)
                if version == "1.0" or ref not in iface_names:
                    if ref.isdigit() and 1 <= int(ref) <= len(iface_names):
                        ref = iface_names[int(ref) - 1]
                if ref not in iface_names:
                    raise ValueError(f"domain '{name}' uses unknown interface '{ref}'")
                sides.append((ref, sign < 0))
            desc.domains.append((name, sides))
    except GeometryFormatError:
        raise
    except ValueError as exc:
        raise GeometryFormatError(f"{path}: {exc}") from None

    if pos != len(lines):
        lineno, tok = lines[pos]
        raise GeometryFormatError(f"{path}:{lineno}: unexpected trailing content {' '.join(tok)!r}")
    return desc


def read_cond(path: str | Path) -> dict[str, float]:
    """Conductivity file: one 'name value' pair per line, '#' comments."""
    path = Path(path)
    out: dict[str, float] = {}
    for lineno, tok in _lines(path):
        if len(tok) != 2:
            raise GeometryFormatError(f"{path}:{lineno}: expected 'name value', found {' '.join(tok)!r}")
        try:
            out[tok[0]] = float(tok[1])
        except ValueError:
            raise GeometryFormatError(f"{path}:{lineno}: '{tok[1]}' is not a number") from None
    return out


def write_geom(desc: GeometryDescription, path: str | Path) -> None:
    path = Path(path)
    with open(path, "w") as f:
        f.write("# Domain Description 1.1\n\n")
        f.write(f"Meshes {len(desc.meshes)}\n\n")
        for name, mesh_path in desc.meshes:
            f.write(f'Mesh {name}: "{mesh_path}"\n')
        f.write(f"\nInterfaces {len(desc.interfaces)}\n\n")
        for name, members in desc.interfaces:
            f.write(f"Interface {name}: " + " ".join(("-" if s < 0 else "+") + m for m, s in members) + "\n")
        f.write(f"\nDomains {len(desc.domains)}\n\n")
        for name, sides in desc.domains:
            f.write(f"Domain {name}: " + " ".join(("-" if inside else "+") + i for i, inside in sides) + "\n")


def load_geometry(geom_path: str | Path, cond_path: str | Path) -> Geometry:
    """Read the description and conductivities, load every mesh and build the Geometry."""
    desc = read_geom(geom_path)
    conductivities = read_cond(cond_path)
    LOG.info("Geometry %s (version %s): %d mesh(es).", geom_path, desc.version, len(desc.meshes))
    surfaces = [load_surface(mesh_path, name=name) for name, mesh_path in desc.meshes]
    return Geometry(surfaces, desc.interfaces, desc.domains, conductivities)
