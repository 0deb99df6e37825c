from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np

from ..errors import MeshFormatError, UnknownFormatError
from .surface import Surface, VertexArena

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MeshData:
    points: np.ndarray
    faces: np.ndarray
    normals: np.ndarray | None = None


@dataclass(frozen=True, slots=True)
class MeshFormat:
    identity: str
    suffixes: tuple[str, ...]
    count: Callable[[Path], int]
    read: Callable[[Path], MeshData]
    write: Callable[[Path, MeshData], None]


# ----------------------------- text helpers -------------------------------
class _Tokens:
    """Whitespace token cursor over a text file, raising MeshFormatError on bad input."""

    def __init__(self, path: Path, comment: str | None = None):
        self.path = path
        text = path.read_text()
        if comment is not None:
            text = "\n".join(line.split(comment, 1)[0] for line in text.splitlines())
        self.items = text.split()
        self.pos = 0

    def fail(self, detail: str):
        return MeshFormatError(self.path, detail)

    def next(self) -> str:
        if self.pos >= len(self.items):
            raise self.fail("unexpected end of file")
        tok = self.items[self.pos]
        self.pos += 1
        return tok

    def peek(self) -> str | None:
        return self.items[self.pos] if self.pos < len(self.items) else None

    def expect(self, word: str) -> None:
        tok = self.next()
        if tok != word:
            raise self.fail(f"expected '{word}', found '{tok}'")

    def integer(self) -> int:
        tok = self.next()
        try:
            return int(tok)
        except ValueError:
            raise self.fail(f"expected an integer, found '{tok}'") from None

    def block(self, rows: int, cols: int, dtype) -> np.ndarray:
        end = self.pos + rows * cols
        if end > len(self.items):
            raise self.fail(f"expected {rows} rows of {cols} values, file is truncated")
        chunk = self.items[self.pos:end]
        self.pos = end
        try:
            return np.asarray(chunk, dtype=np.float64).astype(dtype).reshape(rows, cols)
        except ValueError as exc:
            raise self.fail(f"non-numeric value in a {rows}x{cols} block ({exc})") from None


def _check_faces(path: Path, faces: np.ndarray, n_points: int) -> np.ndarray:
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if faces.size and (faces.min() < 0 or faces.max() >= n_points):
        raise MeshFormatError(path, f"triangle index out of range 0..{n_points - 1}")
    return faces


def _fmt_rows(arr: np.ndarray, fmt: str) -> str:
    return "\n".join(" ".join(fmt % v for v in row) for row in arr)


# --------------------------------- tri ------------------------------------
def _count_tri(path: Path) -> int:
    tok = _Tokens(path)
    tok.next()
    return tok.integer()


def _read_tri(path: Path) -> MeshData:
    tok = _Tokens(path)
    tok.expect("-")
    npts = tok.integer()
    data = tok.block(npts, 6, np.float64)
    tok.expect("-")
    counts = {tok.integer() for _ in range(3)}
    if len(counts) != 1:
        raise tok.fail(f"triangle count repeated with different values {sorted(counts)}")
    ntrgs = counts.pop()
    faces = tok.block(ntrgs, 3, np.int64)
    return MeshData(data[:, :3], _check_faces(path, faces, npts), data[:, 3:])


def _write_tri(path: Path, mesh: MeshData) -> None:
    normals = mesh.normals if mesh.normals is not None else np.zeros_like(mesh.points)
    nt = len(mesh.faces)
    with open(path, "w") as f:
        f.write(f"- {len(mesh.points)}\n")
        f.write(_fmt_rows(np.hstack([mesh.points, normals]), "%.17g") + "\n")
        f.write(f"- {nt} {nt} {nt}\n")
        if nt:
            f.write(_fmt_rows(mesh.faces, "%d") + "\n")


# --------------------------------- bnd ------------------------------------
def _bnd_header(tok: _Tokens) -> int:
    word = tok.next()
    if word == "Type=":
        tok.next()
        word = tok.next()
    if word != "NumberPositions=":
        raise tok.fail(f"expected 'NumberPositions=', found '{word}'")
    return tok.integer()


def _count_bnd(path: Path) -> int:
    return _bnd_header(_Tokens(path, comment="#"))


def _read_bnd(path: Path) -> MeshData:
    tok = _Tokens(path, comment="#")
    npts = _bnd_header(tok)
    if tok.peek() == "UnitPosition":
        tok.next()
        tok.next()
    tok.expect("Positions")
    points = tok.block(npts, 3, np.float64)
    tok.expect("NumberPolygons=")
    ntrgs = tok.integer()
    tok.expect("TypePolygons=")
    tok.expect("3")
    tok.expect("Polygons")
    faces = tok.block(ntrgs, 3, np.int64)
    return MeshData(points, _check_faces(path, faces, npts))


def _write_bnd(path: Path, mesh: MeshData) -> None:
    with open(path, "w") as f:
        f.write("# Bnd mesh file generated by headbem\n")
        f.write("Type= Unknown\n")
        f.write(f"NumberPositions= {len(mesh.points)}\n")
        f.write("UnitPosition\tmm\n")
        f.write("Positions\n")
        f.write(_fmt_rows(mesh.points, "%.17g") + "\n")
        f.write(f"NumberPolygons= {len(mesh.faces)}\n")
        f.write("TypePolygons=\t3\n")
        f.write("Polygons\n")
        if len(mesh.faces):
            f.write(_fmt_rows(mesh.faces, "%d") + "\n")


# --------------------------------- off ------------------------------------
def _count_off(path: Path) -> int:
    tok = _Tokens(path, comment="#")
    tok.expect("OFF")
    return tok.integer()


def _read_off(path: Path) -> MeshData:
    tok = _Tokens(path, comment="#")
    tok.expect("OFF")
    npts, ntrgs = tok.integer(), tok.integer()
    tok.integer()
    points = tok.block(npts, 3, np.float64)
    rows = tok.block(ntrgs, 4, np.int64)
    if ntrgs and np.any(rows[:, 0] != 3):
        raise tok.fail("only triangular polygons are supported")
    return MeshData(points, _check_faces(path, rows[:, 1:], npts))


def _write_off(path: Path, mesh: MeshData) -> None:
    with open(path, "w") as f:
        f.write("OFF\n")
        f.write(f"{len(mesh.points)} {len(mesh.faces)} 0\n")
        f.write(_fmt_rows(mesh.points, "%.17g") + "\n")
        for a, b, c in mesh.faces:
            f.write(f"3 {a} {b} {c}\n")


# ----------------------------- mesh (binary) ------------------------------
# BrainVisa layout: "binar" + "DCBA" + <uint32 n><n bytes> + vertex_per_face,
# mesh_time, mesh_step, npts, then float32 points, uint32, float32 normals,
# uint32, uint32 ntrgs and uint32 faces; all little-endian.
def _mesh_header(path: Path, raw: bytes) -> tuple[int, int]:
    try:
        if raw[:5] != b"binar":
            raise MeshFormatError(path, "not a binary BrainVisa mesh")
        (arg_size,) = struct.unpack_from("<I", raw, 9)
        off = 13 + arg_size
        vpf, time, _step, npts = struct.unpack_from("<4I", raw, off)
    except struct.error:
        raise MeshFormatError(path, "truncated header") from None
    if vpf != 3:
        raise MeshFormatError(path, f"{vpf} vertices per face; only triangles are supported")
    if time != 1:
        raise MeshFormatError(path, f"{time} time frames; only one is supported")
    return npts, off + 16


def _count_mesh(path: Path) -> int:
    with open(path, "rb") as f:
        head = f.read(1024)
    return _mesh_header(path, head)[0]


def _read_mesh(path: Path) -> MeshData:
    raw = path.read_bytes()
    npts, off = _mesh_header(path, raw)
    try:
        points = np.frombuffer(raw, "<f4", npts * 3, off).reshape(-1, 3)
        off += 12 * npts + 4
        normals = np.frombuffer(raw, "<f4", npts * 3, off).reshape(-1, 3)
        off += 12 * npts + 4
        (ntrgs,) = struct.unpack_from("<I", raw, off)
        faces = np.frombuffer(raw, "<u4", ntrgs * 3, off + 4).reshape(-1, 3)
    except (ValueError, struct.error):
        raise MeshFormatError(path, "file shorter than its declared counts") from None
    return MeshData(points.astype(np.float64), _check_faces(path, faces, npts),
                    normals.astype(np.float64))


def _write_mesh(path: Path, mesh: MeshData) -> None:
    npts = len(mesh.points)
    normals = mesh.normals if mesh.normals is not None else np.zeros_like(mesh.points)
    with open(path, "wb") as f:
        f.write(b"binarDCBA")
        f.write(struct.pack("<I", 4) + b"VOID")
        f.write(struct.pack("<4I", 3, 1, 0, npts))
        f.write(np.asarray(mesh.points, "<f4").tobytes())
        f.write(struct.pack("<I", npts))
        f.write(np.asarray(normals, "<f4").tobytes())
        f.write(struct.pack("<II", 0, len(mesh.faces)))
        f.write(np.asarray(mesh.faces, "<u4").tobytes())


# ------------------------------ vtk / vtp ---------------------------------
def _read_pyvista(path: Path) -> MeshData:
    import pyvista as pv

    mesh = pv.read(str(path))
    if not isinstance(mesh, pv.PolyData):
        mesh = mesh.extract_surface()
    if not mesh.is_all_triangles:
        raise MeshFormatError(path, "only triangular polygons are supported")
    faces = mesh.faces.reshape(-1, 4)[:, 1:].astype(np.int64)
    normals = None
    for key in ("Normals", "normals"):
        if key in mesh.point_data:
            normals = np.asarray(mesh.point_data[key], dtype=np.float64)
            break
    return MeshData(np.asarray(mesh.points, dtype=np.float64),
                    _check_faces(path, faces, mesh.n_points), normals)


def _count_pyvista(path: Path) -> int:
    import pyvista as pv

    return int(pv.read(str(path)).n_points)


def _write_pyvista(path: Path, mesh: MeshData) -> None:
    import pyvista as pv

    faces_pv = np.hstack([np.full((len(mesh.faces), 1), 3, dtype=np.int64), mesh.faces])
    poly = pv.PolyData(np.asarray(mesh.points, dtype=np.float64), faces_pv.ravel())
    if mesh.normals is not None:
        poly.point_data["Normals"] = mesh.normals
    poly.save(str(path))


# --------------------------------- gifti ----------------------------------
def _read_gifti(path: Path) -> MeshData:
    import nibabel as nib

    img = nib.load(str(path))
    pts = img.get_arrays_from_intent("NIFTI_INTENT_POINTSET")
    tris = img.get_arrays_from_intent("NIFTI_INTENT_TRIANGLE")
    if not pts or not tris:
        raise MeshFormatError(path, "missing POINTSET or TRIANGLE data array")
    points = np.asarray(pts[0].data, dtype=np.float64)
    normals = img.get_arrays_from_intent("NIFTI_INTENT_VECTOR")
    normals = np.asarray(normals[0].data, dtype=np.float64) if normals else None
    return MeshData(points, _check_faces(path, tris[0].data, len(points)), normals)


def _count_gifti(path: Path) -> int:
    import nibabel as nib

    pts = nib.load(str(path)).get_arrays_from_intent("NIFTI_INTENT_POINTSET")
    if not pts:
        raise MeshFormatError(path, "missing POINTSET data array")
    return int(pts[0].dims[0])


def _write_gifti(path: Path, mesh: MeshData) -> None:
    import nibabel as nib
    from nibabel.gifti import GiftiDataArray, GiftiImage

    arrays = [
        GiftiDataArray(np.asarray(mesh.points, dtype=np.float32),
                       intent="NIFTI_INTENT_POINTSET", datatype="NIFTI_TYPE_FLOAT32"),
        GiftiDataArray(np.asarray(mesh.faces, dtype=np.int32),
                       intent="NIFTI_INTENT_TRIANGLE", datatype="NIFTI_TYPE_INT32"),
    ]
    if mesh.normals is not None:
        arrays.append(GiftiDataArray(np.asarray(mesh.normals, dtype=np.float32),
                                     intent="NIFTI_INTENT_VECTOR",
                                     datatype="NIFTI_TYPE_FLOAT32"))
    nib.save(GiftiImage(darrays=arrays), str(path))


# ------------------------------- freesurfer -------------------------------
def _read_freesurfer(path: Path) -> MeshData:
    from nibabel.freesurfer.io import read_geometry

    try:
        v, f = read_geometry(str(path))
    except ValueError as exc:
        raise MeshFormatError(path, str(exc)) from None
    return MeshData(v.astype(np.float64), _check_faces(path, f, len(v)))


def _count_freesurfer(path: Path) -> int:
    return len(_read_freesurfer(path).points)


def _write_freesurfer(path: Path, mesh: MeshData) -> None:
    from nibabel.freesurfer.io import write_geometry

    write_geometry(str(path), np.asarray(mesh.points, dtype=np.float64),
                   np.asarray(mesh.faces, dtype=np.int32))


# -------------------------------- registry --------------------------------
FORMATS: tuple[MeshFormat, ...] = (
    MeshFormat("tri", (".tri",), _count_tri, _read_tri, _write_tri),
    MeshFormat("bnd", (".bnd",), _count_bnd, _read_bnd, _write_bnd),
    MeshFormat("off", (".off",), _count_off, _read_off, _write_off),
    MeshFormat("mesh", (".mesh",), _count_mesh, _read_mesh, _write_mesh),
    MeshFormat("vtk", (".vtk", ".vtp"), _count_pyvista, _read_pyvista, _write_pyvista),
    MeshFormat("gii", (".gii",), _count_gifti, _read_gifti, _write_gifti),
    MeshFormat("freesurfer", (".surf", ".white", ".pial", ".inflated"),
               _count_freesurfer, _read_freesurfer, _write_freesurfer),
)


def find_format(path: str | Path, fmt: str | None = None) -> MeshFormat:
    """Pick a format by explicit identity, else by case-insensitive suffix."""
    if fmt is not None:
        for mf in FORMATS:
            if mf.identity == fmt.lower():
                return mf
        raise UnknownFormatError(f"unknown mesh format '{fmt}'")
    suffix = Path(path).suffix.lower()
    for mf in FORMATS:
        if suffix in mf.suffixes:
            return mf
    raise UnknownFormatError(f"{path}: no mesh format registered for suffix '{suffix}'")


def count_vertices(path: str | Path, fmt: str | None = None) -> int:
    path = Path(path)
    return find_format(path, fmt).count(path)


def read_mesh(path: str | Path, fmt: str | None = None) -> MeshData:
    path = Path(path)
    return find_format(path, fmt).read(path)


def load_surface(
    path: str | Path,
    *,
    fmt: str | None = None,
    name: str | None = None,
    outermost: bool = False,
    arena: VertexArena | None = None,
    resolve: bool = True,
) -> Surface:
    """Read a surface file and build a Surface (orientation-resolved by default)."""
    path = Path(path)
    mf = find_format(path, fmt)
    LOG.info("Loading %s as a '%s' file.", path, mf.identity)
    data = mf.read(path)
    surf = Surface(data.points, data.faces, data.normals,
                   name=path.stem if name is None else name,
                   outermost=outermost, arena=arena, resolve=resolve)
    LOG.debug("%s: %d vertices, %d triangles.", path, surf.nb_vertices, surf.nb_triangles)
    return surf


def save_surface(surface: Surface, path: str | Path, fmt: str | None = None) -> None:
    path = Path(path)
    mf = find_format(path, fmt)
    mf.write(path, MeshData(surface.points, surface.faces, surface.vertex_normals))
    LOG.info("Saved surface '%s' to %s (%s).", surface.name, path, mf.identity)
