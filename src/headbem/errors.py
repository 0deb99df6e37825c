from __future__ import annotations

from pathlib import Path


class HeadBEMError(Exception):
    """Base class for every error raised by headbem."""


class MeshFormatError(HeadBEMError, ValueError):
    """A surface file does not match the structure its format requires."""

    def __init__(self, path, detail: str):
        self.path = Path(path)
        self.detail = detail
        super().__init__(f"{self.path}: {detail}")


class UnknownFormatError(HeadBEMError, ValueError):
    """No registered reader/writer matches the requested file or format name."""


class MatrixFormatError(HeadBEMError, ValueError):
    """A matrix file is malformed or the format cannot store the object."""


class GeometryFormatError(HeadBEMError, ValueError):
    """A geometry (.geom) or conductivity (.cond) description is malformed."""


class GeometryError(HeadBEMError, ValueError):
    """A geometric precondition of an operation does not hold."""


class OrientationError(HeadBEMError, RuntimeError):
    """Orientation repair could not reach every triangle of a surface."""

    def __init__(self, report):
        self.report = report
        super().__init__(
            f"surface '{report.surface}': {len(report.unreached)} triangle(s) "
            "not reachable from the seed triangle (disconnected or non-manifold)"
        )
