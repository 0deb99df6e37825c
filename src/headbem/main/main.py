from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import numpy as np

from headbem.bem.assemble import (
    assemble_cortical,
    assemble_head_matrix,
    assemble_surf2vol,
    projector_cache_path,
)
from headbem.bem.core import BEMConfig
from headbem.bem.sensors import head2eeg
from headbem.errors import HeadBEMError
from headbem.geometry.geom_io import load_geometry
from headbem.linalg.matrix_io import load_matrix, save_matrix

LOG = logging.getLogger(__name__)
DEFAULT_WORKERS = os.cpu_count() or 1

DEFAULT_GAUSS_ORDER = 3


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("geometry", type=Path, help="Domain description (.geom).")
    p.add_argument("conductivity", type=Path, help="Conductivities (.cond).")


def _add_assembly(p: argparse.ArgumentParser) -> None:
    p.add_argument("--gauss-order", type=int, choices=[0, 1, 2, 3, 4], default=DEFAULT_GAUSS_ORDER)
    p.add_argument(
        "--parallel",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Evaluate operator blocks on a thread pool.",
    )
    p.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help="Thread pool size (when --parallel).",
    )


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="headbem",
        description="Assemble BEM forward-model matrices for nested-surface head geometries.",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = p.add_subparsers(dest="command", required=True)

    hm = sub.add_parser("headmat", help="Symmetric head matrix.")
    _add_common(hm)
    hm.add_argument("output", type=Path, help="Output matrix (.txt, .bin or .npy).")
    _add_assembly(hm)

    cm = sub.add_parser("cortical", help="Cortical mapping matrix.")
    _add_common(cm)
    cm.add_argument("electrodes", type=Path, help="Electrode positions, one 'x y z' row each.")
    cm.add_argument("domain", help="Name of the domain holding the sources.")
    cm.add_argument("output", type=Path)
    cm.add_argument("--alpha", type=float, default=-1.0, help="Vertex penalty (< 0: automatic).")
    cm.add_argument("--beta", type=float, default=-1.0, help="Triangle penalty (< 0: derived from alpha).")
    cm.add_argument("--cache-dir", type=Path, default=None, help="Directory for the projector cache.")
    _add_assembly(cm)

    sv = sub.add_parser("surf2vol", help="Surface-to-volume potential matrix.")
    _add_common(sv)
    sv.add_argument("points", type=Path, help="Sample points, one 'x y z' row each.")
    sv.add_argument("output", type=Path)
    _add_assembly(sv)

    ck = sub.add_parser("check", help="Validate meshes and geometry.")
    _add_common(ck)
    return p


def _config(args) -> BEMConfig:
    workers = int(args.workers) if bool(args.parallel) else 1
    return BEMConfig(gauss_order=int(args.gauss_order), workers=workers)


def _points(path: Path) -> np.ndarray:
    pts = np.asarray(load_matrix(path, "dense"), dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise HeadBEMError(f"{path}: expected one 'x y z' row per point, got shape {pts.shape}")
    return pts


def run(args) -> int:
    geo = load_geometry(args.geometry, args.conductivity)

    if args.command == "check":
        geo.info()
        ok, issues = geo.check()
        for issue in issues:
            LOG.warning(issue)
        LOG.info("Geometry %s.", "is valid" if ok else f"has {len(issues)} issue(s)")
        return 0 if ok else 1

    cfg = _config(args)
    if args.command == "headmat":
        save_matrix(assemble_head_matrix(geo, cfg), args.output)
    elif args.command == "cortical":
        M = head2eeg(geo, _points(args.electrodes))
        cache = None
        if args.cache_dir is not None:
            args.cache_dir.mkdir(parents=True, exist_ok=True)
            cache = projector_cache_path(args.cache_dir, geo, args.domain, cfg.gauss_order)
        mat = assemble_cortical(geo, M, args.domain, cfg, alpha=args.alpha, beta=args.beta, cache=cache)
        save_matrix(mat, args.output)
    elif args.command == "surf2vol":
        mat, kept = assemble_surf2vol(geo, _points(args.points), cfg)
        LOG.info("Surf2Vol: kept %d point(s).", len(kept))
        save_matrix(mat, args.output)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_argparser()
    args = parser.parse_args(argv)

    # Configure logging early so LOG.* messages are visible
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(levelname)s: %(message)s",
    )

    try:
        return run(args)
    except HeadBEMError as exc:
        LOG.error("%s", exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
