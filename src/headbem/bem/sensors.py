from __future__ import annotations

import logging

import numpy as np
from scipy import sparse

from ..geometry.geometry import Geometry
from .core import closest_on_surface

LOG = logging.getLogger(__name__)


def head2eeg(geo: Geometry, electrodes) -> sparse.csr_matrix:
    """
    Interpolation of surface potentials at electrode positions.

    Each electrode is projected onto the closest triangle of the outermost
    interface; its row holds the barycentric weights of the three vertices.

    Returns
    -------
    (n_electrodes, geo.size) sparse matrix
    """
    electrodes = np.asarray(electrodes, dtype=np.float64).reshape(-1, 3)
    surfaces = geo.outermost_interface.surfaces

    rows, cols, vals = [], [], []
    for e, x in enumerate(electrodes):
        best = None
        for s in surfaces:
            t, w = closest_on_surface(x, np.ascontiguousarray(s.triangle_points))
            y = w @ s.triangle_points[t]
            d2 = float(np.sum((x - y) ** 2))
            if best is None or d2 < best[0]:
                best = (d2, s, t, w)
        d2, s, t, w = best
        LOG.debug("Electrode %d: triangle %d of '%s' at distance %.3g.", e, t, s.name, np.sqrt(d2))
        rows += [e, e, e]
        cols += s.vertex_index[s.faces[t]].tolist()
        vals += w.tolist()

    return sparse.coo_matrix((vals, (rows, cols)), shape=(len(electrodes), geo.size)).tocsr()
