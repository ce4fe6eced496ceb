"""
Cubic-convolution coefficients for the PSF lookup table.

The coefficients are finite differences along the x axis (FITS NAXIS1,
numpy axis 1) of the table:

    c1 = 0.5 * (p[+1] - p[-1])
    c2 = 2*p[+1] + p[-1] - 0.5*(5*p[0] + p[+2])
    c3 = 0.5 * (3*(p[0] - p[+1]) + p[+2] - p[-1])

so that ``p[0] + t*(c1 + t*(c2 + t*c3))`` interpolates between table columns
``i`` and ``i+1``. Neighbours beyond the table edge wrap around circularly;
the evaluator only reads columns where no wrapping occurs.
"""

from __future__ import annotations

import logging

import numpy as np

from .psf_model import PSFModel

logger = logging.getLogger("psfsub.interp")

EDGE_MODES = ("wrap", "clamp")


def _shift(p: np.ndarray, k: int, edge: str) -> np.ndarray:
    """Return q with q[:, i] = p[:, i + k] along axis 1."""
    if edge == "wrap":
        return np.roll(p, -k, axis=1)
    n = p.shape[1]
    idx = np.clip(np.arange(n) + k, 0, n - 1)
    return p[:, idx]


def interpolation_coefficients(table: np.ndarray, edge: str = "wrap") -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    if edge not in EDGE_MODES:
        raise ValueError(f"edge must be one of {EDGE_MODES}, got {edge!r}")
    p0 = np.asarray(table, dtype=np.float64)
    if p0.ndim != 2:
        raise ValueError(f"PSF table must be 2-D, got ndim={p0.ndim}")
    pm1 = _shift(p0, -1, edge)
    pp1 = _shift(p0, 1, edge)
    pp2 = _shift(p0, 2, edge)

    c1 = 0.5 * (pp1 - pm1)
    c2 = 2.0 * pp1 + pm1 - 0.5 * (5.0 * p0 + pp2)
    c3 = 0.5 * (3.0 * (p0 - pp1) + pp2 - pm1)
    return c1, c2, c3


def edge_discrepancy(table: np.ndarray) -> float:
    """Largest absolute coefficient difference between wrapped and clamped edges."""
    wrapped = interpolation_coefficients(table, edge="wrap")
    clamped = interpolation_coefficients(table, edge="clamp")
    return float(max(np.max(np.abs(w - c)) for w, c in zip(wrapped, clamped)))


class InterpolationCache:
    """Coefficient arrays derived from exactly one PSF table.

    Starts uninitialized; ``recompute`` fills ``c1, c2, c3`` once. The arrays
    are read-only afterwards and may be shared across threads.
    """

    def __init__(self, edge: str = "wrap"):
        if edge not in EDGE_MODES:
            raise ValueError(f"edge must be one of {EDGE_MODES}, got {edge!r}")
        self.edge = edge
        self.c1: np.ndarray | None = None
        self.c2: np.ndarray | None = None
        self.c3: np.ndarray | None = None
        self._source: np.ndarray | None = None

    @property
    def initialized(self) -> bool:
        return self._source is not None

    @classmethod
    def for_model(cls, psf: PSFModel, edge: str = "wrap") -> "InterpolationCache":
        cache = cls(edge=edge)
        cache.recompute(psf.table)
        return cache

    def recompute(self, table: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if self._source is not None:
            if table is self._source:
                return self.c1, self.c2, self.c3
            raise RuntimeError("InterpolationCache already initialized for a different PSF table")
        coeffs = interpolation_coefficients(table, edge=self.edge)
        for c in coeffs:
            c.setflags(write=False)
        self.c1, self.c2, self.c3 = coeffs
        self._source = table
        logger.debug("Interpolation cache computed: table shape=%s edge=%s", np.shape(table), self.edge)
        return coeffs

    def matches(self, psf: PSFModel) -> bool:
        return self._source is not None and self._source is psf.table
