from __future__ import annotations

import numpy as np

from .interp import InterpolationCache

_ROW_OFFSETS = np.arange(-1, 3, dtype=np.intp)


def _gaussian_core(dx: np.ndarray, dy: np.ndarray, gauss: np.ndarray) -> np.ndarray:
    h, x0, y0, sx, sy = (float(g) for g in gauss)
    if h == 0.0:
        return np.zeros_like(dx)
    ux = (dx - x0) / sx
    uy = (dy - y0) / sy
    return h * np.exp(-0.5 * (ux * ux + uy * uy))


def _cubic(fm1, f0, f1, f2, t):
    d1 = 0.5 * (f1 - fm1)
    d2 = 2.0 * f1 + fm1 - 0.5 * (5.0 * f0 + f2)
    d3 = 0.5 * (3.0 * (f0 - f1) + f2 - fm1)
    return f0 + t * (d1 + t * (d2 + t * d3))


def _table_residual(tx: np.ndarray, ty: np.ndarray, table: np.ndarray, cache: InterpolationCache) -> np.ndarray:
    ix = np.floor(tx).astype(np.intp)
    iy = np.floor(ty).astype(np.intp)
    fx = (tx - ix)[:, None]
    fy = ty - iy

    rows = iy[:, None] + _ROW_OFFSETS[None, :]
    cols = np.broadcast_to(ix[:, None], rows.shape)
    p = table[rows, cols]
    a = cache.c1[rows, cols]
    b = cache.c2[rows, cols]
    c = cache.c3[rows, cols]
    # Interpolate along x on four neighbouring rows, then along y.
    f = p + fx * (a + fx * (b + fx * c))
    return _cubic(f[:, 0], f[:, 1], f[:, 2], f[:, 3], fy)


def evaluate(
    dx: np.ndarray,
    dy: np.ndarray,
    gauss: np.ndarray,
    table: np.ndarray,
    cache: InterpolationCache,
) -> np.ndarray:
    """
    Evaluate the PSF at offsets (dx, dy) pixels from the star centre.

    The result is the analytic Gaussian core plus the lookup-table residual.
    The table is sampled every half pixel around its central element; offsets
    that map outside the interpolable part of the table receive the Gaussian
    core only. Pure function: inputs are never modified.
    """
    dx = np.asarray(dx, dtype=np.float64).ravel()
    dy = np.asarray(dy, dtype=np.float64).ravel()
    if dx.shape != dy.shape:
        raise ValueError(f"dx and dy lengths differ: {dx.size} != {dy.size}")
    if cache is None or not cache.initialized:
        raise ValueError("Interpolation cache is not initialized")
    table = np.asarray(table, dtype=np.float64)
    if cache.c1.shape != table.shape:
        raise ValueError(f"Cache shape {cache.c1.shape} does not match table shape {table.shape}")

    out = _gaussian_core(dx, dy, gauss)
    if dx.size == 0:
        return out

    npsf = table.shape[0]
    half = (npsf - 1) / 2.0
    tx = 2.0 * dx + half
    ty = 2.0 * dy + half
    lim = float(npsf - 3)
    ok = (tx >= 1.0) & (tx <= lim) & (ty >= 1.0) & (ty <= lim)
    if np.any(ok):
        out[ok] += _table_residual(tx[ok], ty[ok], table, cache)
    return out
