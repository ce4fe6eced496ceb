"""
Star lists and the per-batch filter that prepares box placement and flux scale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

import numpy as np
import pandas as pd

from .psf_model import PSFModel

logger = logging.getLogger("psfsub.stars")


def flux_scale(mag, psf_mag: float):
    """Linear flux ratio of ``mag`` relative to the PSF zero-point."""
    return np.power(10.0, -0.4 * (np.asarray(mag, dtype=np.float64) - float(psf_mag)))


@dataclass
class StarList:
    x: np.ndarray
    y: np.ndarray
    mag: np.ndarray
    ids: np.ndarray | None = None
    # Explicit per-star validity; None means every star with a usable magnitude.
    valid: np.ndarray | None = None

    def __post_init__(self):
        self.x = np.atleast_1d(np.asarray(self.x, dtype=np.float64))
        self.y = np.atleast_1d(np.asarray(self.y, dtype=np.float64))
        self.mag = np.atleast_1d(np.asarray(self.mag, dtype=np.float64))
        if not (len(self.x) == len(self.y) == len(self.mag)):
            raise ValueError(
                f"x, y and mag must have the same length: {len(self.x)}, {len(self.y)}, {len(self.mag)}"
            )
        if self.ids is not None:
            ids = np.atleast_1d(np.asarray(self.ids))
            if ids.size and not np.issubdtype(ids.dtype, np.integer):
                if not np.all(np.equal(np.mod(ids, 1), 0)):
                    raise TypeError("Star ids must be integer indices")
            self.ids = ids.astype(np.intp)
        if self.valid is not None:
            valid = np.atleast_1d(np.asarray(self.valid, dtype=bool))
            if len(valid) != len(self.x):
                raise ValueError(f"valid has length {len(valid)}, expected {len(self.x)}")
            self.valid = valid

    def __len__(self) -> int:
        return int(len(self.x))

    @classmethod
    def from_catalog(
        cls,
        df: pd.DataFrame,
        *,
        x_col: str = "x",
        y_col: str = "y",
        mag_col: str = "mag",
        valid_col: str | None = None,
        ids: Sequence[int] | None = None,
    ) -> "StarList":
        for c in (x_col, y_col, mag_col) + ((valid_col,) if valid_col else ()):
            if c not in df.columns:
                raise KeyError(f"Star catalog has no column '{c}'. Columns: {list(df.columns)}")
        valid = None
        if valid_col:
            valid = df[valid_col].fillna(False).astype(bool).to_numpy()
        return cls(
            x=pd.to_numeric(df[x_col], errors="coerce").to_numpy(dtype=float),
            y=pd.to_numeric(df[y_col], errors="coerce").to_numpy(dtype=float),
            mag=pd.to_numeric(df[mag_col], errors="coerce").to_numpy(dtype=float),
            ids=None if ids is None else np.asarray(ids),
            valid=valid,
        )


def read_star_catalog(path: str | Path, **kwargs) -> tuple[StarList, pd.DataFrame]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Star catalog not found: {p}")
    df = pd.read_csv(p)
    logger.info("Loaded %d catalog rows from %s", len(df), p)
    return StarList.from_catalog(df, **kwargs), df


def resolve_indices(n: int, ids: Sequence[int] | np.ndarray | None) -> np.ndarray:
    """Working index set: ``ids`` when given and non-negative, else all stars."""
    if ids is None:
        return np.arange(n, dtype=np.intp)
    ids = np.atleast_1d(np.asarray(ids, dtype=np.intp))
    if ids.size == 0 or np.any(ids < 0):
        return np.arange(n, dtype=np.intp)
    if np.any(ids >= n):
        bad = ids[ids >= n]
        raise IndexError(f"Star id(s) out of range for {n} stars: {bad[:10].tolist()}")
    return ids


@dataclass
class StarBatch:
    """Retained stars, with every array gathered from the same index list."""

    indices: np.ndarray
    lx: np.ndarray
    ly: np.ndarray
    xx: np.ndarray
    yy: np.ndarray
    scale: np.ndarray
    n_input: int = 0
    n_rejected: int = 0

    def __len__(self) -> int:
        return int(len(self.indices))

    def __iter__(self) -> Iterator[int]:
        return iter(range(len(self)))


def filter_stars(stars: StarList, psf: PSFModel, *, zero_mag_is_missing: bool = True) -> StarBatch:
    work = resolve_indices(len(stars), stars.ids)

    x = stars.x[work]
    y = stars.y[work]
    mag = stars.mag[work]

    keep = np.isfinite(x) & np.isfinite(y) & np.isfinite(mag)
    if zero_mag_is_missing:
        keep &= mag != 0.0
    if stars.valid is not None:
        keep &= stars.valid[work]

    kept = work[keep]
    n_rejected = int(work.size - kept.size)
    if n_rejected:
        logger.debug("Dropped %d of %d stars with missing magnitude or position", n_rejected, work.size)

    nhalf = psf.nhalf
    xs = stars.x[kept]
    ys = stars.y[kept]
    lx = np.floor(xs + 0.5).astype(np.intp) - nhalf
    ly = np.floor(ys + 0.5).astype(np.intp) - nhalf
    return StarBatch(
        indices=kept,
        lx=lx,
        ly=ly,
        xx=xs - lx,
        yy=ys - ly,
        scale=flux_scale(stars.mag[kept], psf.psf_mag),
        n_input=int(work.size),
        n_rejected=n_rejected,
    )
