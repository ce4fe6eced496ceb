"""
DAOPHOT-style PSF model: analytic Gaussian core plus a residual lookup table.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np


N_GAUSS = 5


def _round_half_up(v: float) -> int:
    return int(math.floor(float(v) + 0.5))


@dataclass(frozen=True, eq=False)
class PSFModel:
    """Read-only PSF description.

    ``table`` is sampled at half-pixel spacing and stored ``table[y, x]``.
    ``gauss`` holds (height, x offset, y offset, sigma_x, sigma_y) of the
    analytic core, offsets in pixels relative to the star centre.
    """

    table: np.ndarray
    gauss: np.ndarray
    psf_mag: float
    psf_radius: float
    fit_radius: float
    name: str = ""

    def __post_init__(self):
        table = np.array(self.table, dtype=np.float64, copy=True)
        if table.ndim != 2 or table.shape[0] != table.shape[1]:
            raise ValueError(f"PSF table must be a square 2-D array, got shape {table.shape}")
        if table.shape[0] < 4:
            raise ValueError(f"PSF table too small for cubic interpolation: {table.shape}")
        table.setflags(write=False)

        gauss = np.array(self.gauss, dtype=np.float64, copy=True).ravel()
        if gauss.size != N_GAUSS:
            raise ValueError(f"Expected {N_GAUSS} Gaussian parameters, got {gauss.size}")
        if not np.all(np.isfinite(gauss)):
            raise ValueError(f"Non-finite Gaussian parameters: {gauss.tolist()}")
        if gauss[0] != 0.0 and not (gauss[3] > 0 and gauss[4] > 0):
            raise ValueError(f"Gaussian sigmas must be positive: {gauss[3]}, {gauss[4]}")
        gauss.setflags(write=False)

        psf_radius = float(self.psf_radius)
        if not (np.isfinite(psf_radius) and psf_radius > 0):
            raise ValueError(f"Bad psf_radius: {self.psf_radius}")
        psf_mag = float(self.psf_mag)
        if not np.isfinite(psf_mag):
            raise ValueError(f"Bad psf_mag: {self.psf_mag}")

        object.__setattr__(self, "table", table)
        object.__setattr__(self, "gauss", gauss)
        object.__setattr__(self, "psf_mag", psf_mag)
        object.__setattr__(self, "psf_radius", psf_radius)
        object.__setattr__(self, "fit_radius", float(self.fit_radius))

    @property
    def npsf(self) -> int:
        return int(self.table.shape[0])

    @property
    def nbox(self) -> int:
        return max(2 * _round_half_up(self.psf_radius) + 1, (self.npsf - 7) // 2)

    @property
    def nhalf(self) -> int:
        return (self.nbox - 1) // 2

    @classmethod
    def from_hdu(cls, header: Any, data: np.ndarray, name: str = "") -> "PSFModel":
        missing = [k for k in ("PSFMAG", "PSFRAD") if k not in header]
        if missing:
            raise ValueError(f"PSF header missing keyword(s): {', '.join(missing)}")
        gauss = []
        for i in range(1, N_GAUSS + 1):
            key = f"GAUSS{i}"
            if key not in header:
                raise ValueError(f"PSF header missing keyword: {key}")
            gauss.append(float(header[key]))
        table = np.asarray(data, dtype=np.float64)
        naxis1 = header.get("NAXIS1", None)
        if naxis1 is not None and table.ndim == 2 and int(naxis1) != table.shape[1]:
            raise ValueError(f"NAXIS1={naxis1} disagrees with table width {table.shape[1]}")
        return cls(
            table=table,
            gauss=np.asarray(gauss),
            psf_mag=float(header["PSFMAG"]),
            psf_radius=float(header["PSFRAD"]),
            fit_radius=float(header.get("FITRAD", 0.0)),
            name=name,
        )

    def to_header(self) -> dict[str, Any]:
        cards: dict[str, Any] = {f"GAUSS{i + 1}": float(g) for i, g in enumerate(self.gauss)}
        cards["PSFMAG"] = float(self.psf_mag)
        cards["PSFRAD"] = float(self.psf_radius)
        cards["FITRAD"] = float(self.fit_radius)
        return cards

    def __str__(self) -> str:
        return (
            f"PSFModel(npsf={self.npsf}, psf_mag={self.psf_mag:.3f}, "
            f"psf_radius={self.psf_radius:.2f}, fit_radius={self.fit_radius:.2f})"
        )
