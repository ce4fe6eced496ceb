from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import numpy as np
from astropy.io import fits

from .psf_model import PSFModel

logger = logging.getLogger("psfsub.fits_io")

_STRUCTURAL_KEYS = ("XTENSION", "PCOUNT", "GCOUNT", "BSCALE", "BZERO", "EXTNAME")


def _existing(path: str | Path) -> Path:
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"FITS file not found: {p}")
    return p


def read_psf(path: str | Path) -> PSFModel:
    p = _existing(path)
    with fits.open(p, memmap=False) as hdul:
        hdr = hdul[0].header
        data = hdul[0].data
        if data is None:
            raise ValueError(f"PSF file has no data in primary HDU: {p}")
        psf = PSFModel.from_hdu(hdr, np.array(data, dtype=np.float64), name=p.name)
    logger.info("Loaded PSF %s from %s", psf, p)
    return psf


def write_psf(path: str | Path, psf: PSFModel, overwrite: bool = False) -> Path:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    hdr = fits.Header()
    for k, v in psf.to_header().items():
        hdr[k] = v
    fits.PrimaryHDU(data=np.asarray(psf.table, dtype=np.float64), header=hdr).writeto(p, overwrite=overwrite)
    return p


def read_image(path: str | Path, hdu: int = 0) -> tuple[np.ndarray, fits.Header]:
    """Return a writeable float64 copy of the image HDU and its header."""
    p = _existing(path)
    with fits.open(p, memmap=False) as hdul:
        h = hdul[hdu]
        if h.data is None:
            raise ValueError(f"HDU {hdu} of {p} has no data")
        data = np.array(h.data, dtype=np.float64)
        header = h.header.copy()
    if data.ndim != 2:
        raise ValueError(f"Image in {p}[{hdu}] must be 2-dimensional, got shape {data.shape}")
    logger.info("Loaded image %s[%d] shape=%s", p.name, hdu, data.shape)
    return data, header


def write_image(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    overwrite: bool = False,
    extra_cards: dict[str, Any] | None = None,
) -> Path:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    hdr = header.copy() if header is not None else fits.Header()
    for k in _STRUCTURAL_KEYS:
        hdr.remove(k, ignore_missing=True, remove_all=True)
    for k, v in (extra_cards or {}).items():
        hdr[k] = v
    fits.PrimaryHDU(data=np.asarray(data, dtype=np.float32), header=hdr).writeto(p, overwrite=overwrite)
    logger.info("Wrote: %s", p)
    return p
