"""
Subtract scaled, sub-pixel positioned PSF copies from an image in place.

The caller owns the image buffer. ``SubtractionSession.subtract`` and
``subtract_stars`` write into it directly and never return a copy; any view
that aliases the buffer sees the change.
"""

from __future__ import annotations

import concurrent.futures as cf
import logging
import os
import time
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Sequence

import numpy as np

from .evaluator import evaluate
from .interp import InterpolationCache
from .psf_model import PSFModel
from .stars import StarBatch, StarList, filter_stars

logger = logging.getLogger("psfsub.subtract")

_PROGRESS_INTERVAL_S = 15.0


@dataclass
class SubtractionSummary:
    n_input: int = 0
    n_valid: int = 0
    n_subtracted: int = 0
    n_off_image: int = 0
    n_pixels: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def validate_image(image) -> None:
    if not isinstance(image, np.ndarray):
        raise TypeError(f"image must be a numpy.ndarray, got {type(image).__name__}")
    if image.ndim != 2:
        raise ValueError(f"image must be 2-dimensional, got ndim={image.ndim}")
    if not np.issubdtype(image.dtype, np.floating):
        raise TypeError(f"image must have a floating-point dtype, got {image.dtype}")
    if not image.flags.writeable:
        raise ValueError("image buffer is read-only")


def _is_cancelled(cancel) -> bool:
    if cancel is None:
        return False
    is_set = getattr(cancel, "is_set", None)
    if callable(is_set):
        return bool(is_set())
    return bool(cancel())


def _format_eta(seconds: float) -> str:
    if not (seconds >= 0) or seconds == float("inf"):
        return "--:--"
    s = int(round(seconds))
    m, ss = divmod(s, 60)
    h, mm = divmod(m, 60)
    if h > 0:
        return f"{h:d}:{mm:02d}:{ss:02d}"
    return f"{mm:02d}:{ss:02d}"


def _progress_bar(done: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "-" * width
    frac = max(0.0, min(1.0, float(done) / float(total)))
    filled = int(round(frac * width))
    return "#" * filled + "-" * (width - filled)


def resolve_workers(max_workers: int | str | None) -> int:
    if max_workers is None:
        return 1
    if isinstance(max_workers, str):
        if max_workers.strip().lower() != "auto":
            raise ValueError(f"max_workers must be an int or 'auto', got {max_workers!r}")
        return int(os.cpu_count() or 1)
    return max(1, int(max_workers))


class SubtractionSession:
    """One PSF model together with its own interpolation cache.

    The cache is computed in the constructor and is read-only afterwards, so a
    session can be reused for any number of images and star lists, and
    footprints can be evaluated from several threads at once.
    """

    def __init__(self, psf: PSFModel, *, edge: str = "wrap", cache: InterpolationCache | None = None):
        if cache is None:
            cache = InterpolationCache.for_model(psf, edge=edge)
        elif not cache.matches(psf):
            raise ValueError("Interpolation cache was not derived from this PSF model")
        self.psf = psf
        self.cache = cache

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> "SubtractionSession":
        from .fits_io import read_psf

        return cls(read_psf(path), **kwargs)

    def filter(self, stars: StarList, *, zero_mag_is_missing: bool = True) -> StarBatch:
        return filter_stars(stars, self.psf, zero_mag_is_missing=zero_mag_is_missing)

    def footprint(self, batch: StarBatch, i: int, shape: tuple[int, int]):
        """Image (rows, cols) and scaled model values of star ``i`` of ``batch``.

        Cells outside the PSF radius or the image are dropped.
        """
        psf = self.psf
        nbox = psf.nbox
        h, w = shape
        grid = np.arange(nbox, dtype=np.float64)
        dx = grid[None, :] - batch.xx[i]
        dy = grid[:, None] - batch.yy[i]
        dx, dy = np.broadcast_arrays(dx, dy)

        inside = (dx * dx + dy * dy) < psf.psf_radius * psf.psf_radius
        gy, gx = np.nonzero(inside)
        cols = gx + batch.lx[i]
        rows = gy + batch.ly[i]
        on_image = (cols >= 0) & (cols < w) & (rows >= 0) & (rows < h)
        if not np.any(on_image):
            empty = np.empty(0, dtype=np.intp)
            return empty, empty, np.empty(0, dtype=np.float64)

        gy = gy[on_image]
        gx = gx[on_image]
        model = evaluate(dx[gy, gx], dy[gy, gx], psf.gauss, psf.table, self.cache)
        return rows[on_image], cols[on_image], batch.scale[i] * model

    def subtract(
        self,
        image: np.ndarray,
        batch: StarBatch,
        *,
        verbose: bool = False,
        max_workers: int | str | None = 1,
        cancel: Callable[[], bool] | None = None,
    ) -> SubtractionSummary:
        validate_image(image)
        shape = image.shape
        n_total = len(batch)
        summary = SubtractionSummary(n_input=batch.n_input, n_valid=n_total)
        n_workers = resolve_workers(max_workers)

        tstart = time.time()
        last_log = tstart

        def _emit_progress(done: int, force: bool = False) -> None:
            nonlocal last_log
            now = time.time()
            if not verbose or not (force or (now - last_log) >= _PROGRESS_INTERVAL_S):
                return
            elapsed = max(1e-6, now - tstart)
            rate = done / elapsed
            eta = float("inf") if rate <= 0 else (n_total - done) / rate
            logger.info(
                "stars [%s] %d/%d subtracted=%d off_image=%d eta=%s",
                _progress_bar(done, n_total), done, n_total,
                summary.n_subtracted, summary.n_off_image, _format_eta(eta),
            )
            last_log = now

        def _apply(i: int, rows, cols, values) -> None:
            if rows.size == 0:
                summary.n_off_image += 1
                logger.debug("star %d: footprint entirely off image", int(batch.indices[i]))
                return
            image[rows, cols] -= values
            summary.n_subtracted += 1
            summary.n_pixels += int(rows.size)

        if n_workers <= 1 or n_total <= 1:
            for i in batch:
                if _is_cancelled(cancel):
                    summary.cancelled = True
                    break
                _apply(i, *self.footprint(batch, i, shape))
                _emit_progress(i + 1)
        else:
            # Footprints are computed concurrently but applied here in star
            # order, so the image is bit-identical to the serial path. At most
            # `window` footprints are in flight or awaiting application.
            window = 2 * n_workers
            with cf.ThreadPoolExecutor(max_workers=n_workers) as ex:
                pending: deque[cf.Future] = deque()
                next_i = 0

                def _fill() -> None:
                    nonlocal next_i
                    while next_i < n_total and len(pending) < window:
                        pending.append(ex.submit(self.footprint, batch, next_i, shape))
                        next_i += 1

                _fill()
                for i in batch:
                    if _is_cancelled(cancel):
                        summary.cancelled = True
                        for f in pending:
                            f.cancel()
                        break
                    rows, cols, values = pending.popleft().result()
                    _fill()
                    _apply(i, rows, cols, values)
                    _emit_progress(i + 1)

        if summary.cancelled:
            logger.warning("Subtraction cancelled after %d/%d stars", summary.n_subtracted + summary.n_off_image, n_total)
        _emit_progress(summary.n_subtracted + summary.n_off_image, force=True)
        if verbose:
            logger.info(
                "Subtracted %d star(s) (%d off image, %d rejected) in %.2fs",
                summary.n_subtracted, summary.n_off_image, batch.n_rejected, time.time() - tstart,
            )
        return summary


def subtract_stars(
    image: np.ndarray,
    x: Sequence[float],
    y: Sequence[float],
    mag: Sequence[float],
    ids: Sequence[int] | None = None,
    psf: PSFModel | str | Path | None = None,
    verbose: bool = False,
    *,
    zero_mag_is_missing: bool = True,
    max_workers: int | str | None = 1,
    cancel: Callable[[], bool] | None = None,
) -> None:
    """Subtract the PSF scaled to ``mag`` at each (x, y) from ``image`` in place.

    ``psf`` is a loaded ``PSFModel`` or the path of a PSF FITS file. A
    magnitude of exactly 0.0 marks a missing star unless
    ``zero_mag_is_missing`` is False; NaN magnitudes are always skipped.
    """
    validate_image(image)
    if psf is None:
        raise ValueError("A PSF model or PSF file path is required")
    if isinstance(psf, PSFModel):
        session = SubtractionSession(psf)
    else:
        session = SubtractionSession.from_file(psf)
    stars = StarList(x=x, y=y, mag=mag, ids=ids)
    batch = session.filter(stars, zero_mag_is_missing=zero_mag_is_missing)
    session.subtract(image, batch, verbose=verbose, max_workers=max_workers, cancel=cancel)
