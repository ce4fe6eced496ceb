from __future__ import annotations

from pathlib import Path

import numpy as np

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt


def _lims(a: np.ndarray):
    m = np.isfinite(a)
    if not np.any(m):
        return None, None
    return np.percentile(a[m], [5, 99])


def save_subtraction_diagnostics(
    before: np.ndarray,
    after: np.ndarray,
    outpath: Path,
    title: str,
    *,
    star_xy: tuple[np.ndarray, np.ndarray] | None = None,
    dpi: int = 150,
    show_colorbar: bool = True,
) -> Path:
    """Input image, residual image and the subtracted model side by side."""
    outpath = Path(outpath)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    model = np.asarray(before, dtype=np.float64) - np.asarray(after, dtype=np.float64)

    vmin, vmax = _lims(before)
    mvmin, mvmax = _lims(model)

    fig, axes = plt.subplots(1, 3, figsize=(11, 3.7), constrained_layout=True)
    im0 = axes[0].imshow(before, origin="lower", cmap="gray", vmin=vmin, vmax=vmax, interpolation="nearest")
    axes[0].set_title("input")
    # Same stretch as the input so residual structure is comparable.
    im1 = axes[1].imshow(after, origin="lower", cmap="gray", vmin=vmin, vmax=vmax, interpolation="nearest")
    axes[1].set_title("residual")
    im2 = axes[2].imshow(model, origin="lower", cmap="viridis", vmin=mvmin, vmax=mvmax, interpolation="nearest")
    axes[2].set_title("subtracted model")
    if star_xy is not None:
        sx, sy = star_xy
        for ax in axes[:2]:
            ax.scatter(sx, sy, s=12, facecolors="none", edgecolors="red", linewidths=0.6)
            ax.set_xlim(-0.5, before.shape[1] - 0.5)
            ax.set_ylim(-0.5, before.shape[0] - 0.5)
    for ax in axes:
        ax.set_xticks([])
        ax.set_yticks([])
    if bool(show_colorbar):
        fig.colorbar(im0, ax=axes[0], fraction=0.047, pad=0.02)
        fig.colorbar(im1, ax=axes[1], fraction=0.047, pad=0.02)
        fig.colorbar(im2, ax=axes[2], fraction=0.047, pad=0.02)
    fig.suptitle(title, fontsize=11)
    plt.savefig(outpath, dpi=dpi)
    plt.close(fig)
    return outpath
