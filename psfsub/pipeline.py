"""
Config-driven subtraction run: load inputs, subtract, write outputs.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from .fits_io import read_image, read_psf, write_image
from .stars import StarList, read_star_catalog
from .subtract import SubtractionSession

logger = logging.getLogger("psfsub.pipeline")


def _resolve_catalog_ids(df: pd.DataFrame, ids: list[int] | None, id_col: str | None) -> np.ndarray | None:
    if ids is None:
        return None
    # Negative entries select every star, whether ids are positions or id_col values.
    if len(ids) == 0 or any(int(i) < 0 for i in ids):
        return None
    if id_col is None:
        return np.asarray(ids, dtype=np.intp)
    if id_col not in df.columns:
        raise KeyError(f"Star catalog has no id column '{id_col}'")
    keys = df[id_col].astype(str).to_numpy()
    pos = {k: i for i, k in enumerate(keys)}
    wanted = [str(i) for i in ids]
    missing = [w for w in wanted if w not in pos]
    if missing:
        logger.warning("%d requested id(s) not in catalog; sample: %s", len(missing), missing[:10])
    found = [pos[w] for w in wanted if w in pos]
    if not found:
        raise ValueError(f"None of the requested ids were found in catalog column '{id_col}'")
    return np.asarray(found, dtype=np.intp)


def load_inputs(cfg: dict[str, Any]) -> dict[str, Any]:
    inputs = cfg["inputs"]
    cat_cfg = cfg["catalog"]

    image, header = read_image(inputs["image"], hdu=int(inputs["image_hdu"]))
    psf = read_psf(inputs["psf"])
    stars, df = read_star_catalog(
        inputs["star_catalog"],
        x_col=cat_cfg["x_col"],
        y_col=cat_cfg["y_col"],
        mag_col=cat_cfg["mag_col"],
        valid_col=cat_cfg["valid_col"],
    )
    ids = _resolve_catalog_ids(df, cat_cfg["ids"], cat_cfg["id_col"])
    if ids is not None:
        stars = StarList(x=stars.x, y=stars.y, mag=stars.mag, ids=ids, valid=stars.valid)
        logger.info("Restricting subtraction to %d of %d catalog stars", len(ids), len(stars))

    return dict(image=image, header=header, psf=psf, stars=stars, catalog=df)


def run_subtraction(cfg: dict[str, Any], state: dict[str, Any]) -> dict[str, Any]:
    sub_cfg = cfg["subtraction"]
    session = SubtractionSession(state["psf"], edge=str(sub_cfg["edge"]))
    batch = session.filter(state["stars"], zero_mag_is_missing=bool(sub_cfg["zero_mag_is_missing"]))
    logger.info(
        "Stars: input=%d valid=%d rejected=%d | nbox=%d psf_radius=%.2f",
        batch.n_input, len(batch), batch.n_rejected, session.psf.nbox, session.psf.psf_radius,
    )

    image = state["image"]
    if bool(cfg["plotting"]["save_diagnostics"]):
        state["image_before"] = image.copy()
    summary = session.subtract(
        image,
        batch,
        verbose=bool(sub_cfg["verbose"]),
        max_workers=sub_cfg["max_workers"],
    )
    state["batch"] = batch
    state["summary"] = summary
    return state


def write_outputs(cfg: dict[str, Any], state: dict[str, Any]) -> Path:
    out_cfg = cfg["outputs"]
    summary = state["summary"]
    psf_path = Path(cfg["inputs"]["psf"])

    residual_path = write_image(
        out_cfg["residual_image"],
        state["image"],
        header=state.get("header"),
        overwrite=bool(out_cfg["overwrite"]),
        extra_cards={
            "PSFSUB": (True, "PSF-subtracted residual image"),
            "NSUBSTAR": (int(summary.n_subtracted), "Number of stars subtracted"),
            "PSFFILE": (psf_path.name, "PSF model file"),
        },
    )

    payload = dict(
        summary.to_dict(),
        image=str(cfg["inputs"]["image"]),
        psf=str(psf_path),
        star_catalog=str(cfg["inputs"]["star_catalog"]),
        residual_image=str(residual_path),
    )
    summary_path = Path(out_cfg["summary_json"])
    summary_path.parent.mkdir(parents=True, exist_ok=True)
    summary_path.write_text(json.dumps(payload, indent=2))
    logger.info("Wrote summary: %s", summary_path)

    plot_cfg = cfg["plotting"]
    if bool(plot_cfg["save_diagnostics"]) and "image_before" in state:
        from .diagnostics import save_subtraction_diagnostics

        star_xy = None
        if bool(plot_cfg["mark_stars"]):
            idx = state["batch"].indices
            star_xy = (state["stars"].x[idx], state["stars"].y[idx])
        out = save_subtraction_diagnostics(
            state["image_before"],
            state["image"],
            Path(plot_cfg["diagnostics_file"]),
            title=f"{Path(cfg['inputs']['image']).name}: {summary.n_subtracted} star(s) subtracted",
            star_xy=star_xy,
            dpi=int(plot_cfg["dpi"]),
            show_colorbar=bool(plot_cfg["show_colorbar"]),
        )
        logger.info("Wrote diagnostics: %s", out)

    return residual_path


def run_pipeline(cfg: dict[str, Any]) -> Path:
    state = load_inputs(cfg)
    run_subtraction(cfg, state)
    return write_outputs(cfg, state)
