from __future__ import annotations

import argparse
import datetime
import logging
import shutil
from pathlib import Path

from .config import load_config, write_sample_config
from .logging_utils import setup_logging
from .pipeline import run_pipeline


def _add_common(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--config", required=True, help="Path to YAML config")


def _parse_ids(text: str | None) -> list[int] | None:
    if not text:
        return None
    return [int(t) for t in text.replace(",", " ").split()]


def _cmd_subtract(args: argparse.Namespace, log: logging.Logger) -> None:
    from .fits_io import read_image, read_psf, write_image
    from .stars import StarList, read_star_catalog
    from .subtract import SubtractionSession

    out = Path(args.out)
    if out.exists() and not args.force:
        raise SystemExit(f"Refusing to overwrite existing file: {out} (use --force)")

    image, header = read_image(args.image, hdu=int(args.hdu))
    session = SubtractionSession(read_psf(args.psf))
    stars, _ = read_star_catalog(args.catalog, x_col=args.x_col, y_col=args.y_col, mag_col=args.mag_col)
    ids = _parse_ids(args.ids)
    if ids is not None:
        stars = StarList(x=stars.x, y=stars.y, mag=stars.mag, ids=ids)
    batch = session.filter(stars)
    summary = session.subtract(image, batch, verbose=bool(args.verbose), max_workers=args.workers)
    write_image(
        out,
        image,
        header=header,
        overwrite=bool(args.force),
        extra_cards={"PSFSUB": True, "NSUBSTAR": int(summary.n_subtracted)},
    )
    log.info("subtracted=%d off_image=%d rejected=%d", summary.n_subtracted, summary.n_off_image, batch.n_rejected)


def _cmd_psf_info(args: argparse.Namespace, log: logging.Logger) -> None:
    from .fits_io import read_psf
    from .interp import edge_discrepancy

    psf = read_psf(args.psf)
    log.info("%s", psf)
    log.info(
        "gauss: height=%.6g x0=%.4f y0=%.4f sigma_x=%.4f sigma_y=%.4f",
        *[float(g) for g in psf.gauss],
    )
    log.info("box: nbox=%d nhalf=%d", psf.nbox, psf.nhalf)
    log.info("table edge wrap/clamp coefficient discrepancy: %.6g", edge_discrepancy(psf.table))


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    log = logging.getLogger("psfsub.cli")

    from . import __version__

    ap = argparse.ArgumentParser(prog="psfsub")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_dump = sub.add_parser("dump-config", help="Write the sample config file")
    ap_dump.add_argument("--out", default="sample_config.yaml", help="Output path for sample config")
    ap_dump.add_argument("--force", action="store_true", help="Overwrite if output file exists")

    ap_run = sub.add_parser("run", help="Run a config-driven subtraction")
    _add_common(ap_run)

    ap_sub = sub.add_parser("subtract", help="Subtract stars without a config file")
    ap_sub.add_argument("--image", required=True, help="Input FITS image")
    ap_sub.add_argument("--hdu", type=int, default=0, help="Image HDU index")
    ap_sub.add_argument("--psf", required=True, help="PSF FITS file")
    ap_sub.add_argument("--catalog", required=True, help="Star catalog CSV")
    ap_sub.add_argument("--out", required=True, help="Output residual FITS")
    ap_sub.add_argument("--x-col", default="x")
    ap_sub.add_argument("--y-col", default="y")
    ap_sub.add_argument("--mag-col", default="mag")
    ap_sub.add_argument("--ids", default=None, help="Comma-separated catalog row indices to subtract")
    ap_sub.add_argument("--workers", default=1, help="Worker threads (int or 'auto')")
    ap_sub.add_argument("--verbose", action="store_true", help="Log progress")
    ap_sub.add_argument("--force", action="store_true", help="Overwrite output if it exists")

    ap_info = sub.add_parser("psf-info", help="Summarize a PSF model file")
    ap_info.add_argument("--psf", required=True, help="PSF FITS file")

    args = ap.parse_args(argv)

    if args.cmd == "dump-config":
        out = write_sample_config(args.out, overwrite=bool(args.force))
        log.info("Wrote sample config: %s", out)
        return 0

    if args.cmd == "subtract":
        if isinstance(args.workers, str) and args.workers.strip().lower() != "auto":
            args.workers = int(args.workers)
        _cmd_subtract(args, log)
        return 0

    if args.cmd == "psf-info":
        _cmd_psf_info(args, log)
        return 0

    cfg = load_config(args.config)

    log_cfg = cfg.get("logging", {})
    log_file = log_cfg.get("file")
    if isinstance(log_file, str) and log_file.strip().lower() == "auto":
        log_cfg["file"] = Path(cfg["outputs"]["work_dir"]) / f"{args.cmd}.log"
    setup_logging(log_cfg, force=True)

    work_dir = Path(cfg["outputs"]["work_dir"])
    work_dir.mkdir(parents=True, exist_ok=True)
    cfg_src = cfg.get("config_path")
    if cfg_src and Path(cfg_src).exists():
        ts = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        snap = work_dir / f"config_used_{ts}.yaml"
        shutil.copy2(str(cfg_src), str(snap))
        log.info("Config snapshot saved: %s", snap)

    run_pipeline(cfg)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
