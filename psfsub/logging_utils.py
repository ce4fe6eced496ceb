from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any


DEFAULT_LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

# Third-party loggers that are chatty at INFO/DEBUG.
_NOISY_LOGGERS = ("matplotlib", "PIL", "astropy")


def setup_logging(logging_cfg: dict[str, Any] | None = None, *, force: bool = False) -> None:
    cfg = logging_cfg or {}
    level_name = str(cfg.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = str(cfg.get("format", DEFAULT_LOG_FORMAT))

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_path = cfg.get("file", None)
    if file_path and str(file_path).strip().lower() != "auto":
        p = Path(file_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(p, mode="a"))

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=force)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if bool(cfg.get("ignore_warnings", False)):
        from astropy.io.fits.verify import VerifyWarning
        from astropy.wcs import FITSFixedWarning

        warnings.simplefilter("ignore", category=VerifyWarning)
        warnings.simplefilter("ignore", category=FITSFixedWarning)
