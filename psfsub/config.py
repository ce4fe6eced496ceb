from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG: dict[str, Any] = {
    "inputs": {
        "image": "path/to/image.fits",
        "image_hdu": 0,
        "psf": "path/to/psf.fits",
        "star_catalog": "path/to/stars.csv",
    },
    "catalog": {
        "x_col": "x",
        "y_col": "y",
        "mag_col": "mag",
        "id_col": None,
        "valid_col": None,
        "ids": None,
    },
    "subtraction": {
        "zero_mag_is_missing": True,
        "edge": "wrap",
        "max_workers": 1,
        "verbose": True,
    },
    "outputs": {
        "work_dir": "path/to/work_dir",
        "residual_image": "residual.fits",
        "summary_json": "subtraction_summary.json",
        "overwrite": False,
    },
    "logging": {
        "ignore_warnings": True,
        "level": "INFO",
        "file": "auto",
        "format": "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    },
    "plotting": {
        "save_diagnostics": False,
        "diagnostics_file": "subtraction_diagnostics.png",
        "dpi": 150,
        "show_colorbar": True,
        "mark_stars": True,
    },
}

_EDGE_MODES = ("wrap", "clamp")


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_update(out[k], v)
        else:
            out[k] = v
    return out


def _resolve_path(value: Any, base_dir: Path) -> Path | None:
    if value is None:
        return None
    p = Path(value).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


def _join_path(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _validate_user_config(user_cfg: dict[str, Any], defaults: dict[str, Any], prefix: str = "") -> None:
    if not isinstance(user_cfg, dict):
        raise TypeError("Config root must be a mapping (YAML dict).")
    for k, v in user_cfg.items():
        if k not in defaults:
            raise KeyError(f"Unknown config key: {_join_path(prefix, str(k))}")
        d = defaults[k]
        if isinstance(v, dict) and isinstance(d, dict):
            _validate_user_config(v, d, _join_path(prefix, str(k)))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_config_types(cfg: dict[str, Any], defaults: dict[str, Any], prefix: str = "") -> None:
    type_overrides: dict[str, tuple[type, ...]] = {
        "subtraction.max_workers": (int, str),
        "catalog.id_col": (str, type(None)),
        "catalog.valid_col": (str, type(None)),
        "catalog.ids": (list, type(None)),
        "logging.file": (str, Path, type(None)),
    }
    for k, d in defaults.items():
        path = _join_path(prefix, str(k))
        if k not in cfg:
            continue
        v = cfg[k]
        if path in type_overrides:
            if not isinstance(v, type_overrides[path]) or isinstance(v, bool):
                allowed = ", ".join(t.__name__ for t in type_overrides[path])
                raise TypeError(f"Config key '{path}' must be one of: {allowed}")
            continue
        if isinstance(d, dict):
            if not isinstance(v, dict):
                raise TypeError(f"Config key '{path}' must be a mapping (YAML dict).")
            _validate_config_types(v, d, path)
            continue
        if d is None:
            continue
        if isinstance(d, bool):
            if not isinstance(v, bool):
                raise TypeError(f"Config key '{path}' must be a bool.")
            continue
        if isinstance(d, int):
            if not _is_int(v):
                raise TypeError(f"Config key '{path}' must be an int.")
            continue
        if isinstance(d, float):
            if not (_is_int(v) or isinstance(v, float)):
                raise TypeError(f"Config key '{path}' must be a float.")
            continue
        if isinstance(d, str):
            if not isinstance(v, str):
                raise TypeError(f"Config key '{path}' must be a string.")
            continue


def _validate_config_values(cfg: dict[str, Any]) -> None:
    sub = cfg["subtraction"]
    if sub["edge"] not in _EDGE_MODES:
        raise ValueError(f"subtraction.edge must be one of {_EDGE_MODES}, got {sub['edge']!r}")
    mw = sub["max_workers"]
    if isinstance(mw, str) and mw.strip().lower() != "auto":
        raise ValueError(f"subtraction.max_workers must be an int or 'auto', got {mw!r}")
    if _is_int(mw) and mw < 1:
        raise ValueError(f"subtraction.max_workers must be >= 1, got {mw}")
    ids = cfg["catalog"]["ids"]
    if ids is not None and not all(_is_int(i) for i in ids):
        raise TypeError("Config key 'catalog.ids' must be a list of ints.")


def load_config(config_path: str | Path) -> dict[str, Any]:
    cfg_path = Path(config_path).expanduser().resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config not found: {cfg_path}")
    cfg_dir = cfg_path.parent

    with cfg_path.open("r", encoding="utf-8") as f:
        user_cfg = yaml.safe_load(f) or {}

    _validate_user_config(user_cfg, DEFAULT_CONFIG)
    cfg = _deep_update(copy.deepcopy(DEFAULT_CONFIG), user_cfg)
    _validate_config_types(cfg, DEFAULT_CONFIG)
    _validate_config_values(cfg)

    cfg["config_path"] = cfg_path
    cfg["config_dir"] = cfg_dir

    inputs = cfg["inputs"]
    outputs = cfg["outputs"]

    inputs["image"] = _resolve_path(inputs["image"], cfg_dir)
    inputs["psf"] = _resolve_path(inputs["psf"], cfg_dir)
    inputs["star_catalog"] = _resolve_path(inputs["star_catalog"], cfg_dir)

    work_dir = _resolve_path(outputs["work_dir"], cfg_dir)
    outputs["work_dir"] = work_dir
    outputs["residual_image"] = _resolve_path(outputs["residual_image"], work_dir)
    outputs["summary_json"] = _resolve_path(outputs["summary_json"], work_dir)

    plotting = cfg["plotting"]
    plotting["diagnostics_file"] = _resolve_path(plotting["diagnostics_file"], work_dir)

    logging_cfg = cfg["logging"]
    log_file = logging_cfg.get("file")
    if log_file is not None and str(log_file).strip().lower() != "auto":
        logging_cfg["file"] = _resolve_path(log_file, work_dir)

    return cfg


def write_sample_config(out_path: str | Path, overwrite: bool = False) -> Path:
    out = Path(out_path).expanduser()
    out_abs = out.resolve()
    sample_path = Path(__file__).resolve().parent / "data" / "sample_config.yaml"
    if not sample_path.exists():
        raise FileNotFoundError(f"Sample config not found: {sample_path}")
    if out_abs.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing file: {out_abs}")
    out_abs.parent.mkdir(parents=True, exist_ok=True)
    out_abs.write_text(sample_path.read_text(encoding="utf-8"), encoding="utf-8")
    return out_abs
