"""psfsub package."""

from .config import load_config
from .pipeline import run_pipeline
from .psf_model import PSFModel
from .stars import StarList, filter_stars
from .subtract import SubtractionSession, subtract_stars

try:
    from importlib.metadata import version as _meta_version
    __version__: str = _meta_version("psfsub")
except Exception:
    __version__ = "0.0.0.dev"

__all__ = [
    "__version__",
    "load_config",
    "run_pipeline",
    "PSFModel",
    "StarList",
    "filter_stars",
    "SubtractionSession",
    "subtract_stars",
]
