"""
Shared fixtures for psfsub tests.
"""

import numpy as np
import pytest

from psfsub.psf_model import PSFModel


def make_psf(radius=3.0, value=1.0, height=0.0, psf_mag=15.0, npsf=None, table=None):
    """Constant-table PSF; npsf defaults to the DAOPHOT size for ``radius``."""
    if npsf is None:
        npsf = 2 * (2 * int(radius) + 1) + 7
    if table is None:
        table = np.full((npsf, npsf), float(value))
    return PSFModel(
        table=table,
        gauss=np.array([height, 0.0, 0.0, 1.2, 1.2]),
        psf_mag=psf_mag,
        psf_radius=radius,
        fit_radius=2.0,
    )


@pytest.fixture
def const_psf():
    """PSF whose table is constant 2.5 with radius 3."""
    return make_psf(radius=3.0, value=2.5)


@pytest.fixture
def gauss_psf():
    """PSF with a Gaussian core and a smooth, non-constant residual table."""
    npsf = 2 * (2 * 4 + 1) + 7
    yy, xx = np.mgrid[0:npsf, 0:npsf].astype(float)
    c = (npsf - 1) / 2.0
    table = 0.05 * np.exp(-((xx - c) ** 2 + (yy - c) ** 2) / 30.0)
    return make_psf(radius=4.0, height=1.0, table=table)
