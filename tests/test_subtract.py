"""
Tests for in-place PSF subtraction.
"""

import threading

import numpy as np
import pytest

from psfsub.interp import InterpolationCache
from psfsub.stars import StarList
from psfsub.subtract import SubtractionSession, resolve_workers, subtract_stars, validate_image

from conftest import make_psf


def footprint_mask(shape, x, y, radius):
    rows, cols = np.indices(shape)
    return (cols - x) ** 2 + (rows - y) ** 2 < radius ** 2


class TestScenarios:

    def test_single_star_constant_table(self, const_psf):
        """Every pixel within the radius drops by the table value; others stay zero."""
        image = np.zeros((10, 10))
        subtract_stars(image, [5.0], [5.0], [const_psf.psf_mag], psf=const_psf)
        mask = footprint_mask(image.shape, 5.0, 5.0, 3.0)
        np.testing.assert_allclose(image[mask], -2.5)
        np.testing.assert_array_equal(image[~mask], 0.0)

    def test_corner_star_partially_subtracted(self, const_psf):
        image = np.zeros((10, 10))
        subtract_stars(image, [0.5], [0.5], [const_psf.psf_mag], psf=const_psf)
        mask = footprint_mask(image.shape, 0.5, 0.5, 3.0)
        np.testing.assert_allclose(image[mask], -2.5)
        np.testing.assert_array_equal(image[~mask], 0.0)
        assert mask.sum() < np.pi * 9

    def test_zero_magnitude_star_ignored(self, const_psf):
        image = np.zeros((20, 20))
        subtract_stars(image, [5.0, 14.0], [5.0, 14.0], [const_psf.psf_mag, 0.0], psf=const_psf)
        np.testing.assert_array_equal(image[footprint_mask(image.shape, 14.0, 14.0, 3.0)], 0.0)
        np.testing.assert_allclose(image[footprint_mask(image.shape, 5.0, 5.0, 3.0)], -2.5)

    def test_id_subset(self, const_psf):
        image = np.zeros((30, 30))
        x = [5.0, 15.0, 25.0]
        y = [5.0, 15.0, 25.0]
        mag = [const_psf.psf_mag] * 3
        subtract_stars(image, x, y, mag, ids=[0, 2], psf=const_psf)
        touched = image != 0.0
        expected = footprint_mask(image.shape, 5.0, 5.0, 3.0) | footprint_mask(image.shape, 25.0, 25.0, 3.0)
        np.testing.assert_array_equal(touched, expected)


class TestProperties:

    def test_scale_applied(self, const_psf):
        image = np.zeros((10, 10))
        subtract_stars(image, [5.0], [5.0], [const_psf.psf_mag - 2.5], psf=const_psf)
        np.testing.assert_allclose(image[footprint_mask(image.shape, 5.0, 5.0, 3.0)], -25.0)

    def test_fractional_center_radius(self, gauss_psf):
        image = np.zeros((25, 25))
        subtract_stars(image, [11.3], [12.8], [gauss_psf.psf_mag], psf=gauss_psf)
        outside = ~footprint_mask(image.shape, 11.3, 12.8, 4.0)
        np.testing.assert_array_equal(image[outside], 0.0)
        assert image[12, 11] < 0.0 or image[13, 11] < 0.0

    def test_off_image_star_is_noop(self, const_psf):
        image = np.ones((10, 10))
        session = SubtractionSession(const_psf)
        batch = session.filter(StarList(x=[-20.0, 40.0], y=[-20.0, 3.0], mag=[15.0, 15.0]))
        summary = session.subtract(image, batch)
        np.testing.assert_array_equal(image, 1.0)
        assert summary.n_off_image == 2 and summary.n_subtracted == 0

    def test_edges_never_wrap(self, const_psf):
        """A star past the right edge must not leak into column 0 of the next row."""
        image = np.zeros((10, 10))
        subtract_stars(image, [10.5], [5.0], [15.0], psf=const_psf)
        assert np.all(image[:, :7] == 0.0)
        np.testing.assert_allclose(image[footprint_mask(image.shape, 10.5, 5.0, 3.0)], -2.5)

    def test_deterministic(self, gauss_psf):
        x = [4.2, 9.7, 11.1]
        y = [5.5, 10.25, 3.9]
        mag = [14.0, 15.5, 16.0]
        a = np.zeros((16, 16))
        b = np.zeros((16, 16))
        subtract_stars(a, x, y, mag, psf=gauss_psf)
        subtract_stars(b, x, y, mag, psf=gauss_psf)
        np.testing.assert_array_equal(a, b)

    def test_order_independent(self, gauss_psf):
        a = np.zeros((16, 16))
        b = np.zeros((16, 16))
        subtract_stars(a, [6.2, 8.9], [7.1, 8.4], [14.0, 15.0], psf=gauss_psf)
        subtract_stars(b, [8.9, 6.2], [8.4, 7.1], [15.0, 14.0], psf=gauss_psf)
        np.testing.assert_allclose(a, b, rtol=1e-12, atol=1e-15)

    def test_threaded_matches_serial(self, gauss_psf):
        rng = np.random.default_rng(11)
        n = 40
        x = rng.uniform(-3, 43, n)
        y = rng.uniform(-3, 33, n)
        mag = rng.uniform(13, 17, n)
        serial = np.zeros((30, 40))
        threaded = np.zeros((30, 40))
        subtract_stars(serial, x, y, mag, psf=gauss_psf)
        subtract_stars(threaded, x, y, mag, psf=gauss_psf, max_workers=4)
        np.testing.assert_array_equal(serial, threaded)

    def test_float32_image(self, const_psf):
        image = np.zeros((10, 10), dtype=np.float32)
        subtract_stars(image, [5.0], [5.0], [15.0], psf=const_psf)
        assert image.dtype == np.float32
        assert image[5, 5] == pytest.approx(-2.5)

    def test_view_is_mutated(self, const_psf):
        base = np.zeros((20, 20))
        view = base[5:15, 5:15]
        subtract_stars(view, [5.0], [5.0], [15.0], psf=const_psf)
        assert base[10, 10] == pytest.approx(-2.5)
        assert base[0, 0] == 0.0


class TestValidation:

    def test_three_dimensional_image_rejected(self, const_psf):
        image = np.zeros((2, 10, 10))
        with pytest.raises(ValueError):
            subtract_stars(image, [5.0], [5.0], [15.0], psf=const_psf)
        np.testing.assert_array_equal(image, 0.0)

    def test_integer_image_rejected(self):
        with pytest.raises(TypeError):
            validate_image(np.zeros((5, 5), dtype=np.int32))

    def test_list_rejected(self):
        with pytest.raises(TypeError):
            validate_image([[0.0, 1.0], [2.0, 3.0]])

    def test_read_only_rejected(self):
        image = np.zeros((5, 5))
        image.setflags(write=False)
        with pytest.raises(ValueError):
            validate_image(image)

    def test_missing_psf(self):
        with pytest.raises(ValueError):
            subtract_stars(np.zeros((5, 5)), [1.0], [1.0], [15.0])

    def test_bad_id_aborts_before_mutation(self, const_psf):
        image = np.zeros((10, 10))
        with pytest.raises(IndexError):
            subtract_stars(image, [5.0], [5.0], [15.0], ids=[0, 4], psf=const_psf)
        np.testing.assert_array_equal(image, 0.0)


class TestSession:

    def test_owns_cache(self, const_psf):
        session = SubtractionSession(const_psf)
        assert session.cache.initialized
        assert session.cache.matches(const_psf)

    def test_sessions_do_not_share_cache(self):
        a = SubtractionSession(make_psf(radius=3.0, value=1.0))
        b = SubtractionSession(make_psf(radius=3.0, value=2.0))
        assert a.cache is not b.cache
        img_a = np.zeros((10, 10))
        img_b = np.zeros((10, 10))
        a.subtract(img_a, a.filter(StarList(x=[5.0], y=[5.0], mag=[15.0])))
        b.subtract(img_b, b.filter(StarList(x=[5.0], y=[5.0], mag=[15.0])))
        assert img_a[5, 5] == pytest.approx(-1.0)
        assert img_b[5, 5] == pytest.approx(-2.0)

    def test_foreign_cache_rejected(self, const_psf):
        other = make_psf(radius=3.0, value=1.0)
        with pytest.raises(ValueError):
            SubtractionSession(const_psf, cache=InterpolationCache.for_model(other))

    def test_summary_counts(self, const_psf):
        session = SubtractionSession(const_psf)
        image = np.zeros((10, 10))
        stars = StarList(x=[5.0, 50.0, 2.0], y=[5.0, 50.0, 2.0], mag=[15.0, 15.0, 0.0])
        summary = session.subtract(image, session.filter(stars), verbose=True)
        assert summary.n_input == 3
        assert summary.n_valid == 2
        assert summary.n_subtracted == 1
        assert summary.n_off_image == 1
        assert summary.n_pixels == int(footprint_mask(image.shape, 5.0, 5.0, 3.0).sum())
        assert not summary.cancelled

    def test_cancel_before_start(self, const_psf):
        session = SubtractionSession(const_psf)
        image = np.zeros((10, 10))
        stop = threading.Event()
        stop.set()
        summary = session.subtract(image, session.filter(StarList(x=[5.0], y=[5.0], mag=[15.0])), cancel=stop)
        assert summary.cancelled
        np.testing.assert_array_equal(image, 0.0)

    def test_cancel_callable_mid_run(self, const_psf):
        session = SubtractionSession(const_psf)
        image = np.zeros((30, 30))
        calls = []

        def _cancel():
            calls.append(1)
            return len(calls) > 1

        stars = StarList(x=[5.0, 20.0], y=[5.0, 20.0], mag=[15.0, 15.0])
        summary = session.subtract(image, session.filter(stars), cancel=_cancel)
        assert summary.cancelled and summary.n_subtracted == 1
        np.testing.assert_array_equal(image[footprint_mask(image.shape, 20.0, 20.0, 3.0)], 0.0)

    def test_resolve_workers(self):
        assert resolve_workers(None) == 1
        assert resolve_workers(0) == 1
        assert resolve_workers(3) == 3
        assert resolve_workers("auto") >= 1
        with pytest.raises(ValueError):
            resolve_workers("many")


class TestThreadedRun:
    """Worker-thread path: cancellation and bounded queueing."""

    @staticmethod
    def _row_of_stars(n, spacing=10.0):
        x = [5.0 + spacing * k for k in range(n)]
        return StarList(x=x, y=[5.0] * n, mag=[15.0] * n)

    def test_cancel_leaves_later_stars_untouched(self, const_psf):
        session = SubtractionSession(const_psf)
        image = np.zeros((10, 60))
        calls = []

        def _cancel():
            calls.append(1)
            return len(calls) > 2

        batch = session.filter(self._row_of_stars(6))
        summary = session.subtract(image, batch, max_workers=4, cancel=_cancel)
        assert summary.cancelled
        assert summary.n_subtracted == 2
        for k in range(2):
            np.testing.assert_allclose(image[footprint_mask(image.shape, 5.0 + 10 * k, 5.0, 3.0)], -2.5)
        for k in range(2, 6):
            np.testing.assert_array_equal(image[footprint_mask(image.shape, 5.0 + 10 * k, 5.0, 3.0)], 0.0)

    def test_queued_work_is_bounded(self, const_psf):
        session = SubtractionSession(const_psf)
        image = np.zeros((10, 1000))
        lock = threading.Lock()
        evaluated = []
        footprint = session.footprint

        def _counting(batch, i, shape):
            with lock:
                evaluated.append(i)
            return footprint(batch, i, shape)

        session.footprint = _counting
        calls = []

        def _cancel():
            calls.append(1)
            return len(calls) > 1

        batch = session.filter(self._row_of_stars(100))
        summary = session.subtract(image, batch, max_workers=4, cancel=_cancel)
        assert summary.cancelled and summary.n_subtracted == 1
        # window of 2*workers plus one refill after the applied star
        assert len(evaluated) <= 2 * 4 + 1

    def test_all_stars_applied_without_cancel(self, const_psf):
        session = SubtractionSession(const_psf)
        image = np.zeros((10, 1000))
        summary = session.subtract(image, session.filter(self._row_of_stars(100)), max_workers=3)
        assert summary.n_subtracted == 100
        assert not summary.cancelled


class TestPSFFromPath:

    def test_subtract_stars_with_psf_file(self, tmp_path, gauss_psf):
        from psfsub.fits_io import write_psf

        path = write_psf(tmp_path / "psf.fits", gauss_psf)
        x, y, mag = [6.3, 11.8], [7.4, 9.1], [14.5, 15.2]
        from_file = np.zeros((20, 20))
        from_model = np.zeros((20, 20))
        subtract_stars(from_file, x, y, mag, psf=str(path))
        subtract_stars(from_model, x, y, mag, psf=gauss_psf)
        np.testing.assert_array_equal(from_file, from_model)
        assert np.any(from_file < 0.0)

    def test_session_from_file(self, tmp_path, const_psf):
        from psfsub.fits_io import write_psf

        session = SubtractionSession.from_file(write_psf(tmp_path / "psf.fits", const_psf))
        assert session.cache.matches(session.psf)
        image = np.zeros((10, 10))
        session.subtract(image, session.filter(StarList(x=[5.0], y=[5.0], mag=[15.0])))
        np.testing.assert_allclose(image[footprint_mask(image.shape, 5.0, 5.0, 3.0)], -2.5)

    def test_missing_psf_file(self, tmp_path):
        image = np.zeros((10, 10))
        with pytest.raises(FileNotFoundError):
            subtract_stars(image, [5.0], [5.0], [15.0], psf=tmp_path / "missing.fits")
        np.testing.assert_array_equal(image, 0.0)
