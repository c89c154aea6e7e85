# mergeeats-dispatch/tests/test_utils.py

from __future__ import annotations

from unittest import mock

import pytest

from conftest import CENTER, offset
from mergedispatch import utils
from mergedispatch.errors import DirectoryUnavailable, StateConflict, ValidationError
from mergedispatch.models import GeoPoint


@pytest.mark.parametrize("east_km, north_km", [(0.5, 0), (2.0, 1.0), (0, 5.0), (-7.0, 6.0)])
def test_flat_distance_close_to_haversine(east_km, north_km):
    other = offset(CENTER, east_km, north_km)
    exact = utils.haversine_distance(CENTER.lat, CENTER.lng, other.lat, other.lng)
    assert utils.distance_km(CENTER, other) == pytest.approx(exact, rel=0.005)


def test_offset_helpers_invert_distance():
    assert utils.distance_km(CENTER, offset(CENTER, east_km=3.0)) == pytest.approx(3.0, rel=1e-3)
    assert utils.distance_km(CENTER, offset(CENTER, north_km=3.0)) == pytest.approx(3.0, rel=1e-3)


def test_centroid_and_nearest():
    points = [GeoPoint(0.0, 0.0), GeoPoint(2.0, 4.0)]
    assert utils.centroid(points) == GeoPoint(1.0, 2.0)
    assert utils.nearest_point(GeoPoint(1.8, 3.9), points) == GeoPoint(2.0, 4.0)
    assert utils.nearest_point(CENTER, []) is None
    with pytest.raises(ValueError):
        utils.centroid([])


def test_service_area():
    box = (25.0, 51.0, 26.0, 52.0)
    assert utils.in_service_area(CENTER, box)
    assert not utils.in_service_area(GeoPoint(24.9, 51.5), box)
    assert utils.in_service_area(GeoPoint(-80.0, 170.0), None)


def test_format_time_duration():
    assert utils.format_time_duration(45) == "45m"
    assert utils.format_time_duration(83) == "1h 23m"


class TestCallWithBackoff:

    def test_retries_retryable_errors_with_doubling_delay(self):
        sleep = mock.Mock()
        fn = mock.Mock(side_effect=[DirectoryUnavailable("down"), StateConflict("race"), "ok"])

        assert utils.call_with_backoff(fn, attempts=3, base_delay=0.1, sleep=sleep) == "ok"
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]

    def test_gives_up_after_attempts(self):
        fn = mock.Mock(side_effect=DirectoryUnavailable("down"))
        with pytest.raises(DirectoryUnavailable):
            utils.call_with_backoff(fn, attempts=2, base_delay=0, sleep=lambda _: None)
        assert fn.call_count == 2

    def test_validation_errors_are_not_retried(self):
        fn = mock.Mock(side_effect=ValidationError("bad"))
        with pytest.raises(ValidationError):
            utils.call_with_backoff(fn, attempts=5, sleep=lambda _: None)
        assert fn.call_count == 1

    def test_needs_one_attempt(self):
        with pytest.raises(ValueError):
            utils.call_with_backoff(lambda: None, attempts=0)
