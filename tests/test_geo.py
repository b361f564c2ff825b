"""Tests for distance helpers."""

import pytest

from anchorwatch.geo import haversine_distance, offset_position, validate_coordinates


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_distance(43.2965, 5.3698, 43.2965, 5.3698) == 0.0

    def test_one_degree_of_latitude(self):
        assert haversine_distance(0.0, 0.0, 1.0, 0.0) == pytest.approx(111194.93, rel=1e-6)

    def test_symmetric(self):
        a = haversine_distance(43.0, 5.0, 43.01, 5.02)
        b = haversine_distance(43.01, 5.02, 43.0, 5.0)
        assert a == pytest.approx(b)

    def test_antimeridian(self):
        d = haversine_distance(0.0, 179.9995, 0.0, -179.9995)
        assert d == pytest.approx(111.19, rel=1e-3)


class TestOffsetPosition:
    @pytest.mark.parametrize("north,east", [(100.0, 0.0), (0.0, 100.0), (30.0, 40.0)])
    def test_offset_matches_distance(self, north, east):
        lat, lon = offset_position(43.2965, 5.3698, north, east)
        expected = (north**2 + east**2) ** 0.5
        assert haversine_distance(43.2965, 5.3698, lat, lon) == pytest.approx(expected, rel=1e-3)


class TestValidateCoordinates:
    def test_accepts_bounds(self):
        validate_coordinates(90.0, 180.0)
        validate_coordinates(-90.0, -180.0)

    @pytest.mark.parametrize("lat,lon", [(90.1, 0.0), (-91.0, 0.0), (0.0, 180.5), (0.0, -181.0)])
    def test_rejects_out_of_range(self, lat, lon):
        with pytest.raises(ValueError):
            validate_coordinates(lat, lon)
