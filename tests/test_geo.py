import math

import pytest

from errors import InvalidInput
from geo import Coordinate, bounding_box, round4, validate_coordinate


class TestRound4:
    @pytest.mark.parametrize("value", [40.712776, -74.005974, 0.0, 89.99999, -179.123456, 12.34565])
    def test_idempotent(self, value):
        assert round4(round4(value)) == round4(value)

    def test_half_up(self):
        assert round4(0.00005) == 0.0001
        assert round4(-0.00004) == 0.0
        assert round4(2.5) == 2.5

    def test_nearby_destinations_share_key(self):
        a = Coordinate(40.71281, -74.00601)
        b = Coordinate(40.71284, -74.00604)
        assert a.key_parts() == b.key_parts() == ("40.7128", "-74.0060")

    def test_distinct_destinations_differ(self):
        a = Coordinate(40.7128, -74.0060)
        b = Coordinate(40.7130, -74.0060)
        assert a.key_parts() != b.key_parts()

    def test_key_parts_fixed_width(self):
        assert Coordinate(40.7, -74.0).key_parts() == ("40.7000", "-74.0000")


class TestValidateCoordinate:
    def test_valid_strings(self):
        c = validate_coordinate("40.5", "-73.25")
        assert c == Coordinate(40.5, -73.25)

    @pytest.mark.parametrize("lat,lng,field", [
        (91, 0, "lat"),
        (-90.5, 0, "lat"),
        (0, 181, "lng"),
        ("abc", 0, "lat"),
        (0, None, "lng"),
        (float("nan"), 0, "lat"),
    ])
    def test_invalid(self, lat, lng, field):
        with pytest.raises(InvalidInput) as exc:
            validate_coordinate(lat, lng)
        assert exc.value.field == field

    def test_prefix_names_field(self):
        with pytest.raises(InvalidInput) as exc:
            validate_coordinate(0, 500, prefix="dest")
        assert exc.value.field == "destLng"


class TestBoundingBox:
    def test_latitude_span(self):
        south, north, west, east = bounding_box(Coordinate(40.0, -74.0), 69.0)
        assert south == pytest.approx(39.0)
        assert north == pytest.approx(41.0)

    def test_longitude_scaled_by_latitude(self):
        _, _, west, east = bounding_box(Coordinate(60.0, 10.0), 69.0)
        assert east - 10.0 == pytest.approx(1 / math.cos(math.radians(60.0)))

    def test_pole_does_not_divide_by_zero(self):
        _, _, west, east = bounding_box(Coordinate(90.0, 0.0), 5.0)
        assert east <= 180.0
