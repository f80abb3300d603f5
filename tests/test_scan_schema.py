import pytest

from remet.schemas.scan_schema import BoundingBox


class TestBoundingBox:
    """Tests for the normalized face rectangle."""

    def test_bottom_left_conversion_flips_y(self):
        box = BoundingBox(0.1, 0.2, 0.3, 0.4).to_bottom_left()

        assert box.x == pytest.approx(0.1)
        assert box.y == pytest.approx(0.4)
        assert box.width == pytest.approx(0.3)
        assert box.height == pytest.approx(0.4)

    def test_bottom_left_round_trip(self):
        box = BoundingBox(0.15, 0.05, 0.25, 0.5)

        flipped = box.to_bottom_left()
        back = BoundingBox.from_bottom_left(flipped.x, flipped.y, flipped.width, flipped.height)

        assert back.x == pytest.approx(box.x)
        assert back.y == pytest.approx(box.y)
        assert back.width == pytest.approx(box.width)
        assert back.height == pytest.approx(box.height)

    def test_padded_is_clipped_to_the_image(self):
        box = BoundingBox(0.0, 0.8, 0.2, 0.2).padded(0.5)

        assert box.x == 0.0
        assert box.y == pytest.approx(0.7)
        assert box.width == pytest.approx(0.3)
        assert box.y + box.height == pytest.approx(1.0)

    def test_to_pixels(self):
        assert BoundingBox(0.25, 0.5, 0.5, 0.25).to_pixels(640, 480) == (160, 240, 480, 360)
