from io import BytesIO
import json
import unittest

import numpy as np
from PIL import Image

from gfs_params import DEFAULT_RAMP_COLORS, hex_to_rgba, parse_color_stops
from grib_client import EncodeError, GridField
from grid_projection import mercator_latitudes, sample, source_columns, source_rows
from texture_encoders import (
    CloudEncoder,
    ColorRampEncoder,
    WindEncoder,
    normalize_channel,
    ramp_bracket,
    ramp_color,
)


def _field(values, variable="X", minimum=None, maximum=None):
    grid = np.asarray(values, dtype=np.float64)
    return GridField(
        variable=variable,
        level="lev_surface",
        width=grid.shape[1],
        height=grid.shape[0],
        minimum=float(grid.min()) if minimum is None else minimum,
        maximum=float(grid.max()) if maximum is None else maximum,
        values=grid,
    )


def _columns(width, height, scale=1.0, offset=0.0):
    return np.tile(offset + scale * np.arange(width, dtype=np.float64), (height, 1))


def _rows(width, height):
    return np.tile(np.arange(height, dtype=np.float64)[:, np.newaxis], (1, width))


def _pixels(png_bytes):
    image = Image.open(BytesIO(png_bytes))
    return image.mode, image.size, np.asarray(image.convert("RGBA"))


class GridProjectionTests(unittest.TestCase):
    def test_longitude_wrap_puts_antimeridian_first(self):
        for width in (4, 360, 1440):
            with self.subTest(width=width):
                columns = source_columns(width)
                self.assertEqual(columns[0], width // 2)
                self.assertEqual(columns[0], columns[width % width])
                self.assertEqual(sorted(columns.tolist()), list(range(width)))

    def test_plain_rows_drop_last_decoded_row(self):
        np.testing.assert_array_equal(source_rows(181, mercator=False), np.arange(180))

    def test_mercator_rows_are_monotonic_and_in_range(self):
        for field_height in (181, 361, 721):
            with self.subTest(field_height=field_height):
                rows = source_rows(field_height, mercator=True)
                self.assertEqual(rows.shape, (field_height - 1,))
                self.assertTrue(np.all(np.diff(rows) > 0))
                self.assertGreaterEqual(rows.min(), 0.0)
                self.assertLessEqual(rows.max(), field_height - 1)

    def test_mercator_latitudes_are_symmetric(self):
        latitudes = mercator_latitudes(180)
        self.assertAlmostEqual(latitudes[0], 85.0511, places=3)
        self.assertAlmostEqual(latitudes[90], 0.0, places=6)

    def test_fractional_rows_blend_neighbours(self):
        values = np.array([[0.0, 10.0], [4.0, 20.0]])
        result = sample(values, np.array([0.25, 1.0]), np.array([0, 1]))
        np.testing.assert_allclose(result, [[1.0, 12.5], [4.0, 20.0]])


class NormalizeChannelTests(unittest.TestCase):
    def test_matches_rounded_formula(self):
        rng = np.random.default_rng(7)
        values = rng.uniform(-30.0, 45.0, size=500)
        minimum, maximum = float(values.min()), float(values.max())
        encoded = normalize_channel(values, minimum, maximum).astype(int)
        expected = np.round(255.0 * (values - minimum) / (maximum - minimum))
        self.assertTrue(np.all(np.abs(encoded - expected) <= 1))
        self.assertEqual(encoded.min(), 0)
        self.assertEqual(encoded.max(), 255)

    def test_out_of_range_values_are_clamped(self):
        encoded = normalize_channel(np.array([-5.0, 15.0, np.nan]), 0.0, 10.0)
        self.assertEqual(encoded.tolist(), [0, 255, 0])

    def test_degenerate_range_encodes_zero(self):
        self.assertEqual(normalize_channel(np.array([3.0, 3.0]), 3.0, 3.0).tolist(), [0, 0])


class WindEncoderTests(unittest.TestCase):
    def test_channels_and_stats(self):
        width, height = 8, 5
        u = _field(_columns(width, height, scale=2.0, offset=-7.0), "UGRD")
        v = _field(_columns(width, height, scale=-1.0, offset=3.0), "VGRD")
        artifact = WindEncoder().encode([u, v])

        mode, size, pixels = _pixels(artifact.png)
        self.assertEqual(mode, "RGBA")
        self.assertEqual(size, (width, height - 1))
        for x in range(width):
            source = (x + width // 2) % width
            expected_r = round(255 * (u.values[0, source] - u.minimum) / (u.maximum - u.minimum))
            expected_g = round(255 * (v.values[0, source] - v.minimum) / (v.maximum - v.minimum))
            self.assertLessEqual(abs(int(pixels[2, x, 0]) - expected_r), 1)
            self.assertLessEqual(abs(int(pixels[2, x, 1]) - expected_g), 1)
        self.assertTrue(np.all(pixels[:, :, 2] == 0))
        self.assertTrue(np.all(pixels[:, :, 3] == 255))

        stats = json.loads(artifact.json)
        self.assertEqual(stats["width"], width)
        self.assertEqual(stats["height"], height - 1)
        self.assertEqual((stats["uMin"], stats["uMax"]), (-7.0, 7.0))
        self.assertEqual((stats["vMin"], stats["vMax"]), (-4.0, 3.0))

    def test_rejects_wrong_field_count(self):
        with self.assertRaises(EncodeError):
            WindEncoder().encode([_field(_columns(4, 3))])

    def test_rejects_mismatched_grids(self):
        with self.assertRaises(EncodeError):
            WindEncoder().encode([_field(_columns(4, 3)), _field(_columns(6, 3))])


class CloudEncoderTests(unittest.TestCase):
    def test_channels_and_stats(self):
        width, height = 6, 4
        cloud = _field(_rows(width, height) * 25.0, "TCDC")
        precipitation = _field(_columns(width, height, scale=2.0), "APCP")
        snow = _field(_columns(width, height, scale=20.0), "CPOFP")
        artifact = CloudEncoder().encode([cloud, precipitation, snow])

        _mode, size, pixels = _pixels(artifact.png)
        self.assertEqual(size, (width, height - 1))
        # No latitude resampling: output row y is decoded row y.
        for y in range(height - 1):
            expected = round(255 * (25.0 * y) / cloud.maximum)
            self.assertLessEqual(abs(int(pixels[y, 0, 0]) - expected), 1)
        for x in range(width):
            source = (x + width // 2) % width
            ratio = precipitation.values[0, source] / precipitation.maximum
            self.assertLessEqual(abs(int(pixels[0, x, 1]) - round(255 * ratio**0.2)), 1)
            snow_ratio = snow.values[0, source] / snow.maximum
            self.assertLessEqual(abs(int(pixels[0, x, 2]) - round(255 * snow_ratio)), 1)

        stats = json.loads(artifact.json)
        self.assertEqual(
            sorted(stats),
            ["cMax", "cMin", "height", "pMax", "pMin", "sMax", "sMin", "source", "width"],
        )
        self.assertEqual(stats["pMax"], 10.0)


class ColorRampTests(unittest.TestCase):
    def test_default_ramp_endpoints(self):
        artifact = ColorRampEncoder().encode()
        _mode, size, pixels = _pixels(artifact.png)
        self.assertEqual(size, (1, 256))
        self.assertEqual(tuple(pixels[0, 0]), hex_to_rgba(DEFAULT_RAMP_COLORS[0][1]))
        self.assertEqual(tuple(pixels[255, 0]), hex_to_rgba(DEFAULT_RAMP_COLORS[-1][1]))
        self.assertEqual(json.loads(artifact.json)["height"], 256)

    def test_greyscale_ramp_is_strictly_monotonic(self):
        artifact = ColorRampEncoder().encode(parse_color_stops("0:#000000,1:#ffffff"))
        _mode, _size, pixels = _pixels(artifact.png)
        column = pixels[:, 0, :].astype(int)
        self.assertEqual(tuple(column[0]), (0, 0, 0, 255))
        self.assertEqual(tuple(column[255]), (255, 255, 255, 255))
        for channel in range(3):
            self.assertTrue(np.all(np.diff(column[:, channel]) > 0))
        self.assertTrue(np.all(column[:, 3] == 255))

    def test_bracket_is_lower_inclusive(self):
        stops = ((0.0, "#000000"), (0.5, "#808080"), (1.0, "#ffffff"))
        self.assertEqual(ramp_bracket(stops, 0.0), (0, 1))
        self.assertEqual(ramp_bracket(stops, 0.5), (1, 2))
        self.assertEqual(ramp_bracket(stops, 1.0), (1, 2))
        self.assertEqual(ramp_color(stops, 0.5), (0x80, 0x80, 0x80, 255))

    def test_values_outside_stops_clamp_to_end_colors(self):
        stops = ((0.2, "#102030"), (0.8, "#405060"))
        self.assertEqual(ramp_color(stops, 0.0), (0x10, 0x20, 0x30, 255))
        self.assertEqual(ramp_color(stops, 1.0), (0x40, 0x50, 0x60, 255))

    def test_rejects_single_stop(self):
        with self.assertRaises(EncodeError):
            ColorRampEncoder().encode(((0.0, "#000000"),))


if __name__ == "__main__":
    unittest.main()
