from __future__ import annotations

from io import BytesIO
import json
import logging
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np
from PIL import Image

from gfs_params import DEFAULT_RAMP_COLORS, hex_to_rgba
from grib_client import EncodeError, GridField
from grid_projection import project

NOMADS_SOURCE = "http://nomads.ncep.noaa.gov"
COLOR_RAMP_HEIGHT = 256
PRECIPITATION_GAMMA = 0.2
LOGGER = logging.getLogger("gfs_textures.encoders")


@dataclass(frozen=True)
class EncodedArtifact:
    png: bytes
    json: bytes


def normalize_channel(
    values: np.ndarray,
    minimum: float,
    maximum: float,
    exponent: float | None = None,
) -> np.ndarray:
    """Scale values to 0..255 as ``round(255 * (v - min) / (max - min))``."""
    values = np.asarray(values, dtype=np.float64)
    span = float(maximum) - float(minimum)
    if not np.isfinite(span) or span <= 0.0:
        return np.zeros(values.shape, dtype=np.uint8)
    ratio = np.clip((values - float(minimum)) / span, 0.0, 1.0)
    ratio = np.nan_to_num(ratio, nan=0.0)
    if exponent is not None:
        ratio = np.power(ratio, exponent)
    return np.clip(np.rint(255.0 * ratio), 0, 255).astype(np.uint8)


def encode_png(rgba: np.ndarray) -> bytes:
    try:
        image = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
        buf = BytesIO()
        image.save(buf, format="PNG")
    except (ValueError, TypeError, OSError) as exc:
        raise EncodeError(f"PNG encoding failed shape={getattr(rgba, 'shape', None)}: {exc}") from exc
    LOGGER.debug("Encoded PNG size=%sx%s bytes=%d", image.width, image.height, buf.tell())
    return buf.getvalue()


def encode_json(payload: Dict[str, object]) -> bytes:
    try:
        return (json.dumps(payload, indent=2, allow_nan=False) + "\n").encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EncodeError(f"JSON encoding failed: {exc}") from exc


def _stack_rgba(red: np.ndarray, green: np.ndarray, blue: np.ndarray) -> np.ndarray:
    alpha = np.full(red.shape, 255, dtype=np.uint8)
    return np.stack([red, green, blue, alpha], axis=-1)


def _expect_fields(fields: Sequence[GridField], count: int, product: str) -> None:
    if len(fields) != count:
        raise EncodeError(f"{product} texture needs {count} fields, got {len(fields)}")
    first = fields[0]
    for other in fields[1:]:
        if (other.width, other.height) != (first.width, first.height):
            raise EncodeError(
                f"{product} fields disagree on grid size: "
                f"{first.width}x{first.height} vs {other.width}x{other.height}"
            )


class WindEncoder:
    """U/V wind components in the red and green channels, resampled for web-mercator."""

    mercator = True

    def encode(self, fields: Sequence[GridField]) -> EncodedArtifact:
        _expect_fields(fields, 2, "wind")
        u, v = fields
        red = normalize_channel(project(u, mercator=self.mercator), u.minimum, u.maximum)
        green = normalize_channel(project(v, mercator=self.mercator), v.minimum, v.maximum)
        blue = np.zeros(red.shape, dtype=np.uint8)
        height, width = red.shape
        return EncodedArtifact(
            png=encode_png(_stack_rgba(red, green, blue)),
            json=encode_json(
                {
                    "source": NOMADS_SOURCE,
                    "width": width,
                    "height": height,
                    "uMin": u.minimum,
                    "uMax": u.maximum,
                    "vMin": v.minimum,
                    "vMax": v.maximum,
                }
            ),
        )


class CloudEncoder:
    """Cloud cover, gamma-compressed precipitation and snow percentage in R, G and B."""

    mercator = False

    def encode(self, fields: Sequence[GridField]) -> EncodedArtifact:
        _expect_fields(fields, 3, "cloud")
        cloud, precipitation, snow = fields
        red = normalize_channel(project(cloud, mercator=self.mercator), cloud.minimum, cloud.maximum)
        green = normalize_channel(
            project(precipitation, mercator=self.mercator),
            precipitation.minimum,
            precipitation.maximum,
            exponent=PRECIPITATION_GAMMA,
        )
        blue = normalize_channel(project(snow, mercator=self.mercator), snow.minimum, snow.maximum)
        height, width = red.shape
        return EncodedArtifact(
            png=encode_png(_stack_rgba(red, green, blue)),
            json=encode_json(
                {
                    "source": NOMADS_SOURCE,
                    "width": width,
                    "height": height,
                    "cMin": cloud.minimum,
                    "cMax": cloud.maximum,
                    "pMin": precipitation.minimum,
                    "pMax": precipitation.maximum,
                    "sMin": snow.minimum,
                    "sMax": snow.maximum,
                }
            ),
        )


def ramp_bracket(stops: Sequence[Tuple[float, str]], value: float) -> Tuple[int, int]:
    """Indices of the stop pair enclosing ``value``.

    The lower stop is the last one with ``stop <= value``; a value sitting
    exactly on an inner stop therefore starts the next segment. Values outside
    the ramp use the first or last segment.
    """
    lower = 0
    for index, (stop, _color) in enumerate(stops):
        if stop <= value:
            lower = index
    lower = min(lower, len(stops) - 2)
    return lower, lower + 1


def ramp_color(stops: Sequence[Tuple[float, str]], value: float) -> Tuple[int, int, int, int]:
    lower, upper = ramp_bracket(stops, value)
    low_stop, low_color = stops[lower]
    high_stop, high_color = stops[upper]
    col_min = np.array(hex_to_rgba(low_color) or (0, 0, 0, 255), dtype=np.float64)
    col_max = np.array(hex_to_rgba(high_color) or (0, 0, 0, 255), dtype=np.float64)
    span = high_stop - low_stop
    t = 0.0 if span <= 0.0 else float(np.clip((value - low_stop) / span, 0.0, 1.0))
    rgba = np.rint(col_min + t * (col_max - col_min))
    return tuple(int(c) for c in rgba)


class ColorRampEncoder:
    """1x256 lookup texture for false-color rendering."""

    height = COLOR_RAMP_HEIGHT

    def encode(self, stops: Sequence[Tuple[float, str]] = DEFAULT_RAMP_COLORS) -> EncodedArtifact:
        stops = sorted(stops, key=lambda item: item[0])
        if len(stops) < 2:
            raise EncodeError(f"Color ramp needs at least two stops, got {len(stops)}")
        rgba = np.zeros((self.height, 1, 4), dtype=np.uint8)
        for y in range(self.height):
            rgba[y, 0] = ramp_color(stops, y / (self.height - 1))
        return EncodedArtifact(
            png=encode_png(rgba),
            json=encode_json(
                {
                    "width": 1,
                    "height": self.height,
                    "stops": [[float(stop), color] for stop, color in stops],
                }
            ),
        )
