from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Sequence, Tuple

DEFAULT_FORECAST_STEP = 1
# GFS publishes up to f384 at 3-hour steps.
MAX_FORECAST_STEP = 128
FORECAST_HOURS_PER_STEP = 3
RUN_SLOT_HOURS = 6
PUBLICATION_DELAY_HOURS = 6
LOGGER = logging.getLogger("gfs_textures.params")

DEFAULT_RAMP_COLORS: Tuple[Tuple[float, str], ...] = (
    (0.0, "#3288bd"),
    (0.1, "#66c2a5"),
    (0.2, "#abdda4"),
    (0.3, "#e6f598"),
    (0.4, "#fee08b"),
    (0.5, "#fdae61"),
    (0.6, "#f46d43"),
    (1.0, "#d53e4f"),
)

_HEX_COLOR = re.compile(r"^#([0-9a-f]{2})([0-9a-f]{2})([0-9a-f]{2})([0-9a-f]{2})?$", re.IGNORECASE)


class Variable(str, Enum):
    WIND_U = "UGRD"
    WIND_V = "VGRD"
    PRECIPITATION = "APCP"
    CLOUD_COVER = "TCDC"
    SNOW_PERCENTAGE = "CPOFP"


class Level(str, Enum):
    ABOVE_GROUND_10M = "lev_10_m_above_ground"
    CONVECTIVE_CLOUD_LAYER = "lev_convective_cloud_layer"
    SURFACE = "lev_surface"


class RunSlot(str, Enum):
    T00 = "00"
    T06 = "06"
    T12 = "12"
    T18 = "18"

    @classmethod
    def for_hour(cls, hour: int) -> RunSlot:
        return list(cls)[(int(hour) % 24) // RUN_SLOT_HOURS]


class Resolution(str, Enum):
    LOW = "1p00"
    MEDIUM = "0p50"
    HIGH = "0p25"

    @classmethod
    def lookup(cls, raw: str) -> Resolution | None:
        text = str(raw).strip()
        member = cls.__members__.get(text.upper())
        if member is not None:
            return member
        for candidate in cls:
            if candidate.value == text.lower():
                return candidate
        return None


@dataclass(frozen=True)
class VariableConfig:
    variable: Variable
    level: Level


@dataclass(frozen=True)
class FetchParameters:
    date: str
    run_slot: RunSlot
    resolution: Resolution
    forecast: int
    variable_configs: Tuple[VariableConfig, ...] = field(default=())

    @property
    def forecast_hour(self) -> int:
        return FORECAST_HOURS_PER_STEP * self.forecast


def default_reference_time(now: datetime | None = None) -> datetime:
    """Latest run that is expected to be published: now - 6 h, floored to the run slot."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    shifted = current.astimezone(timezone.utc) - timedelta(hours=PUBLICATION_DELAY_HOURS)
    return shifted.replace(
        hour=(shifted.hour // RUN_SLOT_HOURS) * RUN_SLOT_HOURS,
        minute=0,
        second=0,
        microsecond=0,
    )


def _parse_date_time(raw: object) -> datetime | None:
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def _parse_forecast(raw: object) -> int:
    text = str(raw if raw is not None else "").strip()
    if not re.fullmatch(r"[+-]?\d+", text):
        return DEFAULT_FORECAST_STEP
    return max(1, min(MAX_FORECAST_STEP, int(text)))


def parse_query(
    query: Mapping[str, object] | None,
    variable_configs: Sequence[VariableConfig] = (),
    now: datetime | None = None,
) -> FetchParameters:
    query = query or {}
    reference = default_reference_time(now)

    requested = _parse_date_time(query.get("dateTime"))
    if requested is not None:
        reference = requested
    elif query.get("dateTime"):
        LOGGER.debug("Ignoring malformed dateTime=%r", query.get("dateTime"))

    resolution = Resolution.LOW
    if query.get("resolution"):
        resolution = Resolution.lookup(str(query["resolution"])) or Resolution.LOW

    forecast = DEFAULT_FORECAST_STEP
    if query.get("forecast") is not None:
        forecast = _parse_forecast(query.get("forecast"))

    return FetchParameters(
        date=reference.strftime("%Y%m%d"),
        run_slot=RunSlot.for_hour(reference.hour),
        resolution=resolution,
        forecast=forecast,
        variable_configs=tuple(variable_configs),
    )


def artifact_stem(params: FetchParameters, prefix: str) -> str:
    return f"{prefix}_{params.date}_{params.run_slot.value}_{params.resolution.value}_{params.forecast}"


def artifact_name(params: FetchParameters, prefix: str, extension: str) -> str:
    return f"{artifact_stem(params, prefix)}.{extension.lstrip('.')}"


def hex_to_rgba(color: str) -> Tuple[int, int, int, int] | None:
    match = _HEX_COLOR.match(str(color).strip())
    if match is None:
        return None
    r, g, b, a = match.groups()
    return int(r, 16), int(g, 16), int(b, 16), int(a, 16) if a else 255


def parse_color_stops(raw: str | None) -> Tuple[Tuple[float, str], ...]:
    """Parse ``stop:#rrggbb,...`` into a sorted ramp, falling back to the default ramp."""
    stops = []
    for entry in str(raw or "").split(","):
        stop_text, sep, color = entry.strip().partition(":")
        if not sep:
            continue
        try:
            stop = float(stop_text)
        except ValueError:
            continue
        if not math.isfinite(stop) or hex_to_rgba(color) is None:
            continue
        stops.append((stop, color.strip()))
    if len(stops) < 2:
        if raw:
            LOGGER.debug("Falling back to default color ramp colors=%r", raw)
        return DEFAULT_RAMP_COLORS
    return tuple(sorted(stops, key=lambda item: item[0]))
