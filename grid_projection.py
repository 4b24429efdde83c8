from __future__ import annotations

import numpy as np

from grib_client import GridField


def source_columns(width: int) -> np.ndarray:
    """Source column per output column, shifted half a turn so column 0 is the antimeridian."""
    x = np.arange(int(width), dtype=np.int64)
    return (x + int(width) // 2) % int(width)


def mercator_latitudes(height: int) -> np.ndarray:
    y = np.arange(int(height), dtype=np.float64)
    return np.degrees(2.0 * np.arctan(np.exp(np.radians(180.0 - y / height * 360.0)))) - 90.0


def source_rows(field_height: int, mercator: bool) -> np.ndarray:
    """Fractional source row for every output row.

    The output drops the last decoded row, so it is ``field_height - 1`` rows
    tall. Decoded rows run from 90N (row 0) to 90S (row ``field_height - 1``).
    With ``mercator`` the rows are resampled so the texture can be stretched
    over a web-mercator map without distorting high latitudes.
    """
    height = int(field_height) - 1
    if not mercator:
        return np.arange(height, dtype=np.float64)
    latitudes = mercator_latitudes(height)
    rows = (90.0 - latitudes) / 180.0 * (field_height - 1)
    return np.clip(rows, 0.0, field_height - 1)


def sample(values: np.ndarray, rows: np.ndarray, columns: np.ndarray) -> np.ndarray:
    """Sample ``values`` at fractional rows and integer columns.

    Fractional rows blend the two bracketing rows, each weighted by the
    distance to the other one.
    """
    grid = np.asarray(values, dtype=np.float64)
    last_row = grid.shape[0] - 1
    lower = np.clip(np.floor(rows).astype(np.int64), 0, last_row)
    upper = np.minimum(lower + 1, last_row)
    weight = (rows - lower)[:, np.newaxis]

    top = grid[lower][:, columns]
    bottom = grid[upper][:, columns]
    # Exact rows must not pick up a missing value from the neighbour row.
    return np.where(weight > 0.0, top * (1.0 - weight) + bottom * weight, top)


def project(field: GridField, mercator: bool = False) -> np.ndarray:
    rows = source_rows(field.height, mercator)
    columns = source_columns(field.width)
    return sample(field.values, rows, columns)
