"""
Coordinate System Management for ERA5 Forcing Preprocessing

This module provides the rectilinear latitude/longitude grid descriptions used
by the spatial resampler. Grids can be built from a field's coordinate axes,
from a resolution and bounds, or from CDO plain-text grid descriptions
(``griddes``), and each grid has a canonical text form whose SHA-256 hash keys
the remap weights cache.
"""

import hashlib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from logging_utils import RegridError


# Decimal places of the canonical text form
GRIDDES_PRECISION = 6


class CoordinateGrid:
    """
    Rectilinear geographic grid described by cell centres and cell edges.

    Latitude may run north to south (ERA5) or south to north; longitude must
    increase. Cell edges default to midpoints between neighbouring centres,
    with the outer edges half a spacing beyond the first and last centre and
    latitude edges clipped to ±90°.
    """

    def __init__(self, latitude_coordinates: np.ndarray, longitude_coordinates: np.ndarray):
        """
        Initialize coordinate grid from cell centres.

        Args:
            latitude_coordinates: Latitude centres in degrees north (monotonic)
            longitude_coordinates: Longitude centres in degrees east (increasing)

        Raises:
            RegridError: If the geometry is degenerate
        """
        self.latitude_coordinates = np.asarray(latitude_coordinates, dtype=np.float64).reshape(-1)
        self.longitude_coordinates = np.asarray(longitude_coordinates, dtype=np.float64).reshape(-1)
        self._validate()

        self.num_latitude_points = len(self.latitude_coordinates)
        self.num_longitude_points = len(self.longitude_coordinates)
        self.latitude_edges = _axis_edges(self.latitude_coordinates, clip=90.0)
        self.longitude_edges = _axis_edges(self.longitude_coordinates)

        if np.any(np.abs(np.diff(self.latitude_edges)) <= 0) or np.any(np.diff(self.longitude_edges) <= 0):
            raise RegridError("Grid has zero-width cells", context=self.get_grid_info())

    def _validate(self) -> None:
        lat = self.latitude_coordinates
        lon = self.longitude_coordinates

        if len(lat) < 2 or len(lon) < 2:
            raise RegridError(
                "Grid needs at least two latitude and two longitude points",
                context={'shape': (len(lat), len(lon))}
            )
        if not (np.all(np.isfinite(lat)) and np.all(np.isfinite(lon))):
            raise RegridError("Grid coordinates contain non-finite values")
        if np.any(np.abs(lat) > 90.0):
            raise RegridError(
                "Latitude outside [-90, 90]",
                context={'min': float(lat.min()), 'max': float(lat.max())}
            )

        lat_steps = np.diff(lat)
        if not (np.all(lat_steps > 0) or np.all(lat_steps < 0)):
            raise RegridError("Latitude axis is not strictly monotonic")
        if not np.all(np.diff(lon) > 0):
            raise RegridError("Longitude axis is not strictly increasing")
        if lon[-1] - lon[0] >= 360.0:
            raise RegridError(
                "Longitude axis spans 360 degrees or more",
                context={'first': float(lon[0]), 'last': float(lon[-1])}
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.num_latitude_points, self.num_longitude_points)

    @property
    def latitude_descending(self) -> bool:
        return bool(self.latitude_coordinates[0] > self.latitude_coordinates[-1])

    @classmethod
    def from_axes(cls, lat_axis: np.ndarray, lon_axis: np.ndarray) -> 'CoordinateGrid':
        """Grid whose centres are a field's latitude and longitude axes."""
        return cls(lat_axis, lon_axis)

    @classmethod
    def from_resolution(cls, resolution: float, bounds: Optional[List[float]] = None,
                        latitude_descending: bool = False) -> 'CoordinateGrid':
        """
        Regular grid with the given resolution and cell-centre bounds.

        Args:
            resolution: Grid resolution in decimal degrees (e.g. 0.5, 0.25)
            bounds: Centre bounds as [South, West, North, East]. If None, uses
                the global half-degree centres [-89.75, -179.75, 89.75, 179.75]
            latitude_descending: Order latitudes north to south

        Returns:
            CoordinateGrid
        """
        bounds = bounds or [-89.75, -179.75, 89.75, 179.75]
        if len(bounds) != 4:
            raise RegridError("Bounds must be [South, West, North, East]", context={'bounds': bounds})
        if resolution <= 0:
            raise RegridError("Resolution must be positive", context={'resolution': resolution})

        south, west, north, east = bounds
        if south >= north or west >= east:
            raise RegridError("Invalid bounds: South >= North or West >= East", context={'bounds': bounds})

        lat = _regular_axis(south, north, resolution)
        lon = _regular_axis(west, east, resolution)
        if latitude_descending:
            lat = lat[::-1]
        return cls(lat, lon)

    @classmethod
    def from_griddes(cls, text: str) -> 'CoordinateGrid':
        """
        Parse a CDO grid description.

        Supports ``gridtype = lonlat`` with either ``xfirst``/``xinc`` and
        ``yfirst``/``yinc`` or explicit ``xvals``/``yvals`` lists.

        Raises:
            RegridError: If the description is not a valid lonlat grid
        """
        entries = _parse_griddes(text)

        gridtype = entries.get('gridtype', 'lonlat')
        if gridtype not in ('lonlat', 'latlon'):
            raise RegridError(f"Unsupported gridtype '{gridtype}'", context={'gridtype': gridtype})

        try:
            xsize = int(entries['xsize'])
            ysize = int(entries['ysize'])
            lon = _griddes_axis(entries, 'x', xsize)
            lat = _griddes_axis(entries, 'y', ysize)
        except (KeyError, ValueError) as e:
            raise RegridError(f"Incomplete grid description: {e}", context={'entries': sorted(entries)}) from e

        return cls(lat, lon)

    @classmethod
    def from_griddes_file(cls, path: Union[str, Path]) -> 'CoordinateGrid':
        return cls.from_griddes(Path(path).read_text())

    def to_griddes(self) -> str:
        """
        Canonical CDO grid description of this grid.

        Regular axes are written as first value and increment, irregular
        ones as explicit value lists. Numbers are rounded to
        ``GRIDDES_PRECISION`` decimals.
        """
        lines = [
            "gridtype = lonlat",
            f"xsize    = {self.num_longitude_points}",
            f"ysize    = {self.num_latitude_points}",
        ]
        lines.extend(_griddes_axis_lines('x', self.longitude_coordinates))
        lines.extend(_griddes_axis_lines('y', self.latitude_coordinates))
        return "\n".join(lines) + "\n"

    def content_hash(self) -> str:
        """SHA-256 hex digest of the canonical grid description."""
        return hashlib.sha256(self.to_griddes().encode('utf-8')).hexdigest()

    def latitude_band_fractions(self) -> np.ndarray:
        """
        Area of each latitude band in units of sin(latitude).

        Multiplied by the longitude width in radians and R², this is the
        cell area on a sphere.
        """
        return np.abs(np.diff(np.sin(np.deg2rad(self.latitude_edges))))

    def cell_areas(self, radius: float = 1.0) -> np.ndarray:
        """Cell areas on a sphere of the given radius, shape (lat, lon)."""
        widths = np.deg2rad(np.diff(self.longitude_edges))
        return radius ** 2 * np.outer(self.latitude_band_fractions(), widths)

    def matches_axes(self, lat_axis: np.ndarray, lon_axis: np.ndarray, tolerance: float = 1e-6) -> bool:
        """True if the given axes are this grid's centres."""
        lat_axis = np.asarray(lat_axis, dtype=np.float64)
        lon_axis = np.asarray(lon_axis, dtype=np.float64)
        return (lat_axis.shape == self.latitude_coordinates.shape
                and lon_axis.shape == self.longitude_coordinates.shape
                and np.allclose(lat_axis, self.latitude_coordinates, rtol=0.0, atol=tolerance)
                and np.allclose(lon_axis, self.longitude_coordinates, rtol=0.0, atol=tolerance))

    def get_grid_info(self) -> Dict[str, Any]:
        """
        Get comprehensive grid information.

        Returns:
            Dictionary with grid properties
        """
        return {
            'num_latitude_points': self.num_latitude_points,
            'num_longitude_points': self.num_longitude_points,
            'latitude_range': [float(self.latitude_coordinates[0]), float(self.latitude_coordinates[-1])],
            'longitude_range': [float(self.longitude_coordinates[0]), float(self.longitude_coordinates[-1])],
            'latitude_descending': self.latitude_descending,
        }

    def __eq__(self, other) -> bool:
        if not isinstance(other, CoordinateGrid):
            return NotImplemented
        return self.to_griddes() == other.to_griddes()

    def __hash__(self) -> int:
        return hash(self.to_griddes())

    def __repr__(self) -> str:
        return f"CoordinateGrid(lat={self.num_latitude_points}, lon={self.num_longitude_points})"


def grid_pair_hash(source: CoordinateGrid, target: CoordinateGrid) -> str:
    """SHA-256 key of a (source, target) grid pair."""
    canonical = "source\n" + source.to_griddes() + "target\n" + target.to_griddes()
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class StandardGrids:
    """
    Factory class for the grids of the forcing workflow.
    """

    @staticmethod
    def create_era5_quarter_degree() -> CoordinateGrid:
        """
        ERA5 native global grid: latitude 90..-90 and longitude 0..359.75
        at 0.25°, 721 × 1440 points.
        """
        lat = 90.0 - 0.25 * np.arange(721)
        lon = 0.25 * np.arange(1440)
        return CoordinateGrid(lat, lon)

    @staticmethod
    def create_isimip_half_degree() -> CoordinateGrid:
        """
        ISIMIP global output grid: latitude 89.75..-89.75 and longitude
        -179.75..179.75 at 0.5°, 360 × 720 points.
        """
        return CoordinateGrid.from_resolution(0.5, [-89.75, -179.75, 89.75, 179.75], latitude_descending=True)


def _regular_axis(first: float, last: float, step: float) -> np.ndarray:
    count = int(round((last - first) / step)) + 1
    return first + step * np.arange(count)


def _axis_edges(centres: np.ndarray, clip: Optional[float] = None) -> np.ndarray:
    """Cell edges between centres, extended half a spacing at both ends."""
    midpoints = 0.5 * (centres[:-1] + centres[1:])
    first = centres[0] - 0.5 * (centres[1] - centres[0])
    last = centres[-1] + 0.5 * (centres[-1] - centres[-2])
    edges = np.concatenate([[first], midpoints, [last]])
    if clip is not None:
        edges = np.clip(edges, -clip, clip)
    return edges


def _parse_griddes(text: str) -> Dict[str, str]:
    """Key/value entries of a griddes text; list values continue on following lines."""
    entries: Dict[str, str] = {}
    current_key = None
    for raw_line in text.splitlines():
        line = raw_line.split('#', 1)[0].strip()
        if not line:
            continue
        if '=' in line:
            key, value = line.split('=', 1)
            current_key = key.strip().lower()
            entries[current_key] = value.strip()
        elif current_key in ('xvals', 'yvals'):
            entries[current_key] += ' ' + line
    return entries


def _griddes_axis(entries: Dict[str, str], prefix: str, size: int) -> np.ndarray:
    values_key = f'{prefix}vals'
    if values_key in entries:
        values = np.array([float(v) for v in entries[values_key].split()])
        if len(values) != size:
            raise ValueError(f"{values_key} has {len(values)} values, expected {size}")
        return values
    first = float(entries[f'{prefix}first'])
    increment = float(entries[f'{prefix}inc'])
    return first + increment * np.arange(size)


def _griddes_axis_lines(prefix: str, values: np.ndarray) -> List[str]:
    rounded = np.round(values, GRIDDES_PRECISION)
    steps = np.round(np.diff(rounded), GRIDDES_PRECISION)
    if np.allclose(steps, steps[0], rtol=0.0, atol=10.0 ** -GRIDDES_PRECISION):
        return [
            f"{prefix}first   = {_format_number(rounded[0])}",
            f"{prefix}inc     = {_format_number(steps[0])}",
        ]
    return [f"{prefix}vals    = " + " ".join(_format_number(v) for v in rounded)]


def _format_number(value: float) -> str:
    text = f"{value:.{GRIDDES_PRECISION}f}".rstrip('0').rstrip('.')
    return "0" if text in ("-0", "") else text
