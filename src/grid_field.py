"""
Gridded Field Container for ERA5 Forcing Preprocessing

A GridField holds one physical quantity on a time × latitude × longitude
domain together with the metadata needed to write it out again. Every stage
of the pipeline consumes GridFields and produces new ones; no stage mutates
its inputs.

Missing data:
Files mark missing cells with a sentinel (``missing_value``, 1e20 for the
forcing output). In memory, values are kept as floating point and missing
cells are represented either by the sentinel or by NaN; ``masked_values``
returns a float64 copy where both are NaN so reductions never see the
sentinel.
"""

from dataclasses import dataclass, field, replace as dataclass_replace
from typing import Any, Dict, Optional, Tuple

import numpy as np

from logging_utils import AxisMismatchError, DataProcessingError


DEFAULT_MISSING_VALUE = 1e20

# Coordinate centres read from float32 files differ from float64 ones
COORDINATE_TOLERANCE = 1e-6


@dataclass
class GridField:
    """
    One physical quantity over a rectangular time/space domain.

    Attributes:
        variable_id: Canonical short name, selects the processing policy
        values: Array with shape (time, lat, lon)
        time_axis: Strictly increasing datetime64[ns] timestamps
        lat_axis: Latitude cell centres in degrees north
        lon_axis: Longitude cell centres in degrees east
        units: Units string of ``values``
        standard_name: CF standard name
        long_name: Human-readable name
        missing_value: Sentinel for missing cells
        attributes: Remaining variable attributes carried from the source
        global_attributes: File-level attributes carried from the source
        axis_names: Names of the (time, lat, lon) axes in the source file
        axis_attributes: Attributes of each axis, keyed by 'time', 'lat', 'lon'
    """
    variable_id: str
    values: np.ndarray
    time_axis: np.ndarray
    lat_axis: np.ndarray
    lon_axis: np.ndarray
    units: str = ''
    standard_name: str = ''
    long_name: str = ''
    missing_value: float = DEFAULT_MISSING_VALUE
    attributes: Dict[str, Any] = field(default_factory=dict)
    global_attributes: Dict[str, Any] = field(default_factory=dict)
    axis_names: Tuple[str, str, str] = ('time', 'lat', 'lon')
    axis_attributes: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        self.values = np.asarray(self.values)
        self.time_axis = np.asarray(self.time_axis, dtype='datetime64[ns]').reshape(-1)
        self.lat_axis = np.asarray(self.lat_axis, dtype=np.float64).reshape(-1)
        self.lon_axis = np.asarray(self.lon_axis, dtype=np.float64).reshape(-1)
        self.axis_names = tuple(self.axis_names)

        expected_shape = (len(self.time_axis), len(self.lat_axis), len(self.lon_axis))
        if self.values.ndim != 3 or self.values.shape != expected_shape:
            raise AxisMismatchError(
                f"{self.variable_id}: values shape {self.values.shape} does not match "
                f"axes (time, lat, lon) = {expected_shape}",
                context={'variable_id': self.variable_id}
            )

        if len(self.time_axis) > 1 and np.any(np.diff(self.time_axis) <= np.timedelta64(0, 'ns')):
            raise AxisMismatchError(
                f"{self.variable_id}: time axis is not strictly increasing",
                context={'variable_id': self.variable_id}
            )

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.values.shape

    def replace(self, **changes) -> 'GridField':
        """Return a new GridField with the given attributes changed."""
        changes.setdefault('attributes', dict(self.attributes))
        changes.setdefault('global_attributes', dict(self.global_attributes))
        changes.setdefault('axis_attributes', {axis: dict(attrs) for axis, attrs in self.axis_attributes.items()})
        return dataclass_replace(self, **changes)

    def missing_mask(self) -> np.ndarray:
        """Boolean array marking missing cells (sentinel or NaN)."""
        values = np.asarray(self.values, dtype=np.float64)
        mask = ~np.isfinite(values)
        if self.missing_value is not None and np.isfinite(self.missing_value):
            mask |= np.isclose(values, self.missing_value, rtol=1e-6, atol=0.0)
        return mask

    def masked_values(self) -> np.ndarray:
        """Float64 copy of the values with every missing cell set to NaN."""
        values = np.array(self.values, dtype=np.float64)
        values[self.missing_mask()] = np.nan
        return values

    def is_colocated(self, other: 'GridField') -> bool:
        """True when both fields share identical time, latitude and longitude axes."""
        return describe_axis_mismatch(self, other) is None

    def time_step(self) -> Optional[np.timedelta64]:
        """
        Uniform spacing of the time axis.

        Returns:
            The step as timedelta64[ns], or None for fewer than two timesteps

        Raises:
            AxisMismatchError: If the spacing is not uniform
        """
        if len(self.time_axis) < 2:
            return None
        steps = np.unique(np.diff(self.time_axis))
        if len(steps) != 1:
            raise AxisMismatchError(
                f"{self.variable_id}: time axis has non-uniform spacing",
                context={'variable_id': self.variable_id, 'steps': [str(s) for s in steps[:5]]}
            )
        return steps[0]

    def select_year(self, year: int) -> 'GridField':
        """
        Subset a multi-year field to one calendar year.

        Args:
            year: Calendar year to keep

        Returns:
            GridField restricted to timesteps within ``year``
        """
        years = self.time_axis.astype('datetime64[Y]').astype(int) + 1970
        selected = years == year
        if not np.any(selected):
            raise DataProcessingError(
                f"{self.variable_id}: no timesteps in year {year}",
                context={'variable_id': self.variable_id, 'year': year}
            )
        return self.replace(values=self.values[selected], time_axis=self.time_axis[selected])

    def period_label(self) -> str:
        """First and last day of the field as 'YYYYMMDD-YYYYMMDD'."""
        days = self.time_axis.astype('datetime64[D]')
        first = str(days[0]).replace('-', '')
        last = str(days[-1]).replace('-', '')
        return f"{first}-{last}"


def describe_axis_mismatch(reference: GridField, other: GridField) -> Optional[str]:
    """Describe the first axis on which two fields differ, or None."""
    if reference.shape != other.shape:
        return f"shape {other.shape} != {reference.shape}"
    if not np.array_equal(reference.time_axis, other.time_axis):
        return "time axes differ"
    if not np.allclose(reference.lat_axis, other.lat_axis, rtol=0.0, atol=COORDINATE_TOLERANCE):
        return "latitude axes differ"
    if not np.allclose(reference.lon_axis, other.lon_axis, rtol=0.0, atol=COORDINATE_TOLERANCE):
        return "longitude axes differ"
    return None


def require_colocated(*fields: GridField) -> None:
    """
    Check that all fields share the axes of the first one.

    Raises:
        AxisMismatchError: Naming the first pair of fields that differ
    """
    reference = fields[0]
    for other in fields[1:]:
        problem = describe_axis_mismatch(reference, other)
        if problem is not None:
            raise AxisMismatchError(
                f"{other.variable_id} is not co-registered with {reference.variable_id}: {problem}",
                context={'reference': reference.variable_id, 'other': other.variable_id}
            )


def concatenate_time(fields) -> GridField:
    """
    Join consecutive GridFields of one variable along the time axis.

    Args:
        fields: Sequence of GridFields in chronological order, on one grid

    Returns:
        GridField spanning all timesteps, carrying the metadata of the first
    """
    fields = list(fields)
    if not fields:
        raise DataProcessingError("No fields to concatenate")
    first = fields[0]
    for other in fields[1:]:
        if other.variable_id != first.variable_id:
            raise AxisMismatchError(
                f"Cannot concatenate {other.variable_id} onto {first.variable_id}",
                context={'reference': first.variable_id, 'other': other.variable_id}
            )
        if (not np.allclose(first.lat_axis, other.lat_axis, rtol=0.0, atol=COORDINATE_TOLERANCE)
                or not np.allclose(first.lon_axis, other.lon_axis, rtol=0.0, atol=COORDINATE_TOLERANCE)):
            raise AxisMismatchError(
                f"{first.variable_id}: blocks lie on different grids",
                context={'variable_id': first.variable_id}
            )
    return first.replace(
        values=np.concatenate([f.values for f in fields], axis=0),
        time_axis=np.concatenate([f.time_axis for f in fields]),
    )
