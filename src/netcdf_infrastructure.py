"""
NetCDF Infrastructure for ERA5 Forcing Preprocessing

This module reads ERA5 and intermediate forcing files into GridFields and
writes GridFields back out in the forcing file convention.

Reading goes through xarray, which opens files lazily and decodes CF time,
scale/offset packing and fill values, so a full hourly global year can be
processed in day-aligned blocks without loading it at once. Writing goes
through netCDF4 to control the exact on-disk layout: float32 data with a 1e20
fill value, zlib compression and a ``days since`` time axis.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import netCDF4
import numpy as np
import xarray as xr

from coordinate_systems import CoordinateGrid
from forcing_variables import COORDINATE_ALIASES, get_variable_alternatives
from grid_field import DEFAULT_MISSING_VALUE, GridField
from logging_utils import AxisMismatchError, NetCDFError, get_component_logger


DEFAULT_TIME_UNITS = 'days since 1900-01-01 00:00:00'
DEFAULT_CALENDAR = 'proleptic_gregorian'
DEFAULT_COMPRESSION_LEVEL = 5

# Attributes owned by the encoding, not carried as metadata
_ENCODING_ATTRIBUTES = ('_FillValue', 'missing_value', 'scale_factor', 'add_offset',
                        'units', 'calendar', 'standard_name', 'long_name')

_AXIS_DEFAULTS = {
    'time': {'standard_name': 'time', 'axis': 'T'},
    'lat': {'standard_name': 'latitude', 'units': 'degrees_north', 'axis': 'Y'},
    'lon': {'standard_name': 'longitude', 'units': 'degrees_east', 'axis': 'X'},
}


class ForcingNetCDFReader:
    """
    Read forcing variables from netCDF files into GridFields.

    Variables are located under their canonical id or any ERA5 alias, and
    axes under any of their known names (e.g. ``valid_time``/``time``).
    """

    def __init__(self):
        self.logger = get_component_logger(self.__class__.__name__)

    def open_dataset(self, path: Union[str, Path]) -> xr.Dataset:
        """Open a file lazily with CF decoding."""
        path = Path(path)
        if not path.exists():
            raise NetCDFError(f"Input file not found: {path}", context={'path': str(path)})
        try:
            return xr.open_dataset(path, mask_and_scale=True, decode_times=True)
        except (OSError, ValueError) as e:
            raise NetCDFError(f"Cannot open {path}: {e}", context={'path': str(path)}) from e

    def find_data_variable(self, dataset: xr.Dataset, variable_id: str) -> str:
        """
        Name of the data variable holding ``variable_id`` in a dataset.

        Falls back to the only three-dimensional data variable when none of
        the known names is present.
        """
        for name in get_variable_alternatives(variable_id):
            if name in dataset.data_vars:
                return name

        gridded = [name for name, var in dataset.data_vars.items() if var.ndim >= 3]
        if len(gridded) == 1:
            self.logger.debug(f"Using '{gridded[0]}' as {variable_id}")
            return gridded[0]

        raise NetCDFError(
            f"Variable '{variable_id}' not found",
            context={'variable_id': variable_id, 'available': list(dataset.data_vars)}
        )

    @staticmethod
    def find_axis_name(dataset: Union[xr.Dataset, xr.DataArray], axis: str) -> str:
        """Name under which a dataset carries the 'time', 'lat' or 'lon' axis."""
        for name in COORDINATE_ALIASES[axis]:
            if name in dataset.dims or name in dataset.coords:
                return name
        raise NetCDFError(
            f"No {axis} axis found",
            context={'axis': axis, 'candidates': list(COORDINATE_ALIASES[axis]), 'dims': list(dataset.dims)}
        )

    def read_field(self, path: Union[str, Path], variable_id: str) -> GridField:
        """
        Read a whole variable as one GridField.

        Args:
            path: netCDF file path
            variable_id: Canonical variable id

        Returns:
            GridField with missing cells as NaN
        """
        with self.open_dataset(path) as dataset:
            return self._to_field(dataset, variable_id, time_index=None)

    def iter_day_blocks(self, path: Union[str, Path], variable_id: str,
                        chunk_days: int = 31) -> Iterator[GridField]:
        """
        Yield a variable in blocks of whole calendar days.

        Only the current block is loaded into memory. Block boundaries fall
        on calendar-day boundaries so that every block can be aggregated
        independently.

        Args:
            path: netCDF file path
            variable_id: Canonical variable id
            chunk_days: Number of calendar days per block
        """
        if chunk_days < 1:
            raise ValueError(f"chunk_days must be positive, got {chunk_days}")

        with self.open_dataset(path) as dataset:
            time_name = self.find_axis_name(dataset, 'time')
            times = np.asarray(dataset[time_name].values, dtype='datetime64[ns]')
            _, day_starts = np.unique(times.astype('datetime64[D]'), return_index=True)
            block_starts = list(day_starts[::chunk_days]) + [len(times)]

            for start, stop in zip(block_starts[:-1], block_starts[1:]):
                yield self._to_field(dataset, variable_id, time_index=slice(int(start), int(stop)))

    def read_grid(self, path: Union[str, Path]) -> CoordinateGrid:
        """Grid of the first gridded variable in a file."""
        with self.open_dataset(path) as dataset:
            lat = dataset[self.find_axis_name(dataset, 'lat')].values
            lon = dataset[self.find_axis_name(dataset, 'lon')].values
        return CoordinateGrid.from_axes(lat, lon)

    def _to_field(self, dataset: xr.Dataset, variable_id: str, time_index: Optional[slice]) -> GridField:
        name = self.find_data_variable(dataset, variable_id)
        data_array = dataset[name]

        time_name = self.find_axis_name(data_array, 'time')
        lat_name = self.find_axis_name(data_array, 'lat')
        lon_name = self.find_axis_name(data_array, 'lon')

        # CDS files may carry singleton dimensions such as expver or number
        extra_dims = [dim for dim in data_array.dims if dim not in (time_name, lat_name, lon_name)]
        for dim in extra_dims:
            if data_array.sizes[dim] != 1:
                raise NetCDFError(
                    f"Variable '{name}' has non-singleton dimension '{dim}'",
                    context={'variable': name, 'dims': list(data_array.dims)}
                )
        data_array = data_array.squeeze(extra_dims, drop=True) if extra_dims else data_array
        data_array = data_array.transpose(time_name, lat_name, lon_name)

        if time_index is not None:
            data_array = data_array.isel({time_name: time_index})

        attributes = dict(data_array.attrs)
        axis_attributes = {
            axis: dict(dataset[axis_name].attrs) if axis_name in dataset.variables else {}
            for axis, axis_name in (('time', time_name), ('lat', lat_name), ('lon', lon_name))
        }
        time_calendar = dataset[time_name].encoding.get('calendar')
        if time_calendar:
            axis_attributes['time']['calendar'] = time_calendar

        return GridField(
            variable_id=variable_id,
            values=np.asarray(data_array.values, dtype=np.float32),
            time_axis=np.asarray(data_array[time_name].values, dtype='datetime64[ns]'),
            lat_axis=np.asarray(data_array[lat_name].values),
            lon_axis=np.asarray(data_array[lon_name].values),
            units=str(attributes.get('units', '')),
            standard_name=str(attributes.get('standard_name', '')),
            long_name=str(attributes.get('long_name', '')),
            missing_value=DEFAULT_MISSING_VALUE,
            attributes={k: v for k, v in attributes.items() if k not in _ENCODING_ATTRIBUTES},
            global_attributes=dict(dataset.attrs),
            axis_names=(time_name, lat_name, lon_name),
            axis_attributes=axis_attributes,
        )


class ForcingNetCDFWriter:
    """
    Write GridFields as compressed float32 netCDF files.

    Files are written to a temporary name in the destination directory and
    renamed into place, so a failed write never leaves a partial output.
    """

    def __init__(self, compression_level: int = DEFAULT_COMPRESSION_LEVEL,
                 time_units: str = DEFAULT_TIME_UNITS,
                 calendar: str = DEFAULT_CALENDAR,
                 fill_value: float = DEFAULT_MISSING_VALUE):
        """
        Args:
            compression_level: zlib level, 0 disables compression
            time_units: CF units of the written time axis
            calendar: Default calendar when the field does not carry one
            fill_value: Value written for missing cells
        """
        self.compression_level = compression_level
        self.time_units = time_units
        self.calendar = calendar
        self.fill_value = fill_value
        self.logger = get_component_logger(self.__class__.__name__)

    def write_field(self, field: GridField, path: Union[str, Path]) -> Path:
        """
        Write one GridField to ``path``.

        Returns:
            The written path
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        handle, temp_name = tempfile.mkstemp(prefix=path.stem + '.', suffix='.tmp', dir=path.parent)
        os.close(handle)
        try:
            with netCDF4.Dataset(temp_name, 'w', format='NETCDF4') as nc_dataset:
                self._create_axes(nc_dataset, field)
                self._create_data_variable(nc_dataset, field)
                self._add_global_attributes(nc_dataset, field.global_attributes)
            os.replace(temp_name, path)
        except (OSError, RuntimeError, ValueError) as e:
            if os.path.exists(temp_name):
                os.remove(temp_name)
            raise NetCDFError(f"Failed to write {path}: {e}", context={'path': str(path)}) from e

        self.logger.debug(f"Wrote {field.variable_id} {field.shape} to {path}")
        return path

    def append_field(self, field: GridField, path: Union[str, Path]) -> Path:
        """
        Append the timesteps of ``field`` to a file created by ``write_field``.

        The appended timesteps must follow the last one already in the file
        and lie on the same latitude/longitude axes.

        Returns:
            The appended path
        """
        path = Path(path)
        time_name, lat_name, lon_name = field.axis_names

        try:
            with netCDF4.Dataset(path, 'a') as nc_dataset:
                time_var = nc_dataset.variables[time_name]
                data_var = nc_dataset.variables[field.variable_id]

                if (len(nc_dataset.dimensions[lat_name]) != len(field.lat_axis)
                        or len(nc_dataset.dimensions[lon_name]) != len(field.lon_axis)):
                    raise AxisMismatchError(
                        f"Cannot append {field.variable_id} {field.shape} to {path}: spatial axes differ",
                        context={'path': str(path)}
                    )

                new_times = netCDF4.date2num(
                    field.time_axis.astype('datetime64[us]').tolist(), time_var.units, time_var.calendar
                )
                start = len(time_var)
                if start and new_times[0] <= time_var[start - 1]:
                    raise AxisMismatchError(
                        f"Cannot append {field.variable_id} to {path}: timesteps do not follow the file",
                        context={'path': str(path)}
                    )

                values = field.masked_values()
                values[np.isnan(values)] = self.fill_value
                time_var[start:start + len(new_times)] = new_times
                data_var[start:start + len(new_times)] = values.astype(np.float32)
        except (OSError, RuntimeError, KeyError) as e:
            raise NetCDFError(f"Failed to append to {path}: {e}", context={'path': str(path)}) from e

        self.logger.debug(f"Appended {field.variable_id} {field.shape} to {path}")
        return path

    def _create_axes(self, nc_dataset: netCDF4.Dataset, field: GridField) -> None:
        time_name, lat_name, lon_name = field.axis_names

        nc_dataset.createDimension(time_name, None)
        nc_dataset.createDimension(lat_name, len(field.lat_axis))
        nc_dataset.createDimension(lon_name, len(field.lon_axis))

        time_attributes = dict(field.axis_attributes.get('time', {}))
        calendar = time_attributes.pop('calendar', self.calendar)
        time_attributes.pop('units', None)

        time_var = nc_dataset.createVariable(time_name, 'f8', (time_name,))
        time_var[:] = netCDF4.date2num(
            field.time_axis.astype('datetime64[us]').tolist(), self.time_units, calendar
        )
        time_var.units = self.time_units
        time_var.calendar = calendar
        _set_attributes(time_var, {**_AXIS_DEFAULTS['time'], **time_attributes})

        for axis, name, values in (('lat', lat_name, field.lat_axis), ('lon', lon_name, field.lon_axis)):
            axis_var = nc_dataset.createVariable(name, 'f8', (name,))
            axis_var[:] = values
            _set_attributes(axis_var, {**_AXIS_DEFAULTS[axis], **field.axis_attributes.get(axis, {})})

    def _create_data_variable(self, nc_dataset: netCDF4.Dataset, field: GridField) -> None:
        compression = {'zlib': True, 'complevel': self.compression_level} if self.compression_level > 0 else {}
        data_var = nc_dataset.createVariable(
            field.variable_id, 'f4', field.axis_names,
            fill_value=np.float32(self.fill_value), **compression
        )

        values = field.masked_values()
        values[np.isnan(values)] = self.fill_value
        data_var[:] = values.astype(np.float32)

        data_var.missing_value = np.float32(self.fill_value)
        for name in ('standard_name', 'long_name', 'units'):
            value = getattr(field, name)
            if value:
                data_var.setncattr(name, value)
        _set_attributes(data_var, field.attributes)

    def _add_global_attributes(self, nc_dataset: netCDF4.Dataset, attributes: Dict[str, Any]) -> None:
        for name, value in attributes.items():
            if value is None:
                continue
            nc_dataset.setncattr(name, value)


def _set_attributes(variable: netCDF4.Variable, attributes: Dict[str, Any]) -> None:
    for name, value in attributes.items():
        if name in ('_FillValue', 'missing_value') or value is None:
            continue
        variable.setncattr(name, value if not isinstance(value, bool) else int(value))


def write_griddes(grid: CoordinateGrid, path: Union[str, Path]) -> Path:
    """Write a grid's CDO description to a text file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(grid.to_griddes())
    return path


def list_netcdf_files(directory: Union[str, Path], pattern: str = '*.nc') -> List[Path]:
    """Sorted netCDF files in a directory matching a glob pattern."""
    return sorted(Path(directory).glob(pattern))
