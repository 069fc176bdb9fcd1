"""
Shared helpers for the forcing preprocessor tests.
"""

import sys
from pathlib import Path

import netCDF4
import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from grid_field import GridField


DEFAULT_LAT = np.array([1.5, 0.5, -0.5, -1.5])
DEFAULT_LON = np.array([0.5, 1.5, 2.5, 3.5])


def hourly_times(start: str = '2021-01-01T00', hours: int = 24, step_hours: int = 1) -> np.ndarray:
    return np.datetime64(start, 'h') + np.arange(0, hours * step_hours, step_hours).astype('timedelta64[h]')


def build_field(variable_id: str, values, times=None, lat=None, lon=None, **kwargs) -> GridField:
    """GridField with small default axes; ``values`` may be a scalar or an array."""
    lat = DEFAULT_LAT if lat is None else np.asarray(lat)
    lon = DEFAULT_LON if lon is None else np.asarray(lon)
    times = hourly_times() if times is None else times
    shape = (len(times), len(lat), len(lon))
    values = np.broadcast_to(np.asarray(values, dtype=np.float64), shape).copy()
    return GridField(variable_id=variable_id, values=values, time_axis=times,
                     lat_axis=lat, lon_axis=lon, **kwargs)


def write_era5_file(path: Path, short_name: str, values: np.ndarray, times: np.ndarray,
                    lat=None, lon=None, units: str = 'K') -> Path:
    """Write a file laid out like a CDS netCDF download (valid_time/latitude/longitude)."""
    lat = DEFAULT_LAT if lat is None else np.asarray(lat)
    lon = DEFAULT_LON if lon is None else np.asarray(lon)
    path.parent.mkdir(parents=True, exist_ok=True)

    with netCDF4.Dataset(path, 'w') as nc_dataset:
        nc_dataset.createDimension('valid_time', len(times))
        nc_dataset.createDimension('latitude', len(lat))
        nc_dataset.createDimension('longitude', len(lon))
        nc_dataset.history = 'grib_to_netcdf'
        nc_dataset.Conventions = 'CF-1.7'

        time_var = nc_dataset.createVariable('valid_time', 'i8', ('valid_time',))
        time_var.units = 'hours since 1900-01-01 00:00:00'
        time_var.calendar = 'gregorian'
        time_var[:] = (times - np.datetime64('1900-01-01T00', 'h')).astype('timedelta64[h]').astype(np.int64)

        lat_var = nc_dataset.createVariable('latitude', 'f8', ('latitude',))
        lat_var.units = 'degrees_north'
        lat_var[:] = lat
        lon_var = nc_dataset.createVariable('longitude', 'f8', ('longitude',))
        lon_var.units = 'degrees_east'
        lon_var[:] = lon

        data_var = nc_dataset.createVariable(short_name, 'f4', ('valid_time', 'latitude', 'longitude'),
                                             fill_value=np.float32(-32767))
        data_var.units = units
        data_var.GRIB_paramId = 167
        data_var.GRIB_shortName = short_name
        data_var[:] = np.broadcast_to(values, (len(times), len(lat), len(lon)))
    return path


@pytest.fixture
def make_field():
    return build_field
