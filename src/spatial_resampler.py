"""
First-order Conservative Spatial Resampling

This module remaps GridFields between rectilinear latitude/longitude grids
with first-order conservative weights, equivalent to ``cdo remapcon`` with
fraction-area normalization.

Scientific Context:
On a rectilinear grid the overlap area of a source and a target cell
factorizes into a latitude part, the overlap of the two bands in sin(φ), and
a longitude part, the overlap of the two cells in degrees taken modulo 360.
The remap therefore reduces to two sparse matrices ``Wlat`` and ``Wlon`` and

    out = (Wlat · (x·m) · Wlonᵀ) / (Wlat · m · Wlonᵀ)

with ``m`` the mask of valid source cells. Each target cell is the area
weighted mean of the valid source cells it overlaps; target cells without
any valid overlap are missing.

Weights depend only on the grid pair. They are keyed by the SHA-256 of the
two canonical grid descriptions, cached in memory and optionally on disk as
``remapweights_<hash>.nc``, and regenerated when a stored file belongs to a
different grid pair.
"""

import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import netCDF4
import numpy as np
from scipy import sparse

from coordinate_systems import CoordinateGrid, grid_pair_hash
from grid_field import GridField
from logging_utils import RegridError, StaleWeightsError, get_component_logger


WEIGHTS_FILE_PREFIX = 'remapweights_'

# Longitude shifts covering every periodic overlap of two cells within 360°
_LONGITUDE_SHIFTS = (-360.0, 0.0, 360.0)

# Overlaps below this are rounding residue of coinciding edges
OVERLAP_TOLERANCE = 1e-10


@dataclass
class RemapWeights:
    """
    Separable conservative weights of one grid pair.

    Attributes:
        grid_hash: Key of the (source, target) pair
        lat_weights: Sparse (target_lat, source_lat) band overlaps in sin(φ)
        lon_weights: Sparse (target_lon, source_lon) overlaps in degrees
    """
    grid_hash: str
    lat_weights: sparse.csr_matrix
    lon_weights: sparse.csr_matrix

    @property
    def source_shape(self):
        return (self.lat_weights.shape[1], self.lon_weights.shape[1])

    @property
    def target_shape(self):
        return (self.lat_weights.shape[0], self.lon_weights.shape[0])


def _interval_overlap(target_low: np.ndarray, target_high: np.ndarray,
                      source_low: np.ndarray, source_high: np.ndarray) -> np.ndarray:
    """Length of the overlap of every target interval with every source interval."""
    low = np.maximum(target_low[:, np.newaxis], source_low[np.newaxis, :])
    high = np.minimum(target_high[:, np.newaxis], source_high[np.newaxis, :])
    overlap = np.clip(high - low, 0.0, None)
    overlap[overlap < OVERLAP_TOLERANCE] = 0.0
    return overlap


def latitude_overlap_weights(source: CoordinateGrid, target: CoordinateGrid) -> sparse.csr_matrix:
    """Overlap of target and source latitude bands, measured in sin(latitude)."""
    source_edges = np.sin(np.deg2rad(source.latitude_edges))
    target_edges = np.sin(np.deg2rad(target.latitude_edges))

    overlap = _interval_overlap(
        np.minimum(target_edges[:-1], target_edges[1:]), np.maximum(target_edges[:-1], target_edges[1:]),
        np.minimum(source_edges[:-1], source_edges[1:]), np.maximum(source_edges[:-1], source_edges[1:]),
    )
    return sparse.csr_matrix(overlap)


def longitude_overlap_weights(source: CoordinateGrid, target: CoordinateGrid) -> sparse.csr_matrix:
    """Periodic overlap of target and source longitude cells, in degrees."""
    source_low = source.longitude_edges[:-1]
    source_high = source.longitude_edges[1:]
    target_low = target.longitude_edges[:-1]
    target_high = target.longitude_edges[1:]

    overlap = sum(
        _interval_overlap(target_low, target_high, source_low + shift, source_high + shift)
        for shift in _LONGITUDE_SHIFTS
    )
    return sparse.csr_matrix(overlap)


def generate_remap_weights(source: CoordinateGrid, target: CoordinateGrid) -> RemapWeights:
    """
    Compute conservative weights for a grid pair.

    Raises:
        RegridError: If no source cell overlaps any target cell
    """
    lat_weights = latitude_overlap_weights(source, target)
    lon_weights = longitude_overlap_weights(source, target)

    if lat_weights.nnz == 0 or lon_weights.nnz == 0:
        raise RegridError(
            "Source and target grids do not overlap",
            context={'source': source.get_grid_info(), 'target': target.get_grid_info()}
        )

    return RemapWeights(
        grid_hash=grid_pair_hash(source, target),
        lat_weights=lat_weights,
        lon_weights=lon_weights,
    )


def write_weights_file(weights: RemapWeights, path: Union[str, Path],
                       source: CoordinateGrid, target: CoordinateGrid) -> None:
    """
    Store weights as COO arrays in a netCDF file.

    The file is written to a temporary name in the same directory and moved
    into place with an atomic rename.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    handle, temp_name = tempfile.mkstemp(prefix=path.stem + '.', suffix='.tmp', dir=path.parent)
    os.close(handle)
    try:
        with netCDF4.Dataset(temp_name, 'w', format='NETCDF4') as nc_dataset:
            nc_dataset.grid_hash = weights.grid_hash
            nc_dataset.source_griddes = source.to_griddes()
            nc_dataset.target_griddes = target.to_griddes()
            nc_dataset.title = 'First-order conservative remap weights'
            nc_dataset.created = time.strftime('%Y-%m-%dT%H:%M:%S')

            for axis, matrix in (('lat', weights.lat_weights), ('lon', weights.lon_weights)):
                coo = matrix.tocoo()
                nc_dataset.createDimension(f'{axis}_links', coo.nnz)
                nc_dataset.setncattr(f'{axis}_shape', np.array(coo.shape, dtype=np.int32))
                rows = nc_dataset.createVariable(f'{axis}_dst_index', 'i4', (f'{axis}_links',))
                cols = nc_dataset.createVariable(f'{axis}_src_index', 'i4', (f'{axis}_links',))
                values = nc_dataset.createVariable(f'{axis}_weight', 'f8', (f'{axis}_links',))
                rows[:] = coo.row
                cols[:] = coo.col
                values[:] = coo.data
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.remove(temp_name)
        raise


def read_weights_file(path: Union[str, Path], expected_hash: str) -> RemapWeights:
    """
    Load weights stored by ``write_weights_file``.

    Raises:
        StaleWeightsError: If the stored grid hash differs from ``expected_hash``
    """
    with netCDF4.Dataset(str(path), 'r') as nc_dataset:
        stored_hash = getattr(nc_dataset, 'grid_hash', None)
        if stored_hash != expected_hash:
            raise StaleWeightsError(
                f"Weights file {path} was generated for a different grid pair",
                context={'path': str(path), 'stored_hash': stored_hash, 'expected_hash': expected_hash}
            )

        matrices = {}
        for axis in ('lat', 'lon'):
            shape = tuple(int(n) for n in nc_dataset.getncattr(f'{axis}_shape'))
            rows = np.asarray(nc_dataset.variables[f'{axis}_dst_index'][:], dtype=np.int64)
            cols = np.asarray(nc_dataset.variables[f'{axis}_src_index'][:], dtype=np.int64)
            values = np.asarray(nc_dataset.variables[f'{axis}_weight'][:], dtype=np.float64)
            matrices[axis] = sparse.coo_matrix((values, (rows, cols)), shape=shape).tocsr()

    return RemapWeights(grid_hash=stored_hash, lat_weights=matrices['lat'], lon_weights=matrices['lon'])


class WeightsCache:
    """
    In-memory and optional on-disk cache of remap weights.

    Generation for one grid pair is serialized by a per-key lock inside the
    process; across processes the atomic rename in ``write_weights_file``
    ensures readers only ever see complete files.
    """

    _registry_lock = threading.Lock()
    _key_locks: Dict[str, threading.Lock] = {}

    def __init__(self, weights_dir: Optional[Union[str, Path]] = None,
                 weights_file: Optional[Union[str, Path]] = None):
        """
        Args:
            weights_dir: Directory for ``remapweights_<hash>.nc`` files; None
                keeps weights in memory only
            weights_file: Fixed weights file path, used instead of the
                hash-named file in ``weights_dir``
        """
        self.weights_dir = Path(weights_dir) if weights_dir else None
        self.weights_file = Path(weights_file) if weights_file else None
        self._memory: Dict[str, RemapWeights] = {}
        self.generated_count = 0
        self.logger = get_component_logger(self.__class__.__name__)

    def path_for(self, grid_hash: str) -> Optional[Path]:
        if self.weights_file is not None:
            return self.weights_file
        if self.weights_dir is not None:
            return self.weights_dir / f"{WEIGHTS_FILE_PREFIX}{grid_hash}.nc"
        return None

    @classmethod
    def _lock_for(cls, grid_hash: str) -> threading.Lock:
        with cls._registry_lock:
            return cls._key_locks.setdefault(grid_hash, threading.Lock())

    def get_weights(self, source: CoordinateGrid, target: CoordinateGrid) -> RemapWeights:
        """
        Weights for a grid pair, generating and storing them when absent or stale.
        """
        grid_hash = grid_pair_hash(source, target)

        cached = self._memory.get(grid_hash)
        if cached is not None:
            return cached

        with self._lock_for(grid_hash):
            cached = self._memory.get(grid_hash)
            if cached is not None:
                return cached

            weights = self._load_from_disk(grid_hash)
            if weights is None:
                self.logger.info(f"Generating remap weights {grid_hash[:12]} for {source!r} -> {target!r}")
                weights = generate_remap_weights(source, target)
                self.generated_count += 1
                path = self.path_for(grid_hash)
                if path is not None:
                    write_weights_file(weights, path, source, target)
                    self.logger.info(f"Stored remap weights: {path}")

            self._memory[grid_hash] = weights
            return weights

    def _load_from_disk(self, grid_hash: str) -> Optional[RemapWeights]:
        path = self.path_for(grid_hash)
        if path is None or not path.exists():
            return None
        try:
            weights = read_weights_file(path, grid_hash)
        except StaleWeightsError as e:
            self.logger.warning(f"{e}; regenerating")
            return None
        self.logger.debug(f"Loaded remap weights from {path}")
        return weights


class SpatialResampler:
    """
    Conservative remap of GridFields onto a fixed target grid.
    """

    def __init__(self, target_grid: CoordinateGrid, weights_cache: Optional[WeightsCache] = None):
        self.target_grid = target_grid
        self.weights_cache = weights_cache or WeightsCache()
        self.logger = get_component_logger(self.__class__.__name__)

    def resample(self, field: GridField) -> GridField:
        """
        Remap a field onto the target grid.

        The source grid is inferred from the field's latitude and longitude
        axes. Time axis and metadata are preserved; values are float32 with
        missing target cells set to NaN.

        Args:
            field: GridField on a rectilinear grid

        Returns:
            GridField on the target grid

        Raises:
            RegridError: If the source geometry is degenerate or does not
                overlap the target grid
        """
        source_grid = CoordinateGrid.from_axes(field.lat_axis, field.lon_axis)
        weights = self.weights_cache.get_weights(source_grid, self.target_grid)

        values = field.masked_values()
        valid = np.isfinite(values)
        numerator = apply_separable_weights(weights, np.where(valid, values, 0.0))
        denominator = apply_separable_weights(weights, valid.astype(np.float64))

        with np.errstate(divide='ignore', invalid='ignore'):
            remapped = np.where(denominator > 0, numerator / denominator, np.nan)

        self.logger.debug(
            f"{field.variable_id}: remapped {field.shape} -> {remapped.shape}"
        )
        return field.replace(
            values=remapped.astype(np.float32),
            lat_axis=self.target_grid.latitude_coordinates.copy(),
            lon_axis=self.target_grid.longitude_coordinates.copy(),
        )


def apply_separable_weights(weights: RemapWeights, values: np.ndarray) -> np.ndarray:
    """
    Compute ``Wlat · values[t] · Wlonᵀ`` for every timestep.

    Args:
        weights: Remap weights
        values: Array of shape (time, source_lat, source_lon) without NaN

    Returns:
        Array of shape (time, target_lat, target_lon)
    """
    n_time = values.shape[0]
    n_src_lat, n_src_lon = weights.source_shape
    n_dst_lat, n_dst_lon = weights.target_shape

    if values.shape[1:] != (n_src_lat, n_src_lon):
        raise RegridError(
            f"Field shape {values.shape[1:]} does not match weights source shape {(n_src_lat, n_src_lon)}"
        )

    # latitude: (src_lat, time*src_lon) -> (dst_lat, time*src_lon)
    by_lat = np.transpose(values, (1, 0, 2)).reshape(n_src_lat, n_time * n_src_lon)
    by_lat = weights.lat_weights @ by_lat
    by_lat = by_lat.reshape(n_dst_lat, n_time, n_src_lon)

    # longitude: (src_lon, dst_lat*time) -> (dst_lon, dst_lat*time)
    by_lon = np.transpose(by_lat, (2, 0, 1)).reshape(n_src_lon, n_dst_lat * n_time)
    by_lon = weights.lon_weights @ by_lon
    by_lon = by_lon.reshape(n_dst_lon, n_dst_lat, n_time)

    return np.transpose(by_lon, (2, 1, 0))
