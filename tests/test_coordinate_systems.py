"""
Basic tests for coordinate systems module.

Tests CoordinateGrid construction, CDO grid descriptions and StandardGrids.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.append(str(Path(__file__).parent.parent / "src"))

from coordinate_systems import CoordinateGrid, StandardGrids, grid_pair_hash
from logging_utils import RegridError


ISIMIP_GRIDDES = """
gridtype = lonlat
xsize    = 720
ysize    = 360
xfirst   = -179.75
xinc     = 0.5
yfirst   = 89.75
yinc     = -0.5
"""


def test_era5_grid_shape_and_edges():
    """ERA5 grid runs 90..-90 and 0..359.75 with polar edges clipped"""
    grid = StandardGrids.create_era5_quarter_degree()

    assert grid.shape == (721, 1440)
    assert grid.latitude_descending
    assert grid.latitude_edges[0] == 90.0
    assert grid.latitude_edges[-1] == -90.0
    assert grid.longitude_coordinates[-1] == pytest.approx(359.75)


def test_isimip_grid_matches_griddes():
    grid = StandardGrids.create_isimip_half_degree()

    assert grid.shape == (360, 720)
    assert grid.latitude_coordinates[0] == pytest.approx(89.75)
    assert grid.longitude_coordinates[0] == pytest.approx(-179.75)
    assert grid == CoordinateGrid.from_griddes(ISIMIP_GRIDDES)


def test_griddes_round_trip():
    grid = CoordinateGrid.from_resolution(0.5, [-10.25, 20.25, 10.25, 40.25], latitude_descending=True)

    parsed = CoordinateGrid.from_griddes(grid.to_griddes())

    np.testing.assert_allclose(parsed.latitude_coordinates, grid.latitude_coordinates)
    np.testing.assert_allclose(parsed.longitude_coordinates, grid.longitude_coordinates)
    assert parsed.content_hash() == grid.content_hash()


def test_irregular_axes_written_as_value_lists():
    grid = CoordinateGrid([-10.0, 0.0, 5.0], [0.0, 1.0, 3.0])

    text = grid.to_griddes()

    assert 'yvals' in text and 'xvals' in text
    assert CoordinateGrid.from_griddes(text) == grid


def test_griddes_comments_and_continuation_lines():
    text = """
    # two by three grid
    gridtype = lonlat
    xsize = 3
    ysize = 2
    xvals = 0 1
            2
    yvals = 10 20
    """
    grid = CoordinateGrid.from_griddes(text)

    np.testing.assert_allclose(grid.longitude_coordinates, [0, 1, 2])
    np.testing.assert_allclose(grid.latitude_coordinates, [10, 20])


def test_content_hash_is_stable_and_distinct():
    first = StandardGrids.create_isimip_half_degree()
    second = StandardGrids.create_isimip_half_degree()
    era5 = StandardGrids.create_era5_quarter_degree()

    assert first.content_hash() == second.content_hash()
    assert first.content_hash() != era5.content_hash()
    assert grid_pair_hash(era5, first) != grid_pair_hash(first, era5)


def test_cell_areas_cover_sphere():
    grid = CoordinateGrid.from_resolution(2.0, [-89.0, -179.0, 89.0, 179.0])

    assert grid.cell_areas().sum() == pytest.approx(4 * np.pi, rel=1e-9)


@pytest.mark.parametrize("lat, lon", [
    ([0.0, 0.0, 1.0], [0.0, 1.0]),      # repeated latitude
    ([0.0, 2.0, 1.0], [0.0, 1.0]),      # non-monotonic latitude
    ([0.0, 91.0], [0.0, 1.0]),          # latitude outside ±90
    ([0.0, 1.0], [1.0, 0.0]),           # decreasing longitude
    ([0.0], [0.0, 1.0]),                # single latitude
])
def test_degenerate_geometry_rejected(lat, lon):
    with pytest.raises(RegridError):
        CoordinateGrid(lat, lon)


def test_invalid_griddes_rejected():
    with pytest.raises(RegridError):
        CoordinateGrid.from_griddes("gridtype = gaussian\nxsize = 4\nysize = 2\n")
    with pytest.raises(RegridError):
        CoordinateGrid.from_griddes("gridtype = lonlat\nxsize = 4\n")


def test_invalid_bounds_rejected():
    with pytest.raises(RegridError):
        CoordinateGrid.from_resolution(0.5, [10, 0, -10, 20])
    with pytest.raises(RegridError):
        CoordinateGrid.from_resolution(0.5, [0, 0, 10])


def test_grid_info():
    grid_info = StandardGrids.create_isimip_half_degree().get_grid_info()

    assert grid_info['num_latitude_points'] == 360
    assert grid_info['num_longitude_points'] == 720
    assert grid_info['latitude_range'] == [pytest.approx(89.75), pytest.approx(-89.75)]
