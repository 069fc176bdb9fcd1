"""
Tests for the command-line interface.
"""

import json

import numpy as np
import pytest

from conftest import build_field, hourly_times, write_era5_file

from config_manager import ENVIRONMENT_MAPPINGS
from coordinate_systems import CoordinateGrid, StandardGrids
from forcing_cli import build_cli_overrides, create_parser, main
from forcing_processor import raw_input_path, regridded_output_path
from netcdf_infrastructure import ForcingNetCDFReader, ForcingNetCDFWriter


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ENVIRONMENT_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def target_griddes(tmp_path):
    path = tmp_path / 'target.txt'
    path.write_text(CoordinateGrid.from_resolution(2.0, [-1.0, 1.0, 1.0, 3.0], latitude_descending=True).to_griddes())
    return path


def test_global_options_become_overrides():
    args = create_parser().parse_args([
        '--data-root', '/data', '--max-workers', '3', '--day-policy', 'drop',
        'run', '--years', '2021', '--griddes', 'grid.txt',
    ])

    overrides = build_cli_overrides(args)

    assert overrides == {
        'paths': {'data_root': '/data'},
        'processing': {'max_workers': 3, 'incomplete_day_policy': 'drop'},
        'target_grid': {'griddes_file': 'grid.txt'},
    }


def test_no_command_prints_help():
    assert main([]) == 1


def test_list_variables(capsys):
    assert main(['list-variables']) == 0

    output = capsys.readouterr().out
    assert 'tasrange' in output
    assert 'total_precipitation' in output


def test_write_griddes(tmp_path):
    output = tmp_path / 'isimip.txt'

    assert main(['write-griddes', str(output)]) == 0
    assert CoordinateGrid.from_griddes_file(output) == StandardGrids.create_isimip_half_degree()


def test_run_command(tmp_path, target_griddes):
    data_root = tmp_path / 'ERA5'
    write_era5_file(raw_input_path(data_root / 'raw', 2021, 'total_precipitation'), 'tp', 0.0036,
                    hourly_times(hours=24), units='m')
    summary_path = tmp_path / 'summary.json'

    exit_code = main([
        '--data-root', str(data_root), '--log-level', 'WARNING',
        'run', '--years', '2021', '--variables', 'pr',
        '--griddes', str(target_griddes), '--summary', str(summary_path),
    ])

    assert exit_code == 0
    assert json.loads(summary_path.read_text())['successful_units'] == 1
    assert regridded_output_path(data_root / 'daily_0p5deg', 2021, 'pr').exists()


def test_run_command_reports_failures(tmp_path, target_griddes):
    exit_code = main([
        '--data-root', str(tmp_path / 'empty'), '--log-level', 'WARNING',
        'run', '--years', '2021', '--variables', 'tas',
        '--griddes', str(target_griddes), '--summary', str(tmp_path / 'summary.json'),
    ])

    assert exit_code == 1


def test_daily_command(tmp_path):
    raw = write_era5_file(tmp_path / 't2m.nc', 't2m', 290.0, hourly_times(hours=48))
    output = tmp_path / 'tas_day.nc'

    assert main(['--log-level', 'WARNING', 'daily', str(raw), '--variable', 'tas', '--output', str(output)]) == 0
    assert ForcingNetCDFReader().read_field(output, 'tas').shape == (2, 4, 4)


def test_daily_command_incomplete_day_fails(tmp_path, capsys):
    raw = write_era5_file(tmp_path / 't2m.nc', 't2m', 290.0, hourly_times(hours=30))

    exit_code = main(['--log-level', 'WARNING', 'daily', str(raw), '--variable', 'tas',
                      '--output', str(tmp_path / 'out.nc')])

    assert exit_code == 1
    assert 'IncompleteDayError' in capsys.readouterr().err


def test_tasrange_command(tmp_path):
    times = np.array(['2021-01-01', '2021-01-02'], dtype='datetime64[ns]')
    writer = ForcingNetCDFWriter()
    writer.write_field(build_field('tasmax', 300.0, times=times, units='K'), tmp_path / 'x_tasmax_2021.nc')
    writer.write_field(build_field('tasmin', 288.0, times=times, units='K'), tmp_path / 'x_tasmin_2021.nc')

    assert main(['--log-level', 'WARNING', 'tasrange', str(tmp_path)]) == 0

    tasrange = ForcingNetCDFReader().read_field(tmp_path / 'x_tasrange_2021.nc', 'tasrange')
    np.testing.assert_allclose(tasrange.values, 12.0)


def test_hourly_command_keeps_source_units(tmp_path):
    data_root = tmp_path / 'ERA5'
    write_era5_file(raw_input_path(data_root / 'raw', 2021, 'total_precipitation'), 'tp', 0.0036,
                    hourly_times(hours=48), units='m')

    assert main(['--data-root', str(data_root), '--log-level', 'WARNING',
                 'hourly', '--variable', 'pr', '--year', '2021']) == 0

    path = data_root / 'derived' / '2021' / 'pr_1hr_ECMWF-ERA5_hourly_20210101-20210102.nc'
    pr = ForcingNetCDFReader().read_field(path, 'pr')
    assert pr.units == 'm'
    assert pr.shape == (48, 4, 4)
    np.testing.assert_allclose(pr.values, 0.0036, rtol=1e-6)


def test_hourly_command_rejects_tasrange(tmp_path, capsys):
    data_root = tmp_path / 'ERA5'

    exit_code = main(['--data-root', str(data_root), '--log-level', 'WARNING',
                      'hourly', '--variable', 'tasrange', '--year', '2021'])

    assert exit_code == 1
    assert 'UnsupportedVariableError' in capsys.readouterr().err
    assert not (data_root / 'derived').exists()
