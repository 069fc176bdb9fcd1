"""
End-to-end tests of the forcing pipeline on a small synthetic ERA5 year.

Raw inputs cover two days of hourly data on a 4 x 4 one-degree grid; the
target grid is 2 x 2 at two degrees so that every step of the chain runs
without network access or large files. TestFullYear runs tasmax and tasmin
through a complete normal and leap year in 31-day read blocks.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from conftest import hourly_times, write_era5_file

import forcing_processor
from config_manager import ENVIRONMENT_MAPPINGS, ForcingConfig
from forcing_processor import (
    ForcingProcessor,
    daily_output_path,
    find_raw_input,
    hourly_output_path,
    raw_input_path,
    regridded_output_path,
)
from logging_utils import NetCDFError, UnsupportedVariableError
from netcdf_infrastructure import ForcingNetCDFReader


YEAR = 2021

# (ERA5 request name, netCDF short name, value, units)
RAW_INPUTS = [
    ('2m_temperature', 't2m', 290.0, 'K'),
    ('2m_dewpoint_temperature', 'd2m', 280.0, 'K'),
    ('surface_pressure', 'sp', 100000.0, 'Pa'),
    ('total_precipitation', 'tp', 0.0036, 'm'),
    ('maximum_2m_temperature_since_previous_post_processing', 'mx2t', 300.0, 'K'),
    ('minimum_2m_temperature_since_previous_post_processing', 'mn2t', 285.0, 'K'),
    ('10m_u_component_of_wind', 'u10', 3.0, 'm s-1'),
    ('10m_v_component_of_wind', 'v10', 4.0, 'm s-1'),
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ENVIRONMENT_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def data_root(tmp_path):
    root = tmp_path / 'ERA5'
    times = hourly_times(f'{YEAR}-01-01T00', hours=48)
    for request_name, short_name, value, units in RAW_INPUTS:
        write_era5_file(raw_input_path(root / 'raw', YEAR, request_name), short_name, value, times, units=units)
    return root


def make_config(data_root, **processing):
    return ForcingConfig(cli_args={
        'paths': {'data_root': str(data_root)},
        'processing': dict({'log_level': 'WARNING'}, **processing),
        'target_grid': {'resolution': 2.0, 'bounds': [-1.0, 1.0, 1.0, 3.0]},
        'years': [YEAR],
    })


def read_output(config, variable_id):
    path = regridded_output_path(config.regridded_dir, YEAR, variable_id)
    return ForcingNetCDFReader().read_field(path, variable_id)


def test_find_raw_input_prefers_request_name(data_root):
    path = find_raw_input(data_root / 'raw', YEAR, 'tas')

    assert path.name == f'2m_temperature_hourly_{YEAR}.nc'
    with pytest.raises(NetCDFError):
        find_raw_input(data_root / 'raw', YEAR, 'rsds')


def test_precipitation_unit(data_root):
    config = make_config(data_root)

    result = ForcingProcessor(config).process_unit('pr', YEAR)

    assert result.success, result.error
    daily_path = daily_output_path(config.derived_dir, YEAR, 'pr', '20210101-20210102')
    assert str(daily_path) in result.outputs

    pr = read_output(config, 'pr')
    assert pr.shape == (2, 2, 2)
    np.testing.assert_allclose(pr.values, 0.001, rtol=1e-5)
    assert pr.units == 'kg m-2 s-1'
    assert pr.axis_names == ('time', 'lat', 'lon')
    assert pr.global_attributes['title'].startswith('ERA5 global meteorological forcing')


def test_derived_unit_writes_hourly_files(data_root):
    config = make_config(data_root)

    result = ForcingProcessor(config).process_unit('huss', YEAR)

    assert result.success, result.error
    hourly_path = hourly_output_path(config.derived_dir, YEAR, 'huss', '20210101-20210102')
    assert hourly_path.exists()

    hourly = ForcingNetCDFReader().read_field(hourly_path, 'huss')
    assert hourly.shape == (48, 4, 4)

    huss = read_output(config, 'huss')
    assert np.all((huss.values > 0.005) & (huss.values < 0.01))
    assert huss.standard_name == 'specific_humidity'


def test_hourly_files_skipped_when_disabled(data_root):
    config = make_config(data_root, write_hourly=False)

    result = ForcingProcessor(config).process_unit('sfcwind', YEAR)

    assert result.success, result.error
    assert not hourly_output_path(config.derived_dir, YEAR, 'sfcwind', '20210101-20210102').exists()
    np.testing.assert_allclose(read_output(config, 'sfcwind').values, 5.0, rtol=1e-6)


def test_run_hourly_writes_one_file_per_year(data_root):
    config = make_config(data_root, chunk_days=1)

    path = ForcingProcessor(config).run_hourly('hurs', YEAR)

    assert path.name == 'hurs_1hr_ECMWF-ERA5_hourly_20210101-20210102.nc'
    assert sorted(p.name for p in path.parent.iterdir()) == [path.name]

    hurs = ForcingNetCDFReader().read_field(path, 'hurs')
    assert hurs.shape == (48, 4, 4)
    assert hurs.units == '%'
    assert abs(hurs.time_axis[-1] - np.datetime64('2021-01-02T23:00', 'ns')) < np.timedelta64(1, 's')


def test_run_hourly_keeps_source_units_of_raw_inputs(data_root):
    config = make_config(data_root)

    path = ForcingProcessor(config).run_hourly('pr', YEAR)

    pr = ForcingNetCDFReader().read_field(path, 'pr')
    assert pr.units == 'm'
    assert pr.standard_name != 'precipitation_flux'
    np.testing.assert_allclose(pr.values, 0.0036, rtol=1e-6)


def test_run_hourly_rejects_daily_only_variable(data_root):
    config = make_config(data_root)

    with pytest.raises(UnsupportedVariableError):
        ForcingProcessor(config).hourly_blocks('tasrange', YEAR)
    assert not config.derived_dir.exists()


def test_missing_input_fails_only_its_unit(data_root):
    config = make_config(data_root)

    summary = ForcingProcessor(config).run_batch(variables=['tas', 'rsds'])

    assert summary['total_units'] == 2
    assert summary['successful_units'] == 1
    assert summary['failures'][0]['variable_id'] == 'rsds'
    assert summary['failures'][0]['error_type'] == 'NetCDFError'
    assert regridded_output_path(config.regridded_dir, YEAR, 'tas').exists()


def test_batch_with_tasrange(data_root, tmp_path):
    config = make_config(data_root)
    processor = ForcingProcessor(config)

    summary = processor.run_batch(variables=['tas', 'tasmax', 'tasmin'])

    assert summary['failed_units'] == 0
    assert [r['variable_id'] for r in summary['results']] == ['tas', 'tasmax', 'tasmin', 'tasrange']
    np.testing.assert_allclose(read_output(config, 'tasrange').values, 15.0, rtol=1e-6)
    np.testing.assert_allclose(read_output(config, 'tas').values, 290.0, rtol=1e-6)

    summary_path = processor.save_summary(summary, tmp_path / 'summary.json')
    assert 'tasrange' in open(summary_path).read()


def test_failed_unit_counted_once(data_root):
    processor = ForcingProcessor(make_config(data_root))

    result = processor.process_unit('rsds', YEAR)

    assert result.error_type == 'NetCDFError'
    stats = processor.processing_logger.processing_stats
    assert stats['units_failed'] == 1
    assert stats['errors_encountered'] == 1


def test_tasrange_without_tasmin_fails(data_root):
    config = make_config(data_root)
    processor = ForcingProcessor(config)
    processor.process_unit('tasmax', YEAR)

    result = processor.process_tasrange(YEAR)

    assert not result.success
    assert result.error_type == 'PairingError'


class TestIncompleteDays:
    """Day policy applied to an input ending mid-day"""

    @pytest.fixture
    def short_root(self, tmp_path):
        root = tmp_path / 'ERA5'
        times = hourly_times(f'{YEAR}-01-01T00', hours=30)
        write_era5_file(raw_input_path(root / 'raw', YEAR, '2m_temperature'), 't2m', 290.0, times)
        return root

    def test_fail_policy(self, short_root):
        result = ForcingProcessor(make_config(short_root)).process_unit('tas', YEAR)

        assert not result.success
        assert result.error_type == 'IncompleteDayError'

    def test_drop_policy(self, short_root):
        config = make_config(short_root, incomplete_day_policy='drop')

        result = ForcingProcessor(config).process_unit('tas', YEAR)

        assert result.success, result.error
        assert result.dropped_days == ['2021-01-02']
        assert read_output(config, 'tas').shape[0] == 1


def test_weights_shared_between_units(data_root):
    config = make_config(data_root)
    processor = ForcingProcessor(config)

    processor.process_unit('tas', YEAR)
    processor.process_unit('pr', YEAR)

    assert processor.resampler.weights_cache.generated_count == 1
    assert len(list(config.weights_dir.glob('remapweights_*.nc'))) == 1


def test_parallel_batch_matches_sequential(data_root, monkeypatch):
    monkeypatch.setattr(forcing_processor, 'ProcessPoolExecutor', ThreadPoolExecutor)
    config = make_config(data_root, max_workers=2)

    summary = ForcingProcessor(config).run_batch(variables=['pr', 'tasmax', 'tasmin'])

    assert summary['failed_units'] == 0
    assert summary['total_units'] == 4
    np.testing.assert_allclose(read_output(config, 'pr').values, 0.001, rtol=1e-5)
    np.testing.assert_allclose(read_output(config, 'tasrange').values, 15.0, rtol=1e-6)


def test_aggregate_and_regrid_files(data_root, tmp_path):
    config = make_config(data_root)
    processor = ForcingProcessor(config)
    raw = find_raw_input(config.raw_dir, YEAR, 'tasmax')

    daily_path = processor.aggregate_file(raw, 'tasmax', tmp_path / 'tasmax_day.nc')
    regridded_path = processor.regrid_file(daily_path, 'tasmax', tmp_path / 'tasmax_0p5.nc')

    daily = ForcingNetCDFReader().read_field(daily_path, 'tasmax')
    regridded = ForcingNetCDFReader().read_field(regridded_path, 'tasmax')
    assert daily.shape == (2, 4, 4)
    assert regridded.shape == (2, 2, 2)
    np.testing.assert_allclose(regridded.values, 300.0, rtol=1e-6)


def test_session_log_written_to_log_dir(data_root, tmp_path):
    config = ForcingConfig(cli_args={
        'paths': {'data_root': str(data_root), 'log_dir': str(tmp_path / 'run')},
        'processing': {'log_level': 'INFO'},
        'target_grid': {'resolution': 2.0, 'bounds': [-1.0, 1.0, 1.0, 3.0]},
    })

    ForcingProcessor(config).process_unit('tas', YEAR)

    log_files = list((tmp_path / 'run' / 'logs').glob('era5_forcing_pipeline_*.log'))
    assert len(log_files) == 1
    assert 'Processed file' in log_files[0].read_text()


def test_process_year_runs_tasrange_last(data_root):
    config = make_config(data_root)

    results = ForcingProcessor(config).process_year(YEAR, ['tasmax', 'tasmin'])

    assert [r.variable_id for r in results] == ['tasmax', 'tasmin', 'tasrange']
    assert all(r.success for r in results)


class TestFullYear:
    """A complete hourly year read in 31-day blocks"""

    @staticmethod
    def hourly_series(year, sign):
        times = np.arange(f'{year}-01-01T00', f'{year + 1}-01-01T00', dtype='datetime64[h]')
        day_index = (times.astype('datetime64[D]') - np.datetime64(f'{year}-01-01')).astype(int)
        hour = (times - times.astype('datetime64[D]')).astype(int)
        # The base level jumps between days, so a block boundary mixing days shows up in the range
        values = 280.0 + 5.0 * (day_index % 3) + sign * 0.1 * hour
        return times, values[:, np.newaxis, np.newaxis]

    @pytest.mark.parametrize("year, days", [(2021, 365), (2020, 366)])
    def test_tasrange_covers_every_day(self, tmp_path, year, days):
        root = tmp_path / 'ERA5'
        for request_name, short_name, sign in (
            ('maximum_2m_temperature_since_previous_post_processing', 'mx2t', 1.0),
            ('minimum_2m_temperature_since_previous_post_processing', 'mn2t', -1.0),
        ):
            times, values = self.hourly_series(year, sign)
            write_era5_file(raw_input_path(root / 'raw', year, request_name), short_name, values, times)
        config = make_config(root)

        results = ForcingProcessor(config).process_year(year, ['tasmax', 'tasmin'])

        assert all(r.success for r in results), [r.error for r in results]
        path = regridded_output_path(config.regridded_dir, year, 'tasrange')
        tasrange = ForcingNetCDFReader().read_field(path, 'tasrange')

        assert tasrange.shape == (days, 2, 2)
        assert tasrange.units == 'K'
        np.testing.assert_array_equal(
            tasrange.time_axis.astype('datetime64[D]'),
            np.arange(f'{year}-01-01', f'{year + 1}-01-01', dtype='datetime64[D]')
        )
        np.testing.assert_allclose(tasrange.values, 4.6, rtol=1e-4)

        tasmax = ForcingNetCDFReader().read_field(regridded_output_path(config.regridded_dir, year, 'tasmax'), 'tasmax')
        np.testing.assert_allclose(tasmax.values[:3, 0, 0], [282.3, 287.3, 292.3], rtol=1e-6)
