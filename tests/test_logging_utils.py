"""
Tests for logging setup, processing counters and the error taxonomy.
"""

import json
import logging

import pytest

from logging_utils import (
    LOGGER_NAME,
    AxisMismatchError,
    ConfigurationError,
    DataProcessingError,
    ForcingError,
    IncompleteDayError,
    NetCDFError,
    PairingError,
    ProcessingLogger,
    RegridError,
    StaleWeightsError,
    UnsupportedVariableError,
    error_context,
    get_component_logger,
    save_processing_session_summary,
    setup_forcing_logging,
)


def test_error_hierarchy():
    assert issubclass(StaleWeightsError, RegridError)
    assert issubclass(RegridError, DataProcessingError)
    assert issubclass(PairingError, DataProcessingError)
    assert issubclass(AxisMismatchError, DataProcessingError)
    assert issubclass(UnsupportedVariableError, ConfigurationError)
    assert issubclass(NetCDFError, ForcingError)


def test_incomplete_day_error_carries_days():
    error = IncompleteDayError("partial days", days=['2021-01-01'], context={'variable_id': 'tas'})

    info = error.get_full_error_info()

    assert error.days == ['2021-01-01']
    assert info['error_type'] == 'IncompleteDayError'
    assert info['context'] == {'variable_id': 'tas'}


def test_error_context_wraps_foreign_exceptions():
    with pytest.raises(DataProcessingError) as excinfo:
        with error_context("aggregating tas", year=2021):
            raise ZeroDivisionError("boom")

    assert excinfo.value.context['year'] == 2021
    assert excinfo.value.context['operation'] == 'aggregating tas'
    assert isinstance(excinfo.value.__cause__, ZeroDivisionError)


def test_error_context_maps_io_errors_to_netcdf():
    with pytest.raises(NetCDFError):
        with error_context("reading input"):
            raise OSError("disk full")


def test_error_context_keeps_forcing_errors():
    with pytest.raises(PairingError) as excinfo:
        with error_context("tasrange", year=2020):
            raise PairingError("no partner")

    assert excinfo.value.context['year'] == 2020


def test_component_loggers_are_children():
    logger = get_component_logger('TemporalAggregator')

    assert logger.name == f'{LOGGER_NAME}.TemporalAggregator'


def test_setup_logging_with_file(tmp_path):
    log_file = tmp_path / 'logs' / 'run.log'

    logger = setup_forcing_logging('warning', log_file=str(log_file), console_output=False)
    logger.warning('written to file')
    for handler in logger.handlers:
        handler.flush()

    assert logger.level == logging.WARNING
    assert 'written to file' in log_file.read_text()

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)


def test_processing_logger_counters():
    processing_logger = ProcessingLogger(logging.getLogger(f'{LOGGER_NAME}.test'))

    processing_logger.log_processing_start('daily', {'years': [2021]})
    processing_logger.log_file_processing(['in.nc'], 'out.nc', 0.5)
    processing_logger.log_unit_failure('pr', 2021, IncompleteDayError('partial'))
    processing_logger.log_processing_warning('dropped a day')

    stats = processing_logger.get_processing_summary()['processing_stats']
    assert stats == {'files_processed': 1, 'units_failed': 1, 'errors_encountered': 1, 'warnings_issued': 1}


def test_save_summary(tmp_path):
    output = tmp_path / 'summary' / 'run.json'

    save_processing_session_summary({'total_units': 2, 'failed_units': 0}, str(output))

    assert json.loads(output.read_text()) == {'total_units': 2, 'failed_units': 0}
