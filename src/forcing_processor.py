"""
Main Orchestration Module for ERA5 Forcing Preprocessing

This module provides the ForcingProcessor class that turns hourly ERA5 files
into daily forcing files on the target grid. One unit of work is a
(variable, year) pair, which runs end to end:

    read hourly blocks -> derive (huss, hurs, sfcwind) -> normalize
    -> aggregate to daily -> write daily 0.25° -> remap -> write daily target grid

Hourly inputs are read in blocks of whole calendar days so a full global year
is never held in memory. Derived hourly fields are appended block by block
to one file per variable and year. Units are independent of each other and
may run in a process pool; tasrange for a year runs once that year's tasmax
and tasmin units are done.
"""

import logging
import os
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from itertools import zip_longest
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from atmospheric_science import PsychrometricDeriver, WindSpeedDeriver
from config_manager import ForcingConfig
from diurnal_range import RangeDeriver
from forcing_variables import get_raw_inputs, get_reduction_policy, get_variable_alternatives, get_variable_policy
from grid_field import GridField, concatenate_time
from logging_utils import (
    AxisMismatchError,
    ForcingError,
    IncompleteDayError,
    NetCDFError,
    ProcessingLogger,
    UnsupportedVariableError,
    create_processing_session_log,
    error_context,
    get_component_logger,
    save_processing_session_summary,
    setup_forcing_logging,
    LOGGER_NAME,
)
from metadata_normalizer import MetadataNormalizer
from netcdf_infrastructure import ForcingNetCDFReader, ForcingNetCDFWriter
from spatial_resampler import SpatialResampler, WeightsCache
from temporal_aggregation import TemporalAggregator


# Variables computed hour by hour from other ERA5 inputs
HOURLY_DERIVATIONS = ('huss', 'hurs', 'sfcwind')


# =============================================================================
# FILE LAYOUT
# =============================================================================

def raw_input_path(raw_dir: Union[str, Path], year: int, name: str) -> Path:
    """raw/<year>/<era5_name>_hourly_<year>.nc"""
    return Path(raw_dir) / str(year) / f"{name}_hourly_{year}.nc"


def find_raw_input(raw_dir: Union[str, Path], year: int, variable_id: str) -> Path:
    """
    Locate the hourly input file of a variable, trying the ERA5 request name,
    the ERA5 short name and the canonical id.

    Raises:
        NetCDFError: If no candidate file exists
    """
    policy = get_variable_policy(variable_id)
    names = list(policy.era5_names) + [name for name in get_variable_alternatives(variable_id)
                                       if name not in policy.era5_names]
    candidates = [raw_input_path(raw_dir, year, name) for name in names]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    raise NetCDFError(
        f"No hourly input for {variable_id} in {year}",
        context={'variable_id': variable_id, 'year': year, 'candidates': [str(c) for c in candidates]}
    )


def hourly_output_path(derived_dir: Union[str, Path], year: int, variable_id: str, period: str) -> Path:
    """derived/<year>/<id>_1hr_ECMWF-ERA5_hourly_<period>.nc"""
    return Path(derived_dir) / str(year) / f"{variable_id}_1hr_ECMWF-ERA5_hourly_{period}.nc"


def daily_output_path(derived_dir: Union[str, Path], year: int, variable_id: str, period: str) -> Path:
    """derived/<year>/daily/<id>_day_ERA5_<period>.nc"""
    return Path(derived_dir) / str(year) / 'daily' / f"{variable_id}_day_ERA5_{period}.nc"


def regridded_output_path(regridded_dir: Union[str, Path], year: int, variable_id: str,
                          prefix: str = 'era5_obsclim') -> Path:
    """daily_0p5deg/<year>/<prefix>_<id>_global_daily_<year>_<year>.nc"""
    return Path(regridded_dir) / str(year) / f"{prefix}_{variable_id}_global_daily_{year}_{year}.nc"


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class UnitResult:
    """Outcome of one (variable, year) unit."""
    variable_id: str
    year: int
    status: str = 'pending'
    outputs: List[str] = field(default_factory=list)
    dropped_days: List[str] = field(default_factory=list)
    error_type: Optional[str] = None
    error: Optional[str] = None
    processing_time_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == 'success'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# HOURLY FILES
# =============================================================================

class HourlySeriesWriter:
    """
    Collect the hourly blocks of one variable and year into a single file.

    Blocks are appended to a staging file as they arrive; ``close`` renames
    it to the canonical name covering the first to the last day written.
    """

    def __init__(self, writer: ForcingNetCDFWriter, derived_dir: Union[str, Path], year: int, variable_id: str):
        self.writer = writer
        self.derived_dir = derived_dir
        self.year = year
        self.variable_id = variable_id
        self.staging_path = hourly_output_path(derived_dir, year, variable_id, 'staging').with_suffix('.part')
        self.first_day: Optional[str] = None
        self.last_day: Optional[str] = None

    def add(self, hourly: GridField) -> None:
        if self.first_day is None:
            self.writer.write_field(hourly, self.staging_path)
        else:
            self.writer.append_field(hourly, self.staging_path)
        first_day, last_day = hourly.period_label().split('-')
        self.first_day = self.first_day or first_day
        self.last_day = last_day

    def __call__(self, hourly: GridField) -> None:
        self.add(hourly)

    def close(self) -> Optional[Path]:
        """Move the staging file into place; None when nothing was written."""
        if self.first_day is None:
            return None
        path = hourly_output_path(self.derived_dir, self.year, self.variable_id,
                                  f"{self.first_day}-{self.last_day}")
        os.replace(self.staging_path, path)
        return path

    def discard(self) -> None:
        if self.staging_path.exists():
            self.staging_path.unlink()


def _run_unit_worker(config_dict: Dict[str, Any], variable_id: str, year: int) -> UnitResult:
    """Process-pool entry point; rebuilds the processor from plain config."""
    processor = ForcingProcessor(ForcingConfig.from_dict(config_dict), configure_logging=False)
    if variable_id == 'tasrange':
        return processor.process_tasrange(year)
    return processor.process_unit(variable_id, year)


# =============================================================================
# PROCESSOR
# =============================================================================

class ForcingProcessor:
    """
    Main class for coordinating ERA5 forcing preprocessing.

    Wires reader, derivers, aggregator, resampler, normalizer and writer
    together from one ForcingConfig and tracks progress through a
    ProcessingLogger.
    """

    def __init__(self, config: Optional[ForcingConfig] = None, configure_logging: bool = True):
        """
        Args:
            config: Configuration; defaults plus environment when None
            configure_logging: Attach console/file handlers to the pipeline
                logger. Worker processes reuse whatever the parent set up.
        """
        self.config = config or ForcingConfig()

        if configure_logging:
            log_dir = self.config.get('paths.log_dir')
            log_file = create_processing_session_log(log_dir, 'pipeline') if log_dir else None
            logger = setup_forcing_logging(self.config.get('processing.log_level', 'INFO'), log_file)
        else:
            logger = logging.getLogger(LOGGER_NAME)
        self.processing_logger = ProcessingLogger(logger)
        self.logger = get_component_logger(self.__class__.__name__)

        output = self.config.get_output_config()
        self.chunk_days = self.config.get('processing.chunk_days', 31)
        self.write_hourly = self.config.get('processing.write_hourly', True)
        self.file_prefix = output.get('file_prefix', 'era5_obsclim')
        self.title = output.get('title')

        self.reader = ForcingNetCDFReader()
        self.writer = ForcingNetCDFWriter(
            compression_level=output['compression_level'],
            time_units=output['time_units'],
            calendar=output['calendar'],
            fill_value=output['missing_value'],
        )
        self.normalizer = MetadataNormalizer()
        self.aggregator = TemporalAggregator(self.config.get('processing.incomplete_day_policy', 'fail'))
        self.psychrometric_deriver = PsychrometricDeriver()
        self.wind_deriver = WindSpeedDeriver()
        self.range_deriver = RangeDeriver()
        self.resampler = SpatialResampler(
            self.config.get_target_grid(),
            WeightsCache(self.config.weights_dir, self.config.get('paths.weights_file')),
        )

    # ------------------------------------------------------------------
    # Hourly stage
    # ------------------------------------------------------------------

    def hourly_blocks(self, variable_id: str, year: int) -> Iterator[GridField]:
        """
        Canonical hourly blocks of a variable for one year.

        Derived variables are computed block by block from their inputs and
        carry their final metadata. Raw inputs keep their source units.

        Raises:
            UnsupportedVariableError: For variables without an hourly form
                (tasrange), before any input is opened
        """
        policy = get_variable_policy(variable_id)
        if policy.is_derived and variable_id not in HOURLY_DERIVATIONS:
            raise UnsupportedVariableError(
                f"Variable '{variable_id}' has no hourly representation",
                context={'variable_id': variable_id, 'hourly_derivations': list(HOURLY_DERIVATIONS)}
            )
        return self._iter_hourly_blocks(variable_id, year)

    def _iter_hourly_blocks(self, variable_id: str, year: int) -> Iterator[GridField]:
        inputs = get_raw_inputs(variable_id)
        paths = [find_raw_input(self.config.raw_dir, year, input_id) for input_id in inputs]
        streams = [
            self.reader.iter_day_blocks(path, input_id, self.chunk_days)
            for path, input_id in zip(paths, inputs)
        ]

        for blocks in zip_longest(*streams):
            if any(block is None for block in blocks):
                raise AxisMismatchError(
                    f"Inputs of {variable_id} for {year} cover different periods",
                    context={'inputs': [str(path) for path in paths]}
                )
            by_id = dict(zip(inputs, blocks))
            if variable_id in ('huss', 'hurs'):
                huss, hurs = self.psychrometric_deriver.derive(by_id['tas'], by_id['dewptas'], by_id['ps'])
                hourly = huss if variable_id == 'huss' else hurs
            elif variable_id == 'sfcwind':
                hourly = self.wind_deriver.derive(by_id['uas'], by_id['vas'])
            else:
                hourly = by_id[variable_id]
            yield self.normalizer.normalize_hourly(hourly)

    def run_hourly(self, variable_id: str, year: int) -> Optional[Path]:
        """Write the canonical hourly file of a variable for one year."""
        blocks = self.hourly_blocks(variable_id, year)
        series = HourlySeriesWriter(self.writer, self.config.derived_dir, year, variable_id)
        try:
            for hourly in blocks:
                series.add(hourly)
        except Exception:
            series.discard()
            raise
        return series.close()

    # ------------------------------------------------------------------
    # Daily stage
    # ------------------------------------------------------------------

    def aggregate_blocks(self, hourly_blocks, variable_id: str,
                         on_hourly=None) -> Tuple[GridField, List[str]]:
        """
        Aggregate a stream of hourly blocks into one daily field.

        Args:
            hourly_blocks: Iterable of hourly GridFields in time order
            variable_id: Variable being aggregated
            on_hourly: Optional callback receiving each hourly block

        Returns:
            Tuple of (daily GridField, dropped day labels)
        """
        get_reduction_policy(variable_id)
        daily_blocks = []
        dropped_days: List[str] = []

        for hourly in hourly_blocks:
            if on_hourly is not None:
                on_hourly(hourly)
            try:
                daily, report = self.aggregator.aggregate_with_report(hourly)
            except IncompleteDayError as e:
                if self.aggregator.incomplete_day_policy != 'drop':
                    raise
                dropped_days.extend(e.days)
                continue
            dropped_days.extend(report.dropped_days)
            daily_blocks.append(daily)

        if not daily_blocks:
            raise IncompleteDayError(
                f"{variable_id}: no complete day in input",
                days=dropped_days,
                context={'variable_id': variable_id}
            )
        return self.normalizer.normalize(concatenate_time(daily_blocks)), dropped_days

    def aggregate_file(self, input_path: Union[str, Path], variable_id: str,
                       output_path: Union[str, Path]) -> Path:
        """Aggregate one hourly file to a daily file."""
        blocks = self.reader.iter_day_blocks(input_path, variable_id, self.chunk_days)
        daily, dropped_days = self.aggregate_blocks(
            (self.normalizer.normalize_hourly(block) for block in blocks), variable_id
        )
        if dropped_days:
            self.processing_logger.log_processing_warning(
                f"Dropped incomplete days from {Path(input_path).name}",
                context={'variable': variable_id, 'days': ', '.join(dropped_days)}
            )
        return self.writer.write_field(daily, output_path)

    # ------------------------------------------------------------------
    # Regrid stage
    # ------------------------------------------------------------------

    def regrid_field(self, daily: GridField) -> GridField:
        """Remap a daily field to the target grid and set the output title."""
        return self.normalizer.normalize(self.resampler.resample(daily), title=self.title)

    def regrid_file(self, input_path: Union[str, Path], variable_id: str,
                    output_path: Union[str, Path]) -> Path:
        """Remap one daily file to the target grid."""
        daily = self.reader.read_field(input_path, variable_id)
        return self.writer.write_field(self.regrid_field(daily), output_path)

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def process_unit(self, variable_id: str, year: int) -> UnitResult:
        """
        Run one (variable, year) unit end to end.

        Failures are returned in the UnitResult, never raised.
        """
        result = UnitResult(variable_id=variable_id, year=year)
        start = time.time()

        hourly_series = None
        try:
            with error_context(f"processing {variable_id} {year}", variable=variable_id, year=year):
                policy = get_reduction_policy(variable_id)
                if self.write_hourly and policy.is_derived:
                    hourly_series = HourlySeriesWriter(self.writer, self.config.derived_dir, year, variable_id)

                daily, dropped_days = self.aggregate_blocks(
                    self.hourly_blocks(variable_id, year), variable_id, on_hourly=hourly_series
                )
                if hourly_series is not None:
                    result.outputs.append(str(hourly_series.close()))
                daily = daily.select_year(year)

                daily_path = daily_output_path(self.config.derived_dir, year, variable_id, daily.period_label())
                result.outputs.append(str(self.writer.write_field(daily, daily_path)))

                regridded_path = regridded_output_path(self.config.regridded_dir, year, variable_id, self.file_prefix)
                result.outputs.append(str(self.writer.write_field(self.regrid_field(daily), regridded_path)))

                if dropped_days:
                    result.dropped_days = dropped_days
                    self.processing_logger.log_processing_warning(
                        f"{variable_id} {year}: dropped {len(dropped_days)} incomplete day(s)",
                        context={'days': ', '.join(dropped_days)}
                    )
        except ForcingError as e:
            if hourly_series is not None:
                hourly_series.discard()
            return self._fail(result, e, start)

        result.status = 'success'
        result.processing_time_seconds = time.time() - start
        inputs = [str(find_raw_input(self.config.raw_dir, year, input_id)) for input_id in get_raw_inputs(variable_id)]
        self.processing_logger.log_file_processing(inputs, result.outputs[-1], result.processing_time_seconds)
        return result

    def process_tasrange(self, year: int) -> UnitResult:
        """Derive tasrange on the target grid from that year's tasmax and tasmin outputs."""
        result = UnitResult(variable_id='tasrange', year=year)
        start = time.time()

        tasmax_path = regridded_output_path(self.config.regridded_dir, year, 'tasmax', self.file_prefix)
        tasmin_path = regridded_output_path(self.config.regridded_dir, year, 'tasmin', self.file_prefix)
        output_path = regridded_output_path(self.config.regridded_dir, year, 'tasrange', self.file_prefix)

        try:
            with error_context(f"deriving tasrange {year}", year=year):
                tasmax = self.reader.read_field(tasmax_path, 'tasmax')
                tasmin = self.reader.read_field(tasmin_path, 'tasmin') if tasmin_path.exists() else None
                tasrange = self.normalizer.normalize(self.range_deriver.derive(tasmax, tasmin), title=self.title)
                result.outputs.append(str(self.writer.write_field(tasrange, output_path)))
        except ForcingError as e:
            return self._fail(result, e, start)

        result.status = 'success'
        result.processing_time_seconds = time.time() - start
        self.processing_logger.log_file_processing([str(tasmax_path), str(tasmin_path)], str(output_path),
                                                   result.processing_time_seconds)
        return result

    def _fail(self, result: UnitResult, error: ForcingError, start: float) -> UnitResult:
        result.status = 'failed'
        result.error_type = type(error).__name__
        result.error = str(error)
        result.processing_time_seconds = time.time() - start
        self.processing_logger.log_unit_failure(result.variable_id, result.year, error)
        return result

    def process_year(self, year: int, variables: Optional[List[str]] = None) -> List[UnitResult]:
        """Run every unit of one year sequentially, followed by tasrange."""
        variables = variables or self.config.get_daily_variables()
        results = [self.process_unit(variable_id, year) for variable_id in variables]
        if self._wants_tasrange(variables):
            results.append(self.process_tasrange(year))
        return results

    def _wants_tasrange(self, variables: List[str]) -> bool:
        return bool(self.config.get('variables.derive_tasrange', True)) and {'tasmax', 'tasmin'} <= set(variables)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def run_batch(self, years: Optional[List[int]] = None,
                  variables: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Process every (variable, year) unit and summarize the outcome.

        Units run in a process pool when ``processing.max_workers`` > 1. A
        failed unit never stops the others. tasrange units are scheduled
        after all daily units have finished.

        Args:
            years: Years to process; defaults to the configured years
            variables: Daily variables; defaults to the configured list

        Returns:
            Dictionary with counts, per-unit results and failures
        """
        years = years or self.config.get_years()
        variables = variables or self.config.get_daily_variables()
        max_workers = self.config.get('processing.max_workers', 1)

        self.processing_logger.log_processing_start('batch', {
            'years': years,
            'variables': variables,
            'max_workers': max_workers,
            'incomplete_day_policy': self.aggregator.incomplete_day_policy,
            'data_root': str(self.config.data_root),
        })
        start_time = datetime.now()

        units = [(variable_id, year) for year in years for variable_id in variables]
        range_units = [('tasrange', year) for year in years] if self._wants_tasrange(variables) else []

        if max_workers > 1:
            results = self._run_in_pool(units, max_workers)
            results += self._run_in_pool(range_units, max_workers)
        else:
            results = [self.process_unit(variable_id, year) for variable_id, year in units]
            results += [self.process_tasrange(year) for _, year in range_units]

        results.sort(key=lambda r: (r.year, r.variable_id))
        failures = [r.to_dict() for r in results if not r.success]

        summary = {
            'start_time': start_time.isoformat(),
            'end_time': datetime.now().isoformat(),
            'total_units': len(results),
            'successful_units': len(results) - len(failures),
            'failed_units': len(failures),
            'failures': failures,
            'results': [r.to_dict() for r in results],
        }

        self.processing_logger.log_processing_complete({
            'successful_units': summary['successful_units'],
            'failed_units': summary['failed_units'],
        })
        for failure in failures:
            self.logger.error(f"Failed unit {failure['variable_id']} {failure['year']}: "
                              f"{failure['error_type']}: {failure['error']}")
        return summary

    def _run_in_pool(self, units, max_workers: int) -> List[UnitResult]:
        if not units:
            return []
        config_dict = self.config.to_dict()
        results = []
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(_run_unit_worker, config_dict, variable_id, year): (variable_id, year)
                for variable_id, year in units
            }
            for future in as_completed(futures):
                variable_id, year = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    # worker crashed outside the unit's own error handling
                    result = UnitResult(variable_id=variable_id, year=year, status='failed',
                                        error_type=type(e).__name__, error=str(e))
                    self.processing_logger.log_unit_failure(variable_id, year, e)
                self.logger.info(f"Unit {variable_id} {year}: {result.status}")
                results.append(result)
        return results

    def save_summary(self, summary: Dict[str, Any], output_path: Optional[Union[str, Path]] = None) -> str:
        """Write a batch summary as JSON, by default under <data_root>/logs."""
        if output_path is None:
            stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            output_path = self.config.data_root / 'logs' / f"era5_forcing_summary_{stamp}.json"
        summary = dict(summary, configuration=self.config.to_dict(),
                       session=self.processing_logger.get_processing_summary())
        save_processing_session_summary(summary, str(output_path))
        return str(output_path)
