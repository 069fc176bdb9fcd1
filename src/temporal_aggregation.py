"""
Hourly to Daily Temporal Aggregation

This module reduces hourly GridFields to daily GridFields using the reduction
rule registered for each variable in ``forcing_variables``.

Scientific Context:
A forcing day is the calendar day 00:00-23:00 of the file time axis. Each
daily value is computed from exactly 24 hourly samples; days with fewer
samples are never interpolated or prorated. Accumulated quantities are floor
clamped at zero and rescaled to a flux before the reduction, in the same pass,
so that post-processing artefacts below zero never reach the daily total.
"""

import warnings
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from grid_field import GridField
from forcing_variables import get_reduction_policy
from logging_utils import AxisMismatchError, ConfigurationError, IncompleteDayError, get_component_logger
from units_constants import PhysicalConstants


INCOMPLETE_DAY_POLICIES = ('fail', 'drop')

HOURS_PER_DAY = PhysicalConstants.HOURS_PER_DAY
ONE_HOUR = np.timedelta64(1, 'h')

_REDUCERS = {
    'mean': np.nanmean,
    'sum': np.nansum,
    'max': np.nanmax,
    'min': np.nanmin,
}


@dataclass
class DayGrouping:
    """
    Calendar-day layout of an hourly time axis.

    Attributes:
        days: Unique calendar days, datetime64[D]
        starts: Index of the first sample of each day
        counts: Number of samples in each day
        complete: True for days holding all 24 samples 00..23
    """
    days: np.ndarray
    starts: np.ndarray
    counts: np.ndarray
    complete: np.ndarray

    def incomplete_days(self) -> List[str]:
        return [str(day) for day in self.days[~self.complete]]


@dataclass
class AggregationReport:
    """Outcome of one aggregation: variable, days written and days dropped."""
    variable_id: str
    days_written: int = 0
    dropped_days: List[str] = field(default_factory=list)


def group_hours_by_day(time_axis: np.ndarray) -> DayGrouping:
    """
    Group an hourly time axis by calendar day.

    Args:
        time_axis: Strictly increasing datetime64 timestamps

    Returns:
        DayGrouping describing each calendar day

    Raises:
        AxisMismatchError: If the axis is not uniformly hourly or its
            samples are not on full hours
    """
    times = np.asarray(time_axis, dtype='datetime64[ns]')

    if len(times) > 1:
        steps = np.unique(np.diff(times))
        if len(steps) != 1 or steps[0] != ONE_HOUR:
            raise AxisMismatchError(
                "Time axis is not uniformly hourly",
                context={'steps': [str(step) for step in steps[:5]]}
            )

    day_of_sample = times.astype('datetime64[D]')
    offsets = times - day_of_sample.astype('datetime64[ns]')
    if np.any(offsets % ONE_HOUR != np.timedelta64(0, 'ns')):
        raise AxisMismatchError("Hourly samples are not aligned to full hours")

    days, starts, counts = np.unique(day_of_sample, return_index=True, return_counts=True)
    first_hour_is_midnight = offsets[starts] == np.timedelta64(0, 'ns')
    complete = (counts == HOURS_PER_DAY) & first_hour_is_midnight

    return DayGrouping(days=days, starts=starts, counts=counts, complete=complete)


class TemporalAggregator:
    """
    Reduce hourly GridFields to daily GridFields.

    Args:
        incomplete_day_policy: 'fail' raises IncompleteDayError naming every
            partial day; 'drop' skips partial days and reports them
    """

    def __init__(self, incomplete_day_policy: str = 'fail'):
        if incomplete_day_policy not in INCOMPLETE_DAY_POLICIES:
            raise ConfigurationError(
                f"incomplete_day_policy must be one of {INCOMPLETE_DAY_POLICIES}, "
                f"got '{incomplete_day_policy}'"
            )
        self.incomplete_day_policy = incomplete_day_policy
        self.logger = get_component_logger(self.__class__.__name__)

    def aggregate(self, hourly: GridField) -> GridField:
        """Daily GridField for ``hourly``; see ``aggregate_with_report``."""
        daily, _ = self.aggregate_with_report(hourly)
        return daily

    def aggregate_with_report(self, hourly: GridField) -> Tuple[GridField, AggregationReport]:
        """
        Aggregate an hourly field to daily values.

        Each output timestamp is the day at 00:00. Values are clamped at zero
        where the variable policy asks for it, divided by the policy's scale
        divisor, then reduced with a missing-aware reduction. A cell missing
        in all 24 hours of a day is missing in the output.

        Args:
            hourly: Hourly GridField of a variable with a reduction rule

        Returns:
            Tuple of (daily GridField as float32, AggregationReport)

        Raises:
            UnsupportedVariableError: If the variable has no reduction rule
            AxisMismatchError: If the time axis is not uniformly hourly
            IncompleteDayError: If partial days exist under the 'fail'
                policy, or no complete day remains under 'drop'
        """
        policy = get_reduction_policy(hourly.variable_id)
        grouping = group_hours_by_day(hourly.time_axis)
        report = AggregationReport(variable_id=hourly.variable_id)

        incomplete = grouping.incomplete_days()
        if incomplete:
            if self.incomplete_day_policy == 'fail':
                raise IncompleteDayError(
                    f"{hourly.variable_id}: {len(incomplete)} day(s) without {HOURS_PER_DAY} hourly samples",
                    days=incomplete,
                    context={'variable_id': hourly.variable_id}
                )
            self.logger.warning(
                f"{hourly.variable_id}: dropping {len(incomplete)} incomplete day(s): {', '.join(incomplete)}"
            )
            report.dropped_days = incomplete

        if not np.any(grouping.complete):
            raise IncompleteDayError(
                f"{hourly.variable_id}: no complete day to aggregate",
                days=incomplete,
                context={'variable_id': hourly.variable_id}
            )

        starts = grouping.starts[grouping.complete]
        hour_index = starts[:, np.newaxis] + np.arange(HOURS_PER_DAY)
        blocks = hourly.masked_values()[hour_index]  # (day, hour, lat, lon)

        if policy.clamp_negative:
            blocks = np.where(blocks < 0, 0.0, blocks)
        if policy.scale_divisor:
            blocks = blocks / policy.scale_divisor

        all_missing = np.all(np.isnan(blocks), axis=1)
        with warnings.catch_warnings():
            # all-missing slices are masked below
            warnings.simplefilter('ignore', RuntimeWarning)
            daily_values = _REDUCERS[policy.reduction](blocks, axis=1)
        daily_values[all_missing] = np.nan

        report.days_written = len(starts)
        self.logger.debug(
            f"{hourly.variable_id}: {policy.reduction} over {report.days_written} day(s)"
        )

        daily = hourly.replace(
            values=daily_values.astype(np.float32),
            time_axis=grouping.days[grouping.complete].astype('datetime64[ns]'),
            units=policy.units,
            standard_name=policy.standard_name,
            long_name=policy.long_name,
        )
        return daily, report
