"""
Forcing Variable Registry - Master Configuration for All Variables

This module provides the single source of truth for every variable handled by
the forcing preprocessor: how the raw ERA5 field is named, how hourly values
reduce to a daily value, which unit rescale and clamp apply, and the canonical
metadata written to the output files.

Scientific Context:
Hourly ERA5 fields come in two flavours. Instantaneous quantities
(temperature, pressure, humidity, wind) are averaged over the day, while
accumulated quantities (precipitation, radiation) are integrated and then
expressed as a mean flux. Accumulations can carry small negative artefacts
from the ECMWF post-processing, which are clamped to zero before reduction.

All names, units and reduction rules are centralized here so that derivation,
aggregation and normalization stages dispatch on a single lookup instead of
repeating per-variable branches.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from logging_utils import UnsupportedVariableError
from units_constants import PRECIPITATION_DAILY_SUM_DIVISOR, RADIATION_HOURLY_DIVISOR


REDUCTIONS = ('mean', 'sum', 'max', 'min')


@dataclass(frozen=True)
class VariablePolicy:
    """
    Static processing record for one canonical variable.

    Attributes:
        variable_id: Canonical short name (e.g. 'tas')
        reduction: Daily reduction rule, or None for variables that never
            pass through the temporal aggregator
        standard_name: CF standard name
        long_name: Human-readable name
        units: Canonical output units
        scale_divisor: Divisor applied to hourly values before reduction
        clamp_negative: Floor-clamp hourly values at zero before reduction
        source_units: Units of the raw hourly ERA5 field
        era5_names: CDS request name followed by the netCDF short names
        derived_from: Canonical inputs of the derivation producing this variable
    """
    variable_id: str
    reduction: Optional[str]
    standard_name: str
    long_name: str
    units: str
    scale_divisor: Optional[float] = None
    clamp_negative: bool = False
    source_units: Optional[str] = None
    era5_names: Tuple[str, ...] = ()
    derived_from: Tuple[str, ...] = ()
    feeds: Tuple[str, ...] = ()

    @property
    def is_derived(self) -> bool:
        return bool(self.derived_from)

    @property
    def era5_request_name(self) -> Optional[str]:
        return self.era5_names[0] if self.era5_names else None


_POLICIES = [
    # ========== Daily forcing variables ==========
    VariablePolicy(
        variable_id='tas', reduction='mean',
        standard_name='air_temperature', long_name='Near-Surface Air Temperature', units='K',
        source_units='K', era5_names=('2m_temperature', 't2m'),
        feeds=('huss', 'hurs'),
    ),
    VariablePolicy(
        variable_id='tasmax', reduction='max',
        standard_name='air_temperature', long_name='Daily Maximum Near-Surface Air Temperature', units='K',
        source_units='K',
        era5_names=('maximum_2m_temperature_since_previous_post_processing', 'mx2t'),
        feeds=('tasrange',),
    ),
    VariablePolicy(
        variable_id='tasmin', reduction='min',
        standard_name='air_temperature', long_name='Daily Minimum Near-Surface Air Temperature', units='K',
        source_units='K',
        era5_names=('minimum_2m_temperature_since_previous_post_processing', 'mn2t'),
        feeds=('tasrange',),
    ),
    VariablePolicy(
        variable_id='pr', reduction='sum',
        standard_name='precipitation_flux', long_name='Precipitation', units='kg m-2 s-1',
        scale_divisor=PRECIPITATION_DAILY_SUM_DIVISOR, clamp_negative=True,
        source_units='m', era5_names=('total_precipitation', 'tp'),
    ),
    VariablePolicy(
        variable_id='ps', reduction='mean',
        standard_name='surface_air_pressure', long_name='Surface Air Pressure', units='Pa',
        clamp_negative=True,
        source_units='Pa', era5_names=('surface_pressure', 'sp'),
        feeds=('huss', 'hurs'),
    ),
    VariablePolicy(
        variable_id='rlds', reduction='mean',
        standard_name='surface_downwelling_longwave_flux_in_air',
        long_name='Surface Downwelling Longwave Radiation', units='W m-2',
        scale_divisor=RADIATION_HOURLY_DIVISOR, clamp_negative=True,
        source_units='J m-2', era5_names=('surface_thermal_radiation_downwards', 'strd'),
    ),
    VariablePolicy(
        variable_id='rsds', reduction='mean',
        standard_name='surface_downwelling_shortwave_flux_in_air',
        long_name='Surface Downwelling Shortwave Radiation', units='W m-2',
        scale_divisor=RADIATION_HOURLY_DIVISOR, clamp_negative=True,
        source_units='J m-2', era5_names=('surface_solar_radiation_downwards', 'ssrd'),
    ),
    VariablePolicy(
        variable_id='hurs', reduction='mean',
        standard_name='relative_humidity', long_name='Near-Surface Relative Humidity', units='%',
        clamp_negative=True,
        source_units='%', derived_from=('tas', 'dewptas', 'ps'),
    ),
    VariablePolicy(
        variable_id='huss', reduction='mean',
        standard_name='specific_humidity', long_name='Near-Surface Specific Humidity', units='kg kg-1',
        clamp_negative=True,
        source_units='kg kg-1', derived_from=('tas', 'dewptas', 'ps'),
    ),
    VariablePolicy(
        variable_id='sfcwind', reduction='mean',
        standard_name='wind_speed', long_name='Near-Surface Wind Speed', units='m s-1',
        clamp_negative=True,
        source_units='m s-1', derived_from=('uas', 'vas'),
    ),

    # ========== Daily derived variables ==========
    VariablePolicy(
        variable_id='tasrange', reduction=None,
        standard_name='air_temperature',
        long_name='Range between Daily Maximum and Minimum Near-Surface Air Temperature', units='K',
        derived_from=('tasmax', 'tasmin'),
    ),

    # ========== Hourly derivation inputs ==========
    VariablePolicy(
        variable_id='dewptas', reduction=None,
        standard_name='dew_point_temperature', long_name='Near-Surface Dew Point Temperature', units='K',
        source_units='K', era5_names=('2m_dewpoint_temperature', 'd2m'),
        feeds=('huss', 'hurs'),
    ),
    VariablePolicy(
        variable_id='uas', reduction=None,
        standard_name='eastward_wind', long_name='Eastward Near-Surface Wind', units='m s-1',
        source_units='m s-1', era5_names=('10m_u_component_of_wind', 'u10'),
        feeds=('sfcwind',),
    ),
    VariablePolicy(
        variable_id='vas', reduction=None,
        standard_name='northward_wind', long_name='Northward Near-Surface Wind', units='m s-1',
        source_units='m s-1', era5_names=('10m_v_component_of_wind', 'v10'),
        feeds=('sfcwind',),
    ),
]

# Read-only, process-wide
VARIABLE_POLICIES: Mapping[str, VariablePolicy] = MappingProxyType(
    {policy.variable_id: policy for policy in _POLICIES}
)

# Daily forcing set, in processing order
DAILY_FORCING_VARIABLES: Tuple[str, ...] = (
    'tas', 'tasmax', 'tasmin', 'pr', 'hurs', 'huss', 'ps', 'rlds', 'rsds', 'sfcwind'
)

# Fixed labels of the normalized axes
AXIS_LABELS = MappingProxyType({
    'time': 'Time',
    'lat': 'Latitude',
    'lon': 'Longitude',
})

# Names under which ERA5/CDS files carry each axis
COORDINATE_ALIASES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    'time': ('time', 'valid_time'),
    'lat': ('lat', 'latitude'),
    'lon': ('lon', 'longitude'),
})


def get_variable_policy(variable_id: str) -> VariablePolicy:
    """
    Get the policy record for a canonical variable.

    Args:
        variable_id: Canonical short name

    Returns:
        VariablePolicy: Static processing record

    Raises:
        UnsupportedVariableError: If the variable has no policy entry
    """
    try:
        return VARIABLE_POLICIES[variable_id]
    except KeyError:
        raise UnsupportedVariableError(
            f"No variable policy for '{variable_id}'. Available: {sorted(VARIABLE_POLICIES)}",
            context={'variable_id': variable_id}
        ) from None


def get_reduction_policy(variable_id: str) -> VariablePolicy:
    """Policy for a variable that can be aggregated from hourly to daily."""
    policy = get_variable_policy(variable_id)
    if policy.reduction not in REDUCTIONS:
        raise UnsupportedVariableError(
            f"Variable '{variable_id}' has no temporal reduction rule",
            context={'variable_id': variable_id}
        )
    return policy


def resolve_era5_name(name: str) -> str:
    """
    Map an ERA5 request or netCDF short name onto the canonical variable id.

    Canonical ids map onto themselves.

    Raises:
        UnsupportedVariableError: If the name is unknown
    """
    if name in VARIABLE_POLICIES:
        return name
    for policy in VARIABLE_POLICIES.values():
        if name in policy.era5_names:
            return policy.variable_id
    raise UnsupportedVariableError(f"Unknown ERA5 variable name '{name}'", context={'name': name})


def get_variable_alternatives(variable_id: str) -> List[str]:
    """
    Get every name a variable may carry inside an input file.

    Args:
        variable_id: Canonical short name

    Returns:
        list: Canonical name followed by the ERA5 aliases
    """
    policy = get_variable_policy(variable_id)
    return [variable_id] + [name for name in policy.era5_names if name != variable_id]


def get_raw_inputs(variable_id: str) -> Tuple[str, ...]:
    """
    Canonical hourly inputs that must be loaded to produce a variable.

    Derived variables need their derivation inputs, all others need
    themselves.
    """
    policy = get_variable_policy(variable_id)
    return policy.derived_from if policy.is_derived else (variable_id,)


def get_variables_feeding(target_id: str) -> List[str]:
    """Variables declared as inputs to the derivation of ``target_id``."""
    return [
        policy.variable_id for policy in VARIABLE_POLICIES.values()
        if target_id in policy.feeds
    ]


def describe_variables() -> Dict[str, Dict[str, Optional[str]]]:
    """Summary table used by the ``list-variables`` CLI command."""
    return {
        variable_id: {
            'reduction': policy.reduction,
            'units': policy.units,
            'standard_name': policy.standard_name,
            'era5_name': policy.era5_request_name,
            'derived_from': ', '.join(policy.derived_from) or None,
        }
        for variable_id, policy in VARIABLE_POLICIES.items()
    }
