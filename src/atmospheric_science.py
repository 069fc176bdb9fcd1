"""
Atmospheric Science Calculations for ERA5 Forcing Preprocessing

This module derives the forcing variables that ERA5 does not deliver directly:
near-surface specific and relative humidity from temperature, dew point and
surface pressure, and scalar wind speed from the two wind components.

Scientific Context:
The humidity model follows Buck (1981) with the phase-dependent coefficients
and enhancement factor described in the Buck Research CR-1A User's Manual,
Appendix 1, as used by PIK for the ISIMIP forcing. Water coefficients apply
where the air temperature is above 0 °C and ice coefficients elsewhere; the
choice is made per grid cell and timestep.

References:
- Buck (1981), J. Appl. Meteorol. 20, 1527-1532
- Buck Research CR-1A User's Manual (2009), Appendix 1
"""

from typing import Tuple, Union

import numpy as np

from grid_field import GridField, require_colocated
from forcing_variables import get_variable_policy
from logging_utils import NumericDomainError, get_component_logger
from units_constants import (
    BUCK_ICE,
    BUCK_WATER,
    BuckCoefficients,
    PhysicalConstants,
    pressure_pa_to_hpa,
    temperature_kelvin_to_celsius,
)


OUTPUT_DTYPE = np.float32


def select_buck_coefficients(temperature_celsius: np.ndarray) -> BuckCoefficients:
    """
    Per-cell Buck coefficients for the phase implied by the air temperature.

    Args:
        temperature_celsius: Air temperature in °C (array)

    Returns:
        BuckCoefficients whose members are arrays shaped like the input,
        holding water constants where t > 0 and ice constants elsewhere
    """
    above_freezing = np.asarray(temperature_celsius) > 0
    return BuckCoefficients(*(
        np.where(above_freezing, water, ice)
        for water, ice in zip(BUCK_WATER, BUCK_ICE)
    ))


def pure_phase_vapor_pressure(temperature_celsius: Union[float, np.ndarray],
                              coefficients: BuckCoefficients) -> Union[float, np.ndarray]:
    """
    Vapour pressure over a pure plane water or ice surface (Buck 1981).

    Args:
        temperature_celsius: Temperature in °C at which saturation is evaluated
            (air temperature for saturation, dew point for actual vapour pressure)
        coefficients: Phase coefficients (see ``select_buck_coefficients``)

    Returns:
        Vapour pressure in hPa
    """
    t = np.asarray(temperature_celsius)
    return coefficients.a * np.exp((coefficients.b - t / coefficients.d) * t / (t + coefficients.c))


def enhancement_factor(temperature_celsius: Union[float, np.ndarray],
                       pressure_hpa: Union[float, np.ndarray],
                       coefficients: BuckCoefficients) -> Union[float, np.ndarray]:
    """
    Buck enhancement factor correcting pure-phase vapour pressure for moist air.

    Args:
        temperature_celsius: Air temperature in °C
        pressure_hpa: Air pressure in hPa
        coefficients: Phase coefficients

    Returns:
        Dimensionless enhancement factor (slightly above 1)
    """
    t = np.asarray(temperature_celsius)
    return 1.0 + coefficients.x + np.asarray(pressure_hpa) * (coefficients.y + coefficients.z * t ** 2)


def calculate_humidity(temperature_kelvin: np.ndarray,
                       dewpoint_kelvin: np.ndarray,
                       pressure_pa: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Specific and relative humidity from temperature, dew point and pressure.

    Scientific Background:
    With ``e`` the actual and ``e_s`` the saturation vapour pressure (both
    including the enhancement factor), the inverse mixing ratio is
    ``(p/e - 1)/ε`` with ε = Rd/Rv = 0.62198. Specific humidity follows as
    ``1/(r⁻¹ + 1)`` and relative humidity, expressed over the saturation
    specific humidity, as ``100·(p/e_s + ε - 1)·huss/ε``.

    Args:
        temperature_kelvin: 2 m air temperature in K
        dewpoint_kelvin: 2 m dew point temperature in K
        pressure_pa: Surface pressure in Pa

    Returns:
        Tuple of (huss in kg kg-1, hurs in %) as float64 arrays. Cells where
        any input is NaN come back as NaN.

    Raises:
        NumericDomainError: If any valid cell has non-positive pressure or
            vapour pressure, vapour pressure not below air pressure, or a
            non-finite result

    Example:
        >>> huss, hurs = calculate_humidity(np.array([293.15]), np.array([283.15]), np.array([101325.0]))
        >>> # huss ≈ 0.0076 kg/kg, hurs ≈ 52 %
    """
    t = temperature_kelvin_to_celsius(np.asarray(temperature_kelvin, dtype=np.float64))
    d = temperature_kelvin_to_celsius(np.asarray(dewpoint_kelvin, dtype=np.float64))
    p = pressure_pa_to_hpa(np.asarray(pressure_pa, dtype=np.float64))

    valid = np.isfinite(t) & np.isfinite(d) & np.isfinite(p)
    if np.any(p[valid] <= 0):
        raise NumericDomainError(
            "Surface pressure must be positive",
            context={'invalid_cells': int(np.count_nonzero(p[valid] <= 0))}
        )

    coefficients = select_buck_coefficients(t)
    epsilon = PhysicalConstants.RD_OVER_RV

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        factor = enhancement_factor(t, p, coefficients)
        vapor_pressure = pure_phase_vapor_pressure(d, coefficients) * factor
        saturation_vapor_pressure = pure_phase_vapor_pressure(t, coefficients) * factor

        _check_vapor_pressure(vapor_pressure, saturation_vapor_pressure, p, valid)

        mixing_ratio_inverse = (p / vapor_pressure - 1.0) / epsilon
        huss = 1.0 / (mixing_ratio_inverse + 1.0)
        hurs = 100.0 * (p / saturation_vapor_pressure + epsilon - 1.0) * huss / epsilon

    bad = valid & ~(np.isfinite(huss) & np.isfinite(hurs))
    if np.any(bad):
        raise NumericDomainError(
            "Humidity derivation produced non-finite values",
            context={'invalid_cells': int(np.count_nonzero(bad))}
        )

    huss = np.where(valid, huss, np.nan)
    hurs = np.where(valid, hurs, np.nan)
    return huss, hurs


def _check_vapor_pressure(vapor_pressure: np.ndarray,
                          saturation_vapor_pressure: np.ndarray,
                          pressure_hpa: np.ndarray,
                          valid: np.ndarray) -> None:
    """Raise NumericDomainError where the vapour pressures leave the physical range."""
    e = vapor_pressure[valid]
    e_s = saturation_vapor_pressure[valid]
    p = pressure_hpa[valid]

    checks = {
        'actual vapour pressure is not positive': ~(e > 0),
        'saturation vapour pressure is not positive': ~(e_s > 0),
        'vapour pressure is not below air pressure': e >= p,
    }
    for description, failed in checks.items():
        if np.any(failed):
            raise NumericDomainError(
                f"Humidity derivation undefined: {description}",
                context={'invalid_cells': int(np.count_nonzero(failed))}
            )


class PsychrometricDeriver:
    """
    Derive hourly huss and hurs GridFields from co-located tas, dewptas and ps.

    The deriver holds no state between calls; each call returns two new
    GridFields on the input axes carrying the canonical huss/hurs metadata.
    """

    def __init__(self):
        self.logger = get_component_logger(self.__class__.__name__)

    def derive(self, tas: GridField, dewptas: GridField, ps: GridField) -> Tuple[GridField, GridField]:
        """
        Compute specific and relative humidity.

        Args:
            tas: Air temperature (K)
            dewptas: Dew point temperature (K)
            ps: Surface pressure (Pa)

        Returns:
            Tuple of (huss, hurs) GridFields, float32

        Raises:
            AxisMismatchError: If the inputs are not co-registered
            NumericDomainError: If inputs are outside the valid range
        """
        require_colocated(tas, dewptas, ps)

        self.logger.debug(f"Deriving huss/hurs for {tas.period_label()} on {tas.shape}")
        huss, hurs = calculate_humidity(tas.masked_values(), dewptas.masked_values(), ps.masked_values())

        return (
            _derived_field(tas, 'huss', huss),
            _derived_field(tas, 'hurs', hurs),
        )


class WindSpeedDeriver:
    """Derive hourly sfcwind from co-located uas and vas GridFields."""

    def __init__(self):
        self.logger = get_component_logger(self.__class__.__name__)

    def derive(self, uas: GridField, vas: GridField) -> GridField:
        """
        Compute scalar wind speed ``sqrt(uas² + vas²)``.

        Args:
            uas: Eastward wind component (m s-1)
            vas: Northward wind component (m s-1)

        Returns:
            sfcwind GridField, float32

        Raises:
            AxisMismatchError: If the inputs are not co-registered
        """
        require_colocated(uas, vas)

        self.logger.debug(f"Deriving sfcwind for {uas.period_label()} on {uas.shape}")
        speed = np.hypot(uas.masked_values(), vas.masked_values())

        return _derived_field(uas, 'sfcwind', speed)


def _derived_field(template: GridField, variable_id: str, values: np.ndarray) -> GridField:
    """New GridField on the template's axes with canonical metadata for ``variable_id``."""
    policy = get_variable_policy(variable_id)
    return template.replace(
        variable_id=variable_id,
        values=values.astype(OUTPUT_DTYPE),
        units=policy.units,
        standard_name=policy.standard_name,
        long_name=policy.long_name,
        attributes={},
    )
