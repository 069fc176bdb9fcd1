"""
Physical Constants and Unit Conversions for ERA5 Forcing Preprocessing

This module provides the physical constants and unit conversion utilities used
by the derivation and aggregation stages. Humidity constants follow Buck (1981)
as tabulated in the Buck Research CR-1A User's Manual, Appendix 1.

Scientific Context:
ERA5 delivers temperatures in K, pressure in Pa, and accumulated quantities
(precipitation in metres, radiation in J m-2) per hourly step. The forcing
convention requires K, Pa, kg m-2 s-1 and W m-2, so every conversion used by
the pipeline is collected here.

References:
- Buck (1981), J. Appl. Meteorol. 20, 1527-1532,
  doi:10.1175/1520-0450(1981)020<1527:NEFCVP>2.0.CO;2
- ECMWF ERA5 parameter documentation (accumulation conventions)
"""

from typing import NamedTuple, Union

import numpy as np


# =============================================================================
# PHYSICAL CONSTANTS
# =============================================================================

class PhysicalConstants:
    """
    Collection of physical constants used in forcing derivation.
    """

    # Temperature
    ZERO_CELSIUS_IN_KELVIN = 273.15  # K

    # Ratio of gas constants of dry air and water vapour, Rd/Rv
    RD_OVER_RV = 0.62198

    # Liquid water density, used for precipitation depth -> mass
    DENSITY_WATER_LIQUID = 1000.0  # kg m⁻³

    # Time
    SECONDS_PER_HOUR = 3600.0
    SECONDS_PER_DAY = 86400.0
    HOURS_PER_DAY = 24


class BuckCoefficients(NamedTuple):
    """
    Phase-dependent coefficients of the Buck (1981) vapour pressure model.

    Saturation vapour pressure over the pure phase is
    ``a * exp((b - t/d) * t / (t + c))`` in hPa for ``t`` in °C, and the
    enhancement factor is ``1 + x + p * (y + z * t**2)`` for ``p`` in hPa.
    """
    a: float
    b: float
    c: float
    d: float
    x: float
    y: float
    z: float


BUCK_WATER = BuckCoefficients(a=6.1121, b=18.729, c=257.87, d=227.3,
                              x=7.2e-4, y=3.20e-6, z=5.9e-10)

BUCK_ICE = BuckCoefficients(a=6.1115, b=23.036, c=279.82, d=333.7,
                            x=2.2e-4, y=3.83e-6, z=6.4e-10)


# Daily divisor that turns a daily sum of hourly ERA5 precipitation depths (m)
# into a mean mass flux: 1000 kg m-3 / 86400 s = 1 / 86.4
PRECIPITATION_DAILY_SUM_DIVISOR = PhysicalConstants.SECONDS_PER_DAY / PhysicalConstants.DENSITY_WATER_LIQUID

# Hourly radiation accumulations (J m-2) -> mean power (W m-2)
RADIATION_HOURLY_DIVISOR = PhysicalConstants.SECONDS_PER_HOUR


# =============================================================================
# UNIT CONVERSION FUNCTIONS
# =============================================================================

def temperature_kelvin_to_celsius(temperature_kelvin: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """
    Convert temperature from Kelvin to Celsius.

    Args:
        temperature_kelvin: Temperature in Kelvin

    Returns:
        Temperature in Celsius
    """
    return np.asarray(temperature_kelvin) - PhysicalConstants.ZERO_CELSIUS_IN_KELVIN


def pressure_pa_to_hpa(pressure_pa: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """
    Convert pressure from Pascals to hectopascals (millibars).

    Args:
        pressure_pa: Pressure in Pascals

    Returns:
        Pressure in hectopascals (hPa)
    """
    return np.asarray(pressure_pa) * 0.01
