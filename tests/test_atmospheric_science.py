"""
Tests for humidity and wind speed derivation.
"""

import numpy as np
import pytest

from conftest import build_field, hourly_times

from atmospheric_science import (
    PsychrometricDeriver,
    WindSpeedDeriver,
    calculate_humidity,
    select_buck_coefficients,
)
from logging_utils import AxisMismatchError, NumericDomainError
from units_constants import BUCK_ICE, BUCK_WATER


def test_humidity_reference_values():
    """20 °C air, 10 °C dew point, standard pressure"""
    huss, hurs = calculate_humidity(np.array([293.15]), np.array([283.15]), np.array([101325.0]))

    assert huss[0] == pytest.approx(0.00760, abs=5e-5)
    assert hurs[0] == pytest.approx(52.3, abs=0.3)


def test_saturated_air_gives_full_relative_humidity():
    temperature = np.array([253.15, 273.15, 283.15, 303.15])
    pressure = np.full(4, 95000.0)

    _, hurs = calculate_humidity(temperature, temperature, pressure)

    np.testing.assert_allclose(hurs, 100.0, rtol=1e-10)


def test_specific_humidity_increases_with_dewpoint():
    temperature = np.full(3, 300.0)
    dewpoint = np.array([280.0, 290.0, 299.0])

    huss, hurs = calculate_humidity(temperature, dewpoint, np.full(3, 100000.0))

    assert np.all(np.diff(huss) > 0)
    assert np.all(np.diff(hurs) > 0)
    assert np.all((hurs > 0) & (hurs < 100))


def test_humidity_bounds_over_ice_and_water():
    """0 < hurs <= 100 and huss > 0 whenever the dew point does not exceed the air temperature"""
    rng = np.random.default_rng(1981)
    temperature = rng.uniform(200.0, 320.0, 50000)
    depression = rng.uniform(0.0, 60.0, temperature.size)
    depression[::10] = 0.0
    pressure = rng.uniform(50000.0, 105000.0, temperature.size)

    huss, hurs = calculate_humidity(temperature, temperature - depression, pressure)

    assert np.any(temperature <= 273.15) and np.any(temperature > 273.15)
    assert np.all(huss > 0)
    assert np.all(hurs > 0)
    assert np.all(hurs <= 100.0 + 1e-9)


def test_coefficients_switch_phase_above_freezing():
    coefficients = select_buck_coefficients(np.array([-5.0, 0.0, 0.1, 25.0]))

    np.testing.assert_array_equal(coefficients.a, [BUCK_ICE.a, BUCK_ICE.a, BUCK_WATER.a, BUCK_WATER.a])
    np.testing.assert_array_equal(coefficients.z, [BUCK_ICE.z, BUCK_ICE.z, BUCK_WATER.z, BUCK_WATER.z])


def test_nonpositive_pressure_rejected():
    with pytest.raises(NumericDomainError):
        calculate_humidity(np.array([290.0, 290.0]), np.array([280.0, 280.0]), np.array([100000.0, 0.0]))


def test_vapour_pressure_above_air_pressure_rejected():
    # 5 hPa air pressure cannot hold a 20 °C dew point
    with pytest.raises(NumericDomainError):
        calculate_humidity(np.array([300.0]), np.array([293.15]), np.array([500.0]))


def test_missing_cells_propagate():
    temperature = np.array([290.0, np.nan, 290.0])
    dewpoint = np.array([280.0, 280.0, np.nan])

    huss, hurs = calculate_humidity(temperature, dewpoint, np.full(3, 100000.0))

    assert np.isfinite(huss[0]) and np.isfinite(hurs[0])
    assert np.isnan(huss[1]) and np.isnan(hurs[2])


class TestPsychrometricDeriver:
    """Test PsychrometricDeriver on GridFields"""

    def setup_method(self):
        self.deriver = PsychrometricDeriver()
        self.tas = build_field('tas', 293.15, units='K')
        self.dewptas = build_field('dewptas', 283.15, units='K')
        self.ps = build_field('ps', 101325.0, units='Pa')

    def test_outputs_share_input_axes(self):
        huss, hurs = self.deriver.derive(self.tas, self.dewptas, self.ps)

        assert huss.variable_id == 'huss' and hurs.variable_id == 'hurs'
        assert huss.is_colocated(self.tas) and hurs.is_colocated(self.tas)
        assert huss.values.dtype == np.float32
        assert huss.units == 'kg kg-1'
        assert hurs.units == '%'

    def test_sentinel_missing_values_propagate(self):
        values = np.full(self.tas.shape, 293.15)
        values[0, 0, 0] = 1e20
        tas = self.tas.replace(values=values)

        huss, _ = self.deriver.derive(tas, self.dewptas, self.ps)

        assert np.isnan(huss.values[0, 0, 0])
        assert np.isfinite(huss.values[0, 0, 1])

    def test_mismatched_time_axes_rejected(self):
        shifted = build_field('dewptas', 283.15, times=hourly_times('2021-01-02T00'))

        with pytest.raises(AxisMismatchError):
            self.deriver.derive(self.tas, shifted, self.ps)

    def test_mismatched_grid_rejected(self):
        other_grid = build_field('ps', 101325.0, lon=[10.5, 11.5, 12.5, 13.5])

        with pytest.raises(AxisMismatchError):
            self.deriver.derive(self.tas, self.dewptas, other_grid)


def test_wind_speed_magnitude():
    uas = build_field('uas', 3.0)
    vas = build_field('vas', -4.0)

    sfcwind = WindSpeedDeriver().derive(uas, vas)

    np.testing.assert_allclose(sfcwind.values, 5.0)
    assert sfcwind.variable_id == 'sfcwind'
    assert sfcwind.units == 'm s-1'
    assert sfcwind.values.dtype == np.float32


def test_wind_speed_requires_colocated_components():
    with pytest.raises(AxisMismatchError):
        WindSpeedDeriver().derive(build_field('uas', 1.0), build_field('vas', 1.0, lat=[3, 2, 1, 0]))
