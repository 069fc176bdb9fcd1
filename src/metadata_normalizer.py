"""
Metadata Normalization for Forcing Output

Brings GridFields read from ERA5/CDS files into the canonical forcing
metadata: GRIB-specific attributes and file history are removed, axes get
their canonical names and labels, and the variable carries the standard
name, long name and units registered for it.
"""

from typing import Optional

from grid_field import GridField
from forcing_variables import AXIS_LABELS, get_variable_policy
from logging_utils import get_component_logger


ISIMIP_TITLE = 'ERA5 global meteorological forcing data processed based ISIMIP2 standards'

CANONICAL_AXIS_NAMES = ('time', 'lat', 'lon')

TIME_CALENDAR = 'proleptic_gregorian'

# Variable attribute prefix written by cfgrib
GRIB_ATTRIBUTE_PREFIX = 'GRIB_'

# Global attributes dropped from normalized files
DROPPED_GLOBAL_ATTRIBUTES = ('history',)


class MetadataNormalizer:
    """
    Normalize GridField metadata. Applying it twice gives the same result
    as applying it once.
    """

    def __init__(self):
        self.logger = get_component_logger(self.__class__.__name__)

    def normalize(self, field: GridField, title: Optional[str] = None) -> GridField:
        """
        Return a copy of ``field`` with canonical metadata.

        Args:
            field: Field to normalize
            title: Optional global ``title`` attribute to set

        Returns:
            Normalized GridField; values and axes values are unchanged
        """
        policy = get_variable_policy(field.variable_id)
        return self._normalized(field, policy.standard_name, policy.long_name, policy.units, title)

    def normalize_hourly(self, field: GridField) -> GridField:
        """
        Normalize an hourly block before daily aggregation.

        Derived variables (huss, hurs, sfcwind) already hold their final
        quantity and get the full registered metadata. Raw ERA5 inputs keep
        their own names and source units (``m`` for pr, ``J m-2`` for the
        radiation fluxes) until the aggregator rescales them.
        """
        policy = get_variable_policy(field.variable_id)
        if policy.is_derived:
            return self.normalize(field)
        return self._normalized(field, field.standard_name, field.long_name,
                                field.units or policy.source_units or '', None)

    def _normalized(self, field: GridField, standard_name: str, long_name: str,
                    units: str, title: Optional[str]) -> GridField:
        attributes = {
            name: value for name, value in field.attributes.items()
            if not name.startswith(GRIB_ATTRIBUTE_PREFIX)
        }
        global_attributes = {
            name: value for name, value in field.global_attributes.items()
            if name not in DROPPED_GLOBAL_ATTRIBUTES
        }
        if title is not None:
            global_attributes['title'] = title

        axis_attributes = {}
        for axis in CANONICAL_AXIS_NAMES:
            axis_attrs = {
                name: value for name, value in field.axis_attributes.get(axis, {}).items()
                if not name.startswith(GRIB_ATTRIBUTE_PREFIX)
            }
            axis_attrs['long_name'] = AXIS_LABELS[axis]
            axis_attributes[axis] = axis_attrs
        axis_attributes['time']['calendar'] = TIME_CALENDAR

        if field.axis_names != CANONICAL_AXIS_NAMES:
            self.logger.debug(f"{field.variable_id}: renaming axes {field.axis_names} -> {CANONICAL_AXIS_NAMES}")

        return field.replace(
            standard_name=standard_name,
            long_name=long_name,
            units=units,
            attributes=attributes,
            global_attributes=global_attributes,
            axis_names=CANONICAL_AXIS_NAMES,
            axis_attributes=axis_attributes,
        )
