"""
Daily Near-Surface Air Temperature Range

Derives ``tasrange = tasmax - tasmin`` from paired daily maximum and minimum
temperature series, either for one pair of GridFields or for every tasmax
file in a directory.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from grid_field import GridField, describe_axis_mismatch
from forcing_variables import get_variable_policy
from logging_utils import ForcingError, PairingError, get_component_logger
from netcdf_infrastructure import ForcingNetCDFReader, ForcingNetCDFWriter, list_netcdf_files


TASRANGE_COMMENT = 'This tasrange data has been produced as input meteorological forcing data for the JULES model.'


class RangeDeriver:
    """Compute the diurnal temperature range from co-located tasmax and tasmin."""

    def __init__(self):
        self.logger = get_component_logger(self.__class__.__name__)

    def derive(self, tasmax: GridField, tasmin: Optional[GridField]) -> GridField:
        """
        Compute tasrange.

        Args:
            tasmax: Daily maximum temperature (K)
            tasmin: Daily minimum temperature (K) on the same axes

        Returns:
            tasrange GridField, float32, missing wherever either input is

        Raises:
            PairingError: If tasmin is absent, the axes or period differ, or
                tasmax < tasmin in any valid cell
        """
        if tasmin is None:
            raise PairingError(
                "tasmin partner is missing",
                context={'period': tasmax.period_label()}
            )

        problem = describe_axis_mismatch(tasmax, tasmin)
        if problem is not None:
            raise PairingError(
                f"tasmax and tasmin are not paired: {problem}",
                context={'tasmax_period': tasmax.period_label(), 'tasmin_period': tasmin.period_label()}
            )

        high = tasmax.masked_values()
        low = tasmin.masked_values()
        valid = np.isfinite(high) & np.isfinite(low)

        inverted = valid & (high < low)
        if np.any(inverted):
            raise PairingError(
                "tasmax is below tasmin",
                context={'cells': int(np.count_nonzero(inverted)), 'period': tasmax.period_label()}
            )

        tasrange = np.where(valid, high - low, np.nan)

        policy = get_variable_policy('tasrange')
        global_attributes = dict(tasmax.global_attributes)
        global_attributes['comment'] = TASRANGE_COMMENT

        return tasmax.replace(
            variable_id='tasrange',
            values=tasrange.astype(np.float32),
            units=policy.units,
            standard_name=policy.standard_name,
            long_name=policy.long_name,
            global_attributes=global_attributes,
        )


@dataclass
class RangeBatchResult:
    """Files written by a directory run and the failures keyed by tasmax file."""
    written: List[Path] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failures


def partner_path(tasmax_path: Union[str, Path], variable_id: str) -> Path:
    """Sibling of a tasmax file with ``tasmax`` replaced by ``variable_id`` in the name."""
    tasmax_path = Path(tasmax_path)
    return tasmax_path.with_name(tasmax_path.name.replace('tasmax', variable_id, 1))


def derive_tasrange_directory(input_dir: Union[str, Path], output_dir: Union[str, Path],
                              reader: Optional[ForcingNetCDFReader] = None,
                              writer: Optional[ForcingNetCDFWriter] = None) -> RangeBatchResult:
    """
    Derive tasrange for every ``*_tasmax_*.nc`` file in a directory.

    Each tasmax file is paired with the file of the same name with
    ``tasmin`` in place of ``tasmax``; the output takes the same name with
    ``tasrange``. A failing pair is recorded and the batch continues.

    Args:
        input_dir: Directory holding tasmax and tasmin files
        output_dir: Directory for tasrange files

    Returns:
        RangeBatchResult
    """
    logger = get_component_logger('derive_tasrange_directory')
    reader = reader or ForcingNetCDFReader()
    writer = writer or ForcingNetCDFWriter()
    deriver = RangeDeriver()
    result = RangeBatchResult()

    tasmax_files = list_netcdf_files(input_dir, '*_tasmax_*.nc')
    if not tasmax_files:
        logger.warning(f"No tasmax files in {input_dir}")

    for tasmax_file in tasmax_files:
        start = time.time()
        tasmin_file = partner_path(tasmax_file, 'tasmin')
        output_file = Path(output_dir) / partner_path(tasmax_file, 'tasrange').name

        try:
            tasmax = reader.read_field(tasmax_file, 'tasmax')
            tasmin = reader.read_field(tasmin_file, 'tasmin') if tasmin_file.exists() else None
            writer.write_field(deriver.derive(tasmax, tasmin), output_file)
        except ForcingError as e:
            logger.error(f"tasrange failed for {tasmax_file.name}: {e}")
            result.failures[str(tasmax_file)] = f"{type(e).__name__}: {e}"
            continue

        result.written.append(output_file)
        logger.info(f"Wrote {output_file.name} in {time.time() - start:.2f} s")

    return result
