"""
ERA5 Forcing Preprocessor

Turns hourly ERA5 reanalysis fields into daily meteorological forcing files
on the ISIMIP half-degree grid.

Workflow:
- Derivation of humidity (Buck 1981) and wind speed from hourly inputs
- Hourly to daily aggregation with per-variable reduction rules
- First-order conservative remap with cached weights
- Daily temperature range from paired tasmax/tasmin
- Metadata normalization and compressed netCDF output
"""

__version__ = "1.0.0"
__author__ = "ERA5 Forcing Development Team"
