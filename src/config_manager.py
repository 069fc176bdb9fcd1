"""
Unified Configuration System for ERA5 Forcing Preprocessing

This module provides centralized configuration management with clear hierarchy:
1. Built-in defaults (lowest priority)
2. Configuration files (YAML/JSON)
3. Environment variables
4. Command-line arguments (highest priority)
"""

import copy
import os
import json
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml

from coordinate_systems import CoordinateGrid
from forcing_variables import DAILY_FORCING_VARIABLES, VARIABLE_POLICIES
from logging_utils import ConfigurationError
from metadata_normalizer import ISIMIP_TITLE
from temporal_aggregation import INCOMPLETE_DAY_POLICIES


VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Map environment variables to config paths
ENVIRONMENT_MAPPINGS = {
    'FORCING_DATA_ROOT': 'paths.data_root',
    'FORCING_LOG_LEVEL': 'processing.log_level',
    'FORCING_MAX_WORKERS': 'processing.max_workers',
    'FORCING_WEIGHTS_DIR': 'paths.weights_dir',
    'FORCING_DAY_POLICY': 'processing.incomplete_day_policy',
}


class ForcingConfig:
    """
    Unified configuration system for ERA5 forcing preprocessing.

    Provides centralized configuration management with clear hierarchy:
    1. Built-in defaults
    2. Configuration files (YAML/JSON)
    3. Environment variables
    4. Command-line arguments (highest priority)
    """

    def __init__(self, config_file: Optional[str] = None, cli_args: Optional[Dict] = None):
        """
        Initialize configuration system with proper precedence order.

        Args:
            config_file: Path to YAML or JSON configuration file
            cli_args: Nested dictionary of command-line overrides (highest priority)

        Raises:
            ConfigurationError: If the file cannot be read or the merged
                configuration is invalid
        """
        self.config_file = config_file
        self.cli_args = cli_args or {}
        self._config = {}
        self._load_configuration()

    def _load_configuration(self):
        """Load configuration with proper precedence order"""
        self._config = self._get_default_config()

        if self.config_file:
            file_config = self._load_config_file(self.config_file)
            self._merge_config(self._config, file_config)

        env_config = self._load_environment_config()
        self._merge_config(self._config, env_config)

        if self.cli_args:
            self._merge_config(self._config, copy.deepcopy(self.cli_args))

        self._validate_configuration()

    @staticmethod
    def _get_default_config() -> Dict[str, Any]:
        """Built-in default configuration"""
        return {
            'paths': {
                'data_root': './DATA/ERA5',
                'raw_subdir': 'raw',
                'derived_subdir': 'derived',
                'regridded_subdir': 'daily_0p5deg',
                'weights_dir': None,   # defaults to <data_root>/weights
                'weights_file': None,  # fixed weights file instead of hash-named ones
                'log_dir': None,
            },
            'processing': {
                'max_workers': 1,
                'chunk_days': 31,
                'incomplete_day_policy': 'fail',
                'log_level': 'INFO',
                'write_hourly': True,
            },
            'variables': {
                'daily': list(DAILY_FORCING_VARIABLES),
                'derive_tasrange': True,
            },
            'years': [],
            'target_grid': {
                'resolution': 0.5,
                'bounds': [-89.75, -179.75, 89.75, 179.75],  # S, W, N, E cell centres
                'latitude_descending': True,
                'griddes_file': None,
                'griddes': None,
            },
            'output': {
                'compression_level': 5,
                'time_units': 'days since 1900-01-01 00:00:00',
                'calendar': 'proleptic_gregorian',
                'missing_value': 1e20,
                'title': ISIMIP_TITLE,
                'file_prefix': 'era5_obsclim',
            },
        }

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}",
                                     context={'config_file': str(config_path)})

        with open(config_path, 'r') as f:
            try:
                if config_path.suffix.lower() in ['.yaml', '.yml']:
                    loaded = yaml.safe_load(f) or {}
                elif config_path.suffix.lower() == '.json':
                    loaded = json.load(f)
                else:
                    raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}",
                                             context={'config_file': str(config_path)})
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"Cannot parse {config_path}: {e}",
                                         context={'config_file': str(config_path)}) from e

        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        return loaded

    def _load_environment_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        env_config = {}

        for env_var, config_path in ENVIRONMENT_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is not None:
                self._set_nested_config(env_config, config_path, value)

        return env_config

    def _set_nested_config(self, config_dict: Dict, path: str, value: Any):
        """Set nested configuration value using dot notation path"""
        keys = path.split('.')
        current = config_dict

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        # Convert string values to appropriate types
        if isinstance(value, str):
            if value.lower() in ['true', 'false']:
                value = value.lower() == 'true'
            elif value.isdigit():
                value = int(value)
            elif value.replace('.', '', 1).isdigit():
                value = float(value)

        current[keys[-1]] = value

    def _merge_config(self, base_config: Dict, override_config: Dict):
        """Deep merge configuration dictionaries"""
        for key, value in override_config.items():
            if key in base_config and isinstance(base_config[key], dict) and isinstance(value, dict):
                self._merge_config(base_config[key], value)
            else:
                base_config[key] = value

    def _validate_configuration(self):
        """Validate final configuration"""
        for section in ['paths', 'processing', 'variables', 'target_grid', 'output']:
            if not isinstance(self._config.get(section), dict):
                raise ConfigurationError(f"Required configuration section missing: {section}")

        self._validate_processing_config()
        self._validate_variables_config()
        self._validate_target_grid_config()
        self._validate_output_config()

        years = self._config.get('years') or []
        if not all(isinstance(year, int) for year in years):
            raise ConfigurationError("years must be a list of integers", context={'years': years})

    def _validate_processing_config(self):
        """Validate processing section configuration"""
        processing = self._config['processing']

        max_workers = processing.get('max_workers', 1)
        if not isinstance(max_workers, int) or max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1", context={'max_workers': max_workers})

        chunk_days = processing.get('chunk_days', 31)
        if not isinstance(chunk_days, int) or chunk_days < 1:
            raise ConfigurationError("chunk_days must be a positive integer", context={'chunk_days': chunk_days})

        policy = processing.get('incomplete_day_policy')
        if policy not in INCOMPLETE_DAY_POLICIES:
            raise ConfigurationError(f"incomplete_day_policy must be one of: {list(INCOMPLETE_DAY_POLICIES)}",
                                     context={'incomplete_day_policy': policy})

        log_level = str(processing.get('log_level', 'INFO')).upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of: {VALID_LOG_LEVELS}",
                                     context={'log_level': log_level})
        processing['log_level'] = log_level

    def _validate_variables_config(self):
        """Validate variables section configuration"""
        daily = self._config['variables'].get('daily', [])
        if not isinstance(daily, list):
            raise ConfigurationError("variables.daily must be a list")

        unknown = [variable for variable in daily if variable not in VARIABLE_POLICIES]
        if unknown:
            raise ConfigurationError(f"Unknown variables: {unknown}", context={'unknown': unknown})

        without_reduction = [variable for variable in daily if VARIABLE_POLICIES[variable].reduction is None]
        if without_reduction:
            raise ConfigurationError(f"Variables without a daily reduction: {without_reduction}",
                                     context={'variables': without_reduction})

    def _validate_target_grid_config(self):
        """Validate target grid configuration"""
        grid = self._config['target_grid']
        if grid.get('griddes') or grid.get('griddes_file'):
            return

        resolution = grid.get('resolution')
        if not isinstance(resolution, (int, float)) or resolution <= 0:
            raise ConfigurationError("target_grid.resolution must be positive", context={'resolution': resolution})

        bounds = grid.get('bounds')
        if not bounds or len(bounds) != 4:
            raise ConfigurationError("Grid bounds must be [South, West, North, East]", context={'bounds': bounds})

        south, west, north, east = bounds
        if not (-90 <= south < north <= 90):
            raise ConfigurationError("Invalid latitude bounds. Must be -90 <= South < North <= 90")
        if not (west < east and east - west < 360):
            raise ConfigurationError("Invalid longitude bounds. Must be West < East within 360 degrees")

    def _validate_output_config(self):
        """Validate output configuration"""
        level = self._config['output'].get('compression_level', 5)
        if not isinstance(level, int) or not 0 <= level <= 9:
            raise ConfigurationError("compression_level must be between 0 and 9", context={'compression_level': level})

    # Public interface methods
    def get(self, path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation path.

        Args:
            path: Dot-separated path to configuration value (e.g., 'processing.max_workers')
            default: Default value if path not found

        Returns:
            Configuration value or default if not found
        """
        keys = path.split('.')
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_output_config(self) -> Dict[str, Any]:
        return self._config['output']

    def get_daily_variables(self) -> List[str]:
        return list(self._config['variables']['daily'])

    def get_years(self) -> List[int]:
        return list(self._config.get('years') or [])

    @property
    def data_root(self) -> Path:
        return Path(self._config['paths']['data_root'])

    @property
    def raw_dir(self) -> Path:
        return self.data_root / self._config['paths']['raw_subdir']

    @property
    def derived_dir(self) -> Path:
        return self.data_root / self._config['paths']['derived_subdir']

    @property
    def regridded_dir(self) -> Path:
        return self.data_root / self._config['paths']['regridded_subdir']

    @property
    def weights_dir(self) -> Path:
        weights_dir = self._config['paths'].get('weights_dir')
        return Path(weights_dir) if weights_dir else self.data_root / 'weights'

    def get_target_grid(self) -> CoordinateGrid:
        """
        Target grid of the spatial resampling step.

        A griddes text or file takes precedence over resolution and bounds.
        """
        grid = self._config['target_grid']
        if grid.get('griddes'):
            return CoordinateGrid.from_griddes(grid['griddes'])
        if grid.get('griddes_file'):
            return CoordinateGrid.from_griddes_file(grid['griddes_file'])
        return CoordinateGrid.from_resolution(
            grid['resolution'], grid['bounds'], latitude_descending=grid.get('latitude_descending', True)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return complete configuration as dictionary"""
        return copy.deepcopy(self._config)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ForcingConfig':
        """Rebuild a configuration from ``to_dict`` output, e.g. inside a worker process."""
        return cls(cli_args=config_dict)

    def save_config(self, output_path: str):
        """
        Save current configuration to file.

        Args:
            output_path: Path where to save configuration file
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if output_path.suffix.lower() in ['.yaml', '.yml']:
            with open(output_path, 'w') as f:
                yaml.dump(self._config, f, default_flow_style=False, indent=2)
        elif output_path.suffix.lower() == '.json':
            with open(output_path, 'w') as f:
                json.dump(self._config, f, indent=2)
        else:
            raise ConfigurationError(f"Unsupported output format: {output_path.suffix}")

    @classmethod
    def create_template_config(cls, output_path: Optional[str] = None) -> str:
        """
        Write a commented YAML template with the default settings.

        Args:
            output_path: Optional path to save template (default: forcing_config.yaml)

        Returns:
            Path of the written template
        """
        output_file = Path(output_path or 'forcing_config.yaml')
        defaults = cls._get_default_config()

        header = [
            "# ERA5 forcing preprocessing configuration",
            "# Environment overrides: " + ", ".join(ENVIRONMENT_MAPPINGS),
            "# years: list of calendar years to process, e.g. [2021, 2022]",
            "",
        ]
        with open(output_file, 'w') as f:
            f.write("\n".join(header))
            yaml.dump(defaults, f, default_flow_style=False, indent=2, sort_keys=False)

        return str(output_file)
