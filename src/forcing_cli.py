#!/usr/bin/env python3
"""
ERA5 Forcing Preprocessor CLI

Command-line interface for turning hourly ERA5 files into daily forcing files
on the ISIMIP half-degree grid.

Usage examples:
    # Full pipeline for two years with four worker processes
    python forcing_cli.py --data-root ./DATA/ERA5 --max-workers 4 run --years 2021 2022

    # Single stages
    python forcing_cli.py hourly --variable huss --year 2021
    python forcing_cli.py daily tas_hourly.nc --variable tas --output tas_day.nc
    python forcing_cli.py regrid tas_day.nc --variable tas --output tas_0p5deg.nc
    python forcing_cli.py tasrange ./daily_0p5deg/2021/
"""

import argparse
import sys
from typing import Any, Dict, List

from config_manager import ForcingConfig
from coordinate_systems import CoordinateGrid, StandardGrids
from diurnal_range import derive_tasrange_directory
from forcing_processor import ForcingProcessor
from forcing_variables import describe_variables
from logging_utils import ForcingError, get_component_logger
from netcdf_infrastructure import write_griddes


logger = get_component_logger('cli')


def build_cli_overrides(args) -> Dict[str, Any]:
    """Nested configuration overrides from the global options."""
    overrides: Dict[str, Any] = {}
    if args.data_root:
        overrides.setdefault('paths', {})['data_root'] = args.data_root
    if args.weights_dir:
        overrides.setdefault('paths', {})['weights_dir'] = args.weights_dir
    if args.log_level:
        overrides.setdefault('processing', {})['log_level'] = args.log_level
    if args.max_workers:
        overrides.setdefault('processing', {})['max_workers'] = args.max_workers
    if args.day_policy:
        overrides.setdefault('processing', {})['incomplete_day_policy'] = args.day_policy
    if args.chunk_days:
        overrides.setdefault('processing', {})['chunk_days'] = args.chunk_days
    if getattr(args, 'griddes', None):
        overrides['target_grid'] = {'griddes_file': args.griddes}
    return overrides


def load_config(args) -> ForcingConfig:
    return ForcingConfig(config_file=args.config, cli_args=build_cli_overrides(args))


def handle_run(args) -> int:
    """Run the full pipeline for the requested years."""
    processor = ForcingProcessor(load_config(args))
    years = args.years or processor.config.get_years()
    if not years:
        logger.error("No years given (use --years or the 'years' config entry)")
        return 1

    summary = processor.run_batch(years=years, variables=args.variables)
    summary_path = processor.save_summary(summary, args.summary)

    print(f"Units: {summary['total_units']}, succeeded: {summary['successful_units']}, "
          f"failed: {summary['failed_units']}")
    for failure in summary['failures']:
        print(f"  ✗ {failure['variable_id']} {failure['year']}: {failure['error_type']}: {failure['error']}")
    print(f"Summary: {summary_path}")
    return 0 if summary['failed_units'] == 0 else 1


def handle_hourly(args) -> int:
    """Derive and write the canonical hourly file for one variable and year."""
    processor = ForcingProcessor(load_config(args))
    path = processor.run_hourly(args.variable, args.year)
    if path is None:
        print(f"✗ No hourly data for {args.variable} in {args.year}")
        return 1
    print(f"✓ {path}")
    return 0


def handle_daily(args) -> int:
    """Aggregate one hourly file to daily values."""
    processor = ForcingProcessor(load_config(args))
    path = processor.aggregate_file(args.input, args.variable, args.output)
    print(f"✓ {path}")
    return 0


def handle_regrid(args) -> int:
    """Remap one daily file to the target grid."""
    processor = ForcingProcessor(load_config(args))
    path = processor.regrid_file(args.input, args.variable, args.output)
    print(f"✓ {path}")
    return 0


def handle_tasrange(args) -> int:
    """Derive tasrange for every tasmax file in a directory."""
    config = load_config(args)
    processor = ForcingProcessor(config)
    result = derive_tasrange_directory(args.input_dir, args.output_dir or args.input_dir,
                                       reader=processor.reader, writer=processor.writer)
    for path in result.written:
        print(f"✓ {path}")
    for source, error in result.failures.items():
        print(f"✗ {source}: {error}")
    return 0 if result.success else 1


def handle_list_variables(args) -> int:
    """List every variable with its reduction rule and units."""
    print("ERA5 Forcing Variables:")
    print("=" * 80)
    print(f"{'id':<10} {'reduction':<10} {'units':<12} {'era5 name / derived from'}")
    for variable_id, info in describe_variables().items():
        source = info['era5_name'] or f"({info['derived_from']})"
        print(f"{variable_id:<10} {str(info['reduction'] or '-'):<10} {info['units']:<12} {source}")
    return 0


def handle_write_griddes(args) -> int:
    """Write a CDO grid description of a standard or configured grid."""
    if args.grid == 'era5':
        grid: CoordinateGrid = StandardGrids.create_era5_quarter_degree()
    elif args.grid == 'isimip':
        grid = StandardGrids.create_isimip_half_degree()
    else:
        grid = load_config(args).get_target_grid()
    print(f"✓ {write_griddes(grid, args.output)}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        description='ERA5 Forcing Preprocessor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full pipeline
  %(prog)s --data-root ./DATA/ERA5 run --years 2021 2022

  # Drop incomplete days instead of failing
  %(prog)s --day-policy drop run --years 2021

  # List supported variables
  %(prog)s list-variables
        """
    )
    parser.add_argument('--config', help='YAML or JSON configuration file')
    parser.add_argument('--data-root', help='Root of the raw/, derived/ and output directories')
    parser.add_argument('--weights-dir', help='Directory for cached remap weights')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    parser.add_argument('--max-workers', type=int, help='Worker processes for batch runs')
    parser.add_argument('--day-policy', choices=['fail', 'drop'], help='Handling of incomplete days')
    parser.add_argument('--chunk-days', type=int, help='Calendar days read per block')

    subparsers = parser.add_subparsers(title='commands', dest='command', help='Command to execute')

    run_parser = subparsers.add_parser('run', help='Run the full pipeline')
    run_parser.add_argument('--years', type=int, nargs='+', help='Years to process')
    run_parser.add_argument('--variables', nargs='+', help='Daily variables (default: all)')
    run_parser.add_argument('--summary', help='Path of the JSON run summary')
    run_parser.add_argument('--griddes', help='CDO grid description of the target grid')
    run_parser.set_defaults(func=handle_run)

    hourly_parser = subparsers.add_parser('hourly', help='Derive canonical hourly files')
    hourly_parser.add_argument('--variable', required=True)
    hourly_parser.add_argument('--year', type=int, required=True)
    hourly_parser.set_defaults(func=handle_hourly)

    daily_parser = subparsers.add_parser('daily', help='Aggregate an hourly file to daily')
    daily_parser.add_argument('input')
    daily_parser.add_argument('--variable', required=True)
    daily_parser.add_argument('--output', required=True)
    daily_parser.set_defaults(func=handle_daily)

    regrid_parser = subparsers.add_parser('regrid', help='Remap a daily file to the target grid')
    regrid_parser.add_argument('input')
    regrid_parser.add_argument('--variable', required=True)
    regrid_parser.add_argument('--output', required=True)
    regrid_parser.add_argument('--griddes', help='CDO grid description of the target grid')
    regrid_parser.set_defaults(func=handle_regrid)

    tasrange_parser = subparsers.add_parser('tasrange', help='Derive tasrange for a directory')
    tasrange_parser.add_argument('input_dir')
    tasrange_parser.add_argument('--output-dir', help='Defaults to the input directory')
    tasrange_parser.set_defaults(func=handle_tasrange)

    list_parser = subparsers.add_parser('list-variables', help='List supported variables')
    list_parser.set_defaults(func=handle_list_variables)

    griddes_parser = subparsers.add_parser('write-griddes', help='Write a CDO grid description')
    griddes_parser.add_argument('output')
    griddes_parser.add_argument('--grid', choices=['isimip', 'era5', 'config'], default='isimip')
    griddes_parser.set_defaults(func=handle_write_griddes)

    return parser


def main(argv: List[str] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments. If None, uses sys.argv[1:]

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, 'func'):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except ForcingError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"✗ {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
