"""
NDVI Drought Monitoring Pipeline

Main entry point for the NDVI drought monitoring pipeline.
This file serves as a clean CLI wrapper around the modular orchestrator.

The actual processing logic is handled by the orchestrator which coordinates
the fit loop, anomaly, event and classification components.

Usage:
    python NDVIPipeline.py --input observations.parquet [options]
"""

import sys
import argparse
from datetime import datetime

from ndvi_processing.Orchestrator import FIT_STYLES, NDVIDroughtOrchestrator
from ndvi_processing.data_constants import CLASSIFICATION_METHODS, FILE_FORMAT_EXTENSIONS, REGION_CONFIGS
from ndvi_processing.logging_utils import LogLevel, set_log_level


def parse_int_list(value):
    """Parse '2019,2020' or '2015-2018' (or a mix) into a sorted list of ints"""
    values = set()
    for part in value.split(','):
        part = part.strip()
        if not part:
            continue
        if '-' in part:
            start, end = part.split('-', 1)
            values.update(range(int(start), int(end) + 1))
        else:
            values.add(int(part))
    return sorted(values)


def build_parser():
    parser = argparse.ArgumentParser(description='Fit NDVI norms and year predictions and compute drought anomalies')
    parser.add_argument('--input', required=True,
                       help='Harmonized observation table (csv, parquet, feather or pkl)')
    parser.add_argument('--output-dir', default='ndvi_output',
                       help='Output directory for summary tables and per-unit files (default: ndvi_output)')
    parser.add_argument('--mode', choices=['temporal', 'spatial'], default='temporal',
                       help='temporal: one smooth per group over the day offset; spatial: one x,y surface per DOY (default: temporal)')
    parser.add_argument('--fit-style', choices=list(FIT_STYLES), default='windowed',
                       help='windowed: per-DOY window fits; seasonal: whole-year curves per group (default: windowed)')
    parser.add_argument('--export-format', choices=list(FILE_FORMAT_EXTENSIONS), default='parquet',
                       help='Export format for summary tables (default: parquet)')
    parser.add_argument('--years', type=parse_int_list, default=None,
                       help='Years to predict, e.g. "2012,2020-2023" (default: every observed year)')
    parser.add_argument('--doys', type=parse_int_list, default=None,
                       help='Target days of year, e.g. "150-240" (default: 1-365)')
    parser.add_argument('--region', choices=list(REGION_CONFIGS), default=None,
                       help='Monitoring region; restricts norms to its baseline years')
    parser.add_argument('--valid-units', default=None,
                       help='Valid-unit mask: .txt with one group per line, or a table with a group column')
    parser.add_argument('--classify', choices=CLASSIFICATION_METHODS, default=None,
                       help='Drought classification method (default: no classification)')
    parser.add_argument('--no-derivatives', action='store_true',
                       help='Skip derivative anomalies')
    parser.add_argument('--no-change-derivatives', action='store_true',
                       help='Skip change-derivative anomalies from the persisted draws')
    parser.add_argument('--force', action='store_true',
                       help='Force refitting of all units (ignore existing per-unit files)')
    parser.add_argument('--max-memory', type=int, default=12,
                       help='Maximum memory usage in GB (default: 12)')
    parser.add_argument('--log-level', choices=[level.name for level in LogLevel], default='MINIMAL',
                       help='Console verbosity (default: MINIMAL)')
    parser.add_argument('--window-width-doy', type=int, default=None,
                       help='Override the ±W day norm window (default: 7)')
    parser.add_argument('--window-width-trailing-days', type=int, default=None,
                       help='Override the trailing year window length L (default: 16)')
    parser.add_argument('--basis-dimension-k', type=int, default=None,
                       help='Basis dimension of every day-of-year smooth (norm window, trailing window, '
                            'season curves); the specific flags below take precedence')
    parser.add_argument('--window-basis-dimension', type=int, default=None,
                       help='Override the basis dimension of the ±W norm window smooth (default: 6)')
    parser.add_argument('--trailing-basis-dimension', type=int, default=None,
                       help='Override the basis dimension of the trailing year-window smooth (default: 5)')
    parser.add_argument('--spatial-basis-dimension', type=int, default=None,
                       help='Override the per-axis basis dimension of spatial surfaces (default: 10)')
    parser.add_argument('--min-coverage', type=float, default=None,
                       help='Coverage gate: a fraction of pixels (0-1) or a minimum observation count')
    parser.add_argument('--n-draws', type=int, default=None,
                       help='Override the number of posterior draws (default: 100)')
    parser.add_argument('--workers', type=int, default=None,
                       help='Override the worker pool size (default: 3, 1 runs inline)')
    parser.add_argument('--change-windows', type=str, default=None,
                       help='Override change-derivative windows (comma-separated list, e.g., "3,7,14,30")')
    parser.add_argument('--seed', type=int, default=None,
                       help='Base random seed for reproducible posterior draws')
    return parser


def config_overrides_from(args):
    """Configuration overrides named by the command-line flags that were given"""
    config_overrides = {
        'window_width_doy': args.window_width_doy,
        'window_width_trailing_days': args.window_width_trailing_days,
        'basis_dimension_k': args.basis_dimension_k,
        'window_basis_dimension': args.window_basis_dimension,
        'trailing_basis_dimension': args.trailing_basis_dimension,
        'spatial_basis_dimension': args.spatial_basis_dimension,
        'min_coverage_fraction_or_count': args.min_coverage,
        'n_posterior_draws': args.n_draws,
        'worker_pool_size': args.workers,
        'change_windows': args.change_windows,
        'random_seed': args.seed,
    }
    return {name: value for name, value in config_overrides.items() if value is not None}


def main(argv=None):
    """Main execution function - Clean CLI wrapper around the orchestrator"""

    args = build_parser().parse_args(argv)
    set_log_level(LogLevel[args.log_level])

    print("🚀 Starting NDVI Drought Monitoring Pipeline")
    print(f"⏰ Started at: {datetime.now()}")

    if args.force:
        print("🔄 Force reprocessing mode enabled")

    config_overrides = config_overrides_from(args)

    try:
        orchestrator = NDVIDroughtOrchestrator(
            input_file=args.input,
            output_dir=args.output_dir,
            mode=args.mode,
            fit_style=args.fit_style,
            export_format=args.export_format,
            max_memory_gb=args.max_memory,
            force_reprocess=args.force,
            valid_units_file=args.valid_units,
            years=args.years,
            region=args.region,
            derivatives=not args.no_derivatives,
            change_derivatives=not args.no_change_derivatives,
            classify_method=args.classify,
            config_overrides=config_overrides,
            doys=args.doys,
        )

        print("🎯 Delegating to orchestrator for complete processing...")
        result = orchestrator.orchestrate_complete_processing()

        if result:
            print(f"\n🎉 NDVI drought monitoring completed successfully!")
            print(f"📄 Output directory: {orchestrator.file_manager.output_dir}")
            print(f"📁 Export format: {orchestrator.export_format.upper()}")
        else:
            print(f"\n❌ NDVI drought monitoring pipeline failed")
            print(f"💡 Check the log above for skipped and failed units")
            return False

    except ValueError as e:
        print(f"\n💥 Configuration error: {str(e)}")
        return False

    finally:
        print(f"\n⏰ Pipeline finished at: {datetime.now()}")

    return True


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
