"""
NDVI Drought Monitoring Orchestrator

This module coordinates the specialized component classes into the complete
drought monitoring run:
- MemoryManager: memory monitoring, cleanup and worker pool sizing
- FileManager: table export and per-unit summary / draw files
- DataLoader: observation loading, validation and the valid-unit mask
- DoyWindowedFitLoop / SeasonalFitter: baseline norms and year predictions
- AnomalyCalculator: response and derivative anomalies
- ChangeDerivativeCalculator: k-day change anomalies from persisted draws
- EventDetector: growing season and significant negative events
- DroughtClassifier: drought / wetness categories
"""

import warnings

import pandas as pd
import psutil

from .AnomalyCalculator import AnomalyCalculator, restrict_to_valid_units
from .ChangeDerivatives import ChangeDerivativeCalculator
from .DataLoader import DataLoader
from .DroughtClassifier import DroughtClassifier
from .EventDetector import find_significant_events, growing_season
from .FileManager import FileManager
from .MemoryManager import MemoryManager
from .ProcessingConfig import ProcessingConfig
from .SeasonalFitter import SEASONAL_BASELINE_STAGE, SEASONAL_YEAR_STAGE, SeasonalFitter
from .WindowedFitLoop import BASELINE_PERIOD, BASELINE_STAGE, LOOP_MODES, SPATIAL, YEAR_STAGE, DoyWindowedFitLoop
from .data_constants import GROUP_COL, YEAR_COL, get_region_config
from .error_utils import ErrorHandler
from .logging_utils import LogPhase, logger

warnings.filterwarnings('ignore', category=FutureWarning)

WINDOWED = 'windowed'
SEASONAL = 'seasonal'
FIT_STYLES = (WINDOWED, SEASONAL)


class NDVIDroughtOrchestrator:
    """Main orchestrator for the NDVI drought monitoring pipeline - coordinates all components"""

    def __init__(self, input_file=None, output_dir='ndvi_output', mode='temporal', fit_style=WINDOWED,
                 export_format='parquet', max_memory_gb=12, force_reprocess=False, valid_units_file=None,
                 years=None, region=None, derivatives=True, change_derivatives=True, classify_method=None,
                 config_overrides=None, doys=None):
        if mode not in LOOP_MODES:
            raise ValueError(f"Unknown mode: {mode}. Valid modes: {LOOP_MODES}")
        if fit_style not in FIT_STYLES:
            raise ValueError(f"Unknown fit style: {fit_style}. Valid styles: {FIT_STYLES}")
        if fit_style == SEASONAL and mode == SPATIAL:
            raise ValueError("Seasonal curve fits are per group; use mode='temporal'")

        # Store core configuration
        self.input_file = input_file
        self.mode = mode
        self.fit_style = fit_style
        self.export_format = export_format.lower()
        self.max_memory_gb = max_memory_gb
        self.force_reprocess = force_reprocess
        self.valid_units_file = valid_units_file
        self.years = sorted(int(y) for y in years) if years else None
        self.derivatives = derivatives
        self.change_derivatives = change_derivatives
        self.doys = doys
        self.region = get_region_config(region) if region else None

        # Apply configuration overrides if provided
        if config_overrides:
            self.apply_config_overrides(config_overrides)

        # Track processing statistics
        self.stats = {
            'observations': 0,
            'groups': 0,
            'years_processed': 0,
            'tables_written': 0,
            'events_found': 0,
            'memory_cleanups': 0,
            'io_operations': 0,
            'bytes_written': 0,
            'adaptive_decisions': [],
        }
        # Classifier is validated before any fitting starts
        self.classifier = (DroughtClassifier(classify_method, config=ProcessingConfig, stats=self.stats)
                           if classify_method else None)

        # Initialize component classes
        logger.processing_start("NDVI Drought Monitoring Components")

        # File Manager (initialize first since other components depend on it)
        self.file_manager = FileManager(
            export_format=self.export_format,
            output_dir=output_dir,
            compress_output=ProcessingConfig.get_io_setting('compress_draws'),
            config=ProcessingConfig,
            stats=self.stats,
        )

        # Memory Manager
        self.memory_manager = MemoryManager(
            max_memory_gb=max_memory_gb,
            config=ProcessingConfig,
            stats=self.stats,
            file_manager=self.file_manager,
        )

        # Data Loader
        self.data_loader = DataLoader(
            config=ProcessingConfig,
            memory_manager=self.memory_manager,
            file_manager=self.file_manager,
        )

        self.anomaly_calculator = AnomalyCalculator(stats=self.stats)

        # Get system information for pool sizing
        self.system_memory_gb = psutil.virtual_memory().total / (1024**3)
        self.available_memory_gb = psutil.virtual_memory().available / (1024**3)

        logger.init_system(self.system_memory_gb, self.available_memory_gb, psutil.cpu_count())
        logger.processing_complete("Component initialization", 4)

        if self.region:
            logger.info(f"Region: {self.region['name']} ({self.region['target_crs']}, "
                        f"{self.region['resolution']} m, baseline {self.region['baseline_years'][0]}-"
                        f"{self.region['baseline_years'][-1]})")

    def apply_config_overrides(self, overrides):
        """Apply command-line overrides to configuration"""
        overrides = dict(overrides)
        windows = overrides.get('change_windows')
        if isinstance(windows, str):
            try:
                overrides['change_windows'] = [int(w.strip()) for w in windows.split(',')]
            except ValueError:
                logger.warning(f"Invalid change windows format: {windows}. Using default.")
                overrides.pop('change_windows')

        unknown = ProcessingConfig.apply_overrides(overrides)
        for name in unknown:
            logger.warning(f"Unknown configuration override ignored: {name}")
        print(f"🔧 Applied configuration overrides: {overrides}")

    # =============================================================================
    # COMPONENT FACTORIES
    # =============================================================================

    def _fitter(self, response_column):
        if self.fit_style == SEASONAL:
            return SeasonalFitter(
                config=ProcessingConfig,
                memory_manager=self.memory_manager,
                output_dir=self.file_manager.output_dir,
                response_column=response_column,
                force_reprocess=self.force_reprocess,
                stats=self.stats,
            )
        return DoyWindowedFitLoop(
            mode=self.mode,
            config=ProcessingConfig,
            memory_manager=self.memory_manager,
            output_dir=self.file_manager.output_dir,
            response_column=response_column,
            doys=self.doys,
            force_reprocess=self.force_reprocess,
            stats=self.stats,
        )

    def _stage_names(self):
        if self.fit_style == SEASONAL:
            return SEASONAL_BASELINE_STAGE, SEASONAL_YEAR_STAGE
        return BASELINE_STAGE, YEAR_STAGE

    def baseline_observations(self, observations):
        """Observations used for the norms: the region's baseline years when a region is set"""
        if not self.region:
            return observations
        baseline_years = set(self.region['baseline_years'])
        subset = observations.loc[observations[YEAR_COL].isin(baseline_years)]
        if subset.empty:
            logger.warning(f"No observations in {self.region['name']} baseline years; using all years for norms")
            return observations
        return subset

    # =============================================================================
    # PIPELINE
    # =============================================================================

    def load_inputs(self):
        """Load the observation table and the optional valid-unit mask"""
        valid_units = None
        if self.valid_units_file:
            valid_units = self.data_loader.load_valid_units(self.valid_units_file)
            if valid_units is None:
                return None, None
        if self.input_file is None:
            logger.critical_error("No input observation table given")
            return None, valid_units
        return self.data_loader.load_observations(self.input_file, valid_units), valid_units

    def orchestrate_complete_processing(self, observations=None, valid_units=None):
        """
        Run every stage: norms, year predictions, anomalies, derivative anomalies,
        change derivatives, events and classification.

        Args:
            observations (pd.DataFrame): Already loaded observations; loaded from
                input_file when None
            valid_units (iterable): Optional unit mask for in-memory observations

        Returns:
            bool: True when the year stage produced any predictions
        """
        # Step 1: Load observations using DataLoader
        if observations is None:
            observations, valid_units = self.load_inputs()
        else:
            observations = self.data_loader.prepare_observations(observations, valid_units)
        if observations is None or observations.empty:
            logger.critical_error("No observations to process")
            return False

        response_column = self.data_loader.response_column
        self.stats['observations'] = len(observations)
        self.stats['groups'] = observations[GROUP_COL].nunique()
        years = self.years or sorted(int(y) for y in observations[YEAR_COL].unique())
        self.stats['years_processed'] = len(years)
        logger.info(f"Response column: {response_column}; {len(years)} years ({years[0]}-{years[-1]})")

        pixels = None
        if self.mode == SPATIAL:
            pixels = self.data_loader.build_pixel_table(observations)
            if pixels is None:
                return False

        fitter = self._fitter(response_column)
        baseline_stage, year_stage = self._stage_names()
        self.memory_manager.force_memory_cleanup()

        # Step 2: Baseline norms
        try:
            if self.fit_style == SEASONAL:
                baseline = fitter.fit_norms(self.baseline_observations(observations))
            else:
                baseline = fitter.run_baseline(self.baseline_observations(observations), pixels)
        except ValueError as e:
            return ErrorHandler.handle_processing_error("Baseline fits", e)
        self._save_stage(baseline, 'baseline')
        self.memory_manager.force_memory_cleanup()

        if baseline.summary.empty:
            logger.critical_error("No baseline norms could be fitted; year predictions need them")
            self._print_summary(success=False)
            return False

        # Step 3: Year predictions
        try:
            if self.fit_style == SEASONAL:
                year_output = fitter.fit_years(observations, years)
            else:
                year_output = fitter.run_years(observations, baseline.summary, years, pixels)
        except ValueError as e:
            return ErrorHandler.handle_processing_error("Year fits", e)
        self._save_stage(year_output, 'year')
        self.memory_manager.force_memory_cleanup()

        # Step 4: Anomalies
        anomalies = self.anomaly_calculator.calculate_anomalies(year_output.summary, baseline.summary)
        anomalies = restrict_to_valid_units(anomalies, valid_units)
        self._save(anomalies, 'anomalies')

        # Step 5: Derivative anomalies
        derivative_anomalies = pd.DataFrame()
        if self.derivatives and not year_output.derivatives.empty and not baseline.derivatives.empty:
            derivative_anomalies = self.anomaly_calculator.calculate_derivative_anomalies(
                year_output.derivatives, baseline.derivatives)
            derivative_anomalies = restrict_to_valid_units(derivative_anomalies, valid_units)
            self._save(derivative_anomalies, 'derivative_anomalies')
        self.memory_manager.force_memory_cleanup()

        # Step 6: Change derivatives from the persisted draws
        if self.change_derivatives and ProcessingConfig.get_posterior_setting('persist_draws'):
            calculator = ChangeDerivativeCalculator(
                self.file_manager.output_dir,
                config=ProcessingConfig,
                baseline_stage=baseline_stage,
                year_stage=year_stage,
                baseline_period=BASELINE_PERIOD,
                stats=self.stats,
            )
            changes = calculator.calculate(years, doys=self.doys)
            self._save(restrict_to_valid_units(changes, valid_units), 'change_derivatives')
            del calculator, changes
            self.memory_manager.force_memory_cleanup()

        # Step 7: Growing season and significant events
        with LogPhase("Detecting Significant Events"):
            season = None
            if GROUP_COL in baseline.summary.columns and self.mode != SPATIAL:
                season = growing_season(baseline.summary)
                self._save(season, 'growing_season')
            events = find_significant_events(anomalies, season)
            self.stats['events_found'] = len(events)
            self._save(events, 'events')
            if not derivative_anomalies.empty:
                self._save(find_significant_events(derivative_anomalies, season), 'derivative_events')

        # Step 8: Drought classification
        if self.classifier and not anomalies.empty:
            self._save(self.classifier.classify(anomalies), 'drought_classification')

        success = not year_output.summary.empty
        self._print_summary(success)
        return success

    def _save_stage(self, output, name):
        self._save(output.summary, f'{name}_summary')
        if not output.derivatives.empty:
            self._save(output.derivatives, f'{name}_derivatives')
        self._save(output.model_stats, f'{name}_model_stats')

    def _save(self, table, name):
        if table is None or table.empty:
            logger.info(f"{name}: nothing to save")
            return None
        path = self.file_manager.save_table(table, name)
        if path:
            self.stats['tables_written'] += 1
        self.memory_manager.check_memory_usage()
        return path

    def _print_summary(self, success):
        print(f"\n{'='*60}")
        print(f"{'🎉' if success else '❌'} NDVI DROUGHT MONITORING {'COMPLETE' if success else 'FAILED'}!")
        print(f"📊 Summary:")
        print(f"  - Mode: {self.mode} ({self.fit_style} fits)")
        print(f"  - Observations: {self.stats['observations']:,}")
        print(f"  - Groups: {self.stats['groups']:,}")
        print(f"  - Years: {self.stats['years_processed']}")
        for key, counts in self.stats.items():
            if key.endswith('_units') and isinstance(counts, dict):
                print(f"  - {key[:-len('_units')].replace('_', ' ').title()}: "
                      f"{counts['fitted']} fitted, {counts['skipped']} skipped, {counts['failed']} failed")
        file_stats = self.file_manager.get_file_stats()
        memory_status = self.memory_manager.get_memory_status()
        print(f"  - Significant events: {self.stats['events_found']}")
        print(f"  - Tables written: {self.stats['tables_written']} ({file_stats['export_format']})")
        print(f"  - Memory cleanups: {memory_status['cleanups_performed']}")
        print(f"  - Memory in use: {memory_status['used_gb']:.1f}GB ({memory_status['percent_used']:.0f}%)")
        print(f"  - I/O operations: {file_stats['io_operations']}")
        print(f"  - Data written: {file_stats['mb_written']:.1f} MB")
        if self.stats['adaptive_decisions']:
            print(f"  - Pool size decisions: {len(self.stats['adaptive_decisions'])}")
