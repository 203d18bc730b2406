"""
DOY/Year windowed fit loop.

For every target day-of-year d (and, for year fits, every year), a window of
observations is assembled, gated, fitted, simulated and reduced into one
summary row per grid point. Two modes are supported:

- temporal: per group, a smooth over the signed day offset from d. Norms pool
  all years within ±W days; year fits use the trailing L days and take the
  baseline norm as a linear covariate. Prediction is at offset 0. Year
  derivatives move the norm along its own seasonal slope, so they are the
  rate of change of that year's curve through time.
- spatial: per (year,) DOY, one tensor-product surface over pixel x,y fitted
  to all pixels at once and predicted at every pixel.

Skipped units (sparse windows, missing norms, ill-conditioned fits) produce no
rows; their reasons are counted in the model-statistics table.
"""

import math

import numpy as np
import pandas as pd

from .GamFitter import CoverageGate, SmoothSpec
from .UnitRunner import FitUnitRunner, UnitResult, finish_stage, unit_seed
from .WindowBuilder import assemble_norm_window, assemble_trailing_window, wrap_doy
from .data_constants import (
    DEFAULT_COVERAGE_SETTINGS,
    DEFAULT_GAM_SETTINGS,
    DEFAULT_POSTERIOR_SETTINGS,
    DEFAULT_WINDOW_SETTINGS,
    DOY_COL,
    DOY_RANGE,
    GROUP_COL,
    HARMONIZED_VALUE_COL,
    NORM_COL,
    SKIP_MISSING_NORM,
    UNIT_SKIPPED,
    WINDOW_OFFSET_COL,
    X_COL,
    Y_COL,
    YEAR_COL,
)
from .logging_utils import logger

TEMPORAL = 'temporal'
SPATIAL = 'spatial'
LOOP_MODES = (TEMPORAL, SPATIAL)

BASELINE_STAGE = 'baseline'
YEAR_STAGE = 'year'
BASELINE_PERIOD = 'norm'
_STAGE_IDS = {BASELINE_STAGE: 1, YEAR_STAGE: 2}


class DoyWindowedFitLoop:
    """Runs the baseline and year windowed fits in temporal or spatial mode"""

    def __init__(self, mode=TEMPORAL, config=None, memory_manager=None, output_dir=None,
                 response_column=HARMONIZED_VALUE_COL, doys=None, force_reprocess=False, stats=None):
        """
        Args:
            mode (str): 'temporal' or 'spatial'
            config: ProcessingConfig class
            memory_manager (MemoryManager): Sizes the worker pool
            output_dir (str): Root for per-unit files; None disables persistence
            response_column (str): Column fitted as the response
            doys (iterable): Target days of year (default 1..365)
            force_reprocess (bool): Refit units whose files already exist
            stats (dict): Shared statistics dictionary
        """
        if mode not in LOOP_MODES:
            raise ValueError(f"Unknown loop mode: {mode}. Valid modes: {LOOP_MODES}")
        self.mode = mode
        self.config = config
        self.output_dir = output_dir
        self.response_column = response_column
        self.doys = list(doys) if doys is not None else list(DOY_RANGE)
        self.stats = stats if stats is not None else {}
        self.runner = FitUnitRunner(config, memory_manager, force_reprocess, self.stats)

        self.half_width = self._setting('window', 'doy_half_width')
        self.trailing_days = self._setting('window', 'trailing_days')
        self.base_seed = self._setting('posterior', 'random_seed')

        logger.init_component("DoyWindowedFitLoop",
                              f"{mode} mode, ±{self.half_width} day norms, {self.trailing_days} day trailing windows")

    def _setting(self, section, name):
        if self.config:
            return getattr(self.config, f'get_{section}_setting')(name)
        defaults = {
            'window': DEFAULT_WINDOW_SETTINGS,
            'gam': DEFAULT_GAM_SETTINGS,
            'coverage': DEFAULT_COVERAGE_SETTINGS,
            'posterior': DEFAULT_POSTERIOR_SETTINGS,
        }
        return defaults[section][name]

    def _persist(self, stage, period, group, doy):
        if self.output_dir is None:
            return None
        return {'output_dir': self.output_dir, 'stage': stage, 'period': period, 'group': group, 'doy': doy}

    # =============================================================================
    # SMOOTHS AND GATES
    # =============================================================================

    def baseline_spec(self, pixels=None):
        order = self._setting('gam', 'penalty_order')
        if self.mode == TEMPORAL:
            return SmoothSpec(WINDOW_OFFSET_COL, self._setting('gam', 'window_basis_dimension'),
                              bounds=(-self.half_width, self.half_width), penalty_order=order)
        return SmoothSpec((X_COL, Y_COL), self._setting('gam', 'spatial_basis_dimension'),
                          bounds=self._pixel_bounds(pixels), penalty_order=order)

    def year_spec(self, pixels=None):
        order = self._setting('gam', 'penalty_order')
        if self.mode == TEMPORAL:
            return SmoothSpec(WINDOW_OFFSET_COL, self._setting('gam', 'trailing_basis_dimension'),
                              bounds=(-(self.trailing_days - 1), 0), linear=(NORM_COL,), penalty_order=order)
        return SmoothSpec((X_COL, Y_COL), self._setting('gam', 'spatial_basis_dimension'),
                          bounds=self._pixel_bounds(pixels), linear=(NORM_COL,), penalty_order=order)

    @staticmethod
    def _pixel_bounds(pixels):
        return {
            X_COL: (float(pixels[X_COL].min()), float(pixels[X_COL].max())),
            Y_COL: (float(pixels[Y_COL].min()), float(pixels[Y_COL].max())),
        }

    def coverage_gate(self, stage, n_pixels=None):
        """Absolute counts for temporal fits; a fraction of all pixels for spatial fits"""
        min_distinct = self._setting('coverage', 'min_distinct_values')
        if self.mode == SPATIAL:
            fraction = self._setting('coverage', 'min_pixel_fraction')
            return CoverageGate(
                min_observations=self._setting('coverage', 'spatial_min_observations'),
                min_distinct=max(min_distinct, math.ceil(fraction * n_pixels)),
                distinct_columns=[X_COL, Y_COL],
            )
        name = 'baseline_min_observations' if stage == BASELINE_STAGE else 'year_min_observations'
        return CoverageGate(min_observations=self._setting('coverage', name), min_distinct=min_distinct)

    # =============================================================================
    # BASELINE NORMS
    # =============================================================================

    def norm_doys(self):
        """Target DOYs plus every day their trailing windows reach; year fits need the norm on all of them"""
        offsets = np.arange(self.trailing_days)
        return sorted({int(d) for target in self.doys for d in wrap_doy(target - offsets)})

    def run_baseline(self, frame: pd.DataFrame, pixels=None):
        """
        Fit the DOY norms on norm_doys().

        Args:
            frame (pd.DataFrame): Observations (group, doy, year, response[, x, y])
            pixels (pd.DataFrame): Pixel table (group, x, y); spatial mode only

        Returns:
            LoopOutput: summary (group, doy, mean, lower, upper), derivatives
            (temporal mode) and model statistics
        """
        logger.phase_start("Fitting Baseline Norms")
        doys = self.norm_doys()
        if self.mode == TEMPORAL:
            tasks = self._temporal_baseline_tasks(frame, doys)
            total = frame[GROUP_COL].nunique() * len(doys)
        else:
            pixels = self._require_pixels(frame, pixels)
            tasks = self._spatial_baseline_tasks(frame, pixels, doys)
            total = len(doys)

        results = self.runner.run(tasks, total, "Baseline fits")
        output = self._finish("Baseline Norms", results)
        logger.phase_complete("Fitting Baseline Norms", f"{len(output.summary)} summary rows")
        return output

    def _temporal_baseline_tasks(self, frame, doys):
        gate = self.coverage_gate(BASELINE_STAGE)
        spec = self.baseline_spec()
        for group_index, (group, group_frame) in enumerate(frame.groupby(GROUP_COL, sort=True)):
            for doy in doys:
                window = assemble_norm_window(group_frame, doy, self.half_width)
                yield {
                    'key': (BASELINE_STAGE, group, None, doy),
                    'data': window[[self.response_column, WINDOW_OFFSET_COL]],
                    'grid': pd.DataFrame({WINDOW_OFFSET_COL: [0.0]}),
                    'keys': pd.DataFrame({GROUP_COL: [group], DOY_COL: [doy]}),
                    'spec': spec,
                    'gate': gate,
                    'response_column': self.response_column,
                    'derivative_term': WINDOW_OFFSET_COL,
                    'seed': unit_seed(self.base_seed, _STAGE_IDS[BASELINE_STAGE], group_index, None, doy),
                    'persist': self._persist(BASELINE_STAGE, BASELINE_PERIOD, group, doy),
                }

    def _spatial_baseline_tasks(self, frame, pixels, doys):
        gate = self.coverage_gate(BASELINE_STAGE, n_pixels=len(pixels))
        spec = self.baseline_spec(pixels)
        grid = pixels[[X_COL, Y_COL]].reset_index(drop=True)
        for doy in doys:
            window = assemble_norm_window(frame, doy, self.half_width)
            yield {
                'key': (BASELINE_STAGE, None, None, doy),
                'data': window[[self.response_column, X_COL, Y_COL]],
                'grid': grid,
                'keys': pd.DataFrame({GROUP_COL: pixels[GROUP_COL].to_numpy(), DOY_COL: doy}),
                'spec': spec,
                'gate': gate,
                'response_column': self.response_column,
                'derivative_term': None,
                'seed': unit_seed(self.base_seed, _STAGE_IDS[BASELINE_STAGE], 0, None, doy),
                'persist': self._persist(BASELINE_STAGE, BASELINE_PERIOD, None, doy),
            }

    # =============================================================================
    # YEAR PREDICTIONS
    # =============================================================================

    def run_years(self, frame: pd.DataFrame, baseline: pd.DataFrame, years=None, pixels=None):
        """
        Fit the year-specific predictions with the baseline norm as a linear covariate.

        Args:
            frame (pd.DataFrame): Observations
            baseline (pd.DataFrame): Baseline summary (group, doy, mean, ...)
            years (iterable): Years to fit (default: every year observed)
            pixels (pd.DataFrame): Pixel table; spatial mode only

        Returns:
            LoopOutput: summary (group, year, doy, mean, lower, upper), derivatives
            (temporal mode) and model statistics
        """
        logger.phase_start("Fitting Year Predictions")
        years = sorted(int(y) for y in (years if years is not None else frame[YEAR_COL].unique()))
        norms = self.norm_lookup(baseline)
        presets = {}

        if self.mode == TEMPORAL:
            tasks = self._temporal_year_tasks(frame, norms, years, presets)
            total = frame[GROUP_COL].nunique() * len(years) * len(self.doys)
        else:
            pixels = self._require_pixels(frame, pixels)
            tasks = self._spatial_year_tasks(frame, norms, years, pixels, presets)
            total = len(years) * len(self.doys)

        results = self.runner.run(tasks, total, "Year fits")
        results.update(presets)
        output = self._finish("Year Predictions", results)
        logger.phase_complete("Fitting Year Predictions", f"{len(output.summary)} summary rows")
        return output

    @staticmethod
    def norm_lookup(baseline):
        """Series of baseline means indexed by (group, doy)"""
        if baseline is None or len(baseline) == 0:
            return pd.Series(dtype=float, index=pd.MultiIndex.from_tuples([], names=[GROUP_COL, DOY_COL]))
        return baseline.set_index([GROUP_COL, DOY_COL])['mean']

    @staticmethod
    def attach_norm(window, norms):
        """Add the baseline mean at each observation's own DOY"""
        index = pd.MultiIndex.from_arrays([window[GROUP_COL].to_numpy(), wrap_doy(window[DOY_COL].to_numpy())])
        window = window.copy()
        window[NORM_COL] = norms.reindex(index).to_numpy()
        return window

    def norm_slope(self, norms, group, doy):
        """Least-squares slope per day of the baseline norm over the trailing window ending at doy"""
        lags = np.arange(self.trailing_days)
        offsets = -lags.astype(float)
        index = pd.MultiIndex.from_arrays([np.full(len(lags), group, dtype=object), wrap_doy(int(doy) - lags)])
        values = norms.reindex(index).to_numpy(dtype=float)
        known = ~np.isnan(values)
        if known.sum() < 2:
            return 0.0
        return float(np.polyfit(offsets[known], values[known], 1)[0])

    def _temporal_year_tasks(self, frame, norms, years, presets):
        gate = self.coverage_gate(YEAR_STAGE)
        spec = self.year_spec()
        for group_index, (group, group_frame) in enumerate(frame.groupby(GROUP_COL, sort=True)):
            slopes = {doy: self.norm_slope(norms, group, doy) for doy in self.doys}
            for year in years:
                for doy in self.doys:
                    key = (YEAR_STAGE, group, year, doy)
                    target_norm = norms.get((group, doy), np.nan)
                    if pd.isna(target_norm):
                        presets[key] = UnitResult(key, UNIT_SKIPPED, SKIP_MISSING_NORM,
                                                  f"no baseline norm for doy {doy}")
                        continue
                    window = self.attach_norm(
                        assemble_trailing_window(group_frame, year, doy, self.trailing_days), norms)
                    yield {
                        'key': key,
                        'data': window[[self.response_column, NORM_COL, WINDOW_OFFSET_COL]],
                        'grid': pd.DataFrame({NORM_COL: [float(target_norm)], WINDOW_OFFSET_COL: [0.0]}),
                        'keys': pd.DataFrame({GROUP_COL: [group], YEAR_COL: [year], DOY_COL: [doy]}),
                        'spec': spec,
                        'gate': gate,
                        'response_column': self.response_column,
                        'derivative_term': WINDOW_OFFSET_COL,
                        'derivative_companions': {NORM_COL: slopes[doy]},
                        'seed': unit_seed(self.base_seed, _STAGE_IDS[YEAR_STAGE], group_index, year, doy),
                        'persist': self._persist(YEAR_STAGE, year, group, doy),
                    }

    def _spatial_year_tasks(self, frame, norms, years, pixels, presets):
        gate = self.coverage_gate(YEAR_STAGE, n_pixels=len(pixels))
        spec = self.year_spec(pixels)
        for year in years:
            for doy in self.doys:
                key = (YEAR_STAGE, None, year, doy)
                index = pd.MultiIndex.from_arrays([pixels[GROUP_COL].to_numpy(), np.full(len(pixels), doy)])
                target_norms = norms.reindex(index).to_numpy()
                has_norm = ~np.isnan(target_norms)
                if not has_norm.any():
                    presets[key] = UnitResult(key, UNIT_SKIPPED, SKIP_MISSING_NORM, f"no baseline norm for doy {doy}")
                    continue
                grid_pixels = pixels.loc[has_norm].reset_index(drop=True)
                window = self.attach_norm(assemble_trailing_window(frame, year, doy, self.trailing_days), norms)
                yield {
                    'key': key,
                    'data': window[[self.response_column, NORM_COL, X_COL, Y_COL]],
                    'grid': pd.DataFrame({NORM_COL: target_norms[has_norm],
                                          X_COL: grid_pixels[X_COL].to_numpy(),
                                          Y_COL: grid_pixels[Y_COL].to_numpy()}),
                    'keys': pd.DataFrame({GROUP_COL: grid_pixels[GROUP_COL].to_numpy(), YEAR_COL: year, DOY_COL: doy}),
                    'spec': spec,
                    'gate': gate,
                    'response_column': self.response_column,
                    'derivative_term': None,
                    'seed': unit_seed(self.base_seed, _STAGE_IDS[YEAR_STAGE], 0, year, doy),
                    'persist': self._persist(YEAR_STAGE, year, None, doy),
                }

    # =============================================================================
    # HELPERS
    # =============================================================================

    @staticmethod
    def _require_pixels(frame, pixels):
        if pixels is not None:
            return pixels.reset_index(drop=True)
        missing = [column for column in (X_COL, Y_COL) if column not in frame.columns]
        if missing:
            raise ValueError(f"Spatial mode needs pixel coordinates; missing columns {missing}")
        return (frame[[GROUP_COL, X_COL, Y_COL]].drop_duplicates(subset=[GROUP_COL])
                .sort_values(GROUP_COL).reset_index(drop=True))

    def _finish(self, stage_name, results):
        return finish_stage(stage_name, results, self.stats)
