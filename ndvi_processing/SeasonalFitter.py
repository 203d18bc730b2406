"""
Whole-season curve fits per group.

Norms are one cyclic DOY smooth per group over all years; year curves are one
open DOY smooth per (group, year) on the year padded with the neighbouring
December and January. Both are predicted on DOY 1..365 with response and
derivative posteriors, and run through the same unit runner as the windowed
loop.
"""

import numpy as np
import pandas as pd

from .GamFitter import CoverageGate, SmoothSpec
from .UnitRunner import FitUnitRunner, UnitResult, finish_stage, unit_seed
from .WindowBuilder import SHIFTED_DOY_COL, shift_to_year, wrap_doy
from .data_constants import (
    DAYS_IN_YEAR,
    DOY_COL,
    DOY_RANGE,
    GROUP_COL,
    HARMONIZED_VALUE_COL,
    SKIP_INSUFFICIENT_DATA,
    UNIT_SKIPPED,
    YEAR_COL,
)
from .ProcessingConfig import ProcessingConfig
from .logging_utils import logger

SEASONAL_BASELINE_STAGE = 'seasonal_baseline'
SEASONAL_YEAR_STAGE = 'seasonal_year'
_STAGE_IDS = {SEASONAL_BASELINE_STAGE: 3, SEASONAL_YEAR_STAGE: 4}


class SeasonalFitter:
    """Fits season-long norm and year curves for each group"""

    def __init__(self, config=None, memory_manager=None, output_dir=None, response_column=HARMONIZED_VALUE_COL,
                 force_reprocess=False, stats=None):
        self.config = config or ProcessingConfig
        self.output_dir = output_dir
        self.response_column = response_column
        self.stats = stats if stats is not None else {}
        self.runner = FitUnitRunner(self.config, memory_manager, force_reprocess, self.stats)
        self.padding_days = self.config.get_window_setting('edge_padding_days')
        self.base_seed = self.config.get_posterior_setting('random_seed')

        logger.init_component("SeasonalFitter", f"{self.padding_days} day edge padding for year curves")

    def _persist(self, stage, period, group):
        if self.output_dir is None:
            return None
        return {'output_dir': self.output_dir, 'stage': stage, 'period': period, 'group': group, 'doy': None}

    def _gate(self):
        return CoverageGate(
            min_observations=self.config.get_coverage_setting('season_min_observations'),
            min_distinct=self.config.get_coverage_setting('min_distinct_values'),
        )

    def fit_norms(self, frame: pd.DataFrame):
        """Cyclic DOY norm per group; returns LoopOutput on doy 1..365"""
        logger.phase_start("Fitting Seasonal Norms")
        spec = SmoothSpec(DOY_COL, self.config.get_gam_setting('seasonal_basis_dimension'), cyclic=True,
                          bounds=self.config.get_gam_setting('cyclic_bounds'),
                          penalty_order=self.config.get_gam_setting('penalty_order'))
        grid = pd.DataFrame({DOY_COL: np.arange(1, DAYS_IN_YEAR + 1, dtype=float)})

        def tasks():
            gate = self._gate()
            for group_index, (group, group_frame) in enumerate(frame.groupby(GROUP_COL, sort=True)):
                data = group_frame[[self.response_column]].copy()
                # leap day 366 joins day 1
                data[DOY_COL] = wrap_doy(group_frame[DOY_COL].to_numpy())
                yield {
                    'key': (SEASONAL_BASELINE_STAGE, group, None, None),
                    'data': data,
                    'grid': grid,
                    'keys': pd.DataFrame({GROUP_COL: group, DOY_COL: list(DOY_RANGE)}),
                    'spec': spec,
                    'gate': gate,
                    'response_column': self.response_column,
                    'derivative_term': DOY_COL,
                    'seed': unit_seed(self.base_seed, _STAGE_IDS[SEASONAL_BASELINE_STAGE], group_index, None, None),
                    'persist': self._persist(SEASONAL_BASELINE_STAGE, 'norm', group),
                }

        results = self.runner.run(tasks(), frame[GROUP_COL].nunique(), "Seasonal norm fits")
        output = finish_stage("Seasonal Norms", results, self.stats)
        logger.phase_complete("Fitting Seasonal Norms", f"{len(output.summary)} summary rows")
        return output

    def fit_years(self, frame: pd.DataFrame, years=None):
        """Open DOY curve per (group, year) on the padded year; returns LoopOutput on doy 1..365"""
        logger.phase_start("Fitting Seasonal Year Curves")
        years = sorted(int(y) for y in (years if years is not None else frame[YEAR_COL].unique()))
        padding = self.padding_days
        spec = SmoothSpec(SHIFTED_DOY_COL, self.config.get_gam_setting('year_basis_dimension'),
                          bounds=(1 - padding, DAYS_IN_YEAR + padding),
                          penalty_order=self.config.get_gam_setting('penalty_order'))
        grid = pd.DataFrame({SHIFTED_DOY_COL: np.arange(1, DAYS_IN_YEAR + 1, dtype=float)})
        min_in_year = self.config.get_coverage_setting('season_min_observations')
        presets = {}

        def tasks():
            gate = self._gate()
            for group_index, (group, group_frame) in enumerate(frame.groupby(GROUP_COL, sort=True)):
                for year in years:
                    key = (SEASONAL_YEAR_STAGE, group, year, None)
                    in_year = int((group_frame[YEAR_COL] == year).sum())
                    if in_year < min_in_year:
                        presets[key] = UnitResult(key, UNIT_SKIPPED, SKIP_INSUFFICIENT_DATA,
                                                  f"{in_year} observations in {year} < {min_in_year} required")
                        continue
                    shifted = shift_to_year(group_frame, year, padding, include_next=True)
                    yield {
                        'key': key,
                        'data': shifted[[self.response_column, SHIFTED_DOY_COL]],
                        'grid': grid,
                        'keys': pd.DataFrame({GROUP_COL: group, YEAR_COL: year, DOY_COL: list(DOY_RANGE)}),
                        'spec': spec,
                        'gate': gate,
                        'response_column': self.response_column,
                        'derivative_term': SHIFTED_DOY_COL,
                        'seed': unit_seed(self.base_seed, _STAGE_IDS[SEASONAL_YEAR_STAGE], group_index, year, None),
                        'persist': self._persist(SEASONAL_YEAR_STAGE, year, group),
                    }

        results = self.runner.run(tasks(), frame[GROUP_COL].nunique() * len(years), "Seasonal year fits")
        results.update(presets)
        output = finish_stage("Seasonal Years", results, self.stats)
        logger.phase_complete("Fitting Seasonal Year Curves", f"{len(output.summary)} summary rows")
        return output
