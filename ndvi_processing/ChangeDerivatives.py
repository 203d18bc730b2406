"""
Change derivatives: anomalies in how fast NDVI changes over k-day windows.

For target day d and window k, with lag day d' = wrap(d - k):

    baseline change = baseline[d] - baseline[d']
    year change     = year[d] - year'[d']   (year' = previous year when d' wraps past Jan 1)
    anomaly         = year change - baseline change

All three are computed draw by draw from the persisted posterior draw
matrices, so the bands carry the full posterior uncertainty. A negative
anomaly means the year is greening more slowly (or browning faster) than
normal.
"""

import os

import numpy as np
import pandas as pd

from .FileManager import FileManager
from .PosteriorSimulator import RESPONSE
from .WindowBuilder import wrap_doy
from .data_constants import (
    DEFAULT_POSTERIOR_SETTINGS,
    DEFAULT_WINDOW_SETTINGS,
    DOY_COL,
    DOY_RANGE,
    DRAW_FILE_EXTENSION,
    GROUP_COL,
    YEAR_COL,
)
from .error_utils import ErrorHandler
from .logging_utils import logger

CHANGE_COLUMNS = [
    GROUP_COL, YEAR_COL, DOY_COL, 'window',
    'baseline_change_mean', 'baseline_change_lower', 'baseline_change_upper',
    'year_change_mean', 'year_change_lower', 'year_change_upper',
    'anomaly_change_mean', 'anomaly_change_lower', 'anomaly_change_upper',
    'significant', 'prob_slower', 'prob_faster',
]


def load_stage_draws(output_dir, stage, period):
    """
    Read every response draw file of one stage and period.

    Returns:
        dict: (group, doy) -> 1-D array of draws; empty when nothing was persisted
    """
    directory = FileManager.unit_directory(output_dir, stage, RESPONSE, period)
    draws_by_key = {}
    if not os.path.isdir(directory):
        return draws_by_key

    for root, _, files in os.walk(directory):
        for name in sorted(files):
            # dot files are writes a killed worker never finished
            if name.startswith('.') or not name.endswith(DRAW_FILE_EXTENSION):
                continue
            path = os.path.join(root, name)
            try:
                draws, keys = FileManager.read_draw_matrix(path)
            except (OSError, ValueError, KeyError) as e:
                ErrorHandler.handle_io_error("Reading draw matrix", path, e)
                continue
            groups = keys[GROUP_COL].tolist()
            doys = keys[DOY_COL].astype(int).tolist()
            for column, (group, doy) in enumerate(zip(groups, doys)):
                draws_by_key[(group, doy)] = draws[:, column]
    return draws_by_key


def _band(draws, lower_quantile, upper_quantile):
    return (draws.mean(axis=1),
            np.quantile(draws, lower_quantile, axis=1),
            np.quantile(draws, upper_quantile, axis=1))


class ChangeDerivativeCalculator:
    """Computes change-derivative anomalies from persisted baseline and year draws"""

    def __init__(self, output_dir, config=None, baseline_stage='baseline', year_stage='year',
                 baseline_period='norm', stats=None):
        self.output_dir = output_dir
        self.baseline_stage = baseline_stage
        self.year_stage = year_stage
        self.baseline_period = baseline_period
        self.stats = stats if stats is not None else {}
        if config:
            self.windows = list(config.get_window_setting('change_windows'))
            self.lower_quantile = config.get_posterior_setting('lower_quantile')
            self.upper_quantile = config.get_posterior_setting('upper_quantile')
        else:
            self.windows = list(DEFAULT_WINDOW_SETTINGS['change_windows'])
            self.lower_quantile = DEFAULT_POSTERIOR_SETTINGS['lower_quantile']
            self.upper_quantile = DEFAULT_POSTERIOR_SETTINGS['upper_quantile']
        self._year_cache = {}

    def _year_draws(self, year):
        if year not in self._year_cache:
            self._year_cache[year] = load_stage_draws(self.output_dir, self.year_stage, year)
        return self._year_cache[year]

    def calculate(self, years, doys=None, windows=None):
        """
        Change-derivative anomalies for every (group, year, doy, window) with all four draw sets.

        Returns:
            pd.DataFrame: CHANGE_COLUMNS rows
        """
        logger.phase_start("Calculating Change Derivatives")
        doys = list(doys) if doys is not None else list(DOY_RANGE)
        windows = list(windows) if windows is not None else self.windows
        baseline = load_stage_draws(self.output_dir, self.baseline_stage, self.baseline_period)
        if not baseline:
            logger.warning(f"No baseline draw files under {self.output_dir}; change derivatives skipped")
            logger.phase_complete("Calculating Change Derivatives", "no baseline draws")
            return pd.DataFrame(columns=CHANGE_COLUMNS)

        tables = []
        skipped = 0
        for year in sorted(int(y) for y in years):
            current = self._year_draws(year)
            groups = sorted({group for group, _ in current}, key=str)
            for doy in doys:
                for window in windows:
                    lag_doy = int(wrap_doy(doy - window))
                    lag_year = year - 1 if lag_doy > doy else year
                    lagged = self._year_draws(lag_year)
                    table, n_missing = self._combine(baseline, current, lagged, groups, year, doy, lag_doy, window)
                    skipped += n_missing
                    if table is not None:
                        tables.append(table)
            # previous years are no longer needed once the next year starts
            for cached in [y for y in self._year_cache if y < year - 1]:
                del self._year_cache[cached]

        result = pd.concat(tables, ignore_index=True) if tables else pd.DataFrame(columns=CHANGE_COLUMNS)
        self.stats['change_derivative_rows'] = len(result)
        self.stats['change_derivative_missing'] = skipped
        if skipped:
            logger.data_issue("Change derivatives skipped for missing draw files", skipped)
        logger.phase_complete("Calculating Change Derivatives", f"{len(result)} rows")
        return result

    def _combine(self, baseline, current, lagged, groups, year, doy, lag_doy, window):
        present = [g for g in groups
                   if (g, doy) in baseline and (g, lag_doy) in baseline and (g, doy) in current and (g, lag_doy) in lagged]
        n_missing = len(groups) - len(present)
        if not present:
            return None, n_missing

        base_now = np.vstack([baseline[(g, doy)] for g in present])
        base_lag = np.vstack([baseline[(g, lag_doy)] for g in present])
        year_now = np.vstack([current[(g, doy)] for g in present])
        year_lag = np.vstack([lagged[(g, lag_doy)] for g in present])
        n_draws = min(base_now.shape[1], base_lag.shape[1], year_now.shape[1], year_lag.shape[1])

        baseline_change = base_now[:, :n_draws] - base_lag[:, :n_draws]
        year_change = year_now[:, :n_draws] - year_lag[:, :n_draws]
        anomaly_change = year_change - baseline_change

        base_mean, base_lower, base_upper = _band(baseline_change, self.lower_quantile, self.upper_quantile)
        year_mean, year_lower, year_upper = _band(year_change, self.lower_quantile, self.upper_quantile)
        anom_mean, anom_lower, anom_upper = _band(anomaly_change, self.lower_quantile, self.upper_quantile)

        table = pd.DataFrame({
            GROUP_COL: present,
            YEAR_COL: year,
            DOY_COL: doy,
            'window': window,
            'baseline_change_mean': base_mean,
            'baseline_change_lower': base_lower,
            'baseline_change_upper': base_upper,
            'year_change_mean': year_mean,
            'year_change_lower': year_lower,
            'year_change_upper': year_upper,
            'anomaly_change_mean': anom_mean,
            'anomaly_change_lower': anom_lower,
            'anomaly_change_upper': anom_upper,
            'significant': (anom_lower > 0) | (anom_upper < 0),
            'prob_slower': (anomaly_change < 0).mean(axis=1),
            'prob_faster': (anomaly_change > 0).mean(axis=1),
        })
        return table, n_missing
