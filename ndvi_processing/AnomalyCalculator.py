"""
Anomalies of year predictions against the baseline norm.

The anomaly band is the year's credible band shifted by the baseline mean:

    anomaly_mean  = year.mean  - baseline.mean
    anomaly_lower = year.lower - baseline.mean
    anomaly_upper = year.upper - baseline.mean

A year row without a matching baseline row keeps NaN anomalies and is flagged
with baseline_missing; it is never filled with zero.
"""

import math

import numpy as np
import pandas as pd

from .data_constants import DOY_COL, GROUP_COL, YEAR_COL
from .logging_utils import logger

ANOMALY_KEYS = (GROUP_COL, DOY_COL)


class AnomalyRow:
    """Anomaly of one year summary row against one baseline summary row"""

    def __init__(self, group, doy, year, anomaly_mean, anomaly_lower, anomaly_upper, baseline_missing=False):
        self.group = group
        self.doy = doy
        self.year = year
        self.anomaly_mean = anomaly_mean
        self.anomaly_lower = anomaly_lower
        self.anomaly_upper = anomaly_upper
        self.baseline_missing = baseline_missing

    def as_dict(self):
        return {
            GROUP_COL: self.group,
            YEAR_COL: self.year,
            DOY_COL: self.doy,
            'anomaly_mean': self.anomaly_mean,
            'anomaly_lower': self.anomaly_lower,
            'anomaly_upper': self.anomaly_upper,
            'baseline_missing': self.baseline_missing,
        }

    def __repr__(self):
        return (f"AnomalyRow(group={self.group!r}, year={self.year}, doy={self.doy}, "
                f"mean={self.anomaly_mean:.4f}, band=[{self.anomaly_lower:.4f}, {self.anomaly_upper:.4f}])")


def anomaly(year_row, baseline_row):
    """
    Anomaly of one year summary row (mapping with group, doy, year, mean,
    lower, upper) against a baseline row. A missing baseline (None) gives an
    AnomalyRow of NaNs flagged baseline_missing, never a zero anomaly.
    """
    if baseline_row is None:
        return AnomalyRow(year_row[GROUP_COL], year_row[DOY_COL], year_row.get(YEAR_COL),
                          math.nan, math.nan, math.nan, baseline_missing=True)
    base = float(baseline_row['mean'])
    return AnomalyRow(
        year_row[GROUP_COL], year_row[DOY_COL], year_row.get(YEAR_COL),
        float(year_row['mean']) - base,
        float(year_row['lower']) - base,
        float(year_row['upper']) - base,
    )


class AnomalyCalculator:
    """Vectorized anomaly tables from year and baseline summary tables"""

    def __init__(self, keys=ANOMALY_KEYS, stats=None):
        self.keys = list(keys)
        self.stats = stats if stats is not None else {}

    def _join(self, year_table, baseline_table, baseline_columns):
        base = baseline_table[self.keys + baseline_columns].rename(
            columns={column: f'baseline_{column}' for column in baseline_columns})
        merged = year_table.merge(base, on=self.keys, how='left', validate='many_to_one')
        merged['baseline_missing'] = merged['baseline_mean'].isna()
        return merged

    def calculate_anomalies(self, year_table: pd.DataFrame, baseline_table: pd.DataFrame):
        """
        Anomaly table for every year summary row.

        Returns:
            pd.DataFrame: group, year, doy, year_mean, baseline_mean,
            anomaly_mean, anomaly_lower, anomaly_upper, baseline_missing
        """
        logger.phase_start("Calculating Anomalies")
        if year_table is None or len(year_table) == 0:
            logger.phase_complete("Calculating Anomalies", "no year predictions")
            return pd.DataFrame(columns=[GROUP_COL, YEAR_COL, DOY_COL, 'year_mean', 'baseline_mean', 'anomaly_mean',
                                         'anomaly_lower', 'anomaly_upper', 'baseline_missing'])

        merged = self._join(year_table, baseline_table, ['mean'])
        result = pd.DataFrame({
            GROUP_COL: merged[GROUP_COL],
            YEAR_COL: merged[YEAR_COL],
            DOY_COL: merged[DOY_COL],
            'year_mean': merged['mean'],
            'baseline_mean': merged['baseline_mean'],
            # NaN baseline propagates to NaN anomalies
            'anomaly_mean': merged['mean'] - merged['baseline_mean'],
            'anomaly_lower': merged['lower'] - merged['baseline_mean'],
            'anomaly_upper': merged['upper'] - merged['baseline_mean'],
            'baseline_missing': merged['baseline_missing'],
        })

        missing = int(result['baseline_missing'].sum())
        if missing:
            logger.data_issue("Year rows without a baseline norm (anomaly left missing)", missing)
        self.stats['anomaly_rows'] = len(result)
        self.stats['anomaly_baseline_missing'] = missing
        logger.phase_complete("Calculating Anomalies", f"{len(result)} rows")
        return result

    def calculate_derivative_anomalies(self, year_derivatives: pd.DataFrame, baseline_derivatives: pd.DataFrame):
        """
        Same arithmetic on derivative summaries.

        Keeps the year's own `significant` flag as year_significant and adds
        anomaly_significant (the anomaly band excludes zero).
        """
        logger.phase_start("Calculating Derivative Anomalies")
        if year_derivatives is None or len(year_derivatives) == 0:
            logger.phase_complete("Calculating Derivative Anomalies", "no year derivatives")
            return pd.DataFrame()

        merged = self._join(year_derivatives, baseline_derivatives, ['mean', 'significant'])
        result = pd.DataFrame({
            GROUP_COL: merged[GROUP_COL],
            YEAR_COL: merged[YEAR_COL],
            DOY_COL: merged[DOY_COL],
            'year_mean': merged['mean'],
            'baseline_mean': merged['baseline_mean'],
            'anomaly_mean': merged['mean'] - merged['baseline_mean'],
            'anomaly_lower': merged['lower'] - merged['baseline_mean'],
            'anomaly_upper': merged['upper'] - merged['baseline_mean'],
            'year_significant': merged['significant'].astype(bool),
            'baseline_significant': merged['baseline_significant'],
            'baseline_missing': merged['baseline_missing'],
        })
        with np.errstate(invalid='ignore'):
            result['anomaly_significant'] = (result['anomaly_lower'] * result['anomaly_upper']) > 0

        missing = int(result['baseline_missing'].sum())
        if missing:
            logger.data_issue("Year derivative rows without a baseline derivative", missing)
        self.stats['derivative_anomaly_rows'] = len(result)
        logger.phase_complete("Calculating Derivative Anomalies", f"{len(result)} rows")
        return result


def restrict_to_valid_units(table: pd.DataFrame, valid_units):
    """Keep rows whose group is in the valid-unit mask; None keeps everything"""
    if valid_units is None or table is None or len(table) == 0:
        return table
    valid = {str(unit) for unit in valid_units}
    return table.loc[table[GROUP_COL].astype(str).isin(valid)].reset_index(drop=True)
