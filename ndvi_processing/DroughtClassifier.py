import numpy as np
import pandas as pd

from .data_constants import (
    CLASSIFICATION_METHODS,
    D0_DRY_NOT_SIGNIFICANT,
    D0_NORMAL,
    DEFAULT_DROUGHT_SETTINGS,
    HYBRID_DRY_THRESHOLDS,
    HYBRID_WET_THRESHOLDS,
    NORMAL,
    PERCENTILE_DRY_THRESHOLDS,
    PERCENTILE_WET_THRESHOLDS,
    SIGNIFICANCE_DRY_THRESHOLDS,
    SIGNIFICANCE_WET_THRESHOLDS,
)
from .logging_utils import logger


class DroughtClassifier:
    """Assigns drought/wetness categories to anomaly rows"""

    def __init__(self, method=None, config=None, stats=None):
        if config:
            method = method or config.get_drought_setting('method')
            self.z_critical = config.get_drought_setting('z_critical')
        else:
            method = method or DEFAULT_DROUGHT_SETTINGS['method']
            self.z_critical = DEFAULT_DROUGHT_SETTINGS['z_critical']
        if method not in CLASSIFICATION_METHODS:
            raise ValueError(f"Unknown classification method: {method}. Valid methods: {CLASSIFICATION_METHODS}")
        self.method = method
        self.stats = stats if stats is not None else {}

    def add_significance(self, anomalies: pd.DataFrame):
        """z_score from the credible band width and is_significant (band excludes zero)"""
        result = anomalies.copy()
        lower = result['anomaly_lower'].to_numpy(dtype=float)
        upper = result['anomaly_upper'].to_numpy(dtype=float)
        sd = (upper - lower) / (2.0 * self.z_critical)
        with np.errstate(divide='ignore', invalid='ignore'):
            result['z_score'] = result['anomaly_mean'].to_numpy(dtype=float) / sd
            result['is_significant'] = (lower * upper) > 0
        return result

    def classify(self, anomalies: pd.DataFrame):
        """
        Add drought_category (plus z_score and is_significant).

        Rows whose anomaly is missing stay unclassified.
        """
        logger.phase_start("Classifying Drought")
        result = self.add_significance(anomalies)
        values = result['anomaly_mean'].to_numpy(dtype=float)
        valid = ~np.isnan(values)

        if not valid.any():
            result['drought_category'] = pd.Series(None, index=result.index, dtype=object)
            logger.phase_complete("Classifying Drought", "no anomalies to classify")
            return result

        if self.method == 'percentile_based':
            categories = self._percentile_based(values[valid])
        elif self.method == 'significance_based':
            categories = self._significance_based(result.loc[valid, 'z_score'].to_numpy(),
                                                  result.loc[valid, 'is_significant'].to_numpy())
        else:
            categories = self._hybrid(values[valid], result.loc[valid, 'is_significant'].to_numpy())

        column = np.full(len(result), None, dtype=object)
        column[valid] = categories
        result['drought_category'] = pd.Series(column, index=result.index, dtype=object)

        distribution = result['drought_category'].value_counts().to_dict()
        self.stats['drought_categories'] = distribution
        logger.phase_complete("Classifying Drought", f"{self.method}, {int(valid.sum())} rows classified")
        logger.summary("Drought Category Distribution", distribution)
        return result

    @staticmethod
    def _percentile_based(values):
        conditions, labels = [], []
        for probability, label in PERCENTILE_DRY_THRESHOLDS:
            conditions.append(values < np.quantile(values, probability))
            labels.append(label)
        for probability, label in PERCENTILE_WET_THRESHOLDS:
            conditions.append(values > np.quantile(values, probability))
            labels.append(label)
        return np.select(conditions, labels, default=D0_NORMAL)

    @staticmethod
    def _significance_based(z_scores, significant):
        conditions, labels = [], []
        for threshold, label in SIGNIFICANCE_DRY_THRESHOLDS:
            conditions.append((z_scores < threshold) & significant)
            labels.append(label)
        for threshold, label in SIGNIFICANCE_WET_THRESHOLDS:
            conditions.append((z_scores > threshold) & significant)
            labels.append(label)
        return np.select(conditions, labels, default=D0_NORMAL)

    @staticmethod
    def _hybrid(values, significant):
        conditions, labels = [], []
        for probability, label in HYBRID_DRY_THRESHOLDS:
            conditions.append((values < np.quantile(values, probability)) & significant)
            labels.append(label)
        for probability, label in HYBRID_WET_THRESHOLDS:
            conditions.append((values > np.quantile(values, probability)) & significant)
            labels.append(label)
        conditions.append(values < 0)
        labels.append(D0_DRY_NOT_SIGNIFICANT)
        return np.select(conditions, labels, default=NORMAL)
