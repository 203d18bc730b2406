import numpy as np
import pandas as pd

from .data_constants import DEFAULT_POSTERIOR_SETTINGS


def reduce(draws, mode='response', lower_quantile=None, upper_quantile=None):
    """
    Collapse a (n_draws, n_grid) draw matrix into one summary row per grid point.

    mean is the average over draws; lower/upper are the 2.5th/97.5th
    percentiles. Derivative mode adds `significant`: the band excludes zero.
    """
    lower_quantile = DEFAULT_POSTERIOR_SETTINGS['lower_quantile'] if lower_quantile is None else lower_quantile
    upper_quantile = DEFAULT_POSTERIOR_SETTINGS['upper_quantile'] if upper_quantile is None else upper_quantile

    draws = np.asarray(draws, dtype=float)
    if draws.ndim == 1:
        draws = draws[:, None]

    summary = pd.DataFrame({
        'mean': draws.mean(axis=0),
        'lower': np.quantile(draws, lower_quantile, axis=0),
        'upper': np.quantile(draws, upper_quantile, axis=0),
    })
    if mode == 'derivative':
        summary['significant'] = (summary['lower'] * summary['upper']) > 0
    return summary


def attach_keys(summary: pd.DataFrame, keys: pd.DataFrame):
    """Prefix reduced columns with the grid's key columns (group, doy[, year])"""
    if len(summary) != len(keys):
        raise ValueError(f"{len(keys)} key rows for {len(summary)} summary rows")
    return pd.concat([keys.reset_index(drop=True), summary.reset_index(drop=True)], axis=1)
