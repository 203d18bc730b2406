"""
Growing-season windows and significant negative-anomaly events.

An event starts on the first day of a run where the anomaly's upper bound is
below zero (the whole band is negative) and recovers on the first later day
whose upper bound is above zero again. Onsets that fall before the previous
event's recovery are part of that event and are not reported twice; once an
event never recovers, no later onsets are reported for that group and year.
"""

import numpy as np
import pandas as pd

from .data_constants import (
    DOY_COL,
    GROUP_COL,
    GROWING_SEASON_LOWER_FRACTION,
    GROWING_SEASON_UPPER_FRACTION,
    YEAR_COL,
)
from .logging_utils import logger

EVENT_COLUMNS = [GROUP_COL, YEAR_COL, 'onset_doy', 'recovery_doy', 'onset_date', 'recovery_date', 'duration_days']


def doy_to_date(year, doy):
    """Calendar date of a day-of-year, counting from Dec 31 of the previous year"""
    return pd.Timestamp(year=int(year) - 1, month=12, day=31) + pd.Timedelta(days=int(doy))


def growing_season(norms: pd.DataFrame, lower_fraction=GROWING_SEASON_LOWER_FRACTION,
                   upper_fraction=GROWING_SEASON_UPPER_FRACTION):
    """
    Growing season per group from the norm curve.

    The season starts on the day between the curve's minimum and its peak
    closest to min + lower_fraction * (max - min), and ends on the day after
    the peak closest to upper_fraction * max.

    Returns:
        pd.DataFrame: group, min_doy, peak_doy, season_start, season_end
    """
    rows = []
    for group, curve in norms.groupby(GROUP_COL, sort=True):
        curve = curve.sort_values(DOY_COL)
        doys = curve[DOY_COL].to_numpy()
        values = curve['mean'].to_numpy(dtype=float)

        peak_doy = int(doys[np.argmax(values)])
        min_doy = int(doys[np.argmin(values)])
        high, low = values.max(), values.min()
        lower_threshold = low + lower_fraction * (high - low)
        upper_threshold = upper_fraction * high

        rising = (doys > min_doy) & (doys < peak_doy)
        if not rising.any():
            # minimum falls after the peak (winter trough late in the year)
            rising = doys < peak_doy
        falling = doys > peak_doy

        season_start = int(doys[rising][np.argmin(np.abs(values[rising] - lower_threshold))]) if rising.any() else np.nan
        season_end = int(doys[falling][np.argmin(np.abs(values[falling] - upper_threshold))]) if falling.any() else np.nan
        rows.append({
            GROUP_COL: group,
            'min_doy': min_doy,
            'peak_doy': peak_doy,
            'season_start': season_start,
            'season_end': season_end,
        })
    return pd.DataFrame(rows, columns=[GROUP_COL, 'min_doy', 'peak_doy', 'season_start', 'season_end'])


def _events_in_series(doys, upper):
    """(onset, recovery) pairs for one group-year series sorted by DOY"""
    negative = upper < 0
    previous = np.concatenate([[False], negative[:-1]])
    onsets = doys[negative & ~previous]

    events = []
    last_recovery = -np.inf
    for onset in onsets:
        if last_recovery is None or onset <= last_recovery:
            continue
        rebound = doys[(doys > onset) & (upper > 0)]
        if len(rebound):
            recovery = int(rebound[0])
            last_recovery = recovery
        else:
            recovery = None
            last_recovery = None
        events.append((int(onset), recovery))
    return events


def find_significant_events(anomalies: pd.DataFrame, season: pd.DataFrame = None, upper_column='anomaly_upper'):
    """
    Onset and recovery dates of significant negative anomalies.

    Args:
        anomalies (pd.DataFrame): group, year, doy and the upper anomaly bound
            (response or derivative anomalies)
        season (pd.DataFrame): Optional growing_season() table; events are
            searched inside each group's season only
        upper_column (str): Column holding the upper bound

    Returns:
        pd.DataFrame: group, year, onset_doy, recovery_doy, onset_date,
        recovery_date, duration_days (recovery columns missing when the
        anomaly never recovers)
    """
    if anomalies is None or len(anomalies) == 0:
        return pd.DataFrame(columns=EVENT_COLUMNS)

    seasons = season.set_index(GROUP_COL) if season is not None else None
    rows = []
    for (group, year), series in anomalies.dropna(subset=[upper_column]).groupby([GROUP_COL, YEAR_COL], sort=True):
        if seasons is not None:
            if group not in seasons.index or pd.isna(seasons.loc[group, 'season_start']):
                continue
            start, end = seasons.loc[group, 'season_start'], seasons.loc[group, 'season_end']
            series = series[(series[DOY_COL] >= start) & (series[DOY_COL] <= end)]
        series = series.sort_values(DOY_COL)
        if series.empty:
            continue

        for onset, recovery in _events_in_series(series[DOY_COL].to_numpy(), series[upper_column].to_numpy(dtype=float)):
            rows.append({
                GROUP_COL: group,
                YEAR_COL: int(year),
                'onset_doy': onset,
                'recovery_doy': recovery if recovery is not None else np.nan,
                'onset_date': doy_to_date(year, onset),
                'recovery_date': doy_to_date(year, recovery) if recovery is not None else pd.NaT,
                'duration_days': (recovery - onset) if recovery is not None else np.nan,
            })

    events = pd.DataFrame(rows, columns=EVENT_COLUMNS)
    logger.info(f"Significant negative events: {len(events)} "
                f"({int(events['recovery_doy'].isna().sum()) if len(events) else 0} without recovery)")
    return events
