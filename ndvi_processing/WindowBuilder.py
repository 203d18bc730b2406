"""
Training-window assembly for the DOY loops.

Norm windows pool every year's observations within ±W days of the target
day-of-year, wrapping across the year boundary on day-of-year values. Year
windows trail the target date by L days inside one year; observations from
the preceding December are shifted onto the target year's axis (Dec 20 of
Y-1 becomes day -11) so early-January targets still get a full window.
"""

import calendar

import numpy as np
import pandas as pd

from .data_constants import DAYS_IN_YEAR, DOY_COL, WINDOW_OFFSET_COL, YEAR_COL

SHIFTED_DOY_COL = 'year_doy'


def wrap_doy(doy, days_in_year=DAYS_IN_YEAR):
    """Map any integer day onto 1..days_in_year"""
    return ((np.asarray(doy) - 1) % days_in_year) + 1


def doy_window(target_doy, half_width, days_in_year=DAYS_IN_YEAR):
    """
    Day-of-year values within ±half_width of target_doy.

    Near the ends of the year the result is the union of the wrapped low and
    high segments, e.g. doy_window(3, 7) covers 361..365 and 1..10.
    """
    offsets = np.arange(-int(half_width), int(half_width) + 1)
    return np.unique(wrap_doy(target_doy + offsets, days_in_year))


def circular_offset(doy, target_doy, days_in_year=DAYS_IN_YEAR):
    """Signed day difference doy - target_doy on the day-of-year circle"""
    half = days_in_year // 2
    return ((np.asarray(doy) - target_doy + half) % days_in_year) - half


def assemble_norm_window(frame: pd.DataFrame, target_doy, half_width, days_in_year=DAYS_IN_YEAR):
    """Rows of all years whose DOY falls in the wrapped ±half_width window, with window_offset"""
    window = frame[frame[DOY_COL].isin(doy_window(target_doy, half_width, days_in_year))].copy()
    window[WINDOW_OFFSET_COL] = circular_offset(window[DOY_COL].to_numpy(), target_doy, days_in_year)
    return window


def days_in(year):
    return 366 if calendar.isleap(int(year)) else 365


def shift_to_year(frame: pd.DataFrame, year, padding_days, include_next=False):
    """
    Place observations on the day axis of `year`.

    Observations of `year` keep their DOY; those of year - 1 become
    doy - days_in(year - 1), so Dec 31 is 0 and Dec 20 is -11. With
    include_next, observations of year + 1 become doy + days_in(year).
    Only rows within `padding_days` of the target year are kept.
    """
    year = int(year)
    observed_year = frame[YEAR_COL].to_numpy()
    shift = np.select(
        [observed_year == year, observed_year == year - 1, observed_year == year + 1],
        [0, -days_in(year - 1), days_in(year)],
        default=np.iinfo(np.int32).min,
    )
    shifted = frame[DOY_COL].to_numpy() + shift

    upper = days_in(year) + (padding_days if include_next else 0)
    keep = (observed_year == year) | (observed_year == year - 1)
    if include_next:
        keep = keep | (observed_year == year + 1)
    keep = keep & (shifted >= 1 - padding_days) & (shifted <= upper)

    result = frame.loc[keep].copy()
    result[SHIFTED_DOY_COL] = shifted[keep]
    return result


def trailing_window(shifted: pd.DataFrame, target_doy, length):
    """Rows of an already year-shifted table inside the L-day window ending at target_doy"""
    start = target_doy - int(length) + 1
    window = shifted[(shifted[SHIFTED_DOY_COL] >= start) & (shifted[SHIFTED_DOY_COL] <= target_doy)].copy()
    window[WINDOW_OFFSET_COL] = window[SHIFTED_DOY_COL] - target_doy
    return window


def assemble_trailing_window(frame: pd.DataFrame, year, target_doy, length):
    """Trailing L-day window ending at (year, target_doy), including the shifted previous December"""
    return trailing_window(shift_to_year(frame, year, padding_days=int(length)), target_doy, length)
