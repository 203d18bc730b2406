import numpy as np
import pandas as pd

from ndvi_processing.WindowBuilder import (
    SHIFTED_DOY_COL,
    assemble_norm_window,
    assemble_trailing_window,
    circular_offset,
    doy_window,
    shift_to_year,
    wrap_doy,
)


def daily(start, end):
    dates = pd.date_range(start, end, freq='D')
    return pd.DataFrame({'date': dates, 'doy': dates.dayofyear, 'year': dates.year, 'value': 1.0})


def test_wrap_doy_maps_onto_1_to_365():
    np.testing.assert_array_equal(wrap_doy([0, 1, 365, 366, -2]), [365, 1, 365, 1, 363])


def test_doy_window_wraps_across_new_year():
    window = doy_window(3, 7)
    assert len(window) == 15
    assert set(window) == set(range(361, 366)) | set(range(1, 11))


def test_doy_window_inside_the_year_is_contiguous():
    np.testing.assert_array_equal(doy_window(100, 7), np.arange(93, 108))


def test_circular_offset_is_signed_and_short():
    np.testing.assert_array_equal(circular_offset([364, 3, 10, 1], 3), [-4, 0, 7, -2])


def test_norm_window_pools_every_year():
    frame = daily('2018-01-01', '2020-12-31')
    window = assemble_norm_window(frame, 2, 7)

    assert window['window_offset'].between(-7, 7).all()
    assert set(window['year']) == {2018, 2019, 2020}
    assert window['doy'].isin([361, 362, 363, 364, 365]).any()
    assert len(window) == 45


def test_previous_december_is_shifted_to_negative_days():
    frame = daily('2019-12-01', '2020-01-31')
    shifted = shift_to_year(frame, 2020, padding_days=31)
    dec20 = shifted.loc[shifted['date'] == pd.Timestamp('2019-12-20'), SHIFTED_DOY_COL]
    dec31 = shifted.loc[shifted['date'] == pd.Timestamp('2019-12-31'), SHIFTED_DOY_COL]
    assert int(dec20.iloc[0]) == -11
    assert int(dec31.iloc[0]) == 0


def test_padding_limits_how_far_back_december_reaches():
    frame = daily('2019-11-01', '2020-01-31')
    shifted = shift_to_year(frame, 2020, padding_days=10)
    assert shifted[SHIFTED_DOY_COL].min() == -9
    assert (shifted['year'] == 2020).sum() == 31


def test_next_january_is_kept_only_for_season_fits():
    frame = daily('2020-12-01', '2021-01-31')
    without = shift_to_year(frame, 2020, padding_days=31)
    with_next = shift_to_year(frame, 2020, padding_days=31, include_next=True)

    assert without[SHIFTED_DOY_COL].max() == 366
    assert with_next[SHIFTED_DOY_COL].max() == 366 + 31


def test_trailing_window_reaches_into_previous_december():
    frame = daily('2019-12-01', '2020-01-31')
    window = assemble_trailing_window(frame, 2020, 5, 16)

    assert len(window) == 16
    assert window[SHIFTED_DOY_COL].min() == -10
    assert window['window_offset'].max() == 0
    assert window['window_offset'].min() == -15
    assert pd.Timestamp('2019-12-21') in set(window['date'])
    assert pd.Timestamp('2019-12-20') not in set(window['date'])


def test_trailing_window_uses_only_the_target_year():
    frame = daily('2018-01-01', '2020-12-31')
    window = assemble_trailing_window(frame, 2019, 200, 16)
    assert set(window['year']) == {2019}
    assert len(window) == 16
