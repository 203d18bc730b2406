import math

import numpy as np
import pandas as pd
import pytest

from ndvi_processing.AnomalyCalculator import AnomalyCalculator, AnomalyRow, anomaly, restrict_to_valid_units
from ndvi_processing.DroughtClassifier import DroughtClassifier
from ndvi_processing.EventDetector import doy_to_date, find_significant_events, growing_season
from ndvi_processing.data_constants import D0_DRY_NOT_SIGNIFICANT, D0_NORMAL, D4, NORMAL, W4


@pytest.fixture
def baseline_table():
    return pd.DataFrame({
        'group': ['a', 'a', 'b'],
        'doy': [100, 101, 100],
        'mean': [0.50, 0.52, 0.40],
        'lower': [0.48, 0.50, 0.38],
        'upper': [0.52, 0.54, 0.42],
    })


@pytest.fixture
def year_table():
    return pd.DataFrame({
        'group': ['a', 'a', 'b', 'c'],
        'year': [2020, 2020, 2020, 2020],
        'doy': [100, 101, 100, 100],
        'mean': [0.40, 0.55, 0.41, 0.30],
        'lower': [0.35, 0.50, 0.36, 0.25],
        'upper': [0.45, 0.60, 0.46, 0.35],
    })


def test_anomaly_plus_baseline_gives_back_the_year_band(year_table, baseline_table):
    result = AnomalyCalculator().calculate_anomalies(year_table, baseline_table)
    present = result[~result['baseline_missing']]
    merged = present.merge(year_table, on=['group', 'year', 'doy'])

    np.testing.assert_allclose(merged['anomaly_mean'] + merged['baseline_mean'], merged['mean'])
    np.testing.assert_allclose(merged['anomaly_lower'] + merged['baseline_mean'], merged['lower'])
    np.testing.assert_allclose(merged['anomaly_upper'] + merged['baseline_mean'], merged['upper'])


def test_missing_baseline_leaves_anomaly_missing_not_zero(year_table, baseline_table):
    result = AnomalyCalculator().calculate_anomalies(year_table, baseline_table)
    row = result[result['group'] == 'c'].iloc[0]

    assert row['baseline_missing']
    assert math.isnan(row['anomaly_mean'])
    assert math.isnan(row['anomaly_lower'])
    assert math.isnan(row['anomaly_upper'])


def test_single_row_anomaly():
    year_row = {'group': 'a', 'doy': 100, 'year': 2020, 'mean': 0.4, 'lower': 0.35, 'upper': 0.45}
    row = anomaly(year_row, {'mean': 0.5})
    assert row.anomaly_mean == pytest.approx(-0.1)
    assert row.anomaly_upper == pytest.approx(-0.05)
    assert not row.baseline_missing

    missing = anomaly(year_row, None)
    assert isinstance(missing, AnomalyRow)
    assert missing.baseline_missing
    assert missing.as_dict()['anomaly_mean'] != 0.0
    assert math.isnan(missing.as_dict()['anomaly_mean'])
    assert (missing.group, missing.year, missing.doy) == ('a', 2020, 100)


def test_empty_year_table_gives_empty_anomalies(baseline_table):
    result = AnomalyCalculator().calculate_anomalies(pd.DataFrame(), baseline_table)
    assert result.empty
    assert 'anomaly_mean' in result.columns


def test_derivative_anomalies_flag_bands_that_exclude_zero():
    baseline = pd.DataFrame({'group': ['a', 'a'], 'doy': [1, 2], 'mean': [0.01, 0.01],
                             'lower': [0.0, 0.0], 'upper': [0.02, 0.02], 'significant': [False, False]})
    year = pd.DataFrame({'group': ['a', 'a'], 'year': [2020, 2020], 'doy': [1, 2], 'mean': [-0.01, 0.012],
                         'lower': [-0.015, 0.0], 'upper': [-0.005, 0.02], 'significant': [True, False]})
    result = AnomalyCalculator().calculate_derivative_anomalies(year, baseline)

    assert list(result['anomaly_significant']) == [True, False]
    assert list(result['year_significant']) == [True, False]
    assert result.loc[0, 'anomaly_mean'] == pytest.approx(-0.02)


def test_valid_unit_mask_compares_keys_as_strings():
    table = pd.DataFrame({'group': [1, 2, 3], 'value': [0.1, 0.2, 0.3]})
    assert list(restrict_to_valid_units(table, {'1', '3'})['group']) == [1, 3]
    assert len(restrict_to_valid_units(table, None)) == 3


# =============================================================================
# EVENTS
# =============================================================================

def series(upper, group='a', year=2020):
    return pd.DataFrame({'group': group, 'year': year, 'doy': np.arange(1, len(upper) + 1),
                         'anomaly_upper': np.asarray(upper, dtype=float)})


def test_events_have_onset_and_recovery():
    events = find_significant_events(series([1, -1, -1, 1, 1, -1, -1, -1, 1, 1]))
    assert list(events['onset_doy']) == [2, 6]
    assert list(events['recovery_doy']) == [4, 9]
    assert list(events['duration_days']) == [2, 3]
    assert events.loc[0, 'onset_date'] == pd.Timestamp('2020-01-02')


def test_onset_before_previous_recovery_is_not_reported_again():
    # upper == 0 ends the run but is not a recovery
    events = find_significant_events(series([-1, 0, -1, 1]))
    assert list(events['onset_doy']) == [1]
    assert list(events['recovery_doy']) == [4]


def test_event_without_recovery_has_missing_recovery():
    events = find_significant_events(series([1, -1, -1]))
    assert list(events['onset_doy']) == [2]
    assert events['recovery_doy'].isna().all()
    assert pd.isna(events.loc[0, 'recovery_date'])


def test_events_are_restricted_to_the_growing_season():
    season = pd.DataFrame({'group': ['a'], 'season_start': [5], 'season_end': [8]})
    events = find_significant_events(series([-1, -1, 1, 1, 1, -1, 1, 1, 1, 1]), season)
    assert list(events['onset_doy']) == [6]


def test_doy_to_date_counts_from_new_year():
    assert doy_to_date(2020, 1) == pd.Timestamp('2020-01-01')
    assert doy_to_date(2020, 366) == pd.Timestamp('2020-12-31')


def test_growing_season_brackets_the_peak():
    doy = np.arange(1, 366)
    norms = pd.DataFrame({'group': 'a', 'doy': doy,
                          'mean': 0.5 + 0.3 * np.sin(2 * np.pi * (doy - 80) / 365)})
    season = growing_season(norms).iloc[0]

    assert season['peak_doy'] == pytest.approx(171, abs=1)
    assert season['season_start'] < season['peak_doy'] < season['season_end']
    # start sits 15% of the amplitude above the minimum, end at 95% of the peak
    assert 0.5 + 0.3 * np.sin(2 * np.pi * (season['season_start'] - 80) / 365) == pytest.approx(0.29, abs=0.01)
    assert 0.5 + 0.3 * np.sin(2 * np.pi * (season['season_end'] - 80) / 365) == pytest.approx(0.76, abs=0.01)


# =============================================================================
# CLASSIFICATION
# =============================================================================

@pytest.fixture
def spread_anomalies():
    values = np.linspace(-1, 1, 201)
    return pd.DataFrame({'anomaly_mean': values, 'anomaly_lower': values - 0.05, 'anomaly_upper': values + 0.05})


def test_percentile_classification_puts_extremes_in_d4_and_w4(spread_anomalies):
    result = DroughtClassifier('percentile_based').classify(spread_anomalies)
    assert result['drought_category'].iloc[0] == D4
    assert result['drought_category'].iloc[-1] == W4
    assert result['drought_category'].iloc[100] == D0_NORMAL


def test_missing_anomalies_stay_unclassified(spread_anomalies):
    frame = spread_anomalies.copy()
    frame.loc[0, ['anomaly_mean', 'anomaly_lower', 'anomaly_upper']] = np.nan
    result = DroughtClassifier('percentile_based').classify(frame)
    assert pd.isna(result['drought_category'].iloc[0])
    assert result['drought_category'].iloc[1] == D4
    assert result['drought_category'].notna().sum() == 200


def test_all_missing_anomalies_leave_an_empty_category_column(spread_anomalies):
    frame = spread_anomalies.copy()
    frame[['anomaly_mean', 'anomaly_lower', 'anomaly_upper']] = np.nan
    result = DroughtClassifier('hybrid').classify(frame)
    assert result['drought_category'].isna().all()
    assert len(result) == 201


def test_significance_classification_uses_band_width_z_scores():
    frame = pd.DataFrame({'anomaly_mean': [-0.4, -0.05], 'anomaly_lower': [-0.5, -0.15], 'anomaly_upper': [-0.3, 0.05]})
    result = DroughtClassifier('significance_based').classify(frame)

    # sd = 0.2 / (2 * 1.959964), z = -0.4 / sd
    assert result.loc[0, 'z_score'] == pytest.approx(-0.4 / (0.2 / (2 * 1.959964)))
    assert result.loc[0, 'drought_category'] == D4
    assert not result.loc[1, 'is_significant']
    assert result.loc[1, 'drought_category'] == D0_NORMAL


def test_hybrid_marks_non_significant_dry_rows(spread_anomalies):
    frame = spread_anomalies.copy()
    frame['anomaly_lower'] = frame['anomaly_mean'] - 2.0
    frame['anomaly_upper'] = frame['anomaly_mean'] + 2.0
    result = DroughtClassifier('hybrid').classify(frame)

    assert result['drought_category'].iloc[0] == D0_DRY_NOT_SIGNIFICANT
    assert result['drought_category'].iloc[-1] == NORMAL


def test_unknown_classification_method_is_rejected():
    with pytest.raises(ValueError):
        DroughtClassifier('kmeans')
