import numpy as np
import pandas as pd
import pytest

from ndvi_processing.AnomalyCalculator import AnomalyCalculator
from ndvi_processing.ProcessingConfig import ProcessingConfig
from ndvi_processing.WindowedFitLoop import TEMPORAL, DoyWindowedFitLoop
from ndvi_processing.data_constants import HARMONIZED_VALUE_COL, UNIT_FITTED

YEARS = (2018, 2019, 2020)
SHIFT_YEAR = 2020
SHIFT_DOYS = (150, 200)
SHIFT = -0.2


def sinusoid(doy):
    return 0.5 + 0.3 * np.sin(2 * np.pi * np.asarray(doy, dtype=float) / 365)


def sampled_observations(days_per_year=200, noise=0.01, seed=21):
    """One site observed on 200 random days of each year, browned by SHIFT on SHIFT_DOYS of SHIFT_YEAR"""
    rng = np.random.default_rng(seed)
    frames = []
    for year in YEARS:
        doy = np.sort(rng.choice(np.arange(1, 366), days_per_year, replace=False))
        value = sinusoid(doy) + rng.normal(0, noise, len(doy))
        if year == SHIFT_YEAR:
            value = value + SHIFT * ((doy >= SHIFT_DOYS[0]) & (doy <= SHIFT_DOYS[1]))
        frames.append(pd.DataFrame({'group': 'site', 'year': year, 'doy': doy, HARMONIZED_VALUE_COL: value}))
    return pd.concat(frames, ignore_index=True)


@pytest.fixture(scope='module')
def scenario():
    ProcessingConfig.reset_defaults()
    ProcessingConfig.apply_overrides({
        'worker_pool_size': 1,
        'random_seed': 99,
        'n_posterior_draws': 300,
        'window_width_doy': 7,
        'window_width_trailing_days': 16,
        # sparse sampling: ~16 pooled observations per norm window, ~9 per trailing window
        'baseline_min_observations': 8,
        'year_min_observations': 5,
    })
    doys = sorted(set(range(5, 366, 5)) | set(range(SHIFT_DOYS[0], SHIFT_DOYS[0] + 16)))
    frame = sampled_observations()

    loop = DoyWindowedFitLoop(TEMPORAL, config=ProcessingConfig, doys=doys)
    baseline = loop.run_baseline(frame[frame['year'] != SHIFT_YEAR])
    years = loop.run_years(frame, baseline.summary)
    ProcessingConfig.reset_defaults()

    calculator = AnomalyCalculator()
    return {
        'baseline': baseline,
        'years': years,
        'anomalies': calculator.calculate_anomalies(years.summary, baseline.summary),
        'derivative_anomalies': calculator.calculate_derivative_anomalies(years.derivatives, baseline.derivatives),
    }


def test_baseline_recovers_the_seasonal_curve(scenario):
    norms = scenario['baseline'].summary.set_index('doy')
    assert abs(norms.loc[90, 'mean'] - sinusoid(90)) < 0.05


def test_year_without_a_shift_stays_near_its_norm(scenario):
    anomalies = scenario['anomalies']
    quiet = anomalies[anomalies['year'] != SHIFT_YEAR]
    assert len(quiet) > 100
    assert (quiet['anomaly_mean'].abs() < 0.05).mean() >= 0.8


def test_shifted_days_sit_significantly_below_the_norm(scenario):
    anomalies = scenario['anomalies']
    inside = anomalies[(anomalies['year'] == SHIFT_YEAR) & anomalies['doy'].between(170, SHIFT_DOYS[1])]
    assert len(inside) >= 4
    assert (inside['anomaly_upper'] < 0).mean() >= 0.8


def test_shift_onset_has_a_significantly_negative_derivative_anomaly(scenario):
    derivatives = scenario['derivative_anomalies']
    onset = derivatives[(derivatives['year'] == SHIFT_YEAR)
                        & derivatives['doy'].between(SHIFT_DOYS[0], SHIFT_DOYS[0] + 10)]
    assert len(onset) >= 5
    assert (onset['anomaly_upper'] < 0).any()
    assert onset['anomaly_mean'].min() < 0


def test_sparse_windows_never_report_zero_width_bands(scenario):
    years = scenario['years']
    assert ((years.summary['upper'] - years.summary['lower']) > 1e-6).all()

    stats = years.model_stats[years.model_stats['status'] == UNIT_FITTED]
    assert (stats['n_obs'] - stats['edf'] >= 1.0).all()
