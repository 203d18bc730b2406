import numpy as np
import pandas as pd
import pytest

from ndvi_processing.DerivativeTransform import derivative_basis
from ndvi_processing.GamFitter import SmoothSpec, fit
from ndvi_processing.PosteriorSimulator import DERIVATIVE, point_prediction, simulate
from ndvi_processing.SummaryReducer import attach_keys, reduce


def test_derivative_matches_a_finite_difference_of_the_prediction(curve_frame):
    model = fit(curve_frame, 'value', SmoothSpec('doy', 12))
    grid = pd.DataFrame({'doy': np.arange(15.0, 350.0, 5.0)})
    h = 1e-3

    derivative = point_prediction(model, grid, mode=DERIVATIVE)
    forward = model.predict(grid.assign(doy=grid['doy'] + h))
    backward = model.predict(grid.assign(doy=grid['doy'] - h))

    np.testing.assert_allclose(derivative, (forward - backward) / (2 * h), atol=1e-5)


def test_derivative_basis_is_a_central_difference(curve_frame):
    # a wide step separates central from one-sided differencing on a curved fit
    model = fit(curve_frame, 'value', SmoothSpec('doy', 12))
    grid = pd.DataFrame({'doy': [100.0, 171.0, 250.0]})
    step = 0.05 * grid['doy'].to_numpy()

    derivative = point_prediction(model, grid, mode=DERIVATIVE, eps=0.05)
    central = (model.predict(grid.assign(doy=grid['doy'] + step))
               - model.predict(grid.assign(doy=grid['doy'] - step))) / (2 * step)
    forward = (model.predict(grid.assign(doy=grid['doy'] + step)) - model.predict(grid)) / step

    np.testing.assert_allclose(derivative, central, atol=1e-10)
    assert np.max(np.abs(derivative - forward)) > 1e-4


def test_derivative_of_a_linear_trend_is_its_slope():
    rng = np.random.default_rng(8)
    doy = np.arange(1.0, 200.0)
    frame = pd.DataFrame({'doy': doy, 'value': 0.2 + 0.01 * doy + rng.normal(0, 0.001, len(doy))})
    model = fit(frame, 'value', SmoothSpec('doy', 8))

    slope = point_prediction(model, pd.DataFrame({'doy': [50.0, 100.0, 150.0]}), mode=DERIVATIVE)
    np.testing.assert_allclose(slope, 0.01, atol=5e-4)


def test_linear_covariates_are_held_fixed():
    rng = np.random.default_rng(6)
    frame = pd.DataFrame({'window_offset': rng.uniform(-15, 0, 100), 'norm': rng.uniform(0, 1, 100)})
    frame['value'] = frame['norm'] + 0.01 * frame['window_offset'] + rng.normal(0, 0.01, 100)
    model = fit(frame, 'value', SmoothSpec('window_offset', 5, bounds=(-15, 0), linear=('norm',)))

    basis = derivative_basis(model, pd.DataFrame({'norm': [0.5], 'window_offset': [0.0]}), term='window_offset')
    assert basis[0, 0] == 0.0


def test_companion_covariate_moves_with_the_differentiated_term():
    rng = np.random.default_rng(6)
    offset = rng.uniform(-15, 0, 200)
    frame = pd.DataFrame({'window_offset': offset, 'norm': 0.6 + 0.004 * offset + rng.normal(0, 0.005, 200)})
    frame['value'] = frame['norm'] - 0.002 * frame['window_offset'] + rng.normal(0, 0.005, 200)
    model = fit(frame, 'value', SmoothSpec('window_offset', 5, bounds=(-15, 0), linear=('norm',)))
    grid = pd.DataFrame({'norm': [0.6], 'window_offset': [0.0]})

    fixed = derivative_basis(model, grid, term='window_offset')
    moving = derivative_basis(model, grid, term='window_offset', companions={'norm': 0.004})
    assert moving[0, 0] == pytest.approx(0.004, rel=1e-5)
    np.testing.assert_allclose(moving[:, 1:], fixed[:, 1:])

    # through time the response follows the norm's trend plus the smooth's own slope
    total = point_prediction(model, grid, mode=DERIVATIVE, term='window_offset', companions={'norm': 0.004})
    assert total[0] == pytest.approx(0.002, abs=0.0015)


def test_derivative_needs_the_term_on_the_grid(curve_frame):
    model = fit(curve_frame, 'value', SmoothSpec('doy', 8))
    with pytest.raises(KeyError):
        derivative_basis(model, pd.DataFrame({'x': [1.0]}), term='doy')


def test_strong_green_up_is_flagged_significant(curve_frame):
    model = fit(curve_frame, 'value', SmoothSpec('doy', 12))
    grid = pd.DataFrame({'doy': [100.0, 250.0]})
    draws = simulate(model, grid, n_draws=500, mode=DERIVATIVE, rng=np.random.default_rng(0))
    summary = reduce(draws, 'derivative')

    assert list(summary['significant']) == [True, True]
    assert summary.loc[0, 'mean'] > 0 > summary.loc[1, 'mean']


def test_reduce_uses_mean_and_2_5_97_5_percentiles():
    draws = np.column_stack([np.arange(1.0, 1002.0), -np.arange(1.0, 1002.0)])
    summary = reduce(draws)

    assert list(summary.columns) == ['mean', 'lower', 'upper']
    assert summary.loc[0, 'mean'] == pytest.approx(501.0)
    assert summary.loc[0, 'lower'] == pytest.approx(np.quantile(draws[:, 0], 0.025))
    assert summary.loc[0, 'upper'] == pytest.approx(np.quantile(draws[:, 0], 0.975))
    assert summary.loc[1, 'upper'] == pytest.approx(-summary.loc[0, 'lower'])


def test_derivative_significance_requires_a_band_excluding_zero():
    draws = np.column_stack([
        np.linspace(0.1, 0.3, 101),
        np.linspace(-0.1, 0.2, 101),
        np.linspace(-0.3, -0.1, 101),
    ])
    summary = reduce(draws, 'derivative')
    assert list(summary['significant']) == [True, False, True]


def test_attach_keys_prefixes_grid_keys():
    summary = reduce(np.ones((10, 2)))
    keyed = attach_keys(summary, pd.DataFrame({'group': ['a', 'a'], 'doy': [1, 2]}))
    assert list(keyed.columns) == ['group', 'doy', 'mean', 'lower', 'upper']

    with pytest.raises(ValueError):
        attach_keys(summary, pd.DataFrame({'group': ['a'], 'doy': [1]}))
