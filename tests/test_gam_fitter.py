import numpy as np
import pandas as pd
import pytest

from ndvi_processing.GamFitter import CoverageGate, FitFailure, FittedModel, GamFitter, SmoothSpec, fit
from ndvi_processing.SplineBasis import SmoothBasis, difference_penalty
from ndvi_processing.data_constants import SKIP_DEGENERATE_FIT, SKIP_INSUFFICIENT_DATA, SKIP_MISSING_COLUMNS


def truth(doy):
    return 0.5 + 0.3 * np.sin(2 * np.pi * (np.asarray(doy, dtype=float) - 80) / 365)


def test_gate_rejects_one_below_threshold_and_accepts_threshold(curve_frame):
    threshold = len(curve_frame)
    spec = SmoothSpec('doy', 10)

    below = fit(curve_frame.iloc[:-1], 'value', spec, CoverageGate(min_observations=threshold))
    at = fit(curve_frame, 'value', spec, CoverageGate(min_observations=threshold))

    assert isinstance(below, FitFailure)
    assert not below
    assert below.reason == SKIP_INSUFFICIENT_DATA
    assert below.n_obs == threshold - 1
    assert isinstance(at, FittedModel)


def test_gate_counts_distinct_values():
    frame = pd.DataFrame({'doy': [10.0, 11.0, 12.0] * 10, 'value': np.linspace(0, 1, 30)})
    result = fit(frame, 'value', SmoothSpec('doy', 5), CoverageGate(min_observations=5, min_distinct=4))
    assert not result
    assert result.reason == SKIP_INSUFFICIENT_DATA
    assert '3 distinct' in result.detail


def test_missing_rows_do_not_count_towards_the_gate(curve_frame):
    frame = curve_frame.copy()
    frame.loc[:9, 'value'] = np.nan
    result = fit(frame, 'value', SmoothSpec('doy', 10), CoverageGate(min_observations=len(frame)))
    assert result.reason == SKIP_INSUFFICIENT_DATA


def test_missing_column_is_a_skip_not_an_error(curve_frame):
    result = fit(curve_frame, 'value', SmoothSpec('doy', 10, linear=('norm',)))
    assert result.reason == SKIP_MISSING_COLUMNS


def test_fit_recovers_a_smooth_curve(curve_frame):
    model = fit(curve_frame, 'value', SmoothSpec('doy', 12))
    grid = pd.DataFrame({'doy': np.arange(20, 346, dtype=float)})

    assert np.max(np.abs(model.predict(grid) - truth(grid['doy']))) < 0.03
    assert 2 < model.edf < 12
    assert model.smoothing_parameter > 0
    assert model.covariance.shape == (model.n_coefficients, model.n_coefficients)
    np.testing.assert_allclose(model.covariance, model.covariance.T)


def test_cyclic_fit_joins_the_ends_of_the_year(curve_frame):
    spec = SmoothSpec('doy', 12, cyclic=True, bounds=(1, 365))
    model = fit(curve_frame, 'value', spec)

    ends = model.predict(pd.DataFrame({'doy': [1.0, 365.0]}))
    assert ends[0] == pytest.approx(ends[1], abs=1e-10)

    near = model.predict(pd.DataFrame({'doy': [364.5, 1.5]}))
    assert abs(near[0] - near[1]) < 0.01


def test_linear_covariate_is_estimated_alongside_the_smooth():
    rng = np.random.default_rng(5)
    offset = rng.uniform(-15, 0, 300)
    norm = rng.uniform(0.2, 0.8, 300)
    frame = pd.DataFrame({
        'window_offset': offset,
        'norm': norm,
        'value': 2.0 * norm + 0.01 * offset + rng.normal(0, 0.01, 300),
    })
    model = fit(frame, 'value', SmoothSpec('window_offset', 5, bounds=(-15, 0), linear=('norm',)))

    assert model.linear_coefficients()['norm'] == pytest.approx(2.0, abs=0.05)
    assert model.stats()['norm_coef'] == pytest.approx(2.0, abs=0.05)
    assert model.column_names()[0] == 'norm'


def test_tensor_surface_over_pixel_coordinates():
    rng = np.random.default_rng(9)
    x, y = np.meshgrid(np.arange(8.0), np.arange(8.0))
    frame = pd.DataFrame({'x': x.ravel(), 'y': y.ravel()})
    frame = pd.concat([frame] * 3, ignore_index=True)
    frame['value'] = 0.3 + 0.02 * frame['x'] - 0.01 * frame['y'] + rng.normal(0, 0.005, len(frame))

    model = fit(frame, 'value', SmoothSpec(('x', 'y'), 5))

    assert model.n_coefficients == 25
    predicted = model.predict(pd.DataFrame({'x': [2.0, 6.0], 'y': [3.0, 3.0]}))
    assert predicted[1] - predicted[0] == pytest.approx(0.08, abs=0.01)


def test_by_factor_gives_one_smooth_per_level(curve_frame):
    first = curve_frame.assign(cls='crop')
    second = curve_frame.assign(cls='forest', value=curve_frame['value'] + 0.2)
    frame = pd.concat([first, second], ignore_index=True)

    model = fit(frame, 'value', SmoothSpec('doy', 8, by='cls'))

    assert model.n_coefficients == 16
    grid = pd.DataFrame({'doy': [180.0, 180.0], 'cls': ['crop', 'forest']})
    crop, forest = model.predict(grid)
    assert forest - crop == pytest.approx(0.2, abs=0.02)


def test_fitter_honours_configured_search_bounds(curve_frame):
    model = GamFitter(max_iterations=5, log_lambda_bounds=(-2.0, -1.0)).fit(
        curve_frame, 'value', SmoothSpec('doy', 12))
    assert model
    assert model.smoothing_parameter > 0


def test_basis_dimension_below_the_spline_minimum_is_rejected():
    with pytest.raises(ValueError):
        SmoothBasis(('doy',), 3).fit(pd.DataFrame({'doy': np.arange(1.0, 50.0)}))


def test_difference_penalty_leaves_linear_trends_unpenalized():
    penalty = difference_penalty(8, order=2)
    linear = np.arange(8.0)
    np.testing.assert_allclose(penalty @ linear, 0.0, atol=1e-12)
    cyclic = difference_penalty(8, order=2, cyclic=True)
    np.testing.assert_allclose(cyclic @ np.ones(8), 0.0, atol=1e-12)


def test_saturated_trailing_window_is_skipped_not_fitted_exactly():
    # three observations against norm + the constant and linear part of the smooth
    frame = pd.DataFrame({
        'window_offset': [-12.0, -6.0, 0.0],
        'norm': [0.52, 0.55, 0.61],
        'value': [0.50, 0.58, 0.57],
    })
    spec = SmoothSpec('window_offset', 5, bounds=(-15, 0), linear=('norm',))
    result = fit(frame, 'value', spec, CoverageGate(min_observations=3))

    assert isinstance(result, FitFailure)
    assert result.reason == SKIP_DEGENERATE_FIT
    assert result.n_obs == 3


def test_fits_keep_the_configured_residual_degrees_of_freedom():
    frame = pd.DataFrame({
        'window_offset': [-14.0, -10.0, -7.0, -3.0, 0.0],
        'value': [0.40, 0.46, 0.45, 0.52, 0.55],
    })
    spec = SmoothSpec('window_offset', 5, bounds=(-15, 0))

    model = GamFitter().fit(frame, 'value', spec)
    assert model
    assert model.n_obs - model.edf >= 1.0
    assert model.sigma2 > 0

    strict = GamFitter(min_residual_df=4.0).fit(frame, 'value', spec)
    assert strict.reason == SKIP_DEGENERATE_FIT
