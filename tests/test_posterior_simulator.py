import numpy as np
import pandas as pd
import pytest

from ndvi_processing.GamFitter import SmoothSpec, fit
from ndvi_processing.PosteriorSimulator import (
    DERIVATIVE,
    RESPONSE,
    IllConditionedCovariance,
    covariance_root,
    draw_coefficients,
    point_prediction,
    simulate,
)


@pytest.fixture
def model(curve_frame):
    return fit(curve_frame, 'value', SmoothSpec('doy', 10))


@pytest.fixture
def grid():
    return pd.DataFrame({'doy': np.arange(10.0, 360.0, 7.0)})


def test_draw_matrix_has_one_row_per_draw_and_one_column_per_grid_point(model, grid):
    draws = simulate(model, grid, n_draws=50, rng=np.random.default_rng(0))
    assert draws.shape == (50, len(grid))


def test_posterior_mean_converges_to_the_point_prediction(model, grid):
    n_draws = 4000
    draws = simulate(model, grid, n_draws=n_draws, rng=np.random.default_rng(1))
    point = point_prediction(model, grid)

    standard_error = draws.std(axis=0) / np.sqrt(n_draws)
    assert np.all(np.abs(draws.mean(axis=0) - point) <= 5 * standard_error + 1e-12)


def test_same_seed_gives_identical_draws(model, grid):
    first = simulate(model, grid, n_draws=20, rng=np.random.default_rng(np.random.SeedSequence([7, 1, 0, 0, 5])))
    second = simulate(model, grid, n_draws=20, rng=np.random.default_rng(np.random.SeedSequence([7, 1, 0, 0, 5])))
    np.testing.assert_array_equal(first, second)


def test_response_and_derivative_can_share_coefficient_draws(model, grid):
    coefficients = draw_coefficients(model, 30, np.random.default_rng(2))
    response = simulate(model, grid, mode=RESPONSE, coefficient_draws=coefficients)
    derivative = simulate(model, grid, mode=DERIVATIVE, coefficient_draws=coefficients)

    assert response.shape == derivative.shape == (30, len(grid))
    np.testing.assert_allclose(response, coefficients @ model.basis_matrix(grid).T)


def test_unknown_mode_is_rejected(model, grid):
    with pytest.raises(ValueError):
        simulate(model, grid, n_draws=5, mode='hazard')


def test_covariance_root_reproduces_the_covariance():
    rng = np.random.default_rng(4)
    a = rng.normal(size=(6, 6))
    covariance = a @ a.T + 0.1 * np.eye(6)
    root = covariance_root(covariance)
    np.testing.assert_allclose(root @ root.T, covariance, atol=1e-10)


def test_rounding_level_negative_eigenvalues_are_clipped():
    covariance = np.diag([1.0, 0.5, -1e-14])
    root = covariance_root(covariance)
    np.testing.assert_allclose(root @ root.T, np.diag([1.0, 0.5, 0.0]), atol=1e-12)


def test_indefinite_covariance_is_ill_conditioned():
    with pytest.raises(IllConditionedCovariance):
        covariance_root(np.diag([1.0, -0.5]))


def test_non_finite_covariance_is_ill_conditioned():
    with pytest.raises(IllConditionedCovariance):
        covariance_root(np.array([[np.nan, 0.0], [0.0, 1.0]]))
