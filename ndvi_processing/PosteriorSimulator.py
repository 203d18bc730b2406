"""
Posterior simulation for fitted additive models.

Coefficient vectors are drawn from MVN(beta, Vp) through a symmetric matrix
square root of Vp, then pushed through the response basis or the
finite-difference derivative basis evaluated on a prediction grid. The result
is a draw matrix with one row per simulation and one column per grid point.
"""

import numpy as np
import pandas as pd

from .DerivativeTransform import derivative_basis
from .data_constants import DEFAULT_POSTERIOR_SETTINGS

RESPONSE = 'response'
DERIVATIVE = 'derivative'
SIMULATION_MODES = (RESPONSE, DERIVATIVE)


class IllConditionedCovariance(ValueError):
    """Raised when a coefficient covariance has materially negative eigenvalues"""


def covariance_root(covariance, tolerance=None):
    """
    Matrix square root R with R @ R.T == covariance.

    Eigenvalues that are negative only through rounding (relative to the
    largest one) are clipped to zero; anything beyond `tolerance` means the
    covariance is not positive semi-definite.
    """
    tolerance = DEFAULT_POSTERIOR_SETTINGS['eigen_tolerance'] if tolerance is None else tolerance
    covariance = np.asarray(covariance, dtype=float)
    if not np.all(np.isfinite(covariance)):
        raise IllConditionedCovariance("covariance has non-finite entries")
    covariance = (covariance + covariance.T) / 2.0
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)
    if not np.all(np.isfinite(eigenvalues)):
        raise IllConditionedCovariance("covariance has non-finite eigenvalues")

    largest = max(float(np.max(np.abs(eigenvalues))), np.finfo(float).tiny)
    if eigenvalues.min() < -tolerance * largest:
        raise IllConditionedCovariance(
            f"covariance is not positive semi-definite (min eigenvalue {eigenvalues.min():.3e})")
    return eigenvectors * np.sqrt(np.clip(eigenvalues, 0.0, None))


def draw_coefficients(model, n_draws, rng=None, tolerance=None):
    """Draw an (n_draws, n_coefficients) matrix from MVN(model.coefficients, model.covariance)"""
    rng = rng if rng is not None else np.random.default_rng()
    root = covariance_root(model.covariance, tolerance)
    standard = rng.standard_normal((int(n_draws), len(model.coefficients)))
    return model.coefficients + standard @ root.T


def evaluation_basis(model, grid: pd.DataFrame, mode=RESPONSE, eps=None, term=None, companions=None):
    """Basis matrix for the requested simulation mode"""
    if mode == RESPONSE:
        return model.basis_matrix(grid)
    if mode == DERIVATIVE:
        return derivative_basis(model, grid, eps=eps, term=term, companions=companions)
    raise ValueError(f"Unknown simulation mode: {mode}. Valid modes: {SIMULATION_MODES}")


def point_prediction(model, grid: pd.DataFrame, mode=RESPONSE, eps=None, term=None, companions=None):
    """Deterministic basis @ beta, without sampling"""
    return evaluation_basis(model, grid, mode, eps, term, companions) @ model.coefficients


def simulate(model, grid: pd.DataFrame, n_draws=None, mode=RESPONSE, rng=None, eps=None, term=None,
             coefficient_draws=None, companions=None):
    """
    Simulate the posterior of the response (or its derivative) on a grid.

    Args:
        model (FittedModel): Fitted model
        grid (pd.DataFrame): Prediction grid
        n_draws (int): Number of posterior draws (ignored with coefficient_draws)
        mode (str): 'response' or 'derivative'
        rng (np.random.Generator): Random generator; seeding is the caller's concern
        eps (float): Finite-difference step for derivative mode
        term (str): Covariate differentiated in derivative mode
        coefficient_draws (np.ndarray): Reuse draws already taken for this model,
            so response and derivative posteriors share the same simulations
        companions (dict): Covariates moving with `term` in derivative mode

    Returns:
        np.ndarray: (n_draws, n_grid) draw matrix
    """
    if coefficient_draws is None:
        n_draws = n_draws or DEFAULT_POSTERIOR_SETTINGS['n_draws']
        coefficient_draws = draw_coefficients(model, n_draws, rng)
    basis = evaluation_basis(model, grid, mode, eps, term, companions)
    return coefficient_draws @ basis.T
