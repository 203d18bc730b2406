"""
First-derivative basis by symmetric finite differences.

The derivative of a fitted smooth at p is (X(p + h) - X(p - h)) beta / 2h, so
the differenced basis matrix can be fed to the posterior simulator exactly
like the response basis. Both perturbed matrices are produced by the model's
own basis evaluation, which keeps the periodic wrap of cyclic smooths intact
at the ends of the year.
"""

import numpy as np
import pandas as pd

from .data_constants import DEFAULT_GAM_SETTINGS


def derivative_step(values, eps):
    """Step size eps scaled to the magnitude of each grid value"""
    return eps * np.maximum(1.0, np.abs(values))


def derivative_basis(model, grid: pd.DataFrame, eps=None, term=None, companions=None):
    """
    Evaluate d(basis)/d(term) at every grid point.

    Args:
        model (FittedModel): Fitted model whose basis is differenced
        grid (pd.DataFrame): Prediction grid; must hold every model covariate
        eps (float): Relative perturbation (default 1e-7)
        term (str): Covariate to differentiate; defaults to the first smooth term
        companions (dict): Covariates that move with `term`, mapped to their
            rate of change per unit of `term` (e.g. {'norm': seasonal slope})

    Returns:
        np.ndarray: (n_grid, n_coefficients) derivative basis matrix. Linear
        covariates not listed in `companions` are held fixed, so their columns
        are zero.
    """
    eps = eps or DEFAULT_GAM_SETTINGS['derivative_eps']
    term = term or model.spec.terms[0]
    if term not in grid.columns:
        raise KeyError(f"Prediction grid has no column '{term}' to differentiate")

    values = grid[term].to_numpy(dtype=float)
    step = derivative_step(values, eps)

    forward = grid.copy()
    forward[term] = values + step
    backward = grid.copy()
    backward[term] = values - step
    for column, rate in (companions or {}).items():
        forward[column] = grid[column].to_numpy(dtype=float) + rate * step
        backward[column] = grid[column].to_numpy(dtype=float) - rate * step

    return (model.basis_matrix(forward) - model.basis_matrix(backward)) / (2.0 * step)[:, None]
