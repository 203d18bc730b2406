"""
GAM fitting adapter.

fit() turns a data table and a smooth specification into a FittedModel
(coefficients, Bayesian coefficient covariance and the basis bound to the
training data) or a FitFailure. Sparse windows are an expected outcome of the
DOY loops, so every "cannot fit" path returns a FitFailure instead of raising.

Estimation is penalized least squares with the smoothing parameter chosen by
generalized cross-validation:

    beta = (X'X + lambda S)^-1 X'y
    Vp   = sigma^2 (X'X + lambda S)^-1,   sigma^2 = RSS / (n - edf)
"""

import numpy as np
import pandas as pd
from scipy.linalg import LinAlgError, block_diag, cho_factor, cho_solve
from scipy.optimize import minimize_scalar

from .SplineBasis import SmoothBasis
from .data_constants import (
    DEFAULT_GAM_SETTINGS,
    SKIP_DEGENERATE_FIT,
    SKIP_ILL_CONDITIONED,
    SKIP_INSUFFICIENT_DATA,
    SKIP_MISSING_COLUMNS,
)

_GCV_INFEASIBLE = 1e300


class SmoothSpec:
    """
    Formula-like description of response ~ [linear +] s(terms[, by]).

    Args:
        terms: One covariate name (e.g. 'doy') or two ('x', 'y')
        basis_dimension: Requested number of basis functions (per axis for two terms)
        cyclic: Use a periodic basis on `bounds` (single covariate only)
        bounds: (lower, upper) of the basis domain, or a dict per term.
            Defaults to the data range.
        by: Optional categorical column; one smooth per level
        linear: Optional unpenalized linear covariates (e.g. ('norm',))
        penalty_order: Order of the coefficient difference penalty
    """

    def __init__(self, terms, basis_dimension=12, cyclic=False, bounds=None, by=None, linear=(), penalty_order=2):
        self.terms = (terms,) if isinstance(terms, str) else tuple(terms)
        self.basis_dimension = basis_dimension
        self.cyclic = cyclic
        self.bounds = bounds
        self.by = by
        self.linear = (linear,) if isinstance(linear, str) else tuple(linear)
        self.penalty_order = penalty_order

    @property
    def columns(self):
        columns = list(self.linear) + list(self.terms)
        if self.by is not None:
            columns.append(self.by)
        return columns

    def build_basis(self):
        return SmoothBasis(self.terms, self.basis_dimension, cyclic=self.cyclic, bounds=self.bounds,
                           by=self.by, penalty_order=self.penalty_order)

    def __repr__(self):
        linear = ' + '.join(self.linear)
        by = f", by={self.by}" if self.by else ''
        kind = 'cc' if self.cyclic else ('te' if len(self.terms) == 2 else 'ps')
        smooth = f"s({', '.join(self.terms)}, k={self.basis_dimension}, bs='{kind}'{by})"
        return f"SmoothSpec({linear + ' + ' if linear else ''}{smooth})"


class CoverageGate:
    """
    Minimum-data precondition checked before a fit is attempted.

    Args:
        min_observations: Minimum number of complete, non-missing rows
        min_distinct: Minimum number of distinct values over `distinct_columns`
            (distinct days for temporal fits, distinct pixels for spatial fits)
        distinct_columns: Columns whose distinct combinations are counted;
            defaults to the smooth's covariates
    """

    def __init__(self, min_observations=1, min_distinct=0, distinct_columns=None):
        self.min_observations = int(min_observations)
        self.min_distinct = int(min_distinct)
        self.distinct_columns = list(distinct_columns) if distinct_columns else None

    def evaluate(self, frame, default_columns):
        n_obs = len(frame)
        if n_obs < self.min_observations:
            return False, f"{n_obs} observations < {self.min_observations} required"
        if self.min_distinct > 0:
            columns = self.distinct_columns or list(default_columns)
            n_distinct = len(frame[columns].drop_duplicates())
            if n_distinct < self.min_distinct:
                return False, f"{n_distinct} distinct {'/'.join(columns)} values < {self.min_distinct} required"
        return True, ''


class FitFailure:
    """Signal that a unit could not be fitted; falsy so callers can write `if not model`"""

    def __init__(self, reason, detail='', n_obs=0):
        self.reason = reason
        self.detail = detail
        self.n_obs = n_obs

    def __bool__(self):
        return False

    def __repr__(self):
        return f"FitFailure(reason={self.reason!r}, detail={self.detail!r}, n_obs={self.n_obs})"


class FittedModel:
    """Penalized regression spline fit with its Bayesian coefficient covariance"""

    def __init__(self, spec, basis, coefficients, covariance, smoothing_parameter, edf, sigma2,
                 n_obs, r2, rmse, gcv_score):
        self.spec = spec
        self.basis = basis
        self.coefficients = coefficients
        self.covariance = covariance
        self.smoothing_parameter = smoothing_parameter
        self.edf = edf
        self.sigma2 = sigma2
        self.n_obs = n_obs
        self.r2 = r2
        self.rmse = rmse
        self.gcv_score = gcv_score

    def __bool__(self):
        return True

    @property
    def n_coefficients(self):
        return len(self.coefficients)

    def column_names(self):
        return list(self.spec.linear) + self.basis.column_names()

    def basis_matrix(self, frame: pd.DataFrame):
        """Evaluate the model's design matrix (the "lpmatrix") at new data"""
        parts = [frame[list(self.spec.linear)].to_numpy(dtype=float)] if self.spec.linear else []
        parts.append(self.basis.transform(frame))
        return np.hstack(parts)

    def predict(self, frame: pd.DataFrame):
        return self.basis_matrix(frame) @ self.coefficients

    def linear_coefficients(self):
        return {name: float(self.coefficients[i]) for i, name in enumerate(self.spec.linear)}

    def stats(self):
        stats = {
            'n_obs': self.n_obs,
            'edf': self.edf,
            'smoothing_parameter': self.smoothing_parameter,
            'r2': self.r2,
            'rmse': self.rmse,
        }
        for name, value in self.linear_coefficients().items():
            stats[f'{name}_coef'] = value
        return stats


class _PenalizedLeastSquares:
    """Cached cross-products for repeated solves along the smoothing-parameter search"""

    def __init__(self, X, y, penalty, min_residual_df=1.0):
        self.X = X
        self.y = y
        self.n = len(y)
        self.XtX = X.T @ X
        self.Xty = X.T @ y
        self.penalty = penalty
        self.min_residual_df = min_residual_df
        penalty_trace = np.trace(penalty)
        # put lambda on the scale of the data so the search bounds are comparable across fits
        self.scale = np.trace(self.XtX) / penalty_trace if penalty_trace > 0 else 1.0

    def smoothing_parameter(self, log_lambda):
        return (10.0 ** log_lambda) * self.scale

    def solve(self, log_lambda):
        system = self.XtX + self.smoothing_parameter(log_lambda) * self.penalty
        factor = cho_factor(system, lower=False, check_finite=True)
        coefficients = cho_solve(factor, self.Xty)
        edf = float(np.trace(cho_solve(factor, self.XtX)))
        residuals = self.y - self.X @ coefficients
        rss = float(residuals @ residuals)
        return coefficients, factor, edf, rss

    def gcv(self, log_lambda):
        try:
            _, _, edf, rss = self.solve(log_lambda)
        except (LinAlgError, ValueError):
            return _GCV_INFEASIBLE
        residual_df = self.n - edf
        if residual_df < self.min_residual_df:
            return _GCV_INFEASIBLE
        return self.n * rss / residual_df ** 2


class GamFitter:
    """Adapter from (data, response, SmoothSpec, CoverageGate) to FittedModel | FitFailure"""

    def __init__(self, max_iterations=None, log_lambda_bounds=None, min_residual_df=None):
        self.max_iterations = max_iterations or DEFAULT_GAM_SETTINGS['max_iterations']
        self.log_lambda_bounds = log_lambda_bounds or DEFAULT_GAM_SETTINGS['log_lambda_bounds']
        self.min_residual_df = DEFAULT_GAM_SETTINGS['min_residual_df'] if min_residual_df is None else min_residual_df

    def fit(self, data, response_column, smooth_spec, coverage_gate=None):
        """
        Fit response ~ smooth_spec on the complete rows of `data`.

        Args:
            data (pd.DataFrame): Training table
            response_column (str): Response column name
            smooth_spec (SmoothSpec): Smooth/linear terms
            coverage_gate (CoverageGate): Minimum-data precondition

        Returns:
            FittedModel, or FitFailure when the gate is not met or the fit is
            numerically unusable
        """
        required = [response_column] + smooth_spec.columns
        missing = [column for column in required if column not in data.columns]
        if missing:
            return FitFailure(SKIP_MISSING_COLUMNS, f"missing columns: {missing}")

        frame = data[required].dropna()
        gate = coverage_gate or CoverageGate()
        passed, detail = gate.evaluate(frame, smooth_spec.terms)
        if not passed:
            return FitFailure(SKIP_INSUFFICIENT_DATA, detail, n_obs=len(frame))

        basis = smooth_spec.build_basis().fit(frame)
        X = np.hstack([frame[list(smooth_spec.linear)].to_numpy(dtype=float), basis.transform(frame)]) \
            if smooth_spec.linear else basis.transform(frame)
        y = frame[response_column].to_numpy(dtype=float)
        penalty = block_diag(np.zeros((len(smooth_spec.linear), len(smooth_spec.linear))), basis.penalty_matrix()) \
            if smooth_spec.linear else basis.penalty_matrix()

        # unpenalized columns are fitted exactly whatever the smoothing parameter
        unpenalized = X.shape[1] - np.linalg.matrix_rank(penalty)
        if len(y) - unpenalized < self.min_residual_df:
            return FitFailure(SKIP_DEGENERATE_FIT,
                              f"{len(y)} observations for {unpenalized} unpenalized coefficients", n_obs=len(y))

        solver = _PenalizedLeastSquares(X, y, penalty, self.min_residual_df)
        search = minimize_scalar(
            solver.gcv,
            bounds=self.log_lambda_bounds,
            method='bounded',
            options={'maxiter': self.max_iterations, 'xatol': 1e-3},
        )
        if search.fun >= _GCV_INFEASIBLE:
            return FitFailure(SKIP_ILL_CONDITIONED, "no smoothing parameter gives a solvable system", n_obs=len(y))

        try:
            coefficients, factor, edf, rss = solver.solve(search.x)
        except (LinAlgError, ValueError) as e:
            return FitFailure(SKIP_ILL_CONDITIONED, str(e), n_obs=len(y))

        residual_df = len(y) - edf
        if residual_df < self.min_residual_df:
            return FitFailure(SKIP_DEGENERATE_FIT, f"edf {edf:.2f} leaves {residual_df:.2f} residual degrees of freedom",
                              n_obs=len(y))

        sigma2 = rss / residual_df
        covariance = sigma2 * cho_solve(factor, np.eye(X.shape[1]))
        covariance = (covariance + covariance.T) / 2.0
        if not np.all(np.isfinite(covariance)) or not np.all(np.isfinite(coefficients)):
            return FitFailure(SKIP_ILL_CONDITIONED, "non-finite coefficients or covariance", n_obs=len(y))

        total = float(np.sum((y - y.mean()) ** 2))
        r2 = 1.0 - rss / total if total > 0 else np.nan

        return FittedModel(
            spec=smooth_spec,
            basis=basis,
            coefficients=coefficients,
            covariance=covariance,
            smoothing_parameter=float(solver.smoothing_parameter(search.x)),
            edf=edf,
            sigma2=float(sigma2),
            n_obs=len(y),
            r2=float(r2),
            rmse=float(np.sqrt(rss / len(y))),
            gcv_score=float(search.fun),
        )


def fit(data, response_column, smooth_spec, coverage_gate=None):
    """Module-level convenience wrapper around GamFitter().fit"""
    return GamFitter().fit(data, response_column, smooth_spec, coverage_gate)
