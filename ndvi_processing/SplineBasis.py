"""
Penalized spline bases for the additive models.

Each smooth term is a cubic B-spline basis built by scikit-learn's
SplineTransformer: periodic for seasonal day-of-year terms (so the last day
joins the first), open with polynomial continuation for everything else. Two
covariates (x, y) are combined into a row-wise tensor product. Wiggliness is
penalized with a difference penalty on neighbouring coefficients.

The fitted basis objects keep their knots, so evaluating them on new data
(prediction grids, finite-difference perturbations) always reproduces the
training-time basis, including the periodic wrap.
"""

import numpy as np
import pandas as pd
from scipy.linalg import block_diag
from sklearn.preprocessing import SplineTransformer

SPLINE_DEGREE = 3


def difference_penalty(n_basis, order=2, cyclic=False):
    """
    Build the difference penalty matrix D'D on n_basis coefficients.

    Args:
        n_basis (int): Number of coefficients
        order (int): Difference order (2 penalizes curvature)
        cyclic (bool): Wrap the differences so the last coefficient
            neighbours the first

    Returns:
        np.ndarray: Symmetric positive semi-definite (n_basis, n_basis) matrix
    """
    if cyclic:
        identity = np.eye(n_basis)
        first_difference = np.roll(identity, 1, axis=1) - identity
        difference = np.linalg.matrix_power(first_difference, order)
    else:
        difference = np.diff(np.eye(n_basis), n=order, axis=0)
    return difference.T @ difference


class MarginalBasis:
    """Cubic B-spline basis over a single covariate"""

    def __init__(self, term, basis_dimension, cyclic=False, bounds=None, penalty_order=2):
        self.term = term
        self.basis_dimension = int(basis_dimension)
        self.cyclic = cyclic
        self.bounds = bounds
        self.penalty_order = penalty_order
        self.transformer = None
        self.penalty = None

    def fit(self, values):
        values = np.asarray(values, dtype=float)
        if self.bounds is not None:
            lower, upper = float(self.bounds[0]), float(self.bounds[1])
        else:
            lower, upper = float(np.min(values)), float(np.max(values))
        if upper <= lower:
            upper = lower + 1.0

        minimum = max(SPLINE_DEGREE, self.penalty_order) + 1
        if self.basis_dimension < minimum:
            raise ValueError(f"basis_dimension for '{self.term}' must be at least {minimum}, got {self.basis_dimension}")

        # periodic: n_knots - 1 splines; open: n_knots + degree - 1 splines
        if self.cyclic:
            n_knots = self.basis_dimension + 1
        else:
            n_knots = self.basis_dimension - SPLINE_DEGREE + 1
        knots = np.linspace(lower, upper, n_knots).reshape(-1, 1)

        self.transformer = SplineTransformer(
            n_knots=n_knots,
            degree=SPLINE_DEGREE,
            knots=knots,
            extrapolation='periodic' if self.cyclic else 'continue',
            include_bias=True,
        )
        self.transformer.fit(knots)
        self.lower, self.upper = lower, upper
        self.n_basis = self.transformer.n_features_out_
        self.penalty = difference_penalty(self.n_basis, self.penalty_order, self.cyclic)
        return self

    def transform(self, values):
        values = np.asarray(values, dtype=float).reshape(-1, 1)
        return np.asarray(self.transformer.transform(values), dtype=float)


class SmoothBasis:
    """
    Basis and penalty for one smooth term s(terms, by=by).

    One covariate gives a univariate (optionally cyclic) basis; two covariates
    give a tensor-product surface. With a "by" factor, a separate copy of the
    basis is fitted for every level and rows belonging to other levels are
    zeroed out.
    """

    def __init__(self, terms, basis_dimension, cyclic=False, bounds=None, by=None, penalty_order=2):
        self.terms = tuple(terms)
        if len(self.terms) not in (1, 2):
            raise ValueError(f"Smooths over 1 or 2 covariates are supported, got {self.terms}")
        if cyclic and len(self.terms) != 1:
            raise ValueError("Cyclic bases are only available for single-covariate smooths")
        self.basis_dimension = basis_dimension
        self.cyclic = cyclic
        self.bounds = bounds
        self.by = by
        self.penalty_order = penalty_order
        self.marginals = []
        self.levels = None

    def _term_bounds(self, term):
        if self.bounds is None:
            return None
        if isinstance(self.bounds, dict):
            return self.bounds.get(term)
        return self.bounds

    def fit(self, frame: pd.DataFrame):
        self.marginals = [
            MarginalBasis(term, self.basis_dimension, cyclic=self.cyclic,
                          bounds=self._term_bounds(term),
                          penalty_order=self.penalty_order).fit(frame[term].to_numpy())
            for term in self.terms
        ]
        if self.by is not None:
            self.levels = sorted(pd.unique(frame[self.by].dropna()))
        return self

    @property
    def block_size(self):
        size = 1
        for marginal in self.marginals:
            size *= marginal.n_basis
        return size

    def column_names(self):
        base = [f"s({','.join(self.terms)}).{i}" for i in range(self.block_size)]
        if self.levels is None:
            return base
        return [f"{name}:{self.by}={level}" for level in self.levels for name in base]

    def _block(self, frame):
        first = self.marginals[0].transform(frame[self.terms[0]].to_numpy())
        if len(self.marginals) == 1:
            return first
        second = self.marginals[1].transform(frame[self.terms[1]].to_numpy())
        # row-wise Kronecker product
        return (first[:, :, None] * second[:, None, :]).reshape(len(first), -1)

    def transform(self, frame: pd.DataFrame):
        block = self._block(frame)
        if self.levels is None:
            return block
        membership = frame[self.by].to_numpy()
        return np.hstack([block * (membership == level)[:, None] for level in self.levels])

    def penalty_matrix(self):
        if len(self.marginals) == 1:
            penalty = self.marginals[0].penalty
        else:
            first, second = self.marginals
            penalty = (np.kron(first.penalty, np.eye(second.n_basis))
                       + np.kron(np.eye(first.n_basis), second.penalty))
        if self.levels is None:
            return penalty
        return block_diag(*([penalty] * len(self.levels)))
