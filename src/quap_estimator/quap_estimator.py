# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

from dataclasses import dataclass, field
from numpy import ndarray
import numpy as np
import pandas as pd
from numpy.random import RandomState
from scipy import optimize, stats
from scipy.interpolate import BSpline
from scipy.linalg import cho_factor, cho_solve
from sklearn.base import RegressorMixin, BaseEstimator
from sklearn.utils import check_X_y, check_random_state
from sklearn.utils.validation import check_array, check_is_fitted


class SplineBasisError(ValueError):
    """Raised when a B-spline basis cannot be built from the given data or knots."""


class QuapFitError(RuntimeError):
    """Raised when the posterior mode or the curvature around it cannot be found."""


@dataclass
class QuapNormalPrior:
    """
    Independent normal prior on every coefficient of a model term.

    Parameters
    ----------
    mean : float, default=0.0
        Prior mean.
    sd : float, default=1.0
        Prior standard deviation. Must be positive.
    """
    mean: float = 0.0
    sd: float = 1.0


@dataclass
class QuapInterceptConfig:
    """
    Configuration for a single intercept shared by all observations.

    The intercept does not consume a column of X.

    Parameters
    ----------
    name : str, default='a'
        Parameter name used in summaries.
    prior : QuapNormalPrior, default=QuapNormalPrior()
        Prior on the intercept.
    start : float or None, default=None
        Initial value for the optimizer. None means 0.
    """
    name: str = 'a'
    prior: QuapNormalPrior = field(default_factory=QuapNormalPrior)
    start: float | None = None


@dataclass
class QuapCategoryConfig:
    """
    Configuration for a per-category intercept (index variable).

    The matching column of X must hold whole-number category codes, e.g.
    day-of-week as 1-7. Each code gets its own intercept, named
    ``{name}[{code}]``.

    Parameters
    ----------
    name : str, default='a'
        Base parameter name.
    categories : list[int], default=[]
        Category codes to estimate. If empty, the sorted unique codes found in
        the training data are used. Codes listed here but absent from the data
        keep their prior.
    prior : QuapNormalPrior, default=QuapNormalPrior()
        Prior shared by every category intercept.
    start : float, list[float] or None, default=None
        Initial value(s) for the optimizer. None means zeros.

    Examples
    --------
    >>> config = QuapCategoryConfig(name='a', categories=list(range(1, 8)))
    """
    name: str = 'a'
    categories: list[int] = field(default_factory=list)
    prior: QuapNormalPrior = field(default_factory=QuapNormalPrior)
    start: float | list[float] | None = None


@dataclass
class QuapLinearConfig:
    """
    Configuration for a single linear coefficient on one column of X.

    Parameters
    ----------
    name : str
        Parameter name, e.g. 'bT' for temperature.
    prior : QuapNormalPrior, default=QuapNormalPrior()
        Prior on the coefficient.
    start : float or None, default=None
        Initial value for the optimizer. None means 0.
    """
    name: str
    prior: QuapNormalPrior = field(default_factory=QuapNormalPrior)
    start: float | None = None


@dataclass
class QuapSplineConfig:
    """
    Configuration for a B-spline term over one column of X.

    The basis is a clamped B-spline of the given degree. Interior knots are
    either given explicitly or placed at quantiles of the training column:
    ``n_knots`` evenly spaced quantiles are computed and the two boundary
    quantiles dropped, leaving ``n_knots - 2`` interior knots. The basis has
    ``(n_knots - 2) + degree + 1`` columns when ``include_intercept`` is True.
    Weights are named ``{name}[1]``, ``{name}[2]``, ...

    Parameters
    ----------
    n_knots : int or None
        Number of quantile knots, boundaries included. Ignored if knots is
        non-empty.
    degree : int, default=3
        Polynomial degree of the basis. 3 gives cubic splines.
    knots : list[float], default=[]
        Explicit interior knots. If empty, knots are computed from the training
        data with n_knots.
    boundary_knots : list[float], default=[]
        Explicit [lower, upper] boundary knots. If empty, the min and max of
        the training column are used.
    include_intercept : bool, default=True
        Keep the first basis function, so the rows of the basis sum to one and
        the spline can carry the mean level on its own.
    name : str, default='w'
        Base parameter name for the weights.
    prior : QuapNormalPrior, default=QuapNormalPrior()
        Prior shared by every weight.
    start : float, list[float] or None, default=None
        Initial value(s) for the weights. None means zeros.

    Examples
    --------
    >>> # 15 quantile knots over day-of-year -> 17 cubic basis functions
    >>> config = QuapSplineConfig(n_knots=15)
    >>>
    >>> # Reuse knots computed once for several models
    >>> knots = quantile_knots(doy, 15)
    >>> config = QuapSplineConfig(n_knots=None, knots=list(knots))
    """
    n_knots: int | None
    degree: int = 3
    knots: list[float] = field(default_factory=list)
    boundary_knots: list[float] = field(default_factory=list)
    include_intercept: bool = True
    name: str = 'w'
    prior: QuapNormalPrior = field(default_factory=QuapNormalPrior)
    start: float | list[float] | None = None


@dataclass
class QuapSigmaConfig:
    """
    Configuration for the residual scale of the Gaussian likelihood.

    Parameters
    ----------
    rate : float, default=1.0
        Rate of the exponential prior on sigma.
    start : float, default=1.0
        Initial value for the optimizer. Must be positive.
    name : str, default='sigma'
        Parameter name used in summaries.
    """
    rate: float = 1.0
    start: float = 1.0
    name: str = 'sigma'


@dataclass
class QuapSolverConfig:
    """
    Configuration for the scipy optimizer that finds the posterior mode.

    Parameters
    ----------
    method : str, default='trust-exact'
        ``scipy.optimize.minimize`` method. Newton-type methods
        ('trust-exact', 'trust-ncg', 'trust-krylov') receive the analytic
        Hessian; the quasi-Newton method 'BFGS' uses the gradient only.
    maxiter : int, default=1000
        Maximum number of optimizer iterations.
    gtol : float, default=1e-6
        Tolerance on the 2-norm of the gradient at the accepted mode. A result
        above it, unless maxiter was hit, is finished with exact Newton steps.
    verbose : bool, default=False
        Whether scipy prints convergence messages.

    Examples
    --------
    >>> config = QuapSolverConfig(method='BFGS', gtol=1e-4, verbose=True)
    """
    method: str = 'trust-exact'
    maxiter: int = 1000
    gtol: float = 1.0e-6
    verbose: bool = False


@dataclass
class QuapEstimatorConfig:
    """
    Main configuration for QuapEstimator.

    Parameters
    ----------
    term_config : list of QuapCategoryConfig, QuapLinearConfig or QuapSplineConfig
        One configuration per column of X, in column order.
    intercept_config : QuapInterceptConfig or None, default=None
        Optional single intercept. Leave None when a category term already
        provides per-category intercepts.
    sigma_config : QuapSigmaConfig, default=QuapSigmaConfig()
        Prior and starting value for the residual scale.
    solver_config : QuapSolverConfig, default=QuapSolverConfig()
        Optimizer settings.
    random_state : int, RandomState or None, default=None
        Seed used by posterior sampling when no random_state is passed to the
        sampling methods.

    Examples
    --------
    >>> config = QuapEstimatorConfig(
    ...     term_config=[QuapSplineConfig(n_knots=15)],
    ...     intercept_config=QuapInterceptConfig(),
    ...     random_state=42,
    ... )
    """
    term_config: list[QuapCategoryConfig | QuapLinearConfig | QuapSplineConfig]
    intercept_config: QuapInterceptConfig | None = None
    sigma_config: QuapSigmaConfig = field(default_factory=QuapSigmaConfig)
    solver_config: QuapSolverConfig = field(default_factory=QuapSolverConfig)
    random_state: int | RandomState | None = None


# methods that take the analytic Hessian
_HESSIAN_METHODS = ('trust-exact', 'trust-ncg', 'trust-krylov')
_GRADIENT_METHODS = ('BFGS',)
SOLVER_METHODS = _HESSIAN_METHODS + _GRADIENT_METHODS

# scipy status for "maximum number of iterations exceeded"
_MAXITER_STATUS = 1
_NEWTON_STEPS = 10

DAYS_OF_WEEK = list(range(1, 8))


def quantile_knots(x, n_knots: int) -> ndarray:
    """
    Compute interior knots at evenly spaced quantiles of x.

    ``n_knots`` quantiles are taken at ``linspace(0, 1, n_knots)`` and the
    first and last (the min and max of x) are dropped.

    Parameters
    ----------
    x : array-like
        Predictor values, e.g. day-of-year.
    n_knots : int
        Number of quantiles, boundaries included. Must be at least 2.

    Returns
    -------
    knots : ndarray of shape (n_knots - 2,)
        Interior knots.

    Raises
    ------
    SplineBasisError
        If n_knots < 2, x is empty or not finite, or the quantiles are not
        strictly increasing (tied values collapse knots).

    Examples
    --------
    >>> quantile_knots(np.arange(1, 366), 15).shape
    (13,)
    """
    if n_knots is None or n_knots < 2:
        raise SplineBasisError(f"n_knots must be at least 2, got {n_knots}.")
    x = np.asarray(x, dtype=float).ravel()
    if x.size == 0:
        raise SplineBasisError("Cannot place knots on an empty predictor.")
    if not np.all(np.isfinite(x)):
        raise SplineBasisError("Predictor contains NaN or infinite values.")

    knot_list = np.quantile(x, np.linspace(0, 1, n_knots))
    if np.any(np.diff(knot_list) <= 0):
        raise SplineBasisError(
            f"Quantile knots are not strictly increasing: {knot_list}. "
            "The predictor has too many tied values for this many knots."
        )
    return knot_list[1:-1]


def bspline_basis(x, interior_knots, degree: int = 3, boundary_knots=None,
                  include_intercept: bool = True) -> ndarray:
    """
    Build a clamped B-spline design matrix.

    The knot vector repeats each boundary knot ``degree + 1`` times around the
    interior knots, so the basis has ``len(interior_knots) + degree + 1``
    functions which sum to one everywhere between the boundary knots.

    Parameters
    ----------
    x : array-like of shape (n_samples,)
        Points to evaluate the basis at.
    interior_knots : array-like
        Strictly increasing interior knots, strictly inside the boundary knots.
    degree : int, default=3
        Polynomial degree.
    boundary_knots : tuple of float or None, default=None
        (lower, upper) boundary knots. If None, the min and max of x.
    include_intercept : bool, default=True
        If False, the first basis function is dropped.

    Returns
    -------
    basis : ndarray of shape (n_samples, n_basis)
        Dense design matrix.

    Raises
    ------
    SplineBasisError
        If the knots are invalid or x falls outside the boundary knots.
    """
    if degree < 1:
        raise SplineBasisError(f"degree must be at least 1, got {degree}.")
    x = np.asarray(x, dtype=float).ravel()
    if x.size == 0:
        raise SplineBasisError("Cannot build a basis for an empty predictor.")
    if not np.all(np.isfinite(x)):
        raise SplineBasisError("Predictor contains NaN or infinite values.")
    interior = np.asarray(interior_knots, dtype=float).ravel()

    if boundary_knots is None or len(boundary_knots) == 0:
        lower, upper = float(np.min(x)), float(np.max(x))
    else:
        lower, upper = (float(b) for b in boundary_knots)
    if not lower < upper:
        raise SplineBasisError(f"Boundary knots must satisfy lower < upper, got ({lower}, {upper}).")
    if interior.size > 0:
        if np.any(np.diff(interior) <= 0):
            raise SplineBasisError(f"Interior knots must be strictly increasing, got {interior}.")
        if interior[0] <= lower or interior[-1] >= upper:
            raise SplineBasisError(
                f"Interior knots must lie strictly inside ({lower}, {upper}), got {interior}."
            )
    if np.min(x) < lower or np.max(x) > upper:
        raise SplineBasisError(
            f"Predictor values [{np.min(x)}, {np.max(x)}] fall outside the "
            f"boundary knots ({lower}, {upper})."
        )

    t = np.concatenate([np.repeat(lower, degree + 1), interior, np.repeat(upper, degree + 1)])
    basis = BSpline.design_matrix(x, t, degree).toarray()
    if include_intercept:
        return basis
    else:
        return basis[:, 1:]


def _neg_log_posterior(theta, D, y, prior_mean, prior_precision, rate):
    """Negative log posterior (up to a constant) and its gradient over (beta, log sigma)."""
    beta, log_sigma = theta[:-1], theta[-1]
    sigma = np.exp(log_sigma)
    resid = y - D @ beta
    rss = resid @ resid
    value = (len(y) * log_sigma + 0.5 * rss / sigma**2
             + 0.5 * np.sum(prior_precision * (beta - prior_mean) ** 2)
             + rate * sigma)
    grad_beta = -(D.T @ resid) / sigma**2 + prior_precision * (beta - prior_mean)
    grad_log_sigma = len(y) - rss / sigma**2 + rate * sigma
    return value, np.append(grad_beta, grad_log_sigma)


def _hessian_log_sigma(theta, D, y, prior_mean, prior_precision, rate):
    """Hessian of the negative log posterior over (beta, log sigma)."""
    beta, sigma = theta[:-1], np.exp(theta[-1])
    resid = y - D @ beta
    p = beta.size
    H = np.empty((p + 1, p + 1))
    H[:p, :p] = D.T @ D / sigma**2 + np.diag(prior_precision)
    H[:p, p] = H[p, :p] = 2 * (D.T @ resid) / sigma**2
    H[p, p] = 2 * (resid @ resid) / sigma**2 + rate * sigma
    return H


def _hessian_sigma(mode, D, y, prior_precision):
    """Hessian of the negative log posterior over (beta, sigma) at a point with sigma > 0."""
    beta, sigma = mode[:-1], mode[-1]
    resid = y - D @ beta
    p = beta.size
    H = np.empty((p + 1, p + 1))
    H[:p, :p] = D.T @ D / sigma**2 + np.diag(prior_precision)
    H[:p, p] = H[p, :p] = 2 * (D.T @ resid) / sigma**3
    H[p, p] = -len(y) / sigma**2 + 3 * (resid @ resid) / sigma**4
    return H


def _newton_polish(theta, args, gtol, max_steps=_NEWTON_STEPS):
    """
    Take exact Newton steps over (beta, log sigma) until the gradient norm is
    at most gtol.

    Stops early if the Hessian is not positive definite.

    Returns
    -------
    theta : ndarray
        Final point.
    grad_norm : float
        Gradient norm at theta.
    """
    _, grad = _neg_log_posterior(theta, *args)
    for _ in range(max_steps):
        if not np.all(np.isfinite(grad)) or np.linalg.norm(grad) <= gtol:
            break
        try:
            factor = cho_factor(_hessian_log_sigma(theta, *args), lower=True)
        except (np.linalg.LinAlgError, ValueError):
            break
        theta = theta - cho_solve(factor, grad)
        _, grad = _neg_log_posterior(theta, *args)
    return theta, float(np.linalg.norm(grad))


class QuapEstimator(BaseEstimator, RegressorMixin):
    """
    Gaussian linear model fitted by quadratic (Laplace) posterior approximation.

    The mean response is a sum of terms, each built from one column of X:

    - per-category intercepts (QuapCategoryConfig)
    - linear coefficients (QuapLinearConfig)
    - B-spline weights (QuapSplineConfig)

    plus an optional single intercept. The likelihood is
    ``y ~ Normal(mu, sigma)`` with independent normal priors on every
    coefficient and an exponential prior on sigma. ``fit`` finds the posterior
    mode with ``scipy.optimize.minimize`` and approximates the posterior as a
    multivariate normal whose covariance is the inverse Hessian of the negative
    log posterior at the mode.

    Parameters
    ----------
    config : QuapEstimatorConfig
        Configuration object containing all model settings.

    Attributes
    ----------
    param_names_ : list[str]
        Parameter names in the order of mode_, sigma last.
    mode_ : ndarray
        Posterior mode (coefficients followed by sigma).
    covariance_ : ndarray
        Covariance of the quadratic approximation.
    coef_ : ndarray
        Posterior mode of the coefficients (mode_ without sigma).
    sigma_ : float
        Posterior mode of the residual scale.
    term_slices_ : dict
        Maps each term name to its slice of coef_.
    categories_ : list
        Category codes per term (None for non-category terms).
    spline_knots_ : list
        Interior knots per term (None for non-spline terms), reused by predict.
    boundary_knots_ : list
        Boundary knots per term (None for non-spline terms).
    optimize_result_ : scipy.optimize.OptimizeResult
        Raw optimizer output.
    grad_norm_ : float
        Gradient norm of the negative log posterior at the accepted mode.

    Examples
    --------
    >>> config = QuapEstimatorConfig(
    ...     term_config=[QuapLinearConfig(name='bT'), QuapSplineConfig(n_knots=15)],
    ...     intercept_config=QuapInterceptConfig(),
    ...     random_state=42,
    ... )
    >>> estimator = QuapEstimator(config=config).fit(X, y)
    >>> estimator.precis(prob=0.89)
    """
    def __init__(self, config: QuapEstimatorConfig, **kwargs):
        super().__init__(**kwargs)
        self.config = config

    def _random_state(self, random_state):
        return check_random_state(self.config.random_state if random_state is None else random_state)

    def _learn_term(self, ix, term_cfg, column):
        """Learn the data-dependent state of a term (category codes, knots) from training data."""
        categories, knots, boundary = None, None, None
        if isinstance(term_cfg, QuapCategoryConfig):
            codes = self._category_codes(column, term_cfg)
            categories = list(term_cfg.categories) if term_cfg.categories else sorted(np.unique(codes).tolist())
        elif isinstance(term_cfg, QuapSplineConfig):
            if term_cfg.boundary_knots:
                boundary = tuple(float(b) for b in term_cfg.boundary_knots)
            else:
                boundary = (float(np.min(column)), float(np.max(column)))
            if term_cfg.knots:
                knots = np.asarray(term_cfg.knots, dtype=float)
            elif term_cfg.n_knots:
                knots = quantile_knots(column, term_cfg.n_knots)
            else:
                raise SplineBasisError("Either knots or n_knots must be provided for QuapSplineConfig")
        self.categories_[ix] = categories
        self.spline_knots_[ix] = knots
        self.boundary_knots_[ix] = boundary

    def _category_codes(self, column, term_cfg):
        codes = np.round(column).astype(int)
        if np.any(codes != column):
            raise ValueError(f"Column for category term '{term_cfg.name}' must hold whole-number codes.")
        return codes

    def _term_matrix(self, ix, term_cfg, column):
        """
        Build the block of the design matrix for one term.

        Returns
        -------
        H : ndarray of shape (n_samples, n_params)
            Design block.
        names : list[str]
            Parameter names for the block.
        """
        if isinstance(term_cfg, QuapCategoryConfig):
            codes = self._category_codes(column, term_cfg)
            categories = np.asarray(self.categories_[ix])
            unknown = ~np.isin(codes, categories)
            if np.any(unknown):
                raise ValueError(
                    f"Unknown codes {np.unique(codes[unknown]).tolist()} for category term "
                    f"'{term_cfg.name}'; known codes are {categories.tolist()}."
                )
            H = (codes[:, None] == categories[None, :]).astype(float)
            names = [f"{term_cfg.name}[{c}]" for c in categories]
        elif isinstance(term_cfg, QuapSplineConfig):
            H = bspline_basis(column, self.spline_knots_[ix], degree=term_cfg.degree,
                              boundary_knots=self.boundary_knots_[ix],
                              include_intercept=term_cfg.include_intercept)
            names = [f"{term_cfg.name}[{j + 1}]" for j in range(H.shape[1])]
        else:  # QuapLinearConfig
            H = column[:, None].astype(float)
            names = [term_cfg.name]
        return H, names

    def _design_matrix(self, X_array):
        """Assemble the full design matrix, parameter names and per-term column counts."""
        blocks, names = [], []
        if self.config.intercept_config is not None:
            blocks.append(np.ones((X_array.shape[0], 1)))
            names.append(self.config.intercept_config.name)
        for ix, term_cfg in enumerate(self.config.term_config):
            H, term_names = self._term_matrix(ix, term_cfg, X_array[:, ix])
            blocks.append(H)
            names.extend(term_names)
        return np.hstack(blocks), names, [H.shape[1] for H in blocks]

    def _term_settings(self, widths):
        """Prior means, prior precisions and start values aligned with the design matrix columns."""
        prior_mean, prior_sd, start = [], [], []
        slices = {}
        offset = 0
        terms = list(self.config.term_config)
        if self.config.intercept_config is not None:
            terms.insert(0, self.config.intercept_config)

        for term_cfg, width in zip(terms, widths):
            if term_cfg.name in slices:
                raise ValueError(f"Duplicate term name '{term_cfg.name}'.")
            if term_cfg.prior.sd <= 0:
                raise ValueError(f"Prior sd for term '{term_cfg.name}' must be positive, got {term_cfg.prior.sd}.")
            slices[term_cfg.name] = slice(offset, offset + width)
            offset += width
            prior_mean.extend([term_cfg.prior.mean] * width)
            prior_sd.extend([term_cfg.prior.sd] * width)
            if term_cfg.start is None:
                start.extend([0.0] * width)
            elif np.ndim(term_cfg.start) == 0:
                start.extend([float(term_cfg.start)] * width)
            else:
                if len(term_cfg.start) != width:
                    raise ValueError(
                        f"Start value for term '{term_cfg.name}' has length {len(term_cfg.start)}, "
                        f"expected {width}."
                    )
                start.extend(float(s) for s in term_cfg.start)

        return np.asarray(prior_mean), 1.0 / np.asarray(prior_sd) ** 2, np.asarray(start), slices

    def fit(self, X, y, sample_weight=None):
        """
        Find the posterior mode and its quadratic approximation.

        This method:
        1. Validates X and y (no NaN, one column per term)
        2. Learns category codes and spline knots from X
        3. Builds the design matrix
        4. Minimizes the negative log posterior over (coefficients, log sigma),
           finishing with Newton steps if the optimizer stalls short of gtol
        5. Inverts the Hessian over (coefficients, sigma) at the mode

        Parameters
        ----------
        X : array-like or DataFrame of shape (n_samples, n_terms)
            Predictors, one column per entry of config.term_config, in order.
        y : array-like of shape (n_samples,)
            Response values. Must not contain NaN.
        sample_weight : array-like of shape (n_samples,), default=None
            Not used, present for sklearn compatibility.

        Returns
        -------
        self : QuapEstimator
            Returns self for method chaining.

        Raises
        ------
        ValueError
            If X or y contain NaN, or the column count does not match the
            configured terms.
        SplineBasisError
            If a spline basis cannot be built.
        QuapFitError
            If the optimizer hits maxiter, the gradient at the final point
            exceeds gtol, or the Hessian at the mode is not positive definite.
        """
        n_terms = len(self.config.term_config)
        if n_terms == 0 and self.config.intercept_config is None:
            raise ValueError("At least one term or an intercept must be configured.")
        X_array, y = check_X_y(X, y, ensure_min_features=max(n_terms, 1), y_numeric=True)
        if X_array.shape[1] != n_terms:
            raise ValueError(f"X has {X_array.shape[1]} columns but {n_terms} terms are configured.")
        y = np.asarray(y, dtype=float)
        self.n_features_in_ = X_array.shape[1]

        sigma_cfg = self.config.sigma_config
        if sigma_cfg.start <= 0:
            raise ValueError(f"sigma start value must be positive, got {sigma_cfg.start}.")
        if sigma_cfg.rate <= 0:
            raise ValueError(f"sigma prior rate must be positive, got {sigma_cfg.rate}.")

        solver_cfg = self.config.solver_config
        if solver_cfg.method not in SOLVER_METHODS:
            raise ValueError(
                f"Unsupported solver method '{solver_cfg.method}'. "
                f"Choose one of {SOLVER_METHODS}."
            )

        self.categories_ = [None] * n_terms
        self.spline_knots_ = [None] * n_terms
        self.boundary_knots_ = [None] * n_terms
        for ix, term_cfg in enumerate(self.config.term_config):
            self._learn_term(ix, term_cfg, X_array[:, ix])

        D, names, widths = self._design_matrix(X_array)
        prior_mean, prior_precision, beta_start, self.term_slices_ = self._term_settings(widths)
        theta_start = np.append(beta_start, np.log(sigma_cfg.start))
        args = (D, y, prior_mean, prior_precision, sigma_cfg.rate)

        result = optimize.minimize(
            _neg_log_posterior, theta_start, args=args, jac=True,
            hess=_hessian_log_sigma if solver_cfg.method in _HESSIAN_METHODS else None,
            method=solver_cfg.method,
            options={'maxiter': solver_cfg.maxiter, 'gtol': solver_cfg.gtol, 'disp': solver_cfg.verbose},
        )
        self.optimize_result_ = result
        if not np.all(np.isfinite(result.x)):
            raise QuapFitError("Optimizer returned a non-finite posterior mode.")
        if not result.success and result.status == _MAXITER_STATUS:
            raise QuapFitError(f"Optimizer did not converge ({solver_cfg.method}): {result.message}")
        # BFGS tests the largest gradient component, so every method is held to the
        # gradient norm; a point already within gtol is returned unchanged
        theta, grad_norm = _newton_polish(result.x, args, solver_cfg.gtol)
        if not grad_norm <= solver_cfg.gtol:
            raise QuapFitError(
                f"Optimizer did not converge ({solver_cfg.method}): {result.message} "
                f"Gradient norm {grad_norm:.3g} after Newton steps exceeds gtol={solver_cfg.gtol}."
            )
        self.grad_norm_ = grad_norm

        mode = theta.copy()
        mode[-1] = np.exp(mode[-1])
        if not np.isfinite(mode[-1]) or mode[-1] <= 0:
            raise QuapFitError(f"Posterior mode of sigma is not positive: {mode[-1]}.")

        hessian = _hessian_sigma(mode, D, y, prior_precision)
        try:
            factor = cho_factor(hessian, lower=True)
        except np.linalg.LinAlgError as e:
            raise QuapFitError(
                "Hessian at the posterior mode is not positive definite; "
                "the quadratic approximation is undefined."
            ) from e

        self.mode_ = mode
        self.covariance_ = cho_solve(factor, np.eye(len(mode)))
        self.param_names_ = names + [sigma_cfg.name]
        self.coef_ = mode[:-1]
        self.sigma_ = float(mode[-1])
        return self

    def _validate_X(self, X):
        check_is_fitted(self, ['mode_', 'covariance_', 'param_names_'])
        X_array = check_array(X, ensure_min_features=self.n_features_in_)
        if X_array.shape[1] != self.n_features_in_:
            raise ValueError(f"X has {X_array.shape[1]} columns, expected {self.n_features_in_}.")
        return X_array

    def design_matrix(self, X) -> ndarray:
        """
        Design matrix for new data, built with the knots and codes learned in fit.

        Parameters
        ----------
        X : array-like or DataFrame of shape (n_samples, n_terms)
            Predictors in the same column order as in fit.

        Returns
        -------
        D : ndarray of shape (n_samples, n_coefficients)
        """
        D, _, _ = self._design_matrix(self._validate_X(X))
        return D

    def term_matrix(self, X, name: str) -> ndarray:
        """Columns of the design matrix belonging to the term called ``name``."""
        return self.design_matrix(X)[:, self._term_slice(name)]

    def _term_slice(self, name):
        check_is_fitted(self, ['term_slices_'])
        if name not in self.term_slices_:
            raise KeyError(f"No term named '{name}'. Terms: {list(self.term_slices_)}")
        return self.term_slices_[name]

    def get_weights(self, name: str) -> pd.Series:
        """Posterior mode of the parameters of one term, indexed by parameter name."""
        sl = self._term_slice(name)
        return pd.Series(self.coef_[sl], index=self.param_names_[:-1][sl], name=name)

    def predict(self, X):
        """
        Mean response at the posterior mode.

        Parameters
        ----------
        X : array-like or DataFrame of shape (n_samples, n_terms)
            Predictors in the same column order as in fit.

        Returns
        -------
        predictions : ndarray of shape (n_samples,)
        """
        return self.design_matrix(X) @ self.coef_

    def precis(self, prob: float = 0.89) -> pd.DataFrame:
        """
        Posterior summary table.

        Parameters
        ----------
        prob : float, default=0.89
            Width of the central credible interval, between 0 and 1.

        Returns
        -------
        summary : DataFrame
            One row per parameter with columns mean, sd and the lower/upper
            interval bounds labelled by their percentiles (e.g. '5.5%', '94.5%').
        """
        check_is_fitted(self, ['mode_', 'covariance_'])
        if not 0 < prob < 1:
            raise ValueError(f"prob must be between 0 and 1, got {prob}.")
        sd = np.sqrt(np.diag(self.covariance_))
        z = stats.norm.ppf(0.5 + prob / 2)
        lower_label = f"{100 * (1 - prob) / 2:.1f}%"
        upper_label = f"{100 * (1 + prob) / 2:.1f}%"
        return pd.DataFrame(
            {
                'mean': self.mode_,
                'sd': sd,
                lower_label: self.mode_ - z * sd,
                upper_label: self.mode_ + z * sd,
            },
            index=pd.Index(self.param_names_, name='parameter'),
        )

    def _draw_parameters(self, n_samples, random_state):
        return random_state.multivariate_normal(self.mode_, self.covariance_, size=n_samples)

    def sample_posterior(self, n_samples: int = 10000, random_state=None) -> pd.DataFrame:
        """
        Draw parameter vectors from the quadratic approximation.

        Parameters
        ----------
        n_samples : int, default=10000
            Number of draws.
        random_state : int, RandomState instance or None, default=None
            Random state for reproducible results. If None, uses the
            estimator's random_state from config.

        Returns
        -------
        samples : DataFrame of shape (n_samples, n_params)
            One column per parameter, sigma last.
        """
        check_is_fitted(self, ['mode_', 'covariance_'])
        draws = self._draw_parameters(n_samples, self._random_state(random_state))
        return pd.DataFrame(draws, columns=self.param_names_)

    def link(self, X, n_samples: int = 1000, random_state=None) -> ndarray:
        """
        Posterior draws of the mean response for each row of X.

        Returns
        -------
        mu : ndarray of shape (n_samples, n_rows)
        """
        D = self.design_matrix(X)
        draws = self._draw_parameters(n_samples, self._random_state(random_state))
        return draws[:, :-1] @ D.T

    def sim(self, X, n_samples: int = 1000, random_state=None) -> ndarray:
        """
        Posterior predictive draws of the response for each row of X.

        Each draw adds Gaussian noise with the drawn sigma to the drawn mean.
        Sigma is drawn on the log scale (delta method), so the noise scale is
        always positive.

        Returns
        -------
        y_sim : ndarray of shape (n_samples, n_rows)
        """
        D = self.design_matrix(X)
        random_state = self._random_state(random_state)
        draws = self._draw_parameters(n_samples, random_state)
        mu = draws[:, :-1] @ D.T
        sigma = self._positive_sigma(draws[:, -1:])
        return mu + random_state.standard_normal(size=mu.shape) * sigma

    def _positive_sigma(self, sigma_draws):
        """
        Map Gaussian sigma draws to log sigma with the delta method.

        log sigma is taken as normal with mean log(sigma_) and sd sd(sigma) / sigma_,
        which keeps each draw's position relative to the mode and is always positive.
        """
        return self.sigma_ * np.exp((sigma_draws - self.sigma_) / self.sigma_)


def make_full_model_config(knots, boundary_knots=None, degree: int = 3,
                           solver_config: QuapSolverConfig | None = None,
                           random_state=None) -> QuapEstimatorConfig:
    """
    Configuration for ozone ~ a[dow] + bH * humidity + bT * temp + B(doy) @ w.

    X columns, in order: day-of-week, humidity, temperature, day-of-year.

    Parameters
    ----------
    knots : array-like
        Interior knots over day-of-year, computed once with quantile_knots.
    boundary_knots : tuple of float or None, default=None
        Boundary knots; None uses the min and max of day-of-year in fit.
    degree : int, default=3
        Spline degree.
    solver_config : QuapSolverConfig or None, default=None
        Optimizer settings.
    random_state : int, RandomState or None, default=None
        Seed for posterior sampling.
    """
    return QuapEstimatorConfig(
        term_config=[
            QuapCategoryConfig(name='a', categories=DAYS_OF_WEEK),
            QuapLinearConfig(name='bH'),
            QuapLinearConfig(name='bT'),
            QuapSplineConfig(n_knots=None, degree=degree, knots=list(knots),
                             boundary_knots=[] if boundary_knots is None else list(boundary_knots), name='w'),
        ],
        intercept_config=None,
        solver_config=solver_config or QuapSolverConfig(),
        random_state=random_state,
    )


def make_reduced_model_config(knots, boundary_knots=None, degree: int = 3,
                              solver_config: QuapSolverConfig | None = None,
                              random_state=None) -> QuapEstimatorConfig:
    """
    Configuration for ozone ~ a + B(doy) @ w.

    X has a single column, day-of-year. Parameters as in make_full_model_config.
    """
    return QuapEstimatorConfig(
        term_config=[
            QuapSplineConfig(n_knots=None, degree=degree, knots=list(knots),
                             boundary_knots=[] if boundary_knots is None else list(boundary_knots), name='w'),
        ],
        intercept_config=QuapInterceptConfig(name='a'),
        solver_config=solver_config or QuapSolverConfig(),
        random_state=random_state,
    )
