"""
Poisson regression (log link) fitted by iteratively reweighted least squares.

Mirrors the default GLM fit: start from mu = y + 0.1, stop when the relative
change in deviance falls below 1e-8 or after 25 iterations. Standard errors
come from the inverse Fisher information; confidence intervals are Wald
intervals.
"""

from dataclasses import dataclass

import numpy as np
from scipy import special, stats

from salesflow.contracts.errors import ModelingError

MAX_ITERATIONS = 25
TOLERANCE = 1e-8
CONFIDENCE_LEVEL = 0.95


@dataclass
class PoissonFit:
    """Fitted model. Coefficient arrays exclude the intercept."""

    names: list[str]
    intercept: float
    coefficients: np.ndarray
    std_errors: np.ndarray
    z_values: np.ndarray
    p_values: np.ndarray
    conf_low: np.ndarray
    conf_high: np.ndarray
    deviance: float
    aic: float
    converged: bool
    iterations: int
    n_obs: int

    @property
    def incidence_rate_ratios(self) -> np.ndarray:
        return np.exp(self.coefficients)


def _deviance(y: np.ndarray, mu: np.ndarray) -> float:
    ratio_term = np.where(y > 0, y * np.log(np.where(y > 0, y, 1.0) / mu), 0.0)
    return float(2.0 * np.sum(ratio_term - (y - mu)))


def aliased_columns(X: np.ndarray) -> list[int]:
    """
    Indices of columns that are linear combinations of the intercept and the
    columns before them. Dropping them leaves a full-rank design, the way a
    GLM fit reports aliased coefficients as NA.
    """
    n = X.shape[0]
    kept = np.ones((n, 1))
    aliased = []
    for j in range(X.shape[1]):
        candidate = np.column_stack([kept, X[:, j]])
        if np.linalg.matrix_rank(candidate) < candidate.shape[1]:
            aliased.append(j)
        else:
            kept = candidate
    return aliased


def fit_poisson(y, X, names: list[str]) -> PoissonFit:
    """
    Fit log(E[y]) = b0 + X b.

    Raises:
        ModelingError: On a rank-deficient design or non-finite estimates.
    """
    y = np.asarray(y, dtype=float)
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[0] != y.shape[0] or X.shape[1] != len(names):
        raise ModelingError(f"Design shape {X.shape} does not match {len(y)} outcomes / {len(names)} names")
    if np.any(y < 0) or not np.all(np.isfinite(y)):
        raise ModelingError("Poisson outcome must be finite and non-negative")

    design = np.column_stack([np.ones(len(y)), X])
    n_obs, n_params = design.shape
    if n_obs <= n_params:
        raise ModelingError(f"{n_obs} observations for {n_params} parameters")
    if np.linalg.matrix_rank(design) < n_params:
        raise ModelingError("Design matrix is rank deficient (perfect multicollinearity)")

    mu = y + 0.1
    eta = np.log(mu)
    deviance = _deviance(y, mu)
    converged = False
    iterations = 0
    beta = np.zeros(n_params)
    for iterations in range(1, MAX_ITERATIONS + 1):
        z = eta + (y - mu) / mu
        weighted = design * mu[:, None]
        try:
            beta = np.linalg.solve(design.T @ weighted, weighted.T @ z)
        except np.linalg.LinAlgError as error:
            raise ModelingError(f"IRLS step failed: {error}") from error
        eta = design @ beta
        if not np.all(np.isfinite(eta)) or np.any(eta > 700):
            raise ModelingError("Linear predictor diverged")
        mu = np.exp(eta)
        new_deviance = _deviance(y, mu)
        if abs(new_deviance - deviance) / (abs(new_deviance) + 0.1) < TOLERANCE:
            deviance = new_deviance
            converged = True
            break
        deviance = new_deviance

    information = design.T @ (design * mu[:, None])
    try:
        covariance = np.linalg.inv(information)
    except np.linalg.LinAlgError as error:
        raise ModelingError(f"Information matrix is singular: {error}") from error

    std_errors = np.sqrt(np.diag(covariance))
    z_values = beta / std_errors
    p_values = 2.0 * stats.norm.sf(np.abs(z_values))
    critical = stats.norm.ppf(0.5 + CONFIDENCE_LEVEL / 2.0)
    log_likelihood = float(np.sum(y * eta - mu - special.gammaln(y + 1.0)))
    aic = -2.0 * log_likelihood + 2.0 * n_params

    if not (np.all(np.isfinite(beta)) and np.all(np.isfinite(std_errors)) and np.isfinite(aic)):
        raise ModelingError("Non-finite estimates")

    return PoissonFit(
        names=list(names),
        intercept=float(beta[0]),
        coefficients=beta[1:],
        std_errors=std_errors[1:],
        z_values=z_values[1:],
        p_values=p_values[1:],
        conf_low=beta[1:] - critical * std_errors[1:],
        conf_high=beta[1:] + critical * std_errors[1:],
        deviance=deviance,
        aic=aic,
        converged=converged,
        iterations=iterations,
        n_obs=n_obs,
    )
