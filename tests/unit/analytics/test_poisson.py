"""Unit tests for the IRLS Poisson fit."""

from __future__ import annotations

import numpy as np
import pytest

from salesflow.analytics.poisson import aliased_columns, fit_poisson
from salesflow.contracts.errors import ModelingError


def _simulated(n: int = 4000, effect: float = 0.4, seed: int = 3):
    rng = np.random.default_rng(seed)
    x = rng.integers(0, 2, size=n).astype(float)
    price = rng.uniform(5.0, 15.0, size=n)
    y = rng.poisson(np.exp(0.5 + effect * x - 0.02 * price))
    return y, np.column_stack([x, price])


def test_fit_recovers_known_effects() -> None:
    """Coefficients are close to the simulated log rate ratios."""
    y, X = _simulated()

    fit = fit_poisson(y, X, ["weekend", "unit_price"])

    assert fit.converged and fit.iterations < 25
    assert fit.coefficients[0] == pytest.approx(0.4, abs=0.08)
    assert fit.coefficients[1] == pytest.approx(-0.02, abs=0.02)
    assert fit.intercept == pytest.approx(0.5, abs=0.2)
    assert fit.n_obs == len(y)


def test_irr_is_exp_of_coefficient_and_interval() -> None:
    """IRRs and their bounds are the exponentiated coefficient scale."""
    y, X = _simulated()

    fit = fit_poisson(y, X, ["weekend", "unit_price"])

    np.testing.assert_allclose(np.log(fit.incidence_rate_ratios), fit.coefficients)
    assert np.all(fit.conf_low < fit.coefficients) and np.all(fit.coefficients < fit.conf_high)
    assert fit.p_values[0] < 1e-6
    assert np.isfinite(fit.aic) and fit.deviance > 0


def test_rank_deficient_design_raises() -> None:
    """A duplicated column makes the design singular."""
    y, X = _simulated(n=200)
    X = np.column_stack([X[:, 0], X[:, 0]])

    with pytest.raises(ModelingError, match="rank deficient"):
        fit_poisson(y, X, ["a", "b"])


def test_negative_outcome_and_shape_mismatch_raise() -> None:
    """Counts must be non-negative and match the design rows."""
    with pytest.raises(ModelingError):
        fit_poisson(np.array([1.0, -1.0, 2.0]), np.ones((3, 1)), ["x"])
    with pytest.raises(ModelingError):
        fit_poisson(np.array([1.0, 2.0]), np.ones((3, 1)), ["x"])


def test_too_few_observations_raise() -> None:
    """More parameters than observations cannot be estimated."""
    with pytest.raises(ModelingError):
        fit_poisson(np.array([1.0, 2.0]), np.array([[0.0], [1.0]]), ["x"])


def test_aliased_columns_drops_the_last_full_set_dummy() -> None:
    """A complete set of indicators is collinear with the intercept."""
    months = np.repeat(np.eye(3), 4, axis=0)
    trend = np.arange(12, dtype=float)[:, None]

    assert aliased_columns(np.hstack([months, trend])) == [2]
    assert aliased_columns(np.hstack([months[:, :2], trend])) == []
