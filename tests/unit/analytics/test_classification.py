"""Unit tests for predictor classification."""

from __future__ import annotations

import pytest

from salesflow.analytics.classification import PredictorClassifier


@pytest.fixture
def classifier() -> PredictorClassifier:
    return PredictorClassifier()


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("month_3", ("time_feature", "numerical", None)),
        ("brand_nike", ("product_attribute", "dummy", "brand")),
        ("product_id", ("structural", "numerical", None)),
        ("rating_average", ("comment_attribute", "numerical", None)),
        ("unit_price", ("product_attribute", "numerical", None)),
        ("saturday", ("time_feature", "numerical", None)),
    ],
)
def test_name_only_labels(classifier, name, expected) -> None:
    """Labels depend only on the predictor name when no range is known."""
    assert classifier.label(name) == expected


def test_observed_zero_one_range_is_binary(classifier) -> None:
    """A [0, 1] predictor is binary with a track multiplier of 100."""
    row = classifier.classify("saturday", 0, 1)

    assert row["data_type"] == "binary" and row["predictor_is_binary"]
    assert row["predictor_range"] == 1.0 and row["track_multiplier"] == 100.0


def test_track_multiplier_scales_by_range(classifier) -> None:
    """Numerical predictors get 100 / range."""
    row = classifier.classify("unit_price", 10.0, 35.0)

    assert row["data_type"] == "numerical"
    assert row["track_multiplier"] == pytest.approx(4.0)


def test_zero_range_uses_default_multiplier(classifier) -> None:
    """A constant predictor never divides by zero."""
    assert classifier.classify("unit_price", 5.0, 5.0)["track_multiplier"] == 100.0


def test_explicit_source_variable_marks_dummy(classifier) -> None:
    """A dummy coded from a column outside the known prefixes is still a dummy."""
    row = classifier.classify("condition_Used", 0, 1, source_variable="condition")

    assert row["data_type"] == "dummy" and row["source_variable"] == "condition"
    assert row["predictor_type"] == "product_attribute"


def test_first_matching_rule_wins() -> None:
    """Rule order decides overlapping patterns."""
    classifier = PredictorClassifier(rules=[(r"review", "comment_attribute"), (r"_id$", "structural")])

    assert classifier.predictor_type("review_id") == "comment_attribute"
    assert classifier.predictor_type("other") == "product_attribute"
