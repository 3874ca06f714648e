"""
Predictor classification for the Poisson output.

predictor_type routes a predictor to the right downstream view. It is
decided by an ordered policy table: the first matching rule wins, the
fallback is product_attribute.
"""

import re

TIME_FEATURE = "time_feature"
STRUCTURAL = "structural"
COMMENT_ATTRIBUTE = "comment_attribute"
PRODUCT_ATTRIBUTE = "product_attribute"

PREDICTOR_TYPE_RULES = [
    (r"^month_[0-9]+$", TIME_FEATURE),
    (r"^(monday|tuesday|wednesday|thursday|friday|saturday|sunday)$", TIME_FEATURE),
    (r"^(year|day|week|quarter|is_holiday|is_weekend)", TIME_FEATURE),
    (r"_name$|_id$|_code$|^sku$|^asin$|_series_name", STRUCTURAL),
    (r"rating|sentiment|review|comment|stars|feedback", COMMENT_ATTRIBUTE),
]

KNOWN_CATEGORICAL_PREFIXES = (
    "brand", "color", "material", "category", "design",
    "style", "size", "type", "model", "manufacturer",
)


class PredictorClassifier:
    def __init__(self, rules=None, categorical_prefixes=KNOWN_CATEGORICAL_PREFIXES,
                 default_type: str = PRODUCT_ATTRIBUTE):
        self.rules = [(re.compile(p), t) for p, t in (rules or PREDICTOR_TYPE_RULES)]
        self.default_type = default_type
        self._prefix_re = re.compile(
            r"^(" + "|".join(re.escape(p) for p in categorical_prefixes) + r")_",
            re.IGNORECASE,
        )

    def predictor_type(self, name: str) -> str:
        lowered = name.lower()
        for pattern, predictor_type in self.rules:
            if pattern.search(lowered):
                return predictor_type
        return self.default_type

    def source_variable(self, name: str) -> str | None:
        """The categorical variable a dummy column was coded from, if known."""
        match = self._prefix_re.match(name)
        return match.group(1) if match else None

    @staticmethod
    def data_type(is_binary: bool, source_variable: str | None) -> str:
        if source_variable is not None:
            return "dummy"
        if is_binary:
            return "binary"
        return "numerical"

    def label(self, name: str, is_binary: bool = False,
              source_variable: str | None = None) -> tuple[str, str, str | None]:
        """(predictor_type, data_type, source_variable). Without an observed
        range a predictor is not known to be binary."""
        source_variable = source_variable or self.source_variable(name)
        return self.predictor_type(name), self.data_type(is_binary, source_variable), source_variable

    def classify(self, name: str, minimum: float, maximum: float,
                 source_variable: str | None = None) -> dict:
        """Classification and range metadata for one predictor.

        source_variable names the column a dummy was coded from when the
        caller knows it; otherwise it is inferred from the name prefix.
        """
        value_range = maximum - minimum
        is_binary = minimum == 0 and maximum == 1
        predictor_type, data_type, source_variable = self.label(name, is_binary, source_variable)
        return {
            "predictor_type": predictor_type,
            "data_type": data_type,
            "source_variable": source_variable,
            "predictor_min": float(minimum),
            "predictor_max": float(maximum),
            "predictor_range": float(value_range),
            "predictor_is_binary": bool(is_binary),
            "track_multiplier": 100.0 / value_range if value_range > 0 else 100.0,
        }
