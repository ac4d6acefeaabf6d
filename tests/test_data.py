"""Tests for input normalization, model configuration and error types.

Tests cover:
- StandardData factories for binomial, binary, user-level and continuous input
- Data quality indicators (zeros, negatives, outliers, missing values)
- ModelConfig defaults and validation
- FitOptions progress reporting
- InferenceError formatting and wrapping
"""

import math

import numpy as np
import pytest
from pydantic import ValidationError

from abinfer.core.errors import ErrorCode, InferenceError, wrap_error
from abinfer.models.config import FitOptions, FitProgress, ModelConfig
from abinfer.models.data import StandardData, UserRecord, detect_outliers


# ======================================================================
# Binomial data
# ======================================================================


class TestBinomialData:
    """Test StandardData built from binomial counts."""

    def test_from_binomial(self):
        data = StandardData.from_binomial(8, 10)
        assert data.is_binomial
        assert not data.is_user_level
        assert data.n == 10
        assert data.binomial.successes == 8
        assert data.binomial.trials == 10
        assert data.users == ()

    def test_successes_exceeding_trials(self):
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_binomial(11, 10)
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_zero_trials_is_insufficient(self):
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_binomial(0, 0)
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_DATA

    @pytest.mark.parametrize("successes,trials", [(-1, 10), (2.5, 10), (1, "10"), (True, 10)])
    def test_invalid_counts(self, successes, trials):
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_binomial(successes, trials)
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_integer_valued_floats_accepted(self):
        data = StandardData.from_binomial(3.0, 7.0)
        assert data.binomial.successes == 3
        assert data.n == 7

    def test_from_binary(self):
        data = StandardData.from_binary([1, 0, 1, 1, 0])
        assert data.binomial.successes == 3
        assert data.binomial.trials == 5

    def test_from_binary_validation(self):
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_binary([])
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_DATA
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_binary([0, 1, 2])
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_direct_construction_is_validated(self):
        with pytest.raises(ValidationError):
            StandardData(type="binomial", n=10)
        with pytest.raises(ValidationError):
            StandardData(type="user-level", n=0)

    def test_immutable(self):
        data = StandardData.from_binomial(1, 2)
        with pytest.raises(ValidationError):
            data.n = 5


# ======================================================================
# User-level data
# ======================================================================


class TestUserLevelData:
    """Test StandardData built from user records."""

    def test_from_dicts(self):
        data = StandardData.from_user_level(
            [
                {"userId": "a", "converted": True, "value": 12.5},
                {"user_id": "b", "converted": False, "value": 0},
                {"converted": True, "value": 3.0},
            ]
        )
        assert data.is_user_level
        assert data.n == 3
        assert [u.user_id for u in data.users] == ["a", "b", "user_2"]
        assert data.quality.has_zeros
        assert not data.quality.has_negatives
        np.testing.assert_array_equal(data.converted(), [True, False, True])
        np.testing.assert_allclose(data.positive_converted_values(), [12.5, 3.0])

    def test_from_records(self):
        users = [UserRecord(user_id=str(i), converted=True, value=float(i + 1)) for i in range(5)]
        data = StandardData.from_user_level(users)
        assert data.users == tuple(users)
        assert data.user_level.empirical_stats.mean == pytest.approx(3.0)
        assert data.user_level.empirical_stats.q50 == pytest.approx(3.0)

    def test_negatives_flagged(self):
        data = StandardData.from_continuous([-1.0, 2.0, 3.0])
        assert data.quality.has_negatives
        assert not data.quality.has_zeros

    def test_missing_values_counted(self):
        data = StandardData.from_user_level(
            [{"converted": True, "value": None}, {"converted": True, "value": 4.0}]
        )
        assert data.quality.missing_data == 1
        assert math.isnan(data.values()[0])
        assert data.user_level.empirical_stats.mean == pytest.approx(4.0)

    def test_skip_empirical_stats(self):
        data = StandardData.from_user_level(
            [{"converted": True, "value": 1.0}],
            precompute_stats=False,
        )
        assert data.user_level.empirical_stats is None

    def test_empty_users(self):
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_user_level([])
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_DATA

    def test_malformed_records(self):
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_user_level([{"converted": True}])
        assert exc_info.value.code == ErrorCode.INVALID_DATA
        with pytest.raises(InferenceError) as exc_info:
            StandardData.from_user_level([("u1", True, 1.0)])
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_continuous_users_all_converted(self):
        data = StandardData.from_continuous([1.0, 2.0, 3.0])
        assert data.converted().all()
        np.testing.assert_allclose(data.values(), [1.0, 2.0, 3.0])
        assert data.users[0].user_id == "user_0"

    def test_skewness_only_with_variance(self):
        constant = StandardData.from_continuous([2.0, 2.0, 2.0])
        assert constant.user_level.empirical_stats.skewness is None
        varied = StandardData.from_continuous([1.0, 2.0, 10.0])
        assert varied.user_level.empirical_stats.skewness > 0


class TestOutliers:
    """Test the IQR outlier flag."""

    def test_iqr_rule(self):
        assert detect_outliers(np.array([1.0, 2.0, 3.0, 4.0, 100.0]))
        assert not detect_outliers(np.array([1.0, 2.0, 3.0, 4.0, 5.0]))

    def test_too_few_points(self):
        assert not detect_outliers(np.array([1.0, 1000.0]))

    def test_quality_flag(self):
        data = StandardData.from_continuous([1.0, 2.0, 3.0, 4.0, 100.0])
        assert data.quality.has_outliers


# ======================================================================
# Configuration
# ======================================================================


class TestModelConfig:
    """Test ModelConfig validation and helpers."""

    def test_simple_requires_type(self):
        with pytest.raises(ValidationError):
            ModelConfig(structure="simple")

    def test_compound_defaults_frequency(self):
        config = ModelConfig(structure="compound", value_type="lognormal")
        assert config.frequency_type == "beta"
        assert config.family == "lognormal"
        assert config.component_count == 1

    def test_components_must_be_positive(self):
        with pytest.raises(ValidationError):
            ModelConfig(structure="simple", type="normal", components=0)

    def test_with_components(self):
        simple = ModelConfig(structure="simple", type="normal").with_components(3)
        assert simple.components == 3
        compound = ModelConfig(structure="compound", value_type="normal").with_components(2)
        assert compound.value_components == 2
        assert compound.component_count == 2

    def test_label(self):
        assert ModelConfig(structure="simple", type="beta").label() == "beta"
        assert ModelConfig(structure="simple", type="lognormal", components=2).label() == "lognormal-mixture-2"
        assert ModelConfig(structure="compound", value_type="normal").label() == "compound-normal"


class TestFitOptions:
    """Test FitOptions defaults and progress reporting."""

    def test_defaults_resolve_to_settings(self):
        options = FitOptions()
        assert options.resolved_max_iterations() == 100
        assert options.resolved_tolerance() == pytest.approx(1e-6)

    def test_report_calls_callback(self):
        events = []
        options = FitOptions(on_progress=events.append)
        options.report("VBEM iteration", 0.5, 3)
        assert events == [FitProgress(stage="VBEM iteration", progress=0.5, iteration=3)]

    def test_report_without_callback(self):
        FitOptions().report("noop", 1.0)

    def test_seeded_rng_is_reproducible(self):
        options = FitOptions(seed=3)
        assert options.rng().random() == options.rng().random()

    def test_invalid_iterations(self):
        with pytest.raises(ValidationError):
            FitOptions(max_iterations=0)


# ======================================================================
# Errors
# ======================================================================


class TestErrors:
    """Test InferenceError and wrap_error."""

    def test_error_is_value_error(self):
        error = InferenceError(ErrorCode.INVALID_DATA, "bad")
        assert isinstance(error, ValueError)
        assert error.is_code(ErrorCode.INVALID_DATA, ErrorCode.INVALID_PRIOR)
        assert not error.is_code(ErrorCode.INTERNAL_ERROR)

    def test_str_includes_code_and_context(self):
        error = InferenceError(ErrorCode.INVALID_PRIOR, "bad prior", {"alpha": -1})
        assert str(error) == "[INVALID_PRIOR] bad prior (context: {'alpha': -1})"
        assert str(InferenceError(ErrorCode.INTERNAL_ERROR, "boom")) == "[INTERNAL_ERROR] boom"

    def test_wrap_error(self):
        original = InferenceError(ErrorCode.INVALID_DATA, "bad")
        assert wrap_error(original) is original

        wrapped = wrap_error(ZeroDivisionError("division by zero"))
        assert wrapped.code == ErrorCode.INTERNAL_ERROR
        assert wrapped.message == "division by zero"
        assert wrapped.context == {"original_type": "ZeroDivisionError"}
