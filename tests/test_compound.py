"""Tests for the compound (frequency x severity) engine."""

import asyncio

import numpy as np
import pytest

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig, PriorSpec
from abinfer.models.data import StandardData
from abinfer.stats.bayesian import BetaPosterior
from abinfer.stats.compound import CompoundInferenceEngine, CompoundPosterior
from abinfer.stats.mixture import MixturePosterior
from abinfer.stats.priors import DEFAULT_NIG_PRIOR

LOGNORMAL_COMPOUND = ModelConfig(structure="compound", value_type="lognormal")


def revenue_users(n=1000, rate=0.3, seed=0, bimodal=False):
    rng = np.random.default_rng(seed)
    converted = rng.random(n) < rate
    if bimodal:
        log_values = np.where(rng.random(n) < 0.5, rng.normal(1.0, 0.2, n), rng.normal(4.0, 0.2, n))
    else:
        log_values = rng.normal(3.0, 0.5, n)
    values = np.where(converted, np.exp(log_values), 0.0)
    return StandardData.from_user_level(
        {"user_id": f"u{i}", "converted": bool(c), "value": float(v)}
        for i, (c, v) in enumerate(zip(converted, values))
    )


def fit(data, config=LOGNORMAL_COMPOUND, options=None):
    return asyncio.run(CompoundInferenceEngine().fit(data, config, options or FitOptions(seed=0)))


class TestCompoundFit:
    """Test a Beta x LogNormal compound fit on simulated revenue data."""

    @pytest.fixture(scope="class")
    def data(self):
        return revenue_users()

    @pytest.fixture(scope="class")
    def result(self, data):
        return fit(data)

    def test_model_type(self, result):
        assert result.diagnostics.model_type == "compound-beta-lognormal"
        assert result.metadata.engine_name == "CompoundInferenceEngine"
        assert result.metadata.algorithm == "conjugate"
        assert isinstance(result.posterior, CompoundPosterior)

    def test_frequency_is_conversion_rate(self, data, result):
        """Frequency posterior should be Beta(1 + converted, 1 + not converted)."""
        converted = int(data.converted().sum())
        frequency = result.posterior.frequency
        assert isinstance(frequency, BetaPosterior)
        assert frequency.alpha == 1 + converted
        assert frequency.beta == 1 + data.n - converted

    def test_mean_is_product_of_parts(self, result):
        """E[revenue per user] = E[rate] * E[value per conversion]."""
        posterior = result.posterior
        expected = posterior.frequency.mean() * posterior.severity.mean()
        assert posterior.mean() == pytest.approx(expected, rel=0.05)

    def test_expected_value_per_user(self, result):
        summary = result.posterior.expected_value_per_user()
        assert set(summary) == {"conversion_rate", "value_per_conversion", "value_per_user"}
        assert summary["conversion_rate"] == pytest.approx(0.3, abs=0.05)
        assert summary["value_per_conversion"] == pytest.approx(np.exp(3.0 + 0.125), rel=0.1)

    def test_decomposition(self, result):
        parts = result.posterior.decomposition()
        assert parts["frequency"] is result.posterior.frequency
        assert parts["severity"] is result.posterior.severity
        assert result.posterior.severity_components() is None

    def test_parameter_count(self, result):
        assert result.posterior.parameter_count == 3

    def test_capabilities(self, result):
        caps = result.posterior.capabilities
        assert not caps.analytical
        assert caps.parameter_sampling
        assert caps.log_pdf

    def test_log_pdf(self, result):
        posterior = result.posterior
        p = posterior.frequency.mean()
        assert posterior.log_pdf(0.0) == pytest.approx(np.log1p(-p))
        assert posterior.log_pdf(20.0) == pytest.approx(np.log(p) + posterior.severity.log_pdf(20.0))

    def test_log_likelihood(self, result):
        """Zeros score log(1 - p); positive values add the severity term."""
        posterior = result.posterior
        params = posterior.sample_parameters(40)
        assert set(params) == {"p", "severity_mu", "severity_sigma2"}
        ll = posterior.log_likelihood(np.array([0.0, 15.0, 30.0]), params)
        assert ll.shape == (3, 40)
        np.testing.assert_allclose(ll[0], np.log1p(-params["p"]))
        assert np.all(np.isfinite(ll))

    def test_samples_are_revenue_per_user(self, result):
        samples = result.posterior.sample(1000)
        assert samples.shape == (1000,)
        assert np.all(samples > 0)


class TestCompoundOptions:
    """Test prior routing and severity-family selection."""

    def test_beta_prior_goes_to_frequency(self):
        data = revenue_users(n=200)
        converted = int(data.converted().sum())
        options = FitOptions(seed=0, prior_params=PriorSpec(type="beta", params=(10, 10)))
        frequency = fit(data, options=options).posterior.frequency
        assert frequency.alpha == 10 + converted

    def test_unsupported_prior_family(self):
        """Only beta and NIG priors have a part to go to."""
        options = FitOptions(seed=0, prior_params=PriorSpec(type="gamma", params=(1.0, 1.0)))
        with pytest.raises(InferenceError) as exc_info:
            fit(revenue_users(n=200), options=options)
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR

    def test_prior_checked_before_data_split(self):
        data = StandardData.from_user_level(
            [{"converted": False, "value": 0.0}, {"converted": False, "value": 0.0}]
        )
        options = FitOptions(prior_params=PriorSpec(type="gamma", params=(1.0, 1.0)))
        with pytest.raises(InferenceError) as exc_info:
            fit(data, options=options)
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR

    def test_nig_prior_goes_to_severity(self):
        """A NIG prior must not reach the Beta frequency model."""
        data = revenue_users(n=200)
        options = FitOptions(seed=0, prior_params=DEFAULT_NIG_PRIOR.to_spec())
        posterior = fit(data, options=options).posterior
        assert posterior.severity.prior == DEFAULT_NIG_PRIOR
        assert posterior.frequency.alpha == 1 + int(data.converted().sum())

    def test_mixture_severity(self):
        data = revenue_users(n=1000, bimodal=True)
        config = ModelConfig(structure="compound", value_type="lognormal", value_components=2)
        result = fit(data, config)
        assert isinstance(result.posterior.severity, MixturePosterior)
        assert result.metadata.algorithm == "vbem"
        assert result.diagnostics.actual_components == 2
        assert len(result.posterior.severity_components()) == 2
        assert result.posterior.parameter_count == 1 + 5

    def test_normal_severity(self):
        config = ModelConfig(structure="compound", value_type="normal")
        result = fit(revenue_users(n=300), config)
        assert result.diagnostics.model_type == "compound-beta-normal"


class TestCompoundErrors:
    """Test input validation in the compound engine."""

    def test_binomial_data_rejected(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(StandardData.from_binomial(3, 10))
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_simple_structure_rejected(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(revenue_users(n=50), ModelConfig(structure="simple", type="lognormal"))
        assert exc_info.value.code == ErrorCode.MODEL_MISMATCH

    def test_missing_value_type(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(revenue_users(n=50), ModelConfig(structure="compound"))
        assert exc_info.value.code == ErrorCode.INVALID_CONFIG

    def test_gamma_not_implemented(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(revenue_users(n=50), ModelConfig(structure="compound", value_type="gamma"))
        assert exc_info.value.code == ErrorCode.NOT_IMPLEMENTED

    def test_no_positive_values(self):
        """No converted user with a value leaves nothing to fit a severity on."""
        data = StandardData.from_user_level(
            [{"converted": False, "value": 0.0}, {"converted": False, "value": 0.0}]
        )
        with pytest.raises(InferenceError) as exc_info:
            fit(data)
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_DATA
