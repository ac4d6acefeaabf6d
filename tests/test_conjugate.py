"""Tests for the conjugate engines and prior handling.

Tests cover:
- Beta-Binomial updates, summaries, densities and weighted fits
- Normal / LogNormal Normal-Inverse-Gamma updates and predictive densities
- Fitting from sufficient statistics matches fitting from raw data
- Prior validation and elicited / historical Beta priors
"""

import asyncio
import math

import numpy as np
import pytest
from scipy import stats as sp_stats

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig, PriorSpec
from abinfer.models.data import StandardData
from abinfer.stats.bayesian import BETA_CONFIG, BetaBinomialConjugate, BetaPosterior
from abinfer.stats.normal import (
    LogNormalConjugate,
    LogNormalPosterior,
    NormalConjugate,
    NormalPosterior,
    SufficientStats,
    is_likely_lognormal,
    nig_update,
)
from abinfer.stats.priors import (
    DEFAULT_NIG_PRIOR,
    NormalInverseGamma,
    empirical_nig_prior,
    historical_beta_prior,
    user_elicited_prior,
)

NORMAL_CONFIG = ModelConfig(structure="simple", type="normal")
LOGNORMAL_CONFIG = ModelConfig(structure="simple", type="lognormal")


def fit(engine, data, config, options=None):
    return asyncio.run(engine.fit(data, config, options))


# ======================================================================
# Beta-Binomial
# ======================================================================


class TestBetaBinomialConjugate:
    """Test the Beta-Binomial conjugate update."""

    def test_default_prior_update(self):
        """Beta(1, 1) prior with 8/10 successes gives Beta(9, 3)."""
        result = fit(BetaBinomialConjugate(), StandardData.from_binomial(8, 10), BETA_CONFIG)
        posterior = result.posterior
        assert isinstance(posterior, BetaPosterior)
        assert posterior.alpha == 9.0
        assert posterior.beta == 3.0
        assert posterior.mean() == pytest.approx(0.75, abs=1e-12)

    def test_result_metadata(self):
        result = fit(BetaBinomialConjugate(), StandardData.from_binomial(8, 10), BETA_CONFIG)
        assert result.diagnostics.model_type == "beta"
        assert result.diagnostics.converged
        assert result.diagnostics.iterations == 1
        assert result.diagnostics.parameter_count == 1
        assert result.metadata.algorithm == "conjugate"
        assert result.metadata.engine_name == "BetaBinomialConjugate"
        assert result.metadata.capabilities["exact"]
        assert result.metadata.capabilities["analytical"]

    def test_custom_prior(self):
        options = FitOptions(prior_params=PriorSpec(type="beta", params=(2, 8)))
        result = fit(BetaBinomialConjugate(), StandardData.from_binomial(3, 10), BETA_CONFIG, options)
        assert result.posterior.alpha == 5.0
        assert result.posterior.beta == 15.0

    @pytest.mark.parametrize(
        "spec",
        [
            PriorSpec(type="normal-inverse-gamma", params=(0, 1, 2, 2)),
            PriorSpec(type="beta", params=(1, 1, 1)),
            PriorSpec(type="beta", params=(0, 1)),
            PriorSpec(type="beta", params=(1, -2)),
        ],
    )
    def test_invalid_priors(self, spec):
        with pytest.raises(InferenceError) as exc_info:
            fit(
                BetaBinomialConjugate(),
                StandardData.from_binomial(1, 2),
                BETA_CONFIG,
                FitOptions(prior_params=spec),
            )
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR

    def test_rejects_user_level_data(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(BetaBinomialConjugate(), StandardData.from_continuous([1.0, 2.0]), BETA_CONFIG)
        assert exc_info.value.code == ErrorCode.MODEL_MISMATCH

    def test_fit_weighted(self):
        result = BetaBinomialConjugate().fit_weighted([1, 0, 1], [0.5, 1.0, 1.0])
        assert result.posterior.alpha == pytest.approx(2.5)
        assert result.posterior.beta == pytest.approx(2.0)

    def test_fit_weighted_validation(self):
        engine = BetaBinomialConjugate()
        with pytest.raises(InferenceError):
            engine.fit_weighted([1, 0], [1.0])
        with pytest.raises(InferenceError):
            engine.fit_weighted([1, 0], [1.0, -1.0])
        with pytest.raises(InferenceError):
            engine.fit_weighted([1, 2], [1.0, 1.0])

    def test_fit_from_stats(self):
        result = BetaBinomialConjugate().fit_from_stats(45, 100)
        assert result.posterior.alpha == 46.0
        assert result.posterior.beta == 56.0
        with pytest.raises(InferenceError) as exc_info:
            BetaBinomialConjugate().fit_from_stats(5, 3)
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_can_handle(self):
        engine = BetaBinomialConjugate()
        assert engine.can_handle(BETA_CONFIG, StandardData.from_binomial(1, 2))
        assert not engine.can_handle(NORMAL_CONFIG)
        assert not engine.can_handle(BETA_CONFIG, StandardData.from_continuous([1.0]))


class TestBetaPosterior:
    """Test BetaPosterior summaries and densities."""

    def test_invalid_parameters(self):
        with pytest.raises(InferenceError) as exc_info:
            BetaPosterior(0, 1)
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR

    def test_variance(self):
        posterior = BetaPosterior(9, 3)
        assert posterior.variance() == pytest.approx(27 / (144 * 13))

    def test_credible_interval_brackets_mean(self):
        posterior = BetaPosterior(9, 3)
        low, high = posterior.credible_interval(0.95)
        assert 0 <= low < posterior.mean() < high <= 1
        assert posterior.median() == pytest.approx(posterior.quantile(0.5))

    def test_hdi_not_wider_than_equal_tailed(self):
        posterior = BetaPosterior(2, 20)
        ci_low, ci_high = posterior.credible_interval(0.95)
        hdi_low, hdi_high = posterior.hdi(0.95)
        assert hdi_high - hdi_low <= ci_high - ci_low + 1e-9
        mass = sp_stats.beta(2, 20).cdf(hdi_high) - sp_stats.beta(2, 20).cdf(hdi_low)
        assert mass == pytest.approx(0.95, abs=1e-4)

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            BetaPosterior(2, 2).credible_interval(1.5)

    def test_mode(self):
        assert BetaPosterior(9, 3).mode() == pytest.approx(0.8)
        assert math.isnan(BetaPosterior(1, 3).mode())

    def test_sampling(self):
        posterior = BetaPosterior(9, 3, rng=np.random.default_rng(0))
        samples = posterior.sample(20_000)
        assert samples.shape == (20_000,)
        assert samples.mean() == pytest.approx(0.75, abs=0.01)
        assert posterior.sample(0).shape == (0,)

    def test_log_pdf(self):
        posterior = BetaPosterior(9, 3)
        assert posterior.log_pdf(1) == pytest.approx(math.log(0.75))
        assert posterior.log_pdf(0) == pytest.approx(math.log(0.25))
        with pytest.raises(InferenceError) as exc_info:
            posterior.log_pdf(0.5)
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_log_marginal_likelihood_uniform_prior(self):
        """Under Beta(1, 1) every success count out of n is equally likely."""
        prior = BetaPosterior(1, 1)
        assert prior.log_marginal_likelihood(3, 10) == pytest.approx(math.log(1 / 11))
        assert prior.log_marginal_likelihood(11, 10) == -math.inf

    def test_log_likelihood_shape(self):
        posterior = BetaPosterior(9, 3, rng=np.random.default_rng(1))
        params = posterior.sample_parameters(25)
        ll = posterior.log_likelihood(np.array([0.0, 1.0, 1.0]), params)
        assert ll.shape == (3, 25)
        np.testing.assert_allclose(ll[1], np.log(params["p"]))

    def test_probability_greater_than(self):
        strong = BetaPosterior(50, 50)
        weak = BetaPosterior(10, 90)
        assert strong.probability_greater_than(weak) > 0.99
        assert weak.probability_greater_than(strong) < 0.01


# ======================================================================
# Normal / LogNormal
# ======================================================================


class TestNormalConjugate:
    """Test the Normal-Inverse-Gamma update on raw values."""

    def test_empirical_prior_keeps_sample_mean(self):
        values = [1.0, 2.0, 4.0, 7.0]
        result = fit(NormalConjugate(), StandardData.from_continuous(values), NORMAL_CONFIG)
        posterior = result.posterior
        assert isinstance(posterior, NormalPosterior)
        assert posterior.mean() == pytest.approx(np.mean(values))
        assert posterior.params.lam == pytest.approx(5.0)
        assert posterior.params.alpha == pytest.approx(4.0)
        assert result.diagnostics.model_type == "normal"
        assert result.diagnostics.parameter_count == 2

    def test_explicit_prior_update(self):
        options = FitOptions(prior_params=DEFAULT_NIG_PRIOR.to_spec())
        result = fit(NormalConjugate(), StandardData.from_continuous([1.0, 2.0, 3.0]), NORMAL_CONFIG, options)
        params = result.posterior.params
        assert params.lam == pytest.approx(4.0)
        assert params.mu0 == pytest.approx(1.5)
        assert params.alpha == pytest.approx(3.5)
        assert params.beta == pytest.approx(4.5)

    def test_fit_from_stats_matches_fit(self):
        values = np.random.default_rng(5).normal(10, 2, size=50)
        direct = fit(NormalConjugate(), StandardData.from_continuous(values), NORMAL_CONFIG)
        from_stats = NormalConjugate().fit_from_stats(SufficientStats.from_values(values))
        assert direct.posterior.params.as_tuple() == pytest.approx(from_stats.posterior.params.as_tuple())

    def test_weighted_fit_with_unit_weights_matches_fit(self):
        values = np.array([3.0, 5.0, 6.0, 9.0])
        direct = fit(NormalConjugate(), StandardData.from_continuous(values), NORMAL_CONFIG)
        weighted = NormalConjugate().fit_weighted(values, np.ones_like(values))
        assert direct.posterior.params.as_tuple() == pytest.approx(weighted.posterior.params.as_tuple())

    def test_wrong_prior_type(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(
                NormalConjugate(),
                StandardData.from_continuous([1.0, 2.0]),
                NORMAL_CONFIG,
                FitOptions(prior_params=PriorSpec(type="beta", params=(1, 1))),
            )
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR

    def test_no_finite_values(self):
        data = StandardData.from_user_level([{"converted": True, "value": None}])
        with pytest.raises(InferenceError) as exc_info:
            fit(NormalConjugate(), data, NORMAL_CONFIG)
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_DATA

    def test_constant_data_is_valid(self):
        result = fit(NormalConjugate(), StandardData.from_continuous([4.0] * 5), NORMAL_CONFIG)
        assert result.posterior.mean() == pytest.approx(4.0)
        assert result.posterior.prior.beta > 0

    def test_predictive_is_student_t(self):
        result = fit(NormalConjugate(), StandardData.from_continuous([1.0, 2.0, 3.0, 4.0]), NORMAL_CONFIG)
        p = result.posterior.params
        scale = math.sqrt(p.beta * (p.lam + 1) / (p.alpha * p.lam))
        expected = sp_stats.t(df=2 * p.alpha, loc=p.mu0, scale=scale).logpdf(2.7)
        assert result.posterior.log_pdf(2.7) == pytest.approx(expected)

    def test_not_analytical(self):
        result = fit(NormalConjugate(), StandardData.from_continuous([1.0, 2.0]), NORMAL_CONFIG)
        caps = result.posterior.capabilities
        assert not caps.analytical
        assert caps.parameter_sampling
        assert caps.log_pdf


class TestLogNormalConjugate:
    """Test the log-scale NIG update."""

    def test_fit_on_log_scale(self):
        values = np.random.default_rng(2).lognormal(1.0, 0.5, size=200)
        result = fit(LogNormalConjugate(), StandardData.from_continuous(values), LOGNORMAL_CONFIG)
        posterior = result.posterior
        assert isinstance(posterior, LogNormalPosterior)
        assert posterior.params.mu0 == pytest.approx(np.mean(np.log(values)))
        assert result.diagnostics.model_type == "lognormal"

    def test_fit_from_log_stats_matches_fit(self):
        values = np.random.default_rng(3).lognormal(0.0, 1.0, size=40)
        direct = fit(LogNormalConjugate(), StandardData.from_continuous(values), LOGNORMAL_CONFIG)
        from_stats = LogNormalConjugate().fit_from_stats(SufficientStats.from_values(np.log(values)))
        assert direct.posterior.params.as_tuple() == pytest.approx(from_stats.posterior.params.as_tuple())

    def test_non_positive_values_rejected(self):
        with pytest.raises(InferenceError) as exc_info:
            fit(LogNormalConjugate(), StandardData.from_continuous([0.0, 1.0, 2.0]), LOGNORMAL_CONFIG)
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_log_pdf_includes_jacobian(self):
        result = fit(LogNormalConjugate(), StandardData.from_continuous([1.0, 2.0, 4.0, 8.0]), LOGNORMAL_CONFIG)
        posterior = result.posterior
        p = posterior.params
        scale = math.sqrt(p.beta * (p.lam + 1) / (p.alpha * p.lam))
        t = sp_stats.t(df=2 * p.alpha, loc=p.mu0, scale=scale)
        assert posterior.log_pdf(3.0) == pytest.approx(t.logpdf(math.log(3.0)) - math.log(3.0))
        assert posterior.log_pdf(-1.0) == -math.inf
        assert posterior.log_pdf(0.0) == -math.inf

    def test_samples_positive(self):
        result = fit(
            LogNormalConjugate(),
            StandardData.from_continuous([1.0, 2.0, 4.0, 8.0]),
            LOGNORMAL_CONFIG,
            FitOptions(seed=0),
        )
        assert np.all(result.posterior.sample(1000) > 0)

    def test_log_likelihood_negative_values(self):
        result = fit(LogNormalConjugate(), StandardData.from_continuous([1.0, 2.0, 4.0]), LOGNORMAL_CONFIG)
        params = result.posterior.sample_parameters(10)
        ll = result.posterior.log_likelihood(np.array([-1.0, 2.0]), params)
        assert ll.shape == (2, 10)
        assert np.all(ll[0] == -np.inf)
        assert np.all(np.isfinite(ll[1]))

    def test_is_likely_lognormal(self):
        rng = np.random.default_rng(11)
        assert is_likely_lognormal(rng.lognormal(0, 1, size=500))
        assert not is_likely_lognormal(rng.normal(10, 1, size=500))
        assert not is_likely_lognormal([1.0, 2.0])


# ======================================================================
# Priors
# ======================================================================


class TestNormalInverseGamma:
    """Test NIG parameter validation and divergences."""

    def test_invalid_parameters(self):
        with pytest.raises(InferenceError) as exc_info:
            NormalInverseGamma(0.0, 0.0, 1.0, 1.0)
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR
        with pytest.raises(InferenceError):
            NormalInverseGamma(math.nan, 1.0, 1.0, 1.0)

    def test_kl_to_self_is_zero(self):
        nig = NormalInverseGamma(1.0, 2.0, 3.0, 4.0)
        assert nig.kl_divergence(nig) == pytest.approx(0.0, abs=1e-12)

    def test_kl_positive(self):
        a = NormalInverseGamma(1.0, 2.0, 3.0, 4.0)
        b = NormalInverseGamma(0.0, 1.0, 2.0, 2.0)
        assert a.kl_divergence(b) > 0

    def test_expected_variance(self):
        assert NormalInverseGamma(0, 1, 3, 4).expected_variance() == pytest.approx(2.0)

    def test_sampling_moments(self):
        nig = NormalInverseGamma(5.0, 10.0, 20.0, 19.0)
        mu, sigma2 = nig.sample(50_000, np.random.default_rng(0))
        assert mu.mean() == pytest.approx(5.0, abs=0.02)
        assert sigma2.mean() == pytest.approx(1.0, rel=0.02)

    def test_update_without_data_returns_prior(self):
        assert nig_update(DEFAULT_NIG_PRIOR, SufficientStats(0.0, 0.0, 0.0)) is DEFAULT_NIG_PRIOR

    def test_empirical_prior(self):
        prior = empirical_nig_prior(3.0, 2.0)
        assert prior.as_tuple() == (3.0, 1.0, 2.0, 4.0)
        assert empirical_nig_prior(3.0, 0.0).beta > 0
        assert empirical_nig_prior(math.nan, 1.0) is DEFAULT_NIG_PRIOR


class TestSufficientStats:
    """Test weighted and summed sufficient statistics."""

    def test_from_sums_round_trip(self):
        stats = SufficientStats.from_values([1.0, 2.0, 3.0, 6.0])
        again = SufficientStats.from_sums(stats.n, stats.sum_x, stats.sum_x2)
        assert again.mean == pytest.approx(stats.mean)
        assert again.ssd == pytest.approx(stats.ssd)

    def test_weighted(self):
        stats = SufficientStats.from_values([1.0, 3.0], [1.0, 3.0])
        assert stats.n == 4.0
        assert stats.mean == pytest.approx(2.5)
        assert stats.population_variance == pytest.approx(0.75)

    def test_zero_weight(self):
        assert SufficientStats.from_values([1.0, 2.0], [0.0, 0.0]).n == 0.0


class TestBetaPriors:
    """Test elicited and historical Beta priors."""

    def test_user_elicited(self):
        spec = user_elicited_prior(0.1, 100)
        assert spec.type == "beta"
        assert spec.params == pytest.approx((10.0, 90.0))
        with pytest.raises(InferenceError):
            user_elicited_prior(1.5, 10)
        with pytest.raises(InferenceError):
            user_elicited_prior(0.5, 0)

    def test_historical_moment_matching(self):
        rates = [0.10, 0.12, 0.08, 0.11]
        alpha, beta = historical_beta_prior(rates).params
        assert alpha / (alpha + beta) == pytest.approx(np.mean(rates))

    def test_historical_needs_two_rates(self):
        with pytest.raises(InferenceError) as exc_info:
            historical_beta_prior([0.1])
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_DATA

    def test_historical_degenerate_variance(self):
        assert historical_beta_prior([0.2, 0.2, 0.2]).params == pytest.approx((1.0, 4.0))
