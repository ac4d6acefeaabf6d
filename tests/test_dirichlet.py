"""Tests for the Dirichlet posterior over mixture weights."""

import numpy as np
import pytest
from scipy import special as sp_special
from scipy import stats as sp_stats

from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.stats.dirichlet import DirichletPosterior


class TestDirichletConstruction:
    """Test Dirichlet parameter validation."""

    def test_symmetric(self):
        dist = DirichletPosterior.symmetric(3, 1.0)
        np.testing.assert_allclose(dist.alpha, [1.0, 1.0, 1.0])
        np.testing.assert_allclose(dist.mean(), [1 / 3] * 3)
        assert dist.dimension == 3
        assert dist.total == pytest.approx(3.0)

    def test_updated_returns_new_instance(self):
        prior = DirichletPosterior.symmetric(3, 1.0)
        posterior = prior.updated([2.0, 3.0, 5.0])
        np.testing.assert_allclose(posterior.alpha, [3.0, 4.0, 6.0])
        np.testing.assert_allclose(prior.alpha, [1.0, 1.0, 1.0])

    def test_alpha_is_read_only(self):
        dist = DirichletPosterior([1.0, 2.0])
        with pytest.raises(ValueError):
            dist.alpha[0] = 5.0

    @pytest.mark.parametrize("alpha", [[], [1.0, 0.0], [1.0, -2.0], [np.inf, 1.0]])
    def test_invalid_alpha(self, alpha):
        with pytest.raises(InferenceError) as exc_info:
            DirichletPosterior(alpha)
        assert exc_info.value.code == ErrorCode.INVALID_PRIOR


class TestDirichletMoments:
    """Test Dirichlet means, variances and marginal intervals."""

    def test_variance_matches_scipy(self):
        alpha = np.array([2.0, 3.0, 5.0])
        dist = DirichletPosterior(alpha)
        np.testing.assert_allclose(dist.variance(), sp_stats.dirichlet(alpha).var())

    def test_covariance_rows_sum_to_zero(self):
        cov = DirichletPosterior([2.0, 3.0, 5.0]).covariance()
        np.testing.assert_allclose(cov.sum(axis=1), 0.0, atol=1e-15)
        assert np.all(cov[~np.eye(3, dtype=bool)] < 0)

    def test_expected_log_weights(self):
        alpha = np.array([1.5, 2.5])
        expected = sp_special.digamma(alpha) - sp_special.digamma(alpha.sum())
        np.testing.assert_allclose(DirichletPosterior(alpha).expected_log_weights(), expected)

    def test_marginal_is_beta(self):
        dist = DirichletPosterior([2.0, 3.0, 5.0])
        marginal = dist.marginal(0)
        assert marginal.mean() == pytest.approx(0.2)
        low, high = dist.marginal_interval(0, 0.95)
        assert low < 0.2 < high
        with pytest.raises(IndexError):
            dist.marginal(3)

    def test_single_component_interval(self):
        assert DirichletPosterior([4.0]).marginal_interval(0) == (1.0, 1.0)


class TestDirichletInformation:
    """Test KL divergence, entropy and density."""

    def test_kl_to_self_is_zero(self):
        dist = DirichletPosterior([2.0, 3.0, 5.0])
        assert dist.kl_divergence(dist) == pytest.approx(0.0, abs=1e-12)

    def test_kl_positive(self):
        a = DirichletPosterior([2.0, 3.0, 5.0])
        b = DirichletPosterior.symmetric(3, 1.0)
        assert a.kl_divergence(b) > 0

    def test_kl_dimension_mismatch(self):
        with pytest.raises(ValueError):
            DirichletPosterior([1.0, 1.0]).kl_divergence(DirichletPosterior([1.0, 1.0, 1.0]))

    def test_entropy_matches_scipy(self):
        alpha = np.array([2.0, 3.0, 5.0])
        assert DirichletPosterior(alpha).entropy() == pytest.approx(sp_stats.dirichlet(alpha).entropy())

    def test_log_pdf_matches_scipy(self):
        alpha = np.array([2.0, 3.0, 5.0])
        x = np.array([0.2, 0.3, 0.5])
        assert DirichletPosterior(alpha).log_pdf(x) == pytest.approx(sp_stats.dirichlet(alpha).logpdf(x))

    def test_log_pdf_boundary_and_outside(self):
        dist = DirichletPosterior([1.0, 2.0])
        assert np.isfinite(dist.log_pdf([0.0, 1.0]))
        assert DirichletPosterior([2.0, 2.0]).log_pdf([0.0, 1.0]) == -np.inf
        assert dist.log_pdf([0.5, 0.6]) == -np.inf
        with pytest.raises(ValueError):
            dist.log_pdf([0.2, 0.3, 0.5])


class TestDirichletSampling:
    """Test Dirichlet draws."""

    def test_sample_shape_and_simplex(self):
        dist = DirichletPosterior([2.0, 3.0, 5.0], rng=np.random.default_rng(0))
        samples = dist.sample(5000)
        assert samples.shape == (5000, 3)
        np.testing.assert_allclose(samples.sum(axis=1), 1.0)
        np.testing.assert_allclose(samples.mean(axis=0), [0.2, 0.3, 0.5], atol=0.01)
