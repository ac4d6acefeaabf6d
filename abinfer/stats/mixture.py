"""Variational Bayes EM for finite Normal and LogNormal mixtures.

Each fit runs::

    initialize (k-means++) -> {E-step -> M-step -> ELBO check}* -> converged | max iterations

E-step
    r_ik proportional to exp(E[log w_k] + E_q[log p(x_i | theta_k)]) with the
    Dirichlet expected log weight, normalized with log-sum-exp.
M-step
    Dirichlet alpha_k = alpha_0 + N_k; each component is refit with
    ``fit_weighted`` on its responsibility column against its own fixed prior.

Both steps are exact coordinate-ascent updates, so the ELBO never decreases
beyond floating-point noise.  Components are sorted by ascending mean after
every M-step to remove label switching.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Optional

import numpy as np
from scipy.special import logsumexp

from abinfer.core.config import settings
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.base import EngineCapabilities, InferenceEngine
from abinfer.stats.dirichlet import DirichletPosterior
from abinfer.stats.normal import (
    LogNormalConjugate,
    NormalConjugate,
    NormalInverseGammaConjugate,
    NormalInverseGammaPosterior,
    SufficientStats,
)
from abinfer.stats.posterior import InferenceResult, ParametricPosterior, PosteriorCapabilities
from abinfer.stats.priors import NormalInverseGamma, empirical_nig_prior, resolve_nig_prior

logger = logging.getLogger(__name__)

MIN_EFFECTIVE_COUNT = 1e-10


@dataclass(frozen=True)
class MixtureComponent:
    posterior: NormalInverseGammaPosterior
    prior: NormalInverseGamma
    weight: float
    effective_count: float = 0.0


# ======================================================================
# Posterior
# ======================================================================


class MixturePosterior(ParametricPosterior):
    """Posterior predictive of a K-component mixture.

    Parameters
    ----------
    components : sequence of MixtureComponent
        Components sorted by ascending mean.
    weight_posterior : DirichletPosterior
        Joint uncertainty over the mixture weights.
    n_observations : int
        Number of points the mixture was fit on.
    """

    def __init__(
        self,
        components: list[MixtureComponent],
        weight_posterior: DirichletPosterior,
        n_observations: int,
        rng: Optional[np.random.Generator] = None,
        mc_sample_size: Optional[int] = None,
    ) -> None:
        super().__init__(rng=rng, mc_sample_size=mc_sample_size)
        self._components = tuple(components)
        self.weight_posterior = weight_posterior
        self.n_observations = n_observations
        self.parameter_count = 3 * len(components) - 1

    @property
    def capabilities(self) -> PosteriorCapabilities:
        return PosteriorCapabilities(analytical=False, parameter_sampling=True)

    @property
    def family(self) -> str:
        return self._components[0].posterior.family

    @property
    def k(self) -> int:
        return len(self._components)

    def weights(self) -> np.ndarray:
        return self.weight_posterior.mean()

    def components(self, level: Optional[float] = None) -> list[dict[str, Any]]:
        """Per-component mean, variance, weight and weight credible interval."""
        out = []
        for idx, component in enumerate(self._components):
            out.append(
                {
                    "mean": component.posterior.mean(),
                    "variance": component.posterior.variance(),
                    "weight": component.weight,
                    "weight_ci": self.weight_posterior.marginal_interval(idx, level),
                    "effective_count": component.effective_count,
                    "posterior": component.posterior,
                }
            )
        return out

    def mixture_components(self) -> tuple[MixtureComponent, ...]:
        return self._components

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _draw(self, n: int) -> np.ndarray:
        weights = self.weight_posterior.sample(n) if self.k > 1 else np.ones((n, 1))
        u = self._rng.random(n)[:, None]
        labels = np.minimum((u > np.cumsum(weights, axis=1)).sum(axis=1), self.k - 1)
        out = np.empty(n)
        for idx, component in enumerate(self._components):
            mask = labels == idx
            count = int(mask.sum())
            if count:
                mu, sigma2 = component.posterior.params.sample(count, self._rng)
                y = self._rng.normal(mu, np.sqrt(sigma2))
                out[mask] = component.posterior.from_model_scale(y)
        return out

    def sample_parameters(self, size: int) -> dict[str, np.ndarray]:
        weights = self.weight_posterior.sample(size) if self.k > 1 else np.ones((size, 1))
        mus, sigma2s = [], []
        for component in self._components:
            mu, sigma2 = component.posterior.params.sample(size, self._rng)
            mus.append(mu)
            sigma2s.append(sigma2)
        return {"w": weights, "mu": np.column_stack(mus), "sigma2": np.column_stack(sigma2s)}

    def point_parameters(self) -> dict[str, np.ndarray]:
        return {
            "w": self.weights()[None, :],
            "mu": np.array([[c.posterior.params.mu0 for c in self._components]]),
            "sigma2": np.array([[c.posterior.params.expected_variance() for c in self._components]]),
        }

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def log_likelihood(self, x: Any, params: dict[str, np.ndarray]) -> np.ndarray:
        """log sum_k w_k N(y | mu_k, sigma2_k) + log-Jacobian, shape (len(x), n_draws)."""
        x = np.asarray(x, dtype=float)
        y, log_jac = self._components[0].posterior.to_model_scale(x)
        finite = np.isfinite(y)
        safe_y = np.where(finite, y, 0.0)[:, None, None]
        w = np.asarray(params["w"], dtype=float)[None, :, :]
        mu = np.asarray(params["mu"], dtype=float)[None, :, :]
        sigma2 = np.asarray(params["sigma2"], dtype=float)[None, :, :]
        with np.errstate(divide="ignore"):
            log_w = np.log(w)
        terms = log_w - 0.5 * np.log(2 * np.pi * sigma2) - 0.5 * (safe_y - mu) ** 2 / sigma2
        ll = logsumexp(terms, axis=2) + log_jac[:, None]
        return np.where(finite[:, None], ll, -np.inf)

    def log_pdf_batch(self, xs: Any) -> np.ndarray:
        """log sum_k E[w_k] * predictive_k(x)."""
        xs = np.asarray(xs, dtype=float)
        with np.errstate(divide="ignore"):
            log_w = np.log(self.weights())
        per_component = np.column_stack(
            [c.posterior.log_pdf_batch(xs) for c in self._components]
        )
        return logsumexp(per_component + log_w[None, :], axis=1)

    def log_pdf(self, x: float) -> float:
        return float(self.log_pdf_batch([x])[0])

    def __repr__(self) -> str:
        return f"MixturePosterior(family={self.family!r}, k={self.k}, weights={np.round(self.weights(), 3).tolist()})"


# ======================================================================
# VBEM engine
# ======================================================================


@dataclass
class VBEMState:
    components: list[MixtureComponent]
    weight_posterior: DirichletPosterior
    converged: bool
    iterations: int
    elbo_history: list[float]
    likelihood_history: list[float]
    elbo_decreased: bool


class MixtureVBEM(InferenceEngine):
    """Shared VBEM loop for Normal and LogNormal mixtures."""

    algorithm = "vbem"
    family = "normal"
    component_engine: NormalInverseGammaConjugate = NormalConjugate()

    def __init__(self, prior_alpha: Optional[float] = None) -> None:
        self.prior_alpha = settings.DIRICHLET_PRIOR_ALPHA if prior_alpha is None else prior_alpha

    @property
    def model_type(self) -> str:
        return f"{self.family}-mixture-vbem"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fit_sync(
        self,
        data: StandardData,
        config: ModelConfig,
        options: FitOptions,
    ) -> InferenceResult:
        started = time.perf_counter()
        self.validate_standard_data(data, config)
        values = self.component_engine.check_values(data.values())

        n = len(values)
        requested = config.component_count
        max_viable = n // settings.MIN_POINTS_PER_COMPONENT
        actual = min(requested, max_viable)
        fallback_reason = None
        if actual < requested:
            fallback_reason = (
                f"Reduced components from {requested} to {max(actual, 1)}: "
                f"{n} points support at most {max_viable} "
                f"(need {settings.MIN_POINTS_PER_COMPONENT} per component)"
            )
            logger.info("%s: %s", self.name, fallback_reason)

        if actual <= 1:
            return self._fit_single(data, options, started, requested, fallback_reason)

        state = self.run_vbem(values, actual, options)
        posterior = MixturePosterior(
            state.components,
            state.weight_posterior,
            n_observations=n,
            rng=options.rng(),
        )

        warnings: list[str] = []
        if fallback_reason:
            warnings.append(fallback_reason)
        if state.elbo_decreased:
            warnings.append("ELBO decreased during VBEM; possible numerical issues")
        if not state.converged:
            warnings.append(f"VBEM did not converge in {state.iterations} iterations")

        return self.build_result(
            posterior,
            started,
            data,
            config,
            model_type=self.model_type,
            converged=state.converged,
            iterations=state.iterations,
            warnings=tuple(warnings),
            final_elbo=state.elbo_history[-1] if state.elbo_history else None,
            elbo_history=tuple(state.elbo_history),
            likelihood_history=tuple(state.likelihood_history),
            requested_components=requested,
            actual_components=actual,
            fallback_reason=fallback_reason,
        )

    def _fit_single(
        self,
        data: StandardData,
        options: FitOptions,
        started: float,
        requested: int,
        fallback_reason: Optional[str],
    ) -> InferenceResult:
        """Delegate to the single-component conjugate engine."""
        if fallback_reason:
            logger.info("%s: falling back to %s", self.name, self.component_engine.name)
        result = self.component_engine.fit_sync(
            data,
            self.component_engine.default_config(),
            options,
        )
        warnings = result.metadata.warnings + ((fallback_reason,) if fallback_reason else ())
        return InferenceResult(
            posterior=result.posterior,
            diagnostics=replace(
                result.diagnostics,
                runtime=time.perf_counter() - started,
                requested_components=requested,
                actual_components=1,
                fallback_reason=fallback_reason,
            ),
            metadata=replace(result.metadata, warnings=warnings),
        )

    # ------------------------------------------------------------------
    # VBEM
    # ------------------------------------------------------------------

    def run_vbem(self, values: np.ndarray, k: int, options: FitOptions) -> VBEMState:
        """Run VBEM with ``k`` components on positive/finite ``values``."""
        max_iterations = options.resolved_max_iterations()
        tolerance = options.resolved_tolerance()
        rng = options.rng()

        y = self.component_engine.transform(values)
        centers = kmeans_plus_plus(y, k, rng)
        labels = np.argmin(np.abs(y[:, None] - centers[None, :]), axis=1)
        responsibilities = np.eye(k)[labels]
        priors = self._component_priors(y, labels, k, options)

        weight_prior = DirichletPosterior.symmetric(k, self.prior_alpha)
        components, weight_posterior, responsibilities = self._m_step(
            values, responsibilities, priors, None, weight_prior, rng
        )

        elbo_history: list[float] = []
        likelihood_history: list[float] = []
        previous = -math.inf
        converged = False
        elbo_decreased = False
        iteration = 0

        for iteration in range(1, max_iterations + 1):
            responsibilities = self.e_step(values, components, weight_posterior)
            components, weight_posterior, responsibilities = self._m_step(
                values,
                responsibilities,
                [c.prior for c in components],
                components,
                weight_prior,
                rng,
            )
            elbo, expected_ll = self.compute_elbo(
                values, responsibilities, components, weight_posterior, weight_prior
            )
            elbo_history.append(elbo)
            likelihood_history.append(expected_ll)

            if elbo < previous - settings.ELBO_DECREASE_TOLERANCE:
                elbo_decreased = True
                logger.warning(
                    "%s: ELBO decreased by %.3e at iteration %d; possible numerical issues",
                    self.name,
                    previous - elbo,
                    iteration,
                )
            logger.debug("%s: iteration %d ELBO %.6f", self.name, iteration, elbo)
            options.report("VBEM iteration", iteration / max_iterations, iteration)

            if abs(elbo - previous) < tolerance:
                converged = True
                break
            previous = elbo

        return VBEMState(
            components=components,
            weight_posterior=weight_posterior,
            converged=converged,
            iterations=iteration,
            elbo_history=elbo_history,
            likelihood_history=likelihood_history,
            elbo_decreased=elbo_decreased,
        )

    def e_step(
        self,
        values: np.ndarray,
        components: list[MixtureComponent],
        weight_posterior: DirichletPosterior,
    ) -> np.ndarray:
        """Responsibilities r_ik via log-sum-exp; all -inf rows become uniform."""
        log_rho = self._log_rho(values, components, weight_posterior)
        norm = logsumexp(log_rho, axis=1, keepdims=True)
        degenerate = ~np.isfinite(norm[:, 0])
        with np.errstate(invalid="ignore"):
            resp = np.exp(log_rho - norm)
        if np.any(degenerate):
            resp[degenerate] = 1.0 / len(components)
        return resp

    def compute_elbo(
        self,
        values: np.ndarray,
        responsibilities: np.ndarray,
        components: list[MixtureComponent],
        weight_posterior: DirichletPosterior,
        weight_prior: DirichletPosterior,
    ) -> tuple[float, float]:
        """Return (ELBO, expected log-likelihood term)."""
        expected_ll = np.column_stack(
            [c.posterior.expected_log_likelihood(values) for c in components]
        )
        safe_ll = np.where(responsibilities > 0, expected_ll, 0.0)
        e_log_lik = float(np.sum(responsibilities * safe_ll))
        e_log_assign = float(np.sum(responsibilities * weight_posterior.expected_log_weights()[None, :]))
        with np.errstate(divide="ignore", invalid="ignore"):
            entropy = -float(
                np.sum(np.where(responsibilities > 0, responsibilities * np.log(responsibilities), 0.0))
            )
        kl_weights = weight_posterior.kl_divergence(weight_prior)
        kl_components = sum(c.posterior.kl_divergence_from(c.prior) for c in components)
        elbo = e_log_lik + e_log_assign + entropy - kl_weights - kl_components
        return elbo, e_log_lik

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_rho(
        self,
        values: np.ndarray,
        components: list[MixtureComponent],
        weight_posterior: DirichletPosterior,
    ) -> np.ndarray:
        expected_ll = np.column_stack(
            [c.posterior.expected_log_likelihood(values) for c in components]
        )
        return expected_ll + weight_posterior.expected_log_weights()[None, :]

    def _m_step(
        self,
        values: np.ndarray,
        responsibilities: np.ndarray,
        priors: list[NormalInverseGamma],
        previous: Optional[list[MixtureComponent]],
        weight_prior: DirichletPosterior,
        rng: np.random.Generator,
    ) -> tuple[list[MixtureComponent], DirichletPosterior, np.ndarray]:
        counts = responsibilities.sum(axis=0)
        weight_posterior = weight_prior.updated(counts)

        posteriors = []
        for idx, prior in enumerate(priors):
            if previous is not None and counts[idx] < MIN_EFFECTIVE_COUNT:
                posteriors.append(previous[idx].posterior)
                continue
            component_options = FitOptions(
                prior_params=prior.to_spec(),
                seed=int(rng.integers(2**32)),
            )
            result = self.component_engine.fit_weighted(values, responsibilities[:, idx], component_options)
            posteriors.append(result.posterior)

        order = np.argsort([p.plug_in_mean() for p in posteriors], kind="stable")
        weights = weight_posterior.mean()
        components = [
            MixtureComponent(
                posterior=posteriors[i],
                prior=priors[i],
                weight=float(weights[i]),
                effective_count=float(counts[i]),
            )
            for i in order
        ]
        weight_posterior = DirichletPosterior(weight_posterior.alpha[order], rng=rng)
        return components, weight_posterior, responsibilities[:, order]

    def _component_priors(
        self,
        y: np.ndarray,
        labels: np.ndarray,
        k: int,
        options: FitOptions,
    ) -> list[NormalInverseGamma]:
        """One fixed prior per component, centred on its initial cluster."""
        explicit = resolve_nig_prior(options.prior_params)
        if explicit is not None:
            return [explicit] * k
        overall = SufficientStats.from_values(y)
        priors = []
        for idx in range(k):
            members = y[labels == idx]
            if len(members) >= 2 and np.var(members) > 0:
                stats = SufficientStats.from_values(members)
                priors.append(empirical_nig_prior(stats.mean, stats.population_variance))
            elif len(members):
                priors.append(empirical_nig_prior(float(members.mean()), overall.population_variance))
            else:
                priors.append(empirical_nig_prior(overall.mean, overall.population_variance))
        return priors


def kmeans_plus_plus(data: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """k-means++ seeding: each new center is drawn proportional to squared distance."""
    n = len(data)
    centers = [data[rng.integers(n)]]
    for _ in range(1, k):
        distances = np.min((data[:, None] - np.array(centers)[None, :]) ** 2, axis=1)
        total = float(distances.sum())
        if total == 0:
            centers.append(data[rng.integers(n)])
            continue
        centers.append(data[rng.choice(n, p=distances / total)])
    return np.sort(np.array(centers, dtype=float))


# ======================================================================
# Concrete engines
# ======================================================================


def _mixture_capabilities(family: str) -> EngineCapabilities:
    return EngineCapabilities(
        structures=frozenset({"simple"}),
        families=frozenset({family}),
        data_types=frozenset({"user-level"}),
        min_components=1,
        max_components=settings.MAX_COMPONENTS,
        exact=False,
        fast=False,
        stable=True,
    )


class NormalMixtureVBEM(MixtureVBEM):
    name = "NormalMixtureVBEM"
    family = "normal"
    component_engine = NormalConjugate()
    capabilities = _mixture_capabilities("normal")


class LogNormalMixtureVBEM(MixtureVBEM):
    name = "LogNormalMixtureVBEM"
    family = "lognormal"
    component_engine = LogNormalConjugate()
    capabilities = _mixture_capabilities("lognormal")
