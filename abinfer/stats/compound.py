"""Compound (zero-inflated) models: conversion frequency x value severity.

User-level data is split into a binomial conversion dataset (all users) and a
positive-value dataset (converted users with value > 0).  The two parts are
fit independently and combined in a ``CompoundPosterior`` whose samples are
the revenue per user, frequency_sample * severity_sample.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Optional

import numpy as np

from abinfer.core.config import settings
from abinfer.core.errors import ErrorCode, InferenceError
from abinfer.models.config import FitOptions, ModelConfig
from abinfer.models.data import StandardData
from abinfer.stats.base import EngineCapabilities, InferenceEngine
from abinfer.stats.bayesian import BETA_CONFIG, BetaBinomialConjugate, BetaPosterior
from abinfer.stats.mixture import LogNormalMixtureVBEM, MixturePosterior, NormalMixtureVBEM
from abinfer.stats.normal import LogNormalConjugate, NormalConjugate
from abinfer.stats.posterior import (
    InferenceResult,
    ParametricPosterior,
    Posterior,
    PosteriorCapabilities,
)
from abinfer.stats.priors import NIG_PRIOR_TYPE


class CompoundPosterior(ParametricPosterior):
    """Joint posterior of revenue per user under independent frequency and severity.

    Parameters
    ----------
    frequency : BetaPosterior
        Posterior over the conversion rate.
    severity : Posterior
        Posterior over the value of a converted user (single family or mixture).
    n_observations : int
        Number of users the model was fit on.
    """

    def __init__(
        self,
        frequency: BetaPosterior,
        severity: Posterior,
        n_observations: int,
        rng: Optional[np.random.Generator] = None,
        mc_sample_size: Optional[int] = None,
    ) -> None:
        super().__init__(rng=rng, mc_sample_size=mc_sample_size)
        self.frequency = frequency
        self.severity = severity
        self.n_observations = n_observations
        self.parameter_count = frequency.parameter_count + severity.parameter_count

    @property
    def capabilities(self) -> PosteriorCapabilities:
        freq, sev = self.frequency.capabilities, self.severity.capabilities
        return PosteriorCapabilities(
            analytical=freq.analytical and sev.analytical,
            parameter_sampling=freq.parameter_sampling and sev.parameter_sampling,
            log_pdf=freq.log_pdf and sev.log_pdf,
        )

    def _draw(self, n: int) -> np.ndarray:
        return self.frequency.sample(n) * self.severity.sample(n)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def mean(self) -> float:
        if self.capabilities.analytical:
            return self.frequency.mean() * self.severity.mean()
        return super().mean()

    def variance(self) -> float:
        """Var = E[F]^2 Var[S] + E[S]^2 Var[F] + Var[F] Var[S] when both parts are analytical."""
        if self.capabilities.analytical:
            f_mean, f_var = self.frequency.mean(), self.frequency.variance()
            s_mean, s_var = self.severity.mean(), self.severity.variance()
            return f_mean**2 * s_var + s_mean**2 * f_var + f_var * s_var
        return super().variance()

    def decomposition(self) -> dict[str, Posterior]:
        return {"frequency": self.frequency, "severity": self.severity}

    def severity_components(self) -> Optional[list[dict[str, Any]]]:
        if isinstance(self.severity, MixturePosterior):
            return self.severity.components()
        return None

    def expected_value_per_user(self) -> dict[str, float]:
        return {
            "conversion_rate": self.frequency.mean(),
            "value_per_conversion": self.severity.mean(),
            "value_per_user": self.mean(),
        }

    # ------------------------------------------------------------------
    # Densities (per-user values: 0 means no conversion)
    # ------------------------------------------------------------------

    def log_pdf_batch(self, xs: Any) -> np.ndarray:
        x = np.asarray(xs, dtype=float)
        p = self.frequency.mean()
        out = np.full(x.shape, np.log1p(-p))
        nonzero = x != 0
        if np.any(nonzero):
            out[nonzero] = np.log(p) + self.severity.log_pdf_batch(x[nonzero])
        return out

    def log_pdf(self, x: float) -> float:
        return float(self.log_pdf_batch([x])[0])

    def sample_parameters(self, size: int) -> dict[str, np.ndarray]:
        if not isinstance(self.severity, ParametricPosterior):
            raise InferenceError(ErrorCode.NOT_IMPLEMENTED, "Severity posterior cannot sample parameters")
        params = {"p": self.frequency.sample_parameters(size)["p"]}
        params.update({f"severity_{k}": v for k, v in self.severity.sample_parameters(size).items()})
        return params

    def point_parameters(self) -> dict[str, np.ndarray]:
        params = {"p": self.frequency.point_parameters()["p"]}
        params.update({f"severity_{k}": v for k, v in self.severity.point_parameters().items()})
        return params

    def log_likelihood(self, x: Any, params: dict[str, np.ndarray]) -> np.ndarray:
        """log(1 - p) for zero values, log p + severity log-likelihood otherwise."""
        x = np.asarray(x, dtype=float)
        p = np.clip(np.asarray(params["p"], dtype=float), 1e-300, 1 - 1e-16)
        severity_params = {
            k[len("severity_"):]: v for k, v in params.items() if k.startswith("severity_")
        }
        out = np.empty((len(x), len(p)))
        nonzero = x != 0
        out[~nonzero] = np.log1p(-p)[None, :]
        if np.any(nonzero):
            out[nonzero] = np.log(p)[None, :] + self.severity.log_likelihood(x[nonzero], severity_params)
        return out

    def __repr__(self) -> str:
        return f"CompoundPosterior(frequency={self.frequency!r}, severity={self.severity!r})"


# ======================================================================
# Engine
# ======================================================================


class CompoundInferenceEngine(InferenceEngine):
    name = "CompoundInferenceEngine"
    algorithm = "conjugate"
    capabilities = EngineCapabilities(
        structures=frozenset({"compound"}),
        families=frozenset({"lognormal", "normal", "gamma"}),
        data_types=frozenset({"user-level"}),
        min_components=1,
        max_components=settings.MAX_COMPONENTS,
        exact=False,
        fast=True,
        stable=True,
    )

    def validate_standard_data(self, data: StandardData, config: ModelConfig) -> None:
        if not data.is_user_level:
            raise InferenceError(
                ErrorCode.INVALID_DATA,
                "CompoundInferenceEngine requires user-level data",
                {"data_type": data.type},
            )
        if config.structure != "compound":
            raise InferenceError(
                ErrorCode.MODEL_MISMATCH,
                "CompoundInferenceEngine requires compound model structure",
                {"structure": config.structure},
            )
        if config.value_type is None:
            raise InferenceError(
                ErrorCode.INVALID_CONFIG,
                "Compound model requires value_type to be specified",
                {"config": config.model_dump()},
            )

    def fit_sync(
        self,
        data: StandardData,
        config: ModelConfig,
        options: FitOptions,
    ) -> InferenceResult:
        started = time.perf_counter()
        self.validate_standard_data(data, config)
        value_engine = self.select_value_engine(config)

        freq_options, value_options = self._split_options(options)
        conversion_data, value_data = self.split(data)

        freq_result = BetaBinomialConjugate().fit_sync(conversion_data, BETA_CONFIG, freq_options)
        value_config = ModelConfig(
            structure="simple",
            type=config.value_type,
            components=config.value_components,
        )
        value_result = value_engine.fit_sync(value_data, value_config, value_options)

        posterior = CompoundPosterior(
            freq_result.posterior,
            value_result.posterior,
            n_observations=data.n,
            rng=options.rng(),
        )
        value_diag = value_result.diagnostics
        result = self.build_result(
            posterior,
            started,
            data,
            config,
            model_type=f"compound-beta-{config.value_type}",
            converged=freq_result.diagnostics.converged and value_diag.converged,
            iterations=max(freq_result.diagnostics.iterations, value_diag.iterations),
            warnings=value_result.metadata.warnings,
            final_elbo=value_diag.final_elbo,
            elbo_history=value_diag.elbo_history,
            likelihood_history=value_diag.likelihood_history,
            requested_components=value_diag.requested_components,
            actual_components=value_diag.actual_components,
            fallback_reason=value_diag.fallback_reason,
        )
        return replace(result, metadata=replace(result.metadata, algorithm=value_engine.algorithm))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def split(data: StandardData) -> tuple[StandardData, StandardData]:
        """Return (binomial conversion data, positive converted values)."""
        converted = int(np.sum(data.converted()))
        conversion_data = StandardData.from_binomial(converted, data.n)
        positive = data.positive_converted_values()
        positive = positive[np.isfinite(positive)]
        if len(positive) == 0:
            raise InferenceError(ErrorCode.INSUFFICIENT_DATA, "No positive values found in converted users")
        return conversion_data, StandardData.from_continuous(positive)

    @staticmethod
    def select_value_engine(config: ModelConfig) -> InferenceEngine:
        multi = config.value_components > 1
        if config.value_type == "lognormal":
            return LogNormalMixtureVBEM() if multi else LogNormalConjugate()
        if config.value_type == "normal":
            return NormalMixtureVBEM() if multi else NormalConjugate()
        if config.value_type == "gamma":
            raise InferenceError(ErrorCode.NOT_IMPLEMENTED, "Gamma value distribution not yet implemented")
        raise InferenceError(
            ErrorCode.INVALID_CONFIG,
            f"Unsupported value type: {config.value_type}",
            {"value_type": config.value_type},
        )

    @staticmethod
    def _split_options(options: FitOptions) -> tuple[FitOptions, FitOptions]:
        """Route each prior to the part it belongs to and give each part its own seed."""
        prior = options.prior_params
        if prior is not None and prior.type not in ("beta", NIG_PRIOR_TYPE):
            raise InferenceError(
                ErrorCode.INVALID_PRIOR,
                f"Compound models take a beta or {NIG_PRIOR_TYPE} prior, got {prior.type!r}",
                {"prior_type": prior.type},
            )
        freq_prior = prior if prior is not None and prior.type == "beta" else None
        value_prior = prior if prior is not None and prior.type == NIG_PRIOR_TYPE else None
        freq_seed = value_seed = None
        if options.seed is not None:
            freq_seed, value_seed = (
                int(s) for s in np.random.SeedSequence(options.seed).generate_state(2)
            )
        return (
            options.model_copy(update={"prior_params": freq_prior, "seed": freq_seed}),
            options.model_copy(update={"prior_params": value_prior, "seed": value_seed}),
        )
