"""abinfer Bayesian inference engines.

Public API:
- BetaBinomialConjugate: Conjugate Beta-Binomial model for conversion rates
- NormalConjugate / LogNormalConjugate: Normal-Inverse-Gamma conjugate models
- NormalMixtureVBEM / LogNormalMixtureVBEM: Variational Bayes EM mixtures
- CompoundInferenceEngine: Conversion frequency x value severity
- DirichletPosterior: Posterior over mixture weights
- compare_models / compare_models_bic: WAIC and BIC model selection
- ModelRouter: Capability-based routing from data to engine
- ModelComparison: Fit-and-rank helpers for named configurations
- InferenceService: Async orchestrator that ties everything together
"""

from abinfer.stats.base import EngineCapabilities, InferenceEngine
from abinfer.stats.bayesian import BetaBinomialConjugate, BetaPosterior
from abinfer.stats.comparison import ComparisonResult, ModelComparison, NamedModel, RankedModel
from abinfer.stats.compound import CompoundInferenceEngine, CompoundPosterior
from abinfer.stats.dirichlet import DirichletPosterior
from abinfer.stats.engine import Analysis, InferenceService
from abinfer.stats.mixture import (
    LogNormalMixtureVBEM,
    MixturePosterior,
    MixtureVBEM,
    NormalMixtureVBEM,
)
from abinfer.stats.normal import (
    LogNormalConjugate,
    LogNormalPosterior,
    NormalConjugate,
    NormalPosterior,
    SufficientStats,
)
from abinfer.stats.posterior import (
    Diagnostics,
    InferenceResult,
    ParametricPosterior,
    Posterior,
    PosteriorCapabilities,
    ResultMetadata,
    hdi_from_samples,
)
from abinfer.stats.priors import (
    NormalInverseGamma,
    historical_beta_prior,
    user_elicited_prior,
)
from abinfer.stats.router import ComponentComparison, ModelRouter, RouteResult
from abinfer.stats.selection import (
    ModelCandidate,
    ModelScore,
    compare_models,
    compare_models_bic,
    compare_models_dic,
    compute_bic,
    compute_waic,
)

__all__ = [
    "EngineCapabilities",
    "InferenceEngine",
    "BetaBinomialConjugate",
    "BetaPosterior",
    "NormalConjugate",
    "NormalPosterior",
    "LogNormalConjugate",
    "LogNormalPosterior",
    "SufficientStats",
    "MixtureVBEM",
    "NormalMixtureVBEM",
    "LogNormalMixtureVBEM",
    "MixturePosterior",
    "CompoundInferenceEngine",
    "CompoundPosterior",
    "DirichletPosterior",
    "Posterior",
    "ParametricPosterior",
    "PosteriorCapabilities",
    "Diagnostics",
    "ResultMetadata",
    "InferenceResult",
    "hdi_from_samples",
    "NormalInverseGamma",
    "user_elicited_prior",
    "historical_beta_prior",
    "ModelCandidate",
    "ModelScore",
    "compute_waic",
    "compute_bic",
    "compare_models",
    "compare_models_bic",
    "compare_models_dic",
    "ModelRouter",
    "RouteResult",
    "ComponentComparison",
    "ModelComparison",
    "NamedModel",
    "RankedModel",
    "ComparisonResult",
    "InferenceService",
    "Analysis",
]
