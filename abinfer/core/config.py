from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "abinfer"

    # VBEM
    MAX_ITERATIONS: int = 100
    VBEM_TOLERANCE: float = 1e-6
    ELBO_DECREASE_TOLERANCE: float = 1e-10
    DIRICHLET_PRIOR_ALPHA: float = 1.0
    MIN_POINTS_PER_COMPONENT: int = 10
    MAX_COMPONENTS: int = 4

    # Posterior summaries
    MC_SAMPLE_SIZE: int = 10_000
    CREDIBLE_LEVEL: float = 0.95

    # Model selection
    WAIC_MAX_POINTS: int = 1000
    COMPARISON_POINTS_PER_COMPONENT: int = 30

    # Routing
    ROUTER_MIN_MIXTURE_POINTS: int = 50

    model_config = {"env_prefix": "ABINFER_", "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
