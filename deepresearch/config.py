from __future__ import annotations

from dataclasses import dataclass, field

from pydantic_settings import BaseSettings

# Perplexity Sonar pricing (approximate, USD per query)
COST_PER_QUERY: dict[str, float] = {
    "sonar": 0.005,
    "sonar-pro": 0.02,
}


class Settings(BaseSettings):
    # OpenRouter (classification, planning, synthesis)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "anthropic/claude-sonnet-4.5"
    openrouter_model: str = ""
    classifier_model: str = ""  # optional override for LLM classification only
    planner_model: str = ""  # optional override for plan generation only
    synthesis_model: str = ""  # optional override for synthesis only

    # Perplexity (search)
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_timeout_s: float = 60.0

    # Research pipeline budgets
    research_max_rounds: int = 2
    research_max_queries_per_round: int = 5
    research_max_total_cost: float = 0.5
    research_parallel_searches: int = 3
    research_gap_threshold: float = 0.6
    research_timeout_ms: int = 120000
    research_max_retries: int = 2
    research_retry_base_delay_s: float = 1.0

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()


@dataclass(frozen=True, slots=True)
class ResearchConfig:
    """Pipeline constants handed to every research component.

    Components never read `settings` for these values directly, so tests can
    build a config per case.
    """

    max_rounds: int = 2
    max_queries_per_round: int = 5
    max_total_cost: float = 0.5
    parallel_searches: int = 3
    gap_threshold: float = 0.6
    timeout_ms: int = 120000
    max_retries: int = 2
    retry_base_delay_s: float = 1.0
    min_confidence_to_complete: float = 0.8
    max_gaps_to_address: int = 3
    max_sub_questions: int = 5
    min_sub_questions_complex: int = 3
    fast_path_min_confidence: float = 0.7
    llm_classification_threshold: float = 0.8
    classifier_model: str = ""
    planner_model: str = ""
    synthesis_model: str = ""
    cost_per_query: dict[str, float] = field(default_factory=lambda: dict(COST_PER_QUERY))

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ResearchConfig":
        source = source or settings
        default_model = (source.openrouter_model or source.default_model).strip()
        return cls(
            max_rounds=max(int(source.research_max_rounds), 1),
            max_queries_per_round=max(int(source.research_max_queries_per_round), 1),
            max_total_cost=float(source.research_max_total_cost),
            parallel_searches=max(int(source.research_parallel_searches), 1),
            gap_threshold=float(source.research_gap_threshold),
            timeout_ms=max(int(source.research_timeout_ms), 1000),
            max_retries=max(int(source.research_max_retries), 0),
            retry_base_delay_s=max(float(source.research_retry_base_delay_s), 0.0),
            classifier_model=source.classifier_model.strip() or default_model,
            planner_model=source.planner_model.strip() or default_model,
            synthesis_model=source.synthesis_model.strip() or default_model,
        )
