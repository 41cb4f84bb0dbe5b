from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # SearXNG federated search
    searxng_base_url: str = "http://localhost:8080"
    searxng_timeout_seconds: float = 30.0
    searxng_language: str = "en"
    searxng_safesearch: int = 1  # 0 off | 1 moderate | 2 strict

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout_seconds: float = 60.0

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter: bool = True

    # Agents + coordination
    agent_timeout_seconds: float = 30.0
    agent_query_batch_size: int = 3
    min_general_queries: int = 3
    min_total_results: int = 5

    # Research tree
    max_depth: int = 3
    max_subtopics_per_level: int = 5
    research_history_limit: int = 100

    # Scoring
    scoring_diversity_top_k: int = 10

    # Result cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 7 * 24 * 3600
    cache_max_entries: int = 512

    # Progress broadcasting
    progress_queue_size: int = 100
    progress_queue_policy: str = "drop_oldest"  # drop_oldest | block
    progress_history_limit: int = 1000
    heartbeat_interval_seconds: float = 15.0

    # Document index
    document_index_enabled: bool = False
    chroma_persist_dir: str = ".cache/chroma"
    chroma_collection: str = "topicmesh_research"

    # OpenRouter (optional, used for summary synthesis)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = ""
    default_model: str = "openai/gpt-4o-mini"
    synthesis_enabled: bool = False
    synthesis_max_tokens: int = 800
    synthesis_temperature: float = 0.3

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
