from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter oracle (optional; without a key the oracle-gated paths degrade)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    oracle_model: str = "openai/gpt-4o-mini"
    oracle_max_tokens: int = 600
    oracle_timeout_seconds: float = 20.0

    # Storage
    data_dir: str = ".sidecar"
    database_filename: str = "research.db"
    chroma_persist_dir: str = ".sidecar/chroma"
    semantic_dedup_enabled: bool = True
    data_retention_days: float = 30.0

    # Session tracking
    session_window_size: int = 100
    session_timeout_seconds: float = 3600.0
    session_prune_interval_seconds: float = 300.0
    tool_output_max_chars: int = 2000
    tool_input_max_chars: int = 500
    session_max_errors: int = 20
    stuck_threshold: int = 8
    strategic_threshold: int = 15
    strategic_min_interval_seconds: float = 120.0

    # Trigger decisions
    autonomous_research_enabled: bool = True
    trigger_cooldown_seconds: float = 30.0
    min_confidence_direct: float = 0.4
    min_confidence_alternative: float = 0.6
    min_confidence_validation: float = 0.5

    # Deduplication
    history_similarity_threshold: float = 0.5
    session_similarity_threshold: float = 0.6
    inflight_similarity_threshold: float = 0.4
    recent_research_window_seconds: float = 3600.0
    semantic_similarity_threshold: float = 0.8
    semantic_window_seconds: float = 3600.0

    # Task queue
    max_concurrent_tasks: int = 2
    max_queue_size: int = 20
    retry_attempts: int = 2
    retry_backoff_seconds: float = 1.0
    queue_reuse_window_seconds: float = 300.0
    quick_target_seconds: float = 15.0
    quick_timeout_seconds: float = 90.0
    medium_target_seconds: float = 30.0
    medium_timeout_seconds: float = 180.0
    deep_target_seconds: float = 60.0
    deep_timeout_seconds: float = 300.0

    # Research execution
    search_adapters: str = ""
    search_max_parallel_requests: int = 4
    fetch_max_parallel_requests: int = 3
    page_content_max_chars: int = 8000
    fetch_timeout_seconds: float = 30.0
    fetch_max_length: int = 12000

    # Injection budget
    max_injections_per_session: int = 5
    max_tokens_per_injection: int = 150
    max_total_tokens_per_session: int = 500
    injection_cooldown_seconds: float = 30.0
    min_candidate_score: float = 0.5
    relevance_threshold: float = 0.7
    static_score_gate_enabled: bool = True
    relevance_gate_enabled: bool = True

    # Meta-learning
    feedback_delay_seconds: float = 60.0
    query_history_limit: int = 1000

    # URL cache TTLs
    url_cache_default_ttl_hours: float = 24.0
    url_cache_docs_ttl_hours: float = 168.0
    url_cache_reference_ttl_hours: float = 72.0
    url_cache_news_ttl_hours: float = 6.0

    # App
    host: str = "127.0.0.1"
    port: int = 3200
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / self.database_filename

    @property
    def log_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @property
    def search_adapter_paths(self) -> list[str]:
        return [p.strip() for p in self.search_adapters.split(",") if p.strip()]

    def depth_target(self, depth: str) -> float:
        return float(getattr(self, f"{depth}_target_seconds"))

    def depth_timeout(self, depth: str) -> float:
        return float(getattr(self, f"{depth}_timeout_seconds"))


settings = Settings()
