"""
Copilot Server Settings Configuration
Environment-driven configuration for the copilot search pipeline and its
performance layer (executor, deduplicator, adaptive timeouts, caches)
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class CopilotSettings(BaseSettings):
    """Configuration settings for the copilot server"""

    # Server Configuration
    host: str = "localhost"
    port: int = 8010
    debug: bool = False
    environment: str = "development"

    # External collaborators
    searxng_url: str = "http://localhost:8888"
    search_language: str = "en"
    ollama_url: str = "http://localhost:11434"
    chat_model: str = "qwen3:8b"
    embedding_model: str = "mxbai-embed-large"
    http_timeout_seconds: float = 60.0

    # Copilot pipeline
    max_queries: int = Field(default=5, ge=1, le=5)
    max_sources_per_query: int = Field(default=5, ge=1)
    rerank_threshold: float = 0.7
    enable_page_extraction: bool = False
    max_extraction_urls: int = Field(default=10, ge=1)
    max_reranked_documents: int = Field(default=15, ge=1)
    extraction_content_chars: int = Field(default=4000, ge=100)

    # Parallel executor
    executor_max_concurrency: int = Field(default=8, ge=1)
    executor_default_timeout_ms: float = 30000
    executor_retry_attempts: int = Field(default=2, ge=1)
    executor_retry_delay_ms: float = 1000

    # Request deduplication
    dedup_enabled: bool = True
    dedup_max_pending_age_s: float = 30.0
    dedup_cleanup_interval_s: float = 15.0

    # Adaptive timeouts
    timeout_base_ms: float = 30000
    timeout_min_ms: float = 10000
    timeout_max_ms: float = 90000
    timeout_adaptive_enabled: bool = True
    timeout_history_size: int = Field(default=50, ge=1)

    # Result caches (answers: short-lived, documents: long-lived)
    answer_cache_max_size: int = Field(default=500, ge=1)
    answer_cache_ttl_s: float = 15 * 60
    document_cache_max_size: int = Field(default=1000, ge=1)
    document_cache_ttl_s: float = 60 * 60
    cache_cleanup_interval_s: float = 5 * 60

    # Monitoring
    log_level: str = "INFO"
    log_path: str = "./logs"
    structured_logging: bool = True

    @field_validator("rerank_threshold")
    @classmethod
    def validate_threshold(cls, v):
        """Similarity threshold must be a cosine score"""
        if not 0.0 <= v <= 1.0:
            raise ValueError("rerank_threshold must be between 0 and 1")
        return v

    @field_validator("timeout_max_ms")
    @classmethod
    def validate_timeout_bounds(cls, v, info):
        """Ensure the adaptive timeout window is not inverted"""
        minimum = info.data.get("timeout_min_ms")
        if minimum is not None and v < minimum:
            raise ValueError("timeout_max_ms must be >= timeout_min_ms")
        return v

    model_config = {
        "env_file": ".env",
        "env_prefix": "COPILOT_",
        "case_sensitive": False
    }


# Global settings instance
settings = CopilotSettings()


def get_settings() -> CopilotSettings:
    """Get settings instance (for dependency injection)"""
    return settings


if __name__ == "__main__":
    print("Copilot Configuration:")
    print(f"SearXNG URL: {settings.searxng_url}")
    print(f"Ollama URL: {settings.ollama_url} (chat={settings.chat_model}, embed={settings.embedding_model})")
    print(f"Max queries: {settings.max_queries}, sources/query: {settings.max_sources_per_query}")
    print(f"Page extraction: {settings.enable_page_extraction}")
    print(f"Executor concurrency: {settings.executor_max_concurrency}")
