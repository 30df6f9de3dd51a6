from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "kbsync"

    # SQLite for local runs, PostgreSQL in deployments
    database_url: str = "sqlite:///./kbsync.db"

    # Generic environment (debug/prod)
    APP_ENV: str = "local"  # or "production"
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # Low-cost mode: batches run inline and the vector index mirror is off
    dev_mode: bool = False

    # Indexing pipeline
    batch_size: int = 10
    max_execution_seconds: float = 25.0
    first_batch_delay_seconds: float = 1.0
    next_batch_delay_seconds: float = 2.0
    dev_batch_pause_seconds: float = 1.0
    dev_max_batches: int = 1000

    # Change event aggregation
    max_queue_size: int = 50
    flush_interval_seconds: float = 300.0
    watched_content_types: List[str] = [
        "product",
        "page",
        "post",
        "product_cat",
        "product_tag",
        "woocommerce_settings",
    ]

    # Embeddings ("text-embedding-*" selects OpenAI, anything else FastEmbed)
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_timeout_seconds: float = 30.0
    openai_api_key: str = ""

    # External vector index mirror
    vector_index_enabled: bool = False
    vector_index_endpoint: str = ""
    vector_index_api_key: str = ""
    vector_index_timeout_seconds: float = 30.0

    # Directory content source (used by create_default_pipeline when no source is given)
    content_root: str = ""

    # Resync
    incremental_lookback_hours: int = 1

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def use_vector_index(self) -> bool:
        """Vector index mirroring is forced off in dev mode."""
        return self.vector_index_enabled and not self.dev_mode


settings = Settings()
