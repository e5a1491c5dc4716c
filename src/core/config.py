"""Application configuration using Pydantic Settings.

All configuration is loaded from environment variables.
See .env.example for available settings.
"""

import json
from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_MIME_TYPES = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "text/markdown",
    "text/x-markdown",
]

DEFAULT_MODEL_ROUTING = {
    "rag": "gpt-4o-mini",
    "simple": "gpt-4o-mini",
    "complex": "gpt-4o",
    "attributed": "gpt-4o",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ============================================
    # Application
    # ============================================
    app_name: str = "Knowledge RAG Service"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = "/api/v1"
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    # ============================================
    # Database (PostgreSQL)
    # ============================================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_db: str = "knowledge"

    # Explicit DATABASE_URL takes precedence if set
    database_url: str | None = None

    @property
    def get_database_url(self) -> str:
        """Get database URL - explicit or constructed from components."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # ============================================
    # Redis (embedding cache)
    # ============================================
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_auth: str = ""

    @property
    def redis_url(self) -> str:
        """Construct Redis URL, with auth when configured."""
        if self.redis_auth:
            return f"redis://:{self.redis_auth}@{self.redis_host}:{self.redis_port}/0"
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    # ============================================
    # Qdrant (Vector Database)
    # ============================================
    qdrant_url: str = "http://localhost:6333"
    qdrant_collection: str = "knowledge"
    qdrant_api_key: str | None = None
    qdrant_timeout_seconds: int = 60
    vector_upsert_batch_size: int = Field(default=100, ge=1, le=200)

    # ============================================
    # MinIO (Blob Storage)
    # ============================================
    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_secure: bool = False
    minio_bucket: str = "knowledge-files"
    minio_public_url: str = "http://localhost:9000"

    # ============================================
    # Azure OpenAI
    # ============================================
    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    azure_openai_api_version: str = "2025-04-01-preview"

    # Use-case routing (JSON: use case -> deployment name)
    generation_model_routing: str = json.dumps(DEFAULT_MODEL_ROUTING)

    @field_validator("generation_model_routing", mode="before")
    @classmethod
    def parse_model_routing(cls, v: Any) -> str:
        """Ensure model routing is valid JSON string."""
        if isinstance(v, dict):
            return json.dumps(v)
        return v or json.dumps(DEFAULT_MODEL_ROUTING)

    def get_model_routing(self) -> dict[str, str]:
        """Parse model routing config as dict, filling gaps from the defaults."""
        try:
            routing = json.loads(self.generation_model_routing)
        except json.JSONDecodeError:
            routing = {}
        return {**DEFAULT_MODEL_ROUTING, **routing}

    # ============================================
    # Generation retry policy
    # ============================================
    generation_max_retries: int = Field(default=3, ge=0)
    generation_retry_delay_ms: int = Field(default=1000, ge=0)
    generation_timeout_seconds: float = Field(default=30.0, gt=0)
    generation_temperature: float = 0.7
    generation_max_output_tokens: int = 4096

    # ============================================
    # Embeddings
    # ============================================
    embedding_model: str = Field(
        default="text-embedding-3-small", description="Azure OpenAI embedding model name"
    )
    embedding_dimensions: int = Field(
        default=1536, description="Embedding vector dimensions (must match model)"
    )
    embedding_cache_enabled: bool = True
    embedding_cache_ttl: int = 7200

    # ============================================
    # Upload limits
    # ============================================
    max_files_per_request: int = 20
    max_file_size_bytes: int = 1024 * 1024 * 1024
    max_field_size_bytes: int = 1024 * 1024
    max_fields: int = 10
    allowed_mime_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))

    # Upload session arena
    session_sweep_interval_seconds: int = 10 * 60
    session_max_age_seconds: int = 30 * 60
    session_release_grace_seconds: int = 5 * 60

    # ============================================
    # Chunking
    # ============================================
    default_chunk_size: int = 5000
    default_chunk_overlap: int = 200
    min_extracted_chars: int = 10

    # ============================================
    # RAG
    # ============================================
    rag_top_k: int = 5
    rag_score_threshold: float = 0.7
    rag_max_context_tokens: int = 30000
    rag_system_prompt: str = "You are a helpful AI assistant."

    # ============================================
    # Langfuse (Observability)
    # ============================================
    langfuse_host: str = "http://localhost:3000"
    langfuse_public_key: str = ""
    langfuse_secret_key: str = ""

    # ============================================
    # Logging
    # ============================================
    log_level: str = "INFO"
    log_format: str = "console"  # "json" or "console"

    # ============================================
    # Development Security (DANGER ZONE)
    # ============================================
    # Both must hold for the bypass header to be honoured:
    # environment == "development" and dev_bypass_enabled == True
    dev_bypass_enabled: bool = Field(
        default=False,
        description="Explicitly enable X-Dev-Bypass header. Requires environment=development.",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
