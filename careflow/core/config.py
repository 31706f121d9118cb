"""
Central configuration management for the CareFlow handoff pipeline.
Loads settings from environment variables and an optional .env file.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseModel):
    """Database configuration."""
    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    name: str = Field(default="careflow", description="Database name")
    user: str = Field(default="postgres", description="Database user")
    password: str = Field(default="postgres", description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Max overflow connections")
    url: Optional[str] = Field(default=None, description="Full async URL, overrides host/port/name")

    @property
    def async_url(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class RedisConfig(BaseModel):
    """Redis configuration."""
    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database")
    password: Optional[str] = Field(default=None, description="Redis password")

    @property
    def url(self) -> str:
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class JWTConfig(BaseModel):
    """JWT authentication configuration."""
    secret_key: str = Field(default="your-secret-key-change-in-production", description="JWT secret key")
    algorithm: str = Field(default="HS256", description="JWT algorithm")
    access_token_expire_minutes: int = Field(default=30, description="Token expiration in minutes")


class RateLimitConfig(BaseModel):
    """Rate limiting configuration."""
    enabled: bool = Field(default=False, description="Enforce per-user request limits")
    requests_per_minute: int = Field(default=100, description="Requests per minute per user")


class StorageConfig(BaseModel):
    """Audio blob storage configuration."""
    type: str = Field(default="local", description="Storage type")
    base_path: str = Field(default="./data/audio-notes", description="Local storage base path")
    max_file_size_mb: int = Field(default=25, description="Maximum audio upload size in MB")


class ProvidersConfig(BaseModel):
    """AI provider selection and credentials."""
    transcription: str = Field(default="openai", description="Speech-to-text provider")
    llm: str = Field(default="openai", description="Provider for translation, extraction and answers")
    embedding: str = Field(default="huggingface", description="Embedding provider")

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI-compatible base URL")
    huggingface_api_key: Optional[str] = Field(default=None, description="Hugging Face token")

    transcription_model: str = Field(default="whisper-1", description="Speech-to-text model")
    llm_model: str = Field(default="gpt-4o-mini", description="Chat model")
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2", description="Embedding model"
    )
    embedding_dimension: int = Field(default=384, description="Embedding vector length")
    embedding_query_prefix: str = Field(default="", description="Prefix applied to query-mode text")
    embedding_document_prefix: str = Field(default="", description="Prefix applied to document-mode text")

    timeout_seconds: float = Field(default=60.0, description="Timeout for a single provider call")
    max_retries: int = Field(default=3, description="Attempts for transient provider failures")
    retry_backoff_seconds: float = Field(default=1.0, description="Exponential backoff multiplier")


class PineconeConfig(BaseModel):
    """Pinecone vector database configuration."""
    api_key: str = Field(..., description="Pinecone API key")
    index_name: str = Field(default="careflow-reports", description="Index name")
    cloud: str = Field(default="aws", description="Serverless cloud")
    region: str = Field(default="us-east-1", description="Serverless region")


class VectorStoreConfig(BaseModel):
    """Retrieval index backend."""
    backend: str = Field(default="memory", description="memory or pinecone")


class PipelineConfig(BaseModel):
    """Note processing pipeline configuration."""
    max_concurrent_notes: int = Field(default=4, description="Worker pool size")
    queue_size: int = Field(default=0, description="Pending note queue bound, 0 for unbounded")
    transcription_max_attempts: int = Field(default=2, description="Transcription attempts per run")
    extraction_max_attempts: int = Field(default=2, description="Extraction attempts on malformed output")
    extraction_mode: str = Field(default="report", description="report or tasks_only")
    translation_languages: List[str] = Field(
        default_factory=lambda: ["ary", "arq", "aeb", "darija"],
        description=(
            "Detected languages that are translated before extraction. Whisper only reports "
            "\"ar\" for Arabic dialects, so \"ar\" is added when the transcription provider "
            "cannot name dialects"
        ),
    )
    translation_target_language: str = Field(default="en", description="Translation target language")
    lock_backend: str = Field(default="memory", description="memory or redis")
    lock_timeout_seconds: int = Field(default=600, description="Redis note lock expiry")
    embedding_sweep_interval_seconds: float = Field(default=0, description="Background sweep period, 0 disables")


class ChatConfig(BaseModel):
    """Patient chart Q&A configuration."""
    top_k: int = Field(default=3, description="Reports retrieved per question")
    similarity_threshold: float = Field(default=0.3, description="Minimum cosine similarity")
    max_tokens: int = Field(default=500, description="Answer length limit")
    temperature: float = Field(default=0.3, description="Answer sampling temperature")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""
    log_level: str = Field(default="INFO", description="Log level")
    service_name: str = Field(default="careflow-handoff", description="Service name")


class Settings(BaseSettings):
    """Application settings."""

    # Environment
    env: str = Field(default="development", description="Environment (development, staging, production)")
    debug: bool = Field(default=False, description="Debug mode")

    # Core
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    jwt: JWTConfig = Field(default_factory=JWTConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    # AI Providers
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)

    # Retrieval
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    pinecone: Optional[PineconeConfig] = Field(default=None, description="Pinecone configuration")

    # Storage
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Pipeline
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)

    # Observability
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    class Config:
        env_prefix = "CAREFLOW_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
