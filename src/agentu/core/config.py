"""Configuration management for the AgentU orchestration core.

Uses Pydantic Settings for type-safe, environment-based configuration.
"""

from typing import Any

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv(override=False)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # App configuration
    app_name: str = Field("AgentU", alias="AGENTU_APP_NAME")
    debug: bool = Field(False, alias="AGENTU_DEBUG")
    version: str = Field("0.1.0", alias="AGENTU_APP_VERSION")
    environment: str = Field("development", alias="AGENTU_ENVIRONMENT")

    # Database configuration
    # Leave AGENTU_DATABASE_URL unset to run against the in-memory store backend.
    database_url: str | None = Field(None, alias="AGENTU_DATABASE_URL")
    database_pool_size: int = 20
    database_max_overflow: int = 30
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Redis configuration
    # Set AGENTU_REDIS_URL to share rate-limit buckets across processes; omit for in-memory.
    redis_url: str | None = Field(None, alias="AGENTU_REDIS_URL")
    redis_connection_timeout: int = Field(5, alias="AGENTU_REDIS_CONNECTION_TIMEOUT")
    redis_socket_timeout: int = Field(5, alias="AGENTU_REDIS_SOCKET_TIMEOUT")

    @property
    def redis_enabled(self) -> bool:
        """Whether Redis should be used, based on AGENTU_REDIS_URL being set."""
        return bool(self.redis_url)

    # Secret encryption (Fernet keys, urlsafe base64)
    secret_encryption_key: str | None = Field(None, alias="AGENTU_SECRET_ENCRYPTION_KEY")
    secret_encryption_key_fallback: str | None = Field(None, alias="AGENTU_SECRET_ENCRYPTION_KEY_FALLBACK")

    # Logging configuration
    log_level: str = Field("INFO", alias="AGENTU_LOG_LEVEL")
    log_format: str = Field("text", alias="AGENTU_LOG_FORMAT")
    log_dir: str | None = Field(None, alias="AGENTU_LOG_DIR")

    # Quota configuration
    default_monthly_token_limit: int = Field(1_000_000, alias="AGENTU_DEFAULT_MONTHLY_TOKEN_LIMIT")
    quota_warning_threshold: float = Field(0.8, alias="AGENTU_QUOTA_WARNING_THRESHOLD")

    # Chunking configuration
    default_chunk_size: int = Field(1000, alias="AGENTU_DEFAULT_CHUNK_SIZE")
    default_chunk_overlap: int = Field(200, alias="AGENTU_DEFAULT_CHUNK_OVERLAP")
    default_vector_dimension: int = Field(1536, alias="AGENTU_DEFAULT_VECTOR_DIMENSION")
    default_embedding_model: str = Field("text-embedding-ada-002", alias="AGENTU_DEFAULT_EMBEDDING_MODEL")

    # Embedding backend configuration
    embedding_backend: str = Field("openai", alias="AGENTU_EMBEDDING_BACKEND")
    embedding_api_base_url: str = Field("https://api.openai.com", alias="AGENTU_EMBEDDING_API_BASE_URL")
    embedding_api_key: str | None = Field(None, alias="AGENTU_EMBEDDING_API_KEY")
    embedding_batch_size: int = Field(32, alias="AGENTU_EMBEDDING_BATCH_SIZE")
    embedding_timeout: int = Field(30, alias="AGENTU_EMBEDDING_TIMEOUT")

    # Retrieval configuration
    rag_max_results_default: int = Field(5, alias="AGENTU_RAG_MAX_RESULTS")
    rag_context_budget: int = Field(4000, alias="AGENTU_RAG_CONTEXT_BUDGET")
    rag_context_budget_unit: str = Field("chars", alias="AGENTU_RAG_CONTEXT_BUDGET_UNIT")

    # LLM configuration
    llm_temperature_default: float = Field(0.7, alias="AGENTU_LLM_TEMPERATURE_DEFAULT")
    llm_max_tokens_default: int = Field(1024, alias="AGENTU_LLM_MAX_TOKENS_DEFAULT")
    llm_retry_base_delay: float = Field(0.5, alias="AGENTU_LLM_RETRY_BASE_DELAY")
    llm_retry_max_delay: float = Field(4.0, alias="AGENTU_LLM_RETRY_MAX_DELAY")
    llm_stream_read_timeout: int = Field(120, alias="AGENTU_LLM_STREAM_READ_TIMEOUT")

    # Rate limiting (per credential and provider)
    enable_rate_limiting: bool = Field(True, alias="AGENTU_ENABLE_RATE_LIMITING")
    llm_rate_limit_requests_per_minute: int = Field(60, alias="AGENTU_LLM_RATE_LIMIT_RPM")
    llm_rate_limit_tokens_per_minute: int = Field(100_000, alias="AGENTU_LLM_RATE_LIMIT_TPM")
    llm_max_concurrent_requests: int = Field(0, alias="AGENTU_LLM_MAX_CONCURRENT_REQUESTS")

    # Conversation configuration
    conversation_history_limit: int = Field(50, alias="AGENTU_CONVERSATION_HISTORY_LIMIT")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("Database URL must be PostgreSQL (asyncpg) or SQLite (aiosqlite)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["text", "json"]
        if v.lower() not in valid_formats:
            raise ValueError(f"Log format must be one of: {valid_formats}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment setting."""
        valid_environments = ["development", "staging", "production"]
        if v.lower() not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v.lower()

    @field_validator("quota_warning_threshold")
    @classmethod
    def validate_quota_warning_threshold(cls, v: float) -> float:
        if not 0.0 < v < 1.0:
            raise ValueError("Quota warning threshold must be strictly between 0 and 1")
        return v

    @field_validator("embedding_backend")
    @classmethod
    def validate_embedding_backend(cls, v: str) -> str:
        valid_backends = ["openai", "hashing"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Embedding backend must be one of: {valid_backends}")
        return v.lower()

    @field_validator("rag_context_budget_unit")
    @classmethod
    def validate_budget_unit(cls, v: str) -> str:
        valid_units = ["chars", "tokens"]
        if v.lower() not in valid_units:
            raise ValueError(f"Context budget unit must be one of: {valid_units}")
        return v.lower()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore",  # Ignore extra environment variables instead of forbidding them
    )


def get_settings() -> Settings:
    """Build a settings instance from the environment."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance - will be created when first accessed
settings = None


def get_settings_instance() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global settings  # noqa: PLW0603
    if settings is None:
        settings = get_settings()
    return settings


class ConfigurationManager:
    """Resolves effective values through the configuration cascade.

    Generation parameters: Session -> Model -> Global Defaults.
    Chunking and retrieval: Knowledge Base -> Global Defaults.

    Services receive an instance by injection so tests can supply their own
    settings without touching the process-wide instance.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    # Generation parameter resolution
    def get_temperature(self, session: Any | None = None, model: Any | None = None) -> float:
        """Get temperature, clamped to the model's supported range when known."""
        value = getattr(session, "temperature", None)
        if value is None:
            value = getattr(model, "temperature_default", None)
        if value is None:
            value = self.settings.llm_temperature_default
        low = getattr(model, "temperature_min", None)
        high = getattr(model, "temperature_max", None)
        if low is not None:
            value = max(float(low), value)
        if high is not None:
            value = min(float(high), value)
        return float(value)

    def get_max_tokens(self, session: Any | None = None, model: Any | None = None) -> int:
        """Get max output tokens; never above the model's own ceiling."""
        value = getattr(session, "max_tokens", None) or self.settings.llm_max_tokens_default
        model_cap = getattr(model, "max_tokens", None)
        if model_cap:
            value = min(int(model_cap), int(value))
        return int(value)

    # Knowledge base resolution
    def get_chunk_size(self, kb_config: dict[str, Any] | None = None) -> int:
        if kb_config and kb_config.get("chunk_size") is not None:
            return int(kb_config["chunk_size"])
        return self.settings.default_chunk_size

    def get_chunk_overlap(self, kb_config: dict[str, Any] | None = None) -> int:
        if kb_config and kb_config.get("chunk_overlap") is not None:
            return int(kb_config["chunk_overlap"])
        return self.settings.default_chunk_overlap

    def get_rag_max_results(self, requested: int | None = None) -> int:
        if requested is not None and requested > 0:
            return int(requested)
        return self.settings.rag_max_results_default

    def get_context_budget(self) -> tuple[int, str]:
        """Return (budget, unit) for retrieved-context assembly."""
        return self.settings.rag_context_budget, self.settings.rag_context_budget_unit


_config_manager: ConfigurationManager | None = None


def get_config_manager() -> ConfigurationManager:
    """Get the process-wide ConfigurationManager."""
    global _config_manager  # noqa: PLW0603
    if _config_manager is None:
        _config_manager = ConfigurationManager(get_settings_instance())
    return _config_manager
