"""
Configuration settings for the narrative engine
"""
from typing import List, Optional, Union
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings"""

    # Project Info
    PROJECT_NAME: str = "Narrative Engine API"
    VERSION: str = "1.0.0"
    APP_ENV: str = Field(default="development")
    DEBUG: bool = Field(default=True)

    # API Settings
    API_V1_PREFIX: str = "/api/v1"

    # CORS
    CORS_ORIGINS: Union[str, List[str]] = Field(
        default="http://localhost:3000,http://localhost"
    )

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        elif isinstance(v, list):
            return v
        return ["http://localhost:3000", "http://localhost"]

    # Database
    DATABASE_URL: str = Field(...)

    # ChromaDB
    CHROMA_HOST: Optional[str] = Field(default=None)
    CHROMA_PORT: Optional[int] = Field(default=None)
    CHROMA_PERSIST_DIR: str = Field(default="./chromadb")
    CHROMA_COLLECTION_PREFIX: str = Field(default="novel")
    CHROMA_ANONYMIZED_TELEMETRY: bool = Field(default=False)
    CHROMA_CREATE_RETRIES: int = Field(default=3)

    # DeepSeek API
    DEEPSEEK_API_KEY: str = Field(...)
    DEEPSEEK_API_BASE: str = "https://api.deepseek.com/v1"
    DEEPSEEK_MODEL: str = "deepseek-chat"
    DEEPSEEK_TIMEOUT: float = Field(default=300.0)
    LLM_TRANSPORT_RETRIES: int = Field(default=2)
    LLM_TRANSPORT_BACKOFF: float = Field(default=1.0)

    # Embeddings (OpenAI-compatible endpoint)
    EMBEDDING_API_BASE: Optional[str] = Field(default=None)
    EMBEDDING_API_KEY: Optional[str] = Field(default=None)
    EMBEDDING_MODEL: str = "text-embedding-3-small"

    # RAG Settings
    RAG_TOP_K: int = 5
    RAG_SCENE_TOP_K: int = 3

    # Outline planning
    OUTLINE_EXPAND_THRESHOLD: int = Field(default=3)
    OUTLINE_EXPAND_CHUNK_SIZE: int = Field(default=7)
    OUTLINE_RECENT_ENTRIES: int = Field(default=5)
    OUTLINE_EXPAND_MAX_TOKENS: int = Field(default=4000)

    # Chapter generation defaults (per-novel settings take precedence)
    DEFAULT_SCENES_PER_CHAPTER: int = Field(default=3)
    DEFAULT_TEMPERATURE: float = Field(default=0.7)
    DEFAULT_MAX_TOKENS: int = Field(default=4096)
    CHAPTER_WORD_TARGET: int = Field(default=4000)
    CHAPTER_WORD_TOLERANCE: float = Field(default=0.15)
    WRITE_TOKENS_PER_WORD: float = Field(default=1.5)
    PREVIOUS_CHAPTER_TAIL_CHARS: int = Field(default=1500)
    DECOMPOSE_MAX_TOKENS: int = Field(default=2000)

    # Retry policy per call site
    DECOMPOSE_MAX_ATTEMPTS: int = Field(default=3)
    DECOMPOSE_RETRY_DELAY: float = Field(default=1.0)
    CHAPTER_MAX_ATTEMPTS: int = Field(default=6)
    CHAPTER_RETRY_DELAY: float = Field(default=2.0)
    WORLD_EVOLUTION_RETRIES: int = Field(default=3)
    WORLD_EVOLUTION_BACKOFF: float = Field(default=1.0)
    RECONCILIATION_RETRIES: int = Field(default=1)

    # Reconciliation cycle
    RECONCILIATION_BATCH_SIZE: int = Field(default=5)
    RECONCILIATION_OUTLINE_MAX_CHARS: int = Field(default=6000)
    RECONCILIATION_CHAPTER_MAX_CHARS: int = Field(default=20000)
    DRIFT_MAX_TOKENS: int = Field(default=3000)
    RECONCILIATION_MAX_TOKENS: int = Field(default=6000)
    RECONCILIATION_TEMPERATURE: float = Field(default=0.5)

    # Observability
    STRUCTURED_LOGGING_ENABLED: bool = Field(default=False)
    METRICS_ENABLED: bool = Field(default=True)
    METRICS_PATH: str = Field(default="/metrics")
    BACKGROUND_DRAIN_TIMEOUT: float = Field(default=30.0)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


# Create settings instance
settings = Settings()  # type: ignore[call-arg]
