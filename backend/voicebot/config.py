"""
Configuration management using Pydantic Settings.
Loads all environment variables with validation.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses .env file in development, environment variables in production.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Keys
    openai_api_key: str = Field(
        ...,
        description="OpenAI API key for transcription, generation and embeddings"
    )
    openai_organization_id: Optional[str] = Field(
        default=None,
        description="OpenAI organization ID"
    )
    elevenlabs_api_key: str = Field(
        ...,
        description="ElevenLabs API key for text-to-speech"
    )
    elevenlabs_voice_id: str = Field(
        default="21m00Tcm4TlvDq8ikWAM",
        description="ElevenLabs voice ID (default: Rachel)"
    )
    elevenlabs_model: str = Field(
        default="eleven_turbo_v2_5",
        description="ElevenLabs synthesis model"
    )

    # Models
    stt_model: str = Field(
        default="whisper-1",
        description="OpenAI transcription model"
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI chat model used for bot replies"
    )
    llm_max_tokens: int = Field(
        default=150,
        ge=16,
        le=4096,
        description="Maximum completion tokens per reply"
    )
    llm_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for bot replies"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model for retrieval queries"
    )

    # Pinecone (RAG)
    pinecone_api_key: str = Field(
        ...,
        description="Pinecone API key for vector database"
    )
    pinecone_environment: str = Field(
        default="us-east-1",
        description="Pinecone environment/region"
    )
    pinecone_index_name: str = Field(
        default="voicebot-documents",
        description="Pinecone index name for document chunks"
    )
    pinecone_dimension: int = Field(
        default=1536,
        description="Embedding dimension (1536 for text-embedding-3-small)"
    )

    # Retrieval
    rag_top_k: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Number of chunks to retrieve per turn"
    )
    rag_min_similarity: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Minimum similarity score for retrieval"
    )
    rag_context_max_chars: int = Field(
        default=3000,
        ge=100,
        description="Maximum characters of retrieved context"
    )
    rag_fallback_max_chars: int = Field(
        default=2000,
        ge=100,
        description="Maximum characters of raw document text used when retrieval fails"
    )
    generation_uses_context: bool = Field(
        default=False,
        description="Retrieve before generating and pass the context to the model"
    )

    # Speech synthesis scheduling
    tts_words_per_chunk: int = Field(
        default=15,
        ge=1,
        le=200,
        description="Words per synthesis chunk"
    )
    tts_stagger_ms: int = Field(
        default=50,
        ge=0,
        le=2000,
        description="Dispatch delay added per chunk index"
    )

    # Response cache
    response_cache_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum cached bot responses"
    )

    # Voice connections
    idle_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Close connections with no activity for this long"
    )
    idle_sweep_interval_seconds: int = Field(
        default=60,
        ge=1,
        description="Interval of the idle connection sweep"
    )
    silence_timeout_ms: int = Field(
        default=0,
        ge=0,
        le=10000,
        description="Auto-stop after this much audio silence (0 disables)"
    )
    debug_audio_enabled: bool = Field(
        default=False,
        description="Write received audio chunks to disk for debugging"
    )

    # Usage ledger
    ledger_flush_delay_ms: int = Field(
        default=5000,
        ge=0,
        description="Debounce window for ledger flushes"
    )

    # Storage
    storage_dir: str = Field(
        default="storage",
        description="Root directory for audio, logs and debug artifacts"
    )

    # Database
    database_url: str = Field(
        ...,
        description="PostgreSQL connection URL with asyncpg driver"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, or production"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    # Server Settings
    host: str = Field(
        default="0.0.0.0",
        description="Server host address"
    )
    port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="Server port"
    )

    # CORS
    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Frontend URL for CORS"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"


# Global settings instance
settings = Settings()
