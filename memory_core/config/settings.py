from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import FrozenSet, Optional


DEFAULT_SINGLE_VALUED_PREDICATES = (
    "works_at,lives_in,job_title,reports_to,married_to,dating,"
    "age,birthday,company,role,location,employer"
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables can come from:
    - docker-compose.yml environment section
    - .env file (for secrets like API keys)
    - System environment

    Variable names follow docker-compose conventions:
    - POSTGRES_HOST, POSTGRES_PORT, etc. (for database)
    - REDIS_URL (for the maintenance queue)
    - OPENAI_API_KEY (for classification, embeddings and inferences)
    - MEMORY_* for engine tunables
    """

    # Environment
    environment: str = "development"

    # PostgreSQL (from docker-compose)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "memory_user"
    postgres_password: str = "memory_pass"
    postgres_db: str = "memory"
    database_url: Optional[str] = Field(default=None, validate_default=True)

    # OpenAI (from .env)
    openai_api_key: str = ""
    openai_chat_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_timeout_seconds: float = 30.0

    # Redis
    redis_url: str = "redis://localhost:6379"
    maintenance_queue: str = "queue:maintenance"

    # Engine tunables
    memory_confidence_floor: float = 0.5
    memory_consolidation_threshold: float = 0.85
    memory_similarity_threshold: float = 0.4
    memory_result_limit: int = 15
    memory_decay_window_days: int = 7
    memory_decay_access_grace_days: int = 7
    memory_archive_threshold: float = 0.1
    memory_inference_ttl_days: int = 30
    memory_inference_min_confidence: float = 0.6
    memory_context_notes_cap: int = 10
    memory_stale_access_days: int = 90
    memory_single_valued_predicates: str = DEFAULT_SINGLE_VALUED_PREDICATES

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars

    @field_validator('database_url', mode='before')
    @classmethod
    def construct_database_url(cls, v, info):
        """Construct database URL from components if not explicitly set"""
        if v:
            return v

        data = info.data
        host = data.get('postgres_host', 'localhost')
        port = data.get('postgres_port', 5432)
        user = data.get('postgres_user', 'memory_user')
        password = data.get('postgres_password', 'memory_pass')
        db = data.get('postgres_db', 'memory')

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @field_validator('memory_confidence_floor', 'memory_consolidation_threshold',
                     'memory_similarity_threshold', 'memory_archive_threshold',
                     'memory_inference_min_confidence')
    @classmethod
    def check_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"must be within [0, 1], got {v}")
        return v

    @property
    def single_valued_predicates(self) -> FrozenSet[str]:
        """Predicates that hold at most one active fact per entity"""
        return frozenset(
            p.strip().lower()
            for p in self.memory_single_valued_predicates.split(',')
            if p.strip()
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
