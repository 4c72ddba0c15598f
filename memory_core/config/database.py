"""
Database Configuration
======================

Centralized connection configuration for the server, the maintenance worker
and the scheduler. Handles PostgreSQL and Redis with proper env var handling.
"""
import os
from dataclasses import dataclass


@dataclass
class PostgresConfig:
    """PostgreSQL connection configuration."""
    host: str
    port: int
    user: str
    password: str
    database: str
    min_size: int = 2
    max_size: int = 10

    @classmethod
    def from_env(cls, min_size: int = 2, max_size: int = 10) -> 'PostgresConfig':
        """Create config from environment variables."""
        host = os.getenv('POSTGRES_HOST')
        if not host:
            raise ValueError("POSTGRES_HOST environment variable is required")

        return cls(
            host=host,
            port=int(os.getenv('POSTGRES_PORT', '5432')),
            user=os.getenv('POSTGRES_USER', 'memory_user'),
            password=os.getenv('POSTGRES_PASSWORD', ''),
            database=os.getenv('POSTGRES_DB', 'memory'),
            min_size=min_size,
            max_size=max_size,
        )

    def to_asyncpg_kwargs(self) -> dict:
        """Convert to asyncpg.create_pool kwargs."""
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'min_size': self.min_size,
            'max_size': self.max_size,
        }


@dataclass
class RedisConfig:
    """Redis connection configuration."""
    url: str

    @classmethod
    def from_env(cls) -> 'RedisConfig':
        """Create config from environment variables."""
        url = os.getenv('REDIS_URL')
        if not url:
            raise ValueError("REDIS_URL environment variable is required")

        return cls(url=url)


def get_postgres_config(min_size: int = 2, max_size: int = 10) -> PostgresConfig:
    """Get PostgreSQL configuration from environment."""
    return PostgresConfig.from_env(min_size=min_size, max_size=max_size)


def get_redis_config() -> RedisConfig:
    """Get Redis configuration from environment."""
    return RedisConfig.from_env()


async def create_postgres_pool(min_size: int = 2, max_size: int = 10, apply_schema: bool = True):
    """Create PostgreSQL connection pool from environment config."""
    import asyncpg
    from memory_core.repositories.postgres.schema import apply_schema as _apply_schema

    config = get_postgres_config(min_size=min_size, max_size=max_size)
    pool = await asyncpg.create_pool(**config.to_asyncpg_kwargs())
    if apply_schema:
        await _apply_schema(pool)
    return pool


async def create_job_queue():
    """Create and connect Redis job queue from environment config."""
    from memory_core.workers.job_queue import JobQueue
    config = get_redis_config()
    queue = JobQueue(config.url)
    await queue.connect()
    return queue
