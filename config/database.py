"""Database configuration for KBCrawl.

Builds the SQLAlchemy engine for the document store.
SQLite is used for development and tests, PostgreSQL in production.
"""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///kbcrawl.db", description="SQLAlchemy database URL")

    # Connection settings
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Maximum pool overflow")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Log emitted SQL")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        return cls(
            url=os.getenv('KBCRAWL_DATABASE_URL', 'sqlite:///kbcrawl.db'),
            pool_size=int(os.getenv('DB_POOL_SIZE', '10')),
            max_overflow=int(os.getenv('DB_MAX_OVERFLOW', '20')),
            pool_timeout=int(os.getenv('DB_POOL_TIMEOUT', '30')),
            echo=os.getenv('DB_ECHO', 'false').lower() == 'true'
        )

    def is_sqlite(self) -> bool:
        """Check if using a SQLite backend."""
        return self.url.startswith('sqlite')


def create_db_engine(config: Optional[DatabaseConfig] = None) -> Engine:
    """Create an engine for the configured database."""
    if config is None:
        config = DatabaseConfig.from_env()

    if config.is_sqlite():
        # SQLite ignores pool sizing; allow use from executor threads
        engine = create_engine(
            config.url,
            echo=config.echo,
            connect_args={"check_same_thread": False}
        )
    else:
        engine = create_engine(
            config.url,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_pre_ping=True
        )

    logger.info(f"Database engine created for {engine.url.get_backend_name()}")
    return engine

