"""Configuration module for KBCrawl.

Provides configuration management for the crawler pipeline and the document database.
"""

from .crawler_config import CrawlerConfig, DEFAULT_CONFIG, crawler_config
from .database import DatabaseConfig, create_db_engine

__all__ = [
    'CrawlerConfig',
    'DEFAULT_CONFIG',
    'crawler_config',
    'DatabaseConfig',
    'create_db_engine'
]
