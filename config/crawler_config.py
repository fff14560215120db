"""Configuration loader for crawler settings."""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    'user_agent': 'KBCrawlBot/1.0 (+https://kbcrawl.dev/bot)',
    'robots': {
        'ttl_minutes': 15,
        'timeout': 10
    },
    'politeness': {
        'max_concurrent_per_origin': 2,
        'min_interval': 1.0,
        'max_crawl_delay': 30.0
    },
    'fetch': {
        'timeout': 30,
        'max_attempts': 3,
        'backoff_base': 1.0,
        'backoff_max': 5.0,
        'max_bytes': 5 * 1024 * 1024,
        'max_redirects': 5
    },
    'extraction': {
        'min_chars': 100,
        'min_words': 20,
        'min_sentences': 3,
        'min_sentence_chars': 10,
        'container_min_chars': 200
    },
    'links': {
        'max_per_page': 40,
        'max_query_length': 200,
        'child_delay_step': 1
    },
    'store': {
        'replace_ratio': 2.0
    },
    'sitemap': {
        'paths': [
            '/sitemap.xml',
            '/sitemap_index.xml',
            '/sitemaps.xml',
            '/sitemap/sitemap.xml'
        ],
        'timeout': 10,
        'child_timeout': 8,
        'max_children': 10,
        'max_urls': 100,
        'batch_size': 10,
        'batch_pause': 1.0,
        'base_delay': 15,
        'delay_step': 2
    },
    'queue': {
        'redis_url': 'redis://localhost:6379/0',
        'key_prefix': 'kbcrawl:queue',
        'poll_interval': 1.0,
        'batch_size': 5,
        'max_deliveries': 3,
        'retry_delay': 30,
        'embedding_delay': 5,
        'lease_seconds': 300,
        'job_timeout': 180
    },
    'security': {
        'block_private_networks': True
    }
}


class CrawlerConfig:
    """Crawler configuration manager."""

    def __init__(self, config_path: str = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.overrides = overrides or {}
        self._config = self._load_config()

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            os.environ.get('KBCRAWL_CONFIG'),
            os.path.join(os.getcwd(), 'config', 'crawler_config.yaml'),
            os.path.join(Path(__file__).parent, 'crawler_config.yaml'),
            os.path.join(os.path.expanduser('~'), '.kbcrawl', 'crawler_config.yaml')
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                return path

        # Return the expected path even if it doesn't exist
        return os.path.join(Path(__file__).parent, 'crawler_config.yaml')

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        config = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}

                config = self._deep_merge(config, file_config)

            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load crawler config from {self.config_path}: {e}. Using defaults")
        else:
            logger.debug(f"Crawler config file not found at {self.config_path}, using defaults")

        if self.overrides:
            config = self._deep_merge(config, self.overrides)

        return config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_user_agent(self) -> str:
        """Get the user agent string."""
        return self.get('user_agent', DEFAULT_CONFIG['user_agent'])

    def get_robots_settings(self) -> Dict[str, float]:
        """Get robots.txt cache and fetch settings."""
        return {
            'ttl_minutes': self.get('robots.ttl_minutes', 15),
            'timeout': self.get('robots.timeout', 10)
        }

    def get_politeness_settings(self) -> Dict[str, float]:
        """Get per-origin concurrency and spacing settings."""
        return {
            'max_concurrent': int(self.get('politeness.max_concurrent_per_origin', 2)),
            'min_interval': float(self.get('politeness.min_interval', 1.0)),
            'max_crawl_delay': float(self.get('politeness.max_crawl_delay', 30.0))
        }

    def get_fetch_settings(self) -> Dict[str, float]:
        """Get page fetch retry and validation settings."""
        return {
            'timeout': self.get('fetch.timeout', 30),
            'max_attempts': int(self.get('fetch.max_attempts', 3)),
            'backoff_base': float(self.get('fetch.backoff_base', 1.0)),
            'backoff_max': float(self.get('fetch.backoff_max', 5.0)),
            'max_bytes': int(self.get('fetch.max_bytes', 5 * 1024 * 1024)),
            'max_redirects': int(self.get('fetch.max_redirects', 5))
        }

    def get_extraction_settings(self) -> Dict[str, int]:
        """Get quality gate thresholds."""
        return dict(self.get('extraction', DEFAULT_CONFIG['extraction']))

    def get_max_links_per_page(self) -> int:
        """Get the fan-out cap applied before re-enqueue."""
        return int(self.get('links.max_per_page', 40))

    def get_max_query_length(self) -> int:
        """Get the maximum query string length for followed links."""
        return int(self.get('links.max_query_length', 200))

    def get_replace_ratio(self) -> float:
        """Get the word count ratio required to replace stored content."""
        return float(self.get('store.replace_ratio', 2.0))

    def get_sitemap_paths(self) -> List[str]:
        """Get well-known sitemap paths in the order they are tried."""
        return list(self.get('sitemap.paths', DEFAULT_CONFIG['sitemap']['paths']))

    def get_sitemap_settings(self) -> Dict[str, Any]:
        """Get sitemap discovery and seeding settings."""
        return dict(self.get('sitemap', DEFAULT_CONFIG['sitemap']))

    def get_queue_settings(self) -> Dict[str, Any]:
        """Get queue connection and delivery settings."""
        settings = dict(self.get('queue', DEFAULT_CONFIG['queue']))
        redis_url = os.environ.get('KBCRAWL_REDIS_URL')
        if redis_url:
            settings['redis_url'] = redis_url
        return settings

    def should_block_private_networks(self) -> bool:
        """Check if ingress should reject private-network URLs."""
        return self.get('security.block_private_networks', True)

    def reload(self):
        """Reload configuration from file."""
        self._config = self._load_config()


# Global configuration instance
crawler_config = CrawlerConfig()
