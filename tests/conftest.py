import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config.crawler_config import CrawlerConfig
from indexer.document_store import DocumentStore
from server.jobs import InMemoryJobQueue


@pytest.fixture
def test_config(tmp_path):
    """Defaults with pacing and batch pauses turned off."""
    return CrawlerConfig(
        config_path=str(tmp_path / "missing.yaml"),
        overrides={
            'politeness': {'min_interval': 0},
            'fetch': {'backoff_base': 0, 'backoff_max': 0},
            'sitemap': {'batch_pause': 0},
        }
    )


@pytest.fixture
def document_store():
    """In-memory SQLite store shared across executor threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    store = DocumentStore(engine)
    store.init_schema()
    yield store
    engine.dispose()


@pytest.fixture
def job_queue():
    return InMemoryJobQueue()

