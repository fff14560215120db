"""Document persistence for crawled pages.

``DocumentStore`` wraps the SQL table; ``DocumentWriter`` is the only code
path that mutates it and implements the dedup/no-downgrade upsert.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from config.crawler_config import CrawlerConfig, crawler_config
from observability.metrics import record_document_write
from .models import Base, Document

logger = logging.getLogger(__name__)

ACTION_CREATED = 'created'
ACTION_UPDATED = 'updated'
ACTION_UNCHANGED = 'unchanged'


class DuplicateDocumentError(Exception):
    """Raised when a (knowledge base, source URL) pair already exists."""

    def __init__(self, knowledge_base_id: str, source_url: str):
        self.knowledge_base_id = knowledge_base_id
        self.source_url = source_url
        super().__init__(f"Document already exists for {source_url} in knowledge base {knowledge_base_id}")


@dataclass
class StoredDocument:
    """Detached snapshot of a document row."""
    id: str
    knowledge_base_id: str
    source_url: str
    filename: str
    content: str
    mime_type: str
    size: int
    word_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, doc: Document) -> 'StoredDocument':
        return cls(
            id=doc.id,
            knowledge_base_id=doc.knowledge_base_id,
            source_url=doc.source_url,
            filename=doc.filename,
            content=doc.content,
            mime_type=doc.mime_type,
            size=doc.size,
            word_count=doc.word_count,
            metadata=dict(doc.doc_metadata or {}),
            created_at=doc.created_at,
            updated_at=doc.updated_at
        )


@dataclass
class UpsertResult:
    document: StoredDocument
    action: str


class DocumentStore:
    """SQLAlchemy-backed document table access."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def init_schema(self):
        """Create tables if they don't exist."""
        Base.metadata.create_all(self.engine)

    def find_by_source_url(self, knowledge_base_id: str, source_url: str) -> Optional[StoredDocument]:
        with self.session_factory() as session:
            doc = session.query(Document).filter_by(
                knowledge_base_id=knowledge_base_id,
                source_url=source_url
            ).one_or_none()
            return StoredDocument.from_model(doc) if doc else None

    def count_for_source_url(self, knowledge_base_id: str, source_url: str) -> int:
        with self.session_factory() as session:
            return session.query(Document).filter_by(
                knowledge_base_id=knowledge_base_id,
                source_url=source_url
            ).count()

    def create(self, knowledge_base_id: str, source_url: str, title: str, content: str,
               word_count: int, metadata: Dict[str, Any], mime_type: str = 'text/html') -> StoredDocument:
        """Insert a new document.

        Raises:
            DuplicateDocumentError: if the unique (knowledge base, source URL) key is taken
        """
        with self.session_factory() as session:
            doc = Document(
                knowledge_base_id=knowledge_base_id,
                source_url=source_url,
                filename=title,
                content=content,
                mime_type=mime_type,
                size=len(content),
                word_count=word_count,
                doc_metadata=metadata
            )
            session.add(doc)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateDocumentError(knowledge_base_id, source_url) from e
            return StoredDocument.from_model(doc)

    def update(self, document_id: str, title: str, content: str, word_count: int,
               metadata: Dict[str, Any]) -> StoredDocument:
        with self.session_factory() as session:
            doc = session.get(Document, document_id)
            if doc is None:
                raise LookupError(f"Document {document_id} not found")
            doc.filename = title
            doc.content = content
            doc.size = len(content)
            doc.word_count = word_count
            doc.doc_metadata = metadata
            session.commit()
            return StoredDocument.from_model(doc)


class DocumentWriter:
    """Race-safe create-or-improve writer for crawled pages.

    A page is created on first successful extraction. Afterwards its content
    is only replaced when the new extraction is substantially longer, so a
    degraded re-crawl never overwrites a good copy.
    """

    def __init__(self, store: DocumentStore, config: Optional[CrawlerConfig] = None,
                 replace_ratio: Optional[float] = None):
        config = config or crawler_config
        self.store = store
        self.replace_ratio = replace_ratio if replace_ratio is not None else config.get_replace_ratio()

    def should_replace(self, existing_word_count: int, new_word_count: int) -> bool:
        if existing_word_count <= 0:
            return new_word_count > 0
        return new_word_count > self.replace_ratio * existing_word_count

    def upsert(self, knowledge_base_id: str, canonical_url: str, title: str, content: str,
               word_count: int, original_url: Optional[str] = None) -> UpsertResult:
        now = datetime.now(timezone.utc).isoformat()
        existing = self.store.find_by_source_url(knowledge_base_id, canonical_url)

        if existing is None:
            metadata = {'wordCount': word_count, 'crawledAt': now}
            if original_url and original_url != canonical_url:
                metadata['originalUrl'] = original_url
            try:
                document = self.store.create(knowledge_base_id, canonical_url, title, content,
                                             word_count, metadata)
            except DuplicateDocumentError:
                # Lost the race to a concurrent writer; its row stands
                winner = self.store.find_by_source_url(knowledge_base_id, canonical_url)
                if winner is None:
                    raise
                logger.info(f"Concurrent insert for {canonical_url}, keeping existing document {winner.id}")
                record_document_write(ACTION_UNCHANGED)
                return UpsertResult(document=winner, action=ACTION_UNCHANGED)

            logger.info(f"Created document {document.id} for {canonical_url} ({word_count} words)")
            record_document_write(ACTION_CREATED)
            return UpsertResult(document=document, action=ACTION_CREATED)

        if not self.should_replace(existing.word_count, word_count):
            logger.debug(f"Keeping document {existing.id} for {canonical_url}: "
                         f"{word_count} words vs {existing.word_count} stored")
            record_document_write(ACTION_UNCHANGED)
            return UpsertResult(document=existing, action=ACTION_UNCHANGED)

        metadata = dict(existing.metadata)
        metadata.update({'wordCount': word_count, 'updatedAt': now})
        if original_url and original_url != canonical_url:
            metadata['originalUrl'] = original_url

        document = self.store.update(existing.id, title, content, word_count, metadata)
        logger.info(f"Updated document {document.id} for {canonical_url}: "
                    f"{existing.word_count} -> {word_count} words")
        record_document_write(ACTION_UPDATED)
        return UpsertResult(document=document, action=ACTION_UPDATED)
