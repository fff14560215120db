"""Database models for crawled documents."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Document(Base):
    """A crawled page stored in a knowledge base."""
    __tablename__ = 'documents'

    id = Column(String(32), primary_key=True, default=_new_id)
    knowledge_base_id = Column(String(64), nullable=False)
    source_url = Column(String(2048), nullable=False)
    filename = Column(String(500), nullable=False)
    content = Column(Text, nullable=False)
    mime_type = Column(String(100), nullable=False, default='text/html')
    size = Column(Integer, nullable=False, default=0)
    word_count = Column(Integer, nullable=False, default=0)
    doc_metadata = Column('metadata', JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint('knowledge_base_id', 'source_url', name='uq_documents_kb_source_url'),
        Index('idx_documents_knowledge_base_id', 'knowledge_base_id'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'knowledgeBaseId': self.knowledge_base_id,
            'sourceUrl': self.source_url,
            'filename': self.filename,
            'mimeType': self.mime_type,
            'size': self.size,
            'wordCount': self.word_count,
            'metadata': self.doc_metadata,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }
