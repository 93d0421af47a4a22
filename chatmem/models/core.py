"""
Core data models for the long-term memory system.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..utils.timestamp_utils import parse_datetime
from ..utils.validation import clamp_importance, normalize_category, normalize_tags

MEMORY_SOURCES = ('conversation', 'upload', 'manual')
SEARCH_TYPES = ('vector', 'keyword', 'semantic', 'index', 'hybrid')
INDEX_TYPES = ('topic', 'entity', 'relation', 'concept')
BATCH_OPERATION_TYPES = ('extract', 'search', 'index')


@dataclass
class Memory:
    """A single stored fact about a user.

    Category and importance are normalized on construction, so every Memory
    instance satisfies the write-time invariants regardless of where its
    values came from (LLM output, user input or a stored document).
    """
    id: Optional[str]
    user_id: str
    content: str
    category: str = 'other'
    importance: int = 5
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    source: str = 'conversation'
    timestamp: datetime = field(default_factory=datetime.now)
    last_accessed: Optional[datetime] = None
    access_count: int = 0
    source_excerpt: str = ''

    def __post_init__(self):
        self.category = normalize_category(self.category)
        self.importance = clamp_importance(self.importance)
        self.tags = normalize_tags(self.tags)
        if self.source not in MEMORY_SOURCES:
            self.source = 'conversation'
        if self.embedding is not None:
            self.embedding = [float(v) for v in self.embedding] or None
        self.access_count = max(0, int(self.access_count or 0))

    def to_document(self) -> Dict[str, Any]:
        """Convert to the persisted logical schema."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'content': self.content,
            'category': self.category,
            'importance': self.importance,
            'tags': list(self.tags),
            'embedding': self.embedding,
            'source': self.source,
            'timestamp': self.timestamp.isoformat(),
            'last_accessed': self.last_accessed.isoformat() if self.last_accessed else None,
            'access_count': self.access_count,
            'source_excerpt': self.source_excerpt,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any], doc_id: Optional[str] = None) -> 'Memory':
        """Build a Memory from a persisted document.

        Args:
            doc: Stored document (embedding as float list or JSON string, tags as list or CSV)
            doc_id: Identifier to use when the document itself has none

        Returns:
            Memory instance
        """
        embedding = doc.get('embedding')
        if isinstance(embedding, str):
            try:
                embedding = json.loads(embedding) if embedding.strip() else None
            except json.JSONDecodeError:
                embedding = None
        if embedding is not None and not isinstance(embedding, list):
            embedding = None

        last_accessed = doc.get('last_accessed')
        return cls(id=doc.get('id') or doc_id,
                   user_id=doc.get('user_id', ''),
                   content=doc.get('content', ''),
                   category=doc.get('category', 'other'),
                   importance=doc.get('importance', 5),
                   tags=doc.get('tags') or [],
                   embedding=embedding,
                   source=doc.get('source', 'conversation'),
                   timestamp=parse_datetime(doc.get('timestamp')),
                   last_accessed=parse_datetime(last_accessed) if last_accessed else None,
                   access_count=doc.get('access_count', 0) or 0,
                   source_excerpt=doc.get('source_excerpt', '') or '')


@dataclass
class ExtractedMemory:
    """Candidate memory produced by the extractor before persistence."""
    content: str
    category: str
    tags: List[str]
    importance: int
    source_excerpt: str = ''

    def to_memory(self, user_id: str, source: str = 'conversation') -> Memory:
        return Memory(id=None,
                      user_id=user_id,
                      content=self.content,
                      category=self.category,
                      importance=self.importance,
                      tags=list(self.tags),
                      source=source,
                      source_excerpt=self.source_excerpt)


@dataclass
class ExtractionResult:
    """Outcome of one extraction call."""
    memories: List[ExtractedMemory]
    reasoning: str
    confidence: float
    method: str = 'llm'  # llm | repaired | salvaged | rule_based


@dataclass
class ExtractionOutcome:
    """What the extract-and-store pipeline persisted for one message set."""
    memories: List[Memory]
    confidence: float
    reasoning: str
    method: str = 'llm'
    duplicates_skipped: int = 0


@dataclass
class SearchResult:
    """A memory surfaced by search together with its relevance."""
    memory: Memory
    relevance_score: float
    search_type: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryIndexEntry:
    """Inverted index bucket keyed by (type, value)."""
    type: str
    value: str
    memory_ids: Set[str] = field(default_factory=set)
    last_updated: datetime = field(default_factory=datetime.now)

    @property
    def weight(self) -> int:
        return len(self.memory_ids)


@dataclass
class CacheEntry:
    """Cached value with access bookkeeping."""
    key: str
    value: Any
    created_at: float
    access_count: int = 0
    last_accessed: float = 0.0


@dataclass
class BatchOperation:
    """Deferred operation waiting in the batch queue."""
    type: str
    payload: Dict[str, Any]
    enqueued_at: float
    priority: int = 5

    def __post_init__(self):
        self.priority = int(min(10, max(0, self.priority)))


@dataclass
class CategoryInfo:
    """Registry record for a known category."""
    name: str
    display_name: str
    description: str = ''
    is_core: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    usage_count: int = 0
