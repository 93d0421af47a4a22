"""
Memory Store: persistence contract plus in-memory and OpenSearch backends.

The store owns no business logic. Every query is scoped to one user except
``get_all``, which feeds the index rebuild.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import Memory
from ..utils.config import AppConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.validation import clamp_importance, normalize_category, normalize_tags

logger = get_logger(__name__)

UPDATABLE_FIELDS = ('content', 'category', 'importance', 'tags', 'embedding')


class MemoryStoreError(Exception):
    """Custom exception for memory store errors."""
    pass


def _validated_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise MemoryStoreError(f'Fields cannot be updated: {sorted(unknown)}')

    validated = dict(fields)
    if 'category' in validated:
        validated['category'] = normalize_category(validated['category'])
    if 'importance' in validated:
        validated['importance'] = clamp_importance(validated['importance'])
    if 'tags' in validated:
        validated['tags'] = normalize_tags(validated['tags'])
    if 'content' in validated:
        content = str(validated['content'] or '').strip()
        if not content:
            raise MemoryStoreError('Memory content cannot be empty')
        validated['content'] = content
    return validated


class MemoryStore(ABC):
    """Query contract every persistence backend implements."""

    @abstractmethod
    def insert(self, memory: Memory) -> str:
        """Persist a memory, assigning an id when it has none."""

    @abstractmethod
    def get(self, user_id: str, filters: Optional[Dict[str, Any]] = None, limit: int = 50, offset: int = 0) -> List[Memory]:
        """Newest-first page of a user's memories.

        Supported filters: ``category``, ``min_importance``, ``source``.
        """

    @abstractmethod
    def get_by_id(self, user_id: str, memory_id: str) -> Optional[Memory]:
        pass

    @abstractmethod
    def get_by_ids(self, user_id: str, memory_ids: Iterable[str]) -> List[Memory]:
        pass

    @abstractmethod
    def search_by_content_like(self, user_id: str, term: str, limit: int = 20) -> List[Memory]:
        """Case-insensitive substring match on content."""

    @abstractmethod
    def search_by_category(self, user_id: str, category: str, limit: int = 20) -> List[Memory]:
        """Memories in a category, most important (then newest) first."""

    @abstractmethod
    def search_by_tag(self, user_id: str, tag: str, limit: int = 20) -> List[Memory]:
        pass

    @abstractmethod
    def get_with_embeddings(self, user_id: str, limit: int = 2000) -> List[Memory]:
        """Memories that carry a vector, for the vector scan."""

    @abstractmethod
    def get_all(self, limit: int = 10000) -> List[Memory]:
        """Every user's memories, for index rebuilds."""

    @abstractmethod
    def update(self, memory_id: str, **fields) -> bool:
        pass

    @abstractmethod
    def update_access_count(self, memory_id: str) -> bool:
        pass

    @abstractmethod
    def delete(self, memory_id: str) -> bool:
        pass

    @abstractmethod
    def stats(self, user_id: str) -> Dict[str, Any]:
        pass

    def health_check(self) -> bool:
        return True


class InMemoryMemoryStore(MemoryStore):
    """Thread-safe dictionary-backed store for tests and local runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._memories: Dict[str, Memory] = {}
        logger.info('Initialized in-memory memory store')

    @staticmethod
    def _copy(memory: Memory) -> Memory:
        return replace(memory, tags=list(memory.tags))

    def _user_rows(self, user_id: str) -> List[Memory]:
        with self._lock:
            return [self._copy(m) for m in self._memories.values() if m.user_id == user_id]

    @staticmethod
    def _newest_first(memories: List[Memory]) -> List[Memory]:
        return sorted(memories, key=lambda m: m.timestamp, reverse=True)

    def insert(self, memory: Memory) -> str:
        memory_id = memory.id or str(uuid.uuid4())
        stored = replace(memory, id=memory_id, tags=list(memory.tags))
        with self._lock:
            self._memories[memory_id] = stored
        logger.debug(f'Inserted memory {memory_id} for user {memory.user_id}')
        return memory_id

    def get(self, user_id: str, filters: Optional[Dict[str, Any]] = None, limit: int = 50, offset: int = 0) -> List[Memory]:
        filters = filters or {}
        rows = self._user_rows(user_id)
        if filters.get('category'):
            category = normalize_category(filters['category'])
            rows = [m for m in rows if m.category == category]
        if filters.get('min_importance') is not None:
            rows = [m for m in rows if m.importance >= filters['min_importance']]
        if filters.get('source'):
            rows = [m for m in rows if m.source == filters['source']]
        return self._newest_first(rows)[offset:offset + limit]

    def get_by_id(self, user_id: str, memory_id: str) -> Optional[Memory]:
        with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None or memory.user_id != user_id:
                return None
            return self._copy(memory)

    def get_by_ids(self, user_id: str, memory_ids: Iterable[str]) -> List[Memory]:
        result = []
        for memory_id in memory_ids:
            memory = self.get_by_id(user_id, memory_id)
            if memory is not None:
                result.append(memory)
        return result

    def search_by_content_like(self, user_id: str, term: str, limit: int = 20) -> List[Memory]:
        needle = (term or '').strip().lower()
        if not needle:
            return []
        rows = [m for m in self._user_rows(user_id) if needle in m.content.lower()]
        return self._newest_first(rows)[:limit]

    def search_by_category(self, user_id: str, category: str, limit: int = 20) -> List[Memory]:
        category = normalize_category(category)
        rows = [m for m in self._user_rows(user_id) if m.category == category]
        rows.sort(key=lambda m: (m.importance, m.timestamp), reverse=True)
        return rows[:limit]

    def search_by_tag(self, user_id: str, tag: str, limit: int = 20) -> List[Memory]:
        needle = (tag or '').strip().lower()
        if not needle:
            return []
        rows = [m for m in self._user_rows(user_id) if needle in (t.lower() for t in m.tags)]
        return self._newest_first(rows)[:limit]

    def get_with_embeddings(self, user_id: str, limit: int = 2000) -> List[Memory]:
        rows = [m for m in self._user_rows(user_id) if m.embedding]
        return self._newest_first(rows)[:limit]

    def get_all(self, limit: int = 10000) -> List[Memory]:
        with self._lock:
            rows = [self._copy(m) for m in self._memories.values()]
        return self._newest_first(rows)[:limit]

    def update(self, memory_id: str, **fields) -> bool:
        validated = _validated_fields(fields)
        with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                return False
            self._memories[memory_id] = replace(memory, **validated)
        return True

    def update_access_count(self, memory_id: str) -> bool:
        with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                return False
            memory.access_count += 1
            memory.last_accessed = datetime.now()
        return True

    def delete(self, memory_id: str) -> bool:
        with self._lock:
            return self._memories.pop(memory_id, None) is not None

    def stats(self, user_id: str) -> Dict[str, Any]:
        rows = self._user_rows(user_id)
        categories = Counter(m.category for m in rows)
        return {
            'total_memories': len(rows),
            'with_embeddings': sum(1 for m in rows if m.embedding),
            'categories': dict(categories.most_common()),
            'average_importance': round(sum(m.importance for m in rows) / len(rows), 2) if rows else 0.0,
        }


class OpenSearchMemoryStore(MemoryStore):
    """Memory store backed by an OpenSearch index.

    Vectors are held in the document; the vector stage pulls them with
    ``get_with_embeddings`` and scores locally so the threshold logic stays
    in one place.
    """

    ACCESS_COUNT_SCRIPT = ('ctx._source.access_count = (ctx._source.access_count == null ? 0 : ctx._source.access_count) + 1; '
                           'ctx._source.last_accessed = params.now')

    def __init__(self, client: OpenSearchClient, create_index: bool = True):
        self.client = client
        if create_index:
            try:
                self.client.create_index_if_not_exists()
            except OpenSearchError as e:
                logger.warning(f'Failed to create OpenSearch index: {e}')
        logger.info(f'Initialized OpenSearch memory store on index {client.index_name}')

    @staticmethod
    def _user_filter(user_id: str) -> Dict[str, Any]:
        return {'term': {'user_id': user_id}}

    def _query(self,
               filters: List[Dict[str, Any]],
               limit: int,
               offset: int = 0,
               must: Optional[List[Dict[str, Any]]] = None,
               sort: Optional[List[Dict[str, Any]]] = None,
               include_embedding: bool = False) -> List[Memory]:
        bool_query: Dict[str, Any] = {'filter': filters}
        if must:
            bool_query['must'] = must
        body: Dict[str, Any] = {
            'size': limit,
            'from': offset,
            'query': {
                'bool': bool_query
            },
            'sort': sort or [{
                'timestamp': {
                    'order': 'desc'
                }
            }],
        }
        if not include_embedding:
            body['_source'] = {'excludes': ['embedding']}

        try:
            hits = self.client.search(body)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory query failed: {e}')
        return [Memory.from_document(hit['document'], doc_id=hit['id']) for hit in hits]

    def insert(self, memory: Memory) -> str:
        memory_id = memory.id or str(uuid.uuid4())
        document = replace(memory, id=memory_id).to_document()
        try:
            if not self.client.index_document(document, doc_id=memory_id):
                raise MemoryStoreError(f'Memory {memory_id} was not indexed')
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory insert failed: {e}')
        logger.debug(f'Inserted memory {memory_id} for user {memory.user_id}')
        return memory_id

    def get(self, user_id: str, filters: Optional[Dict[str, Any]] = None, limit: int = 50, offset: int = 0) -> List[Memory]:
        filters = filters or {}
        clauses = [self._user_filter(user_id)]
        if filters.get('category'):
            clauses.append({'term': {'category': normalize_category(filters['category'])}})
        if filters.get('min_importance') is not None:
            clauses.append({'range': {'importance': {'gte': filters['min_importance']}}})
        if filters.get('source'):
            clauses.append({'term': {'source': filters['source']}})
        return self._query(clauses, limit, offset)

    def get_by_id(self, user_id: str, memory_id: str) -> Optional[Memory]:
        try:
            document = self.client.get_document(memory_id)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory lookup failed: {e}')
        if document is None or document.get('user_id') != user_id:
            return None
        return Memory.from_document(document, doc_id=memory_id)

    def get_by_ids(self, user_id: str, memory_ids: Iterable[str]) -> List[Memory]:
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        return self._query([self._user_filter(user_id), {'ids': {'values': ids}}], limit=len(ids))

    def search_by_content_like(self, user_id: str, term: str, limit: int = 20) -> List[Memory]:
        term = (term or '').strip()
        if not term:
            return []
        escaped = term.replace('\\', '\\\\').replace('*', '\\*').replace('?', '\\?')
        match = {
            'bool': {
                'should': [{
                    'wildcard': {
                        'content.keyword': {
                            'value': f'*{escaped}*',
                            'case_insensitive': True
                        }
                    }
                }, {
                    'match_phrase': {
                        'content': term
                    }
                }],
                'minimum_should_match': 1
            }
        }
        return self._query([self._user_filter(user_id)], limit, must=[match])

    def search_by_category(self, user_id: str, category: str, limit: int = 20) -> List[Memory]:
        clauses = [self._user_filter(user_id), {'term': {'category': normalize_category(category)}}]
        sort = [{'importance': {'order': 'desc'}}, {'timestamp': {'order': 'desc'}}]
        return self._query(clauses, limit, sort=sort)

    def search_by_tag(self, user_id: str, tag: str, limit: int = 20) -> List[Memory]:
        tag = (tag or '').strip()
        if not tag:
            return []
        clauses = [self._user_filter(user_id), {'term': {'tags': {'value': tag, 'case_insensitive': True}}}]
        return self._query(clauses, limit)

    def get_with_embeddings(self, user_id: str, limit: int = 2000) -> List[Memory]:
        clauses = [self._user_filter(user_id), {'exists': {'field': 'embedding'}}]
        return self._query(clauses, limit, include_embedding=True)

    def get_all(self, limit: int = 10000) -> List[Memory]:
        return self._query([{'match_all': {}}], limit)

    def update(self, memory_id: str, **fields) -> bool:
        validated = _validated_fields(fields)
        try:
            return self.client.update_document(memory_id, partial=validated)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory update failed: {e}')

    def update_access_count(self, memory_id: str) -> bool:
        script = {'source': self.ACCESS_COUNT_SCRIPT, 'lang': 'painless', 'params': {'now': datetime.now().isoformat()}}
        try:
            return self.client.update_document(memory_id, script=script)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Access count update failed: {e}')

    def delete(self, memory_id: str) -> bool:
        try:
            return self.client.delete_document(memory_id)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory delete failed: {e}')

    def stats(self, user_id: str) -> Dict[str, Any]:
        body = {
            'size': 0,
            'track_total_hits': True,
            'query': {
                'bool': {
                    'filter': [self._user_filter(user_id)]
                }
            },
            'aggs': {
                'categories': {
                    'terms': {
                        'field': 'category',
                        'size': 100
                    }
                },
                'average_importance': {
                    'avg': {
                        'field': 'importance'
                    }
                },
                'with_embeddings': {
                    'filter': {
                        'exists': {
                            'field': 'embedding'
                        }
                    }
                }
            }
        }
        try:
            response = self.client.raw_search(body)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory stats failed: {e}')

        aggs = response.get('aggregations', {})
        average = aggs.get('average_importance', {}).get('value')
        return {
            'total_memories': response['hits']['total']['value'],
            'with_embeddings': aggs.get('with_embeddings', {}).get('doc_count', 0),
            'categories': {bucket['key']: bucket['doc_count'] for bucket in aggs.get('categories', {}).get('buckets', [])},
            'average_importance': round(average, 2) if average is not None else 0.0,
        }

    def health_check(self) -> bool:
        return self.client.health_check()


def create_memory_store(app_config: AppConfig) -> MemoryStore:
    """Build the backend selected by ``MEMORY_STORE_BACKEND``."""
    backend = app_config.memory.store_backend.lower()
    if backend == 'memory':
        return InMemoryMemoryStore()
    if backend == 'opensearch':
        return OpenSearchMemoryStore(OpenSearchClient(app_config.opensearch))
    raise MemoryStoreError(f'Unknown memory store backend: {app_config.memory.store_backend}')
