"""
Memory Management Service for unified memory operations.

This is the composition root: the store, Bedrock clients, category registry,
extractor, index, search engine and smart manager are built once here and
handed to each other explicitly.
"""

from typing import Any, Dict, List, Optional

from ..models.core import ExtractionOutcome, Memory, SearchResult
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.logging_config import get_logger
from .category_registry import CategoryRegistry
from .extraction import MemoryExtractor, deduplicate_memories, is_similar, rule_based_extract
from .hybrid_search import HybridSearchEngine
from .memory_index import MemoryIndex
from .memory_store import MemoryStore, MemoryStoreError, create_memory_store
from .nlp import NLPService
from .smart_manager import SmartExtractionResponse, SmartMemoryManager, SmartSearchResponse, latest_user_content

logger = get_logger(__name__)

ACCEPTED_LOW_CONFIDENCE = 0.5


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


def _require_user(user_id: str) -> None:
    if not user_id or not str(user_id).strip():
        raise MemoryManagementError('User ID is required')


class MemoryManagementService:
    """Unified service for memory extraction, storage, retrieval and maintenance."""

    def __init__(self,
                 app_config: Optional[AppConfig] = None,
                 store: Optional[MemoryStore] = None,
                 embedder: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None,
                 start_background: bool = False):
        """
        Initialize the memory management service.

        Args:
            app_config: Application configuration (process default if None)
            store: Memory store (built from MEMORY_STORE_BACKEND if None)
            embedder: Embedding client (built from config if None)
            llm: Completion client (built from config if None)
            start_background: Start the periodic batch drainer and cache sweep now instead of
                on the first batched extraction
        """
        self.config = app_config or config
        self.store = store or create_memory_store(self.config)
        self.embed = embedder or BedrockEmbed(self.config.bedrock_embed)
        self.llm = llm or BedrockLLM(self.config.bedrock_llm)

        self.registry = CategoryRegistry()
        self.nlp = NLPService(self.llm, self.config.nlp)
        self.extractor = MemoryExtractor(self.llm, self.registry, self.config.extraction)
        self.index = MemoryIndex(self.nlp, self.config.index)
        self.search_engine = HybridSearchEngine(self.store,
                                                self.embed,
                                                self.nlp,
                                                self.registry,
                                                self.config.search,
                                                scan_limit=self.config.memory.scan_limit)
        self.smart = SmartMemoryManager(self.store, self.index, self.search_engine, self.extract_and_store, self.config.smart)

        if start_background:
            self.smart.start()

        logger.info('Initialized MemoryManagementService')

    # Extraction

    def extract_and_store(self, user_id: str, messages: List[Dict[str, str]]) -> ExtractionOutcome:
        """Extract memories from messages, de-duplicate, embed and persist them.

        Args:
            user_id: User ID for isolation
            messages: List of message dicts with 'role' and 'content' keys

        Returns:
            ExtractionOutcome with the memories actually stored

        Raises:
            MemoryManagementError: If the user id is missing
        """
        _require_user(user_id)
        result = self.extractor.extract(messages)
        confidence = result.confidence
        threshold = self.config.extraction.confidence_threshold

        if confidence < threshold:
            if result.memories:
                confidence = max(confidence, ACCEPTED_LOW_CONFIDENCE)
                logger.debug(f'Accepting {len(result.memories)} low-confidence memories ({result.confidence:.2f})')
            elif self.config.extraction.rule_fallback:
                fallback = rule_based_extract(latest_user_content(messages), self.config.extraction.excerpt_length)
                if fallback.memories:
                    logger.info(f'Low-confidence extraction replaced by {len(fallback.memories)} rule-based memories')
                    result = fallback
                    confidence = fallback.confidence

        candidates = deduplicate_memories(result.memories)
        if not candidates:
            return ExtractionOutcome(memories=[], confidence=confidence, reasoning=result.reasoning, method=result.method)

        try:
            existing = self.store.get(user_id, limit=self.config.memory.dedup_window)
        except MemoryStoreError as e:
            logger.warning(f'Could not load recent memories for dedup: {e}')
            existing = []

        stored: List[Memory] = []
        skipped = 0
        for candidate in candidates:
            if any(is_similar(candidate, memory) for memory in existing + stored):
                skipped += 1
                continue

            if result.method == 'rule_based':
                self.registry.register(candidate.category)
            memory = candidate.to_memory(user_id)
            memory.embedding = self._embed(memory.content)
            try:
                memory.id = self.store.insert(memory)
            except MemoryStoreError as e:
                logger.error(f'Failed to store memory for user {user_id}: {e}')
                continue
            self.index.index_memory(memory)
            stored.append(memory)

        if stored:
            self.smart.invalidate_user(user_id)
        logger.info(f'Stored {len(stored)} memories for user {user_id} ({skipped} duplicates skipped)')
        return ExtractionOutcome(memories=stored,
                                 confidence=confidence,
                                 reasoning=result.reasoning,
                                 method=result.method,
                                 duplicates_skipped=skipped)

    def _embed(self, text: str) -> Optional[List[float]]:
        try:
            return self.embed.embed_document(text, allow_placeholder=True)
        except BedrockEmbedError as e:
            logger.warning(f'Storing memory without embedding: {e}')
            return None

    def add(self, user_id: str, messages: List[Dict[str, str]], force: bool = False) -> SmartExtractionResponse:
        """Process messages through the gate, cache and batch layer.

        Args:
            user_id: User ID for isolation
            messages: List of message dicts with 'role' and 'content' keys
            force: Skip the gate and the batch queue

        Returns:
            SmartExtractionResponse

        Raises:
            MemoryManagementError: If the user id is missing
        """
        _require_user(user_id)
        if not messages:
            logger.warning('Empty messages provided for memory processing')
            return SmartExtractionResponse(extracted_memories=[], source='smart', confidence=0.9, reason='no messages')
        return self.smart.smart_extraction(user_id, messages, force_extraction=force)

    def add_manual(self,
                   user_id: str,
                   content: str,
                   category: str = 'other',
                   importance: int = 5,
                   tags: Optional[List[str]] = None,
                   source: str = 'manual') -> Memory:
        """Store a memory supplied directly by the user.

        Raises:
            MemoryManagementError: If input is invalid or the store write fails
        """
        _require_user(user_id)
        content = (content or '').strip()
        if not content:
            raise MemoryManagementError('Memory content is required')

        category = self.registry.register(category)
        memory = Memory(id=None,
                        user_id=user_id,
                        content=content,
                        category=category,
                        importance=importance,
                        tags=tags or [category],
                        source=source if source in ('manual', 'upload') else 'manual',
                        source_excerpt=content[:self.config.extraction.excerpt_length])
        memory.embedding = self._embed(content)
        try:
            memory.id = self.store.insert(memory)
        except MemoryStoreError as e:
            logger.error(f'Failed to store manual memory for user {user_id}: {e}')
            raise MemoryManagementError(f'Memory add failed: {e}')

        self.index.index_memory(memory)
        self.smart.invalidate_user(user_id)
        return memory

    # Retrieval

    def _ensure_index(self) -> None:
        if self.index.needs_rebuild():
            try:
                self.rebuild_index()
            except MemoryManagementError as e:
                logger.warning(f'Index rebuild skipped: {e}')

    def search_detailed(self, user_id: str, query: str, limit: int = 10) -> SmartSearchResponse:
        """Search with source and performance details."""
        _require_user(user_id)
        self._ensure_index()
        return self.smart.smart_search(user_id, query, limit)

    def search(self, user_id: str, query: str, limit: int = 10) -> List[SearchResult]:
        """Search a user's memories.

        Args:
            user_id: User ID for isolation
            query: Natural language query
            limit: Maximum number of results to return

        Returns:
            Ranked SearchResult list (empty when nothing matched or the store is down)

        Raises:
            MemoryManagementError: If the user id is missing
        """
        return self.search_detailed(user_id, query, limit).results

    def list_memories(self,
                      user_id: str,
                      category: Optional[str] = None,
                      min_importance: Optional[int] = None,
                      source: Optional[str] = None,
                      limit: int = 50,
                      offset: int = 0) -> List[Memory]:
        _require_user(user_id)
        filters = {'category': category, 'min_importance': min_importance, 'source': source}
        try:
            return self.store.get(user_id, {k: v for k, v in filters.items() if v is not None}, limit=limit, offset=offset)
        except MemoryStoreError as e:
            logger.error(f'Failed to list memories for user {user_id}: {e}')
            raise MemoryManagementError(f'Memory listing failed: {e}')

    # Maintenance

    def update(self, user_id: str, memory_id: str, **fields) -> bool:
        """Explicitly update content, category, importance or tags of a memory.

        Returns:
            True if the memory was updated, False if it does not exist for this user

        Raises:
            MemoryManagementError: If the update is invalid or the store fails
        """
        _require_user(user_id)
        try:
            memory = self.store.get_by_id(user_id, memory_id)
            if memory is None:
                return False
            if 'category' in fields:
                fields['category'] = self.registry.register(fields['category'])
            if 'content' in fields and fields['content'] != memory.content:
                fields['embedding'] = self._embed(str(fields['content']))
            updated = self.store.update(memory_id, **fields)
        except MemoryStoreError as e:
            logger.error(f'Failed to update memory {memory_id}: {e}')
            raise MemoryManagementError(f'Memory update failed: {e}')

        if updated:
            refreshed = self.store.get_by_id(user_id, memory_id)
            self.index.remove_memory(memory_id)
            if refreshed is not None:
                self.index.index_memory(refreshed)
            self.smart.invalidate_user(user_id)
        return updated

    def delete(self, user_id: str, memory_id: str) -> bool:
        """Delete a memory owned by the user.

        Returns:
            True if the memory was deleted, False if it was not found

        Raises:
            MemoryManagementError: If the store fails
        """
        _require_user(user_id)
        if not memory_id or not memory_id.strip():
            logger.warning('Empty memory ID provided for deletion')
            return False

        try:
            if self.store.get_by_id(user_id, memory_id) is None:
                logger.warning(f'No memory {memory_id} found for user {user_id}')
                return False
            deleted = self.store.delete(memory_id)
        except MemoryStoreError as e:
            logger.error(f'Store error during memory deletion: {e}')
            raise MemoryManagementError(f'Memory deletion failed: {e}')

        if deleted:
            self.index.remove_memory(memory_id)
            self.smart.invalidate_user(user_id)
            logger.debug(f'Deleted memory: {memory_id}')
        return deleted

    def rebuild_index(self) -> int:
        """Rebuild the memory index from every stored memory.

        Raises:
            MemoryManagementError: If the store cannot be read
        """
        try:
            memories = self.store.get_all(limit=self.config.index.max_index_size)
        except MemoryStoreError as e:
            raise MemoryManagementError(f'Index rebuild failed: {e}')
        return self.index.rebuild(memories)

    def stats(self, user_id: str) -> Dict[str, Any]:
        _require_user(user_id)
        try:
            store_stats = self.store.stats(user_id)
        except MemoryStoreError as e:
            logger.error(f'Failed to load stats for user {user_id}: {e}')
            raise MemoryManagementError(f'Memory stats failed: {e}')
        return {
            'memories': store_stats,
            'categories': [{
                'name': info.name,
                'display_name': info.display_name,
                'is_core': info.is_core,
                'usage_count': info.usage_count
            } for info in self.registry.all()],
            'system': self.smart.get_system_stats(),
        }

    def shutdown(self) -> None:
        """Stop background work and flush pending extractions."""
        self.smart.cleanup()
        logger.info('MemoryManagementService shut down')
