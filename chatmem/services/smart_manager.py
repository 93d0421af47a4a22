"""
Smart cache and gate layer wrapping search and extraction.

Search: TTL cache, then the cheap index search, escalating to the full hybrid
engine only when the index covers too little of the requested limit.

Extraction: TTL cache keyed by message hash, a gate that skips trivial,
duplicate and question-only input without calling the LLM, and a priority
batch queue for requests that can wait.
"""

import hashlib
import re
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..models.core import BatchOperation, ExtractionOutcome, Memory, SearchResult
from ..utils.config import SmartMemoryConfig
from ..utils.logging_config import get_logger
from .batch_queue import BatchQueue
from .cache import TTLCache
from .hybrid_search import HybridSearchEngine
from .memory_index import MemoryIndex
from .memory_store import MemoryStore, MemoryStoreError

logger = get_logger(__name__)

MIN_CONTENT_LENGTH = 10
BASE_PRIORITY = 5
MAX_KEYWORD_BONUS = 3
MAX_QUERY_PATTERNS = 1000

HIGH_VALUE_KEYWORDS = [
    '公司', '项目', '客户', '合同', '会议', '决策', '计划', 'company', 'project', 'client', 'customer', 'contract', 'meeting',
    'decision', 'plan', 'deadline', 'job', 'family', 'married', 'birthday', 'address'
]

QUESTION_PATTERNS = [
    re.compile(r'^(什么|谁|哪里|哪个|哪儿|如何|怎么|为什么|什么时候|是否)'),
    re.compile(r'^(what|where|when|who|whom|which|why|how)\b', re.IGNORECASE),
    re.compile(r'[?？]$'),
    re.compile(r'^请.*[？?]$'),
]

DATE_PATTERN = re.compile(r'\d{4}年|\d{1,2}月|\d{1,2}日|\b\d{4}-\d{1,2}-\d{1,2}\b|\b(january|february|march|april|may|june|july|'
                          r'august|september|october|november|december|yesterday|tomorrow|today)\b', re.IGNORECASE)
NUMBER_PATTERN = re.compile(r'\d+%|\d+元|\d+万|\d+个|[$€£¥]\s?\d+|\b\d+(\.\d+)?\s?(dollars|usd|eur|percent|k)\b', re.IGNORECASE)


@dataclass
class SmartSearchResponse:
    results: List[SearchResult]
    source: str  # cache | index | enhanced | hybrid
    performance: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SmartExtractionResponse:
    extracted_memories: List[Memory]
    source: str  # cache | smart | batched | llm
    confidence: float
    reason: str
    priority: int = 0
    performance: Dict[str, Any] = field(default_factory=dict)


def _hash(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def latest_user_content(messages: List[Dict[str, str]]) -> str:
    for message in reversed(messages or []):
        if isinstance(message, dict) and message.get('role', 'user') == 'user':
            content = str(message.get('content') or '').strip()
            if content:
                return content
    return ''


def is_question_only(content: str) -> bool:
    text = content.strip()
    return any(pattern.search(text) for pattern in QUESTION_PATTERNS)


def priority_score(content: str) -> int:
    """5 base, +2 over 100 chars, +2 over 500, +1 per high-value keyword, +1 date, +1 number; capped at 10."""
    priority = BASE_PRIORITY
    if len(content) > 100:
        priority += 2
    if len(content) > 500:
        priority += 2
    lowered = content.lower()
    priority += min(MAX_KEYWORD_BONUS, sum(1 for keyword in HIGH_VALUE_KEYWORDS if keyword in lowered))
    if DATE_PATTERN.search(content):
        priority += 1
    if NUMBER_PATTERN.search(content):
        priority += 1
    return min(priority, 10)


class SmartMemoryManager:
    """Cache, gate and batch layer in front of search and extraction."""

    def __init__(self,
                 store: MemoryStore,
                 index: MemoryIndex,
                 search_engine: HybridSearchEngine,
                 extraction_pipeline: Callable[[str, List[Dict[str, str]]], ExtractionOutcome],
                 config: SmartMemoryConfig,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the smart manager.

        Args:
            store: Memory store (used for access-count bumps)
            index: Memory index used for the index-first search
            search_engine: Full hybrid search engine
            extraction_pipeline: Callable(user_id, messages) that extracts and stores memories
            config: Cache, gate and batching settings
            clock: Time source in seconds
        """
        self.store = store
        self.index = index
        self.search_engine = search_engine
        self.extraction_pipeline = extraction_pipeline
        self.config = config
        self._clock = clock

        self.search_cache = TTLCache(config.cache_expiry_seconds, config.max_cache_size, 'search_cache', clock)
        self.extraction_cache = TTLCache(config.cache_expiry_seconds, config.max_cache_size, 'extraction_cache', clock)
        self.queue = BatchQueue(config.batch_size, config.high_priority_threshold)

        self._recent_lock = threading.Lock()
        self._recent_inputs: Dict[str, float] = {}
        self._patterns_lock = threading.Lock()
        self._query_patterns: Counter = Counter()
        self._stats_lock = threading.Lock()
        self._stats = Counter()

        logger.info('Initialized SmartMemoryManager')

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    # Search

    def smart_search(self, user_id: str, query: str, limit: int = 20) -> SmartSearchResponse:
        """
        Cached, index-first search.

        Args:
            user_id: Owner of the memories
            query: Natural language query
            limit: Maximum number of results

        Returns:
            SmartSearchResponse; never raises
        """
        start = self._clock()
        query = (query or '').strip()
        if not query:
            return SmartSearchResponse(results=[], source='index', performance={'elapsed_ms': 0.0})

        key = (user_id, query, limit)
        if self.config.enable_cache:
            cached = self.search_cache.get(key)
            if cached is not None:
                self._count('search_cache_hits')
                self._touch(cached)
                return SmartSearchResponse(results=list(cached), source='cache', performance=self._elapsed(start))

        self._count('searches')
        try:
            index_results = self.index.search(user_id, query, self.store, max_results=limit)
        except Exception as e:
            logger.warning(f'Index search failed for user {user_id}: {e}')
            index_results = []

        results = index_results
        source = 'index'
        performance: Dict[str, Any] = {'index_results': len(index_results)}
        if len(index_results) < self.config.index_coverage_ratio * limit:
            response = self.search_engine.search(user_id, query, {'max_results': max(limit, self.search_engine.config.max_results)})
            performance['hybrid'] = response.performance
            if response.error:
                performance['error'] = response.error
            results = self.merge_results(index_results, response.results)
            source = 'hybrid' if index_results else 'enhanced'

        results = results[:limit]
        if results and self.config.enable_cache:
            self.search_cache.set(key, list(results))
        self._touch(results)
        self._record_pattern(query)

        performance.update(self._elapsed(start))
        logger.debug(f'Smart search for user {user_id} returned {len(results)} results from {source}')
        return SmartSearchResponse(results=results, source=source, performance=performance)

    @staticmethod
    def merge_results(*result_lists: List[SearchResult]) -> List[SearchResult]:
        """Union by memory id keeping the highest score, sorted descending."""
        merged: Dict[str, SearchResult] = {}
        for results in result_lists:
            for result in results:
                current = merged.get(result.memory.id)
                if current is None or result.relevance_score > current.relevance_score:
                    merged[result.memory.id] = result
        return sorted(merged.values(), key=lambda r: r.relevance_score, reverse=True)

    def _touch(self, results: List[SearchResult]) -> None:
        for result in results:
            try:
                self.store.update_access_count(result.memory.id)
            except MemoryStoreError as e:
                logger.warning(f'Failed to update access count for memory {result.memory.id}: {e}')

    def _record_pattern(self, query: str) -> None:
        with self._patterns_lock:
            self._query_patterns[query.lower()] += 1
            if len(self._query_patterns) > MAX_QUERY_PATTERNS:
                for pattern, _ in self._query_patterns.most_common()[MAX_QUERY_PATTERNS // 2:]:
                    del self._query_patterns[pattern]

    # Extraction

    def should_skip(self, content: str) -> Optional[str]:
        """Reason to skip extraction for this content, or None when it should run."""
        if len(content.strip()) < MIN_CONTENT_LENGTH:
            return 'content too short'
        if self._is_recent_duplicate(content):
            return 'duplicate of recent input'
        if is_question_only(content):
            return 'question only'
        return None

    def _is_recent_duplicate(self, content: str) -> bool:
        digest = _hash(content.strip().lower())
        now = self._clock()
        with self._recent_lock:
            seen_at = self._recent_inputs.get(digest)
            return seen_at is not None and now - seen_at < self.config.duplicate_window_seconds

    def _remember_input(self, content: str) -> None:
        now = self._clock()
        window = self.config.duplicate_window_seconds
        with self._recent_lock:
            self._recent_inputs[_hash(content.strip().lower())] = now
            stale = [digest for digest, seen_at in self._recent_inputs.items() if now - seen_at >= window]
            for digest in stale:
                del self._recent_inputs[digest]

    @staticmethod
    def extraction_key(user_id: str, messages: List[Dict[str, str]]) -> str:
        contents = '\x1f'.join(str(m.get('content') or '') for m in messages if isinstance(m, dict))
        return _hash(f'{user_id}\x1e{contents}')

    def smart_extraction(self,
                         user_id: str,
                         messages: List[Dict[str, str]],
                         force_extraction: bool = False) -> SmartExtractionResponse:
        """
        Gate, cache and schedule extraction for a message set.

        Args:
            user_id: Owner of the memories
            messages: List of message dicts with 'role' and 'content' keys
            force_extraction: Bypass the gate and the batch queue

        Returns:
            SmartExtractionResponse; never raises
        """
        start = self._clock()
        cache_key = self.extraction_key(user_id, messages or [])

        if self.config.enable_cache:
            cached = self.extraction_cache.get(cache_key)
            if cached is not None:
                self._count('extraction_cache_hits')
                return SmartExtractionResponse(extracted_memories=list(cached.memories),
                                               source='cache',
                                               confidence=cached.confidence,
                                               reason='cached extraction',
                                               performance=self._elapsed(start))

        content = latest_user_content(messages)
        if not force_extraction and self.config.enable_smart_extraction:
            reason = self.should_skip(content)
            if reason:
                self._count('extractions_skipped')
                logger.debug(f'Skipping extraction for user {user_id}: {reason}')
                return SmartExtractionResponse(extracted_memories=[],
                                               source='smart',
                                               confidence=0.9,
                                               reason=reason,
                                               performance=self._elapsed(start))

        priority = priority_score(content)
        self._remember_input(content)

        run_now = (force_extraction or not self.config.enable_batch_processing
                   or priority > self.config.high_priority_threshold)
        if not run_now:
            operation = BatchOperation(type='extract',
                                       payload={
                                           'user_id': user_id,
                                           'messages': list(messages),
                                           'cache_key': cache_key
                                       },
                                       enqueued_at=self._clock(),
                                       priority=priority)
            if self.queue.enqueue(operation):
                self._count('extractions_batched')
                if not self.queue.running:
                    self.start()
                return SmartExtractionResponse(extracted_memories=[],
                                               source='batched',
                                               confidence=0.8,
                                               reason='queued for batch extraction',
                                               priority=priority,
                                               performance=self._elapsed(start))

        outcome = self._run_extraction(user_id, messages, cache_key)
        return SmartExtractionResponse(extracted_memories=outcome.memories,
                                       source='llm',
                                       confidence=outcome.confidence,
                                       reason=outcome.reasoning,
                                       priority=priority,
                                       performance=self._elapsed(start))

    def _run_extraction(self, user_id: str, messages: List[Dict[str, str]], cache_key: str) -> ExtractionOutcome:
        self._count('extractions_run')
        try:
            outcome = self.extraction_pipeline(user_id, messages)
        except Exception as e:
            logger.error(f'Extraction pipeline failed for user {user_id}: {e}')
            return ExtractionOutcome(memories=[], confidence=0.0, reasoning=f'extraction failed: {e}', method='failed')

        if self.config.enable_cache:
            self.extraction_cache.set(cache_key, outcome)
        if outcome.memories:
            self.invalidate_user(user_id)
        return outcome

    def invalidate_user(self, user_id: str) -> int:
        """Drop cached searches for a user whose memories changed."""
        return self.search_cache.invalidate(lambda key: key[0] == user_id)

    def _handle_operation(self, operation: BatchOperation) -> None:
        if operation.type != 'extract':
            logger.warning(f'Unsupported batch operation type: {operation.type}')
            return
        payload = operation.payload
        self._run_extraction(payload['user_id'], payload['messages'], payload['cache_key'])

    def process_batch_queue(self) -> int:
        """Drain one batch of queued extractions now."""
        return self.queue.drain(self._handle_operation)

    def _housekeeping(self) -> None:
        self.search_cache.sweep()
        self.extraction_cache.sweep()

    def start(self) -> None:
        """Start the periodic batch drainer and cache sweep."""
        self.queue.start(self.config.batch_interval_seconds, self._handle_operation, on_tick=self._housekeeping)

    def stop(self) -> None:
        self.queue.stop()

    def cleanup(self) -> None:
        """Stop background work, flush remaining queued extractions and clear caches."""
        self.stop()
        while len(self.queue):
            self.process_batch_queue()
        self.search_cache.clear()
        self.extraction_cache.clear()
        with self._recent_lock:
            self._recent_inputs.clear()

    def _elapsed(self, start: float) -> Dict[str, float]:
        return {'elapsed_ms': round((self._clock() - start) * 1000, 2)}

    def get_system_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._stats)
        with self._patterns_lock:
            top_queries = self._query_patterns.most_common(10)
        return {
            'counters': counters,
            'search_cache': self.search_cache.stats(),
            'extraction_cache': self.extraction_cache.stats(),
            'queue_length': len(self.queue),
            'batch_processed': self.queue.processed,
            'batch_failed': self.queue.failed,
            'index': self.index.stats(),
            'search': self.search_engine.search_stats(),
            'top_queries': top_queries,
        }
