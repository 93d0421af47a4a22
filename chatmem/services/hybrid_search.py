"""
Hybrid Search Engine combining vector, keyword and semantic-expansion stages.

Stages run in a fixed order (vector, keyword, semantic). Each stage failure
is contained: the stage contributes no candidates and the others still run.
Only when every executed stage fails does the response carry an error.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..models.core import Memory, SearchResult
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import SearchConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_since
from ..utils.validation import normalize_category
from ..utils.vector_math import cosine_similarity
from .category_registry import CategoryRegistry
from .memory_store import MemoryStore, MemoryStoreError
from .nlp import NLPService

logger = get_logger(__name__)

CONTENT_MATCH_SCORE = 0.8
CATEGORY_MATCH_SCORE = 0.7
TAG_MATCH_SCORE = 0.65
SEMANTIC_MATCH_SCORE = 0.6
MAX_RELATED_TERMS = 5
RECENCY_WEIGHT = 0.1
STATS_HISTORY = 100


@dataclass
class HybridSearchResponse:
    """Ranked results plus per-call diagnostics."""
    results: List[SearchResult]
    performance: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class HybridSearchEngine:
    """Rank a user's memories against a query using three candidate stages."""

    def __init__(self,
                 store: MemoryStore,
                 embedder: Optional[BedrockEmbed],
                 nlp: NLPService,
                 registry: CategoryRegistry,
                 config: SearchConfig,
                 scan_limit: int = 2000):
        """
        Initialize the search engine.

        Args:
            store: Memory store queried by every stage
            embedder: Embedding client (None disables the vector stage)
            nlp: Keyword extraction and related-term expansion
            registry: Known categories for the category tier
            config: Default search settings
            scan_limit: Maximum rows pulled for the vector scan
        """
        self.store = store
        self.embedder = embedder
        self.nlp = nlp
        self.registry = registry
        self.config = config
        self.scan_limit = scan_limit
        self._history = deque(maxlen=STATS_HISTORY)
        self._history_lock = threading.Lock()

        logger.info('Initialized HybridSearchEngine')

    def _resolve_config(self, overrides: Union[None, SearchConfig, Dict[str, Any]]) -> SearchConfig:
        if overrides is None:
            return self.config
        if isinstance(overrides, SearchConfig):
            return overrides
        known = {f.name for f in fields(SearchConfig)}
        unknown = set(overrides) - known
        if unknown:
            logger.warning(f'Ignoring unknown search options: {sorted(unknown)}')
        return replace(self.config, **{k: v for k, v in overrides.items() if k in known})

    def search(self, user_id: str, query: str, config: Union[None, SearchConfig, Dict[str, Any]] = None) -> HybridSearchResponse:
        """
        Search a user's memories.

        Args:
            user_id: Owner of the memories
            query: Natural language query
            config: SearchConfig or dict of SearchConfig field overrides

        Returns:
            HybridSearchResponse; never raises
        """
        start = time.time()
        if not query or not query.strip():
            return HybridSearchResponse(results=[], performance={'elapsed_ms': 0.0})

        cfg = self._resolve_config(config)
        query = query.strip()
        performance: Dict[str, Any] = {'failed_stages': []}
        stage_results: List[List[SearchResult]] = []
        executed = 0

        keywords = self._keywords(query)
        stages = [('vector', lambda: self._vector_stage(user_id, query, cfg, performance), self.embedder is not None),
                  ('keyword', lambda: self._keyword_stage(user_id, query, keywords, cfg), cfg.keyword_weight > 0),
                  ('semantic', lambda: self._semantic_stage(user_id, keywords, cfg), cfg.semantic_weight > 0)]

        for name, run, enabled in stages:
            if not enabled:
                performance[f'{name}_candidates'] = 0
                continue
            executed += 1
            try:
                results = run()
            except (BedrockEmbedError, MemoryStoreError) as e:
                logger.warning(f'{name} stage failed for user {user_id}: {e}')
                performance['failed_stages'].append(name)
                results = []
            except Exception as e:
                logger.error(f'Unexpected error in {name} stage for user {user_id}: {e}')
                performance['failed_stages'].append(name)
                results = []
            performance[f'{name}_candidates'] = len(results)
            stage_results.append(results)

        merged = self.merge(stage_results)
        ranked = self.rank(merged, cfg)[:cfg.max_results]

        performance['merged_candidates'] = len(merged)
        performance['returned'] = len(ranked)
        performance['elapsed_ms'] = round((time.time() - start) * 1000, 2)
        self._record(performance)

        error = None
        if executed and len(performance['failed_stages']) == executed:
            error = f'All search stages failed: {", ".join(performance["failed_stages"])}'
            logger.warning(f'Search for user {user_id} degraded to empty result: {error}')

        logger.debug(f'Hybrid search for user {user_id} returned {len(ranked)} results in {performance["elapsed_ms"]}ms')
        return HybridSearchResponse(results=ranked, performance=performance, error=error)

    def _keywords(self, query: str) -> List[str]:
        try:
            return self.nlp.extract_keywords(query)
        except Exception as e:
            logger.warning(f'Keyword extraction failed, searching with the whole query only: {e}')
            return []

    def _vector_stage(self, user_id: str, query: str, cfg: SearchConfig, performance: Dict[str, Any]) -> List[SearchResult]:
        query_vector = self.embedder.embed_query(query, allow_placeholder=False)
        memories = self.store.get_with_embeddings(user_id, self.scan_limit)
        if not memories:
            return []

        scored = [(memory, cosine_similarity(query_vector, memory.embedding)) for memory in memories]
        similarities = [similarity for _, similarity in scored]
        threshold = self.effective_threshold(similarities, cfg)
        performance['vector_threshold'] = round(threshold, 4)

        return [
            SearchResult(memory=memory, relevance_score=similarity, search_type='vector', details={'similarity': similarity})
            for memory, similarity in scored if similarity >= threshold
        ]

    @staticmethod
    def effective_threshold(similarities: List[float], cfg: SearchConfig) -> float:
        """Rescale the vector threshold to the best match when the corpus similarity runs low."""
        if not similarities or not cfg.enable_dynamic_threshold:
            return cfg.vector_threshold
        mean_similarity = sum(similarities) / len(similarities)
        max_similarity = max(similarities)
        if mean_similarity < cfg.low_mean_similarity and max_similarity > cfg.moderate_max_similarity:
            return max(cfg.dynamic_threshold_floor, max_similarity * cfg.dynamic_threshold_ratio)
        return cfg.vector_threshold

    def _matching_categories(self, keyword: str) -> List[str]:
        normalized = normalize_category(keyword)
        if len(normalized) < 3 or normalized == 'other':
            return []
        names = []
        for info in self.registry.all():
            if info.name == normalized or info.name.split('_')[0] == normalized:
                names.append(info.name)
        return names

    def _keyword_stage(self, user_id: str, query: str, keywords: List[str], cfg: SearchConfig) -> List[SearchResult]:
        found: Dict[str, SearchResult] = {}

        def add(memories: List[Memory], score: float, tier: str, term: str) -> None:
            for memory in memories:
                current = found.get(memory.id)
                if current is None or score > current.relevance_score:
                    found[memory.id] = SearchResult(memory=memory,
                                                    relevance_score=score,
                                                    search_type='keyword',
                                                    details={'tier': tier, 'term': term})

        limit = cfg.max_results
        for term in dict.fromkeys([query] + keywords):
            add(self.store.search_by_content_like(user_id, term, limit), CONTENT_MATCH_SCORE, 'content', term)

        for keyword in keywords:
            for category in self._matching_categories(keyword):
                add(self.store.search_by_category(user_id, category, limit), CATEGORY_MATCH_SCORE, 'category', category)

        for keyword in keywords:
            add(self.store.search_by_tag(user_id, keyword, limit), TAG_MATCH_SCORE, 'tag', keyword)

        return list(found.values())

    def _semantic_stage(self, user_id: str, keywords: List[str], cfg: SearchConfig) -> List[SearchResult]:
        if not keywords:
            return []
        related = self.nlp.generate_related_terms(keywords)[:MAX_RELATED_TERMS]
        found: Dict[str, SearchResult] = {}
        for term in dict.fromkeys(keywords + related):
            for memory in self.store.search_by_content_like(user_id, term, cfg.max_results):
                if memory.id not in found:
                    found[memory.id] = SearchResult(memory=memory,
                                                    relevance_score=SEMANTIC_MATCH_SCORE,
                                                    search_type='semantic',
                                                    details={'term': term})
        return list(found.values())

    @staticmethod
    def merge(stage_results: List[List[SearchResult]]) -> List[SearchResult]:
        """Key by memory id; the maximum raw score wins and multi-stage hits become 'hybrid'."""
        merged: Dict[str, SearchResult] = {}
        stages: Dict[str, List[str]] = {}
        for results in stage_results:
            for result in results:
                memory_id = result.memory.id
                seen = stages.setdefault(memory_id, [])
                if result.search_type not in seen:
                    seen.append(result.search_type)
                current = merged.get(memory_id)
                if current is None or result.relevance_score > current.relevance_score:
                    merged[memory_id] = SearchResult(memory=result.memory,
                                                     relevance_score=result.relevance_score,
                                                     search_type=result.search_type,
                                                     details=dict(result.details))

        for memory_id, result in merged.items():
            result.details['stages'] = stages[memory_id]
            if len(stages[memory_id]) > 1:
                result.search_type = 'hybrid'
        return list(merged.values())

    @staticmethod
    def final_score(raw_score: float, memory: Memory, cfg: SearchConfig, now: Optional[datetime] = None) -> float:
        """rawScore*(1-iw) + (importance/10)*iw + decay^days * 0.1"""
        iw = cfg.importance_weight
        recency = cfg.temporal_decay**days_since(memory.timestamp, now)
        return raw_score * (1 - iw) + (memory.importance / 10) * iw + recency * RECENCY_WEIGHT

    def rank(self, results: List[SearchResult], cfg: SearchConfig) -> List[SearchResult]:
        now = datetime.now()
        ranked = []
        for result in results:
            raw = result.relevance_score
            result.details['raw_score'] = raw
            ranked.append(
                SearchResult(memory=result.memory,
                             relevance_score=self.final_score(raw, result.memory, cfg, now),
                             search_type=result.search_type,
                             details=result.details))
        ranked.sort(key=lambda r: (r.relevance_score, r.memory.timestamp), reverse=True)
        return ranked

    def _record(self, performance: Dict[str, Any]) -> None:
        with self._history_lock:
            self._history.append(dict(performance, recorded_at=time.time()))

    def search_stats(self) -> Dict[str, Any]:
        """Aggregates over the most recent searches."""
        with self._history_lock:
            history = list(self._history)
        if not history:
            return {'searches': 0, 'average_ms': 0.0, 'average_results': 0.0, 'degraded_searches': 0}
        return {
            'searches': len(history),
            'average_ms': round(sum(p['elapsed_ms'] for p in history) / len(history), 2),
            'average_results': round(sum(p['returned'] for p in history) / len(history), 2),
            'degraded_searches': sum(1 for p in history if p['failed_stages']),
        }
