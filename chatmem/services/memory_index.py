"""
In-memory inverted indexes over stored memories.

Four index types are maintained: topics (keywords), entities (capitalized
names and Chinese name/organization/place patterns), relations (verb and
preposition hits) and concepts (related terms of the top keywords). Index
lookups are cheap, so the smart manager tries them before the full hybrid
search.
"""

import re
import threading
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from ..models.core import INDEX_TYPES, Memory, MemoryIndexEntry, SearchResult
from ..utils.config import IndexConfig
from ..utils.logging_config import get_logger
from .memory_store import MemoryStore
from .nlp import STOP_WORDS, NLPService

logger = get_logger(__name__)

MAX_TOPICS = 10
MAX_ENTITIES = 20
MAX_RELATIONS = 15
MAX_CONCEPTS = 10
MAX_CANDIDATES = 1000

SCORE_WEIGHTS = {'topic': 0.3, 'entity': 0.4, 'relation': 0.2, 'concept': 0.1}
IMPORTANCE_SCORE_WEIGHT = 0.2

ENTITY_PATTERNS = [
    # Capitalized runs: people, places, products
    re.compile(r'\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b'),
    # Organizations
    re.compile(r'\b([A-Z][\w&]*(?:\s+[A-Z][\w&]*)*\s+(?:Inc|Corp|LLC|Ltd|Company|Group|University|Bank|Labs))\b'),
    # Acronyms such as IBM or AWS
    re.compile(r'\b([A-Z]{2,6})\b'),
    re.compile(r'([张王李赵刘陈杨黄周吴徐孙胡朱高林何郭马罗梁宋郑谢韩唐冯于董萧程曹袁邓许傅沈曾彭吕苏卢蒋蔡贾丁魏薛叶阎余潘杜戴夏钟汪田任姜范方石姚谭廖邹熊金陆郝孔白崔康毛邱秦江史顾侯邵孟龙万段雷钱汤尹黎易常武乔贺赖龚文][一-龥]{1,3})'),
    re.compile(r'([一-龥A-Za-z0-9]+(?:公司|有限公司|股份有限公司|集团|企业|科技|技术))'),
    re.compile(r'([一-龥]+(?:市|省|县|区|镇|街道|路|街))'),
]

RELATION_PATTERNS = [
    re.compile(r'\b(live|lives|lived|living|work|works|worked|working|study|studies|studied|like|likes|love|loves|own|owns|'
               r'manage|manages|lead|leads|born|married|prefer|prefers|use|uses|hate|hates|moved|graduated|founded)\b',
               re.IGNORECASE),
    re.compile(r'(是|为|做|担任|负责|管理|领导|工作|学习|居住|来自|属于|拥有|喜欢|讨厌)'),
    re.compile(r'(在|于|从|到|向|对|与|和|跟|同|为了|因为|由于)'),
]


def _unique(values: Iterable[str], limit: int) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))[:limit]


class MemoryIndex:
    """Topic, entity, relation and concept indexes keyed by memory id."""

    def __init__(self, nlp: NLPService, config: IndexConfig):
        self.nlp = nlp
        self.config = config
        self._lock = threading.RLock()
        self._indexes: Dict[str, Dict[str, MemoryIndexEntry]] = {index_type: {} for index_type in INDEX_TYPES}
        self._memory_terms: Dict[str, Dict[str, List[str]]] = {}
        self._owners: Dict[str, str] = {}
        self.last_rebuild: Optional[float] = None

    def extract_topics(self, text: str) -> List[str]:
        keywords = self.nlp.extract_keywords(text)
        return _unique((k.lower().strip() for k in keywords if len(k.strip()) > 1), MAX_TOPICS)

    @staticmethod
    def extract_entities(text: str) -> List[str]:
        entities = []
        for pattern in ENTITY_PATTERNS:
            for match in pattern.findall(text):
                if match.lower() not in STOP_WORDS and len(match) > 1:
                    entities.append(match)
        return _unique(entities, MAX_ENTITIES)

    @staticmethod
    def extract_relations(text: str) -> List[str]:
        relations = []
        for pattern in RELATION_PATTERNS:
            relations.extend(match.lower() for match in pattern.findall(text))
        return _unique(relations, MAX_RELATIONS)

    def extract_concepts(self, topics: List[str]) -> List[str]:
        if not topics:
            return []
        return _unique(self.nlp.generate_related_terms(topics[:3]), MAX_CONCEPTS)

    def analyze_query(self, text: str) -> Dict[str, List[str]]:
        """Run the four derivation passes over a piece of text."""
        topics = self.extract_topics(text)
        return {
            'topic': topics,
            'entity': self.extract_entities(text),
            'relation': self.extract_relations(text),
            'concept': self.extract_concepts(topics),
        }

    def _add(self, index_type: str, value: str, memory_id: str) -> None:
        bucket = self._indexes[index_type].get(value)
        if bucket is None:
            bucket = MemoryIndexEntry(type=index_type, value=value)
            self._indexes[index_type][value] = bucket
        if memory_id not in bucket.memory_ids:
            bucket.memory_ids.add(memory_id)
            bucket.last_updated = datetime.now()

    def index_memory(self, memory: Memory) -> None:
        """Add one memory to the indexes without a full rebuild."""
        if not memory.id or not memory.content:
            return
        terms = self.analyze_query(memory.content)
        with self._lock:
            for index_type, values in terms.items():
                for value in values:
                    self._add(index_type, value, memory.id)
            self._memory_terms[memory.id] = terms
            self._owners[memory.id] = memory.user_id
        logger.debug(f'Indexed memory {memory.id}')

    def remove_memory(self, memory_id: str) -> None:
        with self._lock:
            terms = self._memory_terms.pop(memory_id, None)
            self._owners.pop(memory_id, None)
            if not terms:
                return
            for index_type, values in terms.items():
                index = self._indexes[index_type]
                for value in values:
                    bucket = index.get(value)
                    if bucket is None:
                        continue
                    bucket.memory_ids.discard(memory_id)
                    if not bucket.memory_ids:
                        del index[value]

    def rebuild(self, memories: List[Memory]) -> int:
        """Clear the indexes, index every memory, then optimize.

        Returns:
            Number of memories indexed
        """
        start = time.time()
        with self._lock:
            for index in self._indexes.values():
                index.clear()
            self._memory_terms.clear()
            self._owners.clear()
            count = 0
            for memory in memories:
                if memory.id and memory.content:
                    self.index_memory(memory)
                    count += 1
            pruned = self.optimize()
            self.last_rebuild = time.time()

        logger.info(f'Rebuilt memory index over {count} memories in {time.time() - start:.2f}s '
                    f'({pruned} sparse buckets pruned, {self.size()} buckets kept)')
        return count

    def optimize(self) -> int:
        """Drop buckets below min_memory_count, then the lightest ones above max_index_size.

        Returns:
            Number of buckets removed
        """
        removed = 0
        with self._lock:
            for index in self._indexes.values():
                sparse = [value for value, bucket in index.items() if bucket.weight < self.config.min_memory_count]
                for value in sparse:
                    del index[value]
                removed += len(sparse)

            overflow = self.size() - self.config.max_index_size
            if overflow > 0:
                buckets = sorted(((bucket.weight, index_type, value)
                                  for index_type, index in self._indexes.items()
                                  for value, bucket in index.items()))
                for _, index_type, value in buckets[:overflow]:
                    del self._indexes[index_type][value]
                removed += overflow
        return removed

    def query(self,
              topics: Iterable[str] = (),
              entities: Iterable[str] = (),
              relations: Iterable[str] = (),
              concepts: Iterable[str] = ()) -> Set[str]:
        """Union of memory ids in every matched bucket.

        Topics match by substring containment in either direction, the other
        index types need an exact bucket hit.
        """
        ids: Set[str] = set()
        with self._lock:
            topic_index = self._indexes['topic']
            for topic in topics:
                topic = topic.lower()
                for value, bucket in topic_index.items():
                    if topic in value or value in topic:
                        ids.update(bucket.memory_ids)
            for index_type, values in (('entity', entities), ('relation', relations), ('concept', concepts)):
                index = self._indexes[index_type]
                for value in values:
                    bucket = index.get(value)
                    if bucket is not None:
                        ids.update(bucket.memory_ids)
        return ids

    @staticmethod
    def score(memory: Memory, analysis: Dict[str, List[str]]) -> SearchResult:
        content = memory.content
        lowered = content.lower()
        matches = {
            'topic': [t for t in analysis['topic'] if t.lower() in lowered],
            'entity': [e for e in analysis['entity'] if e in content],
            'relation': [r for r in analysis['relation'] if r in lowered],
            'concept': [c for c in analysis['concept'] if c.lower() in lowered],
        }
        score = sum(len(hits) * SCORE_WEIGHTS[index_type] for index_type, hits in matches.items())
        score += memory.importance / 10 * IMPORTANCE_SCORE_WEIGHT
        return SearchResult(memory=memory,
                            relevance_score=min(score, 1.0),
                            search_type='index',
                            details={f'{index_type}_matches': hits for index_type, hits in matches.items()})

    def search(self,
               user_id: str,
               query: str,
               store: MemoryStore,
               max_results: int = 20,
               threshold: Optional[float] = None) -> List[SearchResult]:
        """Index-backed search: candidate ids, store lookup, relevance scoring.

        Args:
            user_id: Owner of the memories
            query: Query text
            store: Store used to load candidate memories
            max_results: Maximum number of results
            threshold: Minimum relevance (uses config default if None)

        Returns:
            Results sorted by relevance, highest first
        """
        threshold = self.config.index_search_threshold if threshold is None else threshold
        analysis = self.analyze_query(query)
        candidate_ids = self.query(analysis['topic'], analysis['entity'], analysis['relation'], analysis['concept'])
        if not candidate_ids:
            return []

        with self._lock:
            owned = sorted(memory_id for memory_id in candidate_ids if self._owners.get(memory_id) == user_id)
        if not owned:
            return []

        memories = store.get_by_ids(user_id, owned[:MAX_CANDIDATES])
        results = [self.score(memory, analysis) for memory in memories]
        results = [r for r in results if r.relevance_score >= threshold]
        results.sort(key=lambda r: r.relevance_score, reverse=True)
        logger.debug(f'Index search for user {user_id}: {len(owned)} of {len(candidate_ids)} candidates owned, '
                     f'{len(results)} above threshold')
        return results[:max_results]

    def needs_rebuild(self) -> bool:
        if self.last_rebuild is None:
            return True
        return time.time() - self.last_rebuild > self.config.rebuild_interval_hours * 3600

    def size(self) -> int:
        return sum(len(index) for index in self._indexes.values())

    def stats(self) -> Dict[str, object]:
        with self._lock:
            counts = {f'{index_type}_count': len(index) for index_type, index in self._indexes.items()}
            counts['indexed_memories'] = len(self._memory_terms)
        counts['total_index_size'] = self.size()
        counts['last_rebuild'] = self.last_rebuild
        return counts
