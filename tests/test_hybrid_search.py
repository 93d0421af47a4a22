"""Tests for the hybrid search engine."""
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from chatmem.models.core import Memory, SearchResult
from chatmem.services.category_registry import CategoryRegistry
from chatmem.services.hybrid_search import HybridSearchEngine
from chatmem.services.memory_store import MemoryStoreError
from chatmem.services.nlp import NLPService
from chatmem.utils.config import SearchConfig


class MappedEmbedder:
    """Returns a fixed vector per text."""

    def __init__(self, vectors):
        self.vectors = vectors

    def embed_query(self, text, allow_placeholder=None):
        return self.vectors[text]

    def embed_document(self, text, allow_placeholder=None):
        return self.vectors[text]


def make_engine(store, embedder=None, config=None):
    return HybridSearchEngine(store, embedder, NLPService(), CategoryRegistry(), config or SearchConfig())


def add(store, content, user_id='u1', **kwargs):
    memory = Memory(id=None, user_id=user_id, content=content, **kwargs)
    memory.id = store.insert(memory)
    return memory


def test_location_question_finds_location_memory(store):
    seattle = add(store, 'I live in Seattle', category='personal_info', importance=7)
    add(store, 'I enjoy hiking on weekends', category='interests', importance=5)

    response = make_engine(store).search('u1', 'Where do I live?')

    assert [r.memory.id for r in response.results] == [seattle.id]
    result = response.results[0]
    assert result.search_type == 'hybrid'
    assert result.details['stages'] == ['keyword', 'semantic']
    assert result.details['raw_score'] == 0.8
    assert result.relevance_score == pytest.approx(0.8 * 0.8 + 0.7 * 0.2 + 0.1, abs=1e-3)
    assert response.error is None


def test_search_is_scoped_to_user(store):
    add(store, 'I live in Seattle', user_id='alice')

    assert make_engine(store).search('bob', 'Where do I live?').results == []


def test_vector_stage_applies_threshold(store):
    close = add(store, 'close', embedding=[1.0, 0.0, 0.0])
    add(store, 'orthogonal', embedding=[0.0, 1.0, 0.0])
    partial = add(store, 'partial', embedding=[0.6, 0.8, 0.0])
    engine = make_engine(store, MappedEmbedder({'zzz': [1.0, 0.0, 0.0]}))

    response = engine.search('u1', 'zzz')

    assert [r.memory.id for r in response.results] == [close.id, partial.id]
    assert all(r.search_type == 'vector' for r in response.results)
    assert response.performance['vector_threshold'] == 0.25
    assert response.results[1].details['similarity'] == pytest.approx(0.6)


def test_embedding_failure_degrades_to_keyword_stages(store, failing_embedder):
    seattle = add(store, 'I live in Seattle')

    response = make_engine(store, failing_embedder).search('u1', 'Where do I live?')

    assert [r.memory.id for r in response.results] == [seattle.id]
    assert response.performance['failed_stages'] == ['vector']
    assert response.error is None


def test_all_stages_failing_reports_error():
    store = MagicMock()
    for method in ('get_with_embeddings', 'search_by_content_like', 'search_by_category', 'search_by_tag'):
        getattr(store, method).side_effect = MemoryStoreError('store unavailable')
    embedder = MappedEmbedder({'Where do I live?': [1.0]})

    response = make_engine(store, embedder).search('u1', 'Where do I live?')

    assert response.results == []
    assert response.performance['failed_stages'] == ['vector', 'keyword', 'semantic']
    assert 'All search stages failed' in response.error


def test_category_and_tag_tiers(store):
    payroll = add(store, 'Acme payroll runs monthly', category='work_context')
    weekend = add(store, 'Goes to the mountains every weekend', tags=['hiking'])
    engine = make_engine(store)

    by_category = engine.search('u1', 'work').results
    by_tag = engine.search('u1', 'hiking').results

    assert [r.memory.id for r in by_category] == [payroll.id]
    assert by_category[0].details['tier'] == 'category'
    assert by_category[0].details['raw_score'] == 0.7
    assert [r.memory.id for r in by_tag] == [weekend.id]
    assert by_tag[0].details['raw_score'] == 0.65


def test_zero_weights_disable_stages(store):
    add(store, 'I live in Seattle')

    response = make_engine(store).search('u1', 'Where do I live?', {'keyword_weight': 0, 'semantic_weight': 0, 'bogus': 1})

    assert response.results == []
    assert response.error is None


def test_empty_query(store):
    assert make_engine(store).search('u1', '   ').results == []


def test_max_results_override(store):
    for i in range(5):
        add(store, f'I live in city number {i}')

    response = make_engine(store).search('u1', 'live', {'max_results': 2})

    assert len(response.results) == 2


class TestThreshold:

    def test_low_similarity_corpus_lowers_threshold(self):
        assert HybridSearchEngine.effective_threshold([0.22, 0.1, 0.05], SearchConfig()) == pytest.approx(0.15)

    def test_ratio_applies_above_floor(self):
        cfg = SearchConfig(vector_threshold=0.5)

        assert HybridSearchEngine.effective_threshold([0.4, 0.1, 0.1], cfg) == pytest.approx(0.24)

    def test_strong_outlier_raises_threshold(self):
        similarities = [0.9] + [0.05] * 9

        assert HybridSearchEngine.effective_threshold(similarities, SearchConfig()) == pytest.approx(0.54)

    @pytest.mark.parametrize('similarities', [[0.5, 0.5], [0.1, 0.1], []])
    def test_threshold_unchanged(self, similarities):
        assert HybridSearchEngine.effective_threshold(similarities, SearchConfig()) == 0.25

    def test_dynamic_threshold_disabled(self):
        cfg = SearchConfig(enable_dynamic_threshold=False)

        assert HybridSearchEngine.effective_threshold([0.22, 0.1, 0.05], cfg) == 0.25


class TestRanking:

    def test_newer_memory_scores_higher(self):
        now = datetime.now()
        recent = Memory(id='a', user_id='u1', content='x', timestamp=now)
        old = replace(recent, id='b', timestamp=now - timedelta(days=30))
        cfg = SearchConfig()

        assert HybridSearchEngine.final_score(0.5, recent, cfg, now) > HybridSearchEngine.final_score(0.5, old, cfg, now)

    def test_importance_raises_score(self):
        now = datetime.now()
        low = Memory(id='a', user_id='u1', content='x', importance=2, timestamp=now)
        high = replace(low, importance=9)
        cfg = SearchConfig()

        assert HybridSearchEngine.final_score(0.5, high, cfg, now) > HybridSearchEngine.final_score(0.5, low, cfg, now)

    def test_merge_keeps_highest_score(self):
        memory = Memory(id='m1', user_id='u1', content='x')
        merged = HybridSearchEngine.merge([[SearchResult(memory, 0.5, 'vector')], [SearchResult(memory, 0.8, 'keyword')]])

        assert len(merged) == 1
        assert merged[0].relevance_score == 0.8
        assert merged[0].search_type == 'hybrid'
        assert merged[0].details['stages'] == ['vector', 'keyword']

    def test_rank_orders_by_final_score(self, store):
        engine = make_engine(store)
        now = datetime.now()
        weak = SearchResult(Memory(id='a', user_id='u1', content='x', timestamp=now), 0.3, 'keyword')
        strong = SearchResult(Memory(id='b', user_id='u1', content='y', timestamp=now), 0.9, 'keyword')

        ranked = engine.rank([weak, strong], SearchConfig())

        assert [r.memory.id for r in ranked] == ['b', 'a']


def test_search_stats(store):
    engine = make_engine(store)
    engine.search('u1', 'anything')
    engine.search('u1', 'else')

    stats = engine.search_stats()

    assert stats['searches'] == 2
    assert stats['degraded_searches'] == 0
