"""Tests for the memory management service."""
import time

import pytest

from chatmem.services.memory_management import MemoryManagementError, MemoryManagementService
from chatmem.utils.bedrock_llm import BedrockLLMError
from fakes import EMBED_DIMENSION, FakeLLM, extraction_response

SEATTLE = {'content': 'User lives in Seattle', 'category': 'personal_info', 'importance': 7, 'tags': ['location']}


def user(content):
    return [{'role': 'user', 'content': content}]


@pytest.fixture
def service(app_config, store, fake_embedder, fake_llm):
    return MemoryManagementService(app_config, store=store, embedder=fake_embedder, llm=fake_llm)


def make_service(app_config, store, fake_embedder, *responses):
    llm = FakeLLM(list(responses))
    return MemoryManagementService(app_config, store=store, embedder=fake_embedder, llm=llm), llm


class TestAdd:

    def test_forced_add_stores_embedded_memories(self, app_config, store, fake_embedder):
        service, llm = make_service(app_config, store, fake_embedder, extraction_response([SEATTLE]))

        response = service.add('u1', user('I live in Seattle with my wife'), force=True)

        assert response.source == 'llm'
        assert [m.content for m in response.extracted_memories] == ['User lives in Seattle']
        stored = store.get('u1')
        assert len(stored) == 1
        assert stored[0].id == response.extracted_memories[0].id
        assert stored[0].source == 'conversation'
        assert stored[0].source_excerpt == 'I live in Seattle with my wife'
        assert len(store.get_with_embeddings('u1')[0].embedding) == EMBED_DIMENSION
        assert len(llm.calls) == 1

    def test_repeated_add_is_served_from_cache(self, app_config, store, fake_embedder):
        service, llm = make_service(app_config, store, fake_embedder, extraction_response([SEATTLE]))
        messages = user('I live in Seattle with my wife')

        service.add('u1', messages, force=True)
        again = service.add('u1', messages, force=True)

        assert again.source == 'cache'
        assert len(store.get('u1')) == 1
        assert len(llm.calls) == 1

    def test_gate_skips_trivial_input(self, service, fake_llm):
        response = service.add('u1', user('ok'))

        assert response.source == 'smart'
        assert fake_llm.calls == []

    def test_empty_messages(self, service):
        response = service.add('u1', [])

        assert (response.source, response.reason) == ('smart', 'no messages')

    def test_missing_user_raises(self, service):
        with pytest.raises(MemoryManagementError):
            service.add('  ', user('I live in Seattle'))

    def test_batched_add_is_flushed_on_shutdown(self, app_config, store, fake_embedder):
        app_config.smart.enable_batch_processing = True
        service, llm = make_service(app_config, store, fake_embedder, extraction_response([SEATTLE]))

        response = service.add('u1', user('I live in Seattle with my wife'))
        assert response.source == 'batched'
        assert store.get('u1') == []

        service.shutdown()

        assert [m.content for m in store.get('u1')] == ['User lives in Seattle']

    def test_default_service_drains_batched_add(self, app_config, store, fake_embedder):
        app_config.smart.enable_batch_processing = True
        app_config.smart.batch_interval_seconds = 0.05
        service, llm = make_service(app_config, store, fake_embedder, extraction_response([SEATTLE]))

        try:
            response = service.add('u1', user('I live in Seattle with my wife'))
            assert response.source == 'batched'

            deadline = time.time() + 2.0
            while not store.get('u1') and time.time() < deadline:
                time.sleep(0.01)

            assert [m.content for m in store.get('u1')] == ['User lives in Seattle']
            assert len(llm.calls) == 1
        finally:
            service.shutdown()


class TestExtractAndStore:

    def test_skips_memories_already_stored(self, app_config, store, fake_embedder):
        service, _ = make_service(app_config, store, fake_embedder, extraction_response([SEATTLE]))
        service.add_manual('u1', 'User lives in Seattle.', category='personal_info')

        outcome = service.extract_and_store('u1', user('I live in Seattle with my wife'))

        assert outcome.memories == []
        assert outcome.duplicates_skipped == 1
        assert len(store.get('u1')) == 1

    def test_low_confidence_memories_are_accepted(self, app_config, store, fake_embedder):
        service, _ = make_service(app_config, store, fake_embedder, extraction_response([SEATTLE], confidence=0.3))

        outcome = service.extract_and_store('u1', user('I live in Seattle with my wife'))

        assert outcome.confidence == 0.5
        assert len(outcome.memories) == 1

    def test_low_confidence_without_memories_uses_rules(self, app_config, store, fake_embedder):
        service, _ = make_service(app_config, store, fake_embedder, extraction_response([], confidence=0.2))

        outcome = service.extract_and_store('u1', user('I live in Seattle'))

        assert outcome.method == 'rule_based'
        assert outcome.confidence == 0.4
        assert [(m.content, m.category) for m in outcome.memories] == [('I live in Seattle', 'personal_info')]

    def test_llm_failure_falls_back_to_rules(self, app_config, store, fake_embedder, failing_llm):
        service = MemoryManagementService(app_config, store=store, embedder=fake_embedder, llm=failing_llm)

        outcome = service.extract_and_store('u1', user('I work at Acme as a data engineer'))

        assert outcome.method == 'rule_based'
        assert outcome.confidence == 0.5
        assert [m.category for m in outcome.memories] == ['work_context']
        assert service.registry.get('work_context').usage_count > 0

    def test_embedding_outage_stores_placeholder_vectors(self, app_config, store, failing_embedder):
        service, _ = make_service(app_config, store, failing_embedder, extraction_response([SEATTLE]))

        outcome = service.extract_and_store('u1', user('I live in Seattle with my wife'))

        assert len(outcome.memories[0].embedding) == EMBED_DIMENSION

    def test_new_category_is_registered(self, app_config, store, fake_embedder):
        pet = {'content': 'User has a cat named Miso', 'category': 'Pets', 'importance': 6}
        service, _ = make_service(app_config, store, fake_embedder, extraction_response([pet]))

        outcome = service.extract_and_store('u1', user('My cat Miso turned three'))

        assert outcome.memories[0].category == 'pets'
        assert service.registry.contains('pets')
        assert not service.registry.get('pets').is_core

    def test_llm_error_without_rule_match_stores_nothing(self, app_config, store, fake_embedder):
        service, _ = make_service(app_config, store, fake_embedder, BedrockLLMError('throttled'))

        outcome = service.extract_and_store('u1', user('hello there'))

        assert outcome.memories == []


class TestManualMemories:

    def test_add_manual(self, service, store):
        memory = service.add_manual('u1', '  Prefers window seats  ', category='Travel Plans', importance=6)

        assert memory.id is not None
        assert memory.content == 'Prefers window seats'
        assert (memory.category, memory.tags, memory.source) == ('travel_plans', ['travel_plans'], 'manual')
        assert service.registry.contains('travel_plans')
        assert store.get_by_id('u1', memory.id).content == 'Prefers window seats'

    def test_add_manual_source(self, service):
        assert service.add_manual('u1', 'Uploaded note', source='upload').source == 'upload'
        assert service.add_manual('u1', 'Other note', source='email').source == 'manual'

    def test_add_manual_requires_content(self, service):
        with pytest.raises(MemoryManagementError):
            service.add_manual('u1', '   ')

    def test_update_checks_owner(self, service, fake_embedder):
        memory = service.add_manual('u1', 'User lives in Seattle', category='personal_info')

        assert service.update('u2', memory.id, importance=9) is False

        embeds_before = len(fake_embedder.calls)
        assert service.update('u1', memory.id, content='User lives in Portland', category='Home')
        updated = service.store.get_by_id('u1', memory.id)
        assert (updated.content, updated.category) == ('User lives in Portland', 'home')
        assert len(fake_embedder.calls) == embeds_before + 1

    def test_invalid_update_raises(self, service):
        memory = service.add_manual('u1', 'User lives in Seattle')

        with pytest.raises(MemoryManagementError):
            service.update('u1', memory.id, content='   ')
        with pytest.raises(MemoryManagementError):
            service.update('u1', memory.id, user_id='u2')

    def test_delete(self, service, store):
        memory = service.add_manual('u1', 'User lives in Seattle')

        assert service.delete('u2', memory.id) is False
        assert service.delete('u1', '  ') is False
        assert service.delete('u1', memory.id) is True
        assert store.get('u1') == []
        assert service.delete('u1', memory.id) is False

    def test_list_memories_filters(self, service):
        service.add_manual('u1', 'Works at Acme', category='work_context', importance=9)
        service.add_manual('u1', 'Likes green tea', category='preferences', importance=4)

        assert [m.content for m in service.list_memories('u1', category='work_context')] == ['Works at Acme']
        assert [m.content for m in service.list_memories('u1', min_importance=5)] == ['Works at Acme']
        assert len(service.list_memories('u1', limit=1)) == 1

    def test_stats(self, service):
        service.add_manual('u1', 'Works at Acme', category='work_context', importance=8)

        stats = service.stats('u1')

        assert stats['memories']['total_memories'] == 1
        assert any(c['name'] == 'work_context' and c['is_core'] for c in stats['categories'])
        assert 'search_cache' in stats['system']


class TestSearch:

    def test_finds_manual_memory(self, service):
        memory = service.add_manual('u1', 'I live in Seattle', category='personal_info', importance=7)

        results = service.search('u1', 'Where do I live?')

        assert [r.memory.id for r in results] == [memory.id]
        assert not service.index.needs_rebuild()

    def test_results_are_user_scoped(self, service):
        service.add_manual('alice', 'I live in Seattle')

        assert service.search('bob', 'Where do I live?') == []

    def test_search_cache_is_invalidated_by_writes(self, service):
        service.add_manual('u1', 'I live in Seattle')
        service.search('u1', 'Where do I live?')

        service.add_manual('u1', 'I live part time in Lisbon')

        response = service.search_detailed('u1', 'Where do I live?')
        assert response.source != 'cache'
        assert len(response.results) == 2

    def test_missing_user_raises(self, service):
        with pytest.raises(MemoryManagementError):
            service.search('', 'anything')

    def test_rebuild_index(self, service):
        service.add_manual('u1', 'I live in Seattle')
        service.add_manual('u2', 'I live in Portland')

        assert service.rebuild_index() == 2
