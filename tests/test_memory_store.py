"""Tests for the in-memory and OpenSearch memory store backends."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from chatmem.models.core import Memory
from chatmem.services.memory_store import (InMemoryMemoryStore, MemoryStoreError, OpenSearchMemoryStore,
                                           create_memory_store)
from chatmem.utils.opensearch_client import OpenSearchError


def memory(content, user_id='u1', age_days=0, **kwargs):
    return Memory(id=None, user_id=user_id, content=content, timestamp=datetime.now() - timedelta(days=age_days), **kwargs)


class TestInMemoryMemoryStore:

    def test_insert_assigns_id_and_get_is_newest_first(self, store):
        old_id = store.insert(memory('User lives in Seattle', age_days=3))
        new_id = store.insert(memory('User works at Acme'))

        assert old_id != new_id
        assert [m.id for m in store.get('u1')] == [new_id, old_id]

    def test_users_are_isolated(self, store):
        memory_id = store.insert(memory('User lives in Seattle', user_id='alice'))

        assert store.get('bob') == []
        assert store.get_by_id('bob', memory_id) is None
        assert store.search_by_content_like('bob', 'seattle') == []
        assert store.get_by_ids('bob', [memory_id]) == []

    def test_filters_and_paging(self, store):
        store.insert(memory('a', category='work_context', importance=9, age_days=2))
        store.insert(memory('b', category='work_context', importance=3, age_days=1))
        store.insert(memory('c', category='preferences', importance=7, source='manual'))

        assert [m.content for m in store.get('u1', {'category': 'Work Context'})] == ['b', 'a']
        assert [m.content for m in store.get('u1', {'min_importance': 7})] == ['c', 'a']
        assert [m.content for m in store.get('u1', {'source': 'manual'})] == ['c']
        assert [m.content for m in store.get('u1', limit=1, offset=1)] == ['b']

    def test_content_and_tag_search_ignore_case(self, store):
        store.insert(memory('User lives in Seattle', tags=['Location']))

        assert len(store.search_by_content_like('u1', 'SEATTLE')) == 1
        assert len(store.search_by_tag('u1', 'location')) == 1
        assert store.search_by_content_like('u1', '  ') == []

    def test_category_search_orders_by_importance(self, store):
        store.insert(memory('low', category='work_context', importance=2))
        store.insert(memory('high', category='work_context', importance=9, age_days=5))

        assert [m.content for m in store.search_by_category('u1', 'work_context')] == ['high', 'low']

    def test_returned_rows_are_copies(self, store):
        memory_id = store.insert(memory('User lives in Seattle', tags=['city']))

        store.get_by_id('u1', memory_id).tags.append('mutated')

        assert store.get_by_id('u1', memory_id).tags == ['city']

    def test_update_validates_fields(self, store):
        memory_id = store.insert(memory('User lives in Seattle'))

        assert store.update(memory_id, category='Home Town', importance=42)
        updated = store.get_by_id('u1', memory_id)
        assert (updated.category, updated.importance) == ('home_town', 10)

        with pytest.raises(MemoryStoreError):
            store.update(memory_id, user_id='someone-else')
        with pytest.raises(MemoryStoreError):
            store.update(memory_id, content='   ')
        assert store.update('missing', importance=3) is False

    def test_access_count_and_delete(self, store):
        memory_id = store.insert(memory('User lives in Seattle'))

        assert store.update_access_count(memory_id)
        assert store.update_access_count(memory_id)
        touched = store.get_by_id('u1', memory_id)
        assert touched.access_count == 2
        assert touched.last_accessed is not None

        assert store.delete(memory_id)
        assert not store.delete(memory_id)
        assert store.get('u1') == []

    def test_embeddings_and_get_all(self, store):
        store.insert(memory('with vector', embedding=[0.1, 0.2]))
        store.insert(memory('without vector'))
        store.insert(memory('other user', user_id='u2'))

        assert [m.content for m in store.get_with_embeddings('u1')] == ['with vector']
        assert len(store.get_all()) == 3

    def test_stats(self, store):
        store.insert(memory('a', category='work_context', importance=8, embedding=[1.0]))
        store.insert(memory('b', category='work_context', importance=4))

        stats = store.stats('u1')

        assert stats == {'total_memories': 2, 'with_embeddings': 1, 'categories': {'work_context': 2}, 'average_importance': 6.0}


class TestOpenSearchMemoryStore:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.index_name = 'test_memories'
        return client

    @pytest.fixture
    def os_store(self, client):
        return OpenSearchMemoryStore(client, create_index=False)

    def test_creates_index_on_startup(self, client):
        OpenSearchMemoryStore(client)

        client.create_index_if_not_exists.assert_called_once()

    def test_index_creation_failure_is_logged(self, client):
        client.create_index_if_not_exists.side_effect = OpenSearchError('forbidden')

        OpenSearchMemoryStore(client)

    def test_insert(self, client, os_store):
        client.index_document.return_value = True

        memory_id = os_store.insert(memory('User lives in Seattle'))

        document = client.index_document.call_args[0][0]
        assert client.index_document.call_args[1]['doc_id'] == memory_id
        assert document['id'] == memory_id
        assert document['user_id'] == 'u1'

    def test_insert_not_acknowledged(self, client, os_store):
        client.index_document.return_value = False

        with pytest.raises(MemoryStoreError):
            os_store.insert(memory('User lives in Seattle'))

    def test_get_scopes_to_user_and_excludes_vectors(self, client, os_store):
        client.search.return_value = [{
            'id': 'm1',
            'score': 1.0,
            'document': {
                'user_id': 'u1',
                'content': 'User lives in Seattle',
                'timestamp': '2024-01-01T00:00:00'
            }
        }]

        results = os_store.get('u1', {'category': 'Personal Info', 'min_importance': 5})

        body = client.search.call_args[0][0]
        filters = body['query']['bool']['filter']
        assert filters[0] == {'term': {'user_id': 'u1'}}
        assert {'term': {'category': 'personal_info'}} in filters
        assert {'range': {'importance': {'gte': 5}}} in filters
        assert body['_source'] == {'excludes': ['embedding']}
        assert results[0].id == 'm1'

    def test_vector_scan_includes_embeddings(self, client, os_store):
        client.search.return_value = [{'id': 'm1', 'score': 1.0, 'document': {'user_id': 'u1', 'content': 'c', 'embedding': '[0.5, 0.5]'}}]

        results = os_store.get_with_embeddings('u1')

        assert '_source' not in client.search.call_args[0][0]
        assert results[0].embedding == [0.5, 0.5]

    def test_get_by_id_checks_owner(self, client, os_store):
        client.get_document.return_value = {'user_id': 'alice', 'content': 'c'}

        assert os_store.get_by_id('bob', 'm1') is None
        assert os_store.get_by_id('alice', 'm1').id == 'm1'

    def test_search_failure_becomes_store_error(self, client, os_store):
        client.search.side_effect = OpenSearchError('cluster unavailable')

        with pytest.raises(MemoryStoreError):
            os_store.search_by_content_like('u1', 'seattle')

    def test_access_count_uses_script(self, client, os_store):
        client.update_document.return_value = True

        assert os_store.update_access_count('m1')

        script = client.update_document.call_args[1]['script']
        assert script['lang'] == 'painless'
        assert 'access_count' in script['source']

    def test_update_sends_validated_partial(self, client, os_store):
        client.update_document.return_value = True

        os_store.update('m1', category='Work Context', importance=0)

        assert client.update_document.call_args[1]['partial'] == {'category': 'work_context', 'importance': 1}

    def test_stats_from_aggregations(self, client, os_store):
        client.raw_search.return_value = {
            'hits': {
                'total': {
                    'value': 3
                },
                'hits': []
            },
            'aggregations': {
                'categories': {
                    'buckets': [{
                        'key': 'work_context',
                        'doc_count': 2
                    }, {
                        'key': 'preferences',
                        'doc_count': 1
                    }]
                },
                'average_importance': {
                    'value': 6.666
                },
                'with_embeddings': {
                    'doc_count': 3
                }
            }
        }

        stats = os_store.stats('u1')

        assert stats == {
            'total_memories': 3,
            'with_embeddings': 3,
            'categories': {
                'work_context': 2,
                'preferences': 1
            },
            'average_importance': 6.67
        }


def test_create_memory_store_backends(app_config):
    assert isinstance(create_memory_store(app_config), InMemoryMemoryStore)

    app_config.memory.store_backend = 'sqlite'
    with pytest.raises(MemoryStoreError):
        create_memory_store(app_config)
