"""Tests for the MCP tool handlers and health checks."""
from unittest.mock import MagicMock, patch

import pytest
from fastmcp import FastMCP

from chatmem.mcp_interface import MemoryTools, create_app
from chatmem.services.memory_management import MemoryManagementService
from chatmem.utils.health_check import check_health, get_health_status, get_system_info
from fakes import FakeLLM, extraction_response


@pytest.fixture
def service(app_config, store, fake_embedder):
    llm = FakeLLM([extraction_response([{'content': 'User lives in Seattle', 'category': 'personal_info', 'importance': 7}])])
    return MemoryManagementService(app_config, store=store, embedder=fake_embedder, llm=llm)


@pytest.fixture
def tools(service):
    return MemoryTools(service)


def test_add_then_search(tools):
    added = tools.add_memories('u1', [{'role': 'user', 'content': 'I live in Seattle with my wife'}], force=True)

    assert added['source'] == 'llm'
    assert [m['content'] for m in added['memories']] == ['User lives in Seattle']

    results = tools.search_memories('u1', 'Where do I live?', top_k=3)

    assert [r['memory_id'] for r in results] == [added['memories'][0]['memory_id']]
    assert set(results[0]) == {'memory_id', 'content', 'category', 'importance', 'score'}


def test_search_requires_user(tools):
    with pytest.raises(Exception, match='User ID is required'):
        tools.search_memories(' ', 'anything')


def test_blank_query_returns_nothing(tools):
    assert tools.search_memories('u1', '  ') == []


def test_add_requires_user(tools):
    with pytest.raises(Exception, match='Memory add failed'):
        tools.add_memories('', [{'role': 'user', 'content': 'I live in Seattle'}])


def test_delete_memory(tools, service):
    memory = service.add_manual('u1', 'Likes green tea')

    assert tools.delete_memory('u2', memory.id) is False
    assert tools.delete_memory('u1', memory.id) is True


def test_create_app(service):
    assert isinstance(create_app(service), FastMCP)


class TestHealthStatus:

    def test_all_components_healthy(self, app_config, fake_llm, fake_embedder, store):
        status = get_health_status(app_config, llm=fake_llm, embedder=fake_embedder, store=store)

        assert set(status) == {'bedrock_llm', 'bedrock_embed', 'memory_store'}
        assert all(component['healthy'] for component in status.values())
        assert status['memory_store']['backend'] == 'memory'

    def test_component_failure_is_reported(self, app_config, fake_llm, failing_embedder):
        store = MagicMock()
        store.health_check.side_effect = RuntimeError('cluster unreachable')

        status = get_health_status(app_config, llm=fake_llm, embedder=failing_embedder, store=store)

        assert status['bedrock_llm']['healthy']
        assert not status['bedrock_embed']['healthy']
        assert status['memory_store'] == {'healthy': False, 'service': 'Memory store', 'error': 'cluster unreachable'}

    def test_check_health_requires_every_component(self, app_config):
        statuses = {'bedrock_llm': {'healthy': True}, 'memory_store': {'healthy': False}}
        with patch('chatmem.utils.health_check.get_health_status', return_value=statuses):
            assert check_health(app_config) is False

        with patch('chatmem.utils.health_check.get_health_status', return_value={'bedrock_llm': {'healthy': True}}):
            assert check_health(app_config) is True

    def test_system_info(self, app_config):
        with patch('chatmem.utils.health_check.get_health_status', return_value={}):
            info = get_system_info(app_config)

        assert info['version'] == '1.0.0'
        assert info['configuration']['store_backend'] == 'memory'
        assert info['configuration']['vector_threshold'] == 0.25
