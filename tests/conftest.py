"""Shared fixtures: scripted Bedrock fakes, in-memory store and test configuration."""
import pytest

from chatmem.services.memory_store import InMemoryMemoryStore
from chatmem.utils.bedrock_llm import BedrockLLMError
from chatmem.utils.config import (AppConfig, BedrockEmbedConfig, BedrockLLMConfig, ExtractionConfig, IndexConfig,
                                  MCPConfig, MemoryConfig, NLPConfig, OpenSearchConfig, SearchConfig, SmartMemoryConfig)
from fakes import EMBED_DIMENSION, FakeEmbedder, FakeLLM


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def failing_llm():
    return FakeLLM(default=BedrockLLMError('Bedrock LLM failed after 3 attempts: throttled'))


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def failing_embedder():
    return FakeEmbedder(failing=True)


@pytest.fixture
def store():
    return InMemoryMemoryStore()


@pytest.fixture
def app_config():
    return AppConfig(environment='test',
                     log_level='INFO',
                     bedrock_llm=BedrockLLMConfig(region='us-east-1',
                                                  model_id='anthropic.claude-3-haiku-20240307-v1:0',
                                                  max_tokens=3000,
                                                  temperature=0.1,
                                                  retry_attempts=1,
                                                  retry_delay=0.0),
                     bedrock_embed=BedrockEmbedConfig(region='us-east-1',
                                                      model_id='amazon.titan-embed-text-v2:0',
                                                      dimension=EMBED_DIMENSION,
                                                      retry_attempts=1,
                                                      retry_delay=0.0),
                     opensearch=OpenSearchConfig(endpoint='localhost',
                                                 port=443,
                                                 region='us-east-1',
                                                 index_name='test_memories',
                                                 dimension=EMBED_DIMENSION),
                     memory=MemoryConfig(store_backend='memory'),
                     extraction=ExtractionConfig(),
                     search=SearchConfig(),
                     index=IndexConfig(),
                     smart=SmartMemoryConfig(enable_batch_processing=False),
                     nlp=NLPConfig(use_llm=False),
                     mcp=MCPConfig(transport='stdio', host='127.0.0.1', port=8000))
