"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    connect_timeout: int = 5
    read_timeout: int = 30


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    connect_timeout: int = 3
    read_timeout: int = 10
    placeholder_on_failure: bool = True


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    service: str = 'aoss'


@dataclass
class MemoryConfig:
    """Configuration for the memory store."""
    store_backend: str = 'opensearch'
    scan_limit: int = 2000
    dedup_window: int = 200


@dataclass
class ExtractionConfig:
    """Configuration for memory extraction."""
    max_content_length: int = 8000
    context_turns: int = 5
    confidence_threshold: float = 0.6
    rule_fallback: bool = True
    excerpt_length: int = 300


@dataclass
class SearchConfig:
    """Configuration for hybrid search ranking."""
    vector_threshold: float = 0.25
    keyword_weight: float = 0.4
    semantic_weight: float = 0.4
    importance_weight: float = 0.2
    temporal_decay: float = 0.95
    max_results: int = 50
    enable_dynamic_threshold: bool = True
    # Dynamic threshold tuning
    low_mean_similarity: float = 0.3
    moderate_max_similarity: float = 0.2
    dynamic_threshold_ratio: float = 0.6
    dynamic_threshold_floor: float = 0.15


@dataclass
class IndexConfig:
    """Configuration for the in-memory inverted index."""
    min_memory_count: int = 2
    max_index_size: int = 10000
    rebuild_interval_hours: int = 24
    index_search_threshold: float = 0.3


@dataclass
class SmartMemoryConfig:
    """Configuration for the cache and extraction gate layer."""
    enable_cache: bool = True
    cache_expiry_seconds: int = 600
    max_cache_size: int = 1000
    batch_size: int = 10
    batch_interval_seconds: int = 30
    enable_batch_processing: bool = True
    enable_smart_extraction: bool = True
    high_priority_threshold: int = 8
    duplicate_window_seconds: int = 300
    index_coverage_ratio: float = 0.7


@dataclass
class NLPConfig:
    """Configuration for keyword extraction."""
    use_llm: bool = False


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    extraction: ExtractionConfig
    search: SearchConfig
    index: IndexConfig
    smart: SmartMemoryConfig
    nlp: NLPConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '3000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.1')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          connect_timeout=int(os.getenv('BEDROCK_LLM_CONNECT_TIMEOUT', '5')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '30')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')),
                                              connect_timeout=int(os.getenv('BEDROCK_EMBED_CONNECT_TIMEOUT', '3')),
                                              read_timeout=int(os.getenv('BEDROCK_EMBED_READ_TIMEOUT', '10')),
                                              placeholder_on_failure=_env_bool('BEDROCK_EMBED_PLACEHOLDER_ON_FAILURE', 'true'))

    # Memory store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'chat_memories'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    memory_config = MemoryConfig(store_backend=os.getenv('MEMORY_STORE_BACKEND', 'opensearch'),
                                 scan_limit=int(os.getenv('MEMORY_SCAN_LIMIT', '2000')),
                                 dedup_window=int(os.getenv('MEMORY_DEDUP_WINDOW', '200')))

    # Extraction configuration
    extraction_config = ExtractionConfig(max_content_length=int(os.getenv('EXTRACTION_MAX_CONTENT_LENGTH', '8000')),
                                         context_turns=int(os.getenv('EXTRACTION_CONTEXT_TURNS', '5')),
                                         confidence_threshold=float(os.getenv('EXTRACTION_CONFIDENCE_THRESHOLD', '0.6')),
                                         rule_fallback=_env_bool('EXTRACTION_RULE_FALLBACK', 'true'),
                                         excerpt_length=int(os.getenv('EXTRACTION_EXCERPT_LENGTH', '300')))

    # Search configuration
    search_config = SearchConfig(vector_threshold=float(os.getenv('SEARCH_VECTOR_THRESHOLD', '0.25')),
                                 keyword_weight=float(os.getenv('SEARCH_KEYWORD_WEIGHT', '0.4')),
                                 semantic_weight=float(os.getenv('SEARCH_SEMANTIC_WEIGHT', '0.4')),
                                 importance_weight=float(os.getenv('SEARCH_IMPORTANCE_WEIGHT', '0.2')),
                                 temporal_decay=float(os.getenv('SEARCH_TEMPORAL_DECAY', '0.95')),
                                 max_results=int(os.getenv('SEARCH_MAX_RESULTS', '50')),
                                 enable_dynamic_threshold=_env_bool('SEARCH_DYNAMIC_THRESHOLD', 'true'))

    index_config = IndexConfig(min_memory_count=int(os.getenv('INDEX_MIN_MEMORY_COUNT', '2')),
                               max_index_size=int(os.getenv('INDEX_MAX_SIZE', '10000')),
                               rebuild_interval_hours=int(os.getenv('INDEX_REBUILD_INTERVAL_HOURS', '24')),
                               index_search_threshold=float(os.getenv('INDEX_SEARCH_THRESHOLD', '0.3')))

    # Cache and gate configuration
    smart_config = SmartMemoryConfig(enable_cache=_env_bool('SMART_ENABLE_CACHE', 'true'),
                                     cache_expiry_seconds=int(os.getenv('SMART_CACHE_EXPIRY_SECONDS', '600')),
                                     max_cache_size=int(os.getenv('SMART_MAX_CACHE_SIZE', '1000')),
                                     batch_size=int(os.getenv('SMART_BATCH_SIZE', '10')),
                                     batch_interval_seconds=int(os.getenv('SMART_BATCH_INTERVAL_SECONDS', '30')),
                                     enable_batch_processing=_env_bool('SMART_ENABLE_BATCH', 'true'),
                                     enable_smart_extraction=_env_bool('SMART_ENABLE_EXTRACTION_GATE', 'true'),
                                     high_priority_threshold=int(os.getenv('SMART_HIGH_PRIORITY_THRESHOLD', '8')),
                                     duplicate_window_seconds=int(os.getenv('SMART_DUPLICATE_WINDOW_SECONDS', '300')),
                                     index_coverage_ratio=float(os.getenv('SMART_INDEX_COVERAGE_RATIO', '0.7')))

    nlp_config = NLPConfig(use_llm=_env_bool('NLP_USE_LLM', 'false'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     extraction=extraction_config,
                     search=search_config,
                     index=index_config,
                     smart=smart_config,
                     nlp=nlp_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
