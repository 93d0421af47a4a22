"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .. import __version__
from ..services.memory_store import MemoryStore, create_memory_store
from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None,
                      llm: Optional[BedrockLLM] = None,
                      embedder: Optional[BedrockEmbed] = None,
                      store: Optional[MemoryStore] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        app_config: Configuration to check (process default if None)
        llm: Existing LLM client to probe instead of building one
        embedder: Existing embedding client to probe instead of building one
        store: Existing memory store to probe instead of building one

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status = {}

    try:
        llm = llm or BedrockLLM(app_config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    try:
        embedder = embedder or BedrockEmbed(app_config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embedder.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    try:
        store = store or create_memory_store(app_config)
        health_status['memory_store'] = {
            'healthy': store.health_check(),
            'service': 'Memory store',
            'backend': app_config.memory.store_backend
        }
    except Exception as e:
        health_status['memory_store'] = {'healthy': False, 'service': 'Memory store', 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    return {
        'service_name': 'ChatMem',
        'version': __version__,
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'store_backend': app_config.memory.store_backend,
            'vector_threshold': app_config.search.vector_threshold,
            'cache_enabled': app_config.smart.enable_cache,
            'aws_region': app_config.bedrock_llm.region
        },
        'health_status': get_health_status(app_config)
    }
