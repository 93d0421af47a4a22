"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List

from fastmcp import FastMCP

from .services.memory_management import MemoryManagementError, MemoryManagementService
from .utils.config import config
from .utils.logging_config import get_logger

logger = get_logger(__name__)


class MemoryTools:
    """Tool handlers exposed over MCP, bound to one memory service."""

    def __init__(self, memory_service: MemoryManagementService):
        self.memory_service = memory_service

    def search_memories(self, user_id: str, query: str, top_k: int = 10) -> List[Dict[str, Any]]:
        """Search a user's long-term memories.

        Args:
            user_id: User ID
            query: Natural language query
            top_k: Maximum number of results to return (default: 10)

        Returns:
            List of dicts with memory_id, content, category, importance and score

        Raises:
            Exception: If search fails
        """
        try:
            if not user_id or not user_id.strip():
                raise ValueError('User ID is required')

            if not query or not query.strip():
                return []

            results = self.memory_service.search(user_id, query, top_k)
            response = [{
                'memory_id': result.memory.id,
                'content': result.memory.content,
                'category': result.memory.category,
                'importance': result.memory.importance,
                'score': round(result.relevance_score, 4)
            } for result in results]

            logger.debug(f'MCP search returned {len(response)} memories for user {user_id}')
            return response

        except MemoryManagementError as e:
            logger.error(f'Memory management error in MCP search: {e}')
            raise Exception(f'Memory search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in MCP search: {e}')
            raise Exception(f'Memory search failed: {e}')

    def add_memories(self, user_id: str, messages: List[Dict[str, str]], force: bool = False) -> Dict[str, Any]:
        """Extract and store memories from conversation messages.

        Args:
            user_id: User ID
            messages: List of {'role': ..., 'content': ...} dicts
            force: Skip the extraction gate and batching

        Returns:
            Dict with source, reason, confidence and the stored memories

        Raises:
            Exception: If extraction fails
        """
        try:
            response = self.memory_service.add(user_id, messages, force=force)
            return {
                'source': response.source,
                'reason': response.reason,
                'confidence': response.confidence,
                'memories': [{
                    'memory_id': memory.id,
                    'content': memory.content,
                    'category': memory.category
                } for memory in response.extracted_memories]
            }

        except MemoryManagementError as e:
            logger.error(f'Memory management error in MCP add: {e}')
            raise Exception(f'Memory add failed: {e}')

    def delete_memory(self, user_id: str, memory_id: str) -> bool:
        """Delete one of the user's memories.

        Returns:
            True if the memory was deleted
        """
        try:
            return self.memory_service.delete(user_id, memory_id)

        except MemoryManagementError as e:
            logger.error(f'Memory management error in MCP delete: {e}')
            raise Exception(f'Memory deletion failed: {e}')


def create_app(memory_service: MemoryManagementService) -> FastMCP:
    """Build the FastMCP application around a memory service."""
    tools = MemoryTools(memory_service)
    mcp = FastMCP('Chat Memory')
    mcp.tool(tools.search_memories)
    mcp.tool(tools.add_memories)
    mcp.tool(tools.delete_memory)
    return mcp


if __name__ == '__main__':
    service = MemoryManagementService(start_background=True)
    try:
        create_app(service).run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        service.shutdown()
