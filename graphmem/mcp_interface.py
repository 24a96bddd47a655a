"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .models.core import Scope, ScopeError
from .services.memory_management import MemoryManagementError, MemoryManagementService
from .utils.config import load_config
from .utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

mcp = FastMCP('Graph Memory')

_service: Optional[MemoryManagementService] = None


def get_service() -> MemoryManagementService:
    """Build and initialize the memory service on first use."""
    global _service
    if _service is None:
        service = MemoryManagementService(load_config())
        service.initialize()
        _service = service
    return _service


def _scope(user_id: str, agent_id: Optional[str] = None, run_id: Optional[str] = None) -> Scope:
    if not user_id or not user_id.strip():
        raise ToolError('User ID is required')
    return Scope(user_id=user_id.strip(), agent_id=agent_id, run_id=run_id)


def add_memory(user_id: str,
               text: str,
               agent_id: Optional[str] = None,
               run_id: Optional[str] = None,
               infer: bool = True) -> Dict[str, Any]:
    """Remember what a text says about the user.

    Args:
        user_id: User ID
        text: Conversation text or statement to remember
        agent_id: Agent ID (optional)
        run_id: Run ID (optional)
        infer: Extract and deduplicate facts (default: True); when False the text is stored as is

    Returns:
        Memory events, plus graph changes when the graph is enabled
    """
    scope = _scope(user_id, agent_id, run_id)
    if not text or not text.strip():
        return {'results': []}

    try:
        return get_service().add(text, scope, infer=infer)
    except (MemoryManagementError, ScopeError) as e:
        logger.error(f'Memory add failed in MCP: {e}')
        raise ToolError(f'Memory add failed: {e}') from e


def search_memories(user_id: str, query: str, limit: int = 10, filter_private: bool = False) -> Dict[str, Any]:
    """Search the user's memories.

    Args:
        user_id: User ID
        query: Natural language query
        limit: Maximum number of memories to return (default: 10)
        filter_private: Leave out memories marked as private (default: False)

    Returns:
        Matching memories, plus related graph relations when the graph is enabled
    """
    scope = _scope(user_id)
    if not query or not query.strip():
        return {'results': []}

    try:
        result = get_service().search(query, scope, limit=limit, filter_private=filter_private)
    except (MemoryManagementError, ScopeError) as e:
        logger.error(f'Memory search failed in MCP: {e}')
        raise ToolError(f'Memory search failed: {e}') from e

    logger.debug(f'MCP search returned {len(result["results"])} memories for user {user_id}')
    return result


def get_all_memories(user_id: str, limit: int = 100, filter_private: bool = False) -> Dict[str, Any]:
    """List the user's memories, newest first."""
    scope = _scope(user_id)
    try:
        return get_service().get_all(scope, limit=limit, filter_private=filter_private)
    except (MemoryManagementError, ScopeError) as e:
        logger.error(f'Memory listing failed in MCP: {e}')
        raise ToolError(f'Memory listing failed: {e}') from e


def delete_all_memories(user_id: str) -> Dict[str, str]:
    """Forget everything about the user."""
    scope = _scope(user_id)
    try:
        return get_service().delete_all(scope)
    except (MemoryManagementError, ScopeError) as e:
        logger.error(f'Memory deletion failed in MCP: {e}')
        raise ToolError(f'Memory deletion failed: {e}') from e


for _tool in (add_memory, search_memories, get_all_memories, delete_all_memories):
    mcp.tool()(_tool)


if __name__ == '__main__':
    config = load_config()
    setup_logging(config)
    if config.mcp.transport == 'stdio':
        mcp.run(transport='stdio')
    else:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
