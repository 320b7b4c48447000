"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from memlife.models.core import Memory, MemoryInput, MemoryType, RecallOptions
from memlife.services.memory_manager import MemoryManager, MemoryManagerError, create_memory_manager
from memlife.services.scheduler import MaintenanceScheduler
from memlife.utils.config import config
from memlife.utils.logging_config import get_logger
from memlife.utils.neptune_client import NeptuneError
from memlife.utils.opensearch_client import OpenSearchError

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('MemLife Memory')
_memory_manager: Optional[MemoryManager] = None


def get_memory_manager() -> MemoryManager:
    """Shared MemoryManager, created on first use."""
    global _memory_manager
    if _memory_manager is None:
        _memory_manager = create_memory_manager()
    return _memory_manager


def memory_to_dict(memory: Memory) -> Dict[str, Any]:
    return {
        'id': memory.id,
        'type': memory.type.value,
        'category': memory.category,
        'content': memory.content,
        'importance': round(memory.importance, 4),
        'similarity': memory.similarity,
        'access_count': memory.access_count,
        'created_at': memory.created_at.isoformat()
    }


def _require_user(user_id: str):
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')


@mcp.tool()
def remember_memory(user_id: str,
                    content: str,
                    memory_type: str = 'FACT',
                    category: Optional[str] = None,
                    importance: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Remember a piece of knowledge about a user.

    Args:
        user_id: User ID
        content: Memory text
        memory_type: One of FACT, PREFERENCE, DECISION, SUMMARY, FEEDBACK
        category: Optional category such as academic or test_score
        importance: Optional importance in [0, 1]

    Returns:
        The stored memory, or None if it duplicated an existing one or scored too low
    """
    try:
        _require_user(user_id)
        memory = get_memory_manager().remember(
            user_id, MemoryInput(type=MemoryType(memory_type.upper()), content=content, category=category,
                                 importance=importance))
        return memory_to_dict(memory) if memory else None

    except (MemoryManagerError, OpenSearchError) as e:
        logger.error(f'Memory error in MCP remember: {e}')
        raise Exception(f'Remember failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP remember: {e}')
        raise Exception(f'Remember failed: {e}')


@mcp.tool()
def recall_memories(user_id: str,
                    query: Optional[str] = None,
                    memory_types: Optional[List[str]] = None,
                    limit: int = 10) -> List[Dict[str, Any]]:
    """Recall a user's memories.

    Args:
        user_id: User ID
        query: Natural language query; memories are listed by importance when omitted
        memory_types: Optional memory types to keep
        limit: Maximum number of results to return (default: 10)

    Returns:
        List of memories
    """
    try:
        _require_user(user_id)
        options = RecallOptions(query=query.strip() if query and query.strip() else None,
                                types=[MemoryType(t.upper()) for t in memory_types] if memory_types else None,
                                limit=limit,
                                min_similarity=config.memory.min_similarity)
        memories = get_memory_manager().recall(user_id, options)

        logger.debug(f'MCP recall returned {len(memories)} memories for user {user_id}')
        return [memory_to_dict(memory) for memory in memories]

    except OpenSearchError as e:
        logger.error(f'Store error in MCP recall: {e}')
        raise Exception(f'Memory recall failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP recall: {e}')
        raise Exception(f'Memory recall failed: {e}')


@mcp.tool()
def add_message(user_id: str, conversation_id: str, role: str, content: str) -> str:
    """Record a chat message. User messages are mined for memories in the background.

    Returns:
        The message id
    """
    try:
        _require_user(user_id)
        return get_memory_manager().add_message(user_id, conversation_id, role, content).id

    except OpenSearchError as e:
        logger.error(f'Store error in MCP add_message: {e}')
        raise Exception(f'Add message failed: {e}')


@mcp.tool()
def forget_memory(memory_id: str) -> bool:
    """Permanently delete a memory."""
    try:
        return get_memory_manager().forget(memory_id)

    except OpenSearchError as e:
        logger.error(f'Store error in MCP forget: {e}')
        raise Exception(f'Forget failed: {e}')


@mcp.tool()
def get_memory_stats(user_id: str, enhanced: bool = False) -> Dict[str, Any]:
    """Memory, conversation and entity statistics for a user, optionally with decay and scoring detail."""
    try:
        _require_user(user_id)
        manager = get_memory_manager()
        stats = manager.get_enhanced_stats(user_id) if enhanced else manager.get_stats(user_id)
        return stats.to_dict()

    except (OpenSearchError, NeptuneError) as e:
        logger.error(f'Store error in MCP stats: {e}')
        raise Exception(f'Stats failed: {e}')


@mcp.tool()
def trigger_decay() -> Dict[str, Any]:
    """Run memory decay now."""
    return get_memory_manager().trigger_decay().to_dict()


@mcp.tool()
def trigger_compaction(user_id: str) -> Dict[str, Any]:
    """Compact a user's memories now, ignoring the minimum interval."""
    try:
        _require_user(user_id)
        return get_memory_manager().trigger_compaction(user_id).to_dict()

    except OpenSearchError as e:
        logger.error(f'Store error in MCP compaction: {e}')
        raise Exception(f'Compaction failed: {e}')


@mcp.tool()
def get_pending_conflicts(user_id: str) -> List[Dict[str, Any]]:
    """Memories waiting for the user to confirm a conflicting change."""
    try:
        _require_user(user_id)
        memories = get_memory_manager().get_pending_conflicts(user_id)
        return [dict(memory_to_dict(memory), conflict_with=memory.metadata.get('conflict_with')) for memory in memories]

    except OpenSearchError as e:
        logger.error(f'Store error in MCP pending conflicts: {e}')
        raise Exception(f'Pending conflict lookup failed: {e}')


@mcp.tool()
def get_retrieval_context(user_id: str, message: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
    """Context for the next agent turn: recent messages, relevant memories, preferences and entities.

    Returns:
        Dict with a prompt-ready 'summary' and the context 'meta'
    """
    try:
        _require_user(user_id)
        manager = get_memory_manager()
        context = manager.get_retrieval_context(user_id, message, conversation_id)
        return {
            'summary': manager.build_context_summary(context),
            'memories': [memory_to_dict(memory) for memory in context.relevant_memories],
            'entities': [entity.name for entity in context.entities],
            'meta': context.meta
        }

    except (OpenSearchError, NeptuneError) as e:
        logger.error(f'Store error in MCP retrieval context: {e}')
        raise Exception(f'Retrieval context failed: {e}')


if __name__ == '__main__':
    manager = get_memory_manager()
    scheduler = MaintenanceScheduler(manager.decay,
                                     manager.compaction,
                                     cleanup=manager.cleanup_expired,
                                     backfill=manager.backfill_embeddings)
    scheduler.start()

    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    try:
        mcp.run(transport=transport, host=host, port=port)
    finally:
        scheduler.stop()
        manager.close()
