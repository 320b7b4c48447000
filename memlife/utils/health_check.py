"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)

# Component name -> (service label, detail key, detail value, client factory)
COMPONENTS: Dict[str, tuple] = {
    'bedrock_llm': ('Amazon Bedrock LLM', 'model', lambda: config.bedrock_llm.model_id,
                    lambda: BedrockLLM(config.bedrock_llm)),
    'bedrock_embed': ('Amazon Bedrock Embed', 'model', lambda: config.bedrock_embed.model_id or 'disabled',
                      lambda: BedrockEmbed(config.bedrock_embed)),
    'neptune': ('Amazon Neptune', 'endpoint', lambda: config.neptune.endpoint, lambda: NeptuneClient(config.neptune)),
    'opensearch': ('Amazon OpenSearch', 'endpoint', lambda: config.opensearch.endpoint,
                   lambda: OpenSearchClient(config.opensearch)),
}


def _component_status(name: str, client_factory: Callable[[], Any]) -> Dict[str, Any]:
    service, detail_key, detail, _ = COMPONENTS[name]
    status = {'service': service, detail_key: detail()}

    if name == 'bedrock_embed' and not config.bedrock_embed.model_id:
        # Embeddings are optional; recall falls back to keyword search
        status['healthy'] = True
        return status

    try:
        client = client_factory()
        status['healthy'] = bool(client.health_check())
        close = getattr(client, 'close', None)
        if close is not None:
            close()
    except Exception as e:
        logger.error(f'{service} health check failed: {e}')
        status['healthy'] = False
        status['error'] = str(e)
    return status


def get_health_status(clients: Optional[Dict[str, Callable[[], Any]]] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        clients: Optional client factories by component name, replacing the configured ones

    Returns:
        Dictionary with health status of each component
    """
    clients = clients or {}
    return {name: _component_status(name, clients.get(name, factory)) for name, (_, _, _, factory) in COMPONENTS.items()}


def check_health(clients: Optional[Dict[str, Callable[[], Any]]] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(clients)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy')]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy


def get_system_info() -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'MemLife',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id or 'disabled',
            'opensearch_index_prefix': config.opensearch.index_name,
            'lock_backend': config.lock.backend,
            'decay_enabled': config.decay.enabled,
            'compaction_enabled': config.compaction.enabled,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status()
    }
