"""
Health check utilities for the knowledge-graph collaborators.
"""

from typing import Any, Callable, Dict

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _probe(service: str, detail: Dict[str, Any], factory: Callable[[], Any]) -> Dict[str, Any]:
    try:
        healthy = bool(factory().health_check())
        return {'healthy': healthy, 'service': service, **detail}
    except Exception as e:
        logger.error(f'{service} health check failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status() -> Dict[str, Any]:
    """Get detailed health status of every collaborator.

    The Bedrock LLM is only probed when the LLM judge is enabled.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {
        'opensearch':
            _probe('Amazon OpenSearch', {'endpoint': config.opensearch.endpoint},
                   lambda: OpenSearchClient(config.opensearch)),
        'neptune':
            _probe('Amazon Neptune', {'endpoint': config.neptune.endpoint}, lambda: NeptuneClient(config.neptune)),
        'bedrock_embed':
            _probe('Amazon Bedrock Embed', {'model': config.bedrock_embed.model_id},
                   lambda: BedrockEmbed(config.bedrock_embed)),
    }
    if config.debate.judge_mode == 'llm':
        health_status['bedrock_llm'] = _probe('Amazon Bedrock LLM', {'model': config.bedrock_llm.model_id},
                                              lambda: BedrockLLM(config.bedrock_llm))
    return health_status


def check_health() -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status()
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = ', '.join(name for name, status in health_status.items() if not status.get('healthy'))
        logger.warning(f'Unhealthy components: {unhealthy}')
    return all_healthy


def get_system_info() -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'ContextGraph',
        'version': '1.0.0',
        'configuration': {
            'environment': config.environment,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'judge_mode': config.debate.judge_mode,
            'judge_threshold': config.debate.judge_threshold,
            'decay_archive_threshold': config.decay.archive_threshold,
            'aws_region': config.bedrock_embed.region
        },
        'health_status': get_health_status()
    }
