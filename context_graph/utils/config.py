"""
Configuration management for AWS collaborators and knowledge-graph settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockEmbedConfig:
    """Configuration for the Amazon Bedrock embedding service."""
    region: str
    model_id: str
    dimension: int
    timeout: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock model backing the LLM judge."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    timeout: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune, which holds the relationship edges."""
    endpoint: str
    port: int
    region: str
    timeout_ms: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch, the knowledge store."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    dimension: int
    timeout: float


@dataclass
class GraphConfig:
    """Defaults for relationship traversal and graph export."""
    default_depth: int
    max_nodes: int


@dataclass
class DecayConfig:
    """Configuration for the relevance-decay sweep."""
    archive_threshold: int
    interval_hours: int
    scheduler_enabled: bool


@dataclass
class DebateConfig:
    """Configuration for debate arbitration."""
    judge_threshold: int
    judge_mode: str  # heuristic or llm
    judge_workers: int


@dataclass
class RemediationConfig:
    """Configuration for remediation matching."""
    top_k: int


@dataclass
class SearchConfig:
    """Defaults for semantic search and context bundling."""
    top_k: int
    bundle_max_tokens: int


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
    bedrock_embed: BedrockEmbedConfig
    bedrock_llm: BedrockLLMConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    graph: GraphConfig
    decay: DecayConfig
    debate: DebateConfig
    remediation: RemediationConfig
    search: SearchConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '384')),
                                              timeout=float(os.getenv('BEDROCK_EMBED_TIMEOUT', '30')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '1')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          timeout=float(os.getenv('BEDROCK_LLM_TIMEOUT', '60')))

    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   timeout_ms=int(os.getenv('NEPTUNE_TIMEOUT_MS', '10000')))

    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'context_graph'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '384')),
                                         timeout=float(os.getenv('OPENSEARCH_TIMEOUT', '10')))

    graph_config = GraphConfig(default_depth=int(os.getenv('GRAPH_DEFAULT_DEPTH', '2')),
                               max_nodes=int(os.getenv('GRAPH_MAX_NODES', '1000')))

    decay_config = DecayConfig(archive_threshold=int(os.getenv('DECAY_ARCHIVE_THRESHOLD', '30')),
                               interval_hours=int(os.getenv('DECAY_INTERVAL_HOURS', '24')),
                               scheduler_enabled=_env_bool('DECAY_SCHEDULER_ENABLED'))

    debate_config = DebateConfig(judge_threshold=int(os.getenv('DEBATE_JUDGE_THRESHOLD', '3')),
                                 judge_mode=os.getenv('DEBATE_JUDGE_MODE', 'heuristic').strip().lower(),
                                 judge_workers=int(os.getenv('DEBATE_JUDGE_WORKERS', '4')))

    remediation_config = RemediationConfig(top_k=int(os.getenv('REMEDIATION_TOP_K', '5')))

    search_config = SearchConfig(top_k=int(os.getenv('SEARCH_TOP_K', '20')),
                                 bundle_max_tokens=int(os.getenv('BUNDLE_MAX_TOKENS', '4000')))

    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_embed=bedrock_embed_config,
                     bedrock_llm=bedrock_llm_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     graph=graph_config,
                     decay=decay_config,
                     debate=debate_config,
                     remediation=remediation_config,
                     search=search_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
