"""
Configuration management for AWS services and memory engine settings.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

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


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    timeout: float
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str
    use_iam_auth: bool = True


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    dimension: int
    service: str = 'es'
    use_aws_auth: bool = True
    auto_create_indexes: bool = True


@dataclass
class GraphMemoryConfig:
    """Tunables for the graph consolidation engine."""
    similarity_threshold: float = 0.7
    neighbor_limit: int = 100
    search_top_k: int = 5
    embedding_timeout: float = 10.0
    max_workers: int = 8
    custom_prompt: Optional[str] = None
    custom_delete_prompt: Optional[str] = None


@dataclass
class FlatMemoryConfig:
    """Tunables for the flat (non-graph) memory engine."""
    search_limit: int = 5
    enable_graph: bool = False
    custom_fact_prompt: Optional[str] = None


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
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    mcp: MCPConfig
    graph: GraphMemoryConfig = field(default_factory=GraphMemoryConfig)
    memory: FlatMemoryConfig = field(default_factory=FlatMemoryConfig)


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              timeout=float(os.getenv('BEDROCK_EMBED_TIMEOUT', '10')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   use_iam_auth=_env_bool('NEPTUNE_USE_IAM_AUTH', 'true'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'graphmem'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_AWS_SERVICE', 'es'),
                                         use_aws_auth=_env_bool('OPENSEARCH_USE_AWS_AUTH', 'true'),
                                         auto_create_indexes=_env_bool('OPENSEARCH_AUTO_CREATE_INDEXES', 'true'))

    # Graph engine configuration
    graph_config = GraphMemoryConfig(similarity_threshold=float(os.getenv('GRAPH_SIMILARITY_THRESHOLD', '0.7')),
                                     neighbor_limit=int(os.getenv('GRAPH_NEIGHBOR_LIMIT', '100')),
                                     search_top_k=int(os.getenv('GRAPH_SEARCH_TOP_K', '5')),
                                     embedding_timeout=float(os.getenv('GRAPH_EMBEDDING_TIMEOUT', '10')),
                                     max_workers=int(os.getenv('GRAPH_MAX_WORKERS', '8')),
                                     custom_prompt=os.getenv('GRAPH_CUSTOM_PROMPT') or None,
                                     custom_delete_prompt=os.getenv('GRAPH_CUSTOM_DELETE_PROMPT') or None)

    # Flat memory configuration
    memory_config = FlatMemoryConfig(search_limit=int(os.getenv('MEMORY_SEARCH_LIMIT', '5')),
                                     enable_graph=_env_bool('MEMORY_ENABLE_GRAPH', 'false'),
                                     custom_fact_prompt=os.getenv('MEMORY_CUSTOM_FACT_PROMPT') or None)

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     mcp=mcp_config,
                     graph=graph_config,
                     memory=memory_config)
