"""
Configuration management for AWS services and memory lifecycle settings.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _bool_env(name: str, default: str) -> bool:
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
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 30.0


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service.

    An empty model_id disables embeddings; callers then fall back to lexical search.
    """
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    cache_size: int = 500
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 30.0


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str  # Prefix for the memory/message/preference/lock indices
    dimension: int
    service: str = 'es'  # 'aoss' for Serverless; lock documents need custom ids


@dataclass
class MemoryConfig:
    """Configuration for the memory manager."""
    recall_limit: int = 10
    min_similarity: float = 0.5
    context_memory_limit: int = 5
    context_message_limit: int = 10
    context_entity_limit: int = 5
    cleanup_interval_hours: int = 1
    extraction_retries: int = 2
    background_workers: int = 4
    backfill_batch_size: int = 100
    backfill_max_items: int = 1000


@dataclass
class ExtractionConfig:
    """Configuration for rule and LLM extraction."""
    min_confidence: float = 0.5
    llm_fallback_threshold: int = 2
    rule_confidence: float = 0.95
    llm_confidence: float = 0.7
    llm_enabled: bool = True


@dataclass
class ConflictConfig:
    """Configuration for conflict detection."""
    enabled: bool = True
    semantic_threshold: float = 0.9


@dataclass
class ScoringWeights:
    importance: float = 0.4
    freshness: float = 0.3
    confidence: float = 0.3


@dataclass
class ScorerConfig:
    """Configuration for memory scoring."""
    enabled: bool = True
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    decay_rate: float = 0.01  # lambda in exp(-lambda * days)
    access_boost_rate: float = 0.02
    max_access_bonus: float = 0.2


@dataclass
class DecayConfig:
    """Configuration for the daily decay job."""
    enabled: bool = True
    decay_rate: float = 0.01
    min_importance: float = 0.1
    access_boost: float = 0.02
    max_access_boost: float = 0.3
    archive_threshold: float = 0.2
    archive_after_days: int = 180
    delete_after_days: int = 365
    batch_size: int = 100
    max_scan: int = 100000
    lock_ttl_seconds: int = 600


@dataclass
class CompactionConfig:
    """Configuration for per-user compaction."""
    enabled: bool = True
    similarity_threshold: float = 0.92
    min_compaction_interval_hours: int = 24
    batch_size: int = 100
    max_memory_count: int = 500
    max_token_count: int = 50000
    dedup_scan_limit: int = 2000
    lock_ttl_seconds: int = 1800


@dataclass
class LockConfig:
    """Configuration for job locking. backend is 'opensearch' or 'memory'."""
    backend: str = 'opensearch'


@dataclass
class SchedulerConfig:
    """Configuration for the maintenance scheduler."""
    decay_hour: int = 3
    compaction_hour: int = 4
    poll_interval_seconds: int = 60


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
    memory: MemoryConfig
    extraction: ExtractionConfig
    conflict: ConflictConfig
    scorer: ScorerConfig
    decay: DecayConfig
    compaction: CompactionConfig
    lock: LockConfig
    scheduler: SchedulerConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          circuit_failure_threshold=int(os.getenv('BEDROCK_LLM_CIRCUIT_FAILURE_THRESHOLD', '5')),
                                          circuit_reset_seconds=float(os.getenv('BEDROCK_LLM_CIRCUIT_RESET_SECONDS', '30.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              cache_size=int(os.getenv('BEDROCK_EMBED_CACHE_SIZE', '500')),
                                              circuit_failure_threshold=int(os.getenv('BEDROCK_EMBED_CIRCUIT_FAILURE_THRESHOLD', '5')),
                                              circuit_reset_seconds=float(os.getenv('BEDROCK_EMBED_CIRCUIT_RESET_SECONDS', '30.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memlife'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'))

    # Memory manager configuration
    memory_config = MemoryConfig(recall_limit=int(os.getenv('MEMORY_RECALL_LIMIT', '10')),
                                 min_similarity=float(os.getenv('MEMORY_MIN_SIMILARITY', '0.5')),
                                 context_memory_limit=int(os.getenv('MEMORY_CONTEXT_MEMORY_LIMIT', '5')),
                                 context_message_limit=int(os.getenv('MEMORY_CONTEXT_MESSAGE_LIMIT', '10')),
                                 context_entity_limit=int(os.getenv('MEMORY_CONTEXT_ENTITY_LIMIT', '5')),
                                 cleanup_interval_hours=int(os.getenv('MEMORY_CLEANUP_INTERVAL_HOURS', '1')),
                                 extraction_retries=int(os.getenv('MEMORY_EXTRACTION_RETRIES', '2')),
                                 background_workers=int(os.getenv('MEMORY_BACKGROUND_WORKERS', '4')),
                                 backfill_batch_size=int(os.getenv('MEMORY_BACKFILL_BATCH_SIZE', '100')),
                                 backfill_max_items=int(os.getenv('MEMORY_BACKFILL_MAX_ITEMS', '1000')))

    extraction_config = ExtractionConfig(min_confidence=float(os.getenv('EXTRACTION_MIN_CONFIDENCE', '0.5')),
                                         llm_fallback_threshold=int(os.getenv('EXTRACTION_LLM_FALLBACK_THRESHOLD', '2')),
                                         llm_enabled=_bool_env('EXTRACTION_LLM_ENABLED', 'true'))

    conflict_config = ConflictConfig(enabled=_bool_env('CONFLICT_ENABLED', 'true'),
                                     semantic_threshold=float(os.getenv('CONFLICT_SEMANTIC_THRESHOLD', '0.9')))

    scorer_config = ScorerConfig(enabled=_bool_env('SCORER_ENABLED', 'true'),
                                 weights=ScoringWeights(importance=float(os.getenv('SCORER_WEIGHT_IMPORTANCE', '0.4')),
                                                        freshness=float(os.getenv('SCORER_WEIGHT_FRESHNESS', '0.3')),
                                                        confidence=float(os.getenv('SCORER_WEIGHT_CONFIDENCE', '0.3'))),
                                 decay_rate=float(os.getenv('SCORER_DECAY_RATE', '0.01')),
                                 access_boost_rate=float(os.getenv('SCORER_ACCESS_BOOST_RATE', '0.02')),
                                 max_access_bonus=float(os.getenv('SCORER_MAX_ACCESS_BONUS', '0.2')))

    decay_config = DecayConfig(enabled=_bool_env('DECAY_ENABLED', 'true'),
                               decay_rate=float(os.getenv('DECAY_RATE', '0.01')),
                               min_importance=float(os.getenv('DECAY_MIN_IMPORTANCE', '0.1')),
                               archive_threshold=float(os.getenv('DECAY_ARCHIVE_THRESHOLD', '0.2')),
                               archive_after_days=int(os.getenv('DECAY_ARCHIVE_AFTER_DAYS', '180')),
                               delete_after_days=int(os.getenv('DECAY_DELETE_AFTER_DAYS', '365')),
                               batch_size=int(os.getenv('DECAY_BATCH_SIZE', '100')),
                               lock_ttl_seconds=int(os.getenv('DECAY_LOCK_TTL_SECONDS', '600')))

    compaction_config = CompactionConfig(enabled=_bool_env('COMPACTION_ENABLED', 'true'),
                                         similarity_threshold=float(os.getenv('COMPACTION_SIMILARITY_THRESHOLD', '0.92')),
                                         min_compaction_interval_hours=int(os.getenv('COMPACTION_MIN_INTERVAL_HOURS', '24')),
                                         batch_size=int(os.getenv('COMPACTION_BATCH_SIZE', '100')),
                                         max_memory_count=int(os.getenv('COMPACTION_MAX_MEMORY_COUNT', '500')))

    lock_config = LockConfig(backend=os.getenv('LOCK_BACKEND', 'opensearch'))

    scheduler_config = SchedulerConfig(decay_hour=int(os.getenv('SCHEDULER_DECAY_HOUR', '3')),
                                       compaction_hour=int(os.getenv('SCHEDULER_COMPACTION_HOUR', '4')),
                                       poll_interval_seconds=int(os.getenv('SCHEDULER_POLL_INTERVAL_SECONDS', '60')))

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
                     memory=memory_config,
                     extraction=extraction_config,
                     conflict=conflict_config,
                     scorer=scorer_config,
                     decay=decay_config,
                     compaction=compaction_config,
                     lock=lock_config,
                     scheduler=scheduler_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
