"""
Configuration management for AWS services, cascade thresholds and learning settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    classifier_model_id: str  # Cheaper model used by the category gate
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
    retry_attempts: int
    retry_delay: float
    cache_size: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str  # 'es' for managed domains, 'aoss' for serverless collections
    index_prefix: str
    dimension: int


@dataclass
class ContextConfig:
    """Configuration for per-session conversation state."""
    max_history_size: int
    slot_question_timeout: float
    session_idle_timeout: float  # Seconds before an unused session is evicted
    max_sessions: int


@dataclass
class CascadeConfig:
    """Tuned thresholds for the classification cascade."""
    high_confidence: float
    medium_confidence: float
    low_confidence: float
    top_k: int
    slot_answer_confidence: float
    direct_route_confidence: float
    rewrite_classify_confidence: float
    history_turns: int
    reformulation_overlap: float


@dataclass
class LearningConfig:
    """Configuration for pattern learning and feedback processing."""
    confidence_threshold: float
    similarity_threshold: float
    text_similarity_threshold: float
    entity_similarity_threshold: float
    max_patterns: int
    max_variations: int
    max_merged_variations: int
    enable_processing: bool
    auto_update_patterns: bool
    processing_delay: float
    worker_retry_attempts: int
    worker_retry_delay: float
    claim_lease_seconds: float  # A processing claim older than this may be taken over


@dataclass
class AnalyticsConfig:
    """Configuration for query analytics."""
    enable_tracking: bool
    enable_caching: bool
    cache_ttl: int
    cache_size: int
    max_serialize_depth: int


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
    context: ContextConfig
    cascade: CascadeConfig
    learning: LearningConfig
    analytics: AnalyticsConfig
    mcp: MCPConfig


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          classifier_model_id=os.getenv('BEDROCK_CLASSIFIER_MODEL_ID',
                                                                        'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '500')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              cache_size=int(os.getenv('BEDROCK_EMBED_CACHE_SIZE', '1000')))

    # Vector search and persistence configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'finchat'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    context_config = ContextConfig(max_history_size=int(os.getenv('CONTEXT_MAX_HISTORY_SIZE', '5')),
                                   slot_question_timeout=float(os.getenv('CONTEXT_SLOT_QUESTION_TIMEOUT', '120')),
                                   session_idle_timeout=float(os.getenv('CONTEXT_SESSION_IDLE_TIMEOUT', '1800')),
                                   max_sessions=int(os.getenv('CONTEXT_MAX_SESSIONS', '10000')))

    cascade_config = CascadeConfig(high_confidence=float(os.getenv('CASCADE_HIGH_CONFIDENCE', '0.87')),
                                   medium_confidence=float(os.getenv('CASCADE_MEDIUM_CONFIDENCE', '0.72')),
                                   low_confidence=float(os.getenv('CASCADE_LOW_CONFIDENCE', '0.60')),
                                   top_k=int(os.getenv('CASCADE_TOP_K', '3')),
                                   slot_answer_confidence=float(os.getenv('CASCADE_SLOT_ANSWER_CONFIDENCE', '0.80')),
                                   direct_route_confidence=float(os.getenv('CASCADE_DIRECT_ROUTE_CONFIDENCE', '0.85')),
                                   rewrite_classify_confidence=float(os.getenv('CASCADE_REWRITE_CLASSIFY_CONFIDENCE', '0.70')),
                                   history_turns=int(os.getenv('CASCADE_HISTORY_TURNS', '5')),
                                   reformulation_overlap=float(os.getenv('CASCADE_REFORMULATION_OVERLAP', '0.5')))

    # Learning loop configuration
    learning_config = LearningConfig(confidence_threshold=float(os.getenv('LEARNING_CONFIDENCE_THRESHOLD', '0.8')),
                                     similarity_threshold=float(os.getenv('LEARNING_SIMILARITY_THRESHOLD', '0.85')),
                                     text_similarity_threshold=float(os.getenv('LEARNING_TEXT_SIMILARITY_THRESHOLD', '0.7')),
                                     entity_similarity_threshold=float(os.getenv('LEARNING_ENTITY_SIMILARITY_THRESHOLD', '0.7')),
                                     max_patterns=int(os.getenv('LEARNING_MAX_PATTERNS', '5')),
                                     max_variations=int(os.getenv('LEARNING_MAX_VARIATIONS', '10')),
                                     max_merged_variations=int(os.getenv('LEARNING_MAX_MERGED_VARIATIONS', '20')),
                                     enable_processing=_get_bool('LEARNING_ENABLE_PROCESSING', 'true'),
                                     auto_update_patterns=_get_bool('LEARNING_AUTO_UPDATE_PATTERNS', 'true'),
                                     processing_delay=float(os.getenv('LEARNING_PROCESSING_DELAY', '5.0')),
                                     worker_retry_attempts=int(os.getenv('LEARNING_WORKER_RETRY_ATTEMPTS', '3')),
                                     worker_retry_delay=float(os.getenv('LEARNING_WORKER_RETRY_DELAY', '1.0')),
                                     claim_lease_seconds=float(os.getenv('LEARNING_CLAIM_LEASE_SECONDS', '300')))

    analytics_config = AnalyticsConfig(enable_tracking=_get_bool('ANALYTICS_ENABLE_TRACKING', 'true'),
                                       enable_caching=_get_bool('ANALYTICS_ENABLE_CACHING', 'true'),
                                       cache_ttl=int(os.getenv('ANALYTICS_CACHE_TTL', '300')),
                                       cache_size=int(os.getenv('ANALYTICS_CACHE_SIZE', '50')),
                                       max_serialize_depth=int(os.getenv('ANALYTICS_MAX_SERIALIZE_DEPTH', '10')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     context=context_config,
                     cascade=cascade_config,
                     learning=learning_config,
                     analytics=analytics_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
