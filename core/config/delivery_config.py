#!/usr/bin/env python3
"""Campaign delivery main configuration

Main configuration for the campaign delivery engine.
Combines the infrastructure and logging configs with the delivery-specific
settings (queues, batching, retry policy, cache, transport, reports).
"""
import os
from dataclasses import dataclass, field
from typing import Optional

from .infra_config import InfraConfig
from .logging_config import LoggingConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


# ===========================================
# Delivery-Specific Configuration
# ===========================================

@dataclass
class QueueConfig:
    """Job queue namespace and worker pool sizes"""
    namespace: str = "bull"
    email_concurrency: int = 3
    analytics_concurrency: int = 3
    poll_interval_ms: int = 500
    stall_timeout_ms: int = 300000
    workers_enabled: bool = True

    @classmethod
    def from_env(cls) -> 'QueueConfig':
        return cls(
            namespace=os.getenv("QUEUE_NAMESPACE", "bull"),
            email_concurrency=_int(os.getenv("EMAIL_WORKER_CONCURRENCY", "3"), 3),
            analytics_concurrency=_int(os.getenv("ANALYTICS_WORKER_CONCURRENCY", "3"), 3),
            poll_interval_ms=_int(os.getenv("QUEUE_POLL_INTERVAL_MS", "500"), 500),
            stall_timeout_ms=_int(os.getenv("QUEUE_STALL_TIMEOUT_MS", "300000"), 300000),
            workers_enabled=_bool(os.getenv("QUEUE_WORKERS_ENABLED", "true")),
        )


@dataclass
class BatchConfig:
    """Recipient batching for outbound sends"""
    batch_size: int = 100
    delay_between_batches_ms: int = 1000
    max_retries: int = 3
    retry_delay_ms: int = 5000

    @classmethod
    def from_env(cls) -> 'BatchConfig':
        return cls(
            batch_size=_int(os.getenv("BATCH_SIZE", "100"), 100),
            delay_between_batches_ms=_int(os.getenv("BATCH_DELAY_MS", "1000"), 1000),
            max_retries=_int(os.getenv("BATCH_MAX_RETRIES", "3"), 3),
            retry_delay_ms=_int(os.getenv("BATCH_RETRY_DELAY_MS", "5000"), 5000),
        )


@dataclass
class RetryPolicyConfig:
    """Campaign retry eligibility thresholds (percent)"""
    min_failure_rate: float = 5.0
    max_failure_rate: float = 100.0

    @classmethod
    def from_env(cls) -> 'RetryPolicyConfig':
        return cls(
            min_failure_rate=_float(os.getenv("RETRY_MIN_FAILURE_RATE", "5"), 5.0),
            max_failure_rate=_float(os.getenv("RETRY_MAX_FAILURE_RATE", "100"), 100.0),
        )


@dataclass
class CacheConfig:
    """Cache namespace and TTLs (seconds)"""
    key_prefix: str = "newsletter:"
    default_ttl: int = 1800
    report_ttl: int = 300
    refresh_threshold: float = 0.1

    @classmethod
    def from_env(cls) -> 'CacheConfig':
        return cls(
            key_prefix=os.getenv("CACHE_KEY_PREFIX", "newsletter:"),
            default_ttl=_int(os.getenv("CACHE_DEFAULT_TTL", "1800"), 1800),
            report_ttl=_int(os.getenv("CACHE_REPORT_TTL", "300"), 300),
            refresh_threshold=_float(os.getenv("CACHE_REFRESH_THRESHOLD", "0.1"), 0.1),
        )


@dataclass
class TransportConfig:
    """Email transport provider (Resend-compatible HTTP API)"""
    api_url: str = "https://api.resend.com"
    api_key: Optional[str] = None
    from_address: str = "newsletter@example.com"
    reply_to: Optional[str] = None
    max_batch_size: int = 100
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> 'TransportConfig':
        return cls(
            api_url=os.getenv("RESEND_API_URL", "https://api.resend.com"),
            api_key=os.getenv("RESEND_API_KEY"),
            from_address=os.getenv("EMAIL_FROM_ADDRESS", "newsletter@example.com"),
            reply_to=os.getenv("EMAIL_REPLY_TO"),
            max_batch_size=_int(os.getenv("RESEND_MAX_BATCH_SIZE", "100"), 100),
            timeout=_float(os.getenv("RESEND_TIMEOUT", "30"), 30.0),
        )


@dataclass
class ReportConfig:
    """Report planner settings"""
    aggregate_coverage_ratio: float = 0.8
    event_chunk_size: int = 1000
    recent_campaigns_limit: int = 10
    top_campaigns_limit: int = 5

    @classmethod
    def from_env(cls) -> 'ReportConfig':
        return cls(
            aggregate_coverage_ratio=_float(os.getenv("AGGREGATE_COVERAGE_RATIO", "0.8"), 0.8),
            event_chunk_size=_int(os.getenv("EVENT_CHUNK_SIZE", "1000"), 1000),
            recent_campaigns_limit=_int(os.getenv("DASHBOARD_RECENT_LIMIT", "10"), 10),
            top_campaigns_limit=_int(os.getenv("DASHBOARD_TOP_LIMIT", "5"), 5),
        )


# ===========================================
# Main Delivery Configuration
# ===========================================

@dataclass
class DeliveryConfig:
    """Main campaign delivery configuration with all sub-configs"""
    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    service_host: str = "0.0.0.0"
    service_port: int = 8252

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryPolicyConfig = field(default_factory=RetryPolicyConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    reports: ReportConfig = field(default_factory=ReportConfig)

    @classmethod
    def from_env(cls) -> 'DeliveryConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            # Environment
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            # Service settings
            service_host=os.getenv("HOST", "0.0.0.0"),
            service_port=_int(os.getenv("SERVICE_PORT", "8252"), 8252),

            # Load sub-configs
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            queue=QueueConfig.from_env(),
            batch=BatchConfig.from_env(),
            retry=RetryPolicyConfig.from_env(),
            cache=CacheConfig.from_env(),
            transport=TransportConfig.from_env(),
            reports=ReportConfig.from_env(),
        )
