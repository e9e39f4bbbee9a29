#!/usr/bin/env python3
"""Modular configuration system for the campaign delivery engine

Configuration hierarchy:
- infra_config: Backing stores (PostgreSQL, Redis, NATS)
- logging_config: Logging configuration
- delivery_config: Queues, batching, retry policy, cache, transport, reports
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .delivery_config import (
    DeliveryConfig,
    QueueConfig,
    BatchConfig,
    RetryPolicyConfig,
    CacheConfig,
    TransportConfig,
    ReportConfig,
)

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = DeliveryConfig.from_env()

def get_settings() -> DeliveryConfig:
    """Get global settings instance"""
    return settings

def reload_settings() -> DeliveryConfig:
    """Reload settings from environment"""
    global settings
    settings = DeliveryConfig.from_env()
    return settings

__all__ = [
    # Main config
    'DeliveryConfig',
    'get_settings',
    'reload_settings',
    'settings',
    # Sub-configs
    'LoggingConfig',
    'InfraConfig',
    'QueueConfig',
    'BatchConfig',
    'RetryPolicyConfig',
    'CacheConfig',
    'TransportConfig',
    'ReportConfig',
]
