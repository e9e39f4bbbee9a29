#!/usr/bin/env python3
"""
Core Module for the Campaign Delivery Platform

Shared infrastructure components used by the microservices.

COMPONENTS:
    - config/: Dataclass configuration loaded from the environment
    - postgres_client.py: asyncpg pool wrapper
    - redis_client.py: redis.asyncio client factory
    - nats_client.py: NATS JetStream event bus

USAGE:
    from core.config import get_settings
    from core.postgres_client import get_postgres_client

    settings = get_settings()
    db = await get_postgres_client("campaign_delivery_service", settings.infrastructure)
"""

__version__ = "1.0.0"
