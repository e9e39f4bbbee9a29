"""
Redis Client Factory

Creates redis.asyncio clients from the infrastructure config. The cache
layer and the job queue share one client per process.
"""

import logging
from typing import Dict, Optional

import redis.asyncio as aioredis

from core.config import InfraConfig

logger = logging.getLogger(__name__)

_redis_clients: Dict[str, aioredis.Redis] = {}


def create_redis_client(config: Optional[InfraConfig] = None) -> aioredis.Redis:
    """Create a new redis.asyncio client with decoded responses"""
    config = config or InfraConfig.from_env()
    client = aioredis.from_url(
        config.resolved_redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )
    logger.info(f"Redis client created for {config.redis_host}:{config.redis_port}/{config.redis_db}")
    return client


def get_redis_client(service_name: str, config: Optional[InfraConfig] = None) -> aioredis.Redis:
    """Get or create the shared Redis client for a service"""
    if service_name not in _redis_clients:
        _redis_clients[service_name] = create_redis_client(config)
    return _redis_clients[service_name]


async def close_redis_client(service_name: str) -> None:
    """Close and forget the shared client for a service"""
    client = _redis_clients.pop(service_name, None)
    if client is not None:
        await client.aclose()
