"""
NATS JetStream Client for Python Microservices

Event bus wrapper around nats-py. Publishes JSON events to JetStream
subjects, creating the per-domain stream on first use.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Set

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class NATSEventBus:
    """
    NATS JetStream event bus.

    One connection per service; streams are named after the subject prefix
    (campaign.* -> campaign-stream).
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (stamped on every event)
            config: Optional InfraConfig with the NATS endpoint
        """
        self.service_name = service_name
        config = config or InfraConfig.from_env()
        self.url = config.resolved_nats_url

        self._client: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._streams: Set[str] = set()
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.url}")

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._client = await nats.connect(self.url, name=self.service_name)
            self._js = self._client.jetstream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def _ensure_stream(self, subject: str) -> str:
        prefix = subject.split(".")[0]
        stream_name = f"{prefix}-stream"
        if stream_name in self._streams:
            return stream_name
        try:
            await self._js.add_stream(name=stream_name, subjects=[f"{prefix}.>"])
        except Exception as e:
            # Stream may already exist with a different config
            logger.debug(f"Stream creation note: {e}")
        self._streams.add(stream_name)
        return stream_name

    async def publish(self, subject: str, data: Dict[str, Any]) -> bool:
        """
        Publish a JSON event to JetStream.

        Returns:
            True if the server acknowledged the message, False otherwise
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            await self._ensure_stream(subject)
            payload = json.dumps(data, cls=DecimalEncoder).encode()
            ack = await self._js.publish(subject, payload)
            logger.debug(f"Published {subject} (stream={ack.stream}, seq={ack.seq})")
            return True
        except Exception as e:
            logger.error(f"Failed to publish {subject}: {e}")
            return False

    async def close(self):
        """Drain and close the connection"""
        if self._client and self._is_connected:
            try:
                await self._client.drain()
            except Exception as e:
                logger.warning(f"Error draining NATS connection: {e}")
        self._is_connected = False
        logger.info("NATS EventBus closed")
