"""
Email Transport Client

Client for the Resend-compatible batch send API.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from core.config import TransportConfig

from ..models import EmailBatch, Recipient, SendResult, SendStatus
from ..protocols import TransportError

logger = logging.getLogger(__name__)


def _tag_param(tag: str) -> Dict[str, str]:
    # "tenant:abc" -> {"name": "tenant", "value": "abc"}
    name, _, value = tag.partition(":")
    return {"name": name, "value": value}


class EmailTransportClient:
    """Client for the batch email provider"""

    def __init__(self, config: Optional[TransportConfig] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or TransportConfig()
        self.base_url = self.config.api_url.rstrip("/")
        self.timeout = self.config.timeout
        self.max_batch_size = max(1, min(self.config.max_batch_size, 100))
        self._client = http_client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key or ''}",
            "Content-Type": "application/json",
        }

    def _build_message(self, batch: EmailBatch, recipient: Recipient) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "from": batch.from_address,
            "to": [recipient.email],
            "subject": batch.subject,
            "tags": [_tag_param(tag) for tag in batch.tags],
            "headers": batch.headers,
        }
        if batch.reply_to:
            message["reply_to"] = batch.reply_to
        if batch.html:
            message["html"] = batch.html
        if batch.text:
            message["text"] = batch.text
        return message

    async def _post(self, messages: List[Dict[str, Any]]) -> httpx.Response:
        url = f"{self.base_url}/emails/batch"
        if self._client is not None:
            return await self._client.post(url, json=messages, headers=self._headers(), timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=messages, headers=self._headers())

    async def send_batch(self, batch: EmailBatch) -> List[SendResult]:
        """
        Send a batch, splitting into provider calls of at most 100 messages.

        A non-2xx response marks every recipient of that call failed.
        A network-level error raises TransportError.
        """
        results: List[SendResult] = []
        for start in range(0, len(batch.recipients), self.max_batch_size):
            chunk = batch.recipients[start:start + self.max_batch_size]
            results.extend(await self._send_chunk(batch, chunk))
        return results

    async def _send_chunk(self, batch: EmailBatch, recipients: List[Recipient]) -> List[SendResult]:
        messages = [self._build_message(batch, recipient) for recipient in recipients]
        try:
            response = await self._post(messages)
        except httpx.HTTPError as e:
            logger.error(f"Email transport call failed: {e}")
            raise TransportError(f"Email transport call failed: {e}") from e

        if response.status_code >= 300:
            error = self._error_message(response)
            logger.error(f"Email provider rejected batch ({response.status_code}): {error}")
            return [
                SendResult(recipient=recipient.email, status=SendStatus.FAILED, error=error)
                for recipient in recipients
            ]

        try:
            data = response.json().get("data") or []
        except ValueError as e:
            raise TransportError(f"Invalid response from email provider: {e}") from e

        results = []
        for index, recipient in enumerate(recipients):
            if index < len(data):
                results.append(
                    SendResult(id=data[index].get("id", ""), recipient=recipient.email, status=SendStatus.SENT)
                )
            else:
                results.append(
                    SendResult(recipient=recipient.email, status=SendStatus.FAILED, error="No result from provider")
                )
        return results

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
            return body.get("message") or body.get("error") or "Batch send failed"
        except ValueError:
            return response.text or "Batch send failed"

    async def health_check(self) -> bool:
        """Reachability of the provider API; an API key must be configured"""
        if not self.config.api_key:
            return False
        try:
            if self._client is not None:
                response = await self._client.get(f"{self.base_url}/domains", headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    response = await client.get(f"{self.base_url}/domains", headers=self._headers())
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning(f"Email provider health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["EmailTransportClient"]
