"""
Batch Processor

Splits a campaign's recipients into bounded chunks, sends each chunk through
the email transport and tracks the fan-out jobs of a send.
"""

import asyncio
import logging
import time
from typing import List, Optional

from core.config import BatchConfig, TransportConfig

from .job_queue import QueueManager, chunk_list
from .models import (
    BatchJob,
    BatchProcessingResult,
    BatchProgress,
    BatchStatus,
    EmailBatch,
    JobState,
    QueueName,
    Recipient,
    SendStatus,
)
from .protocols import EmailTransportProtocol, TransportError

logger = logging.getLogger(__name__)


def campaign_tags(tenant_id: str, campaign_id: str) -> List[str]:
    return [f"tenant:{tenant_id}", f"campaign:{campaign_id}"]


def campaign_headers(tenant_id: str, campaign_id: str) -> dict:
    return {"X-Tenant-ID": tenant_id, "X-Campaign-ID": campaign_id}


def summarize_batch_states(states: List[Optional[JobState]]) -> BatchStatus:
    """
    Fold per-batch job states into overall progress.

    A missing job (None) was pruned after completing and counts as completed.
    Anything not terminal, including a job waiting on retry backoff, is pending.
    """
    completed = failed = pending = 0
    for state in states:
        if state is None or state == JobState.COMPLETED:
            completed += 1
        elif state == JobState.FAILED:
            failed += 1
        else:
            pending += 1

    if pending:
        progress = BatchProgress.IN_PROGRESS
    elif failed:
        progress = BatchProgress.FAILED_PARTIAL
    else:
        progress = BatchProgress.COMPLETED

    return BatchStatus(
        total_batches=len(states),
        completed_batches=completed,
        failed_batches=failed,
        pending_batches=pending,
        status=progress,
    )


class BatchProcessor:
    """Chunked delivery through the transport and the email queue"""

    def __init__(
        self,
        transport: EmailTransportProtocol,
        queue_manager: QueueManager,
        batch_config: Optional[BatchConfig] = None,
        transport_config: Optional[TransportConfig] = None,
    ):
        self.transport = transport
        self.queue_manager = queue_manager
        self.batch_config = batch_config or BatchConfig()
        self.transport_config = transport_config or TransportConfig()

    # ====================
    # In-process Delivery
    # ====================

    async def process_campaign_in_batches(
        self,
        campaign_id: str,
        tenant_id: str,
        recipients: List[Recipient],
        batch_size: Optional[int] = None,
        retry: bool = False,
        subject: str = "",
        text: Optional[str] = None,
    ) -> BatchProcessingResult:
        """
        Send recipients chunk by chunk, in input order.

        Per-recipient failures reported by the provider do not fail the
        chunk. A TransportError fails the chunk and counts all of its
        recipients as failed. Other errors propagate.
        """
        started = time.monotonic()
        chunks = chunk_list(recipients, batch_size or self.batch_config.batch_size)
        result = BatchProcessingResult(total_batches=len(chunks))
        delay = self.batch_config.delay_between_batches_ms / 1000

        for index, chunk in enumerate(chunks):
            batch = EmailBatch(
                recipients=chunk,
                subject=subject,
                from_address=self.transport_config.from_address,
                reply_to=self.transport_config.reply_to,
                text=text,
                tags=campaign_tags(tenant_id, campaign_id),
                headers=campaign_headers(tenant_id, campaign_id),
            )
            try:
                send_results = await self.transport.send_batch(batch)
            except TransportError as e:
                logger.error(
                    f"Batch {index + 1}/{len(chunks)} of campaign {campaign_id} failed: {e}"
                )
                result.failed_batches += 1
                result.total_emails_failed += len(chunk)
            else:
                sent = sum(1 for r in send_results if r.status == SendStatus.SENT)
                result.successful_batches += 1
                result.total_emails_sent += sent
                result.total_emails_failed += len(send_results) - sent
                if sent < len(send_results):
                    logger.warning(
                        f"Batch {index + 1}/{len(chunks)} of campaign {campaign_id} "
                        f"had {len(send_results) - sent} recipient failures"
                    )

            if delay > 0 and index < len(chunks) - 1:
                await asyncio.sleep(delay)

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Campaign {campaign_id} {'retry ' if retry else ''}batches done: "
            f"{result.successful_batches}/{result.total_batches} ok, "
            f"{result.total_emails_sent} sent, {result.total_emails_failed} failed"
        )
        return result

    # ====================
    # Queued Fan-out
    # ====================

    async def schedule_batch_processing(
        self,
        campaign_id: str,
        tenant_id: str,
        recipients: List[Recipient],
        batch_size: Optional[int] = None,
        retry: bool = False,
    ) -> List[BatchJob]:
        """Enqueue one job per chunk and remember the job ids for the send"""
        size = batch_size or self.batch_config.batch_size
        handles = await self.queue_manager.schedule_batch_email_sending(
            campaign_id, tenant_id, recipients, size, retry=retry
        )
        batches = [
            BatchJob(id=handle.id, campaign_id=campaign_id, recipient_slice=chunk)
            for handle, chunk in zip(handles, chunk_list(recipients, size))
        ]
        await self.queue_manager.record_campaign_batches(campaign_id, [batch.id for batch in batches])
        return batches

    async def get_campaign_batch_ids(self, campaign_id: str) -> List[str]:
        return await self.queue_manager.get_campaign_batches(campaign_id)

    async def get_batch_status(self, job_ids: List[str]) -> BatchStatus:
        states: List[Optional[JobState]] = []
        for job_id in job_ids:
            job = await self.queue_manager.get_job(QueueName.EMAIL, job_id)
            states.append(job.state if job else None)
        return summarize_batch_states(states)

    async def get_campaign_batch_status(self, campaign_id: str) -> BatchStatus:
        return await self.get_batch_status(await self.get_campaign_batch_ids(campaign_id))

    async def retry_failed_batches(self, campaign_id: str) -> List[str]:
        """Move the campaign's failed batch jobs back to waiting"""
        retried = []
        for job_id in await self.get_campaign_batch_ids(campaign_id):
            job = await self.queue_manager.get_job(QueueName.EMAIL, job_id)
            if job is None or job.state != JobState.FAILED:
                continue
            if await self.queue_manager.retry_job(QueueName.EMAIL, job_id):
                retried.append(job_id)
        if retried:
            logger.info(f"Re-queued {len(retried)} failed batches for campaign {campaign_id}")
        return retried


__all__ = ["BatchProcessor", "summarize_batch_states", "campaign_tags", "campaign_headers"]
