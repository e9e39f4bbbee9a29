"""
Campaign Service Business Logic

Owns the campaign lifecycle: CRUD, scheduling, send/pause/resume/cancel,
retry eligibility and the worker-side start and completion steps.
"""

import functools
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytz

from core.config import BatchConfig, RetryPolicyConfig

from .batch_processor import BatchProcessor
from .events.publishers import CampaignEventPublisher
from .job_queue import QueueManager
from .models import (
    ActionErrorCode,
    ActionResult,
    AnalyticsJob,
    AnalyticsJobType,
    BatchProgress,
    BatchStatus,
    Campaign,
    CampaignCreateRequest,
    CampaignListQuery,
    CampaignStatus,
    CampaignUpdateRequest,
    EmailJob,
    Job,
    Recipient,
    RetryEligibility,
    ScheduleRequest,
    SendRequest,
    utc_now,
)
from .protocols import (
    AnalyticsRepositoryProtocol,
    CacheProtocol,
    CampaignRepositoryProtocol,
    JobDeferred,
    LockNotAcquiredError,
    NotFoundError,
    StateConflictError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CAMPAIGN_LOCK_TTL = 30
# Workers wait longer for the campaign lock than interactive actions
WORKER_LOCK_RETRIES = 20


def campaign_lock_name(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


def calculate_failure_rate(total_sent: int, delivered: int) -> float:
    """Share of sent messages not confirmed delivered, in percent"""
    if total_sent <= 0:
        return 0.0
    return max(0, total_sent - delivered) / total_sent * 100


def evaluate_retry_eligibility(
    campaign: Campaign, policy: Optional[RetryPolicyConfig] = None
) -> RetryEligibility:
    """Decide whether a campaign may be retried and why"""
    policy = policy or RetryPolicyConfig()
    analytics = campaign.analytics
    failure_rate = calculate_failure_rate(analytics.total_sent, analytics.delivered)

    eligible = False
    if campaign.status == CampaignStatus.SENDING:
        reason = "Campaign is currently being sent"
    elif campaign.status in (CampaignStatus.DRAFT, CampaignStatus.REVIEW, CampaignStatus.SCHEDULED):
        reason = "Campaign has not been sent yet"
    elif campaign.status != CampaignStatus.SENT:
        reason = f"Cannot retry campaign with status: {campaign.status.value}"
    elif failure_rate < policy.min_failure_rate:
        reason = f"Campaign had minimal failures (< {policy.min_failure_rate:g}%)"
    elif policy.max_failure_rate < 100 and failure_rate > policy.max_failure_rate:
        reason = (
            f"Campaign had too many failures (> {policy.max_failure_rate:g}%) "
            f"- investigate issues first"
        )
    else:
        eligible = True
        reason = f"Campaign had {failure_rate:.1f}% failure rate and is eligible for retry"

    return RetryEligibility(
        eligible=eligible,
        reason=reason,
        failure_rate=failure_rate,
        last_retry_at=campaign.last_retry_at,
    )


def resolve_schedule_time(scheduled_at: datetime, tz_name: str) -> datetime:
    """
    Validate the IANA timezone and return scheduled_at in UTC.

    A naive scheduled_at is read as wall time in tz_name.
    """
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError("Invalid timezone provided", field="timezone")

    if scheduled_at.tzinfo is None:
        scheduled_at = tz.localize(scheduled_at)
    return scheduled_at.astimezone(timezone.utc)


def campaign_action(operation: str):
    """
    Turn a raising campaign action into one returning ActionResult.

    Domain errors keep their message and gain an error code; anything
    unexpected is logged with context and surfaced as "Failed to <operation>".
    """

    def decorator(func: Callable[..., Awaitable[ActionResult]]):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs) -> ActionResult:
            try:
                return await func(self, *args, **kwargs)
            except ValidationError as e:
                return ActionResult(success=False, message=str(e), error=ActionErrorCode.VALIDATION)
            except NotFoundError as e:
                return ActionResult(success=False, message=str(e), error=ActionErrorCode.NOT_FOUND)
            except StateConflictError as e:
                return ActionResult(success=False, message=str(e), error=ActionErrorCode.STATE_CONFLICT)
            except LockNotAcquiredError:
                return ActionResult(
                    success=False,
                    message="Campaign is being modified by another request, please retry shortly",
                    error=ActionErrorCode.STATE_CONFLICT,
                )
            except Exception as e:
                logger.error(f"Failed to {operation} (args={args}, kwargs={kwargs}): {e}", exc_info=True)
                return ActionResult(success=False, message=f"Failed to {operation}", error=ActionErrorCode.INTERNAL)

        return wrapper

    return decorator


class CampaignService:
    """Campaign service business logic layer"""

    # Valid state transitions
    VALID_TRANSITIONS = {
        CampaignStatus.DRAFT: [CampaignStatus.REVIEW],
        CampaignStatus.REVIEW: [CampaignStatus.SCHEDULED, CampaignStatus.SENDING],
        # scheduled -> scheduled is a reschedule
        CampaignStatus.SCHEDULED: [
            CampaignStatus.SCHEDULED,
            CampaignStatus.SENDING,
            CampaignStatus.DRAFT,
            CampaignStatus.CANCELLED,
        ],
        CampaignStatus.SENDING: [CampaignStatus.PAUSED, CampaignStatus.SENT, CampaignStatus.CANCELLED],
        CampaignStatus.PAUSED: [CampaignStatus.SENDING, CampaignStatus.CANCELLED],
        CampaignStatus.SENT: [CampaignStatus.SENDING],  # retry
        CampaignStatus.CANCELLED: [],  # Terminal state
    }

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        analytics_repository: AnalyticsRepositoryProtocol,
        cache: CacheProtocol,
        queue_manager: QueueManager,
        batch_processor: BatchProcessor,
        event_publisher: Optional[CampaignEventPublisher] = None,
        retry_policy: Optional[RetryPolicyConfig] = None,
        batch_config: Optional[BatchConfig] = None,
    ):
        self.repository = repository
        self.analytics_repository = analytics_repository
        self.cache = cache
        self.queue_manager = queue_manager
        self.batch_processor = batch_processor
        self.event_publisher = event_publisher or CampaignEventPublisher()
        self.retry_policy = retry_policy or RetryPolicyConfig()
        self.batch_config = batch_config or BatchConfig()

    # ====================
    # Helpers
    # ====================

    def _campaign_lock(self, campaign_id: str, retries: int = 3):
        return self.cache.lock(campaign_lock_name(campaign_id), ttl=CAMPAIGN_LOCK_TTL, retries=retries)

    async def _get_campaign(self, campaign_id: str, tenant_id: Optional[str] = None) -> Campaign:
        campaign = await self.repository.get_campaign(campaign_id, tenant_id)
        if campaign is None:
            raise NotFoundError("Campaign not found")
        return campaign

    def _validate_state_transition(self, current: CampaignStatus, target: CampaignStatus) -> bool:
        """Validate state transition is allowed"""
        return target in self.VALID_TRANSITIONS.get(current, [])

    async def _transition(
        self, campaign: Campaign, target: CampaignStatus, verb: str, **fields: Any
    ) -> Campaign:
        """Apply one transition, conditional on the status we read"""
        if not self._validate_state_transition(campaign.status, target):
            raise StateConflictError(
                f"Cannot {verb} campaign with status: {campaign.status.value}", campaign.status
            )
        updated = await self.repository.transition_status(campaign.id, [campaign.status], target, **fields)
        if updated is None:
            raise StateConflictError(f"Campaign {campaign.id} changed status concurrently", campaign.status)
        logger.info(f"Campaign {campaign.id}: {campaign.status.value} -> {target.value}")
        return updated

    async def _dispatch(
        self,
        campaign: Campaign,
        recipients: List[Recipient],
        rollback_status: CampaignStatus,
        retry: bool = False,
    ) -> List[str]:
        """Fan the recipients out into batch jobs; rolls the status back if enqueueing fails"""
        try:
            batches = await self.batch_processor.schedule_batch_processing(
                campaign.id, campaign.tenant_id, recipients, retry=retry
            )
        except Exception:
            # Put the campaign back so the send can be retried
            await self.repository.transition_status(campaign.id, [CampaignStatus.SENDING], rollback_status)
            raise
        return [batch.id for batch in batches]

    @staticmethod
    def _dump(campaign: Campaign) -> Dict[str, Any]:
        return campaign.model_dump(mode="json")

    # ====================
    # Campaign CRUD
    # ====================

    @campaign_action("create campaign")
    async def create_campaign(self, tenant_id: str, request: CampaignCreateRequest) -> ActionResult:
        """Create a campaign in draft"""
        now = utc_now()
        campaign = Campaign(
            tenant_id=tenant_id,
            name=request.name,
            subject_line=request.subject_line,
            preview_text=request.preview_text,
            recipients=request.recipients,
            created_by=request.created_by,
            created_at=now,
            updated_at=now,
        )
        campaign = await self.repository.create_campaign(campaign)

        await self.event_publisher.publish_campaign_created(
            campaign.id, tenant_id, campaign.name, len(campaign.recipients), request.created_by
        )
        logger.info(f"Campaign created: {campaign.id}")
        return ActionResult(success=True, message="Campaign created successfully", data=self._dump(campaign))

    @campaign_action("get campaign")
    async def get_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        campaign = await self._get_campaign(campaign_id, tenant_id)
        return ActionResult(success=True, message="Campaign retrieved successfully", data=self._dump(campaign))

    @campaign_action("get campaigns")
    async def list_campaigns(self, tenant_id: str, query: Optional[CampaignListQuery] = None) -> ActionResult:
        query = query or CampaignListQuery()
        campaigns, total = await self.repository.list_campaigns(
            tenant_id,
            status=query.status,
            limit=query.limit,
            offset=(query.page - 1) * query.limit,
            sort_by=query.sort_by,
            sort_order=query.sort_order,
        )
        return ActionResult(
            success=True,
            message="Campaigns retrieved successfully",
            data={
                "campaigns": [self._dump(c) for c in campaigns],
                "pagination": {
                    "page": query.page,
                    "limit": query.limit,
                    "total": total,
                    "total_pages": math.ceil(total / query.limit) if total else 0,
                },
            },
        )

    @campaign_action("get campaign statistics")
    async def get_campaign_stats(self, tenant_id: str) -> ActionResult:
        counts = await self.repository.get_status_counts(tenant_id)
        totals = await self.repository.get_sent_totals(tenant_id)
        return ActionResult(
            success=True,
            message="Campaign statistics retrieved successfully",
            data={
                "total": sum(counts.values()),
                "draft": counts.get(CampaignStatus.DRAFT.value, 0),
                "scheduled": counts.get(CampaignStatus.SCHEDULED.value, 0),
                "sent": counts.get(CampaignStatus.SENT.value, 0),
                "total_emails_sent": int(totals.get("total_sent", 0)),
                "average_open_rate": round(totals.get("average_open_rate", 0.0), 2),
                "average_click_rate": round(totals.get("average_click_rate", 0.0), 2),
            },
        )

    @campaign_action("update campaign")
    async def update_campaign(
        self, campaign_id: str, tenant_id: str, request: CampaignUpdateRequest
    ) -> ActionResult:
        """Update content fields; sent and sending campaigns are frozen"""
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            if campaign.status == CampaignStatus.SENT:
                raise StateConflictError("Cannot update a sent campaign", campaign.status)
            if campaign.status == CampaignStatus.SENDING:
                raise StateConflictError(
                    "Cannot update a campaign that is currently being sent", campaign.status
                )

            updates = {
                key: getattr(request, key)
                for key in request.model_fields_set
                if getattr(request, key) is not None
            }
            if updates:
                campaign = await self.repository.update_campaign(campaign_id, updates) or campaign

        return ActionResult(success=True, message="Campaign updated successfully", data=self._dump(campaign))

    @campaign_action("delete campaign")
    async def delete_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            if campaign.status == CampaignStatus.SENDING:
                raise StateConflictError(
                    "Cannot delete a campaign that is currently being sent", campaign.status
                )

            if campaign.status == CampaignStatus.SCHEDULED:
                try:
                    await self.queue_manager.cancel_scheduled_job(campaign_id)
                except Exception as e:
                    logger.warning(f"Failed to cancel scheduled job for campaign {campaign_id}: {e}")

            await self.repository.delete_campaign(campaign_id)

        logger.info(f"Campaign deleted: {campaign_id}")
        return ActionResult(success=True, message="Campaign deleted successfully")

    @campaign_action("submit campaign for review")
    async def submit_for_review(self, campaign_id: str, tenant_id: str) -> ActionResult:
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            campaign = await self._transition(campaign, CampaignStatus.REVIEW, "submit")
        return ActionResult(success=True, message="Campaign submitted for review", data=self._dump(campaign))

    # ====================
    # Scheduling
    # ====================

    async def _schedule(
        self, campaign_id: str, tenant_id: str, request: ScheduleRequest, require_scheduled: bool = False
    ) -> ActionResult:
        scheduled_at = resolve_schedule_time(request.scheduled_at, request.timezone)
        if scheduled_at <= utc_now():
            raise ValidationError("Scheduled time must be in the future", field="scheduled_at")

        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            if require_scheduled and campaign.status != CampaignStatus.SCHEDULED:
                raise StateConflictError("Campaign is not scheduled", campaign.status)
            if not self._validate_state_transition(campaign.status, CampaignStatus.SCHEDULED):
                raise StateConflictError(
                    f"Cannot schedule campaign with status: {campaign.status.value}", campaign.status
                )
            if not campaign.recipients:
                raise ValidationError("Campaign has no recipients", field="recipients")

            if campaign.status == CampaignStatus.SCHEDULED:
                await self.queue_manager.cancel_scheduled_job(campaign_id)

            handle = await self.queue_manager.schedule_email_campaign(campaign_id, campaign.tenant_id, scheduled_at)
            try:
                campaign = await self._transition(
                    campaign, CampaignStatus.SCHEDULED, "schedule", scheduled_at=scheduled_at
                )
            except Exception:
                await self.queue_manager.cancel_scheduled_job(campaign_id)
                raise

        await self.event_publisher.publish_campaign_scheduled(campaign_id, campaign.tenant_id, scheduled_at, handle.id)

        local_time = scheduled_at.astimezone(pytz.timezone(request.timezone))
        return ActionResult(
            success=True,
            message=f"Campaign scheduled for {local_time:%Y-%m-%d %H:%M} {request.timezone}",
            data={"campaign": self._dump(campaign), "job_id": handle.id},
        )

    @campaign_action("schedule campaign")
    async def schedule_campaign(self, campaign_id: str, tenant_id: str, request: ScheduleRequest) -> ActionResult:
        """Schedule a reviewed campaign; an already scheduled one is moved"""
        return await self._schedule(campaign_id, tenant_id, request)

    @campaign_action("reschedule campaign")
    async def reschedule_campaign(self, campaign_id: str, tenant_id: str, request: ScheduleRequest) -> ActionResult:
        return await self._schedule(campaign_id, tenant_id, request, require_scheduled=True)

    @campaign_action("unschedule campaign")
    async def unschedule_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            if campaign.status != CampaignStatus.SCHEDULED:
                raise StateConflictError("Campaign is not scheduled", campaign.status)

            await self.queue_manager.cancel_scheduled_job(campaign_id)
            campaign = await self._transition(campaign, CampaignStatus.DRAFT, "unschedule", scheduled_at=None)

        return ActionResult(success=True, message="Campaign unscheduled successfully", data=self._dump(campaign))

    @campaign_action("get upcoming campaigns")
    async def get_upcoming_campaigns(self, tenant_id: str, limit: int = 10) -> ActionResult:
        campaigns = await self.repository.list_upcoming(tenant_id, limit)
        return ActionResult(
            success=True,
            message="Upcoming campaigns retrieved successfully",
            data=[self._dump(c) for c in campaigns],
        )

    # ====================
    # Delivery Control
    # ====================

    @campaign_action("send campaign")
    async def send_campaign(
        self, campaign_id: str, tenant_id: str, request: Optional[SendRequest] = None
    ) -> ActionResult:
        """
        Send a reviewed or scheduled campaign now.

        With a future scheduled_at the campaign is scheduled instead. The
        fan-out happens under the campaign lock so it runs at most once.
        """
        if request is not None and request.scheduled_at is not None:
            scheduled_at = resolve_schedule_time(request.scheduled_at, "UTC")
            if scheduled_at > utc_now():
                return await self._schedule(campaign_id, tenant_id, ScheduleRequest(scheduled_at=scheduled_at))

        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            if campaign.status not in (CampaignStatus.REVIEW, CampaignStatus.SCHEDULED):
                raise StateConflictError("Campaign cannot be sent in current status", campaign.status)
            if not campaign.recipients:
                raise ValidationError("Campaign has no recipients", field="recipients")

            if campaign.status == CampaignStatus.SCHEDULED:
                await self.queue_manager.cancel_scheduled_job(campaign_id)

            campaign = await self._transition(campaign, CampaignStatus.SENDING, "send")
            job_ids = await self._dispatch(campaign, campaign.recipients, CampaignStatus.REVIEW)

        await self.event_publisher.publish_campaign_sending(
            campaign_id, campaign.tenant_id, len(campaign.recipients), len(job_ids)
        )
        return ActionResult(
            success=True,
            message="Campaign is being sent",
            data={"campaign": self._dump(campaign), "batch_job_ids": job_ids},
        )

    @campaign_action("pause campaign")
    async def pause_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        """Stop dispatching new batches; batches in flight finish"""
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            if campaign.status == CampaignStatus.PAUSED:
                raise StateConflictError("Campaign is already paused", campaign.status)
            campaign = await self._transition(campaign, CampaignStatus.PAUSED, "pause")

        await self.event_publisher.publish_campaign_paused(
            campaign_id, campaign.tenant_id, campaign.analytics.total_sent
        )
        return ActionResult(success=True, message="Campaign paused", data=self._dump(campaign))

    @campaign_action("resume campaign")
    async def resume_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            campaign = await self._transition(campaign, CampaignStatus.SENDING, "resume")

        batch_status = await self.batch_processor.get_campaign_batch_status(campaign_id)
        await self.event_publisher.publish_campaign_resumed(
            campaign_id, campaign.tenant_id, batch_status.pending_batches
        )

        # Batches that finished while paused could not complete the campaign
        if batch_status.status != BatchProgress.IN_PROGRESS:
            await self.complete_if_finished(campaign_id)
            campaign = await self._get_campaign(campaign_id, tenant_id)

        return ActionResult(success=True, message="Campaign resumed", data=self._dump(campaign))

    @campaign_action("cancel campaign")
    async def cancel_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        """Cancel a scheduled, sending or paused campaign; sent batches stay sent"""
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            previous_status = campaign.status
            if not self._validate_state_transition(previous_status, CampaignStatus.CANCELLED):
                raise StateConflictError(
                    f"Cannot cancel campaign with status: {previous_status.value}", previous_status
                )
            if previous_status == CampaignStatus.SCHEDULED:
                await self.queue_manager.cancel_scheduled_job(campaign_id)
            campaign = await self._transition(campaign, CampaignStatus.CANCELLED, "cancel")

        await self.event_publisher.publish_campaign_cancelled(campaign_id, campaign.tenant_id, previous_status.value)
        return ActionResult(success=True, message="Campaign cancelled", data=self._dump(campaign))

    # ====================
    # Retry
    # ====================

    @campaign_action("check retry eligibility")
    async def check_retry_eligibility(self, campaign_id: str, tenant_id: str) -> ActionResult:
        campaign = await self._get_campaign(campaign_id, tenant_id)
        eligibility = evaluate_retry_eligibility(campaign, self.retry_policy)
        return ActionResult(
            success=True,
            message="Retry eligibility checked successfully",
            data=eligibility.model_dump(mode="json"),
        )

    @campaign_action("retry campaign")
    async def retry_campaign(self, campaign_id: str, tenant_id: str) -> ActionResult:
        """
        Re-send a sent campaign to recipients without a delivered event.

        The campaign reopens to sending; total_sent is not incremented again
        for the re-sent recipients.
        """
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            eligibility = evaluate_retry_eligibility(campaign, self.retry_policy)
            if not eligibility.eligible:
                if campaign.status != CampaignStatus.SENT:
                    raise StateConflictError(eligibility.reason, campaign.status)
                raise ValidationError(eligibility.reason)

            delivered = await self.analytics_repository.get_delivered_recipients(campaign_id)
            pending = [r for r in campaign.recipients if r.email not in delivered]
            if not pending:
                raise ValidationError("All recipients have already been delivered")

            campaign = await self._transition(
                campaign, CampaignStatus.SENDING, "retry", last_retry_at=utc_now()
            )
            job_ids = await self._dispatch(campaign, pending, CampaignStatus.SENT, retry=True)

        await self.event_publisher.publish_campaign_retry(
            campaign_id, campaign.tenant_id, eligibility.failure_rate, len(pending)
        )
        logger.info(f"Campaign {campaign_id} retry queued for {len(pending)} recipients")
        return ActionResult(
            success=True,
            message="Campaign retry initiated",
            data={
                "campaign": self._dump(campaign),
                "retry_count": len(pending),
                "batch_job_ids": job_ids,
            },
        )

    async def get_batch_status(self, campaign_id: str, tenant_id: str) -> BatchStatus:
        """Batch progress of the tenant's campaign; NotFoundError for another tenant's campaign"""
        await self._get_campaign(campaign_id, tenant_id)
        return await self.batch_processor.get_campaign_batch_status(campaign_id)

    @campaign_action("retry failed batches")
    async def retry_failed_batches(self, campaign_id: str, tenant_id: str) -> ActionResult:
        """Re-queue the batch jobs of the last send that exhausted their attempts"""
        async with self._campaign_lock(campaign_id):
            campaign = await self._get_campaign(campaign_id, tenant_id)
            batch_status = await self.batch_processor.get_campaign_batch_status(campaign_id)
            if batch_status.failed_batches == 0:
                raise ValidationError("No failed batches found for this campaign")

            if campaign.status == CampaignStatus.SENT:
                # Workers skip batches of sent campaigns
                campaign = await self._transition(
                    campaign, CampaignStatus.SENDING, "retry", last_retry_at=utc_now()
                )
            elif campaign.status not in (CampaignStatus.SENDING, CampaignStatus.PAUSED):
                raise StateConflictError(
                    f"Cannot retry campaign with status: {campaign.status.value}", campaign.status
                )

            retried = await self.batch_processor.retry_failed_batches(campaign_id)

        return ActionResult(
            success=True,
            message=f"Retry scheduled for {len(retried)} failed batches",
            data={"retried_job_ids": retried},
        )

    # ====================
    # Worker Side
    # ====================

    async def process_email_job(self, job: EmailJob) -> Dict[str, Any]:
        """
        Email queue handler.

        A job without recipients or batch index is a campaign start. Batch
        jobs are deferred while the campaign is paused and skipped once it
        is cancelled, gone or no longer sending.
        """
        if job.batch_index is None and not job.recipients:
            return await self.start_scheduled_campaign(job.campaign_id, job.tenant_id)

        campaign = await self.repository.get_campaign(job.campaign_id)
        if campaign is None:
            logger.warning(f"Skipping batch {job.batch_index} of missing campaign {job.campaign_id}")
            return {"skipped": True, "reason": "not_found"}
        if campaign.status == CampaignStatus.PAUSED:
            raise JobDeferred(self.batch_config.retry_delay_ms, f"Campaign {campaign.id} is paused")
        if campaign.status != CampaignStatus.SENDING:
            logger.info(
                f"Skipping batch {job.batch_index} of campaign {campaign.id} in status {campaign.status.value}"
            )
            return {"skipped": True, "reason": campaign.status.value}

        result = await self.batch_processor.process_campaign_in_batches(
            campaign.id,
            campaign.tenant_id,
            job.recipients,
            batch_size=job.batch_size,
            retry=job.retry,
            subject=campaign.subject_line,
            text=campaign.preview_text,
        )
        if result.total_batches and result.failed_batches == result.total_batches:
            raise TransportError(
                f"All {result.total_batches} transport calls failed for batch {job.batch_index} "
                f"of campaign {campaign.id}"
            )

        attempted = result.total_emails_sent + result.total_emails_failed
        if not job.retry and attempted:
            await self.repository.increment_analytics(campaign.id, {"total_sent": attempted})

        return result.model_dump()

    async def start_scheduled_campaign(self, campaign_id: str, tenant_id: str) -> Dict[str, Any]:
        """
        A start job fired: move the campaign to sending and fan out.

        Start jobs come from schedule_email_campaign (scheduled campaigns) or
        send_email_campaign (reviewed campaigns queued for sending).
        """
        async with self._campaign_lock(campaign_id, retries=WORKER_LOCK_RETRIES):
            campaign = await self.repository.get_campaign(campaign_id, tenant_id)
            if campaign is None or campaign.status not in (CampaignStatus.SCHEDULED, CampaignStatus.REVIEW):
                status = campaign.status.value if campaign else "not_found"
                logger.info(f"Start job for campaign {campaign_id} skipped ({status})")
                return {"skipped": True, "reason": status}

            previous_status = campaign.status
            campaign = await self._transition(campaign, CampaignStatus.SENDING, "send")
            job_ids = await self._dispatch(campaign, campaign.recipients, previous_status)

        await self.event_publisher.publish_campaign_sending(
            campaign_id, campaign.tenant_id, len(campaign.recipients), len(job_ids)
        )
        if not job_ids:
            await self.complete_if_finished(campaign_id)
        return {"campaign_id": campaign_id, "batches": len(job_ids)}

    async def on_email_job_finished(self, job: Job) -> None:
        """Worker hook run after an email job completes or finally fails"""
        payload = job.payload
        if isinstance(payload, EmailJob) and payload.batch_index is not None:
            await self.complete_if_finished(payload.campaign_id)

    async def complete_if_finished(self, campaign_id: str) -> bool:
        """
        Mark a sending campaign sent once every batch job is terminal.

        Enqueues the campaign-complete analytics job. Returns True when the
        campaign was completed by this call.
        """
        async with self._campaign_lock(campaign_id, retries=WORKER_LOCK_RETRIES):
            campaign = await self.repository.get_campaign(campaign_id)
            if campaign is None or campaign.status != CampaignStatus.SENDING:
                return False

            batch_status = await self.batch_processor.get_campaign_batch_status(campaign_id)
            if batch_status.status == BatchProgress.IN_PROGRESS:
                return False
            if batch_status.total_batches == 0 and campaign.recipients:
                # Unknown fan-out: outstanding batches may still exist
                logger.warning(f"Campaign {campaign_id} is sending but has no recorded batches")
                return False

            campaign = await self._transition(campaign, CampaignStatus.SENT, "complete", sent_at=utc_now())

        await self.queue_manager.schedule_analytics_job(
            AnalyticsJob(
                campaign_id=campaign_id,
                tenant_id=campaign.tenant_id,
                event_type=AnalyticsJobType.CAMPAIGN_COMPLETE,
                data={"batch_status": batch_status.model_dump(mode="json")},
            )
        )
        await self.event_publisher.publish_campaign_sent(
            campaign_id,
            campaign.tenant_id,
            campaign.analytics.total_sent,
            campaign.analytics.delivered,
            batch_status.failed_batches,
        )
        logger.info(
            f"Campaign {campaign_id} sent ({batch_status.completed_batches} batches ok, "
            f"{batch_status.failed_batches} failed)"
        )
        return True


__all__ = [
    "CampaignService",
    "campaign_action",
    "campaign_lock_name",
    "calculate_failure_rate",
    "evaluate_retry_eligibility",
    "resolve_schedule_time",
]
