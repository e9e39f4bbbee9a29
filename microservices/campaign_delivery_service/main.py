"""
Campaign Delivery Service Main Application

FastAPI application for campaign delivery, webhook ingestion, queue
administration and analytics reports.
Port: 8252
"""

import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from core.config import get_settings

from .analytics_service import AnalyticsService
from .campaign_service import CampaignService
from .factory import CampaignDeliveryServiceFactory
from .job_queue import DEFAULT_CLEAN_GRACE_MS, QueueManager
from .models import (
    ActionErrorCode,
    ActionResult,
    CampaignCreateRequest,
    CampaignListQuery,
    CampaignStatus,
    CampaignUpdateRequest,
    HealthResponse,
    LivenessResponse,
    ScheduleRequest,
    SendRequest,
    WebhookResponse,
    utc_now,
)
from .protocols import (
    CampaignDeliveryError,
    NotFoundError,
    StateConflictError,
    TransientInfraError,
    ValidationError,
)
from .report_service import ReportService
from .routes_registry import SERVICE_METADATA, get_route_summary
from .webhook_processor import process_webhook

# Configure logging
settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.logging.log_level.upper(), logging.INFO),
    format=settings.logging.log_format
)
logger = logging.getLogger(__name__)

# Service configuration
SERVICE_NAME = "campaign_delivery_service"
SERVICE_PORT = int(os.getenv("SERVICE_PORT", "8252"))
SERVICE_VERSION = "1.0.0"
DEFAULT_REPORT_DAYS = 30

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[CampaignDeliveryServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = CampaignDeliveryServiceFactory(settings)
    await factory.initialize()
    await factory.start_workers()

    yield

    # Cleanup
    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Campaign Delivery Service",
    description="Campaign scheduling, batched delivery and delivery analytics",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "error_code": ActionErrorCode.VALIDATION.value},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "error_code": ActionErrorCode.NOT_FOUND.value},
    )


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "error_code": ActionErrorCode.STATE_CONFLICT.value},
    )


@app.exception_handler(TransientInfraError)
async def transient_infra_handler(request: Request, exc: TransientInfraError):
    logger.warning(f"Infrastructure unavailable for {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable, please retry"},
    )


@app.exception_handler(CampaignDeliveryError)
async def delivery_error_handler(request: Request, exc: CampaignDeliveryError):
    logger.error(f"Unhandled delivery error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc), "error_code": ActionErrorCode.INTERNAL.value},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler"""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "type": type(exc).__name__},
    )


# ====================
# Dependencies
# ====================


def _require_factory() -> CampaignDeliveryServiceFactory:
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_campaign_service() -> CampaignService:
    """Get campaign service from factory"""
    return _require_factory().campaign_service


def get_analytics_service() -> AnalyticsService:
    return _require_factory().analytics_service


def get_report_service() -> ReportService:
    return _require_factory().report_service


def get_queue_manager() -> QueueManager:
    return _require_factory().queue_manager


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Tenant id resolved upstream and passed as X-Tenant-ID"""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant context not found",
        )
    return x_tenant_id


ACTION_ERROR_STATUS = {
    ActionErrorCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ActionErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ActionErrorCode.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ActionErrorCode.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def action_response(result: ActionResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Render an ActionResult with the HTTP status matching its error code"""
    if result.success:
        status_code = success_status
    else:
        status_code = ACTION_ERROR_STATUS.get(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


def _report_window(start: Optional[datetime], end: Optional[datetime]):
    end = end or utc_now()
    start = start or end - timedelta(days=DEFAULT_REPORT_DAYS)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if start >= end:
        raise ValidationError("start must be before end", field="start")
    return start, end


# ====================
# Health Endpoints
# ====================


async def _check(name: str, probe) -> bool:
    try:
        return bool(await probe())
    except Exception as e:
        logger.warning(f"Health check {name} failed: {e}")
        return False


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Store, cache, queue and transport reachability"""
    checks = {}
    if factory:
        checks["postgres"] = await _check("postgres", factory.campaign_repository.health_check)
        checks["redis"] = await _check("redis", factory.cache.health_check)

        async def queues_ok():
            return (await factory.queue_manager.health_check())["overall"]

        checks["queues"] = await _check("queues", queues_ok)
        checks["transport"] = await _check("transport", factory.transport.health_check)
    else:
        checks["factory"] = False

    healthy = all(checks.values())
    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        checks=checks,
        uptime=time.time() - startup_time,
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=jsonable_encoder(response),
    )


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(
        alive=True,
        uptime_seconds=time.time() - startup_time,
    )


@app.get("/api/v1/campaign-delivery/info", tags=["Health"])
async def service_info():
    """Service metadata and route table"""
    return {
        **SERVICE_METADATA,
        "port": SERVICE_PORT,
        "workers_enabled": settings.queue.workers_enabled,
        **get_route_summary(),
    }


# ====================
# Campaign Endpoints
# ====================


@app.post("/api/v1/campaigns", tags=["Campaigns"])
async def create_campaign(
    request: CampaignCreateRequest,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    """Create a campaign in draft"""
    result = await service.create_campaign(tenant_id, request)
    return action_response(result, status.HTTP_201_CREATED)


@app.get("/api/v1/campaigns", tags=["Campaigns"])
async def list_campaigns(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        query = CampaignListQuery(
            page=page, limit=limit, status=status_filter, sort_by=sort_by, sort_order=sort_order
        )
    except ValueError as e:
        raise ValidationError(f"Validation error: {e}")
    return action_response(await service.list_campaigns(tenant_id, query))


@app.get("/api/v1/campaigns/stats", tags=["Campaigns"])
async def get_campaign_stats(
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.get_campaign_stats(tenant_id))


@app.get("/api/v1/campaigns/upcoming", tags=["Campaigns"])
async def get_upcoming_campaigns(
    limit: int = Query(10, ge=1, le=100),
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.get_upcoming_campaigns(tenant_id, limit))


@app.get("/api/v1/campaigns/{campaign_id}", tags=["Campaigns"])
async def get_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.get_campaign(campaign_id, tenant_id))


@app.patch("/api/v1/campaigns/{campaign_id}", tags=["Campaigns"])
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdateRequest,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.update_campaign(campaign_id, tenant_id, request))


@app.delete("/api/v1/campaigns/{campaign_id}", tags=["Campaigns"])
async def delete_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.delete_campaign(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/submit", tags=["Campaign Lifecycle"])
async def submit_for_review(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.submit_for_review(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/schedule", tags=["Campaign Lifecycle"])
async def schedule_campaign(
    campaign_id: str,
    request: ScheduleRequest,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.schedule_campaign(campaign_id, tenant_id, request))


@app.post("/api/v1/campaigns/{campaign_id}/reschedule", tags=["Campaign Lifecycle"])
async def reschedule_campaign(
    campaign_id: str,
    request: ScheduleRequest,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.reschedule_campaign(campaign_id, tenant_id, request))


@app.post("/api/v1/campaigns/{campaign_id}/unschedule", tags=["Campaign Lifecycle"])
async def unschedule_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.unschedule_campaign(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/send", tags=["Campaign Lifecycle"])
async def send_campaign(
    campaign_id: str,
    request: Optional[SendRequest] = Body(None),
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    """Send now, or schedule when scheduled_at is in the future"""
    return action_response(await service.send_campaign(campaign_id, tenant_id, request))


@app.post("/api/v1/campaigns/{campaign_id}/pause", tags=["Campaign Lifecycle"])
async def pause_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.pause_campaign(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/resume", tags=["Campaign Lifecycle"])
async def resume_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.resume_campaign(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/cancel", tags=["Campaign Lifecycle"])
async def cancel_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.cancel_campaign(campaign_id, tenant_id))


@app.get("/api/v1/campaigns/{campaign_id}/retry-eligibility", tags=["Campaign Retry"])
async def check_retry_eligibility(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.check_retry_eligibility(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/retry", tags=["Campaign Retry"])
async def retry_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.retry_campaign(campaign_id, tenant_id))


@app.post("/api/v1/campaigns/{campaign_id}/retry-failed-batches", tags=["Campaign Retry"])
async def retry_failed_batches(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    return action_response(await service.retry_failed_batches(campaign_id, tenant_id))


@app.get("/api/v1/campaigns/{campaign_id}/batches", tags=["Campaign Retry"])
async def get_campaign_batch_status(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    tenant_id: str = Depends(get_tenant_id),
):
    """Progress of the batch jobs of the campaign's last send"""
    batch_status = await service.get_batch_status(campaign_id, tenant_id)
    return batch_status.model_dump(mode="json")


# ====================
# Webhook Endpoints
# ====================


@app.post("/api/v1/webhooks/resend", response_model=WebhookResponse, tags=["Webhooks"])
async def resend_webhook(
    request: Request,
    analytics_service: AnalyticsService = Depends(get_analytics_service),
):
    """Ingest a delivery event from the email provider"""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict) or not payload.get("type"):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": "Invalid webhook payload"},
        )

    try:
        event = process_webhook(payload)
        if event is None:
            return WebhookResponse(message="Event ignored")

        await analytics_service.record_email_event(event)
        logger.info(f"Recorded {event.event_type.value} event for campaign {event.campaign_id}")
        return WebhookResponse(message="Event processed successfully", event_id=event.id)

    except Exception as e:
        logger.error(f"Failed to process {payload.get('type')} webhook: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Failed to process webhook"},
        )


# ====================
# Queue Administration Endpoints
# ====================


@app.get("/api/v1/queues/stats", tags=["Queues"])
async def get_all_queue_stats(queue_manager: QueueManager = Depends(get_queue_manager)):
    stats = await queue_manager.get_all_queue_stats()
    return {name: s.model_dump() for name, s in stats.items()}


@app.get("/api/v1/queues/health", tags=["Queues"])
async def get_queue_health(queue_manager: QueueManager = Depends(get_queue_manager)):
    return await queue_manager.health_check()


@app.get("/api/v1/queues/campaigns/{campaign_id}/job", tags=["Queues"])
async def get_campaign_job_status(
    campaign_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    """Start job of a campaign (scheduled or queued send)"""
    job_status = await queue_manager.get_campaign_job_status(campaign_id)
    if job_status is None:
        raise NotFoundError(f"No start job for campaign {campaign_id}")
    return job_status


@app.post("/api/v1/queues/campaigns/{campaign_id}/send", tags=["Queues"])
async def queue_campaign_send(
    campaign_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
    tenant_id: str = Depends(get_tenant_id),
):
    """Queue a start job for a reviewed campaign; a worker moves it to sending"""
    handle = await queue_manager.send_email_campaign(campaign_id, tenant_id)
    return handle.model_dump()


@app.get("/api/v1/queues/{queue_name}/stats", tags=["Queues"])
async def get_queue_stats(queue_name: str, queue_manager: QueueManager = Depends(get_queue_manager)):
    return (await queue_manager.get_queue_stats(queue_name)).model_dump()


@app.post("/api/v1/queues/{queue_name}/pause", tags=["Queues"])
async def pause_queue(queue_name: str, queue_manager: QueueManager = Depends(get_queue_manager)):
    await queue_manager.pause_queue(queue_name)
    return {"message": f"Queue {queue_name} paused"}


@app.post("/api/v1/queues/{queue_name}/resume", tags=["Queues"])
async def resume_queue(queue_name: str, queue_manager: QueueManager = Depends(get_queue_manager)):
    await queue_manager.resume_queue(queue_name)
    return {"message": f"Queue {queue_name} resumed"}


@app.post("/api/v1/queues/{queue_name}/clean", tags=["Queues"])
async def clean_queue(
    queue_name: str,
    grace_ms: int = Query(DEFAULT_CLEAN_GRACE_MS, ge=0),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    return await queue_manager.clean_queue(queue_name, grace_ms)


@app.get("/api/v1/queues/{queue_name}/failed", tags=["Queues"])
async def get_failed_jobs(
    queue_name: str,
    limit: int = Query(50, ge=1, le=500),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    jobs = await queue_manager.get_failed_jobs(queue_name, limit)
    return {"jobs": [job.model_dump(mode="json") for job in jobs], "count": len(jobs)}


@app.post("/api/v1/queues/{queue_name}/jobs/{job_id}/retry", tags=["Queues"])
async def retry_job(queue_name: str, job_id: str, queue_manager: QueueManager = Depends(get_queue_manager)):
    if not await queue_manager.retry_job(queue_name, job_id):
        raise StateConflictError(f"Job {job_id} is not in failed state")
    return {"message": f"Job {job_id} moved back to waiting"}


@app.delete("/api/v1/queues/{queue_name}/jobs/{job_id}", tags=["Queues"])
async def remove_job(queue_name: str, job_id: str, queue_manager: QueueManager = Depends(get_queue_manager)):
    if not await queue_manager.remove_job(queue_name, job_id):
        raise NotFoundError(f"Job {job_id} not found")
    return {"message": f"Job {job_id} removed"}


# ====================
# Analytics Endpoints
# ====================


@app.get("/api/v1/analytics/dashboard", tags=["Analytics"])
async def get_dashboard(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    report_service: ReportService = Depends(get_report_service),
    tenant_id: str = Depends(get_tenant_id),
):
    start, end = _report_window(start, end)
    return await report_service.get_optimized_dashboard_data(tenant_id, start, end)


@app.get("/api/v1/analytics/performance", tags=["Analytics"])
async def get_performance_chart(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    report_service: ReportService = Depends(get_report_service),
    tenant_id: str = Depends(get_tenant_id),
):
    start, end = _report_window(start, end)
    points = await report_service.get_performance_chart_data(tenant_id, start, end)
    return {"data": [point.model_dump() for point in points]}


@app.get("/api/v1/analytics/campaigns/{campaign_id}/report", tags=["Analytics"])
async def get_campaign_report(
    campaign_id: str,
    report_service: ReportService = Depends(get_report_service),
):
    return await report_service.get_optimized_campaign_report(campaign_id)


@app.post("/api/v1/analytics/aggregate", tags=["Analytics"])
async def trigger_nightly_aggregation(
    day: Optional[date] = Query(None),
    analytics_service: AnalyticsService = Depends(get_analytics_service),
):
    """Run the daily rollup now (yesterday by default)"""
    upserted = await analytics_service.aggregate_nightly_metrics(day)
    if upserted is None:
        raise StateConflictError("Nightly aggregation is already running")
    return {"upserted": upserted}


@app.post("/api/v1/analytics/cache/invalidate", tags=["Analytics"])
async def invalidate_tenant_cache(
    report_service: ReportService = Depends(get_report_service),
    tenant_id: str = Depends(get_tenant_id),
):
    deleted = await report_service.invalidate_tenant_cache(tenant_id)
    return {"deleted": deleted}


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.campaign_delivery_service.main:app",
        host=settings.service_host,
        port=SERVICE_PORT,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    main()
