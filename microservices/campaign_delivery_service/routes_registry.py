"""
Campaign Delivery Service Routes Registry

Defines service metadata and the public route table.
"""

SERVICE_METADATA = {
    "service_name": "campaign_delivery_service",
    "version": "1.0.0",
    "tags": ['campaign', 'email', 'delivery', 'analytics', 'v1'],
    "capabilities": [
        'campaign_lifecycle',
        'scheduled_sending',
        'batched_delivery',
        'retry_failed_recipients',
        'webhook_ingestion',
        'delivery_analytics',
        'queue_administration',
    ],
}

ROUTES = [
    {"path": "/health", "methods": ["GET"], "description": "Health check"},
    {"path": "/health/live", "methods": ["GET"], "description": "Liveness check"},
    {"path": "/api/v1/campaign-delivery/info", "methods": ["GET"], "description": "Service information"},
    {"path": "/api/v1/campaigns", "methods": ["GET", "POST"], "description": "List or create campaigns"},
    {"path": "/api/v1/campaigns/stats", "methods": ["GET"], "description": "Campaign counts and send totals"},
    {"path": "/api/v1/campaigns/upcoming", "methods": ["GET"], "description": "Upcoming scheduled campaigns"},
    {"path": "/api/v1/campaigns/{campaign_id}", "methods": ["GET", "PATCH", "DELETE"], "description": "Campaign CRUD"},
    {"path": "/api/v1/campaigns/{campaign_id}/submit", "methods": ["POST"], "description": "Submit for review"},
    {"path": "/api/v1/campaigns/{campaign_id}/schedule", "methods": ["POST"], "description": "Schedule campaign"},
    {"path": "/api/v1/campaigns/{campaign_id}/reschedule", "methods": ["POST"], "description": "Reschedule campaign"},
    {"path": "/api/v1/campaigns/{campaign_id}/unschedule", "methods": ["POST"], "description": "Unschedule campaign"},
    {"path": "/api/v1/campaigns/{campaign_id}/send", "methods": ["POST"], "description": "Send campaign"},
    {"path": "/api/v1/campaigns/{campaign_id}/pause", "methods": ["POST"], "description": "Pause sending"},
    {"path": "/api/v1/campaigns/{campaign_id}/resume", "methods": ["POST"], "description": "Resume sending"},
    {"path": "/api/v1/campaigns/{campaign_id}/cancel", "methods": ["POST"], "description": "Cancel campaign"},
    {"path": "/api/v1/campaigns/{campaign_id}/retry-eligibility", "methods": ["GET"], "description": "Retry eligibility"},
    {"path": "/api/v1/campaigns/{campaign_id}/retry", "methods": ["POST"], "description": "Retry undelivered recipients"},
    {"path": "/api/v1/campaigns/{campaign_id}/retry-failed-batches", "methods": ["POST"], "description": "Retry failed batch jobs"},
    {"path": "/api/v1/campaigns/{campaign_id}/batches", "methods": ["GET"], "description": "Batch progress"},
    {"path": "/api/v1/webhooks/resend", "methods": ["POST"], "description": "Email provider webhook"},
    {"path": "/api/v1/queues/stats", "methods": ["GET"], "description": "All queue stats"},
    {"path": "/api/v1/queues/health", "methods": ["GET"], "description": "Queue connectivity"},
    {"path": "/api/v1/queues/campaigns/{campaign_id}/job", "methods": ["GET"], "description": "Campaign start job status"},
    {"path": "/api/v1/queues/campaigns/{campaign_id}/send", "methods": ["POST"], "description": "Queue campaign start job"},
    {"path": "/api/v1/queues/{queue_name}/stats", "methods": ["GET"], "description": "Queue stats"},
    {"path": "/api/v1/queues/{queue_name}/pause", "methods": ["POST"], "description": "Pause queue"},
    {"path": "/api/v1/queues/{queue_name}/resume", "methods": ["POST"], "description": "Resume queue"},
    {"path": "/api/v1/queues/{queue_name}/clean", "methods": ["POST"], "description": "Clean finished jobs"},
    {"path": "/api/v1/queues/{queue_name}/failed", "methods": ["GET"], "description": "Failed jobs"},
    {"path": "/api/v1/queues/{queue_name}/jobs/{job_id}/retry", "methods": ["POST"], "description": "Retry failed job"},
    {"path": "/api/v1/queues/{queue_name}/jobs/{job_id}", "methods": ["DELETE"], "description": "Remove job"},
    {"path": "/api/v1/analytics/dashboard", "methods": ["GET"], "description": "Tenant dashboard"},
    {"path": "/api/v1/analytics/performance", "methods": ["GET"], "description": "Daily performance series"},
    {"path": "/api/v1/analytics/campaigns/{campaign_id}/report", "methods": ["GET"], "description": "Campaign report"},
    {"path": "/api/v1/analytics/aggregate", "methods": ["POST"], "description": "Run nightly aggregation"},
    {"path": "/api/v1/analytics/cache/invalidate", "methods": ["POST"], "description": "Drop tenant report cache"},
]


def get_route_summary():
    """Get route metadata for service discovery"""
    return {
        "route_count": str(len(ROUTES)),
        "routes": ",".join([r["path"] for r in ROUTES]),
        "api_version": "v1",
        "base_path": "/api/v1",
    }


__all__ = ["SERVICE_METADATA", "ROUTES", "get_route_summary"]
