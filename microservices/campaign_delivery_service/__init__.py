"""
Campaign Delivery Service

Email campaign delivery microservice providing:
- Campaign lifecycle management (draft, review, schedule, send, pause, cancel)
- Batched delivery through Redis-backed job queues and worker pools
- Retry of undelivered recipients and failed batches
- Provider webhook ingestion into the delivery event store
- Cached dashboards, campaign reports and nightly aggregation

Port: 8252
"""

__version__ = "1.0.0"
__service__ = "campaign_delivery_service"
