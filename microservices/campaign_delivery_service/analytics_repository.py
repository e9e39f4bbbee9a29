"""
Analytics Data Repository

Event store, nightly rollups and report queries - PostgreSQL (asyncpg)
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from core.config import InfraConfig
from core.postgres_client import PostgresClientWrapper

from .campaign_repository import json_dumps, lock_and_increment_analytics
from .models import (
    CampaignAnalytics,
    DailyAggregate,
    DailyMetrics,
    EmailEvent,
    EmailEventType,
    PerformancePoint,
    count_events_by_counter,
    utc_now,
)

logger = logging.getLogger(__name__)


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _iso_date(value: Any) -> str:
    return value.isoformat() if isinstance(value, (date, datetime)) else str(value)


class AnalyticsRepository:
    """Email event and analytics repository - PostgreSQL (asyncpg)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None, config: Optional[InfraConfig] = None):
        self.db = db or PostgresClientWrapper("campaign_delivery_service", config)
        self.schema = "newsletter"
        self.campaigns_table = "campaigns"
        self.events_table = "email_events"
        self.daily_table = "daily_analytics"

    async def health_check(self) -> bool:
        return await self.db.health_check()

    # ====================
    # Event Ingestion
    # ====================

    async def record_events(self, events: List[EmailEvent]) -> Dict[str, CampaignAnalytics]:
        """
        Insert events and apply one analytics update per campaign.

        Everything happens in a single transaction; any failure rolls the
        whole call back and propagates.
        """
        if not events:
            return {}

        by_campaign: Dict[str, List[EmailEvent]] = defaultdict(list)
        for event in events:
            if event.campaign_id:
                by_campaign[event.campaign_id].append(event)

        insert_query = f'''
            INSERT INTO {self.schema}.{self.events_table} (
                id, tenant_id, campaign_id, recipient_email,
                event_type, event_data, timestamp
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
        '''
        rows = [
            [
                event.id,
                event.tenant_id,
                event.campaign_id,
                event.recipient_email,
                event.event_type.value,
                json_dumps(event.event_data),
                event.timestamp,
            ]
            for event in events
        ]

        try:
            updated: Dict[str, CampaignAnalytics] = {}
            now = utc_now()
            async with self.db.transaction() as conn:
                await conn.executemany(insert_query, rows)
                # Sorted to take row locks in a stable order across writers
                for campaign_id in sorted(by_campaign):
                    increments = count_events_by_counter(by_campaign[campaign_id])
                    analytics = await lock_and_increment_analytics(conn, campaign_id, increments, now)
                    if analytics is None:
                        logger.warning(f"Events reference unknown campaign {campaign_id}")
                        continue
                    updated[campaign_id] = analytics
            return updated

        except Exception as e:
            logger.error(f"Error recording {len(events)} email events: {e}")
            raise

    async def get_delivered_recipients(self, campaign_id: str) -> Set[str]:
        """Recipients with a delivered event for the campaign"""
        try:
            query = f'''
                SELECT DISTINCT recipient_email FROM {self.schema}.{self.events_table}
                WHERE campaign_id = $1 AND event_type = 'delivered'
            '''
            rows = await self.db.query(query, [campaign_id])
            return {row["recipient_email"].lower() for row in rows}

        except Exception as e:
            logger.error(f"Error loading delivered recipients for campaign {campaign_id}: {e}")
            raise

    # ====================
    # Nightly Rollup
    # ====================

    async def compute_daily_metrics(self, day: date) -> List[DailyAggregate]:
        """Group one day's events by (tenant, campaign)"""
        start, end = _day_bounds(day)
        try:
            query = f'''
                SELECT
                    tenant_id,
                    campaign_id,
                    COUNT(*) FILTER (WHERE event_type = 'delivered') AS delivered,
                    COUNT(*) FILTER (WHERE event_type = 'opened') AS opened,
                    COUNT(*) FILTER (WHERE event_type = 'clicked') AS clicked,
                    COUNT(*) FILTER (WHERE event_type = 'bounced') AS bounced,
                    COUNT(*) FILTER (WHERE event_type = 'unsubscribed') AS unsubscribed,
                    COUNT(*) FILTER (WHERE event_type = 'complained') AS complained,
                    COUNT(DISTINCT recipient_email) FILTER (WHERE event_type = 'opened') AS unique_opens,
                    COUNT(DISTINCT recipient_email) FILTER (WHERE event_type = 'clicked') AS unique_clicks
                FROM {self.schema}.{self.events_table}
                WHERE timestamp >= $1 AND timestamp < $2
                GROUP BY tenant_id, campaign_id
            '''
            rows = await self.db.query(query, [start, end])
            return [
                DailyAggregate(
                    tenant_id=row["tenant_id"],
                    campaign_id=row["campaign_id"],
                    date=day,
                    metrics=DailyMetrics(
                        total_sent=row["delivered"],
                        delivered=row["delivered"],
                        opened=row["opened"],
                        clicked=row["clicked"],
                        bounced=row["bounced"],
                        unsubscribed=row["unsubscribed"],
                        complained=row["complained"],
                        unique_opens=row["unique_opens"],
                        unique_clicks=row["unique_clicks"],
                    ),
                )
                for row in rows
            ]

        except Exception as e:
            logger.error(f"Error computing daily metrics for {day}: {e}")
            raise

    async def upsert_daily_aggregates(self, aggregates: List[DailyAggregate]) -> int:
        """Insert or overwrite aggregates keyed by (tenant, campaign, date)"""
        if not aggregates:
            return 0
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.daily_table} (tenant_id, campaign_id, date, metrics)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (tenant_id, (COALESCE(campaign_id, '')), date)
                DO UPDATE SET metrics = EXCLUDED.metrics, updated_at = NOW()
            '''
            rows = [
                [agg.tenant_id, agg.campaign_id, agg.date, agg.metrics.model_dump_json()]
                for agg in aggregates
            ]
            async with self.db.transaction() as conn:
                await conn.executemany(query, rows)
            return len(rows)

        except Exception as e:
            logger.error(f"Error upserting {len(aggregates)} daily aggregates: {e}")
            raise

    # ====================
    # Performance Series
    # ====================

    async def get_aggregate_series(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PerformancePoint]:
        query = f'''
            SELECT
                date,
                COALESCE(SUM((metrics->>'delivered')::int), 0) AS sent,
                COALESCE(SUM((metrics->>'opened')::int), 0) AS opened,
                COALESCE(SUM((metrics->>'clicked')::int), 0) AS clicked
            FROM {self.schema}.{self.daily_table}
            WHERE tenant_id = $1 AND date >= $2 AND date <= $3
            GROUP BY date
            ORDER BY date ASC
        '''
        rows = await self.db.query(query, [tenant_id, start.date(), end.date()])
        return [
            PerformancePoint(date=_iso_date(row["date"]), sent=row["sent"], opened=row["opened"], clicked=row["clicked"])
            for row in rows
        ]

    async def get_realtime_series(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PerformancePoint]:
        query = f'''
            SELECT
                DATE(timestamp AT TIME ZONE 'UTC') AS date,
                COUNT(*) FILTER (WHERE event_type = 'delivered') AS sent,
                COUNT(*) FILTER (WHERE event_type = 'opened') AS opened,
                COUNT(*) FILTER (WHERE event_type = 'clicked') AS clicked
            FROM {self.schema}.{self.events_table}
            WHERE tenant_id = $1 AND timestamp >= $2 AND timestamp <= $3
            GROUP BY 1
            ORDER BY 1 ASC
        '''
        rows = await self.db.query(query, [tenant_id, start, end])
        return [
            PerformancePoint(date=_iso_date(row["date"]), sent=row["sent"], opened=row["opened"], clicked=row["clicked"])
            for row in rows
        ]

    # ====================
    # Dashboard
    # ====================

    async def count_campaigns(self, tenant_id: str, start: datetime, end: datetime) -> int:
        query = f'''
            SELECT COUNT(*) AS count FROM {self.schema}.{self.campaigns_table}
            WHERE tenant_id = $1 AND created_at >= $2 AND created_at <= $3
        '''
        row = await self.db.query_row(query, [tenant_id, start, end])
        return int(row["count"]) if row else 0

    async def sum_total_sent(self, tenant_id: str, start: datetime, end: datetime) -> int:
        query = f'''
            SELECT COALESCE(SUM((analytics->>'total_sent')::int), 0) AS total
            FROM {self.schema}.{self.campaigns_table}
            WHERE tenant_id = $1 AND created_at >= $2 AND created_at <= $3
        '''
        row = await self.db.query_row(query, [tenant_id, start, end])
        return int(row["total"]) if row else 0

    async def average_rates(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> Tuple[float, float]:
        """Average open and click rate over campaigns with sends"""
        query = f'''
            SELECT
                AVG((analytics->>'open_rate')::float) AS avg_open_rate,
                AVG((analytics->>'click_rate')::float) AS avg_click_rate
            FROM {self.schema}.{self.campaigns_table}
            WHERE tenant_id = $1 AND created_at >= $2 AND created_at <= $3
              AND COALESCE((analytics->>'total_sent')::int, 0) > 0
        '''
        row = await self.db.query_row(query, [tenant_id, start, end]) or {}
        return float(row.get("avg_open_rate") or 0), float(row.get("avg_click_rate") or 0)

    async def recent_sent_campaigns(
        self, tenant_id: str, start: datetime, end: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        query = f'''
            SELECT
                id, name, sent_at,
                COALESCE((analytics->>'open_rate')::float, 0) AS open_rate,
                COALESCE((analytics->>'click_rate')::float, 0) AS click_rate
            FROM {self.schema}.{self.campaigns_table}
            WHERE tenant_id = $1 AND status = 'sent'
              AND created_at >= $2 AND created_at <= $3
            ORDER BY sent_at DESC NULLS LAST
            LIMIT $4
        '''
        return await self.db.query(query, [tenant_id, start, end, limit])

    async def top_campaigns_by_open_rate(
        self, tenant_id: str, start: datetime, end: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        query = f'''
            SELECT
                id, name,
                COALESCE((analytics->>'open_rate')::float, 0) AS open_rate,
                COALESCE((analytics->>'click_rate')::float, 0) AS click_rate
            FROM {self.schema}.{self.campaigns_table}
            WHERE tenant_id = $1 AND status = 'sent'
              AND created_at >= $2 AND created_at <= $3
              AND COALESCE((analytics->>'total_sent')::int, 0) > 0
            ORDER BY (analytics->>'open_rate')::float DESC
            LIMIT $4
        '''
        return await self.db.query(query, [tenant_id, start, end, limit])

    # ====================
    # Campaign Report
    # ====================

    async def count_events_by_type(self, campaign_id: str) -> Dict[str, int]:
        query = f'''
            SELECT event_type, COUNT(*) AS count
            FROM {self.schema}.{self.events_table}
            WHERE campaign_id = $1
            GROUP BY event_type
        '''
        rows = await self.db.query(query, [campaign_id])
        return {row["event_type"]: int(row["count"]) for row in rows}

    async def count_unique_recipients(
        self, campaign_id: str, event_type: EmailEventType
    ) -> int:
        query = f'''
            SELECT COUNT(DISTINCT recipient_email) AS count
            FROM {self.schema}.{self.events_table}
            WHERE campaign_id = $1 AND event_type = $2
        '''
        row = await self.db.query_row(query, [campaign_id, event_type.value])
        return int(row["count"]) if row else 0

    async def top_clicked_links(self, campaign_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        query = f'''
            SELECT event_data->>'link_url' AS url, COUNT(*) AS clicks
            FROM {self.schema}.{self.events_table}
            WHERE campaign_id = $1 AND event_type = 'clicked'
              AND event_data->>'link_url' IS NOT NULL
            GROUP BY 1
            ORDER BY clicks DESC
            LIMIT $2
        '''
        rows = await self.db.query(query, [campaign_id, limit])
        return [{"url": row["url"] or "", "clicks": int(row["clicks"])} for row in rows]

    async def event_timeline(self, campaign_id: str, days: int = 30) -> List[Dict[str, Any]]:
        query = f'''
            SELECT
                DATE(timestamp AT TIME ZONE 'UTC') AS date,
                COUNT(*) FILTER (WHERE event_type = 'opened') AS opens,
                COUNT(*) FILTER (WHERE event_type = 'clicked') AS clicks
            FROM {self.schema}.{self.events_table}
            WHERE campaign_id = $1 AND timestamp >= $2
            GROUP BY 1
            ORDER BY 1 ASC
        '''
        since = utc_now() - timedelta(days=days)
        rows = await self.db.query(query, [campaign_id, since])
        return [
            {"date": _iso_date(row["date"]), "opens": int(row["opens"]), "clicks": int(row["clicks"])}
            for row in rows
        ]


__all__ = ["AnalyticsRepository"]
