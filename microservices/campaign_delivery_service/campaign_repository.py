"""
Campaign Delivery Data Repository

Data access layer - PostgreSQL (asyncpg)
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from core.config import InfraConfig
from core.postgres_client import PostgresClientWrapper

from .models import Campaign, CampaignAnalytics, CampaignStatus, Recipient

logger = logging.getLogger(__name__)

SCHEMA = "newsletter"
CAMPAIGNS_TABLE = "campaigns"

# Columns a content update may touch
UPDATABLE_FIELDS = {"name", "subject_line", "preview_text", "recipients"}
# Timestamps that may accompany a status transition
TRANSITION_FIELDS = {"scheduled_at", "sent_at", "last_retry_at"}
SORT_FIELDS = ["created_at", "updated_at", "scheduled_at", "sent_at", "name"]


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


def _json_field(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


async def lock_and_increment_analytics(
    conn: asyncpg.Connection,
    campaign_id: str,
    increments: Dict[str, int],
    now: Optional[datetime] = None,
) -> Optional[CampaignAnalytics]:
    """
    Row-locked read-modify-write of a campaign's analytics.

    Must run inside a transaction on ``conn``. Returns None when the
    campaign does not exist.
    """
    row = await conn.fetchrow(
        f"SELECT analytics FROM {SCHEMA}.{CAMPAIGNS_TABLE} WHERE id = $1 FOR UPDATE",
        campaign_id,
    )
    if row is None:
        return None

    current = CampaignAnalytics(**_json_field(row["analytics"], {}))
    updated = current.with_increments(increments, now)
    await conn.execute(
        f"UPDATE {SCHEMA}.{CAMPAIGNS_TABLE} SET analytics = $1::jsonb WHERE id = $2",
        updated.model_dump_json(),
        campaign_id,
    )
    return updated


class CampaignRepository:
    """Campaign data repository - PostgreSQL (asyncpg)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None, config: Optional[InfraConfig] = None):
        self.db = db or PostgresClientWrapper("campaign_delivery_service", config)
        self.schema = SCHEMA
        self.campaigns_table = CAMPAIGNS_TABLE

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Campaign repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Campaign repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        return await self.db.health_check()

    # ====================
    # Campaign CRUD
    # ====================

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        """Insert a campaign"""
        try:
            now = datetime.now(timezone.utc)
            query = f'''
                INSERT INTO {self.schema}.{self.campaigns_table} (
                    id, tenant_id, name, subject_line, preview_text,
                    recipients, status, scheduled_at, sent_at, last_retry_at,
                    analytics, created_by, created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10,
                    $11::jsonb, $12, $13, $14
                )
                RETURNING *
            '''
            params = [
                campaign.id,
                campaign.tenant_id,
                campaign.name,
                campaign.subject_line,
                campaign.preview_text,
                json_dumps([r.model_dump() for r in campaign.recipients]),
                campaign.status.value,
                campaign.scheduled_at,
                campaign.sent_at,
                campaign.last_retry_at,
                campaign.analytics.model_dump_json(),
                campaign.created_by,
                campaign.created_at or now,
                campaign.updated_at or now,
            ]
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row)

        except Exception as e:
            logger.error(f"Error creating campaign {campaign.id}: {e}")
            raise

    async def get_campaign(
        self, campaign_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Campaign]:
        """Get campaign by ID, optionally scoped to a tenant"""
        try:
            if tenant_id:
                query = f'''
                    SELECT * FROM {self.schema}.{self.campaigns_table}
                    WHERE id = $1 AND tenant_id = $2
                '''
                row = await self.db.query_row(query, [campaign_id, tenant_id])
            else:
                query = f"SELECT * FROM {self.schema}.{self.campaigns_table} WHERE id = $1"
                row = await self.db.query_row(query, [campaign_id])

            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[CampaignStatus] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters"""
        try:
            conditions = ["tenant_id = $1"]
            params: List[Any] = [tenant_id]

            if status:
                params.append(status.value)
                conditions.append(f"status = ${len(params)}")

            where_clause = " AND ".join(conditions)

            # Validate sort_by to prevent SQL injection
            if sort_by not in SORT_FIELDS:
                sort_by = "created_at"
            order_direction = "DESC" if sort_order.lower() == "desc" else "ASC"

            count_query = f'''
                SELECT COUNT(*) AS total FROM {self.schema}.{self.campaigns_table}
                WHERE {where_clause}
            '''
            count_row = await self.db.query_row(count_query, params)
            total = count_row.get("total", 0) if count_row else 0

            list_query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE {where_clause}
                ORDER BY {sort_by} {order_direction} NULLS LAST
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            '''
            rows = await self.db.query(list_query, params + [limit, offset])
            return [self._row_to_campaign(row) for row in rows], total

        except Exception as e:
            logger.error(f"Error listing campaigns for tenant {tenant_id}: {e}")
            raise

    async def update_campaign(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        """Update campaign content fields"""
        try:
            updates = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
            if not updates:
                return await self.get_campaign(campaign_id)

            set_clauses = []
            params: List[Any] = []

            for key, value in updates.items():
                params.append(self._to_param(key, value))
                cast = "::jsonb" if key == "recipients" else ""
                set_clauses.append(f"{key} = ${len(params)}{cast}")

            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")
            params.append(campaign_id)

            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET {", ".join(set_clauses)}
                WHERE id = ${len(params)}
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error updating campaign {campaign_id}: {e}")
            raise

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        """
        Move a campaign to to_status in one UPDATE, only if its current
        status is one of from_statuses. Returns None when no row matched.
        """
        try:
            now = datetime.now(timezone.utc)
            params: List[Any] = [to_status.value, now]
            set_clauses = ["status = $1", "updated_at = $2"]

            for key, value in fields.items():
                if key not in TRANSITION_FIELDS:
                    raise ValueError(f"Field {key} cannot change with a status transition")
                params.append(value)
                set_clauses.append(f"{key} = ${len(params)}")

            params.append(campaign_id)
            id_param = len(params)
            params.append([s.value for s in from_statuses])
            status_param = len(params)

            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET {", ".join(set_clauses)}
                WHERE id = ${id_param} AND status = ANY(${status_param}::text[])
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error transitioning campaign {campaign_id} to {to_status.value}: {e}")
            raise

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete campaign"""
        try:
            query = f'''
                DELETE FROM {self.schema}.{self.campaigns_table}
                WHERE id = $1
                RETURNING id
            '''
            rows = await self.db.query(query, [campaign_id])
            return len(rows) > 0

        except Exception as e:
            logger.error(f"Error deleting campaign {campaign_id}: {e}")
            raise

    # ====================
    # Statistics
    # ====================

    async def get_status_counts(self, tenant_id: str) -> Dict[str, int]:
        """Campaign counts by status"""
        try:
            query = f'''
                SELECT status, COUNT(*) AS count
                FROM {self.schema}.{self.campaigns_table}
                WHERE tenant_id = $1
                GROUP BY status
            '''
            rows = await self.db.query(query, [tenant_id])
            return {row["status"]: int(row["count"]) for row in rows}

        except Exception as e:
            logger.error(f"Error counting campaigns for tenant {tenant_id}: {e}")
            raise

    async def get_sent_totals(self, tenant_id: str) -> Dict[str, float]:
        """Summed total_sent and average open/click rate over sent campaigns"""
        try:
            query = f'''
                SELECT
                    COALESCE(SUM((analytics->>'total_sent')::int), 0) AS total_sent,
                    COALESCE(AVG((analytics->>'open_rate')::float), 0) AS average_open_rate,
                    COALESCE(AVG((analytics->>'click_rate')::float), 0) AS average_click_rate
                FROM {self.schema}.{self.campaigns_table}
                WHERE tenant_id = $1 AND status = 'sent'
            '''
            row = await self.db.query_row(query, [tenant_id]) or {}
            return {
                "total_sent": int(row.get("total_sent") or 0),
                "average_open_rate": float(row.get("average_open_rate") or 0),
                "average_click_rate": float(row.get("average_click_rate") or 0),
            }

        except Exception as e:
            logger.error(f"Error summing sent campaigns for tenant {tenant_id}: {e}")
            raise

    async def list_upcoming(self, tenant_id: str, limit: int = 10) -> List[Campaign]:
        """Scheduled campaigns ordered by scheduled_at"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE tenant_id = $1 AND status = 'scheduled' AND scheduled_at >= $2
                ORDER BY scheduled_at ASC
                LIMIT $3
            '''
            rows = await self.db.query(query, [tenant_id, datetime.now(timezone.utc), limit])
            return [self._row_to_campaign(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing upcoming campaigns for tenant {tenant_id}: {e}")
            raise

    async def increment_analytics(
        self, campaign_id: str, increments: Dict[str, int]
    ) -> Optional[CampaignAnalytics]:
        """Row-locked counter increment with rate recompute"""
        try:
            async with self.db.transaction() as conn:
                return await lock_and_increment_analytics(conn, campaign_id, increments)

        except Exception as e:
            logger.error(f"Error incrementing analytics for campaign {campaign_id}: {e}")
            raise

    # ====================
    # Helpers
    # ====================

    @staticmethod
    def _to_param(key: str, value: Any) -> Any:
        if key == "recipients":
            return json_dumps([
                r.model_dump() if isinstance(r, Recipient) else r for r in (value or [])
            ])
        return value

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        """Convert database row to Campaign model"""
        recipients = _json_field(row.get("recipients"), [])
        analytics = _json_field(row.get("analytics"), {})

        return Campaign(
            id=row.get("id"),
            tenant_id=row.get("tenant_id"),
            name=row.get("name"),
            subject_line=row.get("subject_line"),
            preview_text=row.get("preview_text"),
            recipients=[Recipient(**r) for r in recipients],
            status=CampaignStatus(row.get("status")),
            scheduled_at=row.get("scheduled_at"),
            sent_at=row.get("sent_at"),
            last_retry_at=row.get("last_retry_at"),
            analytics=CampaignAnalytics(**analytics),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["CampaignRepository", "lock_and_increment_analytics", "json_dumps"]
