"""Daily health metric store."""

from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.database import dialect_insert
from garmin_sync_server.models.base import generate_uuid, utcnow
from garmin_sync_server.models.health_metric import HEALTH_METRIC_FIELDS, HealthMetric
from garmin_sync_server.transformers.health import HealthMetricUpdate

GARMIN_SOURCE = "garmin"


class HealthMetricStore:
    """Merge health metric updates into one row per user per day."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, user_id: str, update: HealthMetricUpdate) -> bool:
        """Insert or merge a day's metrics.

        Only the non-null fields of the update are written, both on insert
        and on conflict, so a sleep push never nulls a resting HR that a
        daily push wrote earlier. Each upsert is its own transaction.

        Returns:
            False if the update carried nothing to write

        Raises:
            SQLAlchemyError: If the write fails (after rolling back)
        """
        values = {
            key: value
            for key, value in update.values.items()
            if key in HEALTH_METRIC_FIELDS and value is not None
        }
        if not values:
            return False

        now = utcnow()
        stmt = dialect_insert(self.session, HealthMetric).values(
            id=generate_uuid(),
            user_id=user_id,
            metric_date=update.metric_date,
            source=GARMIN_SOURCE,
            created_at=now,
            updated_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "metric_date"],
            set_={**values, "source": GARMIN_SOURCE, "updated_at": now},
        )

        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        return True

    async def get(self, user_id: str, metric_date: date) -> HealthMetric | None:
        """Load one day's row."""
        result = await self.session.execute(
            select(HealthMetric)
            .where(HealthMetric.user_id == user_id, HealthMetric.metric_date == metric_date)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
