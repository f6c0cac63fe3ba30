"""Activation step and insight queue store."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import Executable

from garmin_sync_server.core.database import dialect_insert
from garmin_sync_server.models.activation import (
    InsightStatus,
    ProactiveInsight,
    UserActivationStep,
)
from garmin_sync_server.models.base import generate_uuid, utcnow


class ActivationStore:
    """Insert-if-absent writes for milestones and insight requests."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_step(self, user_id: str, step: str) -> bool:
        """Record a completed step. Returns False if it was already completed."""
        now = utcnow()
        stmt = dialect_insert(self.session, UserActivationStep).values(
            id=generate_uuid(),
            user_id=user_id,
            step=step,
            completed_at=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "step"])
        return await self._insert(stmt)

    async def completed_steps(self, user_id: str) -> list[str]:
        """Steps the user has completed, in completion order."""
        result = await self.session.execute(
            select(UserActivationStep.step)
            .where(UserActivationStep.user_id == user_id)
            .order_by(UserActivationStep.completed_at)
        )
        return list(result.scalars().all())

    async def insert_insight(self, user_id: str, activity_id: str, insight_type: str) -> bool:
        """Queue an insight request. Returns False if one is already queued."""
        now = utcnow()
        stmt = dialect_insert(self.session, ProactiveInsight).values(
            id=generate_uuid(),
            user_id=user_id,
            activity_id=activity_id,
            insight_type=insight_type,
            status=InsightStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["activity_id", "insight_type"])
        return await self._insert(stmt)

    async def pending_insights(self, user_id: str) -> list[ProactiveInsight]:
        """Insight requests still waiting for generation."""
        result = await self.session.execute(
            select(ProactiveInsight).where(
                ProactiveInsight.user_id == user_id,
                ProactiveInsight.status == InsightStatus.PENDING.value,
            )
        )
        return list(result.scalars().all())

    async def _insert(self, stmt: Executable) -> bool:
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        return result.rowcount == 1
