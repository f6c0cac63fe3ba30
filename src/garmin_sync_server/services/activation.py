"""Activation milestones and proactive insight queue."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.models.activation import ActivationStep
from garmin_sync_server.stores.activation import ActivationStore

logger = structlog.get_logger()

DEFAULT_INSIGHT_TYPE = "activity_analysis"


class ActivationService:
    """Idempotent onboarding milestones and insight requests."""

    def __init__(self, session: AsyncSession) -> None:
        self.store = ActivationStore(session)
        self.logger = logger.bind(service="activation")

    async def complete_activation_step(self, user_id: str, step: str | ActivationStep) -> bool:
        """Mark a milestone as completed.

        Args:
            user_id: Local user ID
            step: One of the ActivationStep values

        Returns:
            True if the step was newly completed, False if it already was

        Raises:
            ValueError: If the step name is unknown
        """
        step_value = ActivationStep(step).value
        created = await self.store.insert_step(user_id, step_value)
        if created:
            self.logger.info("Activation step completed", user_id=user_id, step=step_value)
        return created

    async def completed_steps(self, user_id: str) -> list[str]:
        """Steps the user has completed."""
        return await self.store.completed_steps(user_id)

    async def enqueue_insight(
        self, user_id: str, activity_id: str, insight_type: str = DEFAULT_INSIGHT_TYPE
    ) -> bool:
        """Queue insight generation for an activity.

        Returns:
            True if queued, False if one was already queued for this activity and type
        """
        queued = await self.store.insert_insight(user_id, activity_id, insight_type)
        if queued:
            self.logger.info(
                "Insight queued",
                user_id=user_id,
                activity_id=activity_id,
                insight_type=insight_type,
            )
        return queued
