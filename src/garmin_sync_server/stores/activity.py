"""Activity store."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.database import dialect_insert
from garmin_sync_server.models.activity import Activity
from garmin_sync_server.models.base import generate_uuid, utcnow

# Identity columns that a re-delivery must not rewrite
_KEY_COLUMNS = ("user_id", "provider", "provider_activity_id")


class ActivityStore:
    """Upsert normalized activities keyed by (user, provider, provider activity ID)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, activity: dict[str, Any]) -> tuple[str, bool]:
        """Insert an activity, or refresh it if Garmin re-delivers it.

        Args:
            activity: Column values from ActivityTransformer

        Returns:
            Tuple of (activity row ID, True if newly created)

        Raises:
            SQLAlchemyError: If the write fails (after rolling back)
        """
        now = utcnow()
        new_id = generate_uuid()

        try:
            insert_stmt = dialect_insert(self.session, Activity).values(
                id=new_id, created_at=now, updated_at=now, **activity
            )
            insert_stmt = insert_stmt.on_conflict_do_nothing(index_elements=list(_KEY_COLUMNS))
            result = await self.session.execute(insert_stmt)

            if result.rowcount == 1:
                await self.session.commit()
                return new_id, True

            changes = {k: v for k, v in activity.items() if k not in _KEY_COLUMNS}
            changes["updated_at"] = now
            key_filter = [
                Activity.user_id == activity["user_id"],
                Activity.provider == activity["provider"],
                Activity.provider_activity_id == activity["provider_activity_id"],
            ]
            await self.session.execute(
                update(Activity)
                .where(*key_filter)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            existing_id = (
                await self.session.execute(select(Activity.id).where(*key_filter))
            ).scalar_one()
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise

        return existing_id, False

    async def list_for_user(self, user_id: str) -> list[Activity]:
        """All activities for a user, newest first."""
        result = await self.session.execute(
            select(Activity)
            .where(Activity.user_id == user_id)
            .order_by(Activity.start_date.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
