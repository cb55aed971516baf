"""Activity log service - append-only audit trail of operator actions."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.db import ChannelScope, Database
from database.models import ActivityLog

logger = logging.getLogger(__name__)


class ActivityLogService:
    def __init__(self, database: Database):
        self.database = database

    async def record(
        self,
        channel_id: int,
        action: str,
        *,
        actor_id: str | None = None,
        target_type: str | None = None,
        target_id: Any = None,
        details: dict | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        """
        Append one entry.

        Pass `session` to write in the caller's transaction; otherwise the
        entry is committed on its own.
        """
        entry = ActivityLog(
            channel_id=int(channel_id),
            actor_id=str(actor_id) if actor_id is not None else None,
            action=str(action),
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            details=json.dumps(details, ensure_ascii=False, default=str) if details else None,
        )
        if session is not None:
            session.add(entry)
            return
        async with self.database.session() as own:
            own.add(entry)
        logger.debug(f"Activity logged: channel={channel_id} action={action} target={target_type}:{target_id}")

    async def recent(self, scope: ChannelScope, *, limit: int = 50, action: str | None = None) -> list[dict]:
        limit = max(1, min(int(limit or 50), 200))
        query = select(ActivityLog).where(ActivityLog.channel_id == scope.channel_id)
        if action:
            query = query.where(ActivityLog.action == action)
        query = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)

        async with scope.session() as session:
            rows = list((await session.execute(query)).scalars().all())

        out: list[dict] = []
        for row in rows:
            try:
                details = json.loads(row.details) if row.details else None
            except ValueError:
                details = {"raw": row.details}
            out.append(
                {
                    "id": int(row.id),
                    "actor_id": row.actor_id,
                    "action": row.action,
                    "target_type": row.target_type,
                    "target_id": row.target_id,
                    "details": details,
                    "created_at": row.created_at.isoformat() if row.created_at else None,
                }
            )
        return out
