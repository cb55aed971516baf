"""Broadcast service - immediate and scheduled multicast of messages."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.db import ChannelScope, Database
from database.models import Channel, LineUser, LineUserTag, Message
from lineoa.errors import ConflictError, NotFoundError, ValidationError
from lineoa.services.activity_log_service import ActivityLogService
from lineoa.services.line_client import MULTICAST_MAX_RECIPIENTS, LineGateway
from lineoa.utils.content_blocks import build_messages, parse_blocks
from lineoa.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

SENDABLE_STATUSES = ("draft", "scheduled")


@dataclass(frozen=True)
class BroadcastResult:
    message_id: int
    status: str
    total: int = 0
    success: int = 0
    failure: int = 0
    batches: int = 0
    detail: str | None = None


def chunk(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def parse_filter_tag_ids(raw: str | None) -> list[int]:
    """Stored tag filter; empty means everyone. Raises ValueError when malformed."""
    if raw in (None, ""):
        return []
    value = json.loads(raw)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("filter_tag_ids must be a list")
    return [int(v) for v in value]


class BroadcastService:
    def __init__(
        self,
        database: Database,
        gateway: LineGateway,
        activity: ActivityLogService,
        *,
        batch_size: int = MULTICAST_MAX_RECIPIENTS,
        page_size: int = 10,
    ):
        self.database = database
        self.gateway = gateway
        self.activity = activity
        self.batch_size = max(1, min(int(batch_size), MULTICAST_MAX_RECIPIENTS))
        self.page_size = int(page_size)

    async def resolve_recipients(self, session: AsyncSession, channel_id: int, filter_tag_ids: list[int]) -> list[str]:
        """LINE user ids of non-blocked users, narrowed to holders of any filter tag."""
        query = select(LineUser.line_user_id).where(
            LineUser.channel_id == int(channel_id),
            LineUser.is_blocked.is_(False),
        )
        if filter_tag_ids:
            holders = select(LineUserTag.line_user_id).where(LineUserTag.tag_id.in_(filter_tag_ids))
            query = query.where(LineUser.id.in_(holders))
        result = await session.execute(query.order_by(LineUser.id.asc()))
        return [str(r[0]) for r in result.all()]

    async def send_message(self, scope: ChannelScope, message_id: int, *, actor_id: str | None = None) -> BroadcastResult:
        """
        Operator "send now" for a draft or scheduled message.

        Raises:
            NotFoundError: message not in this channel
            ValidationError: message has no sendable content
            ConflictError: message is already sending or sent
        """
        async with scope.session() as session:
            message = await scope.get(session, Message, message_id)
            if message is None:
                raise NotFoundError(f"Message {message_id} not found")
            if message.status not in SENDABLE_STATUSES:
                raise ConflictError(f"Message is already {message.status}")
            try:
                blocks = parse_blocks(message.content)
            except (ValueError, TypeError) as e:
                raise ValidationError(f"Message content is invalid: {e}") from e
            if not blocks:
                raise ValidationError("Message has no content")

        result = await self._deliver(int(message_id), allowed=SENDABLE_STATUSES)
        if result is None:
            raise ConflictError("Message is already being sent")

        await self.activity.record(
            scope.channel_id,
            "message.send",
            actor_id=actor_id,
            target_type="message",
            target_id=message_id,
            details={"status": result.status, "total": result.total, "success": result.success, "failure": result.failure},
        )
        return result

    async def run_scheduled(self, *, now: datetime | None = None) -> int:
        """
        Deliver up to one page of due scheduled messages.

        Returns:
            Number of messages this run claimed and delivered
        """
        now = now or utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                select(Message.id)
                .where(Message.status == "scheduled", Message.scheduled_at.isnot(None), Message.scheduled_at <= now)
                .order_by(Message.scheduled_at.asc(), Message.id.asc())
                .limit(self.page_size)
            )
            due_ids = [int(r[0]) for r in result.all()]

        delivered = 0
        for message_id in due_ids:
            try:
                if await self._deliver(message_id, allowed=("scheduled",)) is not None:
                    delivered += 1
            except Exception as e:
                logger.error(f"Scheduled message {message_id} failed: {e}", exc_info=True)
        if delivered:
            logger.info(f"Scheduled sweep delivered {delivered} message(s)")
        return delivered

    async def _deliver(self, message_id: int, *, allowed: tuple[str, ...]) -> BroadcastResult | None:
        """
        Claim a message (status -> sending) and multicast it batch by batch.

        Returns None when another run already claimed it.
        """
        # ===== TRANSACTION 1: claim and snapshot =====
        async with self.database.session() as session:
            claimed = await session.execute(
                update(Message)
                .where(Message.id == int(message_id), Message.status.in_(allowed))
                .values(status="sending", updated_at=utcnow())
            )
            if not claimed.rowcount:
                return None
            message = await session.get(Message, int(message_id))
            channel = await session.get(Channel, int(message.channel_id))
            content = message.content
            try:
                filter_tag_ids = parse_filter_tag_ids(message.filter_tag_ids)
            except (ValueError, TypeError):
                filter_tag_ids = None
            recipients = (
                await self.resolve_recipients(session, channel.id, filter_tag_ids) if filter_tag_ids is not None else []
            )

        if filter_tag_ids is None:
            logger.error(f"Message {message_id} has a malformed tag filter; not sending")
            return await self._finish(message_id, "failed", detail="malformed tag filter")

        try:
            payload = build_messages(parse_blocks(content), message_id=message_id)
        except (ValueError, TypeError) as e:
            logger.error(f"Message {message_id} content is invalid: {e}")
            payload = []
        if not payload:
            return await self._finish(
                message_id, "failed", total=len(recipients), failure=len(recipients), detail="no sendable content"
            )

        if not recipients:
            logger.info(f"Message {message_id} has no recipients; marking sent")
            return await self._finish(message_id, "sent")

        # ===== SEND (outside transaction) =====
        client = self.gateway.client_for(channel)
        batches = chunk(recipients, self.batch_size)
        success = failure = 0
        for index, batch in enumerate(batches, start=1):
            try:
                await client.multicast(batch, payload)
                success += len(batch)
            except Exception as e:
                failure += len(batch)
                logger.error(f"Message {message_id} batch {index}/{len(batches)} ({len(batch)} users) failed: {e}")

        status = "failed" if failure == len(recipients) else "sent"
        return await self._finish(
            message_id,
            status,
            total=len(recipients),
            success=success,
            failure=failure,
            batches=len(batches),
        )

    async def _finish(
        self,
        message_id: int,
        status: str,
        *,
        total: int = 0,
        success: int = 0,
        failure: int = 0,
        batches: int = 0,
        detail: str | None = None,
    ) -> BroadcastResult:
        # ===== TRANSACTION 2: record outcome =====
        result = BroadcastResult(
            message_id=int(message_id),
            status=status,
            total=total,
            success=success,
            failure=failure,
            batches=batches,
            detail=detail,
        )
        try:
            async with self.database.session() as session:
                await session.execute(
                    update(Message)
                    .where(Message.id == int(message_id))
                    .values(
                        status=status,
                        total_recipients=total,
                        success_count=success,
                        failure_count=failure,
                        sent_at=utcnow(),
                    )
                )
        except Exception:
            if success:
                logger.error(
                    f"Message {message_id} delivered to {success} user(s); succeeded remotely but local write failed",
                    exc_info=True,
                )
            else:
                logger.error(f"Recording outcome of message {message_id} failed", exc_info=True)
            return result

        logger.info(
            f"Message {message_id} {status}: total={total} success={success} failure={failure} batches={batches}"
        )
        return result
