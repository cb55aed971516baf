"""Friend service - friend removal and the 1:1 chat inbox."""

from __future__ import annotations

import json
import logging

from sqlalchemy import delete, update

from database.db import ChannelScope, Database
from database.models import Channel, ChatMessage, LineUser, LineUserTag, StepExecution
from lineoa.errors import NotFoundError, ValidationError
from lineoa.services.activity_log_service import ActivityLogService
from lineoa.services.line_client import LineApiError, LineGateway
from lineoa.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

ADMIN_PREVIEW = {"image": "Sent an image", "video": "Sent a video"}


def build_chat_message(message_type: str, text: str | None, original_content_url: str | None, preview_image_url: str | None) -> dict:
    """Validate operator chat input and build the LINE message object."""
    message_type = message_type or "text"
    if message_type == "text":
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        if len(text) > 5000:
            raise ValidationError("Message text is too long (max 5000 characters)")
        return {"type": "text", "text": text}
    if message_type in ("image", "video"):
        if not original_content_url:
            raise ValidationError(f"originalContentUrl is required for {message_type} messages")
        if message_type == "video" and not preview_image_url:
            raise ValidationError("previewImageUrl is required for video messages")
        return {
            "type": message_type,
            "originalContentUrl": original_content_url,
            "previewImageUrl": preview_image_url or original_content_url,
        }
    raise ValidationError(f"Unsupported message type: {message_type}")


class FriendService:
    def __init__(self, database: Database, gateway: LineGateway, activity: ActivityLogService):
        self.database = database
        self.gateway = gateway
        self.activity = activity

    async def delete_friend(self, scope: ChannelScope, user_id: int, *, actor_id: str | None = None) -> dict:
        """
        Remove a friend and everything hanging off it.

        Dependents go first (step executions, tag links, chat history), then
        the user row, all in one transaction.
        """
        async with scope.session() as session:
            user = await scope.get(session, LineUser, user_id)
            if user is None:
                raise NotFoundError(f"LINE user {user_id} not found")
            display_name = user.display_name
            user_pk = int(user.id)

            executions = await session.execute(delete(StepExecution).where(StepExecution.line_user_id == user_pk))
            tags = await session.execute(delete(LineUserTag).where(LineUserTag.line_user_id == user_pk))
            chats = await session.execute(delete(ChatMessage).where(ChatMessage.line_user_id == user_pk))
            await session.execute(delete(LineUser).where(LineUser.id == user_pk))

            removed = {
                "step_executions": int(executions.rowcount or 0),
                "tags": int(tags.rowcount or 0),
                "chat_messages": int(chats.rowcount or 0),
            }
            await self.activity.record(
                scope.channel_id,
                "friend.delete",
                actor_id=actor_id,
                target_type="line_user",
                target_id=user_pk,
                details={"display_name": display_name, **removed},
                session=session,
            )

        logger.info(f"Friend {user_pk} ({display_name}) deleted from channel {scope.channel_id}: {removed}")
        return {"id": user_pk, "display_name": display_name, "removed": removed}

    async def send_chat(
        self,
        scope: ChannelScope,
        user_id: int,
        *,
        message_type: str = "text",
        text: str | None = None,
        original_content_url: str | None = None,
        preview_image_url: str | None = None,
    ) -> dict:
        """
        Push an operator reply, then record it in the chat history.

        Raises:
            ValidationError: bad input
            NotFoundError: user not in this channel
            LineApiError: LINE refused the push (nothing recorded)
        """
        message = build_chat_message(message_type, text, original_content_url, preview_image_url)

        async with scope.session() as session:
            user = await scope.get(session, LineUser, user_id)
            if user is None:
                raise NotFoundError(f"LINE user {user_id} not found")
            channel = await session.get(Channel, scope.channel_id)
            line_user_id = str(user.line_user_id)

        await self.gateway.client_for(channel).push_message(line_user_id, [message])

        now = utcnow()
        preview = message["text"] if message["type"] == "text" else ADMIN_PREVIEW[message["type"]]
        try:
            async with scope.session() as session:
                chat = ChatMessage(
                    channel_id=scope.channel_id,
                    line_user_id=int(user_id),
                    sender="admin",
                    content_type=message["type"],
                    content=json.dumps(message, ensure_ascii=False),
                    created_at=now,
                )
                session.add(chat)
                await session.execute(
                    update(LineUser)
                    .where(LineUser.id == int(user_id))
                    .values(last_message_at=now, last_message_content=preview[:500])
                )
                await session.flush()
                chat_id = int(chat.id)
        except Exception:
            logger.error(
                f"Chat message to {line_user_id} was pushed; succeeded remotely but local write failed",
                exc_info=True,
            )
            return {"sent": True, "recorded": False}

        return {"sent": True, "recorded": True, "chat_message_id": chat_id}

    async def mark_read(self, scope: ChannelScope, user_id: int) -> dict:
        """Stamp the user's unread inbound messages and reset the unread counter."""
        now = utcnow()
        async with scope.session() as session:
            user = await scope.get(session, LineUser, user_id)
            if user is None:
                raise NotFoundError(f"LINE user {user_id} not found")
            result = await session.execute(
                update(ChatMessage)
                .where(
                    ChatMessage.channel_id == scope.channel_id,
                    ChatMessage.line_user_id == int(user.id),
                    ChatMessage.sender == "user",
                    ChatMessage.read_at.is_(None),
                )
                .values(read_at=now)
            )
            user.unread_count = 0
        return {"marked": int(result.rowcount or 0)}
