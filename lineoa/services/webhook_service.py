"""Webhook service - follow/unfollow/message/postback event processing."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from urllib.parse import parse_qs

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from database.db import Database
from database.models import Channel, ChatMessage, LineUser, Message
from lineoa.services.line_client import LineApiError, LineGateway
from lineoa.services.rich_menu_service import RichMenuService
from lineoa.services.step_service import StepService
from lineoa.services.tag_service import TagService
from lineoa.utils.content_blocks import POSTBACK_ACTION_CUSTOM, find_custom_actions, parse_blocks
from lineoa.utils.datetime_utils import from_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FRIEND_NAME = "Friend"


@dataclass(frozen=True)
class BatchResult:
    processed: int
    failed: int


def chat_preview(message: dict) -> str:
    """Inbox preview line for an inbound LINE message object."""
    message_type = message.get("type")
    if message_type == "text":
        return str(message.get("text") or "")
    if message_type == "image":
        return "Sent an image"
    if message_type == "video":
        return "Sent a video"
    if message_type == "audio":
        return "Sent an audio message"
    if message_type == "sticker":
        return "Sent a sticker"
    if message_type == "location":
        return "Sent a location"
    return "Sent a message"


def _parse_auto_tags(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning(f"Channel auto_tag_ids is not valid JSON: {raw!r}")
        return []
    return value if isinstance(value, list) else []


class WebhookService:
    """
    Applies inbound LINE events to the database.

    Runs with privileged (unscoped) database access; the channel comes from
    the verified webhook route.
    """

    def __init__(
        self,
        database: Database,
        gateway: LineGateway,
        rich_menus: RichMenuService,
        steps: StepService,
        tags: TagService,
    ):
        self.database = database
        self.gateway = gateway
        self.rich_menus = rich_menus
        self.steps = steps
        self.tags = tags

    async def find_channel(self, external_channel_id: str) -> Channel | None:
        async with self.database.session() as session:
            result = await session.execute(select(Channel).where(Channel.channel_id == str(external_channel_id)))
            return result.scalar_one_or_none()

    async def process_batch(self, channel: Channel, events: list) -> BatchResult:
        """Process events in order; one failing event never stops the rest."""
        processed = failed = 0
        for event in events or []:
            try:
                await self.process_event(channel, event)
                processed += 1
            except Exception as e:
                failed += 1
                event_type = event.get("type") if isinstance(event, dict) else None
                logger.error(f"Webhook event {event_type} failed for channel {channel.id}: {e}", exc_info=True)
        return BatchResult(processed=processed, failed=failed)

    async def process_event(self, channel: Channel, event: dict) -> None:
        source = event.get("source") or {}
        line_user_id = source.get("userId")
        event_type = event.get("type")
        if not line_user_id:
            logger.debug(f"Ignoring {event_type} event without a userId (source type {source.get('type')})")
            return

        if event_type == "follow":
            await self.handle_follow(channel, line_user_id)
        elif event_type == "unfollow":
            await self.handle_unfollow(channel, line_user_id)
        elif event_type == "message":
            await self.handle_message(channel, line_user_id, event)
        elif event_type == "postback":
            await self.handle_postback(channel, line_user_id, event)
        else:
            logger.debug(f"Unhandled webhook event type: {event_type}")

    # ========== User sync ==========

    async def _sync_user(self, channel: Channel, line_user_id: str, *, refollow: bool) -> tuple[int, bool]:
        """
        Create or refresh the user row from the live profile.

        A profile fetch failure is tolerated: the row is still created or
        unblocked, just without fresh profile fields.

        Returns:
            (line_users.id, created)
        """
        profile: dict = {}
        try:
            profile = await self.gateway.client_for(channel).get_profile(line_user_id) or {}
        except LineApiError as e:
            logger.warning(f"Profile fetch failed for {line_user_id} (channel {channel.id}): {e}")

        now = utcnow()
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    select(LineUser).where(LineUser.channel_id == channel.id, LineUser.line_user_id == line_user_id)
                )
                user = result.scalar_one_or_none()
                if user is not None:
                    if profile:
                        user.display_name = profile.get("displayName") or user.display_name
                        user.picture_url = profile.get("pictureUrl")
                        user.status_message = profile.get("statusMessage")
                    user.is_blocked = False
                    if refollow:
                        user.followed_at = now
                    return int(user.id), False

                user = LineUser(
                    channel_id=int(channel.id),
                    line_user_id=line_user_id,
                    display_name=profile.get("displayName"),
                    picture_url=profile.get("pictureUrl"),
                    status_message=profile.get("statusMessage"),
                    is_blocked=False,
                    unread_count=0,
                    followed_at=now,
                )
                session.add(user)
                await session.flush()
                user_pk = int(user.id)
        except IntegrityError:
            # Created by a concurrent event for the same user.
            async with self.database.session() as session:
                result = await session.execute(
                    select(LineUser.id).where(LineUser.channel_id == channel.id, LineUser.line_user_id == line_user_id)
                )
                return int(result.scalar_one()), False

        logger.info(f"New friend: {profile.get('displayName') or line_user_id} (channel {channel.id})")
        await self._on_new_user(channel, user_pk)
        return user_pk, True

    async def _on_new_user(self, channel: Channel, user_pk: int) -> None:
        # Default first, then tags may outrank it, then follow scenarios.
        try:
            await self.rich_menus.link_new_user_default(user_pk)
        except Exception as e:
            logger.error(f"Default menu for new user {user_pk} failed: {e}", exc_info=True)

        auto_tags = _parse_auto_tags(channel.auto_tag_ids)
        if auto_tags:
            try:
                added = await self.tags.apply_tags(user_pk, auto_tags)
                logger.info(f"Auto-tagged new user {user_pk}: {added}")
            except Exception as e:
                logger.error(f"Auto-tagging new user {user_pk} failed: {e}", exc_info=True)

        try:
            await self.steps.start_for_follow(int(channel.id), user_pk)
        except Exception as e:
            logger.error(f"Follow scenarios for new user {user_pk} failed: {e}", exc_info=True)

    # ========== Event handlers ==========

    async def handle_follow(self, channel: Channel, line_user_id: str) -> int:
        user_pk, _ = await self._sync_user(channel, line_user_id, refollow=True)
        return user_pk

    async def handle_unfollow(self, channel: Channel, line_user_id: str) -> None:
        """Mark blocked; history is kept for a later re-follow."""
        async with self.database.session() as session:
            result = await session.execute(
                update(LineUser)
                .where(LineUser.channel_id == channel.id, LineUser.line_user_id == line_user_id)
                .values(is_blocked=True)
            )
        if result.rowcount:
            logger.info(f"Friend blocked/unfollowed: {line_user_id} (channel {channel.id})")
        else:
            logger.info(f"Unfollow from unknown user {line_user_id} (channel {channel.id})")

    async def handle_message(self, channel: Channel, line_user_id: str, event: dict) -> None:
        user_pk, _ = await self._sync_user(channel, line_user_id, refollow=False)

        message = event.get("message")
        if not isinstance(message, dict):
            return

        received_at = from_timestamp(event["timestamp"]) if event.get("timestamp") else utcnow()
        async with self.database.session() as session:
            session.add(
                ChatMessage(
                    channel_id=int(channel.id),
                    line_user_id=user_pk,
                    sender="user",
                    content_type=str(message.get("type") or "unknown"),
                    content=json.dumps(message, ensure_ascii=False),
                    created_at=received_at,
                )
            )
            await session.execute(
                update(LineUser)
                .where(LineUser.id == user_pk)
                .values(
                    last_message_at=received_at,
                    last_message_content=chat_preview(message)[:500],
                    unread_count=LineUser.unread_count + 1,
                )
            )

    async def handle_postback(self, channel: Channel, line_user_id: str, event: dict) -> None:
        """
        Run the custom-action bundle of a tapped broadcast image.

        Order: tags, scenario, reply. A missing message, bundle or user is
        logged and skipped.
        """
        data = str((event.get("postback") or {}).get("data") or "")
        params = parse_qs(data)
        action = (params.get("action") or [None])[0]
        mid = (params.get("mid") or [None])[0]
        if action != POSTBACK_ACTION_CUSTOM or not mid:
            logger.debug(f"Ignoring postback data {data!r}")
            return
        try:
            message_id = int(mid)
            block_raw = (params.get("block") or [None])[0]
            block_index = int(block_raw) if block_raw is not None else None
        except ValueError:
            logger.warning(f"Malformed postback data {data!r}")
            return

        async with self.database.session() as session:
            message = await session.get(Message, message_id)
            if message is None or message.channel_id != channel.id:
                logger.warning(f"Postback references missing message {message_id} (channel {channel.id})")
                return
            content = message.content
            result = await session.execute(
                select(LineUser).where(LineUser.channel_id == channel.id, LineUser.line_user_id == line_user_id)
            )
            user = result.scalar_one_or_none()

        try:
            actions = find_custom_actions(parse_blocks(content), block_index)
        except (ValueError, TypeError) as e:
            logger.warning(f"Message {message_id} content is invalid: {e}")
            return
        if actions is None:
            logger.info(f"Message {message_id} has no custom actions")
            return
        if user is None:
            logger.warning(f"Postback from unknown user {line_user_id} (channel {channel.id})")
            return

        if actions.tag_ids:
            try:
                await self.tags.apply_tags(int(user.id), actions.tag_ids)
            except Exception as e:
                logger.error(f"Postback tags for user {user.id} failed: {e}", exc_info=True)

        if actions.scenario_id is not None:
            try:
                await self.steps.start_scenario(actions.scenario_id, int(user.id))
            except Exception as e:
                logger.error(f"Postback scenario {actions.scenario_id} for user {user.id} failed: {e}", exc_info=True)

        if actions.reply_text:
            text = actions.reply_text.replace("{name}", user.display_name or DEFAULT_FRIEND_NAME)
            try:
                await self.gateway.client_for(channel).push_message(line_user_id, [{"type": "text", "text": text}])
            except LineApiError as e:
                logger.error(f"Postback reply to {line_user_id} failed: {e}")

        logger.info(f"Custom actions of message {message_id} executed for {line_user_id}")
