"""Tag service - channel tags, assignment, and the menu/scenario effects of assignment."""

from __future__ import annotations

import logging
import re
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from database.db import ChannelScope, Database
from database.models import LineUser, LineUserTag, RichMenu, Tag
from lineoa.errors import ConflictError, NotFoundError, ValidationError
from lineoa.services.activity_log_service import ActivityLogService
from lineoa.services.rich_menu_service import RichMenuService
from lineoa.services.step_service import StepService

logger = logging.getLogger(__name__)

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_UNSET = object()


def _tag_to_dict(tag: Tag, user_count: int | None = None) -> dict:
    out = {
        "id": int(tag.id),
        "name": tag.name,
        "color": tag.color,
        "priority": int(tag.priority or 0),
        "linked_rich_menu_id": int(tag.linked_rich_menu_id) if tag.linked_rich_menu_id else None,
    }
    if user_count is not None:
        out["user_count"] = int(user_count)
    return out


class TagService:
    def __init__(
        self,
        database: Database,
        rich_menus: RichMenuService,
        steps: StepService,
        activity: ActivityLogService,
    ):
        self.database = database
        self.rich_menus = rich_menus
        self.steps = steps
        self.activity = activity

    async def _check_menu(self, scope: ChannelScope, session, menu_id) -> int | None:
        if menu_id in (None, ""):
            return None
        menu = await scope.get(session, RichMenu, menu_id)
        if menu is None:
            raise NotFoundError(f"Rich menu {menu_id} not found")
        return int(menu.id)

    async def list_tags(self, scope: ChannelScope) -> list[dict]:
        counts = (
            select(LineUserTag.tag_id, func.count(LineUserTag.id).label("n"))
            .group_by(LineUserTag.tag_id)
            .subquery()
        )
        async with scope.session() as session:
            result = await session.execute(
                select(Tag, func.coalesce(counts.c.n, 0))
                .outerjoin(counts, counts.c.tag_id == Tag.id)
                .where(Tag.channel_id == scope.channel_id)
                .order_by(Tag.priority.desc(), Tag.name.asc())
            )
            return [_tag_to_dict(tag, n) for tag, n in result.all()]

    async def create_tag(
        self,
        scope: ChannelScope,
        *,
        name: str,
        color: str | None = None,
        priority: int = 0,
        linked_rich_menu_id: int | None = None,
        actor_id: str | None = None,
    ) -> dict:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Tag name is required")
        if color and not _COLOR_RE.match(color):
            raise ValidationError("Tag color must look like #RRGGBB")

        try:
            async with scope.session() as session:
                existing = await session.execute(
                    select(Tag.id).where(Tag.channel_id == scope.channel_id, Tag.name == name)
                )
                if existing.scalar_one_or_none() is not None:
                    raise ConflictError(f"A tag named '{name}' already exists")
                tag = Tag(
                    channel_id=scope.channel_id,
                    name=name,
                    color=color or "#3B82F6",
                    priority=int(priority or 0),
                    linked_rich_menu_id=await self._check_menu(scope, session, linked_rich_menu_id),
                )
                session.add(tag)
                await session.flush()
                await self.activity.record(
                    scope.channel_id,
                    "tag.create",
                    actor_id=actor_id,
                    target_type="tag",
                    target_id=tag.id,
                    details={"name": name, "priority": tag.priority},
                    session=session,
                )
                out = _tag_to_dict(tag)
        except IntegrityError as e:
            raise ConflictError(f"A tag named '{name}' already exists") from e
        return out

    async def update_tag(
        self,
        scope: ChannelScope,
        tag_id: int,
        *,
        name: str | None = None,
        color: str | None = None,
        priority: int | None = None,
        linked_rich_menu_id=_UNSET,
        actor_id: str | None = None,
    ) -> dict:
        """Partial update; pass `linked_rich_menu_id=None` to unlink the menu."""
        changes: dict = {}
        try:
            async with scope.session() as session:
                tag = await scope.get(session, Tag, tag_id)
                if tag is None:
                    raise NotFoundError(f"Tag {tag_id} not found")
                if name is not None:
                    name = name.strip()
                    if not name:
                        raise ValidationError("Tag name is required")
                    if name != tag.name:
                        clash = await session.execute(
                            select(Tag.id).where(Tag.channel_id == scope.channel_id, Tag.name == name, Tag.id != tag.id)
                        )
                        if clash.scalar_one_or_none() is not None:
                            raise ConflictError(f"A tag named '{name}' already exists")
                        changes["name"] = name
                        tag.name = name
                if color is not None:
                    if not _COLOR_RE.match(color):
                        raise ValidationError("Tag color must look like #RRGGBB")
                    changes["color"] = color
                    tag.color = color
                if priority is not None:
                    changes["priority"] = int(priority)
                    tag.priority = int(priority)
                if linked_rich_menu_id is not _UNSET:
                    menu_id = await self._check_menu(scope, session, linked_rich_menu_id)
                    changes["linked_rich_menu_id"] = menu_id
                    tag.linked_rich_menu_id = menu_id
                if changes:
                    await self.activity.record(
                        scope.channel_id,
                        "tag.update",
                        actor_id=actor_id,
                        target_type="tag",
                        target_id=tag.id,
                        details=changes,
                        session=session,
                    )
                out = _tag_to_dict(tag)
        except IntegrityError as e:
            raise ConflictError(f"A tag named '{name}' already exists") from e
        return out

    async def assign_tag(self, scope: ChannelScope, *, user_id: int, tag_id: int, actor_id: str | None = None) -> dict:
        """
        Assign a tag, then re-resolve the user's menu and start matching tag scenarios.

        Menu switching failures are logged and do not fail the assignment.

        Raises:
            NotFoundError: user or tag not in this channel
            ConflictError: tag already assigned
        """
        try:
            async with scope.session() as session:
                user = await scope.get(session, LineUser, user_id)
                tag = await scope.get(session, Tag, tag_id)
                if user is None:
                    raise NotFoundError(f"LINE user {user_id} not found")
                if tag is None:
                    raise NotFoundError(f"Tag {tag_id} not found")
                existing = await session.execute(
                    select(LineUserTag.id).where(LineUserTag.line_user_id == user.id, LineUserTag.tag_id == tag.id)
                )
                if existing.scalar_one_or_none() is not None:
                    raise ConflictError(f"Tag '{tag.name}' is already assigned")
                session.add(LineUserTag(line_user_id=int(user.id), tag_id=int(tag.id)))
                await self.activity.record(
                    scope.channel_id,
                    "tag.assign",
                    actor_id=actor_id,
                    target_type="line_user",
                    target_id=user.id,
                    details={"tag_id": int(tag.id), "tag_name": tag.name},
                    session=session,
                )
        except IntegrityError as e:
            raise ConflictError("Tag is already assigned") from e

        menu_changed = await self.rich_menus.sync_user_menu(int(user_id))
        started = await self.steps.start_for_tag_assigned(scope.channel_id, int(user_id), int(tag_id))
        return {"menu_changed": menu_changed, "scenarios_started": started.created}

    async def unassign_tag(self, scope: ChannelScope, *, user_id: int, tag_id: int, actor_id: str | None = None) -> dict:
        async with scope.session() as session:
            user = await scope.get(session, LineUser, user_id)
            tag = await scope.get(session, Tag, tag_id)
            if user is None:
                raise NotFoundError(f"LINE user {user_id} not found")
            if tag is None:
                raise NotFoundError(f"Tag {tag_id} not found")
            result = await session.execute(
                delete(LineUserTag).where(LineUserTag.line_user_id == user.id, LineUserTag.tag_id == tag.id)
            )
            if not result.rowcount:
                raise NotFoundError(f"Tag '{tag.name}' is not assigned to this user")
            await self.activity.record(
                scope.channel_id,
                "tag.unassign",
                actor_id=actor_id,
                target_type="line_user",
                target_id=user.id,
                details={"tag_id": int(tag.id), "tag_name": tag.name},
                session=session,
            )

        menu_changed = await self.rich_menus.sync_user_menu(int(user_id))
        return {"menu_changed": menu_changed}

    async def _pending_tags(self, user_id: int, wanted: list[int]) -> tuple[int | None, set[int], list[int]]:
        """(channel id, tag ids valid in that channel, valid tags the user does not hold yet)."""
        async with self.database.session() as session:
            user = await session.get(LineUser, int(user_id))
            if user is None:
                return None, set(), []
            channel_id = int(user.channel_id)
            valid = await session.execute(
                select(Tag.id).where(Tag.channel_id == channel_id, Tag.id.in_(wanted))
            )
            valid_ids = {int(r[0]) for r in valid.all()}
            held = await session.execute(
                select(LineUserTag.tag_id).where(LineUserTag.line_user_id == int(user_id), LineUserTag.tag_id.in_(wanted))
            )
            held_ids = {int(r[0]) for r in held.all()}
        return channel_id, valid_ids, [t for t in wanted if t in valid_ids and t not in held_ids]

    async def apply_tags(self, user_id: int, tag_ids: Iterable[int]) -> list[int]:
        """
        Idempotently add tags to a user (webhook paths: auto-tags on follow, postback actions).

        Unknown tags and tags of another channel are skipped. Each tag is
        inserted on its own, so a tag assigned concurrently elsewhere only
        drops itself. When anything was added the menu is re-resolved and
        `tag_assigned` scenarios start for the added tags.

        Returns:
            Newly added tag ids
        """
        wanted: list[int] = []
        for raw in tag_ids or []:
            try:
                wanted.append(int(raw))
            except (TypeError, ValueError):
                logger.warning(f"Skipping invalid tag id {raw!r} for user {user_id}")
        wanted = list(dict.fromkeys(wanted))
        if not wanted:
            return []

        channel_id, valid_ids, pending = await self._pending_tags(user_id, wanted)
        if channel_id is None:
            logger.warning(f"Cannot apply tags to missing user {user_id}")
            return []
        skipped = [t for t in wanted if t not in valid_ids]
        if skipped:
            logger.warning(f"Skipped unknown tag ids {skipped} for user {user_id} in channel {channel_id}")

        added: list[int] = []
        for tag_id in pending:
            try:
                async with self.database.session() as session:
                    session.add(LineUserTag(line_user_id=int(user_id), tag_id=tag_id))
            except IntegrityError:
                logger.info(f"Tag {tag_id} for user {user_id} was assigned concurrently")
                continue
            added.append(tag_id)
        if not added:
            return []

        await self.rich_menus.sync_user_menu(int(user_id))
        for tag_id in added:
            try:
                await self.steps.start_for_tag_assigned(channel_id, int(user_id), tag_id)
            except Exception as e:
                logger.error(f"Tag scenarios for user {user_id} tag {tag_id} failed to start: {e}", exc_info=True)
        return added
