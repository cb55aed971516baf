"""Rich menu service - per-user menu resolution/switching, display-window sweep, registration."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.db import ChannelScope, Database
from database.models import Channel, LineUser, LineUserTag, RichMenu, Tag
from lineoa.errors import ConflictError, NotFoundError, RichMenuRegistrationError, ValidationError
from lineoa.services.activity_log_service import ActivityLogService
from lineoa.services.line_client import LineApiError, LineGateway
from lineoa.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

MENU_WIDTH = 2500
MENU_HEIGHT = 1686
DEFAULT_AREA_TEXT = "Menu"
USER_SYNC_PAGE_SIZE = 500


@dataclass(frozen=True)
class WindowSweepAction:
    channel_id: int
    action: str  # activated | deactivated | reverted_to_default
    menu_id: int
    menu_name: str


def build_menu_definition(menu: RichMenu) -> dict:
    """LINE rich menu object for a stored menu; a single full-size area when none are set."""
    try:
        areas = json.loads(menu.areas or "[]")
    except ValueError as e:
        raise ValidationError(f"Rich menu areas are not valid JSON: {e}") from e
    if not isinstance(areas, list):
        raise ValidationError("Rich menu areas must be a list")

    out = []
    for i, area in enumerate(areas):
        bounds = (area or {}).get("bounds") or {}
        action = (area or {}).get("action") or {}
        try:
            bounds = {k: int(bounds[k]) for k in ("x", "y", "width", "height")}
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Area {i + 1}: bounds need integer x, y, width, height") from e
        if bounds["width"] <= 0 or bounds["height"] <= 0:
            raise ValidationError(f"Area {i + 1}: width and height must be positive")
        if bounds["x"] < 0 or bounds["y"] < 0 or bounds["x"] + bounds["width"] > MENU_WIDTH or bounds["y"] + bounds["height"] > MENU_HEIGHT:
            raise ValidationError(f"Area {i + 1}: bounds fall outside the {MENU_WIDTH}x{MENU_HEIGHT} menu")

        action_type = action.get("type")
        if action_type == "message" and action.get("text"):
            wire_action = {"type": "message", "text": str(action["text"])}
        elif action_type == "uri" and action.get("uri"):
            wire_action = {"type": "uri", "uri": str(action["uri"])}
        else:
            raise ValidationError(f"Area {i + 1}: action must be a message with text or a uri with a link")
        out.append({"bounds": bounds, "action": wire_action})

    if not out:
        out = [
            {
                "bounds": {"x": 0, "y": 0, "width": MENU_WIDTH, "height": MENU_HEIGHT},
                "action": {"type": "message", "text": DEFAULT_AREA_TEXT},
            }
        ]

    return {
        "size": {"width": MENU_WIDTH, "height": MENU_HEIGHT},
        "selected": True,
        "name": (menu.name or "Rich menu")[:300],
        "chatBarText": (menu.chat_bar_text or DEFAULT_AREA_TEXT)[:14],
        "areas": out,
    }


def _open_window_query(channel_id: int, now: datetime):
    return (
        select(RichMenu)
        .where(
            RichMenu.channel_id == int(channel_id),
            RichMenu.rich_menu_id.isnot(None),
            RichMenu.display_period_start.isnot(None),
            RichMenu.display_period_end.isnot(None),
            RichMenu.display_period_start <= now,
            RichMenu.display_period_end >= now,
        )
        .order_by(RichMenu.created_at.desc(), RichMenu.id.desc())
        .limit(1)
    )


class RichMenuService:
    """
    Two distinct remote operations live here:

    - per-user: `resolve_menu_for` / `apply_menu` / `sync_user_menu` link or
      unlink a menu for one user;
    - platform-wide: `run_display_window_sweep` moves the channel's default
      menu (served to users without a per-user link) as display windows
      open and close, then relinks users that hold a per-user link.
    """

    def __init__(self, database: Database, gateway: LineGateway, activity: ActivityLogService):
        self.database = database
        self.gateway = gateway
        self.activity = activity

    # ========== Resolution ==========

    async def resolve_menu_for(self, user_id: int, *, now: datetime | None = None) -> int | None:
        """
        Which menu (rich_menus.id) should currently be linked to the user.

        Precedence: open display-window menu (newest first), then the
        highest-priority assigned tag with a linked menu (ties by tag id),
        then the channel default. Only registered menus qualify.
        """
        async with self.database.session() as session:
            user = await session.get(LineUser, int(user_id))
            if user is None:
                return None
            return await self._resolve(session, user, now or utcnow())

    async def _resolve(self, session: AsyncSession, user: LineUser, now: datetime) -> int | None:
        window = (await session.execute(_open_window_query(user.channel_id, now))).scalar_one_or_none()
        if window is not None:
            return int(window.id)

        tagged = await session.execute(
            select(Tag.linked_rich_menu_id)
            .join(LineUserTag, LineUserTag.tag_id == Tag.id)
            .join(RichMenu, RichMenu.id == Tag.linked_rich_menu_id)
            .where(
                LineUserTag.line_user_id == int(user.id),
                Tag.channel_id == int(user.channel_id),
                RichMenu.channel_id == int(user.channel_id),
                RichMenu.rich_menu_id.isnot(None),
            )
            .order_by(Tag.priority.desc(), Tag.id.asc())
            .limit(1)
        )
        tag_menu_id = tagged.scalar_one_or_none()
        if tag_menu_id is not None:
            return int(tag_menu_id)

        default = await self.channel_default_menu(session, user.channel_id)
        return int(default.id) if default is not None else None

    async def channel_default_menu(self, session: AsyncSession, channel_id: int) -> RichMenu | None:
        """The channel's designated default menu, if it is registered."""
        channel = await session.get(Channel, int(channel_id))
        if channel is None:
            return None
        if channel.default_rich_menu_id:
            menu = await session.get(RichMenu, int(channel.default_rich_menu_id))
            if menu is not None and menu.channel_id == channel.id and menu.is_registered:
                return menu
        result = await session.execute(
            select(RichMenu)
            .where(
                RichMenu.channel_id == int(channel_id),
                RichMenu.is_default.is_(True),
                RichMenu.rich_menu_id.isnot(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ========== Per-user switching ==========

    async def apply_menu(self, user_id: int, target_menu_id: int | None) -> bool:
        """
        Reconcile one user's linked menu with `target_menu_id`.

        No-op when the target equals the recorded menu. Otherwise link (or
        unlink for None) on LINE first and only then record it locally; a
        LineApiError propagates and nothing is written.

        Returns:
            True if a remote call was made
        """
        async with self.database.session() as session:
            user = await session.get(LineUser, int(user_id))
            if user is None:
                raise NotFoundError(f"LINE user {user_id} not found")
            if user.current_rich_menu_id == target_menu_id:
                return False

            external_id = None
            if target_menu_id is not None:
                menu = await session.get(RichMenu, int(target_menu_id))
                if menu is None or menu.channel_id != user.channel_id:
                    raise NotFoundError(f"Rich menu {target_menu_id} not found")
                if not menu.is_registered:
                    raise ValidationError(f"Rich menu {target_menu_id} is not registered with LINE")
                external_id = str(menu.rich_menu_id)

            channel = await session.get(Channel, int(user.channel_id))
            line_user_id = str(user.line_user_id)

        client = self.gateway.client_for(channel)
        if external_id is not None:
            await client.link_rich_menu_to_user(line_user_id, external_id)
        else:
            await client.unlink_rich_menu_from_user(line_user_id)

        try:
            async with self.database.session() as session:
                await session.execute(
                    update(LineUser)
                    .where(LineUser.id == int(user_id))
                    .values(current_rich_menu_id=target_menu_id)
                )
        except Exception:
            logger.error(
                f"Rich menu switch for user {user_id} -> {target_menu_id} succeeded remotely but local write failed",
                exc_info=True,
            )
            return True

        logger.info(f"Rich menu switched: user={user_id} ({line_user_id}) -> menu={target_menu_id}")
        return True

    async def sync_user_menu(self, user_id: int, *, now: datetime | None = None) -> bool:
        """
        Resolve and apply in one go; failures are logged, never raised.

        Used after tag changes and follows, which must succeed even when
        the menu cannot be switched.
        """
        try:
            target = await self.resolve_menu_for(user_id, now=now)
            return await self.apply_menu(user_id, target)
        except LineApiError as e:
            logger.warning(f"Rich menu sync for user {user_id} failed at LINE: {e}")
        except Exception as e:
            logger.error(f"Rich menu sync for user {user_id} failed: {e}", exc_info=True)
        return False

    async def link_new_user_default(self, user_id: int) -> bool:
        """
        Link the channel default to a brand-new user (direct call, no no-op check).

        Returns:
            True if a default exists and LINE accepted the link
        """
        async with self.database.session() as session:
            user = await session.get(LineUser, int(user_id))
            if user is None:
                return False
            default = await self.channel_default_menu(session, user.channel_id)
            if default is None:
                return False
            channel = await session.get(Channel, int(user.channel_id))
            menu_id, external_id, line_user_id = int(default.id), str(default.rich_menu_id), str(user.line_user_id)

        try:
            await self.gateway.client_for(channel).link_rich_menu_to_user(line_user_id, external_id)
        except LineApiError as e:
            logger.warning(f"Default rich menu link failed for new user {user_id}: {e}")
            return False

        try:
            async with self.database.session() as session:
                await session.execute(
                    update(LineUser).where(LineUser.id == int(user_id)).values(current_rich_menu_id=menu_id)
                )
        except Exception:
            logger.error(
                f"Default rich menu link for user {user_id} -> {menu_id} succeeded remotely but local write failed",
                exc_info=True,
            )
        return True

    # ========== Display-window sweep ==========

    async def run_display_window_sweep(self, *, now: datetime | None = None) -> list[WindowSweepAction]:
        """
        Activate menus whose display window opened and retire those whose window closed.

        Each channel is processed independently; a failing channel is logged
        and skipped.
        """
        now = now or utcnow()
        async with self.database.session() as session:
            channels = list((await session.execute(select(Channel).order_by(Channel.id.asc()))).scalars().all())

        actions: list[WindowSweepAction] = []
        for channel in channels:
            if not channel.channel_access_token:
                continue
            try:
                actions.extend(await self._sweep_channel(channel, now))
            except Exception as e:
                logger.error(f"Rich menu window sweep failed for channel {channel.id}: {e}", exc_info=True)
        if actions:
            logger.info(f"Rich menu window sweep: {len(actions)} change(s)")
        return actions

    async def _sweep_channel(self, channel: Channel, now: datetime) -> list[WindowSweepAction]:
        async with self.database.session() as session:
            open_menu = (await session.execute(_open_window_query(channel.id, now))).scalar_one_or_none()
            active_query = select(RichMenu).where(
                RichMenu.channel_id == int(channel.id),
                RichMenu.is_active.is_(True),
            )
            active = list((await session.execute(active_query)).scalars().all())
            default = await self.channel_default_menu(session, channel.id)

        expired = [m for m in active if m.display_period_end is not None and m.display_period_end < now]
        client = self.gateway.client_for(channel)
        actions: list[WindowSweepAction] = []

        if open_menu is not None:
            # Only one window menu is live; older open ones are retired so they can take over again later.
            expired_ids = {m.id for m in expired}
            superseded = [m for m in active if m.id != open_menu.id and m.id not in expired_ids]
            if not open_menu.is_active or expired or superseded:
                try:
                    await client.set_default_rich_menu(str(open_menu.rich_menu_id))
                except LineApiError as e:
                    logger.warning(f"Activating window menu {open_menu.id} for channel {channel.id} failed: {e}")
                    return actions
            if not open_menu.is_active and await self._set_active(open_menu.id, True):
                actions.append(WindowSweepAction(channel.id, "activated", open_menu.id, open_menu.name))
                logger.info(f"Window menu activated: {open_menu.name} (channel {channel.id})")
            for menu in superseded + expired:
                if await self._set_active(menu.id, False):
                    actions.append(WindowSweepAction(channel.id, "deactivated", menu.id, menu.name))
        elif expired:
            if default is None:
                logger.warning(f"Channel {channel.id} has no registered default menu to revert to")
                for menu in expired:
                    if await self._set_active(menu.id, False):
                        actions.append(WindowSweepAction(channel.id, "deactivated", menu.id, menu.name))
            else:
                try:
                    await client.set_default_rich_menu(str(default.rich_menu_id))
                except LineApiError as e:
                    # Flags stay set so the next sweep retries the revert.
                    logger.warning(f"Reverting channel {channel.id} to default menu {default.id} failed: {e}")
                    return actions
                for menu in expired:
                    if await self._set_active(menu.id, False):
                        actions.append(WindowSweepAction(channel.id, "reverted_to_default", menu.id, menu.name))
                        logger.info(
                            f"Window menu {menu.name} expired; reverted to default {default.name} (channel {channel.id})"
                        )

        if actions:
            await self._sync_linked_users(channel.id, now)
        return actions

    async def _sync_linked_users(self, channel_id: int, now: datetime) -> int:
        """
        Re-resolve every user holding a per-user link after a window transition.

        LINE serves a per-user link ahead of the platform default, so these
        users only see the new window menu (or leave it) when relinked.
        """
        changed = 0
        last_id = 0
        while True:
            async with self.database.session() as session:
                result = await session.execute(
                    select(LineUser.id)
                    .where(
                        LineUser.channel_id == int(channel_id),
                        LineUser.current_rich_menu_id.isnot(None),
                        LineUser.id > last_id,
                    )
                    .order_by(LineUser.id.asc())
                    .limit(USER_SYNC_PAGE_SIZE)
                )
                page = [int(r[0]) for r in result.all()]
            if not page:
                break
            for user_id in page:
                if await self.sync_user_menu(user_id, now=now):
                    changed += 1
            last_id = page[-1]
        if changed:
            logger.info(f"Window transition relinked {changed} user(s) in channel {channel_id}")
        return changed

    async def _set_active(self, menu_id: int, active: bool) -> bool:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    update(RichMenu)
                    .where(RichMenu.id == int(menu_id), RichMenu.is_active.is_(not active))
                    .values(is_active=active)
                )
                return bool(result.rowcount)
        except Exception:
            logger.error(
                f"Default menu change for rich menu {menu_id} succeeded remotely but local write failed",
                exc_info=True,
            )
            return False

    # ========== Registration ==========

    async def register_menu(self, scope: ChannelScope, menu_id: int, *, actor_id: str | None = None) -> dict:
        """
        Create the menu on LINE, upload its image and record the LINE id.

        A menu flagged `is_default` also becomes the platform default and
        the channel's designated default. On upload failure the half-created
        LINE menu is deleted again.

        Raises:
            NotFoundError, ConflictError, ValidationError: bad request
            RichMenuRegistrationError: LINE rejected a step
        """
        async with scope.session() as session:
            menu = await scope.get(session, RichMenu, menu_id)
            if menu is None:
                raise NotFoundError(f"Rich menu {menu_id} not found")
            if menu.is_registered:
                raise ConflictError(f"Rich menu '{menu.name}' is already registered ({menu.rich_menu_id})")
            if not menu.image_url:
                raise ValidationError(f"Rich menu '{menu.name}' has no image")
            definition = build_menu_definition(menu)
            channel = await session.get(Channel, scope.channel_id)
            image_url, is_default, name = str(menu.image_url), bool(menu.is_default), str(menu.name)

        client = self.gateway.client_for(channel)
        try:
            line_menu_id = await client.create_rich_menu(definition)
        except LineApiError as e:
            raise RichMenuRegistrationError(f"Creating rich menu '{name}' on LINE failed: {e}") from e

        try:
            image, content_type = await self.gateway.fetch_image(image_url)
            await client.upload_rich_menu_image(line_menu_id, image, content_type)
        except LineApiError as e:
            try:
                await client.delete_rich_menu(line_menu_id)
            except LineApiError as cleanup_error:
                logger.warning(f"Could not delete half-created rich menu {line_menu_id}: {cleanup_error}")
            raise RichMenuRegistrationError(f"Uploading the image for rich menu '{name}' failed: {e}") from e

        warnings: list[str] = []
        if is_default:
            try:
                await client.set_default_rich_menu(line_menu_id)
            except LineApiError as e:
                logger.warning(f"Setting rich menu {line_menu_id} as default failed: {e}")
                warnings.append(f"Registered, but setting it as the LINE default failed: {e}")

        try:
            async with scope.session() as session:
                menu = await scope.get(session, RichMenu, menu_id)
                menu.rich_menu_id = line_menu_id
                if is_default:
                    channel_row = await session.get(Channel, scope.channel_id)
                    channel_row.default_rich_menu_id = int(menu.id)
                await self.activity.record(
                    scope.channel_id,
                    "rich_menu.register",
                    actor_id=actor_id,
                    target_type="rich_menu",
                    target_id=menu_id,
                    details={"rich_menu_id": line_menu_id, "is_default": is_default},
                    session=session,
                )
        except Exception:
            logger.error(
                f"Rich menu {menu_id} registered as {line_menu_id}; succeeded remotely but local write failed",
                exc_info=True,
            )
            raise

        logger.info(f"Rich menu registered: {name} -> {line_menu_id} (channel {scope.channel_id})")
        return {"id": int(menu_id), "rich_menu_id": line_menu_id, "is_default": is_default, "warnings": warnings}

    async def unregister_menu(self, scope: ChannelScope, menu_id: int, *, actor_id: str | None = None) -> dict:
        """Delete the menu on LINE and forget its LINE id (LINE unlinks it from every user)."""
        async with scope.session() as session:
            menu = await scope.get(session, RichMenu, menu_id)
            if menu is None:
                raise NotFoundError(f"Rich menu {menu_id} not found")
            if not menu.is_registered:
                raise ValidationError(f"Rich menu '{menu.name}' is not registered with LINE")
            channel = await session.get(Channel, scope.channel_id)
            line_menu_id, name = str(menu.rich_menu_id), str(menu.name)

        try:
            await self.gateway.client_for(channel).delete_rich_menu(line_menu_id)
        except LineApiError as e:
            raise RichMenuRegistrationError(f"Deleting rich menu '{name}' on LINE failed: {e}") from e

        try:
            async with scope.session() as session:
                menu = await scope.get(session, RichMenu, menu_id)
                menu.rich_menu_id = None
                menu.is_active = False
                await session.execute(
                    update(LineUser)
                    .where(LineUser.channel_id == scope.channel_id, LineUser.current_rich_menu_id == int(menu_id))
                    .values(current_rich_menu_id=None)
                )
                await self.activity.record(
                    scope.channel_id,
                    "rich_menu.unregister",
                    actor_id=actor_id,
                    target_type="rich_menu",
                    target_id=menu_id,
                    details={"rich_menu_id": line_menu_id},
                    session=session,
                )
        except Exception:
            logger.error(
                f"Rich menu {menu_id} ({line_menu_id}) deleted; succeeded remotely but local write failed",
                exc_info=True,
            )
            raise

        logger.info(f"Rich menu unregistered: {name} ({line_menu_id})")
        return {"id": int(menu_id), "deleted_rich_menu_id": line_menu_id}
