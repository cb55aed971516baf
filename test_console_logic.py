"""
Console logic against a throwaway SQLite database and a recording fake of
the LINE API: menu resolution, webhook events, drip scenarios, broadcasts
and the operator operations.
"""
import asyncio
import json
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select

from database.models import (
    Channel, ChatMessage, LineUser, LineUserTag, Message, RichMenu, StepExecution,
)
from lineoa.errors import ConflictError, NotFoundError, RichMenuRegistrationError, ValidationError
from lineoa.services.line_client import LineApiError
from lineoa.services.rich_menu_service import build_menu_definition
from lineoa.utils.datetime_utils import calculate_next_send_at, to_local, utcnow

from conftest import DATA_API_BASE, IMAGE_HOST, PNG_BYTES

TOKYO = ZoneInfo("Asia/Tokyo")
T0 = datetime(2025, 1, 1, 12, 0)


async def _get(database, model, row_id):
    async with database.session() as session:
        return await session.get(model, row_id)


async def _count(database, model, *conditions):
    async with database.session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*conditions))
        return int(result.scalar_one())


async def _executions(database, user_id):
    async with database.session() as session:
        result = await session.execute(select(StepExecution).where(StepExecution.line_user_id == user_id))
        return list(result.scalars().all())


def _event(event_type, user_id="Unew", **extra):
    return {"type": event_type, "timestamp": 1735732800000, "source": {"type": "user", "userId": user_id}, **extra}


# ========== Scheduling rule ==========


def test_zero_delay_without_hour_is_immediate():
    assert calculate_next_send_at(T0, 0, None, None, TOKYO) == T0


def test_minute_delay_without_hour():
    assert calculate_next_send_at(T0, 90, None, None, TOKYO) == T0 + timedelta(minutes=90)


@pytest.mark.parametrize("hour_utc", [0, 5, 14, 23])
def test_day_delay_with_hour_snaps_to_local_time(hour_utc):
    trigger = datetime(2025, 3, 10, hour_utc, 30)
    due = calculate_next_send_at(trigger, 2880, 9, 0, TOKYO)

    local_due = to_local(due, TOKYO)
    local_trigger = to_local(trigger, TOKYO)
    assert local_due.date() == local_trigger.date() + timedelta(days=2)
    assert (local_due.hour, local_due.minute) == (9, 0)


def test_same_day_hour_already_passed_moves_to_next_day():
    # 05:00 UTC is 14:00 in Tokyo
    trigger = datetime(2025, 3, 10, 5, 0)
    due = calculate_next_send_at(trigger, 0, 9, 30, TOKYO)
    assert due == datetime(2025, 3, 11, 0, 30)


def test_same_day_hour_still_ahead_fires_today():
    trigger = datetime(2025, 3, 10, 5, 0)
    due = calculate_next_send_at(trigger, 0, 18, 0, TOKYO)
    assert due == datetime(2025, 3, 10, 9, 0)


# ========== Rich menu resolution ==========


async def test_untagged_user_resolves_to_channel_default(container, factory):
    channel = await factory.channel()
    default = await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    user = await factory.user(channel)

    assert await container.rich_menu_service.resolve_menu_for(user.id, now=T0) == default.id


async def test_highest_priority_tag_wins_regardless_of_assignment_order(container, factory):
    channel = await factory.channel()
    await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    menu_a = await factory.menu(channel, "A", "rm-a")
    menu_b = await factory.menu(channel, "B", "rm-b")
    t1 = await factory.tag(channel, "T1", priority=5, linked_rich_menu_id=menu_a.id)
    t2 = await factory.tag(channel, "T2", priority=9, linked_rich_menu_id=menu_b.id)

    first = await factory.user(channel, "U0001")
    await factory.assign(first, t1)
    await factory.assign(first, t2)
    second = await factory.user(channel, "U0002")
    await factory.assign(second, t2)
    await factory.assign(second, t1)

    service = container.rich_menu_service
    assert await service.resolve_menu_for(first.id, now=T0) == menu_b.id
    assert await service.resolve_menu_for(second.id, now=T0) == menu_b.id


async def test_open_window_menu_beats_tag_menu(container, factory):
    channel = await factory.channel()
    tag_menu = await factory.menu(channel, "VIP", "rm-vip")
    window = await factory.menu(
        channel,
        "Campaign",
        "rm-campaign",
        display_period_start=T0 - timedelta(hours=1),
        display_period_end=T0 + timedelta(days=1),
    )
    tag = await factory.tag(channel, "VIP", priority=100, linked_rich_menu_id=tag_menu.id)
    user = await factory.user(channel)
    await factory.assign(user, tag)

    service = container.rich_menu_service
    assert await service.resolve_menu_for(user.id, now=T0) == window.id
    # after the window closes the tag menu applies again
    assert await service.resolve_menu_for(user.id, now=T0 + timedelta(days=2)) == tag_menu.id


async def test_unregistered_menus_are_ignored(container, factory):
    channel = await factory.channel()
    draft = await factory.menu(channel, "Draft", None)
    tag = await factory.tag(channel, "T", priority=1, linked_rich_menu_id=draft.id)
    user = await factory.user(channel)
    await factory.assign(user, tag)

    assert await container.rich_menu_service.resolve_menu_for(user.id, now=T0) is None


async def test_apply_menu_twice_makes_one_remote_call(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "B", "rm-b")
    user = await factory.user(channel)

    service = container.rich_menu_service
    assert await service.apply_menu(user.id, menu.id) is True
    assert await service.apply_menu(user.id, menu.id) is False

    assert len(fake_line.calls("POST", "/v2/bot/user/U0001/richmenu/rm-b")) == 1
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id == menu.id


async def test_apply_menu_failure_leaves_local_state(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "B", "rm-b")
    user = await factory.user(channel)
    fake_line.fail("POST", "/richmenu/rm-b", status=400)

    with pytest.raises(LineApiError):
        await container.rich_menu_service.apply_menu(user.id, menu.id)
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id is None

    # the sync entry point swallows the same failure
    assert await container.rich_menu_service.sync_user_menu(user.id) is False


async def test_apply_menu_none_unlinks(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "B", "rm-b")
    user = await factory.user(channel, current_rich_menu_id=menu.id)

    assert await container.rich_menu_service.apply_menu(user.id, None) is True
    assert fake_line.calls("DELETE", "/v2/bot/user/U0001/richmenu")
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id is None


# ========== Display-window sweep ==========


async def test_window_sweep_activates_then_reverts_to_default(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    window = await factory.menu(
        channel,
        "Sale",
        "rm-sale",
        display_period_start=T0,
        display_period_end=T0 + timedelta(days=1),
    )
    service = container.rich_menu_service

    actions = await service.run_display_window_sweep(now=T0 + timedelta(hours=1))
    assert [(a.action, a.menu_id) for a in actions] == [("activated", window.id)]
    assert fake_line.calls("POST", "/v2/bot/user/all/richmenu/rm-sale")
    assert (await _get(database, RichMenu, window.id)).is_active is True

    # still open: nothing to do
    assert await service.run_display_window_sweep(now=T0 + timedelta(hours=2)) == []
    assert len(fake_line.calls("POST", "/v2/bot/user/all/richmenu/")) == 1

    actions = await service.run_display_window_sweep(now=T0 + timedelta(days=2))
    assert [(a.action, a.menu_id) for a in actions] == [("reverted_to_default", window.id)]
    assert fake_line.calls("POST", "/v2/bot/user/all/richmenu/rm-default")
    assert (await _get(database, RichMenu, window.id)).is_active is False


async def test_window_sweep_keeps_flag_when_revert_fails(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    window = await factory.menu(
        channel,
        "Sale",
        "rm-sale",
        is_active=True,
        display_period_start=T0 - timedelta(days=2),
        display_period_end=T0 - timedelta(days=1),
    )
    fake_line.fail("POST", "/user/all/richmenu/rm-default")

    assert await container.rich_menu_service.run_display_window_sweep(now=T0) == []
    assert (await _get(database, RichMenu, window.id)).is_active is True


async def test_window_sweep_relinks_users_with_a_personal_link(container, factory, fake_line, database):
    channel = await factory.channel()
    default = await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    window = await factory.menu(
        channel,
        "Sale",
        "rm-sale",
        display_period_start=T0,
        display_period_end=T0 + timedelta(days=1),
    )
    linked = await factory.user(channel, "U0001", current_rich_menu_id=default.id)
    other = await factory.user(channel, "U0002", current_rich_menu_id=default.id)
    await factory.user(channel, "U0003")
    fake_line.fail("POST", "/user/U0001/richmenu/rm-sale")
    service = container.rich_menu_service

    await service.run_display_window_sweep(now=T0 + timedelta(hours=1))

    # one failing link does not stop the others
    assert (await _get(database, LineUser, linked.id)).current_rich_menu_id == default.id
    assert (await _get(database, LineUser, other.id)).current_rich_menu_id == window.id
    assert fake_line.calls("POST", "/user/U0003/richmenu") == []

    await service.run_display_window_sweep(now=T0 + timedelta(days=2))

    assert fake_line.calls("POST", "/user/U0002/richmenu/rm-default")
    assert (await _get(database, LineUser, other.id)).current_rich_menu_id == default.id


async def test_nested_windows_hand_the_default_back_to_the_open_one(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    long = await factory.menu(
        channel, "Season", "rm-long", display_period_start=T0, display_period_end=T0 + timedelta(days=10)
    )
    short = await factory.menu(
        channel,
        "Flash sale",
        "rm-short",
        display_period_start=T0 + timedelta(days=2),
        display_period_end=T0 + timedelta(days=4),
    )
    service = container.rich_menu_service

    for day in (1, 3, 5):
        await service.run_display_window_sweep(now=T0 + timedelta(days=day))

    defaults = [r.path.rsplit("/", 1)[1] for r in fake_line.calls("POST", "/v2/bot/user/all/richmenu/")]
    assert defaults == ["rm-long", "rm-short", "rm-long"]
    assert (await _get(database, RichMenu, long.id)).is_active is True
    assert (await _get(database, RichMenu, short.id)).is_active is False

    actions = await service.run_display_window_sweep(now=T0 + timedelta(days=11))
    assert [(a.action, a.menu_id) for a in actions] == [("reverted_to_default", long.id)]
    assert fake_line.calls("POST", "/v2/bot/user/all/richmenu/")[-1].path.endswith("/rm-default")


# ========== Rich menu registration ==========


async def test_register_menu_creates_uploads_and_sets_default(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "Main", None, is_default=True, chat_bar_text="Open menu")
    scope = container.database.scoped(channel.id)

    result = await container.rich_menu_service.register_menu(scope, menu.id, actor_id="op-1")

    assert result["rich_menu_id"] == "richmenu-1"
    assert result["warnings"] == []
    create = fake_line.calls("POST", "/v2/bot/richmenu")[0]
    assert create.json["size"] == {"width": 2500, "height": 1686}
    assert create.json["chatBarText"] == "Open menu"
    assert len(create.json["areas"]) == 1

    assert [r.host for r in fake_line.requests if r.method == "GET"] == [IMAGE_HOST]
    upload = fake_line.calls("POST", "/v2/bot/richmenu/richmenu-1/content")[0]
    assert upload.host == DATA_API_BASE.split("://")[1]
    assert upload.content == PNG_BYTES
    assert fake_line.calls("POST", "/v2/bot/user/all/richmenu/richmenu-1")

    assert (await _get(database, RichMenu, menu.id)).rich_menu_id == "richmenu-1"
    assert (await _get(database, Channel, channel.id)).default_rich_menu_id == menu.id


async def test_register_menu_upload_failure_deletes_remote_menu(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "Main", None)
    fake_line.fail("POST", "/content", status=400)

    with pytest.raises(RichMenuRegistrationError):
        await container.rich_menu_service.register_menu(container.database.scoped(channel.id), menu.id)

    assert fake_line.calls("DELETE", "/v2/bot/richmenu/richmenu-1")
    assert (await _get(database, RichMenu, menu.id)).rich_menu_id is None


async def test_register_menu_rejects_registered_and_foreign(container, factory):
    channel = await factory.channel()
    other = await factory.channel("1650000002")
    menu = await factory.menu(channel, "Main", "rm-1")
    service = container.rich_menu_service

    with pytest.raises(ConflictError):
        await service.register_menu(container.database.scoped(channel.id), menu.id)
    with pytest.raises(NotFoundError):
        await service.register_menu(container.database.scoped(other.id), menu.id)


async def test_unregister_menu_clears_user_links(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "Main", "rm-main", is_active=True)
    user = await factory.user(channel, current_rich_menu_id=menu.id)

    await container.rich_menu_service.unregister_menu(container.database.scoped(channel.id), menu.id)

    assert fake_line.calls("DELETE", "/v2/bot/richmenu/rm-main")
    stored = await _get(database, RichMenu, menu.id)
    assert stored.rich_menu_id is None and stored.is_active is False
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id is None


def test_menu_definition_rejects_out_of_bounds_area():
    menu = RichMenu(
        name="Bad",
        chat_bar_text="Menu",
        areas=json.dumps([{"bounds": {"x": 2000, "y": 0, "width": 600, "height": 100}, "action": {"type": "uri", "uri": "https://x.test"}}]),
    )
    with pytest.raises(ValidationError):
        build_menu_definition(menu)


# ========== Webhook events ==========


async def test_follow_of_new_user_links_default_tags_and_starts_scenarios(container, factory, fake_line, database):
    channel = await factory.channel()
    default = await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    tag = await factory.tag(channel, "New friend")
    async with database.session() as session:
        (await session.get(Channel, channel.id)).auto_tag_ids = json.dumps([tag.id])
    await factory.scenario(channel, [{"delay_minutes": 0}, {"delay_minutes": 1440, "send_hour": 10}])
    fake_line.profiles["Unew"] = {"displayName": "Taro", "pictureUrl": "https://img.test/taro.png"}

    channel = await container.webhook_service.find_channel(channel.channel_id)
    result = await container.webhook_service.process_batch(channel, [_event("follow")])
    assert (result.processed, result.failed) == (1, 0)

    async with database.session() as session:
        user = (await session.execute(select(LineUser).where(LineUser.line_user_id == "Unew"))).scalar_one()
    assert user.display_name == "Taro"
    assert user.is_blocked is False
    assert user.current_rich_menu_id == default.id
    assert len(fake_line.calls("POST", "/v2/bot/user/Unew/richmenu/rm-default")) == 1
    assert await _count(database, LineUserTag, LineUserTag.line_user_id == user.id, LineUserTag.tag_id == tag.id) == 1

    executions = await _executions(database, user.id)
    assert len(executions) == 1
    assert executions[0].status == "active" and executions[0].current_step == 1


async def test_auto_tag_menu_overrides_default_on_follow(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.menu(channel, "Default", "rm-default", is_default=True, make_channel_default=True)
    vip_menu = await factory.menu(channel, "VIP", "rm-vip")
    tag = await factory.tag(channel, "VIP", priority=1, linked_rich_menu_id=vip_menu.id)
    async with database.session() as session:
        (await session.get(Channel, channel.id)).auto_tag_ids = json.dumps([tag.id])

    channel = await container.webhook_service.find_channel(channel.channel_id)
    await container.webhook_service.process_batch(channel, [_event("follow")])

    links = [r.path for r in fake_line.calls("POST", "/v2/bot/user/Unew/richmenu/")]
    assert links == ["/v2/bot/user/Unew/richmenu/rm-default", "/v2/bot/user/Unew/richmenu/rm-vip"]
    async with database.session() as session:
        user = (await session.execute(select(LineUser).where(LineUser.line_user_id == "Unew"))).scalar_one()
    assert user.current_rich_menu_id == vip_menu.id


async def test_follow_survives_profile_failure(container, factory, fake_line, database):
    channel = await factory.channel()
    fake_line.fail("GET", "/profile/", status=404)

    await container.webhook_service.process_batch(channel, [_event("follow")])

    assert await _count(database, LineUser, LineUser.line_user_id == "Unew") == 1


async def test_unfollow_then_refollow_keeps_the_same_row(container, factory, database):
    channel = await factory.channel()
    user = await factory.user(channel, "U0001")
    service = container.webhook_service

    await service.process_batch(channel, [_event("unfollow", "U0001")])
    assert (await _get(database, LineUser, user.id)).is_blocked is True

    await service.process_batch(channel, [_event("follow", "U0001")])
    refreshed = await _get(database, LineUser, user.id)
    assert refreshed.is_blocked is False
    assert refreshed.display_name == "User U0001"
    assert await _count(database, LineUser, LineUser.channel_id == channel.id) == 1


async def test_message_event_records_chat_and_unread(container, factory, database):
    channel = await factory.channel()
    user = await factory.user(channel, "U0001")
    event = _event("message", "U0001", message={"id": "m1", "type": "text", "text": "hello"})

    await container.webhook_service.process_batch(channel, [event, dict(event)])

    refreshed = await _get(database, LineUser, user.id)
    assert refreshed.unread_count == 2
    assert refreshed.last_message_content == "hello"
    assert refreshed.last_message_at == datetime(2025, 1, 1, 12, 0)
    assert await _count(database, ChatMessage, ChatMessage.line_user_id == user.id, ChatMessage.sender == "user") == 2


async def test_one_failing_event_does_not_stop_the_batch(container, factory, database):
    channel = await factory.channel()
    broken = _event("message", "U0001", message={"type": "text", "text": "x"})
    broken["timestamp"] = "not-a-timestamp"

    result = await container.webhook_service.process_batch(channel, [broken, _event("follow", "U0002")])

    assert (result.processed, result.failed) == (1, 1)
    assert await _count(database, LineUser, LineUser.line_user_id == "U0002") == 1


async def test_postback_runs_tags_scenario_and_reply(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel, "U0001", display_name="Taro")
    tag = await factory.tag(channel, "Clicked")
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}], trigger_type="manual", name="Follow-up")
    message = await factory.message(
        channel,
        [
            {"type": "text", "text": "Look"},
            {
                "type": "image",
                "originalContentUrl": "https://img.test/a.png",
                "customActions": {"tagIds": [tag.id], "scenarioId": scenario.id, "replyText": "Thanks {name}!"},
            },
        ],
        status="sent",
    )
    event = _event("postback", "U0001", postback={"data": f"action=custom&mid={message.id}&block=1&extra=ok"})

    result = await container.webhook_service.process_batch(channel, [event])

    assert result.failed == 0
    assert await _count(database, LineUserTag, LineUserTag.line_user_id == user.id, LineUserTag.tag_id == tag.id) == 1
    assert [e.scenario_id for e in await _executions(database, user.id)] == [scenario.id]
    push = fake_line.calls("POST", "/v2/bot/message/push")[-1]
    assert push.json == {"to": "U0001", "messages": [{"type": "text", "text": "Thanks Taro!"}]}


async def test_postback_for_deleted_message_is_skipped(container, factory, fake_line):
    channel = await factory.channel()
    await factory.user(channel, "U0001")
    event = _event("postback", "U0001", postback={"data": "action=custom&mid=9999&block=0"})

    result = await container.webhook_service.process_batch(channel, [event])

    assert (result.processed, result.failed) == (1, 0)
    assert fake_line.calls("POST", "/v2/bot/message/push") == []


# ========== Tags ==========


async def test_tag_assignment_starts_tag_scenarios_once(container, factory, database):
    channel = await factory.channel()
    user = await factory.user(channel)
    tag = await factory.tag(channel, "Lead")
    await factory.scenario(channel, [{"delay_minutes": 0}], trigger_type="tag_assigned", trigger_tag_id=tag.id)
    scope = container.database.scoped(channel.id)

    result = await container.tag_service.assign_tag(scope, user_id=user.id, tag_id=tag.id, actor_id="op-1")
    assert result["scenarios_started"] == 1

    with pytest.raises(ConflictError):
        await container.tag_service.assign_tag(scope, user_id=user.id, tag_id=tag.id)

    await container.tag_service.unassign_tag(scope, user_id=user.id, tag_id=tag.id)
    result = await container.tag_service.assign_tag(scope, user_id=user.id, tag_id=tag.id)
    # the first execution is still active
    assert result["scenarios_started"] == 0
    assert len(await _executions(database, user.id)) == 1


async def test_tag_assignment_switches_menu(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "VIP", "rm-vip")
    user = await factory.user(channel)
    tag = await factory.tag(channel, "VIP", priority=3, linked_rich_menu_id=menu.id)
    scope = container.database.scoped(channel.id)

    result = await container.tag_service.assign_tag(scope, user_id=user.id, tag_id=tag.id)
    assert result["menu_changed"] is True
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id == menu.id

    await container.tag_service.unassign_tag(scope, user_id=user.id, tag_id=tag.id)
    assert fake_line.calls("DELETE", "/v2/bot/user/U0001/richmenu")
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id is None


async def test_tag_assignment_succeeds_when_menu_switch_fails(container, factory, fake_line, database):
    channel = await factory.channel()
    menu = await factory.menu(channel, "VIP", "rm-vip")
    user = await factory.user(channel)
    tag = await factory.tag(channel, "VIP", linked_rich_menu_id=menu.id)
    fake_line.fail("POST", "/richmenu/rm-vip")

    result = await container.tag_service.assign_tag(
        container.database.scoped(channel.id), user_id=user.id, tag_id=tag.id
    )

    assert result["menu_changed"] is False
    assert await _count(database, LineUserTag, LineUserTag.line_user_id == user.id) == 1
    assert (await _get(database, LineUser, user.id)).current_rich_menu_id is None


async def test_tags_are_scoped_to_their_channel(container, factory):
    channel = await factory.channel()
    other = await factory.channel("1650000002")
    user = await factory.user(channel)
    foreign_tag = await factory.tag(other, "Elsewhere")

    with pytest.raises(NotFoundError):
        await container.tag_service.assign_tag(
            container.database.scoped(channel.id), user_id=user.id, tag_id=foreign_tag.id
        )


async def test_tag_create_list_and_activity_log(container, factory):
    channel = await factory.channel()
    scope = container.database.scoped(channel.id)
    tags = container.tag_service

    await tags.create_tag(scope, name="Low", priority=1, actor_id="op-1")
    high = await tags.create_tag(scope, name="High", color="#FF0000", priority=9, actor_id="op-1")
    with pytest.raises(ConflictError):
        await tags.create_tag(scope, name="High")
    with pytest.raises(ValidationError):
        await tags.create_tag(scope, name="Bad color", color="red")

    listed = await tags.list_tags(scope)
    assert [t["name"] for t in listed] == ["High", "Low"]
    assert listed[0]["user_count"] == 0

    updated = await tags.update_tag(scope, high["id"], priority=0)
    assert updated["priority"] == 0

    logs = await container.activity_log_service.recent(scope, action="tag.create")
    assert len(logs) == 2
    assert logs[0]["actor_id"] == "op-1"


async def test_apply_tags_keeps_the_rest_when_one_is_assigned_concurrently(
    container, factory, database, monkeypatch
):
    channel = await factory.channel()
    user = await factory.user(channel)
    first = await factory.tag(channel, "First")
    second = await factory.tag(channel, "Second")
    scenario = await factory.scenario(
        channel, [{"delay_minutes": 0}], trigger_type="tag_assigned", trigger_tag_id=second.id
    )
    service = container.tag_service
    pending_tags = service._pending_tags

    async def racing_pending_tags(user_id, wanted):
        result = await pending_tags(user_id, wanted)
        # an operator assigns the first tag between the read and the insert
        await factory.assign(user, first)
        return result

    monkeypatch.setattr(service, "_pending_tags", racing_pending_tags)

    assert await service.apply_tags(user.id, [first.id, second.id]) == [second.id]
    assert await _count(database, LineUserTag, LineUserTag.line_user_id == user.id) == 2
    assert [e.scenario_id for e in await _executions(database, user.id)] == [scenario.id]


# ========== Step executions ==========


async def test_manual_start_skips_active_execution(container, factory):
    channel = await factory.channel()
    user = await factory.user(channel)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}], trigger_type="manual")
    scope = container.database.scoped(channel.id)
    steps = container.step_service

    first = await steps.start_manual(scope, scenario_id=scenario.id, target_type="users", user_ids=[user.id])
    second = await steps.start_manual(scope, scenario_id=scenario.id, target_type="users", user_ids=[user.id])

    assert (first.created, first.skipped) == (1, 0)
    assert (second.created, second.skipped) == (0, 1)
    assert "skipped 1" in second.message


async def test_manual_start_reports_missing_users_and_empty_tags(container, factory):
    channel = await factory.channel()
    other = await factory.channel("1650000002")
    user = await factory.user(channel)
    stranger = await factory.user(other, "U9999")
    tag = await factory.tag(channel, "Nobody")
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}, {"delay_minutes": 60}], trigger_type="manual")
    scope = container.database.scoped(channel.id)
    steps = container.step_service

    result = await steps.start_manual(
        scope, scenario_id=scenario.id, start_step=2, target_type="users", user_ids=[user.id, stranger.id]
    )
    assert (result.created, result.missing) == (1, 1)

    with pytest.raises(ValidationError):
        await steps.start_manual(scope, scenario_id=scenario.id, target_type="tag", tag_id=tag.id)
    with pytest.raises(ValidationError):
        await steps.start_manual(scope, scenario_id=scenario.id, start_step=7, target_type="users", user_ids=[user.id])
    with pytest.raises(NotFoundError):
        await steps.start_manual(
            container.database.scoped(other.id), scenario_id=scenario.id, target_type="users", user_ids=[stranger.id]
        )


async def test_manual_start_for_tag_members(container, factory, database):
    channel = await factory.channel()
    tag = await factory.tag(channel, "Members")
    members = [await factory.user(channel, f"U000{i}") for i in range(1, 4)]
    for member in members[:2]:
        await factory.assign(member, tag)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}], trigger_type="manual")

    result = await container.step_service.start_manual(
        container.database.scoped(channel.id), scenario_id=scenario.id, target_type="tag", tag_id=tag.id
    )

    assert (result.created, result.skipped) == (2, 0)
    assert await _executions(database, members[2].id) == []


async def test_advance_sends_each_step_then_completes(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}, {"delay_minutes": 60}])
    steps = container.step_service

    assert await steps.start_scenario(scenario.id, user.id, now=T0) is True
    (execution,) = await _executions(database, user.id)
    assert execution.next_send_at == T0

    assert await steps.advance_due(now=T0) == 1
    (execution,) = await _executions(database, user.id)
    assert (execution.current_step, execution.next_send_at) == (2, T0 + timedelta(minutes=60))
    assert fake_line.calls("POST", "/message/push")[-1].json == {
        "to": "U0001",
        "messages": [{"type": "text", "text": "Step 1"}],
    }

    assert await steps.advance_due(now=T0 + timedelta(minutes=30)) == 0

    assert await steps.advance_due(now=T0 + timedelta(minutes=61)) == 1
    (execution,) = await _executions(database, user.id)
    assert execution.status == "completed"
    assert execution.completed_at is not None
    assert len(fake_line.calls("POST", "/message/push")) == 2


async def test_advance_moves_on_after_push_failure(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}, {"delay_minutes": 10}])
    fake_line.fail("POST", "/message/push")

    await container.step_service.start_scenario(scenario.id, user.id, now=T0)
    assert await container.step_service.advance_due(now=T0) == 1

    (execution,) = await _executions(database, user.id)
    assert execution.current_step == 2


async def test_advance_skips_push_for_blocked_users(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel, is_blocked=True)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}])

    await container.step_service.start_scenario(scenario.id, user.id, now=T0)
    assert await container.step_service.advance_due(now=T0) == 1

    assert fake_line.calls("POST", "/message/push") == []
    (execution,) = await _executions(database, user.id)
    assert execution.status == "completed"


async def test_execution_with_missing_step_completes(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}])
    async with database.session() as session:
        session.add(
            StepExecution(scenario_id=scenario.id, line_user_id=user.id, current_step=5, status="active", next_send_at=T0)
        )

    assert await container.step_service.advance_due(now=T0) == 1

    (execution,) = await _executions(database, user.id)
    assert execution.status == "completed"
    assert fake_line.calls("POST", "/message/push") == []


async def test_step_sweep_processes_one_page_per_run(container, factory, fake_line):
    channel = await factory.channel()
    users = await factory.users(channel, 5)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}])
    steps = container.step_service
    steps.page_size = 2
    for user in users:
        await steps.start_scenario(scenario.id, user.id, now=T0)

    assert [await steps.advance_due(now=T0) for _ in range(4)] == [2, 2, 1, 0]
    assert len(fake_line.calls("POST", "/message/push")) == 5


async def test_concurrent_step_sweeps_send_each_step_once(container, factory, fake_line, database):
    channel = await factory.channel()
    users = await factory.users(channel, 5)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}])
    steps = container.step_service
    for user in users:
        await steps.start_scenario(scenario.id, user.id, now=T0)

    counts = await asyncio.gather(*(steps.advance_due(now=T0) for _ in range(3)))

    assert sum(counts) == 5
    pushed = sorted(r.json["to"] for r in fake_line.calls("POST", "/message/push"))
    assert pushed == [u.line_user_id for u in users]
    assert await _count(database, StepExecution, StepExecution.status == "completed") == 5


# ========== Broadcasts ==========


async def test_broadcast_batches_and_partial_failure(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.users(channel, 1200)
    message = await factory.message(channel)
    # second batch holds users 501..1000
    fake_line.fail_when(lambda r: r.path.endswith("/multicast") and "U0501" in r.json["to"])

    result = await container.broadcast_service.send_message(container.database.scoped(channel.id), message.id)

    assert [len(r.json["to"]) for r in fake_line.calls("POST", "/message/multicast")] == [500, 500, 200]
    assert (result.status, result.batches, result.success, result.failure) == ("sent", 3, 700, 500)
    stored = await _get(database, Message, message.id)
    assert (stored.status, stored.total_recipients, stored.success_count, stored.failure_count) == ("sent", 1200, 700, 500)
    assert stored.sent_at is not None


async def test_broadcast_fails_only_when_every_batch_fails(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.users(channel, 3)
    message = await factory.message(channel)
    fake_line.fail("POST", "/message/multicast")

    result = await container.broadcast_service.send_message(container.database.scoped(channel.id), message.id)

    assert (result.status, result.success, result.failure) == ("failed", 0, 3)
    assert (await _get(database, Message, message.id)).status == "failed"


async def test_broadcast_to_nobody_is_sent_without_calls(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.users(channel, 3)
    tag = await factory.tag(channel, "Unused")
    message = await factory.message(channel, filter_tag_ids=[tag.id])

    result = await container.broadcast_service.send_message(container.database.scoped(channel.id), message.id)

    assert (result.status, result.total, result.success, result.failure) == ("sent", 0, 0, 0)
    assert fake_line.calls("POST", "/message/multicast") == []


async def test_broadcast_recipients_skip_blocked_and_follow_filter(container, factory, fake_line):
    channel = await factory.channel()
    tag = await factory.tag(channel, "VIP")
    active = await factory.user(channel, "U0001")
    blocked = await factory.user(channel, "U0002", is_blocked=True)
    await factory.user(channel, "U0003")
    await factory.assign(active, tag)
    await factory.assign(blocked, tag)
    message = await factory.message(channel, filter_tag_ids=[tag.id])

    await container.broadcast_service.send_message(container.database.scoped(channel.id), message.id)

    assert fake_line.calls("POST", "/message/multicast")[0].json["to"] == ["U0001"]


async def test_broadcast_image_actions_become_postback_bubbles(container, factory, fake_line):
    channel = await factory.channel()
    await factory.user(channel)
    message = await factory.message(
        channel,
        [{"type": "image", "originalContentUrl": "https://img.test/a.png", "customActions": {"tagIds": [1]}}],
    )

    await container.broadcast_service.send_message(container.database.scoped(channel.id), message.id)

    (sent,) = fake_line.calls("POST", "/message/multicast")[0].json["messages"]
    assert sent["type"] == "flex"
    image = sent["contents"]["body"]["contents"][0]
    assert image["action"] == {"type": "postback", "data": f"action=custom&mid={message.id}&block=0"}


async def test_sent_message_cannot_be_sent_again(container, factory):
    channel = await factory.channel()
    await factory.user(channel)
    message = await factory.message(channel)
    scope = container.database.scoped(channel.id)

    await container.broadcast_service.send_message(scope, message.id)
    with pytest.raises(ConflictError):
        await container.broadcast_service.send_message(scope, message.id)


async def test_scheduled_sweep_only_picks_due_messages(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.user(channel)
    now = utcnow()
    due = await factory.message(channel, status="scheduled", scheduled_at=now - timedelta(minutes=1))
    later = await factory.message(channel, status="scheduled", scheduled_at=now + timedelta(hours=1))

    assert await container.broadcast_service.run_scheduled(now=now) == 1
    assert await container.broadcast_service.run_scheduled(now=now) == 0

    assert (await _get(database, Message, due.id)).status == "sent"
    assert (await _get(database, Message, later.id)).status == "scheduled"
    assert len(fake_line.calls("POST", "/message/multicast")) == 1


async def test_scheduled_sweep_processes_one_page_per_run(container, factory, fake_line):
    channel = await factory.channel()
    await factory.user(channel)
    for _ in range(5):
        await factory.message(channel, status="scheduled", scheduled_at=T0 - timedelta(minutes=1))
    broadcasts = container.broadcast_service
    broadcasts.page_size = 2

    assert [await broadcasts.run_scheduled(now=T0) for _ in range(4)] == [2, 2, 1, 0]
    assert len(fake_line.calls("POST", "/message/multicast")) == 5


async def test_concurrent_scheduled_sweeps_send_each_message_once(container, factory, fake_line, database):
    channel = await factory.channel()
    await factory.user(channel)
    for _ in range(3):
        await factory.message(channel, status="scheduled", scheduled_at=T0 - timedelta(minutes=1))
    broadcasts = container.broadcast_service

    counts = await asyncio.gather(*(broadcasts.run_scheduled(now=T0) for _ in range(3)))

    assert sum(counts) == 3
    assert len(fake_line.calls("POST", "/message/multicast")) == 3
    assert await _count(database, Message, Message.status == "sent") == 3


# ========== Friends and chat ==========


async def test_delete_friend_removes_dependents(container, factory, database):
    channel = await factory.channel()
    user = await factory.user(channel, "U0001")
    bystander = await factory.user(channel, "U0002")
    tag = await factory.tag(channel, "T")
    await factory.assign(user, tag)
    await factory.assign(bystander, tag)
    scenario = await factory.scenario(channel, [{"delay_minutes": 0}])
    await container.step_service.start_scenario(scenario.id, user.id)
    await container.webhook_service.process_batch(
        channel, [_event("message", "U0001", message={"type": "text", "text": "hi"})]
    )
    scope = container.database.scoped(channel.id)

    result = await container.friend_service.delete_friend(scope, user.id, actor_id="op-1")

    assert result["removed"] == {"step_executions": 1, "tags": 1, "chat_messages": 1}
    assert await _get(database, LineUser, user.id) is None
    assert await _count(database, LineUserTag, LineUserTag.line_user_id == bystander.id) == 1
    logs = await container.activity_log_service.recent(scope, action="friend.delete")
    assert logs[0]["target_id"] == str(user.id)


async def test_send_chat_pushes_then_records(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel)
    scope = container.database.scoped(channel.id)

    result = await container.friend_service.send_chat(scope, user.id, text="Hello there")

    assert result["recorded"] is True
    assert fake_line.calls("POST", "/message/push")[0].json["messages"] == [{"type": "text", "text": "Hello there"}]
    assert (await _get(database, LineUser, user.id)).last_message_content == "Hello there"
    assert await _count(database, ChatMessage, ChatMessage.sender == "admin") == 1


async def test_send_chat_failure_records_nothing(container, factory, fake_line, database):
    channel = await factory.channel()
    user = await factory.user(channel)
    scope = container.database.scoped(channel.id)
    fake_line.fail("POST", "/message/push", status=429)

    with pytest.raises(LineApiError):
        await container.friend_service.send_chat(scope, user.id, text="Hello")
    with pytest.raises(ValidationError):
        await container.friend_service.send_chat(scope, user.id, text="   ")

    assert await _count(database, ChatMessage) == 0


async def test_mark_read_resets_unread(container, factory, database):
    channel = await factory.channel()
    user = await factory.user(channel, "U0001")
    event = _event("message", "U0001", message={"type": "sticker", "packageId": "1", "stickerId": "2"})
    await container.webhook_service.process_batch(channel, [event, dict(event)])

    result = await container.friend_service.mark_read(container.database.scoped(channel.id), user.id)

    assert result == {"marked": 2}
    refreshed = await _get(database, LineUser, user.id)
    assert refreshed.unread_count == 0
    assert refreshed.last_message_content == "Sent a sticker"
