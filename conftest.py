"""
Shared fixtures: a throwaway SQLite database per test and a recording fake
of the LINE Messaging API behind the real gateway (httpx.MockTransport).
"""
import json
from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest

from database.db import Database
from database.models import (
    Channel, LineUser, LineUserTag, Message, RichMenu, StepMessage, StepScenario, Tag,
)
from lineoa.config import Config
from lineoa.container import ServiceContainer
from lineoa.services.line_client import LineGateway

API_BASE = "https://api.line.test"
DATA_API_BASE = "https://api-data.line.test"
IMAGE_HOST = "images.test"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeLine:
    """Records every outbound request and answers like the LINE API."""

    def __init__(self):
        self.requests = []
        self.profiles = {}
        self._failures = []
        self._menu_seq = 0

    def fail_when(self, predicate, status: int = 500):
        self._failures.append((predicate, status))

    def fail(self, method: str, fragment: str, status: int = 500):
        self.fail_when(lambda r: r.method == method and fragment in r.path, status)

    def calls(self, method: str, fragment: str = "") -> list:
        return [r for r in self.requests if r.method == method and fragment in r.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = None
        if request.content and request.headers.get("content-type", "").startswith("application/json"):
            body = json.loads(request.content)
        record = SimpleNamespace(
            method=request.method,
            host=request.url.host,
            path=request.url.path,
            json=body,
            content=request.content,
            headers=request.headers,
        )
        self.requests.append(record)

        for predicate, status in self._failures:
            if predicate(record):
                return httpx.Response(status, json={"message": "simulated failure"})

        if record.host == IMAGE_HOST:
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
        if record.method == "GET" and record.path.startswith("/v2/bot/profile/"):
            user_id = record.path.rsplit("/", 1)[1]
            profile = self.profiles.get(user_id, {"displayName": f"User {user_id}"})
            return httpx.Response(200, json={"userId": user_id, **profile})
        if record.method == "POST" and record.path == "/v2/bot/richmenu":
            self._menu_seq += 1
            return httpx.Response(200, json={"richMenuId": f"richmenu-{self._menu_seq}"})
        return httpx.Response(200, json={})


class Factory:
    """Row builders; each call commits on its own."""

    def __init__(self, database: Database):
        self.database = database

    async def _add(self, row):
        async with self.database.session() as session:
            session.add(row)
            await session.flush()
        return row

    async def channel(self, channel_id="1650000001", secret="channel-secret", **kwargs):
        kwargs.setdefault("name", f"Channel {channel_id}")
        kwargs.setdefault("channel_access_token", f"token-{channel_id}")
        return await self._add(Channel(channel_id=channel_id, channel_secret=secret, **kwargs))

    async def user(self, channel, line_user_id="U0001", **kwargs):
        kwargs.setdefault("display_name", f"User {line_user_id}")
        return await self._add(LineUser(channel_id=channel.id, line_user_id=line_user_id, **kwargs))

    async def users(self, channel, count: int, prefix="U"):
        async with self.database.session() as session:
            rows = [
                LineUser(channel_id=channel.id, line_user_id=f"{prefix}{i:04d}", display_name=f"User {i}")
                for i in range(1, count + 1)
            ]
            session.add_all(rows)
            await session.flush()
        return rows

    async def tag(self, channel, name="VIP", priority=0, linked_rich_menu_id=None):
        return await self._add(
            Tag(channel_id=channel.id, name=name, priority=priority, linked_rich_menu_id=linked_rich_menu_id)
        )

    async def assign(self, user, tag):
        return await self._add(LineUserTag(line_user_id=user.id, tag_id=tag.id))

    async def menu(self, channel, name="Menu", rich_menu_id="rm-1", *, make_channel_default=False, **kwargs):
        kwargs.setdefault("image_url", f"https://{IMAGE_HOST}/{name}.png")
        menu = await self._add(RichMenu(channel_id=channel.id, name=name, rich_menu_id=rich_menu_id, **kwargs))
        if make_channel_default:
            async with self.database.session() as session:
                row = await session.get(Channel, channel.id)
                row.default_rich_menu_id = menu.id
        return menu

    async def scenario(self, channel, steps, *, trigger_type="follow", trigger_tag_id=None, is_active=True, name="Welcome"):
        """`steps` is a list of dicts with delay_minutes/send_hour/send_minute/content."""
        async with self.database.session() as session:
            scenario = StepScenario(
                channel_id=channel.id,
                name=name,
                trigger_type=trigger_type,
                trigger_tag_id=trigger_tag_id,
                is_active=is_active,
            )
            session.add(scenario)
            await session.flush()
            for order, step in enumerate(steps, start=1):
                content = step.get("content", [{"type": "text", "text": f"Step {order}"}])
                session.add(
                    StepMessage(
                        scenario_id=scenario.id,
                        step_order=order,
                        delay_minutes=step.get("delay_minutes", 0),
                        send_hour=step.get("send_hour"),
                        send_minute=step.get("send_minute", 0),
                        content=json.dumps(content),
                    )
                )
        return scenario

    async def message(self, channel, content=None, *, status="draft", filter_tag_ids=None, scheduled_at: datetime | None = None):
        content = content if content is not None else [{"type": "text", "text": "Hello"}]
        return await self._add(
            Message(
                channel_id=channel.id,
                title="Campaign",
                content=json.dumps(content),
                status=status,
                filter_tag_ids=json.dumps(filter_tag_ids) if filter_tag_ids is not None else None,
                scheduled_at=scheduled_at,
            )
        )


@pytest.fixture
def fake_line():
    return FakeLine()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'console.db'}"


@pytest.fixture
def config(database_url):
    return Config(
        database_url=database_url,
        cron_secret="cron-secret",
        admin_api_token="admin-token",
        line_api_base_url=API_BASE,
        line_data_api_base_url=DATA_API_BASE,
        auto_create_tables=True,
    )


@pytest.fixture
async def database(database_url):
    db = Database(database_url)
    await db.create_tables()
    yield db
    await db.disconnect()


@pytest.fixture
async def gateway(fake_line):
    gw = LineGateway(
        api_base_url=API_BASE,
        data_api_base_url=DATA_API_BASE,
        transport=httpx.MockTransport(fake_line.handler),
    )
    yield gw
    await gw.close()


@pytest.fixture
async def container(config, database, gateway):
    return await ServiceContainer.create(config, database=database, gateway=gateway)


@pytest.fixture
def factory(database):
    return Factory(database)
