"""HTTP server - LINE webhooks, scheduler (cron) endpoints and operator API."""
import asyncio
import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database.db import ChannelScope
from lineoa.config import Config
from lineoa.container import ServiceContainer
from lineoa.errors import ConsoleError
from lineoa.main import ConsoleApp, configure_logging
from lineoa.services.line_client import LineApiError
from lineoa.utils.signature import verify_signature

# Don't configure logging here - it's configured by lineoa.main.configure_logging
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

router = APIRouter()


def _get_bearer_token(request: Request) -> str | None:
    # Authorization: Bearer <token> only; query params leak to logs/proxies
    auth = request.headers.get("authorization")
    if auth:
        parts = auth.strip().split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return None


def _token_matches(request: Request, expected: str) -> bool:
    expected = (expected or "").strip()
    if not expected:
        return False
    provided = _get_bearer_token(request)
    return bool(provided) and hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _console(request: Request) -> ConsoleApp:
    console = getattr(request.app.state, "console", None)
    if console is None or console.container is None:
        raise HTTPException(status_code=503, detail="console not ready")
    return console


def _container(request: Request) -> ServiceContainer:
    return _console(request).container


def _require_cron(request: Request) -> ServiceContainer:
    container = _container(request)
    if not _token_matches(request, container.config.cron_secret):
        logger.warning("Rejected cron request: invalid or missing bearer token")
        raise HTTPException(status_code=401, detail="unauthorized")
    return container


def _require_admin(request: Request, channel_id: int) -> tuple[ServiceContainer, ChannelScope]:
    container = _container(request)
    if not _token_matches(request, container.config.admin_api_token):
        raise HTTPException(status_code=401, detail="unauthorized")
    return container, container.database.scoped(int(channel_id))


def _actor(request: Request) -> str | None:
    return request.headers.get("x-actor-id")


def _schedule_relay(request: Request, container: ServiceContainer, url: str, body: bytes, signature: str) -> None:
    # Fire-and-forget; the set keeps tasks referenced until they finish.
    tasks: set = request.app.state.relay_tasks
    task = asyncio.create_task(container.gateway.forward_webhook(url, body, signature))
    tasks.add(task)
    task.add_done_callback(tasks.discard)


# ========== Payloads ==========


class _TagCreatePayload(BaseModel):
    channelId: int
    name: str
    color: str | None = None
    priority: int = 0
    linkedRichMenuId: int | None = None


class _TagUpdatePayload(BaseModel):
    channelId: int
    tagId: int
    name: str | None = None
    color: str | None = None
    priority: int | None = None
    linkedRichMenuId: int | None = None  # explicit null unlinks


class _TagAssignPayload(BaseModel):
    channelId: int
    lineUserId: int
    tagId: int


class _RichMenuRegisterPayload(BaseModel):
    channelId: int
    richMenuId: int


class _StepStartPayload(BaseModel):
    channelId: int
    scenarioId: int
    startStep: int = 1
    targetType: str  # users|tag
    userIds: list[int] | None = None
    tagId: int | None = None


class _MessageSendPayload(BaseModel):
    channelId: int
    messageId: int


class _ChatSendPayload(BaseModel):
    channelId: int
    lineUserId: int
    type: str = "text"  # text|image|video
    text: str | None = None
    originalContentUrl: str | None = None
    previewImageUrl: str | None = None


class _ChatReadPayload(BaseModel):
    channelId: int
    lineUserId: int


# ========== LINE webhook ==========


@router.post("/api/webhook/{channel_id}")
async def line_webhook(channel_id: str, request: Request):
    """
    Receive a LINE webhook batch for one channel.

    400 without a signature, 404 for an unknown channel, 401 for a bad
    signature. Accepted batches always get 200 even when single events
    failed, so LINE does not redeliver already-applied events.
    """
    body = await request.body()
    signature = request.headers.get("x-line-signature")
    if not signature:
        return JSONResponse(status_code=400, content={"error": "missing signature"})

    container = _container(request)
    channel = await container.webhook_service.find_channel(channel_id)
    if channel is None:
        logger.warning(f"Webhook for unknown channel {channel_id}")
        return JSONResponse(status_code=404, content={"error": "channel not found"})

    if not verify_signature(body, signature, channel.channel_secret):
        logger.warning(f"Rejected webhook for channel {channel_id}: invalid signature")
        return JSONResponse(status_code=401, content={"error": "invalid signature"})

    try:
        payload = json.loads(body)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "invalid JSON"})

    events = payload.get("events") if isinstance(payload, dict) else None
    result = await container.webhook_service.process_batch(channel, events or [])
    logger.info(
        f"Webhook channel={channel_id} events={result.processed + result.failed} failed={result.failed}"
    )

    if channel.forward_webhook_url:
        _schedule_relay(request, container, channel.forward_webhook_url, body, signature)

    return {"success": True}


# ========== Scheduler endpoints ==========


@router.get("/api/cron/scheduled-messages")
async def cron_scheduled_messages(request: Request):
    container = _require_cron(request)
    processed = await container.broadcast_service.run_scheduled()
    return {"success": True, "processed": processed}


@router.get("/api/cron/step-messages")
async def cron_step_messages(request: Request):
    container = _require_cron(request)
    processed = await container.step_service.advance_due()
    return {"success": True, "processed": processed}


@router.get("/api/cron/rich-menu-switch")
async def cron_rich_menu_switch(request: Request):
    container = _require_cron(request)
    actions = await container.rich_menu_service.run_display_window_sweep()
    return {"success": True, "processed": len(actions), "results": [asdict(a) for a in actions]}


# ========== Operator API ==========


@router.get("/api/tags")
async def list_tags(request: Request, channelId: int):
    container, scope = _require_admin(request, channelId)
    return {"tags": await container.tag_service.list_tags(scope)}


@router.post("/api/tags")
async def create_tag(request: Request, payload: _TagCreatePayload):
    container, scope = _require_admin(request, payload.channelId)
    tag = await container.tag_service.create_tag(
        scope,
        name=payload.name,
        color=payload.color,
        priority=payload.priority,
        linked_rich_menu_id=payload.linkedRichMenuId,
        actor_id=_actor(request),
    )
    return {"success": True, "tag": tag}


@router.patch("/api/tags")
async def update_tag(request: Request, payload: _TagUpdatePayload):
    container, scope = _require_admin(request, payload.channelId)
    kwargs = {}
    if "linkedRichMenuId" in payload.model_fields_set:
        kwargs["linked_rich_menu_id"] = payload.linkedRichMenuId
    tag = await container.tag_service.update_tag(
        scope,
        payload.tagId,
        name=payload.name,
        color=payload.color,
        priority=payload.priority,
        actor_id=_actor(request),
        **kwargs,
    )
    return {"success": True, "tag": tag}


@router.post("/api/tags/assign")
async def assign_tag(request: Request, payload: _TagAssignPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.tag_service.assign_tag(
        scope, user_id=payload.lineUserId, tag_id=payload.tagId, actor_id=_actor(request)
    )
    return {"success": True, **result}


@router.delete("/api/tags/assign")
async def unassign_tag(request: Request, payload: _TagAssignPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.tag_service.unassign_tag(
        scope, user_id=payload.lineUserId, tag_id=payload.tagId, actor_id=_actor(request)
    )
    return {"success": True, **result}


@router.post("/api/rich-menus/register")
async def register_rich_menu(request: Request, payload: _RichMenuRegisterPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.rich_menu_service.register_menu(scope, payload.richMenuId, actor_id=_actor(request))
    return {"success": True, **result}


@router.delete("/api/rich-menus/register")
async def unregister_rich_menu(request: Request, channelId: int, richMenuId: int):
    container, scope = _require_admin(request, channelId)
    result = await container.rich_menu_service.unregister_menu(scope, richMenuId, actor_id=_actor(request))
    return {"success": True, **result}


@router.post("/api/step-executions/start")
async def start_step_executions(request: Request, payload: _StepStartPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.step_service.start_manual(
        scope,
        scenario_id=payload.scenarioId,
        start_step=payload.startStep,
        target_type=payload.targetType,
        user_ids=payload.userIds,
        tag_id=payload.tagId,
    )
    await container.activity_log_service.record(
        scope.channel_id,
        "step_scenario.start",
        actor_id=_actor(request),
        target_type="step_scenario",
        target_id=payload.scenarioId,
        details={"created": result.created, "skipped": result.skipped, "missing": result.missing},
    )
    return {
        "success": True,
        "created": result.created,
        "skipped": result.skipped,
        "missing": result.missing,
        "message": result.message,
    }


@router.post("/api/messages/send")
async def send_message(request: Request, payload: _MessageSendPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.broadcast_service.send_message(scope, payload.messageId, actor_id=_actor(request))
    return {
        "success": result.status == "sent",
        "message_id": result.message_id,
        "status": result.status,
        "total": result.total,
        "success_count": result.success,
        "failure_count": result.failure,
        "batches": result.batches,
        "detail": result.detail,
    }


@router.delete("/api/friends/{user_id}")
async def delete_friend(request: Request, user_id: int, channelId: int):
    container, scope = _require_admin(request, channelId)
    result = await container.friend_service.delete_friend(scope, user_id, actor_id=_actor(request))
    return {"success": True, **result}


@router.post("/api/chat/send")
async def chat_send(request: Request, payload: _ChatSendPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.friend_service.send_chat(
        scope,
        payload.lineUserId,
        message_type=payload.type,
        text=payload.text,
        original_content_url=payload.originalContentUrl,
        preview_image_url=payload.previewImageUrl,
    )
    return {"success": True, **result}


@router.post("/api/chat/read")
async def chat_read(request: Request, payload: _ChatReadPayload):
    container, scope = _require_admin(request, payload.channelId)
    result = await container.friend_service.mark_read(scope, payload.lineUserId)
    return {"success": True, **result}


@router.get("/api/logs")
async def activity_logs(request: Request, channelId: int, limit: int = 50, action: str | None = None):
    container, scope = _require_admin(request, channelId)
    return {"logs": await container.activity_log_service.recent(scope, limit=limit, action=action)}


# ========== Service endpoints ==========


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint (process and database)."""
    console = getattr(request.app.state, "console", None)
    running = bool(console and console.container)
    payload = {"status": "ok", "running": running, "version": VERSION}
    if not running:
        payload["detail"] = "initializing"
        return payload
    try:
        payload["database_ok"] = await console.database.health_check()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        payload["database_ok"] = False
    if not payload["database_ok"]:
        payload["status"] = "degraded"
    return payload


@router.get("/")
async def root():
    return {
        "name": "LINE OA Console",
        "version": VERSION,
        "endpoints": {"health": "/health", "webhook": "/api/webhook/{channel_id}"},
    }


async def _console_error_handler(request: Request, exc: ConsoleError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


async def _line_api_error_handler(request: Request, exc: LineApiError):
    logger.error(f"LINE API error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": f"LINE API error: {exc}"})


def create_app(console: ConsoleApp | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Without `console` the lifespan loads Config from the environment and
    owns the ConsoleApp; a passed-in console is used as is (tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown."""
        owned = app.state.console is None
        if owned:
            config = Config.from_env()
            configure_logging(config.log_level)
            app.state.console = ConsoleApp(config)

        logger.info("🚀 Starting LINE OA console server...")
        console_obj: ConsoleApp = app.state.console
        try:
            if console_obj.container is None:
                await console_obj.initialize()
            await console_obj.start()
        except Exception as e:
            logger.error(f"❌ Failed to start server: {e}", exc_info=True)
            raise

        yield

        logger.info("🛑 Shutting down LINE OA console server...")
        pending = list(app.state.relay_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if owned:
            await console_obj.stop()

    app = FastAPI(
        lifespan=lifespan,
        title="LINE OA Console",
        description="Webhook processing, rich menus, drip and broadcast messaging for LINE official accounts",
        version=VERSION,
    )
    app.state.console = console
    app.state.relay_tasks = set()
    app.add_exception_handler(ConsoleError, _console_error_handler)
    app.add_exception_handler(LineApiError, _line_api_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
