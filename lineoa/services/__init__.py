"""Services package - business logic layer."""
from lineoa.services.line_client import LineApiError, LineClient, LineGateway
from lineoa.services.activity_log_service import ActivityLogService
from lineoa.services.rich_menu_service import RichMenuService
from lineoa.services.step_service import StepService
from lineoa.services.tag_service import TagService
from lineoa.services.webhook_service import WebhookService
from lineoa.services.broadcast_service import BroadcastService
from lineoa.services.friend_service import FriendService

__all__ = [
    "LineApiError",
    "LineClient",
    "LineGateway",
    "ActivityLogService",
    "RichMenuService",
    "StepService",
    "TagService",
    "WebhookService",
    "BroadcastService",
    "FriendService",
]
