"""Service container - wires configuration, data access, the LINE gateway, and domain services."""
import logging
from dataclasses import dataclass
from typing import Optional

from database.db import Database
from lineoa.config import Config
from lineoa.services.activity_log_service import ActivityLogService
from lineoa.services.broadcast_service import BroadcastService
from lineoa.services.friend_service import FriendService
from lineoa.services.line_client import LineGateway
from lineoa.services.rich_menu_service import RichMenuService
from lineoa.services.step_service import StepService
from lineoa.services.tag_service import TagService
from lineoa.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Simple dependency container shared by the HTTP routes and the sweep loop."""

    config: Config
    database: Database
    gateway: LineGateway
    activity_log_service: ActivityLogService
    rich_menu_service: RichMenuService
    step_service: StepService
    tag_service: TagService
    webhook_service: WebhookService
    broadcast_service: BroadcastService
    friend_service: FriendService

    @classmethod
    async def create(
        cls,
        config: Config,
        database: Optional[Database] = None,
        gateway: Optional[LineGateway] = None,
    ) -> "ServiceContainer":
        """
        Build the service container with all dependencies.

        Args:
            config: Loaded Config instance
            database: Privileged data access (built from DATABASE_URL when omitted)
            gateway: LINE gateway (built from config when omitted)

        Returns:
            ServiceContainer with initialized services
        """
        logger.info("Building service container...")

        database = database or Database(config.database_url)
        gateway = gateway or LineGateway.from_config(config)

        activity_log_service = ActivityLogService(database)
        rich_menu_service = RichMenuService(database, gateway, activity_log_service)
        step_service = StepService(
            database,
            gateway,
            tz=config.tz,
            page_size=config.step_executions_page_size,
        )
        tag_service = TagService(database, rich_menu_service, step_service, activity_log_service)
        webhook_service = WebhookService(database, gateway, rich_menu_service, step_service, tag_service)
        broadcast_service = BroadcastService(
            database,
            gateway,
            activity_log_service,
            batch_size=config.multicast_batch_size,
            page_size=config.scheduled_messages_page_size,
        )
        friend_service = FriendService(database, gateway, activity_log_service)

        logger.info("Service container ready")

        return cls(
            config=config,
            database=database,
            gateway=gateway,
            activity_log_service=activity_log_service,
            rich_menu_service=rich_menu_service,
            step_service=step_service,
            tag_service=tag_service,
            webhook_service=webhook_service,
            broadcast_service=broadcast_service,
            friend_service=friend_service,
        )

    async def cleanup(self):
        """Close the shared HTTP client."""
        try:
            await self.gateway.close()
        except Exception as e:
            logger.warning(f"Gateway close failed: {e}")
        logger.info("Service container cleanup complete")
