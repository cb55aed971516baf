"""Console runtime - database, services and the optional in-process sweep loop."""
import asyncio
import logging
import sys
from typing import Optional

from database.db import Database
from lineoa.config import Config
from lineoa.container import ServiceContainer
from lineoa.services.line_client import LineGateway

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once (stdout)."""
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ConsoleApp:
    """
    Owns the database, the service container and the background sweep task.

    Deployments with an external scheduler call the cron endpoints instead
    and leave RUN_SWEEPS_IN_PROCESS off.
    """

    def __init__(
        self,
        config: Config,
        database: Optional[Database] = None,
        gateway: Optional[LineGateway] = None,
    ):
        """Initialize the console."""
        self.config = config
        self.database = database or Database(config.database_url)
        self._gateway = gateway
        self.container: ServiceContainer = None
        self._running = False
        self._sweep_task: asyncio.Task | None = None

    async def initialize(self):
        """Initialize database and services."""
        logger.info("=" * 70)
        logger.info("📡 LINE OA CONSOLE - INITIALIZING")
        logger.info("=" * 70)

        try:
            logger.info("📊 Initializing database...")
            await self.database.connect()
            if self.config.auto_create_tables:
                await self.database.create_tables()
            else:
                await self.database.require_schema()
            logger.info("✅ Database initialized")

            logger.info("🔧 Initializing services...")
            self.container = await ServiceContainer.create(self.config, database=self.database, gateway=self._gateway)
            logger.info("✅ Services initialized")
        except Exception as e:
            logger.error(f"❌ Failed to initialize console: {e}", exc_info=True)
            raise

    async def start(self):
        """Start background work (if enabled)."""
        if self._running:
            logger.warning("Console is already running")
            return
        if self.container is None:
            await self.initialize()

        self._running = True
        if self.config.run_sweeps_in_process:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(f"⏱️  In-process sweeps every {self.config.sweep_interval_seconds}s")
        else:
            logger.info("⏱️  Sweeps are driven by the cron endpoints")
        logger.info(f"🕘 Step send timezone: {self.config.send_timezone}")
        logger.info("✅ CONSOLE IS RUNNING")

    async def run_sweeps_once(self) -> dict:
        """Run the three periodic sweeps once, each isolated from the others' failures."""
        results: dict = {}
        sweeps = (
            ("scheduled_messages", self.container.broadcast_service.run_scheduled),
            ("step_messages", self.container.step_service.advance_due),
            ("rich_menu_switch", self.container.rich_menu_service.run_display_window_sweep),
        )
        for name, sweep in sweeps:
            try:
                outcome = await sweep()
                results[name] = len(outcome) if isinstance(outcome, list) else int(outcome)
            except Exception as e:
                logger.error(f"Sweep {name} failed: {e}", exc_info=True)
                results[name] = None
        return results

    async def _sweep_loop(self):
        """Background loop for deployments without an external scheduler."""
        while self._running:
            try:
                results = await self.run_sweeps_once()
                logger.debug(f"Sweep results: {results}")
                await asyncio.sleep(self.config.sweep_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sweep loop error: {e}")
                await asyncio.sleep(self.config.sweep_interval_seconds)

    async def stop(self):
        """Stop background work and release resources."""
        logger.info("🛑 Stopping console...")
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        if self.container:
            await self.container.cleanup()
        await self.database.disconnect()
        logger.info("✅ Console stopped")

    def is_running(self) -> bool:
        return self._running


async def main():
    """Run the sweeps once (for a plain cron job: `python -m lineoa.main`)."""
    config = Config.from_env()
    configure_logging(config.log_level)
    console = ConsoleApp(config)
    try:
        await console.initialize()
        results = await console.run_sweeps_once()
        logger.info(f"Sweeps complete: {results}")
    finally:
        await console.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("⌨️  Stopped by user")
