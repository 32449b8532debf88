"""Daily bucket rotation job."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.connection import get_async_db
from src.modules.ledger.rotation import BucketRotationService, RotationReport
from src.redis.client import get_redis_client
from src.utils.logger import get_logger
from src.utils.settings.ledger import LedgerSettings

logger = get_logger(__name__)

ROTATION_JOB_ID = "ledger_bucket_rotation"


class RotationScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: LedgerSettings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or LedgerSettings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def run_once(self) -> RotationReport | None:
        """Run every rotation pass. Errors are logged; the next tick retries."""
        try:
            async with get_async_db(self.session_factory) as db:
                redis_client = await get_redis_client()
                service = BucketRotationService(db, redis_client, self.settings)
                return await service.run()
        except Exception:
            logger.exception("Bucket rotation failed")
            return None

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            trigger=CronTrigger(
                hour=self.settings.ROTATION_CRON_HOUR,
                minute=self.settings.ROTATION_CRON_MINUTE,
                timezone="UTC",
            ),
            id=ROTATION_JOB_ID,
            name="Rotate monthly and rollover credit pools",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            "Rotation scheduler started",
            hour=self.settings.ROTATION_CRON_HOUR,
            minute=self.settings.ROTATION_CRON_MINUTE,
        )

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Rotation scheduler stopped")
