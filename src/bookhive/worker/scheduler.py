import asyncio
import logging
from bookhive.config import settings
from bookhive.db import SessionLocal
from bookhive.email.client import Mailer
from bookhive.actions.overdue import run_overdue_check
from bookhive.actions.notifications import deliver_queued_notifications

logger = logging.getLogger(__name__)

async def run_once(mailer: Mailer) -> dict:
    async with SessionLocal() as session:
        result = await run_overdue_check(session)
        if not result["ok"]:
            logger.error("[scheduler] Overdue check failed: %s", result["message"])
        drained = await deliver_queued_notifications(session, mailer)
    return {"overdue": result, "notifications": drained}

async def run_scheduler(mailer: Mailer):
    interval = max(60, int(settings.OVERDUE_CHECK_INTERVAL_SECONDS))
    logger.info("[scheduler] Started. Interval: %ss", interval)
    while True:
        try:
            await run_once(mailer)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("[scheduler] Stopped")
            raise
        except Exception:
            logger.exception("[scheduler] Error in cycle")
            await asyncio.sleep(interval)
