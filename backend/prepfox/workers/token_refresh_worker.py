"""Background loop that keeps stored UPS tokens ahead of expiry."""
import asyncio

from prepfox.config import settings
from prepfox.models_sqlalchemy import SessionLocal
from prepfox.services.carrier_token_refresh import run_carrier_token_refresh_job
from prepfox.utils.logger import logger


async def run_once(triggered_by: str = "scheduled"):
    db = SessionLocal()
    try:
        return await run_carrier_token_refresh_job(db, triggered_by=triggered_by)
    finally:
        db.close()


async def run_token_refresh_worker_loop():
    logger.info("Carrier token refresh worker loop started")

    while True:
        try:
            result = await run_once()
            logger.info(f"Carrier token refresh cycle completed: {result}")
        except Exception as e:
            # Keep the loop alive; the next cycle retries.
            logger.error(f"Carrier token refresh worker loop error: {str(e)}", exc_info=True)

        await asyncio.sleep(settings.TOKEN_REFRESH_INTERVAL_SECONDS)


if __name__ == "__main__":
    asyncio.run(run_token_refresh_worker_loop())
