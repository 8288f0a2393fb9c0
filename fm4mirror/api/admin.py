from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import logging

from fm4mirror.startup import Services, get_services
from fm4mirror.utils.logger import change_log_level_runtime


logger = logging.getLogger(__name__)


router = APIRouter(prefix="/admin", tags=["admin"])


# Pydantic Schemas
class FullScrapeRequest(BaseModel):
    days: Optional[int] = Field(None, ge=1, le=365)


class BroadcastScrapeRequest(BaseModel):
    programKey: str = Field(..., pattern=r'^[A-Za-z0-9_-]{1,50}$')
    broadcastDay: int = Field(..., ge=19700101, le=29991231)
    force: bool = False


class LogLevelRequest(BaseModel):
    level: str


async def _run_admin_job(name: str, job, *args, **kwargs):
    try:
        await job(*args, **kwargs)
        logger.info(f"✓ Admin {name} completed")
    except Exception as e:
        logger.error(f"✗ Admin {name} failed: {e}", exc_info=True)


def _run_cleanup(services: Services):
    try:
        services.scraper.cleanup_old_broadcasts(services.settings.keep_history_days)
        logger.info("✓ Admin cleanup completed")
    except Exception as e:
        logger.error(f"✗ Admin cleanup failed: {e}", exc_info=True)


@router.post("/scrape/full")
async def trigger_full_scrape(background_tasks: BackgroundTasks,
                              body: Optional[FullScrapeRequest] = None,
                              services: Services = Depends(get_services)):
    """Historischen Scrape im Hintergrund starten"""
    days = (body.days if body else None) or services.settings.keep_history_days
    if services.scraper.is_running:
        return {"message": "Scraper is already running", "status": "busy"}

    logger.info(f"Admin triggered full scrape for {days} days")
    background_tasks.add_task(_run_admin_job, "full scrape", services.scraper.scrape_historical_broadcasts, days)
    return {"message": f"Full scrape initiated for {days} days", "status": "running"}


@router.post("/scrape/recent")
async def trigger_recent_scrape(background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    if services.scraper.is_running:
        return {"message": "Scraper is already running", "status": "busy"}

    logger.info("Admin triggered recent scrape")
    background_tasks.add_task(_run_admin_job, "recent scrape", services.scraper.scrape_recent_broadcasts)
    return {"message": "Recent scrape initiated", "status": "running"}


@router.post("/scrape/broadcast")
async def trigger_broadcast_scrape(body: BroadcastScrapeRequest, background_tasks: BackgroundTasks,
                                   services: Services = Depends(get_services)):
    logger.info(f"Admin triggered scrape for {body.programKey}/{body.broadcastDay}")
    background_tasks.add_task(
        _run_admin_job, f"broadcast scrape {body.programKey}/{body.broadcastDay}",
        services.scraper.scrape_broadcast, body.programKey, body.broadcastDay, force_fetch=body.force,
    )
    return {
        "message": f"Broadcast scrape initiated for {body.programKey}/{body.broadcastDay}",
        "status": "running",
    }


@router.post("/discover-keys")
async def trigger_discovery(background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    logger.info("Admin triggered program key discovery")
    background_tasks.add_task(_run_admin_job, "program key discovery", services.scraper.discover_program_keys)
    return {"message": "Program key discovery initiated", "status": "running"}


@router.post("/cleanup")
async def trigger_cleanup(background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    logger.info("Admin triggered cleanup")
    background_tasks.add_task(_run_cleanup, services)
    return {"message": "Cleanup initiated", "status": "running"}


@router.get("/stats")
async def get_stats(services: Services = Depends(get_services)):
    """DB-Statistiken + Zeitpunkte der letzten Scrapes"""
    stats = services.store.get_stats()
    stats["lastFullScrape"] = services.store.get_metadata("last_full_scrape")
    stats["lastRecentScrape"] = services.store.get_metadata("last_recent_scrape")
    stats["scraperRunning"] = services.scraper.is_running
    return stats


@router.get("/live-monitor")
async def live_monitor_status(services: Services = Depends(get_services)):
    status = services.monitor.status()
    status["jobs"] = services.tasks.jobs()
    return status


@router.post("/log-level")
async def set_log_level(body: LogLevelRequest):
    """Log-Level zur Laufzeit ändern"""
    if not change_log_level_runtime(body.level):
        raise HTTPException(status_code=400, detail=f"Invalid log level: {body.level}")
    return {"level": body.level.upper()}
