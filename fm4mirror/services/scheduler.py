from datetime import datetime
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from fm4mirror.config import Settings
from fm4mirror.services.broadcast_scraper import BroadcastScraper
from fm4mirror.services.fm4_api import Fm4ApiClient
from fm4mirror.services.live_monitor import LiveMonitor

logger = logging.getLogger(__name__)


class ScheduledTasks:
    """Alle Hintergrund-Jobs: Live-Monitor, Live-Poll, Scrapes, Discovery, Cleanup"""

    def __init__(self, live_monitor: LiveMonitor, scraper: BroadcastScraper,
                 api: Fm4ApiClient, settings: Settings = None):
        self.live_monitor = live_monitor
        self.scraper = scraper
        self.api = api
        self.settings = settings or Settings()
        self.scheduler = None
        self.last_live_broadcast_id = None

    async def poll_live(self):
        """Backup zum Live-Monitor: neue Live-Sendung sofort holen"""
        try:
            live = await self.api.get_live()
            if not live:
                return

            current = live[0]
            if current.get('id') == self.last_live_broadcast_id:
                return

            logger.info(f"📡 New live broadcast detected: {current['programKey']}/{current['broadcastDay']} (ID: {current['id']})")
            self.last_live_broadcast_id = current.get('id')
            await self.scraper.scrape_broadcast(current['programKey'], current['broadcastDay'], force_fetch=True)
        except Exception as e:
            logger.error(f"✗ Live polling failed: {e}")

    async def run_recent_scrape(self):
        logger.info("Running scheduled recent broadcasts scrape")
        try:
            await self.scraper.scrape_recent_broadcasts()
        except Exception as e:
            logger.error(f"✗ Scheduled scrape failed: {e}")

    async def run_discovery(self):
        logger.info("Running scheduled program key discovery")
        try:
            await self.scraper.discover_program_keys()
        except Exception as e:
            logger.error(f"✗ Scheduled discovery failed: {e}")

    async def run_cleanup(self):
        logger.info("Running scheduled cleanup of old broadcasts")
        try:
            self.scraper.cleanup_old_broadcasts(self.settings.keep_history_days)
        except Exception as e:
            logger.error(f"✗ Scheduled cleanup failed: {e}")

    def start(self):
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone=self.settings.timezone)
        job_defaults = {'max_instances': 1, 'coalesce': True}

        self.live_monitor.start()
        self.scheduler.add_job(
            self.live_monitor.check_live_and_update,
            IntervalTrigger(seconds=self.settings.live_check_interval),
            id='live_monitor',
            name=f'Live Monitor (every {self.settings.live_check_interval}s)',
            next_run_time=datetime.now(self.scheduler.timezone),
            **job_defaults
        )

        self.scheduler.add_job(
            self.poll_live,
            IntervalTrigger(minutes=5),
            id='live_poll',
            name='Live Broadcast Poller (backup)',
            **job_defaults
        )

        self.scheduler.add_job(
            self.run_recent_scrape,
            CronTrigger(hour=f'*/{self.settings.scrape_interval_hours}', minute=0),
            id='recent_scrape',
            name=f'Recent Broadcasts Scraper (every {self.settings.scrape_interval_hours}h)',
            **job_defaults
        )

        self.scheduler.add_job(
            self.run_discovery,
            CronTrigger(hour=2, minute=0),
            id='program_key_discovery',
            name='Program Key Discovery',
            **job_defaults
        )

        self.scheduler.add_job(
            self.run_cleanup,
            CronTrigger(hour=3, minute=0),
            id='broadcast_cleanup',
            name='Old Broadcasts Cleanup',
            **job_defaults
        )

        self.scheduler.start()
        logger.info(f"✓ Scheduler started ({len(self.scheduler.get_jobs())} jobs + live monitor)")

    def stop(self):
        self.live_monitor.stop()
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("✓ Scheduler stopped")
        self.scheduler = None

    def jobs(self) -> list:
        if not self.scheduler:
            return []
        return [
            {
                'id': job.id,
                'name': job.name,
                'nextRun': job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]
