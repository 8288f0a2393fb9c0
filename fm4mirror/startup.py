import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine

from fm4mirror.config import Settings
from fm4mirror.database import create_db_engine, create_session_factory, init_db
from fm4mirror.services.broadcast_scraper import BroadcastScraper, LAST_FULL_SCRAPE
from fm4mirror.services.broadcast_store import BroadcastStore
from fm4mirror.services.fm4_api import Fm4ApiClient
from fm4mirror.services.image_service import ImageService
from fm4mirror.services.live_monitor import LiveMonitor
from fm4mirror.services.scheduler import ScheduledTasks
from fm4mirror.utils.broadcast_transformer import BroadcastTransformer


logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    store: BroadcastStore
    api: Fm4ApiClient
    images: ImageService
    scraper: BroadcastScraper
    monitor: LiveMonitor
    transformer: BroadcastTransformer
    tasks: ScheduledTasks


def build_services(settings: Settings, api: Fm4ApiClient = None) -> Services:
    """Verdrahtet alle Komponenten mit einer gemeinsamen Store-Instanz"""
    engine = create_db_engine(settings.database_url)
    store = BroadcastStore(create_session_factory(engine))
    api = api or Fm4ApiClient(
        base_url=settings.api_base_url,
        timeout=settings.feed_timeout,
        image_timeout=settings.image_timeout,
    )
    images = ImageService(store, api, settings.image_storage_path, settings.image_max_width)
    scraper = BroadcastScraper(store, api, images, settings)
    monitor = LiveMonitor(
        api, scraper, store, images,
        check_interval=settings.live_check_interval,
        completion_cooldown=settings.live_completion_cooldown,
    )
    transformer = BroadcastTransformer(store, settings.loopstream_base_url, settings.timezone)
    tasks = ScheduledTasks(monitor, scraper, api, settings)
    return Services(settings, engine, store, api, images, scraper, monitor, transformer, tasks)


def init_storage(services: Services) -> bool:
    """Tabellen, Volltext-Index und Programm-Keys laden. Returns whether FTS is available."""
    fts = init_db(services.engine)
    services.images.ensure_storage_directory()
    services.scraper.initialize()
    return fts


async def initial_scrape(services: Services):
    """Erster Start (noch kein voller Scrape gelaufen): Historie nachladen"""
    if services.store.get_metadata(LAST_FULL_SCRAPE):
        logger.info("Historical data present, skipping initial scrape")
        return
    logger.info(f"🚀 First run: backfilling {services.settings.keep_history_days} days")
    try:
        await services.scraper.scrape_historical_broadcasts(services.settings.keep_history_days)
    except Exception as e:
        logger.error(f"✗ Initial scrape failed: {e}", exc_info=True)


def get_services(request: Request) -> Services:
    return request.app.state.services
