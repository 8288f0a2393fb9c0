"""
Broadcast scraper: single broadcasts, the rolling 30-day list, historical
backfill and retention cleanup.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, Optional, Set

from fm4mirror.config import Settings
from fm4mirror.models.broadcast import Broadcast
from fm4mirror.services.broadcast_store import BroadcastStore
from fm4mirror.services.fm4_api import Fm4ApiClient, FeedUnavailableError
from fm4mirror.services.image_service import ImageService
from fm4mirror.utils.timeutils import (
    now_ms, ms_to_local, format_broadcast_day, days_between, naive_utc_to_ms
)


logger = logging.getLogger(__name__)

RECENT_UPDATE_WINDOW_MS = 60 * 60 * 1000

LAST_FULL_SCRAPE = 'last_full_scrape'
LAST_RECENT_SCRAPE = 'last_recent_scrape'


def loop_stream_fields(broadcast_data: dict) -> dict:
    """Loopstream id and window from the first stream entry, if any"""
    streams = broadcast_data.get('streams') or []
    if not streams:
        return {'loopStreamId': None, 'loopStreamStart': None, 'loopStreamEnd': None}
    stream = streams[0]
    return {
        'loopStreamId': stream.get('loopStreamId'),
        'loopStreamStart': stream.get('start'),
        'loopStreamEnd': stream.get('end'),
    }


class BroadcastScraper:
    def __init__(self, store: BroadcastStore, api: Fm4ApiClient, images: ImageService,
                 settings: Settings = None,
                 clock: Callable[[], int] = None,
                 sleep: Callable[[float], Awaitable[None]] = None):
        self.store = store
        self.api = api
        self.images = images
        self.settings = settings or Settings()
        self.clock = clock or now_ms
        self.sleep = sleep or asyncio.sleep
        self.is_running = False
        self.known_program_keys: Set[str] = set()

    def initialize(self):
        for entry in self.store.get_all_program_keys():
            self.known_program_keys.add(entry.program_key)
        logger.info(f"Loaded {len(self.known_program_keys)} known program keys")

    def _register_program_key(self, program_key: str, title: Optional[str]):
        if not program_key or program_key in self.known_program_keys:
            return
        self.store.register_program_key(program_key, title)
        self.known_program_keys.add(program_key)
        logger.info(f"🆕 Discovered new program key: {program_key} ({title})")

    def store_broadcast_record(self, broadcast_data: dict) -> Broadcast:
        """Upsert broadcast + loopstream and register its program key"""
        record = dict(broadcast_data)
        if broadcast_data.get('streams') is not None:
            record.update(loop_stream_fields(broadcast_data))
        broadcast = self.store.upsert_broadcast(record)
        self._register_program_key(broadcast.program_key, broadcast_data.get('title'))
        return broadcast

    async def scrape_broadcast(self, program_key: str, broadcast_day: int,
                               force_fetch: bool = False) -> Optional[Broadcast]:
        """
        Fetch one broadcast with its items and images.

        Done broadcasts are never fetched again; recently updated ones only
        when force_fetch is set.

        Returns:
            the stored Broadcast, or None if upstream does not have it / is unavailable
        """
        existing = self.store.get_broadcast(broadcast_day, program_key)

        if existing and existing.done:
            logger.debug(f"Broadcast {program_key}/{broadcast_day} is done, skipping")
            return existing

        if not force_fetch and existing and existing.updated_at:
            age_ms = self.clock() - naive_utc_to_ms(existing.updated_at)
            if age_ms < RECENT_UPDATE_WINDOW_MS:
                logger.debug(f"Broadcast {program_key}/{broadcast_day} recently updated, skipping")
                return existing

        try:
            broadcast_data = await self.api.get_broadcast_with_retry(program_key, broadcast_day)
        except FeedUnavailableError as e:
            logger.error(f"✗ Failed to fetch broadcast {program_key}/{broadcast_day}: {e}")
            return None

        if not broadcast_data:
            logger.debug(f"Broadcast {program_key}/{broadcast_day} not found upstream")
            return None

        # Loopstream fields are always taken from the detail record, even when empty
        broadcast_data = {**broadcast_data, **loop_stream_fields(broadcast_data)}
        broadcast = self.store.upsert_broadcast(broadcast_data)
        self._register_program_key(program_key, broadcast_data.get('title'))

        if broadcast_data.get('images'):
            await self.images.process_broadcast_images(broadcast_data, broadcast.id)

        items = broadcast_data.get('items') or []
        if items:
            by_id = {item.get('id'): item for item in items}
            results = self.store.upsert_items(broadcast.id, items)
            new_items = [(row, by_id[row.item_id]) for row, created in results if created]
            if new_items:
                logger.debug(f"{len(new_items)} new items for {program_key}/{broadcast_day}")
            for row, item_data in new_items:
                if item_data.get('images'):
                    await self.images.process_broadcast_item_images(item_data, row.id)

        end = broadcast_data.get('end')
        if end and end < self.clock():
            self.store.mark_broadcast_done(broadcast.id)
            broadcast.done = True
            logger.debug(f"Broadcast {program_key}/{broadcast_day} has ended, marked as done")

        logger.info(f"✓ Scraped broadcast: {program_key}/{broadcast_day} - {broadcast_data.get('title')}")
        return broadcast

    async def discover_program_keys(self, broadcasts_data: list = None) -> int:
        """Register program keys seen in the rolling list. Returns the number of new keys."""
        if broadcasts_data is None:
            broadcasts_data = await self.api.get_broadcasts()

        new_keys = 0
        for day_data in broadcasts_data:
            for broadcast in day_data.get('broadcasts') or []:
                program_key = broadcast.get('programKey')
                if program_key and program_key not in self.known_program_keys:
                    self._register_program_key(program_key, broadcast.get('title'))
                    new_keys += 1

        logger.info(f"Discovery complete: {new_keys} new program keys, {len(self.known_program_keys)} total")
        return new_keys

    async def _scrape_live_view(self):
        logger.info("Fetching live broadcasts...")
        for live_broadcast in await self.api.get_live():
            try:
                await self.scrape_broadcast(live_broadcast['programKey'], live_broadcast['broadcastDay'], force_fetch=True)
            except Exception as e:
                logger.error(f"✗ Live scrape of {live_broadcast.get('programKey')}/{live_broadcast.get('broadcastDay')} failed: {e}")

    async def _scrape_listed(self, broadcasts_data: Iterable[dict]) -> Set[int]:
        """Scrape every broadcast of the rolling list, returns the covered days"""
        covered = set()
        for day_data in broadcasts_data:
            day = day_data.get('day')
            if not day:
                continue
            covered.add(day)
            for broadcast in day_data.get('broadcasts') or []:
                try:
                    await self.scrape_broadcast(broadcast['programKey'], day)
                except Exception as e:
                    logger.error(f"✗ Scrape of {broadcast.get('programKey')}/{day} failed: {e}")
                await self.sleep(self.settings.scrape_request_delay)
        return covered

    async def scrape_recent_broadcasts(self):
        if self.is_running:
            logger.warning("Scraper is already running")
            return None

        self.is_running = True
        logger.info("🔄 Starting recent broadcasts scrape")
        try:
            await self._scrape_live_view()

            logger.info("Fetching broadcasts list...")
            broadcasts_data = await self.api.get_broadcasts()
            await self.discover_program_keys(broadcasts_data)
            covered = await self._scrape_listed(broadcasts_data)

            self.store.set_metadata(LAST_RECENT_SCRAPE, str(self.clock()))
            logger.info(f"✓ Recent scrape complete ({len(covered)} days, {len(self.known_program_keys)} program keys)")
            return {'days': len(covered)}
        except Exception as e:
            logger.error(f"✗ Recent scrape failed: {e}", exc_info=True)
            return None
        finally:
            self.is_running = False

    async def scrape_historical_broadcasts(self, days_back: int = 30):
        """
        Backfill: live view and rolling list first, then every known program
        key for each older day until days_back days are covered.
        """
        if self.is_running:
            logger.warning("Scraper is already running")
            return None

        self.is_running = True
        logger.info(f"🔄 Starting historical scrape for {days_back} days")
        try:
            await self._scrape_live_view()

            logger.info("Fetching broadcasts list to determine available days...")
            broadcasts_data = await self.api.get_broadcasts()
            await self.discover_program_keys(broadcasts_data)
            covered = await self._scrape_listed(broadcasts_data)

            today_date = ms_to_local(self.clock(), self.settings.timezone).date()
            today = format_broadcast_day(today_date)
            additional_days = max(0, days_back - len(covered))
            scraped = failed = 0

            if additional_days:
                oldest = min(covered) if covered else None
                start_offset = days_between(oldest, today) if oldest else 0
                program_keys = sorted(self.known_program_keys)
                logger.info(
                    f"Scraping {additional_days} additional historical days "
                    f"({days_back} requested - {len(covered)} already available)"
                )

                for i in range(additional_days):
                    days_ago = start_offset + i + 1
                    broadcast_day = format_broadcast_day(today_date - timedelta(days=days_ago))
                    if broadcast_day in covered:
                        continue

                    logger.info(f"Historical day {i + 1}/{additional_days}: {broadcast_day} ({days_ago} days ago)")
                    for program_key in program_keys:
                        try:
                            result = await self.scrape_broadcast(program_key, broadcast_day)
                        except Exception as e:
                            logger.error(f"✗ Scrape of {program_key}/{broadcast_day} failed: {e}")
                            result = None
                        if result:
                            scraped += 1
                        else:
                            failed += 1
                        await self.sleep(self.settings.scrape_request_delay)

                logger.info(f"✓ Historical backfill complete. Scraped: {scraped}, Failed/Not found: {failed}")
            else:
                logger.info(f"All {days_back} days already available in the broadcasts list")

            self.store.set_metadata(LAST_FULL_SCRAPE, str(self.clock()))
            return {'scraped': scraped, 'failed': failed, 'additional_days': additional_days}
        except Exception as e:
            logger.error(f"✗ Historical scrape failed: {e}", exc_info=True)
            return None
        finally:
            self.is_running = False

    def cleanup_old_broadcasts(self, keep_days: int = None) -> dict:
        keep_days = self.settings.keep_history_days if keep_days is None else keep_days
        cutoff = self.clock() - keep_days * 24 * 60 * 60 * 1000
        logger.info(f"🧹 Cleaning up broadcasts older than {keep_days} days")

        deleted_broadcasts = self.store.delete_broadcasts_older_than(cutoff)
        logger.info(f"Deleted {deleted_broadcasts} old broadcasts (with items and image references)")

        images = self.images.cleanup_unreferenced_images()
        if images['errors']:
            logger.warning(f"Failed to delete {len(images['errors'])} image files")

        return {
            'deletedBroadcasts': deleted_broadcasts,
            'deletedImageRecords': images['deletedRecords'],
            'deletedImageFiles': images['deletedFiles'],
            'errors': images['errors'],
        }
