"""
Live monitor: polls the live view and keeps running broadcasts and their
items in sync while they are on air.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional, Set, Tuple

from fm4mirror.services.broadcast_scraper import BroadcastScraper
from fm4mirror.services.broadcast_store import BroadcastStore
from fm4mirror.services.fm4_api import Fm4ApiClient, FeedUnavailableError
from fm4mirror.services.image_service import ImageService
from fm4mirror.utils.timeutils import now_ms, naive_utc_to_ms


logger = logging.getLogger(__name__)

BROADCAST_COMPLETED = 'C'
ACTIVE_ITEM_STATES = ('S', 'P')


@dataclass
class MonitoredBroadcast:
    program_key: str
    broadcast_day: int
    state: str
    last_check: int


@dataclass
class MonitoredItem:
    broadcast_id: int
    program_key: str
    broadcast_day: int
    end_time: Optional[int]
    state: str


class LiveMonitor:
    def __init__(self, api: Fm4ApiClient, scraper: BroadcastScraper, store: BroadcastStore,
                 images: ImageService, check_interval: int = 30, completion_cooldown: int = 300,
                 clock: Callable[[], int] = None):
        self.api = api
        self.scraper = scraper
        self.store = store
        self.images = images
        self.check_interval = check_interval
        self.completion_cooldown_ms = completion_cooldown * 1000
        self.clock = clock or now_ms
        self.running = False

        self.monitored_broadcasts: Dict[int, MonitoredBroadcast] = {}
        self.monitored_items: Dict[int, MonitoredItem] = {}
        # upstream broadcast id -> item ids already seen in the live view
        self.processed_items: Dict[int, Set[int]] = {}

    def start(self):
        if self.running:
            logger.warning("Live monitor already running")
            return
        self.running = True
        logger.info(f"▶ Live monitor started (checking every {self.check_interval} seconds)")

    def stop(self):
        if not self.running:
            return
        self.running = False
        cached = sum(len(items) for items in self.processed_items.values())
        broadcasts = len(self.processed_items)
        self.reset()
        logger.info(f"⏹ Live monitor stopped, cleared {broadcasts} broadcast caches with {cached} items")

    def reset(self):
        self.monitored_broadcasts.clear()
        self.monitored_items.clear()
        self.processed_items.clear()

    async def _rescan(self, program_key: str, broadcast_day: int, fetched: Set[Tuple[str, int]]):
        """Forced scrape, at most once per broadcast and tick"""
        if (program_key, broadcast_day) in fetched:
            return
        fetched.add((program_key, broadcast_day))
        await self.scraper.scrape_broadcast(program_key, broadcast_day, force_fetch=True)

    async def process_live_items(self, broadcast: dict, stored_broadcast_id: int) -> int:
        """Store items that only the live view knows yet (upcoming / just started)"""
        items = broadcast.get('items') or []
        if not items:
            return 0

        seen = self.processed_items.setdefault(broadcast['id'], set())
        pending = [item for item in items if item.get('id') is not None and item['id'] not in seen]
        if not pending:
            return 0

        existing = self.store.get_item_ids(stored_broadcast_id)
        new_items = [item for item in pending if item['id'] not in existing]

        if new_items:
            by_id = {item['id']: item for item in new_items}
            for row, created in self.store.upsert_items(stored_broadcast_id, new_items):
                if not created:
                    continue
                logger.info(f"Live monitor: stored new item {row.item_id} '{row.title}'")
                item_data = by_id[row.item_id]
                if item_data.get('images'):
                    await self.images.process_broadcast_item_images(item_data, row.id)

        seen.update(item['id'] for item in pending)
        return len(new_items)

    async def _check_broadcast(self, broadcast: dict, fetched: Set[Tuple[str, int]]):
        broadcast_id = broadcast['id']
        program_key = broadcast['programKey']
        broadcast_day = broadcast['broadcastDay']
        state = broadcast.get('state')
        now = self.clock()

        if state != BROADCAST_COMPLETED:
            await self._rescan(program_key, broadcast_day, fetched)

            stored = self.store.get_broadcast(broadcast_day, program_key)
            if stored is None:
                logger.info(f"Live monitor: {program_key}/{broadcast_day} not in detail feed yet, storing live record")
                stored = self.scraper.store_broadcast_record(broadcast)

            await self.process_live_items(broadcast, stored.id)
            self.monitored_broadcasts[broadcast_id] = MonitoredBroadcast(
                program_key=program_key,
                broadcast_day=broadcast_day,
                state=state,
                last_check=now,
            )
        else:
            existing = self.store.get_broadcast(broadcast_day, program_key)
            stale = existing is None or existing.updated_at is None or \
                now - naive_utc_to_ms(existing.updated_at) > self.completion_cooldown_ms
            if stale:
                logger.info(f"Live monitor: final fetch for completed broadcast {program_key}/{broadcast_day}")
                await self._rescan(program_key, broadcast_day, fetched)

            self.monitored_broadcasts.pop(broadcast_id, None)
            cache = self.processed_items.pop(broadcast_id, None)
            if cache is not None:
                logger.info(f"Live monitor: cleared cache for completed broadcast {broadcast_id} ({len(cache)} items)")

        for item in broadcast.get('items') or []:
            item_id = item.get('id')
            if item_id is None:
                continue
            item_state = item.get('state')
            end_time = item.get('end')
            active = not item.get('isCompleted') and item_state in ACTIVE_ITEM_STATES

            if active and (end_time is None or end_time > now):
                self.monitored_items[item_id] = MonitoredItem(
                    broadcast_id=broadcast_id,
                    program_key=program_key,
                    broadcast_day=broadcast_day,
                    end_time=end_time,
                    state=item_state,
                )
            elif item_id in self.monitored_items:
                logger.info(f"Live monitor: item {item_id} completed, rescanning {program_key}/{broadcast_day}")
                await self._rescan(program_key, broadcast_day, fetched)
                del self.monitored_items[item_id]

    async def _prune_missing(self, live_ids: Set[int], fetched: Set[Tuple[str, int]]):
        """Broadcasts that left the live view without reporting 'C': final rescan, then forget them"""
        for broadcast_id, tracked in list(self.monitored_broadcasts.items()):
            if broadcast_id in live_ids:
                continue
            logger.info(f"Live monitor: {tracked.program_key}/{tracked.broadcast_day} left the live view, final rescan")
            try:
                await self._rescan(tracked.program_key, tracked.broadcast_day, fetched)
            except Exception as e:
                logger.error(f"✗ Live monitor: final rescan for broadcast {broadcast_id} failed: {e}")
            del self.monitored_broadcasts[broadcast_id]

        for broadcast_id in [b for b in self.processed_items if b not in live_ids]:
            del self.processed_items[broadcast_id]

        for item_id, item in list(self.monitored_items.items()):
            if item.broadcast_id not in live_ids:
                del self.monitored_items[item_id]

    async def check_live_and_update(self):
        """One monitor tick. Errors are logged, never raised."""
        try:
            try:
                live = await self.api.get_live()
            except FeedUnavailableError as e:
                logger.warning(f"Live monitor: live view unavailable: {e}")
                return

            fetched: Set[Tuple[str, int]] = set()
            for broadcast in live:
                try:
                    await self._check_broadcast(broadcast, fetched)
                except Exception as e:
                    logger.error(
                        f"✗ Live monitor: failed to process {broadcast.get('programKey')}/"
                        f"{broadcast.get('broadcastDay')}: {e}", exc_info=True
                    )

            now = self.clock()
            for item_id, item in list(self.monitored_items.items()):
                if item.end_time is not None and now >= item.end_time:
                    logger.info(f"Live monitor: item {item_id} passed its end time, rescanning")
                    try:
                        await self._rescan(item.program_key, item.broadcast_day, fetched)
                    except Exception as e:
                        logger.error(f"✗ Live monitor: rescan for item {item_id} failed: {e}")
                    self.monitored_items.pop(item_id, None)

            await self._prune_missing({broadcast.get('id') for broadcast in live}, fetched)

            if self.monitored_broadcasts or self.monitored_items:
                logger.info(
                    f"Live monitor: tracking {len(self.monitored_broadcasts)} broadcasts, "
                    f"{len(self.monitored_items)} active items"
                )
        except Exception as e:
            logger.error(f"✗ Live monitor check failed: {e}", exc_info=True)

    def status(self) -> dict:
        return {
            'running': self.running,
            'checkInterval': self.check_interval,
            'monitoredBroadcasts': {str(k): asdict(v) for k, v in self.monitored_broadcasts.items()},
            'monitoredItems': {str(k): asdict(v) for k, v in self.monitored_items.items()},
            'processedItemCaches': len(self.processed_items),
            'processedItems': sum(len(items) for items in self.processed_items.values()),
        }
