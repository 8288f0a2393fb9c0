"""
Turns stored broadcasts/items/images into the published JSON shape
(the ORF field names plus images and loopstream playback URLs).
"""
import logging
from collections import OrderedDict
from datetime import time as dtime, datetime
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from fm4mirror.models.broadcast import Broadcast, BroadcastItem
from fm4mirror.models.image import (
    Image, RESOLUTION_HIGH, RESOLUTION_LOW, ENTITY_BROADCAST, ENTITY_BROADCAST_ITEM
)
from fm4mirror.services.broadcast_store import BroadcastStore
from fm4mirror.utils.timeutils import now_ms, ms_to_local, today_broadcast_day, shift_broadcast_day


logger = logging.getLogger(__name__)

LOOPSTREAM_CHANNEL = 'fm4'


class BroadcastTransformer:
    def __init__(self, store: BroadcastStore, loopstream_base_url: str,
                 tz_name: str = "Europe/Vienna", clock: Callable[[], int] = None):
        self.store = store
        self.loopstream_base_url = loopstream_base_url.rstrip('/')
        self.tz_name = tz_name
        self.clock = clock or now_ms

    # ------------------------------------------------------------------
    # Loopstream URLs
    # ------------------------------------------------------------------

    def _loopstream_url(self, params: dict, hls: bool = False) -> str:
        path = '/playlist.m3u8' if hls else '/'
        return f"{self.loopstream_base_url}{path}?{urlencode(params)}"

    def build_loopstream_url(self, loop_stream_id: str, offset: int = 0, offsetende: int = 0,
                             hls: bool = False) -> Optional[str]:
        """Offset-based URL into a finished recording"""
        if not loop_stream_id:
            return None
        params = {
            'channel': LOOPSTREAM_CHANNEL,
            'id': loop_stream_id,
            'offset': str(offset),
            'offsetende': str(offsetende),
        }
        return self._loopstream_url(params, hls)

    def build_live_item_url(self, item_start: int, broadcast_day: int, hls: bool = False) -> Optional[str]:
        """
        Date-based URL for an item of a running broadcast.

        start is the item start (YYYYMMDDHHmmss, station time), ende the end of
        the broadcast day (YYYYMMDD), so listeners can go back within the show.
        """
        if not item_start or not broadcast_day:
            return None
        params = {
            'channel': LOOPSTREAM_CHANNEL,
            'start': ms_to_local(item_start, self.tz_name).strftime('%Y%m%d%H%M%S'),
            'ende': str(broadcast_day),
        }
        return self._loopstream_url(params, hls)

    def item_loopstream(self, item: BroadcastItem, broadcast: Broadcast) -> Optional[dict]:
        if not broadcast or not broadcast.loop_stream_id:
            return None

        loopstream = {
            'id': broadcast.loop_stream_id,
            'broadcastStart': broadcast.loop_stream_start,
            'broadcastEnd': broadcast.loop_stream_end,
        }

        if not broadcast.done and item.start_time:
            loopstream.update({
                'isLive': True,
                'progressive': self.build_live_item_url(item.start_time, item.broadcast_day or broadcast.broadcast_day),
                'hls': self.build_live_item_url(item.start_time, item.broadcast_day or broadcast.broadcast_day, hls=True),
            })
        else:
            if item.start_time is not None and broadcast.loop_stream_start is not None:
                offset = item.start_time - broadcast.loop_stream_start
            else:
                offset = item.start_offset or 0
            loopstream.update({
                'isLive': False,
                'progressive': self.build_loopstream_url(broadcast.loop_stream_id, offset),
                'hls': self.build_loopstream_url(broadcast.loop_stream_id, offset, hls=True),
            })
        return loopstream

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    @staticmethod
    def transform_image(image: Image, base_url: str, resolution_type: str = None) -> Optional[dict]:
        if image is None:
            return None
        resolution_type = resolution_type or image.resolution_type or RESOLUTION_HIGH
        return {
            'hash': image.hash,
            'url': f"{base_url}/images/{image.hash}?resolution={image.resolution_type}",
            'resolutionType': resolution_type,
            'alt': image.alt,
            'text': image.text,
            'category': image.category,
            'copyright': image.copyright,
            'mode': image.mode,
            'width': image.width,
            'height': image.height,
            'originalHashCode': image.original_hash_code,
        }

    def group_images_by_resolution(self, entity_type: str, entity_id: int, base_url: str) -> dict:
        grouped = {RESOLUTION_HIGH: [], RESOLUTION_LOW: []}
        for resolution_type, image in self.store.get_image_references(entity_type, entity_id):
            if resolution_type in grouped:
                grouped[resolution_type].append(self.transform_image(image, base_url, resolution_type))
        return grouped

    # ------------------------------------------------------------------
    # Broadcasts & items
    # ------------------------------------------------------------------

    def transform_broadcast_item(self, item: BroadcastItem, base_url: str, broadcast: Broadcast = None) -> dict:
        transformed = {
            'id': item.item_id,
            'broadcastDay': item.broadcast_day,
            'programKey': item.program_key,
            'type': item.type,
            'title': item.title,
            'interpreter': item.interpreter,
            'description': item.description,
            'state': item.state,
            'isOnDemand': bool(item.is_on_demand),
            'isGeoProtected': bool(item.is_geo_protected),
            'isCompleted': bool(item.is_completed),
            'duration': item.duration,
            'songId': item.song_id,
            'isAdFree': bool(item.is_ad_free),
            'start': item.start_time,
            'startISO': item.start_iso,
            'end': item.end_time,
            'endISO': item.end_iso,
            'startOffset': item.start_offset,
            'endOffset': item.end_offset,
            'images': self.group_images_by_resolution(ENTITY_BROADCAST_ITEM, item.id, base_url),
        }

        loopstream = self.item_loopstream(item, broadcast)
        if loopstream:
            transformed['loopstream'] = loopstream
        return transformed

    def transform_broadcast(self, broadcast: Broadcast, base_url: str, include_items: bool = True) -> dict:
        transformed = {
            'id': broadcast.id,
            'broadcastDay': broadcast.broadcast_day,
            'programKey': broadcast.program_key,
            'program': broadcast.program,
            'title': broadcast.title,
            'subtitle': broadcast.subtitle,
            'state': broadcast.state,
            'isOnDemand': bool(broadcast.is_on_demand),
            'isGeoProtected': bool(broadcast.is_geo_protected),
            'isAdFree': bool(broadcast.is_ad_free),
            'start': broadcast.start_time,
            'startISO': broadcast.start_iso,
            'end': broadcast.end_time,
            'endISO': broadcast.end_iso,
            'scheduledStart': broadcast.scheduled_start,
            'scheduledEnd': broadcast.scheduled_end,
            'niceTime': broadcast.nice_time,
            'niceTimeISO': broadcast.nice_time_iso,
            'duration': broadcast.duration,
            'description': broadcast.description,
            'moderator': broadcast.moderator,
            'url': broadcast.url,
            'done': bool(broadcast.done),
            'images': self.group_images_by_resolution(ENTITY_BROADCAST, broadcast.id, base_url),
        }

        if broadcast.loop_stream_id:
            transformed['loopstream'] = {
                'id': broadcast.loop_stream_id,
                'start': broadcast.loop_stream_start,
                'end': broadcast.loop_stream_end,
                'progressive': self.build_loopstream_url(broadcast.loop_stream_id),
                'hls': self.build_loopstream_url(broadcast.loop_stream_id, hls=True),
            }

        if include_items:
            transformed['items'] = [
                self.transform_broadcast_item(item, base_url, broadcast)
                for item in self.store.get_broadcast_items(broadcast.id)
            ]
        return transformed

    def transform_broadcasts_list(self, broadcasts: Iterable[Broadcast], base_url: str) -> List[dict]:
        """Group by broadcast day, newest day first, broadcasts in airing order"""
        by_day = OrderedDict()
        for broadcast in broadcasts:
            by_day.setdefault(broadcast.broadcast_day, []).append(
                self.transform_broadcast(broadcast, base_url, include_items=False)
            )

        days = []
        for day in sorted(by_day, reverse=True):
            day_broadcasts = sorted(by_day[day], key=lambda b: b['start'] or 0)
            first_start = day_broadcasts[0]['start']
            day_start = None
            if first_start:
                # Broadcast days start at 05:00 station time
                local = ms_to_local(first_start, self.tz_name)
                day_start = datetime.combine(local.date(), dtime(5, 0), tzinfo=ZoneInfo(self.tz_name))
            days.append({
                'day': day,
                'broadcasts': day_broadcasts,
                'date': int(day_start.timestamp() * 1000) if day_start else None,
                'dateISO': day_start.isoformat() if day_start else None,
            })
        return days

    def transform_live_data(self, base_url: str) -> List[dict]:
        """Broadcasts on air right now, else the next scheduled one (from the store)"""
        today = today_broadcast_day(self.tz_name, ms_to_local(self.clock(), self.tz_name))
        broadcasts = self.store.get_broadcasts_by_date_range(shift_broadcast_day(today, -1), today)
        if not broadcasts:
            return []

        now = self.clock()
        live = [
            b for b in broadcasts
            if b.start_time is not None and b.start_time <= now and (not b.end_time or b.end_time >= now)
        ]
        if live:
            return [self.transform_broadcast(b, base_url) for b in sorted(live, key=lambda b: b.start_time)]

        upcoming = [b for b in broadcasts if b.start_time is not None and b.start_time > now]
        if not upcoming:
            return []
        return [self.transform_broadcast(min(upcoming, key=lambda b: b.start_time), base_url)]
