"""
Shared fixtures: in-memory store, a scripted feed client and image payloads.
"""
import io

import pytest
from PIL import Image as PILImage

from fm4mirror.config import Settings
from fm4mirror.database import create_db_engine, create_session_factory, init_db
from fm4mirror.services.broadcast_scraper import BroadcastScraper
from fm4mirror.services.broadcast_store import BroadcastStore
from fm4mirror.services.fm4_api import FeedUnavailableError
from fm4mirror.services.image_service import ImageService
from fm4mirror.services.live_monitor import LiveMonitor
from fm4mirror.utils.timeutils import now_ms, ms_to_local, format_broadcast_day


HOUR = 60 * 60 * 1000
MINUTE = 60 * 1000


def make_image_bytes(width=40, height=20, fmt="JPEG", color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    PILImage.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def image_entry(*versions, hash_code=1234, alt="Bild"):
    """ORF image record; versions are (url, width) pairs"""
    return {
        "hashCode": hash_code,
        "alt": alt,
        "text": "Pressefoto",
        "category": "broadcast",
        "copyright": "ORF",
        "mode": "landscape",
        "versions": [{"path": url, "width": width} for url, width in versions],
    }


def item_data(item_id, start, end, state="C", completed=True, title=None, images=None, **extra):
    data = {
        "id": item_id,
        "type": "M",
        "title": title or f"Song {item_id}",
        "interpreter": "Band",
        "state": state,
        "isCompleted": completed,
        "start": start,
        "end": end,
        "images": images or [],
    }
    data.update(extra)
    return data


def broadcast_data(broadcast_id, program_key, day, start, end, state="C", items=None, images=None,
                   loop_stream_id="2024-loop.mp3", title=None, **extra):
    data = {
        "id": broadcast_id,
        "broadcastDay": day,
        "programKey": program_key,
        "program": program_key,
        "title": title or f"Show {program_key}",
        "state": state,
        "start": start,
        "end": end,
        "items": items or [],
        "images": images or [],
        "streams": [{"loopStreamId": loop_stream_id, "start": start, "end": end}] if loop_stream_id else [],
    }
    data.update(extra)
    return data


class FakeClock:
    def __init__(self, now=None):
        self.now = now if now is not None else now_ms()

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeFm4Api:
    """Scripted stand-in for Fm4ApiClient; records every request"""

    def __init__(self):
        self.live = []
        self.broadcasts = []
        self.details = {}
        self.image_payloads = {}
        self.calls = []
        self.image_calls = []

    async def get_live(self):
        self.calls.append(("live",))
        if isinstance(self.live, Exception):
            raise self.live
        return self.live

    async def get_broadcasts(self):
        self.calls.append(("broadcasts",))
        return self.broadcasts

    async def get_broadcast(self, program_key, broadcast_day):
        self.calls.append(("broadcast", program_key, broadcast_day))
        result = self.details.get((program_key, broadcast_day))
        if isinstance(result, Exception):
            raise result
        return result

    async def get_broadcast_with_retry(self, program_key, broadcast_day, retries=3):
        return await self.get_broadcast(program_key, broadcast_day)

    async def download_image(self, url):
        self.image_calls.append(url)
        if url not in self.image_payloads:
            raise FeedUnavailableError(f"HTTP 404 from {url}", status_code=404)
        return self.image_payloads[url]

    async def aclose(self):
        pass

    def detail_fetches(self, program_key=None, broadcast_day=None):
        return [
            call for call in self.calls
            if call[0] == "broadcast"
            and (program_key is None or call[1] == program_key)
            and (broadcast_day is None or call[2] == broadcast_day)
        ]


async def no_sleep(_seconds):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def today(clock):
    return format_broadcast_day(ms_to_local(clock(), "Europe/Vienna").date())


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        image_storage_path=str(tmp_path / "images"),
        image_max_width=100,
        scrape_request_delay=0,
        scheduler_enabled=False,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return BroadcastStore(create_session_factory(engine))


@pytest.fixture
def api():
    return FakeFm4Api()


@pytest.fixture
def images(store, api, settings):
    return ImageService(store, api, settings.image_storage_path, settings.image_max_width)


@pytest.fixture
def scraper(store, api, images, settings, clock):
    scraper = BroadcastScraper(store, api, images, settings, clock=clock, sleep=no_sleep)
    scraper.initialize()
    return scraper


@pytest.fixture
def monitor(api, scraper, store, images, clock):
    return LiveMonitor(api, scraper, store, images, check_interval=30, completion_cooldown=300, clock=clock)
