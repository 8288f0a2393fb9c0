"""
ORF audioapi client for FM4 (live view, 30-day list, broadcast details, images)
"""
import asyncio
import logging
from datetime import date
from typing import Awaitable, Callable, List, Optional

import httpx

from fm4mirror.utils.network import create_httpx_client
from fm4mirror.utils.timeutils import format_broadcast_day


logger = logging.getLogger(__name__)


class FeedUnavailableError(Exception):
    """Upstream nicht erreichbar: Timeout, Transportfehler oder HTTP != 2xx"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class Fm4ApiClient:
    DEFAULT_BASE_URL = "https://audioapi.orf.at/fm4/json/4.0"

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 30.0,
                 image_timeout: float = 60.0, transport: httpx.AsyncBaseTransport = None,
                 sleep: Callable[[float], Awaitable[None]] = None):
        self.base_url = base_url.rstrip('/')
        # Detail endpoint lives under /api/json/ instead of /json/
        self.detail_base_url = self.base_url.replace('/json/', '/api/json/')
        self.timeout = timeout
        self.image_timeout = image_timeout
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            kwargs = {'timeout': self.timeout}
            if self._transport is not None:
                kwargs['transport'] = self._transport
            self._client = create_httpx_client(**kwargs)
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str, timeout: float = None, allow_404: bool = False) -> Optional[httpx.Response]:
        try:
            response = await self.client.get(url, timeout=timeout or self.timeout)
        except httpx.HTTPError as e:
            raise FeedUnavailableError(f"Request to {url} failed: {e.__class__.__name__}: {e}") from e

        if allow_404 and response.status_code == 404:
            return None
        if not response.is_success:
            raise FeedUnavailableError(
                f"HTTP {response.status_code} from {url}", status_code=response.status_code
            )
        return response

    async def _get_json(self, url: str, allow_404: bool = False):
        response = await self._get(url, allow_404=allow_404)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise FeedUnavailableError(f"Invalid JSON from {url}: {e}") from e

    async def get_live(self) -> List[dict]:
        """Aktuelle Live-Sicht: laufende und kommende Sendungen"""
        data = await self._get_json(f"{self.base_url}/live")
        return data if isinstance(data, list) else []

    async def get_broadcasts(self) -> List[dict]:
        """Rollende 30-Tage-Liste, gruppiert nach Tag: [{day, broadcasts: [...]}, ...]"""
        data = await self._get_json(f"{self.base_url}/broadcasts")
        return data if isinstance(data, list) else []

    async def get_broadcast(self, program_key: str, broadcast_day: int) -> Optional[dict]:
        """
        Sendungsdetails inkl. Items, Bilder und Loopstream.

        Returns:
            dict, or None if upstream does not know the broadcast (404)
        """
        url = f"{self.detail_base_url}/broadcast/{program_key}/{broadcast_day}"
        return await self._get_json(url, allow_404=True)

    async def get_broadcast_with_retry(self, program_key: str, broadcast_day: int,
                                       retries: int = 3) -> Optional[dict]:
        for attempt in range(retries):
            try:
                return await self.get_broadcast(program_key, broadcast_day)
            except FeedUnavailableError as e:
                if attempt == retries - 1:
                    raise
                delay = 2 ** attempt
                logger.warning(
                    f"Fetch {program_key}/{broadcast_day} failed (attempt {attempt + 1}/{retries}), "
                    f"retrying in {delay}s: {e}"
                )
                await self._sleep(delay)
        return None

    async def download_image(self, url: str) -> bytes:
        response = await self._get(url, timeout=self.image_timeout)
        return response.content

    @staticmethod
    def format_broadcast_day(day: date) -> int:
        return format_broadcast_day(day)
