"""
Content-addressable image store.

Images are keyed by the SHA-256 of the downloaded bytes plus a resolution
("high" / "low") and written once to <storage>/<hash>_<resolution>.<ext>.
Broadcasts and items point at them through ImageReference rows.
"""
import hashlib
import io
import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from PIL import Image as PILImage, UnidentifiedImageError

from fm4mirror.models.image import (
    Image, RESOLUTION_HIGH, RESOLUTION_LOW, ENTITY_BROADCAST, ENTITY_BROADCAST_ITEM
)
from fm4mirror.services.broadcast_store import BroadcastStore
from fm4mirror.services.fm4_api import Fm4ApiClient, FeedUnavailableError


logger = logging.getLogger(__name__)

IMAGE_FILE_PATTERN = re.compile(r'^([a-f0-9]{64})_(high|low)\.[a-z0-9]+$', re.IGNORECASE)

# Pillow liest Kamera-JPEGs mit Zusatzbildern als MPO
FORMAT_ALIASES = {
    'MPO': 'JPEG',
}

CONTENT_TYPES = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'gif': 'image/gif',
    'bmp': 'image/bmp',
    'tiff': 'image/tiff',
}


class ImageService:
    def __init__(self, store: BroadcastStore, api: Fm4ApiClient, storage_path, max_width: int = 1750):
        self.store = store
        self.api = api
        self.storage_path = Path(storage_path).resolve()
        self.max_width = max_width
        self.ensure_storage_directory()

    def ensure_storage_directory(self):
        if not self.storage_path.exists():
            self.storage_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created image storage directory: {self.storage_path}")

    @staticmethod
    def generate_hash(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def _render(self, data: bytes, resolution_type: str):
        """Decode and (for high resolution) downscale. Returns (bytes, ext, width, height)."""
        with PILImage.open(io.BytesIO(data)) as img:
            fmt = FORMAT_ALIASES.get(img.format, img.format) or 'JPEG'
            ext = fmt.lower()
            width, height = img.size

            if resolution_type == RESOLUTION_HIGH and width > self.max_width:
                new_height = max(1, round(height * self.max_width / width))
                resized = img.resize((self.max_width, new_height), PILImage.LANCZOS)
                buffer = io.BytesIO()
                save_kwargs = {'quality': 90} if fmt == 'JPEG' else {}
                resized.save(buffer, format=fmt, **save_kwargs)
                return buffer.getvalue(), ext, resized.width, resized.height

            img.verify()
            return data, ext, width, height

    async def process_and_store_image(self, url: str, metadata: dict = None,
                                      resolution_type: str = RESOLUTION_HIGH) -> Optional[Image]:
        """
        Download one image version and store it content-addressed.

        Returns the (possibly pre-existing) Image row, or None when the download
        failed or the payload is not an image.
        """
        metadata = metadata or {}
        try:
            data = await self.api.download_image(url)
        except FeedUnavailableError as e:
            logger.error(f"✗ Failed to download {resolution_type} image {url}: {e}")
            return None

        image_hash = self.generate_hash(data)

        existing = self.store.get_image_by_hash(image_hash, resolution_type)
        if existing:
            logger.debug(f"Image already exists with hash {image_hash} ({resolution_type}), reusing")
            return existing

        try:
            content, ext, width, height = self._render(data, resolution_type)
        except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError, ValueError) as e:
            logger.error(f"✗ Could not decode {resolution_type} image {url}: {e}")
            return None

        file_name = f"{image_hash}_{resolution_type}.{ext}"
        (self.storage_path / file_name).write_bytes(content)

        image = self.store.insert_image({
            'hash': image_hash,
            'resolution_type': resolution_type,
            'original_hash_code': metadata.get('hashCode'),
            'alt': metadata.get('alt'),
            'text': metadata.get('text'),
            'category': metadata.get('category'),
            'copyright': metadata.get('copyright'),
            'mode': metadata.get('mode'),
            'file_path': file_name,
            'width': width,
            'height': height,
            'file_size': len(content),
        })
        logger.info(f"✓ Stored new {resolution_type} image: {image_hash} ({width}x{height})")
        return image

    @staticmethod
    def _pick_versions(image_data: dict):
        """Widest version becomes 'high', narrowest 'low'; one version serves both."""
        versions = [v for v in (image_data or {}).get('versions') or [] if v.get('path')]
        if not versions:
            return None, None, {}
        metadata = {key: image_data.get(key) for key in ('hashCode', 'alt', 'text', 'category', 'copyright', 'mode')}
        largest = max(versions, key=lambda v: v.get('width') or 0)
        smallest = min(versions, key=lambda v: v.get('width') or 0)
        return largest, smallest, metadata

    async def process_image_versions(self, image_data: dict, on_stored: Callable[[Image, str], None] = None) -> dict:
        """
        Store the high and low version of one ORF image.

        on_stored(image, resolution) runs right after each version is stored,
        before the next download starts.
        """
        largest, smallest, metadata = self._pick_versions(image_data)
        if largest is None:
            return {'high': None, 'low': None}

        high = await self.process_and_store_image(largest['path'], metadata, RESOLUTION_HIGH)
        if high and on_stored:
            on_stored(high, RESOLUTION_HIGH)

        if smallest['path'] != largest['path']:
            low = await self.process_and_store_image(smallest['path'], metadata, RESOLUTION_LOW)
        else:
            low = high
        if low and on_stored:
            on_stored(low, RESOLUTION_LOW)

        return {'high': high, 'low': low}

    async def process_entity_images(self, entity_type: str, entity_id: int, images: list) -> List[Image]:
        """Store all images of one broadcast/item and link them. No-op if already linked."""
        if not images:
            return []

        if self.store.has_image_references(entity_type, entity_id):
            logger.debug(f"Images for {entity_type} {entity_id} already processed")
            return []

        processed = []

        # Ein unverlinktes Bild kann vom Cleanup entfernt werden, also sofort verlinken
        def link(image: Image, resolution_type: str):
            self.store.add_image_reference(entity_type, entity_id, image.id, resolution_type)
            if all(image.id != seen.id for seen in processed):
                processed.append(image)

        for image_data in images:
            await self.process_image_versions(image_data, on_stored=link)

        if processed:
            logger.info(f"Processed {len(processed)} new images for {entity_type} {entity_id}")
        return processed

    async def process_broadcast_images(self, broadcast: dict, broadcast_id: int) -> List[Image]:
        return await self.process_entity_images(ENTITY_BROADCAST, broadcast_id, broadcast.get('images'))

    async def process_broadcast_item_images(self, item: dict, item_row_id: int) -> List[Image]:
        return await self.process_entity_images(ENTITY_BROADCAST_ITEM, item_row_id, item.get('images'))

    def get_image_path(self, image_hash: str, resolution_type: str = RESOLUTION_HIGH) -> Optional[Path]:
        image = self.store.get_image_by_hash(image_hash, resolution_type)
        if not image:
            return None
        return self.storage_path / image.file_path

    @staticmethod
    def content_type_for(path: Path) -> str:
        return CONTENT_TYPES.get(path.suffix.lstrip('.').lower(), 'image/jpeg')

    def cleanup_orphaned_image_files(self) -> dict:
        """Delete image files on disk that have no (hash, resolution) row."""
        deleted = 0
        errors = []

        if not self.storage_path.exists():
            logger.info("Image storage directory does not exist, nothing to clean up")
            return {'deleted': 0, 'errors': []}

        known = self.store.get_image_keys()

        for path in self.storage_path.iterdir():
            if not path.is_file():
                continue
            match = IMAGE_FILE_PATTERN.match(path.name)
            if not match:
                logger.debug(f"Skipping file with unexpected name: {path.name}")
                continue

            image_hash, resolution_type = match.group(1).lower(), match.group(2).lower()
            if (image_hash, resolution_type) in known:
                continue

            try:
                path.unlink()
                deleted += 1
                logger.debug(f"Deleted orphaned image file: {path.name}")
            except OSError as e:
                errors.append({'file': path.name, 'error': str(e)})
                logger.error(f"✗ Failed to delete image file {path.name}: {e}")

        if deleted:
            logger.info(f"🧹 Cleaned up {deleted} orphaned image files")
        else:
            logger.info("No orphaned image files found")
        return {'deleted': deleted, 'errors': errors}

    def cleanup_unreferenced_images(self) -> dict:
        """Rows first, then the files they left behind"""
        deleted_records = self.store.delete_unreferenced_images()
        if deleted_records:
            logger.info(f"🧹 Deleted {deleted_records} unreferenced image records")
        files = self.cleanup_orphaned_image_files()
        return {
            'deletedRecords': deleted_records,
            'deletedFiles': files['deleted'],
            'errors': files['errors'],
        }
