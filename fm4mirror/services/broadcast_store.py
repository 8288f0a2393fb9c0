"""
Store access for broadcasts, items, images and sync bookkeeping.

Every public method runs in its own transaction: commit on success, rollback
and re-raise on any error. Rows are returned detached with their column
values loaded (relationships are not loaded).
"""
import logging
import re
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from fm4mirror.models.broadcast import Broadcast, BroadcastItem
from fm4mirror.models.image import (
    Image, ImageReference, ENTITY_BROADCAST, ENTITY_BROADCAST_ITEM
)
from fm4mirror.models.metadata import Metadata
from fm4mirror.models.program_key import ProgramKey
from fm4mirror.utils.timeutils import utcnow


logger = logging.getLogger(__name__)


# ORF API field -> column
BROADCAST_FIELDS = {
    'broadcastDay': 'broadcast_day',
    'programKey': 'program_key',
    'program': 'program',
    'title': 'title',
    'subtitle': 'subtitle',
    'state': 'state',
    'description': 'description',
    'moderator': 'moderator',
    'url': 'url',
    'start': 'start_time',
    'startISO': 'start_iso',
    'end': 'end_time',
    'endISO': 'end_iso',
    'scheduledStart': 'scheduled_start',
    'scheduledEnd': 'scheduled_end',
    'niceTime': 'nice_time',
    'niceTimeISO': 'nice_time_iso',
    'loopStreamId': 'loop_stream_id',
    'loopStreamStart': 'loop_stream_start',
    'loopStreamEnd': 'loop_stream_end',
}

ITEM_FIELDS = {
    'broadcastDay': 'broadcast_day',
    'programKey': 'program_key',
    'type': 'type',
    'title': 'title',
    'interpreter': 'interpreter',
    'description': 'description',
    'state': 'state',
    'songId': 'song_id',
    'duration': 'duration',
    'start': 'start_time',
    'startISO': 'start_iso',
    'end': 'end_time',
    'endISO': 'end_iso',
}

BROADCAST_FLAGS = {
    'isOnDemand': 'is_on_demand',
    'isGeoProtected': 'is_geo_protected',
    'isAdFree': 'is_ad_free',
}

ITEM_FLAGS = {
    'isOnDemand': 'is_on_demand',
    'isGeoProtected': 'is_geo_protected',
    'isCompleted': 'is_completed',
    'isAdFree': 'is_ad_free',
}


def broadcast_columns(data: dict) -> dict:
    """Map an API broadcast dict to column values; absent keys are left out."""
    values = {column: data[field] for field, column in BROADCAST_FIELDS.items() if field in data}
    values.update({column: bool(data[field]) for field, column in BROADCAST_FLAGS.items() if field in data})
    return values


def item_columns(data: dict) -> dict:
    values = {column: data[field] for field, column in ITEM_FIELDS.items() if field in data}
    if 'program_key' not in values and data.get('program'):
        values['program_key'] = data['program']
    values.update({column: bool(data[field]) for field, column in ITEM_FLAGS.items() if field in data})
    return values


def _derive_item_timing(item: BroadcastItem, broadcast_start: Optional[int]):
    if broadcast_start is not None and item.start_time is not None:
        item.start_offset = item.start_time - broadcast_start
    else:
        item.start_offset = None
    if broadcast_start is not None and item.end_time is not None:
        item.end_offset = item.end_time - broadcast_start
    else:
        item.end_offset = None
    if item.duration is None and item.start_time is not None and item.end_time is not None:
        item.duration = item.end_time - item.start_time


def _fts_match_query(query: str) -> str:
    """Reduce user input to quoted FTS5 terms (implicit AND)."""
    cleaned = re.sub(r'[^\w\s\-]', '', query.strip())
    return " ".join(f'"{term}"' for term in cleaned.split())


class BroadcastStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session(self):
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Broadcasts
    # ------------------------------------------------------------------

    def get_broadcast(self, broadcast_day: int, program_key: str) -> Optional[Broadcast]:
        with self.session() as db:
            return db.query(Broadcast).filter_by(
                broadcast_day=broadcast_day, program_key=program_key
            ).first()

    def get_broadcast_by_id(self, broadcast_id: int) -> Optional[Broadcast]:
        with self.session() as db:
            return db.get(Broadcast, broadcast_id)

    def get_broadcasts_by_date_range(self, start_day: int, end_day: int) -> List[Broadcast]:
        with self.session() as db:
            return db.query(Broadcast).filter(
                Broadcast.broadcast_day >= start_day,
                Broadcast.broadcast_day <= end_day,
            ).order_by(Broadcast.start_time.desc()).all()

    def get_all_broadcasts(self, limit: int = 1000) -> List[Broadcast]:
        with self.session() as db:
            return db.query(Broadcast).order_by(Broadcast.start_time.desc()).limit(limit).all()

    def upsert_broadcast(self, data: dict) -> Broadcast:
        """
        Insert or update a broadcast keyed by (broadcastDay, programKey).

        The done flag is never written here; see mark_broadcast_done().
        """
        values = broadcast_columns(data)
        day = values.get('broadcast_day')
        program_key = values.get('program_key')
        if day is None or not program_key:
            raise ValueError("broadcast record needs broadcastDay and programKey")

        with self.session() as db:
            broadcast = db.query(Broadcast).filter_by(
                broadcast_day=day, program_key=program_key
            ).first()

            if broadcast is None:
                if data.get('id') is None:
                    raise ValueError(f"broadcast {program_key}/{day} has no id")
                broadcast = Broadcast(id=data['id'], done=False)
                db.add(broadcast)

            for column, value in values.items():
                setattr(broadcast, column, value)

            if broadcast.start_time is not None and broadcast.end_time is not None:
                broadcast.duration = broadcast.end_time - broadcast.start_time

            broadcast.updated_at = utcnow()
            db.flush()
            return broadcast

    def mark_broadcast_done(self, broadcast_id: int) -> None:
        with self.session() as db:
            db.query(Broadcast).filter(Broadcast.id == broadcast_id).update(
                {Broadcast.done: True, Broadcast.updated_at: utcnow()},
                synchronize_session=False,
            )

    def delete_broadcasts_older_than(self, cutoff_ms: int) -> int:
        """Delete old broadcasts with their items and image references."""
        old_ids = select(Broadcast.id).where(Broadcast.start_time < cutoff_ms)
        old_item_ids = select(BroadcastItem.id).where(BroadcastItem.broadcast_id.in_(old_ids))

        with self.session() as db:
            count = db.query(func.count(Broadcast.id)).filter(Broadcast.start_time < cutoff_ms).scalar()
            if not count:
                return 0

            db.query(ImageReference).filter(
                ImageReference.entity_type == ENTITY_BROADCAST_ITEM,
                ImageReference.entity_id.in_(old_item_ids),
            ).delete(synchronize_session=False)
            db.query(ImageReference).filter(
                ImageReference.entity_type == ENTITY_BROADCAST,
                ImageReference.entity_id.in_(old_ids),
            ).delete(synchronize_session=False)
            db.query(BroadcastItem).filter(
                BroadcastItem.broadcast_id.in_(old_ids)
            ).delete(synchronize_session=False)
            db.query(Broadcast).filter(
                Broadcast.start_time < cutoff_ms
            ).delete(synchronize_session=False)
            return count

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def upsert_items(self, broadcast_id: int, items: Iterable[dict]) -> List[Tuple[BroadcastItem, bool]]:
        """
        Insert new items / refresh known ones for one broadcast, atomically.

        Offsets are derived from the stored broadcast start time.
        Returns (item, created) pairs in input order.
        """
        with self.session() as db:
            broadcast = db.get(Broadcast, broadcast_id)
            if broadcast is None:
                raise ValueError(f"broadcast {broadcast_id} does not exist")

            existing: Dict[int, BroadcastItem] = {
                item.item_id: item
                for item in db.query(BroadcastItem).filter_by(broadcast_id=broadcast_id)
            }

            results = []
            for data in items:
                item_id = data.get('id')
                if item_id is None:
                    logger.debug(f"Skipping item without id in broadcast {broadcast_id}")
                    continue

                item = existing.get(item_id)
                created = item is None
                if created:
                    item = BroadcastItem(broadcast_id=broadcast_id, item_id=item_id)
                    db.add(item)
                    existing[item_id] = item

                for column, value in item_columns(data).items():
                    setattr(item, column, value)
                _derive_item_timing(item, broadcast.start_time)
                results.append((item, created))

            db.flush()
            return results

    def get_item_ids(self, broadcast_id: int) -> Set[int]:
        with self.session() as db:
            return {
                item_id for (item_id,) in
                db.query(BroadcastItem.item_id).filter_by(broadcast_id=broadcast_id)
            }

    def get_broadcast_items(self, broadcast_id: int) -> List[BroadcastItem]:
        with self.session() as db:
            return db.query(BroadcastItem).filter_by(
                broadcast_id=broadcast_id
            ).order_by(BroadcastItem.start_time.asc()).all()

    def get_item_by_id(self, row_id: int) -> Optional[BroadcastItem]:
        with self.session() as db:
            return db.get(BroadcastItem, row_id)

    def get_item_by_item_id(self, item_id: int) -> Optional[BroadcastItem]:
        with self.session() as db:
            return db.query(BroadcastItem).filter_by(item_id=item_id).order_by(
                BroadcastItem.id.desc()
            ).first()

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def get_image_by_hash(self, image_hash: str, resolution_type: str) -> Optional[Image]:
        with self.session() as db:
            return db.query(Image).filter_by(hash=image_hash, resolution_type=resolution_type).first()

    def insert_image(self, values: dict) -> Image:
        """Insert an image row; a concurrent insert of the same (hash, resolution) wins."""
        try:
            with self.session() as db:
                image = Image(**values)
                db.add(image)
                db.flush()
                return image
        except IntegrityError:
            existing = self.get_image_by_hash(values['hash'], values['resolution_type'])
            if existing is None:
                raise
            return existing

    def add_image_reference(self, entity_type: str, entity_id: int, image_id: int, resolution_type: str) -> bool:
        with self.session() as db:
            exists = db.query(ImageReference.id).filter_by(
                entity_type=entity_type,
                entity_id=entity_id,
                image_id=image_id,
                resolution_type=resolution_type,
            ).first()
            if exists:
                return False
            db.add(ImageReference(
                entity_type=entity_type,
                entity_id=entity_id,
                image_id=image_id,
                resolution_type=resolution_type,
            ))
            return True

    def has_image_references(self, entity_type: str, entity_id: int) -> bool:
        with self.session() as db:
            return db.query(ImageReference.id).filter_by(
                entity_type=entity_type, entity_id=entity_id
            ).first() is not None

    def get_image_references(self, entity_type: str, entity_id: int,
                             resolution_type: Optional[str] = None) -> List[Tuple[str, Image]]:
        """(reference resolution, image) pairs for one owning entity."""
        with self.session() as db:
            query = db.query(ImageReference.resolution_type, Image).join(
                Image, Image.id == ImageReference.image_id
            ).filter(
                ImageReference.entity_type == entity_type,
                ImageReference.entity_id == entity_id,
            )
            if resolution_type:
                query = query.filter(ImageReference.resolution_type == resolution_type)
            return [(res, image) for res, image in query.order_by(ImageReference.id).all()]

    def delete_unreferenced_images(self) -> int:
        with self.session() as db:
            referenced = select(ImageReference.image_id)
            return db.query(Image).filter(~Image.id.in_(referenced)).delete(synchronize_session=False)

    def get_image_keys(self) -> Set[Tuple[str, str]]:
        with self.session() as db:
            return {(h, res) for h, res in db.query(Image.hash, Image.resolution_type)}

    # ------------------------------------------------------------------
    # Program keys & metadata
    # ------------------------------------------------------------------

    def register_program_key(self, program_key: str, title: Optional[str] = None) -> bool:
        """Upsert a program key and bump last_seen. Returns True if it was new."""
        with self.session() as db:
            entry = db.query(ProgramKey).filter_by(program_key=program_key).first()
            created = entry is None
            if created:
                entry = ProgramKey(program_key=program_key)
                db.add(entry)
            if title:
                entry.title = title
            entry.last_seen = utcnow()
            return created

    def get_all_program_keys(self) -> List[ProgramKey]:
        with self.session() as db:
            return db.query(ProgramKey).order_by(ProgramKey.program_key).all()

    def set_metadata(self, key: str, value: str) -> None:
        with self.session() as db:
            entry = db.get(Metadata, key)
            if entry is None:
                db.add(Metadata(key=key, value=value, updated_at=utcnow()))
            else:
                entry.value = value
                entry.updated_at = utcnow()

    def get_metadata(self, key: str) -> Optional[str]:
        with self.session() as db:
            entry = db.get(Metadata, key)
            return entry.value if entry else None

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def _search(self, fts_table: str, model, query: str, limit: int, offset: int):
        match = _fts_match_query(query)
        if not match:
            return []
        sql = text(
            f"SELECT rowid FROM {fts_table} WHERE {fts_table} MATCH :match "
            f"ORDER BY bm25({fts_table}) LIMIT :limit OFFSET :offset"
        )
        try:
            with self.session() as db:
                row_ids = [row[0] for row in db.execute(sql, {"match": match, "limit": limit, "offset": offset})]
                if not row_ids:
                    return []
                rows = {row.id: row for row in db.query(model).filter(model.id.in_(row_ids))}
                return [rows[row_id] for row_id in row_ids if row_id in rows]
        except OperationalError as e:
            logger.warning(f"Full-text search on {fts_table} failed: {e}")
            return []

    def _count(self, fts_table: str, query: str) -> int:
        match = _fts_match_query(query)
        if not match:
            return 0
        sql = text(f"SELECT COUNT(*) FROM {fts_table} WHERE {fts_table} MATCH :match")
        try:
            with self.session() as db:
                return db.execute(sql, {"match": match}).scalar() or 0
        except OperationalError as e:
            logger.warning(f"Full-text count on {fts_table} failed: {e}")
            return 0

    def search_broadcasts(self, query: str, limit: int = 50, offset: int = 0) -> List[Broadcast]:
        return self._search("broadcasts_fts", Broadcast, query, limit, offset)

    def search_items(self, query: str, limit: int = 50, offset: int = 0) -> List[BroadcastItem]:
        return self._search("broadcast_items_fts", BroadcastItem, query, limit, offset)

    def count_search_broadcasts(self, query: str) -> int:
        return self._count("broadcasts_fts", query)

    def count_search_items(self, query: str) -> int:
        return self._count("broadcast_items_fts", query)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        with self.session() as db:
            oldest, newest = db.query(
                func.min(Broadcast.broadcast_day), func.max(Broadcast.broadcast_day)
            ).one()
            return {
                "broadcasts": db.query(func.count(Broadcast.id)).scalar(),
                "broadcastItems": db.query(func.count(BroadcastItem.id)).scalar(),
                "programKeys": db.query(func.count(ProgramKey.id)).scalar(),
                "images": db.query(func.count(Image.id)).scalar(),
                "imageReferences": db.query(func.count(ImageReference.id)).scalar(),
                "oldestBroadcast": oldest,
                "newestBroadcast": newest,
            }
