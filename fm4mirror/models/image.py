from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, ForeignKey, UniqueConstraint, Index
from fm4mirror.database import Base
from fm4mirror.utils.timeutils import utcnow


RESOLUTION_HIGH = "high"
RESOLUTION_LOW = "low"

ENTITY_BROADCAST = "broadcast"
ENTITY_BROADCAST_ITEM = "broadcast_item"


class Image(Base):
    """Content-addressed image: one row per (sha256, resolution)"""
    __tablename__ = "images"

    id = Column(Integer, primary_key=True)
    hash = Column(String(64), nullable=False, index=True)
    resolution_type = Column(String(10), nullable=False, default=RESOLUTION_HIGH)

    # Metadaten aus der ORF API
    original_hash_code = Column(BigInteger, nullable=True)
    alt = Column(Text)
    text = Column(Text)
    category = Column(String(100))
    copyright = Column(String(500))
    mode = Column(String(50))

    file_path = Column(String(255), nullable=False)  # relative to storage directory
    width = Column(Integer)
    height = Column(Integer)
    file_size = Column(Integer)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('hash', 'resolution_type', name='uq_image_hash_resolution'),
        {'sqlite_autoincrement': True},
    )

    def __repr__(self):
        return f"<Image {self.hash[:12]}… {self.resolution_type} {self.width}x{self.height}>"


class ImageReference(Base):
    """Links a broadcast or broadcast item to an image at one resolution"""
    __tablename__ = "image_references"

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(20), nullable=False)  # broadcast | broadcast_item
    entity_id = Column(Integer, nullable=False)
    image_id = Column(Integer, ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True)
    resolution_type = Column(String(10), nullable=False, default=RESOLUTION_HIGH)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', 'image_id', 'resolution_type', name='uq_image_reference'),
        Index('idx_image_references_entity', 'entity_type', 'entity_id'),
        {'sqlite_autoincrement': True},
    )

    def __repr__(self):
        return f"<ImageReference {self.entity_type}:{self.entity_id} -> {self.image_id} ({self.resolution_type})>"
