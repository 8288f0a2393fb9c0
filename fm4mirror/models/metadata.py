from sqlalchemy import Column, String, DateTime, Text
from fm4mirror.database import Base
from fm4mirror.utils.timeutils import utcnow


class Metadata(Base):
    """Sync-Buchhaltung, z.B. last_full_scrape / last_recent_scrape"""
    __tablename__ = "metadata"

    key = Column(String(100), primary_key=True)
    value = Column(Text)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Metadata {self.key}={(self.value or '')[:20]}>"
