from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, Boolean, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from fm4mirror.database import Base
from fm4mirror.utils.timeutils import utcnow


class Broadcast(Base):
    """Eine Sendung (Programm an einem Sendetag), id kommt von der ORF API"""
    __tablename__ = "broadcasts"

    id = Column(Integer, primary_key=True, autoincrement=False)
    broadcast_day = Column(Integer, nullable=False, index=True)  # YYYYMMDD
    program_key = Column(String(50), nullable=False, index=True)

    program = Column(String(50))
    title = Column(String(500))
    subtitle = Column(Text)
    state = Column(String(5))  # S, P, C
    description = Column(Text)
    moderator = Column(String(500))
    url = Column(Text)

    is_on_demand = Column(Boolean, default=False)
    is_geo_protected = Column(Boolean, default=False)
    is_ad_free = Column(Boolean, default=False)

    # Epoch milliseconds
    start_time = Column(BigInteger, index=True)
    start_iso = Column(String(40))
    end_time = Column(BigInteger)
    end_iso = Column(String(40))
    scheduled_start = Column(BigInteger)
    scheduled_end = Column(BigInteger)
    nice_time = Column(BigInteger)
    nice_time_iso = Column(String(40))
    duration = Column(BigInteger)

    # Loopstream (on-demand playback)
    loop_stream_id = Column(String(255))
    loop_stream_start = Column(BigInteger)
    loop_stream_end = Column(BigInteger)

    # Once True, never reset
    done = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    items = relationship(
        "BroadcastItem",
        back_populates="broadcast",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint('broadcast_day', 'program_key', name='uq_broadcast_day_program'),
    )

    def __repr__(self):
        return f"<Broadcast {self.program_key}/{self.broadcast_day} id={self.id} done={self.done}>"


class BroadcastItem(Base):
    """Song, Jingle, Werbung oder News innerhalb einer Sendung"""
    __tablename__ = "broadcast_items"

    id = Column(Integer, primary_key=True)
    broadcast_id = Column(Integer, ForeignKey("broadcasts.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(BigInteger, nullable=False)  # ORF API id

    broadcast_day = Column(Integer)
    program_key = Column(String(50))
    type = Column(String(10))  # M (music), J, W, N, ...
    title = Column(String(500))
    interpreter = Column(String(500))
    description = Column(Text)
    state = Column(String(5))
    song_id = Column(String(100))

    is_on_demand = Column(Boolean, default=False)
    is_geo_protected = Column(Boolean, default=False)
    is_completed = Column(Boolean, default=False)
    is_ad_free = Column(Boolean, default=False)

    start_time = Column(BigInteger)
    start_iso = Column(String(40))
    end_time = Column(BigInteger)
    end_iso = Column(String(40))

    # Relative to broadcast start (ms), NULL until the broadcast start is known
    start_offset = Column(BigInteger)
    end_offset = Column(BigInteger)
    duration = Column(BigInteger)

    created_at = Column(DateTime, default=utcnow)

    broadcast = relationship("Broadcast", back_populates="items")

    __table_args__ = (
        UniqueConstraint('broadcast_id', 'item_id', name='uq_broadcast_item'),
        Index('idx_broadcast_items_type', 'type'),
    )

    def __repr__(self):
        return f"<BroadcastItem {self.item_id} '{self.title}' broadcast={self.broadcast_id}>"
