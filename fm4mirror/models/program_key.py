from sqlalchemy import Column, Integer, String, DateTime
from fm4mirror.database import Base
from fm4mirror.utils.timeutils import utcnow


class ProgramKey(Base):
    __tablename__ = "program_keys"

    id = Column(Integer, primary_key=True)
    program_key = Column(String(50), unique=True, nullable=False)
    title = Column(String(500), nullable=True)
    last_seen = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<ProgramKey {self.program_key} ({self.title})>"
