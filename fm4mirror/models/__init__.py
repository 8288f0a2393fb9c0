from fm4mirror.database import Base
from fm4mirror.models.broadcast import Broadcast, BroadcastItem
from fm4mirror.models.image import Image, ImageReference
from fm4mirror.models.program_key import ProgramKey
from fm4mirror.models.metadata import Metadata

__all__ = [
    "Base",
    "Broadcast",
    "BroadcastItem",
    "Image",
    "ImageReference",
    "ProgramKey",
    "Metadata",
]
