from fastapi import APIRouter, Depends, HTTPException, Path, Query
from fastapi.responses import FileResponse
from typing import Literal

from fm4mirror.startup import Services, get_services


router = APIRouter(prefix="/images", tags=["images"])


@router.get("/{image_hash}")
async def get_image(image_hash: str = Path(..., pattern=r'^[a-f0-9]{64}$'),
                    resolution: Literal["high", "low"] = Query("high"),
                    services: Services = Depends(get_services)):
    """Bild per SHA-256, content-addressed und daher unbegrenzt cachebar"""
    path = services.images.get_image_path(image_hash, resolution)
    if not path or not path.exists():
        raise HTTPException(status_code=404, detail=f"Image not found: {image_hash} ({resolution} resolution)")

    return FileResponse(
        path,
        media_type=services.images.content_type_for(path),
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
